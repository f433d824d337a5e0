from __future__ import annotations

from awe_roundtable.adapters.base import ProviderAdapter, has_flag


def normalize_codex_exec_output(output: str) -> str:
    text = str(output or '').replace('\r\n', '\n').strip()
    if not text:
        return text

    marker = '\ncodex\n'
    if marker in text:
        tail = text.rsplit(marker, 1)[-1]
        if '\ntokens used' in tail:
            tail = tail.split('\ntokens used', 1)[0]
        cleaned = tail.strip()
        if cleaned:
            return cleaned

    banner = '\nOpenAI Codex v'
    if banner in text:
        head = text.split(banner, 1)[0].strip()
        if head:
            return head

    return text


class CodexAdapter(ProviderAdapter):
    def _apply_permission_mode(self, *, argv: list[str], permission_mode: str | None) -> list[str]:
        if str(permission_mode or '').strip() == 'plan' and not has_flag(argv, '--sandbox'):
            argv.extend(['--sandbox', 'read-only'])
        return argv

    def normalize_output(self, output: str) -> str:
        return normalize_codex_exec_output(output)


__all__ = ['CodexAdapter', 'normalize_codex_exec_output']
