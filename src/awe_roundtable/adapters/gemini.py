from __future__ import annotations

from awe_roundtable.adapters.base import ProviderAdapter, has_flag


class GeminiAdapter(ProviderAdapter):
    def _apply_permission_mode(self, *, argv: list[str], permission_mode: str | None) -> list[str]:
        if str(permission_mode or '').strip() != 'plan':
            return argv
        # Plan mode must not auto-approve edits.
        argv = [token for token in argv if str(token).strip() not in {'-y', '--yolo'}]
        if not has_flag(argv, '--approval-mode'):
            argv.extend(['--approval-mode', 'default'])
        return argv

    def _append_prompt(self, *, argv: list[str], prompt: str) -> list[str]:
        if has_flag(argv, '--prompt'):
            return argv
        argv.extend(['--prompt', str(prompt or '')])
        return argv


__all__ = ['GeminiAdapter']
