from __future__ import annotations

from awe_roundtable.adapters.base import ProviderAdapter, has_flag


class ClaudeAdapter(ProviderAdapter):
    def _apply_permission_mode(self, *, argv: list[str], permission_mode: str | None) -> list[str]:
        mode = str(permission_mode or '').strip()
        if mode and not has_flag(argv, '--permission-mode'):
            argv.extend(['--permission-mode', mode])
        return argv


__all__ = ['ClaudeAdapter']
