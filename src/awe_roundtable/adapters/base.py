from __future__ import annotations

from abc import ABC
from dataclasses import dataclass
import os
import shlex

PARSE_MODES = ('ndjson', 'text')

DEFAULT_PROVIDER_REGISTRY = {
    'claude': {
        'command': 'claude -p --output-format stream-json --verbose',
        'model_flag': '--model',
        'parse_mode': 'ndjson',
    },
    'codex': {
        'command': 'codex exec --skip-git-repo-check',
        'model_flag': '--model',
        'parse_mode': 'text',
    },
    'gemini': {
        'command': 'gemini',
        'model_flag': '--model',
        'parse_mode': 'text',
    },
}

DEFAULT_COMMANDS = {
    provider: str(spec.get('command') or '').strip()
    for provider, spec in DEFAULT_PROVIDER_REGISTRY.items()
}

PROVIDER_ALIASES = {
    'claude-cli': 'claude',
    'codex-cli': 'codex',
    'gemini-cli': 'gemini',
}


def normalize_provider_name(value: str | None) -> str:
    key = str(value or '').strip().lower()
    return PROVIDER_ALIASES.get(key, key)


@dataclass(frozen=True)
class ProviderInvocation:
    provider: str
    argv: list[str]
    parse_mode: str


def split_command(command: str) -> list[str]:
    return shlex.split(str(command or ''), posix=(os.name != 'nt'))


def split_extra_args(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in split_command(text) if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


def has_model_flag(argv: list[str]) -> bool:
    for token in argv:
        text = str(token).strip()
        if text in {'--model', '-m'}:
            return True
        if text.startswith('--model='):
            return True
    return False


def has_flag(argv: list[str], flag: str) -> bool:
    for token in argv:
        text = str(token).strip()
        if text == flag or text.startswith(f'{flag}='):
            return True
    return False


class ProviderAdapter(ABC):
    def __init__(self, *, provider: str, provider_spec: dict[str, object] | None = None):
        self.provider = normalize_provider_name(provider)
        self.provider_spec = dict(provider_spec or {})

    @property
    def parse_mode(self) -> str:
        mode = str(self.provider_spec.get('parse_mode') or 'text').strip().lower()
        return mode if mode in PARSE_MODES else 'text'

    def build_invocation(
        self,
        *,
        command: str,
        prompt: str,
        model: str | None = None,
        model_params: str | None = None,
        permission_mode: str | None = None,
    ) -> ProviderInvocation:
        argv = split_command(command)

        model_text = str(model or '').strip()
        if model_text and not has_model_flag(argv):
            flag = str(self.provider_spec.get('model_flag') or '').strip()
            if flag:
                argv.extend([flag, model_text])

        extra = split_extra_args(model_params)
        if extra:
            argv.extend(extra)

        argv = self._apply_permission_mode(argv=argv, permission_mode=permission_mode)
        argv = self._append_prompt(argv=argv, prompt=prompt)
        return ProviderInvocation(provider=self.provider, argv=argv, parse_mode=self.parse_mode)

    def _apply_permission_mode(self, *, argv: list[str], permission_mode: str | None) -> list[str]:
        _ = permission_mode
        return argv

    def _append_prompt(self, *, argv: list[str], prompt: str) -> list[str]:
        argv.append(str(prompt or ''))
        return argv

    def normalize_output(self, output: str) -> str:
        return str(output or '').strip()


__all__ = [
    'DEFAULT_COMMANDS',
    'DEFAULT_PROVIDER_REGISTRY',
    'PARSE_MODES',
    'PROVIDER_ALIASES',
    'ProviderAdapter',
    'ProviderInvocation',
    'has_flag',
    'has_model_flag',
    'normalize_provider_name',
    'split_command',
    'split_extra_args',
]
