from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

DEFAULT_CLAUDE_COMMAND = 'claude -p --output-format stream-json --verbose'
DEFAULT_CODEX_COMMAND = 'codex exec --skip-git-repo-check'
DEFAULT_GEMINI_COMMAND = 'gemini'

_TRUTHY = frozenset({'1', 'true', 'yes', 'on'})
_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR')


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once from ``AWE_*`` environment variables."""

    artifact_root: Path
    service_name: str
    otel_endpoint: str | None
    log_level: str
    dry_run: bool
    claude_command: str
    codex_command: str
    gemini_command: str
    participant_timeout_seconds: int
    command_timeout_seconds: int
    command_batch_timeout_seconds: int
    kill_grace_ms: int
    max_iterations: int
    allowed_test_commands: tuple[str, ...]
    tester_blocked_policy: str
    workflow_backend: str


def _env_str(name: str, default: str) -> str:
    value = (os.getenv(name) or '').strip()
    return value or default


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(name: str) -> bool:
    return (os.getenv(name, '') or '').strip().lower() in _TRUTHY


def _env_choice(name: str, choices: tuple[str, ...], default: str, *, upper: bool = False) -> str:
    value = _env_str(name, default)
    value = value.upper() if upper else value.lower()
    return value if value in choices else default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, '') or ''
    return tuple(item.strip() for item in raw.split(',') if item.strip())


def load_settings() -> Settings:
    return Settings(
        artifact_root=Path(_env_str('AWE_ARTIFACT_ROOT', '.agents')).resolve(),
        service_name=_env_str('AWE_SERVICE_NAME', 'awe-roundtable'),
        otel_endpoint=(os.getenv('AWE_OTEL_EXPORTER_OTLP_ENDPOINT') or '').strip() or None,
        log_level=_env_choice('AWE_LOG_LEVEL', _LOG_LEVELS, 'DEBUG', upper=True),
        dry_run=_env_bool('AWE_DRY_RUN'),
        claude_command=_env_str('AWE_CLAUDE_COMMAND', DEFAULT_CLAUDE_COMMAND),
        codex_command=_env_str('AWE_CODEX_COMMAND', DEFAULT_CODEX_COMMAND),
        gemini_command=_env_str('AWE_GEMINI_COMMAND', DEFAULT_GEMINI_COMMAND),
        participant_timeout_seconds=_env_int('AWE_PARTICIPANT_TIMEOUT_SECONDS', 600, minimum=10),
        command_timeout_seconds=_env_int('AWE_COMMAND_TIMEOUT_SECONDS', 300, minimum=10),
        # Wall-clock budget for all commands of one tester turn.
        command_batch_timeout_seconds=_env_int('AWE_COMMAND_BATCH_TIMEOUT_SECONDS', 120, minimum=10),
        kill_grace_ms=_env_int('AWE_KILL_GRACE_MS', 5000, minimum=100),
        max_iterations=_env_int('AWE_MAX_ITERATIONS', 3, minimum=1),
        allowed_test_commands=_env_list('AWE_ALLOWED_TEST_COMMANDS'),
        tester_blocked_policy=_env_choice('AWE_TESTER_BLOCKED_POLICY', ('strict', 'resilient'), 'strict'),
        workflow_backend=_env_choice('AWE_WORKFLOW_BACKEND', ('langgraph', 'classic'), 'langgraph'),
    )
