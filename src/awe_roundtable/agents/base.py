from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Any, Callable, Mapping, Protocol

from awe_roundtable.adapters.runner import ProviderTextResult
from awe_roundtable.adapters.supervisor import DEFAULT_TIMEOUT_MS, RunEvent
from awe_roundtable.agents.profiles import RoleProfile

DISCUSSION_MODE = 'discussion'
STRICT_JSON_MODE = 'strict_json'
PROPOSAL_MODE = 'proposal'
IMPLEMENTATION_MODE = 'implementation'


class TextRunner(Protocol):
    def execute_text(
        self,
        *,
        provider: str,
        prompt: str,
        model: str | None = None,
        model_params: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        permission_mode: str | None = None,
        event_meta: dict[str, Any] | None = None,
        abort_signal: threading.Event | None = None,
        on_event: Callable[[RunEvent], None] | None = None,
    ) -> ProviderTextResult:
        ...


@dataclass(frozen=True)
class AgentCall:
    """Everything an agent needs to reach its provider, minus the prompt."""

    provider: str
    model: str | None = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    abort_signal: threading.Event | None = None
    event_meta: dict[str, Any] = field(default_factory=dict)
    on_event: Callable[[RunEvent], None] | None = None
    role_profiles: Mapping[str, RoleProfile] | None = None

    def invoke(
        self,
        runner: TextRunner,
        *,
        role: str,
        prompt: str,
        mode: str,
        permission_mode: str | None = None,
    ) -> ProviderTextResult:
        meta = dict(self.event_meta)
        meta.setdefault('agent_role', role)
        meta.setdefault('agent_mode', mode)
        return runner.execute_text(
            provider=self.provider,
            prompt=prompt,
            model=self.model,
            timeout_ms=self.timeout_ms,
            permission_mode=permission_mode,
            event_meta=meta,
            abort_signal=self.abort_signal,
            on_event=self.on_event,
        )


__all__ = [
    'AgentCall',
    'DISCUSSION_MODE',
    'IMPLEMENTATION_MODE',
    'PROPOSAL_MODE',
    'STRICT_JSON_MODE',
    'TextRunner',
]
