from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any


class RunEventType(str, Enum):
    RUN_STARTED = 'run.started'
    RUN_SPAWNED = 'run.spawned'
    STDOUT_LINE = 'run.stdout.line'
    STDERR_LINE = 'run.stderr.line'
    PROVIDER_NDJSON = 'provider.ndjson'
    PROVIDER_NDJSON_PARSE_ERROR = 'provider.ndjson.parse_error'
    ASSISTANT_TEXT = 'assistant.text'
    RUN_USAGE = 'run.usage'
    RUN_TERMINATING = 'run.terminating'
    RUN_COMPLETED = 'run.completed'
    RUN_FAILED = 'run.failed'


class EventType(str, Enum):
    AGENT_STARTED = 'agent_started'
    AGENT_PROGRESS = 'agent_progress'
    AGENT_FINISHED = 'agent_finished'
    ROUND_TRANSITION = 'round_transition'


def normalize_event_type(value: str | EventType | RunEventType) -> str:
    if isinstance(value, (EventType, RunEventType)):
        return value.value
    return str(value or '').strip().lower()


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class AgentStarted:
    task_id: str
    round: int | None
    role: str
    provider: str
    model: str | None = None
    mode: str | None = None
    ts: int = field(default_factory=_now_ms)
    type: str = EventType.AGENT_STARTED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': self.type,
            'task_id': self.task_id,
            'round': self.round,
            'role': self.role,
            'provider': self.provider,
            'model': self.model,
            'mode': self.mode,
            'ts': self.ts,
        }


@dataclass(frozen=True)
class AgentProgress:
    task_id: str
    round: int | None
    role: str
    event_type: str
    run_id: str | None = None
    preview: str = ''
    ts: int = field(default_factory=_now_ms)
    type: str = EventType.AGENT_PROGRESS.value

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': self.type,
            'task_id': self.task_id,
            'round': self.round,
            'role': self.role,
            'event_type': self.event_type,
            'run_id': self.run_id,
            'preview': self.preview,
            'ts': self.ts,
        }


@dataclass(frozen=True)
class AgentFinished:
    task_id: str
    round: int | None
    role: str
    ok: bool
    run_id: str | None = None
    error_class: str | None = None
    ts: int = field(default_factory=_now_ms)
    type: str = EventType.AGENT_FINISHED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': self.type,
            'task_id': self.task_id,
            'round': self.round,
            'role': self.role,
            'ok': self.ok,
            'run_id': self.run_id,
            'error_class': self.error_class,
            'ts': self.ts,
        }


@dataclass(frozen=True)
class RoundTransition:
    task_id: str
    round: int | None
    from_state: str | None
    to_state: str
    reason: str
    ts: int = field(default_factory=_now_ms)
    type: str = EventType.ROUND_TRANSITION.value

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': self.type,
            'task_id': self.task_id,
            'round': self.round,
            'from': self.from_state,
            'to': self.to_state,
            'reason': self.reason,
            'ts': self.ts,
        }


DomainEvent = AgentStarted | AgentProgress | AgentFinished | RoundTransition
