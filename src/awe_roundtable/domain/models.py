from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FsmState(str, Enum):
    INTAKE = 'intake'
    PLAN = 'plan'
    BUILD = 'build'
    REVIEW = 'review'
    TEST = 'test'
    ITERATE = 'iterate'
    FINALIZE = 'finalize'


FSM_STATES: tuple[str, ...] = tuple(state.value for state in FsmState)


class FinalOutcome(str, Enum):
    APPROVED = 'approved'
    AWAITING_OPERATOR_CONFIRM = 'awaiting_operator_confirm'
    REVIEW_CHANGES_REQUESTED = 'review_changes_requested'
    TEST_FAILED = 'test_failed'
    REPEATED_TEST_FAILURE = 'repeated_test_failure'
    TESTER_COMMAND_BLOCKED = 'tester_command_blocked'
    TESTER_SCHEMA_INVALID = 'tester_schema_invalid'
    REVIEW_SCHEMA_INVALID = 'review_schema_invalid'
    MAX_ITERATIONS_REACHED = 'max_iterations_reached'
    CANCELED = 'canceled'
    PROVIDER_UNSUPPORTED = 'provider_unsupported'
    INTERNAL_ERROR = 'internal_error'


class ProviderErrorClass(str, Enum):
    PERMISSION_DENIED = 'provider_permission_denied'
    NOT_FOUND = 'provider_not_found'
    AUTH_ERROR = 'provider_auth_error'
    TIMEOUT = 'provider_timeout'
    NETWORK_ERROR = 'provider_network_error'
    RUNTIME_ERROR = 'provider_runtime_error'


class WorkflowPhase(str, Enum):
    PROPOSAL = 'proposal'
    IMPLEMENTATION = 'implementation'


class TesterBlockedPolicy(str, Enum):
    STRICT = 'strict'
    RESILIENT = 'resilient'


ROLES: tuple[str, ...] = ('coder', 'reviewer', 'tester')


@dataclass(frozen=True)
class StateEvent:
    ts: int
    from_state: str | None
    to: str
    reason: str
    round: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            'ts': self.ts,
            'from': self.from_state,
            'to': self.to,
            'reason': self.reason,
        }
        if self.round is not None:
            payload['round'] = self.round
        for key, value in self.extra.items():
            payload.setdefault(key, value)
        return payload


@dataclass
class RoundRecord:
    round: int
    phase: str
    coder: dict[str, Any] | None = None
    reviewer: dict[str, Any] | None = None
    tester: dict[str, Any] | None = None
    failed_command: str | None = None
    round_outcome: str | None = None
    canceled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            'round': self.round,
            'phase': self.phase,
            'coder': self.coder,
            'reviewer': self.reviewer,
            'tester': self.tester,
            'failed_command': self.failed_command,
            'round_outcome': self.round_outcome,
            'canceled': self.canceled,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> 'RoundRecord':
        return cls(
            round=int(payload.get('round') or 0),
            phase=str(payload.get('phase') or WorkflowPhase.IMPLEMENTATION.value),
            coder=payload.get('coder'),
            reviewer=payload.get('reviewer'),
            tester=payload.get('tester'),
            failed_command=payload.get('failed_command'),
            round_outcome=payload.get('round_outcome'),
            canceled=bool(payload.get('canceled', False)),
        )
