from awe_roundtable.domain.errors import (
    RunCanceledError,
    TaskBusyError,
    TaskNotFoundError,
    UnsupportedProviderError,
)
from awe_roundtable.domain.events import (
    AgentFinished,
    AgentProgress,
    AgentStarted,
    EventType,
    RoundTransition,
    RunEventType,
    normalize_event_type,
)
from awe_roundtable.domain.models import (
    FSM_STATES,
    FinalOutcome,
    FsmState,
    ProviderErrorClass,
    RoundRecord,
    StateEvent,
    TesterBlockedPolicy,
    WorkflowPhase,
)

__all__ = [
    'AgentFinished',
    'AgentProgress',
    'AgentStarted',
    'EventType',
    'FSM_STATES',
    'FinalOutcome',
    'FsmState',
    'ProviderErrorClass',
    'RoundRecord',
    'RoundTransition',
    'RunCanceledError',
    'RunEventType',
    'StateEvent',
    'TaskBusyError',
    'TaskNotFoundError',
    'TesterBlockedPolicy',
    'UnsupportedProviderError',
    'WorkflowPhase',
    'normalize_event_type',
]
