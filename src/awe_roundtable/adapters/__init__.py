from awe_roundtable.adapters.base import (
    DEFAULT_COMMANDS,
    DEFAULT_PROVIDER_REGISTRY,
    ProviderAdapter,
    ProviderInvocation,
    has_model_flag,
    normalize_provider_name,
    split_extra_args,
)
from awe_roundtable.adapters.claude import ClaudeAdapter
from awe_roundtable.adapters.codex import CodexAdapter, normalize_codex_exec_output
from awe_roundtable.adapters.factory import ProviderFactory
from awe_roundtable.adapters.gemini import GeminiAdapter
from awe_roundtable.adapters.runner import ProviderRunner, ProviderTextResult, classify_provider_error
from awe_roundtable.adapters.supervisor import ExitInfo, ProcessSupervisor, RunEvent, StreamingRunResult

__all__ = [
    'DEFAULT_COMMANDS',
    'DEFAULT_PROVIDER_REGISTRY',
    'ClaudeAdapter',
    'CodexAdapter',
    'ExitInfo',
    'GeminiAdapter',
    'ProcessSupervisor',
    'ProviderAdapter',
    'ProviderFactory',
    'ProviderInvocation',
    'ProviderRunner',
    'ProviderTextResult',
    'RunEvent',
    'StreamingRunResult',
    'classify_provider_error',
    'has_model_flag',
    'normalize_codex_exec_output',
    'normalize_provider_name',
    'split_extra_args',
]
