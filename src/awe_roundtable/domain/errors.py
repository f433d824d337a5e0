from __future__ import annotations


class RunCanceledError(RuntimeError):
    """Raised when an operator abort is observed at a suspension point."""


class UnsupportedProviderError(ValueError):
    def __init__(self, provider: str):
        super().__init__(f'Unsupported provider: {provider}')
        self.provider = provider


class TaskNotFoundError(KeyError):
    pass


class TaskBusyError(RuntimeError):
    pass
