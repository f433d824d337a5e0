from __future__ import annotations

from dataclasses import dataclass, replace
import threading
from typing import Any

from awe_roundtable.adapters.runner import ProviderRunner
from awe_roundtable.adapters.supervisor import ProcessSupervisor
from awe_roundtable.command_policy import normalize_tester_blocked_policy
from awe_roundtable.command_runner import TestCommandRunner
from awe_roundtable.config import Settings
from awe_roundtable.domain.errors import TaskBusyError, TaskNotFoundError
from awe_roundtable.domain.models import WorkflowPhase
from awe_roundtable.live import EventBus, LiveSessionRegistry
from awe_roundtable.observability import get_logger
from awe_roundtable.storage.artifacts import FileTaskStore, TaskStore, new_task_id
from awe_roundtable.workflow import TaskOptions, WorkflowCoordinator

_log = get_logger('awe_roundtable.service')

DEFAULT_CONFIRM_PROMPT = 'Implement the agreed proposal.'


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


@dataclass(frozen=True)
class StartTaskInput:
    prompt: str
    provider: str = 'claude'
    model: str | None = None
    role_providers: dict[str, dict[str, Any]] | None = None
    role_profiles: dict[str, Any] | None = None
    max_iterations: int | None = None
    allowed_test_commands: list[str] | None = None
    tester_blocked_policy: str | None = None
    execution_mode: str = WorkflowPhase.PROPOSAL.value
    cwd: str | None = None
    task_id: str | None = None


@dataclass(frozen=True)
class TaskTicket:
    task_id: str
    task_dir: str
    background: bool
    summary: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'task_id': self.task_id,
            'task_dir': self.task_dir,
            'background': self.background,
            'summary': self.summary,
        }


class TaskService:
    """Owns task threads and abort events on top of the workflow coordinator."""

    def __init__(
        self,
        *,
        coordinator: WorkflowCoordinator,
        store: TaskStore,
        registry: LiveSessionRegistry | None = None,
        default_max_iterations: int = 3,
        default_allowed_test_commands: tuple[str, ...] = (),
        default_tester_blocked_policy: str = 'strict',
    ):
        self.coordinator = coordinator
        self.store = store
        self.registry = registry or LiveSessionRegistry()
        self.default_max_iterations = max(1, int(default_max_iterations))
        self.default_allowed_test_commands = tuple(default_allowed_test_commands)
        self.default_tester_blocked_policy = normalize_tester_blocked_policy(default_tester_blocked_policy)
        self._abort_events: dict[str, threading.Event] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start_task(self, payload: StartTaskInput, *, background: bool = True) -> TaskTicket:
        prompt = self._require_prompt(payload.prompt)
        task_id = str(payload.task_id or '').strip() or new_task_id()
        try:
            exists = self.store.has_task(task_id)
        except ValueError as exc:
            raise InputValidationError(str(exc), field='task_id') from exc
        if exists:
            raise InputValidationError('task already exists', field='task_id', code='task_exists')
        handle = self.store.create_task(prompt, task_id=task_id)
        options = self._options_from_input(payload, task_id=handle.task_id, task_dir=handle.task_dir)
        return self._launch(prompt, options, background=background)

    def followup(self, task_id: str, payload: StartTaskInput, *, background: bool = True) -> TaskTicket:
        prompt = self._require_prompt(payload.prompt)
        handle = self._existing(task_id)
        options = self._options_from_input(payload, task_id=handle.task_id, task_dir=handle.task_dir)
        return self._launch(prompt, options, background=background)

    def confirm(self, task_id: str, *, note: str | None = None, background: bool = True) -> TaskTicket:
        handle = self._existing(task_id)
        summary = self.store.read_summary(handle.task_id) or {}
        contract = summary.get('discussion_contract') or {}
        prompt = str(note or '').strip() or str(contract.get('goal') or '').strip() or DEFAULT_CONFIRM_PROMPT
        options = self._options_from_summary(summary, task_id=handle.task_id, task_dir=handle.task_dir)
        options = replace(
            options,
            execution_mode=WorkflowPhase.IMPLEMENTATION.value,
            operator_confirmed=True,
        )
        _log.info('operator_confirmed task_id=%s', handle.task_id)
        return self._launch(prompt, options, background=background)

    def cancel(self, task_id: str) -> dict[str, Any]:
        handle = self._existing(task_id)
        with self._lock:
            event = self._abort_events.get(handle.task_id)
        if event is not None:
            event.set()
        _log.info('cancel_requested task_id=%s running=%s', handle.task_id, event is not None)
        return {'task_id': handle.task_id, 'cancel_requested': event is not None}

    def is_running(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._abort_events

    def wait(self, task_id: str, timeout: float | None = None) -> bool:
        with self._lock:
            thread = self._threads.get(task_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def get_summary(self, task_id: str) -> dict[str, Any]:
        handle = self._existing(task_id)
        summary = self.store.read_summary(handle.task_id)
        if summary is None:
            return {'task_id': handle.task_id, 'task_dir': handle.task_dir, 'final_status': None}
        return {**summary, 'running': self.is_running(handle.task_id)}

    def get_timeline(self, task_id: str) -> dict[str, Any]:
        handle = self._existing(task_id)
        timeline = self.store.read_timeline(handle.task_id)
        if timeline is None:
            return {'task_id': handle.task_id, 'transitions': [], 'rounds': [], 'total_transitions': 0}
        return timeline

    def _launch(self, prompt: str, options: TaskOptions, *, background: bool) -> TaskTicket:
        task_id = str(options.task_id)
        with self._lock:
            if task_id in self._abort_events:
                raise TaskBusyError(task_id)
            abort_signal = threading.Event()
            self._abort_events[task_id] = abort_signal
        options = replace(options, abort_signal=abort_signal)
        task_dir = str(options.task_dir or '')

        if not background:
            try:
                summary = self.coordinator.run_task(prompt, options)
            finally:
                self._release(task_id)
            return TaskTicket(task_id=task_id, task_dir=task_dir, background=False, summary=summary)

        thread = threading.Thread(
            target=self._worker,
            args=(prompt, options),
            name=f'awe-task-{task_id}',
            daemon=True,
        )
        with self._lock:
            self._threads[task_id] = thread
        thread.start()
        return TaskTicket(task_id=task_id, task_dir=task_dir, background=True)

    def _worker(self, prompt: str, options: TaskOptions) -> None:
        task_id = str(options.task_id)
        try:
            self.coordinator.run_task(prompt, options)
        except Exception:
            _log.exception('background worker failed task_id=%s', task_id)
        finally:
            self._release(task_id)

    def _release(self, task_id: str) -> None:
        with self._lock:
            self._abort_events.pop(task_id, None)
            self._threads.pop(task_id, None)

    def _existing(self, task_id: str):
        try:
            exists = self.store.has_task(task_id)
        except ValueError as exc:
            raise TaskNotFoundError(task_id) from exc
        if not exists:
            raise TaskNotFoundError(task_id)
        return self.store.open_task(task_id)

    def _options_from_input(self, payload: StartTaskInput, *, task_id: str, task_dir: str) -> TaskOptions:
        allowed = payload.allowed_test_commands
        if allowed is None:
            allowed = list(self.default_allowed_test_commands) or None
        max_iterations = payload.max_iterations or self.default_max_iterations
        if int(max_iterations) < 1:
            raise InputValidationError('max_iterations must be >= 1', field='max_iterations')
        return TaskOptions(
            provider=payload.provider,
            model=payload.model,
            role_providers=dict(payload.role_providers or {}),
            role_profiles=payload.role_profiles,
            max_iterations=int(max_iterations),
            allowed_test_commands=allowed,
            tester_blocked_policy=payload.tester_blocked_policy or self.default_tester_blocked_policy,
            execution_mode=payload.execution_mode,
            task_id=task_id,
            task_dir=task_dir,
            cwd=payload.cwd,
        )

    def _options_from_summary(self, summary: dict[str, Any], *, task_id: str, task_dir: str) -> TaskOptions:
        role_providers = {
            role: {'provider': item.get('provider'), 'model': item.get('model')}
            for role, item in (summary.get('role_providers') or {}).items()
            if isinstance(item, dict)
        }
        return TaskOptions(
            provider=str(summary.get('provider') or 'claude'),
            model=summary.get('model'),
            role_providers=role_providers,
            role_profiles=summary.get('role_profiles'),
            max_iterations=int(summary.get('max_iterations') or self.default_max_iterations),
            allowed_test_commands=list(summary.get('allowed_test_commands') or self.default_allowed_test_commands)
            or None,
            tester_blocked_policy=str(summary.get('tester_blocked_policy') or self.default_tester_blocked_policy),
            task_id=task_id,
            task_dir=task_dir,
        )

    @staticmethod
    def _require_prompt(prompt: str) -> str:
        text = str(prompt or '').strip()
        if not text:
            raise InputValidationError('prompt is required', field='prompt')
        return text


def build_task_service(settings: Settings) -> TaskService:
    supervisor = ProcessSupervisor(logs_root=settings.artifact_root / 'runs')
    runner = ProviderRunner(
        supervisor=supervisor,
        command_overrides={
            'claude': settings.claude_command,
            'codex': settings.codex_command,
            'gemini': settings.gemini_command,
        },
        dry_run=settings.dry_run,
        kill_grace_ms=settings.kill_grace_ms,
    )
    store = FileTaskStore(settings.artifact_root)
    bus = EventBus()
    registry = LiveSessionRegistry()
    registry.attach(bus)
    coordinator = WorkflowCoordinator(
        runner=runner,
        command_runner=TestCommandRunner(command_timeout_seconds=settings.command_timeout_seconds),
        store=store,
        event_bus=bus,
        participant_timeout_seconds=settings.participant_timeout_seconds,
        command_timeout_seconds=settings.command_timeout_seconds,
        command_batch_timeout_seconds=settings.command_batch_timeout_seconds,
        workflow_backend=settings.workflow_backend,
    )
    _log.info(
        'service_configured artifact_root=%s backend=%s dry_run=%s',
        settings.artifact_root,
        settings.workflow_backend,
        settings.dry_run,
    )
    return TaskService(
        coordinator=coordinator,
        store=store,
        registry=registry,
        default_max_iterations=settings.max_iterations,
        default_allowed_test_commands=settings.allowed_test_commands,
        default_tester_blocked_policy=settings.tester_blocked_policy,
    )


__all__ = ['InputValidationError', 'StartTaskInput', 'TaskService', 'TaskTicket', 'build_task_service']
