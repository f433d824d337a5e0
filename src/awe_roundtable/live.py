from __future__ import annotations

from contextlib import suppress
import copy
from dataclasses import dataclass
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, Callable

from awe_roundtable.domain.events import (
    AgentFinished,
    AgentProgress,
    AgentStarted,
    DomainEvent,
    RoundTransition,
)
from awe_roundtable.domain.models import ROLES
from awe_roundtable.observability import get_logger
from awe_roundtable.text_utils import clip_tail, sanitize_log_text

_log = get_logger('awe_roundtable.live')

Subscriber = Callable[[DomainEvent], None]


class EventBus:
    """Single outbound channel for domain events; fan-out is synchronous."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                # A broken consumer must not stall the workflow or other consumers.
                _log.exception('event_subscriber_failed type=%s task_id=%s', event.type, event.task_id)


def _idle_agent() -> dict[str, Any]:
    return {
        'state': 'idle',
        'provider': None,
        'model': None,
        'mode': None,
        'run_id': None,
        'last_event_type': None,
        'preview': '',
        'error_class': None,
        'updated_at': None,
    }


def _new_session(task_id: str) -> dict[str, Any]:
    return {
        'task_id': task_id,
        'fsm_state': None,
        'round': None,
        'finished': False,
        'agents': {role: _idle_agent() for role in ROLES},
        'updated_at': None,
    }


class LiveSessionRegistry:
    """In-memory projection of what each task's agents are doing right now."""

    def __init__(
        self,
        *,
        preview_chars: int = 400,
        stream_queue_size: int = 1000,
        max_finished_sessions: int = 200,
    ):
        self.preview_chars = preview_chars
        self.stream_queue_size = stream_queue_size
        self.max_finished_sessions = max(1, int(max_finished_sessions))
        self._sessions: dict[str, dict[str, Any]] = {}
        # finished task ids, oldest first
        self._finished: dict[str, None] = {}
        self._streams: list[Queue] = []
        self._lock = Lock()

    def attach(self, bus: EventBus) -> Callable[[], None]:
        return bus.subscribe(self.handle)

    def handle(self, event: DomainEvent) -> None:
        with self._lock:
            session = self._sessions.setdefault(event.task_id, _new_session(event.task_id))
            self._apply(session, event)
            session['updated_at'] = event.ts
            message = {'event': event.to_dict(), 'session': copy.deepcopy(session)}
            self._track_finished(event.task_id, session['finished'])
            streams = list(self._streams)
        for stream in streams:
            self._offer(stream, message)

    def _apply(self, session: dict[str, Any], event: DomainEvent) -> None:
        if isinstance(event, RoundTransition):
            if event.to_state == 'intake':
                session['agents'] = {role: _idle_agent() for role in ROLES}
                session['finished'] = False
            session['fsm_state'] = event.to_state
            if event.round is not None:
                session['round'] = event.round
            if event.to_state == 'finalize':
                session['finished'] = True
            return
        agent = session['agents'].setdefault(event.role, _idle_agent())
        agent['updated_at'] = event.ts
        if isinstance(event, AgentStarted):
            agent.update({
                'state': 'running',
                'provider': event.provider,
                'model': event.model,
                'mode': event.mode,
                'run_id': None,
                'last_event_type': event.type,
                'preview': '',
                'error_class': None,
            })
        elif isinstance(event, AgentProgress):
            agent['last_event_type'] = event.event_type
            if event.run_id:
                agent['run_id'] = event.run_id
            if event.preview:
                combined = agent['preview'] + sanitize_log_text(event.preview)
                agent['preview'] = clip_tail(combined, max_chars=self.preview_chars)
        elif isinstance(event, AgentFinished):
            agent['state'] = 'done' if event.ok else 'failed'
            agent['last_event_type'] = event.type
            agent['error_class'] = event.error_class
            if event.run_id:
                agent['run_id'] = event.run_id

    def _track_finished(self, task_id: str, finished: bool) -> None:
        self._finished.pop(task_id, None)
        if not finished:
            return
        self._finished[task_id] = None
        while len(self._finished) > self.max_finished_sessions:
            oldest = next(iter(self._finished))
            del self._finished[oldest]
            self._sessions.pop(oldest, None)
            _log.debug('live_session_evicted task_id=%s', oldest)

    @staticmethod
    def _offer(stream: Queue, message: dict[str, Any]) -> None:
        try:
            stream.put_nowait(message)
        except Full:
            # Slow consumer: drop its oldest message rather than block the producer.
            with suppress(Empty):
                stream.get_nowait()
            with suppress(Full):
                stream.put_nowait(message)

    def snapshot(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            session = self._sessions.get(task_id)
            return copy.deepcopy(session) if session is not None else None

    def snapshots(self) -> list[dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(item) for item in self._sessions.values()]

    def open_stream(self) -> Queue:
        stream: Queue = Queue(maxsize=self.stream_queue_size)
        with self._lock:
            self._streams.append(stream)
        return stream

    def close_stream(self, stream: Queue) -> None:
        with self._lock:
            if stream in self._streams:
                self._streams.remove(stream)


@dataclass(frozen=True)
class LiveHooks:
    on_agent_state: Callable[[str, dict[str, Any]], None] | None = None
    on_agent_event: Callable[[dict[str, Any]], None] | None = None


def hooks_subscriber(task_id: str, hooks: LiveHooks) -> Subscriber:
    """Adapt caller-provided hooks to a bus subscriber scoped to one task."""

    def _deliver(event: DomainEvent) -> None:
        if event.task_id != task_id:
            return
        payload = event.to_dict()
        if hooks.on_agent_event is not None:
            hooks.on_agent_event(payload)
        if hooks.on_agent_state is None:
            return
        if isinstance(event, AgentStarted):
            hooks.on_agent_state(event.role, {'state': 'running', 'provider': event.provider, 'round': event.round})
        elif isinstance(event, AgentFinished):
            state = 'done' if event.ok else 'failed'
            hooks.on_agent_state(event.role, {'state': state, 'error_class': event.error_class, 'round': event.round})

    return _deliver


__all__ = ['EventBus', 'LiveHooks', 'LiveSessionRegistry', 'hooks_subscriber']
