from __future__ import annotations

from queue import Full, Queue

from awe_roundtable.domain.events import AgentFinished, AgentProgress, AgentStarted, RoundTransition
from awe_roundtable.live import EventBus, LiveHooks, LiveSessionRegistry, hooks_subscriber


def test_event_bus_isolates_failing_subscribers():
    bus = EventBus()
    seen: list[str] = []

    def broken(event):
        raise RuntimeError('boom')

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(lambda event: seen.append(event.type))
    bus.publish(RoundTransition(task_id='t', round=None, from_state=None, to_state='intake', reason='task_received'))
    assert seen == ['round_transition']

    unsubscribe()
    bus.publish(RoundTransition(task_id='t', round=1, from_state='intake', to_state='plan', reason='draft_proposal'))
    assert seen == ['round_transition']


def test_registry_projects_agent_lifecycle():
    bus = EventBus()
    registry = LiveSessionRegistry(preview_chars=10)
    registry.attach(bus)

    bus.publish(RoundTransition(task_id='t', round=1, from_state='intake', to_state='plan', reason='draft_proposal'))
    bus.publish(AgentStarted(task_id='t', round=1, role='coder', provider='claude', model='sonnet', mode='proposal'))
    bus.publish(AgentProgress(task_id='t', round=1, role='coder', event_type='run.spawned', run_id='run-1'))
    bus.publish(AgentProgress(task_id='t', round=1, role='coder', event_type='assistant.text', preview='hello '))
    bus.publish(AgentProgress(task_id='t', round=1, role='coder', event_type='assistant.text', preview='world!!'))

    session = registry.snapshot('t')
    coder = session['agents']['coder']
    assert session['fsm_state'] == 'plan'
    assert session['round'] == 1
    assert coder['state'] == 'running'
    assert coder['provider'] == 'claude'
    assert coder['run_id'] == 'run-1'
    assert coder['last_event_type'] == 'assistant.text'
    assert len(coder['preview']) == 10
    assert coder['preview'].endswith('world!!')
    assert session['agents']['reviewer']['state'] == 'idle'

    bus.publish(AgentFinished(task_id='t', round=1, role='coder', ok=False, error_class='provider_timeout'))
    bus.publish(RoundTransition(task_id='t', round=1, from_state='test', to_state='finalize', reason='done'))
    session = registry.snapshot('t')
    assert session['agents']['coder']['state'] == 'failed'
    assert session['agents']['coder']['error_class'] == 'provider_timeout'
    assert session['finished'] is True


def test_registry_resets_agents_on_new_intake():
    registry = LiveSessionRegistry()
    registry.handle(AgentFinished(task_id='t', round=1, role='tester', ok=True))
    registry.handle(RoundTransition(task_id='t', round=1, from_state='test', to_state='finalize', reason='done'))
    registry.handle(RoundTransition(task_id='t', round=None, from_state=None, to_state='intake', reason='followup'))
    session = registry.snapshot('t')
    assert session['finished'] is False
    assert session['agents']['tester']['state'] == 'idle'
    assert session['round'] == 1


def test_registry_snapshots_are_copies():
    registry = LiveSessionRegistry()
    registry.handle(AgentStarted(task_id='t', round=1, role='coder', provider='codex'))
    snapshot = registry.snapshot('t')
    snapshot['agents']['coder']['state'] = 'tampered'
    assert registry.snapshot('t')['agents']['coder']['state'] == 'running'
    assert registry.snapshot('unknown') is None
    assert [item['task_id'] for item in registry.snapshots()] == ['t']


def test_registry_streams_drop_oldest_when_full():
    registry = LiveSessionRegistry(stream_queue_size=2)
    stream = registry.open_stream()
    for index in range(3):
        registry.handle(AgentProgress(task_id='t', round=1, role='coder', event_type=f'e{index}'))
    messages = [stream.get_nowait() for _ in range(2)]
    assert [item['event']['event_type'] for item in messages] == ['e1', 'e2']
    assert messages[-1]['session']['agents']['coder']['last_event_type'] == 'e2'

    registry.close_stream(stream)
    registry.handle(AgentProgress(task_id='t', round=1, role='coder', event_type='e3'))
    assert stream.empty()


def test_hooks_subscriber_filters_by_task_and_maps_states():
    states: list[tuple[str, dict]] = []
    events: list[dict] = []
    deliver = hooks_subscriber(
        't',
        LiveHooks(on_agent_state=lambda role, info: states.append((role, info)), on_agent_event=events.append),
    )
    deliver(AgentStarted(task_id='other', round=1, role='coder', provider='claude'))
    deliver(AgentStarted(task_id='t', round=1, role='coder', provider='claude'))
    deliver(AgentProgress(task_id='t', round=1, role='coder', event_type='assistant.text'))
    deliver(AgentFinished(task_id='t', round=1, role='coder', ok=True))

    assert [item['type'] for item in events] == ['agent_started', 'agent_progress', 'agent_finished']
    assert states == [
        ('coder', {'state': 'running', 'provider': 'claude', 'round': 1}),
        ('coder', {'state': 'done', 'error_class': None, 'round': 1}),
    ]


class _RacingQueue(Queue):
    """Reports full once, as if a consumer drained it right after the check."""

    def __init__(self):
        super().__init__(maxsize=1)
        self.raced = False

    def put_nowait(self, item):
        if not self.raced:
            self.raced = True
            raise Full
        super().put_nowait(item)


def test_registry_offer_tolerates_queue_drained_concurrently():
    registry = LiveSessionRegistry()
    stream = _RacingQueue()
    registry._streams.append(stream)

    registry.handle(AgentProgress(task_id='t', round=1, role='coder', event_type='e0'))

    assert stream.get_nowait()['event']['event_type'] == 'e0'


def _finish(registry: LiveSessionRegistry, task_id: str) -> None:
    registry.handle(RoundTransition(task_id=task_id, round=1, from_state='test', to_state='finalize', reason='done'))


def test_registry_evicts_oldest_finished_sessions_only():
    registry = LiveSessionRegistry(max_finished_sessions=2)
    registry.handle(AgentStarted(task_id='running', round=1, role='coder', provider='claude'))
    for task_id in ('a', 'b', 'c'):
        _finish(registry, task_id)

    assert registry.snapshot('a') is None
    assert registry.snapshot('b')['finished'] is True
    assert registry.snapshot('c')['finished'] is True
    assert registry.snapshot('running')['agents']['coder']['state'] == 'running'

    # a follow-up on "b" makes it live again, so "c" is now the oldest finished one
    registry.handle(RoundTransition(task_id='b', round=None, from_state=None, to_state='intake', reason='followup'))
    _finish(registry, 'd')
    _finish(registry, 'e')
    assert registry.snapshot('c') is None
    assert registry.snapshot('b')['finished'] is False
    assert {item['task_id'] for item in registry.snapshots()} == {'running', 'b', 'd', 'e'}
