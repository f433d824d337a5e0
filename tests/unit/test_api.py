from __future__ import annotations

import json

from fastapi.testclient import TestClient

from awe_roundtable.adapters.runner import ProviderRunner
from awe_roundtable.api import create_app, format_sse, iter_live_stream
from awe_roundtable.command_runner import ExecutedCommand, TestCommandRunner
from awe_roundtable.domain.events import AgentStarted
from awe_roundtable.live import EventBus, LiveSessionRegistry
from awe_roundtable.service import TaskService
from awe_roundtable.storage.artifacts import InMemoryTaskStore
from awe_roundtable.workflow import WorkflowCoordinator


class FakeExecutor:
    def run(self, command, *, cwd, timeout_seconds, abort_signal=None):
        return ExecutedCommand(ok=True, code=0, signal=None, stdout='', stderr='', duration_seconds=0.0)


def _client() -> tuple[TestClient, TaskService]:
    store = InMemoryTaskStore()
    bus = EventBus()
    registry = LiveSessionRegistry()
    registry.attach(bus)
    coordinator = WorkflowCoordinator(
        runner=ProviderRunner(dry_run=True),
        command_runner=TestCommandRunner(executor=FakeExecutor()),
        store=store,
        event_bus=bus,
    )
    service = TaskService(coordinator=coordinator, store=store, registry=registry)
    return TestClient(create_app(service=service)), service


def test_healthz():
    client, _ = _client()
    assert client.get('/healthz').json() == {'status': 'ok'}


def test_create_task_then_confirm_flow():
    client, _ = _client()

    created = client.post('/api/tasks', json={'prompt': 'Add login', 'task_id': 't-1', 'background': False})
    assert created.status_code == 201
    body = created.json()
    assert body['task_id'] == 't-1'
    assert body['summary']['final_outcome'] == 'awaiting_operator_confirm'

    confirmed = client.post('/api/tasks/t-1/confirm', json={'background': False})
    assert confirmed.status_code == 200
    assert confirmed.json()['summary']['final_outcome'] == 'approved'

    status = client.get('/api/tasks/t-1').json()
    assert status['final_outcome'] == 'approved'
    assert status['running'] is False

    timeline = client.get('/api/tasks/t-1/timeline').json()
    assert timeline['transitions'][0]['reason'] == 'task_received'
    assert timeline['transitions'][-1]['reason'] == 'tests_passed'


def test_followup_uses_role_providers():
    client, _ = _client()
    client.post('/api/tasks', json={'prompt': 'Add login', 'task_id': 't-1', 'background': False})

    response = client.post(
        '/api/tasks/t-1/followup',
        json={
            'prompt': 'Add logout',
            'role_providers': {'tester': {'provider': 'gemini', 'model': 'flash'}},
            'background': False,
        },
    )
    assert response.status_code == 200
    summary = response.json()['summary']
    assert summary['role_providers']['tester']['model_id'] == 'gemini:flash'
    assert len(summary['rounds']) == 2


def test_validation_errors_are_400_with_field():
    client, _ = _client()

    missing = client.post('/api/tasks', json={'provider': 'claude'})
    assert missing.status_code == 400
    assert missing.json()['code'] == 'validation_error'
    assert missing.json()['field'] == 'prompt'

    bad_policy = client.post('/api/tasks', json={'prompt': 'x', 'tester_blocked_policy': 'lenient'})
    assert bad_policy.status_code == 400
    assert bad_policy.json()['field'] == 'tester_blocked_policy'

    client.post('/api/tasks', json={'prompt': 'x', 'task_id': 't-1', 'background': False})
    duplicate = client.post('/api/tasks', json={'prompt': 'x', 'task_id': 't-1', 'background': False})
    assert duplicate.status_code == 400
    assert duplicate.json() == {'code': 'task_exists', 'message': 'task already exists', 'field': 'task_id'}


def test_unknown_task_routes_are_404():
    client, _ = _client()
    assert client.get('/api/tasks/missing').status_code == 404
    assert client.get('/api/tasks/missing/timeline').status_code == 404
    assert client.post('/api/tasks/missing/cancel').status_code == 404
    assert client.post('/api/tasks/missing/confirm', json={}).status_code == 404
    assert client.post('/api/tasks/missing/followup', json={'prompt': 'x'}).status_code == 404
    assert client.get('/api/live/missing').status_code == 404


def test_busy_task_is_409():
    client, service = _client()
    client.post('/api/tasks', json={'prompt': 'x', 'task_id': 't-1', 'background': False})
    service._abort_events['t-1'] = object()
    try:
        response = client.post('/api/tasks/t-1/followup', json={'prompt': 'again', 'background': False})
    finally:
        service._abort_events.pop('t-1', None)
    assert response.status_code == 409
    assert response.json()['code'] == 'task_busy'


def test_cancel_idle_task():
    client, _ = _client()
    client.post('/api/tasks', json={'prompt': 'x', 'task_id': 't-1', 'background': False})
    response = client.post('/api/tasks/t-1/cancel')
    assert response.json() == {'task_id': 't-1', 'cancel_requested': False}


def test_live_snapshots_and_stream():
    client, service = _client()
    client.post('/api/tasks', json={'prompt': 'x', 'task_id': 't-1', 'background': False})

    sessions = client.get('/api/live').json()
    assert [item['task_id'] for item in sessions] == ['t-1']
    assert client.get('/api/live/t-1').json()['fsm_state'] == 'finalize'

    with client.stream('GET', '/api/live/stream?limit=1') as response:
        assert response.status_code == 200
        assert response.headers['content-type'].startswith('text/event-stream')
        body = ''.join(response.iter_text())
    assert body.startswith('event: snapshot\n')
    data_line = [line for line in body.splitlines() if line.startswith('data: ')][0]
    assert json.loads(data_line[len('data: '):])['session']['task_id'] == 't-1'


def test_iter_live_stream_yields_updates_and_keepalives():
    registry = LiveSessionRegistry()
    stream = iter_live_stream(registry, heartbeat_seconds=0.01, limit=1)
    assert next(stream) == ': keepalive\n\n'
    registry.handle(AgentStarted(task_id='t', round=1, role='coder', provider='claude'))
    chunk = next(stream)
    assert chunk.startswith('event: agent_started\n')
    assert list(stream) == []


def test_format_sse_defaults_event_name():
    assert format_sse({'a': 1}) == 'event: message\ndata: {"a": 1}\n\n'
    assert format_sse({'event': {'type': 'x'}}, event='y').startswith('event: y\n')
