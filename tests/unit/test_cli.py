from __future__ import annotations

import json

import httpx
import pytest

import awe_roundtable.cli as cli_module
from awe_roundtable.cli import _parse_role_providers, build_parser, main


def _install_transport(monkeypatch, handler):
    real_client = httpx.Client
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    def factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(recording), **kwargs)

    monkeypatch.setattr(cli_module.httpx, 'Client', factory)
    return requests


def test_parser_run_subcommand_collects_options():
    args = build_parser().parse_args([
        'run',
        '--prompt', 'Add login',
        '--provider', 'codex',
        '--role-provider', 'reviewer=claude:opus',
        '--allow-test-command', 'npm test',
        '--allow-test-command', 'pytest -q',
        '--tester-blocked-policy', 'resilient',
        '--mode', 'implementation',
        '--max-iterations', '4',
        '--wait',
    ])
    assert args.command == 'run'
    assert args.role_provider == ['reviewer=claude:opus']
    assert args.allow_test_command == ['npm test', 'pytest -q']
    assert args.max_iterations == 4
    assert args.wait is True


def test_parse_role_providers():
    assert _parse_role_providers(['reviewer=codex:gpt-5', 'tester=gemini-cli']) == {
        'reviewer': {'provider': 'codex', 'model': 'gpt-5'},
        'tester': {'provider': 'gemini-cli', 'model': None},
    }
    with pytest.raises(ValueError, match='expected role=provider'):
        _parse_role_providers(['reviewer'])
    with pytest.raises(ValueError, match='role'):
        _parse_role_providers(['manager=claude'])
    with pytest.raises(ValueError, match='provider'):
        _parse_role_providers(['coder=bogus'])


def test_run_posts_task_payload(monkeypatch, capsys):
    requests = _install_transport(
        monkeypatch,
        lambda request: httpx.Response(201, json={'task_id': 't-1', 'task_dir': 'd', 'background': True}),
    )

    code = main([
        '--api-base', 'http://api.test/',
        'run',
        '--prompt', 'Add login',
        '--role-provider', 'tester=gemini',
        '--allow-test-command', 'npm test',
        '--task-id', 't-1',
    ])

    assert code == 0
    request = requests[0]
    assert request.method == 'POST'
    assert str(request.url) == 'http://api.test/api/tasks'
    payload = json.loads(request.content)
    assert payload['prompt'] == 'Add login'
    assert payload['task_id'] == 't-1'
    assert payload['background'] is True
    assert payload['allowed_test_commands'] == ['npm test']
    assert payload['role_providers'] == {'tester': {'provider': 'gemini', 'model': None}}
    assert 'max_iterations' not in payload
    assert json.loads(capsys.readouterr().out)['task_id'] == 't-1'


def test_confirm_and_status_routes(monkeypatch):
    requests = _install_transport(monkeypatch, lambda request: httpx.Response(200, json={'ok': True}))

    assert main(['confirm', 't-1', '--note', 'ship it', '--wait']) == 0
    assert main(['status', 't-1']) == 0
    assert main(['live']) == 0
    assert main(['live', 't-1']) == 0
    assert main(['cancel', 't-1']) == 0

    assert [(item.method, item.url.path) for item in requests] == [
        ('POST', '/api/tasks/t-1/confirm'),
        ('GET', '/api/tasks/t-1'),
        ('GET', '/api/live'),
        ('GET', '/api/live/t-1'),
        ('POST', '/api/tasks/t-1/cancel'),
    ]
    assert json.loads(requests[0].content) == {'note': 'ship it', 'background': False}


def test_http_errors_return_nonzero(monkeypatch, capsys):
    _install_transport(monkeypatch, lambda request: httpx.Response(404, json={'detail': 'task not found'}))
    assert main(['timeline', 'missing']) == 1
    assert 'HTTP 404' in capsys.readouterr().err


def test_invalid_role_provider_is_a_usage_error(monkeypatch):
    _install_transport(monkeypatch, lambda request: httpx.Response(500))
    with pytest.raises(SystemExit) as excinfo:
        main(['run', '--prompt', 'x', '--role-provider', 'boss=claude'])
    assert excinfo.value.code == 2


def test_local_command_runs_dry_run_in_process(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli_module, 'configure_observability', lambda **kwargs: None)
    monkeypatch.setenv('AWE_ARTIFACT_ROOT', str(tmp_path / 'ignored'))

    code = main([
        'local',
        '--prompt', 'Add login',
        '--task-id', 'local-1',
        '--artifact-root', str(tmp_path / 'artifacts'),
        '--dry-run',
    ])
    assert code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary['final_outcome'] == 'awaiting_operator_confirm'
    assert (tmp_path / 'artifacts' / 'tasks' / 'local-1' / 'summary.json').is_file()

    code = main([
        'local',
        '--prompt', 'Go ahead',
        '--task-id', 'local-1',
        '--confirm',
        '--artifact-root', str(tmp_path / 'artifacts'),
        '--dry-run',
    ])
    assert code == 0
    assert json.loads(capsys.readouterr().out)['final_outcome'] == 'approved'


def test_local_confirm_requires_task_id(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(cli_module, 'configure_observability', lambda **kwargs: None)
    code = main(['local', '--prompt', 'x', '--confirm', '--artifact-root', str(tmp_path), '--dry-run'])
    assert code == 2
    assert '--confirm requires --task-id' in capsys.readouterr().err
