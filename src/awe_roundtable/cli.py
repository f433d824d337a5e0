from __future__ import annotations

import argparse
from dataclasses import replace
import json
from pathlib import Path
import sys

import httpx

from awe_roundtable.adapters.factory import ProviderFactory
from awe_roundtable.config import load_settings
from awe_roundtable.domain.models import ROLES
from awe_roundtable.observability import configure_observability
from awe_roundtable.service import InputValidationError, StartTaskInput, build_task_service


def _add_task_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--prompt', required=True, help='Task prompt for the coder/reviewer/tester roundtable')
    parser.add_argument('--provider', default='claude', help='Default provider for every role')
    parser.add_argument('--model', default='', help='Default model for every role')
    parser.add_argument(
        '--role-provider',
        action='append',
        default=[],
        help='Per-role provider in role=provider[:model] format (repeatable)',
    )
    parser.add_argument('--max-iterations', type=int, default=None)
    parser.add_argument(
        '--allow-test-command',
        action='append',
        default=None,
        help='Allowed test command prefix, e.g. "npm test" (repeatable)',
    )
    parser.add_argument('--tester-blocked-policy', choices=['strict', 'resilient'], default=None)
    parser.add_argument('--mode', choices=['proposal', 'implementation'], default='proposal')
    parser.add_argument('--cwd', default='', help='Working directory for test commands')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='awe-roundtable', description='Run coder/reviewer/tester roundtable tasks')
    parser.add_argument('--api-base', default='http://127.0.0.1:8000', help='Roundtable API base URL')

    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Create and start a task')
    _add_task_options(run)
    run.add_argument('--task-id', default='', help='Optional explicit task id')
    run.add_argument('--wait', action='store_true', help='Block until the invocation finalizes')

    followup = sub.add_parser('followup', help='Run another invocation on an existing task')
    followup.add_argument('task_id', help='Task id')
    _add_task_options(followup)
    followup.add_argument('--wait', action='store_true')

    confirm = sub.add_parser('confirm', help='Confirm the proposal and start implementation')
    confirm.add_argument('task_id', help='Task id')
    confirm.add_argument('--note', default='', help='Optional instruction for the implementation rounds')
    confirm.add_argument('--wait', action='store_true')

    cancel = sub.add_parser('cancel', help='Cancel a running task')
    cancel.add_argument('task_id', help='Task id')

    status = sub.add_parser('status', help='Get task summary')
    status.add_argument('task_id', help='Task id')

    timeline = sub.add_parser('timeline', help='Get task timeline')
    timeline.add_argument('task_id', help='Task id')

    live = sub.add_parser('live', help='Show live agent sessions')
    live.add_argument('task_id', nargs='?', default='', help='Optional task id')

    local = sub.add_parser('local', help='Run one invocation in-process without the API')
    _add_task_options(local)
    local.add_argument('--task-id', default='', help='Existing task id to follow up on')
    local.add_argument('--confirm', action='store_true', help='Confirm the stored proposal of --task-id')
    local.add_argument('--artifact-root', default='', help='Override AWE_ARTIFACT_ROOT')
    local.add_argument('--dry-run', action='store_true', help='Use canned provider responses')
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _parse_role_providers(values: list[str] | None) -> dict[str, dict[str, str | None]]:
    out: dict[str, dict[str, str | None]] = {}
    for raw in values or []:
        text = str(raw or '').strip()
        if not text:
            continue
        if '=' not in text:
            raise ValueError(f'invalid --role-provider value: {text} (expected role=provider[:model])')
        role_raw, binding_raw = text.split('=', 1)
        role = role_raw.strip().lower()
        if role not in ROLES:
            raise ValueError(f'invalid --role-provider role: {role}')
        provider_raw, _, model_raw = binding_raw.partition(':')
        provider = provider_raw.strip().lower()
        if not ProviderFactory.supports(provider):
            raise ValueError(f'invalid --role-provider provider: {provider}')
        out[role] = {'provider': provider, 'model': model_raw.strip() or None}
    return out


def _task_payload(args: argparse.Namespace) -> dict:
    payload = {
        'prompt': args.prompt,
        'provider': args.provider,
        'model': (args.model.strip() or None),
        'role_providers': _parse_role_providers(args.role_provider),
        'execution_mode': args.mode,
        'cwd': (args.cwd.strip() or None),
    }
    if args.max_iterations is not None:
        payload['max_iterations'] = int(args.max_iterations)
    if args.allow_test_command is not None:
        payload['allowed_test_commands'] = list(args.allow_test_command)
    if args.tester_blocked_policy:
        payload['tester_blocked_policy'] = args.tester_blocked_policy
    return payload


def _run_local(args: argparse.Namespace) -> int:
    settings = load_settings()
    if args.artifact_root:
        settings = replace(settings, artifact_root=Path(args.artifact_root).resolve())
    if args.dry_run:
        settings = replace(settings, dry_run=True)
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=settings.log_level,
    )
    service = build_task_service(settings)

    payload = _task_payload(args)
    task_id = args.task_id.strip()
    try:
        if args.confirm:
            if not task_id:
                print('--confirm requires --task-id', file=sys.stderr)
                return 2
            ticket = service.confirm(task_id, note=args.prompt, background=False)
        elif task_id and service.store.has_task(task_id):
            ticket = service.followup(task_id, StartTaskInput(**payload), background=False)
        else:
            ticket = service.start_task(StartTaskInput(**payload, task_id=task_id or None), background=False)
    except (InputValidationError, KeyError) as exc:
        print(f'error: {exc}', file=sys.stderr)
        return 1
    _print_json(ticket.summary)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    base = args.api_base.rstrip('/')

    if args.command == 'local':
        try:
            return _run_local(args)
        except ValueError as exc:
            parser.error(str(exc))
            return 2

    with httpx.Client(timeout=60) as client:
        if args.command in {'run', 'followup'}:
            try:
                payload = _task_payload(args)
            except ValueError as exc:
                parser.error(str(exc))
                return 2
            payload['background'] = not bool(args.wait)
            if args.command == 'run':
                payload['task_id'] = (args.task_id.strip() or None)
                response = client.post(f'{base}/api/tasks', json=payload)
            else:
                response = client.post(f'{base}/api/tasks/{args.task_id}/followup', json=payload)
        elif args.command == 'confirm':
            response = client.post(
                f'{base}/api/tasks/{args.task_id}/confirm',
                json={'note': (args.note.strip() or None), 'background': not bool(args.wait)},
            )
        elif args.command == 'cancel':
            response = client.post(f'{base}/api/tasks/{args.task_id}/cancel')
        elif args.command == 'status':
            response = client.get(f'{base}/api/tasks/{args.task_id}')
        elif args.command == 'timeline':
            response = client.get(f'{base}/api/tasks/{args.task_id}/timeline')
        elif args.command == 'live':
            if args.task_id:
                response = client.get(f'{base}/api/live/{args.task_id}')
            else:
                response = client.get(f'{base}/api/live')
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
