from __future__ import annotations

import json
from queue import Empty
from typing import Any, Iterator, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from awe_roundtable.domain.errors import TaskBusyError
from awe_roundtable.live import LiveSessionRegistry
from awe_roundtable.service import InputValidationError, StartTaskInput, TaskService, TaskTicket

SSE_HEARTBEAT_SECONDS = 15.0


class RoleBindingRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=64)
    model: str | None = Field(default=None, max_length=128)


class FollowupRequest(BaseModel):
    prompt: str = Field(min_length=1)
    provider: str = Field(default='claude', min_length=1, max_length=64)
    model: str | None = Field(default=None, max_length=128)
    role_providers: dict[str, RoleBindingRequest] = Field(default_factory=dict)
    role_profiles: dict[str, dict[str, str]] = Field(default_factory=dict)
    max_iterations: int | None = Field(default=None, ge=1, le=20)
    allowed_test_commands: list[str] | None = Field(default=None)
    tester_blocked_policy: Literal['strict', 'resilient'] | None = Field(default=None)
    execution_mode: Literal['proposal', 'implementation'] = Field(default='proposal')
    cwd: str | None = Field(default=None, max_length=400)
    background: bool = Field(default=True)


class CreateTaskRequest(FollowupRequest):
    task_id: str | None = Field(default=None, max_length=128)


class ConfirmRequest(BaseModel):
    note: str | None = Field(default=None, max_length=4000)
    background: bool = Field(default=True)


class TaskTicketResponse(BaseModel):
    task_id: str
    task_dir: str
    background: bool
    summary: dict | None = None


class CancelResponse(BaseModel):
    task_id: str
    cancel_requested: bool


class AppState:
    def __init__(self, service: TaskService):
        self.service = service


def format_sse(message: dict[str, Any], *, event: str | None = None) -> str:
    name = event or str((message.get('event') or {}).get('type') or 'message')
    data = json.dumps(message, ensure_ascii=False, default=str)
    return f'event: {name}\ndata: {data}\n\n'


def iter_live_stream(
    registry: LiveSessionRegistry,
    *,
    heartbeat_seconds: float = SSE_HEARTBEAT_SECONDS,
    limit: int | None = None,
) -> Iterator[str]:
    """Yield current snapshots, then live updates until ``limit`` messages were sent."""
    stream = registry.open_stream()
    sent = 0
    try:
        for session in registry.snapshots():
            yield format_sse({'event': {'type': 'snapshot'}, 'session': session}, event='snapshot')
            sent += 1
            if limit is not None and sent >= limit:
                return
        while True:
            try:
                message = stream.get(timeout=heartbeat_seconds)
            except Empty:
                yield ': keepalive\n\n'
                continue
            yield format_sse(message)
            sent += 1
            if limit is not None and sent >= limit:
                return
    finally:
        registry.close_stream(stream)


def _to_ticket_response(ticket: TaskTicket) -> TaskTicketResponse:
    return TaskTicketResponse(**ticket.to_dict())


def _to_start_input(payload: FollowupRequest, *, task_id: str | None = None) -> StartTaskInput:
    return StartTaskInput(
        prompt=payload.prompt,
        provider=payload.provider,
        model=payload.model,
        role_providers={role: item.model_dump() for role, item in payload.role_providers.items()},
        role_profiles=dict(payload.role_profiles),
        max_iterations=payload.max_iterations,
        allowed_test_commands=payload.allowed_test_commands,
        tester_blocked_policy=payload.tester_blocked_policy,
        execution_mode=payload.execution_mode,
        cwd=payload.cwd,
        task_id=task_id,
    )


def create_app(*, service: TaskService) -> FastAPI:
    app = FastAPI(title='awe-roundtable api', version='0.1.0')
    app.state.container = AppState(service=service)

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            loc = [str(part) for part in first.get('loc') or () if str(part) not in {'body', 'query', 'path'}]
            field = '.'.join(loc) or None
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(TaskBusyError)
    async def handle_task_busy(request: Request, exc: TaskBusyError):  # noqa: ARG001
        return JSONResponse(
            status_code=409,
            content=_error_payload(message='task is already running', code='task_busy'),
        )

    def get_service() -> TaskService:
        return app.state.container.service

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.post('/api/tasks', response_model=TaskTicketResponse, status_code=201)
    def create_task(payload: CreateTaskRequest, service: TaskService = Depends(get_service)) -> TaskTicketResponse:
        ticket = service.start_task(_to_start_input(payload, task_id=payload.task_id), background=payload.background)
        return _to_ticket_response(ticket)

    @app.post('/api/tasks/{task_id}/followup', response_model=TaskTicketResponse)
    def followup_task(
        task_id: str,
        payload: FollowupRequest,
        service: TaskService = Depends(get_service),
    ) -> TaskTicketResponse:
        try:
            ticket = service.followup(task_id, _to_start_input(payload), background=payload.background)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_ticket_response(ticket)

    @app.post('/api/tasks/{task_id}/confirm', response_model=TaskTicketResponse)
    def confirm_task(
        task_id: str,
        payload: ConfirmRequest,
        service: TaskService = Depends(get_service),
    ) -> TaskTicketResponse:
        try:
            ticket = service.confirm(task_id, note=payload.note, background=payload.background)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_ticket_response(ticket)

    @app.post('/api/tasks/{task_id}/cancel', response_model=CancelResponse)
    def cancel_task(task_id: str, service: TaskService = Depends(get_service)) -> CancelResponse:
        try:
            result = service.cancel(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return CancelResponse(**result)

    @app.get('/api/tasks/{task_id}')
    def get_task(task_id: str, service: TaskService = Depends(get_service)) -> dict:
        try:
            return service.get_summary(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.get('/api/tasks/{task_id}/timeline')
    def get_timeline(task_id: str, service: TaskService = Depends(get_service)) -> dict:
        try:
            return service.get_timeline(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.get('/api/live')
    def list_live_sessions(service: TaskService = Depends(get_service)) -> list[dict]:
        return service.registry.snapshots()

    # Registered before the parameterized route so "stream" is not read as a task id.
    @app.get('/api/live/stream')
    def stream_live_sessions(
        service: TaskService = Depends(get_service),
        limit: int | None = Query(default=None, ge=1, le=10000),
    ) -> StreamingResponse:
        return StreamingResponse(
            iter_live_stream(service.registry, limit=limit),
            media_type='text/event-stream',
            headers={'Cache-Control': 'no-cache'},
        )

    @app.get('/api/live/{task_id}')
    def get_live_session(task_id: str, service: TaskService = Depends(get_service)) -> dict:
        snapshot = service.registry.snapshot(task_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail='live session not found')
        return snapshot

    return app


__all__ = ['create_app', 'format_sse', 'iter_live_stream']
