from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import json
import logging
import sys
from threading import Lock
from typing import Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

ROOT_LOGGER = 'awe_roundtable'
DIAGNOSTICS_LOGGER = f'{ROOT_LOGGER}.diagnostics'

_task_id_var: ContextVar[str | None] = ContextVar('awe_task_id', default=None)
_round_var: ContextVar[int | None] = ContextVar('awe_round', default=None)
_role_var: ContextVar[str | None] = ContextVar('awe_role', default=None)

# (json key, LogRecord attribute passed via ``extra``, context var)
_CORRELATION_FIELDS = (
    ('task_id', 'task_id', _task_id_var),
    ('round', 'round_no', _round_var),
    ('role', 'agent_role', _role_var),
)

_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def set_task_context(task_id: str | None = None, round_no: int | None = None) -> None:
    """Bind the task (and optionally round) that subsequent log lines belong to.

    Clears any role bound by an earlier invocation on this thread.
    """
    _task_id_var.set(task_id)
    _round_var.set(round_no)
    _role_var.set(None)


def set_round_context(round_no: int | None) -> None:
    _round_var.set(round_no)


def get_task_id() -> str | None:
    return _task_id_var.get()


def get_round_no() -> int | None:
    return _round_var.get()


def get_agent_role() -> str | None:
    return _role_var.get()


@contextmanager
def agent_role_context(role: str) -> Iterator[None]:
    """Tag log lines emitted while one role agent runs."""
    token = _role_var.set(role)
    try:
        yield
    finally:
        _role_var.reset(token)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for key, attr, var in _CORRELATION_FIELDS:
            value = getattr(record, attr, None)
            if value is None:
                value = var.get()
            if value is not None and value != '':
                payload[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_diagnostics_logger() -> logging.Logger:
    """Logger for tracebacks of internal failures, kept apart from the operational stream."""
    return logging.getLogger(DIAGNOSTICS_LOGGER)


def _has_json_handler(logger: logging.Logger) -> bool:
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and isinstance(handler.formatter, _JsonFormatter):
            return True
    return False


def _install_json_handler(level: int | str) -> None:
    logger = logging.getLogger(ROOT_LOGGER)
    if not _has_json_handler(logger):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JsonFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)


def _install_tracer(service_name: str, endpoint: str) -> None:
    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def configure_observability(
    *,
    service_name: str,
    otlp_endpoint: str | None,
    level: int | str = logging.DEBUG,
) -> None:
    """Attach the JSON stderr handler once and export spans when an OTLP endpoint is set.

    Spans are still created without an endpoint; they go to the no-op tracer.
    """
    global _configured
    global _configured_otlp_endpoint

    with _configure_lock:
        if not _configured:
            _install_json_handler(level)
            _configured = True

    endpoint = str(otlp_endpoint or '').strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return
        _install_tracer(service_name, endpoint)
        _configured_otlp_endpoint = endpoint
    get_logger(f'{ROOT_LOGGER}.observability').info(
        'otlp_exporter_configured service=%s endpoint=%s', service_name, endpoint
    )
