from __future__ import annotations

from awe_roundtable.api import create_app
from awe_roundtable.config import load_settings
from awe_roundtable.observability import configure_observability
from awe_roundtable.service import build_task_service


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
        level=settings.log_level,
    )
    return create_app(service=build_task_service(settings))


app = build_app()
