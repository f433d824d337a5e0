from __future__ import annotations

import json
import logging
import sys

from awe_roundtable.observability import (
    DIAGNOSTICS_LOGGER,
    _JsonFormatter,
    agent_role_context,
    configure_observability,
    get_agent_role,
    get_diagnostics_logger,
    get_logger,
    get_round_no,
    get_task_id,
    set_round_context,
    set_task_context,
)


def test_configure_observability_no_endpoint_is_noop():
    configure_observability(service_name='awe-roundtable', otlp_endpoint=None)


def test_configure_observability_is_idempotent_for_json_handler(monkeypatch):
    import awe_roundtable.observability as observability

    root = logging.getLogger('awe_roundtable')
    original_handlers = list(root.handlers)
    original_level = root.level

    try:
        for handler in list(root.handlers):
            if isinstance(handler, logging.StreamHandler) and isinstance(
                getattr(handler, 'formatter', None), _JsonFormatter
            ):
                root.removeHandler(handler)

        monkeypatch.setattr(observability, '_configured', False)
        monkeypatch.setattr(observability, '_configured_otlp_endpoint', None)

        configure_observability(service_name='awe-roundtable', otlp_endpoint=None)
        configure_observability(service_name='awe-roundtable', otlp_endpoint=None)

        json_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
        ]
        assert len(json_handlers) == 1
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_set_task_and_round_context():
    set_task_context(task_id='abc-123', round_no=None)
    set_round_context(2)
    assert get_task_id() == 'abc-123'
    assert get_round_no() == 2
    set_task_context(task_id=None, round_no=None)
    assert get_task_id() is None
    assert get_round_no() is None


def test_json_formatter_includes_correlation_fields():
    fmt = _JsonFormatter()
    set_task_context(task_id='tid-1', round_no=3)
    try:
        logger = get_logger('awe_roundtable.test_fmt')
        record = logger.makeRecord(
            'awe_roundtable.test_fmt', logging.INFO, 'test.py', 1,
            'fsm_transition to=%s', ('review',), None,
        )
        parsed = json.loads(fmt.format(record))
        assert parsed['msg'] == 'fsm_transition to=review'
        assert parsed['task_id'] == 'tid-1'
        assert parsed['round'] == 3
        assert parsed['level'] == 'INFO'
    finally:
        set_task_context(task_id=None, round_no=None)


def test_json_formatter_includes_exception():
    fmt = _JsonFormatter()
    set_task_context(task_id=None, round_no=None)
    logger = get_diagnostics_logger()
    try:
        raise ValueError('boom')
    except ValueError:
        exc_info = sys.exc_info()
    record = logger.makeRecord(DIAGNOSTICS_LOGGER, logging.ERROR, 'test.py', 1, 'failed', (), exc_info)
    parsed = json.loads(fmt.format(record))
    assert parsed['logger'] == 'awe_roundtable.diagnostics'
    assert 'task_id' not in parsed
    assert 'boom' in parsed['exc']


def test_agent_role_context_tags_records_and_resets():
    fmt = _JsonFormatter()
    set_task_context(task_id='tid-2', round_no=1)
    try:
        logger = get_logger('awe_roundtable.test_role')
        with agent_role_context('reviewer'):
            assert get_agent_role() == 'reviewer'
            record = logger.makeRecord('awe_roundtable.test_role', logging.INFO, 'test.py', 1, 'agent_run', (), None)
            parsed = json.loads(fmt.format(record))
        assert parsed['role'] == 'reviewer'
        assert get_agent_role() is None
    finally:
        set_task_context(task_id=None, round_no=None)


def test_json_formatter_prefers_record_extra_over_context():
    fmt = _JsonFormatter()
    set_task_context(task_id='from-context', round_no=None)
    try:
        record = logging.LogRecord('awe_roundtable.x', logging.WARNING, 'test.py', 1, 'm', (), None)
        record.task_id = 'from-extra'
        parsed = json.loads(fmt.format(record))
        assert parsed['task_id'] == 'from-extra'
        assert 'round' not in parsed
    finally:
        set_task_context(task_id=None, round_no=None)
