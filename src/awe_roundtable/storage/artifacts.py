from __future__ import annotations

import json
import re
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from awe_roundtable.domain.errors import TaskNotFoundError
from awe_roundtable.observability import get_logger

_log = get_logger('awe_roundtable.storage')

SUMMARY_FILE = 'summary.json'
TIMELINE_FILE = 'task-timeline.json'
EVENTS_FILE = 'task-events.jsonl'
PROMPT_FILE = 'task.md'
DIAGNOSTICS_FILE = 'diagnostics.log'

_SAFE_NAME_RE = re.compile(r'[^A-Za-z0-9._-]+')


def new_task_id() -> str:
    return f'{int(time.time() * 1000)}-{uuid4().hex[:8]}'


def round_dir_name(round_no: int) -> str:
    return f'{int(round_no):02d}'


def _safe_artifact_name(name: str) -> str:
    text = str(name or '').strip().replace('\\', '_').replace('/', '_')
    text = _SAFE_NAME_RE.sub('_', text).lstrip('.')
    if not text:
        raise ValueError('artifact name is required')
    return text


def _serialize(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, indent=2, default=str)


@dataclass(frozen=True)
class TaskHandle:
    task_id: str
    task_dir: str
    timeline_file: str


class TaskStore(Protocol):
    def create_task(self, prompt: str, *, task_id: str | None = None) -> TaskHandle: ...

    def open_task(self, task_id: str, *, task_dir: str | None = None) -> TaskHandle: ...

    def has_task(self, task_id: str) -> bool: ...

    def append_prompt(self, task_id: str, prompt: str, *, heading: str) -> None: ...

    def append_state_event(self, task_id: str, event: dict[str, Any]) -> None: ...

    def append_round_artifact(self, task_id: str, round_no: int, name: str, payload: Any) -> str: ...

    def copy_run_artifacts(self, task_id: str, round_no: int, run_dir: Path | None, *, prefix: str) -> list[str]: ...

    def read_summary(self, task_id: str) -> dict[str, Any] | None: ...

    def write_summary(self, task_id: str, summary: dict[str, Any]) -> None: ...

    def read_timeline(self, task_id: str) -> dict[str, Any] | None: ...

    def write_timeline(self, task_id: str, timeline: dict[str, Any]) -> None: ...

    def append_diagnostic(self, task_id: str, text: str) -> None: ...


class FileTaskStore:
    """Filesystem layout: ``<root>/tasks/<task_id>/`` with one ``rounds/NN`` dir per round."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def create_task(self, prompt: str, *, task_id: str | None = None) -> TaskHandle:
        task_id_text, task_root = self._resolve_task_root(task_id or new_task_id())
        (task_root / 'rounds').mkdir(parents=True, exist_ok=True)
        prompt_path = task_root / PROMPT_FILE
        if not prompt_path.exists():
            prompt_path.write_text(f'# Task {task_id_text}\n\n{str(prompt or "").strip()}\n', encoding='utf-8')
        (task_root / EVENTS_FILE).touch(exist_ok=True)
        return self._handle(task_id_text, task_root)

    def open_task(self, task_id: str, *, task_dir: str | None = None) -> TaskHandle:
        task_id_text, task_root = self._resolve_task_root(task_id)
        if task_dir is not None and Path(task_dir).resolve(strict=False) != task_root:
            raise ValueError('task_dir does not match task_id')
        if not task_root.is_dir():
            raise TaskNotFoundError(task_id_text)
        return self._handle(task_id_text, task_root)

    def has_task(self, task_id: str) -> bool:
        _, task_root = self._resolve_task_root(task_id)
        return task_root.is_dir()

    def append_prompt(self, task_id: str, prompt: str, *, heading: str) -> None:
        task_root = self._existing_root(task_id)
        stamp = self._utc_now_iso()
        block = f'\n## {heading} ({stamp})\n\n{str(prompt or "").strip()}\n'
        with (task_root / PROMPT_FILE).open('a', encoding='utf-8') as f:
            f.write(block)

    def append_state_event(self, task_id: str, event: dict[str, Any]) -> None:
        task_root = self._existing_root(task_id)
        line = json.dumps(event, ensure_ascii=True, default=str)
        with self._lock, (task_root / EVENTS_FILE).open('a', encoding='utf-8') as f:
            f.write(line + '\n')

    def append_round_artifact(self, task_id: str, round_no: int, name: str, payload: Any) -> str:
        path = self._round_dir(task_id, round_no) / _safe_artifact_name(name)
        path.write_text(_serialize(payload), encoding='utf-8')
        return str(path)

    def copy_run_artifacts(self, task_id: str, round_no: int, run_dir: Path | None, *, prefix: str) -> list[str]:
        if run_dir is None or not Path(run_dir).is_dir():
            return []
        target = self._round_dir(task_id, round_no)
        copied: list[str] = []
        for source_name in ('events.jsonl', 'raw.ndjson'):
            source = Path(run_dir) / source_name
            if not source.is_file():
                continue
            destination = target / _safe_artifact_name(f'{prefix}.{source_name}')
            shutil.copyfile(source, destination)
            copied.append(str(destination))
        return copied

    def read_summary(self, task_id: str) -> dict[str, Any] | None:
        return self._read_json(task_id, SUMMARY_FILE)

    def write_summary(self, task_id: str, summary: dict[str, Any]) -> None:
        self._write_json(task_id, SUMMARY_FILE, summary)

    def read_timeline(self, task_id: str) -> dict[str, Any] | None:
        return self._read_json(task_id, TIMELINE_FILE)

    def write_timeline(self, task_id: str, timeline: dict[str, Any]) -> None:
        self._write_json(task_id, TIMELINE_FILE, timeline)

    def append_diagnostic(self, task_id: str, text: str) -> None:
        task_root = self._existing_root(task_id)
        with (task_root / DIAGNOSTICS_FILE).open('a', encoding='utf-8') as f:
            f.write(f'[{self._utc_now_iso()}]\n{str(text or "").rstrip()}\n\n')

    def _handle(self, task_id: str, task_root: Path) -> TaskHandle:
        return TaskHandle(
            task_id=task_id,
            task_dir=str(task_root),
            timeline_file=str(task_root / TIMELINE_FILE),
        )

    def _round_dir(self, task_id: str, round_no: int) -> Path:
        if int(round_no) < 1:
            raise ValueError('round_no must be >= 1')
        path = self._existing_root(task_id) / 'rounds' / round_dir_name(round_no)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _existing_root(self, task_id: str) -> Path:
        task_id_text, task_root = self._resolve_task_root(task_id)
        if not task_root.is_dir():
            raise TaskNotFoundError(task_id_text)
        return task_root

    def _read_json(self, task_id: str, name: str) -> dict[str, Any] | None:
        _, task_root = self._resolve_task_root(task_id)
        path = task_root / name
        if not path.is_file():
            return None
        try:
            payload = json.loads(path.read_text(encoding='utf-8'))
        except (ValueError, OSError) as exc:
            _log.warning('unreadable_task_file task_id=%s file=%s error=%s', task_id, name, exc)
            return None
        return payload if isinstance(payload, dict) else None

    def _write_json(self, task_id: str, name: str, payload: dict[str, Any]) -> None:
        task_root = self._existing_root(task_id)
        path = task_root / name
        tmp = path.with_suffix(path.suffix + '.tmp')
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2, default=str), encoding='utf-8')
        tmp.replace(path)

    def _resolve_task_root(self, task_id: str) -> tuple[str, Path]:
        task_id_text = str(task_id or '').strip()
        if not task_id_text:
            raise ValueError('task_id is required')

        tasks_root = (self.root / 'tasks').resolve()
        task_root = (tasks_root / task_id_text).resolve(strict=False)
        try:
            relative = task_root.relative_to(tasks_root)
        except ValueError as exc:
            raise ValueError('invalid task_id') from exc
        if len(relative.parts) != 1:
            raise ValueError('invalid task_id')
        return task_id_text, task_root

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()


class InMemoryTaskStore:
    """Keeps everything in dicts; used by tests and embedded callers."""

    def __init__(self):
        self.prompts: dict[str, list[str]] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.artifacts: dict[str, dict[str, Any]] = {}
        self.summaries: dict[str, dict[str, Any]] = {}
        self.timelines: dict[str, dict[str, Any]] = {}
        self.diagnostics: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def create_task(self, prompt: str, *, task_id: str | None = None) -> TaskHandle:
        task_id_text = str(task_id or new_task_id()).strip()
        with self._lock:
            self.prompts.setdefault(task_id_text, [str(prompt or '')])
            self.events.setdefault(task_id_text, [])
            self.artifacts.setdefault(task_id_text, {})
            self.diagnostics.setdefault(task_id_text, [])
        return self._handle(task_id_text)

    def open_task(self, task_id: str, *, task_dir: str | None = None) -> TaskHandle:
        _ = task_dir
        if not self.has_task(task_id):
            raise TaskNotFoundError(task_id)
        return self._handle(task_id)

    def has_task(self, task_id: str) -> bool:
        return task_id in self.prompts

    def append_prompt(self, task_id: str, prompt: str, *, heading: str) -> None:
        _ = heading
        self._require(task_id)
        self.prompts[task_id].append(str(prompt or ''))

    def append_state_event(self, task_id: str, event: dict[str, Any]) -> None:
        self._require(task_id)
        with self._lock:
            self.events[task_id].append(dict(event))

    def append_round_artifact(self, task_id: str, round_no: int, name: str, payload: Any) -> str:
        self._require(task_id)
        key = f'rounds/{round_dir_name(round_no)}/{_safe_artifact_name(name)}'
        with self._lock:
            self.artifacts[task_id][key] = payload
        return key

    def copy_run_artifacts(self, task_id: str, round_no: int, run_dir: Path | None, *, prefix: str) -> list[str]:
        _ = (task_id, round_no, run_dir, prefix)
        return []

    def read_summary(self, task_id: str) -> dict[str, Any] | None:
        summary = self.summaries.get(task_id)
        return json.loads(json.dumps(summary)) if summary is not None else None

    def write_summary(self, task_id: str, summary: dict[str, Any]) -> None:
        self._require(task_id)
        self.summaries[task_id] = json.loads(json.dumps(summary, default=str))

    def read_timeline(self, task_id: str) -> dict[str, Any] | None:
        return self.timelines.get(task_id)

    def write_timeline(self, task_id: str, timeline: dict[str, Any]) -> None:
        self._require(task_id)
        self.timelines[task_id] = dict(timeline)

    def append_diagnostic(self, task_id: str, text: str) -> None:
        self._require(task_id)
        self.diagnostics[task_id].append(str(text or ''))

    def _require(self, task_id: str) -> None:
        if task_id not in self.prompts:
            raise TaskNotFoundError(task_id)

    @staticmethod
    def _handle(task_id: str) -> TaskHandle:
        return TaskHandle(
            task_id=task_id,
            task_dir=f'memory://tasks/{task_id}',
            timeline_file=f'memory://tasks/{task_id}/{TIMELINE_FILE}',
        )


__all__ = [
    'FileTaskStore',
    'InMemoryTaskStore',
    'TaskHandle',
    'TaskStore',
    'new_task_id',
    'round_dir_name',
]
