from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

STATE_LABELS = {
    'intake': 'Intake',
    'plan': 'Plan',
    'build': 'Build',
    'review': 'Review',
    'test': 'Test',
    'iterate': 'Iterate',
    'finalize': 'Finalize',
}


def _ts(event: dict[str, Any]) -> int:
    try:
        return int(event.get('ts') or 0)
    except (TypeError, ValueError):
        return 0


def build_timeline(
    task_id: str,
    state_events: Iterable[dict[str, Any]],
    *,
    generated_at: str | None = None,
) -> dict[str, Any]:
    """Derive the per-transition and per-round timeline from state events alone."""
    events = [dict(item) for item in state_events]
    transitions: list[dict[str, Any]] = []
    for index, event in enumerate(events):
        ts = _ts(event)
        next_ts = _ts(events[index + 1]) if index + 1 < len(events) else None
        to_state = str(event.get('to') or '')
        transitions.append({
            'index': index,
            'ts': ts,
            'from': event.get('from'),
            'to': to_state,
            'label': STATE_LABELS.get(to_state, to_state),
            'reason': event.get('reason'),
            'round': event.get('round'),
            # Open-ended until the next transition arrives.
            'duration_ms': max(0, next_ts - ts) if next_ts is not None else None,
        })

    rounds: dict[int, dict[str, Any]] = {}
    for item in transitions:
        round_no = item['round']
        if round_no is None:
            continue
        bucket = rounds.setdefault(int(round_no), {
            'round': int(round_no),
            'first_ts': item['ts'],
            'last_ts': item['ts'],
            'duration_ms': 0,
            'states': [],
        })
        bucket['first_ts'] = min(bucket['first_ts'], item['ts'])
        bucket['last_ts'] = max(bucket['last_ts'], item['ts'])
        if item['duration_ms'] is not None:
            bucket['duration_ms'] += item['duration_ms']
        bucket['states'].append(item['to'])
    round_list = [rounds[round_no] for round_no in sorted(rounds)]

    total_duration = transitions[-1]['ts'] - transitions[0]['ts'] if transitions else 0
    return {
        'task_id': task_id,
        'transitions': transitions,
        'rounds': round_list,
        'total_transitions': len(transitions),
        'total_duration_ms': max(0, total_duration),
        'generated_at': generated_at or datetime.now(timezone.utc).isoformat(),
    }


__all__ = ['STATE_LABELS', 'build_timeline']
