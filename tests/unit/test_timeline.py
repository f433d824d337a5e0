from __future__ import annotations

from awe_roundtable.timeline import build_timeline


def test_build_timeline_computes_durations_and_rounds():
    events = [
        {'from': None, 'to': 'intake', 'reason': 'task_received', 'round': None, 'ts': 1000},
        {'from': 'intake', 'to': 'plan', 'reason': 'draft_proposal', 'round': 1, 'ts': 1100},
        {'from': 'plan', 'to': 'review', 'reason': 'roundtable_reviewer', 'round': 1, 'ts': 1600},
        {'from': 'review', 'to': 'test', 'reason': 'roundtable_tester', 'round': 1, 'ts': 1900},
        {'from': 'test', 'to': 'finalize', 'reason': 'await_operator_confirm', 'round': 1, 'ts': 2000},
    ]
    timeline = build_timeline('t-1', events, generated_at='2026-01-01T00:00:00+00:00')

    assert timeline['task_id'] == 't-1'
    assert timeline['total_transitions'] == 5
    assert timeline['total_duration_ms'] == 1000
    assert [item['duration_ms'] for item in timeline['transitions']] == [100, 500, 300, 100, None]
    assert timeline['transitions'][1]['label'] == 'Plan'
    assert timeline['rounds'] == [
        {
            'round': 1,
            'first_ts': 1100,
            'last_ts': 2000,
            'states': ['plan', 'review', 'test', 'finalize'],
            'duration_ms': 900,
        }
    ]
    assert timeline['generated_at'] == '2026-01-01T00:00:00+00:00'


def test_build_timeline_handles_empty_and_bad_timestamps():
    empty = build_timeline('t-2', [])
    assert empty['transitions'] == []
    assert empty['total_duration_ms'] == 0
    assert empty['generated_at']

    timeline = build_timeline('t-3', [{'to': 'intake', 'ts': 'bogus'}, {'to': 'finalize', 'ts': 50}])
    assert [item['ts'] for item in timeline['transitions']] == [0, 50]
    assert timeline['rounds'] == []


def test_build_timeline_round_duration_sums_time_spent_in_its_transitions():
    events = [
        {'from': None, 'to': 'intake', 'reason': 'task_received', 'round': None, 'ts': 0},
        {'from': 'intake', 'to': 'plan', 'reason': 'start', 'round': 1, 'ts': 100},
        {'from': 'plan', 'to': 'review', 'reason': 'start_reviewer', 'round': 1, 'ts': 400},
        {'from': 'review', 'to': 'iterate', 'reason': 'review_changes_requested', 'round': 1, 'ts': 500},
        {'from': 'iterate', 'to': 'build', 'reason': 'start_coder', 'round': 2, 'ts': 1500},
        {'from': 'build', 'to': 'finalize', 'reason': 'max_iterations_reached', 'round': 2, 'ts': 1700},
    ]
    timeline = build_timeline('t-4', events)

    assert timeline['transitions'][-1]['duration_ms'] is None
    first, second = timeline['rounds']
    # Round 1 includes the wait in "iterate" until round 2 starts.
    assert first['duration_ms'] == 1400
    assert first['last_ts'] - first['first_ts'] == 400
    assert second['duration_ms'] == 200
    assert timeline['total_duration_ms'] == 1700
