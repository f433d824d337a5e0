from __future__ import annotations

from awe_roundtable.text_utils import clip_error_message, clip_tail, clip_text, sanitize_log_text


def test_sanitize_log_text_strips_ansi_and_control_bytes():
    raw = '\x1b[31mred\x1b[0m \x1b]0;title\x07ok\x00\x07 done\n\tnext'
    assert sanitize_log_text(raw) == 'red ok done\n\tnext'


def test_clip_text_appends_truncation_marker():
    assert clip_text('abcdef', max_chars=10) == 'abcdef'
    assert clip_text('abcdef', max_chars=4) == 'abcd\n...[truncated 2 chars]'


def test_clip_tail_keeps_the_end():
    assert clip_tail('0123456789', max_chars=3) == '789'
    assert clip_tail('abc', max_chars=0) == 'abc'


def test_clip_error_message_never_cuts_inside_escape_sequence():
    raw = 'x' * 398 + '\x1b[38;5;196m' + 'tail'
    clipped = clip_error_message(raw, max_chars=400)
    assert '\x1b' not in clipped
    assert clipped.endswith('...')
    assert len(clipped) <= 403


def test_clip_error_message_short_text_is_only_sanitized():
    assert clip_error_message('  \x1b[1mboom\x1b[0m  ') == 'boom'
