from __future__ import annotations

import pytest

from awe_roundtable.adapters.base import normalize_provider_name
from awe_roundtable.adapters.codex import normalize_codex_exec_output
from awe_roundtable.adapters.factory import ProviderFactory
from awe_roundtable.domain.errors import UnsupportedProviderError


def test_normalize_provider_name_accepts_cli_aliases():
    assert normalize_provider_name(' Claude-CLI ') == 'claude'
    assert normalize_provider_name('codex') == 'codex'
    assert normalize_provider_name(None) == ''


def test_factory_rejects_unknown_provider():
    assert ProviderFactory.supports('gemini-cli')
    assert not ProviderFactory.supports('llama')
    with pytest.raises(UnsupportedProviderError) as excinfo:
        ProviderFactory.create(provider='llama')
    assert str(excinfo.value) == 'Unsupported provider: llama'
    assert excinfo.value.provider == 'llama'


def test_claude_invocation_appends_model_permission_and_prompt_last():
    adapter = ProviderFactory.create(provider='claude')
    invocation = adapter.build_invocation(
        command='claude -p --output-format stream-json --verbose',
        prompt='do the thing',
        model='claude-sonnet',
        permission_mode='plan',
    )
    assert invocation.parse_mode == 'ndjson'
    assert invocation.argv[:5] == ['claude', '-p', '--output-format', 'stream-json', '--verbose']
    assert invocation.argv[5:7] == ['--model', 'claude-sonnet']
    assert invocation.argv[7:9] == ['--permission-mode', 'plan']
    assert invocation.argv[-1] == 'do the thing'


def test_model_flag_is_not_duplicated_when_command_already_pins_model():
    adapter = ProviderFactory.create(provider='codex')
    invocation = adapter.build_invocation(
        command='codex exec --model gpt-5',
        prompt='hi',
        model='other-model',
        model_params='-c reasoning=high',
    )
    assert invocation.argv.count('--model') == 1
    assert invocation.argv[-3:] == ['-c', 'reasoning=high', 'hi']
    assert invocation.parse_mode == 'text'


def test_codex_plan_mode_is_read_only_sandbox():
    adapter = ProviderFactory.create(provider='codex')
    invocation = adapter.build_invocation(command='codex exec', prompt='p', permission_mode='plan')
    assert invocation.argv == ['codex', 'exec', '--sandbox', 'read-only', 'p']


def test_gemini_plan_mode_drops_yolo_and_uses_prompt_flag():
    adapter = ProviderFactory.create(provider='gemini')
    invocation = adapter.build_invocation(command='gemini --yolo', prompt='review', permission_mode='plan')
    assert '--yolo' not in invocation.argv
    assert invocation.argv == ['gemini', '--approval-mode', 'default', '--prompt', 'review']


def test_gemini_without_plan_keeps_yolo():
    adapter = ProviderFactory.create(provider='gemini')
    invocation = adapter.build_invocation(command='gemini -y', prompt='go')
    assert invocation.argv == ['gemini', '-y', '--prompt', 'go']


def test_normalize_codex_exec_output_extracts_final_message():
    raw = (
        'OpenAI Codex v0.1\n--------\nuser\nprompt text\n'
        'codex\nFinal answer here\n'
        'tokens used: 1234\n'
    )
    assert normalize_codex_exec_output(raw) == 'Final answer here'
    assert normalize_codex_exec_output('plain output') == 'plain output'
