from __future__ import annotations

import pytest

from awe_roundtable.contract import (
    build_discussion_contract,
    compute_contract_hash,
    contract_from_dict,
    render_contract_for_prompt,
)


def _contract():
    return build_discussion_contract(
        source_round=2,
        goal='Add password reset',
        coder_text='Plan:\n- add reset endpoint\n- keep the token format unchanged\n- risk: email delivery delays',
        reviewer_text='- must expire tokens after 15 minutes\n- must rate limit requests\n- consider logging',
        tester_text='* reset should send one email\n1. expired token should be rejected',
    )


def test_build_discussion_contract_extracts_sections():
    contract = _contract()
    assert contract is not None
    assert contract.version == 1
    assert contract.source_round == 2
    assert contract.must_fix == ('must expire tokens after 15 minutes', 'must rate limit requests')
    assert contract.acceptance_criteria == ('reset should send one email', 'expired token should be rejected')
    assert contract.constraints == ('keep the token format unchanged',)
    assert contract.open_risks == ('risk: email delivery delays',)
    assert len(contract.hash) == 64
    assert contract.hash == compute_contract_hash(contract.content())


def test_build_discussion_contract_returns_none_when_empty():
    assert build_discussion_contract(source_round=1, goal=' ', coder_text='', reviewer_text='', tester_text='') is None


def test_contract_round_trips_and_reseals_edited_payload():
    contract = _contract()
    payload = contract.to_dict()
    assert contract_from_dict(payload) == contract

    payload['goal'] = 'Edited by hand'
    reloaded = contract_from_dict(payload)
    assert reloaded.goal == 'Edited by hand'
    assert reloaded.hash != contract.hash
    assert reloaded.hash == compute_contract_hash(reloaded.content())


def test_contract_from_dict_rejects_garbage():
    assert contract_from_dict(None) is None
    assert contract_from_dict({'version': 'x', 'goal': 'g'}) is None
    assert contract_from_dict({'goal': ''}) is None


def test_with_updates_recomputes_hash_and_dedupes_lists():
    contract = _contract()
    updated = contract.with_updates(must_fix=['Fix A', 'fix a', '', 'Fix B'])
    assert updated.must_fix == ('Fix A', 'Fix B')
    assert updated.hash != contract.hash
    with pytest.raises(ValueError):
        contract.with_updates(hash='deadbeef')


def test_list_fields_are_capped():
    contract = _contract().with_updates(open_risks=[f'risk {index}' for index in range(20)])
    assert len(contract.open_risks) == 8


def test_render_contract_for_prompt():
    assert render_contract_for_prompt(None) == ''
    contract = _contract()
    text = render_contract_for_prompt(contract)
    assert text.startswith(f'Agreed discussion contract (round 2, hash {contract.hash[:12]}):')
    assert 'Goal: Add password reset' in text
    assert 'Must fix:\n- must expire tokens after 15 minutes' in text
