from datetime import timedelta

import pytest

from vouch.core.exceptions import ValidationError
from vouch.core.models import EscrowStatus as S, Transition
from vouch.core.state_machine import (
    EDGES,
    LedgerOp,
    Party,
    RULES,
    allowed_transitions,
    decide,
    is_due,
    is_valid_path,
    validate_payload,
)


def test_every_transition_has_a_rule():
    assert set(RULES) == set(Transition)


def test_terminal_statuses_have_no_outgoing_edges():
    for status in (S.RELEASED, S.REFUNDED, S.CANCELLED, S.EXPIRED):
        assert EDGES[status] == frozenset()
        assert allowed_transitions(status) == []


def test_lifecycle_edges():
    assert EDGES[S.CREATED] == {S.WAITING_PAYMENT, S.FUNDED, S.CANCELLED, S.EXPIRED}
    assert EDGES[S.WAITING_PAYMENT] == {S.FUNDED, S.CANCELLED, S.EXPIRED}
    assert EDGES[S.FUNDED] == {S.SHIPPED, S.REFUNDED}
    assert EDGES[S.SHIPPED] == {S.RELEASED, S.DISPUTED}
    assert EDGES[S.DISPUTED] == {S.RELEASED, S.REFUNDED}


def test_confirm_from_shipped_is_allowed_and_mirrors_release():
    decision = decide(S.SHIPPED, Transition.CONFIRM_RECEIPT)
    assert decision.allowed and not decision.idempotent
    assert decision.target is S.RELEASED
    assert decision.ledger_op is LedgerOp.RELEASE
    assert decision.rule.party is Party.BUYER


def test_repeat_confirm_is_idempotent_without_ledger_call():
    decision = decide(S.RELEASED, Transition.CONFIRM_RECEIPT)
    assert decision.allowed
    assert decision.idempotent
    assert decision.ledger_op is None


def test_refund_after_shipping_is_refused():
    decision = decide(S.SHIPPED, Transition.REFUND)
    assert not decision.allowed
    assert 'REFUND' in decision.reason


@pytest.mark.parametrize('status', [S.FUNDED, S.SHIPPED, S.DISPUTED, S.RELEASED, S.REFUNDED])
def test_fund_repeats_after_funding_are_noops(status):
    decision = decide(status, Transition.FUND)
    assert decision.allowed and decision.idempotent


def test_fund_after_cancel_is_refused():
    assert not decide(S.CANCELLED, Transition.FUND).allowed
    assert not decide(S.EXPIRED, Transition.FUND).allowed


def test_dispute_is_never_idempotent():
    assert not decide(S.DISPUTED, Transition.RAISE_DISPUTE).allowed
    assert not decide(S.FUNDED, Transition.RAISE_DISPUTE).allowed


def test_cancel_has_no_ledger_op():
    assert decide(S.WAITING_PAYMENT, Transition.CANCEL).ledger_op is None


def test_validate_payload_requires_one_of_group():
    rule = RULES[Transition.FUND]
    validate_payload(rule, {'buyer_token': 'abc'})
    validate_payload(rule, {'buyer_address': '0x' + '22' * 20})
    with pytest.raises(ValidationError):
        validate_payload(rule, {'buyer_address': '  ', 'buyer_token': None})


def test_ship_requires_proof():
    with pytest.raises(ValidationError) as info:
        validate_payload(RULES[Transition.SHIP], {})
    assert info.value.public_message == 'Missing required field: proof'


def test_is_valid_path():
    assert is_valid_path([S.CREATED, S.WAITING_PAYMENT, S.FUNDED, S.SHIPPED, S.RELEASED])
    assert is_valid_path([S.CREATED, S.CREATED, S.FUNDED, S.REFUNDED])
    assert not is_valid_path([S.CREATED, S.SHIPPED])
    assert not is_valid_path([S.FUNDED, S.SHIPPED])
    assert not is_valid_path([])


class _Timeouts:
    auto_release = timedelta(days=14)
    shipping_deadline = timedelta(days=30)
    creation_expiry = timedelta(days=7)


def test_auto_release_due_exactly_at_window(store, make_draft, clock):
    escrow = store.create(make_draft(), 100)
    escrow.shipped_at = clock()
    assert not is_due(escrow, Transition.AUTO_RELEASE,
                      clock() + timedelta(days=13, hours=23, minutes=59), _Timeouts)
    assert is_due(escrow, Transition.AUTO_RELEASE, clock() + timedelta(days=14), _Timeouts)


def test_auto_release_never_due_without_shipment(store, make_draft, clock):
    escrow = store.create(make_draft(), 100)
    assert not is_due(escrow, Transition.AUTO_RELEASE, clock() + timedelta(days=365), _Timeouts)
