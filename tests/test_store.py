from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import func, select, update

from bankrec.models.models import BankReconciliation, MatchedType, ReconciliationStatus, TransactionStatus
from bankrec.services.errors import ConcurrentModification, InvalidTransition, NotFound
from bankrec.services.store import TRANSITIONS, ReconciliationStore, check_transition
from bankrec.utils.matching import MatchCandidate, ScoredCandidate, score
from tests.factories import make_account, make_invoice_received, make_reconciliation, make_transaction

S = ReconciliationStatus

ALLOWED = {
    (S.pending, S.suggested),
    (S.pending, S.matched),
    (S.rejected, S.matched),
    (S.suggested, S.confirmed),
    (S.suggested, S.rejected),
    (S.matched, S.confirmed),
    (S.matched, S.rejected),
}


@pytest.mark.parametrize("current", list(S))
@pytest.mark.parametrize("requested", list(S))
def test_transition_table(current, requested):
    if (current, requested) in ALLOWED:
        check_transition(current, requested)
        assert requested in TRANSITIONS[current]
    else:
        with pytest.raises(InvalidTransition) as exc:
            check_transition(current, requested, 5)
        assert exc.value.context == {"current": current.value, "requested": requested.value, "reconciliation_id": 5}


@pytest.fixture()
def setup(db):
    account = make_account(db)
    txn = make_transaction(db, account, "-1210.00")
    inv = make_invoice_received(db, "1210.00")
    db.commit()
    return ReconciliationStore(db), txn, inv


def scored_for(txn, inv) -> ScoredCandidate:
    c = MatchCandidate(
        matched_type=MatchedType.invoice_received,
        matched_id=str(inv.id),
        candidate_date=inv.invoice_date,
        candidate_amount=-inv.total,
        candidate_label=inv.supplier_name,
    )
    return ScoredCandidate(candidate=c, breakdown=score(txn, c))


def count_rows(db, txn) -> int:
    return db.scalar(select(func.count()).select_from(BankReconciliation).where(BankReconciliation.bank_transaction_id == txn.id))


def test_open_pending_twice_hits_unique_index(setup, db):
    store, txn, _ = setup
    first = store.open_pending(txn.id)

    with pytest.raises(ConcurrentModification):
        store.open_pending(txn.id)

    # savepoint rolled back, outer transaction still usable
    assert store.live_for_transaction(txn.id).id == first.id
    db.commit()
    assert count_rows(db, txn) == 1


def test_open_pending_unknown_transaction(setup):
    store, _, _ = setup
    with pytest.raises(NotFound):
        store.open_pending(9999)


def test_propose_updates_pending_row_in_place(setup, db):
    store, txn, inv = setup
    pending = store.open_pending(txn.id)

    rec = store.propose(txn.id, scored_for(txn, inv), S.matched)

    assert rec.id == pending.id
    assert rec.reconciliation_status == S.matched
    assert rec.confidence_score == 100.0
    assert rec.matched_id == str(inv.id)
    assert rec.match_details["reasons"]
    assert count_rows(db, txn) == 1


def test_propose_inserts_when_no_row(setup):
    store, txn, inv = setup
    rec = store.propose(txn.id, scored_for(txn, inv), S.suggested)
    assert rec.reconciliation_status == S.suggested


def test_propose_over_live_proposal_is_concurrent(setup):
    store, txn, inv = setup
    store.propose(txn.id, scored_for(txn, inv), S.suggested)

    with pytest.raises(ConcurrentModification):
        store.propose(txn.id, scored_for(txn, inv), S.matched)


def test_propose_cannot_confirm(setup):
    store, txn, inv = setup
    with pytest.raises(InvalidTransition):
        store.propose(txn.id, scored_for(txn, inv), S.confirmed)


def test_confirm_flips_transaction(setup, db):
    store, txn, inv = setup
    rec = store.propose(txn.id, scored_for(txn, inv), S.matched)

    confirmed = store.confirm(rec.id, actor="ana")
    db.commit()

    assert confirmed.reconciliation_status == S.confirmed
    assert confirmed.reconciled_by == "ana"
    assert confirmed.reconciled_at is not None
    assert store.get_transaction(txn.id).status == TransactionStatus.reconciled


def test_double_confirm_is_invalid(setup):
    store, txn, inv = setup
    rec = store.propose(txn.id, scored_for(txn, inv), S.matched)
    store.confirm(rec.id)

    with pytest.raises(InvalidTransition) as exc:
        store.confirm(rec.id)
    assert exc.value.current == "confirmed"


def test_pending_row_cannot_be_confirmed(setup):
    store, txn, _ = setup
    rec = store.open_pending(txn.id)
    with pytest.raises(InvalidTransition):
        store.confirm(rec.id)


def test_rejected_row_cannot_be_confirmed_and_transaction_stays_pending(setup):
    store, txn, inv = setup
    rec = store.propose(txn.id, scored_for(txn, inv), S.suggested)
    rejected = store.reject(rec.id, "wrong supplier", actor="ana")

    assert rejected.reconciliation_status == S.rejected
    assert rejected.notes == "wrong supplier"
    with pytest.raises(InvalidTransition):
        store.confirm(rec.id)
    assert store.get_transaction(txn.id).status == TransactionStatus.pending


def test_manual_match_after_reject_keeps_history(setup, db):
    store, txn, inv = setup
    rec = store.propose(txn.id, scored_for(txn, inv), S.suggested)
    store.reject(rec.id, "wrong")

    manual = store.manual_match(txn.id, MatchedType.entry, "E-1", notes="fee", actor="ana")

    assert manual.id != rec.id
    assert manual.reconciliation_status == S.matched
    assert manual.confidence_score == 100.0
    assert manual.rule_id is None
    assert store.get(rec.id).reconciliation_status == S.rejected
    assert count_rows(db, txn) == 2


def test_manual_match_over_pending_updates_in_place(setup):
    store, txn, _ = setup
    pending = store.open_pending(txn.id)
    manual = store.manual_match(txn.id, MatchedType.entry, "E-1")
    assert manual.id == pending.id
    assert manual.matched_type == MatchedType.entry


def test_manual_match_over_proposal_is_invalid(setup):
    store, txn, inv = setup
    store.propose(txn.id, scored_for(txn, inv), S.suggested)
    with pytest.raises(InvalidTransition):
        store.manual_match(txn.id, MatchedType.entry, "E-1")


def test_lost_compare_and_swap_is_concurrent(setup, db, monkeypatch):
    store, txn, inv = setup
    rec = store.propose(txn.id, scored_for(txn, inv), S.suggested)
    stale = store.get(rec.id)

    # another writer rejects it behind our back
    db.execute(
        update(BankReconciliation)
        .where(BankReconciliation.id == rec.id)
        .values(reconciliation_status=S.rejected, notes="other")
        .execution_options(synchronize_session=False)
    )
    monkeypatch.setattr(store, "get", lambda _id: stale)

    with pytest.raises(ConcurrentModification):
        store.confirm(rec.id)


def test_unmatched_transactions_order_and_filter(db):
    account = make_account(db)
    later = make_transaction(db, account, "-10.00", when=date(2024, 3, 20))
    first = make_transaction(db, account, "-10.00", when=date(2024, 3, 1))
    second = make_transaction(db, account, "-10.00", when=date(2024, 3, 1))
    proposed = make_transaction(db, account, "-10.00", when=date(2024, 2, 1))
    rejected_only = make_transaction(db, account, "-10.00", when=date(2024, 3, 25))
    make_reconciliation(db, proposed, S.suggested, MatchedType.entry, "1")
    make_reconciliation(db, rejected_only, S.rejected, MatchedType.entry, "2")
    store = ReconciliationStore(db)

    assert [t.id for t in store.unmatched_transactions(account.id, 10)] == [first.id, second.id, later.id, rejected_only.id]
    assert [t.id for t in store.unmatched_transactions(account.id, 2)] == [first.id, second.id]


def test_unmatched_transactions_after_cursor(db):
    account = make_account(db)
    first = make_transaction(db, account, "-10.00", when=date(2024, 3, 1))
    second = make_transaction(db, account, "-10.00", when=date(2024, 3, 1))
    later = make_transaction(db, account, "-10.00", when=date(2024, 3, 2))
    store = ReconciliationStore(db)

    assert [t.id for t in store.unmatched_transactions(account.id, 10, after=(first.transaction_date, first.id))] == [second.id, later.id]
    assert [t.id for t in store.unmatched_transactions(account.id, 10, after=(date(2024, 3, 1), second.id))] == [later.id]
    assert store.unmatched_transactions(account.id, 10, after=(later.transaction_date, later.id)) == []
