"""
Reconciliation Store.

Sole writer of `bank_reconciliations`. Enforces the status state machine and
the one-live-row-per-transaction rule at write time:

- inserts run inside a SAVEPOINT and rely on the partial unique index; a
  losing insert becomes ConcurrentModification
- status changes are compare-and-swap updates guarded by the expected
  current status
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bankrec.models.models import (
    ACTIVE_STATUSES,
    BankAccount,
    BankReconciliation,
    BankTransaction,
    MatchedType,
    ReconciliationStatus,
    TransactionStatus,
)
from bankrec.services.errors import ConcurrentModification, InvalidTransition, NotFound
from bankrec.utils.matching import ScoredCandidate

S = ReconciliationStatus

TRANSITIONS: dict[ReconciliationStatus, frozenset[ReconciliationStatus]] = {
    S.pending: frozenset({S.suggested, S.matched}),
    S.rejected: frozenset({S.matched}),
    S.suggested: frozenset({S.confirmed, S.rejected}),
    S.matched: frozenset({S.confirmed, S.rejected}),
    S.confirmed: frozenset(),
}


def check_transition(current: ReconciliationStatus, requested: ReconciliationStatus, reconciliation_id: int | None = None) -> None:
    if requested not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current.value, requested.value, reconciliation_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------------------------
    # reads
    # ---------------------------

    def get(self, reconciliation_id: int) -> BankReconciliation:
        rec = self.db.get(BankReconciliation, reconciliation_id, populate_existing=True)
        if not rec:
            raise NotFound("Reconciliation", reconciliation_id)
        return rec

    def get_transaction(self, transaction_id: int) -> BankTransaction:
        txn = self.db.get(BankTransaction, transaction_id)
        if not txn:
            raise NotFound("BankTransaction", transaction_id)
        return txn

    def get_account(self, bank_account_id: int) -> BankAccount:
        account = self.db.get(BankAccount, bank_account_id)
        if not account:
            raise NotFound("BankAccount", bank_account_id)
        return account

    def live_for_transaction(self, transaction_id: int) -> BankReconciliation | None:
        """The single non-rejected row for a transaction, if any."""
        stmt = select(BankReconciliation).where(
            and_(
                BankReconciliation.bank_transaction_id == transaction_id,
                BankReconciliation.reconciliation_status != S.rejected,
            )
        )
        return self.db.scalar(stmt)

    def rejected_keys(self, transaction_id: int) -> set[tuple[str, str]]:
        stmt = select(BankReconciliation.matched_type, BankReconciliation.matched_id).where(
            and_(
                BankReconciliation.bank_transaction_id == transaction_id,
                BankReconciliation.reconciliation_status == S.rejected,
                BankReconciliation.matched_type.is_not(None),
                BankReconciliation.matched_id.is_not(None),
            )
        )
        return {(mt.value, mid) for mt, mid in self.db.execute(stmt)}

    def is_document_confirmed(self, matched_type: MatchedType, matched_id: str, exclude_transaction_id: int | None = None) -> bool:
        stmt = select(BankReconciliation.id).where(
            and_(
                BankReconciliation.matched_type == matched_type,
                BankReconciliation.matched_id == matched_id,
                BankReconciliation.reconciliation_status == S.confirmed,
            )
        )
        if exclude_transaction_id is not None:
            stmt = stmt.where(BankReconciliation.bank_transaction_id != exclude_transaction_id)
        return self.db.scalar(stmt.limit(1)) is not None

    def unmatched_transactions(
        self,
        bank_account_id: int,
        limit: int,
        after: tuple[date, int] | None = None,
    ) -> list[BankTransaction]:
        """Pending transactions with no live proposal, oldest first.

        `after` is a `(transaction_date, id)` keyset cursor; only transactions
        strictly after it are returned.
        """
        live = select(BankReconciliation.id).where(
            and_(
                BankReconciliation.bank_transaction_id == BankTransaction.id,
                BankReconciliation.reconciliation_status.in_(ACTIVE_STATUSES),
            )
        )
        conditions = [
            BankTransaction.bank_account_id == bank_account_id,
            BankTransaction.status == TransactionStatus.pending,
            ~live.exists(),
        ]
        if after is not None:
            after_date, after_id = after
            conditions.append(
                or_(
                    BankTransaction.transaction_date > after_date,
                    and_(BankTransaction.transaction_date == after_date, BankTransaction.id > after_id),
                )
            )
        stmt = (
            select(BankTransaction)
            .where(and_(*conditions))
            .order_by(BankTransaction.transaction_date, BankTransaction.id)
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    def list(self, *, bank_account_id: int | None = None, status: ReconciliationStatus | None = None) -> list[BankReconciliation]:
        stmt = select(BankReconciliation)
        if bank_account_id is not None:
            stmt = stmt.join(BankTransaction, BankTransaction.id == BankReconciliation.bank_transaction_id).where(
                BankTransaction.bank_account_id == bank_account_id
            )
        if status:
            stmt = stmt.where(BankReconciliation.reconciliation_status == status)
        stmt = stmt.order_by(BankReconciliation.id)
        return list(self.db.scalars(stmt))

    # ---------------------------
    # writes
    # ---------------------------

    def _insert(self, values: dict[str, Any]) -> BankReconciliation:
        rec = BankReconciliation(**values)
        try:
            with self.db.begin_nested():
                self.db.add(rec)
                self.db.flush()
        except IntegrityError as e:
            raise ConcurrentModification(
                "Transaction already has a live reconciliation",
                {"bank_transaction_id": values.get("bank_transaction_id")},
            ) from e
        return rec

    def _compare_and_set(
        self,
        rec: BankReconciliation,
        expected: Iterable[ReconciliationStatus],
        values: dict[str, Any],
    ) -> BankReconciliation:
        stmt = (
            update(BankReconciliation)
            .where(
                and_(
                    BankReconciliation.id == rec.id,
                    BankReconciliation.reconciliation_status.in_(list(expected)),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        res = self.db.execute(stmt)
        if res.rowcount != 1:
            raise ConcurrentModification(
                "Reconciliation was modified by another writer",
                {"reconciliation_id": rec.id},
            )
        return self.get(rec.id)

    def open_pending(self, transaction_id: int) -> BankReconciliation:
        """Placeholder row for a transaction that awaits a proposal."""
        self.get_transaction(transaction_id)
        return self._insert({"bank_transaction_id": transaction_id, "reconciliation_status": S.pending})

    def propose(self, transaction_id: int, scored: ScoredCandidate, status: ReconciliationStatus) -> BankReconciliation:
        """pending -> suggested|matched, written by the auto-matcher."""
        check_transition(S.pending, status)
        values = {
            "matched_type": scored.candidate.matched_type,
            "matched_id": scored.candidate.matched_id,
            "reconciliation_status": status,
            "confidence_score": scored.confidence,
            "rule_id": scored.rule_id,
            "match_details": scored.breakdown.as_details(),
        }
        current = self.live_for_transaction(transaction_id)
        if current is None:
            return self._insert({"bank_transaction_id": transaction_id, **values})
        if current.reconciliation_status != S.pending:
            # someone proposed or matched it since the batch was listed
            raise ConcurrentModification(
                "Transaction already has a live reconciliation",
                {"bank_transaction_id": transaction_id, "reconciliation_id": current.id},
            )
        return self._compare_and_set(current, [S.pending], values)

    def manual_match(
        self,
        transaction_id: int,
        matched_type: MatchedType,
        matched_id: str,
        notes: str | None = None,
        actor: str | None = None,
    ) -> BankReconciliation:
        """pending|rejected -> matched with confidence 100 and no rule."""
        values = {
            "matched_type": matched_type,
            "matched_id": matched_id,
            "reconciliation_status": S.matched,
            "confidence_score": 100.0,
            "rule_id": None,
            "reconciled_by": actor,
            "notes": notes,
            "match_details": {"reasons": ["Manual match"]},
        }
        current = self.live_for_transaction(transaction_id)
        if current is None:
            # no row yet, or only rejected history
            return self._insert({"bank_transaction_id": transaction_id, **values})
        check_transition(current.reconciliation_status, S.matched, current.id)
        return self._compare_and_set(current, [S.pending], values)

    def confirm(self, reconciliation_id: int, actor: str | None = None) -> BankReconciliation:
        """suggested|matched -> confirmed; flips the transaction to reconciled in the same unit of work."""
        rec = self.get(reconciliation_id)
        check_transition(rec.reconciliation_status, S.confirmed, rec.id)
        rec = self._compare_and_set(
            rec,
            [S.suggested, S.matched],
            {"reconciliation_status": S.confirmed, "reconciled_by": actor, "reconciled_at": _utcnow()},
        )
        res = self.db.execute(
            update(BankTransaction)
            .where(BankTransaction.id == rec.bank_transaction_id)
            .values(status=TransactionStatus.reconciled)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise NotFound("BankTransaction", rec.bank_transaction_id)
        self.db.get(BankTransaction, rec.bank_transaction_id, populate_existing=True)
        return rec

    def reject(self, reconciliation_id: int, notes: str, actor: str | None = None) -> BankReconciliation:
        """suggested|matched -> rejected. The transaction stays pending."""
        rec = self.get(reconciliation_id)
        check_transition(rec.reconciliation_status, S.rejected, rec.id)
        return self._compare_and_set(
            rec,
            [S.suggested, S.matched],
            {"reconciliation_status": S.rejected, "notes": notes, "reconciled_by": actor},
        )
