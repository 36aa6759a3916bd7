from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from bankrec.models.models import BankReconciliation, MatchedType, ReconciliationStatus
from bankrec.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from bankrec.services.candidates import (
    AccountScope,
    CandidateRepository,
    build_candidate_repository,
    date_window,
    sign_of,
)
from bankrec.services.errors import AlreadyConfirmed, ValidationError
from bankrec.services.rules import RuleService
from bankrec.services.store import ReconciliationStore
from bankrec.utils.matching import MatchingConfig, ScoredCandidate, rank, to_decimal

logger = logging.getLogger(__name__)

# below the "media" badge an analyst is confirming a weak proposal
LOW_CONFIDENCE_WARNING = 70.0


def parse_matched_type(value: str | MatchedType) -> MatchedType:
    if isinstance(value, MatchedType):
        return value
    try:
        return MatchedType(value)
    except ValueError as e:
        raise ValidationError(
            f"Unknown matched_type '{value}'",
            {"allowed": [m.value for m in MatchedType]},
        ) from e


class ReconciliationService:
    """Analyst-facing operations: manual matches, confirm/reject, ad-hoc search."""

    def __init__(
        self,
        db: Session,
        candidates: CandidateRepository | None = None,
        config: MatchingConfig | None = None,
    ) -> None:
        self.db = db
        self.store = ReconciliationStore(db)
        self.rules = RuleService(db)
        self.candidates = candidates or build_candidate_repository(db)
        self.config = config or MatchingConfig.from_settings()

    def get(self, reconciliation_id: int) -> BankReconciliation:
        return self.store.get(reconciliation_id)

    def list_reconciliations(
        self,
        *,
        bank_account_id: int | None = None,
        status: ReconciliationStatus | None = None,
    ) -> list[BankReconciliation]:
        return self.store.list(bank_account_id=bank_account_id, status=status)

    def create_manual_match(
        self,
        *,
        transaction_id: int,
        matched_type: str | MatchedType,
        matched_id: str | int,
        notes: str | None = None,
        actor: str | None = None,
    ) -> BankReconciliation:
        mtype = parse_matched_type(matched_type)
        mid = str(matched_id).strip()
        if not mid:
            raise ValidationError("matched_id is required")

        txn = self.store.get_transaction(transaction_id)
        current = self.store.live_for_transaction(txn.id)
        if current is not None and current.reconciliation_status == ReconciliationStatus.confirmed:
            raise AlreadyConfirmed(
                "Transaction already has a confirmed reconciliation",
                {"bank_transaction_id": txn.id, "reconciliation_id": current.id},
            )
        if mtype != MatchedType.manual and self.store.is_document_confirmed(mtype, mid, exclude_transaction_id=txn.id):
            raise ValidationError(
                "Document is already reconciled with another transaction",
                {"matched_type": mtype.value, "matched_id": mid},
            )

        rec = self.store.manual_match(txn.id, mtype, mid, notes=notes, actor=actor)
        log_reconciliation_event(
            ReconciliationAuditEvent.MANUAL_MATCH,
            {"bank_transaction_id": txn.id, "matched_type": mtype.value, "matched_id": mid},
            reconciliation_id=rec.id,
            actor=actor,
        )
        return rec

    def confirm(self, reconciliation_id: int, actor: str | None = None) -> BankReconciliation:
        rec = self.store.get(reconciliation_id)
        if (
            rec.matched_type is not None
            and rec.matched_type != MatchedType.manual
            and rec.matched_id is not None
            and self.store.is_document_confirmed(rec.matched_type, rec.matched_id, exclude_transaction_id=rec.bank_transaction_id)
        ):
            raise AlreadyConfirmed(
                "Document is already reconciled with another transaction",
                {"matched_type": rec.matched_type.value, "matched_id": rec.matched_id},
            )

        rec = self.store.confirm(reconciliation_id, actor=actor)
        if rec.confidence_score is not None and rec.confidence_score < LOW_CONFIDENCE_WARNING:
            logger.warning(
                "Reconciliation %s confirmed with low confidence score %.2f",
                rec.id,
                rec.confidence_score,
            )
        log_reconciliation_event(
            ReconciliationAuditEvent.CONFIRMED,
            {"bank_transaction_id": rec.bank_transaction_id, "confidence": rec.confidence_score},
            reconciliation_id=rec.id,
            actor=actor,
        )
        return rec

    def reject(self, reconciliation_id: int, notes: str | None, actor: str | None = None) -> BankReconciliation:
        if not notes or not notes.strip():
            raise ValidationError("notes are required to reject a reconciliation")
        rec = self.store.reject(reconciliation_id, notes.strip(), actor=actor)
        log_reconciliation_event(
            ReconciliationAuditEvent.REJECTED,
            {"bank_transaction_id": rec.bank_transaction_id, "notes": rec.notes},
            reconciliation_id=rec.id,
            actor=actor,
        )
        return rec

    async def search_candidates(
        self,
        *,
        transaction_id: int,
        amount_tolerance_pct: float | None = None,
        date_tolerance_days: int | None = None,
        text: str | None = None,
        confidence_threshold: float | None = None,
        now: date | None = None,
    ) -> list[ScoredCandidate]:
        if amount_tolerance_pct is not None and not 0 <= amount_tolerance_pct <= 100:
            raise ValidationError("amount_tolerance_pct must be between 0 and 100")
        if date_tolerance_days is not None and date_tolerance_days < 0:
            raise ValidationError("date_tolerance_days cannot be negative")
        if confidence_threshold is not None and not 0 <= confidence_threshold <= 100:
            raise ValidationError("confidence_threshold must be between 0 and 100")

        cfg = self.config.with_overrides(
            amount_tolerance_pct=amount_tolerance_pct,
            date_tolerance_days=date_tolerance_days,
            confidence_threshold=confidence_threshold,
        )
        txn = self.store.get_transaction(transaction_id)
        account = self.store.get_account(txn.bank_account_id)

        date_from, date_to = date_window(txn.transaction_date, cfg.date_tolerance_days)
        found = await self.candidates.find_candidates(
            AccountScope.for_account(account),
            date_from,
            date_to,
            sign_of(to_decimal(txn.amount)),
        )
        if text and text.strip():
            needle = text.strip().lower()
            found = [
                c
                for c in found
                if needle in c.candidate_label.lower()
                or needle in c.matched_id.lower()
                or needle in (c.document_number or "").lower()
            ]

        now = now or datetime.now(timezone.utc).date()
        return rank(txn, found, cfg, self.rules.applicable_rules(account), now)
