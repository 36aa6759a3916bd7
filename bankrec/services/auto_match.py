"""
Auto-Match Orchestrator.

Batch driver: walks the pending transactions of one bank account in
(transaction_date, id) order, ranks candidates for each and writes a single
proposal per transaction. Per-transaction failures are collected, never
raised; each proposal is committed on its own so an interrupted batch keeps
its progress and a rerun resumes where it stopped.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bankrec.config import settings
from bankrec.models.models import BankReconciliation, BankTransaction, ReconciliationRule, ReconciliationStatus
from bankrec.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from bankrec.services.candidates import (
    AccountScope,
    CandidateRepository,
    build_candidate_repository,
    date_window,
    sign_of,
)
from bankrec.services.errors import ConcurrentModification, ReconciliationError, UpstreamUnavailable, ValidationError
from bankrec.services.rules import RuleService
from bankrec.services.store import ReconciliationStore
from bankrec.utils.matching import MatchingConfig, ScoredCandidate, rank, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchError:
    transaction_id: int
    error: str
    message: str


@dataclass
class AutoMatchResult:
    created: list[BankReconciliation] = field(default_factory=list)
    skipped: int = 0
    errors: list[BatchError] = field(default_factory=list)
    processed: int = 0
    cancelled: bool = False
    last_transaction_id: int | None = None


def _today() -> date:
    return datetime.now(timezone.utc).date()


class AutoMatchOrchestrator:
    def __init__(
        self,
        db: Session,
        candidates: CandidateRepository | None = None,
        config: MatchingConfig | None = None,
        timeout_seconds: float | None = None,
        clock: Callable[[], date] = _today,
    ) -> None:
        self.db = db
        self.store = ReconciliationStore(db)
        self.rules = RuleService(db)
        self.candidates = candidates or build_candidate_repository(db)
        self.config = config or MatchingConfig.from_settings()
        self.timeout = timeout_seconds if timeout_seconds is not None else settings.candidate_timeout_seconds
        self.clock = clock

    async def _top_candidate(
        self,
        txn: BankTransaction,
        scope: AccountScope,
        rules: list[ReconciliationRule],
        now: date,
    ) -> ScoredCandidate | None:
        date_from, date_to = date_window(txn.transaction_date, self.config.date_tolerance_days)
        found = await self.candidates.find_candidates(
            scope,
            date_from,
            date_to,
            sign_of(to_decimal(txn.amount)),
            exclude=self.store.rejected_keys(txn.id),
        )
        ranked = rank(txn, found, self.config, rules, now)
        return ranked[0] if ranked else None

    @staticmethod
    def _unexpected(txn: BankTransaction, exc: Exception) -> BatchError:
        if isinstance(exc, SQLAlchemyError):
            err = UpstreamUnavailable("Database error while auto-matching", {"transaction_id": txn.id})
            return BatchError(txn.id, err.code, err.message)
        return BatchError(txn.id, "INTERNAL_ERROR", f"{type(exc).__name__}: {exc}")

    def _status_for(self, confidence: float) -> ReconciliationStatus:
        if confidence >= self.config.matched_cutoff:
            return ReconciliationStatus.matched
        return ReconciliationStatus.suggested

    async def run(
        self,
        bank_account_id: int,
        limit: int | None = None,
        *,
        now: date | None = None,
        cancel_event: asyncio.Event | None = None,
        after_transaction_id: int | None = None,
    ) -> AutoMatchResult:
        """Proposes matches for up to `limit` unmatched transactions.

        Transactions without a candidate stay unmatched and are picked up again
        by the next run; pass the previous `last_transaction_id` as
        `after_transaction_id` to page past them.
        """
        limit = settings.auto_match_default_limit if limit is None else limit
        if limit < 1:
            raise ValidationError("limit must be a positive integer", {"limit": limit})
        limit = min(limit, settings.auto_match_max_limit)

        account = self.store.get_account(bank_account_id)
        scope = AccountScope.for_account(account)
        rules = self.rules.applicable_rules(account)
        now = now or self.clock()

        after = None
        if after_transaction_id is not None:
            cursor = self.store.get_transaction(after_transaction_id)
            if cursor.bank_account_id != bank_account_id:
                raise ValidationError(
                    "after_transaction_id belongs to another bank account",
                    {"after_transaction_id": after_transaction_id, "bank_account_id": bank_account_id},
                )
            after = (cursor.transaction_date, cursor.id)

        txns = self.store.unmatched_transactions(bank_account_id, limit, after)
        log_reconciliation_event(
            ReconciliationAuditEvent.BATCH_STARTED,
            {"bank_account_id": bank_account_id, "limit": limit, "transactions": len(txns), "rules": len(rules)},
        )

        result = AutoMatchResult()
        for txn in txns:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info("Auto-match for account %s cancelled after %d transactions", bank_account_id, result.processed)
                break
            result.processed += 1
            result.last_transaction_id = txn.id

            try:
                top = await asyncio.wait_for(self._top_candidate(txn, scope, rules, now), timeout=self.timeout)
            except asyncio.TimeoutError:
                err = UpstreamUnavailable(f"Candidate lookup timed out after {self.timeout}s")
                result.errors.append(BatchError(txn.id, err.code, err.message))
                logger.warning("Auto-match timed out for transaction %s", txn.id)
                continue
            except ReconciliationError as e:
                result.errors.append(BatchError(txn.id, e.code, e.message))
                logger.warning("Auto-match failed for transaction %s: %s", txn.id, e.message)
                continue
            except Exception as e:
                self.db.rollback()
                result.errors.append(self._unexpected(txn, e))
                logger.exception("Candidate lookup failed for transaction %s", txn.id)
                continue

            if top is None:
                result.skipped += 1
                continue

            status = self._status_for(top.confidence)
            try:
                rec = self.store.propose(txn.id, top, status)
                self.db.commit()
            except ConcurrentModification:
                self.db.rollback()
                result.skipped += 1
                logger.info("Transaction %s already handled by another writer, skipping", txn.id)
                continue
            except ReconciliationError as e:
                self.db.rollback()
                result.errors.append(BatchError(txn.id, e.code, e.message))
                logger.warning("Could not store proposal for transaction %s: %s", txn.id, e.message)
                continue
            except Exception as e:
                self.db.rollback()
                result.errors.append(self._unexpected(txn, e))
                logger.exception("Could not store proposal for transaction %s", txn.id)
                continue

            result.created.append(rec)
            log_reconciliation_event(
                ReconciliationAuditEvent.PROPOSED,
                {
                    "bank_transaction_id": txn.id,
                    "status": status.value,
                    "matched_type": top.candidate.matched_type.value,
                    "matched_id": top.candidate.matched_id,
                    "confidence": top.confidence,
                    "rule_id": top.rule_id,
                },
                reconciliation_id=rec.id,
            )

        log_reconciliation_event(
            ReconciliationAuditEvent.BATCH_COMPLETED,
            {
                "bank_account_id": bank_account_id,
                "created": len(result.created),
                "skipped": result.skipped,
                "errors": len(result.errors),
                "cancelled": result.cancelled,
            },
        )
        return result
