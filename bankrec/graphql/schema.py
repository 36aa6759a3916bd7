from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum

import strawberry
from fastapi import Depends
from sqlalchemy.orm import Session
from strawberry.fastapi import BaseContext, GraphQLRouter
from strawberry.types import Info

from bankrec.db.deps import get_db
from bankrec.models.models import BankReconciliation, ReconciliationRule, ReconciliationStatus
from bankrec.services.auto_match import AutoMatchOrchestrator
from bankrec.services.reconciliation import ReconciliationService
from bankrec.services.rules import RuleService
from bankrec.utils.matching import ScoredCandidate


# ---------------------------
# GraphQL context (per request)
# ---------------------------

class Context(BaseContext):
    def __init__(self, db: Session) -> None:
        super().__init__()
        self.db = db


async def get_context(db: Session = Depends(get_db)) -> Context:
    return Context(db=db)


@contextmanager
def rollback_on_error(db: Session) -> Iterator[None]:
    # resolver errors are reported in the payload, so get_db never sees them
    try:
        yield
    except Exception:
        db.rollback()
        raise


# ---------------------------
# GraphQL Types
# ---------------------------

@strawberry.enum
class GReconciliationStatus(Enum):
    pending = "pending"
    suggested = "suggested"
    matched = "matched"
    confirmed = "confirmed"
    rejected = "rejected"


@strawberry.enum
class GMatchedType(Enum):
    invoice_received = "invoice_received"
    invoice_issued = "invoice_issued"
    entry = "entry"
    daily_closure = "daily_closure"
    manual = "manual"


@strawberry.type
class ReconciliationType:
    id: int
    bank_transaction_id: int
    matched_type: GMatchedType | None
    matched_id: str | None
    reconciliation_status: GReconciliationStatus
    confidence_score: float | None
    rule_id: int | None
    reconciled_by: str | None
    reconciled_at: datetime | None
    notes: str | None
    created_at: datetime


@strawberry.type
class CandidateType:
    matched_type: GMatchedType
    matched_id: str
    candidate_date: date
    candidate_amount: float
    candidate_label: str
    candidate_status: str | None
    document_number: str | None


@strawberry.type
class ScoredCandidateType:
    candidate: CandidateType
    confidence: float
    rule_id: int | None
    reasons: list[str]


@strawberry.type
class BatchErrorType:
    transaction_id: int
    error: str
    message: str


@strawberry.type
class AutoMatchResultType:
    created: list[ReconciliationType]
    skipped: int
    errors: list[BatchErrorType]
    processed: int
    cancelled: bool
    last_transaction_id: int | None


@strawberry.type
class RuleType:
    id: int
    centro_code: str
    bank_account_id: int | None
    rule_name: str
    description_pattern: str | None
    target_matched_type: GMatchedType | None
    confidence_threshold: float
    priority: int
    active: bool


@strawberry.input
class ManualMatchInput:
    transaction_id: int
    matched_type: GMatchedType
    matched_id: str
    notes: str | None = None


def to_reconciliation_type(r: BankReconciliation) -> ReconciliationType:
    return ReconciliationType(
        id=r.id,
        bank_transaction_id=r.bank_transaction_id,
        matched_type=GMatchedType(r.matched_type.value) if r.matched_type else None,
        matched_id=r.matched_id,
        reconciliation_status=GReconciliationStatus(r.reconciliation_status.value),
        confidence_score=r.confidence_score,
        rule_id=r.rule_id,
        reconciled_by=r.reconciled_by,
        reconciled_at=r.reconciled_at,
        notes=r.notes,
        created_at=r.created_at,
    )


def to_scored_type(sc: ScoredCandidate) -> ScoredCandidateType:
    c = sc.candidate
    return ScoredCandidateType(
        candidate=CandidateType(
            matched_type=GMatchedType(c.matched_type.value),
            matched_id=c.matched_id,
            candidate_date=c.candidate_date,
            candidate_amount=float(c.candidate_amount),
            candidate_label=c.candidate_label,
            candidate_status=c.candidate_status,
            document_number=c.document_number,
        ),
        confidence=sc.confidence,
        rule_id=sc.rule_id,
        reasons=list(sc.breakdown.reasons),
    )


def to_rule_type(r: ReconciliationRule) -> RuleType:
    return RuleType(
        id=r.id,
        centro_code=r.centro_code,
        bank_account_id=r.bank_account_id,
        rule_name=r.rule_name,
        description_pattern=r.description_pattern,
        target_matched_type=GMatchedType(r.target_matched_type.value) if r.target_matched_type else None,
        confidence_threshold=r.confidence_threshold,
        priority=r.priority,
        active=r.active,
    )


# ---------------------------
# Query
# ---------------------------

@strawberry.type
class Query:
    @strawberry.field
    def reconciliations(
        self,
        info: Info,
        bank_account_id: int | None = None,
        status: GReconciliationStatus | None = None,
    ) -> list[ReconciliationType]:
        db = info.context.db
        items = ReconciliationService(db).list_reconciliations(
            bank_account_id=bank_account_id,
            status=ReconciliationStatus(status.value) if status else None,
        )
        return [to_reconciliation_type(r) for r in items]

    @strawberry.field
    async def search_candidates(
        self,
        info: Info,
        transaction_id: int,
        amount_tolerance_pct: float | None = None,
        date_tolerance_days: int | None = None,
        text: str | None = None,
    ) -> list[ScoredCandidateType]:
        db = info.context.db
        ranked = await ReconciliationService(db).search_candidates(
            transaction_id=transaction_id,
            amount_tolerance_pct=amount_tolerance_pct,
            date_tolerance_days=date_tolerance_days,
            text=text,
        )
        return [to_scored_type(sc) for sc in ranked]

    @strawberry.field
    def reconciliation_rules(self, info: Info, centro_code: str | None = None) -> list[RuleType]:
        db = info.context.db
        return [to_rule_type(r) for r in RuleService(db).list_rules(centro_code=centro_code)]


# ---------------------------
# Mutation
# ---------------------------

@strawberry.type
class Mutation:
    @strawberry.field
    async def auto_match(
        self,
        info: Info,
        bank_account_id: int,
        limit: int | None = None,
        after_transaction_id: int | None = None,
    ) -> AutoMatchResultType:
        db = info.context.db
        with rollback_on_error(db):
            result = await AutoMatchOrchestrator(db).run(bank_account_id, limit, after_transaction_id=after_transaction_id)
        return AutoMatchResultType(
            created=[to_reconciliation_type(r) for r in result.created],
            skipped=result.skipped,
            errors=[BatchErrorType(transaction_id=e.transaction_id, error=e.error, message=e.message) for e in result.errors],
            processed=result.processed,
            cancelled=result.cancelled,
            last_transaction_id=result.last_transaction_id,
        )

    @strawberry.field
    def create_manual_match(self, info: Info, input: ManualMatchInput, actor: str | None = None) -> ReconciliationType:
        db = info.context.db
        with rollback_on_error(db):
            rec = ReconciliationService(db).create_manual_match(
                transaction_id=input.transaction_id,
                matched_type=input.matched_type.value,
                matched_id=input.matched_id,
                notes=input.notes,
                actor=actor,
            )
        return to_reconciliation_type(rec)

    @strawberry.field
    def confirm_reconciliation(self, info: Info, reconciliation_id: int, actor: str | None = None) -> ReconciliationType:
        db = info.context.db
        with rollback_on_error(db):
            rec = ReconciliationService(db).confirm(reconciliation_id, actor=actor)
        return to_reconciliation_type(rec)

    @strawberry.field
    def reject_reconciliation(
        self,
        info: Info,
        reconciliation_id: int,
        notes: str,
        actor: str | None = None,
    ) -> ReconciliationType:
        db = info.context.db
        with rollback_on_error(db):
            rec = ReconciliationService(db).reject(reconciliation_id, notes, actor=actor)
        return to_reconciliation_type(rec)


schema = strawberry.Schema(query=Query, mutation=Mutation)
graphql_router = GraphQLRouter(schema, context_getter=get_context)
