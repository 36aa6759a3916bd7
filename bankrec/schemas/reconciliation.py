from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from bankrec.config import settings
from bankrec.models.models import MatchedType, ReconciliationStatus
from bankrec.schemas.common import CamelInput, OrmBase
from bankrec.utils.matching import ScoredCandidate


class ReconciliationOut(OrmBase):
    id: int
    bank_transaction_id: int
    matched_type: MatchedType | None
    matched_id: str | None
    reconciliation_status: ReconciliationStatus
    confidence_score: float | None
    rule_id: int | None
    reconciled_by: str | None
    reconciled_at: datetime | None
    notes: str | None
    match_details: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


class AutoMatchRequest(CamelInput):
    bank_account_id: int
    limit: int = Field(default_factory=lambda: settings.auto_match_default_limit)
    after_transaction_id: int | None = None


class AutoMatchError(BaseModel):
    transaction_id: int
    error: str
    message: str


class AutoMatchResultOut(BaseModel):
    created: list[ReconciliationOut]
    skipped: int
    errors: list[AutoMatchError]
    processed: int
    cancelled: bool = False
    last_transaction_id: int | None = None


class ManualMatchRequest(CamelInput):
    transaction_id: int
    matched_type: str
    matched_id: str | int
    notes: str | None = None


class RejectRequest(CamelInput):
    notes: str = ""


class CandidateOut(OrmBase):
    matched_type: MatchedType
    matched_id: str
    candidate_date: date
    candidate_amount: float
    candidate_label: str
    candidate_status: str | None
    document_number: str | None


class ScoredCandidateOut(BaseModel):
    candidate: CandidateOut
    confidence: float
    amount_score: float
    date_score: float
    type_score: float
    rule_boost: float
    reference_score: float
    rule_id: int | None
    reasons: list[str]

    @classmethod
    def from_scored(cls, sc: ScoredCandidate) -> ScoredCandidateOut:
        sb = sc.breakdown
        return cls(
            candidate=CandidateOut.model_validate(sc.candidate),
            confidence=sc.confidence,
            amount_score=sb.amount_score,
            date_score=sb.date_score,
            type_score=sb.type_score,
            rule_boost=sb.rule_boost,
            reference_score=sb.reference_score,
            rule_id=sb.rule_id,
            reasons=list(sb.reasons),
        )
