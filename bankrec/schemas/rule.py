from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from bankrec.models.models import MatchedType, RuleTransactionType
from bankrec.schemas.common import CamelInput, OrmBase


class RuleCreate(CamelInput):
    centro_code: str = Field(min_length=1, max_length=32)
    bank_account_id: int | None = None
    rule_name: str = Field(min_length=1, max_length=200)
    transaction_type: RuleTransactionType | None = None
    description_pattern: str | None = Field(default=None, max_length=500)
    amount_min: float | None = Field(default=None, ge=0)
    amount_max: float | None = Field(default=None, ge=0)
    target_matched_type: MatchedType | None = None
    confidence_threshold: float = Field(default=50.0, ge=0, le=100)
    priority: int = 0
    active: bool = True
    valid_from: date | None = None
    valid_until: date | None = None


class RuleUpdate(CamelInput):
    rule_name: str | None = Field(default=None, min_length=1, max_length=200)
    transaction_type: RuleTransactionType | None = None
    description_pattern: str | None = Field(default=None, max_length=500)
    amount_min: float | None = Field(default=None, ge=0)
    amount_max: float | None = Field(default=None, ge=0)
    target_matched_type: MatchedType | None = None
    confidence_threshold: float | None = Field(default=None, ge=0, le=100)
    priority: int | None = None
    active: bool | None = None
    valid_from: date | None = None
    valid_until: date | None = None


class RuleOut(OrmBase):
    id: int
    centro_code: str
    bank_account_id: int | None
    rule_name: str
    transaction_type: RuleTransactionType | None
    description_pattern: str | None
    amount_min: float | None
    amount_max: float | None
    target_matched_type: MatchedType | None
    confidence_threshold: float
    priority: int
    active: bool
    valid_from: date | None
    valid_until: date | None
    created_at: datetime
    updated_at: datetime
