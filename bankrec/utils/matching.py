from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal

from bankrec.config import Settings, settings
from bankrec.models.models import BankTransaction, MatchedType, ReconciliationRule, RuleTransactionType


@dataclass(frozen=True)
class MatchCandidate:
    matched_type: MatchedType
    matched_id: str
    candidate_date: date
    candidate_amount: Decimal
    candidate_label: str
    candidate_status: str | None = None
    document_number: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.matched_type.value, self.matched_id)


@dataclass(frozen=True)
class MatchingConfig:
    """Tunable weights and tolerances. Scores are points out of 100."""

    amount_tolerance_pct: float = 5.0
    date_tolerance_days: int = 7
    confidence_threshold: float = 50.0
    matched_cutoff: float = 85.0
    amount_weight: float = 55.0
    date_weight: float = 25.0
    document_type_weight: float = 20.0
    closure_type_weight: float = 10.0
    rule_boost: float = 20.0
    reference_weight: float = 0.0
    rounding_epsilon: Decimal = Decimal("0.01")

    @classmethod
    def from_settings(cls, s: Settings | None = None) -> MatchingConfig:
        s = s or settings
        return cls(
            amount_tolerance_pct=s.amount_tolerance_pct,
            date_tolerance_days=s.date_tolerance_days,
            confidence_threshold=s.confidence_threshold,
            matched_cutoff=s.matched_cutoff,
            amount_weight=s.amount_weight,
            date_weight=s.date_weight,
            document_type_weight=s.document_type_weight,
            closure_type_weight=s.closure_type_weight,
            rule_boost=s.rule_boost,
            reference_weight=s.reference_weight,
        )

    def with_overrides(self, **overrides) -> MatchingConfig:
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass(frozen=True)
class ScoreBreakdown:
    amount_score: float
    date_score: float
    type_score: float
    rule_boost: float
    total: float
    amount_diff: Decimal
    days_apart: int
    in_band: bool
    rule_id: int | None = None
    reference_score: float = 0.0
    reasons: tuple[str, ...] = field(default_factory=tuple)

    def as_details(self) -> dict:
        return {
            "amount_score": self.amount_score,
            "date_score": self.date_score,
            "type_score": self.type_score,
            "rule_boost": self.rule_boost,
            "reference_score": self.reference_score,
            "amount_diff": str(self.amount_diff),
            "days_apart": self.days_apart,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: MatchCandidate
    breakdown: ScoreBreakdown

    @property
    def confidence(self) -> float:
        return self.breakdown.total

    @property
    def rule_id(self) -> int | None:
        return self.breakdown.rule_id


def to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def amount_score(txn_amount: Decimal, candidate_amount: Decimal, config: MatchingConfig) -> tuple[float, Decimal, bool]:
    """Returns (points, absolute difference, within tolerance band)."""
    diff = abs(abs(txn_amount) - abs(candidate_amount))
    if diff <= config.rounding_epsilon:
        return config.amount_weight, diff, True
    band = max(abs(txn_amount) * Decimal(str(config.amount_tolerance_pct)) / Decimal(100), config.rounding_epsilon)
    if diff >= band:
        return 0.0, diff, False
    return config.amount_weight * (1.0 - float(diff / band)), diff, True


def date_score(txn_date: date, candidate_date: date, config: MatchingConfig) -> tuple[float, int]:
    days = abs((txn_date - candidate_date).days)
    if days == 0:
        return config.date_weight, 0
    if days >= config.date_tolerance_days:
        return 0.0, days
    return config.date_weight * (1.0 - days / config.date_tolerance_days), days


def type_score(matched_type: MatchedType, config: MatchingConfig) -> float:
    # aggregate closures are weaker evidence than a specific document
    if matched_type == MatchedType.daily_closure:
        return config.closure_type_weight
    return config.document_type_weight


def _compact(text: str | None) -> str:
    return re.sub(r"[^0-9A-Z]", "", (text or "").upper())


def reference_matches(transaction: BankTransaction, document_number: str | None) -> bool:
    """True when the transaction reference or description carries the document number.

    Comparison ignores case, spaces and punctuation; numbers shorter than three
    characters never match.
    """
    number = _compact(document_number)
    if len(number) < 3:
        return False
    return number in _compact(transaction.reference) or number in _compact(transaction.description)


def rule_applies(transaction: BankTransaction, rule: ReconciliationRule, now: date | None = None) -> bool:
    if not rule.active:
        return False
    if rule.bank_account_id is not None and rule.bank_account_id != transaction.bank_account_id:
        return False
    if now is not None:
        if rule.valid_from is not None and now < rule.valid_from:
            return False
        if rule.valid_until is not None and now > rule.valid_until:
            return False

    amount = to_decimal(transaction.amount)
    if rule.transaction_type is not None:
        is_debit = amount < 0
        if rule.transaction_type == RuleTransactionType.debit and not is_debit:
            return False
        if rule.transaction_type == RuleTransactionType.credit and is_debit:
            return False

    abs_amount = abs(amount)
    if rule.amount_min is not None and abs_amount < to_decimal(rule.amount_min):
        return False
    if rule.amount_max is not None and abs_amount > to_decimal(rule.amount_max):
        return False

    if rule.description_pattern:
        if not re.search(rule.description_pattern, transaction.description or "", re.IGNORECASE):
            return False
    return True


def select_rule(
    transaction: BankTransaction,
    rules: Iterable[ReconciliationRule],
    now: date | None = None,
) -> ReconciliationRule | None:
    """First matching rule by priority (highest first), ties by id."""
    ordered = sorted(rules, key=lambda r: (-(r.priority or 0), r.id or 0))
    for rule in ordered:
        if rule_applies(transaction, rule, now):
            return rule
    return None


def score(
    transaction: BankTransaction,
    candidate: MatchCandidate,
    config: MatchingConfig | None = None,
    rule: ReconciliationRule | None = None,
) -> ScoreBreakdown:
    """Deterministic additive score in [0, 100].

    - Amount: full weight within the rounding epsilon, linear decay to zero at
      the tolerance band edge.
    - Date: full weight on the same day, linear decay to zero at the date
      tolerance.
    - Type prior: documents outweigh daily closures.
    - Reference: `reference_weight` points when the transaction reference or
      description carries the candidate's document number.
    - Rule boost: only when `rule` targets this candidate's type and the
      unboosted score reaches the rule's threshold.
    """
    cfg = config or MatchingConfig()
    reasons: list[str] = []

    a_score, diff, in_band = amount_score(to_decimal(transaction.amount), candidate.candidate_amount, cfg)
    if diff <= cfg.rounding_epsilon:
        reasons.append(f"Amount matches exactly ({abs(candidate.candidate_amount):.2f})")
    elif in_band:
        reasons.append(f"Amount within tolerance (diff: {diff:.2f})")
    else:
        reasons.append(f"Amount outside tolerance (diff: {diff:.2f})")

    d_score, days = date_score(transaction.transaction_date, candidate.candidate_date, cfg)
    if days == 0:
        reasons.append("Same date")
    elif d_score > 0:
        reasons.append(f"Date close ({days} days)")

    t_score = type_score(candidate.matched_type, cfg)

    r_score = 0.0
    if reference_matches(transaction, candidate.document_number):
        r_score = cfg.reference_weight
        reasons.append("Reference matches invoice number")

    base = a_score + d_score + t_score + r_score

    boost = 0.0
    rule_id = None
    if in_band and rule is not None and (rule.target_matched_type is None or rule.target_matched_type == candidate.matched_type):
        if base >= (rule.confidence_threshold or 0.0):
            boost = cfg.rule_boost
            rule_id = rule.id
            reasons.append(f"Rule '{rule.rule_name}' applied")

    total = round(_clamp(base + boost), 2)
    return ScoreBreakdown(
        amount_score=round(a_score, 2),
        date_score=round(d_score, 2),
        type_score=t_score,
        rule_boost=boost,
        total=total,
        amount_diff=diff,
        days_apart=days,
        in_band=in_band,
        rule_id=rule_id,
        reference_score=r_score,
        reasons=tuple(reasons),
    )


def rank(
    transaction: BankTransaction,
    candidates: Sequence[MatchCandidate],
    config: MatchingConfig | None = None,
    rules: Iterable[ReconciliationRule] = (),
    now: date | None = None,
) -> list[ScoredCandidate]:
    """Scores, filters and orders candidates for one transaction.

    Candidates outside the amount band or below the confidence threshold are
    dropped. Order: confidence desc, amount diff asc, date gap asc, then
    (matched_type, matched_id).
    """
    cfg = config or MatchingConfig()
    rule = select_rule(transaction, rules, now)

    scored: list[ScoredCandidate] = []
    for c in candidates:
        sb = score(transaction, c, cfg, rule)
        if not sb.in_band or sb.total < cfg.confidence_threshold:
            continue
        scored.append(ScoredCandidate(candidate=c, breakdown=sb))

    scored.sort(key=lambda s: (-s.confidence, s.breakdown.amount_diff, s.breakdown.days_apart, s.candidate.key))
    return scored
