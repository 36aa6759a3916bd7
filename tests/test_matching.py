from __future__ import annotations

import random
from datetime import date
from decimal import Decimal

import pytest

from bankrec.models.models import BankTransaction, MatchedType, ReconciliationRule, RuleTransactionType
from bankrec.utils.matching import (
    MatchCandidate,
    MatchingConfig,
    date_score,
    rank,
    reference_matches,
    rule_applies,
    score,
    select_rule,
)

TXN_DATE = date(2024, 3, 15)


def txn(amount: str, when: date = TXN_DATE, description: str = "", account_id: int = 1) -> BankTransaction:
    return BankTransaction(id=1, bank_account_id=account_id, transaction_date=when, amount=Decimal(amount), description=description)


def cand(mtype: MatchedType, mid: str, amount: str, when: date = TXN_DATE, label: str = "") -> MatchCandidate:
    return MatchCandidate(matched_type=mtype, matched_id=mid, candidate_date=when, candidate_amount=Decimal(amount), candidate_label=label)


def rule(rule_id: int = 1, **kwargs) -> ReconciliationRule:
    kwargs.setdefault("active", True)
    kwargs.setdefault("priority", 0)
    kwargs.setdefault("confidence_threshold", 50.0)
    return ReconciliationRule(id=rule_id, centro_code="C1", rule_name=f"rule-{rule_id}", **kwargs)


def test_exact_amount_and_date_ranks_first_with_full_confidence():
    t = txn("-1210.00")
    ranked = rank(t, [cand(MatchedType.invoice_received, "10", "-1210.00")])

    assert len(ranked) == 1
    assert ranked[0].candidate.matched_id == "10"
    assert ranked[0].confidence >= 95
    assert ranked[0].confidence == 100.0
    assert "Same date" in ranked[0].breakdown.reasons


def test_near_match_lands_in_suggested_band():
    t = txn("-1210.00")
    ranked = rank(t, [cand(MatchedType.invoice_received, "11", "-1200.00", date(2024, 3, 17))])

    assert len(ranked) == 1
    conf = ranked[0].confidence
    assert 50 <= conf < 85
    assert conf == pytest.approx(83.77, abs=0.01)


def test_amount_outside_tolerance_is_discarded():
    t = txn("500.00")
    c = cand(MatchedType.invoice_issued, "12", "800.00")

    assert rank(t, [c]) == []
    sb = score(t, c)
    assert sb.in_band is False
    assert sb.amount_score == 0.0


def test_amount_within_rounding_epsilon_counts_as_exact():
    sb = score(txn("1210.00"), cand(MatchedType.entry, "1", "1210.01"))
    assert sb.amount_score == 55.0
    assert sb.total == 100.0


def test_ranking_is_deterministic_regardless_of_input_order():
    t = txn("-1000.00")
    candidates = [
        cand(MatchedType.invoice_received, "1", "-1000.00"),
        cand(MatchedType.invoice_received, "2", "-990.00", date(2024, 3, 16)),
        cand(MatchedType.entry, "3", "-1000.00", date(2024, 3, 14)),
        cand(MatchedType.daily_closure, "4", "-1000.00"),
        cand(MatchedType.entry, "5", "-1020.00"),
    ]
    expected = rank(t, candidates)
    for seed in range(5):
        shuffled = list(candidates)
        random.Random(seed).shuffle(shuffled)
        assert rank(t, shuffled) == expected


def test_exact_match_is_never_outscored():
    t = txn("250.00")
    exact = cand(MatchedType.invoice_issued, "9", "250.00")
    others = [
        cand(MatchedType.invoice_issued, "1", "249.00"),
        cand(MatchedType.entry, "2", "250.00", date(2024, 3, 16)),
        cand(MatchedType.daily_closure, "3", "250.00"),
    ]
    ranked = rank(t, others + [exact])
    assert ranked[0].candidate == exact
    assert all(ranked[0].confidence >= s.confidence for s in ranked)


def test_ties_are_broken_by_type_then_id():
    t = txn("-80.00")
    ranked = rank(t, [cand(MatchedType.invoice_received, "3", "-80.00"), cand(MatchedType.entry, "7", "-80.00")])

    assert [s.confidence for s in ranked] == [100.0, 100.0]
    assert [s.candidate.key for s in ranked] == [("entry", "7"), ("invoice_received", "3")]


def test_daily_closure_scores_below_a_specific_document():
    t = txn("640.00")
    ranked = rank(t, [cand(MatchedType.daily_closure, "1", "640.00"), cand(MatchedType.invoice_issued, "2", "640.00")])

    assert ranked[0].candidate.matched_type == MatchedType.invoice_issued
    assert ranked[1].confidence == 90.0


def test_candidates_below_threshold_are_dropped_unless_threshold_lowered():
    t = txn("-1210.00")
    weak = cand(MatchedType.invoice_received, "1", "-1160.00", date(2024, 3, 21))

    assert score(t, weak).total < 50
    assert rank(t, [weak]) == []
    assert len(rank(t, [weak], MatchingConfig(confidence_threshold=30.0))) == 1


def test_zero_date_tolerance_only_rewards_same_day():
    cfg = MatchingConfig(date_tolerance_days=0)
    assert date_score(TXN_DATE, TXN_DATE, cfg) == (25.0, 0)
    assert date_score(TXN_DATE, date(2024, 3, 16), cfg) == (0.0, 1)


def test_wider_tolerance_keeps_far_candidate():
    t = txn("500.00")
    c = cand(MatchedType.invoice_issued, "1", "540.00")

    assert rank(t, [c]) == []
    assert len(rank(t, [c], MatchingConfig(amount_tolerance_pct=20.0))) == 1


def test_with_overrides_ignores_missing_values():
    cfg = MatchingConfig().with_overrides(amount_tolerance_pct=None, date_tolerance_days=3)
    assert cfg.amount_tolerance_pct == 5.0
    assert cfg.date_tolerance_days == 3


# ---------------------------
# rules
# ---------------------------


def test_rule_boost_applies_and_records_rule():
    t = txn("-1210.00", description="RECIBO IBERDROLA CLIENTES")
    r = rule(4, description_pattern="iberdrola", target_matched_type=MatchedType.invoice_received)
    ranked = rank(t, [cand(MatchedType.invoice_received, "11", "-1200.00", date(2024, 3, 17))], rules=[r])

    assert ranked[0].confidence == 100.0
    assert ranked[0].rule_id == 4
    assert ranked[0].breakdown.rule_boost == 20.0
    assert "Rule 'rule-4' applied" in ranked[0].breakdown.reasons


def test_rule_does_not_boost_other_families():
    t = txn("-1210.00", description="IBERDROLA")
    r = rule(description_pattern="iberdrola", target_matched_type=MatchedType.invoice_received)
    sb = score(t, cand(MatchedType.entry, "1", "-1200.00", date(2024, 3, 17)), rule=r)

    assert sb.rule_boost == 0.0
    assert sb.rule_id is None


def test_rule_needs_base_score_to_reach_its_threshold():
    t = txn("-1210.00", description="IBERDROLA")
    r = rule(description_pattern="iberdrola", confidence_threshold=90.0)
    sb = score(t, cand(MatchedType.invoice_received, "1", "-1200.00", date(2024, 3, 17)), rule=r)

    assert sb.rule_boost == 0.0
    assert sb.total == pytest.approx(83.77, abs=0.01)


def test_rule_never_rescues_out_of_band_candidate():
    t = txn("500.00", description="transfer")
    r = rule(description_pattern="transfer", confidence_threshold=0.0)

    assert rank(t, [cand(MatchedType.invoice_issued, "1", "800.00")], rules=[r]) == []


def test_select_rule_prefers_priority_then_id():
    t = txn("-50.00", description="Card payment")
    low = rule(1, priority=1)
    high_b = rule(3, priority=5)
    high_a = rule(2, priority=5)

    assert select_rule(t, [low, high_b, high_a]).id == 2


def test_rule_filters():
    debit = txn("-120.00", description="Pago Makro")
    credit = txn("120.00", description="Abono TPV")
    today = date(2024, 3, 15)

    assert rule_applies(debit, rule(transaction_type=RuleTransactionType.debit))
    assert not rule_applies(credit, rule(transaction_type=RuleTransactionType.debit))
    assert rule_applies(credit, rule(transaction_type=RuleTransactionType.credit))

    assert rule_applies(debit, rule(amount_min=Decimal("100"), amount_max=Decimal("150")))
    assert not rule_applies(debit, rule(amount_min=Decimal("130")))

    assert rule_applies(debit, rule(description_pattern="^pago\\s+makro$"))
    assert not rule_applies(credit, rule(description_pattern="makro"))

    assert not rule_applies(debit, rule(active=False))
    assert not rule_applies(debit, rule(bank_account_id=99))
    assert not rule_applies(debit, rule(valid_until=date(2024, 3, 1)), today)
    assert not rule_applies(debit, rule(valid_from=date(2024, 4, 1)), today)
    assert rule_applies(debit, rule(valid_from=date(2024, 3, 1), valid_until=date(2024, 3, 31)), today)


def test_reference_match_is_reported_without_changing_default_score():
    t = txn("-1210.00", description="TRANSF. PAGO FAC 2024-0031")
    c = MatchCandidate(
        matched_type=MatchedType.invoice_received,
        matched_id="11",
        candidate_date=date(2024, 3, 17),
        candidate_amount=Decimal("-1200.00"),
        candidate_label="Iberdrola FAC-2024/0031",
        document_number="FAC-2024/0031",
    )

    sb = score(t, c)

    assert "Reference matches invoice number" in sb.reasons
    assert sb.reference_score == 0.0
    assert sb.total == pytest.approx(83.77, abs=0.01)
    assert sb.as_details()["reference_score"] == 0.0


def test_reference_weight_adds_points():
    t = BankTransaction(id=1, bank_account_id=1, transaction_date=TXN_DATE, amount=Decimal("-1210.00"), description="", reference="fac20240031")
    c = MatchCandidate(
        matched_type=MatchedType.invoice_received,
        matched_id="11",
        candidate_date=date(2024, 3, 17),
        candidate_amount=Decimal("-1200.00"),
        candidate_label="",
        document_number="FAC-2024/0031",
    )

    ranked = rank(t, [c], MatchingConfig(reference_weight=10))

    assert ranked[0].breakdown.reference_score == 10
    assert ranked[0].confidence == pytest.approx(93.77, abs=0.01)


@pytest.mark.parametrize(
    "reference, description, number, expected",
    [
        ("F-001", "", "F-001", True),
        (None, "pago factura f001 makro", "F-001", True),
        ("F-002", "pago factura", "F-001", False),
        ("A", "A", "A", False),
        ("F-001", "", None, False),
    ],
)
def test_reference_matches(reference, description, number, expected):
    t = BankTransaction(id=1, bank_account_id=1, transaction_date=TXN_DATE, amount=Decimal("-1.00"), description=description, reference=reference)
    assert reference_matches(t, number) is expected
