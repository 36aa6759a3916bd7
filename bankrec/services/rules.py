from __future__ import annotations

import re
from decimal import Decimal

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from bankrec.models.models import BankAccount, ReconciliationRule
from bankrec.schemas.rule import RuleCreate, RuleUpdate
from bankrec.services.errors import NotFound, ValidationError


def _money(value: float | None) -> Decimal | None:
    return None if value is None else Decimal(str(value))


class RuleService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _validate(self, rule: ReconciliationRule) -> None:
        if rule.description_pattern:
            try:
                re.compile(rule.description_pattern)
            except re.error as e:
                raise ValidationError(f"Invalid description pattern: {e}", {"pattern": rule.description_pattern}) from e
        if rule.amount_min is not None and rule.amount_max is not None and rule.amount_min > rule.amount_max:
            raise ValidationError("amount_min cannot exceed amount_max")
        if rule.valid_from and rule.valid_until and rule.valid_from > rule.valid_until:
            raise ValidationError("valid_from cannot be after valid_until")

    def create_rule(self, data: RuleCreate) -> ReconciliationRule:
        if data.bank_account_id is not None:
            account = self.db.get(BankAccount, data.bank_account_id)
            if not account:
                raise NotFound("BankAccount", data.bank_account_id)
            if account.centro_code != data.centro_code:
                raise ValidationError("Bank account belongs to another centre")

        rule = ReconciliationRule(
            centro_code=data.centro_code,
            bank_account_id=data.bank_account_id,
            rule_name=data.rule_name,
            transaction_type=data.transaction_type,
            description_pattern=data.description_pattern,
            amount_min=_money(data.amount_min),
            amount_max=_money(data.amount_max),
            target_matched_type=data.target_matched_type,
            confidence_threshold=data.confidence_threshold,
            priority=data.priority,
            active=data.active,
            valid_from=data.valid_from,
            valid_until=data.valid_until,
        )
        self._validate(rule)
        self.db.add(rule)
        self.db.flush()
        return rule

    def get_rule(self, rule_id: int) -> ReconciliationRule:
        rule = self.db.get(ReconciliationRule, rule_id)
        if not rule:
            raise NotFound("ReconciliationRule", rule_id)
        return rule

    def list_rules(
        self,
        *,
        centro_code: str | None = None,
        bank_account_id: int | None = None,
        active: bool | None = None,
    ) -> list[ReconciliationRule]:
        stmt = select(ReconciliationRule)
        if centro_code:
            stmt = stmt.where(ReconciliationRule.centro_code == centro_code)
        if bank_account_id is not None:
            stmt = stmt.where(
                or_(ReconciliationRule.bank_account_id.is_(None), ReconciliationRule.bank_account_id == bank_account_id)
            )
        if active is not None:
            stmt = stmt.where(ReconciliationRule.active.is_(active))
        stmt = stmt.order_by(ReconciliationRule.priority.desc(), ReconciliationRule.id)
        return list(self.db.scalars(stmt))

    def update_rule(self, rule_id: int, data: RuleUpdate) -> ReconciliationRule:
        rule = self.get_rule(rule_id)
        changes = data.model_dump(exclude_unset=True)
        for key, value in changes.items():
            if key in ("amount_min", "amount_max"):
                value = _money(value)
            setattr(rule, key, value)
        self._validate(rule)
        self.db.flush()
        return rule

    def delete_rule(self, rule_id: int) -> None:
        rule = self.get_rule(rule_id)
        self.db.delete(rule)
        self.db.flush()

    def applicable_rules(self, account: BankAccount) -> list[ReconciliationRule]:
        """Active rules of the account's centre that are global or bound to this account."""
        stmt = (
            select(ReconciliationRule)
            .where(
                and_(
                    ReconciliationRule.centro_code == account.centro_code,
                    ReconciliationRule.active.is_(True),
                    or_(ReconciliationRule.bank_account_id.is_(None), ReconciliationRule.bank_account_id == account.id),
                )
            )
            .order_by(ReconciliationRule.priority.desc(), ReconciliationRule.id)
        )
        return list(self.db.scalars(stmt))
