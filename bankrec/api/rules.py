from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from bankrec.db.deps import get_db
from bankrec.schemas.rule import RuleCreate, RuleOut, RuleUpdate
from bankrec.services.rules import RuleService

router = APIRouter(prefix="/reconciliation-rules", tags=["reconciliation-rules"])


@router.post("", response_model=RuleOut, status_code=status.HTTP_201_CREATED)
def create_rule(payload: RuleCreate, db: Session = Depends(get_db)):
    return RuleService(db).create_rule(payload)


@router.get("", response_model=list[RuleOut])
def list_rules(
    db: Session = Depends(get_db),
    centro_code: str | None = Query(default=None, alias="centroCode"),
    bank_account_id: int | None = Query(default=None, alias="bankAccountId"),
    active: bool | None = Query(default=None),
):
    return RuleService(db).list_rules(centro_code=centro_code, bank_account_id=bank_account_id, active=active)


@router.patch("/{rule_id}", response_model=RuleOut)
def update_rule(rule_id: int, payload: RuleUpdate, db: Session = Depends(get_db)):
    return RuleService(db).update_rule(rule_id, payload)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule(rule_id: int, db: Session = Depends(get_db)):
    RuleService(db).delete_rule(rule_id)
    return None
