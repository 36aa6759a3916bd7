from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Header, Query, status
from sqlalchemy.orm import Session

from bankrec.db.deps import get_db
from bankrec.models.models import ReconciliationStatus
from bankrec.schemas.reconciliation import (
    AutoMatchError,
    AutoMatchRequest,
    AutoMatchResultOut,
    ManualMatchRequest,
    ReconciliationOut,
    RejectRequest,
    ScoredCandidateOut,
)
from bankrec.services.auto_match import AutoMatchOrchestrator
from bankrec.services.reconciliation import ReconciliationService

router = APIRouter(prefix="/reconciliations", tags=["reconciliation"])


@router.post("/auto-match", response_model=AutoMatchResultOut, status_code=status.HTTP_200_OK)
async def auto_match(payload: AutoMatchRequest, db: Session = Depends(get_db)):
    result = await AutoMatchOrchestrator(db).run(
        payload.bank_account_id,
        payload.limit,
        after_transaction_id=payload.after_transaction_id,
    )
    return AutoMatchResultOut(
        created=[ReconciliationOut.model_validate(r) for r in result.created],
        skipped=result.skipped,
        errors=[AutoMatchError(transaction_id=e.transaction_id, error=e.error, message=e.message) for e in result.errors],
        processed=result.processed,
        cancelled=result.cancelled,
        last_transaction_id=result.last_transaction_id,
    )


@router.get("", response_model=list[ReconciliationOut])
def list_reconciliations(
    db: Session = Depends(get_db),
    bank_account_id: int | None = Query(default=None, alias="bankAccountId"),
    status_filter: ReconciliationStatus | None = Query(default=None, alias="status"),
):
    return ReconciliationService(db).list_reconciliations(bank_account_id=bank_account_id, status=status_filter)


@router.get("/search", response_model=list[ScoredCandidateOut])
async def search_candidates(
    db: Session = Depends(get_db),
    transaction_id: int = Query(..., alias="transactionId"),
    amount_tolerance_pct: float | None = Query(default=None, alias="amountTolerancePct"),
    date_tolerance_days: int | None = Query(default=None, alias="dateToleranceDays"),
    text: str | None = Query(default=None),
):
    ranked = await ReconciliationService(db).search_candidates(
        transaction_id=transaction_id,
        amount_tolerance_pct=amount_tolerance_pct,
        date_tolerance_days=date_tolerance_days,
        text=text,
    )
    return [ScoredCandidateOut.from_scored(sc) for sc in ranked]


@router.post("/manual", response_model=ReconciliationOut, status_code=status.HTTP_201_CREATED)
def create_manual_match(
    payload: ManualMatchRequest,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor-Id"),
):
    return ReconciliationService(db).create_manual_match(
        transaction_id=payload.transaction_id,
        matched_type=payload.matched_type,
        matched_id=payload.matched_id,
        notes=payload.notes,
        actor=actor,
    )


@router.get("/{reconciliation_id}", response_model=ReconciliationOut)
def get_reconciliation(reconciliation_id: int, db: Session = Depends(get_db)):
    return ReconciliationService(db).get(reconciliation_id)


@router.post("/{reconciliation_id}/confirm", response_model=ReconciliationOut)
def confirm_reconciliation(
    reconciliation_id: int,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor-Id"),
):
    return ReconciliationService(db).confirm(reconciliation_id, actor=actor)


@router.post("/{reconciliation_id}/reject", response_model=ReconciliationOut)
def reject_reconciliation(
    reconciliation_id: int,
    payload: RejectRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor-Id"),
):
    notes = payload.notes if payload is not None else ""
    return ReconciliationService(db).reject(reconciliation_id, notes, actor=actor)
