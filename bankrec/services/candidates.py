from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from bankrec.config import settings
from bankrec.models.models import (
    AccountingEntry,
    BankAccount,
    BankReconciliation,
    DailyClosure,
    InvoiceIssued,
    InvoiceReceived,
    MatchedType,
    ReconciliationStatus,
)
from bankrec.services.errors import UpstreamUnavailable
from bankrec.utils.matching import MatchCandidate

logger = logging.getLogger(__name__)

DOCUMENT_FAMILIES = (
    MatchedType.invoice_received,
    MatchedType.invoice_issued,
    MatchedType.entry,
    MatchedType.daily_closure,
)
VOID_STATUSES = frozenset({"void", "cancelled", "canceled", "rejected"})


@dataclass(frozen=True)
class AccountScope:
    centro_code: str
    bank_account_id: int

    @classmethod
    def for_account(cls, account: BankAccount) -> AccountScope:
        return cls(centro_code=account.centro_code, bank_account_id=account.id)


def sign_of(amount: Decimal) -> int:
    if amount > 0:
        return 1
    if amount < 0:
        return -1
    return 0


def date_window(anchor: date, tolerance_days: int) -> tuple[date, date]:
    delta = timedelta(days=tolerance_days)
    return anchor - delta, anchor + delta


def families_for_sign(transaction_sign: int) -> tuple[MatchedType, ...]:
    # inflows settle receivables, outflows settle payables
    if transaction_sign > 0:
        return (MatchedType.invoice_issued, MatchedType.entry, MatchedType.daily_closure)
    if transaction_sign < 0:
        return (MatchedType.invoice_received, MatchedType.entry, MatchedType.daily_closure)
    return DOCUMENT_FAMILIES


def signed_amount(family: MatchedType, amount: Decimal) -> Decimal:
    """Invoice totals arrive unsigned; give them the bank-side sign."""
    if family == MatchedType.invoice_received:
        return -abs(amount)
    if family == MatchedType.invoice_issued:
        return abs(amount)
    return amount


def candidate_from_row(family: MatchedType, row: dict[str, Any]) -> MatchCandidate:
    """Builds a candidate from a collaborator row `{id, date, amount, label, status, document_number}`."""
    return MatchCandidate(
        matched_type=family,
        matched_id=str(row["id"]),
        candidate_date=date.fromisoformat(str(row["date"])[:10]),
        candidate_amount=signed_amount(family, Decimal(str(row["amount"]))),
        candidate_label=row.get("label") or "",
        candidate_status=row.get("status"),
        document_number=row.get("document_number"),
    )


class CandidateSource:
    """Read access to one document family."""

    family: MatchedType

    async def list(self, scope: AccountScope, date_from: date, date_to: date) -> list[MatchCandidate]:
        raise NotImplementedError


class SqlCandidateSource(CandidateSource):
    """Reads one family from the local tables.

    Each lookup runs in a worker thread on its own short-lived session.
    """

    def __init__(self, session_factory: Callable[[], Session], family: MatchedType) -> None:
        self.session_factory = session_factory
        self.family = family

    def _rows(self, db: Session, scope: AccountScope, date_from: date, date_to: date) -> list[MatchCandidate]:
        if self.family == MatchedType.invoice_received:
            stmt = select(InvoiceReceived).where(
                and_(
                    InvoiceReceived.centro_code == scope.centro_code,
                    InvoiceReceived.invoice_date >= date_from,
                    InvoiceReceived.invoice_date <= date_to,
                )
            )
            return [
                MatchCandidate(
                    matched_type=self.family,
                    matched_id=str(inv.id),
                    candidate_date=inv.invoice_date,
                    candidate_amount=signed_amount(self.family, Decimal(inv.total)),
                    candidate_label=" ".join(p for p in (inv.supplier_name, inv.invoice_number) if p),
                    candidate_status=inv.status,
                    document_number=inv.invoice_number,
                )
                for inv in db.scalars(stmt)
            ]
        if self.family == MatchedType.invoice_issued:
            stmt = select(InvoiceIssued).where(
                and_(
                    InvoiceIssued.centro_code == scope.centro_code,
                    InvoiceIssued.invoice_date >= date_from,
                    InvoiceIssued.invoice_date <= date_to,
                )
            )
            return [
                MatchCandidate(
                    matched_type=self.family,
                    matched_id=str(inv.id),
                    candidate_date=inv.invoice_date,
                    candidate_amount=signed_amount(self.family, Decimal(inv.total)),
                    candidate_label=" ".join(p for p in (inv.customer_name, inv.invoice_number) if p),
                    candidate_status=inv.status,
                    document_number=inv.invoice_number,
                )
                for inv in db.scalars(stmt)
            ]
        if self.family == MatchedType.entry:
            stmt = select(AccountingEntry).where(
                and_(
                    AccountingEntry.centro_code == scope.centro_code,
                    AccountingEntry.entry_date >= date_from,
                    AccountingEntry.entry_date <= date_to,
                )
            )
            return [
                MatchCandidate(
                    matched_type=self.family,
                    matched_id=str(e.id),
                    candidate_date=e.entry_date,
                    candidate_amount=Decimal(e.amount),
                    candidate_label=e.description,
                    candidate_status=e.status,
                )
                for e in db.scalars(stmt)
            ]
        if self.family == MatchedType.daily_closure:
            stmt = select(DailyClosure).where(
                and_(
                    DailyClosure.centro_code == scope.centro_code,
                    DailyClosure.closure_date >= date_from,
                    DailyClosure.closure_date <= date_to,
                )
            )
            return [
                MatchCandidate(
                    matched_type=self.family,
                    matched_id=str(c.id),
                    candidate_date=c.closure_date,
                    candidate_amount=Decimal(c.total_amount),
                    candidate_label=f"Daily closure {c.closure_date.isoformat()}",
                    candidate_status=c.status,
                )
                for c in db.scalars(stmt)
            ]
        raise ValueError(f"Unsupported candidate family: {self.family}")

    def _read(self, scope: AccountScope, date_from: date, date_to: date) -> list[MatchCandidate]:
        with self.session_factory() as db:
            return self._rows(db, scope, date_from, date_to)

    async def list(self, scope: AccountScope, date_from: date, date_to: date) -> list[MatchCandidate]:
        try:
            return await asyncio.to_thread(self._read, scope, date_from, date_to)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable(f"Could not read {self.family.value} candidates", {"family": self.family.value}) from e


class HttpCandidateSource(CandidateSource):
    PATHS = {
        MatchedType.invoice_received: "invoices-received",
        MatchedType.invoice_issued: "invoices-issued",
        MatchedType.entry: "accounting-entries",
        MatchedType.daily_closure: "daily-closures",
    }

    def __init__(
        self,
        family: MatchedType,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.family = family
        self._base_url = (base_url or settings.candidate_api_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.candidate_api_timeout_seconds
        self._client = client

    async def _get(self, url: str, params: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, params=params)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.get(url, params=params)

    async def list(self, scope: AccountScope, date_from: date, date_to: date) -> list[MatchCandidate]:
        url = f"{self._base_url}/{self.PATHS[self.family]}"
        params = {
            "centro_code": scope.centro_code,
            "bank_account_id": scope.bank_account_id,
            "date_from": date_from.isoformat(),
            "date_to": date_to.isoformat(),
        }
        try:
            r = await self._get(url, params)
            if r.status_code == 404:
                return []
            r.raise_for_status()
            rows = r.json() or []
            return [candidate_from_row(self.family, row) for row in rows]
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Candidate API unavailable for {self.family.value}", {"url": url}) from e
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise UpstreamUnavailable(f"Malformed {self.family.value} payload from candidate API", {"url": url}) from e


class CandidateRepository:
    def __init__(self, session_factory: Callable[[], Session], sources: Sequence[CandidateSource]) -> None:
        self.session_factory = session_factory
        self.sources = list(sources)

    def _confirmed_keys(self, candidates: Sequence[MatchCandidate]) -> set[tuple[str, str]]:
        if not candidates:
            return set()
        ids = {c.matched_id for c in candidates}
        stmt = select(BankReconciliation.matched_type, BankReconciliation.matched_id).where(
            and_(
                BankReconciliation.reconciliation_status == ReconciliationStatus.confirmed,
                BankReconciliation.matched_type.in_(DOCUMENT_FAMILIES),
                BankReconciliation.matched_id.in_(ids),
            )
        )
        with self.session_factory() as db:
            return {(mt.value, mid) for mt, mid in db.execute(stmt)}

    async def _blocked_keys(self, candidates: Sequence[MatchCandidate]) -> set[tuple[str, str]]:
        try:
            return await asyncio.to_thread(self._confirmed_keys, candidates)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable("Could not read confirmed reconciliations") from e

    async def find_candidates(
        self,
        scope: AccountScope,
        date_from: date,
        date_to: date,
        transaction_sign: int,
        exclude: Iterable[tuple[str, str]] = (),
    ) -> list[MatchCandidate]:
        families = families_for_sign(transaction_sign)
        sources = [s for s in self.sources if s.family in families]
        batches = await asyncio.gather(*(s.list(scope, date_from, date_to) for s in sources))

        found = [c for batch in batches for c in batch]
        found = [c for c in found if (c.candidate_status or "").lower() not in VOID_STATUSES]

        blocked = (await self._blocked_keys(found)) | set(exclude)
        found = [c for c in found if c.key not in blocked]

        found.sort(key=lambda c: (DOCUMENT_FAMILIES.index(c.matched_type), c.candidate_date, c.matched_id))
        logger.debug(
            "Found %d candidates for account %s between %s and %s",
            len(found),
            scope.bank_account_id,
            date_from,
            date_to,
        )
        return found


def build_candidate_repository(db: Session) -> CandidateRepository:
    # lookups read on their own sessions against the caller's engine
    factory = sessionmaker(bind=db.get_bind(), class_=Session, expire_on_commit=False, autoflush=False)
    source = (settings.candidate_source or "database").lower()
    if source == "http":
        return CandidateRepository(factory, [HttpCandidateSource(f) for f in DOCUMENT_FAMILIES])
    return CandidateRepository(factory, [SqlCandidateSource(factory, f) for f in DOCUMENT_FAMILIES])
