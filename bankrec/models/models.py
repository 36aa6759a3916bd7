from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bankrec.db.base import Base


class TransactionStatus(str, enum.Enum):
    pending = "pending"
    reconciled = "reconciled"


class MatchedType(str, enum.Enum):
    invoice_received = "invoice_received"
    invoice_issued = "invoice_issued"
    entry = "entry"
    daily_closure = "daily_closure"
    manual = "manual"


class ReconciliationStatus(str, enum.Enum):
    pending = "pending"
    suggested = "suggested"
    matched = "matched"
    confirmed = "confirmed"
    rejected = "rejected"


class RuleTransactionType(str, enum.Enum):
    debit = "debit"
    credit = "credit"


ACTIVE_STATUSES = (ReconciliationStatus.suggested, ReconciliationStatus.matched, ReconciliationStatus.confirmed)


class BankAccount(Base):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    centro_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)
    iban: Mapped[str | None] = mapped_column(String(34), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    transactions: Mapped[list[BankTransaction]] = relationship(back_populates="bank_account", cascade="all, delete-orphan")  # type: ignore[name-defined]


class BankTransaction(Base):
    __tablename__ = "bank_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bank_account_id: Mapped[int] = mapped_column(ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), nullable=False, default=TransactionStatus.pending, server_default=TransactionStatus.pending.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    bank_account: Mapped[BankAccount] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("ix_tx_account_status_date", "bank_account_id", "status", "transaction_date"),
    )


class ReconciliationRule(Base):
    __tablename__ = "reconciliation_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    centro_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    bank_account_id: Mapped[int | None] = mapped_column(ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=True)
    rule_name: Mapped[str] = mapped_column(String(200), nullable=False)

    transaction_type: Mapped[RuleTransactionType | None] = mapped_column(Enum(RuleTransactionType), nullable=True)
    description_pattern: Mapped[str | None] = mapped_column(String(500), nullable=True)
    amount_min: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    amount_max: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    target_matched_type: Mapped[MatchedType | None] = mapped_column(Enum(MatchedType), nullable=True)
    confidence_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=50.0, server_default="50")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    valid_from: Mapped[date | None] = mapped_column(Date, nullable=True)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_rule_centro_active", "centro_code", "active"),
    )


class BankReconciliation(Base):
    __tablename__ = "bank_reconciliations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bank_transaction_id: Mapped[int] = mapped_column(ForeignKey("bank_transactions.id", ondelete="CASCADE"), nullable=False, index=True)

    matched_type: Mapped[MatchedType | None] = mapped_column(Enum(MatchedType), nullable=True)
    matched_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(ReconciliationStatus),
        nullable=False,
        default=ReconciliationStatus.pending,
        server_default=ReconciliationStatus.pending.value,
    )
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    rule_id: Mapped[int | None] = mapped_column(ForeignKey("reconciliation_rules.id", ondelete="SET NULL"), nullable=True)
    reconciled_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    match_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    bank_transaction: Mapped[BankTransaction] = relationship()

    __table_args__ = (
        # one live reconciliation per transaction; rejected rows are history
        Index(
            "uq_reconciliation_active_tx",
            "bank_transaction_id",
            unique=True,
            sqlite_where=text("reconciliation_status != 'rejected'"),
            postgresql_where=text("reconciliation_status != 'rejected'"),
        ),
        Index("ix_reconciliation_status", "reconciliation_status"),
        Index("ix_reconciliation_matched", "matched_type", "matched_id"),
    )


# ---------------------------
# Candidate documents (owned by the invoicing/accounting modules; read-only here)
# ---------------------------


class InvoiceReceived(Base):
    __tablename__ = "invoices_received"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    centro_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    supplier_name: Mapped[str] = mapped_column(String(200), nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")

    __table_args__ = (
        UniqueConstraint("centro_code", "supplier_name", "invoice_number", name="uq_invoice_received_number"),
        Index("ix_invoices_received_centro_date", "centro_code", "invoice_date"),
    )


class InvoiceIssued(Base):
    __tablename__ = "invoices_issued"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    centro_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="issued", server_default="issued")

    __table_args__ = (
        Index("ix_invoices_issued_centro_date", "centro_code", "invoice_date"),
    )


class AccountingEntry(Base):
    __tablename__ = "accounting_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    centro_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="posted", server_default="posted")

    __table_args__ = (
        Index("ix_entries_centro_date", "centro_code", "entry_date"),
    )


class DailyClosure(Base):
    __tablename__ = "daily_closures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    centro_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    closure_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="closed", server_default="closed")

    __table_args__ = (
        UniqueConstraint("centro_code", "closure_date", name="uq_daily_closure_centro_date"),
    )
