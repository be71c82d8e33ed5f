"""
ORM tables for the ledger, suggestions, links, counting sessions and audit log.

Amounts are integer cents. Enum-valued columns store the enum ``value``.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..clock import utc_now
from ..models.enums import (
    StatementStatus,
    SuggestionStatus,
    SuggestionOrigin,
    SessionStatus,
    CompareLevel,
)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Declarative base for all ORM tables."""


class StatementLineRow(Base):
    __tablename__ = "statement_lines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    transaction_date: Mapped[date] = mapped_column(Date, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(
        String(20), default=StatementStatus.UNMATCHED.value, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class TransactionRow(Base):
    __tablename__ = "ledger_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    transaction_date: Mapped[date] = mapped_column(Date, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    reconciled_suggestion_id: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class SuggestionRow(Base):
    __tablename__ = "suggestions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(64), index=True)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    shape: Mapped[str] = mapped_column(String(20))
    statement_ids: Mapped[List[str]] = mapped_column(JSON)
    transaction_ids: Mapped[List[str]] = mapped_column(JSON)
    score: Mapped[float] = mapped_column(Float)
    features: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), default=SuggestionStatus.PENDING.value, index=True
    )
    origin: Mapped[str] = mapped_column(String(20), default=SuggestionOrigin.RULE.value)
    model_version: Mapped[str] = mapped_column(String(20), default="v1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    decision_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ReconciliationLinkRow(Base):
    __tablename__ = "reconciliation_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    suggestion_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("suggestions.id"), index=True
    )
    shape: Mapped[str] = mapped_column(String(20))
    statement_line_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("statement_lines.id"), index=True
    )
    transaction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ledger_transactions.id"), index=True
    )
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class AuditLogRow(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    action: Mapped[str] = mapped_column(String(40), index=True)
    actor_id: Mapped[str] = mapped_column(String(64))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    org_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subject_type: Mapped[str] = mapped_column(String(40))
    subject_id: Mapped[str] = mapped_column(String(36), index=True)
    message: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)


class CountingSessionRow(Base):
    __tablename__ = "counting_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    org_id: Mapped[str] = mapped_column(String(64))
    branch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    service_date: Mapped[date] = mapped_column(Date)
    period: Mapped[str] = mapped_column(String(32))
    event_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=SessionStatus.OPEN.value)
    tolerance_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    compare_level: Mapped[str] = mapped_column(String(20), default=CompareLevel.CATEGORY.value)
    variance_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    variance_by_category: Mapped[Dict[str, int]] = mapped_column(JSON, default=dict)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


_ACTIVE_SESSION_STATES = [s.value for s in SessionStatus.active()]

# At most one active session per (org, branch, service date, period).
Index(
    "uq_counting_sessions_active_key",
    CountingSessionRow.org_id,
    func.coalesce(CountingSessionRow.branch_id, ""),
    CountingSessionRow.service_date,
    CountingSessionRow.period,
    unique=True,
    sqlite_where=CountingSessionRow.status.in_(_ACTIVE_SESSION_STATES),
    postgresql_where=CountingSessionRow.status.in_(_ACTIVE_SESSION_STATES),
)


class CountSubmissionRow(Base):
    __tablename__ = "count_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("counting_sessions.id"), index=True
    )
    counter_id: Mapped[str] = mapped_column(String(64))
    sequence: Mapped[int] = mapped_column(Integer)
    values_by_category: Mapped[Dict[str, int]] = mapped_column(JSON)
    total_cents: Mapped[int] = mapped_column(BigInteger)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    discarded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
