"""Ledger models: bank statement lines and internal financial transactions."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Dict, Any
from uuid import uuid4

from ..clock import utc_now
from .enums import StatementStatus


@dataclass
class StatementLine:
    """
    A bank statement line (extrato) produced by the bank-import pipeline.
    All monetary amounts are stored in CENTS (integer); credits are positive.
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    account_id: Optional[str] = None

    transaction_date: Optional[date] = None
    amount_cents: int = 0
    description: str = ""

    status: StatementStatus = StatementStatus.UNMATCHED

    created_at: datetime = field(default_factory=utc_now)

    @property
    def amount(self) -> float:
        """Return amount in standard units."""
        return self.amount_cents / 100.0

    @property
    def is_credit(self) -> bool:
        return self.amount_cents > 0

    @property
    def is_matched(self) -> bool:
        return self.status != StatementStatus.UNMATCHED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "org_id": self.org_id,
            "account_id": self.account_id,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "amount_cents": self.amount_cents,
            "amount": self.amount,
            "description": self.description,
            "status": self.status.value,
        }


@dataclass
class LedgerTransaction:
    """
    An internal financial transaction (transacao financeira).
    Inflows are positive, outflows negative, in CENTS.
    """
    id: str = field(default_factory=lambda: str(uuid4()))
    org_id: str = ""
    account_id: Optional[str] = None

    transaction_date: Optional[date] = None
    amount_cents: int = 0
    description: str = ""
    category: Optional[str] = None

    # Counting session that posted this entry, when it came from a cash count
    session_id: Optional[str] = None

    # Reconciliation state
    reconciled_suggestion_id: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)

    @property
    def amount(self) -> float:
        """Return amount in standard units."""
        return self.amount_cents / 100.0

    @property
    def is_inflow(self) -> bool:
        return self.amount_cents > 0

    @property
    def is_reconciled(self) -> bool:
        return self.reconciled_suggestion_id is not None

    @property
    def reconciliation_status(self) -> str:
        """Derived status: 'unreconciled' or 'reconciled_via:<suggestion-id>'."""
        if self.reconciled_suggestion_id is None:
            return "unreconciled"
        return f"reconciled_via:{self.reconciled_suggestion_id}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "org_id": self.org_id,
            "account_id": self.account_id,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "amount_cents": self.amount_cents,
            "amount": self.amount,
            "description": self.description,
            "category": self.category,
            "session_id": self.session_id,
            "reconciliation_status": self.reconciliation_status,
        }
