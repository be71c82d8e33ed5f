"""
Ledger store: statement lines and financial transactions.

Status changes go through compare-and-set updates so that two operators
racing on the same rows cannot both link them.
"""

from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.tables import StatementLineRow, TransactionRow
from ..exceptions import NotFoundError
from ..models import (
    Scope,
    StatementLine,
    StatementStatus,
    LedgerTransaction,
)


def _line_from_row(row: StatementLineRow) -> StatementLine:
    return StatementLine(
        id=row.id,
        org_id=row.org_id,
        account_id=row.account_id,
        transaction_date=row.transaction_date,
        amount_cents=row.amount_cents,
        description=row.description or "",
        status=StatementStatus(row.status),
        created_at=row.created_at,
    )


def _transaction_from_row(row: TransactionRow) -> LedgerTransaction:
    return LedgerTransaction(
        id=row.id,
        org_id=row.org_id,
        account_id=row.account_id,
        transaction_date=row.transaction_date,
        amount_cents=row.amount_cents,
        description=row.description or "",
        category=row.category,
        session_id=row.session_id,
        reconciled_suggestion_id=row.reconciled_suggestion_id,
        created_at=row.created_at,
    )


class LedgerStore:
    """Session-bound access to statement lines and transactions."""

    def __init__(self, session: Session):
        self.session = session

    # Ingestion seams used by the bank-import and ledger-entry collaborators

    def add_statement_line(self, line: StatementLine) -> StatementLine:
        self.session.add(StatementLineRow(
            id=line.id,
            org_id=line.org_id,
            account_id=line.account_id,
            transaction_date=line.transaction_date,
            amount_cents=line.amount_cents,
            description=line.description,
            status=line.status.value,
            created_at=line.created_at,
        ))
        self.session.flush()
        return line

    def add_transaction(self, txn: LedgerTransaction) -> LedgerTransaction:
        self.session.add(TransactionRow(
            id=txn.id,
            org_id=txn.org_id,
            account_id=txn.account_id,
            transaction_date=txn.transaction_date,
            amount_cents=txn.amount_cents,
            description=txn.description,
            category=txn.category,
            session_id=txn.session_id,
            reconciled_suggestion_id=txn.reconciled_suggestion_id,
            created_at=txn.created_at,
        ))
        self.session.flush()
        return txn

    # Reads

    def get_statement_line(self, line_id: str, for_update: bool = False) -> StatementLine:
        stmt = select(StatementLineRow).where(StatementLineRow.id == line_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.scalars(stmt).first()
        if row is None:
            raise NotFoundError("StatementLine", line_id)
        return _line_from_row(row)

    def get_transaction(self, transaction_id: str, for_update: bool = False) -> LedgerTransaction:
        stmt = select(TransactionRow).where(TransactionRow.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = self.session.scalars(stmt).first()
        if row is None:
            raise NotFoundError("Transaction", transaction_id)
        return _transaction_from_row(row)

    def get_statement_lines(self, line_ids: Iterable[str]) -> Dict[str, StatementLine]:
        ids = list(line_ids)
        if not ids:
            return {}
        rows = self.session.scalars(
            select(StatementLineRow).where(StatementLineRow.id.in_(ids))
        )
        return {row.id: _line_from_row(row) for row in rows}

    def get_transactions(self, transaction_ids: Iterable[str]) -> Dict[str, LedgerTransaction]:
        ids = list(transaction_ids)
        if not ids:
            return {}
        rows = self.session.scalars(
            select(TransactionRow).where(TransactionRow.id.in_(ids))
        )
        return {row.id: _transaction_from_row(row) for row in rows}

    def list_unmatched_lines(self, scope: Scope) -> List[StatementLine]:
        """Unmatched statement lines dated inside the scope period."""
        stmt = (
            select(StatementLineRow)
            .where(
                StatementLineRow.org_id == scope.org_id,
                StatementLineRow.status == StatementStatus.UNMATCHED.value,
                StatementLineRow.transaction_date >= scope.period_start,
                StatementLineRow.transaction_date <= scope.period_end,
            )
            .order_by(StatementLineRow.transaction_date, StatementLineRow.id)
        )
        if scope.account_id:
            stmt = stmt.where(StatementLineRow.account_id == scope.account_id)
        return [_line_from_row(row) for row in self.session.scalars(stmt)]

    def list_unreconciled_transactions(
        self,
        scope: Scope,
        margin_days: int = 0,
    ) -> List[LedgerTransaction]:
        """
        Unreconciled transactions dated inside the scope period widened by
        ``margin_days`` on each side.
        """
        start: date = scope.period_start - timedelta(days=margin_days)
        end: date = scope.period_end + timedelta(days=margin_days)
        stmt = (
            select(TransactionRow)
            .where(
                TransactionRow.org_id == scope.org_id,
                TransactionRow.reconciled_suggestion_id.is_(None),
                TransactionRow.transaction_date >= start,
                TransactionRow.transaction_date <= end,
            )
            .order_by(TransactionRow.transaction_date, TransactionRow.id)
        )
        if scope.account_id:
            stmt = stmt.where(TransactionRow.account_id == scope.account_id)
        return [_transaction_from_row(row) for row in self.session.scalars(stmt)]

    def list_session_transactions(self, session_id: str) -> List[LedgerTransaction]:
        """Entries posted from a counting session."""
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.session_id == session_id)
            .order_by(TransactionRow.id)
        )
        return [_transaction_from_row(row) for row in self.session.scalars(stmt)]

    # Compare-and-set mutations; each returns False when the row was taken

    def claim_statement_line(self, line_id: str, status: StatementStatus) -> bool:
        result = self.session.execute(
            update(StatementLineRow)
            .where(
                StatementLineRow.id == line_id,
                StatementLineRow.status == StatementStatus.UNMATCHED.value,
            )
            .values(status=status.value)
        )
        return result.rowcount == 1

    def release_statement_line(self, line_id: str, expected: StatementStatus) -> bool:
        result = self.session.execute(
            update(StatementLineRow)
            .where(
                StatementLineRow.id == line_id,
                StatementLineRow.status == expected.value,
            )
            .values(status=StatementStatus.UNMATCHED.value)
        )
        return result.rowcount == 1

    def claim_transaction(self, transaction_id: str, suggestion_id: str) -> bool:
        result = self.session.execute(
            update(TransactionRow)
            .where(
                TransactionRow.id == transaction_id,
                TransactionRow.reconciled_suggestion_id.is_(None),
            )
            .values(reconciled_suggestion_id=suggestion_id)
        )
        return result.rowcount == 1

    def release_transaction(self, transaction_id: str, suggestion_id: str) -> bool:
        result = self.session.execute(
            update(TransactionRow)
            .where(
                TransactionRow.id == transaction_id,
                TransactionRow.reconciled_suggestion_id == suggestion_id,
            )
            .values(reconciled_suggestion_id=None)
        )
        return result.rowcount == 1

    def snapshot(self, org_id: str) -> Dict[str, Dict[str, Optional[str]]]:
        """Reconciliation state of every row of an org, keyed by row id."""
        lines = self.session.execute(
            select(StatementLineRow.id, StatementLineRow.status)
            .where(StatementLineRow.org_id == org_id)
        ).all()
        txns = self.session.execute(
            select(TransactionRow.id, TransactionRow.reconciled_suggestion_id)
            .where(TransactionRow.org_id == org_id)
        ).all()
        return {
            "statement_lines": {line_id: status for line_id, status in lines},
            "transactions": {txn_id: suggestion_id for txn_id, suggestion_id in txns},
        }
