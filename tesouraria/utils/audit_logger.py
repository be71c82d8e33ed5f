"""
Audit logging for reconciliation and counting decisions.
"""

from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.tables import AuditLogRow
from ..models import AuditEntry, AuditAction

logger = structlog.get_logger()


class AuditLogger:
    """
    Audit trail bound to the caller's session.
    Entries are written in the same transaction as the change they describe,
    so a rolled-back operation leaves no audit entry behind.
    """

    def __init__(self, session: Session):
        self.session = session

    def log(self, entry: AuditEntry) -> None:
        """Add an audit entry."""
        self.session.add(AuditLogRow(
            id=entry.id,
            timestamp=entry.timestamp,
            action=entry.action.value,
            actor_id=entry.actor_id,
            reason=entry.reason,
            org_id=entry.org_id,
            subject_type=entry.subject_type,
            subject_id=entry.subject_id,
            message=entry.message,
            details=entry.details,
        ))

        # Also log to structlog
        logger.info(
            entry.message or entry.action.value,
            action=entry.action.value,
            actor_id=entry.actor_id,
            subject_type=entry.subject_type,
            subject_id=entry.subject_id,
        )

    def get_entries(
        self,
        action_filter: Optional[AuditAction] = None,
        subject_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        """Get filtered audit entries, oldest first."""
        stmt = select(AuditLogRow).order_by(AuditLogRow.timestamp, AuditLogRow.id)
        if action_filter is not None:
            stmt = stmt.where(AuditLogRow.action == action_filter.value)
        if subject_id is not None:
            stmt = stmt.where(AuditLogRow.subject_id == subject_id)

        return [
            AuditEntry(
                id=row.id,
                timestamp=row.timestamp,
                action=AuditAction(row.action),
                actor_id=row.actor_id,
                reason=row.reason,
                org_id=row.org_id,
                subject_type=row.subject_type,
                subject_id=row.subject_id,
                message=row.message,
                details=row.details or {},
            )
            for row in self.session.scalars(stmt)
        ]
