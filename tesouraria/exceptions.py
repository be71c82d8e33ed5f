"""
Typed exceptions for the reconciliation and counting engine.

Every error carries a machine-readable ``code`` and an HTTP ``status_code``
used by the API layer. Callers should catch by type, never by message.
"""

from typing import Any, Dict, Iterable, Optional


class TesourariaError(Exception):
    """Base exception for all engine errors."""

    code: str = "TESOURARIA_ERROR"
    status_code: int = 500

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details: Dict[str, Any] = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ConflictError(TesourariaError):
    """Rows of a suggestion were linked by a concurrent accept."""

    code: str = "CONFLICT"
    status_code: int = 409

    def __init__(
        self,
        suggestion_id: str,
        statement_ids: Iterable[str] = (),
        transaction_ids: Iterable[str] = (),
    ):
        self.suggestion_id = suggestion_id
        self.statement_ids = sorted(statement_ids)
        self.transaction_ids = sorted(transaction_ids)
        super().__init__(
            f"Suggestion {suggestion_id} is stale: ledger rows already reconciled",
            suggestion_id=suggestion_id,
            statement_ids=self.statement_ids,
            transaction_ids=self.transaction_ids,
        )


class InvalidScopeError(TesourariaError):
    """Scope has no resolvable org, account or period."""

    code: str = "INVALID_SCOPE"
    status_code: int = 400


class NotFoundError(TesourariaError):
    """Unknown suggestion, session or transaction id."""

    code: str = "NOT_FOUND"
    status_code: int = 404

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            entity_type=entity_type,
            entity_id=entity_id,
        )


class ValidationError(TesourariaError):
    """Non-numeric, negative or malformed input values."""

    code: str = "VALIDATION_ERROR"
    status_code: int = 422

    def __init__(self, message: str, field: Optional[str] = None, **details: Any):
        self.field = field
        super().__init__(message, field=field, **details)


class InvalidStateError(TesourariaError):
    """Operation not allowed from the entity's current state."""

    code: str = "INVALID_STATE"
    status_code: int = 409

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        **details: Any,
    ):
        self.current_state = current_state
        super().__init__(message, current_state=current_state, **details)


class PermissionDeniedError(TesourariaError):
    """Actor lacks the capability required by the operation."""

    code: str = "PERMISSION_DENIED"
    status_code: int = 403

    def __init__(self, actor_id: str, capability: str):
        self.actor_id = actor_id
        self.capability = capability
        super().__init__(
            f"Actor {actor_id} lacks capability '{capability}'",
            actor_id=actor_id,
            capability=capability,
        )
