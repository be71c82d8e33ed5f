"""Persistence layer."""

from .engine import (
    build_engine,
    init_engine,
    get_engine,
    get_session_factory,
    reset_engine,
    session_scope,
    run_in_transaction,
    create_tables,
    drop_tables,
)
from .tables import Base

__all__ = [
    "Base",
    "build_engine",
    "init_engine",
    "get_engine",
    "get_session_factory",
    "reset_engine",
    "session_scope",
    "run_in_transaction",
    "create_tables",
    "drop_tables",
]
