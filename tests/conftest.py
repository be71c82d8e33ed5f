"""
Shared fixtures: in-memory database, settings and ledger row factories.
"""

from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

from tesouraria.config import Settings
from tesouraria.counting import CountingService
from tesouraria.db import build_engine, create_tables, session_scope
from tesouraria.models import LedgerTransaction, Scope, StatementLine
from tesouraria.reconciliation import ReconciliationOrchestrator
from tesouraria.stores import LedgerStore

ORG = "org-1"
ACCOUNT = "acc-1"
BASE_DATE = date(2024, 3, 10)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def orchestrator(session_factory, settings):
    return ReconciliationOrchestrator(session_factory=session_factory, settings=settings)


@pytest.fixture
def counting_service(session_factory, settings):
    return CountingService(session_factory=session_factory, settings=settings)


@pytest.fixture
def scope():
    return Scope(
        org_id=ORG,
        account_id=ACCOUNT,
        period_start=date(2024, 3, 1),
        period_end=date(2024, 3, 31),
    )


@pytest.fixture
def make_line():
    def _make(id, amount_cents, day=BASE_DATE, description="", account_id=ACCOUNT, org_id=ORG):
        return StatementLine(
            id=id,
            org_id=org_id,
            account_id=account_id,
            transaction_date=day,
            amount_cents=amount_cents,
            description=description,
        )
    return _make


@pytest.fixture
def make_txn():
    def _make(
        id,
        amount_cents,
        day=BASE_DATE,
        description="",
        account_id=ACCOUNT,
        org_id=ORG,
        category=None,
        session_id=None,
    ):
        return LedgerTransaction(
            id=id,
            org_id=org_id,
            account_id=account_id,
            transaction_date=day,
            amount_cents=amount_cents,
            description=description,
            category=category,
            session_id=session_id,
        )
    return _make


@pytest.fixture
def seed(session_factory):
    """Insert statement lines and transactions in one committed transaction."""
    def _seed(lines=(), transactions=()):
        with session_scope(session_factory) as session:
            store = LedgerStore(session)
            for line in lines:
                store.add_statement_line(line)
            for txn in transactions:
                store.add_transaction(txn)
    return _seed


@pytest.fixture
def snapshot(session_factory):
    def _snapshot(org_id=ORG):
        with session_scope(session_factory) as session:
            return LedgerStore(session).snapshot(org_id)
    return _snapshot
