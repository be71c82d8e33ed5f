"""
Tests for counting sessions and confrontation.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from tesouraria.config import Settings
from tesouraria.counting import CountingService, compare_counts, parse_count_values, to_cents
from tesouraria.db import session_scope
from tesouraria.exceptions import (
    InvalidScopeError,
    InvalidStateError,
    PermissionDeniedError,
    ValidationError,
)
from tesouraria.models import Actor, CompareLevel, CountSubmission, SessionStatus
from tesouraria.stores import CountingStore

SERVICE_DATE = date(2024, 3, 10)
CONFERENTE = Actor(user_id="conf-1", is_conferente=True)


@pytest.fixture
def open_session(counting_service):
    def _open(**kwargs):
        params = {"org_id": "org-1", "service_date": SERVICE_DATE, "period": "manha"}
        params.update(kwargs)
        return counting_service.open_sessao_contagem(**params)
    return _open


@pytest.fixture
def counted(counting_service, open_session):
    """Session with two matching counts."""
    session = open_session()
    counting_service.submit_contagem(session.id, "ana", {"dinheiro": "150.00", "cheque": 50})
    counting_service.submit_contagem(session.id, "bruno", {"dinheiro": 150, "cheque": "50.00"})
    return session


def submission(counter, **values):
    return CountSubmission(session_id="s", counter_id=counter, values_by_category=values)


class TestAmountParsing:
    """Counted values become integer cents."""

    @pytest.mark.parametrize("value,cents", [
        ("150.50", 15050),
        (10, 1000),
        (Decimal("0.01"), 1),
        (12.5, 1250),
        (0, 0),
    ])
    def test_valid_values(self, value, cents):
        assert to_cents(value) == cents

    @pytest.mark.parametrize("value", [
        "abc", "", None, True, -1, "-0.50", float("nan"), float("inf"), "1.005",
    ])
    def test_invalid_values(self, value):
        with pytest.raises(ValidationError):
            to_cents(value)

    def test_empty_count_rejected(self):
        with pytest.raises(ValidationError):
            parse_count_values({})

    def test_blank_category_rejected(self):
        with pytest.raises(ValidationError):
            parse_count_values({"  ": 10})


class TestOpen:
    """Session identity and idempotence."""

    def test_open_is_idempotent(self, open_session):
        first = open_session()
        second = open_session()

        assert first.id == second.id
        assert first.status == SessionStatus.OPEN

    def test_distinct_keys_open_distinct_sessions(self, open_session):
        morning = open_session()
        evening = open_session(period="noite")
        branch = open_session(branch_id="filial-2")

        assert len({morning.id, evening.id, branch.id}) == 3

    def test_open_requires_org(self, open_session):
        with pytest.raises(InvalidScopeError):
            open_session(org_id="")

    def test_open_uses_configured_policy(self, open_session):
        session = open_session(tolerance_cents=200, compare_level=CompareLevel.TOTAL)

        assert session.tolerance_cents == 200
        assert session.compare_level == CompareLevel.TOTAL

    def test_defaults_to_category_comparison(self, open_session):
        assert open_session().compare_level == CompareLevel.CATEGORY

    def test_reopen_after_rejection(self, counting_service, counted, open_session):
        counting_service.rejeitar_sessao(counted.id, CONFERENTE, "recount tomorrow")

        reopened = open_session()

        assert reopened.id != counted.id
        assert reopened.status == SessionStatus.OPEN


class TestSubmit:
    """Appending counts."""

    def test_first_submission_starts_counting(self, counting_service, open_session):
        session = open_session()

        sub = counting_service.submit_contagem(session.id, "ana", {"dinheiro": "10.00"})

        assert sub.sequence == 1
        assert sub.total_cents == 1000
        assert counting_service.get_session(session.id).status == SessionStatus.COUNTING

    def test_invalid_values_change_nothing(self, counting_service, open_session):
        session = open_session()

        with pytest.raises(ValidationError):
            counting_service.submit_contagem(session.id, "ana", {"dinheiro": "-5"})

        assert counting_service.get_session(session.id).status == SessionStatus.OPEN

    def test_recount_after_divergence(self, counting_service, open_session):
        session = open_session()
        counting_service.submit_contagem(session.id, "ana", {"dinheiro": 100})
        counting_service.submit_contagem(session.id, "bruno", {"dinheiro": 95})
        assert counting_service.confrontar_contagens(session.id).status == SessionStatus.DIVERGENT

        recount = counting_service.submit_contagem(session.id, "bruno", {"dinheiro": 100})

        assert recount.sequence == 2
        assert counting_service.get_session(session.id).status == SessionStatus.COUNTING
        assert counting_service.confrontar_contagens(session.id).status == SessionStatus.VALIDATED


class TestConfrontation:
    """Variance between counters."""

    def test_matching_counts_validate(self, counting_service, counted):
        result = counting_service.confrontar_contagens(counted.id)

        assert result.status == SessionStatus.VALIDATED
        assert result.variance_cents == 0
        assert result.counters == ["ana", "bruno"]

    def test_confrontation_is_repeatable(self, counting_service, counted):
        first = counting_service.confrontar_contagens(counted.id)
        second = counting_service.confrontar_contagens(counted.id)

        assert first == second

    def test_swapped_categories_diverge_by_default(self, counting_service, open_session):
        session = open_session()
        counting_service.submit_contagem(session.id, "ana", {"oferta": "100.00", "dizimo": "0"})
        counting_service.submit_contagem(session.id, "bruno", {"oferta": "0", "dizimo": "100.00"})

        result = counting_service.confrontar_contagens(session.id)

        assert result.status == SessionStatus.DIVERGENT
        assert result.variance_cents == 0
        assert result.variance_by_category == {"dizimo": 10000, "oferta": 10000}
        with pytest.raises(InvalidStateError):
            counting_service.finalizar_sessao(session.id, CONFERENTE)

    def test_total_level_ignores_category_swaps(self):
        result = compare_counts(
            "s",
            {"ana": submission("ana", dinheiro=10000, cheque=0),
             "bruno": submission("bruno", dinheiro=0, cheque=10000)},
            compare_level=CompareLevel.TOTAL,
        )
        assert result.status == SessionStatus.VALIDATED
        assert result.variance_by_category == {"cheque": 10000, "dinheiro": 10000}

    def test_category_level_catches_swaps(self):
        result = compare_counts(
            "s",
            {"ana": submission("ana", dinheiro=10000, cheque=0),
             "bruno": submission("bruno", dinheiro=0, cheque=10000)},
        )
        assert result.status == SessionStatus.DIVERGENT
        assert result.variance_cents == 0

    def test_tolerance(self):
        counts = {"ana": submission("ana", dinheiro=10000), "bruno": submission("bruno", dinheiro=10050)}

        assert compare_counts("s", counts, tolerance_cents=49).status == SessionStatus.DIVERGENT
        assert compare_counts("s", counts, tolerance_cents=50).status == SessionStatus.VALIDATED

    def test_missing_category_counts_as_zero(self):
        result = compare_counts(
            "s",
            {"ana": submission("ana", dinheiro=500, moedas=25),
             "bruno": submission("bruno", dinheiro=500)},
        )
        assert result.variance_by_category["moedas"] == 25
        assert result.variance_cents == 25

    def test_single_counter_without_entries(self, counting_service, open_session):
        session = open_session()
        counting_service.submit_contagem(session.id, "ana", {"dinheiro": 100})

        with pytest.raises(InvalidStateError):
            counting_service.confrontar_contagens(session.id)

    def test_single_counter_against_posted_entries(self, counting_service, open_session, seed, make_txn):
        session = open_session()
        counting_service.submit_contagem(session.id, "ana", {"oferta": 120, "dizimo": 300})
        seed(transactions=[
            make_txn("e1", 12000, SERVICE_DATE, category="oferta", session_id=session.id),
            make_txn("e2", 30000, SERVICE_DATE, category="dizimo", session_id=session.id),
        ])

        result = counting_service.confrontar_contagens(session.id)

        assert result.against_expected
        assert result.status == SessionStatus.VALIDATED

    def test_cannot_confront_open_session(self, counting_service, open_session):
        session = open_session()
        with pytest.raises(InvalidStateError):
            counting_service.confrontar_contagens(session.id)


class TestFinalize:
    """Closing a session."""

    def test_conferente_closes_validated_session(self, counting_service, counted):
        counting_service.confrontar_contagens(counted.id)
        closed_at = datetime(2024, 3, 10, 12, 30)

        closed = counting_service.finalizar_sessao(counted.id, CONFERENTE, now=closed_at)

        assert closed.status == SessionStatus.CLOSED
        assert closed.closed_at == closed_at
        assert closed.closed_by == "conf-1"

    def test_requires_conferente(self, counting_service, counted):
        counting_service.confrontar_contagens(counted.id)
        with pytest.raises(PermissionDeniedError):
            counting_service.finalizar_sessao(counted.id, Actor(user_id="op-1"))

    def test_counter_cannot_review_own_count(self, counting_service, counted):
        counting_service.confrontar_contagens(counted.id)
        with pytest.raises(PermissionDeniedError):
            counting_service.finalizar_sessao(counted.id, Actor(user_id="ana", is_conferente=True))

    def test_cannot_close_unconfronted(self, counting_service, counted):
        with pytest.raises(InvalidStateError):
            counting_service.finalizar_sessao(counted.id, CONFERENTE)

    def test_divergent_session_blocked(self, counting_service, open_session):
        session = open_session()
        counting_service.submit_contagem(session.id, "ana", {"dinheiro": 100})
        counting_service.submit_contagem(session.id, "bruno", {"dinheiro": 90})
        counting_service.confrontar_contagens(session.id)

        with pytest.raises(InvalidStateError):
            counting_service.finalizar_sessao(session.id, CONFERENTE, override_reason="ok")

    def test_divergent_override_when_enabled(self, session_factory):
        service = CountingService(
            session_factory=session_factory,
            settings=Settings(_env_file=None, allow_divergent_override=True),
        )
        session = service.open_sessao_contagem("org-1", SERVICE_DATE, "manha")
        service.submit_contagem(session.id, "ana", {"dinheiro": 100})
        service.submit_contagem(session.id, "bruno", {"dinheiro": 90})
        service.confrontar_contagens(session.id)

        with pytest.raises(ValidationError):
            service.finalizar_sessao(session.id, CONFERENTE)
        closed = service.finalizar_sessao(session.id, CONFERENTE, override_reason="coin found later")

        assert closed.status == SessionStatus.CLOSED


class TestReject:
    """Rejecting a session."""

    def test_reject_requires_reason(self, counting_service, counted):
        with pytest.raises(ValidationError):
            counting_service.rejeitar_sessao(counted.id, CONFERENTE, "  ")

    def test_reject_discards_counts(self, counting_service, counted, session_factory):
        rejected = counting_service.rejeitar_sessao(counted.id, CONFERENTE, "envelopes missing")

        assert rejected.status == SessionStatus.REJECTED
        assert rejected.rejection_reason == "envelopes missing"
        with session_scope(session_factory) as session:
            store = CountingStore(session)
            assert store.list_submissions(counted.id) == []
            assert len(store.list_submissions(counted.id, include_discarded=True)) == 2

    def test_rejected_session_accepts_no_counts(self, counting_service, counted):
        counting_service.rejeitar_sessao(counted.id, CONFERENTE, "envelopes missing")
        with pytest.raises(InvalidStateError):
            counting_service.submit_contagem(counted.id, "ana", {"dinheiro": 1})

    def test_cannot_reject_open_session(self, counting_service, open_session):
        session = open_session()
        with pytest.raises(InvalidStateError):
            counting_service.rejeitar_sessao(session.id, CONFERENTE, "nothing counted")


class TestSyncWindow:
    """Scan window for the next bank import."""

    def test_default_lookback(self, counting_service):
        now = datetime(2024, 3, 20, 8, 0)

        window = counting_service.sync_window("org-1", now=now)

        assert window.start == now - timedelta(days=7)
        assert window.end == now
        assert window.last_closed_session_id is None

    def test_starts_at_last_close(self, counting_service, counted):
        counting_service.confrontar_contagens(counted.id)
        closed_at = datetime(2024, 3, 10, 12, 30)
        counting_service.finalizar_sessao(counted.id, CONFERENTE, now=closed_at)

        window = counting_service.sync_window("org-1", now=datetime(2024, 3, 11, 9, 0))

        assert window.start == closed_at
        assert window.last_closed_session_id == counted.id

    def test_defaults_to_aware_utc_now(self, counting_service):
        window = counting_service.sync_window("org-1")

        assert window.end.tzinfo is not None
        assert window.end.utcoffset() == timedelta(0)
        assert window.end - window.start == timedelta(days=7)
