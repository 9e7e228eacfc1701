"""
Analysis Store Tests

Tests for guarded state transitions, tenant isolation and keyword storage.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from keyword_intel.collector.normalizer import NormalizedKeyword
from keyword_intel.database.models import AnalysisStatus, KeywordType
from keyword_intel.database.repository import AnalysisStore, TIMEOUT_MESSAGE
from keyword_intel.exceptions import (
    AnalysisNotActive,
    AnalysisNotFound,
    NotCancellable,
    PersistenceError,
    QuotaExceeded,
    SubjectNotFound,
)

from conftest import OWNER_ID, OTHER_OWNER_ID

PARAMS = {"country": "FR", "language": "fr", "limit": 900}


@pytest.fixture
def record(store, website):
    return store.create(OWNER_ID, website, PARAMS)


def keywords(*names, keyword_type=KeywordType.RANKED):
    return [NormalizedKeyword(keyword=name, keyword_type=keyword_type) for name in names]


class TestCreate:
    """Tests for analysis creation."""

    def test_created_pending_at_zero(self, store, website):
        record = store.create(OWNER_ID, website, PARAMS)

        assert record.id
        assert record.status == AnalysisStatus.PENDING
        assert record.progress == 0
        assert record.input_parameters == PARAMS
        assert record.started_at is None
        assert record.completed_at is None

    def test_ids_are_unique(self, store, website):
        first = store.create(OWNER_ID, website, PARAMS)
        second = store.create(OWNER_ID, website, PARAMS)
        assert first.id != second.id

    def test_strict_quota_refuses_insert(self, store, website):
        period_start = datetime.now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        store.create(OWNER_ID, website, PARAMS, monthly_limit=2, period_start=period_start)
        store.create(OWNER_ID, website, PARAMS, monthly_limit=2, period_start=period_start)

        with pytest.raises(QuotaExceeded) as exc_info:
            store.create(OWNER_ID, website, PARAMS, monthly_limit=2, period_start=period_start)

        assert exc_info.value.used == 2
        assert store.count_created_since(OWNER_ID, period_start) == 2

    @pytest.mark.parametrize("dialect,locked", [("postgresql", True), ("sqlite", False)])
    def test_owner_lock_only_on_postgresql(self, dialect, locked):
        db = MagicMock()
        db.get_bind.return_value.dialect.name = dialect

        AnalysisStore._lock_owner(db, OWNER_ID)

        assert db.execute.called is locked
        if locked:
            assert "pg_advisory_xact_lock" in str(db.execute.call_args[0][0])


class TestProgress:
    """Tests for guarded progress updates."""

    def test_processing_sets_started_at(self, store, record):
        assert store.update_progress(record.id, 10, AnalysisStatus.PROCESSING) is True

        current = store.get(record.id, OWNER_ID)
        assert current.status == AnalysisStatus.PROCESSING
        assert current.progress == 10
        assert current.started_at is not None

    def test_progress_without_status_keeps_status(self, store, record):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
        store.update_progress(record.id, 40)

        current = store.get(record.id, OWNER_ID)
        assert current.status == AnalysisStatus.PROCESSING
        assert current.progress == 40

    def test_refused_after_terminal(self, store, record):
        store.finalize(record.id, AnalysisStatus.FAILED, error_message="boom")

        assert store.update_progress(record.id, 60) is False
        assert store.get(record.id, OWNER_ID).progress == 0

    @pytest.mark.parametrize("progress", [-1, 100, 150])
    def test_progress_range(self, store, record, progress):
        with pytest.raises(ValueError):
            store.update_progress(record.id, progress)

    def test_cannot_set_terminal_status(self, store, record):
        with pytest.raises(ValueError):
            store.update_progress(record.id, 50, AnalysisStatus.COMPLETED)


class TestFinalize:
    """Tests for terminal transitions."""

    def test_completed_sets_progress_and_summary(self, store, record):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)

        applied = store.finalize(
            record.id,
            AnalysisStatus.COMPLETED,
            raw_payloads={"ranked": [{"items": []}], "suggestions": [], "html": {"content": "<html>"}},
            summary={"keyword_count": 3, "estimated_cost": 0.0118},
        )

        current = store.get(record.id, OWNER_ID)
        assert applied is True
        assert current.status == AnalysisStatus.COMPLETED
        assert current.progress == 100
        assert current.keyword_count == 3
        assert current.estimated_cost == pytest.approx(0.0118)
        assert current.ranked_keywords_response == [{"items": []}]
        assert current.html_content_response == {"content": "<html>"}
        assert current.completed_at is not None
        assert current.error_message is None

    def test_failed_sets_error_and_keeps_progress(self, store, record):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
        store.update_progress(record.id, 40)

        store.finalize(record.id, AnalysisStatus.FAILED, error_message="Provider down")

        current = store.get(record.id, OWNER_ID)
        assert current.status == AnalysisStatus.FAILED
        assert current.error_message == "Provider down"
        assert current.progress == 40

    def test_only_one_terminal_transition(self, store, record):
        assert store.finalize(record.id, AnalysisStatus.FAILED, error_message="first") is True
        assert store.finalize(record.id, AnalysisStatus.COMPLETED, summary={"keyword_count": 9}) is False

        current = store.get(record.id, OWNER_ID)
        assert current.status == AnalysisStatus.FAILED
        assert current.error_message == "first"
        assert current.keyword_count is None

    def test_requires_terminal_status(self, store, record):
        with pytest.raises(ValueError):
            store.finalize(record.id, AnalysisStatus.PROCESSING)

    def test_unknown_payload_key(self, store, record):
        with pytest.raises(ValueError):
            store.finalize(record.id, AnalysisStatus.COMPLETED, raw_payloads={"serp": {}})


class TestCancel:
    """Tests for owner cancellation."""

    def test_cancel_pending(self, store, record):
        cancelled = store.cancel(record.id, OWNER_ID)

        assert cancelled.status == AnalysisStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert cancelled.error_message is None

    def test_cancel_wins_over_late_completion(self, store, record):
        """A job finishing after cancellation cannot overwrite it."""
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
        store.update_progress(record.id, 60)

        store.cancel(record.id, OWNER_ID)
        applied = store.finalize(record.id, AnalysisStatus.COMPLETED, summary={"keyword_count": 3})

        current = store.get(record.id, OWNER_ID)
        assert applied is False
        assert current.status == AnalysisStatus.CANCELLED
        assert current.progress == 60

    @pytest.mark.parametrize("terminal", [AnalysisStatus.COMPLETED, AnalysisStatus.FAILED])
    def test_terminal_not_cancellable(self, store, record, terminal):
        store.finalize(record.id, terminal, error_message="x")

        with pytest.raises(NotCancellable):
            store.cancel(record.id, OWNER_ID)

        assert store.get(record.id, OWNER_ID).status == terminal

    def test_cancel_twice(self, store, record):
        store.cancel(record.id, OWNER_ID)
        with pytest.raises(NotCancellable):
            store.cancel(record.id, OWNER_ID)

    def test_other_owner_cannot_cancel(self, store, record):
        with pytest.raises(AnalysisNotFound):
            store.cancel(record.id, OTHER_OWNER_ID)

        assert store.get(record.id, OWNER_ID).status == AnalysisStatus.PENDING


class TestTenantIsolation:
    """Tests for owner-scoped reads."""

    def test_other_owner_gets_not_found(self, store, record):
        with pytest.raises(AnalysisNotFound) as other:
            store.get(record.id, OTHER_OWNER_ID)
        with pytest.raises(AnalysisNotFound) as missing:
            store.get("does-not-exist", OWNER_ID)

        assert str(other.value) == str(missing.value)

    def test_subject_scoped_to_owner(self, store, add_website):
        add_website("site-2", OTHER_OWNER_ID)

        with pytest.raises(SubjectNotFound):
            store.get_subject("site-2", OWNER_ID)
        assert store.get_subject("site-2", OTHER_OWNER_ID).id == "site-2"

    def test_history_scoped_and_newest_first(self, store, add_website):
        add_website("site-1", OWNER_ID)
        add_website("site-2", OTHER_OWNER_ID)
        first = store.create(OWNER_ID, "site-1", PARAMS)
        store.create(OTHER_OWNER_ID, "site-2", PARAMS)
        second = store.create(OWNER_ID, "site-1", PARAMS)

        history = store.list_for_owner(OWNER_ID)

        assert [r.id for r in history] == [second.id, first.id]

    def test_history_limit(self, store, website):
        for _ in range(12):
            store.create(OWNER_ID, website, PARAMS)
        assert len(store.list_for_owner(OWNER_ID)) == 10


class TestKeywords:
    """Tests for bulk keyword insert."""

    def test_insert_while_processing(self, store, record):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)

        count = store.bulk_insert_keywords(
            record.id, keywords("a", "b") + keywords("c", keyword_type=KeywordType.SUGGESTION)
        )

        rows = store.list_keywords(record.id)
        assert count == 3
        assert [r.keyword for r in rows] == ["a", "b", "c"]
        assert rows[2].keyword_type == KeywordType.SUGGESTION

    def test_refused_while_pending(self, store, record):
        with pytest.raises(AnalysisNotActive):
            store.bulk_insert_keywords(record.id, keywords("a"))
        assert store.list_keywords(record.id) == []

    def test_refused_after_cancel(self, store, record):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
        store.cancel(record.id, OWNER_ID)

        with pytest.raises(AnalysisNotActive):
            store.bulk_insert_keywords(record.id, keywords("a"))
        assert store.list_keywords(record.id) == []

    def test_empty_insert_is_noop(self, store, record):
        assert store.bulk_insert_keywords(record.id, []) == 0

    def test_serp_details_round_trip(self, store, record):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
        store.bulk_insert_keywords(record.id, [NormalizedKeyword(
            keyword="chaussures",
            keyword_type=KeywordType.RANKED,
            estimated_paid_cost=310.25,
            monthly_searches=[{"year": 2024, "month": 5, "search_volume": 880}],
            current_position=3,
            previous_position=7,
            is_up=True,
            title="Chaussures homme",
            description="Toutes nos chaussures",
        )])

        data = store.list_keywords(record.id)[0].to_dict()

        assert data["estimatedPaidCost"] == 310.25
        assert data["monthlySearches"] == [{"year": 2024, "month": 5, "search_volume": 880}]
        assert data["previousPosition"] == 7
        assert (data["isUp"], data["isDown"], data["isNew"]) == (True, False, False)
        assert data["title"] == "Chaussures homme"
        assert data["description"] == "Toutes nos chaussures"


class TestReconcileStale:
    """Tests for startup recovery of orphaned analyses."""

    def test_fails_old_active_analyses(self, store, record, website):
        store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
        done = store.create(OWNER_ID, website, PARAMS)
        store.finalize(done.id, AnalysisStatus.FAILED, error_message="earlier")

        count = store.reconcile_stale(datetime.now() + timedelta(minutes=1))

        assert count == 1
        current = store.get(record.id, OWNER_ID)
        assert current.status == AnalysisStatus.FAILED
        assert current.error_message == TIMEOUT_MESSAGE
        assert store.get(done.id, OWNER_ID).error_message == "earlier"

    def test_keeps_recent_analyses(self, store, record):
        count = store.reconcile_stale(datetime.now() - timedelta(minutes=30))

        assert count == 0
        assert store.get(record.id, OWNER_ID).status == AnalysisStatus.PENDING


class TestPersistenceErrors:
    """Tests for database error wrapping."""

    def test_sqlalchemy_errors_become_persistence_errors(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))
        store = AnalysisStore(session_factory=lambda: session)

        with pytest.raises(PersistenceError):
            store.update_progress("id", 10)

        session.rollback.assert_called_once()
        session.close.assert_called_once()
