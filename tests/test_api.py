"""
Keyword API Tests

Endpoint tests against the FastAPI app with the owner and the service
overridden. Jobs are never dispatched: the dispatcher is a mock.
"""

import pytest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from api.analyze import app
from api.keywords import get_analysis_service
from keyword_intel.auth.dependencies import Owner, get_current_owner
from keyword_intel.collector.normalizer import NormalizedKeyword
from keyword_intel.database.models import AnalysisStatus, KeywordType
from keyword_intel.exceptions import PersistenceError
from keyword_intel.services import AnalysisService, JobDispatcher

from conftest import OWNER_ID, OTHER_OWNER_ID

PARAMS = {"country": "FR", "language": "fr", "limit": 900}


@pytest.fixture
def dispatcher():
    return MagicMock(spec=JobDispatcher)


@pytest.fixture
def service(store, dispatcher, settings):
    return AnalysisService(store, dispatcher, settings=settings)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_current_owner] = lambda: Owner(id=OWNER_ID)
    app.dependency_overrides[get_analysis_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def completed_analysis(store, website):
    record = store.create(OWNER_ID, website, PARAMS)
    store.update_progress(record.id, 10, AnalysisStatus.PROCESSING)
    store.bulk_insert_keywords(record.id, [
        NormalizedKeyword(keyword="chaussures", keyword_type=KeywordType.RANKED,
                          search_volume=1000, cpc=1.0, current_position=3, intent="commercial"),
        NormalizedKeyword(keyword="baskets", keyword_type=KeywordType.SUGGESTION, search_volume=400, cpc=0.5),
    ])
    store.finalize(
        record.id,
        AnalysisStatus.COMPLETED,
        summary={"keyword_count": 2, "estimated_cost": 0.01161},
    )
    return record


class TestAnalyzeEndpoint:
    """Tests for POST /api/keywords/analyze."""

    def test_starts_analysis(self, client, store, website, dispatcher):
        response = client.post("/api/keywords/analyze", json={"websiteId": website, "country": "FR"})

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "Analysis started successfully"
        assert store.get(data["analysisId"], OWNER_ID).status == AnalysisStatus.PENDING
        dispatcher.submit.assert_called_once()
        assert dispatcher.submit.call_args[0][0] == data["analysisId"]

    def test_unknown_website(self, client):
        response = client.post("/api/keywords/analyze", json={"websiteId": "missing"})

        assert response.status_code == 404
        assert response.json() == {"error": "Website not found"}

    def test_quota_exhausted(self, client, store, website, dispatcher):
        for _ in range(3):
            store.create(OWNER_ID, website, PARAMS)

        response = client.post("/api/keywords/analyze", json={"websiteId": website})

        assert response.status_code == 429
        assert "3/3" in response.json()["error"]
        dispatcher.submit.assert_not_called()

    def test_unsupported_country(self, client, website):
        response = client.post("/api/keywords/analyze", json={"websiteId": website, "country": "ZZ"})

        assert response.status_code == 400
        assert "ZZ" in response.json()["error"]

    @pytest.mark.parametrize("body", [
        {},
        {"websiteId": ""},
        {"websiteId": "site-1", "country": "FRA"},
        {"websiteId": "site-1", "language": "f"},
    ])
    def test_invalid_body(self, client, website, body):
        response = client.post("/api/keywords/analyze", json=body)

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Invalid request data"
        assert data["details"]


class TestStatusEndpoint:
    """Tests for GET /api/keywords/status/{id}."""

    def test_pending(self, client, store, website):
        record = store.create(OWNER_ID, website, PARAMS)

        response = client.get(f"/api/keywords/status/{record.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == record.id
        assert data["status"] == "pending"
        assert data["progress"] == 0
        assert "results" not in data

    def test_completed_includes_results(self, client, store, website):
        record = completed_analysis(store, website)

        data = client.get(f"/api/keywords/status/{record.id}").json()

        assert data["status"] == "completed"
        assert data["progress"] == 100
        results = data["results"]
        assert results["totalKeywords"] == 2
        assert results["rankedKeywords"] == 1
        assert results["opportunities"] == 1
        assert results["keywords"][0]["keyword"] == "chaussures"
        assert results["keywords"][1]["type"] == "suggestion"
        assert results["summary"]["avgSearchVolume"] == 700
        assert results["summary"]["avgPosition"] == 3

    def test_other_owner_sees_not_found(self, client, store, add_website):
        add_website("site-2", OTHER_OWNER_ID)
        record = store.create(OTHER_OWNER_ID, "site-2", PARAMS)

        response = client.get(f"/api/keywords/status/{record.id}")

        assert response.status_code == 404
        assert response.json() == {"error": "Analysis not found"}

    def test_store_failure_is_internal_error(self, client):
        failing = MagicMock()
        failing.get_status.side_effect = PersistenceError("Database error: connection refused")
        app.dependency_overrides[get_analysis_service] = lambda: failing

        response = client.get("/api/keywords/status/anything")

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}


class TestDetailedEndpoint:
    """Tests for GET /api/keywords/detailed/{id}."""

    def test_completed(self, client, store, website):
        record = completed_analysis(store, website)

        response = client.get(f"/api/keywords/detailed/{record.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["website"]["id"] == website
        assert [k["keyword"] for k in data["rankedKeywords"]] == ["chaussures"]
        assert [k["keyword"] for k in data["suggestions"]] == ["baskets"]
        assert data["rankedKeywords"][0]["isNew"] is False
        assert data["competitors"] == []
        assert data["summary"]["totalPaidValue"] == 0

    def test_other_owner_sees_not_found(self, client, store, add_website):
        add_website("site-2", OTHER_OWNER_ID)
        record = store.create(OTHER_OWNER_ID, "site-2", PARAMS)

        response = client.get(f"/api/keywords/detailed/{record.id}")

        assert response.status_code == 404
        assert response.json() == {"error": "Analysis not found"}


class TestCancelEndpoint:
    """Tests for POST /api/keywords/cancel/{id}."""

    def test_cancel(self, client, store, website, dispatcher):
        record = store.create(OWNER_ID, website, PARAMS)

        response = client.post(f"/api/keywords/cancel/{record.id}")

        assert response.status_code == 200
        assert response.json() == {"message": "Analysis cancelled successfully"}
        assert store.get(record.id, OWNER_ID).status == AnalysisStatus.CANCELLED
        dispatcher.cancel.assert_called_once_with(record.id)

    def test_cancel_completed(self, client, store, website):
        record = completed_analysis(store, website)

        response = client.post(f"/api/keywords/cancel/{record.id}")

        assert response.status_code == 400
        assert response.json() == {"error": "Analysis is already completed"}

    def test_cancel_twice(self, client, store, website):
        record = store.create(OWNER_ID, website, PARAMS)
        client.post(f"/api/keywords/cancel/{record.id}")

        response = client.post(f"/api/keywords/cancel/{record.id}")

        assert response.status_code == 400

    def test_cancel_other_owner(self, client, store, add_website):
        add_website("site-2", OTHER_OWNER_ID)
        record = store.create(OTHER_OWNER_ID, "site-2", PARAMS)

        response = client.post(f"/api/keywords/cancel/{record.id}")

        assert response.status_code == 404
        assert store.get(record.id, OTHER_OWNER_ID).status == AnalysisStatus.PENDING


class TestQuotaAndHistory:
    """Tests for GET /api/keywords/quota and /history."""

    def test_quota(self, client, store, website):
        store.create(OWNER_ID, website, PARAMS)

        response = client.get("/api/keywords/quota")

        assert response.status_code == 200
        quota = response.json()["quota"]
        assert quota["used"] == 1
        assert quota["limit"] == 3
        assert quota["remaining"] == 2
        assert quota["isUnlimited"] is False
        assert quota["planName"] == "free"
        assert quota["resetDate"]

    def test_history(self, client, store, website):
        first = store.create(OWNER_ID, website, PARAMS)
        second = completed_analysis(store, website)

        analyses = client.get("/api/keywords/history").json()["analyses"]

        assert [a["id"] for a in analyses] == [second.id, first.id]
        assert analyses[0]["keywordCount"] == 2
        assert analyses[1]["status"] == "pending"


class TestHealth:
    """Tests for GET /api/health."""

    def test_health(self, client):
        with patch("api.analyze.check_db_connection", return_value=True), \
                patch("api.analyze.get_analysis_service") as get_service:
            get_service.return_value.dispatcher.active_jobs = 0
            response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["jobs_running"] == 0
