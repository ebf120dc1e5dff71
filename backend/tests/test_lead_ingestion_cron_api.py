"""
Tests for the scheduler trigger endpoint
"""
from unittest.mock import patch

import pytest

from backend.core.config import get_settings
from backend.db.models import LeadEvent, LeadState

ENDPOINT = "/api/cron/process-meta-leads"


class TestSchedulerAuth:
    """Shared secret handling for the scheduler endpoint"""

    def _use_settings(self, app, settings, **update):
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update=update)

    def test_bearer_token_accepted(self, client):
        response = client.post(ENDPOINT, headers={"Authorization": "Bearer cron-secret"})

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_cron_secret_header_accepted(self, client):
        response = client.post(ENDPOINT, headers={"X-Cron-Secret": "cron-secret"})

        assert response.status_code == 200

    def test_wrong_secret_rejected(self, client):
        response = client.post(ENDPOINT, headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_secret_optional_outside_production(self, client):
        assert client.post(ENDPOINT).status_code == 200

    def test_production_requires_secret(self, app, client, settings):
        self._use_settings(app, settings, environment="production")

        assert client.post(ENDPOINT).status_code == 401
        assert client.post(ENDPOINT, headers={"Authorization": "Bearer cron-secret"}).status_code == 200

    def test_production_without_configured_secret_rejects_everything(self, app, client, settings):
        self._use_settings(app, settings, environment="production", cron_secret=None)

        response = client.post(ENDPOINT, headers={"Authorization": "Bearer anything"})

        assert response.status_code == 401


class TestProcessMetaLeads:
    """Running a processing pass over HTTP"""

    @pytest.mark.parametrize("method", ["GET", "POST"])
    def test_get_and_post_both_run_a_pass(self, client, make_rule, make_lead, method):
        make_rule()
        make_lead()

        response = client.request(method, ENDPOINT, headers={"X-Cron-Secret": "cron-secret"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["processed"] == 1
        assert body["succeeded"] == 1
        assert body["stats"]["completed"] == 1
        assert "timestamp" in body
        assert "durationMs" in body

    def test_batch_size_query(self, client, db, make_rule, make_lead):
        make_rule()
        make_lead()
        second = make_lead()

        response = client.post(f"{ENDPOINT}?batch_size=1", headers={"X-Cron-Secret": "cron-secret"})

        assert response.json()["processed"] == 1
        db.expire_all()
        assert db.get(LeadEvent, second.id).state == LeadState.PENDING.value

    def test_invalid_batch_size_rejected(self, client):
        response = client.post(f"{ENDPOINT}?batch_size=0", headers={"X-Cron-Secret": "cron-secret"})

        assert response.status_code == 422

    def test_pass_failure_returns_500(self, client):
        with patch(
            "backend.api.lead_ingestion_cron.run_lead_processing_pass",
            side_effect=RuntimeError("database unreachable"),
        ):
            response = client.post(ENDPOINT, headers={"X-Cron-Secret": "cron-secret"})

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "database unreachable"
        assert "timestamp" in body
