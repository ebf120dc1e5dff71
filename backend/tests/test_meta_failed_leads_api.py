"""
Tests for the failed lead operator endpoints
"""
from backend.core.config import get_settings
from backend.db.models import LeadEvent, LeadState

BASE = "/api/v1/integrations/meta"
AUTH = {"Authorization": "Bearer cron-secret"}


class TestFailedLeadsApi:
    """Listing and retrying failed leads"""

    def test_lists_failed_leads_with_stats(self, client, make_lead):
        make_lead(state=LeadState.FAILED.value, retry_count=5, last_error="database unavailable")
        make_lead(state=LeadState.FAILED.value, last_error="No routing rule configured")
        make_lead()

        response = client.get(f"{BASE}/failed-leads", params={"organization_id": "org-1", "limit": 1}, headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert len(body["leads"]) == 1
        assert body["leads"][0]["state"] == LeadState.FAILED.value
        assert body["pagination"] == {"limit": 1, "offset": 0, "has_more": True}
        assert body["stats"]["failed"] == 2
        assert body["stats"]["pending"] == 1
        assert "recent_errors" not in body["stats"]

    def test_limit_capped(self, client):
        response = client.get(f"{BASE}/failed-leads", params={"limit": 500}, headers=AUTH)

        assert response.status_code == 422

    def test_retry_single_lead(self, client, db, make_lead):
        lead = make_lead(state=LeadState.FAILED.value, retry_count=5, last_error="boom")

        response = client.post(f"{BASE}/failed-leads", json={"lead_id": lead.id}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["count"] == 1
        db.expire_all()
        retried = db.get(LeadEvent, lead.id)
        assert retried.state == LeadState.PENDING.value
        assert retried.retry_count == 0

    def test_retry_unknown_lead_is_404(self, client):
        response = client.post(f"{BASE}/failed-leads", json={"lead_id": 9999}, headers=AUTH)

        assert response.status_code == 404

    def test_retry_all_for_organization(self, client, make_lead):
        make_lead(state=LeadState.FAILED.value)
        make_lead(state=LeadState.FAILED.value)
        make_lead(state=LeadState.FAILED.value, organization_id="org-2")

        response = client.post(
            f"{BASE}/failed-leads",
            json={"action": "retry-all", "organization_id": "org-1"},
            headers=AUTH,
        )

        assert response.json() == {"success": True, "message": "Queued 2 leads for retry", "count": 2}

    def test_retry_all_requires_organization(self, client):
        response = client.post(f"{BASE}/failed-leads", json={"action": "retry-all"}, headers=AUTH)

        assert response.status_code == 422

    def test_retry_request_needs_a_target(self, client):
        assert client.post(f"{BASE}/failed-leads", json={}, headers=AUTH).status_code == 422

    def test_integration_health(self, client, make_lead):
        make_lead(state=LeadState.COMPLETED.value)

        response = client.get(f"{BASE}/health", params={"organization_id": "org-1"}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["organization_id"] == "org-1"
        assert response.json()["status"] in ("healthy", "degraded", "down")

    def test_production_requires_secret(self, app, client, settings):
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"environment": "production"})

        assert client.get(f"{BASE}/failed-leads").status_code == 401
        assert client.get(f"{BASE}/failed-leads", headers=AUTH).status_code == 200
