"""
Tests for the Meta lead ads webhook receiver
"""
import hashlib
import hmac
import json

from backend.api.meta_webhooks import extract_leadgen_events
from backend.db.models import LeadEvent, LeadState

ENDPOINT = "/api/webhooks/meta"


def leadgen_payload(leadgen_id="444", page_id="page-100", form_id="form-200", **extra):
    value = {
        "leadgen_id": leadgen_id,
        "page_id": page_id,
        "form_id": form_id,
        "ad_id": "ad-1",
        "created_time": 1772450000,
    }
    value.update(extra)
    return {
        "object": "page",
        "entry": [{"id": page_id, "time": 1772450001, "changes": [{"field": "leadgen", "value": value}]}],
    }


def sign(body: bytes, secret: str = "app-secret") -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post_signed(client, payload):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        ENDPOINT,
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
    )


class TestSubscriptionHandshake:
    """GET verification"""

    def test_valid_token_echoes_challenge(self, client):
        response = client.get(
            ENDPOINT,
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"},
        )

        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_wrong_token_forbidden(self, client):
        response = client.get(
            ENDPOINT,
            params={"hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1"},
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Verification failed"}


class TestReceiveWebhook:
    """POST deliveries"""

    def test_stores_pending_lead(self, client, db, page_connection):
        response = post_signed(client, leadgen_payload())

        assert response.status_code == 200
        assert response.json() == {"received": True, "count": 1}

        lead = db.query(LeadEvent).one()
        assert lead.organization_id == "org-1"
        assert lead.external_lead_id == "444"
        assert lead.source_form_id == "form-200"
        assert lead.ad_id == "ad-1"
        assert lead.state == LeadState.PENDING.value
        assert lead.raw_fields == []

    def test_inline_field_data_is_kept(self, client, db, page_connection):
        payload = leadgen_payload(field_data=[{"name": "email", "values": ["a@b.nl"]}])

        post_signed(client, payload)

        assert db.query(LeadEvent).one().raw_fields == [["email", "a@b.nl"]]

    def test_redelivery_is_deduplicated(self, client, db, page_connection):
        post_signed(client, leadgen_payload())
        response = post_signed(client, leadgen_payload())

        assert response.json() == {"received": True, "count": 0}
        assert db.query(LeadEvent).count() == 1

    def test_unconnected_page_ignored(self, client, db):
        response = post_signed(client, leadgen_payload(page_id="page-unknown"))

        assert response.status_code == 200
        assert response.json()["count"] == 0
        assert db.query(LeadEvent).count() == 0

    def test_non_page_object_ignored(self, client, db, page_connection):
        payload = leadgen_payload()
        payload["object"] = "instagram"

        response = post_signed(client, payload)

        assert response.json() == {"received": True, "count": 0}
        assert db.query(LeadEvent).count() == 0

    def test_invalid_signature_rejected(self, client, db, page_connection):
        body = json.dumps(leadgen_payload()).encode("utf-8")

        response = client.post(ENDPOINT, content=body, headers={"X-Hub-Signature-256": sign(body, "wrong")})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert db.query(LeadEvent).count() == 0

    def test_missing_signature_rejected(self, client, page_connection):
        response = client.post(ENDPOINT, content=json.dumps(leadgen_payload()).encode("utf-8"))

        assert response.status_code == 401

    def test_invalid_json_rejected(self, client):
        body = b"{not json"

        response = client.post(ENDPOINT, content=body, headers={"X-Hub-Signature-256": sign(body)})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON"}


class TestExtractLeadgenEvents:
    """Payload parsing"""

    def test_changes_and_messaging(self):
        payload = {
            "object": "page",
            "entry": [{
                "id": "page-100",
                "changes": [
                    {"field": "feed", "value": {"item": "post"}},
                    {"field": "leadgen", "value": {"leadgen_id": 1, "form_id": 2}},
                ],
                "messaging": [{"leadgen": {"leadgen_id": "3", "page_id": "page-200"}}],
            }],
        }

        events = extract_leadgen_events(payload)

        assert [(e["leadgen_id"], e["page_id"], e["via"]) for e in events] == [
            ("1", "page-100", "changes"),
            ("3", "page-200", "messaging"),
        ]
        assert events[0]["form_id"] == "2"

    def test_events_without_lead_id_dropped(self):
        payload = {"entry": [{"id": "page-100", "changes": [{"field": "leadgen", "value": {"form_id": "f"}}]}]}

        assert extract_leadgen_events(payload) == []
