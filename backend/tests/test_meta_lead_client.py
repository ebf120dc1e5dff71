"""
Tests for the Graph API lead client
"""
import httpx
import pytest

from backend.integrations.meta_lead_client import MetaApiError, MetaLeadClient, parse_lead_fields


def client_for(handler, settings):
    return MetaLeadClient(settings, http_client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestParseLeadFields:
    """field_data flattening"""

    def test_keeps_order_and_joins_multiple_values(self):
        field_data = [
            {"name": "full_name", "values": ["Jane Doe"]},
            {"name": "interests", "values": ["solar", "batteries"]},
            {"name": "budget", "values": []},
        ]

        assert parse_lead_fields(field_data) == [
            ("full_name", "Jane Doe"),
            ("interests", "solar, batteries"),
            ("budget", ""),
        ]

    def test_nameless_entries_skipped(self):
        assert parse_lead_fields([{"values": ["x"]}, {"name": "email", "values": ["a@b.nl"]}]) == [
            ("email", "a@b.nl")
        ]

    def test_missing_field_data(self):
        assert parse_lead_fields(None) == []


class TestMetaLeadClient:
    """fetch_lead against a mocked Graph API"""

    def test_fetch_lead(self, settings):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"id": "444", "field_data": [{"name": "email", "values": ["a@b.nl"]}]})

        client = client_for(handler, settings)
        data = client.fetch_lead("444", "page-token")
        client.close()

        assert data["id"] == "444"
        assert seen["url"].path == f"/{settings.meta_graph_api_version}/444"
        assert seen["url"].params["access_token"] == "page-token"
        assert "field_data" in seen["url"].params["fields"]

    def test_graph_error_raises_with_message(self, settings):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid OAuth access token", "code": 190}})

        client = client_for(handler, settings)

        with pytest.raises(MetaApiError, match="Invalid OAuth access token") as exc_info:
            client.fetch_lead("444", "expired")

        assert exc_info.value.status_code == 400
        assert exc_info.value.response_data["error"]["code"] == 190

    def test_transport_error_raises(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = client_for(handler, settings)

        with pytest.raises(MetaApiError, match="failed"):
            client.fetch_lead("444", "page-token")

    def test_error_body_that_is_not_an_object(self, settings):
        def handler(request):
            return httpx.Response(502, json=[{"message": "upstream"}])

        client = client_for(handler, settings)

        with pytest.raises(MetaApiError, match="502") as exc_info:
            client.fetch_lead("444", "page-token")

        assert exc_info.value.status_code == 502
        assert exc_info.value.response_data == [{"message": "upstream"}]

    def test_success_body_that_is_not_an_object(self, settings):
        def handler(request):
            return httpx.Response(200, json=["unexpected"])

        client = client_for(handler, settings)

        with pytest.raises(MetaApiError, match="unexpected body"):
            client.fetch_lead("444", "page-token")
