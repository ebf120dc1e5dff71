"""
Meta Lead Ads Graph API client

Fetches a lead's submitted answers from the Graph API when the webhook
delivery only carried the leadgen id.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from backend.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"
LEAD_FIELDS = "id,created_time,ad_id,adset_id,campaign_id,form_id,field_data"


class MetaApiError(Exception):
    """Graph API request failed"""
    def __init__(self, message: str, status_code: Optional[int] = None, response_data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


def parse_lead_fields(field_data: Optional[List[Dict[str, Any]]]) -> List[Tuple[str, str]]:
    """
    Flatten Graph API field_data into ordered (key, value) pairs.

    Multi-select answers arrive as several values and are joined with ", ".
    """
    pairs = []
    for item in field_data or []:
        name = item.get("name")
        if not name:
            continue
        values = [str(v) for v in (item.get("values") or []) if v is not None]
        pairs.append((name, ", ".join(values)))
    return pairs


class MetaLeadClient:
    """Synchronous Graph API client used from lead processor worker threads"""

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.Client] = None):
        self.settings = settings or get_settings()
        self.base_url = f"{GRAPH_BASE_URL}/{self.settings.meta_graph_api_version}"
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(self.settings.meta_graph_timeout_seconds),
            headers={"Accept": "application/json"},
        )

    def fetch_lead(self, leadgen_id: str, access_token: str) -> Dict[str, Any]:
        """
        Fetch a single lead by its leadgen id.

        Raises:
            MetaApiError: On transport errors and non-2xx responses
        """
        url = f"{self.base_url}/{leadgen_id}"
        try:
            response = self._client.get(url, params={"access_token": access_token, "fields": LEAD_FIELDS})
        except httpx.HTTPError as e:
            raise MetaApiError(f"Graph API request for lead {leadgen_id} failed: {e}") from e

        if response.status_code >= 400:
            try:
                data = response.json()
            except ValueError:
                data = {"raw": response.text}
            error = data.get("error") if isinstance(data, dict) else None
            message = error.get("message") if isinstance(error, dict) else None
            raise MetaApiError(
                f"Graph API returned {response.status_code} for lead {leadgen_id}: {message or response.reason_phrase}",
                status_code=response.status_code,
                response_data=data,
            )

        data = response.json()
        if not isinstance(data, dict):
            raise MetaApiError(f"Graph API returned an unexpected body for lead {leadgen_id}", response_data=data)
        logger.debug(f"Fetched lead {leadgen_id} with {len(data.get('field_data') or [])} fields")
        return data

    def close(self) -> None:
        self._client.close()
