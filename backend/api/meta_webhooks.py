"""
Meta Lead Ads webhook receiver

Handles the subscription handshake and stores every leadgen event as a
pending lead in the inbox. Processing happens later in the scheduled pass;
this endpoint only persists and acknowledges.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from backend.core.config import Settings, get_settings
from backend.core.webhook_security import META_SIGNATURE_HEADER, MetaWebhookVerifier, WebhookSecurityError
from backend.db.database import get_db
from backend.db.models import MetaPageConnection
from backend.integrations.meta_lead_client import parse_lead_fields
from backend.services.lead_inbox_service import get_lead_inbox_service
from backend.services.system_metrics import get_system_metrics_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def extract_leadgen_events(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Pull leadgen events out of a page webhook payload.

    Leads arrive as "leadgen" changes, and occasionally through messaging.
    """
    events = []
    for entry in payload.get("entry") or []:
        entry_page_id = str(entry.get("id")) if entry.get("id") is not None else None

        for change in entry.get("changes") or []:
            if change.get("field") != "leadgen":
                continue
            value = change.get("value") or {}
            events.append(_leadgen_event(value, entry_page_id, via="changes"))

        for message in entry.get("messaging") or []:
            leadgen = message.get("leadgen")
            if leadgen:
                events.append(_leadgen_event(leadgen, entry_page_id, via="messaging"))

    return [event for event in events if event["leadgen_id"] and event["page_id"]]


def _leadgen_event(value: Dict[str, Any], entry_page_id: Optional[str], via: str) -> Dict[str, Any]:
    def as_str(key: str) -> Optional[str]:
        item = value.get(key)
        return str(item) if item not in (None, "") else None

    return {
        "leadgen_id": as_str("leadgen_id"),
        "page_id": as_str("page_id") or entry_page_id,
        "form_id": as_str("form_id"),
        "ad_id": as_str("ad_id"),
        "adgroup_id": as_str("adgroup_id"),
        "campaign_id": as_str("campaign_id"),
        "created_time": value.get("created_time"),
        "field_data": value.get("field_data"),
        "via": via,
        "value": value,
    }


def ingest_leadgen_events(db: Session, events: List[Dict[str, Any]]) -> Dict[str, int]:
    """Store leadgen events for known pages; returns counts per outcome"""
    inbox = get_lead_inbox_service()
    counts = {"stored": 0, "duplicate": 0, "unknown_page": 0}

    for event in events:
        connection = (
            db.query(MetaPageConnection)
            .filter(MetaPageConnection.page_id == event["page_id"], MetaPageConnection.is_active.is_(True))
            .first()
        )
        if connection is None:
            logger.warning(f"Lead {event['leadgen_id']} for unconnected page {event['page_id']}, ignoring")
            counts["unknown_page"] += 1
            continue

        _, is_new = inbox.ingest_lead(
            db,
            organization_id=connection.organization_id,
            external_lead_id=event["leadgen_id"],
            page_id=event["page_id"],
            form_id=event["form_id"],
            raw_fields=parse_lead_fields(event["field_data"]) if event["field_data"] else None,
            ad_id=event["ad_id"],
            campaign_id=event["campaign_id"],
            payload={"via": event["via"], "value": event["value"]},
        )
        counts["stored" if is_new else "duplicate"] += 1

    return counts


@router.get("/meta")
def verify_meta_subscription(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
):
    """Meta subscription handshake: echo the challenge for a valid verify token"""
    if MetaWebhookVerifier(settings).verify_subscription(hub_mode, hub_verify_token):
        logger.info("Meta webhook subscription verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Meta webhook verification failed")
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "Verification failed"})


@router.post("/meta")
async def receive_meta_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Store incoming leadgen events; always 200 once the body is authentic and parsed"""
    metrics = get_system_metrics_service()
    body = await request.body()

    try:
        MetaWebhookVerifier(settings).verify_signature(body, request.headers.get(META_SIGNATURE_HEADER))
    except WebhookSecurityError as e:
        metrics.track_signature_validation("meta", "invalid")
        logger.warning(f"Rejected Meta webhook: {e}")
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Invalid signature"})
    metrics.track_signature_validation("meta", "valid")

    try:
        payload = json.loads(body)
    except ValueError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid JSON"})

    if not isinstance(payload, dict) or payload.get("object") != "page":
        metrics.track_webhook_event("meta", "ignored")
        return {"received": True, "count": 0}

    counts = ingest_leadgen_events(db, extract_leadgen_events(payload))
    for outcome, count in counts.items():
        metrics.track_webhook_event("meta", outcome, count)

    logger.info(
        f"Meta webhook: {counts['stored']} stored, {counts['duplicate']} duplicates, "
        f"{counts['unknown_page']} for unknown pages"
    )
    return {"received": True, "count": counts["stored"]}
