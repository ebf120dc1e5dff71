"""
Contact Store

Writes the CRM side of a processed lead: the contact (deduplicated within
the organization), the opportunity in the routed pipeline stage with its
initial stage history entry, and the lead attribution that ties the external
lead id to both. The same transaction records an audit entry for the contact
and outbox events for downstream consumers.
"""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from backend.db.models import (
    CONTACT_FIELDS,
    AuditLogEntry,
    Contact,
    LeadAttribution,
    LeadEvent,
    Opportunity,
    OpportunityStageHistory,
    OutboxEvent,
    RoutingRule,
)
from backend.services.lead_normalizer import NormalizedLead
from backend.services.lead_transforms import to_e164_digits

logger = logging.getLogger(__name__)

CONTACT_SOURCE = "meta_lead_ads"

CONTACT_CREATED = "contact.created"
CONTACT_UPDATED = "contact.updated"
OPPORTUNITY_CREATED = "opportunity.created"


@dataclass
class LeadAttachment:
    contact: Contact
    opportunity: Opportunity
    attribution: LeadAttribution
    created_contact: bool
    matched_on: Optional[str] = None  # "email" | "phone" when an existing contact was reused


def split_full_name(full_name: str) -> Dict[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return {}
    if len(parts) == 1:
        return {"first_name": parts[0]}
    return {"first_name": parts[0], "last_name": " ".join(parts[1:])}


class ContactStore:
    """CRM writes performed inside the lead processor's transaction"""

    def __init__(self, default_country_code: Optional[str] = None):
        self.default_country_code = default_country_code

    def find_attribution(
        self,
        db: Session,
        organization_id: str,
        external_lead_id: str,
        source_platform: str,
    ) -> Optional[LeadAttribution]:
        return (
            db.query(LeadAttribution)
            .filter(
                LeadAttribution.organization_id == organization_id,
                LeadAttribution.source_platform == source_platform,
                LeadAttribution.external_lead_id == external_lead_id,
            )
            .first()
        )

    def attach_lead(
        self,
        db: Session,
        lead: LeadEvent,
        rule: RoutingRule,
        normalized: NormalizedLead,
    ) -> LeadAttachment:
        """
        Create or enrich the contact for a lead and open an opportunity for it.

        Nothing is committed here; the processor commits together with the
        lead's state change.
        """
        values = self._contact_values(normalized)

        contact, matched_on = self._find_existing_contact(db, lead.organization_id, values)
        created = contact is None
        if created:
            contact = Contact(organization_id=lead.organization_id, source=CONTACT_SOURCE)
            db.add(contact)

        self._merge_empty_fields(contact, values)
        contact.phone_digits = self._phone_digits(contact.phone)
        db.flush()

        opportunity = Opportunity(
            organization_id=lead.organization_id,
            contact_id=contact.id,
            pipeline_id=rule.target_pipeline_id,
            stage_id=rule.target_stage_id,
            assignee_id=rule.assignee_id,
            title=self._opportunity_title(contact, lead),
            source=CONTACT_SOURCE,
        )
        db.add(opportunity)
        db.flush()

        db.add(OpportunityStageHistory(
            opportunity_id=opportunity.id,
            from_stage_id=None,
            to_stage_id=rule.target_stage_id,
            moved_by_id=None,
        ))

        attribution = LeadAttribution(
            organization_id=lead.organization_id,
            source_platform=lead.source_platform,
            external_lead_id=lead.external_lead_id,
            lead_event_id=lead.id,
            contact_id=contact.id,
            opportunity_id=opportunity.id,
            page_id=lead.source_page_id,
            form_id=lead.source_form_id,
            ad_id=lead.ad_id,
            campaign_id=lead.campaign_id,
        )
        db.add(attribution)
        self._record_events(db, lead, contact, opportunity, created, matched_on)
        db.flush()

        if created:
            logger.info(f"Created contact {contact.id} from lead {lead.external_lead_id}")
        else:
            logger.info(f"Matched lead {lead.external_lead_id} to existing contact {contact.id} by {matched_on}")

        return LeadAttachment(
            contact=contact,
            opportunity=opportunity,
            attribution=attribution,
            created_contact=created,
            matched_on=matched_on,
        )

    def _record_events(
        self,
        db: Session,
        lead: LeadEvent,
        contact: Contact,
        opportunity: Opportunity,
        created: bool,
        matched_on: Optional[str],
    ) -> None:
        source = {
            "source": lead.source_platform,
            "external_lead_id": lead.external_lead_id,
            "lead_event_id": lead.id,
            "page_id": lead.source_page_id,
            "form_id": lead.source_form_id,
        }

        db.add(AuditLogEntry(
            organization_id=lead.organization_id,
            action=CONTACT_CREATED if created else CONTACT_UPDATED,
            entity_type="contact",
            entity_id=contact.id,
            details={**source, "is_new_contact": created, "matched_on": matched_on or "none"},
        ))

        if created:
            db.add(OutboxEvent(
                organization_id=lead.organization_id,
                event_type=CONTACT_CREATED,
                entity_type="contact",
                entity_id=contact.id,
                payload={**source, "contact_id": contact.id, "email": contact.email, "phone": contact.phone},
            ))

        db.add(OutboxEvent(
            organization_id=lead.organization_id,
            event_type=OPPORTUNITY_CREATED,
            entity_type="opportunity",
            entity_id=opportunity.id,
            payload={
                **source,
                "opportunity_id": opportunity.id,
                "contact_id": contact.id,
                "pipeline_id": opportunity.pipeline_id,
                "stage_id": opportunity.stage_id,
                "assignee_id": opportunity.assignee_id,
                "is_new_contact": created,
                "matched_on": matched_on or "none",
            },
        ))

    def _contact_values(self, normalized: NormalizedLead) -> Dict[str, str]:
        values = {k: v for k, v in normalized.contact_payload.items() if k in CONTACT_FIELDS and v}

        if values.get("full_name") and not values.get("first_name") and not values.get("last_name"):
            values.update(split_full_name(values["full_name"]))
        elif not values.get("full_name") and (values.get("first_name") or values.get("last_name")):
            values["full_name"] = " ".join(filter(None, [values.get("first_name"), values.get("last_name")]))

        if values.get("email"):
            values["email"] = values["email"].strip().lower()

        notes = [n for n in (values.get("notes"), normalized.unmapped_notes) if n]
        if notes:
            values["notes"] = "\n".join(notes)
        return values

    def _find_existing_contact(self, db: Session, organization_id: str, values: Dict[str, str]):
        email = values.get("email")
        if email:
            contact = (
                db.query(Contact)
                .filter(Contact.organization_id == organization_id, Contact.email == email)
                .order_by(Contact.created_at)
                .first()
            )
            if contact is not None:
                return contact, "email"

        digits = self._phone_digits(values.get("phone"))
        if digits:
            contact = (
                db.query(Contact)
                .filter(Contact.organization_id == organization_id, Contact.phone_digits == digits)
                .order_by(Contact.created_at)
                .first()
            )
            if contact is not None:
                return contact, "phone"

        return None, None

    def _merge_empty_fields(self, contact: Contact, values: Dict[str, str]) -> None:
        for field_name, value in values.items():
            if field_name == "notes":
                contact.notes = "\n".join(filter(None, [contact.notes, value]))
            elif not getattr(contact, field_name):
                setattr(contact, field_name, value)

    def _phone_digits(self, phone: Optional[str]) -> Optional[str]:
        if not phone:
            return None
        e164 = to_e164_digits(phone, self.default_country_code)
        if e164:
            return e164
        digits = re.sub(r"\D", "", phone)
        return digits or None

    def _opportunity_title(self, contact: Contact, lead: LeadEvent) -> str:
        name = contact.full_name or contact.email or contact.phone
        return f"{name} (Meta lead)" if name else f"Meta lead {lead.external_lead_id}"
