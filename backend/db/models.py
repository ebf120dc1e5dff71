from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship, validates
from backend.db.database import Base
from backend.services.lead_transforms import TRANSFORMS
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LeadState(str, Enum):
    """Lifecycle of an inbox lead"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class LeadSourcePlatform(str, Enum):
    META = "meta"


# Fixed set of contact attributes a form field can be mapped onto
CONTACT_FIELDS = (
    "first_name",
    "last_name",
    "full_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "state",
    "postal_code",
    "country",
    "notes",
    "custom_field_1",
    "custom_field_2",
    "custom_field_3",
)


class MetaPageConnection(Base):
    """
    A Facebook page connected to an organization for lead ads.
    Resolves incoming webhook page ids to tenants and holds the page token
    used to hydrate leads from the Graph API.
    """
    __tablename__ = "meta_page_connections"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)
    page_id = Column(String, nullable=False, unique=True, index=True)
    page_name = Column(String, nullable=True)
    page_access_token = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class RoutingRule(Base):
    """
    Routes leads from a (page, form) pair into a pipeline stage.
    A null source_form_id makes the rule a page-level wildcard.
    """
    __tablename__ = "lead_routing_rules"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)

    source_page_id = Column(String, nullable=False)
    source_form_id = Column(String, nullable=True)  # None = any form on the page

    target_pipeline_id = Column(String, nullable=False)
    target_stage_id = Column(String, nullable=False)
    assignee_id = Column(String, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    field_mappings = relationship(
        "FieldMapping",
        back_populates="routing_rule",
        cascade="all, delete-orphan",
        order_by="FieldMapping.source_field_key",
    )

    __table_args__ = (
        Index('idx_routing_rule_lookup', 'organization_id', 'source_page_id', 'is_active'),
        Index(
            'uq_routing_rule_active_wildcard', 'organization_id', 'source_page_id',
            unique=True,
            postgresql_where=text("source_form_id IS NULL AND is_active"),
            sqlite_where=text("source_form_id IS NULL AND is_active = 1"),
        ),
        Index(
            'uq_routing_rule_active_form', 'organization_id', 'source_page_id', 'source_form_id',
            unique=True,
            postgresql_where=text("source_form_id IS NOT NULL AND is_active"),
            sqlite_where=text("source_form_id IS NOT NULL AND is_active = 1"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "source_page_id": self.source_page_id,
            "source_form_id": self.source_form_id,
            "target_pipeline_id": self.target_pipeline_id,
            "target_stage_id": self.target_stage_id,
            "assignee_id": self.assignee_id,
            "is_active": self.is_active,
        }


class FieldMapping(Base):
    """Maps one form field key of a routing rule onto a contact attribute"""
    __tablename__ = "lead_field_mappings"

    id = Column(Integer, primary_key=True, index=True)
    routing_rule_id = Column(String, ForeignKey("lead_routing_rules.id", ondelete="CASCADE"), nullable=False, index=True)
    source_field_key = Column(String, nullable=False)
    target_field = Column(String, nullable=False, default="")  # "" = don't map
    transform = Column(String, nullable=False, default="")  # "" = identity

    routing_rule = relationship("RoutingRule", back_populates="field_mappings")

    __table_args__ = (
        UniqueConstraint('routing_rule_id', 'source_field_key', name='uq_field_mapping_rule_key'),
    )

    @validates('target_field')
    def _validate_target_field(self, key, value):
        value = value or ""
        if value and value not in CONTACT_FIELDS:
            raise ValueError(f"Unknown contact field: {value}")
        return value

    @validates('transform')
    def _validate_transform(self, key, value):
        value = value or ""
        if value not in TRANSFORMS:
            raise ValueError(f"Unknown transform: {value}")
        return value


class LeadEvent(Base):
    """
    Lead inbox entry. One row per external lead per organization; the row is
    the unit of work for the lead processor and carries its own lock.
    """
    __tablename__ = "lead_inbox_events"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)

    # Source
    source_platform = Column(String(20), nullable=False, default=LeadSourcePlatform.META.value)
    source_page_id = Column(String, nullable=False)
    source_form_id = Column(String, nullable=True)
    external_lead_id = Column(String, nullable=False)
    ad_id = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)

    raw_fields = Column(JSON, nullable=False, default=list)  # [[key, value], ...] in received order
    payload = Column(JSON, nullable=True)  # Raw webhook entry for audit

    # Processing state
    state = Column(String(20), nullable=False, default=LeadState.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)  # Retry backoff gate

    # Outcome
    contact_id = Column(String, nullable=True)
    opportunity_id = Column(String, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('organization_id', 'source_platform', 'external_lead_id', name='uq_lead_event_external'),
        Index('idx_lead_event_state_created', 'state', 'created_at'),
        Index('idx_lead_event_state_locked', 'state', 'locked_at'),
        Index('idx_lead_event_org_state', 'organization_id', 'state'),
    )

    def field_pairs(self) -> List[tuple]:
        return [(pair[0], pair[1]) for pair in (self.raw_fields or [])]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "source_platform": self.source_platform,
            "source_page_id": self.source_page_id,
            "source_form_id": self.source_form_id,
            "external_lead_id": self.external_lead_id,
            "ad_id": self.ad_id,
            "campaign_id": self.campaign_id,
            "state": self.state,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "contact_id": self.contact_id,
            "opportunity_id": self.opportunity_id,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Contact(Base):
    """CRM contact created or enriched from inbound leads"""
    __tablename__ = "contacts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)

    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    phone_digits = Column(String, nullable=True)  # Normalized for dedupe
    company = Column(String, nullable=True)
    job_title = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    country = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    custom_field_1 = Column(String, nullable=True)
    custom_field_2 = Column(String, nullable=True)
    custom_field_3 = Column(String, nullable=True)

    source = Column(String, nullable=True)  # meta_lead_ads, manual, ...

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_contact_org_email', 'organization_id', 'email'),
        Index('idx_contact_org_phone', 'organization_id', 'phone_digits'),
    )


class Opportunity(Base):
    """Pipeline card created for each routed lead"""
    __tablename__ = "opportunities"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(String, nullable=False, index=True)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True)
    pipeline_id = Column(String, nullable=False)
    stage_id = Column(String, nullable=False)
    assignee_id = Column(String, nullable=True)
    title = Column(String, nullable=False)
    source = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    contact = relationship("Contact")

    __table_args__ = (
        Index('idx_opportunity_org_pipeline_stage', 'organization_id', 'pipeline_id', 'stage_id'),
    )


class LeadAttribution(Base):
    """
    Links an external lead to the contact and opportunity it produced.
    Unique per external lead, so it doubles as the downstream idempotency record.
    """
    __tablename__ = "lead_attributions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)
    source_platform = Column(String(20), nullable=False, default=LeadSourcePlatform.META.value)
    external_lead_id = Column(String, nullable=False)
    lead_event_id = Column(Integer, ForeignKey("lead_inbox_events.id", ondelete="SET NULL"), nullable=True)
    contact_id = Column(String, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    opportunity_id = Column(String, ForeignKey("opportunities.id", ondelete="SET NULL"), nullable=True)

    page_id = Column(String, nullable=True)
    form_id = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    campaign_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint('organization_id', 'source_platform', 'external_lead_id', name='uq_lead_attribution_external'),
    )


class OpportunityStageHistory(Base):
    """Stage moves of an opportunity; the first row records the routed stage"""
    __tablename__ = "opportunity_stage_history"

    id = Column(Integer, primary_key=True, index=True)
    opportunity_id = Column(String, ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False, index=True)
    from_stage_id = Column(String, nullable=True)  # None for the initial placement
    to_stage_id = Column(String, nullable=False)
    moved_by_id = Column(String, nullable=True)  # None when moved by the system
    moved_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class AuditLogEntry(Base):
    """Append-only audit trail of CRM changes"""
    __tablename__ = "crm_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)
    action = Column(String(100), nullable=False)  # contact.created, contact.updated
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
    )


class OutboxEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutboxEvent(Base):
    """
    Domain event written in the same transaction as the change it describes.
    Delivery to downstream consumers happens elsewhere.
    """
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(String, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)  # contact.created, opportunity.created
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default=OutboxEventStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index('idx_outbox_status_created', 'status', 'created_at'),
    )
