"""
Field Mapping Service

Loads the field mappings attached to a routing rule and merges them with
the built-in defaults for common Meta lead form keys.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from backend.db.models import CONTACT_FIELDS, FieldMapping, RoutingRule
from backend.services.lead_normalizer import MappingSpec
from backend.services.lead_transforms import (
    TRANSFORMS,
    TRANSFORM_IDENTITY,
    TRANSFORM_LOWERCASE,
    TRANSFORM_NAME_CAPITALIZE,
    TRANSFORM_PHONE_E164,
    TRANSFORM_TRIM,
)

logger = logging.getLogger(__name__)


# Standard question keys Meta uses on lead forms
DEFAULT_FIELD_MAPPINGS = (
    MappingSpec("email", "email", TRANSFORM_LOWERCASE),
    MappingSpec("phone_number", "phone", TRANSFORM_PHONE_E164),
    MappingSpec("full_name", "full_name", TRANSFORM_NAME_CAPITALIZE),
    MappingSpec("first_name", "first_name", TRANSFORM_NAME_CAPITALIZE),
    MappingSpec("last_name", "last_name", TRANSFORM_NAME_CAPITALIZE),
    MappingSpec("company_name", "company", TRANSFORM_TRIM),
    MappingSpec("job_title", "job_title", TRANSFORM_TRIM),
    MappingSpec("street_address", "address", TRANSFORM_TRIM),
    MappingSpec("city", "city", TRANSFORM_TRIM),
    MappingSpec("state", "state", TRANSFORM_TRIM),
    MappingSpec("zip_code", "postal_code", TRANSFORM_TRIM),
    MappingSpec("post_code", "postal_code", TRANSFORM_TRIM),
    MappingSpec("country", "country", TRANSFORM_IDENTITY),
)


class FieldMappingService:
    """Read access and validation for routing rule field mappings"""

    def get_mappings_for_rule(self, db: Session, routing_rule_id: str) -> List[FieldMapping]:
        return (
            db.query(FieldMapping)
            .filter(FieldMapping.routing_rule_id == routing_rule_id)
            .order_by(FieldMapping.source_field_key)
            .all()
        )

    def get_effective_mappings(
        self,
        db: Session,
        rule: RoutingRule,
        include_defaults: bool = True,
    ) -> List[MappingSpec]:
        """
        Mappings the normalizer should use for a rule.

        Configured mappings always win. With include_defaults, any default key
        the rule does not mention is added; a configured mapping with an empty
        target ("don't map") therefore also suppresses the default.
        """
        configured = [
            MappingSpec(m.source_field_key, m.target_field or "", m.transform or "")
            for m in self.get_mappings_for_rule(db, rule.id)
        ]
        if not include_defaults:
            return configured

        configured_keys = {m.source_field_key for m in configured}
        defaults = [m for m in DEFAULT_FIELD_MAPPINGS if m.source_field_key not in configured_keys]
        return configured + defaults

    def validate_mapping_set(self, mappings: Iterable) -> None:
        """
        Validate a full mapping set before it is saved for a rule.

        Raises:
            ValueError: On duplicate source keys, unknown targets or unknown transforms
        """
        seen = set()
        for mapping in mappings:
            key = (mapping.source_field_key or "").strip()
            if not key:
                raise ValueError("Field mapping source key cannot be empty")
            if key in seen:
                raise ValueError(f"Duplicate field mapping for source key: {key}")
            seen.add(key)

            if mapping.target_field and mapping.target_field not in CONTACT_FIELDS:
                raise ValueError(f"Unknown contact field: {mapping.target_field}")
            if (mapping.transform or "") not in TRANSFORMS:
                raise ValueError(f"Unknown transform: {mapping.transform}")

    def replace_mappings(self, db: Session, rule: RoutingRule, mappings: Iterable[MappingSpec]) -> List[FieldMapping]:
        """Replace all mappings of a rule in one go. Caller commits."""
        mappings = list(mappings)
        self.validate_mapping_set(mappings)

        db.query(FieldMapping).filter(FieldMapping.routing_rule_id == rule.id).delete(synchronize_session=False)
        rows = [
            FieldMapping(
                routing_rule_id=rule.id,
                source_field_key=m.source_field_key.strip(),
                target_field=m.target_field,
                transform=m.transform,
            )
            for m in mappings
        ]
        db.add_all(rows)
        db.flush()
        logger.info(f"Saved {len(rows)} field mappings for routing rule {rule.id}")
        return rows


_field_mapping_service: Optional[FieldMappingService] = None


def get_field_mapping_service() -> FieldMappingService:
    """Get the field mapping service instance"""
    global _field_mapping_service
    if _field_mapping_service is None:
        _field_mapping_service = FieldMappingService()
    return _field_mapping_service
