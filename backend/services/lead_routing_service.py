"""
Lead Routing Service

Selects the routing rule for an inbound lead. A rule bound to the exact
form wins over the page-level wildcard; inactive rules are ignored.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from backend.db.models import RoutingRule

logger = logging.getLogger(__name__)


class LeadRoutingService:
    """Routing rule lookup and configuration checks"""

    def match_route(
        self,
        db: Session,
        organization_id: str,
        page_id: str,
        form_id: Optional[str],
    ) -> Optional[RoutingRule]:
        """
        Find the active routing rule for a lead.

        Returns:
            The form-specific rule if one exists, else the page wildcard, else None
        """
        base_query = db.query(RoutingRule).filter(
            RoutingRule.organization_id == organization_id,
            RoutingRule.source_page_id == page_id,
            RoutingRule.is_active.is_(True),
        )

        if form_id:
            specific = (
                base_query.filter(RoutingRule.source_form_id == form_id)
                .order_by(RoutingRule.created_at, RoutingRule.id)
                .first()
            )
            if specific is not None:
                return specific

        wildcard = (
            base_query.filter(RoutingRule.source_form_id.is_(None))
            .order_by(RoutingRule.created_at, RoutingRule.id)
            .first()
        )
        if wildcard is None:
            logger.debug(f"No routing rule for org {organization_id} page {page_id} form {form_id}")
        return wildcard

    def validate_routing_rule(self, db: Session, rule: RoutingRule) -> None:
        """
        Check a rule about to be saved against the active-rule uniqueness rules.

        Raises:
            ValueError: If another active rule already covers the same page/form
        """
        if not rule.source_page_id:
            raise ValueError("Routing rule requires a source page")
        if not rule.target_pipeline_id or not rule.target_stage_id:
            raise ValueError("Routing rule requires a target pipeline and stage")
        if not rule.is_active:
            return

        query = db.query(RoutingRule).filter(
            RoutingRule.organization_id == rule.organization_id,
            RoutingRule.source_page_id == rule.source_page_id,
            RoutingRule.is_active.is_(True),
        )
        if rule.id is not None:
            query = query.filter(RoutingRule.id != rule.id)

        if rule.source_form_id is None:
            if query.filter(RoutingRule.source_form_id.is_(None)).first():
                raise ValueError(f"Page {rule.source_page_id} already has an active catch-all rule")
        elif query.filter(RoutingRule.source_form_id == rule.source_form_id).first():
            raise ValueError(
                f"Form {rule.source_form_id} on page {rule.source_page_id} already has an active rule"
            )


_lead_routing_service: Optional[LeadRoutingService] = None


def get_lead_routing_service() -> LeadRoutingService:
    """Get the lead routing service instance"""
    global _lead_routing_service
    if _lead_routing_service is None:
        _lead_routing_service = LeadRoutingService()
    return _lead_routing_service
