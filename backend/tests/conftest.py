"""
Shared fixtures for lead ingestion tests

Each test gets its own SQLite database file so worker threads can open
their own sessions against it.
"""
from datetime import timedelta
from itertools import count

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.api.lead_ingestion_cron import get_session_factory
from backend.core.app_factory import AppConfig, create_app
from backend.core.config import Settings, get_settings
from backend.db.database import Base, get_db
from backend.db.models import FieldMapping, LeadEvent, LeadState, MetaPageConnection, RoutingRule
from backend.tests.fixtures.lead_data import FIXED_NOW, FORM_ID, ORG_ID, PAGE_ID


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'leads.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment="test",
        cron_secret="cron-secret",
        meta_app_secret="app-secret",
        meta_webhook_verify_token="verify-me",
        lead_batch_size=100,
        lead_max_retries=5,
        lead_stale_processing_seconds=300,
        lead_processing_timeout_seconds=60,
        lead_processor_max_workers=1,
        lead_default_phone_country_code="31",
        lead_apply_default_field_mappings=True,
    )


@pytest.fixture
def make_rule(db):
    """Create a routing rule, optionally with field mappings given as (key, target, transform)"""
    def _make_rule(
        form_id=FORM_ID,
        page_id=PAGE_ID,
        organization_id=ORG_ID,
        pipeline_id="pipeline-sales",
        stage_id="stage-new",
        assignee_id=None,
        is_active=True,
        mappings=(),
        created_at=None,
    ):
        rule = RoutingRule(
            organization_id=organization_id,
            source_page_id=page_id,
            source_form_id=form_id,
            target_pipeline_id=pipeline_id,
            target_stage_id=stage_id,
            assignee_id=assignee_id,
            is_active=is_active,
        )
        if created_at is not None:
            rule.created_at = created_at
        db.add(rule)
        db.flush()
        for key, target, transform in mappings:
            db.add(FieldMapping(
                routing_rule_id=rule.id,
                source_field_key=key,
                target_field=target,
                transform=transform,
            ))
        db.commit()
        return rule

    return _make_rule


@pytest.fixture
def make_lead(db):
    """Insert an inbox lead directly, bypassing ingestion"""
    sequence = count(1)

    def _make_lead(
        raw_fields=(("email", "jane@example.com"),),
        external_lead_id=None,
        state=LeadState.PENDING.value,
        retry_count=0,
        form_id=FORM_ID,
        page_id=PAGE_ID,
        organization_id=ORG_ID,
        created_at=None,
        locked_at=None,
        locked_by=None,
        last_error=None,
    ):
        n = next(sequence)
        lead = LeadEvent(
            organization_id=organization_id,
            source_page_id=page_id,
            source_form_id=form_id,
            external_lead_id=external_lead_id or f"leadgen-{n}",
            raw_fields=[list(pair) for pair in raw_fields],
            state=state,
            retry_count=retry_count,
            locked_at=locked_at,
            locked_by=locked_by,
            last_error=last_error,
            created_at=created_at or (FIXED_NOW - timedelta(minutes=60) + timedelta(seconds=n)),
        )
        db.add(lead)
        db.commit()
        return lead

    return _make_lead


@pytest.fixture
def page_connection(db):
    connection = MetaPageConnection(
        organization_id=ORG_ID,
        page_id=PAGE_ID,
        page_name="Acme Leads",
        page_access_token="page-token",
        is_active=True,
    )
    db.add(connection)
    db.commit()
    return connection


@pytest.fixture
def app(settings, session_factory):
    """Application wired to the test database and settings"""
    application = create_app(AppConfig(environment="test"))

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    return application


@pytest.fixture
def client(app):
    return TestClient(app)
