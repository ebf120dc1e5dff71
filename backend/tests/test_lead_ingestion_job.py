"""
Tests for a full scheduled lead processing pass
"""
from datetime import timedelta
from unittest.mock import Mock

import pytest

from backend.db.models import LeadEvent, LeadState
from backend.services.lead_ingestion_job import run_lead_processing_pass
from backend.tests.fixtures.lead_data import FIXED_NOW


class TestLeadProcessingPass:
    """Recovery, processing and stats in one run"""

    @pytest.fixture(autouse=True)
    def _setup(self, session_factory, settings):
        self.session_factory = session_factory
        self.settings = settings

    def _run(self, **kwargs):
        return run_lead_processing_pass(
            session_factory=self.session_factory,
            settings=self.settings,
            clock=lambda: FIXED_NOW,
            **kwargs,
        )

    def test_recovers_then_processes_stale_lead(self, db, make_rule, make_lead):
        make_rule()
        stale = make_lead(
            state=LeadState.PROCESSING.value,
            locked_by="crashed-worker",
            locked_at=FIXED_NOW - timedelta(minutes=10),
        )
        fresh = make_lead()

        result = self._run()

        assert result["success"] is True
        assert result["recovered"] == 1
        assert result["processed"] == 2
        assert result["succeeded"] == 2
        assert result["stats"]["completed"] == 2
        assert result["stats"]["by_platform"]["meta"]["completed"] == 2
        assert result["timestamp"] == FIXED_NOW.isoformat()
        assert isinstance(result["durationMs"], int)

        db.expire_all()
        assert db.get(LeadEvent, stale.id).state == LeadState.COMPLETED.value
        assert db.get(LeadEvent, fresh.id).state == LeadState.COMPLETED.value

    def test_leads_locked_recently_are_left_alone(self, db, make_rule, make_lead):
        make_rule()
        busy = make_lead(
            state=LeadState.PROCESSING.value,
            locked_by="live-worker",
            locked_at=FIXED_NOW - timedelta(seconds=30),
        )

        result = self._run()

        assert result["recovered"] == 0
        assert result["processed"] == 0
        assert result["stats"]["processing"] == 1
        db.expire_all()
        assert db.get(LeadEvent, busy.id).locked_by == "live-worker"

    def test_failures_reported_in_summary(self, db, make_lead):
        make_lead()

        result = self._run()

        assert result["failed"] == 1
        assert result["stats"]["failed"] == 1
        assert "No routing rule" in result["stats"]["recent_errors"][0]["last_error"]

    def test_recovery_is_silent(self, db, make_lead):
        stale = make_lead(
            state=LeadState.PROCESSING.value,
            locked_by="crashed-worker",
            locked_at=FIXED_NOW - timedelta(minutes=10),
        )
        processor = Mock()
        processor.process_pending_leads.return_value = {"processed": 0, "succeeded": 0, "failed": 0}

        result = self._run(processor=processor)

        processor.process_pending_leads.assert_called_once_with(self.settings.lead_batch_size)
        assert result["recovered"] == 1
        assert result["stats"]["pending"] == 1
        assert result["stats"]["recent_errors"] == []
        db.expire_all()
        assert db.get(LeadEvent, stale.id).last_error is None

    def test_batch_size_override(self, make_lead):
        processor = Mock()
        processor.process_pending_leads.return_value = {"processed": 0, "succeeded": 0, "failed": 0}

        self._run(processor=processor, batch_size=7)

        processor.process_pending_leads.assert_called_once_with(7)

    def test_infrastructure_error_propagates(self):
        processor = Mock()
        processor.process_pending_leads.side_effect = RuntimeError("database unreachable")

        with pytest.raises(RuntimeError, match="database unreachable"):
            self._run(processor=processor)
