"""
Test for Bare Except Blocks

Ensures lead pipeline failures are handled with typed exceptions and
logged rather than swallowed.
"""
import logging
import re
from pathlib import Path

from backend.services.lead_processor import LeadProcessor
from backend.tests.fixtures.lead_data import FIXED_NOW

BACKEND_DIR = Path(__file__).resolve().parents[2]


def test_lead_failure_is_logged(caplog, session_factory, settings, make_lead):
    """A lead without a routing rule is failed and the reason logged"""
    make_lead(page_id="page-without-rule")
    processor = LeadProcessor(session_factory=session_factory, settings=settings, clock=lambda: FIXED_NOW)

    with caplog.at_level(logging.ERROR):
        result = processor.process_pending_leads(10)

    assert result["failed"] == 1
    logged_messages = [rec.getMessage() for rec in caplog.records]
    assert any("page-without-rule" in msg for msg in logged_messages), f"No error logged. Messages: {logged_messages}"


def test_no_bare_except_blocks_remain():
    """Verify no bare except blocks exist outside the tests"""
    bare_except_pattern = re.compile(r'^\s*except\s*:', re.MULTILINE)

    for file_path in BACKEND_DIR.rglob("*.py"):
        if "tests" in file_path.parts:
            continue
        matches = bare_except_pattern.findall(file_path.read_text())
        assert len(matches) == 0, f"Found {len(matches)} bare except blocks in {file_path}"
