"""
Constants shared by the lead ingestion tests
"""
from datetime import datetime, timezone

ORG_ID = "org-1"
PAGE_ID = "page-100"
FORM_ID = "form-200"
FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
