"""
Shared fixtures for metering tests.
"""

import os
from datetime import datetime, timezone

import pytest

from voravia_meter.core.emitter import emit_usage_event
from voravia_meter.storage.models import UsageContext
from voravia_meter.storage.repository import initialize_schema

# A fixed "now": 2025-03-10 15:00 UTC
NOW = datetime(2025, 3, 10, 15, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    """Fresh database with both tables created."""
    path = os.path.join(str(tmp_path), "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def emit(db_path):
    """Emit an event at a given time with sensible defaults."""
    def _emit(timestamp, cost_usd, owner="owner_1", actor="actor_1", subject="mem_1",
              provider="openai", service="openai_scan_vision", units=1, metadata=None):
        context = UsageContext(actor_user_id=actor, billing_owner_id=owner, mode="family",
                               request_id="req_test")
        return emit_usage_event(
            context,
            provider=provider,
            service=service,
            subject_user_id=subject,
            units=units,
            unit_cost_usd=cost_usd,
            cost_usd=cost_usd,
            metadata=metadata,
            db_path=db_path,
            timestamp=timestamp,
        )
    return _emit
