"""
Unit tests for usage event emission.
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from voravia_meter.core.emitter import emit_usage_event
from voravia_meter.storage.models import UsageContext
from voravia_meter.storage.repository import UsageRepository

CONTEXT = UsageContext(actor_user_id="u_1", billing_owner_id="u_1")


class TestEmitUsageEvent:

    def test_persists_individual_event(self, db_path):
        event = emit_usage_event(
            CONTEXT,
            provider="google",
            service="google_places_searchNearby",
            units=1,
            unit_cost_usd=0.032,
            cost_usd=0.032,
            metadata={"radiusMeters": 1500},
            db_path=db_path,
        )

        [stored] = UsageRepository(db_path).query()
        assert stored == event
        assert stored.mode == "individual"
        assert stored.subject_user_id is None
        assert stored.request_id is None
        assert stored.metadata == {"radiusMeters": 1500}
        assert stored.timestamp.tzinfo is not None

    def test_ids_are_unique(self, db_path):
        ids = {
            emit_usage_event(CONTEXT, provider="openai", service="openai_menu_ocr", units=1,
                             unit_cost_usd=0.001, cost_usd=0.001, db_path=db_path).id
            for _ in range(5)
        }
        assert len(ids) == 5

    def test_naive_timestamp_treated_as_utc(self, db_path):
        event = emit_usage_event(CONTEXT, provider="openai", service="openai_menu_ocr", units=1,
                                 unit_cost_usd=0.0, cost_usd=0.0, db_path=db_path,
                                 timestamp=datetime(2025, 3, 9, 23, 59, 59))

        assert event.timestamp == datetime(2025, 3, 9, 23, 59, 59, tzinfo=timezone.utc)

    def test_empty_subject_stored_as_absent(self, db_path, emit):
        event = emit(datetime(2025, 3, 9, tzinfo=timezone.utc), 0.01, subject="")
        assert event.subject_user_id is None

    def test_insert_failure_propagates(self, tmp_path):
        with pytest.raises(sqlite3.OperationalError):
            emit_usage_event(CONTEXT, provider="openai", service="openai_menu_ocr", units=1,
                             unit_cost_usd=0.0, cost_usd=0.0,
                             db_path=str(tmp_path / "missing_schema.db"))

    def test_concurrent_inserts_are_all_persisted(self, db_path):
        def emit_batch(worker):
            context = UsageContext(actor_user_id=f"u_{worker}", billing_owner_id="fam_1",
                                   mode="family")
            return [
                emit_usage_event(context, provider="openai", service="openai_scan_vision",
                                 units=1, unit_cost_usd=0.0032, cost_usd=0.0032,
                                 db_path=db_path).id
                for _ in range(20)
            ]

        with ThreadPoolExecutor(max_workers=8) as pool:
            batches = list(pool.map(emit_batch, range(8)))

        emitted = {event_id for batch in batches for event_id in batch}
        stored = UsageRepository(db_path, max_query_limit=1000).query(limit=1000)
        assert len(emitted) == 160
        assert {event.id for event in stored} == emitted
