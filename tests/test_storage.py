"""
Unit tests for storage layer.

Tests schema creation, event insertion, coalescing updates and audit persistence.
"""

import pytest

from conftest import SONNET, live_event, ms
from usage_reconciler.core.clock import DateRange
from usage_reconciler.core.pricing import BillingMode
from usage_reconciler.storage.db import get_connection
from usage_reconciler.storage.models import (
    AuditSnapshot,
    Completeness,
    EventPatch,
    EventSource,
)
from usage_reconciler.storage.query import EventQuery, coalesce_update_sql
from usage_reconciler.storage.repository import get_repository


def _complete(start_time, uuid=None, **kwargs):
    values = dict(
        input_tokens=100,
        output_tokens=50,
        cache_read_tokens=0,
        cache_creation_tokens=0,
        uuid=uuid,
        anthropic_model=SONNET,
        anthropic_cost_usd=0.00105,
        maestro_cost_usd=0.00105,
        maestro_billing_mode=BillingMode.API,
    )
    values.update(kwargs)
    return live_event(start_time, **values)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify every table is created."""
        conn = get_connection(db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()
        assert {"usage_event", "_meta", "audit_snapshot", "audit_schedule"} <= tables

    def test_invalid_billing_mode_rejected(self, db_path):
        """The billing mode column only accepts known modes."""
        import sqlite3
        conn = get_connection(db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO usage_event (session_id, agent_type, source, start_time, maestro_billing_mode) "
                    "VALUES ('s', 'claude-code', 'user', 0, 'enterprise')"
                )
        finally:
            conn.close()


class TestEventInsertion:
    """Test usage event insertion operations."""

    def test_insert_and_get(self, repository):
        """An inserted event reads back unchanged."""
        event_id = repository.insert(_complete(ms(2025, 3, 1, 10), uuid="u-1", project_path="/work/app"))

        stored = repository.get(event_id)
        assert stored.id == event_id
        assert stored.uuid == "u-1"
        assert stored.source == EventSource.USER
        assert stored.maestro_billing_mode == BillingMode.API
        assert stored.project_path == "/work/app"
        assert stored.is_complete

    def test_partial_event_completeness(self, repository):
        """Events missing tracked fields are partial."""
        event_id = repository.insert(live_event(ms(2025, 3, 1, 10)))

        stored = repository.get(event_id)
        assert stored.completeness == Completeness.PARTIAL
        assert "input_tokens" in stored.missing_fields
        assert "anthropic_model" in stored.missing_fields

    def test_duplicate_uuid_merges(self, repository):
        """A second insert with the same uuid fills gaps on the existing record."""
        first = repository.insert(live_event(ms(2025, 3, 1, 10), uuid="u-1", input_tokens=10))
        second = repository.insert(_complete(ms(2025, 3, 1, 10), uuid="u-1", input_tokens=999))

        assert first == second
        stored = repository.get(first)
        assert stored.input_tokens == 10
        assert stored.output_tokens == 50
        assert len(repository.query()) == 1

    def test_existing_uuids(self, repository):
        repository.insert(_complete(ms(2025, 3, 1, 10), uuid="a"))
        repository.insert(_complete(ms(2025, 3, 1, 11), uuid="b"))

        assert repository.existing_uuids(["a", "c", None]) == {"a"}
        assert set(repository.events_by_uuid(["a", "b", "z"])) == {"a", "b"}


class TestCoalescingUpdate:
    """Updates never overwrite a non-null value."""

    def test_fills_only_null_columns(self, repository):
        event_id = repository.insert(live_event(ms(2025, 3, 1, 10), input_tokens=7))

        updated = repository.update_coalescing(event_id, EventPatch(
            input_tokens=500,
            output_tokens=40,
            anthropic_model=SONNET,
            maestro_billing_mode=BillingMode.MAX,
        ))

        assert updated
        stored = repository.get(event_id)
        assert stored.input_tokens == 7
        assert stored.output_tokens == 40
        assert stored.anthropic_model == SONNET
        assert stored.maestro_billing_mode == BillingMode.MAX

    def test_missing_record(self, repository):
        assert not repository.update_coalescing(12345, EventPatch(input_tokens=1))

    def test_only_patchable_columns(self):
        with pytest.raises(ValueError):
            coalesce_update_sql(["session_id"])


class TestQueries:
    """Test filtered queries and aggregates."""

    def test_query_filters_and_order(self, repository):
        repository.insert(_complete(ms(2025, 3, 2, 10), uuid="late"))
        repository.insert(_complete(ms(2025, 3, 1, 10), uuid="early"))
        repository.insert(live_event(ms(2025, 3, 1, 12)))

        events = repository.query()
        assert [e.start_time for e in events] == sorted(e.start_time for e in events)

        without_uuid = repository.query(has_uuid=False)
        assert len(without_uuid) == 1

        day_one = repository.query(time_range=DateRange("2025-03-01", "2025-03-01").to_epoch_bounds())
        assert len(day_one) == 2

    def test_aggregate(self, repository):
        repository.insert(_complete(ms(2025, 3, 1, 10), uuid="a"))
        repository.insert(_complete(ms(2025, 3, 2, 10), uuid="b", agent_type="other",
                                    anthropic_model="claude-opus-4-20250514"))

        aggregate = repository.aggregate()

        assert aggregate.totals.event_count == 2
        assert aggregate.totals.input_tokens == 200
        assert set(aggregate.by_model) == {SONNET, "claude-opus-4-20250514"}
        assert set(aggregate.by_agent) == {"claude-code", "other"}
        assert set(aggregate.by_day) == {"2025-03-01", "2025-03-02"}

    def test_usage_by_day_and_model(self, repository):
        first = repository.insert(_complete(ms(2025, 3, 1, 10), uuid="a"))
        second = repository.insert(_complete(ms(2025, 3, 1, 11), uuid="b"))
        repository.insert(_complete(ms(2025, 3, 3, 11), uuid="c"))

        rows = repository.usage_by_day_and_model(DateRange("2025-03-01", "2025-03-02"))

        assert len(rows) == 1
        assert rows[0].date == "2025-03-01"
        assert rows[0].model == SONNET
        assert rows[0].billing_mode == BillingMode.API
        assert rows[0].totals.event_count == 2
        assert rows[0].event_ids == sorted([first, second])

    def test_unknown_column_rejected(self):
        with pytest.raises(ValueError):
            EventQuery().equals("total_cost; DROP TABLE usage_event", 1)

    def test_mark_corrected_keeps_values(self, repository):
        event_id = repository.insert(_complete(ms(2025, 3, 1, 10), uuid="a"))

        assert repository.mark_corrected([event_id, 999], corrected_at=42) == 1
        stored = repository.get(event_id)
        assert stored.corrected_at == 42
        assert stored.input_tokens == 100

    def test_get_repository_follows_path(self, tmp_path):
        first = get_repository(str(tmp_path / "a.db"))
        assert get_repository(str(tmp_path / "a.db")) is first
        assert get_repository(str(tmp_path / "b.db")).db_path == str(tmp_path / "b.db")


def _snapshot(created_at, start="2025-03-01", end="2025-03-07", audit_type="manual"):
    return AuditSnapshot(
        created_at=created_at,
        period_start=start,
        period_end=end,
        audit_type=audit_type,
        anthropic_total_tokens=1000,
        maestro_total_tokens=990,
        anthropic_cost_usd=1.5,
        maestro_cost_usd=0.5,
        token_match_percent=99.0,
        anomaly_count=0,
        status="completed",
        result={"summary": {"total": 1}},
    )


class TestAuditStore:
    """Test snapshot history, metadata and schedule rows."""

    def test_snapshots_newest_first(self, audit_store):
        audit_store.save_snapshot(_snapshot(1))
        audit_store.save_snapshot(_snapshot(3))
        audit_store.save_snapshot(_snapshot(2))

        history = audit_store.list_snapshots(limit=2)
        assert [s.created_at for s in history] == [3, 2]
        assert history[0].result == {"summary": {"total": 1}}

    def test_snapshots_in_range(self, audit_store):
        audit_store.save_snapshot(_snapshot(1, "2025-03-01", "2025-03-07"))
        audit_store.save_snapshot(_snapshot(2, "2025-02-20", "2025-03-02"))

        inside = audit_store.snapshots_in_range("2025-03-01", "2025-03-31")
        assert [s.created_at for s in inside] == [1]

    def test_audit_config_round_trip(self, audit_store):
        assert audit_store.get_audit_config() is None
        audit_store.save_audit_config({"dailyEnabled": True})
        audit_store.save_audit_config({"dailyEnabled": False})
        assert audit_store.get_audit_config() == {"dailyEnabled": False}

    def test_schedule_preserves_last_run(self, audit_store):
        audit_store.set_schedule("daily", True, "02:00", None, next_run_at=100)
        audit_store.record_run("daily", 50, "completed")
        audit_store.set_schedule("daily", True, "03:00", None, next_run_at=200)

        state = audit_store.get_schedule_states()["daily"]
        assert state.enabled
        assert state.run_time == "03:00"
        assert state.last_run_at == 50
        assert state.last_run_status == "completed"
        assert state.next_run_at == 200
