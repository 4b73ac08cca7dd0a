"""
Repository pattern for data access.

Handles database operations and data persistence logic.
"""

import logging
import sqlite3
from typing import Dict, Iterable, List, Optional, Set, Tuple

from usage_reconciler.core.clock import DateRange
from usage_reconciler.core.errors import StoreWriteError
from usage_reconciler.core.pricing import BillingMode

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    DailyModelUsage,
    EventPatch,
    EventSource,
    UsageAggregate,
    UsageEvent,
    UsageTotals,
)
from .query import (
    EVENT_COLUMNS,
    EventQuery,
    TOTALS_SELECT,
    EVENT_TABLE,
    coalesce_update_sql,
    insert_sql,
)

logger = logging.getLogger(__name__)

# SQLite's default host parameter limit is 999
_UUID_CHUNK = 500

TimeRange = Tuple[Optional[int], Optional[int]]


def _row_to_event(row: sqlite3.Row) -> UsageEvent:
    billing_mode = row["maestro_billing_mode"]
    return UsageEvent(
        id=row["id"],
        session_id=row["session_id"],
        agent_type=row["agent_type"],
        source=EventSource(row["source"]),
        start_time=row["start_time"],
        duration=row["duration"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cache_read_tokens=row["cache_read_tokens"],
        cache_creation_tokens=row["cache_creation_tokens"],
        uuid=row["uuid"],
        anthropic_message_id=row["anthropic_message_id"],
        anthropic_model=row["anthropic_model"],
        anthropic_cost_usd=row["anthropic_cost_usd"],
        maestro_cost_usd=row["maestro_cost_usd"],
        maestro_billing_mode=BillingMode(billing_mode) if billing_mode else None,
        maestro_pricing_model=row["maestro_pricing_model"],
        maestro_calculated_at=row["maestro_calculated_at"],
        project_path=row["project_path"],
        is_reconstructed=bool(row["is_reconstructed"]),
        reconstructed_at=row["reconstructed_at"],
        corrected_at=row["corrected_at"],
    )


def _row_to_totals(row: Iterable) -> UsageTotals:
    count, inp, out, read, write, anthropic, maestro = row
    return UsageTotals(
        event_count=count,
        input_tokens=inp,
        output_tokens=out,
        cache_read_tokens=read,
        cache_creation_tokens=write,
        anthropic_cost_usd=float(anthropic),
        maestro_cost_usd=float(maestro),
    )


def _event_values(event: UsageEvent) -> Dict[str, object]:
    return {
        "session_id": event.session_id,
        "agent_type": event.agent_type,
        "source": event.source.value,
        "start_time": event.start_time,
        "duration": event.duration,
        "input_tokens": event.input_tokens,
        "output_tokens": event.output_tokens,
        "cache_read_tokens": event.cache_read_tokens,
        "cache_creation_tokens": event.cache_creation_tokens,
        "uuid": event.uuid,
        "anthropic_message_id": event.anthropic_message_id,
        "anthropic_model": event.anthropic_model,
        "anthropic_cost_usd": event.anthropic_cost_usd,
        "maestro_cost_usd": event.maestro_cost_usd,
        "maestro_billing_mode": event.maestro_billing_mode.value if event.maestro_billing_mode else None,
        "maestro_pricing_model": event.maestro_pricing_model,
        "maestro_calculated_at": event.maestro_calculated_at,
        "project_path": event.project_path,
        "is_reconstructed": 1 if event.is_reconstructed else 0,
        "reconstructed_at": event.reconstructed_at,
        "corrected_at": event.corrected_at,
    }


def _patch_from_event(event: UsageEvent) -> EventPatch:
    return EventPatch(
        input_tokens=event.input_tokens,
        output_tokens=event.output_tokens,
        cache_read_tokens=event.cache_read_tokens,
        cache_creation_tokens=event.cache_creation_tokens,
        anthropic_message_id=event.anthropic_message_id,
        anthropic_model=event.anthropic_model,
        anthropic_cost_usd=event.anthropic_cost_usd,
        maestro_cost_usd=event.maestro_cost_usd,
        maestro_billing_mode=event.maestro_billing_mode,
        maestro_pricing_model=event.maestro_pricing_model,
        maestro_calculated_at=event.maestro_calculated_at,
        reconstructed_at=event.reconstructed_at,
    )


class UsageRepository:
    """Repository for accessing and managing usage events.

    Every write is its own single-record transaction; no method holds a
    connection open between calls.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = get_connection(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def insert(self, event: UsageEvent) -> int:
        """Insert a usage event.

        When an event with the same uuid already exists, its null fields
        are coalesced from the new event and the existing id is returned.

        Args:
            event: The usage event to record

        Returns:
            The store-assigned id of the inserted or merged record

        Raises:
            StoreWriteError: If the record violates a constraint
        """
        if event.uuid:
            existing = self.get_by_uuid(event.uuid)
            if existing is not None:
                logger.debug("uuid %s already stored as #%s, merging", event.uuid, existing.id)
                self.update_coalescing(existing.id, _patch_from_event(event))
                return existing.id

        values = _event_values(event)
        columns = list(values.keys())
        conn = self._connect()
        try:
            cursor = conn.execute(insert_sql(columns), [values[c] for c in columns])
            conn.commit()
            return cursor.lastrowid
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise StoreWriteError(event.uuid or f"session {event.session_id}", str(e))
        finally:
            conn.close()

    def update_coalescing(self, event_id: int, patch: EventPatch) -> bool:
        """Set only the currently-null columns named by the patch.

        Args:
            event_id: Id of the record to update
            patch: Candidate values; None entries are ignored

        Returns:
            True if the record exists

        Raises:
            StoreWriteError: If the update violates a constraint
        """
        values = patch.values()
        if not values:
            return self.get(event_id) is not None
        columns = list(values.keys())
        conn = self._connect()
        try:
            cursor = conn.execute(
                coalesce_update_sql(columns),
                [values[c] for c in columns] + [event_id],
            )
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise StoreWriteError(f"event #{event_id}", str(e))
        finally:
            conn.close()

    def get(self, event_id: int) -> Optional[UsageEvent]:
        events = self._select(EventQuery().equals("id", event_id))
        return events[0] if events else None

    def get_by_uuid(self, uuid: str) -> Optional[UsageEvent]:
        events = self._select(EventQuery().equals("uuid", uuid))
        return events[0] if events else None

    def existing_uuids(self, uuids: Iterable[str]) -> Set[str]:
        """Subset of the given uuids that are already stored."""
        pending = sorted(set(u for u in uuids if u))
        found: Set[str] = set()
        if not pending:
            return found
        conn = self._connect()
        try:
            for i in range(0, len(pending), _UUID_CHUNK):
                chunk = pending[i:i + _UUID_CHUNK]
                where, params = EventQuery().is_in("uuid", chunk).where_clause()
                cursor = conn.execute(f"SELECT uuid FROM {EVENT_TABLE}{where}", params)
                found.update(row[0] for row in cursor.fetchall())
            return found
        finally:
            conn.close()

    def events_by_uuid(self, uuids: Iterable[str]) -> Dict[str, UsageEvent]:
        pending = sorted(set(u for u in uuids if u))
        result: Dict[str, UsageEvent] = {}
        for i in range(0, len(pending), _UUID_CHUNK):
            for event in self._select(EventQuery().is_in("uuid", pending[i:i + _UUID_CHUNK])):
                result[event.uuid] = event
        return result

    def query(
        self,
        time_range: TimeRange = (None, None),
        agent_type: Optional[str] = None,
        source: Optional[EventSource] = None,
        session_id: Optional[str] = None,
        reconstructed: Optional[bool] = None,
        has_uuid: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[UsageEvent]:
        """Get usage events in a time range, ordered by start time ascending.

        Args:
            time_range: Inclusive (start, end) epoch-ms bounds, either may be None
            agent_type: Optional filter for a specific agent type
            source: Optional filter for user or auto events
            session_id: Optional filter for one session
            reconstructed: Only reconstructed (True) or only live (False) events
            has_uuid: Only events with (True) or without (False) a transcript uuid
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by start_time (oldest first)
        """
        q = EventQuery().between("start_time", time_range[0], time_range[1])
        if agent_type:
            q.equals("agent_type", agent_type)
        if source is not None:
            q.equals("source", source.value)
        if session_id:
            q.equals("session_id", session_id)
        if reconstructed is not None:
            q.equals("is_reconstructed", 1 if reconstructed else 0)
        if has_uuid is True:
            q.not_null("uuid")
        elif has_uuid is False:
            q.is_null("uuid")
        return self._select(q, limit=limit)

    def aggregate(self, time_range: TimeRange = (None, None)) -> UsageAggregate:
        """Totals for a time range with by-model, by-agent and by-day breakdowns."""
        q = EventQuery().between("start_time", time_range[0], time_range[1])
        conn = self._connect()
        try:
            sql, params = q.build_aggregate()
            totals = _row_to_totals(conn.execute(sql, params).fetchone())
            breakdowns = {}
            for group in ("model", "agent", "day"):
                sql, params = q.build_aggregate(group)
                breakdowns[group] = {
                    row[0]: _row_to_totals(tuple(row)[1:])
                    for row in conn.execute(sql, params).fetchall()
                }
            return UsageAggregate(
                totals=totals,
                by_model=breakdowns["model"],
                by_agent=breakdowns["agent"],
                by_day=breakdowns["day"],
            )
        finally:
            conn.close()

    def usage_by_day_and_model(self, date_range: DateRange) -> List[DailyModelUsage]:
        """Store usage grouped by UTC day, model and billing mode."""
        start, end = date_range.to_epoch_bounds()
        where, params = EventQuery().between("start_time", start, end).where_clause()
        sql = (
            "SELECT date(start_time / 1000, 'unixepoch') AS day, "
            "COALESCE(anthropic_model, 'unknown') AS model, "
            f"maestro_billing_mode, GROUP_CONCAT(id), {TOTALS_SELECT} "
            f"FROM {EVENT_TABLE}{where} "
            "GROUP BY day, model, maestro_billing_mode ORDER BY day, model"
        )
        conn = self._connect()
        try:
            result = []
            for row in conn.execute(sql, params).fetchall():
                values = tuple(row)
                ids = [int(i) for i in values[3].split(",")] if values[3] else []
                result.append(DailyModelUsage(
                    date=values[0],
                    model=values[1],
                    billing_mode=BillingMode(values[2]) if values[2] else None,
                    totals=_row_to_totals(values[4:]),
                    event_ids=sorted(ids),
                ))
            return result
        finally:
            conn.close()

    def mark_corrected(self, event_ids: List[int], corrected_at: int) -> int:
        """Stamp a correction time on each event without touching its values.

        Returns:
            Number of events stamped
        """
        corrected = 0
        for event_id in event_ids:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    f"UPDATE {EVENT_TABLE} SET corrected_at = ? WHERE id = ?",
                    (corrected_at, event_id),
                )
                conn.commit()
                corrected += cursor.rowcount
            finally:
                conn.close()
        return corrected

    def _select(self, q: EventQuery, limit: Optional[int] = None) -> List[UsageEvent]:
        conn = self._connect()
        try:
            sql, params = q.build_select(limit=limit)
            return [_row_to_event(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[UsageRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a repository instance.

    Returns the shared instance, replacing it when a different path is
    requested.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of UsageRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = UsageRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage, metadata, snapshot and schedule tables if missing.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS {EVENT_TABLE} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                agent_type TEXT NOT NULL,
                source TEXT NOT NULL CHECK(source IN ('user', 'auto')),
                start_time INTEGER NOT NULL,
                duration INTEGER NOT NULL DEFAULT 0,
                input_tokens INTEGER,
                output_tokens INTEGER,
                cache_read_tokens INTEGER,
                cache_creation_tokens INTEGER,
                uuid TEXT UNIQUE,
                anthropic_message_id TEXT,
                anthropic_model TEXT,
                anthropic_cost_usd REAL,
                maestro_cost_usd REAL,
                maestro_billing_mode TEXT CHECK(maestro_billing_mode IN ('api', 'max', 'free')),
                maestro_pricing_model TEXT,
                maestro_calculated_at INTEGER,
                project_path TEXT,
                is_reconstructed INTEGER NOT NULL DEFAULT 0,
                reconstructed_at INTEGER,
                corrected_at INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_usage_event_start_time ON {EVENT_TABLE}(start_time);
            CREATE INDEX IF NOT EXISTS idx_usage_event_uuid ON {EVENT_TABLE}(uuid);

            CREATE TABLE IF NOT EXISTS _meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_snapshot (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at INTEGER NOT NULL,
                period_start TEXT NOT NULL,
                period_end TEXT NOT NULL,
                audit_type TEXT NOT NULL CHECK(audit_type IN ('daily', 'weekly', 'monthly', 'manual')),
                anthropic_total_tokens INTEGER NOT NULL,
                maestro_total_tokens INTEGER NOT NULL,
                anthropic_cost_usd REAL NOT NULL,
                maestro_cost_usd REAL NOT NULL,
                token_match_percent REAL NOT NULL,
                anomaly_count INTEGER NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('completed', 'partial', 'failed')),
                audit_result_json TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_audit_snapshot_period ON audit_snapshot(period_start, period_end);

            CREATE TABLE IF NOT EXISTS audit_schedule (
                schedule_type TEXT PRIMARY KEY CHECK(schedule_type IN ('daily', 'weekly', 'monthly')),
                enabled INTEGER NOT NULL DEFAULT 0,
                run_time TEXT,
                run_day INTEGER,
                last_run_at INTEGER,
                last_run_status TEXT,
                next_run_at INTEGER
            );
        """)
        conn.commit()
    finally:
        conn.close()
