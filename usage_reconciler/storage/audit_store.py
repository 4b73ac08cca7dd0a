"""
Persistence for audit snapshots and schedule state.

Snapshots are append-only; schedule rows are owned by the scheduler.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import AuditSnapshot, ScheduleState

AUDIT_CONFIG_KEY = "audit_config"


def _row_to_snapshot(row: sqlite3.Row) -> AuditSnapshot:
    return AuditSnapshot(
        id=row["id"],
        created_at=row["created_at"],
        period_start=row["period_start"],
        period_end=row["period_end"],
        audit_type=row["audit_type"],
        anthropic_total_tokens=row["anthropic_total_tokens"],
        maestro_total_tokens=row["maestro_total_tokens"],
        anthropic_cost_usd=row["anthropic_cost_usd"],
        maestro_cost_usd=row["maestro_cost_usd"],
        token_match_percent=row["token_match_percent"],
        anomaly_count=row["anomaly_count"],
        status=row["status"],
        result=json.loads(row["audit_result_json"]),
    )


class AuditStore:
    """Reads and writes audit snapshots, metadata and schedule rows."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = get_connection(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def save_snapshot(self, snapshot: AuditSnapshot) -> int:
        """Append a snapshot. Existing snapshots are never modified.

        Returns:
            Id of the new snapshot row
        """
        conn = self._connect()
        try:
            cursor = conn.execute("""
                INSERT INTO audit_snapshot
                (created_at, period_start, period_end, audit_type,
                 anthropic_total_tokens, maestro_total_tokens,
                 anthropic_cost_usd, maestro_cost_usd, token_match_percent,
                 anomaly_count, status, audit_result_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                snapshot.created_at,
                snapshot.period_start,
                snapshot.period_end,
                snapshot.audit_type,
                snapshot.anthropic_total_tokens,
                snapshot.maestro_total_tokens,
                snapshot.anthropic_cost_usd,
                snapshot.maestro_cost_usd,
                snapshot.token_match_percent,
                snapshot.anomaly_count,
                snapshot.status,
                json.dumps(snapshot.result, sort_keys=True),
            ))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def list_snapshots(self, limit: int = 10) -> List[AuditSnapshot]:
        """Most recent snapshots first."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM audit_snapshot ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_snapshot(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def snapshots_in_range(self, start_date: str, end_date: str) -> List[AuditSnapshot]:
        """Snapshots whose period lies inside [start_date, end_date], newest first."""
        conn = self._connect()
        try:
            cursor = conn.execute("""
                SELECT * FROM audit_snapshot
                WHERE period_start >= ? AND period_end <= ?
                ORDER BY created_at DESC, id DESC
            """, (start_date, end_date))
            return [_row_to_snapshot(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_meta(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM _meta WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None
        finally:
            conn.close()

    def set_meta(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO _meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def get_audit_config(self) -> Optional[Dict[str, Any]]:
        raw = self.get_meta(AUDIT_CONFIG_KEY)
        if raw is None:
            return None
        return json.loads(raw)

    def save_audit_config(self, config: Dict[str, Any]) -> None:
        self.set_meta(AUDIT_CONFIG_KEY, json.dumps(config, sort_keys=True))

    def set_schedule(
        self,
        schedule_type: str,
        enabled: bool,
        run_time: Optional[str] = None,
        run_day: Optional[int] = None,
        next_run_at: Optional[int] = None,
    ) -> None:
        """Upsert the enable flag, trigger and next run for a schedule type.

        Last-run bookkeeping is preserved.
        """
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO audit_schedule (schedule_type, enabled, run_time, run_day, next_run_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(schedule_type) DO UPDATE SET
                    enabled = excluded.enabled,
                    run_time = excluded.run_time,
                    run_day = excluded.run_day,
                    next_run_at = excluded.next_run_at
            """, (schedule_type, 1 if enabled else 0, run_time, run_day, next_run_at))
            conn.commit()
        finally:
            conn.close()

    def record_run(self, schedule_type: str, run_at: int, status: str) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO audit_schedule (schedule_type, enabled, last_run_at, last_run_status)
                VALUES (?, 1, ?, ?)
                ON CONFLICT(schedule_type) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_run_status = excluded.last_run_status
            """, (schedule_type, run_at, status))
            conn.commit()
        finally:
            conn.close()

    def get_schedule_states(self) -> Dict[str, ScheduleState]:
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM audit_schedule ORDER BY schedule_type")
            return {
                row["schedule_type"]: ScheduleState(
                    schedule_type=row["schedule_type"],
                    enabled=bool(row["enabled"]),
                    run_time=row["run_time"],
                    run_day=row["run_day"],
                    last_run_at=row["last_run_at"],
                    last_run_status=row["last_run_status"],
                    next_run_at=row["next_run_at"],
                )
                for row in cursor.fetchall()
            }
        finally:
            conn.close()
