"""
Query building for the usage event table.

Builds parameterized SQL bound to a fixed column whitelist.
"""

from typing import Any, List, Optional, Sequence, Tuple

EVENT_TABLE = "usage_event"

EVENT_COLUMNS = (
    "id",
    "session_id",
    "agent_type",
    "source",
    "start_time",
    "duration",
    "input_tokens",
    "output_tokens",
    "cache_read_tokens",
    "cache_creation_tokens",
    "uuid",
    "anthropic_message_id",
    "anthropic_model",
    "anthropic_cost_usd",
    "maestro_cost_usd",
    "maestro_billing_mode",
    "maestro_pricing_model",
    "maestro_calculated_at",
    "project_path",
    "is_reconstructed",
    "reconstructed_at",
    "corrected_at",
)

# Columns reconstruction may coalesce into an existing row
PATCHABLE_COLUMNS = frozenset((
    "input_tokens",
    "output_tokens",
    "cache_read_tokens",
    "cache_creation_tokens",
    "uuid",
    "anthropic_message_id",
    "anthropic_model",
    "anthropic_cost_usd",
    "maestro_cost_usd",
    "maestro_billing_mode",
    "maestro_pricing_model",
    "maestro_calculated_at",
    "reconstructed_at",
))

GROUP_EXPRESSIONS = {
    "model": "COALESCE(anthropic_model, 'unknown')",
    "agent": "agent_type",
    "day": "date(start_time / 1000, 'unixepoch')",
    "billing_mode": "maestro_billing_mode",
}

TOTALS_SELECT = (
    "COUNT(*), "
    "COALESCE(SUM(input_tokens), 0), "
    "COALESCE(SUM(output_tokens), 0), "
    "COALESCE(SUM(cache_read_tokens), 0), "
    "COALESCE(SUM(cache_creation_tokens), 0), "
    "COALESCE(SUM(anthropic_cost_usd), 0), "
    "COALESCE(SUM(maestro_cost_usd), 0)"
)


def _check_column(column: str) -> str:
    if column not in EVENT_COLUMNS:
        raise ValueError(f"Unknown column: {column}")
    return column


class EventQuery:
    """Accumulates WHERE conditions for the usage event table."""

    def __init__(self):
        self._conditions: List[str] = []
        self._params: List[Any] = []

    def between(self, column: str, start: Optional[int], end: Optional[int]) -> "EventQuery":
        """Inclusive range; either bound may be open."""
        _check_column(column)
        if start is not None:
            self._conditions.append(f"{column} >= ?")
            self._params.append(start)
        if end is not None:
            self._conditions.append(f"{column} <= ?")
            self._params.append(end)
        return self

    def equals(self, column: str, value: Any) -> "EventQuery":
        _check_column(column)
        self._conditions.append(f"{column} = ?")
        self._params.append(value)
        return self

    def is_in(self, column: str, values: Sequence[Any]) -> "EventQuery":
        _check_column(column)
        if not values:
            self._conditions.append("0")
            return self
        placeholders = ", ".join("?" for _ in values)
        self._conditions.append(f"{column} IN ({placeholders})")
        self._params.extend(values)
        return self

    def is_null(self, column: str) -> "EventQuery":
        self._conditions.append(f"{_check_column(column)} IS NULL")
        return self

    def not_null(self, column: str) -> "EventQuery":
        self._conditions.append(f"{_check_column(column)} IS NOT NULL")
        return self

    def where_clause(self) -> Tuple[str, List[Any]]:
        if not self._conditions:
            return "", []
        return " WHERE " + " AND ".join(self._conditions), list(self._params)

    def build_select(
        self,
        order_by: str = "start_time",
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> Tuple[str, List[Any]]:
        where, params = self.where_clause()
        direction = "DESC" if descending else "ASC"
        sql = (
            f"SELECT {', '.join(EVENT_COLUMNS)} FROM {EVENT_TABLE}{where} "
            f"ORDER BY {_check_column(order_by)} {direction}, id {direction}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return sql, params

    def build_aggregate(self, group: Optional[str] = None) -> Tuple[str, List[Any]]:
        """Totals query, optionally grouped by one of GROUP_EXPRESSIONS.

        Grouped rows lead with the group key followed by the totals columns.
        """
        where, params = self.where_clause()
        if group is None:
            return f"SELECT {TOTALS_SELECT} FROM {EVENT_TABLE}{where}", params
        if group not in GROUP_EXPRESSIONS:
            raise ValueError(f"Unknown grouping: {group}")
        expression = GROUP_EXPRESSIONS[group]
        sql = (
            f"SELECT {expression} AS group_key, {TOTALS_SELECT} "
            f"FROM {EVENT_TABLE}{where} GROUP BY group_key ORDER BY group_key"
        )
        return sql, params


def insert_sql(columns: Sequence[str]) -> str:
    for column in columns:
        _check_column(column)
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {EVENT_TABLE} ({', '.join(columns)}) VALUES ({placeholders})"


def coalesce_update_sql(columns: Sequence[str]) -> str:
    """UPDATE that only fills columns which are currently NULL."""
    if not columns:
        raise ValueError("No columns to update")
    for column in columns:
        if column not in PATCHABLE_COLUMNS:
            raise ValueError(f"Column cannot be patched: {column}")
    assignments = ", ".join(f"{column} = COALESCE({column}, ?)" for column in columns)
    return f"UPDATE {EVENT_TABLE} SET {assignments} WHERE id = ?"
