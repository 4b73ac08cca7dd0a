"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from usage_reconciler.core.pricing import BillingMode
from usage_reconciler.core.token_counter import TokenUsage


class EventSource(Enum):
    """Who triggered the interaction."""
    USER = "user"
    AUTO = "auto"


class Completeness(Enum):
    """Whether an event carries every field reconstruction can fill."""
    COMPLETE = "complete"
    PARTIAL = "partial"


# Fields reconstruction fills in; an event is complete when none are null
TRACKED_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_read_tokens",
    "cache_creation_tokens",
    "anthropic_model",
    "anthropic_cost_usd",
    "maestro_cost_usd",
    "maestro_billing_mode",
)


@dataclass(frozen=True)
class UsageEvent:
    """One agent interaction turn or reconstructed transcript entry.

    Live-captured events arrive fully populated. Partial events are
    missing some of the tracked fields and wait for reconstruction,
    which only ever fills fields that are still null.
    """
    session_id: str
    agent_type: str
    source: EventSource
    start_time: int  # epoch ms, UTC
    duration: int = 0  # ms
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None
    cache_creation_tokens: Optional[int] = None
    uuid: Optional[str] = None
    anthropic_message_id: Optional[str] = None
    anthropic_model: Optional[str] = None
    anthropic_cost_usd: Optional[float] = None
    maestro_cost_usd: Optional[float] = None
    maestro_billing_mode: Optional[BillingMode] = None
    maestro_pricing_model: Optional[str] = None
    maestro_calculated_at: Optional[int] = None
    project_path: Optional[str] = None
    is_reconstructed: bool = False
    reconstructed_at: Optional[int] = None
    corrected_at: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self):
        if self.start_time < 0:
            raise ValueError("start_time must be >= 0")
        if self.duration < 0:
            raise ValueError("duration must be >= 0")

    @property
    def missing_fields(self) -> Tuple[str, ...]:
        """Tracked fields that are still null."""
        return tuple(name for name in TRACKED_FIELDS if getattr(self, name) is None)

    @property
    def completeness(self) -> Completeness:
        if self.missing_fields:
            return Completeness.PARTIAL
        return Completeness.COMPLETE

    @property
    def is_complete(self) -> bool:
        return self.completeness == Completeness.COMPLETE

    @property
    def usage(self) -> TokenUsage:
        """Token tuple with nulls read as zero."""
        return TokenUsage(
            input_tokens=self.input_tokens or 0,
            output_tokens=self.output_tokens or 0,
            cache_read_tokens=self.cache_read_tokens or 0,
            cache_creation_tokens=self.cache_creation_tokens or 0,
        )


@dataclass(frozen=True)
class EventPatch:
    """Fields to coalesce into an existing event.

    Only non-None values are written, and only into columns that are
    currently null.
    """
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None
    cache_creation_tokens: Optional[int] = None
    uuid: Optional[str] = None
    anthropic_message_id: Optional[str] = None
    anthropic_model: Optional[str] = None
    anthropic_cost_usd: Optional[float] = None
    maestro_cost_usd: Optional[float] = None
    maestro_billing_mode: Optional[BillingMode] = None
    maestro_pricing_model: Optional[str] = None
    maestro_calculated_at: Optional[int] = None
    reconstructed_at: Optional[int] = None

    def values(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            result[f.name] = value
        return result

    def fills(self, event: UsageEvent) -> Tuple[str, ...]:
        """Names of the event's null fields this patch would populate."""
        return tuple(
            name for name in self.values()
            if hasattr(event, name) and getattr(event, name) is None
        )


@dataclass(frozen=True)
class UsageTotals:
    """Summed usage over a set of events."""
    event_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    anthropic_cost_usd: float = 0.0
    maestro_cost_usd: float = 0.0

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
        )


@dataclass(frozen=True)
class UsageAggregate:
    """Totals for a time range, plus breakdowns by model, agent and day."""
    totals: UsageTotals
    by_model: Dict[str, UsageTotals] = field(default_factory=dict)
    by_agent: Dict[str, UsageTotals] = field(default_factory=dict)
    by_day: Dict[str, UsageTotals] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyModelUsage:
    """Store-side usage for one (date, model, billing mode) group."""
    date: str
    model: str
    billing_mode: Optional[BillingMode]
    totals: UsageTotals
    event_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class AuditSnapshot:
    """Immutable record of one audit execution."""
    created_at: int
    period_start: str
    period_end: str
    audit_type: str
    anthropic_total_tokens: int
    maestro_total_tokens: int
    anthropic_cost_usd: float
    maestro_cost_usd: float
    token_match_percent: float
    anomaly_count: int
    status: str
    result: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None


@dataclass(frozen=True)
class ScheduleState:
    """Bookkeeping for one schedule type."""
    schedule_type: str
    enabled: bool
    run_time: Optional[str] = None
    run_day: Optional[int] = None
    last_run_at: Optional[int] = None
    last_run_status: Optional[str] = None
    next_run_at: Optional[int] = None
