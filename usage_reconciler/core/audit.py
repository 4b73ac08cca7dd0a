"""
Usage audits against an external usage report.

Compares the event store with daily totals reported by ccusage, flags
discrepancies and keeps an append-only history of snapshots.
"""

import json
import logging
import shlex
import sqlite3
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from usage_reconciler.storage.audit_store import AuditStore
from usage_reconciler.storage.models import AuditSnapshot, DailyModelUsage, UsageTotals
from usage_reconciler.storage.repository import UsageRepository
from usage_reconciler.transcripts.sources import SshClient, SshTarget

from .anomaly import (
    AuditAnomaly,
    EntryStatus,
    classify_discrepancy,
    detect_anomalies,
    discrepancy_percent,
)
from .clock import Clock, DateRange, SystemClock, to_epoch_ms
from .errors import ErrorRecord, ReconciliationError, UsageProviderError
from .pricing import PRICING_TABLE, BillingMode
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

AUDIT_TYPES = ("daily", "weekly", "monthly", "manual")
STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

# Entry model used when a report day has no per-model breakdown
ALL_MODELS = "all"

CCUSAGE_COMMAND = ("npx", "ccusage@latest")
CCUSAGE_TIMEOUT_SECONDS = 120


@dataclass(frozen=True)
class ModelUsage:
    """Reported usage of one model on one day."""
    model: str
    usage: TokenUsage
    cost: float = 0.0


@dataclass(frozen=True)
class DailyUsage:
    """Reported usage for one day."""
    date: str
    usage: TokenUsage
    total_cost: float
    models: List[ModelUsage] = field(default_factory=list)


def _first(record: Dict[str, Any], *keys: str, default: Any = 0) -> Any:
    for key in keys:
        value = record.get(key)
        if value:
            return value
    return default


def _usage_from(record: Dict[str, Any]) -> TokenUsage:
    return TokenUsage(
        input_tokens=int(_first(record, "inputTokens", "input_tokens")),
        output_tokens=int(_first(record, "outputTokens", "output_tokens")),
        cache_read_tokens=int(_first(record, "cacheReadTokens", "cache_read_tokens")),
        cache_creation_tokens=int(_first(record, "cacheCreationTokens", "cache_creation_tokens")),
    )


def normalize_daily_usage(payload: Any) -> List[DailyUsage]:
    """Turn a ccusage ``daily --json`` payload into daily usage records.

    Accepts the list itself or an object wrapping it under ``daily`` or
    ``data``, with camelCase or snake_case field names.

    Raises:
        ValueError: If the payload has no recognizable daily list
    """
    if isinstance(payload, dict):
        payload = payload.get("daily", payload.get("data"))
    if not isinstance(payload, list):
        raise ValueError("Usage report has no daily records")

    days = []
    for record in payload:
        if not isinstance(record, dict):
            continue
        date = _first(record, "date", "day", default=None)
        if not date:
            continue
        models = []
        for breakdown in _first(record, "modelBreakdowns", "model_breakdowns", default=[]):
            if not isinstance(breakdown, dict):
                continue
            models.append(ModelUsage(
                model=_first(breakdown, "modelName", "model_name", "model", default="unknown"),
                usage=_usage_from(breakdown),
                cost=float(_first(breakdown, "cost", "totalCost", "total_cost")),
            ))
        days.append(DailyUsage(
            date=str(date)[:10],
            usage=_usage_from(record),
            total_cost=float(_first(record, "totalCost", "total_cost", "cost")),
            models=models,
        ))
    return days


def _since_arg(date: str) -> str:
    return date.replace("-", "")


class UsageProvider:
    """Source of authoritative daily usage."""

    label = "provider"

    def fetch_daily(self, start_date: str, end_date: str) -> List[DailyUsage]:
        raise NotImplementedError


class CcusageProvider(UsageProvider):
    """Daily usage from the ``ccusage`` CLI, run locally or over SSH."""

    def __init__(
        self,
        target: Optional[SshTarget] = None,
        timeout: float = CCUSAGE_TIMEOUT_SECONDS,
        command: Sequence[str] = CCUSAGE_COMMAND,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.target = target
        self.timeout = timeout
        self.command = tuple(command)
        self._runner = runner

    @property
    def label(self) -> str:
        return f"ccusage@{self.target.label}" if self.target else "ccusage@local"

    def arguments(self, start_date: str, end_date: str) -> List[str]:
        return list(self.command) + [
            "daily", "--json",
            "--since", _since_arg(start_date),
            "--until", _since_arg(end_date),
        ]

    def fetch_daily(self, start_date: str, end_date: str) -> List[DailyUsage]:
        """Run ccusage for the period and parse its JSON output.

        Raises:
            UsageProviderError: If ccusage cannot run or returns unusable output
            RemoteError: If the remote host fails
        """
        arguments = self.arguments(start_date, end_date)
        if self.target is not None:
            client = SshClient(self.target, runner=self._runner)
            # login shell so npx is on PATH
            remote = "bash -lc " + shlex.quote(" ".join(shlex.quote(a) for a in arguments))
            output = client.run(remote, self.timeout)
        else:
            output = self._run_local(arguments)

        try:
            payload = json.loads(output)
            days = normalize_daily_usage(payload)
        except ValueError as e:
            raise UsageProviderError(self.label, f"unusable output: {e}")
        logger.info("%s reported %d days for %s..%s", self.label, len(days), start_date, end_date)
        return days

    def _run_local(self, arguments: List[str]) -> str:
        try:
            completed = self._runner(arguments, capture_output=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise UsageProviderError(self.label, f"timed out after {self.timeout:g}s")
        except OSError as e:
            raise UsageProviderError(self.label, f"cannot run {arguments[0]}: {e}")
        if completed.returncode != 0:
            stderr = (completed.stderr or b"").decode("utf-8", errors="replace").strip()
            raise UsageProviderError(self.label, stderr or f"exit status {completed.returncode}")
        return (completed.stdout or b"").decode("utf-8", errors="replace")


def _usage_dict(usage: TokenUsage) -> Dict[str, int]:
    return {
        "inputTokens": usage.input_tokens,
        "outputTokens": usage.output_tokens,
        "cacheReadTokens": usage.cache_read_tokens,
        "cacheWriteTokens": usage.cache_creation_tokens,
    }


@dataclass(frozen=True)
class TokenComparison:
    anthropic: TokenUsage
    maestro: TokenUsage
    percent_diff: float

    @property
    def difference(self) -> Dict[str, int]:
        """Signed reported-minus-recorded difference per token type."""
        return {
            "inputTokens": self.anthropic.input_tokens - self.maestro.input_tokens,
            "outputTokens": self.anthropic.output_tokens - self.maestro.output_tokens,
            "cacheReadTokens": self.anthropic.cache_read_tokens - self.maestro.cache_read_tokens,
            "cacheWriteTokens": self.anthropic.cache_creation_tokens - self.maestro.cache_creation_tokens,
        }

    @property
    def match_percent(self) -> float:
        return max(0.0, 100.0 - self.percent_diff)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anthropic": _usage_dict(self.anthropic),
            "maestro": _usage_dict(self.maestro),
            "difference": self.difference,
            "percentDiff": self.percent_diff,
        }


@dataclass(frozen=True)
class CostComparison:
    """Reported cost against the store's API-rate and billed costs."""
    anthropic_total: float
    maestro_anthropic: float
    maestro_calculated: float

    @property
    def discrepancy(self) -> float:
        return abs(self.anthropic_total - self.maestro_anthropic)

    @property
    def savings(self) -> float:
        return self.anthropic_total - self.maestro_calculated

    def to_dict(self) -> Dict[str, float]:
        return {
            "anthropic_total": self.anthropic_total,
            "maestro_anthropic": self.maestro_anthropic,
            "maestro_calculated": self.maestro_calculated,
            "discrepancy": self.discrepancy,
            "savings": self.savings,
        }


@dataclass(frozen=True)
class ModelBreakdown:
    model: str
    anthropic_tokens: TokenUsage
    anthropic_cost: float
    maestro_tokens: TokenUsage
    maestro_cost: float

    @property
    def match(self) -> bool:
        status = classify_discrepancy(self.anthropic_tokens.total_tokens, self.maestro_tokens.total_tokens)
        return status == EntryStatus.MATCH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "anthropic": {"tokens": _usage_dict(self.anthropic_tokens), "cost": self.anthropic_cost},
            "maestro": {"tokens": _usage_dict(self.maestro_tokens), "cost": self.maestro_cost},
            "match": self.match,
        }


@dataclass(frozen=True)
class AuditEntry:
    """One (date, model) pair compared across both sides."""
    date: str
    model: str
    anthropic_tokens: TokenUsage
    maestro_tokens: TokenUsage
    anthropic_cost: float
    maestro_anthropic_cost: float
    maestro_cost: float
    billing_mode: Optional[str]
    status: EntryStatus
    discrepancy_percent: float
    event_ids: Tuple[int, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "model": self.model,
            "billingMode": self.billing_mode,
            "anthropic": {"tokens": _usage_dict(self.anthropic_tokens), "cost": self.anthropic_cost},
            "maestro": {
                "tokens": _usage_dict(self.maestro_tokens),
                "anthropicCost": self.maestro_anthropic_cost,
                "cost": self.maestro_cost,
            },
            "status": self.status.value,
            "discrepancyPercent": self.discrepancy_percent,
            "eventIds": list(self.event_ids),
        }


@dataclass(frozen=True)
class BillingModeTotals:
    entry_count: int = 0
    anthropic_cost: float = 0.0
    maestro_cost: float = 0.0
    token_count: int = 0

    @property
    def cache_savings(self) -> float:
        return self.anthropic_cost - self.maestro_cost

    def add(self, totals: UsageTotals) -> "BillingModeTotals":
        return BillingModeTotals(
            entry_count=self.entry_count + totals.event_count,
            anthropic_cost=self.anthropic_cost + totals.anthropic_cost_usd,
            maestro_cost=self.maestro_cost + totals.maestro_cost_usd,
            token_count=self.token_count + totals.usage.total_tokens,
        )

    def to_dict(self, include_savings: bool = False) -> Dict[str, Any]:
        result = {
            "entryCount": self.entry_count,
            "anthropicCost": self.anthropic_cost,
            "maestroCost": self.maestro_cost,
            "tokenCount": self.token_count,
        }
        if include_savings:
            result["cacheSavings"] = self.cache_savings
        return result


@dataclass(frozen=True)
class AuditSummary:
    total: int = 0
    matches: int = 0
    minor_discrepancies: int = 0
    major_discrepancies: int = 0
    missing: int = 0

    @classmethod
    def of(cls, entries: Sequence[AuditEntry]) -> "AuditSummary":
        def count(status):
            return sum(1 for entry in entries if entry.status == status)
        return cls(
            total=len(entries),
            matches=count(EntryStatus.MATCH),
            minor_discrepancies=count(EntryStatus.MINOR),
            major_discrepancies=count(EntryStatus.MAJOR),
            missing=count(EntryStatus.MISSING),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "matches": self.matches,
            "minorDiscrepancies": self.minor_discrepancies,
            "majorDiscrepancies": self.major_discrepancies,
            "missing": self.missing,
        }


@dataclass
class AuditResult:
    """Outcome of one audit; returned even when the usage report failed."""
    period: DateRange
    generated_at: int
    audit_type: str
    tokens: TokenComparison
    costs: CostComparison
    model_breakdown: List[ModelBreakdown] = field(default_factory=list)
    anomalies: List[AuditAnomaly] = field(default_factory=list)
    entries: List[AuditEntry] = field(default_factory=list)
    billing_mode_breakdown: Dict[str, BillingModeTotals] = field(default_factory=dict)
    summary: AuditSummary = AuditSummary()
    status: str = STATUS_COMPLETED
    errors: List[ErrorRecord] = field(default_factory=list)
    snapshot_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": {"start": self.period.start, "end": self.period.end},
            "generatedAt": self.generated_at,
            "auditType": self.audit_type,
            "status": self.status,
            "tokens": self.tokens.to_dict(),
            "costs": self.costs.to_dict(),
            "modelBreakdown": [m.to_dict() for m in self.model_breakdown],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "entries": [e.to_dict() for e in self.entries],
            "billingModeBreakdown": {
                mode: totals.to_dict(include_savings=(mode == BillingMode.MAX.value))
                for mode, totals in self.billing_mode_breakdown.items()
            },
            "summary": self.summary.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
        }


def _model_key(model: str) -> str:
    return PRICING_TABLE.resolve_model_id(model) or model


@dataclass
class _Side:
    usage: TokenUsage = TokenUsage()
    cost: float = 0.0
    billed: float = 0.0
    modes: Dict[str, int] = field(default_factory=dict)
    event_ids: List[int] = field(default_factory=list)


def compare_usage(
    reported: Sequence[DailyUsage],
    recorded: Sequence[DailyModelUsage],
    period: DateRange,
    generated_at: int,
    audit_type: str = "manual",
) -> AuditResult:
    """Compare reported daily usage with the store's usage for a period.

    Entries are keyed by (date, model). A reported day without a model
    breakdown is compared against all recorded models of that date.
    """
    reported = [day for day in reported if period.contains(day.date)]
    by_breakdown_dates = {day.date for day in reported if day.models}
    plain_dates = {day.date for day in reported if not day.models} - by_breakdown_dates

    anthropic_sides: Dict[Tuple[str, str], _Side] = {}
    anthropic_usage = TokenUsage()
    anthropic_cost = 0.0
    for day in reported:
        anthropic_usage = anthropic_usage + day.usage
        anthropic_cost += day.total_cost
        if day.date in plain_dates:
            side = anthropic_sides.setdefault((day.date, ALL_MODELS), _Side())
            side.usage = side.usage + day.usage
            side.cost += day.total_cost
            continue
        for model in day.models:
            side = anthropic_sides.setdefault((day.date, _model_key(model.model)), _Side())
            side.usage = side.usage + model.usage
            side.cost += model.cost

    maestro_sides: Dict[Tuple[str, str], _Side] = {}
    maestro_usage = TokenUsage()
    maestro_anthropic = 0.0
    maestro_calculated = 0.0
    billing: Dict[str, BillingModeTotals] = {}
    for row in recorded:
        totals = row.totals
        maestro_usage = maestro_usage + totals.usage
        maestro_anthropic += totals.anthropic_cost_usd
        maestro_calculated += totals.maestro_cost_usd
        mode = row.billing_mode.value if row.billing_mode else BillingMode.API.value
        billing[mode] = billing.get(mode, BillingModeTotals()).add(totals)

        model = ALL_MODELS if row.date in plain_dates else _model_key(row.model)
        side = maestro_sides.setdefault((row.date, model), _Side())
        side.usage = side.usage + totals.usage
        side.cost += totals.anthropic_cost_usd
        side.billed += totals.maestro_cost_usd
        side.modes[mode] = side.modes.get(mode, 0) + totals.event_count
        side.event_ids.extend(row.event_ids)

    entries = []
    for key in sorted(set(anthropic_sides) | set(maestro_sides)):
        theirs = anthropic_sides.get(key, _Side())
        ours = maestro_sides.get(key, _Side())
        modes = sorted(ours.modes)
        entries.append(AuditEntry(
            date=key[0],
            model=key[1],
            anthropic_tokens=theirs.usage,
            maestro_tokens=ours.usage,
            anthropic_cost=theirs.cost,
            maestro_anthropic_cost=ours.cost,
            maestro_cost=ours.billed,
            billing_mode=modes[0] if len(modes) == 1 else ("mixed" if modes else None),
            status=classify_discrepancy(theirs.usage.total_tokens, ours.usage.total_tokens),
            discrepancy_percent=discrepancy_percent(theirs.usage.total_tokens, ours.usage.total_tokens),
            event_ids=tuple(sorted(ours.event_ids)),
        ))

    anthropic_total = anthropic_usage.total_tokens
    percent_diff = (
        anthropic_usage.absolute_difference(maestro_usage) / anthropic_total * 100
        if anthropic_total > 0 else 0.0
    )
    tokens = TokenComparison(anthropic_usage, maestro_usage, percent_diff)
    costs = CostComparison(anthropic_cost, maestro_anthropic, maestro_calculated)

    breakdown: Dict[str, List[AuditEntry]] = {}
    for entry in entries:
        breakdown.setdefault(entry.model, []).append(entry)
    model_breakdown = [
        ModelBreakdown(
            model=model,
            anthropic_tokens=sum((e.anthropic_tokens for e in items), TokenUsage()),
            anthropic_cost=sum(e.anthropic_cost for e in items),
            maestro_tokens=sum((e.maestro_tokens for e in items), TokenUsage()),
            maestro_cost=sum(e.maestro_anthropic_cost for e in items),
        )
        for model, items in sorted(breakdown.items())
    ]

    anomalies = detect_anomalies(
        percent_diff,
        tokens.to_dict(),
        costs.discrepancy,
        {"anthropic": anthropic_cost, "maestro": maestro_anthropic},
        entries,
    )

    return AuditResult(
        period=period,
        generated_at=generated_at,
        audit_type=audit_type,
        tokens=tokens,
        costs=costs,
        model_breakdown=model_breakdown,
        anomalies=anomalies,
        entries=entries,
        billing_mode_breakdown=billing,
        summary=AuditSummary.of(entries),
    )


@dataclass(frozen=True)
class CorrectionResult:
    corrected: int
    total: int


class AuditService:
    """Runs audits, keeps their snapshots and applies advisory corrections."""

    def __init__(
        self,
        repository: UsageRepository,
        audit_store: AuditStore,
        providers: Optional[List[UsageProvider]] = None,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.audit_store = audit_store
        self.providers = providers if providers is not None else [CcusageProvider()]
        self.clock = clock or SystemClock()

    def run_audit(self, start_date: str, end_date: str, audit_type: str = "manual") -> AuditResult:
        """Audit recorded usage for a period and store the snapshot.

        Provider failures are recorded: some failing gives a ``partial``
        result, all failing gives a ``failed`` one with no comparison
        entries. An unreadable event store also gives ``failed``, with
        empty totals.

        Args:
            start_date: First day, YYYY-MM-DD
            end_date: Last day, YYYY-MM-DD
            audit_type: daily, weekly, monthly or manual

        Returns:
            The audit result

        Raises:
            ValueError: If the dates or audit type are invalid
        """
        if audit_type not in AUDIT_TYPES:
            raise ValueError(f"Invalid audit type {audit_type!r}, must be one of: {list(AUDIT_TYPES)}")
        period = DateRange(start_date, end_date)
        logger.info("Starting %s audit for %s..%s", audit_type, start_date, end_date)

        reported: List[DailyUsage] = []
        errors: List[ErrorRecord] = []
        succeeded = 0
        for provider in self.providers:
            try:
                reported.extend(provider.fetch_daily(start_date, end_date))
                succeeded += 1
            except ReconciliationError as e:
                logger.warning("Usage provider %s failed: %s", provider.label, e)
                errors.append(ErrorRecord(provider.label, str(e)))

        recorded: Optional[List[DailyModelUsage]] = None
        try:
            recorded = self.repository.usage_by_day_and_model(period)
        except (sqlite3.Error, ReconciliationError) as e:
            logger.error("Could not read recorded usage: %s", e)
            errors.append(ErrorRecord("event_store", str(e)))

        generated_at = to_epoch_ms(self.clock.now())
        if succeeded == 0 or recorded is None:
            result = compare_usage([], recorded or [], period, generated_at, audit_type)
            result.entries = []
            result.anomalies = []
            result.model_breakdown = []
            result.summary = AuditSummary()
            result.status = STATUS_FAILED
        else:
            result = compare_usage(reported, recorded, period, generated_at, audit_type)
            result.status = STATUS_PARTIAL if errors else STATUS_COMPLETED
        result.errors = errors

        try:
            result.snapshot_id = self.audit_store.save_snapshot(self._snapshot(result))
        except sqlite3.Error as e:
            logger.error("Could not save audit snapshot: %s", e)
            result.errors.append(ErrorRecord("audit_snapshot", str(e)))

        logger.info(
            "Audit %s: %d anomalies, %d entries, savings $%.2f",
            result.status, len(result.anomalies), len(result.entries), result.costs.savings,
        )
        return result

    @staticmethod
    def _snapshot(result: AuditResult) -> AuditSnapshot:
        return AuditSnapshot(
            created_at=result.generated_at,
            period_start=result.period.start,
            period_end=result.period.end,
            audit_type=result.audit_type,
            anthropic_total_tokens=result.tokens.anthropic.total_tokens,
            maestro_total_tokens=result.tokens.maestro.total_tokens,
            anthropic_cost_usd=result.costs.anthropic_total,
            maestro_cost_usd=result.costs.maestro_calculated,
            token_match_percent=result.tokens.match_percent,
            anomaly_count=len(result.anomalies),
            status=result.status,
            result=result.to_dict(),
        )

    def get_audit_history(self, limit: int = 10) -> List[AuditSnapshot]:
        return self.audit_store.list_snapshots(limit)

    def get_snapshots_by_range(self, start_date: str, end_date: str) -> List[AuditSnapshot]:
        DateRange(start_date, end_date)
        return self.audit_store.snapshots_in_range(start_date, end_date)

    def auto_correct(self, entry_ids: Sequence[int]) -> CorrectionResult:
        """Stamp a correction time on the given events.

        Stored values are left as they are; the stamp only records that
        the discrepancy was reviewed.
        """
        ids = sorted(set(int(i) for i in entry_ids))
        corrected = self.repository.mark_corrected(ids, to_epoch_ms(self.clock.now()))
        logger.info("Marked %d of %d events as corrected", corrected, len(ids))
        return CorrectionResult(corrected=corrected, total=len(ids))
