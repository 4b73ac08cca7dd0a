"""
Anomaly detection for usage audits.

Classifies discrepancies between recorded and reported usage.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

# Per-entry discrepancy buckets, percent of the reported total
MATCH_THRESHOLD_PERCENT = 1.0
MINOR_THRESHOLD_PERCENT = 10.0

# Whole-period token rule
TOKEN_WARNING_PERCENT = 1.0
TOKEN_ERROR_PERCENT = 5.0

# Whole-period cost rule, USD
COST_WARNING_USD = 0.01
COST_ERROR_USD = 1.0


class AnomalyKind(Enum):
    """What kind of discrepancy was found."""
    MISSING_QUERY = "missing_query"
    TOKEN_MISMATCH = "token_mismatch"
    COST_MISMATCH = "cost_mismatch"
    MODEL_MISMATCH = "model_mismatch"


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class EntryStatus(Enum):
    """How closely one (date, model) entry agrees across both sides."""
    MATCH = "match"
    MINOR = "minor"
    MAJOR = "major"
    MISSING = "missing"


@dataclass(frozen=True)
class AuditAnomaly:
    """Detected anomaly with details and explanation."""
    kind: AnomalyKind
    severity: AnomalySeverity
    description: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "severity": self.severity.value,
            "description": self.description,
            "details": self.details,
        }


def discrepancy_percent(reported: float, recorded: float) -> float:
    """Absolute difference as a percent of the reported value."""
    if reported == 0:
        return 0.0 if recorded == 0 else 100.0
    return abs(reported - recorded) / reported * 100


def classify_discrepancy(reported: float, recorded: float) -> EntryStatus:
    """Bucket one entry by how far the recorded total is from the reported one.

    An entry present on only one side is ``missing``; two empty sides
    agree.

    Args:
        reported: Total from the external usage report
        recorded: Total from the event store

    Returns:
        ``match`` under 1%, ``minor`` under 10%, otherwise ``major``
    """
    if reported == 0 and recorded == 0:
        return EntryStatus.MATCH
    if reported == 0 or recorded == 0:
        return EntryStatus.MISSING
    percent = discrepancy_percent(reported, recorded)
    if percent < MATCH_THRESHOLD_PERCENT:
        return EntryStatus.MATCH
    if percent < MINOR_THRESHOLD_PERCENT:
        return EntryStatus.MINOR
    return EntryStatus.MAJOR


def token_mismatch(percent_diff: float, details: Dict[str, Any]) -> Optional[AuditAnomaly]:
    if percent_diff <= TOKEN_WARNING_PERCENT:
        return None
    severity = AnomalySeverity.ERROR if percent_diff > TOKEN_ERROR_PERCENT else AnomalySeverity.WARNING
    return AuditAnomaly(
        kind=AnomalyKind.TOKEN_MISMATCH,
        severity=severity,
        description=f"Token count differs by {percent_diff:.2f}%",
        details=details,
    )


def cost_mismatch(discrepancy: float, details: Dict[str, Any]) -> Optional[AuditAnomaly]:
    if discrepancy <= COST_WARNING_USD:
        return None
    severity = AnomalySeverity.ERROR if discrepancy > COST_ERROR_USD else AnomalySeverity.WARNING
    return AuditAnomaly(
        kind=AnomalyKind.COST_MISMATCH,
        severity=severity,
        description=f"Cost discrepancy of ${discrepancy:.2f}",
        details=details,
    )


def missing_query(date: str, model: str, reported_tokens: int, recorded_tokens: int) -> Optional[AuditAnomaly]:
    """Usage on one side with nothing on the other."""
    if reported_tokens > 0 and recorded_tokens == 0:
        return AuditAnomaly(
            kind=AnomalyKind.MISSING_QUERY,
            severity=AnomalySeverity.WARNING,
            description=f"No recorded usage for {model} on {date} ({reported_tokens:,} tokens reported)",
            details={"date": date, "model": model, "reported": reported_tokens},
        )
    if recorded_tokens > 0 and reported_tokens == 0:
        return AuditAnomaly(
            kind=AnomalyKind.MISSING_QUERY,
            severity=AnomalySeverity.INFO,
            description=f"Recorded usage for {model} on {date} is absent from the usage report",
            details={"date": date, "model": model, "recorded": recorded_tokens},
        )
    return None


def model_mismatch(date: str, reported_models: Iterable[str], recorded_models: Iterable[str]) -> Optional[AuditAnomaly]:
    """Both sides have usage on a date but attribute it to different models."""
    reported = set(reported_models)
    recorded = set(recorded_models)
    if not reported or not recorded or reported == recorded:
        return None
    return AuditAnomaly(
        kind=AnomalyKind.MODEL_MISMATCH,
        severity=AnomalySeverity.INFO,
        description=f"Models differ on {date}",
        details={
            "date": date,
            "onlyReported": sorted(reported - recorded),
            "onlyRecorded": sorted(recorded - reported),
        },
    )


def detect_anomalies(
    percent_diff: float,
    token_details: Dict[str, Any],
    cost_discrepancy: float,
    cost_details: Dict[str, Any],
    entries: Sequence[Any],
) -> List[AuditAnomaly]:
    """Apply every audit rule.

    Rules:
    - token_mismatch: period tokens differ by more than 1% (error above 5%)
    - cost_mismatch: period API cost differs by more than $0.01 (error above $1)
    - missing_query: an entry has usage on only one side
    - model_mismatch: a date's models differ between the two sides

    Args:
        percent_diff: Period token difference as a percent of reported tokens
        token_details: Payload attached to a token anomaly
        cost_discrepancy: Absolute period cost difference in USD
        cost_details: Payload attached to a cost anomaly
        entries: Compared entries with ``date``, ``model``, ``status`` and token totals

    Returns:
        List of detected anomalies (empty if none)
    """
    anomalies = []
    for rule in (token_mismatch(percent_diff, token_details), cost_mismatch(cost_discrepancy, cost_details)):
        if rule is not None:
            anomalies.append(rule)

    reported_by_date: Dict[str, set] = {}
    recorded_by_date: Dict[str, set] = {}
    for entry in entries:
        if entry.status == EntryStatus.MISSING:
            found = missing_query(
                entry.date, entry.model,
                entry.anthropic_tokens.total_tokens, entry.maestro_tokens.total_tokens,
            )
            if found is not None:
                anomalies.append(found)
        if entry.anthropic_tokens.total_tokens > 0:
            reported_by_date.setdefault(entry.date, set()).add(entry.model)
        if entry.maestro_tokens.total_tokens > 0:
            recorded_by_date.setdefault(entry.date, set()).add(entry.model)

    for date in sorted(reported_by_date):
        found = model_mismatch(date, reported_by_date[date], recorded_by_date.get(date, ()))
        if found is not None:
            anomalies.append(found)
    return anomalies
