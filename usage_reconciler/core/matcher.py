"""
Time-window attribution of transcript usage to stored events.

A date index narrows each event to the transcript files active on its
calendar date; every usage entry inside the event's window is summed.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from usage_reconciler.storage.models import UsageEvent
from usage_reconciler.transcripts.parser import ParsedTranscript, TranscriptEntry

from .clock import utc_date
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


class DateIndex:
    """Which calendar dates (UTC) each transcript file has usage for."""

    def __init__(self):
        self._dates: Dict[str, Set[str]] = {}

    def __len__(self) -> int:
        return len(self._dates)

    @classmethod
    def build(cls, transcripts: Iterable[ParsedTranscript]) -> "DateIndex":
        index = cls()
        for parsed in transcripts:
            index.add(parsed.file.file_id, parsed.dates)
        logger.info("Built date index for %d files", len(index))
        return index

    def add(self, file_id: str, dates: Iterable[str]) -> None:
        dates = set(dates)
        if dates:
            self._dates.setdefault(file_id, set()).update(dates)

    def files_for(self, day: str) -> List[str]:
        return sorted(file_id for file_id, dates in self._dates.items() if day in dates)

    def dates_for(self, file_id: str) -> Set[str]:
        return set(self._dates.get(file_id, ()))


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive millisecond window owned by one event.

    ``end`` is None for the last event, whose window is open-ended.
    """
    event: UsageEvent
    start: int
    end: Optional[int]

    @property
    def date(self) -> str:
        return utc_date(self.start)

    def contains(self, timestamp: int) -> bool:
        if timestamp < self.start:
            return False
        return self.end is None or timestamp <= self.end


def build_windows(events: Iterable[UsageEvent]) -> List[TimeWindow]:
    """Windows ``[start_i, start_{i+1} - 1]`` over events sorted by start time."""
    ordered = sorted(events, key=lambda e: (e.start_time, e.id or 0))
    windows = []
    for i, event in enumerate(ordered):
        end = ordered[i + 1].start_time - 1 if i + 1 < len(ordered) else None
        # events sharing a start time get an empty window after the first
        if end is not None and end < event.start_time:
            end = event.start_time - 1
        windows.append(TimeWindow(event=event, start=event.start_time, end=end))
    return windows


@dataclass(frozen=True)
class WindowSum:
    """Usage summed over the entries of one window."""
    usage: TokenUsage
    entry_count: int
    model: Optional[str]
    message_id: Optional[str]
    last_timestamp: int
    uuids: FrozenSet[str] = frozenset()


def sum_window(
    entries: Iterable[TranscriptEntry],
    window: TimeWindow,
    exclude_uuids: FrozenSet[str] = frozenset(),
) -> Optional[WindowSum]:
    """Sum every entry inside the window.

    The model and message id are taken from the latest entry.

    Returns:
        The summed usage, or None when no entry falls in the window
    """
    usage = TokenUsage()
    count = 0
    model = None
    message_id = None
    last_timestamp = -1
    uuids = set()
    for entry in entries:
        if not window.contains(entry.timestamp):
            continue
        if entry.uuid and entry.uuid in exclude_uuids:
            continue
        usage = usage + entry.usage
        count += 1
        if entry.uuid:
            uuids.add(entry.uuid)
        if entry.timestamp >= last_timestamp:
            last_timestamp = entry.timestamp
            message_id = entry.message_id or message_id
            if entry.model and entry.model != "unknown":
                model = entry.model
    if count == 0:
        return None
    return WindowSum(usage, count, model, message_id, last_timestamp, frozenset(uuids))


class MatchStatus(Enum):
    MATCHED = "matched"
    NO_CANDIDATE_FILES = "no_candidate_files"
    NO_USAGE_IN_WINDOW = "no_usage_in_window"


@dataclass(frozen=True)
class WindowMatch:
    """Outcome of attributing transcript usage to one event."""
    window: TimeWindow
    status: MatchStatus
    usage: Optional[TokenUsage] = None
    model: Optional[str] = None
    message_id: Optional[str] = None
    entry_count: int = 0
    file_ids: Tuple[str, ...] = ()
    uuids: FrozenSet[str] = field(default_factory=frozenset)


def match_window(
    window: TimeWindow,
    index: DateIndex,
    load_entries: Callable[[str], List[TranscriptEntry]],
    exclude_uuids: FrozenSet[str] = frozenset(),
) -> WindowMatch:
    """Attribute usage from every file active on the event's date to its window.

    Entries from all candidate files are combined, including unrelated
    sessions active on the same date, since sub-agent transcripts do not
    always carry the parent session id.

    Args:
        window: The event's time window
        index: Date index over all discovered files
        load_entries: Returns the parsed entries of a file id
        exclude_uuids: Entries already stored as their own records

    Returns:
        A match, or a skip status naming why nothing was attributed
    """
    candidates = index.files_for(window.date)
    if not candidates:
        logger.debug("skip-no-files: event #%s on %s", window.event.id, window.date)
        return WindowMatch(window, MatchStatus.NO_CANDIDATE_FILES)

    sums = []
    for file_id in candidates:
        result = sum_window(load_entries(file_id), window, exclude_uuids)
        if result is not None:
            sums.append((file_id, result))

    if not sums:
        logger.debug(
            "skip-no-usage: event #%s, %d candidate files", window.event.id, len(candidates)
        )
        return WindowMatch(window, MatchStatus.NO_USAGE_IN_WINDOW)

    usage = TokenUsage()
    uuids: Set[str] = set()
    latest = None
    for _, result in sums:
        usage = usage + result.usage
        uuids.update(result.uuids)
        if result.model and (latest is None or result.last_timestamp >= latest.last_timestamp or not latest.model):
            latest = result
    if latest is None:
        latest = max((result for _, result in sums), key=lambda r: r.last_timestamp)
    if len(sums) > 1:
        logger.debug("match-combined: event #%s from %d files", window.event.id, len(sums))

    return WindowMatch(
        window=window,
        status=MatchStatus.MATCHED,
        usage=usage,
        model=latest.model,
        message_id=latest.message_id,
        entry_count=sum(result.entry_count for _, result in sums),
        file_ids=tuple(file_id for file_id, _ in sums),
        uuids=frozenset(uuids),
    )
