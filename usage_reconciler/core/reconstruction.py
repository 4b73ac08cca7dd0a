"""
Historical usage reconstruction.

Backfills and completes stored usage events from raw transcripts. A run
scans every configured source, parses each transcript once, attributes
transcript usage to stored events by time window, prices everything
under both billing regimes and finally writes the results one record
at a time.

Outcomes per item:

- stored events without a transcript uuid are window-matched; complete
  ones are skipped, incomplete ones are coalesced with the window's usage
- transcript entries whose uuid is already stored complete that record
  if it is still partial, otherwise they are skipped
- any other transcript entry becomes a new reconstructed record

Dry runs execute every stage except the final write.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Tuple, Union

from usage_reconciler.storage.models import EventPatch, EventSource, UsageEvent
from usage_reconciler.storage.repository import UsageRepository, get_repository
from usage_reconciler.transcripts.fetch import (
    DEFAULT_REMOTE_WORKERS,
    ReadSettings,
    RemoteHostConfig,
    SourceScan,
    collect_remote_hosts,
    collect_source,
)
from usage_reconciler.transcripts.parser import (
    DEFAULT_TRANSCRIPT_ROOT,
    TranscriptEntry,
    TranscriptFile,
    load_transcript,
)
from usage_reconciler.transcripts.sources import (
    LocalTranscriptSource,
    SshTarget,
    SshTranscriptSource,
    TranscriptSource,
)

from .billing import BillingResolver
from .cache import BoundedCache
from .clock import Clock, DateRange, SystemClock, to_epoch_ms
from .errors import ConfigurationError, ErrorRecord, ReconciliationError
from .matcher import DateIndex, MatchStatus, WindowMatch, build_windows, match_window
from .pricing import PRICING_TABLE, BillingMode, PricingTable, calculate_dual_cost
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

RECONSTRUCTED_AGENT_TYPE = "claude-code"
UNKNOWN_MODEL = "unknown"
DEFAULT_CACHE_CAPACITY = 128

SKIP_ALREADY_COMPLETE = "already_complete"
SKIP_MISSING_UUID = "missing_uuid"
SKIP_WRITE_FAILED = "write_failed"


class ReconstructionStage(Enum):
    """Stages of one run, in order."""
    SCANNING = "scanning"
    PARSING = "parsing"
    MATCHING = "matching"
    COSTING = "costing"
    UPSERTING = "upserting"
    DONE = "done"


@dataclass(frozen=True)
class ReconstructionOptions:
    """What a reconstruction run should read and whether it may write."""
    include_local: bool = True
    include_remote: bool = False
    remote_hosts: Tuple[RemoteHostConfig, ...] = ()
    date_range: Optional[DateRange] = None
    dry_run: bool = False
    base_path: str = DEFAULT_TRANSCRIPT_ROOT
    billing_mode: Optional[BillingMode] = None
    read_settings: ReadSettings = ReadSettings()
    max_remote_workers: int = DEFAULT_REMOTE_WORKERS
    cache_capacity: int = DEFAULT_CACHE_CAPACITY

    def __post_init__(self):
        if self.max_remote_workers < 1:
            raise ValueError("max_remote_workers must be >= 1")
        if self.cache_capacity < 1:
            raise ValueError("cache_capacity must be >= 1")


@dataclass
class ReconstructionResult:
    """Counts and failures of one run. Always returned, never raised."""
    queries_found: int = 0
    queries_inserted: int = 0
    queries_updated: int = 0
    queries_skipped: int = 0
    date_range_covered: Optional[DateRange] = None
    errors: List[ErrorRecord] = field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    stages: List[ReconstructionStage] = field(default_factory=list)
    files_scanned: int = 0
    partial_reads: int = 0

    @property
    def stage(self) -> Optional[ReconstructionStage]:
        return self.stages[-1] if self.stages else None

    def enter(self, stage: ReconstructionStage) -> None:
        logger.debug("Reconstruction stage: %s", stage.value)
        self.stages.append(stage)

    def skip(self, reason: str) -> None:
        self.queries_skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1

    def to_dict(self) -> Dict:
        covered = None
        if self.date_range_covered is not None:
            covered = {"start": self.date_range_covered.start, "end": self.date_range_covered.end}
        return {
            "queriesFound": self.queries_found,
            "queriesInserted": self.queries_inserted,
            "queriesUpdated": self.queries_updated,
            "queriesSkipped": self.queries_skipped,
            "dateRangeCovered": covered,
            "errors": [e.to_dict() for e in self.errors],
            "duration": self.duration_ms,
            "dryRun": self.dry_run,
            "skipReasons": dict(self.skip_reasons),
            "filesScanned": self.files_scanned,
            "partialReads": self.partial_reads,
        }


@dataclass(frozen=True)
class _PlannedInsert:
    entry: TranscriptEntry
    file: TranscriptFile


@dataclass(frozen=True)
class _PlannedUpdate:
    event: UsageEvent
    usage: TokenUsage
    model: Optional[str]
    message_id: Optional[str]
    label: str


_Planned = Union[_PlannedInsert, _PlannedUpdate]


@dataclass(frozen=True)
class _CostedWrite:
    label: str
    event: Optional[UsageEvent] = None
    event_id: Optional[int] = None
    patch: Optional[EventPatch] = None


class _RunState:
    """Per-run lookup structures; discarded when the run ends."""

    def __init__(self, options: ReconstructionOptions, result: ReconstructionResult):
        self.options = options
        self.result = result
        self.cache: BoundedCache[List[TranscriptEntry]] = BoundedCache(options.cache_capacity)
        self.index = DateIndex()
        self.files: Dict[str, Tuple[TranscriptSource, TranscriptFile]] = {}
        self.owners: Dict[str, str] = {}  # uuid -> file that first carried it
        self.entry_dates: Set[str] = set()
        self.uuids: Set[str] = set()

    def keep(self, entry: TranscriptEntry, file_id: str) -> bool:
        """Whether an entry belongs to the run's date range and to this file."""
        date_range = self.options.date_range
        if date_range is not None and not date_range.contains(entry.date):
            return False
        if entry.uuid:
            return self.owners.setdefault(entry.uuid, file_id) == file_id
        return True

    def entries_for(self, file_id: str) -> List[TranscriptEntry]:
        return self.cache.get_or_load(file_id, lambda: self._reload(file_id))

    def _reload(self, file_id: str) -> List[TranscriptEntry]:
        source, transcript = self.files[file_id]
        settings = self.options.read_settings
        try:
            parsed = load_transcript(
                source, transcript,
                threshold_bytes=settings.threshold_bytes,
                head_lines=settings.head_lines,
                tail_lines=settings.tail_lines,
            )
        except ReconciliationError as e:
            logger.warning("Could not re-read %s: %s", file_id, e)
            self.result.errors.append(ErrorRecord(file_id, str(e)))
            return []
        return [entry for entry in parsed.entries if self.keep(entry, file_id)]


class Reconstructor:
    """Drives scan, parse, match, cost and upsert over one store."""

    def __init__(
        self,
        repository: UsageRepository,
        billing_resolver: Optional[BillingResolver] = None,
        clock: Optional[Clock] = None,
        local_source: Optional[TranscriptSource] = None,
        remote_source_factory: Callable[[SshTarget], TranscriptSource] = SshTranscriptSource,
        pricing_table: PricingTable = PRICING_TABLE,
    ):
        self.repository = repository
        self.billing_resolver = billing_resolver or BillingResolver()
        self.clock = clock or SystemClock()
        self.local_source = local_source or LocalTranscriptSource()
        self.remote_source_factory = remote_source_factory
        self.pricing_table = pricing_table

    def reconstruct(self, options: ReconstructionOptions) -> ReconstructionResult:
        """Run a reconstruction.

        Failures of files, hosts or single records are recorded in
        ``errors`` and never abort the run or reach the caller.

        Args:
            options: Sources, date range and dry-run flag

        Returns:
            Counts of inserted, updated and skipped items
        """
        started = time.monotonic()
        result = ReconstructionResult(dry_run=options.dry_run)
        logger.info(
            "Starting %sreconstruction (local=%s, remote hosts=%d)",
            "dry-run " if options.dry_run else "",
            options.include_local,
            len(options.remote_hosts) if options.include_remote else 0,
        )
        try:
            self._run(options, result)
        except Exception as e:
            logger.exception("Reconstruction aborted")
            result.errors.append(ErrorRecord("reconstruction", f"{type(e).__name__}: {e}"))
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Reconstruction finished in %dms: found=%d inserted=%d updated=%d skipped=%d errors=%d",
            result.duration_ms, result.queries_found, result.queries_inserted,
            result.queries_updated, result.queries_skipped, len(result.errors),
        )
        return result

    def _run(self, options: ReconstructionOptions, result: ReconstructionResult) -> None:
        run = _RunState(options, result)

        result.enter(ReconstructionStage.SCANNING)
        scans = self._scan(options, result)
        if scans is None:
            return

        result.enter(ReconstructionStage.PARSING)
        self._index(scans, run)

        result.enter(ReconstructionStage.MATCHING)
        planned = self._match(run)

        result.enter(ReconstructionStage.COSTING)
        writes = [self._cost(item, options) for item in planned]

        if options.dry_run:
            for write in writes:
                if write.event is not None:
                    result.queries_inserted += 1
                else:
                    result.queries_updated += 1
        else:
            result.enter(ReconstructionStage.UPSERTING)
            self._apply(writes, result)

        result.enter(ReconstructionStage.DONE)

    def _scan(self, options: ReconstructionOptions, result: ReconstructionResult) -> Optional[List[SourceScan]]:
        remote_hosts = list(options.remote_hosts) if options.include_remote else []
        if not options.include_local and not remote_hosts:
            error = ConfigurationError("No transcript source enabled")
            logger.error("%s", error)
            result.errors.append(ErrorRecord("configuration", str(error)))
            return None

        scans = []
        if options.include_local:
            scans.append(collect_source(self.local_source, options.base_path, options.read_settings))
        scans.extend(collect_remote_hosts(
            remote_hosts,
            settings=options.read_settings,
            max_workers=options.max_remote_workers,
            source_factory=self.remote_source_factory,
        ))

        for scan in scans:
            result.errors.extend(scan.errors)
            result.files_scanned += len(scan.transcripts)
            result.partial_reads += scan.partial_reads
        if all(scan.errors and not scan.transcripts for scan in scans):
            error = ConfigurationError("No reachable transcript source")
            logger.error("%s", error)
            result.errors.append(ErrorRecord("configuration", str(error)))
            return None
        return scans

    def _index(self, scans: List[SourceScan], run: _RunState) -> None:
        """Build the date index and prime the per-run cache.

        Parsed transcripts are released once indexed; files evicted from
        the cache are re-read on demand.
        """
        for scan in scans:
            for parsed in scan.transcripts:
                file_id = parsed.file.file_id
                entries = [entry for entry in parsed.entries if run.keep(entry, file_id)]
                run.files[file_id] = (scan.source, parsed.file)
                run.index.add(file_id, (entry.date for entry in entries))
                run.cache.put(file_id, entries)
                run.entry_dates.update(entry.date for entry in entries)
                run.uuids.update(entry.uuid for entry in entries if entry.uuid)
            scan.transcripts = []
        if run.entry_dates:
            run.result.date_range_covered = DateRange(min(run.entry_dates), max(run.entry_dates))
        logger.info("Indexed %d files covering %d dates", len(run.index), len(run.entry_dates))

    def _match(self, run: _RunState) -> List[_Planned]:
        result = run.result
        planned: List[_Planned] = []

        stored = self.repository.events_by_uuid(run.uuids)
        stored_uuids: FrozenSet[str] = frozenset(stored)

        time_range = (None, None)
        if run.options.date_range is not None:
            time_range = run.options.date_range.to_epoch_bounds()
        live_events = self.repository.query(time_range=time_range, has_uuid=False)

        attributed: Set[str] = set()
        for window in build_windows(live_events):
            result.queries_found += 1
            match = match_window(window, run.index, run.entries_for, stored_uuids)
            attributed.update(match.uuids)
            event = window.event
            if event.is_complete:
                result.skip(SKIP_ALREADY_COMPLETE)
            elif match.status != MatchStatus.MATCHED:
                result.skip(match.status.value)
            else:
                planned.append(self._update_from_match(event, match))

        for file_id in sorted(run.files):
            transcript = run.files[file_id][1]
            for entry in run.entries_for(file_id):
                if entry.uuid in attributed:
                    continue
                result.queries_found += 1
                if not entry.uuid:
                    result.skip(SKIP_MISSING_UUID)
                elif entry.uuid in stored:
                    existing = stored[entry.uuid]
                    if existing.is_complete:
                        result.skip(SKIP_ALREADY_COMPLETE)
                    else:
                        planned.append(_PlannedUpdate(
                            event=existing,
                            usage=entry.usage,
                            model=entry.model,
                            message_id=entry.message_id,
                            label=f"{file_id}#{entry.uuid}",
                        ))
                else:
                    planned.append(_PlannedInsert(entry=entry, file=transcript))

        logger.info(
            "Matched %d live events; planned %d writes", len(live_events), len(planned)
        )
        return planned

    @staticmethod
    def _update_from_match(event: UsageEvent, match: WindowMatch) -> _PlannedUpdate:
        return _PlannedUpdate(
            event=event,
            usage=match.usage,
            model=match.model,
            message_id=match.message_id,
            label=f"event #{event.id}",
        )

    def _billing_mode(self, options: ReconstructionOptions, agent_type: str) -> BillingMode:
        if options.billing_mode is not None:
            return options.billing_mode
        return self.billing_resolver.resolve(agent_type)

    def _cost(self, item: _Planned, options: ReconstructionOptions) -> _CostedWrite:
        now = to_epoch_ms(self.clock.now())

        if isinstance(item, _PlannedInsert):
            entry = item.entry
            mode = self._billing_mode(options, RECONSTRUCTED_AGENT_TYPE)
            cost = calculate_dual_cost(entry.usage, entry.model, mode, self.pricing_table)
            event = UsageEvent(
                session_id=entry.session_id,
                agent_type=RECONSTRUCTED_AGENT_TYPE,
                source=EventSource.USER,
                start_time=entry.timestamp,
                duration=0,
                input_tokens=entry.usage.input_tokens,
                output_tokens=entry.usage.output_tokens,
                cache_read_tokens=entry.usage.cache_read_tokens,
                cache_creation_tokens=entry.usage.cache_creation_tokens,
                uuid=entry.uuid,
                anthropic_message_id=entry.message_id,
                anthropic_model=entry.model or UNKNOWN_MODEL,
                anthropic_cost_usd=cost.anthropic_cost_usd,
                maestro_cost_usd=cost.maestro_cost_usd,
                maestro_billing_mode=mode,
                maestro_pricing_model=cost.pricing_model,
                maestro_calculated_at=now,
                project_path=item.file.project_path,
                is_reconstructed=True,
                reconstructed_at=now,
            )
            return _CostedWrite(label=f"{item.file.file_id}#{entry.uuid}", event=event)

        event = item.event
        # existing values win, so costs are priced on what the row will hold
        usage = TokenUsage(
            input_tokens=_prefer(event.input_tokens, item.usage.input_tokens),
            output_tokens=_prefer(event.output_tokens, item.usage.output_tokens),
            cache_read_tokens=_prefer(event.cache_read_tokens, item.usage.cache_read_tokens),
            cache_creation_tokens=_prefer(event.cache_creation_tokens, item.usage.cache_creation_tokens),
        )
        model = event.anthropic_model or item.model or UNKNOWN_MODEL
        mode = event.maestro_billing_mode or self._billing_mode(options, event.agent_type)
        cost = calculate_dual_cost(usage, model, mode, self.pricing_table)
        patch = EventPatch(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            anthropic_message_id=item.message_id,
            anthropic_model=model,
            anthropic_cost_usd=cost.anthropic_cost_usd,
            maestro_cost_usd=cost.maestro_cost_usd,
            maestro_billing_mode=mode,
            maestro_pricing_model=cost.pricing_model,
            maestro_calculated_at=now,
            reconstructed_at=now,
        )
        return _CostedWrite(label=item.label, event_id=event.id, patch=patch)

    def _apply(self, writes: List[_CostedWrite], result: ReconstructionResult) -> None:
        for write in writes:
            try:
                if write.event is not None:
                    self.repository.insert(write.event)
                    result.queries_inserted += 1
                else:
                    if self.repository.update_coalescing(write.event_id, write.patch):
                        result.queries_updated += 1
                    else:
                        result.skip(SKIP_WRITE_FAILED)
                        result.errors.append(ErrorRecord(write.label, "record no longer exists"))
            except (ReconciliationError, sqlite3.Error) as e:
                logger.warning("Write failed for %s: %s", write.label, e)
                result.skip(SKIP_WRITE_FAILED)
                result.errors.append(ErrorRecord(write.label, str(e)))


def _prefer(current: Optional[int], candidate: int) -> int:
    return current if current is not None else candidate


def reconstruct(
    options: ReconstructionOptions,
    repository: Optional[UsageRepository] = None,
    **kwargs,
) -> ReconstructionResult:
    """Run a reconstruction against the given or default repository."""
    return Reconstructor(repository or get_repository(), **kwargs).reconstruct(options)


def preview_reconstruct(
    options: ReconstructionOptions,
    repository: Optional[UsageRepository] = None,
    **kwargs,
) -> ReconstructionResult:
    """Same as reconstruct with dry_run forced on."""
    return reconstruct(replace(options, dry_run=True), repository, **kwargs)
