"""
Transcript collection across hosts.

Reads every transcript from the local disk and from each remote host,
isolating failures per file and per host.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from usage_reconciler.core.errors import ErrorRecord, FileAccessError, RemoteError

from .parser import (
    DEFAULT_TRANSCRIPT_ROOT,
    LARGE_FILE_THRESHOLD_BYTES,
    PARTIAL_HEAD_LINES,
    PARTIAL_TAIL_LINES,
    ParsedTranscript,
    discover_transcripts,
    load_transcript,
)
from .sources import SshTarget, SshTranscriptSource, TranscriptSource

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_WORKERS = 2


@dataclass(frozen=True)
class RemoteHostConfig:
    """A remote host whose transcripts should be collected."""
    id: str
    host: str
    user: Optional[str] = None
    port: Optional[int] = None
    identity_file: Optional[str] = None
    base_path: str = DEFAULT_TRANSCRIPT_ROOT

    def __post_init__(self):
        if not self.host:
            raise ValueError(f"Remote host '{self.id}' must have a host")
        if self.port is not None and not 0 < self.port < 65536:
            raise ValueError(f"Remote host '{self.id}' has invalid port {self.port}")

    @property
    def target(self) -> SshTarget:
        return SshTarget(
            host=self.host,
            user=self.user,
            port=self.port,
            identity_file=self.identity_file,
        )


@dataclass(frozen=True)
class ReadSettings:
    """Full-read versus partial-read thresholds."""
    threshold_bytes: int = LARGE_FILE_THRESHOLD_BYTES
    head_lines: int = PARTIAL_HEAD_LINES
    tail_lines: int = PARTIAL_TAIL_LINES


@dataclass
class SourceScan:
    """Transcripts read from one source, plus the failures encountered."""
    source_label: str
    transcripts: List[ParsedTranscript] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    partial_reads: int = 0
    source: Optional[TranscriptSource] = None


def collect_source(
    source: TranscriptSource,
    root: str,
    settings: ReadSettings = ReadSettings(),
) -> SourceScan:
    """Discover and parse every transcript on one source, sequentially.

    A file that cannot be read is recorded and skipped.

    Raises:
        RemoteError: If the source's host fails; the whole host is abandoned
    """
    scan = SourceScan(source.label, source=source)
    try:
        files, failures = discover_transcripts(source, root)
    except FileAccessError as e:
        logger.warning("Cannot list transcripts on %s: %s", source.label, e)
        scan.errors.append(ErrorRecord(f"{source.label}:{e.path}", str(e)))
        return scan
    for failure in failures:
        scan.errors.append(ErrorRecord(f"{source.label}:{failure.path}", str(failure)))

    for transcript in files:
        try:
            parsed = load_transcript(
                source,
                transcript,
                threshold_bytes=settings.threshold_bytes,
                head_lines=settings.head_lines,
                tail_lines=settings.tail_lines,
            )
        except FileAccessError as e:
            logger.warning("Skipping %s: %s", transcript.file_id, e)
            scan.errors.append(ErrorRecord(transcript.file_id, str(e)))
            continue
        if parsed.partial:
            scan.partial_reads += 1
        scan.transcripts.append(parsed)
    return scan


def collect_remote_host(
    config: RemoteHostConfig,
    settings: ReadSettings = ReadSettings(),
    source_factory: Callable[[SshTarget], TranscriptSource] = SshTranscriptSource,
) -> SourceScan:
    """Collect one remote host, turning a host failure into a recorded error."""
    source = source_factory(config.target)
    logger.info("Collecting transcripts from %s", source.label)
    try:
        return collect_source(source, config.base_path, settings)
    except RemoteError as e:
        logger.warning("Remote host %s failed: %s", source.label, e)
        return SourceScan(source.label, errors=[ErrorRecord(source.label, str(e))], source=source)


def collect_remote_hosts(
    hosts: List[RemoteHostConfig],
    settings: ReadSettings = ReadSettings(),
    max_workers: int = DEFAULT_REMOTE_WORKERS,
    source_factory: Callable[[SshTarget], TranscriptSource] = SshTranscriptSource,
) -> List[SourceScan]:
    """Collect several remote hosts with bounded concurrency.

    Each host is processed by one worker; a failing host never affects
    the others. Results keep the order of ``hosts``.
    """
    if not hosts:
        return []
    workers = max(1, min(max_workers, len(hosts)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="remote-fetch") as pool:
        futures = [
            pool.submit(collect_remote_host, host, settings, source_factory)
            for host in hosts
        ]
        return [future.result() for future in futures]
