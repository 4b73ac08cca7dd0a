"""
Transcript discovery and parsing.

Extracts per-message token usage from JSONL transcript files.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from usage_reconciler.core.clock import parse_timestamp, utc_date
from usage_reconciler.core.errors import FileAccessError
from usage_reconciler.core.token_counter import TokenUsage

from .sources import DirEntry, TranscriptSource

logger = logging.getLogger(__name__)

DEFAULT_TRANSCRIPT_ROOT = "~/.claude/projects"
LARGE_FILE_THRESHOLD_BYTES = 5 * 1024 * 1024
PARTIAL_HEAD_LINES = 100
PARTIAL_TAIL_LINES = 50

SUBAGENT_DIR = "subagents"
SUBAGENT_PREFIX = "agent-"


@dataclass(frozen=True)
class TranscriptEntry:
    """Usage carried by one assistant line of a transcript."""
    session_id: str
    timestamp: int  # epoch ms
    uuid: Optional[str]
    message_id: Optional[str]
    model: Optional[str]
    usage: TokenUsage

    @property
    def date(self) -> str:
        return utc_date(self.timestamp)


def _token_count(usage: dict, key: str) -> int:
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return 0
    return int(value)


def parse_transcript_line(line: str, session_hint: Optional[str] = None) -> Optional[TranscriptEntry]:
    """Parse one JSONL line into a usage entry.

    Only ``type == "assistant"`` records with a ``message.usage`` object
    are usage entries. Missing token fields count as zero.

    Args:
        line: Raw line from a transcript
        session_hint: Session id to use when the record carries none

    Returns:
        The usage entry, or None for malformed, non-usage, undated or
        all-zero lines
    """
    text = line.strip()
    if not text:
        return None
    try:
        record = json.loads(text)
    except ValueError:
        return None
    if not isinstance(record, dict) or record.get("type") != "assistant":
        return None
    message = record.get("message")
    if not isinstance(message, dict) or not isinstance(message.get("usage"), dict):
        return None

    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        return None

    usage_data = message["usage"]
    usage = TokenUsage(
        input_tokens=_token_count(usage_data, "input_tokens"),
        output_tokens=_token_count(usage_data, "output_tokens"),
        cache_read_tokens=_token_count(usage_data, "cache_read_input_tokens"),
        cache_creation_tokens=_token_count(usage_data, "cache_creation_input_tokens"),
    )
    if usage.is_empty():
        return None

    model = message.get("model")
    return TranscriptEntry(
        session_id=record.get("sessionId") or session_hint or "",
        timestamp=timestamp,
        uuid=record.get("uuid") or None,
        message_id=message.get("id") or None,
        model=model if isinstance(model, str) and model else None,
        usage=usage,
    )


def parse_transcript(lines: List[str], session_hint: Optional[str] = None) -> List[TranscriptEntry]:
    """Parse every usage line, skipping malformed ones and repeated uuids."""
    entries = []
    seen = set()
    skipped = 0
    for line in lines:
        entry = parse_transcript_line(line, session_hint)
        if entry is None:
            if line.strip():
                skipped += 1
            continue
        if entry.uuid:
            if entry.uuid in seen:
                continue
            seen.add(entry.uuid)
        entries.append(entry)
    if skipped:
        logger.debug("Skipped %d non-usage or malformed lines", skipped)
    return entries


def decode_project_path(encoded: str) -> str:
    """Best-effort original directory of an encoded project folder name.

    Encoding replaced every path separator with a dash, so dashes that
    were part of a directory name come back as separators.
    """
    return "/" + encoded.lstrip("-").replace("-", "/")


@dataclass(frozen=True)
class TranscriptFile:
    """A transcript file found on some source."""
    source_label: str
    path: str
    size: Optional[int]
    session_id: str
    project_dir: Optional[str] = None
    is_subagent: bool = False

    @property
    def file_id(self) -> str:
        return f"{self.source_label}:{self.path}"

    @property
    def project_path(self) -> Optional[str]:
        return decode_project_path(self.project_dir) if self.project_dir else None


def describe_transcript(root: str, entry: DirEntry, source_label: str) -> TranscriptFile:
    """Work out the session, project and sub-agent status of a file from its location.

    Main transcripts live at ``<root>/<project>/<session>.jsonl`` and
    sub-agent transcripts at ``<root>/<project>/<session>/subagents/agent-*.jsonl``.
    """
    path = entry.path
    prefix = root.rstrip("/") + "/"
    relative = path[len(prefix):] if path.startswith(prefix) else path
    parts = [p for p in relative.split("/") if p]
    stem = parts[-1][:-len(".jsonl")] if parts[-1].endswith(".jsonl") else parts[-1]

    is_subagent = (
        len(parts) >= 3
        and parts[-2] == SUBAGENT_DIR
        and parts[-1].startswith(SUBAGENT_PREFIX)
    )
    if is_subagent:
        session_id = parts[-3]
        project_dir = parts[-4] if len(parts) >= 4 else None
    else:
        session_id = stem
        project_dir = parts[-2] if len(parts) >= 2 else None
    return TranscriptFile(
        source_label=source_label,
        path=path,
        size=entry.size,
        session_id=session_id,
        project_dir=project_dir,
        is_subagent=is_subagent,
    )


def discover_transcripts(
    source: TranscriptSource,
    root: str = DEFAULT_TRANSCRIPT_ROOT,
) -> Tuple[List[TranscriptFile], List[FileAccessError]]:
    """List every transcript file under root, sub-agent files included.

    Raises:
        FileAccessError: If the root itself cannot be listed
        RemoteError: If a remote source is unreachable
    """
    entries, failures = source.find_transcripts(root)
    files = [describe_transcript(_resolved_root(root, entries), entry, source.label) for entry in entries]
    logger.info(
        "Found %d transcript files (%d sub-agent) on %s",
        len(files), sum(1 for f in files if f.is_subagent), source.label,
    )
    return files, failures


def _resolved_root(root: str, entries: List[DirEntry]) -> str:
    """Root as it appears in listed paths.

    Remote listings expand ``~`` to an absolute home directory.
    """
    if not root.startswith("~") or not entries:
        return root
    tail = root[1:]
    for entry in entries:
        index = entry.path.find(tail + "/")
        if entry.path.startswith("/") and index >= 0:
            return entry.path[:index] + tail
    return root


@dataclass(frozen=True)
class ParsedTranscript:
    """Usage entries read from one transcript file."""
    file: TranscriptFile
    entries: List[TranscriptEntry] = field(default_factory=list)
    partial: bool = False
    total_lines: int = 0

    @property
    def dates(self) -> List[str]:
        return sorted(set(entry.date for entry in self.entries))


def load_transcript(
    source: TranscriptSource,
    transcript: TranscriptFile,
    threshold_bytes: int = LARGE_FILE_THRESHOLD_BYTES,
    head_lines: int = PARTIAL_HEAD_LINES,
    tail_lines: int = PARTIAL_TAIL_LINES,
) -> ParsedTranscript:
    """Read and parse one transcript file.

    Files above the size threshold are read partially: only the first
    ``head_lines`` and last ``tail_lines`` lines are parsed.

    Raises:
        FileAccessError: If the file cannot be read
        RemoteError: If a remote source fails
    """
    size = transcript.size
    if size is None:
        size = source.stat(transcript.path).size

    if size > threshold_bytes:
        content = source.partial_read(transcript.path, head_lines, tail_lines)
        logger.info(
            "Partial read of %s (%d bytes, %d lines)", transcript.file_id, size, content.total_lines
        )
        entries = parse_transcript(content.lines(), transcript.session_id)
        return ParsedTranscript(transcript, entries, partial=True, total_lines=content.total_lines)

    lines = source.read(transcript.path).splitlines()
    entries = parse_transcript(lines, transcript.session_id)
    return ParsedTranscript(transcript, entries, partial=False, total_lines=len(lines))
