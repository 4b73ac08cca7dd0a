"""
Transcript file access.

The same listing and reading contract over local disk and over SSH.
"""

import logging
import os
import shlex
import subprocess
from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from usage_reconciler.core.errors import (
    FileAccessError,
    RemoteConnectionError,
    RemoteError,
    RemoteTimeoutError,
    RemoteTransferTooLarge,
)

logger = logging.getLogger(__name__)

TRANSCRIPT_SUFFIX = ".jsonl"

LIST_TIMEOUT_SECONDS = 60
TRANSFER_TIMEOUT_SECONDS = 120
MAX_BUFFER_BYTES = 50 * 1024 * 1024
SSH_CONNECT_TIMEOUT_SECONDS = 10

# ssh exits with 255 when the connection itself fails
SSH_CONNECTION_FAILED = 255
# remote scripts below exit with this when the target path is unusable
_PATH_UNUSABLE = 3

_PARTIAL_SEPARATOR = "__usage_reconciler_partial__"


@dataclass(frozen=True)
class DirEntry:
    """One entry of a directory listing."""
    name: str
    path: str
    is_dir: bool
    size: Optional[int] = None


@dataclass(frozen=True)
class FileStat:
    size: int
    mtime: int  # epoch ms


@dataclass(frozen=True)
class PartialContent:
    """First and last lines of a file plus its total line count."""
    head: List[str]
    tail: List[str]
    total_lines: int

    def lines(self) -> List[str]:
        """Head followed by tail, without repeating lines both contain."""
        overlap = len(self.head) + len(self.tail) - self.total_lines
        tail = self.tail[overlap:] if overlap > 0 else self.tail
        return list(self.head) + list(tail)


class TranscriptSource:
    """File access used by transcript discovery and parsing.

    Implementations raise FileAccessError for a single unusable path and
    RemoteError subclasses when the whole host is unreachable.
    """

    label = "source"

    def list(self, directory: str) -> List[DirEntry]:
        raise NotImplementedError

    def stat(self, path: str) -> FileStat:
        raise NotImplementedError

    def read(self, path: str) -> str:
        raise NotImplementedError

    def partial_read(self, path: str, head_lines: int, tail_lines: int) -> PartialContent:
        raise NotImplementedError

    def find_transcripts(self, root: str) -> Tuple[List[DirEntry], List[FileAccessError]]:
        """Recursively find transcript files under root.

        Unreadable subdirectories are returned as failures; an unusable
        root raises.

        Returns:
            Transcript files sorted by path, and the per-directory failures
        """
        found: List[DirEntry] = []
        failures: List[FileAccessError] = []
        pending = [root]
        while pending:
            directory = pending.pop()
            try:
                entries = self.list(directory)
            except FileAccessError as e:
                if directory == root:
                    raise
                failures.append(e)
                continue
            for entry in entries:
                if entry.is_dir:
                    pending.append(entry.path)
                elif entry.name.endswith(TRANSCRIPT_SUFFIX):
                    found.append(entry)
        return sorted(found, key=lambda e: e.path), failures


class LocalTranscriptSource(TranscriptSource):
    """Transcript access on the local filesystem."""

    label = "local"

    def list(self, directory: str) -> List[DirEntry]:
        path = os.path.expanduser(directory)
        try:
            entries = []
            with os.scandir(path) as it:
                for item in it:
                    is_dir = item.is_dir(follow_symlinks=False)
                    size = None if is_dir else item.stat().st_size
                    entries.append(DirEntry(item.name, os.path.join(directory, item.name), is_dir, size))
            return sorted(entries, key=lambda e: e.name)
        except OSError as e:
            raise FileAccessError(directory, f"Cannot list {directory}: {e.strerror or e}")

    def stat(self, path: str) -> FileStat:
        try:
            result = os.stat(os.path.expanduser(path))
        except OSError as e:
            raise FileAccessError(path, f"Cannot stat {path}: {e.strerror or e}")
        return FileStat(size=result.st_size, mtime=int(result.st_mtime * 1000))

    def read(self, path: str) -> str:
        try:
            with open(os.path.expanduser(path), "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError as e:
            raise FileAccessError(path, f"Cannot read {path}: {e.strerror or e}")

    def partial_read(self, path: str, head_lines: int, tail_lines: int) -> PartialContent:
        head: List[str] = []
        tail = deque(maxlen=tail_lines) if tail_lines > 0 else None
        total = 0
        try:
            with open(os.path.expanduser(path), "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    line = line.rstrip("\n")
                    if total < head_lines:
                        head.append(line)
                    if tail is not None:
                        tail.append(line)
                    total += 1
        except OSError as e:
            raise FileAccessError(path, f"Cannot read {path}: {e.strerror or e}")
        return PartialContent(head=head, tail=list(tail or []), total_lines=total)


@dataclass(frozen=True)
class SshTarget:
    """Connection details for one remote host."""
    host: str
    user: Optional[str] = None
    port: Optional[int] = None
    identity_file: Optional[str] = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def label(self) -> str:
        return f"ssh://{self.destination}"


def quote_remote_path(path: str) -> str:
    """Shell-quote a remote path, keeping a leading ``~/`` expandable."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


class SshClient:
    """Runs commands on a remote host through the ``ssh`` client.

    Every call is one non-interactive ssh invocation with an explicit
    timeout. Output beyond ``max_buffer`` bytes is refused.
    """

    def __init__(
        self,
        target: SshTarget,
        max_buffer: int = MAX_BUFFER_BYTES,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.target = target
        self.max_buffer = max_buffer
        self._runner = runner

    def ssh_command(self, remote_command: str) -> List[str]:
        command = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={SSH_CONNECT_TIMEOUT_SECONDS}",
        ]
        if self.target.port:
            command += ["-p", str(self.target.port)]
        if self.target.identity_file:
            command += ["-i", os.path.expanduser(self.target.identity_file)]
        command += [self.target.destination, remote_command]
        return command

    def run(self, remote_command: str, timeout: float, path: Optional[str] = None) -> str:
        """Run a command on the remote host and return its stdout.

        Args:
            remote_command: Shell command executed by the remote login shell
            timeout: Seconds before the call is abandoned
            path: File the command operates on, for error attribution

        Raises:
            RemoteTimeoutError: If the call exceeds the timeout
            RemoteConnectionError: If ssh cannot reach the host
            RemoteTransferTooLarge: If stdout exceeds the maximum buffer
            FileAccessError: If the command fails for the given path
        """
        host = self.target.label
        logger.debug("%s: %s", host, remote_command)
        try:
            completed = self._runner(
                self.ssh_command(remote_command),
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise RemoteTimeoutError(host, f"timed out after {timeout:g}s")
        except OSError as e:
            raise RemoteConnectionError(host, f"cannot run ssh: {e}")

        stderr = (completed.stderr or b"").decode("utf-8", errors="replace").strip()
        if completed.returncode == SSH_CONNECTION_FAILED:
            raise RemoteConnectionError(host, stderr or "connection failed")
        stdout = completed.stdout or b""
        if len(stdout) > self.max_buffer:
            raise RemoteTransferTooLarge(
                host, f"output exceeds {self.max_buffer} bytes" + (f" for {path}" if path else "")
            )
        if completed.returncode != 0:
            message = stderr or f"exit status {completed.returncode}"
            if path is not None:
                raise FileAccessError(path, f"{host}:{path}: {message}")
            raise RemoteError(host, message)
        return stdout.decode("utf-8", errors="replace")


class SshTranscriptSource(TranscriptSource):
    """Transcript access on a remote host over SSH."""

    def __init__(
        self,
        target: SshTarget,
        list_timeout: float = LIST_TIMEOUT_SECONDS,
        transfer_timeout: float = TRANSFER_TIMEOUT_SECONDS,
        max_buffer: int = MAX_BUFFER_BYTES,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.target = target
        self.list_timeout = list_timeout
        self.transfer_timeout = transfer_timeout
        self.client = SshClient(target, max_buffer=max_buffer, runner=runner)

    @property
    def label(self) -> str:
        return self.target.label

    @property
    def max_buffer(self) -> int:
        return self.client.max_buffer

    def run(self, remote_command: str, timeout: float, path: Optional[str] = None) -> str:
        return self.client.run(remote_command, timeout, path=path)

    def list(self, directory: str) -> List[DirEntry]:
        quoted = quote_remote_path(directory)
        script = (
            f"cd {quoted} 2>/dev/null || exit {_PATH_UNUSABLE}; "
            "for f in * .[!.]*; do "
            "if [ -d \"$f\" ]; then printf 'd\\t0\\t%s\\n' \"$f\"; "
            "elif [ -f \"$f\" ]; then printf 'f\\t%s\\t%s\\n' \"$(wc -c < \"$f\" | tr -d ' ')\" \"$f\"; "
            "fi; done"
        )
        output = self.run(script, self.list_timeout, path=directory)
        entries = []
        for line in output.splitlines():
            parts = line.split("\t", 2)
            if len(parts) != 3:
                continue
            kind, size, name = parts
            is_dir = kind == "d"
            entries.append(DirEntry(
                name=name,
                path=f"{directory.rstrip('/')}/{name}",
                is_dir=is_dir,
                size=None if is_dir else int(size or 0),
            ))
        return sorted(entries, key=lambda e: e.name)

    def stat(self, path: str) -> FileStat:
        quoted = quote_remote_path(path)
        script = (
            f"[ -f {quoted} ] || exit {_PATH_UNUSABLE}; "
            f"printf '%s %s\\n' \"$(wc -c < {quoted} | tr -d ' ')\" \"$(date -r {quoted} +%s)\""
        )
        output = self.run(script, self.list_timeout, path=path).split()
        if len(output) != 2:
            raise FileAccessError(path, f"Unexpected stat output for {path}")
        return FileStat(size=int(output[0]), mtime=int(output[1]) * 1000)

    def read(self, path: str) -> str:
        quoted = quote_remote_path(path)
        # one byte past the limit lets an oversized file be detected without buffering it all
        script = f"[ -r {quoted} ] || exit {_PATH_UNUSABLE}; head -c {self.max_buffer + 1} {quoted}"
        return self.run(script, self.transfer_timeout, path=path)

    def partial_read(self, path: str, head_lines: int, tail_lines: int) -> PartialContent:
        quoted = quote_remote_path(path)
        separator = f"printf '\\n%s\\n' {_PARTIAL_SEPARATOR}"
        script = (
            f"[ -r {quoted} ] || exit {_PATH_UNUSABLE}; "
            f"head -n {int(head_lines)} {quoted}; {separator}; "
            f"tail -n {int(tail_lines)} {quoted}; {separator}; "
            f"wc -l < {quoted}"
        )
        output = self.run(script, self.transfer_timeout, path=path)
        parts = output.split(f"\n{_PARTIAL_SEPARATOR}\n")
        if len(parts) != 3:
            raise FileAccessError(path, f"Unexpected partial read output for {path}")
        head = parts[0].splitlines()[:head_lines]
        tail = parts[1].splitlines()
        tail = tail[-tail_lines:] if tail_lines > 0 else []
        try:
            total = int(parts[2].strip() or 0)
        except ValueError:
            raise FileAccessError(path, f"Unexpected line count for {path}: {parts[2]!r}")
        return PartialContent(head=head, tail=tail, total_lines=max(total, len(head)))

    def find_transcripts(self, root: str) -> Tuple[List[DirEntry], List[FileAccessError]]:
        """Find every transcript under root in a single remote call."""
        quoted = quote_remote_path(root)
        script = (
            f"[ -d {quoted} ] || exit {_PATH_UNUSABLE}; "
            f"find {quoted} -type f -name '*{TRANSCRIPT_SUFFIX}' -exec wc -c {{}} + 2>/dev/null; true"
        )
        output = self.run(script, self.list_timeout, path=root)
        found = []
        for line in output.splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) != 2 or not parts[1].endswith(TRANSCRIPT_SUFFIX):
                continue  # includes the "total" line wc prints for several files
            size, path = parts
            found.append(DirEntry(
                name=path.rsplit("/", 1)[-1],
                path=path,
                is_dir=False,
                size=int(size),
            ))
        return sorted(found, key=lambda e: e.path), []
