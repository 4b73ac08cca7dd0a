"""
Tests for transcript collection across hosts.

Remote hosts are simulated with local directories; failures are injected
per file and per host.
"""

import threading

import pytest

from conftest import assistant_line, iso, write_transcript
from usage_reconciler.core.errors import FileAccessError, RemoteConnectionError
from usage_reconciler.transcripts.fetch import (
    ReadSettings,
    RemoteHostConfig,
    collect_remote_hosts,
    collect_source,
)
from usage_reconciler.transcripts.sources import LocalTranscriptSource, TranscriptSource


class HostSource(LocalTranscriptSource):
    """Local directory standing in for a remote host."""

    def __init__(self, label, unreadable=()):
        self.label = label
        self.unreadable = set(unreadable)

    def read(self, path):
        if path in self.unreadable:
            raise FileAccessError(path, f"Cannot read {path}")
        return super().read(path)


class DownSource(TranscriptSource):
    def __init__(self, label):
        self.label = label

    def find_transcripts(self, root):
        raise RemoteConnectionError(self.label, "Connection refused")


class TestCollectSource:
    """Per-file isolation on one source."""

    def test_unreadable_file_is_recorded(self, transcript_root):
        good = write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1))])
        bad = write_transcript(transcript_root, "-p", "s2", [assistant_line("b", iso(2025, 3, 1))])

        scan = collect_source(HostSource("local", unreadable=[bad]), str(transcript_root))

        assert [t.file.path for t in scan.transcripts] == [good]
        assert len(scan.errors) == 1
        assert scan.errors[0].file == f"local:{bad}"

    def test_missing_root_is_recorded(self, tmp_path):
        scan = collect_source(LocalTranscriptSource(), str(tmp_path / "absent"))
        assert scan.transcripts == []
        assert len(scan.errors) == 1

    def test_partial_reads_counted(self, transcript_root):
        lines = [assistant_line(f"u{i}", iso(2025, 3, 1, 10, i)) for i in range(5)]
        write_transcript(transcript_root, "-p", "s1", lines)

        scan = collect_source(LocalTranscriptSource(), str(transcript_root),
                              ReadSettings(threshold_bytes=1, head_lines=1, tail_lines=1))

        assert scan.partial_reads == 1
        assert len(scan.transcripts[0].entries) == 2


class TestCollectRemoteHosts:
    """Per-host isolation and ordering."""

    def test_failing_host_does_not_affect_others(self, tmp_path):
        roots = {}
        for name in ("alpha", "gamma"):
            root = tmp_path / name
            write_transcript(root, "-p", f"{name}-s", [assistant_line(name, iso(2025, 3, 1))])
            roots[name] = str(root)

        hosts = [
            RemoteHostConfig(id="alpha", host="alpha", base_path=roots["alpha"]),
            RemoteHostConfig(id="beta", host="beta"),
            RemoteHostConfig(id="gamma", host="gamma", base_path=roots["gamma"]),
        ]

        def factory(target):
            if target.host == "beta":
                return DownSource("ssh://beta")
            return HostSource(f"ssh://{target.host}")

        scans = collect_remote_hosts(hosts, max_workers=2, source_factory=factory)

        assert [s.source_label for s in scans] == ["ssh://alpha", "ssh://beta", "ssh://gamma"]
        assert len(scans[0].transcripts) == 1
        assert scans[1].transcripts == []
        assert "Connection refused" in scans[1].errors[0].error
        assert len(scans[2].transcripts) == 1

    def test_concurrency_is_bounded(self, tmp_path):
        active = []
        peak = []
        lock = threading.Lock()

        class CountingSource(DownSource):
            def find_transcripts(self, root):
                with lock:
                    active.append(1)
                    peak.append(len(active))
                try:
                    return [], []
                finally:
                    with lock:
                        active.pop()

        hosts = [RemoteHostConfig(id=str(i), host=f"h{i}") for i in range(5)]
        collect_remote_hosts(hosts, max_workers=2, source_factory=lambda t: CountingSource(t.host))
        assert max(peak) <= 2

    def test_no_hosts(self):
        assert collect_remote_hosts([]) == []

    def test_invalid_host_config(self):
        with pytest.raises(ValueError):
            RemoteHostConfig(id="x", host="")
        with pytest.raises(ValueError):
            RemoteHostConfig(id="x", host="h", port=70000)
