"""
Shared fixtures for the test suite.
"""

import json
import os
from datetime import datetime, timezone

import pytest

# Wide, fixed console width so rich does not wrap CLI output at tmp-path length.
os.environ["COLUMNS"] = "200"

from usage_reconciler.core.audit import DailyUsage, ModelUsage, UsageProvider
from usage_reconciler.core.billing import BillingResolver
from usage_reconciler.core.clock import FixedClock, to_epoch_ms
from usage_reconciler.core.errors import UsageProviderError
from usage_reconciler.core.token_counter import TokenUsage
from usage_reconciler.storage.audit_store import AuditStore
from usage_reconciler.storage.models import EventSource, UsageEvent
from usage_reconciler.storage.repository import UsageRepository, initialize_schema

SONNET = "claude-sonnet-4-20250514"


def ms(*args) -> int:
    """Epoch milliseconds of a UTC datetime."""
    return to_epoch_ms(datetime(*args, tzinfo=timezone.utc))


def iso(*args) -> str:
    return datetime(*args, tzinfo=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def assistant_line(uuid, timestamp, input_tokens=100, output_tokens=50,
                   cache_read=0, cache_write=0, model=SONNET, session_id="session-1",
                   message_id=None) -> str:
    """One assistant record as it appears in a transcript."""
    return json.dumps({
        "type": "assistant",
        "uuid": uuid,
        "sessionId": session_id,
        "timestamp": timestamp,
        "message": {
            "id": message_id or f"msg_{uuid}",
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_write,
            },
        },
    })


def write_transcript(root, project, session, lines, subagent=None) -> str:
    """Write a transcript under ``root`` and return its path."""
    directory = os.path.join(str(root), project)
    if subagent:
        directory = os.path.join(directory, session, "subagents")
        name = f"agent-{subagent}.jsonl"
    else:
        name = f"{session}.jsonl"
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return path


def live_event(start_time, session_id="session-1", **kwargs) -> UsageEvent:
    """A stored event as live capture would leave it before reconstruction."""
    values = dict(
        session_id=session_id,
        agent_type="claude-code",
        source=EventSource.USER,
        start_time=start_time,
        duration=1000,
    )
    values.update(kwargs)
    return UsageEvent(**values)


class FakeUsageProvider(UsageProvider):
    """Usage provider returning canned days, or failing."""

    def __init__(self, days=None, error=None, label="fake"):
        self.days = days or []
        self.error = error
        self.label = label
        self.calls = []

    def fetch_daily(self, start_date, end_date):
        self.calls.append((start_date, end_date))
        if self.error:
            raise UsageProviderError(self.label, self.error)
        return list(self.days)


def reported_day(date, model=SONNET, input_tokens=0, output_tokens=0,
                 cache_read=0, cache_write=0, cost=0.0) -> DailyUsage:
    usage = TokenUsage(input_tokens, output_tokens, cache_read, cache_write)
    return DailyUsage(date=date, usage=usage, total_cost=cost, models=[ModelUsage(model, usage, cost)])


class FakeJob:
    def __init__(self, func, trigger, run_date, args, job_id):
        self.func = func
        self.trigger = trigger
        self.run_date = run_date
        self.args = args
        self.id = job_id


class FakeBackend:
    """In-memory stand-in for a BackgroundScheduler."""

    def __init__(self):
        self.jobs = {}
        self.running = False
        self.added = []

    def add_job(self, func, trigger, run_date=None, args=None, id=None, replace_existing=False):
        if id in self.jobs and not replace_existing:
            raise ValueError(f"duplicate job {id}")
        job = FakeJob(func, trigger, run_date, args or [], id)
        self.jobs[id] = job
        self.added.append(job)
        return job

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        del self.jobs[job_id]

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    def fire(self, job_id):
        job = self.jobs.pop(job_id)
        return job.func(*job.args)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "usage.db")
    initialize_schema(path)
    return path


@pytest.fixture
def repository(db_path):
    return UsageRepository(db_path)


@pytest.fixture
def audit_store(db_path):
    return AuditStore(db_path)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 12, 15, 30, tzinfo=timezone.utc))


@pytest.fixture
def api_billing():
    return BillingResolver(detect=False)


@pytest.fixture
def transcript_root(tmp_path):
    root = tmp_path / "projects"
    root.mkdir()
    return root
