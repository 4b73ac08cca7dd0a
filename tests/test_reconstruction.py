"""
Tests for historical usage reconstruction.

Runs complete reconstructions over transcripts written to a temporary
directory and checks what lands in the store.
"""

import hashlib
import sqlite3

import pytest

from conftest import SONNET, assistant_line, iso, live_event, ms, write_transcript
from usage_reconciler.core.clock import DateRange
from usage_reconciler.core.errors import StoreWriteError
from usage_reconciler.core.pricing import BillingMode
from usage_reconciler.core.reconstruction import (
    SKIP_ALREADY_COMPLETE,
    SKIP_WRITE_FAILED,
    ReconstructionOptions,
    ReconstructionStage,
    Reconstructor,
    preview_reconstruct,
)
from usage_reconciler.storage.models import EventSource, UsageEvent


def _checksum(path):
    with open(path, "rb") as f:
        return hashlib.sha256(f.read()).hexdigest()


@pytest.fixture
def reconstructor(repository, api_billing, clock):
    return Reconstructor(repository, billing_resolver=api_billing, clock=clock)


@pytest.fixture
def options(transcript_root):
    return ReconstructionOptions(base_path=str(transcript_root))


class TestInsert:
    """Transcript entries with no stored counterpart become new records."""

    def test_inserts_reconstructed_records(self, reconstructor, options, repository, transcript_root):
        write_transcript(transcript_root, "-home-me-app", "s1", [
            assistant_line("a", iso(2025, 3, 1, 10)),
            assistant_line("b", iso(2025, 3, 1, 11), cache_read=1000),
        ])

        result = reconstructor.reconstruct(options)

        assert result.errors == []
        assert result.stage == ReconstructionStage.DONE
        assert result.queries_found == 2
        assert result.queries_inserted == 2
        assert result.date_range_covered == DateRange("2025-03-01", "2025-03-01")

        events = repository.query()
        assert [e.uuid for e in events] == ["a", "b"]
        first = events[0]
        assert first.is_reconstructed
        assert first.is_complete
        assert first.agent_type == "claude-code"
        assert first.source == EventSource.USER
        assert first.anthropic_model == SONNET
        assert first.maestro_billing_mode == BillingMode.API
        assert first.anthropic_cost_usd == pytest.approx(0.00105)
        assert first.maestro_cost_usd == pytest.approx(0.00105)
        assert first.project_path == "/home/me/app"
        assert first.reconstructed_at == ms(2025, 3, 12, 15, 30)

    def test_second_run_is_noop(self, reconstructor, options, repository, transcript_root):
        write_transcript(transcript_root, "-p", "s1", [
            assistant_line("a", iso(2025, 3, 1, 10)),
            assistant_line("b", iso(2025, 3, 1, 11)),
        ])
        reconstructor.reconstruct(options)

        second = reconstructor.reconstruct(options)

        assert second.queries_inserted == 0
        assert second.queries_updated == 0
        assert second.skip_reasons == {SKIP_ALREADY_COMPLETE: 2}
        assert len(repository.query()) == 2

    def test_uuid_in_two_files_inserted_once(self, reconstructor, options, repository, transcript_root):
        line = assistant_line("shared", iso(2025, 3, 1, 10))
        write_transcript(transcript_root, "-p", "s1", [line])
        write_transcript(transcript_root, "-p", "s1", [line], subagent="x1")

        result = reconstructor.reconstruct(options)

        assert result.queries_inserted == 1
        assert len(repository.query()) == 1

    def test_billing_mode_override(self, repository, api_billing, clock, transcript_root):
        write_transcript(transcript_root, "-p", "s1", [
            assistant_line("a", iso(2025, 3, 1, 10), cache_read=1_000_000),
        ])
        options = ReconstructionOptions(base_path=str(transcript_root), billing_mode=BillingMode.MAX)

        Reconstructor(repository, billing_resolver=api_billing, clock=clock).reconstruct(options)

        event = repository.get_by_uuid("a")
        assert event.maestro_billing_mode == BillingMode.MAX
        assert event.anthropic_cost_usd == pytest.approx(0.30105)
        assert event.maestro_cost_usd == pytest.approx(0.00105)


class TestWindowMatching:
    """Live events without a uuid are completed from their time window."""

    def test_partial_event_filled_from_window(self, reconstructor, options, repository, transcript_root):
        event_id = repository.insert(live_event(ms(2025, 3, 1, 10)))
        write_transcript(transcript_root, "-p", "s1", [
            assistant_line("a", iso(2025, 3, 1, 10, 0, 0)),
            assistant_line("b", iso(2025, 3, 1, 10, 0, 5)),
        ])

        result = reconstructor.reconstruct(options)

        assert result.queries_updated == 1
        assert result.queries_inserted == 0
        event = repository.get(event_id)
        assert event.input_tokens == 200
        assert event.output_tokens == 100
        assert event.anthropic_model == SONNET
        assert event.anthropic_message_id == "msg_b"
        assert event.is_complete
        assert not event.is_reconstructed
        assert len(repository.query()) == 1

    def test_adjacent_events_split_one_transcript(self, reconstructor, options, repository, transcript_root):
        """Test that each live event receives only the usage inside its own window."""
        first_id = repository.insert(live_event(ms(2025, 3, 1, 10, 0, 0)))
        second_id = repository.insert(live_event(ms(2025, 3, 1, 10, 0, 5)))
        write_transcript(transcript_root, "-p", "s1", [
            assistant_line("a", iso(2025, 3, 1, 10, 0, 0), input_tokens=140, output_tokens=25),
            assistant_line("b", iso(2025, 3, 1, 10, 0, 5), input_tokens=300, output_tokens=70),
            assistant_line("c", iso(2025, 3, 1, 10, 0, 9), input_tokens=10, output_tokens=5),
        ])

        result = reconstructor.reconstruct(options)

        assert result.errors == []
        assert result.queries_updated == 2
        assert result.queries_inserted == 0
        first = repository.get(first_id)
        assert (first.input_tokens, first.output_tokens) == (140, 25)
        assert first.anthropic_message_id == "msg_a"
        second = repository.get(second_id)
        assert (second.input_tokens, second.output_tokens) == (310, 75)
        assert second.anthropic_message_id == "msg_c"
        assert len(repository.query()) == 2

    def test_existing_values_are_kept(self, reconstructor, options, repository, transcript_root):
        event_id = repository.insert(live_event(ms(2025, 3, 1, 10), input_tokens=999))
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10, 0, 1))])

        reconstructor.reconstruct(options)

        event = repository.get(event_id)
        assert event.input_tokens == 999
        assert event.output_tokens == 50

    def test_complete_event_skipped(self, reconstructor, options, repository, transcript_root):
        repository.insert(live_event(
            ms(2025, 3, 1, 10),
            input_tokens=1, output_tokens=1, cache_read_tokens=0, cache_creation_tokens=0,
            anthropic_model=SONNET, anthropic_cost_usd=0.0, maestro_cost_usd=0.0,
            maestro_billing_mode=BillingMode.API,
        ))
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10, 0, 1))])

        result = reconstructor.reconstruct(options)

        assert result.queries_updated == 0
        assert result.skip_reasons[SKIP_ALREADY_COMPLETE] == 1

    def test_event_without_files_is_skipped(self, reconstructor, options, repository, transcript_root):
        repository.insert(live_event(ms(2025, 2, 1, 10)))
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10))])

        result = reconstructor.reconstruct(options)

        assert result.skip_reasons["no_candidate_files"] == 1
        assert result.queries_inserted == 1


class TestStoredUuid:
    """A stored partial record with the entry's uuid is completed in place."""

    def test_partial_uuid_record_completed(self, reconstructor, options, repository, transcript_root):
        event_id = repository.insert(UsageEvent(
            session_id="s1", agent_type="claude-code", source=EventSource.AUTO,
            start_time=ms(2025, 3, 1, 10), uuid="a",
        ))
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10))])

        result = reconstructor.reconstruct(options)

        assert result.queries_updated == 1
        assert result.queries_inserted == 0
        assert repository.get(event_id).is_complete


class TestRunControl:
    """Date range, dry run and source configuration."""

    def test_date_range_limits_entries(self, reconstructor, repository, transcript_root):
        write_transcript(transcript_root, "-p", "s1", [
            assistant_line("early", iso(2025, 3, 1, 10)),
            assistant_line("late", iso(2025, 3, 5, 10)),
        ])
        options = ReconstructionOptions(
            base_path=str(transcript_root), date_range=DateRange("2025-03-05", "2025-03-05")
        )

        result = reconstructor.reconstruct(options)

        assert result.queries_inserted == 1
        assert [e.uuid for e in repository.query()] == ["late"]
        assert result.date_range_covered == DateRange("2025-03-05", "2025-03-05")

    def test_dry_run_leaves_store_untouched(self, repository, api_billing, clock, options, db_path,
                                            transcript_root):
        repository.insert(live_event(ms(2025, 3, 1, 10)))
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10, 0, 1))])
        write_transcript(transcript_root, "-p", "s2", [assistant_line("b", iso(2025, 3, 2, 10))])
        before = _checksum(db_path)

        result = preview_reconstruct(options, repository, billing_resolver=api_billing, clock=clock)

        assert result.dry_run
        assert result.queries_updated == 1
        assert result.queries_inserted == 1
        assert ReconstructionStage.UPSERTING not in result.stages
        assert result.stage == ReconstructionStage.DONE
        assert _checksum(db_path) == before

    def test_no_source_enabled(self, reconstructor):
        result = reconstructor.reconstruct(ReconstructionOptions(include_local=False))

        assert result.stage == ReconstructionStage.SCANNING
        assert result.errors[0].file == "configuration"
        assert result.queries_found == 0

    def test_unreachable_source(self, reconstructor, tmp_path):
        result = reconstructor.reconstruct(ReconstructionOptions(base_path=str(tmp_path / "absent")))

        assert result.stage == ReconstructionStage.SCANNING
        assert any("No reachable" in e.error for e in result.errors)

    def test_malformed_lines_do_not_abort(self, reconstructor, options, transcript_root):
        write_transcript(transcript_root, "-p", "s1", [
            "{not json",
            assistant_line("a", iso(2025, 3, 1, 10)),
        ])

        result = reconstructor.reconstruct(options)

        assert result.queries_inserted == 1
        assert result.errors == []

    @pytest.mark.parametrize("error", [
        StoreWriteError("session-1", "disk full"),
        sqlite3.OperationalError("database is locked"),
    ])
    def test_failed_write_does_not_stop_run(self, reconstructor, options, repository, transcript_root, error):
        """Test that one failing write is recorded and the remaining records still land."""
        event_id = repository.insert(live_event(ms(2025, 3, 1, 9)))
        write_transcript(transcript_root, "-p", "s1", [
            assistant_line("w", iso(2025, 3, 1, 9, 0, 1)),
        ])
        write_transcript(transcript_root, "-p", "s2", [
            assistant_line("a", iso(2025, 3, 2, 10)),
            assistant_line("b", iso(2025, 3, 2, 11)),
            assistant_line("c", iso(2025, 3, 2, 12)),
        ])
        insert = repository.insert

        def failing_insert(event):
            if event.uuid == "b":
                raise error
            return insert(event)

        repository.insert = failing_insert

        result = reconstructor.reconstruct(options)

        assert result.stage == ReconstructionStage.DONE
        assert result.skip_reasons[SKIP_WRITE_FAILED] == 1
        assert len(result.errors) == 1
        assert result.errors[0].file.endswith("#b")
        assert result.queries_inserted == 2
        assert result.queries_updated == 1
        assert repository.get_by_uuid("a") is not None
        assert repository.get_by_uuid("b") is None
        assert repository.get_by_uuid("c") is not None
        assert repository.get(event_id).is_complete

    def test_to_dict(self, reconstructor, options, transcript_root):
        write_transcript(transcript_root, "-p", "s1", [assistant_line("a", iso(2025, 3, 1, 10))])

        data = reconstructor.reconstruct(options).to_dict()

        assert data["queriesInserted"] == 1
        assert data["dateRangeCovered"] == {"start": "2025-03-01", "end": "2025-03-01"}
        assert data["dryRun"] is False

    def test_invalid_options(self):
        with pytest.raises(ValueError):
            ReconstructionOptions(max_remote_workers=0)
