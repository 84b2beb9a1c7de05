"""
Unit tests for InlineVerifier, NoopVerifier and build_verifier

Most tests drive the verifier through MigrationHarness; the concurrency
tests use a fetcher that blocks until the test releases it.
"""

import threading
from unittest.mock import Mock

import pytest

from src.verification.config import (
    CheckScope,
    ReplicatedMismatchPolicy,
    VerifierConfig,
    VerifierKind,
)
from src.verification.errors import (
    CancellationError,
    FetchError,
    MismatchDetected,
    OrchestratorMisuse,
    VerifierHalted,
)
from src.verification.events import Fatal, RowCopyCompleted, StatusKind, Verified
from src.verification.fetcher import FetchResult
from src.verification.models import MismatchKind, VerificationScope
from src.verification.orchestrator import (
    InlineVerifier,
    NoopVerifier,
    VerifierState,
    build_verifier,
    cutover_failure_message,
    incremental_failure_message,
)
from src.verification.reporter import StatusReporter

TABLE = "gftest.test_table_1"


def rows(count, start=1):
    return [{"id": i, "data": f"row {i}"} for i in range(start, start + count)]


class BlockingFetcher:
    """Fetcher whose reads wait for ``release``; both sides return nothing."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def fetch(self, schema, primary_keys):
        self.started.set()
        self.release.wait(timeout=10)
        return FetchResult({}, {})

    def table_primary_keys(self, schema):
        return []


class TestFailureMessages:
    def test_incremental_message(self):
        assert incremental_failure_message(TABLE, [1, 42]) == (
            "row fingerprints for pks [1,42] on gftest.test_table_1 do not match"
        )

    def test_cutover_message_sorts_tables_and_keys(self):
        message = cutover_failure_message({"gftest.b": [("a", 2)], "gftest.a": [9, 3]})

        assert message == (
            "cutover verification failed for: gftest.a [pks: 3 9 ] gftest.b [pks: a/2 ] "
        )


class TestInlineVerifierIncremental:
    """Test copy-batch and replicated-change passes"""

    def test_clean_copy_passes(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(10))

        harness.copy_all()

        verifier = harness.verifier
        assert verifier.state is VerifierState.IDLE
        assert all(run.passed for run in verifier.runs)
        assert [e.kind for e in harness.events.drain()] == [StatusKind.ROW_COPY_COMPLETED]

    def test_copy_batch_mismatch_stops_the_migration(self, make_harness, table_schema):
        # Arrange
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(5))
        harness.target.enable_corrupting_insert_trigger(TABLE, 3)

        # Act
        with pytest.raises(MismatchDetected) as exc_info:
            harness.copy_table(TABLE)

        # Assert
        message = "row fingerprints for pks [3] on gftest.test_table_1 do not match"
        assert str(exc_info.value) == message
        assert exc_info.value.mismatches == {TABLE: [3]}
        assert harness.verifier.state is VerifierState.FAILED
        assert harness.target.keys(TABLE) == []
        assert harness.events.drain() == [Fatal(message, {TABLE: (3,)})]
        assert harness.reporter.last_error.message == message

    def test_signals_after_failure_are_rejected(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(1))
        harness.target.enable_corrupting_insert_trigger(TABLE, 1)
        with pytest.raises(MismatchDetected):
            harness.copy_table(TABLE)

        with pytest.raises(VerifierHalted):
            harness.verifier.verify_copied_batch(TABLE, [1])
        with pytest.raises(VerifierHalted):
            harness.verifier.row_copy_completed()
        with pytest.raises(VerifierHalted):
            harness.verifier.verify_before_cutover()

    def test_unknown_table(self, make_harness, table_schema):
        harness = make_harness([table_schema])

        with pytest.raises(OrchestratorMisuse, match="unknown table: gftest.nope"):
            harness.verifier.verify_copied_batch("gftest.nope", [1])
        with pytest.raises(OrchestratorMisuse, match="unknown tables"):
            harness.verifier.row_copy_completed(["gftest.nope"])

    def test_replicated_mismatch_is_deferred(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(3))
        harness.copy_all()
        harness.target.triggers[TABLE] = lambda values: {**values, "data": "corrupted"}

        result = harness.replicate(TABLE, {"id": 4, "data": "new"})

        assert result.kinds == {4: MismatchKind.MODIFIED}
        assert harness.verifier.state is VerifierState.IDLE
        assert harness.verifier.deferred_mismatches == {TABLE: [4]}
        assert harness.metrics.registry.get_sample_value(
            "verification_deferred_mismatches", {"table_name": TABLE}
        ) == 1

    def test_deferred_key_fixed_later_is_cleared(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.target.triggers[TABLE] = lambda values: {**values, "data": "corrupted"}
        harness.replicate(TABLE, {"id": 7, "data": "v1"})
        harness.target.drop_trigger(TABLE)

        harness.replicate(TABLE, {"id": 7, "data": "v2"})

        assert harness.verifier.deferred_mismatches == {}
        assert harness.cutover().passed

    def test_immediate_policy_stops_on_replicated_mismatch(self, make_harness, table_schema):
        config = VerifierConfig(replicated_mismatch_policy=ReplicatedMismatchPolicy.IMMEDIATE)
        harness = make_harness([table_schema], config)
        harness.target.triggers[TABLE] = lambda values: {**values, "data": "corrupted"}

        with pytest.raises(MismatchDetected, match=r"pks \[5\]"):
            harness.replicate(TABLE, {"id": 5, "data": "x"})

        assert harness.verifier.state is VerifierState.FAILED
        assert harness.verifier.deferred_mismatches == {}

    def test_fetch_error_fails_the_migration(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.target.read_error = ConnectionError("Lost connection to MySQL server")

        with pytest.raises(FetchError):
            harness.verifier.verify_copied_batch(TABLE, [1])

        assert harness.verifier.state is VerifierState.FAILED
        [event] = harness.events.drain()
        assert isinstance(event, Fatal)
        assert "failed to fetch rows for gftest.test_table_1 from target" in event.message

    def test_only_first_failure_is_reported(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(1))
        harness.target.enable_corrupting_insert_trigger(TABLE, 1)
        with pytest.raises(MismatchDetected):
            harness.copy_table(TABLE)

        harness.verifier._fail("second failure", {})

        assert len(harness.reporter.errors) == 1

    def test_full_table_incremental_scope_checks_whole_table(self, make_harness, table_schema):
        config = VerifierConfig(incremental_scope=CheckScope.FULL_TABLE)
        harness = make_harness([table_schema], config)
        harness.seed(harness.source, TABLE, rows(4))
        harness.copy_table(TABLE)
        harness.target.insert(TABLE, {"id": 99, "data": "stray"}, 99)

        with pytest.raises(MismatchDetected, match=r"pks \[99\]"):
            harness.verifier.row_copy_completed()

        kinds = harness.verifier.runs[-1].mismatches[TABLE].kinds
        assert kinds == {99: MismatchKind.EXTRA}

    def test_full_table_scope_replicated_pass_catches_untouched_drift(self, make_harness, table_schema):
        config = VerifierConfig(
            incremental_scope=CheckScope.FULL_TABLE,
            replicated_mismatch_policy=ReplicatedMismatchPolicy.IMMEDIATE,
        )
        harness = make_harness([table_schema], config)
        harness.seed(harness.source, TABLE, rows(4))
        harness.copy_table(TABLE)
        harness.target.update(TABLE, 2, {"data": "drift"})

        with pytest.raises(MismatchDetected, match=r"pks \[2\] on gftest.test_table_1"):
            harness.replicate(TABLE, {"id": 3, "data": "changed"})

        assert harness.verifier.state is VerifierState.FAILED

    def test_full_table_scope_skips_rows_not_yet_copied(self, make_harness, table_schema):
        config = VerifierConfig(incremental_scope=CheckScope.FULL_TABLE)
        harness = make_harness([table_schema], config)
        harness.seed(harness.source, TABLE, rows(4))
        harness.seed(harness.target, TABLE, rows(2))
        harness.verifier.verify_copied_batch(TABLE, [1, 2])

        result = harness.replicate(TABLE, {"id": 1, "data": "changed"})

        assert result.empty
        assert harness.verifier.deferred_mismatches == {}

    def test_full_table_scope_defers_and_clears_drift_after_copy(self, make_harness, table_schema):
        config = VerifierConfig(incremental_scope=CheckScope.FULL_TABLE)
        harness = make_harness([table_schema], config)
        harness.seed(harness.source, TABLE, rows(4))
        harness.copy_all()
        harness.target.update(TABLE, 2, {"data": "drift"})

        result = harness.replicate(TABLE, {"id": 3, "data": "changed"})

        assert result.kinds == {2: MismatchKind.MODIFIED}
        assert harness.verifier.deferred_mismatches == {TABLE: [2]}

        harness.target.update(TABLE, 2, {"data": "row 2"})
        harness.replicate(TABLE, {"id": 4, "data": "changed"})

        assert harness.verifier.deferred_mismatches == {}

    def test_submitted_changes_run_on_the_pool(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(2))
        harness.seed(harness.target, TABLE, rows(2))

        future = harness.verifier.submit_changed_rows(TABLE, [1, 2])

        assert future.result(timeout=10).empty
        assert harness.verifier.wait_for_pending(timeout=10)
        assert harness.verifier.state is VerifierState.IDLE

    def test_wait_for_pending_without_work(self, make_harness, table_schema):
        assert make_harness([table_schema]).verifier.wait_for_pending(timeout=0)


class TestInlineVerifierCutover:
    """Test the cutover verdict"""

    def test_passing_cutover(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(3))
        harness.copy_all()
        harness.replicate(TABLE, {"id": 2, "data": "changed"})
        harness.events.drain()

        run = harness.cutover()

        assert run.passed
        assert run.scope is VerificationScope.CUTOVER
        assert run.tables_examined == {TABLE}
        assert harness.verifier.state is VerifierState.VERIFIED
        assert harness.events.drain() == [Verified(())]

    def test_cutover_without_changes_checks_nothing(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(3))
        harness.copy_all()
        reads = harness.source.reads

        run = harness.cutover()

        assert run.passed
        assert run.tables_examined == set()
        assert harness.source.reads == reads

    def test_failing_cutover_emits_verdict_then_fatal(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(3))
        harness.copy_all()
        harness.target.triggers[TABLE] = lambda values: {**values, "data": "corrupted"}
        harness.replicate(TABLE, {"id": 4, "data": "new"})
        harness.events.drain()

        run = harness.cutover()

        message = "cutover verification failed for: gftest.test_table_1 [pks: 4 ] "
        assert not run.passed
        assert harness.verifier.state is VerifierState.FAILED
        assert harness.events.drain() == [Verified((TABLE,)), Fatal(message, {TABLE: (4,)})]

    def test_full_table_cutover_finds_untouched_drift(self, make_harness, table_schema):
        config = VerifierConfig(cutover_scope=CheckScope.FULL_TABLE)
        harness = make_harness([table_schema], config)
        harness.seed(harness.source, TABLE, rows(3))
        harness.copy_all()
        harness.target.update(TABLE, 2, {"data": "drifted"})

        run = harness.cutover()

        assert run.mismatched_keys() == {TABLE: [2]}

    def test_touched_rows_cutover_ignores_untouched_drift(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(3))
        harness.copy_all()
        harness.target.update(TABLE, 2, {"data": "drifted"})

        assert harness.cutover().passed

    def test_unexpected_cutover_error_fails_the_migration(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.seed(harness.source, TABLE, rows(2))
        harness.copy_all()
        harness.replicate(TABLE, {"id": 1, "data": "changed"})
        harness.events.drain()
        harness.verifier.detector = Mock(compare=Mock(side_effect=RuntimeError("digest table corrupted")))

        with pytest.raises(RuntimeError, match="digest table corrupted"):
            harness.cutover()

        assert harness.verifier.state is VerifierState.FAILED
        [event] = harness.events.drain()
        assert isinstance(event, Fatal)
        assert event.message == "cutover verification failed: RuntimeError: digest table corrupted"

    def test_incremental_signal_after_cutover_is_misuse(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.cutover()

        with pytest.raises(OrchestratorMisuse, match="state VERIFIED"):
            harness.verifier.verify_changed_rows(TABLE, [1])
        with pytest.raises(OrchestratorMisuse, match="already requested"):
            harness.verifier.verify_before_cutover()

    def test_cutover_with_passes_in_flight_fails_the_migration(self, table_schema, metrics):
        fetcher = BlockingFetcher()
        reporter = StatusReporter(metrics=metrics)
        events = reporter.channel.subscribe()
        verifier = InlineVerifier(VerifierConfig(), [table_schema], fetcher, reporter)
        try:
            future = verifier.submit_changed_rows(TABLE, [1])
            assert fetcher.started.wait(timeout=10)

            with pytest.raises(OrchestratorMisuse, match="1 incremental passes are outstanding"):
                verifier.verify_before_cutover()

            assert verifier.state is VerifierState.FAILED
            assert [e.kind for e in events.drain()] == [StatusKind.FATAL]
        finally:
            fetcher.release.set()
            verifier.close()
        assert future.result(timeout=10).empty


class TestInlineVerifierAbort:
    """Test abort()"""

    def test_abort_discards_running_and_queued_passes(self, table_schema, metrics):
        fetcher = BlockingFetcher()
        config = VerifierConfig(max_workers=1)
        verifier = InlineVerifier(config, [table_schema], fetcher, StatusReporter(metrics=metrics))
        try:
            running = verifier.submit_changed_rows(TABLE, [1])
            queued = verifier.submit_changed_rows(TABLE, [2])
            assert fetcher.started.wait(timeout=10)

            verifier.abort()
            fetcher.release.set()

            with pytest.raises(CancellationError):
                running.result(timeout=10)
            assert queued.cancelled()
            assert verifier.state is VerifierState.ABORTED
            assert verifier.runs == []
        finally:
            fetcher.release.set()
            verifier.close()

    def test_signals_after_abort(self, make_harness, table_schema):
        harness = make_harness([table_schema])
        harness.verifier.abort()
        harness.verifier.abort()

        with pytest.raises(VerifierHalted, match="aborted"):
            harness.verifier.submit_changed_rows(TABLE, [1])
        with pytest.raises(VerifierHalted, match="aborted"):
            harness.verifier.verify_before_cutover()


class TestNoopVerifier:
    def test_accepts_everything_and_passes(self, make_harness, table_schema):
        harness = make_harness([table_schema], VerifierConfig(verifier_kind=VerifierKind.NONE))
        harness.seed(harness.source, TABLE, rows(2))
        harness.target.enable_corrupting_insert_trigger(TABLE, 1)

        harness.copy_all()
        harness.verifier.submit_changed_rows(TABLE, [1]).result()
        run = harness.cutover()

        assert isinstance(harness.verifier, NoopVerifier)
        assert run.passed
        assert harness.verifier.state is VerifierState.VERIFIED
        assert harness.source.reads == 0
        assert harness.events.drain() == [RowCopyCompleted((TABLE,)), Verified(())]

    def test_abort(self, make_harness, table_schema):
        harness = make_harness([table_schema], VerifierConfig(verifier_kind="NONE"))
        harness.verifier.abort()

        with pytest.raises(VerifierHalted):
            harness.verifier.verify_before_cutover()


class TestBuildVerifier:
    def test_inline_requires_fetcher(self, table_schema, metrics):
        with pytest.raises(ValueError, match="needs a row fetcher"):
            build_verifier(VerifierConfig(), [table_schema], None, StatusReporter(metrics=metrics))

    def test_selects_by_kind(self, table_schema, metrics):
        reporter = StatusReporter(metrics=metrics)

        inline = build_verifier(VerifierConfig(), [table_schema], Mock(), reporter)
        noop = build_verifier(VerifierConfig(verifier_kind="NONE"), [table_schema], None, reporter)
        inline.close()

        assert isinstance(inline, InlineVerifier)
        assert isinstance(noop, NoopVerifier)
