"""
Tests for the result collector and run report.
"""

import pytest

from multissh.collector import ResultCollector
from multissh.context import CancelReason, CancelToken, Deadline
from multissh.logger import StructuredLogger
from multissh.models import (
    AuthFailed, Cancelled, HostState, OutcomeKind, Success, Target, TimedOut
)


@pytest.fixture
def targets():
    return [Target(f"10.0.0.{i}", "admin") for i in range(1, 4)]


@pytest.fixture
def collector(targets):
    return ResultCollector(targets, StructuredLogger(enable_console=False))


class TestResultCollector:
    """Test outcome recording."""

    def test_first_write_wins(self, collector, targets):
        assert collector.record(targets[0], Success(exit_code=0)) is True
        assert collector.record(targets[0], TimedOut("late")) is False
        assert collector.outcome(targets[0]) == Success(exit_code=0)
        assert collector.state(targets[0]) is HostState.SUCCEEDED
        assert len(collector) == 1

    def test_unknown_target(self, collector):
        with pytest.raises(KeyError):
            collector.record(Target("other", "admin"), Success())

    def test_state_frozen_after_outcome(self, collector, targets):
        collector.record(targets[0], AuthFailed("denied"))
        collector.set_state(targets[0], HostState.EXECUTING)
        assert collector.state(targets[0]) is HostState.FAILED

    def test_finalize_after_deadline(self, collector, targets):
        collector.record(targets[0], Success(exit_code=0))
        collector.set_state(targets[1], HostState.EXECUTING)

        assert collector.finalize(CancelReason.DEADLINE) == 2
        assert collector.complete
        assert collector.outcome(targets[0]).ok
        assert isinstance(collector.outcome(targets[1]), TimedOut)
        assert "executing" in collector.outcome(targets[1]).reason
        assert isinstance(collector.outcome(targets[2]), Cancelled)

    def test_finalize_after_stop(self, collector, targets):
        collector.set_state(targets[0], HostState.CONNECTING)
        collector.finalize(CancelReason.STOPPED)
        assert all(isinstance(collector.outcome(t), Cancelled) for t in targets)

    def test_stream_finalizes_on_deadline(self, collector, targets):
        collector.record(targets[2], Success(exit_code=0))
        token = CancelToken()

        items = list(collector.stream(token, Deadline(0.05), poll_interval=0.01))

        assert [t for t, _ in items][0] == targets[2]
        assert len(items) == 3
        assert token.reason is CancelReason.DEADLINE


class TestRunReport:
    """Test the aggregate."""

    def test_report_in_submission_order(self, collector, targets):
        for target in reversed(targets):
            collector.record(target, Success(exit_code=0))
        report = collector.report(peak_concurrency=2)

        assert [t for t, _ in report] == targets
        assert report.ok
        assert report.succeeded == targets
        assert report.peak_concurrency == 2
        assert targets[0] in report

    def test_summary_counts_every_kind(self, collector, targets):
        collector.record(targets[0], Success(exit_code=0))
        collector.record(targets[1], AuthFailed("denied"))
        collector.record(targets[2], AuthFailed("denied"))
        summary = collector.report().summary()

        assert summary["success"] == 1
        assert summary["auth_failed"] == 2
        assert summary["cancelled"] == 0
        assert set(summary) == {kind.value for kind in OutcomeKind}

    def test_report_requires_every_outcome(self, collector, targets):
        collector.record(targets[0], Success())
        with pytest.raises(RuntimeError, match="No outcome"):
            collector.report()

    def test_to_dict(self, collector, targets):
        for target in targets:
            collector.record(target, Success(exit_code=0, stdout="hi\n"))
        data = collector.report().to_dict()
        assert data["hosts"][0]["host"] == "admin@10.0.0.1:22"
        assert data["hosts"][0]["stdout"] == "hi\n"
        assert data["summary"]["success"] == 3
