"""
Tests for running jobs on many hosts.
"""

import random
import threading
import time

import paramiko
import pytest

from multissh import run
from multissh.collector import ResultCollector
from multissh.connection import ConnectionManager
from multissh.context import CancelReason, CancelToken, Limiter, RunContext
from multissh.errors import ConfigurationError, ConnectError
from multissh.executor import Executor
from multissh.models import (
    AgentAuth, AuthFailed, Cancelled, CommandFailed, CommandJob, ConnectFailed, Direction,
    HostState, KeyAuth, PasswordAuth, Success, Target, TimedOut, TransferJob
)
from multissh.scheduler import JOIN_GRACE, MultiSSH, run_host

from fakes import FakeAgent, FakeNetwork, make_target


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestRun:
    """Test complete runs against the fake network."""

    def test_one_outcome_per_target_within_limit(self, network, make_engine):
        targets = [make_target(f"10.0.0.{i}") for i in range(20)]
        for target in targets:
            network.add(target.address)

        report = make_engine(concurrency=4).run(targets, CommandJob("sleep 0.02"))

        assert len(report) == 20
        assert report.ok
        assert 1 <= report.peak_concurrency <= 4
        assert network.peak <= 4
        assert network.open == 0

    def test_mixed_outcomes(self, network, make_engine):
        network.add("a")
        network.add("b", password="other")
        network.add("c", refuse=True)
        a, b, c = make_target("a"), make_target("b"), make_target("c")

        report = make_engine(concurrency=2).run([a, b, c], CommandJob("echo hi"))

        assert report[a] == Success(exit_code=0, stdout="hi\n")
        assert isinstance(report[b], AuthFailed)
        assert isinstance(report[c], ConnectFailed)
        assert "refused" in report[c].reason
        assert report.peak_concurrency <= 2
        assert network.peak <= 2
        assert network.open == 0
        assert not report.ok
        assert report.failed == [b, c]

    def test_aggregate_is_order_independent(self, logger, make_config):
        from multissh.scheduler import MultiSSH

        targets = [make_target(f"h{i}") for i in range(8)]
        results = []
        for seed in range(3):
            rng = random.Random(seed)
            network = FakeNetwork()
            for i, target in enumerate(targets):
                network.add(target.address, connect_delay=rng.uniform(0, 0.05),
                            password="secret" if i % 3 else "nope")
            engine = MultiSSH(make_config(concurrency=3), logger, connector=network)
            report = engine.run(targets, CommandJob("hostname"))
            results.append({t.key: o for t, o in report})

        assert results[0] == results[1] == results[2]

    def test_stream_yields_in_completion_order(self, network, make_engine):
        network.add("slow", connect_delay=0.3)
        network.add("fast")
        slow, fast = make_target("slow"), make_target("fast")

        with make_engine(concurrency=2).stream([slow, fast], CommandJob("true")) as handle:
            order = [target for target, _ in handle]
            report = handle.wait()

        assert order == [fast, slow]
        assert [t for t, _ in report] == [slow, fast]

    def test_module_level_run(self, network, logger):
        network.add("a")
        report = run([make_target("a")], CommandJob("echo x"), logger=logger, connector=network)
        assert report.ok


class TestCommandOutcomes:
    """Test how command results are reported."""

    def test_non_zero_exit(self, network, make_engine):
        network.add("a")
        target = make_target("a")
        report = make_engine().run([target], CommandJob("exit 3"))
        assert report[target] == CommandFailed(exit_code=3, reason="command exited with status 3")

    def test_stderr_captured(self, network, make_engine):
        network.add("a")
        target = make_target("a")
        outcome = make_engine().run([target], CommandJob("frobnicate"))[target]
        assert outcome.exit_code == 127
        assert "not found" in outcome.stderr

    def test_output_is_bounded(self, network, make_engine):
        network.add("a", commands={"flood": (b"x" * 5000, b"", 0, 0.0)})
        target = make_target("a")
        outcome = make_engine(max_output_bytes=100).run([target], CommandJob("flood"))[target]
        assert outcome.ok
        assert outcome.truncated
        assert outcome.stdout == "x" * 100

    def test_job_timeout_closes_session(self, network, make_engine):
        network.add("a")
        target = make_target("a", timeout=0.2)

        started = time.monotonic()
        outcome = make_engine().run([target], CommandJob("sleep 10"))[target]

        assert isinstance(outcome, TimedOut)
        assert time.monotonic() - started < 5
        transport, = network.transports
        assert not transport.is_active()
        assert all(channel.closed for channel in transport.channels)
        assert network.open == 0


class TestDeadlineAndCancellation:
    """Test run deadlines, stop requests and fail-fast."""

    def test_stuck_host_does_not_block_others(self, network, make_engine):
        network.add("stuck", commands={"work": (b"", b"", 0, None)})
        for name in ("a", "b", "c"):
            network.add(name)
        stuck = make_target("stuck")
        others = [make_target(name) for name in ("a", "b", "c")]

        started = time.monotonic()
        report = make_engine(concurrency=2, run_timeout=0.5).run([stuck] + others,
                                                                 CommandJob("work"))

        assert time.monotonic() - started < 5
        assert isinstance(report[stuck], TimedOut)
        assert all(report[t].ok for t in others)
        assert network.open == 0

    def test_queued_hosts_time_out_as_cancelled(self, network, make_engine):
        network.add("stuck", commands={"work": (b"", b"", 0, None)})
        network.add("queued")
        stuck, queued = make_target("stuck"), make_target("queued")

        report = make_engine(concurrency=1, run_timeout=0.3).run([stuck, queued],
                                                                 CommandJob("work"))

        assert isinstance(report[stuck], TimedOut)
        assert isinstance(report[queued], Cancelled)
        assert network.open == 0

    def test_cancel_closes_every_session(self, network, make_engine):
        targets = [make_target(f"h{i}") for i in range(4)]
        for target in targets:
            network.add(target.address)

        handle = make_engine(concurrency=2).submit(targets, CommandJob("sleep 30"))
        assert wait_for(lambda: list(handle.ctx.sink.states().values()).count(
            HostState.EXECUTING) == 2)

        handle.cancel()
        report = handle.wait()

        assert len(report) == 4
        assert all(isinstance(outcome, Cancelled) for _, outcome in report)
        assert handle.cancelled
        assert network.open == 0

    def test_context_exit_cancels_run(self, network, make_engine):
        network.add("a")
        target = make_target("a")
        with make_engine().stream([target], CommandJob("sleep 30")) as handle:
            assert wait_for(lambda: handle.ctx.sink.state(target) is HostState.EXECUTING)
        assert network.open == 0

    def test_fail_fast_stops_admissions(self, network, make_engine):
        network.add("bad", refuse=True)
        network.add("a")
        network.add("b")
        bad, a, b = make_target("bad"), make_target("a"), make_target("b")

        report = make_engine(concurrency=1, continue_on_error=False).run([bad, a, b],
                                                                         CommandJob("true"))

        assert isinstance(report[bad], ConnectFailed)
        assert isinstance(report[a], Cancelled)
        assert isinstance(report[b], Cancelled)
        assert len(network.transports) == 0

    def test_connect_timeout(self, network, make_engine):
        network.add("a", connect_delay=5)
        target = make_target("a")
        outcome = make_engine(connect_timeout=0.1).run([target], CommandJob("true"))[target]
        assert isinstance(outcome, ConnectFailed)
        assert "timed out" in outcome.reason

    def test_deadline_with_stalled_resolver(self, stalled_resolver, logger, make_config):
        target = make_target("slow.example")
        engine = MultiSSH(make_config(run_timeout=0.3, connect_timeout=10), logger)

        started = time.monotonic()
        report = engine.run([target], CommandJob("true"))

        assert time.monotonic() - started < 1.5
        assert isinstance(report[target], TimedOut)

    def test_deadline_does_not_wait_for_blocked_worker(self, logger, make_config):
        release = threading.Event()

        def connector(target, timeout, token, poll_interval=0.05):
            # ignores the token like a blocking library call would
            release.wait(10)
            raise ConnectError("released")

        target = make_target("a")
        engine = MultiSSH(make_config(run_timeout=0.3), logger, connector=connector)
        try:
            started = time.monotonic()
            report = engine.run([target], CommandJob("true"))
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 0.3 + JOIN_GRACE + 1.0
        assert isinstance(report[target], TimedOut)


class TestAuthentication:
    """Test authentication methods and fallback."""

    def test_fallback_to_next_method(self, network, make_engine):
        network.add("a")
        target = Target("a", "admin", auth=[PasswordAuth("wrong"), PasswordAuth("secret")])
        assert make_engine().run([target], CommandJob("true"))[target].ok

    def test_last_rejection_is_reported(self, network, make_engine):
        network.add("a", allowed_auth=["publickey"])
        target = make_target("a")
        outcome = make_engine().run([target], CommandJob("true"))[target]
        assert isinstance(outcome, AuthFailed)
        assert "publickey" in outcome.reason
        assert network.open == 0

    def test_unknown_host(self, network, make_engine):
        target = make_target("nowhere")
        outcome = make_engine().run([target], CommandJob("true"))[target]
        assert isinstance(outcome, ConnectFailed)
        assert "cannot resolve" in outcome.reason

    @pytest.fixture(scope="class")
    def rsa_key(self):
        return paramiko.RSAKey.generate(2048)

    def test_private_key(self, network, make_engine, rsa_key, tmp_path):
        path = tmp_path / "id_rsa"
        rsa_key.write_private_key_file(str(path))
        network.add("a", accepted_keys={rsa_key.get_base64()})
        target = Target("a", "admin", auth=[KeyAuth(str(path))])

        assert make_engine().run([target], CommandJob("true"))[target].ok

    def test_encrypted_private_key(self, network, make_engine, rsa_key, tmp_path):
        path = tmp_path / "id_rsa"
        rsa_key.write_private_key_file(str(path), password="phrase")
        network.add("a", accepted_keys={rsa_key.get_base64()})
        locked = Target("a", "admin", auth=[KeyAuth(str(path))])
        unlocked = Target("a", "admin", port=2222, auth=[KeyAuth(str(path), "phrase")])

        report = make_engine().run([locked, unlocked], CommandJob("true"))

        assert isinstance(report[locked], AuthFailed)
        assert "encrypted" in report[locked].reason
        assert report[unlocked].ok

    def test_missing_key_file(self, network, make_engine, tmp_path):
        network.add("a")
        target = Target("a", "admin", auth=[KeyAuth(str(tmp_path / "missing"))])
        outcome = make_engine().run([target], CommandJob("true"))[target]
        assert isinstance(outcome, AuthFailed)
        assert "cannot read key" in outcome.reason

    def test_agent(self, network, make_engine, rsa_key):
        network.add("a", accepted_keys={rsa_key.get_base64()})
        agents = []

        def agent_factory():
            agents.append(FakeAgent([rsa_key]))
            return agents[-1]

        target = Target("a", "admin", auth=[AgentAuth()])
        assert make_engine(agent_factory=agent_factory).run([target], CommandJob("true"))[target].ok
        assert agents[0].closed

    def test_empty_agent(self, network, make_engine):
        network.add("a")
        target = Target("a", "admin", auth=[AgentAuth()])
        outcome = make_engine(agent_factory=FakeAgent).run([target], CommandJob("true"))[target]
        assert isinstance(outcome, AuthFailed)
        assert "no keys" in outcome.reason


class TestValidation:
    """Test that invalid runs fail before any host is contacted."""

    @pytest.mark.parametrize("targets,job", [
        ([], CommandJob("true")),
        ([make_target("a"), make_target("a")], CommandJob("true")),
        ([make_target("a")], CommandJob("  ")),
        ([Target("a", "admin", auth=[])], CommandJob("true")),
        ([make_target("a", port=0)], CommandJob("true")),
        ([make_target("a")], TransferJob(Direction.UPLOAD, "/nonexistent/file", "/tmp/x")),
    ])
    def test_invalid_run(self, network, make_engine, targets, job):
        with pytest.raises(ConfigurationError):
            make_engine().run(targets, job)
        assert network.transports == []


class _StopOnConnect(ResultCollector):
    """Collector that stops the run as soon as a host starts connecting."""

    def __init__(self, targets, logger, token):
        super().__init__(targets, logger)
        self.token = token

    def set_state(self, target, state):
        super().set_state(target, state)
        if state is HostState.CONNECTING:
            self.token.cancel(CancelReason.STOPPED)
            self.finalize(CancelReason.STOPPED)


class TestHostTask:
    """Test a single host task against a concurrent stop."""

    def test_stop_while_entering_connect(self, network, logger, make_config):
        network.add("a")
        target = make_target("a")
        config = make_config()
        token = CancelToken()
        sink = _StopOnConnect([target], logger, token)
        ctx = RunContext(job=CommandJob("true"), config=config, token=token,
                         limiter=Limiter(1), sink=sink, logger=logger)

        run_host(target, ctx, ConnectionManager(config, logger, network), Executor(config))

        assert sink.outcome(target) == Cancelled("run stopped while connecting")
        assert network.transports == []
