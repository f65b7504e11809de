"""
Main entry point of multissh: runs one job on many targets in parallel.

Example usage:
    from multissh import MultiSSH, RunConfig, Target, PasswordAuth, CommandJob

    targets = [Target("10.0.0.1", "admin", auth=[PasswordAuth("secret")])]
    report = MultiSSH(RunConfig(concurrency=5)).run(targets, CommandJob("uptime"))
    for target, outcome in report:
        print(target, outcome)
"""

import concurrent.futures
import os
import threading
import time
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from .collector import ResultCollector, RunReport
from .config import RunConfig
from .connection import ConnectionManager, Connector
from .context import CancelReason, CancelToken, Deadline, Limiter, RunContext
from .errors import (
    AuthError, CommandError, ConfigurationError, ConnectError, HostError,
    HostTimeoutError, RunCancelledError, TransferError
)
from .executor import Executor
from .logger import HostLogger, StructuredLogger
from .models import (
    AuthFailed, Cancelled, CommandFailed, CommandJob, ConnectFailed, Direction,
    HostState, Job, Outcome, Target, TimedOut, TransferFailed, TransferJob
)

# Author: Vamsi

JOIN_GRACE = 1.0


def validate_run(targets: Sequence[Target], job: Job, config: RunConfig):
    """
    Check everything that must hold before a run may start.

    :raises ConfigurationError: On the first problem found
    """
    if not isinstance(config, RunConfig):
        raise ConfigurationError("config must be a RunConfig")
    config._validate()

    if not targets:
        raise ConfigurationError("No targets specified")

    seen = set()
    for target in targets:
        if not isinstance(target, Target):
            raise ConfigurationError(f"Invalid target: {target!r}")
        if not target.address:
            raise ConfigurationError("Target without address")
        if not target.username:
            raise ConfigurationError(f"No username specified for {target.address}")
        if not 0 < target.port < 65536:
            raise ConfigurationError(f"Port out of range for {target.label}")
        if not target.auth:
            raise ConfigurationError(f"No authentication method for {target.label}")
        if target.timeout is not None and target.timeout <= 0:
            raise ConfigurationError(f"Timeout of {target.label} must be positive")
        if target.key in seen:
            raise ConfigurationError(f"Duplicate target: {target.label}")
        seen.add(target.key)

    if isinstance(job, CommandJob):
        if not job.text or not job.text.strip():
            raise ConfigurationError("Command is empty")
    elif isinstance(job, TransferJob):
        if not isinstance(job.direction, Direction):
            raise ConfigurationError(f"Invalid transfer direction: {job.direction!r}")
        if not job.local_path or not job.remote_path:
            raise ConfigurationError("Transfer requires a local and a remote path")
        if job.direction is Direction.UPLOAD and not os.path.isfile(job.local_path):
            raise ConfigurationError(f"Local file not found: {job.local_path}")
        if job.direction is Direction.DOWNLOAD and os.path.isfile(job.local_path):
            raise ConfigurationError(f"Download destination is a file: {job.local_path}")
    else:
        raise ConfigurationError(f"Invalid job: {job!r}")


def _failure_for_phase(state: HostState, job: Job, reason: str) -> Outcome:
    """Outcome for an unexpected error, based on the phase it happened in."""
    if state is HostState.CONNECTING:
        return ConnectFailed(reason)
    if state is HostState.AUTHENTICATING:
        return AuthFailed(reason)
    if isinstance(job, TransferJob):
        return TransferFailed(reason)
    return CommandFailed(reason=reason)


class RunHandle:
    """
    A run in progress.

    Iterate over it for (target, outcome) pairs in completion order, or call
    ``wait()`` for the aggregate. Both consume the same completion stream.
    """

    def __init__(self, targets: List[Target], ctx: RunContext,
                 pool: concurrent.futures.ThreadPoolExecutor,
                 futures: List[concurrent.futures.Future], deadline: Deadline):
        self.targets = targets
        self.ctx = ctx
        self.deadline = deadline
        self._pool = pool
        self._futures = futures
        self._started_at = time.monotonic()
        self._stream = ctx.sink.stream(ctx.token, deadline, ctx.config.poll_interval)
        self._stream_lock = threading.Lock()
        self._report: Optional[RunReport] = None
        self._joined = False

    def __iter__(self) -> Iterator[Tuple[Target, Outcome]]:
        return self

    def __next__(self) -> Tuple[Target, Outcome]:
        with self._stream_lock:
            try:
                return next(self._stream)
            except StopIteration:
                self._join()
                raise

    def cancel(self):
        """
        Stop the run.

        Hosts not started yet and hosts in flight are reported Cancelled;
        live sessions are closed.
        """
        if self.ctx.token.cancel(CancelReason.STOPPED):
            self.ctx.logger.info("Run cancelled", hosts=len(self.targets))
        self.ctx.sink.finalize(CancelReason.STOPPED)

    @property
    def cancelled(self) -> bool:
        return self.ctx.token.cancelled

    def wait(self) -> RunReport:
        """
        Block until every target has an outcome or the run deadline passes.

        :return: Aggregate of the run
        """
        for _ in self:
            pass
        if self._report is None:
            self._report = self.ctx.sink.report(self.ctx.limiter.peak, self._started_at)
            summary = self._report.summary()
            self.ctx.logger.info("Run completed", total=len(self._report),
                                 successful=summary['success'],
                                 failed=len(self._report) - summary['success'],
                                 duration=self._report.duration,
                                 peak_concurrency=self._report.peak_concurrency)
        return self._report

    def _join(self):
        if self._joined:
            return
        self._joined = True

        if not self.ctx.sink.complete:
            self.ctx.token.cancel(CancelReason.DEADLINE)
            self.ctx.sink.finalize(CancelReason.DEADLINE)

        if not self.ctx.token.cancelled:
            self._pool.shutdown(wait=True)
            return

        # every outcome is recorded: workers still blocked after the grace period
        # finish in the background and their late outcomes are dropped
        concurrent.futures.wait(self._futures, timeout=JOIN_GRACE)
        self._pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.ctx.sink.complete:
            self.cancel()
        with self._stream_lock:
            for _ in self._stream:
                pass
            self._join()


class MultiSSH:
    """Runs one job on many targets with bounded parallelism."""

    def __init__(self, config: Optional[RunConfig] = None, logger: StructuredLogger = None,
                 connector: Optional[Connector] = None,
                 agent_factory: Optional[Callable[[], Any]] = None):
        """
        Initialize the engine.

        :param config: Run configuration, defaults to RunConfig()
        :param logger: Logger instance
        :param connector: Transport connector, defaults to paramiko over TCP
        :param agent_factory: SSH agent client factory, defaults to paramiko.Agent
        """
        self.config = config or RunConfig()
        self.logger = logger or StructuredLogger()
        self.connector = connector
        self.agent_factory = agent_factory

    def submit(self, targets: Sequence[Target], job: Job) -> RunHandle:
        """
        Start a run and return immediately.

        :param targets: Non-empty list of unique targets
        :param job: Job applied to every target
        :return: Handle of the run
        :raises ConfigurationError: If the run cannot start
        """
        targets = list(targets)
        validate_run(targets, job, self.config)

        token = CancelToken()
        ctx = RunContext(
            job=job,
            config=self.config,
            token=token,
            limiter=Limiter(self.config.concurrency),
            sink=ResultCollector(targets, self.logger),
            logger=self.logger,
        )
        connections = ConnectionManager(self.config, self.logger, self.connector,
                                        self.agent_factory)
        executor = Executor(self.config)

        self.logger.info(f"Running {type(job).__name__} on {len(targets)} hosts",
                         concurrency=self.config.concurrency,
                         run_timeout=self.config.run_timeout)

        deadline = Deadline(self.config.run_timeout)
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.config.concurrency, len(targets)),
            thread_name_prefix="multissh"
        )
        futures = [pool.submit(run_host, target, ctx, connections, executor)
                   for target in targets]

        return RunHandle(targets, ctx, pool, futures, deadline)

    def stream(self, targets: Sequence[Target], job: Job) -> RunHandle:
        """Start a run whose outcomes are consumed incrementally."""
        return self.submit(targets, job)

    def run(self, targets: Sequence[Target], job: Job) -> RunReport:
        """
        Run a job and wait for the aggregate.

        :return: One outcome per target
        """
        with self.submit(targets, job) as handle:
            return handle.wait()


def run_host(target: Target, ctx: RunContext, connections: ConnectionManager,
             executor: Executor) -> Outcome:
    """
    Drive one target from admission to its outcome.

    Everything the task shares with other hosts comes through ``ctx``.
    """
    host_logger = _TrackedHostLogger(target, ctx)

    if ctx.token.cancelled:
        return _record(target, Cancelled("run cancelled before the host was started"), ctx,
                       host_logger)

    with ctx.limiter.slot(ctx.token, ctx.config.poll_interval) as admitted:
        if admitted:
            # record before the slot is released
            outcome = _drive(target, ctx, connections, executor, host_logger)
            return _record(target, outcome, ctx, host_logger)

    if ctx.token.cancelled:
        outcome = Cancelled("run cancelled before the host was started")
    else:
        outcome = Cancelled("run stopped after a failure on another host")
    return _record(target, outcome, ctx, host_logger)


def _record(target: Target, outcome: Outcome, ctx: RunContext, host_logger: HostLogger) -> Outcome:
    if ctx.sink.record(target, outcome):
        host_logger.log_outcome(outcome)
        if not outcome.ok and not ctx.config.continue_on_error and not ctx.limiter.closed:
            ctx.logger.warning("Stopping admissions after failure", host=target.label,
                               outcome=outcome.kind.value)
            ctx.limiter.close()
    return outcome


def _drive(target: Target, ctx: RunContext, connections: ConnectionManager,
           executor: Executor, host_logger: HostLogger) -> Outcome:
    try:
        with connections.session(target, ctx.token, host_logger) as session:
            host_logger.transition(HostState.EXECUTING)
            return executor.run(session, ctx.job, target, ctx.token, host_logger)
    except ConnectError as e:
        return ConnectFailed(e.reason)
    except AuthError as e:
        return AuthFailed(e.reason)
    except CommandError as e:
        return CommandFailed(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr,
                             truncated=e.truncated, reason=e.reason)
    except TransferError as e:
        return TransferFailed(e.reason)
    except HostTimeoutError as e:
        return TimedOut(e.reason)
    except RunCancelledError as e:
        return _cancelled_outcome(ctx.token, e.reason)
    except HostError as e:
        return _failure_for_phase(host_logger.state, ctx.job, e.reason)
    except Exception as e:
        if ctx.token.cancelled:
            return _cancelled_outcome(ctx.token, str(e))
        ctx.logger.exception("Unexpected error", host=target.label,
                             state=host_logger.state.value)
        return _failure_for_phase(host_logger.state, ctx.job, f"internal error: {e}")


def _cancelled_outcome(token: CancelToken, detail: str) -> Outcome:
    if token.reason is CancelReason.DEADLINE:
        return TimedOut(f"run deadline reached: {detail}")
    return Cancelled(detail)


class _TrackedHostLogger(HostLogger):
    """Host logger that mirrors state transitions into the run's collector."""

    def __init__(self, target: Target, ctx: RunContext):
        super().__init__(target, ctx.logger)
        self._sink = ctx.sink

    def transition(self, state: HostState, **kwargs):
        super().transition(state, **kwargs)
        if not state.terminal:
            self._sink.set_state(self.target, state)


def run(targets: Sequence[Target], job: Job, config: Optional[RunConfig] = None,
        logger: StructuredLogger = None, connector: Optional[Connector] = None) -> RunReport:
    """
    Run a job on every target and return the aggregate.

    :param targets: Non-empty list of unique targets
    :param job: Command or transfer job
    :param config: Run configuration
    :param logger: Logger instance
    :param connector: Transport connector, defaults to paramiko over TCP
    :return: One outcome per target
    """
    return MultiSSH(config, logger, connector).run(targets, job)


def stream(targets: Sequence[Target], job: Job, config: Optional[RunConfig] = None,
           logger: StructuredLogger = None, connector: Optional[Connector] = None) -> RunHandle:
    """
    Start a run and return a handle yielding outcomes as hosts finish.

    :return: Iterable run handle, use it as a context manager to always clean up
    """
    return MultiSSH(config, logger, connector).stream(targets, job)
