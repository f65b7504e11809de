"""
Result collection for multissh.
Thread-safe sink that keeps exactly one outcome per target and feeds both the
live stream and the final aggregate of a run.
"""

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .context import CancelReason, CancelToken, Deadline
from .logger import StructuredLogger
from .models import Cancelled, HostState, Outcome, OutcomeKind, Target, TimedOut

# Author: Vamsi


@dataclass
class RunReport:
    """Final outcome of every target of a run, in submission order."""
    outcomes: Dict[Target, Outcome] = field(default_factory=dict)
    peak_concurrency: int = 0
    duration: float = 0.0

    def __getitem__(self, target: Target) -> Outcome:
        return self.outcomes[target]

    def __iter__(self):
        return iter(self.outcomes.items())

    def __len__(self) -> int:
        return len(self.outcomes)

    def __contains__(self, target: Target) -> bool:
        return target in self.outcomes

    @property
    def succeeded(self) -> List[Target]:
        return [target for target, outcome in self.outcomes.items() if outcome.ok]

    @property
    def failed(self) -> List[Target]:
        return [target for target, outcome in self.outcomes.items() if not outcome.ok]

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes.values())

    def summary(self) -> Dict[str, int]:
        """
        Count outcomes per kind.

        :return: Mapping of outcome kind value to count, kinds with zero count included
        """
        counts = {kind.value: 0 for kind in OutcomeKind}
        for outcome in self.outcomes.values():
            counts[outcome.kind.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'duration': self.duration,
            'peak_concurrency': self.peak_concurrency,
            'summary': self.summary(),
            'hosts': [
                {'host': target.label, **outcome.to_dict()}
                for target, outcome in self.outcomes.items()
            ],
        }


class ResultCollector:
    """
    Sink for the outcomes of one run.

    Writers are the host tasks, one per completing host. The first outcome
    recorded for a target wins; later ones are dropped.
    """

    def __init__(self, targets: Sequence[Target], logger: StructuredLogger):
        """
        Initialize collector.

        :param targets: Every target of the run, in submission order
        :param logger: Logger instance
        """
        self.targets = list(targets)
        self.logger = logger
        self._lock = threading.Lock()
        self._outcomes: Dict[Target, Outcome] = {}
        self._states: Dict[Target, HostState] = {target: HostState.PENDING for target in targets}
        self._queue: "queue.Queue[Tuple[Target, Outcome]]" = queue.Queue()
        self._complete = threading.Event()
        if not self.targets:
            self._complete.set()

    @property
    def complete(self) -> bool:
        return self._complete.is_set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def set_state(self, target: Target, state: HostState):
        """Track a host's progress, ignored once the host has an outcome."""
        with self._lock:
            if target not in self._outcomes:
                self._states[target] = state

    def state(self, target: Target) -> HostState:
        with self._lock:
            return self._states[target]

    def states(self) -> Dict[Target, HostState]:
        with self._lock:
            return dict(self._states)

    def record(self, target: Target, outcome: Outcome) -> bool:
        """
        Record the outcome of a target.

        :param target: Target the outcome belongs to
        :param outcome: Terminal outcome
        :return: True if recorded, False if the target already had an outcome
        """
        with self._lock:
            if target not in self._states:
                raise KeyError(f"{target.label} is not part of this run")
            recorded = self._store(target, outcome)

        if not recorded:
            self.logger.debug("Dropped late outcome", host=target.label,
                              outcome=outcome.kind.value)
        return recorded

    def _store(self, target: Target, outcome: Outcome) -> bool:
        # caller holds self._lock
        if target in self._outcomes:
            return False
        self._outcomes[target] = outcome
        self._states[target] = outcome.state
        self._queue.put((target, outcome))
        if len(self._outcomes) == len(self.targets):
            self._complete.set()
        return True

    def outcome(self, target: Target) -> Optional[Outcome]:
        with self._lock:
            return self._outcomes.get(target)

    def finalize(self, reason: CancelReason) -> int:
        """
        Assign an outcome to every target still without one.

        Targets never admitted get Cancelled, targets in flight get TimedOut
        when the run deadline passed and Cancelled when the run was stopped.

        :param reason: Why the run ended early
        :return: Number of outcomes assigned
        """
        assigned = 0
        with self._lock:
            # decide and store under one lock; set_state waits on it
            for target in self.targets:
                if target in self._outcomes:
                    continue
                state = self._states[target]
                if state is HostState.PENDING:
                    outcome = Cancelled("run ended before the host was started")
                elif reason is CancelReason.DEADLINE:
                    outcome = TimedOut(f"run deadline reached while {state.value}")
                else:
                    outcome = Cancelled(f"run stopped while {state.value}")
                if self._store(target, outcome):
                    assigned += 1
        return assigned

    def stream(self, token: CancelToken, deadline: Deadline,
               poll_interval: float = 0.05) -> Iterator[Tuple[Target, Outcome]]:
        """
        Yield (target, outcome) pairs in completion order.

        When the deadline passes, the run is cancelled and the remaining
        targets are finalized, so the stream always yields every target.

        :param token: Run cancellation signal
        :param deadline: Global run deadline
        :param poll_interval: Upper bound of a single wait
        """
        yielded = 0
        total = len(self.targets)
        while yielded < total:
            try:
                item = self._queue.get(timeout=deadline.bound(poll_interval))
            except queue.Empty:
                if deadline.expired and not self.complete:
                    token.cancel(CancelReason.DEADLINE)
                    self.finalize(CancelReason.DEADLINE)
                continue
            yielded += 1
            yield item

    def report(self, peak_concurrency: int = 0, started_at: Optional[float] = None) -> RunReport:
        """
        Build the aggregate, ordered like the submitted targets.

        :raises RuntimeError: If a target has no outcome yet
        """
        with self._lock:
            missing = [t.label for t in self.targets if t not in self._outcomes]
            if missing:
                raise RuntimeError(f"No outcome for: {', '.join(missing)}")
            outcomes = {target: self._outcomes[target] for target in self.targets}

        duration = round(time.monotonic() - started_at, 3) if started_at is not None else 0.0
        return RunReport(outcomes=outcomes, peak_concurrency=peak_concurrency, duration=duration)
