"""Plan execution: ordering, failure policy, cancellation and reporting"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..errors import ProbeError, ReconcilerError
from .compare import Comparison
from .lock import RunLock
from .plan import Context, Plan
from .state import ResourceState
from .step import FailurePolicy, Outcome, StepResult

logger = logging.getLogger(__name__)


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


_TRANSITIONS = {
    RunState.IDLE: {RunState.RUNNING},
    RunState.RUNNING: {RunState.COMPLETED, RunState.ABORTED},
    RunState.COMPLETED: set(),
    RunState.ABORTED: set(),
}


class StatusKind(Enum):
    ALL_CONVERGED = "all_converged"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RunStatus:
    """Overall result of a run; label names the first failed or the aborting step"""

    kind: StatusKind
    label: Optional[str] = None

    @classmethod
    def all_converged(cls) -> "RunStatus":
        return cls(StatusKind.ALL_CONVERGED)

    @classmethod
    def partial_failure(cls, first_failed: str) -> "RunStatus":
        return cls(StatusKind.PARTIAL_FAILURE, first_failed)

    @classmethod
    def aborted(cls, at: str) -> "RunStatus":
        return cls(StatusKind.ABORTED, at)

    @property
    def ok(self) -> bool:
        return self.kind is StatusKind.ALL_CONVERGED

    def __str__(self) -> str:
        if self.kind is StatusKind.ALL_CONVERGED:
            return "AllConverged"
        if self.kind is StatusKind.PARTIAL_FAILURE:
            return f"PartialFailure({self.label})"
        return f"Aborted({self.label})"


@dataclass(frozen=True)
class RunReport:
    plan: str
    results: List[StepResult]
    status: RunStatus
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.status.ok

    @property
    def all_unchanged(self) -> bool:
        return all(r.outcome is Outcome.UNCHANGED for r in self.results)

    @property
    def failed(self) -> List[StepResult]:
        return [r for r in self.results if r.failed]

    def outcome(self, label: str) -> Optional[Outcome]:
        for r in self.results:
            if r.label == label:
                return r.outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "status": str(self.status),
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }


class Reconciler:
    """Runs one plan once.

    A reconciler moves IDLE -> RUNNING -> COMPLETED/ABORTED and never back;
    re-running a plan (the way idempotency is exercised) takes a new instance.
    """

    def __init__(
        self,
        lock_path: Optional[Union[str, Path]] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.lock = RunLock(lock_path) if lock_path else None
        self.cancel = cancel or threading.Event()
        self.state = RunState.IDLE
        self.context = Context()

    def _transition(self, target: RunState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise ReconcilerError(f"Invalid transition: {self.state.value} -> {target.value}")
        self.state = target

    def run(self, plan: Plan, policy: FailurePolicy = FailurePolicy.ABORT) -> RunReport:
        self._transition(RunState.RUNNING)
        logger.info("Running plan %s (%d steps, policy=%s)", plan.name, len(plan), policy.value)

        try:
            if self.lock:
                self.lock.acquire()
            report = self._run_steps(plan, policy)
        except BaseException:
            self.state = RunState.ABORTED
            raise
        finally:
            if self.lock:
                self.lock.release()

        self._transition(RunState.ABORTED if report.status.kind is StatusKind.ABORTED else RunState.COMPLETED)
        logger.info("Plan %s finished: %s", plan.name, report.status)
        return report

    def _run_steps(self, plan: Plan, policy: FailurePolicy) -> RunReport:
        results: List[StepResult] = []
        first_failed: Optional[str] = None

        for step in plan:
            if self.cancel.is_set():
                logger.warning("Run cancelled before %s", step.label)
                return RunReport(plan.name, results, RunStatus.aborted(step.label), cancelled=True)

            logger.info("[%s] %s", plan.name, step.label)
            res = step.evaluate(self.context)
            self.context.record(res)
            results.append(res)
            logger.info("[%s] %s: %s", plan.name, step.label, res.outcome.value)

            if not res.failed:
                continue
            if (step.policy or policy) is FailurePolicy.ABORT:
                return RunReport(plan.name, results, RunStatus.aborted(step.label))
            if first_failed is None:
                first_failed = step.label

        if first_failed is not None:
            return RunReport(plan.name, results, RunStatus.partial_failure(first_failed))
        return RunReport(plan.name, results, RunStatus.all_converged())


def reconcile(
    plan: Plan,
    policy: FailurePolicy = FailurePolicy.ABORT,
    lock_path: Optional[Union[str, Path]] = None,
    cancel: Optional[threading.Event] = None,
) -> RunReport:
    """Run a plan with a fresh reconciler"""
    return Reconciler(lock_path=lock_path, cancel=cancel).run(plan, policy)


def run_concurrently(
    plans: List[Plan],
    policy: FailurePolicy = FailurePolicy.ABORT,
    max_workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> List[RunReport]:
    """Run independent plans in parallel, one reconciler each, reports in input order"""
    with ThreadPoolExecutor(max_workers=max_workers or max(len(plans), 1)) as pool:
        futures = [pool.submit(reconcile, plan, policy, None, cancel) for plan in plans]
        return [f.result() for f in futures]


@dataclass(frozen=True)
class DriftEntry:
    label: str
    desired: Optional[ResourceState]
    observed: Optional[ResourceState] = None
    comparison: Optional[Comparison] = None
    error: Optional[BaseException] = field(default=None, compare=False)

    @property
    def drifted(self) -> bool:
        return self.comparison is not Comparison.MATCH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "comparison": self.comparison.value if self.comparison else None,
            "observed": self.observed.to_dict() if self.observed else None,
            "desired": self.desired.to_dict() if self.desired else None,
            "error": str(self.error) if self.error else None,
        }


def detect_drift(plan: Plan, context: Optional[Context] = None) -> List[DriftEntry]:
    """Probe every step and compare, without running any action"""
    context = context or Context()
    entries = []
    for step in plan:
        try:
            desired = step.resolve_desired(context)
        except ProbeError as e:
            entries.append(DriftEntry(step.label, None, error=e))
            continue
        try:
            observed = step.probe.observe()
        except ProbeError as e:
            entries.append(DriftEntry(step.label, desired, error=e))
            continue
        entries.append(DriftEntry(step.label, desired, observed, step.compare(observed, desired)))
    return entries
