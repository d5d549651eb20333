"""Probe/Action contracts and the Step that binds them"""

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional, Union

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..errors import ActionError, ConvergenceFailure, ProbeError
from .compare import CompareFn, Comparison, equal
from .state import ResourceState

logger = logging.getLogger(__name__)


class Probe:
    """Reads the current state of one resource without side effects"""

    timeout: float = 10.0

    def observe(self) -> ResourceState:
        raise NotImplementedError


class Action:
    """Mutating operation that drives a resource towards a desired state"""

    timeout: float = 300.0

    def apply(self, desired: ResourceState) -> None:
        raise NotImplementedError


class Outcome(Enum):
    UNCHANGED = "unchanged"
    CONVERGED = "converged"
    FAILED = "failed"


class FailurePolicy(Enum):
    ABORT = "abort"
    CONTINUE = "continue"


@dataclass(frozen=True)
class StepResult:
    """What happened to one step during a run"""

    label: str
    outcome: Outcome
    before: Optional[ResourceState] = None
    after: Optional[ResourceState] = None
    desired: Optional[ResourceState] = None
    error: Optional[BaseException] = None
    duration: float = 0.0
    attempts: int = 1

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "outcome": self.outcome.value,
            "before": self.before.to_dict() if self.before else None,
            "after": self.after.to_dict() if self.after else None,
            "desired": self.desired.to_dict() if self.desired else None,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "duration": round(self.duration, 3),
            "attempts": self.attempts,
        }


Desired = Union[ResourceState, Callable[[Any], ResourceState]]


class Step:
    """One probe, one action, one desired state and the rule comparing them.

    ``desired`` may be a callable taking the run context; it is resolved right
    before the step is evaluated, which is how a step depends on the outcome
    of an earlier one.
    """

    def __init__(
        self,
        label: str,
        probe: Probe,
        action: Action,
        desired: Desired,
        compare: CompareFn = equal,
        policy: Optional[FailurePolicy] = None,
    ):
        self.label = label
        self.probe = probe
        self.action = action
        self.desired = desired
        self.compare = compare
        self.policy = policy

    def __repr__(self) -> str:
        return f"Step({self.label!r})"

    def resolve_desired(self, context: Any = None) -> ResourceState:
        if callable(self.desired):
            return self.desired(context)
        return self.desired

    def evaluate(self, context: Any = None) -> StepResult:
        """Observe, compare and, if needed, act and confirm"""
        started = time.monotonic()

        def result(outcome: Outcome, **kwargs) -> StepResult:
            return StepResult(self.label, outcome, duration=time.monotonic() - started, **kwargs)

        try:
            desired = self.resolve_desired(context)
        except ProbeError as e:
            logger.error("%s: cannot determine desired state: %s", self.label, e)
            return result(Outcome.FAILED, error=e)

        try:
            before = self.probe.observe()
        except ProbeError as e:
            logger.error("%s: cannot observe state: %s", self.label, e)
            return result(Outcome.FAILED, desired=desired, error=e)

        if self.compare(before, desired) is Comparison.MATCH:
            logger.debug("%s: already matches %s", self.label, desired)
            return result(Outcome.UNCHANGED, before=before, after=before, desired=desired)

        logger.info("%s: %s diverges from %s, applying", self.label, before, desired)
        try:
            self.action.apply(desired)
        except ActionError as e:
            logger.error("%s: action failed: %s", self.label, e)
            return result(Outcome.FAILED, before=before, desired=desired, error=e)

        try:
            after = self.probe.observe()
        except ProbeError as e:
            logger.error("%s: cannot confirm state: %s", self.label, e)
            return result(Outcome.FAILED, before=before, desired=desired, error=e)

        if self.compare(after, desired) is Comparison.MATCH:
            return result(Outcome.CONVERGED, before=before, after=after, desired=desired)

        failure = ConvergenceFailure(self.label, before, after, desired)
        logger.error("%s", failure)
        return result(Outcome.FAILED, before=before, after=after, desired=desired, error=failure)


class RetryingStep(Step):
    """A step re-evaluated while it fails, a bounded number of times"""

    def __init__(self, step: Step, attempts: int = 3, delay: float = 5.0):
        super().__init__(step.label, step.probe, step.action, step.desired, step.compare, step.policy)
        self.step = step
        self.attempts = attempts
        self.delay = delay

    def evaluate(self, context: Any = None) -> StepResult:
        attempts = 0

        def attempt() -> StepResult:
            nonlocal attempts
            attempts += 1
            return self.step.evaluate(context)

        retryer = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_result(lambda r: r.failed),
            before_sleep=lambda state: logger.warning(
                "%s: attempt %d failed, retrying in %.0fs", self.label, state.attempt_number, self.delay
            ),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return replace(retryer(attempt), attempts=attempts)


def retrying(step: Step, attempts: int = 3, delay: float = 5.0) -> Step:
    """Wrap a step in a bounded retry"""
    return RetryingStep(step, attempts=attempts, delay=delay)
