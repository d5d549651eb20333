"""Plans and the per-run context shared between their steps"""

import time
from typing import Dict, Iterable, Iterator, List, Optional

from .step import Outcome, Step, StepResult


class Plan:
    """An ordered sequence of steps forming one phase"""

    def __init__(self, name: str, steps: Iterable[Step] = ()):
        self.name = name
        self.steps: List[Step] = []
        for step in steps:
            self.add(step)

    def add(self, step: Step) -> "Plan":
        """Append a step; labels must be unique within a plan"""
        if any(s.label == step.label for s in self.steps):
            raise ValueError(f"Duplicate step label in plan {self.name!r}: {step.label!r}")
        self.steps.append(step)
        return self

    def extend(self, other: "Plan") -> "Plan":
        for step in other.steps:
            self.add(step)
        return self

    @property
    def labels(self) -> List[str]:
        return [s.label for s in self.steps]

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __repr__(self) -> str:
        return f"Plan({self.name!r}, steps={len(self.steps)})"


class Context:
    """Outcomes recorded so far in a run, readable by later steps"""

    def __init__(self):
        self._results: Dict[str, StepResult] = {}
        self._finished_at: Dict[str, int] = {}

    def record(self, result: StepResult) -> None:
        self._results[result.label] = result
        self._finished_at[result.label] = time.monotonic_ns() // 1000

    def result(self, label: str) -> Optional[StepResult]:
        return self._results.get(label)

    def outcome(self, label: str) -> Optional[Outcome]:
        res = self._results.get(label)
        return res.outcome if res else None

    def converged(self, label: str) -> bool:
        return self.outcome(label) is Outcome.CONVERGED

    def converged_at(self, label: str) -> Optional[int]:
        """Monotonic time in microseconds at which a converged step finished"""
        if not self.converged(label):
            return None
        return self._finished_at[label]
