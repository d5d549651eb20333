"""State-reconciliation engine: probes, actions, steps, plans and the reconciler."""

from .compare import (
    Comparison,
    checksum_equal,
    equal,
    field_equal,
    file_exists,
    present,
    release_matches,
    restarted_after,
    superset,
)
from .plan import Context, Plan
from .reconciler import (
    DriftEntry,
    Reconciler,
    RunReport,
    RunState,
    RunStatus,
    StatusKind,
    detect_drift,
    reconcile,
    run_concurrently,
)
from .step import Action, FailurePolicy, Outcome, Probe, Step, StepResult, retrying

__all__ = [
    "Action",
    "Comparison",
    "Context",
    "DriftEntry",
    "FailurePolicy",
    "Outcome",
    "Plan",
    "Probe",
    "Reconciler",
    "RunReport",
    "RunState",
    "RunStatus",
    "StatusKind",
    "Step",
    "StepResult",
    "checksum_equal",
    "detect_drift",
    "equal",
    "field_equal",
    "file_exists",
    "present",
    "reconcile",
    "release_matches",
    "restarted_after",
    "retrying",
    "run_concurrently",
    "superset",
]
