"""Tests for steps, plans and the reconciler"""

import threading

import pytest

from conftest import Resource, ResourceAction, ResourceProbe, Value

from homekube.engine import (
    Action,
    Comparison,
    Context,
    FailurePolicy,
    Outcome,
    Plan,
    Reconciler,
    RunState,
    Step,
    detect_drift,
    reconcile,
    retrying,
    run_concurrently,
)
from homekube.engine.lock import RunLock
from homekube.errors import ActionError, ConvergenceFailure, LockHeldError, ProbeError, ReconcilerError


def make_step(label, value="wanted", initial=None, **action_kwargs):
    resource = Resource(initial)
    action = ResourceAction(resource, **action_kwargs)
    return Step(label, ResourceProbe(resource), action, Value(value)), resource, action


class TestStep:
    """Test single step evaluation"""

    def test_unchanged_when_already_matching(self):
        """Test the action is never called when the observed state matches"""
        step, _, action = make_step("a", initial="wanted")
        result = step.evaluate()
        assert result.outcome is Outcome.UNCHANGED
        assert result.before == result.after == Value("wanted")
        assert action.applied == []

    def test_converged_after_action(self):
        """Test divergence triggers the action and a confirming probe"""
        step, resource, action = make_step("a", initial="other")
        result = step.evaluate()
        assert result.outcome is Outcome.CONVERGED
        assert result.before == Value("other")
        assert result.after == Value("wanted")
        assert len(action.applied) == 1
        assert step.probe.observed == 2

    def test_action_error_fails_step(self):
        """Test an ActionError becomes a FAILED result carrying the cause"""
        step, _, _ = make_step("a", initial="other", fail=True)
        result = step.evaluate()
        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, ActionError)
        assert result.before == Value("other")
        assert result.after is None

    def test_probe_error_fails_step_without_action(self):
        """Test an unobservable resource fails the step and skips the action"""
        resource = Resource("other")
        action = ResourceAction(resource)
        step = Step("a", ResourceProbe(resource, fail=True), action, Value("wanted"))
        result = step.evaluate()
        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, ProbeError)
        assert action.applied == []

    def test_action_without_effect_is_convergence_failure(self):
        """Test a successful action that leaves the state diverging is reported"""
        step, _, _ = make_step("a", initial="other", noop=True)
        result = step.evaluate()
        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, ConvergenceFailure)
        assert result.after == Value("other")

    def test_desired_from_context(self):
        """Test a callable desired state is resolved against the run context"""
        resource = Resource("old")
        seen = []

        def desired(context):
            seen.append(context)
            return Value("new")

        step = Step("a", ResourceProbe(resource), ResourceAction(resource), desired)
        context = Context()
        result = step.evaluate(context)
        assert result.outcome is Outcome.CONVERGED
        assert seen == [context]

    def test_unresolvable_desired_fails_step(self):
        """Test a ProbeError while computing the desired state fails the step"""

        def desired(context):
            raise ProbeError("source file missing")

        resource = Resource("old")
        action = ResourceAction(resource)
        result = Step("a", ResourceProbe(resource), action, desired).evaluate(Context())
        assert result.outcome is Outcome.FAILED
        assert result.desired is None
        assert action.applied == []

    def test_custom_compare(self):
        """Test the step uses the comparison rule it was given"""
        step, _, action = make_step("a", initial="WANTED")
        step.compare = lambda observed, desired: Comparison.of(observed.value.lower() == desired.value)
        assert step.evaluate().outcome is Outcome.UNCHANGED
        assert action.applied == []

    def test_result_to_dict(self):
        """Test step results serialise with their states and error"""
        step, _, _ = make_step("a", initial="other", fail=True)
        data = step.evaluate().to_dict()
        assert data["label"] == "a"
        assert data["outcome"] == "failed"
        assert data["before"] == {"kind": "Value", "value": "other"}
        assert data["error_type"] == "ActionError"


class TestRetryingStep:
    """Test bounded retries of a failing step"""

    def test_succeeds_on_later_attempt(self):
        """Test a step that fails once converges on the second attempt"""
        resource = Resource("other")
        action = ResourceAction(resource, fail=True)

        def heal():
            if len(action.applied) == 2:
                action.fail = False

        action.on_apply = heal
        step = retrying(Step("a", ResourceProbe(resource), action, Value("wanted")), attempts=3, delay=0)
        result = step.evaluate()
        assert result.outcome is Outcome.CONVERGED
        assert result.attempts == 2

    def test_gives_up_after_attempts(self):
        """Test the last failed result is returned once attempts run out"""
        step, _, action = make_step("a", initial="other", fail=True)
        result = retrying(step, attempts=3, delay=0).evaluate()
        assert result.outcome is Outcome.FAILED
        assert result.attempts == 3
        assert len(action.applied) == 3

    def test_keeps_label_and_policy(self):
        """Test the wrapper behaves like the wrapped step inside a plan"""
        step, _, _ = make_step("a")
        step.policy = FailurePolicy.CONTINUE
        wrapped = retrying(step, delay=0)
        assert wrapped.label == "a"
        assert wrapped.policy is FailurePolicy.CONTINUE


class TestPlan:
    """Test plan construction"""

    def test_duplicate_labels_rejected(self):
        """Test labels are unique within a plan"""
        first, _, _ = make_step("a")
        second, _, _ = make_step("a")
        with pytest.raises(ValueError):
            Plan("p", [first, second])

    def test_extend_keeps_order(self):
        """Test extending a plan appends the other plan's steps in order"""
        a, _, _ = make_step("a")
        b, _, _ = make_step("b")
        c, _, _ = make_step("c")
        plan = Plan("p", [a]).extend(Plan("q", [b, c]))
        assert plan.labels == ["a", "b", "c"]
        assert len(plan) == 3


class TestReconciler:
    """Test plan execution"""

    def three_steps(self, fail_b=True):
        a, ra, aa = make_step("A", initial="x")
        b, rb, ab = make_step("B", initial="x", fail=fail_b)
        c, rc, ac = make_step("C", initial="x")
        return Plan("p", [a, b, c]), (aa, ab, ac)

    def test_all_converged_then_idempotent(self):
        """Test a second run over converged resources changes nothing"""
        plan, actions = self.three_steps(fail_b=False)
        first = reconcile(plan)
        assert str(first.status) == "AllConverged"
        assert [r.outcome for r in first.results] == [Outcome.CONVERGED] * 3

        second = reconcile(plan)
        assert second.ok
        assert second.all_unchanged
        assert all(len(a.applied) == 1 for a in actions)

    def test_abort_policy_stops_at_failure(self):
        """Test ABORT skips the steps after the first failure"""
        plan, (_, _, ac) = self.three_steps()
        report = reconcile(plan, FailurePolicy.ABORT)
        assert str(report.status) == "Aborted(B)"
        assert [r.label for r in report.results] == ["A", "B"]
        assert report.outcome("A") is Outcome.CONVERGED
        assert report.outcome("B") is Outcome.FAILED
        assert report.outcome("C") is None
        assert ac.applied == []

    def test_continue_policy_runs_remaining_steps(self):
        """Test CONTINUE evaluates every step and reports the first failure"""
        plan, _ = self.three_steps()
        report = reconcile(plan, FailurePolicy.CONTINUE)
        assert str(report.status) == "PartialFailure(B)"
        assert [r.outcome for r in report.results] == [Outcome.CONVERGED, Outcome.FAILED, Outcome.CONVERGED]
        assert [r.label for r in report.failed] == ["B"]

    def test_step_policy_overrides_run_policy(self):
        """Test a best-effort step does not abort an ABORT run"""
        plan, _ = self.three_steps()
        plan.steps[1].policy = FailurePolicy.CONTINUE
        report = reconcile(plan, FailurePolicy.ABORT)
        assert str(report.status) == "PartialFailure(B)"
        assert report.outcome("C") is Outcome.CONVERGED

    def test_results_in_plan_order(self):
        """Test the report lists results in plan order"""
        plan, _ = self.three_steps(fail_b=False)
        assert [r.label for r in reconcile(plan).results] == plan.labels

    def test_state_machine(self):
        """Test a reconciler ends COMPLETED or ABORTED and cannot run again"""
        plan, _ = self.three_steps(fail_b=False)
        reconciler = Reconciler()
        assert reconciler.state is RunState.IDLE
        reconciler.run(plan)
        assert reconciler.state is RunState.COMPLETED
        with pytest.raises(ReconcilerError):
            reconciler.run(plan)

        aborting, _ = self.three_steps()
        reconciler = Reconciler()
        reconciler.run(aborting)
        assert reconciler.state is RunState.ABORTED

    def test_cancel_before_run(self):
        """Test a cancelled run evaluates nothing and names the next step"""
        plan, actions = self.three_steps(fail_b=False)
        cancel = threading.Event()
        cancel.set()
        report = reconcile(plan, cancel=cancel)
        assert report.cancelled
        assert str(report.status) == "Aborted(A)"
        assert report.results == []
        assert all(a.applied == [] for a in actions)

    def test_cancel_between_steps(self):
        """Test cancellation lets the running step finish and stops before the next"""
        cancel = threading.Event()
        resource = Resource("x")
        a = Step("A", ResourceProbe(resource), ResourceAction(resource, on_apply=cancel.set), Value("y"))
        b, _, ab = make_step("B", initial="x")
        report = reconcile(Plan("p", [a, b]), cancel=cancel)
        assert report.outcome("A") is Outcome.CONVERGED
        assert str(report.status) == "Aborted(B)"
        assert report.cancelled
        assert ab.applied == []

    def test_lock_excludes_concurrent_run(self, tmp_path):
        """Test a run refuses to start while another holds the lock"""
        plan, actions = self.three_steps(fail_b=False)
        lock_path = tmp_path / "run.lock"
        with RunLock(lock_path):
            with pytest.raises(LockHeldError):
                reconcile(plan, lock_path=lock_path)
        assert all(a.applied == [] for a in actions)

        report = reconcile(plan, lock_path=lock_path)
        assert report.ok

    def test_lock_released_after_run(self, tmp_path):
        """Test the lock is free again after a run, even an aborted one"""
        plan, _ = self.three_steps()
        lock_path = tmp_path / "run.lock"
        reconcile(plan, lock_path=lock_path)
        lock = RunLock(lock_path)
        lock.acquire()
        assert lock.held
        lock.release()

    def test_lock_released_after_unexpected_error(self, tmp_path):
        """Test an action crashing outside the error hierarchy still frees the lock"""

        class Crash(Action):
            def apply(self, desired):
                raise RuntimeError("segfault in helper")

        lock_path = tmp_path / "run.lock"
        after, _, after_action = make_step("B", initial="x")
        plan = Plan("p", [Step("A", ResourceProbe(Resource("x")), Crash(), Value("y")), after])
        reconciler = Reconciler(lock_path=lock_path)
        with pytest.raises(RuntimeError):
            reconciler.run(plan)

        assert reconciler.state is RunState.ABORTED
        assert not reconciler.lock.held
        assert after_action.applied == []
        with RunLock(lock_path) as lock:
            assert lock.held

    def test_context_exposes_earlier_outcomes(self):
        """Test a later step's desired state can depend on an earlier step"""
        first, _, _ = make_step("config", initial="old", value="new")
        resource = Resource("stale")
        later = Step(
            "dependent",
            ResourceProbe(resource),
            ResourceAction(resource),
            lambda ctx: Value("restarted" if ctx.converged("config") else "stale"),
        )
        report = reconcile(Plan("p", [first, later]))
        assert report.outcome("dependent") is Outcome.CONVERGED
        assert resource.value == "restarted"

        # nothing changes the second time, so the dependent step stays put
        resource.value = "stale"
        report = reconcile(Plan("p", [first, later]))
        assert report.outcome("config") is Outcome.UNCHANGED
        assert report.outcome("dependent") is Outcome.UNCHANGED

    def test_report_to_dict(self):
        """Test reports serialise for the JSON output"""
        plan, _ = self.three_steps()
        data = reconcile(plan).to_dict()
        assert data["plan"] == "p"
        assert data["status"] == "Aborted(B)"
        assert [r["label"] for r in data["results"]] == ["A", "B"]


class TestConcurrency:
    """Test independent plans running in parallel"""

    def test_reports_in_input_order(self):
        """Test each plan gets its own report, in the order given"""
        plans = []
        for name in ("one", "two", "three"):
            step, _, _ = make_step(f"{name}-step", initial="x")
            plans.append(Plan(name, [step]))
        reports = run_concurrently(plans)
        assert [r.plan for r in reports] == ["one", "two", "three"]
        assert all(r.ok for r in reports)

    def test_failure_isolated_to_its_plan(self):
        """Test one failing plan does not affect the others"""
        good, _, _ = make_step("good", initial="x")
        bad, _, _ = make_step("bad", initial="x", fail=True)
        reports = run_concurrently([Plan("good", [good]), Plan("bad", [bad])])
        assert reports[0].ok
        assert str(reports[1].status) == "Aborted(bad)"


class TestDetectDrift:
    """Test probe-only drift detection"""

    def test_reports_drift_without_acting(self):
        """Test drift detection never calls an action"""
        a, _, aa = make_step("A", initial="wanted")
        b, _, ab = make_step("B", initial="other")
        entries = detect_drift(Plan("p", [a, b]))
        assert [e.drifted for e in entries] == [False, True]
        assert entries[1].observed == Value("other")
        assert entries[1].comparison is Comparison.DIVERGE
        assert aa.applied == [] and ab.applied == []

    def test_probe_error_recorded(self):
        """Test an unobservable resource is an error entry, not an exception"""
        resource = Resource("x")
        step = Step("A", ResourceProbe(resource, fail=True), ResourceAction(resource), Value("y"))
        (entry,) = detect_drift(Plan("p", [step]))
        assert entry.drifted
        assert isinstance(entry.error, ProbeError)
        assert entry.to_dict()["error"] == "resource unreadable"
