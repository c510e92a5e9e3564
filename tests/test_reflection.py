"""Tests for reflection on execution results."""

from __future__ import annotations

from fakes import FakeHost

from dualpath.cognitive.executor import ExecutionEngine, ExecutionResult
from dualpath.cognitive.planner import StepStatus, Task, TaskPlanner
from dualpath.cognitive.reflection import (
    ALL_STEPS_FAILED,
    PARTIAL_SUCCESS,
    PERMISSION_ISSUES,
    SAFETY_BLOCKED,
    TIMEOUT_FAILURES,
    FailedStep,
    Reflector,
)
from dualpath.cognitive.sandbox import SandboxGate
from dualpath.models import HostOutcome

THREE_STEPS = "1. echo start\n2. make build\n3. echo done"


def _run(description: str, host: FakeHost) -> ExecutionResult:
    plan = TaskPlanner().plan(Task(id="t", description=description))
    return ExecutionEngine(SandboxGate(), host).execute(plan)


class TestReflect:
    def setup_method(self) -> None:
        self.reflector = Reflector()

    def test_success_needs_no_retry(self) -> None:
        reflection = self.reflector.reflect(_run(THREE_STEPS, FakeHost()))
        assert reflection.overall_success is True
        assert reflection.completion_rate == 1.0
        assert reflection.retry.should_retry is False
        assert reflection.retry.reason == "All steps succeeded - no retry needed"
        assert reflection.detected_patterns == frozenset()

    def test_timeout_failure_retried_with_longer_timeout(self) -> None:
        """A timed-out middle step is corrected and the rest of the plan kept."""
        host = FakeHost({"make build": HostOutcome(exit_code=1, duration_ms=40_000)})
        execution = _run(THREE_STEPS, host)
        reflection = self.reflector.reflect(execution)

        assert TIMEOUT_FAILURES in reflection.detected_patterns
        assert PARTIAL_SUCCESS in reflection.detected_patterns
        assert reflection.completion_rate == 0.33
        assert reflection.retry.should_retry is True
        assert reflection.retry.reason == "1 step(s) failed with correctable issues"

        correction = reflection.corrections[0]
        assert correction.step_id == "step-2"
        assert correction.suggested_action == "make build (with extended timeout)"

        adjusted = reflection.retry.adjusted_plan
        assert adjusted is not None
        assert adjusted is not execution.plan
        assert [s.status for s in adjusted.steps] == [
            StepStatus.COMPLETED,
            StepStatus.PENDING,
            StepStatus.PENDING,
        ]
        assert adjusted.steps[1].corrected is True
        assert adjusted.steps[1].action == "make build (with extended timeout)"
        assert adjusted.steps[2].dependencies == ("step-2",)
        assert execution.plan.steps[1].action == "make build"

    def test_permission_issue(self) -> None:
        host = FakeHost({"make build": HostOutcome(stderr="Permission denied", exit_code=1)})
        reflection = self.reflector.reflect(_run(THREE_STEPS, host))
        assert PERMISSION_ISSUES in reflection.detected_patterns
        assert reflection.corrections[0].suggested_action.endswith("(check permissions first)")

    def test_blocked_needs_manual_intervention(self) -> None:
        reflection = self.reflector.reflect(_run("Delete the staging database", FakeHost()))
        assert SAFETY_BLOCKED in reflection.detected_patterns
        assert reflection.blocked_steps[0].reason.startswith("DROP DATABASE/TABLE")
        assert reflection.retry.should_retry is False
        assert reflection.retry.reason == "Blocked by safety rules - manual intervention required"

    def test_all_failed_needs_replanning(self) -> None:
        reflection = self.reflector.reflect(_run("make build", FakeHost(fail_prefixes=("make",))))
        assert ALL_STEPS_FAILED in reflection.detected_patterns
        assert reflection.retry.should_retry is False
        assert reflection.retry.reason == "All steps failed - task may need fundamental re-planning"
        assert reflection.retry.adjusted_plan is None


class TestSuggestCorrection:
    def setup_method(self) -> None:
        self.reflector = Reflector()

    def test_not_found(self) -> None:
        failed = FailedStep("step-1", "run-linter", "bash: run-linter: command not found")
        assert self.reflector.suggest_correction(failed) == (
            "run-linter (verify paths and dependencies exist)"
        )

    def test_syntax(self) -> None:
        failed = FailedStep("step-1", "python app.py", "SyntaxError: invalid syntax")
        assert self.reflector.suggest_correction(failed).endswith("(fix syntax before re-running)")

    def test_default(self) -> None:
        failed = FailedStep("step-1", "make build", "Exit code: 2")
        assert self.reflector.suggest_correction(failed) == "make build (retry with adjusted approach)"
