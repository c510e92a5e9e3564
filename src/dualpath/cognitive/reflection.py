"""Reflect phase: read an execution result, tag what went wrong, propose fixes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from ..rules import RuleTables, default_rules
from .executor import ExecutionResult, OutcomeStatus, StepOutcome
from .planner import ExecutionPlan, StepStatus, TaskPlanner

logger = logging.getLogger(__name__)

ALL_STEPS_FAILED = "all_steps_failed"
SAFETY_BLOCKED = "safety_blocked"
TIMEOUT_FAILURES = "timeout_failures"
PERMISSION_ISSUES = "permission_issues"
PARTIAL_SUCCESS = "partial_success"


@dataclass(frozen=True)
class FailedStep:
    step_id: str
    action: str
    reason: str


@dataclass(frozen=True)
class Correction:
    step_id: str
    original_action: str
    suggested_action: str
    reason: str


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    reason: str
    adjusted_plan: ExecutionPlan | None = None


@dataclass(frozen=True)
class ReflectionResult:
    overall_success: bool
    completion_rate: float
    failed_steps: tuple[FailedStep, ...]
    blocked_steps: tuple[FailedStep, ...]
    detected_patterns: frozenset[str]
    corrections: tuple[Correction, ...]
    retry: RetryDecision
    reflected_at: datetime


def failure_reason(outcome: StepOutcome) -> str:
    record = outcome.execution
    if record is None:
        return "No execution data"
    if record.blocked:
        return f"Blocked: {record.blocked_by}"
    if outcome.validation is not None and outcome.validation.issues:
        return "; ".join(outcome.validation.issues)
    if record.stderr:
        return record.stderr.split("\n", 1)[0][:200]
    return f"Exit code: {record.exit_code}"


class Reflector:
    def __init__(self, rules: RuleTables | None = None):
        self.rules = rules or default_rules()
        self._planner = TaskPlanner(self.rules)

    def suggest_correction(self, failed: FailedStep) -> str:
        reason = failed.reason.lower()
        for rule in self.rules.corrections:
            if any(m in reason for m in rule.match):
                return f"{failed.action}{rule.suffix}"
        return f"{failed.action}{self.rules.default_correction}"

    def reflect(self, execution: ExecutionResult) -> ReflectionResult:
        failed: list[FailedStep] = []
        blocked: list[FailedStep] = []
        for outcome in execution.results:
            if outcome.status is OutcomeStatus.FAILED:
                failed.append(FailedStep(outcome.step_id, outcome.action, failure_reason(outcome)))
            elif outcome.status is OutcomeStatus.BLOCKED:
                reason = outcome.execution.blocked_by if outcome.execution else None
                blocked.append(
                    FailedStep(outcome.step_id, outcome.action, reason or "Unknown blocked reason")
                )

        patterns: set[str] = set()
        if failed and len(failed) == execution.steps_total:
            patterns.add(ALL_STEPS_FAILED)
        if blocked:
            patterns.add(SAFETY_BLOCKED)
        if any("timeout" in f.reason.lower() for f in failed):
            patterns.add(TIMEOUT_FAILURES)
        if any("permission" in f.reason.lower() for f in failed):
            patterns.add(PERMISSION_ISSUES)
        if execution.steps_completed > 0 and not execution.success:
            patterns.add(PARTIAL_SUCCESS)

        completion_rate = execution.completion_rate
        corrections = tuple(
            Correction(
                step_id=f.step_id,
                original_action=f.action,
                suggested_action=self.suggest_correction(f),
                reason=f.reason,
            )
            for f in failed
        )

        should_retry = (
            bool(failed)
            and not blocked
            and completion_rate < 1.0
            and ALL_STEPS_FAILED not in patterns
        )
        if should_retry:
            reason = f"{len(failed)} step(s) failed with correctable issues"
        elif blocked:
            reason = "Blocked by safety rules - manual intervention required"
        elif ALL_STEPS_FAILED in patterns:
            reason = "All steps failed - task may need fundamental re-planning"
        elif execution.success:
            reason = "All steps succeeded - no retry needed"
        else:
            reason = "Cannot determine retry strategy"

        retry = RetryDecision(
            should_retry=should_retry,
            reason=reason,
            adjusted_plan=self.build_adjusted_plan(execution, corrections) if should_retry else None,
        )
        logger.debug(
            "Reflected on %s: completion=%.2f patterns=%s retry=%s",
            execution.plan.task_id,
            completion_rate,
            ",".join(sorted(patterns)) or "-",
            should_retry,
        )
        return ReflectionResult(
            overall_success=execution.success,
            completion_rate=round(completion_rate, 2),
            failed_steps=tuple(failed),
            blocked_steps=tuple(blocked),
            detected_patterns=frozenset(patterns),
            corrections=corrections,
            retry=retry,
            reflected_at=datetime.now(UTC),
        )

    def build_adjusted_plan(
        self, execution: ExecutionResult, corrections: tuple[Correction, ...]
    ) -> ExecutionPlan:
        """A new plan: succeeded steps marked completed, failed steps carry their correction."""
        by_step = {c.step_id: c for c in corrections}
        statuses = {r.step_id: r.status for r in execution.results}

        steps = []
        for step in execution.plan.steps:
            if statuses.get(step.id) is OutcomeStatus.SUCCESS:
                steps.append(replace(step, status=StepStatus.COMPLETED))
                continue
            correction = by_step.get(step.id)
            if correction is not None:
                steps.append(
                    replace(
                        step,
                        action=correction.suggested_action,
                        status=StepStatus.PENDING,
                        corrected=True,
                    )
                )
            else:
                steps.append(replace(step, status=StepStatus.PENDING))

        plan = execution.plan
        dependencies = list(plan.dependencies)
        risks = self._planner.assess_risks(steps)
        return replace(
            plan,
            steps=tuple(steps),
            risks=tuple(risks),
            complexity=self._planner.estimate_complexity(steps, dependencies, risks),
            created_at=datetime.now(UTC),
        )
