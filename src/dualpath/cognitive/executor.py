"""Execute phase of the deliberate engine.

Runs a plan's steps in dependency order through the sandbox gate, one at
a time. Only commands the gate admits reach the host executor.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from ..collaborators import HostExecutor
from ..errors import PlanCycleError
from ..models import ExecutionRequest, HostOutcome
from .planner import ExecutionPlan, Step, StepStatus
from .sandbox import (
    ExecutionRecord,
    RecordState,
    SandboxContext,
    SandboxGate,
    SandboxStats,
    ValidationResult,
)

logger = logging.getLogger(__name__)


class OutcomeStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    step_id: str
    order: int
    action: str
    status: OutcomeStatus
    execution: ExecutionRecord | None = None
    validation: ValidationResult | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ExecutionResult:
    plan: ExecutionPlan
    sandbox_id: str
    started_at: datetime
    completed_at: datetime
    results: tuple[StepOutcome, ...]
    success: bool
    steps_completed: int
    steps_total: int
    sandbox_stats: SandboxStats

    @property
    def completion_rate(self) -> float:
        return self.steps_completed / self.steps_total if self.steps_total else 0.0

    def outcome(self, step_id: str) -> StepOutcome | None:
        return next((r for r in self.results if r.step_id == step_id), None)


StepCallback = Callable[[Step], None]
OutcomeCallback = Callable[[Step, StepOutcome], None]


def resolve_execution_order(plan: ExecutionPlan) -> list[Step]:
    """Kahn's algorithm; ties go to the lower declared order.

    Raises PlanCycleError when some steps can never become ready.
    """
    by_id = {s.id: s for s in plan.steps}
    indegree = {s.id: len(set(s.dependencies)) for s in plan.steps}
    dependents: dict[str, list[str]] = {s.id: [] for s in plan.steps}
    for step in plan.steps:
        for dep in set(step.dependencies):
            dependents[dep].append(step.id)

    ready = [(s.order, i, s.id) for i, s in enumerate(plan.steps) if indegree[s.id] == 0]
    heapq.heapify(ready)
    position = {s.id: i for i, s in enumerate(plan.steps)}

    ordered: list[Step] = []
    while ready:
        _, _, step_id = heapq.heappop(ready)
        ordered.append(by_id[step_id])
        for child in dependents[step_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(ready, (by_id[child].order, position[child], child))

    if len(ordered) != len(plan.steps):
        placed = {s.id for s in ordered}
        remaining = tuple(s.id for s in plan.steps if s.id not in placed)
        raise PlanCycleError(
            f"dependency cycle among steps: {', '.join(remaining)}", step_ids=remaining
        )
    return ordered


class ExecutionEngine:
    """Runs plans through a sandbox gate and an optional host executor."""

    def __init__(self, gate: SandboxGate, host_executor: HostExecutor | None = None):
        self.gate = gate
        self.host_executor = host_executor

    def _run_on_host(self, record: ExecutionRecord, sandbox: SandboxContext) -> ExecutionRecord:
        if self.host_executor is None or record.state is not RecordState.PENDING:
            return record

        request = ExecutionRequest(
            record_id=record.record_id,
            sandbox_id=record.sandbox_id,
            command=record.command,
            timeout_ms=record.timeout_ms,
            cwd=record.cwd,
            env=dict(sandbox.options.env),
        )
        try:
            outcome = self.host_executor.run(request)
        except Exception as exc:
            logger.warning("Host executor raised for %r: %s", record.command, exc)
            outcome = HostOutcome(
                stderr=f"error: host executor raised {type(exc).__name__}: {exc}",
                exit_code=-1,
            )
        return self.gate.record_result(record, outcome)

    def _run_step(self, step: Step, sandbox: SandboxContext) -> StepOutcome:
        record = self.gate.execute(step.action, sandbox)
        record = self._run_on_host(record, sandbox)
        validation = self.gate.validate(record)

        if record.blocked:
            status = OutcomeStatus.BLOCKED
            reason = record.blocked_by
        elif validation.success:
            status = OutcomeStatus.SUCCESS
            reason = None
        else:
            status = OutcomeStatus.FAILED
            reason = "; ".join(validation.issues) or None

        return StepOutcome(
            step_id=step.id,
            order=step.order,
            action=step.action,
            status=status,
            execution=record,
            validation=validation,
            reason=reason,
        )

    def execute(
        self,
        plan: ExecutionPlan,
        sandbox: SandboxContext | None = None,
        *,
        stop_on_failure: bool = True,
        on_step_start: StepCallback | None = None,
        on_step_complete: OutcomeCallback | None = None,
    ) -> ExecutionResult:
        started_at = datetime.now(UTC)
        order = resolve_execution_order(plan)

        owns_sandbox = sandbox is None
        if sandbox is None:
            sandbox = self.gate.create()

        results: list[StepOutcome] = []
        statuses: dict[str, OutcomeStatus] = {}
        stopped = False

        try:
            for step in order:
                if step.status is StepStatus.COMPLETED:
                    outcome = StepOutcome(
                        step_id=step.id,
                        order=step.order,
                        action=step.action,
                        status=OutcomeStatus.SUCCESS,
                        reason="Completed in a previous attempt",
                    )
                elif stopped:
                    outcome = StepOutcome(
                        step_id=step.id,
                        order=step.order,
                        action=step.action,
                        status=OutcomeStatus.SKIPPED,
                        reason="Stopped after earlier failure",
                    )
                elif any(statuses.get(dep) is not OutcomeStatus.SUCCESS for dep in step.dependencies):
                    outcome = StepOutcome(
                        step_id=step.id,
                        order=step.order,
                        action=step.action,
                        status=OutcomeStatus.SKIPPED,
                        reason="Dependencies not completed",
                    )
                else:
                    if on_step_start is not None:
                        on_step_start(step)
                    outcome = self._run_step(step, sandbox)
                    logger.debug("Step %s -> %s", step.id, outcome.status.value)

                results.append(outcome)
                statuses[step.id] = outcome.status
                if on_step_complete is not None:
                    on_step_complete(step, outcome)

                if stop_on_failure and outcome.status in (OutcomeStatus.FAILED, OutcomeStatus.BLOCKED):
                    stopped = True
        finally:
            if owns_sandbox:
                sandbox_stats = self.gate.cleanup(sandbox).stats
            else:
                sandbox_stats = self.gate.stats(sandbox)

        completed = sum(1 for r in results if r.status is OutcomeStatus.SUCCESS)
        return ExecutionResult(
            plan=plan,
            sandbox_id=sandbox.id,
            started_at=started_at,
            completed_at=datetime.now(UTC),
            results=tuple(results),
            success=completed == len(plan.steps),
            steps_completed=completed,
            steps_total=len(plan.steps),
            sandbox_stats=sandbox_stats,
        )
