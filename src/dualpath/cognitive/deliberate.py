"""Deliberate engine (System 2).

Plan -> Execute -> Reflect, retried with corrections up to a bounded
number of attempts. Each attempt gets a fresh sandbox.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from ..collaborators import HostExecutor
from ..rules import RuleTables, default_rules
from .config import DeliberateConfig
from .executor import ExecutionEngine, ExecutionResult
from .planner import (
    TEAM_THRESHOLD,
    ExecutionPlan,
    PlanOptions,
    Task,
    TaskPlanner,
    TeamRecommendation,
)
from .reflection import ReflectionResult, Reflector
from .sandbox import SandboxContext, SandboxGate, SandboxOptions

logger = logging.getLogger(__name__)

SYSTEM2_THRESHOLD = 0.3

ASSESSMENT_WEIGHTS: dict[str, float] = {
    "description_length": 0.15,
    "multi_step": 0.25,
    "domain_complexity": 0.30,
    "context_richness": 0.10,
    "type_complexity": 0.20,
}

AttemptCallback = Callable[[int, str, Any], None]


@dataclass(frozen=True)
class SolveOptions:
    max_retries: int | None = None
    plan_options: PlanOptions | None = None
    sandbox_options: SandboxOptions | None = None
    stop_on_failure: bool | None = None
    on_attempt: AttemptCallback | None = None


@dataclass(frozen=True)
class Attempt:
    number: int
    plan: ExecutionPlan
    execution: ExecutionResult
    reflection: ReflectionResult


@dataclass(frozen=True)
class SolveResult:
    task_id: str
    success: bool
    attempts: int
    history: tuple[Attempt, ...]
    final_result: ExecutionResult | None
    team_recommendation: TeamRecommendation | None
    duration_ms: float


@dataclass(frozen=True)
class ComplexityAssessment:
    score: float
    factors: dict[str, float]
    recommendation: str  # "system1" | "system2" | "team"


class DeliberateEngine:
    """Plans, executes and reflects on tasks until they succeed or run out of attempts."""

    def __init__(
        self,
        gate: SandboxGate | None = None,
        host_executor: HostExecutor | None = None,
        planner: TaskPlanner | None = None,
        reflector: Reflector | None = None,
        config: DeliberateConfig | None = None,
        rules: RuleTables | None = None,
    ):
        self.rules = rules or default_rules()
        self.config = config or DeliberateConfig()
        self.gate = gate or SandboxGate(self.rules)
        self.planner = planner or TaskPlanner(self.rules)
        self.reflector = reflector or Reflector(self.rules)
        self.executor = ExecutionEngine(self.gate, host_executor)

    def plan(self, task: Task, options: PlanOptions | None = None) -> ExecutionPlan:
        return self.planner.plan(task, options or PlanOptions(max_steps=self.config.max_steps))

    def execute(
        self,
        plan: ExecutionPlan,
        sandbox: SandboxContext | None = None,
        *,
        stop_on_failure: bool | None = None,
    ) -> ExecutionResult:
        if stop_on_failure is None:
            stop_on_failure = self.config.stop_on_failure
        return self.executor.execute(plan, sandbox, stop_on_failure=stop_on_failure)

    def reflect(self, execution: ExecutionResult) -> ReflectionResult:
        return self.reflector.reflect(execution)

    def solve(self, task: Task, options: SolveOptions | None = None) -> SolveResult:
        """Run attempts until success, an unretryable reflection, or the attempt cap."""
        options = options or SolveOptions()
        max_retries = max(1, options.max_retries or self.config.max_retries)
        stop_on_failure = (
            self.config.stop_on_failure if options.stop_on_failure is None else options.stop_on_failure
        )
        notify = options.on_attempt or (lambda attempt, phase, data: None)
        started = time.perf_counter()

        history: list[Attempt] = []
        current = task
        final: ExecutionResult | None = None
        team: TeamRecommendation | None = None

        for number in range(1, max_retries + 1):
            notify(number, "plan", current)
            plan = self.plan(current, options.plan_options)
            if number == 1:
                team = plan.team_recommendation

            notify(number, "execute", plan)
            sandbox = self.gate.create(options.sandbox_options)
            try:
                execution = self.executor.execute(plan, sandbox, stop_on_failure=stop_on_failure)
            finally:
                self.gate.cleanup(sandbox)

            notify(number, "reflect", execution)
            reflection = self.reflect(execution)
            history.append(Attempt(number, plan, execution, reflection))
            final = execution

            if execution.success:
                break
            if not reflection.retry.should_retry or number >= max_retries:
                break

            adjusted = reflection.retry.adjusted_plan
            if adjusted is not None:
                current = replace(
                    current,
                    context={
                        **current.context,
                        "previous_attempt": number,
                        "corrections": reflection.corrections,
                        "adjusted_steps": adjusted.steps,
                    },
                )
            logger.info(
                "Retrying %s (attempt %d/%d): %s",
                task.id,
                number + 1,
                max_retries,
                reflection.retry.reason,
            )

        duration_ms = (time.perf_counter() - started) * 1000
        success = final is not None and final.success
        logger.info(
            "Solved %s: success=%s attempts=%d duration=%.1fms",
            task.id,
            success,
            len(history),
            duration_ms,
        )
        return SolveResult(
            task_id=task.id,
            success=success,
            attempts=len(history),
            history=tuple(history),
            final_result=final,
            team_recommendation=team,
            duration_ms=duration_ms,
        )

    def assess_complexity(self, task: Task | None) -> ComplexityAssessment:
        """Coarse routing hint that does not build a plan."""
        if task is None or not (task.description or "").strip():
            return ComplexityAssessment(score=0.0, factors={}, recommendation="system1")

        desc = task.description.lower()
        if task.type is None:
            type_complexity = 0.3
        elif task.type in self.rules.complex_task_types:
            type_complexity = 0.8
        elif task.type in self.rules.simple_task_types:
            type_complexity = 0.1
        else:
            type_complexity = 0.4

        factors = {
            "description_length": min(1.0, len(desc) / 500),
            "multi_step": min(1.0, self.rules.multi_step_words.count(desc) / 3),
            "domain_complexity": min(1.0, self.rules.domain_complexity_words.count(desc) / 3),
            "context_richness": min(1.0, len(task.context) / 5),
            "type_complexity": type_complexity,
        }
        score = round(sum(factors[k] * w for k, w in ASSESSMENT_WEIGHTS.items()), 2)

        if score >= TEAM_THRESHOLD:
            recommendation = "team"
        elif score >= SYSTEM2_THRESHOLD:
            recommendation = "system2"
        else:
            recommendation = "system1"
        return ComplexityAssessment(score=score, factors=factors, recommendation=recommendation)
