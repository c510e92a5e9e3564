"""Plan phase of the deliberate engine.

Decomposes a task description into ordered steps with a linear dependency
chain, tags each step's complexity, flags risks and scores the plan as a
whole. Plans are immutable; a retry gets a new plan built from adjusted
steps.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..errors import InvalidPlanError, InvalidTaskError
from ..rules import RuleTables, default_rules

logger = logging.getLogger(__name__)

TEAM_THRESHOLD = 0.6
PLATOON_THRESHOLD = 0.85
MIN_ACTION_LENGTH = 5

_LIST_ITEM = re.compile(r"^\s*(?:\d+[.)]\s*|[-*]\s+)(.+)$", re.MULTILINE)
_CUE_PHRASE = re.compile(
    r"\b(?:first|then|next|after that|finally)\b[,:]?\s*(.+?)(?:\.(?:\s|$)|$)",
    re.IGNORECASE | re.MULTILINE,
)


class Complexity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RiskSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Task:
    id: str
    description: str
    type: str | None = None
    domain: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Step:
    id: str
    order: int
    action: str
    estimated_complexity: Complexity
    dependencies: tuple[str, ...] = ()
    status: StepStatus = StepStatus.PENDING
    corrected: bool = False


@dataclass(frozen=True)
class Dependency:
    from_step: str
    to_step: str


@dataclass(frozen=True)
class PlanRisk:
    step_id: str
    description: str
    mitigation: str
    severity: RiskSeverity


@dataclass(frozen=True)
class TeamRecommendation:
    """Advisory only; nothing in this package acts on it."""

    level: str  # "squad" | "platoon"
    complexity: float
    domain: str
    teammates: tuple[str, ...]
    reason: str
    pattern: str = "leader"


@dataclass(frozen=True)
class PlanOptions:
    max_steps: int = 10
    analyze_dependencies: bool = True
    assess_risks: bool = True


@dataclass(frozen=True)
class ExecutionPlan:
    task_id: str
    steps: tuple[Step, ...]
    dependencies: tuple[Dependency, ...]
    risks: tuple[PlanRisk, ...]
    complexity: float
    team_recommendation: TeamRecommendation | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        ids = {s.id for s in self.steps}
        if len(ids) != len(self.steps):
            raise InvalidPlanError(f"plan {self.task_id} has duplicate step ids")
        for step in self.steps:
            missing = [d for d in step.dependencies if d not in ids]
            if missing:
                raise InvalidPlanError(
                    f"step {step.id} depends on unknown step(s): {', '.join(missing)}"
                )

    def step(self, step_id: str) -> Step | None:
        return next((s for s in self.steps if s.id == step_id), None)


class TaskPlanner:
    """Builds execution plans from task descriptions."""

    def __init__(self, rules: RuleTables | None = None):
        self.rules = rules or default_rules()

    def plan(self, task: Task, options: PlanOptions | None = None) -> ExecutionPlan:
        if not isinstance(task, Task) or not task.id or not (task.description or "").strip():
            raise InvalidTaskError("task must have an id and a description")
        options = options or PlanOptions()

        adjusted = task.context.get("adjusted_steps")
        if adjusted:
            steps = list(adjusted)
        else:
            steps = self.decompose(task.description, options.max_steps)

        dependencies = self.analyze_dependencies(steps) if options.analyze_dependencies else []
        if not options.analyze_dependencies:
            steps = [
                Step(
                    id=s.id,
                    order=s.order,
                    action=s.action,
                    estimated_complexity=s.estimated_complexity,
                    status=s.status,
                    corrected=s.corrected,
                )
                for s in steps
            ]
        risks = self.assess_risks(steps) if options.assess_risks else []
        complexity = self.estimate_complexity(steps, dependencies, risks)

        plan = ExecutionPlan(
            task_id=task.id,
            steps=tuple(steps),
            dependencies=tuple(dependencies),
            risks=tuple(risks),
            complexity=complexity,
            team_recommendation=self.recommend_team(complexity, task),
        )
        logger.debug(
            "Planned %s: %d step(s), %d risk(s), complexity=%.2f",
            task.id,
            len(plan.steps),
            len(plan.risks),
            complexity,
        )
        return plan

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    def _extract_actions(self, description: str) -> list[str]:
        items = [m.strip() for m in _LIST_ITEM.findall(description)]
        actions = [a for a in items if len(a) > MIN_ACTION_LENGTH]
        if actions:
            return actions
        cues = [m.strip() for m in _CUE_PHRASE.findall(description)]
        return [a for a in cues if len(a) > MIN_ACTION_LENGTH]

    def decompose(self, description: str, max_steps: int = 10) -> list[Step]:
        actions = self._extract_actions(description)[:max_steps]
        if not actions:
            actions = [description.strip()]

        steps: list[Step] = []
        for i, action in enumerate(actions, start=1):
            steps.append(
                Step(
                    id=f"step-{i}",
                    order=i,
                    action=action,
                    estimated_complexity=self.estimate_step_complexity(action),
                    dependencies=(f"step-{i - 1}",) if i > 1 else (),
                )
            )
        return steps

    def estimate_step_complexity(self, action: str) -> Complexity:
        if self.rules.high_complexity.any(action):
            return Complexity.HIGH
        if self.rules.low_complexity.any(action):
            return Complexity.LOW
        return Complexity.MEDIUM

    @staticmethod
    def analyze_dependencies(steps: list[Step]) -> list[Dependency]:
        return [Dependency(from_step=dep, to_step=s.id) for s in steps for dep in s.dependencies]

    def assess_risks(self, steps: list[Step]) -> list[PlanRisk]:
        risks: list[PlanRisk] = []
        for step in steps:
            for rule in self.rules.risk_rules:
                if rule.keywords.any(step.action):
                    risks.append(
                        PlanRisk(
                            step_id=step.id,
                            description=rule.description,
                            mitigation=rule.mitigation,
                            severity=RiskSeverity(rule.severity),
                        )
                    )
            if step.estimated_complexity is Complexity.HIGH:
                risks.append(
                    PlanRisk(
                        step_id=step.id,
                        description="High complexity step may take longer than expected",
                        mitigation="Break into smaller sub-steps if possible",
                        severity=RiskSeverity.LOW,
                    )
                )
        return risks

    @staticmethod
    def estimate_complexity(
        steps: list[Step], dependencies: list[Dependency], risks: list[PlanRisk]
    ) -> float:
        if not steps:
            return 0.0
        step_factor = min(1.0, len(steps) / 10)
        dep_factor = min(1.0, len(dependencies) / (len(steps) - 1)) if len(steps) > 1 else 0.0
        high_risks = sum(1 for r in risks if r.severity is RiskSeverity.HIGH)
        risk_factor = min(1.0, high_risks / 3)
        complex_ratio = sum(1 for s in steps if s.estimated_complexity is Complexity.HIGH) / len(steps)
        return step_factor * 0.3 + dep_factor * 0.2 + risk_factor * 0.25 + complex_ratio * 0.25

    def recommend_team(self, complexity: float, task: Task) -> TeamRecommendation | None:
        if complexity < TEAM_THRESHOLD:
            return None
        domain = task.domain or "general"
        level = "platoon" if complexity >= PLATOON_THRESHOLD else "squad"
        teammates = self.rules.teams.get(domain) or self.rules.teams.get("general", ())
        if level == "platoon":
            teammates = (*teammates, *self.rules.leadership_roles)
        return TeamRecommendation(
            level=level,
            complexity=round(complexity, 3),
            domain=domain,
            teammates=tuple(teammates),
            reason=f"Task complexity ({complexity:.2f}) exceeds team threshold ({TEAM_THRESHOLD})",
        )


def get_plan_summary(plan: ExecutionPlan) -> dict[str, Any]:
    """Display-friendly view of a plan."""
    return {
        "task_id": plan.task_id,
        "total_steps": len(plan.steps),
        "complexity": round(plan.complexity, 3),
        "high_risks": sum(1 for r in plan.risks if r.severity is RiskSeverity.HIGH),
        "team": plan.team_recommendation.level if plan.team_recommendation else None,
        "steps": [
            {
                "id": s.id,
                "action": s.action,
                "complexity": s.estimated_complexity.value,
                "depends_on": list(s.dependencies),
                "status": s.status.value,
            }
            for s in plan.steps
        ],
    }
