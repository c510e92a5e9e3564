"""Cognitive engine.

Ties the router, fast responder and deliberate engine into one entry
point, and feeds outcome reports back into the router's threshold.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any

from ..collaborators import HostExecutor, MemorySearch, PatternStore, ToolSuggester
from ..errors import InvalidInputError
from ..models import FastResult
from ..rules import BlockRule, RuleTables, default_rules, load_rules
from ..settings import Settings
from ..stores import JsonPatternStore
from .config import CognitiveConfig
from .deliberate import DeliberateEngine, SolveOptions, SolveResult
from .fast import EscalationRequest, FastResponder, escalate
from .planner import Task
from .router import CognitivePath, ComplexityRouter, RoutingDecision, ThresholdAdjustment
from .sandbox import SandboxGate, SandboxOptions

logger = logging.getLogger(__name__)

RECENT_DOMAIN_WINDOW = 10


@dataclass(frozen=True)
class ProcessingResult:
    """Result of processing one input."""

    path: CognitivePath
    routing: RoutingDecision
    fast: FastResult | None = None
    deliberate: SolveResult | None = None
    escalation: EscalationRequest | None = None

    @property
    def escalated(self) -> bool:
        return self.escalation is not None

    @property
    def success(self) -> bool:
        if self.deliberate is not None:
            return self.deliberate.success
        return self.fast is not None and not self.fast.should_escalate


class SessionState:
    """Per-engine session signals fed to the router's novelty factor."""

    def __init__(self) -> None:
        self.depth = 0
        self.recent_domains: deque[str] = deque(maxlen=RECENT_DOMAIN_WINDOW)
        self._domain_outcomes: dict[str, list[int]] = {}
        self.last_domains: tuple[str, ...] = ()

    def routing_context(self) -> dict[str, Any]:
        return {
            "session_depth": self.depth,
            "recent_domains": list(self.recent_domains),
            "domain_success_rates": self.domain_success_rates(),
        }

    def domain_success_rates(self) -> dict[str, float]:
        return {
            domain: successes / total
            for domain, (successes, total) in self._domain_outcomes.items()
            if total
        }

    def observe(self, domains: tuple[str, ...]) -> None:
        self.depth += 1
        self.last_domains = domains
        for domain in domains:
            if domain in self.recent_domains:
                self.recent_domains.remove(domain)
            self.recent_domains.append(domain)

    def record_outcome(self, success: bool) -> None:
        for domain in self.last_domains:
            successes, total = self._domain_outcomes.get(domain, [0, 0])
            self._domain_outcomes[domain] = [successes + (1 if success else 0), total + 1]

    def reset(self) -> None:
        self.depth = 0
        self.recent_domains.clear()
        self._domain_outcomes.clear()
        self.last_domains = ()


class CognitiveEngine:
    """Routes inputs to the fast or deliberate path and learns from outcomes.

    All adaptive state (threshold, history, pattern cache, session signals)
    lives on the instance; separate engines do not share it.
    """

    def __init__(
        self,
        config: CognitiveConfig | None = None,
        rules: RuleTables | None = None,
        pattern_store: PatternStore | None = None,
        memory: MemorySearch | None = None,
        tools: ToolSuggester | None = None,
        host_executor: HostExecutor | None = None,
    ):
        self.config = config or CognitiveConfig()
        self.rules = rules or default_rules()

        sandbox_cfg = self.config.sandbox
        defaults = SandboxOptions(
            timeout_ms=sandbox_cfg.timeout_ms,
            max_lifetime_ms=sandbox_cfg.max_lifetime_ms,
            max_output_bytes=sandbox_cfg.max_output_bytes,
            allow_network=sandbox_cfg.allow_network,
            allow_writes=sandbox_cfg.allow_writes,
            extra_blocked_patterns=tuple(
                BlockRule.from_strings(p["pattern"], p["label"])
                for p in sandbox_cfg.extra_blocked_patterns
            ),
        )

        self.router = ComplexityRouter(self.config.router, self.rules)
        self.fast = FastResponder(
            store=pattern_store,
            memory=memory,
            tools=tools,
            config=self.config.fast,
            rules=self.rules,
        )
        self.deliberate = DeliberateEngine(
            gate=SandboxGate(self.rules, defaults),
            host_executor=host_executor,
            config=self.config.deliberate,
            rules=self.rules,
        )
        self.session = SessionState()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        memory: MemorySearch | None = None,
        tools: ToolSuggester | None = None,
        host_executor: HostExecutor | None = None,
    ) -> CognitiveEngine:
        """Engine wired from the TOML config, rule overlay and JSON pattern store."""
        if settings is None:
            from ..settings import settings as default_settings

            settings = default_settings
        return cls(
            config=CognitiveConfig.load_from_file(settings.config_path),
            rules=load_rules(settings.rules_path),
            pattern_store=JsonPatternStore(settings.patterns_dir),
            memory=memory,
            tools=tools,
            host_executor=host_executor,
        )

    def _task_for(self, text: str, context: dict[str, Any]) -> Task:
        return Task(
            id=context.get("task_id") or f"task-{uuid.uuid4().hex[:12]}",
            description=text,
            type=context.get("type"),
            domain=context.get("domain"),
            context={k: v for k, v in context.items() if k not in ("task_id", "type", "domain")},
        )

    async def _solve(self, text: str, context: dict[str, Any]) -> SolveResult:
        task = self._task_for(text, context)
        options = SolveOptions(max_retries=self.config.deliberate.max_retries)
        return await asyncio.to_thread(self.deliberate.solve, task, options)

    async def process(self, text: str, context: dict[str, Any] | None = None) -> ProcessingResult:
        """Route ``text`` and answer it on the chosen path."""
        if not isinstance(text, str) or not text.strip():
            raise InvalidInputError("input must be a non-empty string", code="empty_input")
        context = dict(context or {})

        routing_context = {**self.session.routing_context(), **context}
        decision = self.router.route(text, routing_context)
        self.session.observe(decision.domains)

        if decision.path is CognitivePath.FAST:
            fast = await self.fast.respond(text, context)
            if not fast.should_escalate:
                return ProcessingResult(path=decision.path, routing=decision, fast=fast)

            escalation = escalate(text, fast.escalate_reason or "below_threshold")
            logger.info("Escalating to deliberate path: %s", escalation.reason)
            solved = await self._solve(text, context)
            return ProcessingResult(
                path=decision.path,
                routing=decision,
                fast=fast,
                deliberate=solved,
                escalation=escalation,
            )

        solved = await self._solve(text, context)
        return ProcessingResult(path=decision.path, routing=decision, deliberate=solved)

    def report_outcome(
        self, path: CognitivePath, success: bool, pattern_id: str | None = None
    ) -> ThresholdAdjustment:
        """Feed back whether an answer on ``path`` was actually useful."""
        if path is CognitivePath.FAST:
            self.session.record_outcome(success)
            if pattern_id is not None:
                self.fast.record_outcome(pattern_id, success)
        return self.router.adapt(path, success)

    def stats(self) -> dict[str, Any]:
        return {
            "routing": self.router.stats(),
            "fast": self.fast.diagnostics(),
            "session": {
                "depth": self.session.depth,
                "recent_domains": list(self.session.recent_domains),
                "domain_success_rates": self.session.domain_success_rates(),
            },
        }

    def reset(self) -> None:
        self.router.reset()
        self.fast.reset()
        self.session.reset()
