"""Complexity router.

Scores an input on five weighted factors and sends it down the fast path
when the score is below an adaptive threshold, the deliberate path
otherwise. The threshold drifts with reported outcomes: a fast-path
failure lowers it, a run of fast-path successes raises it.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import InvalidInputError
from ..rules import RuleTables, default_rules
from .config import (
    ADAPT_RATE_MAX,
    ADAPT_RATE_MIN,
    THRESHOLD_MAX,
    THRESHOLD_MIN,
    RouterConfig,
    clamp,
)

logger = logging.getLogger(__name__)

WEIGHTS: dict[str, float] = {
    "steps": 0.25,
    "domains": 0.20,
    "uncertainty": 0.20,
    "risk": 0.20,
    "novelty": 0.15,
}

TREND_MIN_ENTRIES = 10
TREND_SPLIT = 0.8
TREND_DELTA = 0.15

_SENTENCE_SPLIT = re.compile(r"[.!?;]\s+")


class CognitivePath(Enum):
    FAST = "fast"
    DELIBERATE = "deliberate"


@dataclass(frozen=True)
class RoutingDecision:
    score: float
    path: CognitivePath
    confidence: float
    threshold: float
    factors: dict[str, float]
    domains: tuple[str, ...] = ()


@dataclass
class RoutingRecord:
    """One entry of the routing history; ``success`` is filled in by ``adapt``."""

    timestamp: float
    input: str
    score: float
    path: CognitivePath
    confidence: float
    duration_ms: float
    success: bool | None = None


@dataclass(frozen=True)
class ThresholdAdjustment:
    previous: float
    new: float
    direction: str  # "lowered" | "raised" | "unchanged"
    streak: int


class ComplexityRouter:
    """Routes inputs between the fast and deliberate paths.

    Holds process-lifetime state (threshold, success streak, bounded
    history); ``reset`` restores construction defaults.
    """

    def __init__(self, config: RouterConfig | None = None, rules: RuleTables | None = None):
        self.config = config or RouterConfig()
        self.rules = rules or default_rules()
        self._initial_threshold = clamp(self.config.threshold, THRESHOLD_MIN, THRESHOLD_MAX)
        self._initial_adapt_rate = clamp(self.config.adapt_rate, ADAPT_RATE_MIN, ADAPT_RATE_MAX)
        self._threshold = self._initial_threshold
        self._adapt_rate = self._initial_adapt_rate
        self._streak = 0
        self._history: deque[RoutingRecord] = deque(maxlen=self.config.max_history)

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def adapt_rate(self) -> float:
        return self._adapt_rate

    @property
    def streak(self) -> int:
        return self._streak

    @property
    def history(self) -> list[RoutingRecord]:
        return list(self._history)

    def configure(self, *, threshold: float | None = None, adapt_rate: float | None = None) -> None:
        if threshold is not None:
            self._threshold = clamp(threshold, THRESHOLD_MIN, THRESHOLD_MAX)
        if adapt_rate is not None:
            self._adapt_rate = clamp(adapt_rate, ADAPT_RATE_MIN, ADAPT_RATE_MAX)

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def detect_domains(self, text: str) -> list[str]:
        return [name for name, words in self.rules.domains.items() if words.any(text)]

    def estimate_steps(self, text: str) -> float:
        count = 1
        for pattern in self.rules.step_patterns:
            count += len(pattern.findall(text))

        segments = [s for s in text.split(",") if len(s.strip()) > 3]
        if len(segments) > 1:
            count += len(segments) - 1

        count += len(self.rules.conjunction_pattern.findall(text))

        sentences = [s for s in _SENTENCE_SPLIT.split(text) if len(s.strip()) > 3]
        if len(sentences) > 2:
            count += len(sentences) // 2

        if len(text) > 150:
            count += 1
        if len(text) > 300:
            count += 1

        return min(1.0, (count - 1) * 0.2)

    @staticmethod
    def _domain_factor(domain_count: int) -> float:
        if domain_count == 0:
            return 0.0
        if domain_count == 1:
            return 0.2
        return min(1.0, 0.25 + 0.25 * domain_count)

    def _uncertainty_factor(self, text: str) -> float:
        hits = self.rules.uncertainty.count(text) + min(2, text.count("?"))
        return min(1.0, hits * 0.25)

    def _risk_factor(self, text: str) -> float:
        return min(1.0, self.rules.risk.count(text) * 0.3)

    @staticmethod
    def _novelty_factor(domains: list[str], context: dict[str, Any]) -> float:
        depth = context.get("session_depth")
        if depth is None:
            return 0.3

        novelty = 0.0
        if depth == 0:
            novelty += 0.4

        recent = context.get("recent_domains") or []
        if recent and any(d not in recent for d in domains):
            novelty += 0.3

        rates = context.get("domain_success_rates") or {}
        for domain in domains:
            rate = rates.get(domain)
            if rate is not None and rate < 0.5:
                novelty += 0.2

        return min(1.0, novelty)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def classify(self, text: str, context: dict[str, Any] | None = None) -> RoutingDecision:
        """Score ``text`` and pick a path. Pure: no state is changed."""
        if not isinstance(text, str):
            raise InvalidInputError(f"input must be a string, got {type(text).__name__}")
        context = context or {}

        domains = self.detect_domains(text)
        factors = {
            "steps": self.estimate_steps(text),
            "domains": self._domain_factor(len(domains)),
            "uncertainty": self._uncertainty_factor(text),
            "risk": self._risk_factor(text),
            "novelty": self._novelty_factor(domains, context),
        }
        score = clamp(sum(factors[name] * weight for name, weight in WEIGHTS.items()), 0.0, 1.0)
        threshold = self._threshold
        path = CognitivePath.FAST if score < threshold else CognitivePath.DELIBERATE
        confidence = min(1.0, 0.5 + abs(score - threshold) * 2)

        return RoutingDecision(
            score=score,
            path=path,
            confidence=confidence,
            threshold=threshold,
            factors=factors,
            domains=tuple(domains),
        )

    def route(self, text: str, context: dict[str, Any] | None = None) -> RoutingDecision:
        """Classify and record the decision in the bounded history."""
        started = time.perf_counter()
        decision = self.classify(text, context)
        duration_ms = (time.perf_counter() - started) * 1000

        self._history.append(
            RoutingRecord(
                timestamp=time.time(),
                input=text[:200],
                score=decision.score,
                path=decision.path,
                confidence=decision.confidence,
                duration_ms=duration_ms,
            )
        )
        logger.info(
            "Routed to %s (score=%.2f threshold=%.2f confidence=%.2f domains=%s)",
            decision.path.value,
            decision.score,
            decision.threshold,
            decision.confidence,
            ",".join(decision.domains) or "-",
        )
        return decision

    def adapt(self, path: CognitivePath, success: bool) -> ThresholdAdjustment:
        """Move the threshold based on the outcome of a routed input."""
        previous = self._threshold

        for record in reversed(self._history):
            if record.path is path and record.success is None:
                record.success = success
                break

        if path is CognitivePath.FAST and not success:
            self._threshold = max(THRESHOLD_MIN, self._threshold - self._adapt_rate)
            self._streak = 0
        elif path is CognitivePath.FAST and success:
            self._streak += 1
            if self._streak >= self.config.success_streak:
                self._threshold = min(THRESHOLD_MAX, self._threshold + self._adapt_rate)
                self._streak = 0

        if self._threshold < previous:
            direction = "lowered"
        elif self._threshold > previous:
            direction = "raised"
        else:
            direction = "unchanged"

        if direction != "unchanged":
            logger.info(
                "Routing threshold %s: %.3f -> %.3f", direction, previous, self._threshold
            )
        return ThresholdAdjustment(
            previous=previous, new=self._threshold, direction=direction, streak=self._streak
        )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _trend(self, history: list[RoutingRecord]) -> str:
        if len(history) < TREND_MIN_ENTRIES:
            return "stable"
        split = math.floor(len(history) * TREND_SPLIT)
        early, recent = history[:split], history[split:]

        def fast_ratio(entries: list[RoutingRecord]) -> float:
            return sum(1 for e in entries if e.path is CognitivePath.FAST) / len(entries)

        delta = fast_ratio(recent) - fast_ratio(early)
        if delta > TREND_DELTA:
            return "shifting_to_fast"
        if delta < -TREND_DELTA:
            return "shifting_to_deliberate"
        return "stable"

    def stats(self) -> dict[str, Any]:
        history = list(self._history)
        total = len(history)

        def success_rate(path: CognitivePath) -> float | None:
            tagged = [r for r in history if r.path is path and r.success is not None]
            if not tagged:
                return None
            return round(sum(1 for r in tagged if r.success) / len(tagged), 2)

        fast_count = sum(1 for r in history if r.path is CognitivePath.FAST)
        return {
            "total_routed": total,
            "fast_count": fast_count,
            "deliberate_count": total - fast_count,
            "fast_ratio": round(fast_count / total, 2) if total else 0.0,
            "avg_score": round(sum(r.score for r in history) / total, 2) if total else 0.0,
            "avg_confidence": round(sum(r.confidence for r in history) / total, 2) if total else 0.0,
            "avg_duration_ms": round(sum(r.duration_ms for r in history) / total, 3) if total else 0.0,
            "current_threshold": round(self._threshold, 3),
            "success_rate": {
                CognitivePath.FAST.value: success_rate(CognitivePath.FAST),
                CognitivePath.DELIBERATE.value: success_rate(CognitivePath.DELIBERATE),
            },
            "recent_trend": self._trend(history),
        }

    def reset(self) -> None:
        self._threshold = self._initial_threshold
        self._adapt_rate = self._initial_adapt_rate
        self._streak = 0
        self._history.clear()
