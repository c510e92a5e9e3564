"""Fast responder (System 1).

Answers from learned patterns, memory recall or tool history without
planning. Anything it cannot answer with enough confidence is flagged for
escalation to the deliberate engine.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import TypeAdapter

from ..collaborators import MemorySearch, PatternStore, ToolSuggester
from ..errors import record_error
from ..models import (
    FastResult,
    MemoryHit,
    MemoryRecall,
    PatternRecord,
    PatternResponse,
    ToolRecommendation,
    ToolSuggestion,
)
from ..rules import RuleTables, default_rules
from .cache import TTLCache
from .config import FastConfig

logger = logging.getLogger(__name__)

MEMORY_SEARCH_LIMIT = 5
MEMORY_SEARCH_THRESHOLD = 0.2
MEMORY_RELEVANCE_MIN = 0.5
MEMORY_CORROBORATION_BONUS = 0.1
TOOL_SUGGEST_LIMIT = 3
TOOL_SUGGEST_MIN_SCORE = 0.3
TOOL_CONFIDENCE_FACTOR = 0.8

_TOKEN_SPLIT = re.compile(r"""[\s,./\\:;|_\-@#()\[\]{}"'`!?=<>+*&^%$~]+""")

_MEMORY_HITS = TypeAdapter(list[MemoryHit])
_TOOL_SUGGESTIONS = TypeAdapter(list[ToolSuggestion])


@dataclass(frozen=True)
class PatternMatch:
    pattern: PatternRecord | None
    score: float
    matched_keywords: list[str] = field(default_factory=list)
    tokens: int = 0
    patterns_checked: int = 0


@dataclass(frozen=True)
class EscalationRequest:
    """Handoff of an input the fast path could not answer."""

    input: str
    reason: str
    timestamp: datetime


def escalate(text: str, reason: str) -> EscalationRequest:
    return EscalationRequest(input=text, reason=reason, timestamp=datetime.now(UTC))


def escalation_reason(confidence: float, source: str) -> str:
    if confidence == 0:
        return "no_matching_pattern"
    if confidence < 0.3:
        return "very_low_confidence"
    if source == "none":
        return "no_data_source"
    return "below_threshold"


class FastResponder:
    """Pattern, memory and tool based responder.

    Holds the warm pattern cache and three TTL caches (responses, memory
    hits, tool suggestions); ``reset`` drops all of them.
    """

    def __init__(
        self,
        store: PatternStore | None = None,
        memory: MemorySearch | None = None,
        tools: ToolSuggester | None = None,
        config: FastConfig | None = None,
        rules: RuleTables | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.memory = memory
        self.tools = tools
        self.config = config or FastConfig()
        self.rules = rules or default_rules()
        self._clock = clock or (lambda: datetime.now(UTC))

        self._patterns: list[PatternRecord] = []
        self._warmed = False
        self._responses: TTLCache[FastResult] = TTLCache(self.config.response_ttl_seconds)
        self._memory_cache: TTLCache[list[MemoryHit]] = TTLCache(self.config.memory_ttl_seconds)
        self._tool_cache: TTLCache[list[ToolSuggestion]] = TTLCache(self.config.tool_ttl_seconds)

    # ------------------------------------------------------------------
    # Pattern cache
    # ------------------------------------------------------------------

    def warm(self) -> int:
        """Load the most-used patterns from the store into memory."""
        loaded: list[PatternRecord] = []
        if self.store is not None:
            try:
                loaded = list(self.store.load_patterns())
            except Exception as exc:
                record_error(source="fast", operation="load_patterns", exc=exc)
                loaded = []

        loaded.sort(key=lambda p: p.use_count, reverse=True)
        self._patterns = loaded[: self.config.max_warm_patterns]
        self._warmed = True
        logger.debug("Warm cache loaded %d pattern(s)", len(self._patterns))
        return len(self._patterns)

    @property
    def patterns(self) -> list[PatternRecord]:
        return list(self._patterns)

    def save_pattern(self, record: PatternRecord) -> None:
        """Add or replace a pattern in the warm cache and the store."""
        if not self._warmed:
            self.warm()
        self._replace_pattern(record)
        self._persist(record)

    def _replace_pattern(self, record: PatternRecord) -> None:
        for i, existing in enumerate(self._patterns):
            if existing.id == record.id:
                self._patterns[i] = record
                return
        self._patterns.append(record)
        self._patterns.sort(key=lambda p: p.use_count, reverse=True)
        del self._patterns[self.config.max_warm_patterns :]

    def _persist(self, record: PatternRecord) -> None:
        if self.store is None:
            return
        try:
            self.store.save_pattern(record)
        except Exception as exc:
            record_error(
                source="fast",
                operation="save_pattern",
                exc=exc,
                context={"pattern_id": record.id},
            )

    def record_outcome(self, pattern_id: str, success: bool) -> PatternRecord | None:
        """Fold one observed outcome into a pattern's running success rate."""
        if not self._warmed:
            self.warm()
        current = next((p for p in self._patterns if p.id == pattern_id), None)
        if current is None:
            logger.debug("Outcome for unknown pattern %s ignored", pattern_id)
            return None

        old_count = current.use_count
        new_count = old_count + 1
        if old_count > 0:
            new_rate = (current.success_rate * old_count + (1 if success else 0)) / new_count
        else:
            new_rate = 1.0 if success else 0.0

        updated = current.model_copy(
            update={
                "use_count": new_count,
                "success_rate": round(new_rate, 3),
                "last_used_at": self._clock(),
            }
        )
        self._replace_pattern(updated)
        self._persist(updated)
        if not success:
            self._responses.clear()
        return updated

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> list[str]:
        if not text:
            return []
        tokens = [t for t in _TOKEN_SPLIT.split(text.lower()) if 2 <= len(t) <= 60]
        return tokens[: self.config.max_input_tokens]

    def _score_pattern(
        self, pattern: PatternRecord, tokens: set[str], context: dict[str, Any]
    ) -> tuple[float, list[str]]:
        matched = sorted(kw for kw in pattern.keywords if kw in tokens)
        score = len(matched) / len(pattern.keywords)

        if context.get("domain") and pattern.domain == context["domain"]:
            score += 0.1
        if context.get("command") and pattern.command == context["command"]:
            score += 0.1
        if pattern.use_count > 0:
            score *= 0.7 + 0.3 * pattern.success_rate
        if pattern.last_used_at is not None:
            age = self._clock() - pattern.last_used_at
            if age < timedelta(days=1):
                score += 0.05
            elif age < timedelta(days=7):
                score += 0.02

        return min(1.0, score), matched

    def match(self, text: str, context: dict[str, Any] | None = None) -> PatternMatch:
        """Best-scoring loaded pattern, or no pattern if it scores below the minimum."""
        context = context or {}
        tokens = self.tokenize(text)
        if not tokens:
            return PatternMatch(pattern=None, score=0.0)

        token_set = set(tokens)
        best: PatternRecord | None = None
        best_score = 0.0
        best_matched: list[str] = []
        for pattern in self._patterns:
            score, matched = self._score_pattern(pattern, token_set, context)
            if score > best_score:
                best, best_score, best_matched = pattern, score, matched

        if best_score < self.config.min_pattern_score:
            best = None
        return PatternMatch(
            pattern=best,
            score=round(best_score, 3),
            matched_keywords=best_matched if best else [],
            tokens=len(tokens),
            patterns_checked=len(self._patterns),
        )

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def tool_context_key(self, text: str, context: dict[str, Any]) -> str:
        tokens = set(self.tokenize(text))
        operation = next(
            (op for op, words in self.rules.operations.items() if tokens.intersection(words)),
            "general",
        )
        target = next(
            (t for t, words in self.rules.targets.items() if tokens.intersection(words)),
            context.get("domain") or "code",
        )
        return f"{operation}:{target}".lower()

    async def _search_memory(self, text: str, context: dict[str, Any]) -> list[MemoryHit]:
        if self.memory is None:
            return []
        key = f"mem::{text[:100]}"
        cached = self._memory_cache.get(key)
        if cached is not None:
            return cached

        query = " ".join(
            part
            for part in (text, context.get("command"), context.get("domain"), context.get("project"))
            if part
        )
        try:
            raw = await self.memory.search(
                query, limit=MEMORY_SEARCH_LIMIT, threshold=MEMORY_SEARCH_THRESHOLD
            )
            hits = _MEMORY_HITS.validate_python(list(raw or []), from_attributes=True)
        except Exception as exc:
            record_error(source="fast", operation="memory_search", exc=exc)
            return []

        hits = sorted(hits, key=lambda h: h.score, reverse=True)
        self._memory_cache.set(key, hits)
        return hits

    async def _suggest_tool(self, text: str, context: dict[str, Any]) -> list[ToolSuggestion]:
        if self.tools is None:
            return []
        key = self.tool_context_key(text, context)
        cached = self._tool_cache.get(key)
        if cached is not None:
            return cached

        try:
            raw = await self.tools.suggest(
                key, limit=TOOL_SUGGEST_LIMIT, min_score=TOOL_SUGGEST_MIN_SCORE
            )
            suggestions = _TOOL_SUGGESTIONS.validate_python(list(raw or []), from_attributes=True)
        except Exception as exc:
            record_error(source="fast", operation="tool_suggest", exc=exc, context={"key": key})
            return []

        self._tool_cache.set(key, suggestions)
        return suggestions

    # ------------------------------------------------------------------
    # Respond
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_key(text: str, context: dict[str, Any]) -> str:
        return "::".join([text[:200], context.get("command") or "", context.get("domain") or ""])

    async def respond(self, text: str, context: dict[str, Any] | None = None) -> FastResult:
        started = time.perf_counter()
        context = context or {}

        if not isinstance(text, str) or not text.strip():
            return FastResult(should_escalate=True, escalate_reason="empty_input")

        if not self._warmed:
            self.warm()

        key = self._cache_key(text, context)
        cached = self._responses.get(key)
        if cached is not None:
            return cached.model_copy(
                update={"source": "cache", "latency_ms": (time.perf_counter() - started) * 1000}
            )

        match = self.match(text, context)
        payload: PatternResponse | MemoryRecall | ToolRecommendation | None = None
        confidence = 0.0
        source = "none"

        if match.pattern is not None:
            payload = PatternResponse(pattern_id=match.pattern.id, response=match.pattern.response_template)
            confidence = match.score * match.pattern.confidence
            source = "pattern"

        memory_hits, suggestions = await asyncio.gather(
            self._search_memory(text, context),
            self._suggest_tool(text, context),
        )

        if memory_hits and memory_hits[0].score > MEMORY_RELEVANCE_MIN:
            top = memory_hits[0].score
            if confidence < top:
                payload = MemoryRecall(
                    entries=[h.entry for h in memory_hits[:3]],
                    top_score=top,
                )
                confidence = min(1.0, top)
                source = "memory"
            else:
                confidence = min(1.0, confidence + MEMORY_CORROBORATION_BONUS)

        tool = suggestions[0] if suggestions else None
        if tool is not None and source == "none":
            payload = ToolRecommendation(tool=tool.tool, context_key=self.tool_context_key(text, context))
            confidence = min(1.0, tool.weighted_score * TOOL_CONFIDENCE_FACTOR)
            source = "tool"

        should_escalate = confidence < self.config.min_confidence
        result = FastResult(
            payload=payload,
            confidence=round(confidence, 3),
            source=source,
            should_escalate=should_escalate,
            escalate_reason=escalation_reason(confidence, source) if should_escalate else None,
            latency_ms=(time.perf_counter() - started) * 1000,
            pattern_id=match.pattern.id if source == "pattern" and match.pattern else None,
            matched_keywords=match.matched_keywords,
            tool_suggestion=tool,
            memory_hits=len(memory_hits),
        )

        if not should_escalate:
            self._responses.set(key, result)
        logger.debug(
            "Fast response source=%s confidence=%.3f escalate=%s",
            result.source,
            result.confidence,
            result.should_escalate,
        )
        return result

    def diagnostics(self) -> dict[str, Any]:
        return {
            "warmed": self._warmed,
            "loaded_patterns": len(self._patterns),
            "max_patterns": self.config.max_warm_patterns,
            "response_cache_size": len(self._responses),
            "response_cache_hits": self._responses.hits,
            "memory_cache_size": len(self._memory_cache),
            "tool_cache_size": len(self._tool_cache),
            "escalation_threshold": self.config.min_confidence,
        }

    def reset(self) -> None:
        self._patterns = []
        self._warmed = False
        self._responses.clear()
        self._memory_cache.clear()
        self._tool_cache.clear()
