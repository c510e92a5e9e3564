"""Tests for the fast responder."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
from fakes import FakeClock, FakeMemory, FakeTools

from dualpath.cognitive.config import FastConfig
from dualpath.cognitive.fast import FastResponder, escalation_reason
from dualpath.models import (
    MemoryHit,
    MemoryRecall,
    PatternRecord,
    PatternResponse,
    ToolRecommendation,
    ToolSuggestion,
)
from dualpath.stores import InMemoryPatternStore, JsonPatternStore


class BrokenStore:
    def load_patterns(self) -> list[PatternRecord]:
        raise OSError("disk unavailable")

    def save_pattern(self, record: PatternRecord) -> None:
        raise OSError("disk unavailable")


class RawMemory:
    """Memory search that returns whatever payload it was given."""

    def __init__(self, payload: Any):
        self.payload = payload

    async def search(self, query: str, *, limit: int, threshold: float) -> Any:
        return self.payload


class RawTools:
    def __init__(self, payload: Any):
        self.payload = payload

    async def suggest(self, context_key: str, *, limit: int, min_score: float) -> Any:
        return self.payload


class RendezvousMemory:
    """Only finishes once the tool lookup has started."""

    def __init__(self, started: asyncio.Event, other_started: asyncio.Event):
        self.started = started
        self.other_started = other_started

    async def search(self, query: str, *, limit: int, threshold: float) -> list[MemoryHit]:
        self.started.set()
        await self.other_started.wait()
        return [MemoryHit(entry={"note": "seen before"}, score=0.8)]


class RendezvousTools:
    """Only finishes once the memory search has started."""

    def __init__(self, started: asyncio.Event, other_started: asyncio.Event):
        self.started = started
        self.other_started = other_started

    async def suggest(self, context_key: str, *, limit: int, min_score: float) -> list[ToolSuggestion]:
        self.started.set()
        await self.other_started.wait()
        return [ToolSuggestion(tool="pytest", weighted_score=0.9)]


class TestRespond:
    """The respond pipeline."""

    @pytest.mark.asyncio
    async def test_pattern_hit_answers_without_escalation(
        self, pattern_store: InMemoryPatternStore
    ) -> None:
        """A full keyword match on a confident pattern answers directly."""
        responder = FastResponder(store=pattern_store)
        result = await responder.respond("fix the bug")

        assert result.source == "pattern"
        assert result.should_escalate is False
        assert result.confidence == pytest.approx(0.9)
        assert result.pattern_id == "fix-bug"
        assert isinstance(result.payload, PatternResponse)
        assert result.payload.response["answer"].startswith("Reproduce")
        assert result.matched_keywords == ["bug", "fix"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   \n\t"])
    async def test_empty_input_escalates(self, text: str) -> None:
        """Empty input escalates without touching any cache."""
        responder = FastResponder()
        result = await responder.respond(text)

        assert result.should_escalate is True
        assert result.escalate_reason == "empty_input"
        assert responder.diagnostics()["response_cache_size"] == 0

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, pattern_store: InMemoryPatternStore) -> None:
        """A non-escalated answer is cached and marked as such on reuse."""
        responder = FastResponder(store=pattern_store)
        first = await responder.respond("fix the bug")
        second = await responder.respond("fix the bug")

        assert first.source == "pattern"
        assert second.source == "cache"
        assert second.pattern_id == first.pattern_id
        assert responder.diagnostics()["response_cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_escalated_results_are_not_cached(self) -> None:
        """Nothing to answer from means escalation, and nothing cached."""
        responder = FastResponder()
        result = await responder.respond("what is the weather")

        assert result.should_escalate is True
        assert result.escalate_reason == "no_matching_pattern"
        assert result.source == "none"
        assert responder.diagnostics()["response_cache_size"] == 0

    @pytest.mark.asyncio
    async def test_low_scoring_pattern_escalates(self) -> None:
        """A partial match on an unsure pattern is very low confidence."""
        store = InMemoryPatternStore(
            [PatternRecord(id="canary", keywords=["deploy", "service", "canary"], confidence=0.5)]
        )
        responder = FastResponder(store=store)
        result = await responder.respond("deploy it")

        assert result.source == "pattern"
        assert result.should_escalate is True
        assert result.escalate_reason == "very_low_confidence"

    @pytest.mark.asyncio
    async def test_memory_replaces_weaker_answer(self) -> None:
        """A relevant memory hit beats having no pattern."""
        memory = FakeMemory([MemoryHit(entry={"note": "use --no-cache"}, score=0.8)])
        responder = FastResponder(memory=memory)
        result = await responder.respond("docker build keeps failing")

        assert result.source == "memory"
        assert result.confidence == pytest.approx(0.8)
        assert isinstance(result.payload, MemoryRecall)
        assert result.payload.entries == [{"note": "use --no-cache"}]
        assert result.memory_hits == 1
        assert memory.queries == ["docker build keeps failing"]

    @pytest.mark.asyncio
    async def test_memory_corroborates_stronger_pattern(
        self, pattern_store: InMemoryPatternStore
    ) -> None:
        """A weaker relevant memory adds a bonus to the pattern answer."""
        memory = FakeMemory([MemoryHit(entry={"note": "seen before"}, score=0.7)])
        responder = FastResponder(store=pattern_store, memory=memory)
        result = await responder.respond("fix the bug")

        assert result.source == "pattern"
        assert result.confidence == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_tool_suggestion_used_when_nothing_else(self) -> None:
        """With no pattern or memory, the top tool suggestion answers."""
        tools = FakeTools([ToolSuggestion(tool="pytest", weighted_score=0.9, confidence=0.8)])
        responder = FastResponder(tools=tools)
        result = await responder.respond("fix the failing test")

        assert result.source == "tool"
        assert result.confidence == pytest.approx(0.72)
        assert result.should_escalate is False
        assert isinstance(result.payload, ToolRecommendation)
        assert result.payload.tool == "pytest"
        assert tools.keys == ["fix:testing"]

    @pytest.mark.asyncio
    async def test_collaborator_failure_is_treated_as_no_data(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Failing collaborators are logged and ignored."""
        responder = FastResponder(
            memory=FakeMemory(error=RuntimeError("index offline")),
            tools=FakeTools(error=TimeoutError("slow")),
        )
        with caplog.at_level(logging.WARNING, logger="dualpath.errors"):
            result = await responder.respond("explain the config loader")

        assert result.should_escalate is True
        assert result.escalate_reason == "no_matching_pattern"
        assert any("memory_search" in r.getMessage() for r in caplog.records)
        assert any("tool_suggest" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_memory_hits_as_plain_dicts(self) -> None:
        """Memory results given as entry/score mappings are accepted."""
        responder = FastResponder(memory=RawMemory([{"entry": {"a": 1}, "score": 0.9}]))
        result = await responder.respond("docker build keeps failing")

        assert result.source == "memory"
        assert result.confidence == pytest.approx(0.9)
        assert isinstance(result.payload, MemoryRecall)
        assert result.payload.entries == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_malformed_memory_hits_are_no_data(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        responder = FastResponder(memory=RawMemory([{"entry": {"a": 1}, "score": "high"}]))
        with caplog.at_level(logging.WARNING, logger="dualpath.errors"):
            result = await responder.respond("docker build keeps failing")

        assert result.should_escalate is True
        assert result.memory_hits == 0
        assert any("memory_search" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_malformed_tool_suggestions_are_no_data(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        responder = FastResponder(tools=RawTools([{"name": "pytest"}]))
        with caplog.at_level(logging.WARNING, logger="dualpath.errors"):
            result = await responder.respond("fix the failing test")

        assert result.should_escalate is True
        assert result.tool_suggestion is None
        assert any("tool_suggest" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_memory_and_tools_run_concurrently(self) -> None:
        """Both lookups are in flight together and both feed the result."""
        memory_started = asyncio.Event()
        tools_started = asyncio.Event()
        responder = FastResponder(
            memory=RendezvousMemory(memory_started, tools_started),
            tools=RendezvousTools(tools_started, memory_started),
        )
        result = await asyncio.wait_for(responder.respond("fix the failing test"), timeout=2)

        assert result.source == "memory"
        assert result.memory_hits == 1
        assert result.tool_suggestion is not None
        assert result.tool_suggestion.tool == "pytest"

    @pytest.mark.asyncio
    async def test_stored_pattern_without_utc_offset(
        self, tmp_path: Path, fix_bug_pattern: PatternRecord
    ) -> None:
        """A pattern file with a naive last-used time is read as UTC."""
        data = fix_bug_pattern.model_dump(mode="json")
        data["last_used_at"] = "2025-12-31T12:00:00"
        (tmp_path / "fix-bug.json").write_text(json.dumps(data), encoding="utf-8")

        responder = FastResponder(store=JsonPatternStore(tmp_path), clock=FakeClock())
        result = await responder.respond("fix the bug")

        assert responder.patterns[0].last_used_at == datetime(2025, 12, 31, 12, tzinfo=UTC)
        assert result.source == "pattern"
        assert result.should_escalate is False
        assert result.confidence == pytest.approx(0.9)


class TestPatterns:
    """Warm cache and outcome bookkeeping."""

    def test_warm_keeps_most_used(self) -> None:
        """Only the top max_warm_patterns by use count are loaded."""
        store = InMemoryPatternStore(
            [
                PatternRecord(id="a", keywords=["a1"], use_count=1),
                PatternRecord(id="b", keywords=["b1"], use_count=5),
                PatternRecord(id="c", keywords=["c1"], use_count=3),
            ]
        )
        responder = FastResponder(store=store, config=FastConfig(max_warm_patterns=2))
        assert responder.warm() == 2
        assert [p.id for p in responder.patterns] == ["b", "c"]

    def test_warm_survives_store_failure(self) -> None:
        """A broken store yields an empty warm cache."""
        responder = FastResponder(store=BrokenStore())
        assert responder.warm() == 0

    def test_match_below_minimum_score(self) -> None:
        """One keyword out of four is below the minimum pattern score."""
        store = InMemoryPatternStore([PatternRecord(id="p", keywords=["a1", "b1", "c1", "d1"])])
        responder = FastResponder(store=store)
        responder.warm()
        match = responder.match("a1 only")
        assert match.pattern is None
        assert match.score == pytest.approx(0.25)

    def test_context_domain_bonus(self) -> None:
        store = InMemoryPatternStore(
            [PatternRecord(id="p", keywords=["lint", "ruff"], domain="python")]
        )
        responder = FastResponder(store=store)
        responder.warm()
        assert responder.match("lint it").score == pytest.approx(0.5)
        assert responder.match("lint it", {"domain": "python"}).score == pytest.approx(0.6)

    def test_record_outcome_updates_running_rate(
        self, pattern_store: InMemoryPatternStore
    ) -> None:
        """Outcomes update use count, success rate and last use, and are persisted."""
        clock = FakeClock()
        responder = FastResponder(store=pattern_store, clock=clock)

        updated = responder.record_outcome("fix-bug", success=False)
        assert updated is not None
        assert updated.use_count == 4
        assert updated.success_rate == pytest.approx(0.75)
        assert updated.last_used_at == clock.now
        assert pattern_store.get("fix-bug") == updated

    def test_first_outcome_sets_rate(self) -> None:
        store = InMemoryPatternStore([PatternRecord(id="new", keywords=["x1"])])
        responder = FastResponder(store=store)
        assert responder.record_outcome("new", success=True).success_rate == 1.0

    def test_record_outcome_unknown_pattern(self) -> None:
        responder = FastResponder()
        assert responder.record_outcome("missing", success=True) is None

    @pytest.mark.asyncio
    async def test_failure_clears_response_cache(
        self, pattern_store: InMemoryPatternStore
    ) -> None:
        """A reported failure invalidates cached answers."""
        responder = FastResponder(store=pattern_store)
        await responder.respond("fix the bug")
        assert responder.diagnostics()["response_cache_size"] == 1

        responder.record_outcome("fix-bug", success=False)
        assert responder.diagnostics()["response_cache_size"] == 0

    def test_save_pattern_survives_store_failure(self) -> None:
        """A failing store does not lose the in-memory copy."""
        responder = FastResponder(store=BrokenStore())
        responder.save_pattern(PatternRecord(id="p", keywords=["k1"]))
        assert [p.id for p in responder.patterns] == ["p"]


class TestHelpers:
    def test_tokenize(self) -> None:
        """Separators split, short tokens drop, case folds."""
        responder = FastResponder()
        assert responder.tokenize("Fix_the-bug!! a x") == ["fix", "the", "bug"]

    def test_tokenize_caps_tokens(self) -> None:
        responder = FastResponder(config=FastConfig(max_input_tokens=3))
        assert len(responder.tokenize("one two three four five")) == 3

    def test_tool_context_key_defaults(self) -> None:
        """Unknown operation and target fall back to general:code or the context domain."""
        responder = FastResponder()
        assert responder.tool_context_key("hello there", {}) == "general:code"
        assert responder.tool_context_key("hello there", {"domain": "Billing"}) == "general:billing"

    @pytest.mark.parametrize(
        ("confidence", "source", "reason"),
        [
            (0.0, "none", "no_matching_pattern"),
            (0.2, "pattern", "very_low_confidence"),
            (0.5, "none", "no_data_source"),
            (0.5, "pattern", "below_threshold"),
        ],
    )
    def test_escalation_reason(self, confidence: float, source: str, reason: str) -> None:
        assert escalation_reason(confidence, source) == reason

    @pytest.mark.asyncio
    async def test_reset_clears_state(self, pattern_store: InMemoryPatternStore) -> None:
        responder = FastResponder(store=pattern_store)
        await responder.respond("fix the bug")
        responder.reset()
        diagnostics = responder.diagnostics()
        assert diagnostics["warmed"] is False
        assert diagnostics["loaded_patterns"] == 0
        assert diagnostics["response_cache_size"] == 0
