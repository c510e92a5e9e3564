"""Interfaces for the external collaborators the engine talks to.

Nothing here is implemented by the core; hosts supply objects that
satisfy these protocols. ``stores`` ships two pattern store adapters.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from .models import ExecutionRequest, HostOutcome, MemoryHit, PatternRecord, ToolSuggestion


@runtime_checkable
class PatternStore(Protocol):
    def load_patterns(self) -> Iterable[PatternRecord]: ...

    def save_pattern(self, record: PatternRecord) -> None: ...


@runtime_checkable
class MemorySearch(Protocol):
    async def search(
        self, query: str, *, limit: int, threshold: float
    ) -> list[MemoryHit]: ...


@runtime_checkable
class ToolSuggester(Protocol):
    async def suggest(
        self, context_key: str, *, limit: int, min_score: float
    ) -> list[ToolSuggestion]: ...


@runtime_checkable
class HostExecutor(Protocol):
    """Runs an admitted command. Never called for blocked commands."""

    def run(self, request: ExecutionRequest) -> HostOutcome: ...
