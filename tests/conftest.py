from __future__ import annotations

from collections.abc import Iterator

import pytest

from dualpath.errors import clear_error_signatures
from dualpath.models import PatternRecord
from dualpath.stores import InMemoryPatternStore


@pytest.fixture(autouse=True)
def fresh_error_signatures() -> Iterator[None]:
    """Swallowed-error dedupe is process-global; keep tests independent."""

    clear_error_signatures()
    yield
    clear_error_signatures()


@pytest.fixture
def fix_bug_pattern() -> PatternRecord:
    return PatternRecord(
        id="fix-bug",
        keywords=["fix", "bug"],
        intent="debug",
        confidence=0.9,
        success_rate=1.0,
        use_count=3,
        response_template={"answer": "Reproduce it, then read the stack trace"},
    )


@pytest.fixture
def pattern_store(fix_bug_pattern: PatternRecord) -> InMemoryPatternStore:
    return InMemoryPatternStore([fix_bug_pattern])
