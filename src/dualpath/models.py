from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)


class PatternRecord(BaseModel):
    """A learned input pattern the fast path can answer from."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    keywords: frozenset[str] = Field(..., description="Lowercased trigger tokens.")
    intent: str | None = None
    domain: str | None = None
    command: str | None = None
    response_template: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("response_template", "response"),
    )
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    use_count: int = Field(default=0, ge=0)
    last_used_at: datetime | None = None

    @field_validator("keywords", mode="before")
    @classmethod
    def _normalize_keywords(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            cleaned = {str(v).strip().lower() for v in value if str(v).strip()}
            if not cleaned:
                raise ValueError("keywords must not be empty")
            return frozenset(cleaned)
        return value

    @field_validator("last_used_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_serializer("keywords")
    def _serialize_keywords(self, keywords: frozenset[str]) -> list[str]:
        return sorted(keywords)


class MemoryHit(BaseModel):
    entry: dict[str, Any] = Field(default_factory=dict)
    score: float = Field(..., ge=0.0)


class ToolSuggestion(BaseModel):
    tool: str
    weighted_score: float = Field(..., ge=0.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class PatternResponse(BaseModel):
    type: Literal["pattern"] = "pattern"
    pattern_id: str
    response: dict[str, Any] = Field(default_factory=dict)


class MemoryRecall(BaseModel):
    type: Literal["memory"] = "memory"
    entries: list[dict[str, Any]] = Field(default_factory=list)
    top_score: float


class ToolRecommendation(BaseModel):
    type: Literal["tool"] = "tool"
    tool: str
    context_key: str


ResponsePayload = Annotated[
    PatternResponse | MemoryRecall | ToolRecommendation,
    Field(discriminator="type"),
]

FastSource = Literal["cache", "pattern", "memory", "tool", "none"]


class FastResult(BaseModel):
    payload: ResponsePayload | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: FastSource = "none"
    should_escalate: bool = False
    escalate_reason: str | None = None
    latency_ms: float = 0.0
    pattern_id: str | None = None
    matched_keywords: list[str] = Field(default_factory=list)
    tool_suggestion: ToolSuggestion | None = None
    memory_hits: int = 0


class ExecutionRequest(BaseModel):
    """What the host executor is asked to run for one admitted command."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    sandbox_id: str
    command: str
    timeout_ms: int
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class HostOutcome(BaseModel):
    """What the host executor reports back for a pending record."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_ms: int = Field(default=0, ge=0)
