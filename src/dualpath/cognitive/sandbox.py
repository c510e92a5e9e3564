"""Sandbox gate.

Every command either path wants to run passes through here first. The
gate never runs anything itself: it admits or blocks a command, hands out
a pending record for admitted ones, and later accepts the host executor's
outcome for that record. Validation turns a completed record into issues
and a severity.
"""

from __future__ import annotations

import itertools
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from ..errors import SandboxError
from ..models import HostOutcome
from ..rules import BlockRule, RuleTables, default_rules

logger = logging.getLogger(__name__)

TRUNCATION_SUFFIX = "\n... [truncated]"

_ids = itertools.count(1)


class SandboxStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLEANED = "cleaned"


class RecordState(Enum):
    """Lifecycle of an execution record."""

    BLOCKED = "blocked"      # Rejected by the gate; never runs
    PENDING = "pending"      # Admitted; waiting for the host executor
    COMPLETED = "completed"  # Host outcome recorded


class Severity(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SandboxOptions:
    timeout_ms: int = 30_000
    max_lifetime_ms: int = 300_000
    max_output_bytes: int = 1_048_576
    # Advisory only; enforcement belongs to the host executor.
    allow_network: bool = True
    allow_writes: bool = True
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    extra_blocked_patterns: tuple[BlockRule, ...] = ()


@dataclass(frozen=True)
class ExecutionRecord:
    record_id: str
    command: str
    sandbox_id: str
    state: RecordState
    started_at: datetime
    timeout_ms: int
    blocked_by: str | None = None
    cwd: str | None = None
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_ms: int = 0

    @property
    def blocked(self) -> bool:
        return self.state is RecordState.BLOCKED

    @property
    def executed(self) -> bool:
        return self.state is RecordState.COMPLETED


@dataclass
class SandboxContext:
    """One isolated execution scope; owned by a single deliberate attempt."""

    id: str
    status: SandboxStatus
    created_at: datetime
    expires_at: datetime
    options: SandboxOptions
    blocked_patterns: tuple[BlockRule, ...]
    _log: list[ExecutionRecord] = field(default_factory=list, repr=False)
    _frozen: tuple[ExecutionRecord, ...] | None = field(default=None, repr=False)

    @property
    def execution_log(self) -> tuple[ExecutionRecord, ...]:
        if self._frozen is not None:
            return self._frozen
        return tuple(self._log)

    @property
    def is_active(self) -> bool:
        return self.status is SandboxStatus.ACTIVE

    def _append(self, record: ExecutionRecord) -> None:
        if self._frozen is not None:
            raise SandboxError(f"sandbox {self.id} is cleaned; log is frozen", code="sandbox_frozen")
        self._log.append(record)

    def _replace(self, record: ExecutionRecord) -> None:
        if self._frozen is not None:
            raise SandboxError(f"sandbox {self.id} is cleaned; log is frozen", code="sandbox_frozen")
        for i, existing in enumerate(self._log):
            if existing.record_id == record.record_id:
                self._log[i] = record
                return
        raise SandboxError(
            f"record {record.record_id} is not in sandbox {self.id}", code="unknown_record"
        )


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    blocked_by: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    safe: bool
    success: bool
    issues: tuple[str, ...]
    severity: Severity


@dataclass(frozen=True)
class SandboxStats:
    total_executions: int
    blocked: int
    succeeded: int
    failed: int
    pending: int
    total_duration_ms: int
    status: SandboxStatus


@dataclass(frozen=True)
class CleanupReport:
    sandbox_id: str
    status: SandboxStatus
    cleaned_at: datetime
    stats: SandboxStats


def truncate_output(text: str, max_bytes: int) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text
    keep = max(0, max_bytes - len(TRUNCATION_SUFFIX.encode("utf-8")))
    return raw[:keep].decode("utf-8", errors="ignore") + TRUNCATION_SUFFIX


class SandboxGate:
    """Admits, blocks and records commands for sandbox contexts."""

    def __init__(
        self,
        rules: RuleTables | None = None,
        defaults: SandboxOptions | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.rules = rules or default_rules()
        self.defaults = defaults or SandboxOptions()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._contexts: dict[str, SandboxContext] = {}

    def create(self, options: SandboxOptions | None = None, **overrides: Any) -> SandboxContext:
        """Open a new active context; ``overrides`` replace individual option fields."""
        opts = options or self.defaults
        if overrides:
            opts = replace(opts, **overrides)

        now = self._clock()
        self._prune_expired(now)
        sandbox_id = f"sandbox-{int(time.time() * 1000)}-{next(_ids)}"
        context = SandboxContext(
            id=sandbox_id,
            status=SandboxStatus.ACTIVE,
            created_at=now,
            expires_at=now + timedelta(milliseconds=opts.max_lifetime_ms),
            options=opts,
            blocked_patterns=self.rules.deny_list + tuple(opts.extra_blocked_patterns),
        )
        self._contexts[sandbox_id] = context
        logger.debug("Created %s (lifetime=%dms)", sandbox_id, opts.max_lifetime_ms)
        return context

    def _prune_expired(self, now: datetime) -> None:
        """Forget expired contexts that have nothing left to record."""
        for sandbox_id, context in list(self._contexts.items()):
            if now < context.expires_at:
                continue
            if any(r.state is RecordState.PENDING for r in context.execution_log):
                continue
            if context.is_active:
                context.status = SandboxStatus.EXPIRED
            del self._contexts[sandbox_id]
            logger.debug("Dropped expired %s", sandbox_id)

    @property
    def tracked(self) -> int:
        """Contexts that can still accept results."""
        return len(self._contexts)

    def check_safety(self, command: Any, context: SandboxContext | None = None) -> SafetyVerdict:
        if not isinstance(command, str) or not command.strip():
            return SafetyVerdict(safe=False, blocked_by="Empty or invalid command")

        patterns = context.blocked_patterns if context is not None else self.rules.deny_list
        trimmed = command.strip()
        for rule in patterns:
            if rule.pattern.search(trimmed):
                return SafetyVerdict(safe=False, blocked_by=rule.label)
        return SafetyVerdict(safe=True)

    def _blocked_record(self, command: str, context: SandboxContext | None, reason: str) -> ExecutionRecord:
        return ExecutionRecord(
            record_id=uuid.uuid4().hex,
            command=command if isinstance(command, str) else "",
            sandbox_id=context.id if context is not None else "",
            state=RecordState.BLOCKED,
            started_at=self._clock(),
            timeout_ms=0,
            blocked_by=reason,
            stderr=f"BLOCKED: {reason}",
        )

    def execute(self, command: str, context: SandboxContext | None) -> ExecutionRecord:
        """Admit or block ``command``. Admitted commands come back pending."""
        if context is None or not context.is_active:
            return self._blocked_record(command, context, "Sandbox is not active")

        if self._clock() >= context.expires_at:
            context.status = SandboxStatus.EXPIRED
            record = self._blocked_record(command, context, "Sandbox has expired")
            context._append(record)
            logger.info("%s expired; rejected command", context.id)
            return record

        verdict = self.check_safety(command, context)
        if not verdict.safe:
            record = self._blocked_record(command, context, verdict.blocked_by or "blocked")
            context._append(record)
            logger.warning("Blocked command in %s (%s): %s", context.id, verdict.blocked_by, command)
            return record

        record = ExecutionRecord(
            record_id=uuid.uuid4().hex,
            command=command.strip(),
            sandbox_id=context.id,
            state=RecordState.PENDING,
            started_at=self._clock(),
            timeout_ms=context.options.timeout_ms,
            cwd=context.options.cwd,
        )
        context._append(record)
        return record

    def record_result(self, record: ExecutionRecord, outcome: HostOutcome | Mapping[str, Any]) -> ExecutionRecord:
        """Complete a pending record with what the host executor observed."""
        if record.state is not RecordState.PENDING:
            raise SandboxError(
                f"record {record.record_id} is {record.state.value}, not pending",
                code="record_not_pending",
            )
        context = self._contexts.get(record.sandbox_id)
        if context is None:
            raise SandboxError(
                f"sandbox {record.sandbox_id} is unknown or already cleaned", code="unknown_sandbox"
            )

        if not isinstance(outcome, HostOutcome):
            outcome = HostOutcome.model_validate(dict(outcome))

        limit = context.options.max_output_bytes
        completed = replace(
            record,
            state=RecordState.COMPLETED,
            stdout=truncate_output(outcome.stdout, limit),
            stderr=truncate_output(outcome.stderr, limit),
            exit_code=outcome.exit_code if outcome.exit_code is not None else 1,
            duration_ms=outcome.duration_ms,
        )
        context._replace(completed)
        return completed

    def validate(self, record: ExecutionRecord) -> ValidationResult:
        if record.blocked:
            return ValidationResult(
                safe=False,
                success=False,
                issues=(f"Command blocked: {record.blocked_by}",),
                severity=Severity.CRITICAL,
            )
        if not record.executed:
            return ValidationResult(
                safe=True,
                success=False,
                issues=("Command has not been executed yet",),
                severity=Severity.NONE,
            )

        issues: list[str] = []
        if record.exit_code != 0:
            issues.append(f"Non-zero exit code: {record.exit_code}")

        stderr = record.stderr.lower()
        if "error" in stderr:
            issues.append("stderr contains error messages")
        if "fatal" in stderr:
            issues.append("stderr contains fatal error")
        if "permission denied" in stderr:
            issues.append("Permission denied encountered")
        if "segmentation fault" in stderr or "segfault" in stderr:
            issues.append("Segmentation fault detected")
        if record.timeout_ms > 0 and record.duration_ms >= record.timeout_ms:
            issues.append(f"Execution timeout exceeded ({record.duration_ms}ms >= {record.timeout_ms}ms)")

        severity = self._severity(issues)
        return ValidationResult(
            safe=severity is not Severity.CRITICAL,
            success=record.exit_code == 0 and not issues,
            issues=tuple(issues),
            severity=severity,
        )

    @staticmethod
    def _severity(issues: list[str]) -> Severity:
        if not issues:
            return Severity.NONE
        text = " ".join(issues).lower()
        if "fatal" in text or "segmentation" in text or "permission denied" in text:
            return Severity.CRITICAL
        has_error = "error" in text or "exit code" in text
        if has_error and "timeout" in text:
            return Severity.HIGH
        if has_error:
            return Severity.MEDIUM
        return Severity.LOW

    def stats(self, context: SandboxContext) -> SandboxStats:
        log = context.execution_log
        blocked = sum(1 for r in log if r.blocked)
        pending = sum(1 for r in log if r.state is RecordState.PENDING)
        succeeded = sum(1 for r in log if r.executed and r.exit_code == 0)
        failed = sum(1 for r in log if r.executed and r.exit_code != 0)
        return SandboxStats(
            total_executions=len(log),
            blocked=blocked,
            succeeded=succeeded,
            failed=failed,
            pending=pending,
            total_duration_ms=sum(r.duration_ms for r in log),
            status=context.status,
        )

    def cleanup(self, context: SandboxContext) -> CleanupReport:
        """Mark the context cleaned and freeze its log."""
        if context.status is not SandboxStatus.CLEANED:
            context.status = SandboxStatus.CLEANED
            context._frozen = tuple(context._log)
            self._contexts.pop(context.id, None)
        stats = self.stats(context)
        logger.info(
            "Cleaned %s: %d run(s), %d blocked, %d failed, %d pending",
            context.id,
            stats.total_executions,
            stats.blocked,
            stats.failed,
            stats.pending,
        )
        return CleanupReport(
            sandbox_id=context.id,
            status=context.status,
            cleaned_at=self._clock(),
            stats=stats,
        )
