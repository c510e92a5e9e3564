from __future__ import annotations

import hashlib
import logging
import traceback
from datetime import UTC, datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

_RECENT_SIGNATURES: dict[str, datetime] = {}


class DualpathError(Exception):
    """Base class for errors raised by dualpath.

    Every error carries a short machine-readable ``code`` alongside the
    human-readable message.
    """

    code = "dualpath_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidInputError(DualpathError, ValueError):
    """Input text or context rejected before any work is done."""

    code = "invalid_input"


class InvalidTaskError(InvalidInputError):
    """A task is missing its id or description."""

    code = "invalid_task"


class InvalidPlanError(DualpathError, ValueError):
    """A plan references steps it does not contain."""

    code = "unknown_dependency"


class PlanCycleError(InvalidPlanError):
    """The dependency graph of a plan contains a cycle."""

    code = "dependency_cycle"

    def __init__(self, message: str, *, step_ids: tuple[str, ...] = ()):
        super().__init__(message)
        self.step_ids = step_ids


class SandboxError(DualpathError, RuntimeError):
    """Misuse of the sandbox gate (completing a non-pending record, mutating a cleaned log)."""

    code = "sandbox_error"


class RulesError(DualpathError, ValueError):
    """The rule tables could not be loaded or compiled."""

    code = "invalid_rules"


def _error_signature(*, operation: str, exc: BaseException) -> str:
    material = f"{operation}|{type(exc).__name__}|{str(exc)}".encode("utf-8", errors="replace")
    return hashlib.sha256(material).hexdigest()


def record_error(
    *,
    source: str,
    operation: str,
    exc: BaseException,
    context: dict[str, Any] | None = None,
    dedupe_window_seconds: int = 60,
    include_traceback: bool = False,
) -> str | None:
    """Log a swallowed collaborator failure.

    - Emits one WARNING carrying the error summary as ``extra`` fields.
    - Suppresses repeats of the same failure within the dedupe window.

    Returns the error signature when logged, None when deduplicated.
    """

    signature = _error_signature(operation=operation, exc=exc)
    now = datetime.now(UTC)

    if dedupe_window_seconds > 0:
        cutoff = now - timedelta(seconds=dedupe_window_seconds)
        last_seen = _RECENT_SIGNATURES.get(signature)
        if last_seen is not None and last_seen >= cutoff:
            return None
        _RECENT_SIGNATURES[signature] = now

    tb_text: str | None = None
    if include_traceback:
        tb_text = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        if len(tb_text) > 10_000:
            tb_text = tb_text[-10_000:]

    logger.warning(
        "%s failed in %s: %s: %s",
        operation,
        source,
        type(exc).__name__,
        exc,
        extra={
            "error_signature": signature,
            "error_source": source,
            "error_operation": operation,
            "error_type": type(exc).__name__,
            "error_context": context or {},
            "error_traceback": tb_text,
        },
    )
    return signature


def clear_error_signatures() -> None:
    _RECENT_SIGNATURES.clear()
