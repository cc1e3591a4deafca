"""
Error Classifier — Article Engine
=================================

Maps raw exceptions raised by step workers to a category (network, timeout,
rate limit, parsing, validation, logic, unknown) and a severity
(info/warning/error/critical), and keeps a bounded in-memory ring buffer of
recent errors for statistics.

Severity is observational only: it picks the log level and feeds the stats,
it never changes what the retry executor decides.

Usage:
    from article_engine.error_classifier import ErrorClassifier, categorize_error

    classifier = ErrorClassifier(job_id="job-1")
    classifier.track_error("strategy", "strategy", exc, attempt=1, max_attempts=5)
    classifier.track_success("strategy", attempt=3)
    stats = classifier.get_stats()
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger("error_classifier")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# Ring buffer size for recent errors
MAX_ERRORS_IN_MEMORY = 100


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


# ===================================================================
# ENUMS
# ===================================================================


class ErrorCategory(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    PARSING = "parsing"
    VALIDATION = "validation"
    LOGIC = "logic"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


TRANSIENT_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
})

# Never retried, whatever the policy says
NON_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.PARSING,
    ErrorCategory.VALIDATION,
    ErrorCategory.LOGIC,
})

_TIMEOUT_TYPES = ("TimeoutError", "StepTimeoutError", "ServerTimeoutError", "ReadTimeout")
_NETWORK_TYPES = (
    "ConnectionError", "ConnectionResetError", "ConnectionRefusedError",
    "ConnectionAbortedError", "BrokenPipeError", "ClientConnectionError",
    "ClientConnectorError", "ServerDisconnectedError", "ClientOSError",
)
_PARSING_TYPES = ("JSONDecodeError", "UnicodeDecodeError")


# ===================================================================
# CLASSIFICATION
# ===================================================================


def _error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    return str(code).lower() if code else ""


def categorize_error(exc: BaseException) -> ErrorCategory:
    """Categorize *exc* by explicit hint, exception type, code and message."""
    hint = getattr(exc, "category", None)
    if hint:
        try:
            return ErrorCategory(hint)
        except ValueError:
            pass

    exc_type = type(exc).__name__
    code = _error_code(exc)
    msg = str(exc).lower()

    if isinstance(exc, TimeoutError) or exc_type in _TIMEOUT_TYPES:
        return ErrorCategory.TIMEOUT
    if code == "etimedout" or "timeout" in msg or "timed out" in msg:
        return ErrorCategory.TIMEOUT
    if isinstance(exc, ConnectionError) or exc_type in _NETWORK_TYPES:
        return ErrorCategory.NETWORK
    if code in ("econnreset", "ehostunreach", "econnrefused") or "econnreset" in msg:
        return ErrorCategory.NETWORK
    if "rate_limit" in msg or "rate limit" in msg or "429" in msg or "too many requests" in msg:
        return ErrorCategory.RATE_LIMIT
    if isinstance(exc, json.JSONDecodeError) or exc_type in _PARSING_TYPES:
        return ErrorCategory.PARSING
    if "parse" in msg or "json" in msg:
        return ErrorCategory.PARSING
    if "validation" in msg or "invalid" in msg:
        return ErrorCategory.VALIDATION
    if "network" in msg or "socket" in msg or "fetch failed" in msg:
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def determine_severity(
    category: ErrorCategory, attempt: int, max_attempts: int,
) -> ErrorSeverity:
    """Final attempts are errors; transient failures are warnings; first tries info."""
    if attempt >= max_attempts:
        return ErrorSeverity.ERROR
    if category in TRANSIENT_CATEGORIES:
        return ErrorSeverity.WARNING
    if attempt == 1:
        return ErrorSeverity.INFO
    return ErrorSeverity.WARNING


# ===================================================================
# TRACKED ERROR
# ===================================================================


@dataclass
class TrackedError:
    """One observed failure of one step attempt."""

    step: str
    phase: str
    category: str
    severity: str
    message: str
    attempt: int
    max_attempts: int
    error_type: str = ""
    error_code: Optional[str] = None
    id: str = field(default_factory=lambda: f"err_{uuid.uuid4().hex[:12]}")
    timestamp: str = field(default_factory=_now_iso)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TrackedError:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RecoveryEvent:
    """A step that succeeded only after retrying."""

    step: str
    attempts: int
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ===================================================================
# CLASSIFIER
# ===================================================================


class ErrorClassifier:
    """Per-job error tracker with a bounded ring buffer.

    One instance belongs to one job run; nothing is shared between jobs.
    """

    def __init__(self, job_id: str = "", max_errors: int = MAX_ERRORS_IN_MEMORY) -> None:
        self.job_id = job_id
        self._errors: Deque[TrackedError] = deque(maxlen=max_errors)
        self._failure_counts: Dict[str, int] = {}
        self._first_try_successes: Dict[str, int] = {}
        self._retried_successes: Dict[str, int] = {}
        self._recoveries: List[RecoveryEvent] = []

    def track_error(
        self,
        step: str,
        phase: str,
        exc: BaseException,
        attempt: int,
        max_attempts: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TrackedError:
        """Classify *exc*, store it and log it at its severity."""
        category = categorize_error(exc)
        severity = determine_severity(category, attempt, max_attempts)
        tracked = TrackedError(
            step=step,
            phase=phase,
            category=category.value,
            severity=severity.value,
            message=str(exc) or type(exc).__name__,
            attempt=attempt,
            max_attempts=max_attempts,
            error_type=type(exc).__name__,
            error_code=_error_code(exc) or None,
            metadata=dict(metadata or {}),
        )
        self._store(tracked)
        return tracked

    def track_phase_failure(self, phase: str, exc: BaseException, critical: bool) -> TrackedError:
        """Record the failure of a whole phase (after retries were exhausted)."""
        category = categorize_error(exc)
        tracked = TrackedError(
            step="orchestrator",
            phase=phase,
            category=category.value,
            severity=(ErrorSeverity.CRITICAL if critical else ErrorSeverity.WARNING).value,
            message=str(exc) or type(exc).__name__,
            attempt=1,
            max_attempts=1,
            error_type=type(exc).__name__,
            metadata={"job_id": self.job_id},
        )
        self._store(tracked)
        return tracked

    def track_success(self, step: str, attempt: int) -> None:
        """Record a success, separating first-try successes from recoveries."""
        if attempt > 1:
            self._retried_successes[step] = self._retried_successes.get(step, 0) + 1
            self._recoveries.append(RecoveryEvent(step=step, attempts=attempt))
            logger.info("%s succeeded after %d attempts", step, attempt)
        else:
            self._first_try_successes[step] = self._first_try_successes.get(step, 0) + 1

    def _store(self, tracked: TrackedError) -> None:
        self._errors.append(tracked)
        self._failure_counts[tracked.step] = self._failure_counts.get(tracked.step, 0) + 1

        log_data = (
            "[%s] %s/%s step=%s attempt=%d/%d: %s",
            tracked.id, tracked.category, tracked.severity, tracked.step,
            tracked.attempt, tracked.max_attempts, tracked.message,
        )
        if tracked.severity in (ErrorSeverity.ERROR.value, ErrorSeverity.CRITICAL.value):
            logger.error(*log_data)
        elif tracked.severity == ErrorSeverity.WARNING.value:
            logger.warning(*log_data)
        else:
            logger.info(*log_data)

    # -- queries -------------------------------------------------------------

    @property
    def errors(self) -> List[TrackedError]:
        return list(self._errors)

    @property
    def recoveries(self) -> List[RecoveryEvent]:
        return list(self._recoveries)

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate counts across the ring buffer and success counters."""
        by_category: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_step: Dict[str, int] = {}
        by_phase: Dict[str, int] = {}
        for err in self._errors:
            by_category[err.category] = by_category.get(err.category, 0) + 1
            by_severity[err.severity] = by_severity.get(err.severity, 0) + 1
            by_step[err.step] = by_step.get(err.step, 0) + 1
            by_phase[err.phase] = by_phase.get(err.phase, 0) + 1

        success_rate: Dict[str, float] = {}
        steps = set(self._first_try_successes) | set(self._retried_successes)
        for step in steps:
            successes = self._first_try_successes.get(step, 0) + self._retried_successes.get(step, 0)
            failures = self._failure_counts.get(step, 0)
            total = successes + failures
            success_rate[step] = round(successes / total * 100, 2) if total else 100.0

        return {
            "total_errors": len(self._errors),
            "by_category": by_category,
            "by_severity": by_severity,
            "by_step": by_step,
            "by_phase": by_phase,
            "success_rate": success_rate,
            "first_try_successes": sum(self._first_try_successes.values()),
            "retried_successes": sum(self._retried_successes.values()),
            "recoveries": [r.to_dict() for r in self._recoveries],
        }

    def generate_summary(self) -> Dict[str, Any]:
        """Human-readable failure message plus the stats it was derived from."""
        serious = [
            e for e in self._errors
            if e.severity in (ErrorSeverity.ERROR.value, ErrorSeverity.CRITICAL.value)
        ]
        if serious:
            last = serious[-1]
            message = f"Final failure: {last.step} - {last.message}"
            if len(serious) > 1:
                message += f"\n{len(serious)} serious errors"
            failed_phases = sorted({e.phase for e in serious})
            message += f"\nFailed phases: {', '.join(failed_phases)}"
        elif self._errors:
            message = f"Processing failed: {self._errors[-1].message}"
        else:
            message = "No errors recorded"
        return {"message": message, "details": self.get_stats()}

    def reset(self) -> None:
        self._errors.clear()
        self._failure_counts.clear()
        self._first_try_successes.clear()
        self._retried_successes.clear()
        self._recoveries.clear()
