"""
Retry Policy Executor — Article Engine
======================================

Wraps a single step-worker call with bounded attempts, exponential backoff and
an optional hard timeout.  Every failure is handed to the job's
ErrorClassifier; the executor decides retryability itself:

    - errors in a non-retryable category (validation, parsing, logic) are
      raised after the first attempt,
    - otherwise an error is retried when it matches one of the policy's
      signatures (error code or message substring) or looks transient
      (network / timeout / rate limit / socket keywords).

Backoff: sleep ``min(delay, max_delay)`` then ``delay *= backoff_multiplier``,
starting from ``initial_delay``.  Delays are in seconds.

A timed-out attempt only stops waiting; the remote call may still complete.
Callers treat a timeout as "outcome unknown" and rely on idempotent retries.

Usage:
    from article_engine.retry_policy import RetryExecutor, get_policy

    executor = RetryExecutor(classifier)
    result = await executor.run(lambda attempt: worker.execute(...),
                                get_policy("research"), phase="research")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from article_engine.error_classifier import (
    NON_RETRYABLE_CATEGORIES,
    TRANSIENT_CATEGORIES,
    ErrorClassifier,
    categorize_error,
)

logger = logging.getLogger("retry_policy")

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

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Backoff wait hook
_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

# Message keywords that make any error retryable
TRANSIENT_KEYWORDS: Tuple[str, ...] = ("network", "fetch", "timeout", "econnreset", "socket")

_COMMON_SIGNATURES: Tuple[str, ...] = (
    "ECONNRESET",
    "ETIMEDOUT",
    "rate_limit_exceeded",
    "Failed to get response from provider",
)


class StepTimeoutError(TimeoutError):
    """One attempt exceeded the policy's hard timeout."""

    def __init__(self, step: str, timeout: float) -> None:
        self.step = step
        self.timeout = timeout
        super().__init__(f"{step} execution timeout after {timeout:.1f}s")


# ===================================================================
# POLICY
# ===================================================================


@dataclass
class RetryPolicy:
    """Retry configuration for one step type."""

    step: str
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay: float = DEFAULT_INITIAL_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    timeout: Optional[float] = None
    retryable_errors: Tuple[str, ...] = field(default_factory=tuple)
    param_adjustment: Optional[Callable[[int], Dict[str, Any]]] = field(
        default=None, repr=False, compare=False,
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        self.retryable_errors = tuple(self.retryable_errors)

    def params_for_attempt(self, attempt: int) -> Dict[str, Any]:
        """Extra worker parameters for *attempt* (1-based)."""
        if self.param_adjustment is None:
            return {}
        return dict(self.param_adjustment(attempt))

    def with_overrides(self, overrides: Dict[str, Any]) -> RetryPolicy:
        """Copy with the known fields in *overrides* replaced."""
        allowed = {"max_attempts", "initial_delay", "max_delay",
                   "backoff_multiplier", "timeout", "retryable_errors"}
        return replace(self, **{k: v for k, v in overrides.items() if k in allowed})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("param_adjustment", None)
        data["retryable_errors"] = list(self.retryable_errors)
        return data


def _strategy_params(attempt: int) -> Dict[str, Any]:
    return {"temperature": round(min(0.7 + attempt * 0.1, 1.0), 2)}


def _image_params(attempt: int) -> Dict[str, Any]:
    return {"quality": "medium" if attempt > 1 else "high"}


RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "research": RetryPolicy(
        step="research", max_attempts=3, initial_delay=2.0, max_delay=30.0,
        timeout=120.0, retryable_errors=_COMMON_SIGNATURES + ("model_overloaded",),
    ),
    "competitor_analysis": RetryPolicy(
        step="competitor_analysis", max_attempts=2, initial_delay=1.0, max_delay=10.0,
        timeout=60.0, retryable_errors=_COMMON_SIGNATURES,
    ),
    "strategy": RetryPolicy(
        step="strategy", max_attempts=5, initial_delay=2.0, max_delay=30.0,
        timeout=120.0, retryable_errors=_COMMON_SIGNATURES + ("model_overloaded",),
        param_adjustment=_strategy_params,
    ),
    "content_plan": RetryPolicy(
        step="content_plan", max_attempts=3, initial_delay=1.0, max_delay=20.0,
        timeout=60.0, retryable_errors=_COMMON_SIGNATURES,
    ),
    "featured_image": RetryPolicy(
        step="featured_image", max_attempts=3, initial_delay=5.0, max_delay=30.0,
        timeout=180.0,
        retryable_errors=("ECONNRESET", "ETIMEDOUT", "rate_limit_exceeded",
                          "content_policy_violation"),
        param_adjustment=_image_params,
    ),
    "content_images": RetryPolicy(
        step="content_images", max_attempts=3, initial_delay=5.0, max_delay=30.0,
        timeout=180.0,
        retryable_errors=("ECONNRESET", "ETIMEDOUT", "rate_limit_exceeded",
                          "content_policy_violation"),
        param_adjustment=_image_params,
    ),
    "writing": RetryPolicy(
        step="writing", max_attempts=5, initial_delay=2.0, max_delay=30.0,
        timeout=120.0,
        retryable_errors=_COMMON_SIGNATURES + (
            "fetch failed", "network error", "socket hang up", "EHOSTUNREACH",
            "model_overloaded",
        ),
    ),
    "internal_links": RetryPolicy(
        step="internal_links", max_attempts=2, initial_delay=0.5, max_delay=5.0,
        timeout=30.0, retryable_errors=("ECONNRESET", "ETIMEDOUT"),
    ),
    "meta": RetryPolicy(
        step="meta", max_attempts=3, initial_delay=1.0, max_delay=10.0,
        timeout=60.0, retryable_errors=_COMMON_SIGNATURES,
    ),
    "category": RetryPolicy(
        step="category", max_attempts=2, initial_delay=1.0, max_delay=10.0,
        timeout=60.0, retryable_errors=("ECONNRESET", "ETIMEDOUT"),
    ),
    "publish": RetryPolicy(
        step="publish", max_attempts=2, initial_delay=2.0, max_delay=10.0,
        timeout=60.0, retryable_errors=("ECONNRESET", "ETIMEDOUT"),
    ),
}


def get_policy(step: str, overrides: Optional[Dict[str, Any]] = None) -> RetryPolicy:
    """Policy for *step*, falling back to defaults for unknown steps."""
    policy = RETRY_POLICIES.get(step) or RetryPolicy(step=step)
    if overrides:
        policy = policy.with_overrides(overrides)
    return policy


# ===================================================================
# RETRYABILITY
# ===================================================================


def is_retryable_error(exc: BaseException, retryable_errors: Tuple[str, ...] = ()) -> bool:
    """Decide whether *exc* deserves another attempt."""
    category = categorize_error(exc)
    if category in NON_RETRYABLE_CATEGORIES:
        return False

    code = str(getattr(exc, "code", "") or "").lower()
    message = str(exc).lower()
    for signature in retryable_errors:
        sig = signature.lower()
        if (code and code == sig) or sig in message:
            return True

    if category in TRANSIENT_CATEGORIES:
        return True
    return any(keyword in message for keyword in TRANSIENT_KEYWORDS)


# ===================================================================
# EXECUTOR
# ===================================================================


class RetryExecutor:
    """Runs step calls under a RetryPolicy, reporting to an ErrorClassifier."""

    def __init__(self, classifier: Optional[ErrorClassifier] = None) -> None:
        self.classifier = classifier or ErrorClassifier()

    async def run(
        self,
        func: Callable[[int], Awaitable[Any]],
        policy: RetryPolicy,
        phase: str = "unknown",
    ) -> Any:
        """Call ``func(attempt)`` until it succeeds or the policy gives up.

        Args:
            func: Coroutine factory receiving the 1-based attempt number.
            policy: Attempts, backoff and timeout to apply.
            phase: Phase name recorded with each tracked error.

        Returns:
            Whatever *func* returns on the successful attempt.

        Raises:
            Exception: The last error once it is non-retryable or attempts run out.
        """
        delay = policy.initial_delay

        for attempt in range(1, policy.max_attempts + 1):
            try:
                if policy.timeout:
                    try:
                        result = await asyncio.wait_for(func(attempt), timeout=policy.timeout)
                    except asyncio.TimeoutError:
                        raise StepTimeoutError(policy.step, policy.timeout) from None
                else:
                    result = await func(attempt)
            except Exception as exc:
                self.classifier.track_error(
                    policy.step, phase, exc, attempt, policy.max_attempts,
                )
                retryable = is_retryable_error(exc, policy.retryable_errors)
                if not retryable or attempt >= policy.max_attempts:
                    if not retryable:
                        logger.warning(
                            "Not retrying %s after attempt %d/%d: %s",
                            policy.step, attempt, policy.max_attempts, exc,
                        )
                    raise

                wait = min(delay, policy.max_delay)
                logger.info(
                    "Retry %d/%d for %s in %.1fs: %s",
                    attempt, policy.max_attempts - 1, policy.step, wait, exc,
                )
                await _sleep(wait)
                delay *= policy.backoff_multiplier
                continue

            self.classifier.track_success(policy.step, attempt)
            return result

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"{policy.step} failed after {policy.max_attempts} attempts")
