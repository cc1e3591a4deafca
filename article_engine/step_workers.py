"""
Step Workers — Article Engine
=============================

The orchestrator consumes every generation step (research, strategy, writing,
images, metadata, categorization, publishing) through one contract::

    await worker.execute(step_input) -> payload

A worker fails by raising.  ``StepWorkerError`` carries optional ``code``,
``status`` and ``category`` hints that the error classifier reads before
falling back to message matching.

Two implementations ship with the engine:

    HttpStepWorker      POSTs the StepInput as JSON to a remote endpoint (aiohttp)
    FunctionStepWorker  wraps a local callable (sync or async)

Usage:
    from article_engine.step_workers import HttpStepWorker, StepInput

    worker = HttpStepWorker("http://localhost:8700/research", step="research")
    payload = await worker.execute(step_input)
    await worker.close()
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

import aiohttp

from article_engine.error_classifier import ErrorCategory
from article_engine.job_state import (
    DegradedOutput,
    Phase,
    PhaseOutput,
    TargetConfig,
    encode_output,
    output_type_for,
)

logger = logging.getLogger("step_workers")

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

DEFAULT_TIMEOUT = 120.0
USER_AGENT = "ArticleEngine/1.0"

# Step names a worker can be registered under
STEP_NAMES = (
    "research",
    "competitor_analysis",
    "strategy",
    "content_plan",
    "featured_image",
    "content_images",
    "writing",
    "internal_links",
    "meta",
    "category",
    "publish",
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class StepWorkerError(Exception):
    """Base error raised by step workers."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        category: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.category = category


class StepNotConfiguredError(StepWorkerError):
    """No worker is registered for the requested step."""

    def __init__(self, step: str):
        super().__init__(
            f"No worker configured for step '{step}'",
            category=ErrorCategory.LOGIC.value,
        )
        self.step = step


class MissingUpstreamError(StepWorkerError):
    """A phase needs the output of an upstream phase that is absent."""

    def __init__(self, phase: Phase, upstream: Phase):
        super().__init__(
            f"Phase '{phase.value}' requires output of '{upstream.value}'",
            category=ErrorCategory.LOGIC.value,
        )
        self.phase = phase
        self.upstream = upstream


class PhaseOutputError(StepWorkerError):
    """A worker payload does not fit the phase's output type."""

    def __init__(self, phase: Phase, detail: str):
        super().__init__(
            f"Invalid payload for phase '{phase.value}': {detail}",
            category=ErrorCategory.PARSING.value,
        )
        self.phase = phase


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@dataclass
class StepInput:
    """Everything a worker receives; request context is passed explicitly."""
    job_id: str
    phase: Phase
    step: str
    subject: str
    target_config: TargetConfig = field(default_factory=TargetConfig)
    upstream: Dict[Phase, PhaseOutput] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1

    def require(self, phase: Phase) -> Any:
        """Return the real (non-degraded) output of *phase* or raise MissingUpstreamError."""
        output = self.upstream.get(phase)
        if output is None or isinstance(output, DegradedOutput):
            raise MissingUpstreamError(self.phase, phase)
        return output

    def optional(self, phase: Phase) -> Optional[Any]:
        output = self.upstream.get(phase)
        if isinstance(output, DegradedOutput):
            return None
        return output

    def to_payload(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "phase": self.phase.value,
            "step": self.step,
            "subject": self.subject,
            "target_config": self.target_config.to_dict(),
            "upstream": {p.value: encode_output(o) for p, o in self.upstream.items()},
            "params": dict(self.params),
            "attempt": self.attempt,
        }


class StepWorker(Protocol):
    async def execute(self, step_input: StepInput) -> Any: ...


def coerce_phase_output(phase: Phase, value: Any) -> PhaseOutput:
    """Turn a worker payload into the typed output of *phase*.

    Accepts an instance of the output type or a dict (optionally wrapped as
    ``{"output": {...}}``).  Anything else, or an output whose fields fail
    ``validate()`` (wrong types, empty required text), raises PhaseOutputError.
    """
    output_type = output_type_for(phase)
    if isinstance(value, dict):
        if "output" in value and isinstance(value["output"], dict):
            value = value["output"]
        try:
            value = output_type.from_dict(value)
        except TypeError as exc:
            raise PhaseOutputError(phase, str(exc)) from exc
    elif not isinstance(value, output_type):
        raise PhaseOutputError(phase, f"expected object, got {type(value).__name__}")

    problems = value.validate()
    if problems:
        raise PhaseOutputError(phase, "; ".join(problems))
    return value


# ---------------------------------------------------------------------------
# HTTP worker
# ---------------------------------------------------------------------------


class HttpStepWorker:
    """
    Step worker backed by a JSON-over-HTTP endpoint.

    Parameters
    ----------
    endpoint : str
        URL receiving ``POST`` with the StepInput payload.
    step : str
        Step name, used in error messages and logs.
    timeout : float
        Total request timeout in seconds.
    headers : dict, optional
        Extra request headers (e.g. Authorization).
    session : aiohttp.ClientSession, optional
        Shared session; when omitted the worker opens and owns one.

    Status handling: 2xx returns the decoded body, 429 is a rate limit,
    5xx a network failure (both retryable), other 4xx a validation failure.
    """

    def __init__(
        self,
        endpoint: str,
        step: str,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint
        self.step = step
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": USER_AGENT,
                "Accept": "application/json",
                **self.headers,
            }
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def execute(self, step_input: StepInput) -> Any:
        session = await self._get_session()
        payload = step_input.to_payload()
        logger.debug("POST %s step=%s attempt=%d", self.endpoint, self.step, step_input.attempt)

        try:
            async with session.post(self.endpoint, json=payload) as resp:
                status = resp.status
                if status == 429:
                    raise StepWorkerError(
                        f"{self.step}: rate limit exceeded (HTTP 429)",
                        code="rate_limit_exceeded", status=status,
                        category=ErrorCategory.RATE_LIMIT.value,
                    )
                if status >= 500:
                    text = await resp.text()
                    raise StepWorkerError(
                        f"{self.step}: server error HTTP {status}: {text[:200]}",
                        status=status, category=ErrorCategory.NETWORK.value,
                    )
                if status >= 400:
                    text = await resp.text()
                    raise StepWorkerError(
                        f"{self.step}: request rejected HTTP {status}: {text[:200]}",
                        status=status, category=ErrorCategory.VALIDATION.value,
                    )
                try:
                    return await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError) as exc:
                    raise StepWorkerError(
                        f"{self.step}: response is not valid JSON: {exc}",
                        status=status, category=ErrorCategory.PARSING.value,
                    ) from exc
        except aiohttp.ClientError as exc:
            raise StepWorkerError(
                f"{self.step}: network error: {exc}",
                category=ErrorCategory.NETWORK.value,
            ) from exc


# ---------------------------------------------------------------------------
# Local worker
# ---------------------------------------------------------------------------


class FunctionStepWorker:
    """Adapts a plain callable ``fn(step_input)`` (sync or async) to the contract."""

    def __init__(self, func: Callable[[StepInput], Union[Any, Awaitable[Any]]], step: str = ""):
        self.func = func
        self.step = step or getattr(func, "__name__", "function")

    async def execute(self, step_input: StepInput) -> Any:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(step_input)
        result = await asyncio.to_thread(self.func, step_input)
        if inspect.isawaitable(result):
            return await result
        return result


def build_http_workers(
    endpoints: Dict[str, str],
    timeout: float = DEFAULT_TIMEOUT,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, HttpStepWorker]:
    """One HttpStepWorker per configured step; unknown step names are skipped."""
    workers: Dict[str, HttpStepWorker] = {}
    for step, url in endpoints.items():
        if step not in STEP_NAMES:
            logger.warning("Ignoring endpoint for unknown step '%s'", step)
            continue
        workers[step] = HttpStepWorker(url, step=step, timeout=timeout, headers=headers)
    return workers
