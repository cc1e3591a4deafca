"""
Orchestrator — Article Engine
=============================

Drives one article generation job through the ordered phase list:

    INIT -> RESEARCH -> COMPETITOR_ANALYSIS -> STRATEGY -> CONTENT_PLAN -> IMAGE
         -> WRITING -> LINK_ENRICHMENT -> META -> CATEGORY -> PUBLISH -> COMPLETED

On submission the duplicate guard runs first: a completed duplicate
short-circuits with the stored result, an in-flight duplicate raises
DuplicateJobError.  Otherwise the job resumes from its checkpoint or starts
fresh, and every phase is delegated to its step worker through the retry
executor and checkpointed on completion.

Phase failure is handled uniformly from the criticality table:

    optional  -> warning recorded, phase completed with a degraded payload
    required  -> markFailed, checkpoint, JobFailedError raised to the caller

When the last phase completes the job is marked COMPLETED, checkpointed, and
the assembled article is persisted as a completed work record.  Failing to
persist it is logged, never turned into a job failure; the checkpoint is only
cleared once the record is stored.

Usage:
    from article_engine.orchestrator import JobSubmission, get_orchestrator

    orchestrator = get_orchestrator()
    result = await orchestrator.execute(
        JobSubmission(scope="site-1", subject="Best Coffee Makers")
    )
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from article_engine.assembly import assemble_article
from article_engine.checkpoint_manager import CheckpointManager, CheckpointStore, JsonCheckpointStore
from article_engine.config import EngineConfig, load_config
from article_engine.duplicate_guard import (
    CompletedWork,
    DuplicateGuard,
    DuplicateKind,
    JobRecord,
    JobStatus,
    JsonSubmissionStore,
    SubmissionStore,
    normalize_subject,
)
from article_engine.error_classifier import ErrorClassifier
from article_engine.job_state import (
    ImageOutput,
    InitOutput,
    JobState,
    LinkEnrichmentOutput,
    Phase,
    PhaseError,
    PhaseOutput,
    ResearchOutput,
    TargetConfig,
    WORK_PHASES,
    WritingOutput,
    is_optional,
    parse_phase,
)
from article_engine.link_engine import LinkCandidate, LinkEngineConfig, LinkInsertionEngine
from article_engine.retry_policy import RetryExecutor, get_policy
from article_engine.step_workers import (
    MissingUpstreamError,
    StepInput,
    StepNotConfiguredError,
    StepWorker,
    build_http_workers,
    coerce_phase_output,
)

logger = logging.getLogger("orchestrator")

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
# Phase wiring
# ---------------------------------------------------------------------------

# Phases served by exactly one worker whose payload is the phase output
PHASE_STEPS: Dict[Phase, str] = {
    Phase.RESEARCH: "research",
    Phase.COMPETITOR_ANALYSIS: "competitor_analysis",
    Phase.STRATEGY: "strategy",
    Phase.CONTENT_PLAN: "content_plan",
    Phase.WRITING: "writing",
    Phase.META: "meta",
    Phase.CATEGORY: "category",
    Phase.PUBLISH: "publish",
}

# Upstream outputs a phase cannot run without
PHASE_REQUIRES: Dict[Phase, List[Phase]] = {
    Phase.STRATEGY: [Phase.RESEARCH],
    Phase.WRITING: [Phase.STRATEGY],
    Phase.LINK_ENRICHMENT: [Phase.WRITING],
    Phase.META: [Phase.WRITING],
    Phase.PUBLISH: [Phase.WRITING, Phase.META],
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DuplicateJobError(Exception):
    """An equivalent job is already pending or processing."""

    def __init__(self, message: str, existing_job_id: Optional[str] = None):
        super().__init__(message)
        self.existing_job_id = existing_job_id


class JobFailedError(Exception):
    """A required phase failed; the job is checkpointed as FAILED."""

    def __init__(
        self,
        job_id: str,
        phase: str,
        message: str,
        has_partial_output: bool = False,
        error_summary: str = "",
    ):
        super().__init__(f"Job {job_id} failed at phase '{phase}': {message}")
        self.job_id = job_id
        self.phase = phase
        self.message = message
        self.has_partial_output = has_partial_output
        self.error_summary = error_summary


class JobAlreadyFailedError(JobFailedError):
    """The job's checkpoint is FAILED and no manual resume was requested."""


# ---------------------------------------------------------------------------
# Submission / result
# ---------------------------------------------------------------------------


@dataclass
class JobSubmission:
    scope: str
    subject: str
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    target_config: TargetConfig = field(default_factory=TargetConfig)
    force_regenerate: bool = False
    resume_failed: bool = False


@dataclass
class JobResult:
    job_id: str
    scope: str
    subject_key: str
    status: str = JobStatus.COMPLETED.value
    title: str = ""
    slug: str = ""
    html: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    work_id: Optional[str] = None
    from_duplicate: bool = False
    resumed_from: Optional[str] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    completed_phases: List[str] = field(default_factory=list)
    execution_stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_completed(
        cls,
        work: CompletedWork,
        job_id: Optional[str] = None,
        from_duplicate: bool = False,
    ) -> JobResult:
        """Rebuild a result from a stored completed work record."""
        metadata = dict(work.metadata)
        return cls(
            job_id=job_id or work.job_id,
            scope=work.scope,
            subject_key=work.subject_key,
            title=work.title,
            slug=work.slug,
            html=work.html,
            metadata=metadata,
            work_id=work.work_id,
            from_duplicate=from_duplicate,
            warnings=list(metadata.get("warnings", [])),
            completed_phases=list(metadata.get("completed_phases", [])),
        )


@dataclass
class _RunContext:
    """Per-run collaborators, passed explicitly to every phase handler."""
    state: JobState
    checkpoint: CheckpointManager
    classifier: ErrorClassifier
    executor: RetryExecutor
    phase_seconds: Dict[str, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """
    Sequential phase driver with checkpoint/resume and duplicate protection.

    Parameters
    ----------
    workers : mapping of step name -> StepWorker
        Missing workers fail their phase with StepNotConfiguredError.
    config : EngineConfig, optional
    checkpoint_store : CheckpointStore, optional
        Defaults to JSON files under ``config.checkpoint_dir``.
    submission_store : SubmissionStore, optional
        Defaults to JSON files under ``config.submissions_dir``.
    link_config : LinkEngineConfig, optional
        Defaults to ``config.link_engine``.
    """

    def __init__(
        self,
        workers: Optional[Mapping[str, StepWorker]] = None,
        config: Optional[EngineConfig] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        submission_store: Optional[SubmissionStore] = None,
        link_config: Optional[LinkEngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()
        self.workers: Dict[str, StepWorker] = dict(workers or {})
        self.checkpoint_store = checkpoint_store or JsonCheckpointStore(self.config.checkpoint_dir)
        self.submission_store = submission_store or JsonSubmissionStore(self.config.submissions_dir)
        self.guard = DuplicateGuard(self.submission_store, self.config.duplicate_window_days)
        self.link_config = link_config or LinkEngineConfig.from_dict(self.config.link_engine)
        self.skip_phases = {parse_phase(p) for p in self.config.skip_phases}

        self._phase_handlers: Dict[Phase, Callable[[_RunContext], Awaitable[PhaseOutput]]] = {
            Phase.INIT: self._phase_init,
            Phase.IMAGE: self._phase_image,
            Phase.LINK_ENRICHMENT: self._phase_link_enrichment,
        }
        for phase, step in PHASE_STEPS.items():
            self._phase_handlers[phase] = self._make_step_handler(phase, step)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(self, submission: JobSubmission) -> JobResult:
        """
        Run (or resume) a job to completion.

        Returns
        -------
        JobResult
            The generated article, or the stored one for a completed duplicate.

        Raises
        ------
        DuplicateJobError
            An equivalent job is in flight within the duplicate window.
        JobAlreadyFailedError
            The job's checkpoint is FAILED and ``resume_failed`` is not set.
        JobFailedError
            A required phase failed; the FAILED state is checkpointed.
        """
        started = time.monotonic()

        duplicate = await self._check_duplicate(submission)
        if duplicate is not None:
            return duplicate

        checkpoint = CheckpointManager(submission.job_id, self.checkpoint_store)
        point = checkpoint.resume()
        resumed_from: Optional[str] = None

        if point.state is not None and point.is_terminal:
            state = point.state
            if state.current_phase == Phase.COMPLETED:
                logger.info("Job %s already completed, rebuilding result", submission.job_id)
                return self._finalize(state, checkpoint, None, started)
            if not submission.resume_failed:
                last = state.errors[-1] if state.errors else None
                raise JobAlreadyFailedError(
                    submission.job_id,
                    last.phase if last else Phase.FAILED.value,
                    last.message if last else "job previously failed",
                    has_partial_output=state.has_partial_output,
                )
            reopened = state.reopen()
            resumed_from = reopened.value if reopened else None
            logger.info("Manually resuming FAILED job %s from %s", submission.job_id, resumed_from)
        elif point.state is not None:
            state = point.state
            resumed_from = point.resume_phase.value if point.resume_phase else None
            logger.info("Resuming job %s from phase %s", submission.job_id, resumed_from)
        else:
            state = JobState.new(
                submission.job_id, submission.scope, submission.subject, submission.target_config,
            )
            logger.info("Starting job %s for '%s' (scope=%s)",
                        submission.job_id, state.subject_key, state.scope)

        self._record_job(state, JobStatus.PROCESSING)

        classifier = ErrorClassifier(job_id=state.job_id)
        ctx = _RunContext(
            state=state,
            checkpoint=checkpoint,
            classifier=classifier,
            executor=RetryExecutor(classifier),
        )
        await self._run_phases(ctx)

        state.mark_completed()
        checkpoint.save(state)
        result = self._finalize(state, checkpoint, ctx, started)
        result.resumed_from = resumed_from
        return result

    async def close(self) -> None:
        """Close workers that hold network sessions."""
        for worker in self.workers.values():
            close = getattr(worker, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Driver loop
    # ------------------------------------------------------------------

    async def _check_duplicate(self, submission: JobSubmission) -> Optional[JobResult]:
        check = self.guard.check(
            submission.scope,
            submission.subject,
            exclude_job_id=submission.job_id,
            force=submission.force_regenerate,
        )
        if check.kind == DuplicateKind.IN_FLIGHT:
            logger.warning("Rejecting job %s: %s", submission.job_id, check.message)
            raise DuplicateJobError(check.message, existing_job_id=check.locator)
        if check.kind == DuplicateKind.COMPLETED:
            work = self.guard.get_completed(check.locator) if check.locator else None
            if work is not None:
                logger.info("Job %s short-circuited: %s", submission.job_id, check.message)
                return JobResult.from_completed(work, job_id=submission.job_id, from_duplicate=True)
            logger.warning(
                "Completed duplicate %s could not be loaded, generating anew", check.locator,
            )
        return None

    async def _run_phases(self, ctx: _RunContext) -> None:
        state = ctx.state
        for phase in WORK_PHASES:
            if state.is_phase_completed(phase):
                logger.debug("Phase %s already completed, skipping", phase.value)
                continue

            if phase in self.skip_phases:
                state.add_warning(phase, f"{phase.value} skipped by configuration")
                state.complete_phase(phase, reason="skipped by configuration")
                ctx.checkpoint.save(state)
                continue

            state.set_phase(phase)
            logger.info("Job %s | phase %s started", state.job_id, phase.value)
            phase_start = time.monotonic()
            try:
                output = await self._phase_handlers[phase](ctx)
            except Exception as exc:
                ctx.phase_seconds[phase.value] = round(time.monotonic() - phase_start, 3)
                self._handle_phase_failure(ctx, phase, exc)
                continue

            ctx.phase_seconds[phase.value] = round(time.monotonic() - phase_start, 3)
            state.record_output(phase, output)
            ctx.checkpoint.save(state)
            logger.info("Job %s | phase %s completed in %.2fs",
                        state.job_id, phase.value, ctx.phase_seconds[phase.value])

    def _handle_phase_failure(self, ctx: _RunContext, phase: Phase, exc: Exception) -> None:
        """Degrade an optional phase, or fail the job for a required one (re-raising)."""
        state = ctx.state
        if is_optional(phase):
            ctx.classifier.track_phase_failure(phase.value, exc, critical=False)
            logger.warning("Job %s | optional phase %s failed, continuing: %s",
                           state.job_id, phase.value, exc)
            state.add_warning(phase, f"{phase.value} failed: {exc}")
            state.complete_phase(phase, reason=str(exc))
            ctx.checkpoint.save(state)
            return

        ctx.classifier.track_phase_failure(phase.value, exc, critical=True)
        state.mark_failed(PhaseError.from_exception(phase, exc))
        ctx.checkpoint.save(state)
        self._record_job(state, JobStatus.FAILED, error=str(exc))
        summary = ctx.classifier.generate_summary()["message"]
        logger.error("Job %s FAILED at phase %s: %s", state.job_id, phase.value, exc)
        raise JobFailedError(
            state.job_id,
            phase.value,
            str(exc) or type(exc).__name__,
            has_partial_output=state.has_partial_output,
            error_summary=summary,
        ) from exc

    def _finalize(
        self,
        state: JobState,
        checkpoint: CheckpointManager,
        ctx: Optional[_RunContext],
        started: float,
    ) -> JobResult:
        work = assemble_article(state)
        work_id = self._persist(work)
        if work_id is not None:
            checkpoint.clear()
        self._record_job(state, JobStatus.COMPLETED, work_id=work_id)

        result = JobResult.from_completed(work, job_id=state.job_id)
        result.work_id = work_id
        stats: Dict[str, Any] = {"total_seconds": round(time.monotonic() - started, 3)}
        if ctx is not None:
            stats["phase_seconds"] = dict(ctx.phase_seconds)
            stats["errors"] = ctx.classifier.get_stats()
        result.execution_stats = stats
        logger.info("Job %s COMPLETED: '%s' (%d warnings)",
                    state.job_id, result.title, len(result.warnings))
        return result

    def _persist(self, work: CompletedWork) -> Optional[str]:
        try:
            return self.submission_store.save_completed(work)
        except Exception as exc:
            logger.error("Persisting result of job %s failed, checkpoint kept: %s",
                         work.job_id, exc)
            return None

    def _record_job(
        self,
        state: JobState,
        status: JobStatus,
        error: Optional[str] = None,
        work_id: Optional[str] = None,
    ) -> None:
        record = JobRecord(
            job_id=state.job_id,
            scope=state.scope,
            subject_key=state.subject_key,
            status=status.value,
            error=error,
            work_id=work_id,
        )
        try:
            self.submission_store.upsert_job(record)
        except Exception as exc:
            logger.warning("Cannot record status %s for job %s: %s",
                           status.value, state.job_id, exc)

    # ------------------------------------------------------------------
    # Step invocation
    # ------------------------------------------------------------------

    def _require_upstream(self, state: JobState, phase: Phase) -> None:
        for upstream in PHASE_REQUIRES.get(phase, []):
            if state.get_typed(upstream) is None:
                raise MissingUpstreamError(phase, upstream)

    async def _call_step(
        self,
        ctx: _RunContext,
        phase: Phase,
        step: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Invoke the worker for *step* under its retry policy."""
        worker = self.workers.get(step)
        if worker is None:
            raise StepNotConfiguredError(step)
        policy = get_policy(step, self.config.retry_overrides.get(step))
        state = ctx.state

        async def _attempt(attempt: int) -> Any:
            step_input = StepInput(
                job_id=state.job_id,
                phase=phase,
                step=step,
                subject=state.subject_key,
                target_config=state.target_config,
                upstream=state.upstream(),
                params={**(params or {}), **policy.params_for_attempt(attempt)},
                attempt=attempt,
            )
            return await worker.execute(step_input)

        return await ctx.executor.run(_attempt, policy, phase=phase.value)

    def _make_step_handler(
        self, phase: Phase, step: str,
    ) -> Callable[[_RunContext], Awaitable[PhaseOutput]]:
        async def _handler(ctx: _RunContext) -> PhaseOutput:
            self._require_upstream(ctx.state, phase)
            raw = await self._call_step(ctx, phase, step)
            return coerce_phase_output(phase, raw)

        _handler.__name__ = f"_phase_{phase.value}"
        return _handler

    # ------------------------------------------------------------------
    # Phase handlers with local logic
    # ------------------------------------------------------------------

    async def _phase_init(self, ctx: _RunContext) -> InitOutput:
        state = ctx.state
        if not state.subject_key:
            raise ValueError("Invalid submission: subject must not be empty")
        return InitOutput(
            subject_key=state.subject_key,
            normalized_subject=normalize_subject(state.subject_key),
        )

    async def _phase_image(self, ctx: _RunContext) -> ImageOutput:
        """Featured and content images are generated concurrently."""
        steps = [s for s in ("featured_image", "content_images") if s in self.workers]
        if not steps:
            raise StepNotConfiguredError("featured_image")

        params = {"featured_image": {}, "content_images": {"count": ctx.state.target_config.image_count}}
        results = await asyncio.gather(
            *(self._call_step(ctx, Phase.IMAGE, s, params[s]) for s in steps),
            return_exceptions=True,
        )
        failures = [(s, r) for s, r in zip(steps, results) if isinstance(r, BaseException)]
        if len(failures) == len(steps):
            raise failures[0][1]
        for step, exc in failures:
            ctx.state.add_warning(Phase.IMAGE, f"{step} failed: {exc}")

        output = ImageOutput()
        for step, payload in zip(steps, results):
            if isinstance(payload, BaseException):
                continue
            if step == "featured_image":
                if isinstance(payload, dict):
                    output.featured_image = payload.get("featured_image", payload)
            else:
                images = payload.get("content_images", []) if isinstance(payload, dict) else payload
                output.content_images = [img for img in images or [] if isinstance(img, dict)]
        return output

    async def _phase_link_enrichment(self, ctx: _RunContext) -> LinkEnrichmentOutput:
        state = ctx.state
        self._require_upstream(state, Phase.LINK_ENRICHMENT)
        writing: WritingOutput = state.get_typed(Phase.WRITING)

        internal: List[LinkCandidate] = []
        if "internal_links" in self.workers:
            try:
                payload = await self._call_step(ctx, Phase.LINK_ENRICHMENT, "internal_links")
            except Exception as exc:
                state.add_warning(Phase.LINK_ENRICHMENT, f"internal_links failed: {exc}")
                logger.warning("Job %s | internal link lookup failed: %s", state.job_id, exc)
            else:
                items = payload.get("links", []) if isinstance(payload, dict) else payload
                internal = [
                    LinkCandidate.from_dict(i)
                    for i in (items if isinstance(items, list) else [])
                    if isinstance(i, dict) and i.get("url")
                ]

        research: Optional[ResearchOutput] = state.get_typed(Phase.RESEARCH)
        external = [
            LinkCandidate.from_reference(ref)
            for ref in (research.sources if research else [])
            if isinstance(ref, dict) and ref.get("url")
        ]

        engine = LinkInsertionEngine(self.link_config)
        result = engine.insert(
            writing.html, internal, external, subject_phrase=state.subject_key,
        )
        return LinkEnrichmentOutput(
            html=result.markup,
            stats=result.stats.to_dict(),
            inserted_links=[link.to_dict() for link in result.inserted_links],
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_instance: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Orchestrator wired from the loaded config and its HTTP worker endpoints."""
    global _instance
    if _instance is None:
        config = load_config()
        workers = build_http_workers(
            config.worker_endpoints,
            timeout=config.worker_timeout_seconds,
            headers=config.worker_headers,
        )
        _instance = Orchestrator(workers=workers, config=config)
    return _instance
