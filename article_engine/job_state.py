"""
Job State — Article Engine
==========================

In-memory, serializable record of one generation job: which phase is active,
which phases are complete, the typed output each phase produced, and the
warnings/errors accumulated along the way.

Phases form a strict total order (``PHASE_ORDER``).  COMPLETED and FAILED are
terminal and never appear in the completed set; every other phase enters the
completed set at most once and never leaves it.

Every phase output is a dataclass registered in ``PHASE_OUTPUT_TYPES`` so the
consumer of a phase always knows the shape it receives.  A phase completed
without real output (an optional phase that degraded) carries a
``DegradedOutput`` instead, which keeps "output present iff phase completed"
true for every job.

Usage:
    from article_engine.job_state import JobState, Phase, TargetConfig

    state = JobState.new("job-1", scope="site-1", subject="Best Coffee Makers")
    state.set_phase(Phase.RESEARCH)
    state.record_output(Phase.RESEARCH, ResearchOutput(summary="..."))
    state.is_phase_completed(Phase.RESEARCH)   # True
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import MISSING, Field, asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

logger = logging.getLogger("job_state")

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


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    """Ordered phases of an article generation job."""
    INIT = "init"
    RESEARCH = "research"
    COMPETITOR_ANALYSIS = "competitor_analysis"
    STRATEGY = "strategy"
    CONTENT_PLAN = "content_plan"
    IMAGE = "image"
    WRITING = "writing"
    LINK_ENRICHMENT = "link_enrichment"
    META = "meta"
    CATEGORY = "category"
    PUBLISH = "publish"
    COMPLETED = "completed"
    FAILED = "failed"


class Criticality(str, Enum):
    """Whether a phase failure aborts the job or degrades it."""
    REQUIRED = "required"
    OPTIONAL = "optional"


PHASE_ORDER: List[Phase] = list(Phase)
TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})
WORK_PHASES: List[Phase] = [p for p in PHASE_ORDER if p not in TERMINAL_PHASES]

PHASE_CRITICALITY: Dict[Phase, Criticality] = {
    Phase.INIT: Criticality.REQUIRED,
    Phase.RESEARCH: Criticality.REQUIRED,
    Phase.COMPETITOR_ANALYSIS: Criticality.OPTIONAL,
    Phase.STRATEGY: Criticality.REQUIRED,
    Phase.CONTENT_PLAN: Criticality.OPTIONAL,
    Phase.IMAGE: Criticality.OPTIONAL,
    Phase.WRITING: Criticality.REQUIRED,
    Phase.LINK_ENRICHMENT: Criticality.OPTIONAL,
    Phase.META: Criticality.REQUIRED,
    Phase.CATEGORY: Criticality.OPTIONAL,
    Phase.PUBLISH: Criticality.OPTIONAL,
}


class UnknownPhaseError(ValueError):
    """Raised for a phase key outside the enumeration or without an output schema."""


def parse_phase(value: Union[str, Phase]) -> Phase:
    """Convert a phase name/value to a Phase, raising UnknownPhaseError."""
    if isinstance(value, Phase):
        return value
    try:
        return Phase(str(value).lower())
    except ValueError:
        raise UnknownPhaseError(f"Unknown phase '{value}'") from None


def is_optional(phase: Phase) -> bool:
    """True if a failure in *phase* converts to a warning instead of aborting."""
    return PHASE_CRITICALITY.get(phase) == Criticality.OPTIONAL


# ---------------------------------------------------------------------------
# Phase outputs (one dataclass per phase)
# ---------------------------------------------------------------------------


def _expected_type(f: Field) -> Optional[type]:
    """Type a field's value must have, read from its default; None skips the check."""
    if f.default_factory is list:
        return list
    if f.default_factory is dict:
        return dict
    if f.default is MISSING or f.default is None:
        return None
    return type(f.default)


class _Output:
    """Shared (de)serialization and validation for phase output dataclasses."""

    # Fields that must hold a non-empty string
    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})

    def validate(self) -> List[str]:
        """Return the problems that make this output unusable; empty when valid."""
        problems = []
        for f in fields(self):
            expected = _expected_type(f)
            if expected is None:
                continue
            value = getattr(self, f.name)
            if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
                problems.append(
                    f"'{f.name}' must be {expected.__name__}, got {type(value).__name__}"
                )
        for name in self.REQUIRED_FIELDS:
            value = getattr(self, name)
            if isinstance(value, str) and not value.strip():
                problems.append(f"'{name}' must not be empty")
        return problems


@dataclass
class InitOutput(_Output):
    subject_key: str
    normalized_subject: str = ""
    initialized_at: str = field(default_factory=_now_iso)


@dataclass
class ResearchOutput(_Output):
    summary: str = ""
    keywords: List[str] = field(default_factory=list)
    search_intent: str = ""
    # external references: {url, title, description, domain}
    sources: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CompetitorAnalysisOutput(_Output):
    competitors: List[Dict[str, Any]] = field(default_factory=list)
    content_gaps: List[str] = field(default_factory=list)


@dataclass
class StrategyOutput(_Output):
    REQUIRED_FIELDS = ("selected_title",)

    selected_title: str = ""
    outline: List[Dict[str, Any]] = field(default_factory=list)
    target_keywords: List[str] = field(default_factory=list)


@dataclass
class ContentPlanOutput(_Output):
    sections: List[Dict[str, Any]] = field(default_factory=list)
    tone: str = ""


@dataclass
class ImageOutput(_Output):
    # images: {url, alt_text, width, height}
    featured_image: Optional[Dict[str, Any]] = None
    content_images: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class WritingOutput(_Output):
    REQUIRED_FIELDS = ("html",)

    html: str = ""
    word_count: int = 0


@dataclass
class LinkEnrichmentOutput(_Output):
    html: str = ""
    stats: Dict[str, Any] = field(default_factory=dict)
    inserted_links: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class MetaOutput(_Output):
    REQUIRED_FIELDS = ("title",)

    title: str = ""
    description: str = ""
    slug: str = ""
    focus_keyword: str = ""


@dataclass
class CategoryOutput(_Output):
    categories: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


@dataclass
class PublishOutput(_Output):
    post_id: Optional[str] = None
    url: str = ""
    status: str = ""


@dataclass
class DegradedOutput(_Output):
    """Placeholder for a phase completed without real output."""
    reason: str = ""


PhaseOutput = Union[
    InitOutput,
    ResearchOutput,
    CompetitorAnalysisOutput,
    StrategyOutput,
    ContentPlanOutput,
    ImageOutput,
    WritingOutput,
    LinkEnrichmentOutput,
    MetaOutput,
    CategoryOutput,
    PublishOutput,
    DegradedOutput,
]

PHASE_OUTPUT_TYPES: Dict[Phase, Type[_Output]] = {
    Phase.INIT: InitOutput,
    Phase.RESEARCH: ResearchOutput,
    Phase.COMPETITOR_ANALYSIS: CompetitorAnalysisOutput,
    Phase.STRATEGY: StrategyOutput,
    Phase.CONTENT_PLAN: ContentPlanOutput,
    Phase.IMAGE: ImageOutput,
    Phase.WRITING: WritingOutput,
    Phase.LINK_ENRICHMENT: LinkEnrichmentOutput,
    Phase.META: MetaOutput,
    Phase.CATEGORY: CategoryOutput,
    Phase.PUBLISH: PublishOutput,
}

_DEGRADED_KEY = "__degraded__"


def output_type_for(phase: Phase) -> Type[_Output]:
    """Return the output dataclass registered for *phase*."""
    try:
        return PHASE_OUTPUT_TYPES[phase]
    except KeyError:
        raise UnknownPhaseError(f"Phase '{phase.value}' has no output schema") from None


def encode_output(output: PhaseOutput) -> Dict[str, Any]:
    """Serialize a phase output; degraded payloads are tagged."""
    data = output.to_dict()
    if isinstance(output, DegradedOutput):
        data[_DEGRADED_KEY] = True
    return data


def decode_output(phase: Phase, data: Dict[str, Any]) -> PhaseOutput:
    """Rebuild the typed output for *phase* from its serialized form."""
    if data.get(_DEGRADED_KEY):
        return DegradedOutput.from_dict(data)
    return output_type_for(phase).from_dict(data)


# ---------------------------------------------------------------------------
# Job records
# ---------------------------------------------------------------------------


@dataclass
class TargetConfig:
    """What the job should produce."""
    language: str = "en"
    target_word_count: int = 2000
    image_count: int = 3
    industry: Optional[str] = None
    region: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TargetConfig:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PhaseWarning:
    phase: str
    message: str
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PhaseWarning:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PhaseError:
    phase: str
    message: str
    stack: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_exception(cls, phase: Phase, exc: BaseException) -> PhaseError:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(phase=phase.value, message=str(exc) or type(exc).__name__, stack=stack)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PhaseError:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


class JobState:
    """Progress record of one job.

    The completed set only ever grows.  ``record_output`` implies
    ``complete_phase``; ``complete_phase`` without an output stores a
    ``DegradedOutput`` so that a completed phase always has an output.
    No ordering validation happens here; the orchestrator only requests
    forward phases.
    """

    def __init__(
        self,
        job_id: str,
        scope: str,
        subject_key: str,
        target_config: Optional[TargetConfig] = None,
        started_at: Optional[str] = None,
    ) -> None:
        self.job_id = job_id
        self.scope = scope
        self.subject_key = subject_key
        self.target_config = target_config or TargetConfig()
        self.current_phase: Phase = Phase.INIT
        self._completed: List[Phase] = []
        self._outputs: Dict[Phase, PhaseOutput] = {}
        self.warnings: List[PhaseWarning] = []
        self.errors: List[PhaseError] = []
        self.started_at = started_at or _now_iso()
        self.updated_at = self.started_at

    @classmethod
    def new(
        cls,
        job_id: str,
        scope: str,
        subject: str,
        target_config: Optional[TargetConfig] = None,
    ) -> JobState:
        return cls(job_id=job_id, scope=scope, subject_key=subject.strip(),
                   target_config=target_config)

    def _touch(self) -> None:
        self.updated_at = _now_iso()

    # -- transitions ---------------------------------------------------------

    def set_phase(self, phase: Phase) -> None:
        self.current_phase = phase
        self._touch()

    def complete_phase(self, phase: Phase, reason: str = "") -> None:
        """Add *phase* to the completed set.  Re-completing is a no-op."""
        if phase in TERMINAL_PHASES:
            raise UnknownPhaseError(f"Terminal phase '{phase.value}' cannot be completed")
        if phase in self._completed:
            return
        if phase not in self._outputs:
            self._outputs[phase] = DegradedOutput(reason=reason)
        self._completed.append(phase)
        self._touch()

    def record_output(self, phase: Phase, output: PhaseOutput) -> None:
        """Store *output* for *phase* and mark it completed.

        Output of an already-completed phase is never replaced.
        """
        if phase in self._completed:
            logger.debug("Phase %s already completed, keeping existing output", phase.value)
            return
        if not isinstance(output, (output_type_for(phase), DegradedOutput)):
            raise TypeError(
                f"Phase '{phase.value}' expects {output_type_for(phase).__name__}, "
                f"got {type(output).__name__}"
            )
        self._outputs[phase] = output
        self.complete_phase(phase)

    def add_warning(self, phase: Phase, message: str) -> None:
        self.warnings.append(PhaseWarning(phase=phase.value, message=message))
        self._touch()

    def add_error(self, error: PhaseError) -> None:
        self.errors.append(error)
        self._touch()

    def mark_completed(self) -> None:
        self.current_phase = Phase.COMPLETED
        self._touch()

    def mark_failed(self, error: Optional[PhaseError] = None) -> None:
        """Move to FAILED.  Outputs recorded so far are kept."""
        self.current_phase = Phase.FAILED
        if error is not None:
            self.errors.append(error)
        self._touch()

    def reopen(self) -> Optional[Phase]:
        """Leave a FAILED state for a manual resume.

        Returns the phase the job will continue from, or None when every
        phase is already complete.
        """
        next_phase = self.next_phase()
        self.current_phase = next_phase or Phase.INIT
        self._touch()
        return next_phase

    # -- queries -------------------------------------------------------------

    def is_phase_completed(self, phase: Phase) -> bool:
        return phase in self._completed

    @property
    def completed_phases(self) -> List[Phase]:
        return list(self._completed)

    @property
    def is_terminal(self) -> bool:
        return self.current_phase in TERMINAL_PHASES

    @property
    def has_partial_output(self) -> bool:
        return any(p != Phase.INIT for p in self._completed)

    def get_output(self, phase: Phase) -> Optional[PhaseOutput]:
        return self._outputs.get(phase)

    def get_typed(self, phase: Phase) -> Optional[Any]:
        """Return the phase output only when it is real (not degraded)."""
        output = self._outputs.get(phase)
        if isinstance(output, DegradedOutput):
            return None
        return output

    def next_phase(self) -> Optional[Phase]:
        """First working phase, in total order, absent from the completed set."""
        for phase in WORK_PHASES:
            if phase not in self._completed:
                return phase
        return None

    def upstream(self) -> Dict[Phase, PhaseOutput]:
        """Snapshot of all outputs recorded so far, keyed by phase."""
        return dict(self._outputs)

    # -- serialization -------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "scope": self.scope,
            "subject_key": self.subject_key,
            "target_config": self.target_config.to_dict(),
            "current_phase": self.current_phase.value,
            "completed_phases": [p.value for p in self._completed],
            "phase_outputs": {
                p.value: encode_output(o) for p, o in self._outputs.items()
            },
            "warnings": [w.to_dict() for w in self.warnings],
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobState:
        state = cls(
            job_id=data.get("job_id", ""),
            scope=data.get("scope", ""),
            subject_key=data.get("subject_key", ""),
            target_config=TargetConfig.from_dict(data.get("target_config") or {}),
            started_at=data.get("started_at"),
        )
        state.current_phase = parse_phase(data.get("current_phase", Phase.INIT.value))
        outputs = data.get("phase_outputs") or {}
        for raw in data.get("completed_phases", []):
            phase = parse_phase(raw)
            if phase in TERMINAL_PHASES or phase in state._completed:
                continue
            payload = outputs.get(phase.value)
            if payload is None:
                state._outputs[phase] = DegradedOutput(reason="output missing from checkpoint")
            else:
                state._outputs[phase] = decode_output(phase, payload)
            state._completed.append(phase)
        state.warnings = [PhaseWarning.from_dict(w) for w in data.get("warnings", [])]
        state.errors = [PhaseError.from_dict(e) for e in data.get("errors", [])]
        state.updated_at = data.get("updated_at") or state.started_at
        return state

    def summary(self) -> Dict[str, Any]:
        """Compact status view used by the CLI."""
        return {
            "job_id": self.job_id,
            "scope": self.scope,
            "subject_key": self.subject_key,
            "current_phase": self.current_phase.value,
            "completed_phases": [p.value for p in self._completed],
            "next_phase": (self.next_phase().value if self.next_phase() else None),
            "warnings": len(self.warnings),
            "errors": len(self.errors),
            "updated_at": self.updated_at,
        }

    def __repr__(self) -> str:
        return (
            f"JobState(job_id={self.job_id!r}, phase={self.current_phase.value}, "
            f"completed={len(self._completed)})"
        )
