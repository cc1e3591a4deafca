"""
Duplicate-Submission Guard — Article Engine
===========================================

Before new work starts, looks for an equivalent job inside a trailing window
(default 30 days), scoped by tenant/site:

    1. completed work units whose normalized subject matches -> COMPLETED
    2. job records still pending/processing with a matching subject -> IN_FLIGHT
    3. otherwise -> NONE

Subjects are normalized by case-folding and dropping whitespace and every
non-alphanumeric character, so "Best Coffee Makers" and " best   coffee-makers "
are the same key.

A store failure degrades to NONE with a warning.  This is an availability
choice: a transient outage can let a duplicate through, but it never blocks
submissions.

The same module owns the submission store the guard reads: job records
(status per job id) and completed work records (the assembled articles).

Usage:
    from article_engine.duplicate_guard import DuplicateGuard, JsonSubmissionStore

    guard = DuplicateGuard(JsonSubmissionStore())
    result = guard.check("site-1", "Best Coffee Makers")
    if result.kind == DuplicateKind.COMPLETED: ...
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from article_engine.config import DATA_DIR

logger = logging.getLogger("duplicate_guard")

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
# Paths & Constants
# ---------------------------------------------------------------------------

SUBMISSIONS_DIR = DATA_DIR / "submissions"

DEFAULT_WINDOW_DAYS = 30
# Most recent records inspected per lookup
MAX_LOOKUP_RECORDS = 100

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _load_json(path: Path) -> Any:
    """Load JSON from *path*; a missing file yields None."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None


def _save_json(path: Path, data: Any) -> None:
    """Atomic JSON write: write to a unique .tmp then os.replace()."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f"{path.stem}.",
        suffix=".tmp", delete=False,
    )
    tmp_path = Path(fh.name)
    try:
        with fh:
            json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


def normalize_subject(subject: str) -> str:
    """Case-fold and keep only letters and digits (any script)."""
    return "".join(ch for ch in (subject or "").casefold() if ch.isalnum())


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


IN_FLIGHT_STATUSES = frozenset({JobStatus.PENDING.value, JobStatus.PROCESSING.value})


@dataclass
class JobRecord:
    """Status record of one submitted job."""
    job_id: str
    scope: str
    subject_key: str
    status: str = JobStatus.PENDING.value
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    error: Optional[str] = None
    work_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobRecord:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CompletedWork:
    """A finished, persisted unit of work (the assembled article)."""
    scope: str
    subject_key: str
    job_id: str = ""
    title: str = ""
    slug: str = ""
    html: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    work_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CompletedWork:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


class SubmissionStoreError(Exception):
    """Raised when the submission store cannot be read or written."""


class SubmissionStore(Protocol):
    """Query surface the guard and the orchestrator need."""

    def list_completed(self, scope: str, since: str, limit: int) -> List[CompletedWork]: ...

    def list_in_flight(self, scope: str, since: str, limit: int) -> List[JobRecord]: ...

    def get_completed(self, work_id: str) -> Optional[CompletedWork]: ...

    def save_completed(self, work: CompletedWork) -> str: ...

    def upsert_job(self, record: JobRecord) -> None: ...

    def get_job(self, job_id: str) -> Optional[JobRecord]: ...


class JsonSubmissionStore:
    """One JSON file per record: ``jobs/<job_id>.json`` and ``completed/<work_id>.json``."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory else SUBMISSIONS_DIR

    @property
    def jobs_dir(self) -> Path:
        return self.directory / "jobs"

    @property
    def completed_dir(self) -> Path:
        return self.directory / "completed"

    @staticmethod
    def _record_path(folder: Path, record_id: str) -> Path:
        if not record_id:
            raise SubmissionStoreError("record id must not be empty")
        return folder / f"{_SAFE_ID.sub('_', record_id)}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            data = _load_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise SubmissionStoreError(f"Cannot read {path.name}: {exc}") from exc
        if data is not None and not isinstance(data, dict):
            raise SubmissionStoreError(f"Corrupt {path.name}: not an object")
        return data

    def _read_all(self, folder: Path) -> List[Dict[str, Any]]:
        if not folder.exists():
            return []
        return [
            data for data in (self._read(path) for path in sorted(folder.glob("*.json")))
            if data is not None
        ]

    def _write(self, path: Path, data: Dict[str, Any]) -> None:
        try:
            _save_json(path, data)
        except (OSError, TypeError, ValueError) as exc:
            raise SubmissionStoreError(f"Cannot write {path.name}: {exc}") from exc

    # -- completed work ------------------------------------------------------

    def list_completed(self, scope: str, since: str, limit: int = MAX_LOOKUP_RECORDS) -> List[CompletedWork]:
        items = [
            CompletedWork.from_dict(d) for d in self._read_all(self.completed_dir)
            if d.get("scope") == scope and d.get("created_at", "") >= since
        ]
        items.sort(key=lambda w: w.created_at, reverse=True)
        return items[:limit]

    def get_completed(self, work_id: str) -> Optional[CompletedWork]:
        data = self._read(self._record_path(self.completed_dir, work_id))
        return CompletedWork.from_dict(data) if data else None

    def save_completed(self, work: CompletedWork) -> str:
        self._write(self._record_path(self.completed_dir, work.work_id), work.to_dict())
        return work.work_id

    # -- job records ---------------------------------------------------------

    def list_in_flight(self, scope: str, since: str, limit: int = MAX_LOOKUP_RECORDS) -> List[JobRecord]:
        items = [
            JobRecord.from_dict(d) for d in self._read_all(self.jobs_dir)
            if d.get("scope") == scope
            and d.get("status") in IN_FLIGHT_STATUSES
            and d.get("created_at", "") >= since
        ]
        items.sort(key=lambda r: r.created_at, reverse=True)
        return items[:limit]

    def upsert_job(self, record: JobRecord) -> None:
        path = self._record_path(self.jobs_dir, record.job_id)
        existing = self._read(path)
        if existing:
            record.created_at = existing.get("created_at", record.created_at)
        record.updated_at = _now_iso()
        self._write(path, record.to_dict())

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        data = self._read(self._record_path(self.jobs_dir, job_id))
        return JobRecord.from_dict(data) if data else None


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class DuplicateKind(str, Enum):
    NONE = "none"
    COMPLETED = "completed"
    IN_FLIGHT = "in_flight"


@dataclass
class DuplicateCheckResult:
    kind: DuplicateKind
    message: str
    locator: Optional[str] = None   # work id for COMPLETED, job id for IN_FLIGHT
    created_at: Optional[str] = None
    normalized_subject: str = ""

    @property
    def is_duplicate(self) -> bool:
        return self.kind != DuplicateKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


class DuplicateGuard:
    """Normalized-subject lookup against completed work and in-flight jobs."""

    def __init__(
        self,
        store: Optional[SubmissionStore] = None,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> None:
        if window_days <= 0:
            raise ValueError("window_days must be positive")
        self.store: SubmissionStore = store if store is not None else JsonSubmissionStore()
        self.window_days = window_days

    def _cutoff(self) -> str:
        return (datetime.now(timezone.utc) - timedelta(days=self.window_days)).isoformat()

    def check(
        self,
        scope: str,
        subject: str,
        exclude_job_id: Optional[str] = None,
        force: bool = False,
    ) -> DuplicateCheckResult:
        """Classify a submission as new, already completed, or in flight.

        Parameters
        ----------
        scope : str
            Tenant/site the lookup is restricted to.
        subject : str
            Raw subject as submitted; normalized before matching.
        exclude_job_id : str, optional
            A job never conflicts with its own record (resubmission after a crash).
        force : bool
            Skip the lookup entirely (forced regeneration).

        Returns
        -------
        DuplicateCheckResult
        """
        key = normalize_subject(subject)
        if force:
            return DuplicateCheckResult(
                kind=DuplicateKind.NONE,
                message="Force regenerate enabled, skipping duplicate check",
                normalized_subject=key,
            )

        since = self._cutoff()
        try:
            for work in self.store.list_completed(scope, since, MAX_LOOKUP_RECORDS):
                if normalize_subject(work.subject_key) == key:
                    return DuplicateCheckResult(
                        kind=DuplicateKind.COMPLETED,
                        message=(
                            f"Duplicate found: work for '{subject}' already exists "
                            f"(created: {work.created_at})"
                        ),
                        locator=work.work_id,
                        created_at=work.created_at,
                        normalized_subject=key,
                    )

            for job in self.store.list_in_flight(scope, since, MAX_LOOKUP_RECORDS):
                if exclude_job_id and job.job_id == exclude_job_id:
                    continue
                if normalize_subject(job.subject_key) == key:
                    return DuplicateCheckResult(
                        kind=DuplicateKind.IN_FLIGHT,
                        message=(
                            f"Duplicate found: job for '{subject}' is {job.status} "
                            f"(created: {job.created_at})"
                        ),
                        locator=job.job_id,
                        created_at=job.created_at,
                        normalized_subject=key,
                    )
        except Exception as exc:
            logger.warning(
                "Duplicate check failed for scope=%s subject=%r, proceeding: %s",
                scope, subject, exc,
            )
            return DuplicateCheckResult(
                kind=DuplicateKind.NONE,
                message="Duplicate check failed, proceeding with generation",
                normalized_subject=key,
            )

        return DuplicateCheckResult(
            kind=DuplicateKind.NONE,
            message=f"No duplicate found for '{subject}' within {self.window_days} days",
            normalized_subject=key,
        )

    def get_completed(self, work_id: str) -> Optional[CompletedWork]:
        """Fetch a completed work record; store failures return None."""
        try:
            return self.store.get_completed(work_id)
        except Exception as exc:
            logger.warning("Cannot load completed work %s: %s", work_id, exc)
            return None
