"""
Checkpoint Manager — Article Engine
===================================

Persists and restores a versioned snapshot of a job's JobState, keyed by job
id.  Each save is a full overwrite of the job's record, never a delta.

Record shape (one JSON file per job under ``data/checkpoints/``)::

    {
      "version": 1,
      "state": {...JobState.to_dict()...},
      "saved_at": "2026-01-01T00:00:00+00:00"
    }

A record whose ``version`` differs from CHECKPOINT_VERSION is treated exactly
like a missing record (fresh start).  Store failures never abort a job: a
failed save is logged at ERROR and reported through CheckpointResult, a
failed load behaves like "no checkpoint".

Usage:
    from article_engine.checkpoint_manager import CheckpointManager

    manager = CheckpointManager("job-1")
    manager.save(state)
    point = manager.resume()      # ResumePoint(state, resume_phase)
    manager.clear()

CLI:
    python -m article_engine.cli status --job-id job-1
    python -m article_engine.cli cleanup --days 30
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple

from article_engine.config import DATA_DIR
from article_engine.job_state import JobState, Phase, TERMINAL_PHASES

logger = logging.getLogger("checkpoint_manager")

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

CHECKPOINT_DIR = DATA_DIR / "checkpoints"

CHECKPOINT_VERSION = 1
DEFAULT_RETENTION_DAYS = 30

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string back to a timezone-aware datetime."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (ValueError, TypeError):
        return None


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


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass
class CheckpointRecord:
    """Durable snapshot of one job."""
    version: int
    state: Dict[str, Any]
    saved_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CheckpointRecord:
        known = {f.name for f in cls.__dataclass_fields__.values()}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CheckpointResult:
    success: bool
    message: str
    phase: Optional[str] = None

    def __bool__(self) -> bool:
        return self.success


@dataclass
class ResumePoint:
    """Outcome of ``CheckpointManager.resume``.

    ``state`` is None when there is nothing usable to resume.
    ``resume_phase`` is None when there is no state or the state is terminal.
    """
    state: Optional[JobState] = None
    resume_phase: Optional[Phase] = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not None and self.state.current_phase in TERMINAL_PHASES


class CheckpointStoreError(Exception):
    """Raised by a checkpoint store when the backing storage fails."""


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class CheckpointStore(Protocol):
    """Durable-record contract any checkpoint backend must satisfy."""

    def read(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    def write(self, job_id: str, record: Dict[str, Any]) -> None: ...

    def delete(self, job_id: str) -> bool: ...

    def iter_records(self) -> Iterator[Tuple[str, Dict[str, Any]]]: ...


class JsonCheckpointStore:
    """One JSON file per job id, written atomically."""

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = Path(directory) if directory else CHECKPOINT_DIR

    def _path(self, job_id: str) -> Path:
        if not job_id:
            raise CheckpointStoreError("job_id must not be empty")
        return self.directory / f"{_SAFE_ID.sub('_', job_id)}.json"

    def read(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = _load_json(self._path(job_id))
        except json.JSONDecodeError as exc:
            raise CheckpointStoreError(f"Corrupt checkpoint for {job_id}: {exc}") from exc
        except OSError as exc:
            raise CheckpointStoreError(f"Cannot read checkpoint for {job_id}: {exc}") from exc
        if data is not None and not isinstance(data, dict):
            raise CheckpointStoreError(f"Corrupt checkpoint for {job_id}: not an object")
        return data

    def write(self, job_id: str, record: Dict[str, Any]) -> None:
        try:
            _save_json(self._path(job_id), record)
        except (OSError, TypeError, ValueError) as exc:
            raise CheckpointStoreError(f"Cannot write checkpoint for {job_id}: {exc}") from exc

    def delete(self, job_id: str) -> bool:
        path = self._path(job_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise CheckpointStoreError(f"Cannot delete checkpoint for {job_id}: {exc}") from exc

    def iter_records(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        if not self.directory.exists():
            return
        for path in sorted(self.directory.glob("*.json")):
            try:
                data = _load_json(path)
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable checkpoint %s: %s", path.name, exc)
                continue
            if isinstance(data, dict):
                job_id = (data.get("state") or {}).get("job_id") or path.stem
                yield job_id, data


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class CheckpointManager:
    """Save/load/resume/clear the checkpoint of a single job."""

    def __init__(self, job_id: str, store: Optional[CheckpointStore] = None) -> None:
        self.job_id = job_id
        self.store: CheckpointStore = store if store is not None else JsonCheckpointStore()

    def save(self, state: JobState) -> CheckpointResult:
        """Overwrite the job's checkpoint with *state*.

        Never raises: a failure is logged loudly and the job carries on
        without durability for this step.
        """
        phase = state.current_phase.value
        record = CheckpointRecord(version=CHECKPOINT_VERSION, state=state.to_dict())
        try:
            self.store.write(self.job_id, record.to_dict())
        except Exception as exc:
            logger.error(
                "Checkpoint save FAILED for job %s at phase %s, continuing without "
                "durability: %s", self.job_id, phase, exc,
            )
            return CheckpointResult(
                success=False,
                message=f"Checkpoint save error: {exc}",
                phase=phase,
            )

        logger.info("Saved checkpoint for job %s at phase: %s", self.job_id, phase)
        return CheckpointResult(success=True, message="Checkpoint saved", phase=phase)

    def load(self) -> Optional[JobState]:
        """Return the checkpointed state, or None when absent or unusable."""
        try:
            raw = self.store.read(self.job_id)
        except Exception as exc:
            logger.error("Checkpoint load failed for job %s: %s", self.job_id, exc)
            return None

        if not raw:
            logger.info("No checkpoint found for job %s", self.job_id)
            return None

        version = raw.get("version")
        if version != CHECKPOINT_VERSION:
            logger.warning(
                "Checkpoint version mismatch for job %s: saved=%s, current=%s",
                self.job_id, version, CHECKPOINT_VERSION,
            )
            return None

        try:
            record = CheckpointRecord.from_dict(raw)
            state = JobState.from_dict(record.state)
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            logger.error("Checkpoint for job %s is unreadable: %s", self.job_id, exc)
            return None

        logger.info(
            "Loaded checkpoint for job %s from phase: %s",
            self.job_id, state.current_phase.value,
        )
        return state

    def resume(self) -> ResumePoint:
        """Load the checkpoint and compute where the job continues.

        ``resume_phase`` is the first phase, in total order, missing from the
        completed set.  Terminal states resume nowhere.
        """
        state = self.load()
        if state is None:
            return ResumePoint()

        if state.current_phase in TERMINAL_PHASES:
            logger.info("Job %s already %s", self.job_id, state.current_phase.value)
            return ResumePoint(state=state, resume_phase=None)

        resume_phase = state.next_phase()
        logger.info(
            "Job %s resumes from phase: %s",
            self.job_id, resume_phase.value if resume_phase else None,
        )
        return ResumePoint(state=state, resume_phase=resume_phase)

    def clear(self) -> bool:
        """Drop the job's checkpoint.  Returns False if nothing was removed or on error."""
        try:
            removed = self.store.delete(self.job_id)
        except Exception as exc:
            logger.error("Checkpoint clear failed for job %s: %s", self.job_id, exc)
            return False
        if removed:
            logger.info("Checkpoint cleared for job %s", self.job_id)
        return removed


def cleanup_old_checkpoints(
    days_old: int = DEFAULT_RETENTION_DAYS,
    store: Optional[CheckpointStore] = None,
) -> int:
    """Drop checkpoints last saved more than *days_old* days ago.

    Returns the number of checkpoints removed; store errors count as zero.
    """
    store = store if store is not None else JsonCheckpointStore()
    cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
    removed = 0
    try:
        stale = [
            job_id for job_id, record in store.iter_records()
            if (_parse_iso(record.get("saved_at")) or cutoff) < cutoff
        ]
        for job_id in stale:
            if store.delete(job_id):
                removed += 1
    except Exception as exc:
        logger.error("Checkpoint cleanup failed: %s", exc)
        return removed

    logger.info("Cleaned up %d old checkpoints", removed)
    return removed
