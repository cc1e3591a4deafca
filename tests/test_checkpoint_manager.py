"""Test checkpoint_manager — Article Engine."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from article_engine.checkpoint_manager import (
    CHECKPOINT_VERSION,
    CheckpointManager,
    CheckpointStoreError,
    JsonCheckpointStore,
    cleanup_old_checkpoints,
)
from article_engine.job_state import JobState, Phase, ResearchOutput


def _state(job_id: str = "job-1") -> JobState:
    state = JobState.new(job_id, scope="site-1", subject="Best Coffee Makers")
    state.complete_phase(Phase.INIT)
    state.record_output(Phase.RESEARCH, ResearchOutput(summary="overview"))
    return state


# ===================================================================
# Save / load
# ===================================================================

class TestSaveLoad:

    @pytest.mark.unit
    def test_save_then_load(self, checkpoint_store):
        manager = CheckpointManager("job-1", checkpoint_store)
        result = manager.save(_state())
        assert result
        assert result.phase == "init"

        loaded = manager.load()
        assert loaded is not None
        assert loaded.completed_phases == [Phase.INIT, Phase.RESEARCH]
        assert loaded.get_output(Phase.RESEARCH).summary == "overview"

    @pytest.mark.unit
    def test_record_shape(self, checkpoint_store, tmp_path):
        CheckpointManager("job-1", checkpoint_store).save(_state())
        raw = json.loads((tmp_path / "checkpoints" / "job-1.json").read_text())
        assert raw["version"] == CHECKPOINT_VERSION
        assert raw["state"]["job_id"] == "job-1"
        assert "saved_at" in raw

    @pytest.mark.unit
    def test_save_overwrites(self, checkpoint_store):
        manager = CheckpointManager("job-1", checkpoint_store)
        state = _state()
        manager.save(state)
        state.complete_phase(Phase.COMPETITOR_ANALYSIS)
        manager.save(state)
        assert Phase.COMPETITOR_ANALYSIS in manager.load().completed_phases
        assert len(list(checkpoint_store.iter_records())) == 1

    @pytest.mark.unit
    def test_missing_checkpoint(self, checkpoint_store):
        assert CheckpointManager("nope", checkpoint_store).load() is None

    @pytest.mark.unit
    def test_version_mismatch_behaves_like_missing(self, checkpoint_store):
        record = {
            "version": CHECKPOINT_VERSION - 1,
            "state": _state().to_dict(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        checkpoint_store.write("job-1", record)
        manager = CheckpointManager("job-1", checkpoint_store)
        assert manager.load() is None
        point = manager.resume()
        assert point.state is None
        assert point.resume_phase is None

    @pytest.mark.unit
    def test_corrupt_file_is_no_checkpoint(self, checkpoint_store, tmp_path):
        path = tmp_path / "checkpoints" / "job-1.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert CheckpointManager("job-1", checkpoint_store).load() is None

    @pytest.mark.unit
    def test_save_failure_is_reported_not_raised(self):
        store = MagicMock()
        store.write.side_effect = CheckpointStoreError("disk full")
        result = CheckpointManager("job-1", store).save(_state())
        assert not result
        assert "disk full" in result.message

    @pytest.mark.unit
    def test_load_failure_is_no_checkpoint(self):
        store = MagicMock()
        store.read.side_effect = CheckpointStoreError("unreachable")
        assert CheckpointManager("job-1", store).load() is None

    @pytest.mark.unit
    def test_unsafe_job_id_is_sanitized(self, checkpoint_store, tmp_path):
        CheckpointManager("tenant/../job 1", checkpoint_store).save(_state("tenant/../job 1"))
        files = list((tmp_path / "checkpoints").glob("*.json"))
        assert len(files) == 1
        assert files[0].parent == tmp_path / "checkpoints"


# ===================================================================
# Resume
# ===================================================================

class TestResume:

    @pytest.mark.unit
    def test_resume_phase_is_first_incomplete(self, checkpoint_store):
        manager = CheckpointManager("job-1", checkpoint_store)
        manager.save(_state())
        point = manager.resume()
        assert point.resume_phase == Phase.COMPETITOR_ANALYSIS
        assert not point.is_terminal

    @pytest.mark.unit
    def test_resume_skips_gaps_in_order(self, checkpoint_store):
        state = _state()
        state.complete_phase(Phase.STRATEGY)
        manager = CheckpointManager("job-1", checkpoint_store)
        manager.save(state)
        assert manager.resume().resume_phase == Phase.COMPETITOR_ANALYSIS

    @pytest.mark.unit
    @pytest.mark.parametrize("terminal", ["completed", "failed"])
    def test_terminal_state_has_no_resume_phase(self, checkpoint_store, terminal):
        state = _state()
        if terminal == "completed":
            state.mark_completed()
        else:
            state.mark_failed()
        manager = CheckpointManager("job-1", checkpoint_store)
        manager.save(state)
        point = manager.resume()
        assert point.state is not None
        assert point.is_terminal
        assert point.resume_phase is None

    @pytest.mark.unit
    def test_nothing_to_resume(self, checkpoint_store):
        point = CheckpointManager("job-1", checkpoint_store).resume()
        assert point.state is None


# ===================================================================
# Clear / cleanup
# ===================================================================

class TestClearAndCleanup:

    @pytest.mark.unit
    def test_clear(self, checkpoint_store):
        manager = CheckpointManager("job-1", checkpoint_store)
        manager.save(_state())
        assert manager.clear() is True
        assert manager.load() is None
        assert manager.clear() is False

    @pytest.mark.unit
    def test_clear_failure_returns_false(self):
        store = MagicMock()
        store.delete.side_effect = CheckpointStoreError("denied")
        assert CheckpointManager("job-1", store).clear() is False

    @pytest.mark.unit
    def test_cleanup_removes_only_old(self, checkpoint_store):
        old = (datetime.now(timezone.utc) - timedelta(days=45)).isoformat()
        checkpoint_store.write("old-job", {"version": 1, "state": _state("old-job").to_dict(),
                                           "saved_at": old})
        CheckpointManager("new-job", checkpoint_store).save(_state("new-job"))

        removed = cleanup_old_checkpoints(30, checkpoint_store)
        assert removed == 1
        assert checkpoint_store.read("old-job") is None
        assert checkpoint_store.read("new-job") is not None

    @pytest.mark.unit
    def test_cleanup_empty_directory(self, tmp_path):
        assert cleanup_old_checkpoints(30, JsonCheckpointStore(tmp_path / "none")) == 0
