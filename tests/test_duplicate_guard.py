"""Test duplicate_guard — Article Engine."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from article_engine.duplicate_guard import (
    CompletedWork,
    DuplicateGuard,
    DuplicateKind,
    JobRecord,
    JobStatus,
    SubmissionStoreError,
    normalize_subject,
)


def _days_ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


# ===================================================================
# Normalization
# ===================================================================

class TestNormalizeSubject:

    @pytest.mark.unit
    def test_equivalent_subjects(self):
        assert normalize_subject("Best Coffee Makers") == "bestcoffeemakers"
        assert normalize_subject(" best   coffee-makers ") == "bestcoffeemakers"

    @pytest.mark.unit
    def test_keeps_non_latin_letters(self):
        assert normalize_subject("咖啡機 推薦!") == "咖啡機推薦"

    @pytest.mark.unit
    def test_empty(self):
        assert normalize_subject("") == ""
        assert normalize_subject(None) == ""


# ===================================================================
# Store
# ===================================================================

class TestJsonSubmissionStore:

    @pytest.mark.unit
    def test_completed_roundtrip(self, submission_store):
        work = CompletedWork(scope="site-1", subject_key="Coffee", title="T", html="<p/>")
        work_id = submission_store.save_completed(work)
        loaded = submission_store.get_completed(work_id)
        assert loaded.title == "T"
        assert submission_store.get_completed("missing") is None

    @pytest.mark.unit
    def test_upsert_job_keeps_created_at(self, submission_store):
        record = JobRecord(job_id="j1", scope="s", subject_key="Coffee", created_at=_days_ago(2))
        submission_store.upsert_job(record)
        submission_store.upsert_job(JobRecord(job_id="j1", scope="s", subject_key="Coffee",
                                              status=JobStatus.COMPLETED.value))
        stored = submission_store.get_job("j1")
        assert stored.status == "completed"
        assert stored.created_at == record.created_at

    @pytest.mark.unit
    def test_in_flight_filters_status_scope_and_window(self, submission_store):
        submission_store.upsert_job(JobRecord("a", "s1", "Coffee", status="processing"))
        submission_store.upsert_job(JobRecord("b", "s1", "Coffee", status="failed"))
        submission_store.upsert_job(JobRecord("c", "s2", "Coffee", status="pending"))
        submission_store.upsert_job(JobRecord("d", "s1", "Coffee", status="pending",
                                              created_at=_days_ago(40)))
        found = submission_store.list_in_flight("s1", _days_ago(30))
        assert [r.job_id for r in found] == ["a"]

    @pytest.mark.unit
    def test_corrupt_file_raises_store_error(self, submission_store):
        submission_store.completed_dir.mkdir(parents=True)
        (submission_store.completed_dir / "w1.json").write_text("[1, 2]")
        with pytest.raises(SubmissionStoreError):
            submission_store.list_completed("s1", _days_ago(30))
        with pytest.raises(SubmissionStoreError):
            submission_store.get_completed("w1")

    @pytest.mark.unit
    def test_one_file_per_record(self, submission_store):
        submission_store.upsert_job(JobRecord("site/1:job", "s1", "Coffee"))
        work_id = submission_store.save_completed(CompletedWork(scope="s1", subject_key="Coffee"))
        assert [p.name for p in submission_store.jobs_dir.iterdir()] == ["site_1_job.json"]
        assert [p.name for p in submission_store.completed_dir.iterdir()] == [f"{work_id}.json"]
        assert submission_store.get_job("site/1:job").scope == "s1"

    @pytest.mark.unit
    def test_concurrent_upserts_keep_every_record(self, submission_store):
        def submit(worker: int) -> None:
            for n in range(40):
                submission_store.upsert_job(
                    JobRecord(f"job-{worker}-{n}", "s1", "Coffee", status="processing"))

        threads = [threading.Thread(target=submit, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        found = submission_store.list_in_flight("s1", _days_ago(1), limit=500)
        assert len(found) == 160
        assert list(submission_store.jobs_dir.glob("*.tmp")) == []

    @pytest.mark.unit
    def test_concurrent_completed_saves(self, submission_store):
        def save(worker: int) -> None:
            for n in range(20):
                submission_store.save_completed(
                    CompletedWork(scope="s1", subject_key=f"Coffee {worker}-{n}"))

        threads = [threading.Thread(target=save, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(submission_store.list_completed("s1", _days_ago(1), limit=500)) == 80


# ===================================================================
# Guard
# ===================================================================

class TestDuplicateGuard:

    @pytest.mark.unit
    def test_no_duplicate(self, submission_store):
        result = DuplicateGuard(submission_store).check("site-1", "Best Coffee Makers")
        assert result.kind == DuplicateKind.NONE
        assert not result.is_duplicate

    @pytest.mark.unit
    def test_completed_duplicate_after_normalization(self, submission_store):
        work = CompletedWork(scope="site-1", subject_key="Best Coffee Makers")
        submission_store.save_completed(work)
        result = DuplicateGuard(submission_store).check("site-1", " best   coffee-makers ")
        assert result.kind == DuplicateKind.COMPLETED
        assert result.locator == work.work_id
        assert result.is_duplicate

    @pytest.mark.unit
    def test_in_flight_duplicate(self, submission_store):
        submission_store.upsert_job(JobRecord("job-1", "site-1", "Best Coffee Makers"))
        result = DuplicateGuard(submission_store).check("site-1", "BEST coffee makers")
        assert result.kind == DuplicateKind.IN_FLIGHT
        assert result.locator == "job-1"

    @pytest.mark.unit
    def test_job_never_conflicts_with_itself(self, submission_store):
        submission_store.upsert_job(JobRecord("job-1", "site-1", "Best Coffee Makers",
                                              status="processing"))
        result = DuplicateGuard(submission_store).check(
            "site-1", "Best Coffee Makers", exclude_job_id="job-1",
        )
        assert result.kind == DuplicateKind.NONE

    @pytest.mark.unit
    def test_completed_wins_over_in_flight(self, submission_store):
        submission_store.upsert_job(JobRecord("job-1", "site-1", "Coffee"))
        submission_store.save_completed(CompletedWork(scope="site-1", subject_key="coffee"))
        assert DuplicateGuard(submission_store).check("site-1", "Coffee").kind == DuplicateKind.COMPLETED

    @pytest.mark.unit
    def test_other_scope_is_not_duplicate(self, submission_store):
        submission_store.save_completed(CompletedWork(scope="site-2", subject_key="Coffee"))
        assert DuplicateGuard(submission_store).check("site-1", "Coffee").kind == DuplicateKind.NONE

    @pytest.mark.unit
    def test_outside_window_is_not_duplicate(self, submission_store):
        submission_store.save_completed(
            CompletedWork(scope="site-1", subject_key="Coffee", created_at=_days_ago(45))
        )
        guard = DuplicateGuard(submission_store, window_days=30)
        assert guard.check("site-1", "Coffee").kind == DuplicateKind.NONE
        assert DuplicateGuard(submission_store, window_days=60).check("site-1", "Coffee").is_duplicate

    @pytest.mark.unit
    def test_force_skips_lookup(self):
        store = MagicMock()
        result = DuplicateGuard(store).check("site-1", "Coffee", force=True)
        assert result.kind == DuplicateKind.NONE
        store.list_completed.assert_not_called()

    @pytest.mark.unit
    def test_store_failure_degrades_to_no_duplicate(self):
        store = MagicMock()
        store.list_completed.side_effect = SubmissionStoreError("unreachable")
        result = DuplicateGuard(store).check("site-1", "Coffee")
        assert result.kind == DuplicateKind.NONE
        assert "failed" in result.message

    @pytest.mark.unit
    def test_invalid_window(self, submission_store):
        with pytest.raises(ValueError):
            DuplicateGuard(submission_store, window_days=0)

    @pytest.mark.unit
    def test_get_completed_swallows_store_errors(self):
        store = MagicMock()
        store.get_completed.side_effect = SubmissionStoreError("down")
        assert DuplicateGuard(store).get_completed("w1") is None
