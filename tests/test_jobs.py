"""Tests for the job record and registry."""

import random
import threading

import pytest

from jobs import Job, JobRegistry, JobStatus, UnknownJob, percent


def _processing_job(total):
    job = Job("job-1")
    job.start_processing(total)
    return job


class TestPercent:
    def test_zero_total(self):
        assert percent(0, 0) == 0

    def test_halves_round_up(self):
        assert percent(1, 8) == 13
        assert percent(1, 3) == 33
        assert percent(2, 3) == 67

    def test_complete(self):
        assert percent(7, 7) == 100


class TestJobTransitions:
    def test_new_job_is_queued(self):
        snap = Job("abc").snapshot()

        assert snap == {
            "job_id": "abc",
            "status": "queued",
            "progress": 0,
            "total_clips": 0,
            "clips_generated": 0,
            "download_urls": [],
            "error_message": None,
        }

    def test_zero_clips_completes_immediately(self):
        job = _processing_job(0)

        assert job.status is JobStatus.COMPLETED
        assert job.outputs == []

    def test_start_processing_only_from_queued(self):
        job = _processing_job(2)

        with pytest.raises(RuntimeError, match="expected queued"):
            job.start_processing(3)

    def test_clips_count_up_to_completed(self):
        job = _processing_job(2)

        assert job.record_clip("/public/clips/a.mp3") is False
        assert job.status is JobStatus.PROCESSING
        assert job.progress == 50

        assert job.record_clip("/public/clips/b.mp3") is True
        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100
        assert job.outputs == ["/public/clips/a.mp3", "/public/clips/b.mp3"]

    def test_failure_is_terminal(self):
        job = _processing_job(3)
        job.record_clip("/public/clips/a.mp3")

        assert job.fail("boom") is True
        assert job.record_clip("/public/clips/b.mp3") is False
        assert job.fail("second") is False

        snap = job.snapshot()
        assert snap["status"] == "failed"
        assert snap["error_message"] == "boom"
        assert snap["clips_generated"] == 1
        assert snap["download_urls"] == ["/public/clips/a.mp3"]

    def test_completed_is_terminal(self):
        job = _processing_job(1)
        job.record_clip("/public/clips/a.mp3")

        assert job.fail("late failure") is False
        assert job.record_clip("/public/clips/extra.mp3") is False
        assert job.status is JobStatus.COMPLETED
        assert job.error_message is None
        assert job.completed_clips == 1

    def test_snapshot_is_a_copy(self):
        job = _processing_job(2)
        job.record_clip("/public/clips/a.mp3")

        snap = job.snapshot()
        snap["download_urls"].append("tampered")

        assert job.outputs == ["/public/clips/a.mp3"]


class TestConcurrentCompletion:
    @pytest.mark.parametrize("trial", range(50))
    def test_any_interleaving_completes_exactly_once(self, trial):
        """N threads delivering N completions in random order: no lost update, one transition."""
        rng = random.Random(trial)
        total = rng.randint(1, 40)
        job = _processing_job(total)
        outputs = [f"/public/clips/job_clip{i + 1}.mp3" for i in range(total)]
        rng.shuffle(outputs)

        barrier = threading.Barrier(total)
        transitions = []

        def deliver(output):
            barrier.wait()
            if job.record_clip(output):
                transitions.append(output)

        threads = [threading.Thread(target=deliver, args=(o,)) for o in outputs]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert job.completed_clips == total
        assert job.status is JobStatus.COMPLETED
        assert len(transitions) == 1
        assert sorted(job.outputs) == sorted(outputs)


class TestJobRegistry:
    def test_create_assigns_unique_ids(self):
        registry = JobRegistry()

        ids = {registry.create().id for _ in range(100)}

        assert len(ids) == 100
        assert len(registry) == 100

    def test_get_returns_same_job(self):
        registry = JobRegistry()
        job = registry.create("video")

        assert registry.get(job.id) is job
        assert job.source_kind == "video"

    def test_unknown_job(self):
        registry = JobRegistry()

        with pytest.raises(UnknownJob):
            registry.get("missing")
        with pytest.raises(KeyError):
            registry.snapshot("missing")

    def test_snapshot_by_id(self):
        registry = JobRegistry()
        job = registry.create()
        job.fail("bad input")

        assert registry.snapshot(job.id)["status"] == "failed"
