"""Unit tests for JobStore."""

import asyncio
import json
import pytest

from diskswap.errors import JobLockedError
from diskswap.models.events import CancelledEvent, DoneEvent, ErrorEvent, StageUpdateEvent
from diskswap.models.job import Job
from diskswap.models.status import JobStatus, StageName, StageStatus
from diskswap.services.job_store import INTERRUPTED_MESSAGE, JobStore


def _drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.mark.unit
class TestJobStore:
    """Test JobStore in isolation."""

    def test_singleton_pattern(self, job_store):
        assert JobStore() is job_store

    def test_create_job(self, job_store, sample_device):
        job = job_store.create_job(sample_device)

        assert job.status == JobStatus.IN_PROGRESS
        assert len(job.id) == 8
        assert list(job.stages) == [
            StageName.BACKUP, StageName.DOWNLOAD, StageName.FLASH, StageName.INJECT, StageName.SANDBOX,
        ]
        assert all(s.status == StageStatus.PENDING for s in job.stages.values())
        assert job_store.state_file_path.exists()

    def test_create_job_without_sandbox(self, job_store, sample_device):
        job = job_store.create_job(sample_device, include_sandbox=False)
        assert StageName.SANDBOX not in job.stages

    def test_single_job_invariant(self, job_store, sample_device):
        job_store.create_job(sample_device)

        with pytest.raises(JobLockedError):
            job_store.create_job(sample_device)

    def test_terminal_job_is_superseded(self, job_store, sample_device):
        first = job_store.create_job(sample_device)
        job_store.fail_job(StageName.BACKUP, "boom")

        second = job_store.create_job(sample_device)

        assert second.id != first.id
        assert job_store.get_current_job().status == JobStatus.IN_PROGRESS

    def test_update_stage_clamps_and_persists(self, job_store, sample_device):
        job_store.create_job(sample_device)

        job_store.update_stage(
            StageName.DOWNLOAD, StageStatus.IN_PROGRESS, 140, speed=1024.0, eta=3.0,
            description="Downloading image…",
        )

        stage = job_store.get_current_job().stages[StageName.DOWNLOAD]
        assert stage.progress == 100
        assert stage.speed == 1024.0
        on_disk = json.loads(job_store.state_file_path.read_text())
        assert on_disk["stages"]["download"]["status"] == "in_progress"
        assert on_disk["stages"]["download"]["description"] == "Downloading image…"

    def test_update_stage_without_job_is_noop(self, job_store):
        job_store.update_stage(StageName.FLASH, StageStatus.IN_PROGRESS, 10)
        assert job_store.get_current_job() is None

    def test_get_current_job_is_a_copy(self, job_store, sample_device):
        job_store.create_job(sample_device)
        snapshot = job_store.get_current_job()
        snapshot.status = JobStatus.FAILED

        assert job_store.get_current_job().status == JobStatus.IN_PROGRESS

    def test_dismiss_job_is_silent(self, job_store, sample_device):
        job_store.create_job(sample_device)
        job_store.complete_job()
        queue = job_store.subscribe()

        job_store.dismiss_job()

        assert job_store.get_current_job() is None
        assert not job_store.state_file_path.exists()
        assert _drain(queue) == []


@pytest.mark.unit
class TestObservers:
    """Test event broadcast to subscribers."""

    def test_events_in_order(self, job_store, sample_device):
        job_store.create_job(sample_device)
        queue = job_store.subscribe()

        job_store.update_stage(StageName.BACKUP, StageStatus.IN_PROGRESS, 10)
        job_store.set_backup_name("Nightly")
        job_store.update_stage(StageName.BACKUP, StageStatus.COMPLETED, 100)
        job_store.complete_job()

        events = _drain(queue)
        assert [type(e) for e in events] == [StageUpdateEvent, StageUpdateEvent, DoneEvent]
        assert events[-1].backup_name == "Nightly"

    def test_fail_and_clear_events(self, job_store, sample_device):
        job_store.create_job(sample_device)
        queue = job_store.subscribe()

        job_store.fail_job(StageName.FLASH, "dd failed")
        job_store.clear_job()

        events = _drain(queue)
        assert isinstance(events[0], ErrorEvent)
        assert events[0].stage == StageName.FLASH
        assert isinstance(events[1], CancelledEvent)
        assert not job_store.state_file_path.exists()

    def test_unsubscribed_queue_gets_nothing(self, job_store, sample_device):
        job_store.create_job(sample_device)
        queue = job_store.subscribe()
        job_store.unsubscribe(queue)

        job_store.update_stage(StageName.BACKUP, StageStatus.IN_PROGRESS, 5)

        assert queue.empty()

    def test_full_queue_drops_for_that_observer_only(self, job_store, sample_device):
        job_store.queue_size = 1
        job_store.create_job(sample_device)
        slow = job_store.subscribe()
        job_store.queue_size = 10
        fast = job_store.subscribe()

        job_store.update_stage(StageName.BACKUP, StageStatus.IN_PROGRESS, 5)
        job_store.update_stage(StageName.BACKUP, StageStatus.IN_PROGRESS, 6)

        assert len(_drain(slow)) == 1
        assert len(_drain(fast)) == 2

    def test_snapshot_replays_stages_then_outcome(self, job_store, sample_device):
        job_store.create_job(sample_device, include_sandbox=False)
        job_store.update_stage(StageName.BACKUP, StageStatus.COMPLETED, 100)
        job_store.update_stage(StageName.DOWNLOAD, StageStatus.IN_PROGRESS, 40)
        job_store.fail_job(StageName.DOWNLOAD, "HTTP 500")

        events = job_store.snapshot_events()

        assert [e.stage for e in events[:4]] == [
            StageName.BACKUP, StageName.DOWNLOAD, StageName.FLASH, StageName.INJECT,
        ]
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].stage == StageName.DOWNLOAD
        assert events[-1].message == "HTTP 500"

    def test_snapshot_empty_without_job(self, job_store):
        assert job_store.snapshot_events() == []


@pytest.mark.unit
class TestRehydrate:
    """Test restart recovery."""

    def _persist(self, job_store, job: Job):
        job_store.state_file_path.write_text(json.dumps(job.model_dump(mode="json")))

    def _job(self, sample_device, statuses, include_sandbox=True):
        job = Job.new("abcd1234", sample_device, include_sandbox=include_sandbox)
        for name, status in zip(job.stages, statuses):
            job.stages[name].status = status
            job.stages[name].progress = 100 if status == StageStatus.COMPLETED else 50
        return job

    def test_no_state(self, job_store):
        assert job_store.rehydrate() is None

    def test_corrupt_state_is_deleted(self, job_store):
        job_store.state_file_path.write_text("{not json")

        assert job_store.rehydrate() is None
        assert not job_store.state_file_path.exists()

    def test_interrupted_sandbox_becomes_completed(self, job_store, sample_device):
        c, ip = StageStatus.COMPLETED, StageStatus.IN_PROGRESS
        job = self._job(sample_device, [c, c, c, c, ip])
        job.stages[StageName.SANDBOX].description = "sandbox_ready"
        self._persist(job_store, job)

        restored = job_store.rehydrate()

        sandbox = restored.stages[StageName.SANDBOX]
        assert sandbox.status == StageStatus.COMPLETED
        assert sandbox.progress == 100
        assert sandbox.description is None
        assert restored.status == JobStatus.COMPLETED
        assert not job_store.is_locked()

    def test_interrupted_flash_fails_job(self, job_store, sample_device):
        c, ip, p = StageStatus.COMPLETED, StageStatus.IN_PROGRESS, StageStatus.PENDING
        self._persist(job_store, self._job(sample_device, [c, c, ip, p, p]))

        restored = job_store.rehydrate()

        assert restored.status == JobStatus.FAILED
        assert restored.error == INTERRUPTED_MESSAGE
        assert restored.stages[StageName.FLASH].status == StageStatus.FAILED
        assert job_store.snapshot_events()[-1].stage == StageName.FLASH

    def test_crash_between_stages_fails_next_stage(self, job_store, sample_device):
        c, p = StageStatus.COMPLETED, StageStatus.PENDING
        self._persist(job_store, self._job(sample_device, [c, c, p, p, p]))

        restored = job_store.rehydrate()

        assert restored.status == JobStatus.FAILED
        assert restored.stages[StageName.FLASH].status == StageStatus.FAILED

    def test_terminal_job_untouched(self, job_store, sample_device):
        c = StageStatus.COMPLETED
        job = self._job(sample_device, [c, c, c, c], include_sandbox=False)
        job.status = JobStatus.COMPLETED
        job.backup_name = "Nightly"
        self._persist(job_store, job)

        restored = job_store.rehydrate()

        assert restored.status == JobStatus.COMPLETED
        assert restored.backup_name == "Nightly"
