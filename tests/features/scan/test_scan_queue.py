"""
Tests for ScanQueueClient bookkeeping. Celery itself is mocked; job records
live in the test database.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.features.scan.models.queue_job import QueueJobState, ScanQueueJob
from app.features.scan.schemas.scan import ScanJobPayload
from app.features.scan.services.queue.scan_queue import ScanQueueClient
from app.platform.exceptions import ResourceUnavailableError


@pytest.fixture
def celery_mock():
    app = MagicMock()
    app.conf.task_always_eager = False
    return app


@pytest.fixture
def task_mock():
    return MagicMock()


@pytest.fixture
def queue(celery_mock, task_mock, session_factory):
    return ScanQueueClient(celery_mock, session_factory, task=task_mock, queue_name="sitemap-scan", max_attempts=3)


@pytest.fixture
def payload(user_id):
    return ScanJobPayload(scan_id="scan-1", user_id=user_id, sitemap_url="https://example.com/sitemap.xml")


class TestLifecycle:
    def test_open_connects_and_close_releases(self, queue, celery_mock):
        connection = celery_mock.connection_for_write.return_value

        with queue:
            connection.ensure_connection.assert_called_once_with(max_retries=3)

        connection.release.assert_called_once()

    def test_open_failure_is_resource_unavailable(self, queue, celery_mock):
        celery_mock.connection_for_write.return_value.ensure_connection.side_effect = OSError("refused")

        with pytest.raises(ResourceUnavailableError):
            queue.open()

    def test_eager_mode_needs_no_connection(self, queue, celery_mock):
        celery_mock.conf.task_always_eager = True

        queue.open()

        celery_mock.connection_for_write.assert_not_called()


class TestAdd:
    def test_add_persists_waiting_record_and_dispatches(self, queue, task_mock, payload):
        handle = queue.add(payload)

        assert handle.state == QueueJobState.waiting
        assert handle.progress == 0

        kwargs = task_mock.apply_async.call_args.kwargs
        assert kwargs["task_id"] == handle.id
        assert kwargs["queue"] == "sitemap-scan"
        assert kwargs["kwargs"] == payload.model_dump()

        status = queue.get_job_status(handle.id)
        assert status.payload["scan_id"] == "scan-1"
        assert status.max_attempts == 3
        assert status.attempts_made == 0

    def test_delayed_add(self, queue, task_mock, payload):
        handle = queue.add(payload, delay=30)

        assert handle.state == QueueJobState.delayed
        assert task_mock.apply_async.call_args.kwargs["countdown"] == 30

    def test_dispatch_failure_marks_record_failed(self, queue, task_mock, payload, db_session):
        task_mock.apply_async.side_effect = ConnectionError("broker down")

        with pytest.raises(ResourceUnavailableError):
            queue.add(payload)

        record = db_session.query(ScanQueueJob).one()
        assert record.state == QueueJobState.failed
        assert "broker down" in record.failed_reason

    def test_record_failure_is_resource_unavailable(self, celery_mock, task_mock, payload):
        session = MagicMock()
        session.commit.side_effect = OperationalError("INSERT INTO scan_queue_jobs", {}, Exception("database is locked"))
        queue = ScanQueueClient(celery_mock, lambda: session, task=task_mock, max_attempts=3)

        with pytest.raises(ResourceUnavailableError) as exc_info:
            queue.add(payload)

        assert exc_info.value.message == "Failed to queue scan job"
        session.rollback.assert_called_once()
        session.close.assert_called_once()
        task_mock.apply_async.assert_not_called()

    def test_unknown_job_status_is_none(self, queue):
        assert queue.get_job_status("missing") is None


class TestWorkerHooks:
    def test_progress_is_clamped_and_never_decreases(self, queue, payload):
        job_id = queue.add(payload).id
        queue.mark_active(job_id, 1)

        queue.update_progress(job_id, 30)
        queue.update_progress(job_id, 20)
        assert queue.get_job_status(job_id).progress == 30

        queue.update_progress(job_id, 250)
        assert queue.get_job_status(job_id).progress == 100

    def test_new_attempt_restarts_progress(self, queue, payload):
        job_id = queue.add(payload).id
        queue.mark_active(job_id, 1)
        queue.update_progress(job_id, 60)
        queue.mark_delayed(job_id, "database is locked")

        queue.mark_active(job_id, 2)

        status = queue.get_job_status(job_id)
        assert status.state == QueueJobState.active
        assert status.attempts_made == 2
        assert status.progress == 0
        assert status.failed_reason is None

    def test_completed_and_failed(self, queue, payload):
        done = queue.add(payload).id
        broken = queue.add(payload).id

        queue.mark_completed(done, {"status": "success"})
        queue.mark_failed(broken, "Failed to fetch sitemap: HTTP 404: Not Found")

        done_status = queue.get_job_status(done)
        assert done_status.state == QueueJobState.completed
        assert done_status.progress == 100
        assert done_status.finished_on is not None

        broken_status = queue.get_job_status(broken)
        assert broken_status.state == QueueJobState.failed
        assert broken_status.failed_reason == "Failed to fetch sitemap: HTTP 404: Not Found"


class TestCancelAndStats:
    def test_cancel_waiting_job(self, queue, celery_mock, payload):
        job_id = queue.add(payload).id

        assert queue.cancel(job_id) is True

        celery_mock.control.revoke.assert_called_once_with(job_id)
        status = queue.get_job_status(job_id)
        assert status.state == QueueJobState.failed
        assert status.failed_reason == "Cancelled by user"

    def test_cancel_active_job_leaves_state_to_worker(self, queue, payload):
        job_id = queue.add(payload).id
        queue.mark_active(job_id, 1)

        assert queue.cancel(job_id) is True
        assert queue.get_job_status(job_id).state == QueueJobState.active

    def test_cancel_unknown_job(self, queue, celery_mock):
        assert queue.cancel("missing") is False
        celery_mock.control.revoke.assert_not_called()

    def test_revoke_failure_still_cancels_record(self, queue, celery_mock, payload):
        celery_mock.control.revoke.side_effect = ConnectionError("broker down")
        job_id = queue.add(payload).id

        assert queue.cancel(job_id) is True
        assert queue.get_job_status(job_id).state == QueueJobState.failed

    def test_stats_count_by_state(self, queue, payload):
        waiting = queue.add(payload).id
        active = queue.add(payload).id
        completed = queue.add(payload).id
        queue.mark_active(active, 1)
        queue.mark_completed(completed)

        stats = queue.get_stats()

        assert queue.get_job_status(waiting).state == QueueJobState.waiting
        assert stats.model_dump() == {"waiting": 1, "active": 1, "completed": 1, "failed": 0, "delayed": 0}


class TestRetention:
    def test_history_bounded_per_state(self, celery_mock, task_mock, session_factory, db_session):
        queue = ScanQueueClient(celery_mock, session_factory, task=task_mock, keep_completed=2, keep_failed=1)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(4):
            db_session.add(
                ScanQueueJob(
                    id=f"done-{i}",
                    payload={},
                    state=QueueJobState.completed,
                    finished_on=base + timedelta(minutes=i),
                )
            )
        for i in range(3):
            db_session.add(
                ScanQueueJob(
                    id=f"failed-{i}",
                    payload={},
                    state=QueueJobState.failed,
                    finished_on=base + timedelta(minutes=i),
                )
            )
        db_session.add(ScanQueueJob(id="still-waiting", payload={}, state=QueueJobState.waiting))
        db_session.commit()

        removed = queue.prune_history()

        assert removed == 4
        remaining = {row.id for row in db_session.query(ScanQueueJob.id).all()}
        assert remaining == {"done-3", "done-2", "failed-2", "still-waiting"}
