import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from app.features.scan.models.queue_job import QueueJobState, ScanQueueJob
from app.features.scan.schemas.scan import JobHandle, JobStatus, QueueStats, ScanJobPayload
from app.platform.celery_app import SCAN_TASK_NAME
from app.platform.config import settings
from app.platform.db.base import new_id
from app.platform.exceptions import ResourceUnavailableError

logger = logging.getLogger(__name__)

JOB_NAME = "process-sitemap-scan"
CANCELLED_REASON = "Cancelled by user"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanQueueClient:
    """
    Durable job queue for scan processing.

    Celery carries the work; the scan_queue_jobs table carries what Celery
    cannot answer cheaply (state counts, progress, attempts, a bounded
    history of finished jobs). The record id is the Celery task id.

    Construct once, open() before use and close() on shutdown, or use it as a
    context manager.
    """

    def __init__(
        self,
        celery_app,
        session_factory,
        task=None,
        queue_name: Optional[str] = None,
        max_attempts: Optional[int] = None,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
    ):
        self.celery_app = celery_app
        self.session_factory = session_factory
        self.task = task
        self.queue_name = queue_name or settings.SCAN_QUEUE_NAME
        self.max_attempts = max_attempts or settings.SCAN_JOB_MAX_ATTEMPTS
        self.keep_completed = settings.SCAN_JOB_KEEP_COMPLETED if keep_completed is None else keep_completed
        self.keep_failed = settings.SCAN_JOB_KEEP_FAILED if keep_failed is None else keep_failed
        self._connection = None

    # ── lifecycle ───────────────────────────────

    def open(self) -> "ScanQueueClient":
        if self._connection is not None:
            return self
        if self.celery_app.conf.task_always_eager:
            logger.info("Scan queue running in eager mode, no broker connection")
            return self

        connection = self.celery_app.connection_for_write()
        try:
            connection.ensure_connection(max_retries=3)
        except Exception as e:
            connection.release()
            logger.error(f"Could not connect to scan queue broker: {e}")
            raise ResourceUnavailableError("Scan queue broker is unavailable") from e

        self._connection = connection
        logger.info(f"Scan queue '{self.queue_name}' connected")
        return self

    def close(self) -> None:
        if self._connection is not None:
            self._connection.release()
            self._connection = None
            logger.info(f"Scan queue '{self.queue_name}' connection released")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ── producer side ───────────────────────────

    def add(self, payload: ScanJobPayload, priority: int = 0, delay: int = 0) -> JobHandle:
        job_id = new_id()
        state = QueueJobState.delayed if delay > 0 else QueueJobState.waiting

        db = self.session_factory()
        try:
            db.add(
                ScanQueueJob(
                    id=job_id,
                    name=JOB_NAME,
                    scan_id=payload.scan_id,
                    user_id=payload.user_id,
                    payload=payload.model_dump(),
                    state=state,
                    priority=priority,
                    max_attempts=self.max_attempts,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[{payload.scan_id}] Failed to record scan job {job_id}: {e}")
            raise ResourceUnavailableError("Failed to queue scan job") from e
        finally:
            db.close()

        options: Dict[str, Any] = {
            "kwargs": payload.model_dump(),
            "task_id": job_id,
            "queue": self.queue_name,
            "priority": priority,
        }
        if delay > 0:
            options["countdown"] = delay

        try:
            if self.task is not None:
                self.task.apply_async(**options)
            else:
                self.celery_app.send_task(SCAN_TASK_NAME, **options)
        except Exception as e:
            logger.error(f"[{payload.scan_id}] Failed to enqueue scan job {job_id}: {e}")
            self._finish(job_id, QueueJobState.failed, failed_reason=f"Enqueue failed: {e}")
            raise ResourceUnavailableError("Failed to queue scan job") from e

        logger.info(f"[{payload.scan_id}] Queued scan job {job_id} on '{self.queue_name}'")
        current = self.get_job_status(job_id)
        if current is None:
            return JobHandle(id=job_id, state=state, progress=0)
        return JobHandle(id=job_id, state=current.state, progress=current.progress)

    def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        db = self.session_factory()
        try:
            record = db.query(ScanQueueJob).filter(ScanQueueJob.id == job_id).first()
            if not record:
                return None
            return JobStatus.model_validate(record)
        finally:
            db.close()

    def cancel(self, job_id: str) -> bool:
        db = self.session_factory()
        try:
            record = db.query(ScanQueueJob).filter(ScanQueueJob.id == job_id).first()
            if not record:
                return False

            try:
                self.celery_app.control.revoke(job_id)
            except Exception as e:
                # In-flight work still stops at the scan's next cancellation check
                logger.warning(f"Could not revoke scan job {job_id}: {e}")

            result = db.execute(
                update(ScanQueueJob)
                .where(ScanQueueJob.id == job_id)
                .where(ScanQueueJob.state.in_([QueueJobState.waiting, QueueJobState.delayed]))
                .values(state=QueueJobState.failed, failed_reason=CANCELLED_REASON, finished_on=_utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        logger.info(f"Cancelled scan job {job_id} (queued record updated: {result.rowcount > 0})")
        return True

    def get_stats(self) -> QueueStats:
        db = self.session_factory()
        try:
            rows = (
                db.query(ScanQueueJob.state, func.count(ScanQueueJob.id))
                .group_by(ScanQueueJob.state)
                .all()
            )
        finally:
            db.close()
        return QueueStats(**{state.value: count for state, count in rows})

    # ── worker side ─────────────────────────────

    def mark_active(self, job_id: str, attempt: int) -> None:
        self._update(
            job_id,
            state=QueueJobState.active,
            attempts_made=attempt,
            progress=0,
            processed_on=_utcnow(),
            failed_reason=None,
        )
        logger.debug(f"Scan job {job_id} active (attempt {attempt}/{self.max_attempts})")

    def update_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        db = self.session_factory()
        try:
            db.execute(
                update(ScanQueueJob)
                .where(ScanQueueJob.id == job_id)
                .where(ScanQueueJob.progress <= progress)
                .values(progress=progress)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

    def mark_delayed(self, job_id: str, reason: str) -> None:
        self._update(job_id, state=QueueJobState.delayed, failed_reason=reason)
        logger.info(f"Scan job {job_id} will be retried: {reason}")

    def mark_completed(self, job_id: str, return_value: Optional[Dict[str, Any]] = None) -> None:
        self._finish(job_id, QueueJobState.completed, progress=100, return_value=return_value)

    def mark_failed(self, job_id: str, reason: str) -> None:
        self._finish(job_id, QueueJobState.failed, failed_reason=reason)

    def prune_history(self) -> int:
        """Trim finished records down to the newest keep_completed / keep_failed."""
        removed = 0
        db = self.session_factory()
        try:
            for state, keep in (
                (QueueJobState.completed, self.keep_completed),
                (QueueJobState.failed, self.keep_failed),
            ):
                stale_ids = [
                    row.id
                    for row in db.query(ScanQueueJob.id)
                    .filter(ScanQueueJob.state == state)
                    .order_by(ScanQueueJob.finished_on.desc(), ScanQueueJob.id.desc())
                    .offset(keep)
                    .all()
                ]
                if stale_ids:
                    removed += (
                        db.query(ScanQueueJob)
                        .filter(ScanQueueJob.id.in_(stale_ids))
                        .delete(synchronize_session=False)
                    )
            db.commit()
        finally:
            db.close()

        if removed:
            logger.debug(f"Pruned {removed} finished scan job records")
        return removed

    # ── internals ───────────────────────────────

    def _update(self, job_id: str, **values) -> None:
        db = self.session_factory()
        try:
            db.execute(
                update(ScanQueueJob)
                .where(ScanQueueJob.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

    def _finish(self, job_id: str, state: QueueJobState, **values) -> None:
        self._update(job_id, state=state, finished_on=_utcnow(), **values)
        self.prune_history()
