import enum

from sqlalchemy import Column, DateTime, Enum, Index, Integer, JSON, String, Text

from app.platform.db.base import BaseModel


class QueueJobState(enum.Enum):
    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"
    delayed = "delayed"


class ScanQueueJob(BaseModel):
    """
    Bookkeeping record for one queued scan job.

    Owned by the queue client; the id is the Celery task id. Completed and
    failed records are pruned down to a bounded history.
    """
    __tablename__ = "scan_queue_jobs"

    name = Column(String(100), nullable=False, default="process-sitemap-scan")
    scan_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    state = Column(Enum(QueueJobState), default=QueueJobState.waiting, nullable=False, index=True)
    progress = Column(Integer, default=0, nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    attempts_made = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    failed_reason = Column(Text, nullable=True)
    return_value = Column(JSON, nullable=True)

    processed_on = Column(DateTime(timezone=True), nullable=True)
    finished_on = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_scan_queue_jobs_state_finished", "state", "finished_on"),
    )
