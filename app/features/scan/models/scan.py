import enum

from sqlalchemy import Column, DateTime, Enum, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from app.platform.db.base import BaseModel


class ScanStatus(enum.Enum):
    """Scan state machine: pending -> processing -> success | failed"""
    pending = "pending"
    processing = "processing"
    success = "success"
    failed = "failed"


ACTIVE_STATUSES = (ScanStatus.pending, ScanStatus.processing)
TERMINAL_STATUSES = (ScanStatus.success, ScanStatus.failed)


class Scan(BaseModel):
    """
    One user-initiated sitemap validation run.

    Only the worker executing the scan's job mutates it (plus owner
    cancellation); once success/failed it is immutable until deleted.
    """
    __tablename__ = "scans"

    # Owner lives in the external user store
    user_id = Column(String(36), nullable=False, index=True)

    sitemap_url = Column(String(2048), nullable=False)
    status = Column(Enum(ScanStatus), default=ScanStatus.pending, nullable=False, index=True)

    total_urls = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    # Resolver advisories (mixed domains, http urls, sitemap index)
    warnings = Column(JSON, nullable=True)

    # Queue job carrying this scan; lets cancellation revoke it
    job_id = Column(String(64), nullable=True, index=True)

    # Credits deducted / given back for this scan
    credits_charged = Column(Integer, default=0, nullable=False)
    credits_refunded = Column(Integer, default=0, nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    results = relationship(
        "ScanResult",
        back_populates="scan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ScanResult.url",
    )

    __table_args__ = (
        Index("idx_scans_user_started", "user_id", "started_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<Scan(id={self.id}, status={self.status}, total_urls={self.total_urls})>"
