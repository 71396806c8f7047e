from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship, validates

from app.platform.db.base import BaseModel


class ScanResult(BaseModel):
    """
    Validation outcome for one URL within a scan.

    is_valid, error_count and warning_count are derived from the message
    lists whenever those are assigned; they are never set on their own.
    """
    __tablename__ = "scan_results"

    scan_id = Column(String(36), ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True)

    url = Column(String(2048), nullable=False)

    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)

    is_valid = Column(Boolean, nullable=False, default=True)
    error_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)

    checked_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    scan = relationship("Scan", back_populates="results")

    __table_args__ = (
        Index("idx_scan_results_scan_valid", "scan_id", "is_valid"),
    )

    @validates("errors")
    def _derive_validity(self, key, errors):
        errors = list(errors or [])
        self.is_valid = len(errors) == 0
        self.error_count = len(errors)
        return errors

    @validates("warnings")
    def _derive_warning_count(self, key, warnings):
        warnings = list(warnings or [])
        self.warning_count = len(warnings)
        return warnings

    @classmethod
    def from_validation(cls, scan_id: str, result) -> "ScanResult":
        """Build a row from a ValidationResult schema."""
        return cls(
            scan_id=scan_id,
            url=result.url,
            errors=[m.model_dump() for m in result.errors],
            warnings=[m.model_dump() for m in result.warnings],
            checked_at=result.checked_at,
        )

    def __repr__(self):
        return f"<ScanResult(url={self.url}, is_valid={self.is_valid}, errors={self.error_count})>"
