import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func
from sqlalchemy.orm import Session

from app.features.scan.models.scan import Scan, ScanStatus, TERMINAL_STATUSES
from app.features.scan.models.scan_result import ScanResult
from app.features.scan.schemas.scan import ScanOut, ScanResultOut, ValidationResult
from app.features.scan.services.validation.batch_validator import summarize_results
from app.platform.exceptions import ConflictError, NotFoundError, ValidationInputError

logger = logging.getLogger(__name__)


def get_owned_scan(db: Session, scan_id: str, user_id: str) -> Scan:
    scan = db.query(Scan).filter(Scan.id == scan_id, Scan.user_id == user_id).first()
    if not scan:
        logger.warning(f"Scan {scan_id} not found or doesn't belong to user {user_id}")
        raise NotFoundError("Scan not found")
    return scan


def _as_validation_result(row: ScanResult) -> ValidationResult:
    return ValidationResult(url=row.url, errors=row.errors, warnings=row.warnings, checked_at=row.checked_at)


def get_scan_details(db: Session, scan_id: str, user_id: str) -> Dict[str, Any]:
    """Scan record, every per-URL result and the aggregated summary."""
    scan = get_owned_scan(db, scan_id, user_id)
    rows = db.query(ScanResult).filter(ScanResult.scan_id == scan_id).order_by(ScanResult.url).all()

    summary = summarize_results(_as_validation_result(row) for row in rows)

    return {
        "scan": ScanOut.model_validate(scan).model_dump(mode="json"),
        "results": [ScanResultOut.model_validate(row).model_dump(mode="json") for row in rows],
        "summary": summary.model_dump(),
    }


def list_scan_history(
    db: Session,
    user_id: str,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
) -> Tuple[List[Scan], int]:
    query = db.query(Scan).filter(Scan.user_id == user_id)

    if status:
        try:
            query = query.filter(Scan.status == ScanStatus(status))
        except ValueError:
            raise ValidationInputError(f"Unknown scan status: {status}")

    total = query.count()
    scans = (
        query.order_by(Scan.created_at.desc(), Scan.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return scans, total


def list_scan_results(
    db: Session,
    scan_id: str,
    user_id: str,
    result_filter: str = "all",
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[ScanResult], int]:
    get_owned_scan(db, scan_id, user_id)

    query = db.query(ScanResult).filter(ScanResult.scan_id == scan_id)
    if result_filter == "errors":
        query = query.filter(ScanResult.is_valid.is_(False))
    elif result_filter == "valid":
        query = query.filter(ScanResult.is_valid.is_(True))
    elif result_filter == "warnings":
        query = query.filter(ScanResult.warning_count > 0)
    elif result_filter != "all":
        raise ValidationInputError(f"Unknown result filter: {result_filter}")

    total = query.count()
    rows = query.order_by(ScanResult.url).offset((page - 1) * limit).limit(limit).all()
    return rows, total


def delete_scan(db: Session, scan_id: str, user_id: str) -> Dict[str, Any]:
    """Delete a finished scan and its results. Active scans must be cancelled first."""
    scan = get_owned_scan(db, scan_id, user_id)
    if scan.status not in TERMINAL_STATUSES:
        raise ConflictError(f"Cannot delete scan with status: {scan.status.value}. Cancel it first.")

    db.execute(delete(ScanResult).where(ScanResult.scan_id == scan_id))
    result = db.execute(
        delete(Scan).where(
            Scan.id == scan_id,
            Scan.user_id == user_id,
            Scan.status.in_(TERMINAL_STATUSES),
        )
    )
    db.commit()

    if result.rowcount == 0:
        raise NotFoundError("Scan not found")

    logger.info(f"Successfully deleted scan {scan_id} for user {user_id}")
    return {"scan_id": scan_id}


def get_scan_statistics(db: Session, user_id: str) -> Dict[str, Any]:
    rows = (
        db.query(Scan.status, func.count(Scan.id), func.coalesce(func.sum(Scan.total_urls), 0))
        .filter(Scan.user_id == user_id)
        .group_by(Scan.status)
        .all()
    )
    by_status = {status.value: 0 for status in ScanStatus}
    total_urls = 0
    for status, count, urls in rows:
        by_status[status.value] = count
        total_urls += int(urls)

    total_scans = sum(by_status.values())

    result_totals = (
        db.query(
            func.count(ScanResult.id),
            func.coalesce(func.sum(ScanResult.error_count), 0),
            func.coalesce(func.sum(ScanResult.warning_count), 0),
        )
        .join(Scan, Scan.id == ScanResult.scan_id)
        .filter(Scan.user_id == user_id)
        .one()
    )
    valid_pages = (
        db.query(func.count(ScanResult.id))
        .join(Scan, Scan.id == ScanResult.scan_id)
        .filter(Scan.user_id == user_id, ScanResult.is_valid.is_(True))
        .scalar()
    )

    return {
        "total_scans": total_scans,
        "scans_by_status": by_status,
        "total_urls_scanned": total_urls,
        "pages_validated": int(result_totals[0]),
        "valid_pages": int(valid_pages or 0),
        "total_errors": int(result_totals[1]),
        "total_warnings": int(result_totals[2]),
        "success_rate": round(by_status["success"] / total_scans * 100, 2) if total_scans else 0.0,
    }
