from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.features.auth.dependencies.current_user import get_current_user_id
from app.features.scan.schemas.scan import ResultFilter, ScanCreateRequest, ScanOut, ScanResultOut
from app.features.scan.services.scan.orchestrator import ScanOrchestrator
from app.features.scan.services.scan.scan import (
    delete_scan,
    get_scan_details,
    get_scan_statistics,
    list_scan_history,
    list_scan_results,
)
from app.platform.db.session import get_db
from app.platform.logger import get_logger
from app.platform.response import api_response, paginate

logger = get_logger(__name__)

router = APIRouter(prefix="/scans", tags=["scans"])


def get_scan_orchestrator(request: Request) -> ScanOrchestrator:
    return request.app.state.scan_orchestrator


@router.post("", status_code=status.HTTP_201_CREATED)
def create_scan(
    payload: ScanCreateRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    """
    Start a sitemap scan.

    The sitemap is probed for reachability and the caller must hold at least
    one credit; the scan itself runs in the background and is charged one
    credit per URL once the sitemap is resolved.
    """
    created = orchestrator.create_scan(user_id, payload.sitemap_url)
    logger.info(f"Scan {created.scan.id} queued as job {created.job.id} for user {user_id}")
    return api_response(
        data=created.model_dump(mode="json"),
        message="Scan created and queued for processing",
        status_code=status.HTTP_201_CREATED,
    )


@router.get("")
def scan_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    scan_status: Optional[str] = Query(None, alias="status"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    scans, total = list_scan_history(db, user_id, page=page, limit=limit, status=scan_status)
    return api_response(
        data=[ScanOut.model_validate(scan).model_dump(mode="json") for scan in scans],
        message="Scan history retrieved successfully",
        pagination=paginate(page, limit, total),
    )


@router.get("/statistics")
def scan_statistics(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return api_response(
        data=get_scan_statistics(db, user_id),
        message="Scan statistics retrieved successfully",
    )


@router.get("/queue/stats")
def queue_stats(
    user_id: str = Depends(get_current_user_id),
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    return api_response(
        data=orchestrator.queue.get_stats().model_dump(),
        message="Queue statistics retrieved successfully",
    )


@router.get("/jobs/{job_id}")
def job_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    job = orchestrator.get_job_status(job_id, user_id)
    return api_response(
        data=job.model_dump(mode="json"),
        message="Job status retrieved successfully",
    )


@router.get("/{scan_id}")
def scan_details(
    scan_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return api_response(
        data=get_scan_details(db, scan_id, user_id),
        message="Scan retrieved successfully",
    )


@router.get("/{scan_id}/status")
def scan_status(
    scan_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    result = orchestrator.get_scan_status(scan_id, user_id)
    return api_response(
        data=result.model_dump(mode="json"),
        message="Scan status retrieved successfully",
    )


@router.get("/{scan_id}/results")
def scan_results(
    scan_id: str,
    result_filter: ResultFilter = Query("all", alias="filter"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    rows, total = list_scan_results(db, scan_id, user_id, result_filter=result_filter, page=page, limit=limit)
    return api_response(
        data=[ScanResultOut.model_validate(row).model_dump(mode="json") for row in rows],
        message="Scan results retrieved successfully",
        pagination=paginate(page, limit, total),
    )


@router.post("/{scan_id}/cancel")
def cancel_scan(
    scan_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: ScanOrchestrator = Depends(get_scan_orchestrator),
):
    scan = orchestrator.cancel_scan(scan_id, user_id)
    return api_response(
        data=scan.model_dump(mode="json"),
        message="Scan cancelled successfully",
    )


@router.delete("/{scan_id}")
def remove_scan(
    scan_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return api_response(
        data=delete_scan(db, scan_id, user_id),
        message="Scan deleted successfully",
    )
