import logging
from typing import Any, Dict, Optional

from celery.signals import worker_process_init, worker_process_shutdown
from sqlalchemy.exc import OperationalError

from app.features.scan.services.queue.scan_queue import ScanQueueClient
from app.features.scan.services.scan.orchestrator import ScanOrchestrator
from app.platform.celery_app import SCAN_TASK_NAME, celery_app
from app.platform.config import settings
from app.platform.db.session import SessionLocal

logger = logging.getLogger(__name__)

# One queue client / orchestrator per worker process
_queue_client: Optional[ScanQueueClient] = None
_orchestrator: Optional[ScanOrchestrator] = None


def get_queue_client() -> ScanQueueClient:
    global _queue_client

    if _queue_client is None:
        _queue_client = ScanQueueClient(celery_app, SessionLocal, task=process_scan_job).open()
    return _queue_client


def get_orchestrator() -> ScanOrchestrator:
    global _orchestrator

    if _orchestrator is None:
        _orchestrator = ScanOrchestrator.from_settings(get_queue_client())
    return _orchestrator


@worker_process_init.connect
def _open_worker_clients(**kwargs):
    get_orchestrator()
    logger.info("Scan worker process ready")


@worker_process_shutdown.connect
def _close_worker_clients(**kwargs):
    global _queue_client, _orchestrator

    if _orchestrator is not None:
        _orchestrator.resolver.close()
        _orchestrator.batch_validator.client.close()
        _orchestrator = None
    if _queue_client is not None:
        _queue_client.close()
        _queue_client = None
    logger.info("Scan worker process shut down")


def run_scan_job(
    queue: ScanQueueClient,
    orchestrator: ScanOrchestrator,
    job_id: str,
    attempt: int,
    scan_id: str,
    user_id: str,
    sitemap_url: str,
) -> Dict[str, Any]:
    """One attempt at a scan job, with its queue bookkeeping."""
    logger.info(f"[{scan_id}] Starting scan job {job_id} (attempt {attempt}/{queue.max_attempts})")
    queue.mark_active(job_id, attempt)

    try:
        outcome = orchestrator.process_scan(
            scan_id,
            user_id,
            sitemap_url,
            on_progress=lambda progress: queue.update_progress(job_id, progress),
        )
    except Exception as e:
        reason = str(e) or e.__class__.__name__
        if isinstance(e, OperationalError) and attempt < queue.max_attempts:
            queue.mark_delayed(job_id, reason)
        else:
            logger.error(f"[{scan_id}] Scan job {job_id} failed permanently: {reason}")
            queue.mark_failed(job_id, reason)
        raise

    if outcome.get("status") == "failed":
        queue.mark_failed(job_id, outcome.get("error") or "Scan failed")
    else:
        queue.mark_completed(job_id, outcome)

    logger.info(f"[{scan_id}] Scan job {job_id} finished: {outcome.get('status')}")
    return outcome


@celery_app.task(
    bind=True,
    name=SCAN_TASK_NAME,
    max_retries=settings.SCAN_JOB_MAX_ATTEMPTS - 1,
    autoretry_for=(OperationalError,),
    retry_backoff=settings.SCAN_JOB_BACKOFF_SECONDS,
    retry_backoff_max=settings.SCAN_JOB_BACKOFF_MAX_SECONDS,
    retry_jitter=False,
    rate_limit=f"{settings.SCAN_JOBS_PER_MINUTE}/m",
)
def process_scan_job(
    self,
    scan_id: str,
    user_id: str,
    sitemap_url: str,
) -> Dict[str, Any]:
    """
    Process one queued sitemap scan.

    The orchestrator absorbs pipeline failures itself; what reaches this
    task is an infrastructure error (database unreachable) and is retried
    with exponential backoff until the attempts run out.

    rate_limit is enforced per worker node; the jobs-per-minute cap holds
    for the whole queue only when a single worker consumes it.

    Args:
        scan_id: The scan to process
        user_id: Owner of the scan, charged for its URLs
        sitemap_url: Sitemap to resolve and validate

    Returns:
        Dict with the scan outcome
    """
    return run_scan_job(
        get_queue_client(),
        get_orchestrator(),
        job_id=self.request.id,
        attempt=self.request.retries + 1,
        scan_id=scan_id,
        user_id=user_id,
        sitemap_url=sitemap_url,
    )
