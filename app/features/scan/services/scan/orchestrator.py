import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.features.credits.services.ledger import CreditLedger
from app.features.scan.models.scan import ACTIVE_STATUSES, Scan, ScanStatus
from app.features.scan.models.scan_result import ScanResult
from app.features.scan.schemas.scan import (
    JobStatus,
    ScanCreateResponse,
    ScanJobPayload,
    ScanOut,
    ScanStatusResponse,
)
from app.platform.exceptions import (
    ConflictError,
    InsufficientCreditsError,
    NotFoundError,
    ResourceUnavailableError,
    ValidationInputError,
)
from app.platform.utils.url_validator import validate_url

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"

ProgressReporter = Callable[[int], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def batch_progress(completed: int, total: int) -> int:
    """Map per-URL completion onto the 30..90 progress band, rounding half up."""
    if total <= 0:
        return 90
    return 30 + (completed * 120 + total) // (total * 2)


def deduct_key(scan_id: str) -> str:
    return f"scan:{scan_id}:deduct"


def refund_key(scan_id: str) -> str:
    return f"scan:{scan_id}:refund"


class ScanOrchestrator:
    """
    Drives a scan through pending -> processing -> success | failed.

    Every status change is a conditional UPDATE on the current status, so a
    terminal scan can never be moved again. Credits are deducted once per
    scan and refunded at most once, both keyed by scan id in the ledger, which
    makes re-running process_scan for the same scan (queue retry, redelivery
    after a worker crash) safe.
    """

    def __init__(self, session_factory, queue, resolver, batch_validator, ledger_class=CreditLedger):
        self.session_factory = session_factory
        self.queue = queue
        self.resolver = resolver
        self.batch_validator = batch_validator
        self.ledger_class = ledger_class

    @classmethod
    def from_settings(cls, queue) -> "ScanOrchestrator":
        from app.features.scan.services.discovery.sitemap_resolver import SitemapResolver
        from app.features.scan.services.validation.batch_validator import BatchValidator
        from app.features.scan.services.validation.w3c_client import W3CValidatorClient
        from app.platform.db.session import SessionLocal

        return cls(
            session_factory=SessionLocal,
            queue=queue,
            resolver=SitemapResolver(),
            batch_validator=BatchValidator(W3CValidatorClient()),
        )

    # =========================================================================
    # API side
    # =========================================================================

    def create_scan(self, user_id: str, sitemap_url: str) -> ScanCreateResponse:
        is_valid, cleaned_url, error_message = validate_url(sitemap_url)
        if not is_valid:
            raise ValidationInputError(f"Invalid sitemap URL: {error_message}")

        probe = self.resolver.probe(cleaned_url)
        if not probe.accessible:
            logger.warning(f"Sitemap {cleaned_url} not accessible for user {user_id}: {probe.error}")
            raise ResourceUnavailableError(
                f"Sitemap is not accessible: {probe.error}",
                details={"probe": probe.model_dump()},
            )

        db = self.session_factory()
        try:
            balance = self.ledger_class(db).get_balance(user_id)
            if balance <= 0:
                raise InsufficientCreditsError(
                    "No credits available. Please purchase credits to start scanning.",
                    required=1,
                    current=balance,
                )

            scan = Scan(
                user_id=user_id,
                sitemap_url=cleaned_url,
                status=ScanStatus.pending,
                total_urls=0,
            )
            db.add(scan)
            db.commit()
            scan_id = scan.id
            logger.info(f"[{scan_id}] Created scan for {cleaned_url} (user {user_id}, balance {balance})")

            try:
                job = self.queue.add(
                    ScanJobPayload(scan_id=scan_id, user_id=user_id, sitemap_url=cleaned_url)
                )
            except Exception as e:
                reason = e.message if isinstance(e, ResourceUnavailableError) else (str(e) or e.__class__.__name__)
                logger.error(f"[{scan_id}] Could not queue scan: {reason}")
                db.rollback()
                self._transition(
                    db,
                    scan_id,
                    ACTIVE_STATUSES,
                    ScanStatus.failed,
                    error_message=f"Failed to queue scan: {reason}",
                    finished_at=_utcnow(),
                )
                if isinstance(e, ResourceUnavailableError):
                    raise
                raise ResourceUnavailableError("Failed to queue scan job") from e

            db.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .values(job_id=job.id)
                .execution_options(synchronize_session=False)
            )
            db.commit()

            db.expire_all()
            scan = db.get(Scan, scan_id)
            return ScanCreateResponse(scan=ScanOut.model_validate(scan), job=job)
        finally:
            db.close()

    def get_scan_status(self, scan_id: str, user_id: str) -> ScanStatusResponse:
        db = self.session_factory()
        try:
            scan = self._owned_scan(db, scan_id, user_id)
            job = self.queue.get_job_status(scan.job_id) if scan.job_id else None

            if scan.status == ScanStatus.success:
                progress = 100
            else:
                progress = job.progress if job else 0

            return ScanStatusResponse(
                scan_id=scan.id,
                status=scan.status,
                progress=progress,
                total_urls=scan.total_urls,
                error_message=scan.error_message,
                job=job,
            )
        finally:
            db.close()

    def get_job_status(self, job_id: str, user_id: str) -> JobStatus:
        job = self.queue.get_job_status(job_id)
        if job is None or job.payload.get("user_id") != user_id:
            raise NotFoundError("Job not found")
        return job

    def cancel_scan(self, scan_id: str, user_id: str) -> ScanOut:
        db = self.session_factory()
        try:
            scan = self._owned_scan(db, scan_id, user_id)
            if scan.status not in ACTIVE_STATUSES:
                raise ConflictError(f"Cannot cancel scan with status: {scan.status.value}")

            cancelled = self._transition(
                db,
                scan_id,
                ACTIVE_STATUSES,
                ScanStatus.failed,
                error_message=CANCELLED_MESSAGE,
                finished_at=_utcnow(),
            )
            if not cancelled:
                db.expire_all()
                current = db.get(Scan, scan_id)
                raise ConflictError(f"Cannot cancel scan with status: {current.status.value}")

            logger.info(f"[{scan_id}] Cancelled by user {user_id}")

            if scan.job_id:
                self.queue.cancel(scan.job_id)

            charged = self._charged_amount(db, scan_id)
            if charged > 0:
                self._refund(db, scan_id, user_id, charged, "scan cancelled")

            db.expire_all()
            return ScanOut.model_validate(db.get(Scan, scan_id))
        finally:
            db.close()

    # =========================================================================
    # Worker side
    # =========================================================================

    def process_scan(
        self,
        scan_id: str,
        user_id: str,
        sitemap_url: str,
        on_progress: Optional[ProgressReporter] = None,
    ) -> Dict[str, Any]:
        """
        Run one scan to completion.

        Pipeline failures are absorbed: the scan is marked failed, charged
        credits are refunded and a failed outcome is returned. Only errors
        raised while recording that failure propagate to the caller.
        """
        report = on_progress or (lambda progress: None)

        db = self.session_factory()
        try:
            scan = db.get(Scan, scan_id)
            if scan is None:
                logger.warning(f"[{scan_id}] Scan no longer exists, skipping job")
                return {"scan_id": scan_id, "status": "missing"}
            if scan.is_terminal:
                logger.info(f"[{scan_id}] Scan already {scan.status.value}, skipping job")
                return {"scan_id": scan_id, "status": scan.status.value, "skipped": True}

            try:
                return self._run(db, scan_id, user_id, sitemap_url, report)
            except Exception as e:
                logger.error(f"[{scan_id}] Scan failed: {e}", exc_info=True)
                db.rollback()
                return self._fail_scan(db, scan_id, user_id, str(e) or e.__class__.__name__)
        finally:
            db.close()

    def _run(self, db: Session, scan_id: str, user_id: str, sitemap_url: str, report: ProgressReporter) -> Dict[str, Any]:
        # 1. Mark processing; first attempt's start time wins
        started = self._transition(
            db,
            scan_id,
            ACTIVE_STATUSES,
            ScanStatus.processing,
            started_at=func.coalesce(Scan.started_at, _utcnow()),
        )
        if not started:
            return self._cancelled_outcome(db, scan_id)
        report(10)
        logger.info(f"[{scan_id}] Processing sitemap {sitemap_url}")

        # 2. Resolve sitemap
        resolution = self.resolver.resolve(sitemap_url)
        total = resolution.url_count
        report(20)

        # 3. Record what was found
        db.execute(
            update(Scan)
            .where(Scan.id == scan_id)
            .values(total_urls=total, warnings=resolution.warnings)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info(f"[{scan_id}] Sitemap resolved: {total} URLs, {len(resolution.warnings)} warnings")

        # 4./5. Charge one credit per URL
        if self._is_cancelled(db, scan_id):
            return self._cancelled_outcome(db, scan_id)

        self._charge(db, scan_id, user_id, total)
        report(30)

        if self._is_cancelled(db, scan_id):
            return self._cancelled_outcome(db, scan_id, refund_user_id=user_id)

        # 6. Validate every URL
        results = self.batch_validator.validate_batch(
            resolution.urls,
            on_progress=lambda p: report(batch_progress(p.completed, p.total)),
        )
        report(90)

        # 7. Results and the success transition commit together
        db.add_all(ScanResult.from_validation(scan_id, result) for result in results)
        outcome = db.execute(
            update(Scan)
            .where(Scan.id == scan_id)
            .where(Scan.status == ScanStatus.processing)
            .values(status=ScanStatus.success, finished_at=_utcnow(), error_message=None)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 0:
            db.rollback()
            logger.info(f"[{scan_id}] Scan was cancelled during validation, discarding results")
            return self._cancelled_outcome(db, scan_id, refund_user_id=user_id)
        db.commit()
        report(100)

        valid = sum(1 for result in results if result.is_valid)
        logger.info(f"[{scan_id}] Scan completed: {valid}/{total} URLs valid")
        return {"scan_id": scan_id, "status": ScanStatus.success.value, "total_urls": total, "valid_urls": valid}

    def _charge(self, db: Session, scan_id: str, user_id: str, total: int) -> None:
        if self._charged_amount(db, scan_id) > 0:
            logger.info(f"[{scan_id}] Credits already deducted by a previous attempt")
            return

        ledger = self.ledger_class(db)
        check = ledger.check_sufficient(user_id, total)
        if not check.has_sufficient:
            raise InsufficientCreditsError(
                f"Insufficient credits. Required: {total}, Available: {check.current}",
                required=total,
                current=check.current,
            )

        ledger.deduct(
            user_id,
            total,
            reason=f"Sitemap scan {scan_id} ({total} URLs)",
            operation_key=deduct_key(scan_id),
            related_scan_id=scan_id,
        )
        db.execute(
            update(Scan)
            .where(Scan.id == scan_id)
            .values(credits_charged=total)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        logger.info(f"[{scan_id}] Deducted {total} credits from user {user_id}")

    def _fail_scan(self, db: Session, scan_id: str, user_id: str, message: str) -> Dict[str, Any]:
        # Errors raised here are infrastructure failures and go back to the queue
        self._transition(
            db,
            scan_id,
            ACTIVE_STATUSES,
            ScanStatus.failed,
            error_message=message,
            finished_at=_utcnow(),
        )

        refunded = 0
        charged = self._charged_amount(db, scan_id)
        if charged > 0:
            refunded = self._refund(db, scan_id, user_id, charged, "scan failed")

        return {"scan_id": scan_id, "status": ScanStatus.failed.value, "error": message, "refunded": refunded}

    def _refund(self, db: Session, scan_id: str, user_id: str, amount: int, reason: str) -> int:
        """Best effort: a failed refund is logged and reported as 0."""
        try:
            self.ledger_class(db).refund(
                user_id,
                amount,
                reason,
                related_scan_id=scan_id,
                operation_key=refund_key(scan_id),
            )
            db.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .values(credits_refunded=amount)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"[{scan_id}] Refund of {amount} credits to user {user_id} failed: {e}", exc_info=True)
            return 0

        logger.info(f"[{scan_id}] Refunded {amount} credits to user {user_id} ({reason})")
        return amount

    def _cancelled_outcome(self, db: Session, scan_id: str, refund_user_id: Optional[str] = None) -> Dict[str, Any]:
        refunded = 0
        if refund_user_id:
            charged = self._charged_amount(db, scan_id)
            if charged > 0:
                refunded = self._refund(db, scan_id, refund_user_id, charged, "scan cancelled")
        logger.info(f"[{scan_id}] Stopping: scan is no longer active")
        return {"scan_id": scan_id, "status": ScanStatus.failed.value, "error": CANCELLED_MESSAGE, "refunded": refunded}

    # =========================================================================
    # Helpers
    # =========================================================================

    def _transition(
        self,
        db: Session,
        scan_id: str,
        from_statuses: Iterable[ScanStatus],
        to_status: ScanStatus,
        **values,
    ) -> bool:
        result = db.execute(
            update(Scan)
            .where(Scan.id == scan_id)
            .where(Scan.status.in_(list(from_statuses)))
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 0:
            logger.debug(f"[{scan_id}] Transition to {to_status.value} skipped, scan left its expected state")
            return False
        logger.debug(f"[{scan_id}] Status -> {to_status.value}")
        return True

    def _is_cancelled(self, db: Session, scan_id: str) -> bool:
        status = db.execute(select(Scan.status).where(Scan.id == scan_id)).scalar_one_or_none()
        return status != ScanStatus.processing

    def _charged_amount(self, db: Session, scan_id: str) -> int:
        charged = db.execute(select(Scan.credits_charged).where(Scan.id == scan_id)).scalar_one_or_none()
        if charged:
            return charged
        # Deduction may have committed without the scan row catching up
        operation = self.ledger_class(db).find_operation(deduct_key(scan_id))
        return -operation.delta if operation else 0

    @staticmethod
    def _owned_scan(db: Session, scan_id: str, user_id: str) -> Scan:
        scan = db.query(Scan).filter(Scan.id == scan_id, Scan.user_id == user_id).first()
        if not scan:
            raise NotFoundError("Scan not found")
        return scan
