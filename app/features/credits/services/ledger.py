import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.features.credits.models.credit import (
    CreditBalance,
    CreditTransaction,
    CreditTransactionKind,
)
from app.features.credits.schemas.credit import CreditCheck, CreditMutation, CreditStatistics
from app.platform.config import settings
from app.platform.exceptions import InsufficientCreditsError, ValidationInputError

logger = logging.getLogger(__name__)


class CreditLedger:
    """
    Per-user credit balance operations.

    Every mutation is a single conditional UPDATE plus an audit row, committed
    together. Deductions carry their sufficiency check in the WHERE clause, so
    two concurrent deductions can never drive a balance below zero. A call
    with an operation_key that was already recorded is a no-op.
    """

    def __init__(self, db: Session, max_topup: Optional[int] = None):
        self.db = db
        self.max_topup = max_topup if max_topup is not None else settings.MAX_CREDIT_TOPUP

    # ── reads ───────────────────────────────────

    def get_balance(self, user_id: str) -> int:
        self._ensure_account(user_id)
        return self._current_amount(user_id)

    def check_sufficient(self, user_id: str, required: int) -> CreditCheck:
        current = self.get_balance(user_id)
        has_sufficient = current >= required
        return CreditCheck(
            has_sufficient=has_sufficient,
            current=current,
            required=required,
            deficit=0 if has_sufficient else required - current,
        )

    def get_history(self, user_id: str, page: int = 1, limit: int = 10) -> Tuple[List[CreditTransaction], int]:
        query = self.db.query(CreditTransaction).filter(CreditTransaction.user_id == user_id)
        total = query.count()
        items = (
            query.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def find_operation(self, operation_key: str) -> Optional[CreditTransaction]:
        return (
            self.db.query(CreditTransaction)
            .filter(CreditTransaction.operation_key == operation_key)
            .first()
        )

    def get_statistics(self, user_id: str) -> CreditStatistics:
        from app.features.scan.models.scan import Scan

        current = self.get_balance(user_id)

        totals = dict(
            self.db.query(CreditTransaction.kind, func.coalesce(func.sum(CreditTransaction.delta), 0))
            .filter(CreditTransaction.user_id == user_id)
            .group_by(CreditTransaction.kind)
            .all()
        )

        scan_rows = (
            self.db.query(Scan.status, func.count(Scan.id), func.coalesce(func.sum(Scan.total_urls), 0))
            .filter(Scan.user_id == user_id)
            .group_by(Scan.status)
            .all()
        )
        scans_by_status = {status.value: count for status, count, _ in scan_rows}
        total_scans = sum(scans_by_status.values())
        total_urls = sum(int(urls) for _, _, urls in scan_rows)
        successful = scans_by_status.get("success", 0)

        return CreditStatistics(
            current_balance=current,
            total_added=int(totals.get(CreditTransactionKind.credit, 0)),
            total_debited=-int(totals.get(CreditTransactionKind.debit, 0)),
            total_refunded=int(totals.get(CreditTransactionKind.refund, 0)),
            total_scans=total_scans,
            scans_by_status=scans_by_status,
            total_urls_scanned=total_urls,
            success_rate=round(successful / total_scans * 100, 2) if total_scans else 0.0,
        )

    # ── mutations ───────────────────────────────

    def deduct(
        self,
        user_id: str,
        amount: int,
        reason: str,
        operation_key: Optional[str] = None,
        related_scan_id: Optional[str] = None,
    ) -> CreditMutation:
        if amount <= 0:
            raise ValidationInputError("Deduction amount must be positive")

        logger.info(f"Deducting {amount} credits from user {user_id} ({reason})")
        return self._apply(
            user_id,
            -amount,
            CreditTransactionKind.debit,
            reason,
            operation_key=operation_key,
            related_scan_id=related_scan_id,
        )

    def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        related_scan_id: Optional[str] = None,
        operation_key: Optional[str] = None,
    ) -> CreditMutation:
        # No upper bound: a refund restores credits that were deducted earlier
        if amount <= 0:
            raise ValidationInputError("Refund amount must be positive")

        logger.info(f"Refunding {amount} credits to user {user_id} ({reason}, scan={related_scan_id})")
        return self._apply(
            user_id,
            amount,
            CreditTransactionKind.refund,
            f"refund: {reason}",
            operation_key=operation_key,
            related_scan_id=related_scan_id,
        )

    def add(self, user_id: str, amount: int, reason: str, operation_key: Optional[str] = None) -> CreditMutation:
        if amount <= 0:
            raise ValidationInputError("Credit amount must be positive")
        if amount > self.max_topup:
            raise ValidationInputError(f"Cannot add more than {self.max_topup:,} credits at once")

        logger.info(f"Adding {amount} credits to user {user_id} ({reason})")
        return self._apply(user_id, amount, CreditTransactionKind.credit, reason, operation_key=operation_key)

    # ── internals ───────────────────────────────

    def _current_amount(self, user_id: str) -> int:
        return self.db.execute(
            select(CreditBalance.amount).where(CreditBalance.user_id == user_id)
        ).scalar_one()

    def _ensure_account(self, user_id: str) -> None:
        exists = self.db.execute(
            select(CreditBalance.id).where(CreditBalance.user_id == user_id)
        ).first()
        if exists:
            return

        self.db.add(CreditBalance(user_id=user_id, amount=0))
        try:
            self.db.commit()
            logger.info(f"Created credit account for user {user_id}")
        except IntegrityError:
            # Created concurrently by another caller
            self.db.rollback()

    def _already_applied(self, operation_key: Optional[str]) -> bool:
        if not operation_key:
            return False
        return self.find_operation(operation_key) is not None

    def _apply(
        self,
        user_id: str,
        delta: int,
        kind: CreditTransactionKind,
        reason: str,
        operation_key: Optional[str] = None,
        related_scan_id: Optional[str] = None,
    ) -> CreditMutation:
        self._ensure_account(user_id)

        if self._already_applied(operation_key):
            logger.info(f"Credit operation {operation_key} already applied for user {user_id}, skipping")
            return CreditMutation(amount=self._current_amount(user_id), delta=0, applied=False)

        stmt = update(CreditBalance).where(CreditBalance.user_id == user_id)
        if delta < 0:
            stmt = stmt.where(CreditBalance.amount >= -delta)
        stmt = stmt.values(amount=CreditBalance.amount + delta).execution_options(synchronize_session=False)

        result = self.db.execute(stmt)
        if result.rowcount == 0:
            self.db.rollback()
            available = self._current_amount(user_id)
            logger.warning(f"Insufficient credits for user {user_id}: required {-delta}, available {available}")
            raise InsufficientCreditsError(
                f"Insufficient credits. Required: {-delta}, Available: {available}",
                required=-delta,
                current=available,
            )

        balance_after = self._current_amount(user_id)
        self.db.add(
            CreditTransaction(
                user_id=user_id,
                kind=kind,
                delta=delta,
                balance_after=balance_after,
                reason=reason[:255],
                operation_key=operation_key,
                related_scan_id=related_scan_id,
            )
        )

        try:
            self.db.commit()
        except IntegrityError:
            # Same operation_key committed concurrently; our update is rolled back with it
            self.db.rollback()
            logger.info(f"Credit operation {operation_key} raced with a replay, keeping the first")
            return CreditMutation(amount=self._current_amount(user_id), delta=0, applied=False)

        logger.info(f"Credit balance for user {user_id} is now {balance_after} ({delta:+d})")
        return CreditMutation(amount=balance_after, delta=delta)
