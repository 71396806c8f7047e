import enum

from sqlalchemy import CheckConstraint, Column, Enum, Integer, String

from app.platform.db.base import BaseModel


class CreditBalance(BaseModel):
    """One integer credit counter per user. Never negative."""
    __tablename__ = "credit_balances"

    user_id = Column(String(36), unique=True, nullable=False, index=True)
    amount = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="check_credit_balance_non_negative"),
    )

    def __repr__(self):
        return f"<CreditBalance(user_id={self.user_id}, amount={self.amount})>"


class CreditTransactionKind(enum.Enum):
    debit = "debit"
    credit = "credit"
    refund = "refund"


class CreditTransaction(BaseModel):
    """
    Audit row written with every balance mutation.

    operation_key is unique: replaying a keyed operation is detected here.
    """
    __tablename__ = "credit_transactions"

    user_id = Column(String(36), nullable=False, index=True)
    kind = Column(Enum(CreditTransactionKind), nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    operation_key = Column(String(128), unique=True, nullable=True)
    related_scan_id = Column(String(36), nullable=True, index=True)
