from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.features.credits.models.credit import CreditTransactionKind


class CreditCheck(BaseModel):
    has_sufficient: bool
    current: int
    required: int
    deficit: int


class CreditBalanceResponse(BaseModel):
    user_id: str
    amount: int


class CreditMutation(BaseModel):
    """Outcome of deduct/refund/add."""
    amount: int
    delta: int
    applied: bool = True


class CreditTransactionOut(BaseModel):
    id: str
    kind: CreditTransactionKind
    delta: int
    balance_after: int
    reason: str
    related_scan_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AddCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str = Field(default="purchase", max_length=255)


class CreditStatistics(BaseModel):
    current_balance: int
    total_added: int
    total_debited: int
    total_refunded: int
    total_scans: int
    scans_by_status: Dict[str, int]
    total_urls_scanned: int
    success_rate: float
