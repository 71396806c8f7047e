from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.features.auth.dependencies.current_user import get_current_user_id
from app.features.credits.schemas.credit import (
    AddCreditsRequest,
    CreditBalanceResponse,
    CreditTransactionOut,
)
from app.features.credits.services.ledger import CreditLedger
from app.platform.db.session import get_db
from app.platform.logger import get_logger
from app.platform.response import api_response, paginate

logger = get_logger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("")
def get_balance(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    amount = CreditLedger(db).get_balance(user_id)
    return api_response(
        data=CreditBalanceResponse(user_id=user_id, amount=amount).model_dump(),
        message="Credit balance retrieved successfully",
    )


@router.get("/history")
def get_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    items, total = CreditLedger(db).get_history(user_id, page=page, limit=limit)
    return api_response(
        data=[CreditTransactionOut.model_validate(item).model_dump(mode="json") for item in items],
        message="Credit history retrieved successfully",
        pagination=paginate(page, limit, total),
    )


@router.get("/statistics")
def get_statistics(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return api_response(
        data=CreditLedger(db).get_statistics(user_id).model_dump(),
        message="Credit statistics retrieved successfully",
    )


@router.post("/add", status_code=status.HTTP_201_CREATED)
def add_credits(
    payload: AddCreditsRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    # Purchasing happens upstream; this records the granted amount
    mutation = CreditLedger(db).add(user_id, payload.amount, payload.reason)
    logger.info(f"Added {payload.amount} credits for user {user_id}")
    return api_response(
        data=mutation.model_dump(),
        message=f"Added {payload.amount} credits",
        status_code=status.HTTP_201_CREATED,
    )
