import logging
from fastapi import APIRouter, Path
from pydantic import BaseModel, ConfigDict, Field, StrictBool

from .domain import ACCOUNT_ID_MAX_LENGTH, as_number
from .payments import get_balance as wf_get_balance
from .payments import process_payment as wf_process_payment

log = logging.getLogger("api")
router = APIRouter()

AccountID = Path(
    ...,
    min_length=1,
    max_length=ACCOUNT_ID_MAX_LENGTH,
    description="Account identifier (1-11 chars)",
)

class PaymentBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(..., alias="accountId", min_length=1, max_length=ACCOUNT_ID_MAX_LENGTH)
    # absent reaches the workflow, which rejects it with the confirm message
    confirm_payment: StrictBool | None = Field(None, alias="confirmPayment")


@router.get("/")
def root():
    return {"status": "ok", "message": "Welcome to the Bill Payment API", "docs": "/docs"}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/api/bill-payment/account/{account_id}/balance")
def get_balance(account_id: str = AccountID):
    bal = wf_get_balance(account_id)
    # NotFound / InvalidRequest are mapped to 404 / 400 by the app's handlers
    return {"accountId": bal.account_id, "currentBalance": as_number(bal.current_balance)}

@router.post("/api/bill-payment/process")
def process_payment(body: PaymentBody):
    result = wf_process_payment(body.account_id, body.confirm_payment)
    log.info("bill payment processed account=%s txn=%s", result.account_id, result.transaction_id)
    return {
        "transactionId": result.transaction_id,
        "message": result.message,
        "accountId": result.account_id,
        "paymentAmount": as_number(result.payment_amount),
        "newBalance": as_number(result.new_balance),
    }
