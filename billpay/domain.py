import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

logger = logging.getLogger(__name__)

ACCOUNT_ID_MAX_LENGTH = 11
TRANSACTION_ID_LENGTH = 16
FIRST_TRANSACTION_ID = "0000000000000001"
# DECIMAL(15,2): every such amount survives the float rendering in as_number() to the cent
MAX_BALANCE = Decimal("9999999999999.99")

# fixed fields of every online bill payment
BILL_PAY_TYPE_CODE = "02"
BILL_PAY_CATEGORY_CODE = 2
BILL_PAY_SOURCE = "POS TERM"
BILL_PAY_DESCRIPTION = "BILL PAYMENT - ONLINE"
BILL_PAY_MERCHANT_ID = 999999999
BILL_PAY_MERCHANT_NAME = "BILL PAYMENT"
BILL_PAY_MERCHANT_CITY = "N/A"
BILL_PAY_MERCHANT_ZIP = "N/A"

MSG_EMPTY_ACCOUNT_ID = "Account ID cannot be empty"
MSG_CONFIRM_REQUIRED = "Confirm to make a bill payment..."
MSG_ACCOUNT_NOT_FOUND = "Account ID NOT found..."
MSG_NOTHING_TO_PAY = "You have nothing to pay..."
MSG_XREF_NOT_FOUND = "Unable to lookup XREF AIX file..."
MSG_BAD_TRANSACTION_ID = "Unable to generate new transaction ID"
MSG_ADD_TRANSACTION_FAILED = "Unable to Add Bill pay Transaction..."


# ---- errors ----
class BillPaymentError(Exception):
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(BillPaymentError):
    """Caller-correctable input problem."""


class NotFound(BillPaymentError):
    """Referenced account or cross-reference does not exist."""


class InternalError(BillPaymentError):
    """Data corruption or storage failure; the unit of work was rolled back."""


class TransactionIdConflict(InternalError):
    retryable = True


# ---- records ----
@dataclass(frozen=True)
class Account:
    account_id: str
    current_balance: Decimal
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class CardCrossReference:
    id: int | None
    account_id: str
    card_number: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Transaction:
    transaction_id: str
    type_code: str
    category_code: int
    source: str
    description: str
    amount: Decimal
    card_number: str
    merchant_id: int
    merchant_name: str
    merchant_city: str
    merchant_zip: str
    origin_ts: datetime
    process_ts: datetime
    account_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AccountBalance:
    account_id: str
    current_balance: Decimal


@dataclass(frozen=True)
class PaymentResult:
    transaction_id: str
    message: str
    account_id: str
    payment_amount: Decimal
    new_balance: Decimal


# ---- helpers ----
def q2(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

def as_number(x: Decimal) -> float:
    return float(q2(x))

def apply_payment(balance: Decimal, amount: Decimal) -> Decimal:
    return q2(balance - amount)

def next_transaction_id(last_id: str | None) -> str:
    """
    Id that follows `last_id` in the 16-digit zero-padded sequence.
    A stored id that is not a plain decimal number means the table is corrupt.
    """
    if last_id is None:
        return FIRST_TRANSACTION_ID
    text = last_id.strip()
    if not (text.isascii() and text.isdigit()):
        logger.error("unparseable transaction id %r", last_id)
        raise InternalError(MSG_BAD_TRANSACTION_ID)
    new_id = f"{int(text) + 1:0{TRANSACTION_ID_LENGTH}d}"
    if len(new_id) > TRANSACTION_ID_LENGTH:
        logger.error("transaction id space exhausted after %s", last_id)
        raise InternalError(MSG_BAD_TRANSACTION_ID)
    return new_id

def bill_payment(transaction_id: str, account: Account, xref: CardCrossReference,
                 amount: Decimal, now: datetime) -> Transaction:
    return Transaction(
        transaction_id=transaction_id,
        type_code=BILL_PAY_TYPE_CODE,
        category_code=BILL_PAY_CATEGORY_CODE,
        source=BILL_PAY_SOURCE,
        description=BILL_PAY_DESCRIPTION,
        amount=amount,
        card_number=xref.card_number,
        merchant_id=BILL_PAY_MERCHANT_ID,
        merchant_name=BILL_PAY_MERCHANT_NAME,
        merchant_city=BILL_PAY_MERCHANT_CITY,
        merchant_zip=BILL_PAY_MERCHANT_ZIP,
        origin_ts=now,
        process_ts=now,
        account_id=account.account_id,
    )

def success_message(transaction_id: str) -> str:
    return f"Payment successful. Your Transaction ID is {transaction_id}."
