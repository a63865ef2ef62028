"""
Bill payment workflow: balance lookup and the one-shot "pay full balance" payment.

Raises the errors from billpay.domain; mapping them to responses is the
transport's job.
"""
import logging
import os
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone

from . import db
from .domain import (
    AccountBalance,
    InternalError,
    InvalidRequest,
    NotFound,
    PaymentResult,
    TransactionIdConflict,
    MSG_ACCOUNT_NOT_FOUND,
    MSG_ADD_TRANSACTION_FAILED,
    MSG_CONFIRM_REQUIRED,
    MSG_EMPTY_ACCOUNT_ID,
    MSG_NOTHING_TO_PAY,
    MSG_XREF_NOT_FOUND,
    apply_payment,
    bill_payment,
    success_message,
)

log = logging.getLogger("payments")

def _id_retries() -> int:
    return max(1, int(os.environ.get("BILLPAY_ID_RETRIES", "3")))

def _require_account_id(account_id: str | None) -> str:
    if account_id is None or not account_id.strip():
        log.info("rejected request with empty account id")
        raise InvalidRequest(MSG_EMPTY_ACCOUNT_ID)
    return account_id.strip()


def get_balance(account_id: str | None) -> AccountBalance:
    account_id = _require_account_id(account_id)
    with db.connect() as conn:
        account = db.AccountStore(conn).get(account_id)
    if account is None:
        log.info("get_balance: account %s not found", account_id)
        raise NotFound(MSG_ACCOUNT_NOT_FOUND)
    return AccountBalance(account.account_id, account.current_balance)


def process_payment(account_id: str | None, confirm: bool | None) -> PaymentResult:
    """
    Pay off the whole current balance of `account_id`.

    Checks run in a fixed order and the first failure wins: empty id, missing
    confirmation, unknown account, nothing to pay, no card cross-reference.
    The id allocation, transaction insert and balance update commit together.
    A duplicate transaction id rolls everything back and the unit is retried
    with a resynced id counter, up to BILLPAY_ID_RETRIES attempts.
    """
    account_id = _require_account_id(account_id)
    if confirm is not True:
        log.info("payment for %s not confirmed (confirm=%r)", account_id, confirm)
        raise InvalidRequest(MSG_CONFIRM_REQUIRED)

    attempts = _id_retries()
    attempt = 1
    while True:
        try:
            result = _pay_in_full(account_id, resync=attempt > 1)
        except TransactionIdConflict:
            log.warning("transaction id conflict for %s (attempt %d/%d)", account_id, attempt, attempts)
            if attempt >= attempts:
                raise
            attempt += 1
            continue
        except sqlite3.Error as e:
            log.exception("payment for %s failed in storage", account_id)
            raise InternalError(MSG_ADD_TRANSACTION_FAILED) from e
        log.info("payment id=%s account=%s amount=%s new_balance=%s",
                 result.transaction_id, account_id, result.payment_amount, result.new_balance)
        return result


def _pay_in_full(account_id: str, resync: bool) -> PaymentResult:
    with db.unit_of_work() as conn:
        accounts = db.AccountStore(conn)
        account = accounts.get(account_id)
        if account is None:
            log.info("payment: account %s not found", account_id)
            raise NotFound(MSG_ACCOUNT_NOT_FOUND)
        if account.current_balance <= 0:
            log.info("payment: account %s has nothing to pay (balance=%s)", account_id, account.current_balance)
            raise InvalidRequest(MSG_NOTHING_TO_PAY)
        xref = db.CardXrefStore(conn).get_by_account_id(account_id)
        if xref is None:
            log.warning("payment: no card cross-reference for account %s", account_id)
            raise NotFound(MSG_XREF_NOT_FOUND)

        amount = account.current_balance
        txn_id = db.TransactionIdAllocator(conn).allocate(resync=resync)
        now = datetime.now(timezone.utc)
        try:
            db.TransactionStore(conn).insert(bill_payment(txn_id, account, xref, amount, now))
        except sqlite3.IntegrityError as e:
            raise TransactionIdConflict(MSG_ADD_TRANSACTION_FAILED) from e

        new_balance = apply_payment(account.current_balance, amount)
        accounts.save(replace(account, current_balance=new_balance))

    return PaymentResult(
        transaction_id=txn_id,
        message=success_message(txn_id),
        account_id=account.account_id,
        payment_amount=amount,
        new_balance=new_balance,
    )
