import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal

import pytest
import httpx
from fastapi.testclient import TestClient

from billpay import db
from billpay.domain import InternalError, TransactionIdConflict
from billpay.logger_config import RequestIDFilter, request_id_var


# ---------- helpers ----------

def balance_url(account_id: str) -> str:
    return f"/api/bill-payment/account/{account_id}/balance"

def get_balance(client: TestClient, account_id: str):
    return client.get(balance_url(account_id))

def pay(client: TestClient, account_id, confirm=True):
    # ALWAYS send a JSON body so Content-Type: application/json is set.
    payload = {"accountId": account_id}
    if confirm is not None:
        payload["confirmPayment"] = confirm
    return client.post("/api/bill-payment/process", json=payload)

def error_of(r):
    return r.json()["error"]


# ---------- basic availability ----------

def test_health_ok(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}

def test_root_points_at_docs(client: TestClient):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["docs"] == "/docs"


# ---------- balance ----------

def test_balance_of_existing_account(client: TestClient, make_account):
    make_account("00000000001", "100.00")
    r = get_balance(client, "00000000001")
    assert r.status_code == 200
    assert r.json() == {"accountId": "00000000001", "currentBalance": 100.00}

def test_balance_is_number_two_decimals(client: TestClient, make_account):
    make_account("acct1", "2500.75")
    bal = get_balance(client, "acct1").json()["currentBalance"]
    assert isinstance(bal, float)
    assert Decimal(str(bal)).quantize(Decimal("0.01")) == Decimal("2500.75")

def test_largest_balance_survives_json_rendering(client: TestClient, make_account):
    make_account("acct1", "9999999999999.99")
    assert get_balance(client, "acct1").json()["currentBalance"] == 9999999999999.99
    r = pay(client, "acct1")
    assert r.status_code == 200
    assert r.json()["paymentAmount"] == 9999999999999.99
    assert r.json()["newBalance"] == 0.00

def test_balance_of_missing_account_is_404(client: TestClient):
    r = get_balance(client, "99999999999")
    assert r.status_code == 404
    assert error_of(r) == {"code": "NOT_FOUND", "message": "Account ID NOT found..."}

def test_balance_rejects_overlong_account_id(client: TestClient):
    r = get_balance(client, "123456789012")
    assert r.status_code == 422
    assert error_of(r)["code"] == "UNPROCESSABLE_ENTITY"

def test_balance_of_blank_account_id_is_400(client: TestClient):
    r = get_balance(client, "%20%20")
    assert r.status_code == 400
    assert error_of(r)["message"] == "Account ID cannot be empty"


# ---------- payment happy path ----------

def test_payment_scenario(client: TestClient, make_account):
    make_account("00000000001", "100.00", "1234567812345678")
    r = pay(client, "00000000001")
    assert r.status_code == 200
    assert r.json() == {
        "transactionId": "0000000000000001",
        "message": "Payment successful. Your Transaction ID is 0000000000000001.",
        "accountId": "00000000001",
        "paymentAmount": 100.00,
        "newBalance": 0.00,
    }
    assert get_balance(client, "00000000001").json()["currentBalance"] == 0.00

def test_second_payment_is_rejected(client: TestClient, make_account):
    make_account("acct1", "12.34")
    assert pay(client, "acct1").status_code == 200
    r = pay(client, "acct1")
    assert r.status_code == 400
    assert error_of(r) == {"code": "BAD_REQUEST", "message": "You have nothing to pay..."}

def test_payments_get_increasing_ids(client: TestClient, make_account):
    make_account("acct1", "1.00")
    make_account("acct2", "2.00", "4000123412341234")
    assert pay(client, "acct1").json()["transactionId"] == "0000000000000001"
    assert pay(client, "acct2").json()["transactionId"] == "0000000000000002"


# ---------- payment errors ----------

@pytest.mark.parametrize("confirm", [False, None])
def test_unconfirmed_payment_is_400(client: TestClient, make_account, confirm):
    make_account("acct1", "50.00")
    r = pay(client, "acct1", confirm)
    assert r.status_code == 400
    assert error_of(r)["message"] == "Confirm to make a bill payment..."
    assert get_balance(client, "acct1").json()["currentBalance"] == 50.00

@pytest.mark.parametrize("confirm", ["true", 1, "Y"])
def test_confirm_must_be_a_real_boolean(client: TestClient, make_account, confirm):
    make_account("acct1", "50.00")
    r = pay(client, "acct1", confirm)
    assert r.status_code == 422
    assert get_balance(client, "acct1").json()["currentBalance"] == 50.00

def test_blank_account_id_in_body_is_400(client: TestClient):
    r = pay(client, "   ")
    assert r.status_code == 400
    assert error_of(r)["message"] == "Account ID cannot be empty"

@pytest.mark.parametrize(
    "payload",
    [
        {},                                                   # missing field
        {"confirmPayment": True},                             # no account id
        {"accountId": "", "confirmPayment": True},            # empty
        {"accountId": "123456789012", "confirmPayment": True},  # 12 chars
        {"accountId": 12345, "confirmPayment": True},         # not a string
    ],
)
def test_invalid_payloads_return_422(client: TestClient, payload):
    r = client.post("/api/bill-payment/process", json=payload)
    assert r.status_code == 422
    assert error_of(r)["code"] == "UNPROCESSABLE_ENTITY"

def test_non_json_body_is_415(client: TestClient):
    r = client.post(
        "/api/bill-payment/process",
        content="accountId=acct1&confirmPayment=true",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert r.status_code == 415
    assert error_of(r)["code"] == "UNSUPPORTED_MEDIA_TYPE"

def test_unknown_account_payment_is_404(client: TestClient):
    r = pay(client, "nosuchacct")
    assert r.status_code == 404
    assert error_of(r)["message"] == "Account ID NOT found..."

def test_zero_balance_payment_is_400(client: TestClient, make_account):
    make_account("acct1", "0.00")
    r = pay(client, "acct1")
    assert r.status_code == 400
    assert error_of(r)["message"] == "You have nothing to pay..."

def test_missing_card_xref_is_404(client: TestClient, make_account):
    make_account("acct1", "42.00", card_number=None)
    r = pay(client, "acct1")
    assert r.status_code == 404
    assert error_of(r)["message"] == "Unable to lookup XREF AIX file..."
    assert get_balance(client, "acct1").json()["currentBalance"] == 42.00

def test_corrupt_transaction_table_is_500(client: TestClient, make_account, monkeypatch):
    make_account("acct1", "10.00")
    def corrupt(self, resync=False):
        raise InternalError("Unable to generate new transaction ID")
    monkeypatch.setattr(db.TransactionIdAllocator, "allocate", corrupt)
    r = pay(client, "acct1")
    assert r.status_code == 500
    assert error_of(r) == {"code": "INTERNAL_SERVER_ERROR", "message": "Unable to generate new transaction ID"}
    assert get_balance(client, "acct1").json()["currentBalance"] == 10.00

def test_id_conflict_is_503_with_retry_after(client: TestClient, make_account, monkeypatch):
    make_account("acct1", "10.00")
    def conflict(account_id, confirm):
        raise TransactionIdConflict("Unable to Add Bill pay Transaction...")
    monkeypatch.setattr("billpay.api.wf_process_payment", conflict)
    r = pay(client, "acct1")
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "1"
    assert error_of(r)["code"] == "SERVICE_UNAVAILABLE"


# ---------- transport details ----------

def test_request_id_is_echoed(client: TestClient):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"
    assert client.get("/health").headers["X-Request-ID"]

def test_concurrent_requests_leave_logging_untouched(app):
    factory_before = logging.getLogRecordFactory()

    async def burst():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            return await asyncio.gather(
                *(c.get("/health", headers={"X-Request-ID": f"req-{i}"}) for i in range(50))
            )

    responses = asyncio.run(burst())

    assert [r.headers["X-Request-ID"] for r in responses] == [f"req-{i}" for i in range(50)]
    assert logging.getLogRecordFactory() is factory_before
    assert request_id_var.get() == "-"

def test_log_records_carry_request_id(client: TestClient, make_account, caplog):
    make_account("acct1", "5.00")
    caplog.set_level(logging.INFO, logger="api")
    caplog.handler.addFilter(RequestIDFilter())

    r = client.post("/api/bill-payment/process", json={"accountId": "acct1", "confirmPayment": True},
                    headers={"X-Request-ID": "pay-42"})

    assert r.status_code == 200
    stamped = [rec.request_id for rec in caplog.records if rec.name == "api"]
    assert stamped == ["pay-42"]

def test_method_not_allowed_and_unknown_paths(client: TestClient):
    r = client.get("/api/bill-payment/process")   # wrong method
    assert r.status_code == 405
    assert error_of(r)["code"] == "METHOD_NOT_ALLOWED"
    assert client.get("/no/such/path").status_code == 404


# ---------- concurrency (stress) ----------

def test_concurrent_payment_requests_pay_once(client: TestClient, make_account):
    make_account("acct1", "99.99")

    with ThreadPoolExecutor(max_workers=8) as ex:
        futures = [ex.submit(pay, client, "acct1") for _ in range(20)]
        codes = [f.result().status_code for f in as_completed(futures)]

    assert codes.count(200) == 1
    assert codes.count(400) == 19
    assert get_balance(client, "acct1").json()["currentBalance"] == 0.00
