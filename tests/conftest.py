# tests/conftest.py
import os
import tempfile
from decimal import Decimal

import pytest
from starlette.testclient import TestClient

from billpay import db
from billpay.domain import Account

@pytest.fixture(scope="session")
def tmp_db_path():
    with tempfile.TemporaryDirectory() as d:
        yield os.path.join(d, "test.sqlite3")  # removed automatically

@pytest.fixture(scope="session", autouse=True)
def schema(tmp_db_path):
    os.environ["BILLPAY_DB_PATH"] = tmp_db_path     # <-- TEST-ONLY DB
    os.environ["BILLPAY_DISABLE_SEED"] = "1"
    db.init_db()

@pytest.fixture(scope="session")
def app(schema):
    from billpay.app import create_app
    return create_app()

@pytest.fixture(autouse=True)
def clean_db():
    db.truncate_all()   # isolation between tests
    yield
    db.truncate_all()

@pytest.fixture()
def client(app):
    return TestClient(app)

@pytest.fixture()
def make_account():
    """Insert an account (and optionally its card cross-reference) straight into the stores."""
    def _make(account_id: str, balance, card_number: str | None = "1234567812345678"):
        with db.unit_of_work() as conn:
            db.AccountStore(conn).save(Account(account_id, Decimal(str(balance))))
            if card_number:
                db.CardXrefStore(conn).insert(account_id, card_number)
        return account_id
    return _make
