import os, sqlite3, logging
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from decimal import Decimal

from .domain import MAX_BALANCE, Account, CardCrossReference, Transaction, next_transaction_id, q2

log = logging.getLogger("db")

COUNTER_NAME = "transactions"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id      TEXT PRIMARY KEY CHECK (length(account_id) BETWEEN 1 AND 11),
        current_balance TEXT NOT NULL,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS card_xref (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id  TEXT NOT NULL UNIQUE REFERENCES accounts(account_id),
        card_number TEXT NOT NULL CHECK (length(card_number) = 16),
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id TEXT PRIMARY KEY,
        type_code      TEXT NOT NULL,
        category_code  INTEGER NOT NULL,
        source         TEXT NOT NULL,
        description    TEXT NOT NULL,
        amount         TEXT NOT NULL,
        card_number    TEXT NOT NULL,
        merchant_id    INTEGER NOT NULL,
        merchant_name  TEXT NOT NULL,
        merchant_city  TEXT NOT NULL,
        merchant_zip   TEXT NOT NULL,
        origin_ts      TEXT NOT NULL,
        process_ts     TEXT NOT NULL,
        account_id     TEXT NOT NULL REFERENCES accounts(account_id),
        created_at     TEXT NOT NULL,
        updated_at     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS id_counters (
        name    TEXT PRIMARY KEY,
        last_id TEXT NOT NULL
    )
    """,
)

_TXN_COLUMNS = (
    "transaction_id, type_code, category_code, source, description, amount, card_number, "
    "merchant_id, merchant_name, merchant_city, merchant_zip, origin_ts, process_ts, "
    "account_id, created_at, updated_at"
)


def _db_path() -> str:
    return os.environ.get("BILLPAY_DB_PATH", os.path.join(os.getcwd(), "data", "billpay.db"))

def _busy_timeout() -> float:
    return float(os.environ.get("BILLPAY_DB_TIMEOUT", "30"))

def _ensure_parent_dir(path: str):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

def _open_conn() -> sqlite3.Connection:
    path = _db_path()
    _ensure_parent_dir(path)
    # autocommit; unit_of_work() controls BEGIN/COMMIT
    conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None, timeout=_busy_timeout())
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def connect():
    """Plain autocommit connection for read-only lookups."""
    with closing(_open_conn()) as conn:
        yield conn

@contextmanager
def unit_of_work():
    """
    One atomic unit against the stores.

    BEGIN IMMEDIATE takes the database write lock up front, so every read made
    inside the block sees rows no other writer can change until we finish.
    Leaving the block normally commits; any exception rolls back and propagates.
    """
    with closing(_open_conn()) as conn:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
                log.info("unit of work rolled back")
            raise


def init_db():
    with closing(_open_conn()) as conn:
        for ddl in _SCHEMA:
            conn.execute(ddl)
    log.info("DB schema ready at %s", _db_path())

def truncate_all():
    with closing(_open_conn()) as conn:
        for table in ("transactions", "card_xref", "accounts", "id_counters"):
            conn.execute(f"DELETE FROM {table}")


# ---- stores ----
class AccountStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get(self, account_id: str) -> Account | None:
        row = self.conn.execute(
            "SELECT account_id, current_balance, created_at, updated_at FROM accounts WHERE account_id=?",
            (account_id,),
        ).fetchone()
        if not row:
            return None
        return Account(row[0], Decimal(row[1]), _ts(row[2]), _ts(row[3]))

    def save(self, account: Account) -> None:
        balance = q2(account.current_balance)
        if abs(balance) > MAX_BALANCE:
            raise ValueError(f"balance {balance} exceeds DECIMAL(15,2)")
        now = _now()
        self.conn.execute(
            """
            INSERT INTO accounts (account_id, current_balance, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(account_id) DO UPDATE SET
                current_balance=excluded.current_balance,
                updated_at=excluded.updated_at
            """,
            (account.account_id, str(balance), now, now),
        )


class CardXrefStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def get_by_account_id(self, account_id: str) -> CardCrossReference | None:
        row = self.conn.execute(
            "SELECT id, account_id, card_number, created_at, updated_at FROM card_xref WHERE account_id=?",
            (account_id,),
        ).fetchone()
        if not row:
            return None
        return CardCrossReference(row[0], row[1], row[2], _ts(row[3]), _ts(row[4]))

    def insert(self, account_id: str, card_number: str) -> None:
        now = _now()
        self.conn.execute(
            "INSERT INTO card_xref (account_id, card_number, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (account_id, card_number, now, now),
        )


class TransactionStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert(self, txn: Transaction) -> None:
        """Raises sqlite3.IntegrityError when the id is already taken."""
        now = _now()
        self.conn.execute(
            f"INSERT INTO transactions ({_TXN_COLUMNS}) VALUES ({', '.join('?' * 16)})",
            (
                txn.transaction_id, txn.type_code, txn.category_code, txn.source,
                txn.description, str(q2(txn.amount)), txn.card_number, txn.merchant_id,
                txn.merchant_name, txn.merchant_city, txn.merchant_zip,
                txn.origin_ts.isoformat(), txn.process_ts.isoformat(), txn.account_id,
                now, now,
            ),
        )

    def get(self, transaction_id: str) -> Transaction | None:
        """Lookup by primary key; transactions are read back, never updated."""
        row = self.conn.execute(
            f"SELECT {_TXN_COLUMNS} FROM transactions WHERE transaction_id=?", (transaction_id,)
        ).fetchone()
        return self._row(row) if row else None

    def get_most_recent_by_id(self) -> Transaction | None:
        # longer digit strings are larger numbers; equal lengths compare as text
        row = self.conn.execute(
            f"SELECT {_TXN_COLUMNS} FROM transactions "
            "ORDER BY length(transaction_id) DESC, transaction_id DESC LIMIT 1"
        ).fetchone()
        return self._row(row) if row else None

    @staticmethod
    def _row(row) -> Transaction:
        return Transaction(
            transaction_id=row[0], type_code=row[1], category_code=row[2], source=row[3],
            description=row[4], amount=Decimal(row[5]), card_number=row[6],
            merchant_id=row[7], merchant_name=row[8], merchant_city=row[9],
            merchant_zip=row[10], origin_ts=_ts(row[11]), process_ts=_ts(row[12]),
            account_id=row[13], created_at=_ts(row[14]), updated_at=_ts(row[15]),
        )


class TransactionIdAllocator:
    """
    Hands out transaction ids from a counter row.

    The counter is seeded from the highest stored transaction id the first time
    it is needed (or when resync is asked for after a duplicate-key failure).
    Must be used inside unit_of_work() so allocation commits with the insert.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def allocate(self, resync: bool = False) -> str:
        row = None
        if not resync:
            row = self.conn.execute(
                "SELECT last_id FROM id_counters WHERE name=?", (COUNTER_NAME,)
            ).fetchone()
        if row:
            last_id = row[0]
        else:
            latest = TransactionStore(self.conn).get_most_recent_by_id()
            last_id = latest.transaction_id if latest else None
            log.info("id counter seeded from transactions table last_id=%s", last_id)
        new_id = next_transaction_id(last_id)
        self.conn.execute(
            """
            INSERT INTO id_counters (name, last_id) VALUES (?, ?)
            ON CONFLICT(name) DO UPDATE SET last_id=excluded.last_id
            """,
            (COUNTER_NAME, new_id),
        )
        return new_id


# ---- demo data ----
def seed_if_empty() -> None:
    """Insert demo accounts and card cross-references if there are no accounts (local dev/demo)."""
    with unit_of_work() as conn:
        (n,) = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()
        if n:
            return
        accounts = AccountStore(conn)
        xrefs = CardXrefStore(conn)
        rows = [
            ("00000000001", Decimal("100.00"), "1234567812345678"),
            ("00000000002", Decimal("2500.75"), "4000123412341234"),
            ("00000000003", Decimal("0.00"), "4000999988887777"),
            ("00000000004", Decimal("42.00"), None),  # no card on file
        ]
        for account_id, balance, card_number in rows:
            accounts.save(Account(account_id, balance))
            if card_number:
                xrefs.insert(account_id, card_number)
    log.info("DB seed inserted %d demo accounts", len(rows))
