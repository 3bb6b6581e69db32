"""
SQLite persistence for the Rips economy.

Every mutating operation runs inside ``Database.transaction()``, which takes
the database write lock with ``BEGIN IMMEDIATE`` before any read. Concurrent
debits for the same user therefore never both pass the sufficiency check
against a stale balance, even across processes sharing the database file.
"""

import contextlib
import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MINOR_UNITS_PER_RIP = 100
MAX_AMOUNT_MINOR = 2 ** 63 - 1
READ_RETRY_ATTEMPTS = 3
READ_RETRY_BACKOFF_S = 0.05

SCHEMA = """
CREATE TABLE IF NOT EXISTS balances (
    user_id TEXT PRIMARY KEY,
    amount_minor INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    entry_type TEXT NOT NULL CHECK (entry_type IN ('credit', 'debit')),
    amount_minor INTEGER NOT NULL CHECK (amount_minor > 0),
    reason TEXT NOT NULL,
    balance_after_minor INTEGER NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    external_ref TEXT UNIQUE,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries (user_id, seq);

CREATE TABLE IF NOT EXISTS payment_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    external_ref TEXT NOT NULL,
    user_id TEXT,
    status TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    description TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS packs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    game_code TEXT NOT NULL DEFAULT 'mtg',
    cost_minor INTEGER NOT NULL CHECK (cost_minor > 0),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS card_tiers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    min_value_cents INTEGER NOT NULL,
    max_value_cents INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS pack_tiers (
    pack_id TEXT NOT NULL REFERENCES packs (id),
    tier_id TEXT NOT NULL REFERENCES card_tiers (id),
    probability REAL NOT NULL,
    display_order INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (pack_id, tier_id)
);

CREATE TABLE IF NOT EXISTS pack_cards (
    pack_id TEXT NOT NULL REFERENCES packs (id),
    card_uuid TEXT NOT NULL,
    market_value INTEGER NOT NULL,
    tier_id TEXT,
    rarity_class TEXT,
    odds REAL NOT NULL DEFAULT 1,
    is_foil INTEGER NOT NULL DEFAULT 0,
    condition TEXT,
    PRIMARY KEY (pack_id, card_uuid)
);

CREATE TABLE IF NOT EXISTS mtg_cards (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    image_uri TEXT,
    set_name TEXT,
    set_code TEXT,
    rarity TEXT
);

CREATE TABLE IF NOT EXISTS pokemon_cards (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    image_uri TEXT,
    set_name TEXT,
    set_code TEXT,
    rarity TEXT,
    hp INTEGER
);

CREATE TABLE IF NOT EXISTS pack_openings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pack_id TEXT NOT NULL,
    cost_minor INTEGER NOT NULL,
    item_id TEXT NOT NULL,
    market_value INTEGER NOT NULL,
    cards_pulled TEXT NOT NULL,
    ledger_entry_id TEXT,
    idempotency_key TEXT UNIQUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS holdings (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pack_opening_id TEXT NOT NULL REFERENCES pack_openings (id),
    pack_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    game_code TEXT NOT NULL,
    card_name TEXT,
    market_value INTEGER NOT NULL,
    tier_id TEXT,
    rarity_class TEXT,
    is_sold INTEGER NOT NULL DEFAULT 0,
    sold_at TEXT,
    sellback_minor INTEGER,
    is_shipped INTEGER NOT NULL DEFAULT 0,
    shipped_at TEXT,
    shipment_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_holdings_user ON holdings (user_id, created_at);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    # Fixed width so that stored timestamps compare correctly as strings.
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def to_minor(amount: Decimal) -> int:
    """Convert a Rip amount to integer minor units (1 Rip = 100). Raises ValueError if it cannot be stored."""
    amount = Decimal(amount)
    if not amount.is_finite():
        raise ValueError(f"Amount {amount} is not finite")
    try:
        quantized = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Amount {amount} is out of range") from e
    minor = int(quantized * MINOR_UNITS_PER_RIP)
    if abs(minor) > MAX_AMOUNT_MINOR:
        raise ValueError(f"Amount {amount} is out of range")
    return minor


def from_minor(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / MINOR_UNITS_PER_RIP).quantize(Decimal("0.01"))


def dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True, default=str)


def loads(value: Optional[str], default: Any = None) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning("JSON_DECODE_FAILED value_preview=%r", str(value)[:120])
        return default


class Database:
    """Connection factory and transaction boundary for one SQLite file."""

    def __init__(self, db_path: str = "rips_engine.db", timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly below.
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def initialize(self) -> None:
        """Apply the schema. Safe to call repeatedly."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """
        Write transaction helper.

        - no ``conn``: open a connection, BEGIN IMMEDIATE ... COMMIT/ROLLBACK, close
        - ``conn`` given: join the caller's transaction (no nested BEGIN)
        """
        if conn is not None:
            yield conn
            return

        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                try:
                    conn.rollback()
                except sqlite3.Error:
                    logger.critical("ROLLBACK_FAILED db=%s", self.db_path, exc_info=True)
                    raise
                raise
            conn.commit()
        finally:
            conn.close()

    @contextlib.contextmanager
    def reader(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def read_with_retry(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run an idempotent read, retrying transient lock/connection errors."""
        for attempt in range(1, READ_RETRY_ATTEMPTS + 1):
            try:
                with self.reader() as conn:
                    return fn(conn)
            except sqlite3.OperationalError:
                if attempt == READ_RETRY_ATTEMPTS:
                    raise
                logger.warning("READ_RETRY attempt=%s db=%s", attempt, self.db_path, exc_info=True)
                time.sleep(READ_RETRY_BACKOFF_S * attempt)
        raise AssertionError("unreachable")
