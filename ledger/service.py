import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from .models import (
    BalanceAudit,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerReason,
    LedgerResponse,
    UserBalance,
)
from .storage import Database, dumps, from_minor, loads, to_iso, to_minor, utc_now

logger = logging.getLogger(__name__)


class LedgerServiceError(Exception):
    code = "ledger_error"


class InsufficientFundsError(LedgerServiceError):
    code = "insufficient_funds"

    def __init__(self, user_id: str, balance: Decimal, required: Decimal):
        super().__init__(f"Insufficient Rips for user {user_id}: balance {balance}, required {required}")
        self.user_id = user_id
        self.balance = balance
        self.required = required


class InvalidAmountError(LedgerServiceError):
    code = "invalid_amount"


class LedgerService:
    def __init__(self, db: Database):
        self.db = db

    def credit(
        self,
        user_id: str,
        amount: Decimal,
        reason: LedgerReason,
        metadata: Optional[dict] = None,
        external_ref: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> LedgerResponse:
        amount_minor = self._validate_amount(amount)
        with self.db.transaction(conn) as tx:
            current = self._balance_minor(tx, user_id)
            return self._append(tx, user_id, EntryType.CREDIT, amount_minor, current + amount_minor,
                                reason, metadata, external_ref)

    def debit(
        self,
        user_id: str,
        amount: Decimal,
        reason: LedgerReason,
        metadata: Optional[dict] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> LedgerResponse:
        amount_minor = self._validate_amount(amount)
        with self.db.transaction(conn) as tx:
            current = self._balance_minor(tx, user_id)
            if amount_minor > current:
                raise InsufficientFundsError(user_id, from_minor(current), from_minor(amount_minor))
            return self._append(tx, user_id, EntryType.DEBIT, amount_minor, current - amount_minor,
                                reason, metadata, None)

    def get_balance(self, user_id: str, conn: Optional[sqlite3.Connection] = None) -> UserBalance:
        def _read(c: sqlite3.Connection) -> UserBalance:
            row = c.execute(
                "SELECT amount_minor, updated_at FROM balances WHERE user_id = ?", (user_id,)
            ).fetchone()
            if not row:
                return UserBalance(user_id=user_id, amount=Decimal("0.00"))
            return UserBalance(
                user_id=user_id,
                amount=from_minor(row["amount_minor"]),
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )

        if conn is not None:
            return _read(conn)
        return self.db.read_with_retry(_read)

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        def _read(c: sqlite3.Connection) -> LedgerHistoryResponse:
            rows = c.execute(
                "SELECT * FROM ledger_entries WHERE user_id = ? ORDER BY seq DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            ).fetchall()
            total = c.execute(
                "SELECT COUNT(*) AS n FROM ledger_entries WHERE user_id = ?", (user_id,)
            ).fetchone()["n"]
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[entry_from_row(r) for r in rows],
                total_count=total,
                current_balance=self.get_balance(user_id, conn=c).amount,
            )

        return self.db.read_with_retry(_read)

    def find_by_external_ref(self, external_ref: str, conn: Optional[sqlite3.Connection] = None) -> Optional[LedgerEntry]:
        with self.db.reader(conn) as c:
            row = c.execute("SELECT * FROM ledger_entries WHERE external_ref = ?", (external_ref,)).fetchone()
        return entry_from_row(row) if row else None

    def audit_balance(self, user_id: str) -> BalanceAudit:
        """Replay the full ledger for a user and compare against the stored balance."""
        def _read(c: sqlite3.Connection) -> BalanceAudit:
            rows = c.execute(
                "SELECT entry_type, amount_minor, balance_after_minor FROM ledger_entries "
                "WHERE user_id = ? ORDER BY seq ASC",
                (user_id,),
            ).fetchall()
            credits = debits = running = 0
            chain_ok = True
            for r in rows:
                if r["entry_type"] == EntryType.CREDIT.value:
                    credits += r["amount_minor"]
                    running += r["amount_minor"]
                else:
                    debits += r["amount_minor"]
                    running -= r["amount_minor"]
                if running != r["balance_after_minor"]:
                    chain_ok = False
            stored = self.get_balance(user_id, conn=c).amount
            return BalanceAudit(
                user_id=user_id,
                stored_balance=stored,
                total_credits=from_minor(credits),
                total_debits=from_minor(debits),
                entry_count=len(rows),
                chain_consistent=chain_ok,
            )

        audit = self.db.read_with_retry(_read)
        if not audit.is_consistent:
            logger.critical("LEDGER_CONSERVATION_VIOLATION user=%s audit=%s", user_id, audit.model_dump())
        return audit

    def _validate_amount(self, amount: Decimal) -> int:
        try:
            amount_minor = to_minor(amount)
        except ValueError as e:
            raise InvalidAmountError(str(e)) from e
        if amount_minor <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")
        return amount_minor

    def _balance_minor(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute("SELECT amount_minor FROM balances WHERE user_id = ?", (user_id,)).fetchone()
        return row["amount_minor"] if row else 0

    def _append(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        entry_type: EntryType,
        amount_minor: int,
        balance_after_minor: int,
        reason: LedgerReason,
        metadata: Optional[dict],
        external_ref: Optional[str],
    ) -> LedgerResponse:
        now = to_iso(utc_now())
        entry_id = str(uuid4())
        metadata = dict(metadata or {})

        conn.execute(
            """
            INSERT INTO ledger_entries
            (id, user_id, entry_type, amount_minor, reason, balance_after_minor, metadata, external_ref, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (entry_id, user_id, entry_type.value, amount_minor, LedgerReason(reason).value,
             balance_after_minor, dumps(metadata), external_ref, now),
        )
        conn.execute(
            """
            INSERT INTO balances (user_id, amount_minor, updated_at) VALUES (?, ?, ?)
            ON CONFLICT (user_id) DO UPDATE SET amount_minor = excluded.amount_minor, updated_at = excluded.updated_at
            """,
            (user_id, balance_after_minor, now),
        )

        entry = LedgerEntry(
            id=entry_id,
            user_id=user_id,
            entry_type=entry_type,
            amount=from_minor(amount_minor),
            reason=LedgerReason(reason),
            balance_after=from_minor(balance_after_minor),
            metadata=metadata,
            external_ref=external_ref,
            created_at=datetime.fromisoformat(now),
        )
        logger.debug("ledger_append user=%s type=%s amount=%s balance_after=%s",
                     user_id, entry_type.value, entry.amount, entry.balance_after)
        return LedgerResponse(entry=entry, balance=entry.balance_after)


def entry_from_row(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        user_id=row["user_id"],
        entry_type=EntryType(row["entry_type"]),
        amount=from_minor(row["amount_minor"]),
        reason=LedgerReason(row["reason"]),
        balance_after=from_minor(row["balance_after_minor"]),
        metadata=loads(row["metadata"], default={}),
        external_ref=row["external_ref"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )
