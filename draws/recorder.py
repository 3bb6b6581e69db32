import logging
import sqlite3
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Optional
from uuid import uuid4

from ledger.models import LedgerReason
from ledger.service import LedgerService
from ledger.storage import Database, dumps, from_minor, to_iso, to_minor, utc_now

from .config import SystemConfig
from .models import DrawOutcome, Holding, Pack, SellbackResponse
from .selector import DrawError

logger = logging.getLogger(__name__)


class HoldingNotFoundError(DrawError):
    code = "holding_not_found"


class AlreadySoldError(DrawError):
    code = "already_sold"


class AlreadyShippedError(DrawError):
    code = "already_shipped"


def sellback_cents(market_value: int, rate_percent: float) -> int:
    """floor(market_value * rate / 100), computed without float rounding."""
    exact = Decimal(market_value) * Decimal(str(rate_percent)) / Decimal(100)
    return int(exact.to_integral_value(rounding=ROUND_FLOOR))


class SettlementRecorder:
    def __init__(self, db: Database, ledger: LedgerService, config: SystemConfig):
        self.db = db
        self.ledger = ledger
        self.config = config

    def record_draw(
        self,
        user_id: str,
        pack: Pack,
        outcome: DrawOutcome,
        cost_paid: Decimal,
        conn: Optional[sqlite3.Connection] = None,
        ledger_entry_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Persist the opening audit record and the resulting holding. Returns the holding id."""
        now = to_iso(outcome.drawn_at)
        opening_id = str(uuid4())
        holding_id = str(uuid4())
        with self.db.transaction(conn) as tx:
            tx.execute(
                """
                INSERT INTO pack_openings
                (id, user_id, pack_id, cost_minor, item_id, market_value, cards_pulled,
                 ledger_entry_id, idempotency_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (opening_id, user_id, pack.id, to_minor(cost_paid), outcome.item_id, outcome.market_value,
                 dumps([outcome.to_record()]), ledger_entry_id, idempotency_key, now),
            )
            tx.execute(
                """
                INSERT INTO holdings
                (id, user_id, pack_opening_id, pack_id, item_id, game_code, card_name,
                 market_value, tier_id, rarity_class, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (holding_id, user_id, opening_id, pack.id, outcome.item_id, pack.game_code.value,
                 outcome.card_name or f"{outcome.tier_name or 'Mystery'} Card", outcome.market_value,
                 outcome.tier_id, outcome.rarity, now),
            )
        return holding_id

    def find_opening(self, idempotency_key: str, conn: Optional[sqlite3.Connection] = None) -> Optional[dict]:
        with self.db.reader(conn) as c:
            row = c.execute(
                """
                SELECT o.*, h.id AS holding_id FROM pack_openings o
                JOIN holdings h ON h.pack_opening_id = o.id
                WHERE o.idempotency_key = ?
                """,
                (idempotency_key,),
            ).fetchone()
        return dict(row) if row else None

    def record_sellback(self, user_id: str, holding_id: str) -> SellbackResponse:
        """Credit the sellback value and flag the holding sold, in one transaction."""
        rate = self.config.sellback_rate
        with self.db.transaction() as tx:
            holding = self._load_for_update(tx, user_id, holding_id)
            cents = sellback_cents(holding.market_value, rate)
            rips = from_minor(cents)

            if cents > 0:
                response = self.ledger.credit(
                    user_id, rips, LedgerReason.CARD_SELLBACK,
                    {"holding_id": holding_id, "card_value_cents": holding.market_value,
                     "sellback_rate": rate, "tier_id": holding.tier_id},
                    conn=tx,
                )
                new_balance = response.balance
            else:
                logger.info("sellback_zero_value holding=%s value=%s rate=%s", holding_id, holding.market_value, rate)
                new_balance = self.ledger.get_balance(user_id, conn=tx).amount

            updated = tx.execute(
                "UPDATE holdings SET is_sold = 1, sold_at = ?, sellback_minor = ? "
                "WHERE id = ? AND is_sold = 0 AND is_shipped = 0",
                (to_iso(utc_now()), to_minor(rips), holding_id),
            ).rowcount
            if updated != 1:
                raise AlreadySoldError(f"Holding {holding_id} changed state during sellback")

        logger.info("sellback_recorded user=%s holding=%s credited=%s", user_id, holding_id, rips)
        return SellbackResponse(
            holding_id=holding_id,
            market_value_cents=holding.market_value,
            credited_amount=rips,
            new_balance=new_balance,
        )

    def mark_shipped(self, user_id: str, holding_id: str, shipment_id: Optional[str] = None) -> Holding:
        with self.db.transaction() as tx:
            self._load_for_update(tx, user_id, holding_id)
            tx.execute(
                "UPDATE holdings SET is_shipped = 1, shipped_at = ?, shipment_id = ? WHERE id = ?",
                (to_iso(utc_now()), shipment_id, holding_id),
            )
            return _holding_from_row(tx.execute("SELECT * FROM holdings WHERE id = ?", (holding_id,)).fetchone())

    def count_rarity_since(self, user_id: str, rarity: str, since: datetime,
                           conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.reader(conn) as c:
            row = c.execute(
                "SELECT COUNT(*) AS n FROM holdings WHERE user_id = ? AND rarity_class = ? AND created_at >= ?",
                (user_id, rarity, to_iso(since)),
            ).fetchone()
        return row["n"]

    def get_holding(self, holding_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Holding]:
        with self.db.reader(conn) as c:
            row = c.execute("SELECT * FROM holdings WHERE id = ?", (holding_id,)).fetchone()
        return _holding_from_row(row) if row else None

    def list_holdings(self, user_id: str, include_terminal: bool = False) -> list[Holding]:
        query = "SELECT * FROM holdings WHERE user_id = ?"
        if not include_terminal:
            query += " AND is_sold = 0 AND is_shipped = 0"
        query += " ORDER BY created_at DESC"
        rows = self.db.read_with_retry(lambda c: c.execute(query, (user_id,)).fetchall())
        return [_holding_from_row(r) for r in rows]

    def _load_for_update(self, conn: sqlite3.Connection, user_id: str, holding_id: str) -> Holding:
        row = conn.execute(
            "SELECT * FROM holdings WHERE id = ? AND user_id = ?", (holding_id, user_id)
        ).fetchone()
        if row is None:
            raise HoldingNotFoundError(f"Holding {holding_id} not found")
        holding = _holding_from_row(row)
        if holding.is_sold:
            raise AlreadySoldError(f"Holding {holding_id} has already been sold")
        if holding.is_shipped:
            raise AlreadyShippedError(f"Holding {holding_id} has already been shipped")
        return holding


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _holding_from_row(row: sqlite3.Row) -> Holding:
    return Holding(
        id=row["id"],
        user_id=row["user_id"],
        pack_opening_id=row["pack_opening_id"],
        pack_id=row["pack_id"],
        item_id=row["item_id"],
        game_code=row["game_code"],
        market_value=row["market_value"],
        created_at=datetime.fromisoformat(row["created_at"]),
        card_name=row["card_name"],
        tier_id=row["tier_id"],
        rarity=row["rarity_class"],
        is_sold=bool(row["is_sold"]),
        sold_at=_parse_ts(row["sold_at"]),
        sellback_amount=from_minor(row["sellback_minor"]) if row["sellback_minor"] is not None else None,
        is_shipped=bool(row["is_shipped"]),
        shipped_at=_parse_ts(row["shipped_at"]),
        shipment_id=row["shipment_id"],
    )
