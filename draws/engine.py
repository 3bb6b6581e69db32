"""
Pack opening: debit, draw and settlement as one atomic unit.

The three steps run in order inside a single write transaction. If the draw
or the settlement fails after the debit, the transaction rolls back and the
Rips were never spent. A client-supplied idempotency key is stored with the
opening record so a retried request returns the first result instead of
debiting twice.
"""

import logging
import random
import sqlite3
from dataclasses import dataclass
from typing import Optional

from ledger.models import LedgerReason
from ledger.service import LedgerService
from ledger.settlement import PaymentSettlementGuard
from ledger.storage import Database, from_minor, loads

from .catalog import Catalog
from .config import EngineSettings, SystemConfig
from .models import DrawOutcome, OpeningResult
from .policy import DrawPolicyEngine
from .recorder import SettlementRecorder
from .selector import DrawError

logger = logging.getLogger(__name__)


class IdempotencyConflictError(DrawError):
    code = "idempotency_conflict"


class PackOpeningService:
    def __init__(self, db: Database, ledger: LedgerService, policy: DrawPolicyEngine, recorder: SettlementRecorder):
        self.db = db
        self.ledger = ledger
        self.policy = policy
        self.recorder = recorder

    def open_pack(self, user_id: str, pack_id: str, idempotency_key: Optional[str] = None) -> OpeningResult:
        if idempotency_key:
            replay = self._replay(user_id, idempotency_key)
            if replay:
                return replay

        try:
            with self.db.transaction() as tx:
                if idempotency_key:
                    replay = self._replay(user_id, idempotency_key, conn=tx)
                    if replay:
                        return replay

                pack = self.policy.resolve_pack(pack_id, conn=tx)
                debit = self.ledger.debit(
                    user_id, pack.cost, LedgerReason.PACK_OPENING,
                    {"pack_id": pack.id, "idempotency_key": idempotency_key}, conn=tx,
                )
                outcome = self.policy.draw(user_id, pack.id, conn=tx)
                holding_id = self.recorder.record_draw(
                    user_id, pack, outcome, pack.cost, conn=tx,
                    ledger_entry_id=debit.entry.id, idempotency_key=idempotency_key,
                )
                opening_id = self.recorder.get_holding(holding_id, conn=tx).pack_opening_id
        except sqlite3.IntegrityError:
            # Another request stored the same token between our check and insert.
            replay = self._replay(user_id, idempotency_key) if idempotency_key else None
            if replay is None:
                raise
            return replay
        except Exception as e:
            logger.info("pack_open_rolled_back user=%s pack=%s error=%s", user_id, pack_id, type(e).__name__)
            raise

        logger.info("pack_opened user=%s pack=%s card=%s value=%s cost=%s balance=%s",
                    user_id, pack.id, outcome.item_id, outcome.market_value, pack.cost, debit.balance)
        return OpeningResult(
            holding_id=holding_id,
            pack_opening_id=opening_id,
            outcome=outcome,
            cost=pack.cost,
            new_balance=debit.balance,
        )

    def _replay(self, user_id: str, idempotency_key: str, conn=None) -> Optional[OpeningResult]:
        opening = self.recorder.find_opening(idempotency_key, conn=conn)
        if opening is None:
            return None
        if opening["user_id"] != user_id:
            logger.warning("idempotency_key_owner_mismatch key=%s owner=%s requested=%s",
                           idempotency_key, opening["user_id"], user_id)
            raise IdempotencyConflictError(f"Idempotency key {idempotency_key} belongs to another request")

        record = (loads(opening["cards_pulled"], default=[]) or [{}])[0]
        holding = self.recorder.get_holding(opening["holding_id"], conn=conn)
        outcome = DrawOutcome(
            pack_id=opening["pack_id"],
            item_id=opening["item_id"],
            market_value=opening["market_value"],
            drawn_at=holding.created_at,
            tier_id=record.get("tier_id"),
            tier_name=record.get("tier_name"),
            rarity=record.get("rarity"),
            card_name=record.get("card_name"),
            image_url=record.get("card_image_url"),
            set_name=record.get("set_name"),
            set_code=record.get("set_code"),
            is_foil=bool(record.get("is_foil")),
            condition=record.get("condition"),
        )
        balance = self.ledger.get_balance(user_id, conn=conn).amount
        logger.info("pack_open_replayed user=%s key=%s opening=%s", user_id, idempotency_key, opening["id"])
        return OpeningResult(
            holding_id=opening["holding_id"],
            pack_opening_id=opening["id"],
            outcome=outcome,
            cost=from_minor(opening["cost_minor"]),
            new_balance=balance,
            replayed=True,
        )


@dataclass
class EngineServices:
    """Every engine component, wired against one database."""

    settings: EngineSettings
    db: Database
    config: SystemConfig
    catalog: Catalog
    ledger: LedgerService
    settlement: PaymentSettlementGuard
    recorder: SettlementRecorder
    policy: DrawPolicyEngine
    openings: PackOpeningService

    @classmethod
    def build(cls, settings: Optional[EngineSettings] = None, rng: Optional[random.Random] = None) -> "EngineServices":
        settings = settings or EngineSettings.from_env()
        db = Database(settings.db_path, timeout=settings.db_timeout)
        config = SystemConfig(db)
        catalog = Catalog(db)
        ledger = LedgerService(db)
        recorder = SettlementRecorder(db, ledger, config)
        policy = DrawPolicyEngine(catalog, recorder, config, settings=settings, rng=rng)
        return cls(
            settings=settings,
            db=db,
            config=config,
            catalog=catalog,
            ledger=ledger,
            settlement=PaymentSettlementGuard(db, ledger, webhook_secret=settings.stripe_webhook_secret),
            recorder=recorder,
            policy=policy,
            openings=PackOpeningService(db, ledger, policy, recorder),
        )
