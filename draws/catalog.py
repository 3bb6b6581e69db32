"""
Read-only catalog access for the draw engine.

Card data lives in one table per game. Instead of building table names from
a runtime string, each game has an adapter registered once at startup in a
``dict[GameCode, CatalogAdapter]``.
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Optional

from ledger.storage import Database, from_minor, to_iso, to_minor, utc_now

from .models import (
    DrawCandidate,
    GameCode,
    Pack,
    Tier,
    card_metadata_adapter,
)

logger = logging.getLogger(__name__)


class CatalogAdapter(ABC):
    """Candidate pool and card metadata for one game."""

    game_code: GameCode
    card_table: str

    def get_candidate_pool(self, conn: sqlite3.Connection, pack_id: str) -> list[DrawCandidate]:
        rows = conn.execute(
            "SELECT * FROM pack_cards WHERE pack_id = ? ORDER BY market_value ASC, card_uuid ASC",
            (pack_id,),
        ).fetchall()
        return [_candidate_from_row(r) for r in rows]

    def get_card_metadata(self, conn: sqlite3.Connection, card_id: str):
        row = conn.execute(f"SELECT * FROM {self.card_table} WHERE id = ?", (card_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["image_url"] = data.pop("image_uri", None)
        data["game_code"] = self.game_code.value
        return card_metadata_adapter.validate_python(data)

    @abstractmethod
    def upsert_card(self, conn: sqlite3.Connection, card: dict) -> None: ...


class MtgCatalogAdapter(CatalogAdapter):
    game_code = GameCode.MTG
    card_table = "mtg_cards"

    def upsert_card(self, conn: sqlite3.Connection, card: dict) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO mtg_cards (id, name, image_uri, set_name, set_code, rarity) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (card["id"], card["name"], _image_column(card.get("image_uri")),
             card.get("set_name"), card.get("set_code"), card.get("rarity")),
        )


class PokemonCatalogAdapter(CatalogAdapter):
    game_code = GameCode.POKEMON
    card_table = "pokemon_cards"

    def upsert_card(self, conn: sqlite3.Connection, card: dict) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO pokemon_cards (id, name, image_uri, set_name, set_code, rarity, hp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (card["id"], card["name"], _image_column(card.get("image_uri")),
             card.get("set_name"), card.get("set_code"), card.get("rarity"), card.get("hp")),
        )


def default_adapters() -> dict[GameCode, CatalogAdapter]:
    return {
        GameCode.MTG: MtgCatalogAdapter(),
        GameCode.POKEMON: PokemonCatalogAdapter(),
    }


class Catalog:
    def __init__(self, db: Database, adapters: Optional[dict[GameCode, CatalogAdapter]] = None):
        self.db = db
        self.adapters = adapters or default_adapters()

    def adapter_for(self, game_code: GameCode) -> CatalogAdapter:
        adapter = self.adapters.get(game_code)
        if adapter is None:
            raise KeyError(f"No catalog adapter registered for game {game_code.value}")
        return adapter

    def get_pack(self, pack_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Pack]:
        with self.db.reader(conn) as c:
            row = c.execute("SELECT * FROM packs WHERE id = ?", (pack_id,)).fetchone()
        if row is None:
            return None
        return Pack(
            id=row["id"],
            name=row["name"],
            game_code=GameCode(row["game_code"]),
            cost=from_minor(row["cost_minor"]),
            is_active=bool(row["is_active"]),
        )

    def get_active_pool_for_pack(self, pack: Pack, conn: Optional[sqlite3.Connection] = None) -> list[DrawCandidate]:
        with self.db.reader(conn) as c:
            return self.adapter_for(pack.game_code).get_candidate_pool(c, pack.id)

    def get_pack_tiers(self, pack_id: str, conn: Optional[sqlite3.Connection] = None) -> list[Tier]:
        with self.db.reader(conn) as c:
            rows = c.execute(
                """
                SELECT t.id, t.name, t.min_value_cents, t.max_value_cents, pt.probability
                FROM pack_tiers pt JOIN card_tiers t ON t.id = pt.tier_id
                WHERE pt.pack_id = ? AND pt.probability > 0
                ORDER BY pt.display_order ASC, t.id ASC
                """,
                (pack_id,),
            ).fetchall()
        return [
            Tier(id=r["id"], name=r["name"], probability=float(r["probability"]),
                 min_value=r["min_value_cents"], max_value=r["max_value_cents"])
            for r in rows
        ]

    def get_card_metadata(self, game_code: GameCode, card_id: str, conn: Optional[sqlite3.Connection] = None):
        with self.db.reader(conn) as c:
            return self.adapter_for(game_code).get_card_metadata(c, card_id)

    # Seeding (admin tooling and tests)

    def add_pack(self, pack_id: str, name: str, cost: Decimal, game_code: GameCode = GameCode.MTG,
                 is_active: bool = True, conn: Optional[sqlite3.Connection] = None) -> Pack:
        with self.db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO packs (id, name, game_code, cost_minor, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (id) DO UPDATE SET name = excluded.name, game_code = excluded.game_code, "
                "cost_minor = excluded.cost_minor, is_active = excluded.is_active",
                (pack_id, name, GameCode(game_code).value, to_minor(cost), int(is_active), to_iso(utc_now())),
            )
        return Pack(id=pack_id, name=name, game_code=GameCode(game_code), cost=Decimal(cost), is_active=is_active)

    def set_pack_active(self, pack_id: str, is_active: bool) -> None:
        with self.db.transaction() as tx:
            tx.execute("UPDATE packs SET is_active = ? WHERE id = ?", (int(is_active), pack_id))

    def add_card(self, pack_id: str, card: dict, game_code: GameCode = GameCode.MTG,
                 conn: Optional[sqlite3.Connection] = None) -> DrawCandidate:
        """Register a card in its game table and assign it to a pack."""
        with self.db.transaction(conn) as tx:
            if card.get("name"):
                self.adapter_for(GameCode(game_code)).upsert_card(tx, card)
            tx.execute(
                "INSERT OR REPLACE INTO pack_cards "
                "(pack_id, card_uuid, market_value, tier_id, rarity_class, odds, is_foil, condition) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (pack_id, card["id"], int(card["market_value"]), card.get("tier_id"),
                 card.get("rarity_class"), float(card.get("odds", 1)), int(bool(card.get("is_foil"))),
                 card.get("condition")),
            )
        return DrawCandidate(
            pack_id=pack_id, item_id=card["id"], market_value=int(card["market_value"]),
            tier_id=card.get("tier_id"), rarity=card.get("rarity_class"), odds=float(card.get("odds", 1)),
            is_foil=bool(card.get("is_foil")), condition=card.get("condition"),
        )

    def add_tier(self, pack_id: str, tier: Tier, display_order: int = 0,
                 conn: Optional[sqlite3.Connection] = None) -> None:
        with self.db.transaction(conn) as tx:
            tx.execute(
                "INSERT INTO card_tiers (id, name, min_value_cents, max_value_cents) VALUES (?, ?, ?, ?) "
                "ON CONFLICT (id) DO UPDATE SET name = excluded.name, "
                "min_value_cents = excluded.min_value_cents, max_value_cents = excluded.max_value_cents",
                (tier.id, tier.name, tier.min_value, tier.max_value),
            )
            tx.execute(
                "INSERT OR REPLACE INTO pack_tiers (pack_id, tier_id, probability, display_order) VALUES (?, ?, ?, ?)",
                (pack_id, tier.id, tier.probability, display_order),
            )

    def load_pack_file(self, path: str) -> Pack:
        """
        Load a pack definition from JSON.

        Expected shape::

            {"id": "...", "name": "...", "game_code": "mtg", "cost": 1,
             "tiers": [{"id", "name", "probability", "min_value", "max_value"}],
             "cards": [{"id", "name", "market_value", "tier_id", "rarity_class", "image_uri", ...}]}
        """
        with open(Path(path), "r", encoding="utf-8") as f:
            data = json.load(f)

        game_code = GameCode(data.get("game_code", GameCode.MTG.value))
        with self.db.transaction() as tx:
            pack = self.add_pack(data["id"], data.get("name", "Unnamed Pack"), Decimal(str(data["cost"])),
                                 game_code=game_code, is_active=data.get("is_active", True), conn=tx)
            for order, t in enumerate(data.get("tiers", [])):
                self.add_tier(pack.id, Tier(id=t["id"], name=t["name"], probability=float(t["probability"]),
                                            min_value=int(t["min_value"]), max_value=int(t["max_value"])),
                              display_order=order, conn=tx)
            for card in data.get("cards", []):
                self.add_card(pack.id, card, game_code=game_code, conn=tx)
        logger.info("catalog_pack_loaded pack=%s cards=%s", pack.id, len(data.get("cards", [])))
        return pack


def _candidate_from_row(row: sqlite3.Row) -> DrawCandidate:
    return DrawCandidate(
        pack_id=row["pack_id"],
        item_id=row["card_uuid"],
        market_value=row["market_value"],
        tier_id=row["tier_id"],
        rarity=row["rarity_class"],
        odds=float(row["odds"]),
        is_foil=bool(row["is_foil"]),
        condition=row["condition"],
    )


def _image_column(image_uri) -> Optional[str]:
    if image_uri is None or isinstance(image_uri, str):
        return image_uri
    return json.dumps(image_uri)


__all__ = [
    "Catalog",
    "CatalogAdapter",
    "MtgCatalogAdapter",
    "PokemonCatalogAdapter",
    "default_adapters",
]
