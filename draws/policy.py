import logging
import random
import sqlite3
from datetime import datetime
from typing import Callable, Optional

from ledger.storage import utc_now

from .catalog import Catalog
from .config import EngineSettings, SystemConfig, local_midnight
from .models import CandidateProbability, DrawCandidate, DrawOutcome, Pack, SelectionResult, WeightingStrategy
from .recorder import SettlementRecorder
from .selector import DrawError, EmptyPoolError, WeightedSelector, build_selector

logger = logging.getLogger(__name__)


class PackNotFoundError(DrawError):
    code = "pack_not_found"


class PackInactiveError(DrawError):
    code = "pack_inactive"


class NoEligibleCandidatesError(DrawError):
    code = "no_eligible_candidates"


class IntegrityViolationError(DrawError):
    code = "integrity_violation"


class DrawPolicyEngine:
    """
    Resolves a pack's pool, applies eligibility rules and picks one card.

    The engine never persists anything itself. Pass ``conn`` to read inside
    the caller's transaction so the daily-limit count and the later
    settlement see the same snapshot.
    """

    def __init__(
        self,
        catalog: Catalog,
        recorder: SettlementRecorder,
        config: SystemConfig,
        settings: Optional[EngineSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.catalog = catalog
        self.recorder = recorder
        self.config = config
        self.settings = settings or EngineSettings()
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def resolve_pack(self, pack_id: str, conn: Optional[sqlite3.Connection] = None) -> Pack:
        pack = self.catalog.get_pack(pack_id, conn=conn)
        if pack is None:
            raise PackNotFoundError(f"Pack {pack_id} not found")
        if not pack.is_active:
            raise PackInactiveError(f"Pack {pack_id} is not active")
        return pack

    def draw(self, user_id: str, pack_id: str, conn: Optional[sqlite3.Connection] = None) -> DrawOutcome:
        pack = self.resolve_pack(pack_id, conn)
        pool = self._load_pool(pack, conn)
        selector = self._selector(pack, conn)

        eligible = self._eligible(user_id, pool, selector.strategy, conn)
        if not eligible:
            raise NoEligibleCandidatesError(f"No eligible cards left in pack {pack_id} for user {user_id}")

        choice = selector.select(eligible, self.rng)
        self._verify_integrity(pack, pool, choice.candidate)
        outcome = self._build_outcome(pack, choice, conn)
        logger.info("draw_selected user=%s pack=%s card=%s value=%s strategy=%s",
                    user_id, pack_id, outcome.item_id, outcome.market_value, selector.strategy.value)
        return outcome

    def pack_probabilities(self, pack_id: str) -> tuple[WeightingStrategy, list[CandidateProbability]]:
        """Per-card probabilities before any per-user filtering."""
        pack = self.resolve_pack(pack_id)
        pool = self._load_pool(pack, None)
        selector = self._selector(pack, None)
        if selector.strategy == WeightingStrategy.INVERSE_POWER:
            pool = self._under_value_cap(pool)
            if not pool:
                raise NoEligibleCandidatesError(f"Every card in pack {pack_id} is above the value cap")
        return selector.strategy, selector.probabilities(pool)

    def _load_pool(self, pack: Pack, conn: Optional[sqlite3.Connection]) -> list[DrawCandidate]:
        pool = self.catalog.get_active_pool_for_pack(pack, conn=conn)
        if not pool:
            raise EmptyPoolError(f"Pack {pack.id} has no cards assigned")
        valid = [c for c in pool if c.market_value and c.market_value > 0]
        if not valid:
            raise EmptyPoolError(f"Pack {pack.id} has no cards with valid market values")
        return valid

    def _selector(self, pack: Pack, conn: Optional[sqlite3.Connection]) -> WeightedSelector:
        strategy = self.config.weighting_strategy
        tiers = self.catalog.get_pack_tiers(pack.id, conn=conn) if strategy == WeightingStrategy.TIER_TABLE else None
        return build_selector(strategy, k=self.config.curvature_k, tiers=tiers,
                              max_value=self.config.max_single_value)

    def _under_value_cap(self, pool: list[DrawCandidate]) -> list[DrawCandidate]:
        cap = self.config.max_single_value
        return [c for c in pool if c.market_value <= cap]

    def _eligible(self, user_id: str, pool: list[DrawCandidate], strategy: WeightingStrategy,
                  conn: Optional[sqlite3.Connection]) -> list[DrawCandidate]:
        eligible = pool
        if strategy == WeightingStrategy.INVERSE_POWER:
            # Tier draws clamp the drawn value instead.
            eligible = self._under_value_cap(eligible)
            if len(eligible) < len(pool):
                logger.info("value_cap_excluded pack=%s excluded=%s", pool[0].pack_id, len(pool) - len(eligible))

        limited = self.config.rarity_limited_class
        if any(c.rarity == limited for c in eligible):
            since = local_midnight(self.clock(), self.settings.tzinfo)
            received = self.recorder.count_rarity_since(user_id, limited, since, conn=conn)
            limit = self.config.daily_limit
            if received >= limit:
                logger.info("daily_limit_reached user=%s rarity=%s received=%s limit=%s",
                            user_id, limited, received, limit)
                eligible = [c for c in eligible if c.rarity != limited]
        return eligible

    def _verify_integrity(self, pack: Pack, pool: list[DrawCandidate], candidate: DrawCandidate) -> None:
        in_pool = any(c.item_id == candidate.item_id and c.pack_id == pack.id for c in pool)
        if candidate.pack_id != pack.id or not in_pool:
            logger.error("draw_integrity_violation pack=%s card=%s card_pack=%s",
                         pack.id, candidate.item_id, candidate.pack_id)
            raise IntegrityViolationError(f"Selected card {candidate.item_id} does not belong to pack {pack.id}")

    def _build_outcome(self, pack: Pack, choice: SelectionResult, conn: Optional[sqlite3.Connection]) -> DrawOutcome:
        candidate = choice.candidate
        metadata = None
        try:
            metadata = self.catalog.get_card_metadata(pack.game_code, candidate.item_id, conn=conn)
            if metadata is None:
                logger.warning("card_metadata_missing game=%s card=%s", pack.game_code.value, candidate.item_id)
        except Exception:
            # The draw itself succeeded; only presentation fields are lost.
            logger.warning("card_metadata_failed game=%s card=%s", pack.game_code.value,
                           candidate.item_id, exc_info=True)
            metadata = None

        return DrawOutcome(
            pack_id=pack.id,
            item_id=candidate.item_id,
            market_value=choice.market_value,
            drawn_at=self.clock(),
            tier_id=candidate.tier_id,
            tier_name=choice.tier.name if choice.tier else None,
            rarity=candidate.rarity,
            card_name=metadata.name if metadata else None,
            image_url=metadata.image_url if metadata else None,
            set_name=metadata.set_name if metadata else None,
            set_code=metadata.set_code if metadata else None,
            is_foil=candidate.is_foil,
            condition=candidate.condition,
        )
