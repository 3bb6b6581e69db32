import hashlib
import hmac
import random
import time
from decimal import Decimal

import pytest

from draws.config import EngineSettings
from draws.engine import EngineServices
from draws.models import GameCode


USER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_USER_ID = "660e8400-e29b-41d4-a716-446655440001"
PACK_ID = "alpha-pack"
WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def services(tmp_path) -> EngineServices:
    settings = EngineSettings(db_path=str(tmp_path / "engine.db"), stripe_webhook_secret=WEBHOOK_SECRET)
    built = EngineServices.build(settings, rng=random.Random(1234))
    built.db.initialize()
    return built


def seed_pack(services: EngineServices, cards: list, pack_id: str = PACK_ID, cost: str = "1.00",
              game_code: GameCode = GameCode.MTG, tiers: list = ()):
    pack = services.catalog.add_pack(pack_id, "Alpha Pack", Decimal(cost), game_code=game_code)
    for order, tier in enumerate(tiers):
        services.catalog.add_tier(pack_id, tier, display_order=order)
    for card in cards:
        services.catalog.add_card(pack_id, card, game_code=game_code)
    return pack


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value for a raw webhook body."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
