import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class GameCode(str, Enum):
    MTG = "mtg"
    POKEMON = "pokemon"


class WeightingStrategy(str, Enum):
    INVERSE_POWER = "inverse_power"
    TIER_TABLE = "tier_table"


class Pack(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    game_code: GameCode
    cost: Decimal
    is_active: bool = True


class DrawCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    pack_id: str
    item_id: str
    market_value: int
    tier_id: Optional[str] = None
    rarity: Optional[str] = None
    odds: float = 1.0
    is_foil: bool = False
    condition: Optional[str] = None


class Tier(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    probability: float
    min_value: int
    max_value: int


class DrawOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    pack_id: str
    item_id: str
    market_value: int
    drawn_at: datetime
    tier_id: Optional[str] = None
    tier_name: Optional[str] = None
    rarity: Optional[str] = None
    card_name: Optional[str] = None
    image_url: Optional[str] = None
    set_name: Optional[str] = None
    set_code: Optional[str] = None
    is_foil: bool = False
    condition: Optional[str] = None

    def to_record(self) -> dict:
        return {
            "card_uuid": self.item_id,
            "value_cents": self.market_value,
            "tier_id": self.tier_id,
            "tier_name": self.tier_name,
            "rarity": self.rarity,
            "card_name": self.card_name,
            "card_image_url": self.image_url,
            "set_name": self.set_name,
            "set_code": self.set_code,
            "is_foil": self.is_foil,
            "condition": self.condition,
        }


class Holding(BaseModel):
    id: str
    user_id: str
    pack_opening_id: str
    pack_id: str
    item_id: str
    game_code: str
    market_value: int
    created_at: datetime
    card_name: Optional[str] = None
    tier_id: Optional[str] = None
    rarity: Optional[str] = None
    is_sold: bool = False
    sold_at: Optional[datetime] = None
    sellback_amount: Optional[Decimal] = None
    is_shipped: bool = False
    shipped_at: Optional[datetime] = None
    shipment_id: Optional[str] = None


class CandidateProbability(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: DrawCandidate
    weight: float
    probability: float


class SelectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    candidate: DrawCandidate
    market_value: int
    tier: Optional[Tier] = None


class OpeningResult(BaseModel):
    holding_id: str
    pack_opening_id: str
    outcome: DrawOutcome
    cost: Decimal
    new_balance: Decimal
    replayed: bool = False


# Card metadata, one schema per game, parsed once at the catalog boundary.

IMAGE_SIZE_PREFERENCE = ("normal", "large", "png", "small")


def extract_image_url(image_uri) -> Optional[str]:
    """Pick a display URL from a JSON object, a JSON-encoded string or a bare URL."""
    if not image_uri:
        return None
    if isinstance(image_uri, str):
        try:
            parsed = json.loads(image_uri)
        except json.JSONDecodeError:
            return image_uri
        if not isinstance(parsed, dict):
            return image_uri
        image_uri = parsed
    if isinstance(image_uri, dict):
        for size in IMAGE_SIZE_PREFERENCE:
            if image_uri.get(size):
                return image_uri[size]
    return None


class _CardMetadataBase(BaseModel):
    id: str
    name: str
    image_url: Optional[str] = None
    set_name: Optional[str] = None
    set_code: Optional[str] = None
    rarity: Optional[str] = None

    @field_validator("image_url", mode="before")
    @classmethod
    def _parse_image(cls, value):
        return extract_image_url(value)


class MtgCardMetadata(_CardMetadataBase):
    game_code: Literal["mtg"] = "mtg"


class PokemonCardMetadata(_CardMetadataBase):
    game_code: Literal["pokemon"] = "pokemon"
    hp: Optional[int] = None


CardMetadata = Annotated[Union[MtgCardMetadata, PokemonCardMetadata], Field(discriminator="game_code")]
card_metadata_adapter = TypeAdapter(CardMetadata)


class DrawRequest(BaseModel):
    user_id: str
    pack_id: str
    idempotency_key: Optional[str] = Field(default=None, description="Client token; retries return the first result")


class DrawResponse(BaseModel):
    holding_id: str
    pack_opening_id: str
    card_id: str
    card_name: Optional[str] = None
    card_image_url: Optional[str] = None
    set_name: Optional[str] = None
    rarity: Optional[str] = None
    tier_name: Optional[str] = None
    market_value_cents: int
    rips_spent: Decimal
    new_balance: Decimal
    replayed: bool = False


class SellbackRequest(BaseModel):
    user_id: str


class SellbackResponse(BaseModel):
    holding_id: str
    market_value_cents: int
    credited_amount: Decimal
    new_balance: Decimal


class ShipRequest(BaseModel):
    user_id: str
    shipment_id: Optional[str] = None


class HoldingResponse(BaseModel):
    id: str
    item_id: str
    card_name: Optional[str] = None
    market_value_cents: int
    is_sold: bool
    is_shipped: bool
    shipment_id: Optional[str] = None


class CardProbabilityResponse(BaseModel):
    card_uuid: str
    market_value: int
    tier_id: Optional[str] = None
    rarity: Optional[str] = None
    weight: float
    probability: float


class PackProbabilitiesResponse(BaseModel):
    pack_id: str
    strategy: WeightingStrategy
    probabilities: list[CardProbabilityResponse]
