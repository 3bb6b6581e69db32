from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class EntryType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerReason(str, Enum):
    PURCHASE = "purchase"
    PACK_OPENING = "pack_opening"
    CARD_SELLBACK = "card_sellback"
    REFUND = "refund"


class PaymentEventStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    MANUAL_REVIEW = "manual_review"


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    entry_type: EntryType
    amount: Decimal
    reason: LedgerReason
    balance_after: Decimal
    metadata: dict = Field(default_factory=dict)
    external_ref: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: str
    amount: Decimal
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerResponse(BaseModel):
    entry: LedgerEntry
    balance: Decimal


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class BalanceAudit(BaseModel):
    """Result of replaying a user's ledger against the stored balance."""
    user_id: str
    stored_balance: Decimal
    total_credits: Decimal
    total_debits: Decimal
    entry_count: int
    chain_consistent: bool

    @property
    def is_consistent(self) -> bool:
        return self.chain_consistent and self.stored_balance == self.total_credits - self.total_debits


class SettlePurchaseRequest(BaseModel):
    user_id: str
    external_ref: str = Field(..., min_length=1, description="Payment provider session/intent identifier")
    amount: Decimal = Field(..., gt=0, description="Rips to credit")
    currency: str = Field(default="usd")
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "external_ref": "cs_test_a1b2c3",
            "amount": 25,
            "currency": "usd",
            "metadata": {"bundle_id": "starter", "amount_cents": 2500}
        }
    })


class SettlementResult(BaseModel):
    balance: Decimal
    already_processed: bool
    entry: Optional[LedgerEntry] = None


class PaymentEventResult(BaseModel):
    event_type: str
    handled: bool
    status: Optional[PaymentEventStatus] = None
    settlement: Optional[SettlementResult] = None
