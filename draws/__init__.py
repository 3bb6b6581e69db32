"""
Pack Draw Engine

This module provides:
- Weighted card selection (inverse-power over market value, or tier tables)
- Draw policy: pack resolution, value cap, daily rarity limit, integrity check
- Settlement of draws into holdings, sellback and shipping flags
- Atomic pack opening (debit, draw and record in one transaction)
"""

from .catalog import Catalog
from .config import EngineSettings, SystemConfig
from .engine import EngineServices, IdempotencyConflictError, PackOpeningService
from .models import DrawCandidate, DrawOutcome, GameCode, Holding, Pack, Tier, WeightingStrategy
from .policy import (
    DrawPolicyEngine,
    IntegrityViolationError,
    NoEligibleCandidatesError,
    PackInactiveError,
    PackNotFoundError,
)
from .recorder import AlreadyShippedError, AlreadySoldError, HoldingNotFoundError, SettlementRecorder
from .selector import DrawError, EmptyPoolError, InvalidPoolError, WeightedSelector

__all__ = [
    "AlreadyShippedError",
    "AlreadySoldError",
    "Catalog",
    "DrawCandidate",
    "DrawError",
    "DrawOutcome",
    "DrawPolicyEngine",
    "EmptyPoolError",
    "EngineServices",
    "EngineSettings",
    "GameCode",
    "Holding",
    "HoldingNotFoundError",
    "IdempotencyConflictError",
    "IntegrityViolationError",
    "InvalidPoolError",
    "NoEligibleCandidatesError",
    "Pack",
    "PackInactiveError",
    "PackNotFoundError",
    "PackOpeningService",
    "SettlementRecorder",
    "SystemConfig",
    "Tier",
    "WeightedSelector",
    "WeightingStrategy",
]
