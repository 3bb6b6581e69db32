"""
Engine configuration.

Two layers:
- ``EngineSettings``: process settings read from the environment.
- ``SystemConfig``: operator-tunable values stored in the ``system_config``
  table (JSON values). A missing or malformed key never fails a request; the
  documented default is used and a warning is logged.
"""

import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ledger.storage import Database, dumps, loads, to_iso, utc_now

from .models import WeightingStrategy

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "probability_curvature_k": 1.1,
    "sellback_rate": 85,
    "daily_limit": 1,
    "max_single_value_cents": 50000,
    "weighting_strategy": WeightingStrategy.INVERSE_POWER.value,
    "rarity_limited_class": "ultra-chase",
}

DESCRIPTIONS = {
    "probability_curvature_k": "Curvature k of the inverse-power weighting w = 1 / v^k.",
    "sellback_rate": "Percent of market value credited when a card is sold back.",
    "daily_limit": "Cards of the rarity-limited class a user may receive per day.",
    "max_single_value_cents": "Maximum value of a single drawn card, in cents.",
    "weighting_strategy": "inverse_power or tier_table.",
    "rarity_limited_class": "Rarity class subject to the daily limit.",
}


class ConfigUnavailableError(Exception):
    code = "config_unavailable"


@dataclass(frozen=True)
class EngineSettings:
    db_path: str = "rips_engine.db"
    timezone: str = "UTC"
    db_timeout: float = 30.0
    log_level: str = "INFO"
    stripe_webhook_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            db_path=os.getenv("RIPS_DB_PATH", cls.db_path),
            timezone=os.getenv("RIPS_TIMEZONE", cls.timezone),
            db_timeout=float(os.getenv("RIPS_DB_TIMEOUT", cls.db_timeout)),
            log_level=os.getenv("RIPS_LOG_LEVEL", cls.log_level),
            stripe_webhook_secret=os.getenv("RIPS_STRIPE_WEBHOOK_SECRET") or None,
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("CONFIG_FALLBACK timezone=%r unknown; using UTC", self.timezone)
            return ZoneInfo("UTC")


class SystemConfig:
    def __init__(self, db: Database):
        self.db = db

    def get(self, key: str) -> Any:
        """Raw lookup; raises ConfigUnavailableError when the key cannot be read."""
        try:
            row = self.db.read_with_retry(
                lambda c: c.execute("SELECT value FROM system_config WHERE key = ?", (key,)).fetchone()
            )
        except sqlite3.Error as e:
            raise ConfigUnavailableError(f"Config store unreadable for {key}: {e}") from e
        if row is None:
            raise ConfigUnavailableError(f"Config key {key} not set")
        value = loads(row["value"], default=None)
        if value is None:
            raise ConfigUnavailableError(f"Config key {key} has no usable value")
        return value

    def set(self, key: str, value: Any, description: Optional[str] = None) -> None:
        with self.db.transaction() as tx:
            tx.execute(
                """
                INSERT INTO system_config (key, value, description, updated_at) VALUES (?, ?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value,
                    description = COALESCE(excluded.description, system_config.description),
                    updated_at = excluded.updated_at
                """,
                (key, dumps(value), description or DESCRIPTIONS.get(key), to_iso(utc_now())),
            )

    def _typed(self, key: str, cast: Callable[[Any], Any], valid: Callable[[Any], bool] = lambda v: True):
        default = DEFAULTS[key]
        try:
            value = cast(self.get(key))
            if not valid(value):
                raise ValueError(f"{value!r} out of range")
            return value
        except ConfigUnavailableError as e:
            logger.warning("CONFIG_FALLBACK key=%s default=%r reason=%s", key, default, e)
        except (TypeError, ValueError) as e:
            logger.warning("CONFIG_FALLBACK key=%s default=%r invalid=%s", key, default, e)
        return default

    @property
    def curvature_k(self) -> float:
        return self._typed("probability_curvature_k", float, lambda v: v > 0)

    @property
    def sellback_rate(self) -> float:
        return self._typed("sellback_rate", float, lambda v: 0 <= v <= 100)

    @property
    def daily_limit(self) -> int:
        return self._typed("daily_limit", int, lambda v: v >= 0)

    @property
    def max_single_value(self) -> int:
        return self._typed("max_single_value_cents", int, lambda v: v > 0)

    @property
    def weighting_strategy(self) -> WeightingStrategy:
        return WeightingStrategy(self._typed("weighting_strategy", str, _is_strategy))

    @property
    def rarity_limited_class(self) -> str:
        return self._typed("rarity_limited_class", str, bool)


def _is_strategy(value: str) -> bool:
    return value in {s.value for s in WeightingStrategy}


def local_midnight(now: datetime, tz: ZoneInfo) -> datetime:
    """Start of the server-defined day containing ``now``."""
    local = now.astimezone(tz)
    return datetime.combine(local.date(), time.min, tzinfo=tz)
