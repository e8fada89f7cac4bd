"""
scenario_engine.py — Market scenarios and their price multipliers.

A scenario is a time-boxed, externally voted stress event (flash crash,
short squeeze, ...) that multiplies the real reference price. The engine
reads the currently active scenario from the store at most once per
CACHE_TTL seconds and never hands out a scenario whose expiry has passed.

Multipliers, with t the elapsed fraction of the scenario in [0, 1]:
  flash-crash    drop 30% over the first half, recover 70% of the drop (ends 0.91)
  short-squeeze  1 + 0.50·t
  black-swan     1 − 0.60·t, no recovery
  high-vol       1 + U(−0.20, 0.20), redrawn on every evaluation
  gentle-trend   1 + 0.15·t

Usage:
    engine = ScenarioEngine(store, clock)
    scenario = await engine.active_scenario()
    adjusted = apply_scenario(raw_price, scenario, clock.now())
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Union

from loguru import logger

from clock import Clock, SystemClock

if TYPE_CHECKING:
    from store_client import StoreClient


# ─── Constants ────────────────────────────────────────────────────────────────

CACHE_TTL = 10.0                    # seconds between store reads
SCENARIO_TABLE = "sim_scenarios"


class ScenarioType(str, Enum):
    FLASH_CRASH = "flash-crash"
    SHORT_SQUEEZE = "short-squeeze"
    BLACK_SWAN = "black-swan"
    HIGH_VOL = "high-vol"
    GENTLE_TREND = "gentle-trend"


# Legacy underscore names still present in older rows
_LEGACY_NAMES: Dict[str, ScenarioType] = {
    "high_volatility": ScenarioType.HIGH_VOL,
}

DEFAULT_DURATIONS: Dict[ScenarioType, float] = {
    ScenarioType.FLASH_CRASH: 60.0,
    ScenarioType.SHORT_SQUEEZE: 120.0,
    ScenarioType.BLACK_SWAN: 600.0,
    ScenarioType.HIGH_VOL: 300.0,
    ScenarioType.GENTLE_TREND: 1800.0,
}
FALLBACK_DURATION = 60.0


def normalize_scenario_type(raw: Union[str, ScenarioType]) -> Optional[ScenarioType]:
    """Map a stored scenario name to its canonical type, or None if unknown."""
    if isinstance(raw, ScenarioType):
        return raw
    if raw in _LEGACY_NAMES:
        return _LEGACY_NAMES[raw]
    try:
        return ScenarioType(raw.replace("_", "-"))
    except ValueError:
        return None


# ─── Scenario State ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ScenarioState:
    """An active scenario. Times are epoch seconds."""
    id: str
    type: ScenarioType
    activated_at: float
    expires_at: float

    @property
    def duration(self) -> float:
        return self.expires_at - self.activated_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def elapsed_fraction(self, now: float) -> float:
        if self.duration <= 0:
            return 1.0
        t = (now - self.activated_at) / self.duration
        return min(max(t, 0.0), 1.0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "activated_at": self.activated_at,
            "expires_at": self.expires_at,
        }


def _parse_timestamp(value: str) -> float:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def scenario_from_row(row: dict) -> Optional[ScenarioState]:
    """
    Build a ScenarioState from a sim_scenarios row.

    Rows that were never activated, or carry an unknown type, yield None.
    A missing expires_at falls back to the default duration for the type.
    """
    if not row.get("activated_at"):
        return None
    raw_type = row.get("scenario_type") or row.get("type") or ""
    scenario_type = normalize_scenario_type(raw_type)
    if scenario_type is None:
        logger.warning("Ignoring scenario {} with unknown type {!r}", row.get("id"), raw_type)
        return None

    activated_at = _parse_timestamp(row["activated_at"])
    if row.get("expires_at"):
        expires_at = _parse_timestamp(row["expires_at"])
    else:
        expires_at = activated_at + DEFAULT_DURATIONS.get(scenario_type, FALLBACK_DURATION)

    return ScenarioState(
        id=str(row.get("id", "")),
        type=scenario_type,
        activated_at=activated_at,
        expires_at=expires_at,
    )


# ─── Multipliers ──────────────────────────────────────────────────────────────


def scenario_multiplier(
    scenario_type: Union[str, ScenarioType],
    t: float,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Price multiplier for a scenario type at elapsed fraction t.

    Deterministic for every type except high-vol, which draws from `rng`
    (the module-level random generator when none is given). Unknown types
    leave the price unchanged.
    """
    kind = normalize_scenario_type(scenario_type)
    if kind == ScenarioType.FLASH_CRASH:
        if t < 0.5:
            return 1.0 - 0.30 * (t / 0.5)
        recovery = 0.30 * 0.70
        return (1.0 - 0.30) + recovery * ((t - 0.5) / 0.5)
    if kind == ScenarioType.SHORT_SQUEEZE:
        return 1.0 + 0.50 * t
    if kind == ScenarioType.BLACK_SWAN:
        return 1.0 - 0.60 * min(t, 1.0)
    if kind == ScenarioType.HIGH_VOL:
        draw = (rng or random).uniform(-0.20, 0.20)
        return 1.0 + draw
    if kind == ScenarioType.GENTLE_TREND:
        return 1.0 + 0.15 * t
    return 1.0


def apply_scenario(
    raw_price: float,
    scenario: Optional[ScenarioState],
    now: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Adjusted price: raw_price unchanged without a scenario."""
    if scenario is None:
        return raw_price
    t = scenario.elapsed_fraction(now)
    return raw_price * scenario_multiplier(scenario.type, t, rng)


# ─── Engine ───────────────────────────────────────────────────────────────────


class ScenarioEngine:
    """
    Cached view of the active scenario.

    The store is read at most once per `ttl` seconds. A failed read keeps
    whatever was cached before; an empty result clears it. Expiry is always
    checked against the clock on the way out.
    """

    def __init__(
        self,
        store: "StoreClient",
        clock: Optional[Clock] = None,
        ttl: float = CACHE_TTL,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._ttl = ttl
        self._rng = rng or random.Random()
        self._cached: Optional[ScenarioState] = None
        self._refresh_at: float = 0.0
        self.fetch_errors: int = 0

    async def active_scenario(self) -> Optional[ScenarioState]:
        now = self._clock.now()
        if now >= self._refresh_at:
            self._refresh_at = now + self._ttl
            await self._refresh()

        scenario = self._cached
        if scenario is not None and scenario.is_expired(self._clock.now()):
            return None
        return scenario

    async def _refresh(self) -> None:
        try:
            rows = await self._store.select(
                SCENARIO_TABLE,
                filters={"status": "eq.active"},
                order="activated_at.desc",
                limit=1,
            )
            latest = scenario_from_row(rows[0]) if rows else None
        except Exception as exc:
            self.fetch_errors += 1
            logger.warning("Scenario fetch failed, keeping previous: {}", exc)
            return

        previous = self._cached
        self._cached = latest
        if self._cached is not None and self._cached != previous:
            logger.info(
                "Active scenario: {} (id={}, expires in {:.0f}s)",
                self._cached.type.value,
                self._cached.id,
                self._cached.expires_at - self._clock.now(),
            )
        elif self._cached is None and previous is not None:
            logger.info("Scenario {} no longer active", previous.type.value)

    def multiplier(self, scenario_type: Union[str, ScenarioType], t: float) -> float:
        return scenario_multiplier(scenario_type, t, self._rng)

    def apply(self, raw_price: float, scenario: Optional[ScenarioState]) -> float:
        return apply_scenario(raw_price, scenario, self._clock.now(), self._rng)
