"""
agent.py — Simulated trader state and strategy logic.

Each agent owns an identity, a market, a rolling window of adjusted prices
and at most one open position. Three strategies share one interface:

    strategy.propose(agent, price, scenario, now, rng) -> Optional[OrderIntent]
    decide(agent, price, scenario, now, rng) -> Optional[int]   # signed size

Strategies:
  1. TrendFollower  — follow the 1-minute move; aggressive under squeeze/trend scenarios
  2. MeanReverter   — fade deviations from the 1-minute mean
  3. MarketMaker    — pseudo-random side, smaller size and leverage

None of the strategies is ever neutral once it has enough samples: inside
the threshold band they still trade the direction of the raw move (trend)
or against it (mean reversion). This keeps the simulated market busy.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from fixed_point import size_from_notional
from scenario_engine import ScenarioState, ScenarioType

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from price_feed import ReferencePrice


# ─── Constants ────────────────────────────────────────────────────────────────

PRICE_WINDOW_SECONDS = 10 * 60     # rolling history kept per agent
LOOKBACK_SECONDS = 60              # strategies look at the last minute


class StrategyType(str, Enum):
    TREND_FOLLOWER = "trend_follower"
    MEAN_REVERTER = "mean_reverter"
    MARKET_MAKER = "market_maker"


DISPLAY_NAMES: Dict[StrategyType, str] = {
    StrategyType.TREND_FOLLOWER: "🔥 TrendBot",
    StrategyType.MEAN_REVERTER: "🔄 MeanRevBot",
    StrategyType.MARKET_MAKER: "⚖️ MarketMaker",
}


class AgentStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ACTIVE = "active"


# ─── State ────────────────────────────────────────────────────────────────────


@dataclass
class PriceSample:
    price: float
    ts: float


@dataclass
class Position:
    """Signed position: size > 0 long, size < 0 short, 0 flat."""
    size: int = 0
    opened_at: float = 0.0
    hold_target: float = 0.0        # seconds; fixed at open
    entry_price: float = 0.0
    entry_price_e6: int = 0

    @property
    def is_open(self) -> bool:
        return self.size != 0

    @property
    def side(self) -> str:
        if self.size > 0:
            return "long"
        if self.size < 0:
            return "short"
        return "flat"

    def hold_elapsed(self, now: float) -> bool:
        return self.is_open and self.opened_at > 0 and now - self.opened_at >= self.hold_target

    def reset(self) -> None:
        self.size = 0
        self.opened_at = 0.0
        self.hold_target = 0.0
        self.entry_price = 0.0
        self.entry_price_e6 = 0


@dataclass
class AgentState:
    agent_id: str                   # "trend_follower_1"
    strategy: StrategyType
    market: str                     # "SOL/USD"
    account: "LocalAccount"
    status: AgentStatus = AgentStatus.UNINITIALIZED
    slot: Optional[int] = None
    position: Position = field(default_factory=Position)
    price_history: List[PriceSample] = field(default_factory=list)
    next_action_at: float = 0.0
    trade_count: int = 0

    @property
    def identity(self) -> str:
        return self.account.address

    @property
    def initialized(self) -> bool:
        return self.status == AgentStatus.ACTIVE

    @property
    def display_name(self) -> str:
        index = self.agent_id.rsplit("_", 1)[-1]
        return f"{DISPLAY_NAMES[self.strategy]} #{index}"

    def record_price(self, price: float, now: float, window: float = PRICE_WINDOW_SECONDS) -> None:
        """Append a sample and drop everything older than the window."""
        self.price_history.append(PriceSample(price=price, ts=now))
        cutoff = now - window
        self.price_history = [s for s in self.price_history if s.ts >= cutoff]

    def recent_samples(self, now: float, lookback: float = LOOKBACK_SECONDS) -> List[PriceSample]:
        cutoff = now - lookback
        return [s for s in self.price_history if s.ts >= cutoff]


# ─── Strategies ───────────────────────────────────────────────────────────────


@dataclass
class OrderIntent:
    """A strategy's sized order before it is sent to the ledger."""
    size: int                   # signed base units at 1e6 scale
    usd_notional: float
    leverage: float
    reason: str = ""

    @property
    def is_long(self) -> bool:
        return self.size > 0


def _signed(size: int, long: bool) -> int:
    return size if long else -size


class Strategy:
    name = "base"

    def propose(
        self,
        agent: AgentState,
        price: "ReferencePrice",
        scenario: Optional[ScenarioState],
        now: float,
        rng: random.Random,
    ) -> Optional[OrderIntent]:
        raise NotImplementedError


class TrendFollower(Strategy):
    name = "trend_follower"

    DEFAULT_THRESHOLD = 0.002
    AGGRESSIVE_THRESHOLD = 0.001       # very low: trades almost every time
    DEFAULT_LEVERAGE = (4.0, 8.0)
    AGGRESSIVE_LEVERAGE = 8.0
    NOTIONAL_RANGE = (500.0, 2000.0)
    AGGRESSIVE_SCENARIOS = frozenset({ScenarioType.SHORT_SQUEEZE, ScenarioType.GENTLE_TREND})

    def is_aggressive(self, scenario: Optional[ScenarioState]) -> bool:
        return scenario is not None and scenario.type in self.AGGRESSIVE_SCENARIOS

    def propose(self, agent, price, scenario, now, rng):
        history = agent.price_history
        if len(history) < 2:
            return None

        recent = agent.recent_samples(now)
        reference = recent[0] if recent else history[0]
        pct_change = (price.adjusted_price - reference.price) / reference.price

        aggressive = self.is_aggressive(scenario)
        threshold = self.AGGRESSIVE_THRESHOLD if aggressive else self.DEFAULT_THRESHOLD
        leverage = self.AGGRESSIVE_LEVERAGE if aggressive else rng.uniform(*self.DEFAULT_LEVERAGE)
        usd_notional = rng.uniform(*self.NOTIONAL_RANGE)
        size = size_from_notional(usd_notional, leverage, price.price_e6)

        if pct_change >= threshold:
            long, reason = True, "momentum up"
        elif pct_change <= -threshold:
            long, reason = False, "momentum down"
        else:
            long, reason = pct_change >= 0, "micro-trend"

        return OrderIntent(
            size=_signed(size, long),
            usd_notional=usd_notional,
            leverage=leverage,
            reason=f"{reason} {pct_change:+.4%}{' (aggressive)' if aggressive else ''}",
        )


class MeanReverter(Strategy):
    name = "mean_reverter"

    BAND = 0.001
    MIN_HISTORY = 5
    LEVERAGE_RANGE = (3.0, 6.0)
    NOTIONAL_RANGE = (500.0, 1500.0)

    def propose(self, agent, price, scenario, now, rng):
        if len(agent.price_history) < self.MIN_HISTORY:
            return None
        recent = agent.recent_samples(now)
        if len(recent) < 2:
            return None

        mean = sum(s.price for s in recent) / len(recent)
        pct_dev = (price.adjusted_price - mean) / mean

        leverage = rng.uniform(*self.LEVERAGE_RANGE)
        usd_notional = rng.uniform(*self.NOTIONAL_RANGE)
        size = size_from_notional(usd_notional, leverage, price.price_e6)

        if pct_dev >= self.BAND:
            long, reason = False, "fade rally"
        elif pct_dev <= -self.BAND:
            long, reason = True, "buy dip"
        else:
            long, reason = pct_dev < 0, "contrarian bias"

        return OrderIntent(
            size=_signed(size, long),
            usd_notional=usd_notional,
            leverage=leverage,
            reason=f"{reason} {pct_dev:+.4%}",
        )


class MarketMaker(Strategy):
    name = "market_maker"

    LEVERAGE_RANGE = (2.0, 4.0)
    NOTIONAL_RANGE = (300.0, 1000.0)

    def propose(self, agent, price, scenario, now, rng):
        usd_notional = rng.uniform(*self.NOTIONAL_RANGE)
        leverage = rng.uniform(*self.LEVERAGE_RANGE)
        long = rng.random() > 0.5
        size = size_from_notional(usd_notional, leverage, price.price_e6)
        return OrderIntent(
            size=_signed(size, long),
            usd_notional=usd_notional,
            leverage=leverage,
            reason="quote",
        )


STRATEGIES: Dict[StrategyType, Strategy] = {
    StrategyType.TREND_FOLLOWER: TrendFollower(),
    StrategyType.MEAN_REVERTER: MeanReverter(),
    StrategyType.MARKET_MAKER: MarketMaker(),
}


def propose(
    agent: AgentState,
    price: "ReferencePrice",
    scenario: Optional[ScenarioState],
    now: float,
    rng: random.Random,
) -> Optional[OrderIntent]:
    return STRATEGIES[agent.strategy].propose(agent, price, scenario, now, rng)


def decide(
    agent: AgentState,
    price: "ReferencePrice",
    scenario: Optional[ScenarioState],
    now: float,
    rng: random.Random,
) -> Optional[int]:
    """Signed order size for a flat agent, or None to sit out."""
    intent = propose(agent, price, scenario, now, rng)
    return intent.size if intent is not None else None
