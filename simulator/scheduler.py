"""
scheduler.py — Cooperative tick loop driving the agent fleet.

One loop, one tick per second. Each tick records the latest adjusted price
into every agent's history, then walks the roster in order and lets each
due agent act. Agents are processed strictly one after another: an agent's
whole decide -> build -> submit -> confirm cycle is awaited before the next
agent starts.

Agent lifecycle:
    UNINITIALIZED -> INITIALIZING -> ACTIVE
A failed initialization drops back to UNINITIALIZED and is retried at the
agent's next due time. An agent found already registered (for example after
a restart) adopts its slot and any open position, which is then closed on
its next due tick.
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Dict, List, Optional

from loguru import logger

import agent as strategies
from agent import AgentState, AgentStatus
from clock import Clock, SystemClock
from fixed_point import notional_e6
from leaderboard import LeaderboardDelta

if TYPE_CHECKING:
    from config import MarketConfig
    from leaderboard import LeaderboardAggregator
    from price_feed import PriceFeed, ReferencePrice
    from trade_executor import TradeExecutor


TICK_SECONDS = 1.0
INITIAL_DELAY_RANGE = (5, 30)       # seconds before an agent's first action
ACTION_DELAY_RANGE = (5, 15)        # seconds between actions
HOLD_RANGE = (30, 180)              # seconds a fresh position is held
RECOVERED_HOLD = 5.0
RECOVERED_AGE = 10.0


class AgentScheduler:
    def __init__(
        self,
        agents: List[AgentState],
        feed: "PriceFeed",
        executor: "TradeExecutor",
        leaderboard: "LeaderboardAggregator",
        markets: Dict[str, "MarketConfig"],
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        tick_seconds: float = TICK_SECONDS,
    ) -> None:
        self.agents = agents
        self.feed = feed
        self.executor = executor
        self.leaderboard = leaderboard
        self.markets = markets
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self.tick_seconds = tick_seconds
        self.running = False
        self._scheduled = False
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None

    # ── Scheduling ────────────────────────────────────────────────────────────

    def schedule_initial(self) -> None:
        now = self._clock.now()
        for agent in self.agents:
            agent.next_action_at = now + self._rng.randint(*INITIAL_DELAY_RANGE)
        self._scheduled = True

    def _reschedule(self, agent: AgentState, now: float) -> None:
        agent.next_action_at = now + self._rng.randint(*ACTION_DELAY_RANGE)

    def record_prices(self, now: float) -> None:
        for agent in self.agents:
            price = self.feed.latest_prices.get(agent.market)
            if price is not None:
                agent.record_price(price.adjusted_price, now)

    # ── Tick ──────────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        if not self._scheduled:
            self.schedule_initial()
        now = self._clock.now()
        self.record_prices(now)

        for agent in self.agents:
            if self._stop_requested:
                break
            if now < agent.next_action_at:
                continue
            try:
                await self.run_agent(agent, now)
            except Exception:
                logger.exception(f"Agent {agent.agent_id} error")
            self._reschedule(agent, now)

        if self.leaderboard.should_flush():
            try:
                await self.leaderboard.flush()
            except Exception:
                logger.exception("Leaderboard flush error")

    async def run_agent(self, agent: AgentState, now: float) -> None:
        market = self.markets.get(agent.market)
        if market is None or not market.deployed:
            return
        price = self.feed.latest_prices.get(agent.market)
        if price is None:
            return

        if not agent.initialized:
            recovered = await self.initialize(agent, price, now)
            if recovered or not agent.initialized:
                return

        position = agent.position
        if position.is_open:
            if position.hold_elapsed(now):
                await self.close_position(agent, price)
            return

        scenario = self.feed.active_scenario
        intent = strategies.propose(agent, price, scenario, now, self._rng)
        if intent is None:
            return
        await self.open_position(agent, intent, price, now)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self, agent: AgentState, price: "ReferencePrice", now: float) -> bool:
        """
        Bring an agent to ACTIVE. Returns True when an existing on-ledger
        account was adopted; that tick performs no trade.
        """
        agent.status = AgentStatus.INITIALIZING
        try:
            slot = await self.executor.find_existing_slot(agent)
            if slot is not None:
                agent.slot = slot
                size = await self.executor.read_position(agent)
                agent.status = AgentStatus.ACTIVE
                if size != 0:
                    p = agent.position
                    p.size = size
                    p.hold_target = RECOVERED_HOLD
                    p.opened_at = now - RECOVERED_AGE
                    p.entry_price = price.adjusted_price
                    p.entry_price_e6 = price.price_e6
                    logger.info(
                        f"{agent.agent_id} recovered slot {slot} with open {p.side} {abs(size)}"
                    )
                else:
                    logger.info(f"{agent.agent_id} recovered slot {slot} (flat)")
                return True

            agent.slot = await self.executor.register(agent)
            agent.status = AgentStatus.ACTIVE
            logger.info(f"{agent.agent_id} initialized fresh (slot {agent.slot})")
            return False
        except Exception as exc:
            agent.status = AgentStatus.UNINITIALIZED
            agent.slot = None
            logger.error(f"Init failed for {agent.agent_id}: {exc}")
            return False

    async def open_position(
        self, agent: AgentState, intent: "strategies.OrderIntent", price: "ReferencePrice", now: float
    ) -> None:
        sig = await self.executor.open(agent, intent.size, price)
        p = agent.position
        p.size = intent.size
        p.opened_at = now
        p.hold_target = float(self._rng.randint(*HOLD_RANGE))
        p.entry_price = price.adjusted_price
        p.entry_price_e6 = price.price_e6
        agent.trade_count += 1
        logger.info(
            f"{agent.agent_id} {'LONG' if intent.is_long else 'SHORT'} {agent.market} "
            f"@ {price.adjusted_price:.2f} {intent.leverage:.1f}x ({intent.reason}) sig={sig[:14]}..."
        )

    async def close_position(self, agent: AgentState, price: "ReferencePrice") -> None:
        p = agent.position
        side = p.side
        sig, pnl_e6 = await self.executor.close(agent, price)
        self.leaderboard.add(LeaderboardDelta(
            wallet=agent.identity,
            display_name=agent.display_name,
            pnl_delta=pnl_e6,
            deposited_delta=notional_e6(p.size, p.entry_price_e6),
            is_win=pnl_e6 > 0,
        ))
        logger.info(
            f"{agent.agent_id} CLOSED {side.upper()} @ {price.adjusted_price:.2f} "
            f"pnl={pnl_e6 / 1e6:+.2f} sig={sig[:14]}..."
        )
        p.reset()
        agent.trade_count += 1

    # ── Loop ──────────────────────────────────────────────────────────────────

    async def run(self) -> None:
        self.running = True
        self._stop_requested = False
        logger.info(f"Agent fleet started: {len(self.agents)} agents")
        while self.running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick error")
            if self.running:
                await self._clock.sleep(self.tick_seconds)
        logger.info("Agent fleet stopped")

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="agent-scheduler")
        return self._task

    def stop(self) -> None:
        self._stop_requested = True
        self.running = False
