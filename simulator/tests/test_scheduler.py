"""
Tests for scheduler.py

Covers:
  - Initial and per-action scheduling windows
  - Fresh registration trades on the same tick; recovery does not
  - Failed initialization falls back to UNINITIALIZED
  - A long simulated run: positions on the ledger always match local
    state and never change size without passing through flat
"""

from __future__ import annotations

import os
import random
import sys
from types import SimpleNamespace

import pytest
from eth_account import Account

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent import AgentState, AgentStatus, StrategyType
from config import MarketConfig
from conftest import ADMIN, PROGRAM_ID, SLAB_SOL, key_for
from fixed_point import price_to_e6
from leaderboard import LEADERBOARD_TABLE, LeaderboardAggregator
from price_feed import ReferencePrice
from scheduler import (
    ACTION_DELAY_RANGE,
    INITIAL_DELAY_RANGE,
    RECOVERED_AGE,
    RECOVERED_HOLD,
    AgentScheduler,
)
from trade_executor import TradeExecutor

MARKETS = {
    "SOL/USD": MarketConfig("SOL/USD", SLAB_SOL),
    "ETH/USD": MarketConfig("ETH/USD", None),
}


def ref(price: float, symbol: str = "SOL/USD") -> ReferencePrice:
    return ReferencePrice(symbol, price, price, price_to_e6(price), 0.0)


def make_agent(n: int, strategy=StrategyType.MARKET_MAKER, market="SOL/USD") -> AgentState:
    return AgentState(f"{strategy.value}_{n}", strategy, market, Account.from_key(key_for(10 + n)))


@pytest.fixture
def feed():
    return SimpleNamespace(latest_prices={"SOL/USD": ref(150.0)}, active_scenario=None)


@pytest.fixture
def make_scheduler(ledger, store, clock, feed):
    def factory(agents, seed: int = 42) -> AgentScheduler:
        executor = TradeExecutor(ledger, ADMIN, PROGRAM_ID, MARKETS, store=store)
        leaderboard = LeaderboardAggregator(store, clock)
        return AgentScheduler(agents, feed, executor, leaderboard, MARKETS, clock, random.Random(seed))
    return factory


# ─── Scheduling ───────────────────────────────────────────────────────────────


class TestScheduling:
    def test_initial_delays(self, make_scheduler, clock):
        agents = [make_agent(i) for i in range(20)]
        make_scheduler(agents).schedule_initial()
        lo, hi = INITIAL_DELAY_RANGE
        for agent in agents:
            assert clock.now() + lo <= agent.next_action_at <= clock.now() + hi

    @pytest.mark.asyncio
    async def test_due_agent_rescheduled(self, make_scheduler, clock):
        agent = make_agent(1)
        scheduler = make_scheduler([agent])
        scheduler.schedule_initial()
        agent.next_action_at = clock.now()
        await scheduler.tick()
        lo, hi = ACTION_DELAY_RANGE
        assert clock.now() + lo <= agent.next_action_at <= clock.now() + hi

    @pytest.mark.asyncio
    async def test_agent_not_due_is_skipped(self, make_scheduler, chain, clock):
        agent = make_agent(1)
        scheduler = make_scheduler([agent])
        scheduler.schedule_initial()
        await scheduler.tick()
        assert chain.submissions() == 0
        assert agent.status == AgentStatus.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_prices_recorded_every_tick(self, make_scheduler, clock):
        agent = make_agent(1, StrategyType.TREND_FOLLOWER)
        scheduler = make_scheduler([agent])
        for _ in range(3):
            await scheduler.tick()
            clock.advance(1)
        assert [s.price for s in agent.price_history] == [150.0] * 3


# ─── Lifecycle ────────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_fresh_agent_trades_on_first_tick(self, make_scheduler, chain, clock):
        agent = make_agent(1)
        scheduler = make_scheduler([agent])
        await scheduler.run_agent(agent, clock.now())
        assert agent.status == AgentStatus.ACTIVE
        assert agent.slot == 1
        # register + deposit + open
        assert chain.submissions() == 3
        assert agent.position.is_open
        assert chain.position(SLAB_SOL, 1) == agent.position.size
        lo, hi = 30, 180
        assert lo <= agent.position.hold_target <= hi

    @pytest.mark.asyncio
    async def test_recovered_agent_waits_then_closes(self, make_scheduler, chain, clock, slab_builder):
        agent = make_agent(1)
        chain.accounts[SLAB_SOL.lower()][:] = slab_builder(
            owners={0: ADMIN.address, 3: agent.identity}, positions={0: 2_000_000, 3: -2_000_000}
        )
        scheduler = make_scheduler([agent])
        now = clock.now()
        await scheduler.run_agent(agent, now)

        assert chain.submissions() == 0
        assert agent.slot == 3
        assert agent.position.size == -2_000_000
        assert agent.position.hold_target == RECOVERED_HOLD
        assert agent.position.opened_at == now - RECOVERED_AGE

        await scheduler.run_agent(agent, now + 1)
        assert chain.submissions() == 1
        assert chain.position(SLAB_SOL, 3) == 0
        assert not agent.position.is_open
        assert len(scheduler.leaderboard.buffer) == 1

    @pytest.mark.asyncio
    async def test_recovered_flat_agent(self, make_scheduler, chain, clock, slab_builder):
        agent = make_agent(1)
        chain.accounts[SLAB_SOL.lower()][:] = slab_builder(owners={0: ADMIN.address, 2: agent.identity})
        scheduler = make_scheduler([agent])
        await scheduler.run_agent(agent, clock.now())
        assert agent.status == AgentStatus.ACTIVE
        assert agent.slot == 2
        assert not agent.position.is_open
        assert chain.submissions() == 0

    @pytest.mark.asyncio
    async def test_failed_init_returns_to_uninitialized(self, make_scheduler, chain, clock):
        agent = make_agent(1)
        scheduler = make_scheduler([agent])
        chain.fail_methods.add("sendTransaction")
        await scheduler.run_agent(agent, clock.now())
        assert agent.status == AgentStatus.UNINITIALIZED
        assert agent.slot is None

        chain.fail_methods.clear()
        await scheduler.run_agent(agent, clock.now() + 10)
        assert agent.status == AgentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_undeployed_market_does_nothing(self, make_scheduler, chain, clock, feed):
        feed.latest_prices["ETH/USD"] = ref(3_000.0, "ETH/USD")
        agent = make_agent(1, market="ETH/USD")
        await make_scheduler([agent]).run_agent(agent, clock.now())
        assert chain.submissions() == 0
        assert agent.status == AgentStatus.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_agent_error_does_not_stop_others(self, make_scheduler, chain, clock):
        first, second = make_agent(1), make_agent(2)
        scheduler = make_scheduler([first, second])
        scheduler.schedule_initial()
        first.next_action_at = second.next_action_at = clock.now()
        first.status = AgentStatus.ACTIVE       # claims to be active without a slot
        await scheduler.tick()
        assert second.position.is_open
        assert first.next_action_at > clock.now()

    @pytest.mark.asyncio
    async def test_stop_ends_tick_early(self, make_scheduler, chain, clock):
        agents = [make_agent(i) for i in range(3)]
        scheduler = make_scheduler(agents)
        scheduler.schedule_initial()
        for agent in agents:
            agent.next_action_at = clock.now()
        scheduler.stop()
        await scheduler.tick()
        assert chain.submissions() == 0


# ─── Long Run ─────────────────────────────────────────────────────────────────


class TestLongRun:
    @pytest.mark.asyncio
    async def test_positions_consistent_and_never_flip(self, make_scheduler, chain, clock, store, feed):
        agents = [
            make_agent(1, StrategyType.MARKET_MAKER),
            make_agent(2, StrategyType.TREND_FOLLOWER),
            make_agent(3, StrategyType.MEAN_REVERTER),
        ]
        scheduler = make_scheduler(agents, seed=7)
        walk = random.Random(99)
        price = 150.0
        last_size = {a.agent_id: 0 for a in agents}

        for _ in range(900):
            price *= 1 + walk.uniform(-0.002, 0.002)
            feed.latest_prices["SOL/USD"] = ref(round(price, 4))
            await scheduler.tick()
            for agent in agents:
                size = agent.position.size
                if agent.slot is not None:
                    assert chain.position(SLAB_SOL, agent.slot) == size
                previous = last_size[agent.agent_id]
                assert previous == 0 or size == 0 or size == previous
                last_size[agent.agent_id] = size
            clock.advance(1)

        assert all(a.initialized for a in agents)
        closes = sum(a.trade_count // 2 for a in agents)
        assert closes > 0

        while scheduler.leaderboard.buffer:
            await scheduler.leaderboard.flush(force=True)
        rows = store.tables[LEADERBOARD_TABLE]
        assert sum(r["trade_count"] for r in rows) == closes
        assert {r["wallet"] for r in rows} <= {a.identity for a in agents}
