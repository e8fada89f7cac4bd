#!/usr/bin/env python3
"""
main.py — Market Simulator Entry Point

Runs the simulated market as one process:
1. Price feed: fetches real prices, applies the active scenario, pushes
   them to every deployed market and cranks it
2. Agent fleet: simulated traders that open and close leveraged positions
   against the shared counterparty (starts a few seconds after the feed)
3. Weekly leaderboard and trade log in the relational store
4. Health endpoint on HEALTH_PORT

Usage:
    python main.py [--no-agents] [--port 3001]

Environment:
    See .env.example for required configuration.
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

import httpx
from eth_account import Account
from loguru import logger

from agent import AgentState
from config import ConfigError, MarketsConfig, SimConfig
from health_api import HealthServer, create_app
from leaderboard import LeaderboardAggregator
from ledger_client import LedgerClient, LedgerError, LedgerSession
from price_feed import PriceFeed
from roster import RosterEntry, load_roster
from scenario_engine import ScenarioEngine
from scheduler import AgentScheduler
from store_client import StoreClient
from trade_executor import TradeExecutor


def setup_logging(log_level: str = "INFO", log_file: str = "logs/sim.log") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    logger.add(
        log_file,
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


def load_admin(private_key: str):
    try:
        account = Account.from_key(private_key)
    except (ValueError, TypeError) as e:
        raise ConfigError(f"SIM_ADMIN_KEY is not a valid private key: {e}") from e
    logger.info(f"Admin / counterparty: {account.address}")
    return account


def build_agents(entries: List[RosterEntry], markets: MarketsConfig) -> List[AgentState]:
    agents = []
    for entry in entries:
        if entry.market not in markets.markets:
            logger.warning(f"{entry.agent_id}: unknown market {entry.market}, skipping")
            continue
        agents.append(AgentState(
            agent_id=entry.agent_id,
            strategy=entry.strategy,
            market=entry.market,
            account=entry.account(),
        ))
    return agents


async def _wait_or_stop(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`; True if a stop was requested meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def run_service(config: SimConfig) -> int:
    markets = MarketsConfig.load(config.markets_config_path)
    admin = load_admin(config.admin_key)
    deployed = markets.deployed_markets()
    logger.info(
        f"Markets: {', '.join(markets.markets)} ({len(deployed)} deployed) "
        f"program={markets.program_id}"
    )

    http = httpx.AsyncClient(timeout=10.0)
    store = StoreClient(config.store_url, config.store_service_key, http=http)
    ledger = LedgerClient(config.rpc_url, LedgerSession())
    try:
        await ledger.validate_network()
    except LedgerError as e:
        logger.warning(f"Ledger health check failed, continuing: {e}")

    scenarios = ScenarioEngine(store)
    feed = PriceFeed(markets, ledger, admin, scenarios, store, http=http, interval=config.feed_interval)

    scheduler: Optional[AgentScheduler] = None
    leaderboard: Optional[LeaderboardAggregator] = None
    if config.disable_agents:
        logger.info("Agents disabled (DISABLE_BOTS=true)")
    else:
        agents = build_agents(load_roster(config.wallets_json, config.wallets_file), markets)
        if agents:
            leaderboard = LeaderboardAggregator(store)
            executor = TradeExecutor(ledger, admin, markets.program_id, markets.markets, store=store)
            scheduler = AgentScheduler(
                agents, feed, executor, leaderboard, markets.markets,
                tick_seconds=config.agent_tick,
            )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    health = HealthServer(create_app(feed, scheduler), port=config.health_port)
    health.start()
    tasks = [feed.start()]

    if scheduler is not None and not await _wait_or_stop(stop, config.agent_start_delay):
        tasks.append(scheduler.start())

    await stop.wait()
    logger.info("Shutting down...")
    feed.stop()
    if scheduler is not None:
        scheduler.stop()

    done, pending = await asyncio.wait(tasks, timeout=config.shutdown_grace)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    while leaderboard is not None and leaderboard.buffer:
        await leaderboard.flush(force=True)
    await health.stop()
    await ledger.aclose()
    await http.aclose()
    logger.info("Simulator stopped")
    return 0


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Market simulator: price feed and agent fleet")
    parser.add_argument("--no-agents", action="store_true",
                        help="Run the price feed only (same as DISABLE_BOTS=true)")
    parser.add_argument("--port", type=int, help="Health endpoint port (overrides HEALTH_PORT)")
    parser.add_argument("--markets-config", type=str, help="Path to sim-markets.json")
    args = parser.parse_args(argv)

    try:
        config = SimConfig.from_env()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Startup failed: {e}")
        return 1

    if args.no_agents:
        config.disable_agents = True
    if args.port:
        config.health_port = args.port
    if args.markets_config:
        config.markets_config_path = args.markets_config

    setup_logging(config.log_level, config.log_file)

    try:
        return asyncio.run(run_service(config))
    except ConfigError as e:
        logger.error(f"Startup failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
