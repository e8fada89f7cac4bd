"""
price_feed.py — Reference price feed for the simulated markets.

Every tick (default 5s):
  1. Fetch real prices from the Pyth Hermes HTTP API. A failed fetch aborts
     the whole tick.
  2. Resolve the active market scenario (cached by the ScenarioEngine).
  3. For each deployed market: apply the scenario, publish the result in
     `latest_prices`, push it to the ledger (timestamped with cluster time)
     and crank. A failure on one market is logged and only skips that market.
  4. Buffer a PriceRecord per successful push; flush the buffer to the store
     in batches and prune rows older than 24h every few minutes.

Usage:
    feed = PriceFeed(markets, ledger, admin, scenarios, store)
    task = feed.start()
    ...
    feed.stop()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

import httpx
from loguru import logger

from clock import Clock, SystemClock
from fixed_point import price_to_e6
from instructions import keeper_crank_ix, push_reference_price_ix
from scenario_engine import ScenarioEngine, ScenarioState

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from config import MarketsConfig
    from ledger_client import LedgerClient
    from store_client import StoreClient


# ─── Constants ────────────────────────────────────────────────────────────────

HERMES_URL = "https://hermes.pyth.network/v2/updates/price/latest"
HERMES_TIMEOUT = 5.0

PYTH_FEED_IDS: Dict[str, str] = {
    "SOL/USD": "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
    "BTC/USD": "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    "ETH/USD": "ff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
}

PRICE_HISTORY_TABLE = "sim_price_history"

TICK_INTERVAL = 5.0
FLUSH_INTERVAL = 10.0
FLUSH_THRESHOLD = 50            # flush early once this many records are waiting
FLUSH_BATCH = 50
BUFFER_CAP = 200                # hard cap after failed flushes; oldest dropped
RETENTION_SECONDS = 24 * 60 * 60
RETENTION_CHECK_INTERVAL = 5 * 60


class PriceFetchError(Exception):
    """Raised when the external reference price source cannot be read."""


# ─── Data Types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReferencePrice:
    symbol: str
    raw_price: float
    adjusted_price: float
    price_e6: int
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "rawPrice": self.raw_price,
            "adjustedPrice": self.adjusted_price,
            "priceE6": str(self.price_e6),
            "updatedAt": self.updated_at,
        }


@dataclass
class PriceRecord:
    slab_address: str
    symbol: str
    price_e6: int
    raw_price_e6: int
    scenario_type: Optional[str]
    timestamp: int                  # epoch milliseconds

    def to_row(self) -> Dict[str, Any]:
        # price columns are text in the store
        return {
            "slab_address": self.slab_address,
            "symbol": self.symbol,
            "price_e6": str(self.price_e6),
            "raw_price_e6": str(self.raw_price_e6),
            "scenario_type": self.scenario_type,
            "timestamp": self.timestamp,
        }


# ─── Hermes ───────────────────────────────────────────────────────────────────


async def fetch_hermes_prices(
    http: httpx.AsyncClient,
    feed_ids: Mapping[str, str] = PYTH_FEED_IDS,
    url: str = HERMES_URL,
    timeout: float = HERMES_TIMEOUT,
) -> Dict[str, float]:
    """Latest price per symbol: price.price * 10^expo for every parsed feed."""
    by_id = {fid.lower().removeprefix("0x"): symbol for symbol, fid in feed_ids.items()}
    params = [("ids[]", fid) for fid in feed_ids.values()]
    try:
        resp = await http.get(url, params=params, timeout=timeout)
    except httpx.HTTPError as exc:
        raise PriceFetchError(f"Hermes request failed: {exc}") from exc
    if resp.status_code != 200:
        raise PriceFetchError(f"Hermes HTTP {resp.status_code}")
    try:
        parsed = resp.json().get("parsed") or []
    except ValueError as exc:
        raise PriceFetchError("Hermes returned invalid JSON") from exc

    prices: Dict[str, float] = {}
    for entry in parsed:
        symbol = by_id.get(str(entry.get("id", "")).lower().removeprefix("0x"))
        if symbol is None:
            continue
        p = entry.get("price") or {}
        try:
            mantissa, expo = int(p["price"]), int(p["expo"])
            prices[symbol] = mantissa / 10 ** -expo if expo < 0 else float(mantissa * 10 ** expo)
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Malformed Hermes entry for {symbol}: {p}")
    return prices


# ─── Feed ─────────────────────────────────────────────────────────────────────


class PriceFeed:
    def __init__(
        self,
        markets: "MarketsConfig",
        ledger: "LedgerClient",
        admin: "LocalAccount",
        scenarios: ScenarioEngine,
        store: "StoreClient",
        http: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        interval: float = TICK_INTERVAL,
        feed_ids: Mapping[str, str] = PYTH_FEED_IDS,
    ) -> None:
        self.markets = markets
        self.ledger = ledger
        self.admin = admin
        self.scenarios = scenarios
        self.store = store
        self._http = http or httpx.AsyncClient()
        self._clock = clock or SystemClock()
        self.interval = interval
        self.feed_ids = dict(feed_ids)

        self.latest_prices: Dict[str, ReferencePrice] = {}
        self.active_scenario: Optional[ScenarioState] = None
        self.running = False
        self.last_tick_at: Optional[float] = None

        self.buffer: List[PriceRecord] = []
        self._last_flush = self._clock.now()
        self._last_cleanup: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

        self.ticks = 0
        self.push_failures = 0
        self.dropped_records = 0

    # ── Ledger ────────────────────────────────────────────────────────────────

    async def push_and_crank(self, slab: str, price_e6: int) -> str:
        """Push the reference price into the market, then crank it. Returns the crank tx id."""
        timestamp = await self.ledger.cluster_time()
        program = self.markets.program_id
        await self.ledger.send_and_confirm(
            [push_reference_price_ix(program, self.admin.address, slab, price_e6, timestamp)],
            [self.admin],
        )
        return await self.ledger.send_and_confirm(
            [keeper_crank_ix(program, self.admin.address, slab, oracle=slab)],
            [self.admin],
        )

    # ── Tick ──────────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        try:
            raw_prices = await fetch_hermes_prices(self._http, self.feed_ids)
        except PriceFetchError as exc:
            logger.error(f"Reference price fetch failed, skipping tick: {exc}")
            return

        scenario = await self.scenarios.active_scenario()
        self.active_scenario = scenario
        now = self._clock.now()

        for symbol, market in self.markets.markets.items():
            if not market.deployed:
                logger.warning(f"No slab deployed for {symbol}, skipping")
                continue
            raw = raw_prices.get(symbol)
            if not raw:
                logger.warning(f"No reference price for {symbol}")
                continue

            try:
                adjusted = self.scenarios.apply(raw, scenario)
                price_e6 = price_to_e6(adjusted)
                self.latest_prices[symbol] = ReferencePrice(symbol, raw, adjusted, price_e6, now)
                sig = await self.push_and_crank(market.slab, price_e6)
            except Exception as exc:
                self.push_failures += 1
                logger.error(f"Push/crank failed for {symbol}: {exc}")
                continue

            logger.debug(f"{symbol} {adjusted:.4f} (raw {raw:.4f}) crank={sig[:14]}...")
            self.buffer.append(PriceRecord(
                slab_address=market.slab,
                symbol=symbol,
                price_e6=price_e6,
                raw_price_e6=price_to_e6(raw),
                scenario_type=scenario.type.value if scenario else None,
                timestamp=int(now * 1000),
            ))

        self.ticks += 1
        self.last_tick_at = now
        await self.maybe_flush()
        await self.maybe_cleanup()

    # ── Persistence ───────────────────────────────────────────────────────────

    async def maybe_flush(self, force: bool = False) -> None:
        if not self.buffer:
            return
        now = self._clock.now()
        if not force and now - self._last_flush < FLUSH_INTERVAL and len(self.buffer) < FLUSH_THRESHOLD:
            return
        self._last_flush = now

        batch = self.buffer[:FLUSH_BATCH]
        del self.buffer[:FLUSH_BATCH]
        try:
            await self.store.insert(PRICE_HISTORY_TABLE, [r.to_row() for r in batch])
        except Exception as exc:
            logger.error(f"Price history flush failed ({len(batch)} records): {exc}")
            self.buffer[:0] = batch
            overflow = len(self.buffer) - BUFFER_CAP
            if overflow > 0:
                del self.buffer[:overflow]
                self.dropped_records += overflow
                logger.warning(f"Price buffer over cap, dropped {overflow} oldest records")
            return
        logger.info(f"Flushed {len(batch)} prices to {PRICE_HISTORY_TABLE}")

    async def maybe_cleanup(self) -> None:
        now = self._clock.now()
        if self._last_cleanup is not None and now - self._last_cleanup < RETENTION_CHECK_INTERVAL:
            return
        self._last_cleanup = now
        cutoff_ms = int((now - RETENTION_SECONDS) * 1000)
        try:
            await self.store.delete(PRICE_HISTORY_TABLE, {"timestamp": f"lt.{cutoff_ms}"})
        except Exception as exc:
            logger.error(f"Price history cleanup failed: {exc}")

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def run(self) -> None:
        self.running = True
        logger.info(
            f"Price feed started: {', '.join(self.markets.markets)} every {self.interval:.0f}s"
        )
        while self.running:
            started = self._clock.now()
            try:
                await self.tick()
            except Exception:
                logger.exception("Price feed tick error")
            elapsed = self._clock.now() - started
            if self.running:
                await self._clock.sleep(max(0.0, self.interval - elapsed))
        await self.maybe_flush(force=True)
        logger.info("Price feed stopped")

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="price-feed")
        return self._task

    def stop(self) -> None:
        self.running = False

    def is_fresh(self, max_age: float) -> bool:
        if self.last_tick_at is None:
            return False
        return self._clock.now() - self.last_tick_at <= max_age

    def stats(self) -> dict:
        return {
            "running": self.running,
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at,
            "buffered": len(self.buffer),
            "dropped": self.dropped_records,
            "push_failures": self.push_failures,
            "scenario": self.active_scenario.to_dict() if self.active_scenario else None,
        }
