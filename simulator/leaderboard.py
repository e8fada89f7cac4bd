"""
leaderboard.py — Weekly leaderboard aggregation for agent trades.

Each closed position produces a LeaderboardDelta. Deltas are buffered and
merged into the store's sim_leaderboard table, one row per (wallet, week),
where a week starts Monday 00:00 UTC. The merge is a read-modify-write:
this process is the only writer of agent rows, so no locking is needed, and
because every field is a sum, count, max or min, the totals do not depend on
how deltas are split across flushes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from loguru import logger

from clock import Clock, SystemClock

if TYPE_CHECKING:
    from store_client import StoreClient


LEADERBOARD_TABLE = "sim_leaderboard"
FLUSH_INTERVAL = 15.0
FLUSH_THRESHOLD = 10
FLUSH_BATCH = 20


@dataclass
class LeaderboardDelta:
    wallet: str
    display_name: str
    pnl_delta: int              # USD at 1e6 scale
    deposited_delta: int        # closed notional at 1e6 scale
    is_win: bool


def week_start(now: float) -> str:
    """ISO-8601 timestamp of Monday 00:00 UTC of the week containing `now`."""
    dt = datetime.fromtimestamp(now, tz=timezone.utc)
    monday = (dt - timedelta(days=dt.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return monday.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _iso(now: float) -> str:
    return datetime.fromtimestamp(now, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    return int(value)


def merge_row(row: Dict[str, Any], delta: LeaderboardDelta, now: float) -> Dict[str, Any]:
    """Fields to PATCH onto an existing row after applying one delta."""
    best = row.get("best_trade")
    worst = row.get("worst_trade")
    stamp = _iso(now)
    return {
        "total_pnl": _as_int(row.get("total_pnl")) + delta.pnl_delta,
        "total_deposited": _as_int(row.get("total_deposited")) + delta.deposited_delta,
        "trade_count": _as_int(row.get("trade_count")) + 1,
        "win_count": _as_int(row.get("win_count")) + (1 if delta.is_win else 0),
        "best_trade": delta.pnl_delta if best is None else max(int(best), delta.pnl_delta),
        "worst_trade": delta.pnl_delta if worst is None else min(int(worst), delta.pnl_delta),
        "last_trade_at": stamp,
        "updated_at": stamp,
    }


def new_row(delta: LeaderboardDelta, week: str, now: float) -> Dict[str, Any]:
    stamp = _iso(now)
    return {
        "wallet": delta.wallet,
        "display_name": delta.display_name,
        "week_start": week,
        "total_pnl": delta.pnl_delta,
        "total_deposited": delta.deposited_delta,
        "trade_count": 1,
        "win_count": 1 if delta.is_win else 0,
        "liquidation_count": 0,
        "best_trade": delta.pnl_delta,
        "worst_trade": delta.pnl_delta,
        "last_trade_at": stamp,
        "updated_at": stamp,
    }


class LeaderboardAggregator:
    def __init__(self, store: "StoreClient", clock: Optional[Clock] = None) -> None:
        self.store = store
        self._clock = clock or SystemClock()
        self.buffer: List[LeaderboardDelta] = []
        self._last_flush = self._clock.now()
        self.written = 0
        self.failed = 0

    def add(self, delta: LeaderboardDelta) -> None:
        self.buffer.append(delta)

    def should_flush(self) -> bool:
        if not self.buffer:
            return False
        elapsed = self._clock.now() - self._last_flush
        return elapsed >= FLUSH_INTERVAL or len(self.buffer) >= FLUSH_THRESHOLD

    async def flush(self, force: bool = False) -> int:
        """Merge up to FLUSH_BATCH buffered deltas. Returns how many were written."""
        if not (force and self.buffer) and not self.should_flush():
            return 0
        now = self._clock.now()
        self._last_flush = now
        batch = self.buffer[:FLUSH_BATCH]
        del self.buffer[:FLUSH_BATCH]
        week = week_start(now)

        written = 0
        for delta in batch:
            try:
                await self._merge(delta, week, now)
                written += 1
            except Exception as exc:
                self.failed += 1
                logger.error(f"Leaderboard write failed for {delta.wallet}: {exc}")
        self.written += written
        if written:
            logger.info(f"Flushed {written} leaderboard entries")
        return written

    async def _merge(self, delta: LeaderboardDelta, week: str, now: float) -> None:
        key = {"wallet": f"eq.{delta.wallet}", "week_start": f"eq.{week}"}
        existing = await self.store.select(LEADERBOARD_TABLE, filters=key, limit=1)
        if existing:
            await self.store.update(LEADERBOARD_TABLE, key, merge_row(existing[0], delta, now))
        else:
            await self.store.insert(LEADERBOARD_TABLE, new_row(delta, week, now))
