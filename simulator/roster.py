"""
roster.py — Agent identity roster.

The roster lists every simulated trader: its id, strategy, market and
signing key. It is read from the SIM_BOT_WALLETS environment variable
(inline JSON) when set, otherwise from a JSON file:

    {
      "generatedAt": "2025-01-01T00:00:00Z",
      "bots": [
        {"botId": "trend_follower_1", "type": "trend_follower",
         "market": "SOL/USD", "address": "0x...", "privateKey": "0x..."}
      ]
    }

Usage:
    python roster.py --out config/sim-bot-wallets.json --per-type 5
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from eth_account import Account
from loguru import logger

from agent import StrategyType
from config import ConfigError

DEFAULT_MARKETS = ("SOL/USD", "BTC/USD", "ETH/USD")
AGENTS_PER_STRATEGY = 5


@dataclass
class RosterEntry:
    agent_id: str
    strategy: StrategyType
    market: str
    private_key: str
    address: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "RosterEntry":
        try:
            agent_id = raw["botId"]
            strategy = StrategyType(raw["type"])
            market = raw["market"]
            private_key = raw["privateKey"]
        except KeyError as exc:
            raise ConfigError(f"roster entry missing {exc.args[0]}: {raw.get('botId', raw)}") from exc
        except ValueError as exc:
            raise ConfigError(f"roster entry {raw.get('botId')} has unknown type {raw.get('type')!r}") from exc

        try:
            address = Account.from_key(private_key).address
        except (ValueError, TypeError) as exc:
            raise ConfigError(f"roster entry {agent_id} has an invalid privateKey: {exc}") from exc
        declared = raw.get("address")
        if declared and declared.lower() != address.lower():
            raise ConfigError(f"roster entry {agent_id}: address does not match its key")
        return cls(agent_id, strategy, market, private_key, address)

    def to_dict(self) -> dict:
        return {
            "botId": self.agent_id,
            "type": self.strategy.value,
            "market": self.market,
            "address": self.address,
            "privateKey": self.private_key,
        }

    def account(self):
        return Account.from_key(self.private_key)


def parse_roster(data: dict) -> List[RosterEntry]:
    entries = [RosterEntry.from_dict(raw) for raw in data.get("bots") or []]
    seen = set()
    for entry in entries:
        if entry.agent_id in seen:
            raise ConfigError(f"duplicate agent id in roster: {entry.agent_id}")
        seen.add(entry.agent_id)
    return entries


def load_roster(wallets_json: Optional[str], wallets_file: str) -> List[RosterEntry]:
    """
    Inline JSON wins over the file. A missing file is not an error: the
    feed can run without agents, so an empty roster is returned.
    """
    if wallets_json:
        try:
            data = json.loads(wallets_json)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"SIM_BOT_WALLETS is not valid JSON: {exc}") from exc
        logger.info("Loaded agent roster from SIM_BOT_WALLETS")
        return parse_roster(data)

    path = Path(wallets_file)
    if not path.exists():
        logger.warning(f"{path} not found and SIM_BOT_WALLETS not set; no agents will run")
        return []
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"roster file {path} is not valid JSON: {exc}") from exc
    logger.info(f"Loaded agent roster from {path}")
    return parse_roster(data)


def generate_roster(
    markets: Sequence[str] = DEFAULT_MARKETS,
    per_strategy: int = AGENTS_PER_STRATEGY,
) -> List[RosterEntry]:
    """Fresh identities: `per_strategy` agents of each type, markets assigned round-robin."""
    if not markets:
        raise ValueError("at least one market is required")
    entries = []
    for strategy in StrategyType:
        for i in range(1, per_strategy + 1):
            account = Account.create()
            entries.append(RosterEntry(
                agent_id=f"{strategy.value}_{i}",
                strategy=strategy,
                market=markets[(i - 1) % len(markets)],
                private_key="0x" + bytes(account.key).hex(),
                address=account.address,
            ))
    return entries


def roster_to_json(entries: Sequence[RosterEntry]) -> str:
    payload = {
        "generatedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "bots": [e.to_dict() for e in entries],
    }
    return json.dumps(payload, indent=2)


# ─── CLI ──────────────────────────────────────────────────────────────────────


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="roster",
        description="Generate a roster of simulated trader identities",
    )
    parser.add_argument("--out", type=str, default="config/sim-bot-wallets.json",
                        help="Output path")
    parser.add_argument("--per-type", type=int, default=AGENTS_PER_STRATEGY,
                        help="Agents per strategy type")
    parser.add_argument("--markets", type=str, default=",".join(DEFAULT_MARKETS),
                        help="Comma-separated market symbols")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    args = _parse_args(argv)
    out = Path(args.out)
    if out.exists() and not args.force:
        print(f"{out} already exists (use --force to overwrite)")
        return 1

    markets = [m.strip() for m in args.markets.split(",") if m.strip()]
    entries = generate_roster(markets, args.per_type)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(roster_to_json(entries))

    print(f"Wrote {len(entries)} identities to {out}")
    for e in entries:
        print(f"  {e.agent_id:<18} {e.market:<8} {e.address}")
    print("Keep this file private: it holds signing keys.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
