"""
config.py — Process configuration for the market simulator.

Reads the environment (with .env support via python-dotenv) and the JSON
market deployment file. Any missing required value raises ConfigError,
which the entry point treats as fatal before any loop starts.

Environment:
    RPC_URL               — ledger JSON-RPC endpoint (required)
    SIM_ADMIN_KEY         — hex private key of the admin / counterparty (required)
    SUPABASE_URL          — relational store base URL (required)
    SUPABASE_SERVICE_KEY  — store service credential (required)
    HEALTH_PORT           — health endpoint port (default 3001)
    DISABLE_BOTS          — "true" to run the price feed without agents
    SIM_MARKETS_CONFIG    — path to sim-markets.json (default config/sim-markets.json)
    SIM_BOT_WALLETS       — inline roster JSON (takes precedence over the file)
    SIM_BOT_WALLETS_FILE  — roster file (default config/sim-bot-wallets.json)
    LOG_LEVEL / LOG_FILE  — logging sinks
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv
from web3 import Web3


# ─── Defaults ─────────────────────────────────────────────────────────────────

DEFAULT_HEALTH_PORT = 3001
DEFAULT_MARKETS_CONFIG = "config/sim-markets.json"
DEFAULT_WALLETS_FILE = "config/sim-bot-wallets.json"
DEFAULT_LOG_FILE = "logs/sim.log"

FEED_INTERVAL_SECONDS = 5.0        # devnet rate limits; independent of agent tick
AGENT_TICK_SECONDS = 1.0
AGENT_START_DELAY_SECONDS = 5.0    # let the feed publish prices before agents act
SHUTDOWN_GRACE_SECONDS = 2.0


class ConfigError(Exception):
    """Raised for missing or malformed startup configuration."""


def require_env(key: str, env: Optional[Mapping[str, str]] = None) -> str:
    source = os.environ if env is None else env
    value = source.get(key, "").strip()
    if not value:
        raise ConfigError(f"Missing required env var: {key}")
    return value


def _to_address(value: str, what: str) -> str:
    if not Web3.is_address(value):
        raise ConfigError(f"{what} is not a valid address: {value!r}")
    return Web3.to_checksum_address(value)


# ─── Market Deployment ────────────────────────────────────────────────────────


@dataclass
class MarketConfig:
    """One deployed (or pending) market: its symbol and market account."""
    symbol: str                 # "SOL/USD"
    slab: Optional[str]         # market account address; None until deployed
    name: str = ""

    @property
    def deployed(self) -> bool:
        return bool(self.slab)


@dataclass
class MarketsConfig:
    program_id: str
    network: str = "devnet"
    collateral_decimals: int = 6
    markets: Dict[str, MarketConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "MarketsConfig":
        if "programId" not in data:
            raise ConfigError("markets config has no programId")
        markets: Dict[str, MarketConfig] = {}
        for symbol, raw in (data.get("markets") or {}).items():
            slab = raw.get("slab") or None
            markets[symbol] = MarketConfig(
                symbol=symbol,
                slab=_to_address(slab, f"slab for {symbol}") if slab else None,
                name=raw.get("name", symbol),
            )
        collateral = data.get("simUSDC") or data.get("collateral") or {}
        return cls(
            program_id=_to_address(data["programId"], "programId"),
            network=data.get("network", "devnet"),
            collateral_decimals=int(collateral.get("decimals", 6)),
            markets=markets,
        )

    @classmethod
    def load(cls, path: str | Path) -> "MarketsConfig":
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"markets config not found: {path}")
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ConfigError(f"markets config {path} is not valid JSON: {exc}") from exc
        return cls.from_dict(data)

    def deployed_markets(self) -> Dict[str, MarketConfig]:
        return {s: m for s, m in self.markets.items() if m.deployed}


# ─── Process Config ───────────────────────────────────────────────────────────


@dataclass
class SimConfig:
    rpc_url: str
    admin_key: str
    store_url: str
    store_service_key: str
    health_port: int = DEFAULT_HEALTH_PORT
    disable_agents: bool = False
    markets_config_path: str = DEFAULT_MARKETS_CONFIG
    wallets_json: Optional[str] = None
    wallets_file: str = DEFAULT_WALLETS_FILE
    log_level: str = "INFO"
    log_file: str = DEFAULT_LOG_FILE
    feed_interval: float = FEED_INTERVAL_SECONDS
    agent_tick: float = AGENT_TICK_SECONDS
    agent_start_delay: float = AGENT_START_DELAY_SECONDS
    shutdown_grace: float = SHUTDOWN_GRACE_SECONDS

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SimConfig":
        """
        Build config from the environment. Loads .env first when reading the
        real process environment; an explicit mapping is used as-is (tests).
        """
        if env is None:
            load_dotenv()
            env = os.environ

        port_raw = env.get("HEALTH_PORT", str(DEFAULT_HEALTH_PORT))
        try:
            health_port = int(port_raw)
        except ValueError as exc:
            raise ConfigError(f"HEALTH_PORT must be an integer, got {port_raw!r}") from exc

        return cls(
            rpc_url=require_env("RPC_URL", env),
            admin_key=require_env("SIM_ADMIN_KEY", env),
            store_url=require_env("SUPABASE_URL", env).rstrip("/"),
            store_service_key=require_env("SUPABASE_SERVICE_KEY", env),
            health_port=health_port,
            disable_agents=env.get("DISABLE_BOTS", "").lower() == "true",
            markets_config_path=env.get("SIM_MARKETS_CONFIG", DEFAULT_MARKETS_CONFIG),
            wallets_json=env.get("SIM_BOT_WALLETS") or None,
            wallets_file=env.get("SIM_BOT_WALLETS_FILE", DEFAULT_WALLETS_FILE),
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_file=env.get("LOG_FILE", DEFAULT_LOG_FILE),
        )
