"""
Tests for main.py — startup helpers and fatal configuration errors.
"""

from __future__ import annotations

import os
import sys

import pytest
from eth_account import Account

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import main as entry
from config import ConfigError, MarketConfig, MarketsConfig
from roster import RosterEntry
from agent import StrategyType

KEY = "0x" + "0d" * 32


class TestHelpers:
    def test_load_admin(self):
        assert entry.load_admin(KEY).address == Account.from_key(KEY).address

    def test_load_admin_rejects_garbage(self):
        with pytest.raises(ConfigError, match="SIM_ADMIN_KEY"):
            entry.load_admin("0x1234")

    def test_build_agents_skips_unknown_market(self):
        markets = MarketsConfig(program_id="0x" + "11" * 20, markets={
            "SOL/USD": MarketConfig("SOL/USD", "0x" + "22" * 20),
        })
        entries = [
            RosterEntry("market_maker_1", StrategyType.MARKET_MAKER, "SOL/USD", KEY),
            RosterEntry("market_maker_2", StrategyType.MARKET_MAKER, "DOGE/USD", KEY),
        ]
        agents = entry.build_agents(entries, markets)
        assert [a.agent_id for a in agents] == ["market_maker_1"]
        assert agents[0].identity == Account.from_key(KEY).address

    def test_setup_logging_creates_log_dir(self, tmp_path):
        log_file = tmp_path / "logs" / "sim.log"
        entry.setup_logging("DEBUG", str(log_file))
        assert log_file.parent.is_dir()


class TestMain:
    def test_missing_config_exits_nonzero(self, monkeypatch, tmp_path):
        def fail():
            raise ConfigError("Missing required env var: RPC_URL")

        monkeypatch.setattr(entry.SimConfig, "from_env", staticmethod(fail))
        monkeypatch.setattr(entry, "setup_logging", lambda *a, **k: None)
        assert entry.main([]) == 1

    def test_missing_markets_file_exits_nonzero(self, monkeypatch, tmp_path):
        config = entry.SimConfig(
            rpc_url="http://127.0.0.1:8899",
            admin_key=KEY,
            store_url="https://store.example",
            store_service_key="svc",
        )
        monkeypatch.setattr(entry.SimConfig, "from_env", staticmethod(lambda: config))
        monkeypatch.setattr(entry, "setup_logging", lambda *a, **k: None)
        assert entry.main(["--markets-config", str(tmp_path / "none.json"), "--no-agents"]) == 1
        assert config.disable_agents is True

    def test_bad_roster_key_exits_nonzero(self, monkeypatch, tmp_path):
        async def healthy(self):
            return None

        markets = tmp_path / "sim-markets.json"
        markets.write_text('{"programId": "0x' + "11" * 20 + '", "markets": {}}')
        config = entry.SimConfig(
            rpc_url="http://127.0.0.1:8899",
            admin_key=KEY,
            store_url="https://store.example",
            store_service_key="svc",
            markets_config_path=str(markets),
            wallets_json='{"bots": [{"botId": "market_maker_1", "type": "market_maker", '
                         '"market": "SOL/USD", "privateKey": "0xnothex"}]}',
        )
        monkeypatch.setattr(entry.SimConfig, "from_env", staticmethod(lambda: config))
        monkeypatch.setattr(entry.LedgerClient, "validate_network", healthy)
        monkeypatch.setattr(entry, "setup_logging", lambda *a, **k: None)
        assert entry.main([]) == 1
