"""
Tests for roster.py — loading, validation and generation of agent identities.
"""

from __future__ import annotations

import json
import os
import sys

import pytest
from eth_account import Account

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent import StrategyType
from config import ConfigError
from roster import (
    RosterEntry,
    generate_roster,
    load_roster,
    main,
    parse_roster,
    roster_to_json,
)

KEY = "0x" + "0a" * 32


def bot(bot_id="trend_follower_1", kind="trend_follower", key=KEY, **extra) -> dict:
    return {"botId": bot_id, "type": kind, "market": "SOL/USD", "privateKey": key, **extra}


class TestParsing:
    def test_entry(self):
        entry = RosterEntry.from_dict(bot())
        assert entry.strategy == StrategyType.TREND_FOLLOWER
        assert entry.address == Account.from_key(KEY).address
        assert entry.account().address == entry.address

    def test_declared_address_must_match_key(self):
        with pytest.raises(ConfigError, match="does not match"):
            RosterEntry.from_dict(bot(address="0x" + "00" * 20))

    def test_missing_field(self):
        raw = bot()
        del raw["market"]
        with pytest.raises(ConfigError, match="market"):
            RosterEntry.from_dict(raw)

    @pytest.mark.parametrize("key", ["0xnothex", "0x1234"])
    def test_invalid_private_key(self, key):
        with pytest.raises(ConfigError, match="invalid privateKey"):
            RosterEntry.from_dict(bot(key=key))

    def test_unknown_type(self):
        with pytest.raises(ConfigError, match="unknown type"):
            RosterEntry.from_dict(bot(kind="arbitrageur"))

    def test_duplicate_ids(self):
        with pytest.raises(ConfigError, match="duplicate"):
            parse_roster({"bots": [bot(), bot(key="0x" + "0b" * 32)]})


class TestLoading:
    def test_inline_json_wins(self, tmp_path):
        path = tmp_path / "wallets.json"
        path.write_text(json.dumps({"bots": [bot(), bot("trend_follower_2", key="0x" + "0c" * 32)]}))
        entries = load_roster(json.dumps({"bots": [bot()]}), str(path))
        assert len(entries) == 1

    def test_file(self, tmp_path):
        path = tmp_path / "wallets.json"
        path.write_text(json.dumps({"bots": [bot()]}))
        assert [e.agent_id for e in load_roster(None, str(path))] == ["trend_follower_1"]

    def test_missing_file_means_no_agents(self, tmp_path):
        assert load_roster(None, str(tmp_path / "missing.json")) == []

    def test_invalid_inline_json(self, tmp_path):
        with pytest.raises(ConfigError, match="SIM_BOT_WALLETS"):
            load_roster("[not json", str(tmp_path / "missing.json"))


class TestGeneration:
    def test_counts_and_markets(self):
        entries = generate_roster(["SOL/USD", "BTC/USD"], per_strategy=3)
        assert len(entries) == 9
        makers = [e for e in entries if e.strategy == StrategyType.MARKET_MAKER]
        assert [e.market for e in makers] == ["SOL/USD", "BTC/USD", "SOL/USD"]
        assert [e.agent_id for e in makers] == ["market_maker_1", "market_maker_2", "market_maker_3"]

    def test_generated_roster_parses_back(self):
        entries = generate_roster(per_strategy=1)
        parsed = parse_roster(json.loads(roster_to_json(entries)))
        assert [e.address for e in parsed] == [e.address for e in entries]
        assert len({e.address for e in parsed}) == 3

    def test_no_markets(self):
        with pytest.raises(ValueError):
            generate_roster([], per_strategy=1)


class TestCli:
    def test_writes_file(self, tmp_path, capsys):
        out = tmp_path / "config" / "wallets.json"
        assert main(["--out", str(out), "--per-type", "2", "--markets", "SOL/USD"]) == 0
        data = json.loads(out.read_text())
        assert len(data["bots"]) == 6
        assert "Wrote 6 identities" in capsys.readouterr().out

    def test_refuses_overwrite(self, tmp_path):
        out = tmp_path / "wallets.json"
        out.write_text("{}")
        assert main(["--out", str(out)]) == 1
        assert out.read_text() == "{}"
        assert main(["--out", str(out), "--per-type", "1", "--force"]) == 0
