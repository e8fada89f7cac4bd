"""
Shared fixtures: an in-memory JSON-RPC ledger served through
httpx.MockTransport, an in-memory relational store and a slab builder.
"""

from __future__ import annotations

import base64
import json
import os
import struct
import sys
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from eth_account import Account

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from clock import ManualClock
from fixed_point import i128_from_le_bytes, i128_to_le_bytes
from ledger_client import LedgerClient, LedgerSession
from slab import (
    ACCT_OWNER_OFF,
    ACCT_POSITION_SIZE_OFF,
    SlabLayout,
    accounts_offset,
    detect_layout,
    owner_bytes,
)


PROGRAM_ID = "0x" + "11" * 20
SLAB_SOL = "0x" + "22" * 20
SLAB_BTC = "0x" + "33" * 20


def key_for(n: int) -> str:
    return "0x" + f"{n:064x}"


ADMIN = Account.from_key(key_for(1))


# ─── Slab Builder ─────────────────────────────────────────────────────────────


def build_slab(
    owners: Optional[Dict[int, str]] = None,
    positions: Optional[Dict[int, int]] = None,
    max_accounts: int = 64,
    aligned: bool = True,
) -> bytearray:
    layout = SlabLayout(max_accounts, accounts_offset(max_accounts, aligned), aligned)
    data = bytearray(layout.data_len)
    for slot, address in (owners or {}).items():
        base = layout.record_offset(slot) + ACCT_OWNER_OFF
        data[base:base + 32] = owner_bytes(address)
    for slot, size in (positions or {}).items():
        base = layout.record_offset(slot) + ACCT_POSITION_SIZE_OFF
        data[base:base + 16] = i128_to_le_bytes(size)
    return data


@pytest.fixture
def slab_builder() -> Callable[..., bytearray]:
    return build_slab


# ─── Fake Ledger ──────────────────────────────────────────────────────────────


LANDED = {"slot": 10, "confirmationStatus": "confirmed", "err": None}


class FakeChain:
    """
    Minimal ledger behind a JSON-RPC endpoint.

    Applies register-identity and execute-trade instructions to slab bytes
    so slot assignment and positions behave like the real program.

    `send_plan` controls what happens to each submission, in order:
      "land"      - confirmed immediately
      "late"      - lands, but is only visible once block height passes expiry
      "late_err"  - like "late" but landed with a program error
      "drop"      - never lands; block height jumps past expiry
      "slow"      - lands, but its status stays hidden for `slow_lookups`
                    status queries; block height does not jump
      "stall"     - never lands; block height does not jump
      "reject"    - refused at submission with a blockhash error
    Once the plan is exhausted every submission lands.
    """

    def __init__(self) -> None:
        self.block_height = 100
        self.valid_for = 150
        self.block_time = 1_700_000_000
        self.accounts: Dict[str, bytearray] = {}
        self.statuses: Dict[str, dict] = {}
        self.late: Dict[str, dict] = {}
        self.sent: List[dict] = []
        self.send_plan: List[str] = []
        self.fail_status_lookup = False
        self.fail_methods: set = set()
        self.slow: Dict[str, list] = {}
        self.slow_lookups = 70
        self.height_step = 0
        self.calls: List[str] = []
        self._blockhash_counter = 0

    # ── Program ───────────────────────────────────────────────────────────────

    def _apply(self, message: dict) -> None:
        for ix in message["instructions"]:
            data = base64.b64decode(ix["data"])
            keys = [k["pubkey"] for k in ix["keys"]]
            tag = data[0]
            if tag == 1:
                slab = self.accounts[keys[2].lower()]
                self._assign_slot(slab, keys[0])
            elif tag == 10:
                slab = self.accounts[keys[2].lower()]
                lp_slot, user_slot = struct.unpack_from("<HH", data, 1)
                size = i128_from_le_bytes(data[5:21])
                self._add_position(slab, user_slot, size)
                self._add_position(slab, lp_slot, -size)

    @staticmethod
    def _record_base(slab: bytearray, slot: int) -> int:
        return detect_layout(len(slab)).record_offset(slot)

    def _assign_slot(self, slab: bytearray, owner: str) -> None:
        layout = detect_layout(len(slab))
        empty = bytes(32)
        for slot in range(layout.max_accounts):
            base = layout.record_offset(slot) + ACCT_OWNER_OFF
            if slab[base:base + 32] == empty:
                slab[base:base + 32] = owner_bytes(owner)
                return
        raise RuntimeError("slab full")

    def _add_position(self, slab: bytearray, slot: int, size: int) -> None:
        base = self._record_base(slab, slot) + ACCT_POSITION_SIZE_OFF
        current = i128_from_le_bytes(bytes(slab[base:base + 16]))
        slab[base:base + 16] = i128_to_le_bytes(current + size)

    def position(self, slab_address: str, slot: int) -> int:
        slab = self.accounts[slab_address.lower()]
        base = self._record_base(slab, slot) + ACCT_POSITION_SIZE_OFF
        return i128_from_le_bytes(bytes(slab[base:base + 16]))

    # ── RPC ───────────────────────────────────────────────────────────────────

    def _send(self, encoded: str) -> str:
        tx = json.loads(base64.b64decode(encoded))
        outcome = self.send_plan.pop(0) if self.send_plan else "land"
        if outcome == "reject":
            raise RuntimeError("Transaction simulation failed: Blockhash not found")
        self.sent.append(tx)
        sig = tx["signatures"][0]["signature"]
        if outcome == "land":
            self._apply(tx["message"])
            self.statuses[sig] = dict(LANDED)
        elif outcome == "late":
            self._apply(tx["message"])
            self.late[sig] = dict(LANDED)
            self.block_height += 1000
        elif outcome == "late_err":
            self.late[sig] = {"slot": 10, "confirmationStatus": "confirmed", "err": {"Custom": 6}}
            self.block_height += 1000
        elif outcome == "drop":
            self.block_height += 1000
        elif outcome == "slow":
            self._apply(tx["message"])
            self.slow[sig] = [self.slow_lookups, dict(LANDED)]
        return sig

    def dispatch(self, method: str, params: list) -> Any:
        if method == "getHealth":
            return "ok"
        if method == "getSlot":
            return 1234
        if method == "getBlockTime":
            return self.block_time
        if method == "getBlockHeight":
            self.block_height += self.height_step
            height = self.block_height
            self.statuses.update(self.late)
            self.late.clear()
            return height
        if method == "getLatestBlockhash":
            self._blockhash_counter += 1
            return {
                "context": {"slot": 1},
                "value": {
                    "blockhash": "0x" + f"{self._blockhash_counter:064x}",
                    "lastValidBlockHeight": self.block_height + self.valid_for,
                },
            }
        if method == "getAccountInfo":
            data = self.accounts.get(params[0].lower())
            if data is None:
                return {"context": {"slot": 1}, "value": None}
            return {
                "context": {"slot": 1},
                "value": {"data": [base64.b64encode(bytes(data)).decode(), "base64"], "owner": PROGRAM_ID},
            }
        if method == "sendTransaction":
            return self._send(params[0])
        if method == "getSignatureStatuses":
            if self.fail_status_lookup:
                raise RuntimeError("status lookup unavailable")
            for sig in params[0]:
                pending = self.slow.get(sig)
                if pending is not None:
                    pending[0] -= 1
                    if pending[0] <= 0:
                        self.statuses[sig] = self.slow.pop(sig)[1]
            return {"context": {"slot": 1}, "value": [self.statuses.get(s) for s in params[0]]}
        raise KeyError(method)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.calls.append(method)
        if method in self.fail_methods:
            return httpx.Response(500, text="internal error")
        try:
            result = self.dispatch(method, body.get("params") or [])
        except RuntimeError as exc:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "error": {"code": -32000, "message": str(exc)}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def submissions(self) -> int:
        return len(self.sent)


@pytest.fixture
def chain() -> FakeChain:
    c = FakeChain()
    c.accounts[SLAB_SOL.lower()] = build_slab(owners={0: ADMIN.address})
    c.accounts[SLAB_BTC.lower()] = build_slab(owners={0: ADMIN.address})
    return c


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_700_000_000.0)


@pytest.fixture
def ledger(chain, clock) -> LedgerClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(chain.handler))
    return LedgerClient("http://ledger.test", LedgerSession(), http=http, clock=clock, poll_interval=1.0)


# ─── Fake Store ───────────────────────────────────────────────────────────────


def _matches(row: dict, filters: Dict[str, str]) -> bool:
    for column, expr in filters.items():
        op, _, value = expr.partition(".")
        current = row.get(column)
        if op == "eq" and str(current) != value:
            return False
        if op == "lt" and not (current is not None and float(current) < float(value)):
            return False
    return True


class FakeStore:
    """In-memory stand-in for StoreClient with PostgREST eq./lt. filters."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[dict]] = {}
        self.fail_tables: set = set()
        self.calls: List[tuple] = []

    def _check(self, table: str) -> None:
        from store_client import StoreError
        if table in self.fail_tables:
            raise StoreError(f"{table} unavailable", status_code=503)

    async def select(self, table, filters=None, order=None, limit=None, columns="*"):
        self.calls.append(("select", table))
        self._check(table)
        rows = [dict(r) for r in self.tables.get(table, []) if _matches(r, filters or {})]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: r.get(column) or "", reverse=direction == "desc")
        return rows[:limit] if limit is not None else rows

    async def insert(self, table, rows):
        self.calls.append(("insert", table))
        self._check(table)
        rows = [rows] if isinstance(rows, dict) else list(rows)
        self.tables.setdefault(table, []).extend(dict(r) for r in rows)

    async def update(self, table, filters, values):
        self.calls.append(("update", table))
        self._check(table)
        for row in self.tables.get(table, []):
            if _matches(row, filters):
                row.update(values)

    async def delete(self, table, filters):
        self.calls.append(("delete", table))
        self._check(table)
        self.tables[table] = [r for r in self.tables.get(table, []) if not _matches(r, filters)]


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
