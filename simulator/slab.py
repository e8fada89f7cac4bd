"""
slab.py — Read-only decoding of a market account ("slab").

A slab is one large account holding the market engine header followed by a
fixed array of per-user account records. Only three things are read here:
which slot an identity owns, the signed position size of a slot, and the
counterparty details of the liquidity-provider slot.

Layout:
    [0, ENGINE_OFF)                       program header
    ENGINE_OFF + accounts_off             first account record
    record i at base + i * ACCOUNT_SIZE   240 bytes each

accounts_off depends on max_accounts (a used-slot bitmap and a free list
precede the records) and on whether the build pads to 16 bytes, so the
layout is detected from the total data length.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from web3 import Web3

from fixed_point import i128_from_le_bytes


ENGINE_OFF = 392
ACCOUNT_SIZE = 240

ACCT_POSITION_SIZE_OFF = 80         # i128
ACCT_MATCHER_PROG_OFF = 120         # 32 bytes
ACCT_MATCHER_CTX_OFF = 152          # 32 bytes
ACCT_OWNER_OFF = 184                # 32 bytes

OWNER_FIELD_LEN = 32
ADDRESS_LEN = 20

MAX_ACCOUNTS_CANDIDATES = (64, 256, 1024, 4096)
_HEADER_FIXED = 408
_POST_BITMAP = 24


class SlabLayoutError(ValueError):
    """Raised when slab data cannot hold the requested record."""


@dataclass(frozen=True)
class SlabLayout:
    max_accounts: int
    accounts_off: int
    aligned: bool = True

    @property
    def accounts_base(self) -> int:
        return ENGINE_OFF + self.accounts_off

    @property
    def data_len(self) -> int:
        return self.accounts_base + self.max_accounts * ACCOUNT_SIZE

    def record_offset(self, slot: int) -> int:
        return self.accounts_base + slot * ACCOUNT_SIZE


@dataclass(frozen=True)
class LpInfo:
    owner: str
    matcher_program: bytes
    matcher_context: bytes


def _unaligned_offset(max_accounts: int) -> int:
    bitmap_bytes = math.ceil(max_accounts / 64) * 8
    return _HEADER_FIXED + bitmap_bytes + _POST_BITMAP + max_accounts * 2


def accounts_offset(max_accounts: int, aligned: bool = True) -> int:
    raw = _unaligned_offset(max_accounts)
    return math.ceil(raw / 16) * 16 if aligned else raw


def detect_layout(data_len: int) -> SlabLayout:
    """
    Match the data length against every known build. Falls back to the
    64-account aligned layout when nothing matches exactly.
    """
    for n in MAX_ACCOUNTS_CANDIDATES:
        for aligned in (True, False):
            layout = SlabLayout(n, accounts_offset(n, aligned), aligned)
            if layout.data_len == data_len:
                return layout
    return SlabLayout(64, accounts_offset(64, True), True)


def owner_bytes(address: str) -> bytes:
    """32-byte owner field for an address (20 bytes, left-padded with zeros)."""
    if not Web3.is_address(address):
        raise ValueError(f"not an address: {address!r}")
    raw = bytes.fromhex(address[2:] if address.startswith("0x") else address)
    return raw.rjust(OWNER_FIELD_LEN, b"\x00")


def _address_from_owner(field: bytes) -> str:
    return Web3.to_checksum_address("0x" + field[-ADDRESS_LEN:].hex())


def find_user_slot(data: bytes, address: str) -> Optional[int]:
    """Slot index owned by `address`, or None when it has no account."""
    target = owner_bytes(address)
    layout = detect_layout(len(data))
    for slot in range(layout.max_accounts):
        base = layout.record_offset(slot)
        if base + ACCOUNT_SIZE > len(data):
            break
        if data[base + ACCT_OWNER_OFF:base + ACCT_OWNER_OFF + OWNER_FIELD_LEN] == target:
            return slot
    return None


def _record(data: bytes, slot: int) -> memoryview:
    layout = detect_layout(len(data))
    if slot < 0 or slot >= layout.max_accounts:
        raise SlabLayoutError(f"slot {slot} outside 0..{layout.max_accounts - 1}")
    base = layout.record_offset(slot)
    if base + ACCOUNT_SIZE > len(data):
        raise SlabLayoutError(f"slab data truncated at slot {slot} ({len(data)} bytes)")
    return memoryview(data)[base:base + ACCOUNT_SIZE]


def read_position_size(data: bytes, slot: int) -> int:
    record = _record(data, slot)
    return i128_from_le_bytes(bytes(record[ACCT_POSITION_SIZE_OFF:ACCT_POSITION_SIZE_OFF + 16]))


def read_lp_info(data: bytes, slot: int = 0) -> LpInfo:
    record = _record(data, slot)
    return LpInfo(
        owner=_address_from_owner(bytes(record[ACCT_OWNER_OFF:ACCT_OWNER_OFF + OWNER_FIELD_LEN])),
        matcher_program=bytes(record[ACCT_MATCHER_PROG_OFF:ACCT_MATCHER_PROG_OFF + 32]),
        matcher_context=bytes(record[ACCT_MATCHER_CTX_OFF:ACCT_MATCHER_CTX_OFF + 32]),
    )
