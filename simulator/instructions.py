"""
instructions.py — Binary encoding of the ledger program's instructions.

Every instruction is a 1-byte tag followed by little-endian fixed-width
fields, plus a fixed, ordered account list. This module only encodes; the
program interprets.

    tag  instruction            payload
    ---  ---------------------  ------------------------------------------
      1  register-identity      fee_payment u64
      3  deposit-collateral     slot u16, amount u64
      5  keeper-crank           caller_slot u16, allow_panic u8
     10  execute-trade          lp_slot u16, user_slot u16, size i128
     17  push-reference-price   price_e6 u64, timestamp i64
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence, Tuple

from fixed_point import U64_MAX, FixedPointOverflow, i128_to_le_bytes


class InstructionTag(IntEnum):
    REGISTER_IDENTITY = 1
    DEPOSIT_COLLATERAL = 3
    KEEPER_CRANK = 5
    EXECUTE_TRADE = 10
    PUSH_REFERENCE_PRICE = 17


# Slot index meaning "no caller slot" for permissionless cranks
CRANK_NO_CALLER = 0xFFFF
CLOCK_SYSVAR = "0x0000000000000000000000000000000000000c10"

U16_MAX = 0xFFFF
I64_MIN = -(1 << 63)
I64_MAX = (1 << 63) - 1


class InstructionEncodingError(ValueError):
    """Raised when a field does not fit its wire type or accounts mismatch."""


# ─── Accounts ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AccountSpec:
    name: str
    signer: bool
    writable: bool


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool

    def to_dict(self) -> dict:
        return {"pubkey": self.pubkey, "isSigner": self.is_signer, "isWritable": self.is_writable}


@dataclass(frozen=True)
class Instruction:
    program_id: str
    keys: Tuple[AccountMeta, ...]
    data: bytes

    @property
    def tag(self) -> int:
        return self.data[0]

    def signers(self) -> List[str]:
        return [k.pubkey for k in self.keys if k.is_signer]


ACCOUNTS_REGISTER_IDENTITY = (
    AccountSpec("user", signer=True, writable=True),
    AccountSpec("payer", signer=True, writable=True),
    AccountSpec("slab", signer=False, writable=True),
)

ACCOUNTS_DEPOSIT_COLLATERAL = (
    AccountSpec("user", signer=True, writable=False),
    AccountSpec("funder", signer=True, writable=True),
    AccountSpec("slab", signer=False, writable=True),
    AccountSpec("clock", signer=False, writable=False),
)

ACCOUNTS_KEEPER_CRANK = (
    AccountSpec("caller", signer=True, writable=False),
    AccountSpec("slab", signer=False, writable=True),
    AccountSpec("clock", signer=False, writable=False),
    AccountSpec("oracle", signer=False, writable=False),
)

ACCOUNTS_EXECUTE_TRADE = (
    AccountSpec("user", signer=True, writable=False),
    AccountSpec("lp", signer=True, writable=False),
    AccountSpec("slab", signer=False, writable=True),
    AccountSpec("clock", signer=False, writable=False),
    AccountSpec("oracle", signer=False, writable=False),
)

ACCOUNTS_PUSH_REFERENCE_PRICE = (
    AccountSpec("authority", signer=True, writable=False),
    AccountSpec("slab", signer=False, writable=True),
)


def build_account_metas(specs: Sequence[AccountSpec], pubkeys: Sequence[str]) -> Tuple[AccountMeta, ...]:
    if len(specs) != len(pubkeys):
        names = ", ".join(s.name for s in specs)
        raise InstructionEncodingError(
            f"expected {len(specs)} accounts ({names}), got {len(pubkeys)}"
        )
    return tuple(
        AccountMeta(pubkey=key, is_signer=spec.signer, is_writable=spec.writable)
        for spec, key in zip(specs, pubkeys)
    )


# ─── Payload Encoders ─────────────────────────────────────────────────────────


def _check_range(name: str, value: int, lo: int, hi: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise InstructionEncodingError(f"{name} must be an int, got {type(value).__name__}")
    if value < lo or value > hi:
        raise InstructionEncodingError(f"{name}={value} out of range [{lo}, {hi}]")
    return value


def encode_register_identity(fee_payment: int) -> bytes:
    _check_range("fee_payment", fee_payment, 0, U64_MAX)
    return struct.pack("<BQ", InstructionTag.REGISTER_IDENTITY, fee_payment)


def encode_deposit_collateral(slot: int, amount: int) -> bytes:
    _check_range("slot", slot, 0, U16_MAX)
    _check_range("amount", amount, 0, U64_MAX)
    return struct.pack("<BHQ", InstructionTag.DEPOSIT_COLLATERAL, slot, amount)


def encode_keeper_crank(caller_slot: int = CRANK_NO_CALLER, allow_panic: bool = False) -> bytes:
    _check_range("caller_slot", caller_slot, 0, U16_MAX)
    return struct.pack("<BHB", InstructionTag.KEEPER_CRANK, caller_slot, 1 if allow_panic else 0)


def encode_execute_trade(lp_slot: int, user_slot: int, size: int) -> bytes:
    _check_range("lp_slot", lp_slot, 0, U16_MAX)
    _check_range("user_slot", user_slot, 0, U16_MAX)
    if size == 0:
        raise InstructionEncodingError("trade size must be non-zero")
    try:
        size_bytes = i128_to_le_bytes(size)
    except FixedPointOverflow as exc:
        raise InstructionEncodingError(str(exc)) from exc
    return struct.pack("<BHH", InstructionTag.EXECUTE_TRADE, lp_slot, user_slot) + size_bytes


def encode_push_reference_price(price_e6: int, timestamp: int) -> bytes:
    _check_range("price_e6", price_e6, 1, U64_MAX)
    _check_range("timestamp", timestamp, I64_MIN, I64_MAX)
    return struct.pack("<BQq", InstructionTag.PUSH_REFERENCE_PRICE, price_e6, timestamp)


# ─── Instruction Builders ─────────────────────────────────────────────────────


def register_identity_ix(program_id: str, user: str, payer: str, slab: str, fee_payment: int) -> Instruction:
    return Instruction(
        program_id=program_id,
        keys=build_account_metas(ACCOUNTS_REGISTER_IDENTITY, [user, payer, slab]),
        data=encode_register_identity(fee_payment),
    )


def deposit_collateral_ix(
    program_id: str, user: str, funder: str, slab: str, slot: int, amount: int
) -> Instruction:
    return Instruction(
        program_id=program_id,
        keys=build_account_metas(ACCOUNTS_DEPOSIT_COLLATERAL, [user, funder, slab, CLOCK_SYSVAR]),
        data=encode_deposit_collateral(slot, amount),
    )


def keeper_crank_ix(program_id: str, caller: str, slab: str, oracle: str) -> Instruction:
    return Instruction(
        program_id=program_id,
        keys=build_account_metas(ACCOUNTS_KEEPER_CRANK, [caller, slab, CLOCK_SYSVAR, oracle]),
        data=encode_keeper_crank(),
    )


def execute_trade_ix(
    program_id: str,
    user: str,
    lp_owner: str,
    slab: str,
    oracle: str,
    lp_slot: int,
    user_slot: int,
    size: int,
) -> Instruction:
    return Instruction(
        program_id=program_id,
        keys=build_account_metas(ACCOUNTS_EXECUTE_TRADE, [user, lp_owner, slab, CLOCK_SYSVAR, oracle]),
        data=encode_execute_trade(lp_slot, user_slot, size),
    )


def push_reference_price_ix(
    program_id: str, authority: str, slab: str, price_e6: int, timestamp: int
) -> Instruction:
    return Instruction(
        program_id=program_id,
        keys=build_account_metas(ACCOUNTS_PUSH_REFERENCE_PRICE, [authority, slab]),
        data=encode_push_reference_price(price_e6, timestamp),
    )
