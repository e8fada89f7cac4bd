"""
ledger_client.py — JSON-RPC transport and transaction signing for the ledger.

The ledger exposes a JSON-RPC 2.0 endpoint. A transaction is a canonical
JSON message (recent blockhash, fee payer, instructions) hashed with keccak;
every required signer signs that hash as an eth_account message. The first
signature (the fee payer's) is the transaction id.

A transaction is valid until the chain's block height passes the
`lastValidBlockHeight` returned alongside its blockhash. Confirmation polls
the signature status and raises TransactionExpiredError once that height is
passed without the transaction landing.

Process-wide cached facts (whether the network has been validated, the
estimated drift between local and cluster time) live on a LedgerSession
object passed in by the caller.

Usage:
    session = LedgerSession()
    ledger = LedgerClient(rpc_url, session)
    sig = await ledger.send_and_confirm([ix], [admin, agent_account])
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

import httpx
from eth_account.messages import encode_defunct
from loguru import logger
from web3 import Web3

from clock import Clock, SystemClock
from instructions import Instruction


if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount


DEFAULT_COMMITMENT = "confirmed"
LANDED_STATUSES = ("confirmed", "finalized")
POLL_INTERVAL_SECONDS = 1.0
CONFIRM_TIMEOUT_SECONDS = 60.0
DRIFT_REFRESH_SECONDS = 60.0
BLOCKHASH_REJECTION_MARKERS = ("blockhash", "expired")


# ─── Exceptions ───────────────────────────────────────────────────────────────


class LedgerError(Exception):
    """Base class for ledger interaction failures."""


class RpcError(LedgerError):
    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class TransactionExpiredError(LedgerError):
    """The blockhash expired before the transaction was seen as landed."""

    def __init__(self, signature: str, last_valid_block_height: int) -> None:
        super().__init__(
            f"transaction {signature} expired (block height passed {last_valid_block_height})"
        )
        self.signature = signature
        self.last_valid_block_height = last_valid_block_height


class TransactionFailedError(LedgerError):
    """The transaction landed but the program returned an error."""

    def __init__(self, signature: str, err: Any) -> None:
        super().__init__(f"transaction {signature} failed: {err}")
        self.signature = signature
        self.err = err


class BlockhashRejectedError(RpcError):
    """The node refused a submission because its blockhash is unknown or expired; nothing landed."""


class ConfirmationTimeoutError(LedgerError):
    """Still pending when the wait ran out; the transaction may yet land."""

    def __init__(self, signature: str, timeout: float, last_valid_block_height: int) -> None:
        super().__init__(f"transaction {signature} not confirmed within {timeout:.0f}s")
        self.signature = signature
        self.timeout = timeout
        self.last_valid_block_height = last_valid_block_height


# ─── Session ──────────────────────────────────────────────────────────────────


@dataclass
class LedgerSession:
    """Facts learned about the ledger that are shared across all callers."""
    network_validated: bool = False
    clock_drift: float = 0.0            # cluster time minus local time, seconds
    drift_sampled_at: Optional[float] = None


# ─── Wire Types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Blockhash:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    slot: int
    confirmation_status: Optional[str]
    err: Any = None

    @property
    def landed(self) -> bool:
        return self.err is None and self.confirmation_status in LANDED_STATUSES

    @classmethod
    def from_rpc(cls, raw: Dict[str, Any]) -> "SignatureStatus":
        return cls(
            slot=int(raw.get("slot", 0)),
            confirmation_status=raw.get("confirmationStatus"),
            err=raw.get("err"),
        )


@dataclass
class Transaction:
    fee_payer: str
    recent_blockhash: str
    instructions: List[Instruction]
    signatures: Dict[str, str] = field(default_factory=dict)     # lowercased address -> 0x sig

    def required_signers(self) -> List[str]:
        """Fee payer first, then instruction signers in order of appearance."""
        ordered = [self.fee_payer]
        for ix in self.instructions:
            for key in ix.signers():
                if key.lower() not in (k.lower() for k in ordered):
                    ordered.append(key)
        return ordered

    def message(self) -> Dict[str, Any]:
        return {
            "recentBlockhash": self.recent_blockhash,
            "feePayer": self.fee_payer,
            "instructions": [
                {
                    "programId": ix.program_id,
                    "keys": [k.to_dict() for k in ix.keys],
                    "data": base64.b64encode(ix.data).decode(),
                }
                for ix in self.instructions
            ],
        }

    def message_bytes(self) -> bytes:
        return json.dumps(self.message(), sort_keys=True, separators=(",", ":")).encode()

    def message_hash(self) -> bytes:
        return bytes(Web3.keccak(self.message_bytes()))

    def sign(self, accounts: Sequence["LocalAccount"]) -> None:
        by_address = {a.address.lower(): a for a in accounts}
        digest = encode_defunct(primitive=self.message_hash())
        for signer in self.required_signers():
            account = by_address.get(signer.lower())
            if account is None:
                raise LedgerError(f"missing signer {signer}")
            signed = account.sign_message(digest)
            self.signatures[signer.lower()] = Web3.to_hex(signed.signature)

    @property
    def signature(self) -> str:
        """Transaction id: the fee payer's signature."""
        sig = self.signatures.get(self.fee_payer.lower())
        if sig is None:
            raise LedgerError("transaction is not signed by its fee payer")
        return sig

    def serialize(self) -> str:
        payload = {
            "message": self.message(),
            "signatures": [
                {"pubkey": s, "signature": self.signatures[s.lower()]}
                for s in self.required_signers()
                if s.lower() in self.signatures
            ],
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
        return base64.b64encode(raw).decode()


# ─── Client ───────────────────────────────────────────────────────────────────


class LedgerClient:
    """
    Async JSON-RPC client. All network calls go through `_call`, which turns
    transport failures and JSON-RPC error objects into RpcError.
    """

    def __init__(
        self,
        rpc_url: str,
        session: Optional[LedgerSession] = None,
        http: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        commitment: str = DEFAULT_COMMITMENT,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        confirm_timeout: float = CONFIRM_TIMEOUT_SECONDS,
        timeout: float = 30.0,
    ) -> None:
        self.rpc_url = rpc_url
        self.session = session or LedgerSession()
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._clock = clock or SystemClock()
        self.commitment = commitment
        self.poll_interval = poll_interval
        self.confirm_timeout = confirm_timeout
        self._next_id = 1
        self.submissions = 0

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _call(self, method: str, params: Optional[list] = None) -> Any:
        request_id = self._next_id
        self._next_id += 1
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or []}
        try:
            resp = await self._http.post(self.rpc_url, json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise RpcError(f"{method} transport error: {exc}") from exc
        except ValueError as exc:
            raise RpcError(f"{method} returned invalid JSON") from exc

        if data.get("error"):
            err = data["error"]
            raise RpcError(f"{method}: {err.get('message', err)}", code=err.get("code"))
        return data.get("result")

    # ── Queries ───────────────────────────────────────────────────────────────

    async def get_health(self) -> str:
        return await self._call("getHealth")

    async def get_slot(self) -> int:
        return int(await self._call("getSlot", [{"commitment": self.commitment}]))

    async def get_block_height(self) -> int:
        return int(await self._call("getBlockHeight", [{"commitment": self.commitment}]))

    async def get_block_time(self, slot: int) -> Optional[int]:
        result = await self._call("getBlockTime", [slot])
        return int(result) if result is not None else None

    async def get_latest_blockhash(self) -> Blockhash:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = result["value"]
        return Blockhash(value["blockhash"], int(value["lastValidBlockHeight"]))

    async def get_account_info(self, address: str) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        result = await self._call(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}]
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        encoded, _encoding = value["data"]
        return base64.b64decode(encoded)

    async def get_signature_statuses(
        self, signatures: Sequence[str], search_history: bool = True
    ) -> List[Optional[SignatureStatus]]:
        result = await self._call(
            "getSignatureStatuses",
            [list(signatures), {"searchTransactionHistory": search_history}],
        )
        return [SignatureStatus.from_rpc(s) if s else None for s in result["value"]]

    async def signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """Status of one signature, searching full history. None if unknown."""
        statuses = await self.get_signature_statuses([signature], search_history=True)
        return statuses[0] if statuses else None

    # ── Session Facts ─────────────────────────────────────────────────────────

    async def validate_network(self) -> None:
        if self.session.network_validated:
            return
        health = await self.get_health()
        if health != "ok":
            raise LedgerError(f"ledger node unhealthy: {health!r}")
        self.session.network_validated = True
        logger.info(f"Ledger network validated at {self.rpc_url}")

    async def cluster_time(self) -> int:
        """
        Cluster unix time in seconds, from local time plus a cached drift
        estimate that is resampled at most once per DRIFT_REFRESH_SECONDS.
        """
        now = self._clock.now()
        sampled = self.session.drift_sampled_at
        if sampled is None or now - sampled >= DRIFT_REFRESH_SECONDS:
            try:
                slot = await self.get_slot()
                block_time = await self.get_block_time(slot)
            except RpcError as exc:
                logger.warning(f"Cluster time unavailable, using cached drift: {exc}")
                block_time = None
            if block_time is not None:
                self.session.clock_drift = block_time - now
                self.session.drift_sampled_at = now
                logger.debug(f"Cluster clock drift {self.session.clock_drift:+.1f}s")
        return int(now + self.session.clock_drift)

    # ── Transactions ──────────────────────────────────────────────────────────

    async def build_transaction(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence["LocalAccount"],
    ) -> Tuple[Transaction, Blockhash]:
        """Build and sign with a fresh blockhash. signers[0] pays fees."""
        if not signers:
            raise LedgerError("a transaction needs at least one signer")
        blockhash = await self.get_latest_blockhash()
        tx = Transaction(
            fee_payer=signers[0].address,
            recent_blockhash=blockhash.blockhash,
            instructions=list(instructions),
        )
        tx.sign(signers)
        return tx, blockhash

    async def send_transaction(self, tx: Transaction) -> str:
        self.submissions += 1
        try:
            result = await self._call(
                "sendTransaction",
                [tx.serialize(), {"encoding": "base64", "preflightCommitment": self.commitment}],
            )
        except RpcError as exc:
            # node rejections only; transport errors carry no code
            message = str(exc).lower()
            if exc.code is not None and any(m in message for m in BLOCKHASH_REJECTION_MARKERS):
                raise BlockhashRejectedError(str(exc), exc.code) from exc
            raise
        return str(result)

    async def confirm(
        self,
        signature: str,
        last_valid_block_height: int,
        timeout: Optional[float] = CONFIRM_TIMEOUT_SECONDS,
    ) -> None:
        """
        Poll until the transaction lands, fails or its blockhash expires.
        `timeout=None` waits for one of those outcomes with no wall-clock limit.
        """
        started = self._clock.now()
        while True:
            status = await self.signature_status(signature)
            if status is not None:
                if status.err is not None:
                    raise TransactionFailedError(signature, status.err)
                if status.landed:
                    return
            if await self.get_block_height() > last_valid_block_height:
                raise TransactionExpiredError(signature, last_valid_block_height)
            if timeout is not None and self._clock.now() - started >= timeout:
                raise ConfirmationTimeoutError(signature, timeout, last_valid_block_height)
            await self._clock.sleep(self.poll_interval)

    async def send_and_confirm(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence["LocalAccount"],
    ) -> str:
        tx, blockhash = await self.build_transaction(instructions, signers)
        signature = await self.send_transaction(tx)
        if signature.lower() != tx.signature.lower():
            logger.warning(f"Node returned signature {signature}, expected {tx.signature}")
        await self.confirm(tx.signature, blockhash.last_valid_block_height, self.confirm_timeout)
        return tx.signature
