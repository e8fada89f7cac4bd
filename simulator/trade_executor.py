"""
trade_executor.py — Registration, funding and position trades for agents.

Every trade is an execute-trade instruction signed by two parties: the
agent's identity and the shared counterparty (the admin key, which owns the
liquidity-provider slot 0 of every market). The counterparty also pays
transaction fees and the registration fee, and funds each agent's initial
collateral.

Expiry handling:
    A transaction whose blockhash expired may still have landed. Before the
    single retry the original signature is looked up with full history:
      landed            -> success, nothing is resubmitted
      landed with error -> TransactionFailedError
      unknown           -> rebuild with a fresh blockhash and submit once more
    A failing lookup propagates; we never resubmit blind.

    A confirmation that is merely slow is not a failure: the wait continues,
    without a wall-clock limit, until the transaction lands, fails or its
    blockhash expires, and only then goes through the check above.

    A submission the node rejects for an unknown or expired blockhash never
    landed and is rebuilt and submitted once more.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from loguru import logger

from fixed_point import e6_to_float, realized_pnl_e6
from instructions import (
    Instruction,
    deposit_collateral_ix,
    execute_trade_ix,
    register_identity_ix,
)
from ledger_client import (
    BlockhashRejectedError,
    ConfirmationTimeoutError,
    LedgerError,
    TransactionExpiredError,
    TransactionFailedError,
)
from slab import find_user_slot, read_lp_info, read_position_size

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from agent import AgentState
    from config import MarketConfig
    from ledger_client import LedgerClient
    from price_feed import ReferencePrice
    from store_client import StoreClient


LP_SLOT = 0
INIT_FEE_E6 = 1_000_000                 # 1 unit, matches the program's new-account fee
INITIAL_DEPOSIT_E6 = 1_000_000_000      # 1,000 units of collateral
TRADES_TABLE = "trades"


class TradeExecutor:
    def __init__(
        self,
        ledger: "LedgerClient",
        admin: "LocalAccount",
        program_id: str,
        markets: Dict[str, "MarketConfig"],
        store: Optional["StoreClient"] = None,
        initial_deposit: int = INITIAL_DEPOSIT_E6,
        init_fee: int = INIT_FEE_E6,
    ) -> None:
        self.ledger = ledger
        self.admin = admin
        self.program_id = program_id
        self.markets = markets
        self.store = store
        self.initial_deposit = initial_deposit
        self.init_fee = init_fee
        self._lp_checked: set = set()

    # ── Market Account ────────────────────────────────────────────────────────

    def _slab(self, agent: "AgentState") -> str:
        market = self.markets.get(agent.market)
        if market is None or not market.slab:
            raise LedgerError(f"market {agent.market} has no deployed slab")
        return market.slab

    async def _slab_data(self, slab: str) -> bytes:
        data = await self.ledger.get_account_info(slab)
        if data is None:
            raise LedgerError(f"slab account {slab} not found")
        return data

    async def _check_counterparty(self, slab: str) -> None:
        if slab in self._lp_checked:
            return
        lp = read_lp_info(await self._slab_data(slab), LP_SLOT)
        if lp.owner.lower() != self.admin.address.lower():
            raise LedgerError(
                f"slab {slab} LP slot owned by {lp.owner}, not the admin {self.admin.address}"
            )
        self._lp_checked.add(slab)

    async def find_existing_slot(self, agent: "AgentState") -> Optional[int]:
        data = await self._slab_data(self._slab(agent))
        return find_user_slot(data, agent.identity)

    async def read_position(self, agent: "AgentState") -> int:
        if agent.slot is None:
            raise LedgerError(f"{agent.agent_id} has no slot")
        data = await self._slab_data(self._slab(agent))
        return read_position_size(data, agent.slot)

    # ── Registration ──────────────────────────────────────────────────────────

    async def register(self, agent: "AgentState") -> int:
        """Register the agent on its market and deposit initial collateral. Returns the slot."""
        slab = self._slab(agent)
        signers = [self.admin, agent.account]

        sig = await self.ledger.send_and_confirm(
            [register_identity_ix(self.program_id, agent.identity, self.admin.address, slab, self.init_fee)],
            signers,
        )
        logger.info(f"{agent.agent_id} registered on {agent.market} tx={sig[:14]}...")

        slot = find_user_slot(await self._slab_data(slab), agent.identity)
        if slot is None:
            raise LedgerError(f"{agent.agent_id} registered but owns no slot on {slab}")

        sig = await self.ledger.send_and_confirm(
            [deposit_collateral_ix(
                self.program_id, agent.identity, self.admin.address, slab, slot, self.initial_deposit
            )],
            signers,
        )
        logger.info(
            f"{agent.agent_id} deposited {e6_to_float(self.initial_deposit):,.0f} into slot {slot} "
            f"tx={sig[:14]}..."
        )
        return slot

    # ── Trades ────────────────────────────────────────────────────────────────

    async def _submit_with_recheck(
        self,
        build: Callable[[], List[Instruction]],
        signers: List["LocalAccount"],
    ) -> str:
        try:
            return await self.ledger.send_and_confirm(build(), signers)
        except BlockhashRejectedError as exc:
            logger.warning(f"Submission rejected ({exc}); resubmitting once with a fresh blockhash")
            return await self.ledger.send_and_confirm(build(), signers)
        except ConfirmationTimeoutError as exc:
            logger.warning(
                f"Tx {exc.signature[:14]}... still pending after {exc.timeout:.0f}s; "
                f"waiting for it to land or expire"
            )
            try:
                await self.ledger.confirm(exc.signature, exc.last_valid_block_height, timeout=None)
            except TransactionExpiredError as expired:
                return await self._recheck_expired(expired, build, signers)
            return exc.signature
        except TransactionExpiredError as exc:
            return await self._recheck_expired(exc, build, signers)

    async def _recheck_expired(
        self,
        exc: TransactionExpiredError,
        build: Callable[[], List[Instruction]],
        signers: List["LocalAccount"],
    ) -> str:
        status = await self.ledger.signature_status(exc.signature)
        if status is not None and status.err is not None:
            raise TransactionFailedError(exc.signature, status.err) from exc
        if status is not None and status.landed:
            logger.info(f"Expired tx {exc.signature[:14]}... had landed; not resubmitting")
            return exc.signature
        logger.warning(f"Tx {exc.signature[:14]}... expired and not found; resubmitting once")
        return await self.ledger.send_and_confirm(build(), signers)

    async def _trade(self, agent: "AgentState", size: int) -> str:
        if agent.slot is None:
            raise LedgerError(f"{agent.agent_id} is not initialized")
        slab = self._slab(agent)
        await self._check_counterparty(slab)

        def build() -> List[Instruction]:
            return [execute_trade_ix(
                self.program_id,
                user=agent.identity,
                lp_owner=self.admin.address,
                slab=slab,
                oracle=slab,
                lp_slot=LP_SLOT,
                user_slot=agent.slot,
                size=size,
            )]

        return await self._submit_with_recheck(build, [self.admin, agent.account])

    async def open(self, agent: "AgentState", size: int, price: "ReferencePrice") -> str:
        if agent.position.is_open:
            raise LedgerError(f"{agent.agent_id} already holds a position")
        sig = await self._trade(agent, size)
        await self._log_trade(agent, size, price.adjusted_price, sig)
        return sig

    async def close(self, agent: "AgentState", price: "ReferencePrice") -> Tuple[str, int]:
        """Flatten the agent's position. Returns (tx id, realised PnL at 1e6 scale)."""
        position = agent.position
        if not position.is_open:
            raise LedgerError(f"{agent.agent_id} has no open position")
        close_size = -position.size
        sig = await self._trade(agent, close_size)
        pnl_e6 = realized_pnl_e6(position.size, position.entry_price_e6, price.price_e6)
        await self._log_trade(agent, close_size, price.adjusted_price, sig)
        return sig, pnl_e6

    # ── Trade Log ─────────────────────────────────────────────────────────────

    async def _log_trade(self, agent: "AgentState", size: int, price: float, sig: str) -> None:
        if self.store is None:
            return
        row = {
            "slab_address": self._slab(agent),
            "trader": agent.identity,
            "side": "long" if size > 0 else "short",
            "size": abs(size),
            "price": price,
            "fee": 0,
            "tx_signature": sig,
        }
        try:
            await self.store.insert(TRADES_TABLE, row)
        except Exception as exc:
            logger.warning(f"Trade log failed for {agent.agent_id}: {exc}")
