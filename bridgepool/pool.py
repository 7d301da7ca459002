from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple
import logging
import threading

from .collaborators import AssetTransfer, Authorization, LpLedger, PermitVerifier, SignedPermit
from .config import PoolConfig
from .core import (
    AssetConfig, DepositReceipt, Event, FeeParameters, PayoutReceipt, PoolState, transfer_fingerprint,
)
from .errors import (
    AlreadyProcessed, AmountOutOfCapRange, FeeExceedsAmount, InsufficientBalance, InsufficientReserve,
    NothingToWithdraw, PermitRejected, PoolPaused, ReentrantCall, RewardExceedsPool, TransferFailed, Unauthorized,
    ZeroAmount, ZeroReceiver,
)
from .fees import FeeBreakdown, compute_reward, compute_transfer_fee_bps, split_fee

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class PayoutQuote:
    asset_id: str
    amount: int
    fee_bps: int
    fees: FeeBreakdown
    gas_units: int
    gas_fee: int
    amount_delivered: int

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "amount": int(self.amount),
            "fee_bps": int(self.fee_bps),
            **self.fees.to_dict(),
            "gas_units": int(self.gas_units),
            "gas_fee": int(self.gas_fee),
            "amount_delivered": int(self.amount_delivered),
        }

class LiquidityPool:
    """
    Accounting core of one chain's side of the bridge.

    Every mutating entry point runs under `_mutation`, which serializes
    writers and rejects re-entrant calls made while another mutation is still
    on the stack (for instance from a transfer callback). Views take the same
    lock, so they never observe a half-applied update.
    """
    def __init__(
        self,
        state: PoolState,
        auth: Authorization,
        lp_ledger: LpLedger,
        transfer: AssetTransfer,
        permits: Optional[PermitVerifier] = None,
        cfg: Optional[PoolConfig] = None,
    ) -> None:
        self.state = state
        self.auth = auth
        self.lp_ledger = lp_ledger
        self.transfer = transfer
        self.permits = permits
        self.cfg = cfg or PoolConfig()
        self.state.base_gas_units = self.cfg.base_gas_units

        self._lock = threading.RLock()
        self._active: Optional[str] = None
        self._active_thread: Optional[int] = None

    @property
    def chain_id(self) -> str:
        return self.state.chain_id

    # -----------------------------
    # Guards
    # -----------------------------
    @contextmanager
    def _mutation(self, operation: str) -> Iterator[None]:
        if self._active is not None and self._active_thread == threading.get_ident():
            raise ReentrantCall(operation, self._active)
        with self._lock:
            self._active = operation
            self._active_thread = threading.get_ident()
            try:
                yield
            finally:
                self._active = None
                self._active_thread = None

    def _require_owner(self, caller: str) -> None:
        if not self.auth.is_owner(caller):
            raise Unauthorized(caller, "owner")

    def _require_relayer(self, caller: str) -> None:
        if not self.auth.is_authorized_relayer(caller):
            raise Unauthorized(caller, "relayer")

    def _require_not_paused(self) -> None:
        if self.auth.is_paused():
            raise PoolPaused()

    def _validate_transfer(self, asset_id: str, amount: int, receiver: str) -> AssetConfig:
        config = self.state.registry.require_supported(asset_id)
        if not receiver:
            raise ZeroReceiver()
        if amount <= 0:
            raise ZeroAmount()
        if amount < config.min_cap or amount > config.max_cap:
            raise AmountOutOfCapRange(asset_id, amount, config.min_cap, config.max_cap)
        return config

    # -----------------------------
    # Events / debug
    # -----------------------------
    def _emit(self, event_type: str, actor_id: Optional[str] = None, asset_id: Optional[str] = None,
              amount: Optional[int] = None, **meta) -> None:
        self.state.log.add(Event(
            self.state.tick, event_type, actor_id=actor_id, chain_id=self.chain_id,
            asset_id=asset_id, amount=amount, meta=meta,
        ))

    def _debug_ledger(self, action: str, asset_id: str, amount: int, counterparty: str) -> None:
        if not self.cfg.debug_ledger or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[LEDGER] chain=%s action=%s counterparty=%s asset=%s amount=%d reserve=%d gas=%d incentive=%d free=%d",
            self.chain_id,
            action,
            counterparty,
            asset_id,
            amount,
            self.transfer.balance_of(asset_id),
            self.state.gas_fees.accumulated(asset_id),
            self.state.incentives.get(asset_id),
            self._free_liquidity(asset_id),
        )

    # -----------------------------
    # Views
    # -----------------------------
    def _free_liquidity(self, asset_id: str) -> int:
        return (
            self.transfer.balance_of(asset_id)
            - self.state.gas_fees.accumulated(asset_id)
            - self.state.incentives.get(asset_id)
        )

    def is_supported(self, asset_id: str) -> bool:
        with self._lock:
            return self.state.registry.is_supported(asset_id)

    def get_fee_parameters(self, asset_id: str) -> FeeParameters:
        with self._lock:
            return self.state.registry.fee_parameters(asset_id)

    def current_free_liquidity(self, asset_id: str) -> int:
        with self._lock:
            return self._free_liquidity(asset_id)

    def incentive_balance(self, asset_id: str) -> int:
        with self._lock:
            return self.state.incentives.get(asset_id)

    def gas_fee_accumulated(self, asset_id: str, relayer: Optional[str] = None) -> int:
        with self._lock:
            if relayer is None:
                return self.state.gas_fees.accumulated(asset_id)
            return self.state.gas_fees.accumulated_for(asset_id, relayer)

    def get_transfer_fee_bps(self, asset_id: str, amount: int) -> int:
        with self._lock:
            params = self.state.registry.fee_parameters(asset_id)
            return compute_transfer_fee_bps(params, amount, self._free_liquidity(asset_id), asset_id)

    def get_reward_amount(self, asset_id: str, amount: int) -> int:
        with self._lock:
            return self._reward_for(self.state.registry.require(asset_id), amount)

    def _reward_for(self, config: AssetConfig, amount: int) -> int:
        return compute_reward(
            config.provided_liquidity,
            self._free_liquidity(config.asset_id),
            self.state.incentives.get(config.asset_id),
            amount,
        )

    def quote_payout(self, asset_id: str, amount: int, execution_cost_units: int = 0,
                     unit_gas_price: int = 0) -> PayoutQuote:
        with self._lock:
            return self._quote(self.state.registry.require(asset_id), amount, execution_cost_units, unit_gas_price)

    def _quote(self, config: AssetConfig, amount: int, execution_cost_units: int, unit_gas_price: int) -> PayoutQuote:
        asset_id = config.asset_id
        params = FeeParameters(config.equilibrium_fee_bps, config.max_fee_bps, config.provided_liquidity)
        fee_bps = compute_transfer_fee_bps(params, amount, self._free_liquidity(asset_id), asset_id)
        fees = split_fee(amount, fee_bps, config.equilibrium_fee_bps)
        gas_units = int(execution_cost_units) + config.transfer_overhead + self.state.base_gas_units
        gas_fee = gas_units * int(unit_gas_price)
        delivered = amount - (fees.total_fee + gas_fee)
        if delivered < 0:
            raise FeeExceedsAmount(amount, fees.total_fee, gas_fee)
        return PayoutQuote(
            asset_id=asset_id,
            amount=amount,
            fee_bps=fee_bps,
            fees=fees,
            gas_units=gas_units,
            gas_fee=gas_fee,
            amount_delivered=delivered,
        )

    def check_transfer_status(self, asset_id: str, amount: int, receiver: str,
                              deposit_proof: str | bytes) -> Tuple[str, bool]:
        fingerprint = transfer_fingerprint(asset_id, amount, receiver, deposit_proof)
        with self._lock:
            return fingerprint, fingerprint in self.state.processed

    # -----------------------------
    # Registry administration
    # -----------------------------
    def add_supported_asset(self, caller: str, asset_id: str, min_cap: int, max_cap: int,
                            equilibrium_fee_bps: int, max_fee_bps: int, transfer_overhead: int = 0) -> AssetConfig:
        with self._mutation("add_supported_asset"):
            self._require_owner(caller)
            config = self.state.registry.add(AssetConfig(
                asset_id=asset_id,
                min_cap=min_cap,
                max_cap=max_cap,
                equilibrium_fee_bps=equilibrium_fee_bps,
                max_fee_bps=max_fee_bps,
                transfer_overhead=transfer_overhead,
            ))
            logger.info("chain=%s asset %s supported caps=[%d, %d] fee=%d/%d",
                        self.chain_id, asset_id, min_cap, max_cap, equilibrium_fee_bps, max_fee_bps)
            self._emit("ASSET_ADDED", actor_id=caller, asset_id=asset_id,
                       min_cap=min_cap, max_cap=max_cap,
                       equilibrium_fee_bps=equilibrium_fee_bps, max_fee_bps=max_fee_bps)
            return config

    def remove_supported_asset(self, caller: str, asset_id: str) -> AssetConfig:
        with self._mutation("remove_supported_asset"):
            self._require_owner(caller)
            config = self.state.registry.remove(asset_id)
            logger.info("chain=%s asset %s no longer supported", self.chain_id, asset_id)
            self._emit("ASSET_REMOVED", actor_id=caller, asset_id=asset_id)
            return config

    def update_asset_cap(self, caller: str, asset_id: str, min_cap: int, max_cap: int) -> AssetConfig:
        with self._mutation("update_asset_cap"):
            self._require_owner(caller)
            config = self.state.registry.update(asset_id, min_cap=min_cap, max_cap=max_cap)
            self._emit("ASSET_CAP_UPDATED", actor_id=caller, asset_id=asset_id, min_cap=min_cap, max_cap=max_cap)
            return config

    def change_fee(self, caller: str, asset_id: str, equilibrium_fee_bps: int, max_fee_bps: int) -> AssetConfig:
        with self._mutation("change_fee"):
            self._require_owner(caller)
            config = self.state.registry.update(
                asset_id, equilibrium_fee_bps=equilibrium_fee_bps, max_fee_bps=max_fee_bps,
            )
            self._emit("FEE_CHANGED", actor_id=caller, asset_id=asset_id,
                       equilibrium_fee_bps=equilibrium_fee_bps, max_fee_bps=max_fee_bps)
            return config

    def set_transfer_overhead(self, caller: str, asset_id: str, transfer_overhead: int) -> AssetConfig:
        with self._mutation("set_transfer_overhead"):
            self._require_owner(caller)
            config = self.state.registry.update(asset_id, transfer_overhead=transfer_overhead)
            self._emit("TRANSFER_OVERHEAD_SET", actor_id=caller, asset_id=asset_id,
                       transfer_overhead=transfer_overhead)
            return config

    def set_base_gas(self, caller: str, base_gas_units: int) -> None:
        with self._mutation("set_base_gas"):
            self._require_owner(caller)
            if base_gas_units < 0:
                raise ValueError(f"base_gas_units must be non-negative, got {base_gas_units}")
            self.state.base_gas_units = int(base_gas_units)
            self._emit("BASE_GAS_SET", actor_id=caller, base_gas_units=int(base_gas_units))

    # -----------------------------
    # Deposits
    # -----------------------------
    def deposit(self, caller: str, asset_id: str, amount: int, receiver: str, to_chain: str,
                tag: str = "") -> DepositReceipt:
        with self._mutation("deposit"):
            return self._deposit(caller, asset_id, amount, receiver, to_chain, tag)

    def deposit_native(self, caller: str, amount: int, receiver: str, to_chain: str,
                       tag: str = "") -> DepositReceipt:
        with self._mutation("deposit_native"):
            return self._deposit(caller, self.cfg.native_asset, amount, receiver, to_chain, tag)

    def deposit_with_permit(self, caller: str, asset_id: str, amount: int, receiver: str, to_chain: str,
                            permit: SignedPermit, tag: str = "") -> DepositReceipt:
        with self._mutation("deposit_with_permit"):
            if self.permits is None:
                raise PermitRejected("no permit verifier configured")
            if permit.owner != caller or permit.asset_id != asset_id:
                raise PermitRejected(f"permit issued by {permit.owner} for {permit.asset_id}")
            self._require_not_paused()
            self._validate_transfer(asset_id, amount, receiver)
            # the pool is the permit spender and is addressed by its chain id
            granted = self.permits.verify(permit, spender=self.chain_id, amount=amount, now=self.state.tick)
            previous = self.transfer.allowance(caller, asset_id)
            self.transfer.approve(caller, asset_id, granted)
            try:
                receipt = self._deposit(caller, asset_id, amount, receiver, to_chain, tag)
            except Exception:
                self.transfer.approve(caller, asset_id, previous)
                raise
            self.permits.consume(permit)
            return receipt

    def _deposit(self, caller: str, asset_id: str, amount: int, receiver: str, to_chain: str,
                 tag: str) -> DepositReceipt:
        self._require_not_paused()
        config = self._validate_transfer(asset_id, amount, receiver)
        reward = self._reward_for(config, amount)

        available = self.state.incentives.get(asset_id)
        if reward > available:
            raise RewardExceedsPool(asset_id, reward, available)

        # pull funds first: a failed transfer must leave the incentive pool untouched
        self.transfer.transfer_in(asset_id, caller, amount)
        self.state.incentives.sub(asset_id, reward)
        self._debug_ledger("deposit", asset_id, amount, caller)

        receipt = DepositReceipt(
            tick=self.state.tick,
            chain_id=self.chain_id,
            depositor=caller,
            asset_id=asset_id,
            amount=amount,
            reward=reward,
            receiver=receiver,
            to_chain=to_chain,
            tag=tag,
        )
        self.state.receipts.add_deposit(receipt)
        if reward > 0:
            self._emit("REWARD_APPLIED", actor_id=caller, asset_id=asset_id, amount=reward,
                       deposit_amount=amount)
        self._emit("DEPOSIT_RECORDED", actor_id=caller, asset_id=asset_id, amount=receipt.recorded_amount,
                   receiver=receiver, to_chain=to_chain, deposit_amount=amount, reward=reward, tag=tag)
        return receipt

    # -----------------------------
    # Payouts
    # -----------------------------
    def payout(self, caller: str, asset_id: str, amount: int, receiver: str, deposit_proof: str | bytes,
               from_chain: str, execution_cost_units: int, unit_gas_price: int) -> PayoutReceipt:
        """
        Pay `receiver` for a deposit made on `from_chain`.

        Every check runs before the fingerprint is recorded, so a rejected
        payout can be retried. Once the fingerprint is in, the transfer is
        attempted exactly once; if the transfer primitive itself fails the
        ledgers are rolled back but the fingerprint stays consumed.
        """
        with self._mutation("payout"):
            self._require_relayer(caller)
            self._require_not_paused()
            config = self._validate_transfer(asset_id, amount, receiver)

            fingerprint = transfer_fingerprint(asset_id, amount, receiver, deposit_proof)
            if fingerprint in self.state.processed:
                raise AlreadyProcessed(fingerprint)

            quote = self._quote(config, amount, execution_cost_units, unit_gas_price)
            delivered = quote.amount_delivered
            reserve = self.transfer.balance_of(asset_id)
            free_after = (
                self._free_liquidity(asset_id) - delivered - quote.gas_fee - quote.fees.incentive_fee
            )
            if reserve < delivered or free_after < 0:
                raise InsufficientReserve(asset_id, delivered, min(reserve, delivered + free_after))

            self.state.processed.insert(fingerprint)
            self.state.incentives.add(asset_id, quote.fees.incentive_fee)
            self.state.gas_fees.credit(asset_id, caller, quote.gas_fee)
            try:
                sent = self.transfer.transfer_out(asset_id, receiver, delivered)
            except Exception:
                self._unwind_payout_credits(asset_id, caller, quote)
                logger.warning("chain=%s payout transfer raised fingerprint=%s", self.chain_id, fingerprint)
                raise
            if not sent:
                self._unwind_payout_credits(asset_id, caller, quote)
                logger.warning("chain=%s payout transfer failed fingerprint=%s", self.chain_id, fingerprint)
                raise TransferFailed(f"transfer of {delivered} {asset_id} to {receiver} failed")
            self.lp_ledger.credit_lp_fee(asset_id, quote.fees.lp_fee)
            self._debug_ledger("payout", asset_id, delivered, receiver)

            proof = deposit_proof.hex() if isinstance(deposit_proof, bytes) else deposit_proof
            receipt = PayoutReceipt(
                tick=self.state.tick,
                chain_id=self.chain_id,
                relayer=caller,
                asset_id=asset_id,
                amount=amount,
                amount_delivered=delivered,
                receiver=receiver,
                from_chain=from_chain,
                fingerprint=fingerprint,
                fee_bps=quote.fee_bps,
                lp_fee=quote.fees.lp_fee,
                incentive_fee=quote.fees.incentive_fee,
                gas_fee=quote.gas_fee,
            )
            self.state.receipts.add_payout(receipt)
            self._emit("PAYOUT_COMPLETED", actor_id=caller, asset_id=asset_id, amount=amount,
                       amount_delivered=delivered, receiver=receiver, deposit_proof=proof,
                       from_chain=from_chain, fingerprint=fingerprint, fee_bps=quote.fee_bps,
                       gas_fee=quote.gas_fee)
            return receipt

    def _unwind_payout_credits(self, asset_id: str, relayer: str, quote: PayoutQuote) -> None:
        # the fingerprint stays consumed
        self.state.gas_fees.debit(asset_id, relayer, quote.gas_fee)
        self.state.incentives.sub(asset_id, quote.fees.incentive_fee)

    # -----------------------------
    # Gas fee withdrawal
    # -----------------------------
    def withdraw_gas_fee(self, caller: str, asset_id: str) -> int:
        # allowed while paused: relayers can always exit with what they earned
        with self._mutation("withdraw_gas_fee"):
            amount = self.state.gas_fees.take(asset_id, caller)
            if amount == 0:
                raise NothingToWithdraw(asset_id, caller)
            if not self.transfer.transfer_out(asset_id, caller, amount):
                self.state.gas_fees.credit(asset_id, caller, amount)
                raise TransferFailed(f"gas fee withdrawal of {amount} {asset_id} to {caller} failed")
            self._debug_ledger("gas_withdraw", asset_id, amount, caller)
            self._emit("GAS_FEE_WITHDRAWN", actor_id=caller, asset_id=asset_id, amount=amount)
            return amount

    def withdraw_native_gas_fee(self, caller: str) -> int:
        return self.withdraw_gas_fee(caller, self.cfg.native_asset)

    # -----------------------------
    # Liquidity top-up / removal
    # -----------------------------
    def add_liquidity(self, caller: str, position_id: str, amount: int) -> AssetConfig:
        with self._mutation("add_liquidity"):
            self._require_not_paused()
            if self.lp_ledger.position_owner(position_id) != caller:
                raise Unauthorized(caller, f"owner of {position_id}")
            asset_id = self.lp_ledger.resolve_asset_for_position(position_id)
            self.state.registry.require_supported(asset_id)
            if amount <= 0:
                raise ZeroAmount()
            self.transfer.transfer_in(asset_id, caller, amount)
            config = self.state.registry.adjust_provided_liquidity(asset_id, amount)
            self.lp_ledger.record_supply(position_id, amount)
            self._debug_ledger("add_liquidity", asset_id, amount, caller)
            self._emit("LIQUIDITY_ADDED", actor_id=caller, asset_id=asset_id, amount=amount,
                       position_id=position_id, provided_liquidity=config.provided_liquidity)
            return config

    def remove_liquidity(self, caller: str, position_id: str, amount: int,
                         to: Optional[str] = None) -> AssetConfig:
        with self._mutation("remove_liquidity"):
            self._require_not_paused()
            if self.lp_ledger.position_owner(position_id) != caller:
                raise Unauthorized(caller, f"owner of {position_id}")
            asset_id = self.lp_ledger.resolve_asset_for_position(position_id)
            self.state.registry.require(asset_id)
            if amount <= 0:
                raise ZeroAmount()
            supplied = self.lp_ledger.supplied_for(position_id)
            if amount > supplied:
                raise InsufficientBalance(asset_id, amount, supplied)
            free = self._free_liquidity(asset_id)
            if amount > free:
                raise InsufficientBalance(asset_id, amount, free)
            config = self.state.registry.adjust_provided_liquidity(asset_id, -amount)
            if not self.transfer.transfer_out(asset_id, to or caller, amount):
                self.state.registry.adjust_provided_liquidity(asset_id, amount)
                raise TransferFailed(f"liquidity removal of {amount} {asset_id} failed")
            self.lp_ledger.record_supply(position_id, -amount)
            self._debug_ledger("remove_liquidity", asset_id, amount, caller)
            self._emit("LIQUIDITY_REMOVED", actor_id=caller, asset_id=asset_id, amount=amount,
                       position_id=position_id, provided_liquidity=config.provided_liquidity)
            return config
