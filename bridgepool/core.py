from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Dict, Tuple, Optional, Literal, List, Set
from collections import deque
import hashlib
import logging

from .errors import AssetNotSupported, InvalidAssetConfig, InsufficientBalance

logger = logging.getLogger(__name__)

ReceiptStatus = Literal["executed", "failed"]

def format_inventory(inv: Dict[str, int]) -> str:
    if not inv:
        return "(empty)"
    items = sorted(inv.items(), key=lambda kv: kv[0])
    return ", ".join(f"{key}:{amount}" for key, amount in items)

# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    tick: int
    event_type: str
    actor_id: Optional[str] = None
    chain_id: Optional[str] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Asset registry
# -----------------------------
@dataclass(frozen=True)
class AssetConfig:
    asset_id: str
    min_cap: int
    max_cap: int
    equilibrium_fee_bps: int
    max_fee_bps: int
    transfer_overhead: int = 0
    provided_liquidity: int = 0
    supported: bool = True

    def validate(self) -> None:
        if self.max_cap <= self.min_cap:
            raise InvalidAssetConfig(f"{self.asset_id}: max_cap {self.max_cap} must exceed min_cap {self.min_cap}")
        if self.min_cap < 0:
            raise InvalidAssetConfig(f"{self.asset_id}: min_cap must be non-negative")
        if self.equilibrium_fee_bps <= 0 or self.max_fee_bps <= 0:
            raise InvalidAssetConfig(f"{self.asset_id}: fee parameters must be nonzero")
        # equal rates collapse the curve's liquidity term
        if self.max_fee_bps <= self.equilibrium_fee_bps:
            raise InvalidAssetConfig(
                f"{self.asset_id}: max_fee_bps {self.max_fee_bps} must exceed "
                f"equilibrium_fee_bps {self.equilibrium_fee_bps}"
            )
        if self.transfer_overhead < 0:
            raise InvalidAssetConfig(f"{self.asset_id}: transfer_overhead must be non-negative")
        if self.provided_liquidity < 0:
            raise InvalidAssetConfig(f"{self.asset_id}: provided_liquidity must be non-negative")

@dataclass(frozen=True)
class FeeParameters:
    equilibrium_fee_bps: int
    max_fee_bps: int
    provided_liquidity: int

class AssetRegistry:
    """
    Per-asset configuration. Entries are replaced wholesale on every update so
    readers never observe a half-applied change.
    """
    def __init__(self) -> None:
        self.assets: Dict[str, AssetConfig] = {}

    def add(self, config: AssetConfig) -> AssetConfig:
        existing = self.assets.get(config.asset_id)
        if existing is not None and existing.provided_liquidity and not config.provided_liquidity:
            config = replace(config, provided_liquidity=existing.provided_liquidity)
        config = replace(config, supported=True)
        config.validate()
        self.assets[config.asset_id] = config
        return config

    def remove(self, asset_id: str) -> AssetConfig:
        config = self.require(asset_id)
        updated = replace(config, supported=False)
        self.assets[asset_id] = updated
        return updated

    def update(self, asset_id: str, **changes) -> AssetConfig:
        config = self.require(asset_id)
        updated = replace(config, **changes)
        updated.validate()
        self.assets[asset_id] = updated
        return updated

    def adjust_provided_liquidity(self, asset_id: str, delta: int) -> AssetConfig:
        config = self.require(asset_id)
        new_total = config.provided_liquidity + int(delta)
        if new_total < 0:
            raise InsufficientBalance(asset_id, -int(delta), config.provided_liquidity)
        updated = replace(config, provided_liquidity=new_total)
        self.assets[asset_id] = updated
        return updated

    def get(self, asset_id: str) -> Optional[AssetConfig]:
        return self.assets.get(asset_id)

    def require(self, asset_id: str) -> AssetConfig:
        config = self.assets.get(asset_id)
        if config is None:
            raise AssetNotSupported(asset_id)
        return config

    def require_supported(self, asset_id: str) -> AssetConfig:
        config = self.assets.get(asset_id)
        if config is None or not config.supported:
            raise AssetNotSupported(asset_id)
        return config

    def is_supported(self, asset_id: str) -> bool:
        config = self.assets.get(asset_id)
        return bool(config and config.supported)

    def fee_parameters(self, asset_id: str) -> FeeParameters:
        config = self.require(asset_id)
        return FeeParameters(
            equilibrium_fee_bps=config.equilibrium_fee_bps,
            max_fee_bps=config.max_fee_bps,
            provided_liquidity=config.provided_liquidity,
        )


# -----------------------------
# Ledgers
# -----------------------------
class IncentivePool:
    def __init__(self) -> None:
        self.balances: Dict[str, int] = {}

    def get(self, asset_id: str) -> int:
        return int(self.balances.get(asset_id, 0))

    def add(self, asset_id: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"incentive credit must be non-negative, got {amount}")
        self.balances[asset_id] = self.get(asset_id) + int(amount)

    def sub(self, asset_id: str, amount: int) -> bool:
        amt = int(amount)
        if amt < 0 or self.get(asset_id) < amt:
            return False
        self.balances[asset_id] = self.get(asset_id) - amt
        return True

class GasFeeLedger:
    """
    Relayer reimbursement owed by the reserve, tracked per asset and per
    (asset, relayer). by_asset[a] always equals the sum of by_relayer[a].
    """
    def __init__(self) -> None:
        self.by_asset: Dict[str, int] = {}
        self.by_relayer: Dict[str, Dict[str, int]] = {}

    def accumulated(self, asset_id: str) -> int:
        return int(self.by_asset.get(asset_id, 0))

    def accumulated_for(self, asset_id: str, relayer: str) -> int:
        return int(self.by_relayer.get(asset_id, {}).get(relayer, 0))

    def credit(self, asset_id: str, relayer: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"gas credit must be non-negative, got {amount}")
        shares = self.by_relayer.setdefault(asset_id, {})
        shares[relayer] = shares.get(relayer, 0) + int(amount)
        self.by_asset[asset_id] = self.accumulated(asset_id) + int(amount)

    def take(self, asset_id: str, relayer: str) -> int:
        """Zero the relayer's entry and return what it held."""
        amount = self.accumulated_for(asset_id, relayer)
        if amount <= 0:
            return 0
        self.by_relayer[asset_id][relayer] = 0
        self.by_asset[asset_id] = self.accumulated(asset_id) - amount
        return amount

    def debit(self, asset_id: str, relayer: str, amount: int) -> None:
        amt = int(amount)
        if amt < 0 or self.accumulated_for(asset_id, relayer) < amt:
            raise ValueError(f"cannot debit {amt} from {relayer} on {asset_id}")
        self.by_relayer[asset_id][relayer] -= amt
        self.by_asset[asset_id] = self.accumulated(asset_id) - amt

    def is_consistent(self, asset_id: str) -> bool:
        return self.accumulated(asset_id) == sum(self.by_relayer.get(asset_id, {}).values())


def transfer_fingerprint(asset_id: str, amount: int, receiver: str, deposit_proof: str | bytes) -> str:
    if isinstance(deposit_proof, str):
        deposit_proof = deposit_proof.encode("utf-8")
    proof_hash = hashlib.sha256(deposit_proof).hexdigest()
    canonical = "|".join((asset_id, str(int(amount)), receiver, proof_hash))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

class ProcessedTransferSet:
    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def insert(self, fingerprint: str) -> bool:
        """Returns False if the fingerprint was already present."""
        if fingerprint in self._seen:
            return False
        self._seen.add(fingerprint)
        return True


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class DepositReceipt:
    tick: int
    chain_id: str
    depositor: str
    asset_id: str
    amount: int
    reward: int
    receiver: str
    to_chain: str
    tag: str = ""

    @property
    def recorded_amount(self) -> int:
        return self.amount + self.reward

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "chain_id": self.chain_id,
            "depositor": self.depositor,
            "asset_id": self.asset_id,
            "amount": int(self.amount),
            "reward": int(self.reward),
            "recorded_amount": int(self.recorded_amount),
            "receiver": self.receiver,
            "to_chain": self.to_chain,
            "tag": self.tag,
        }

@dataclass
class PayoutReceipt:
    tick: int
    chain_id: str
    relayer: str
    asset_id: str
    amount: int
    amount_delivered: int
    receiver: str
    from_chain: str
    fingerprint: str
    fee_bps: int
    lp_fee: int
    incentive_fee: int
    gas_fee: int
    status: ReceiptStatus = "executed"
    fail_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "chain_id": self.chain_id,
            "relayer": self.relayer,
            "asset_id": self.asset_id,
            "amount": int(self.amount),
            "amount_delivered": int(self.amount_delivered),
            "receiver": self.receiver,
            "from_chain": self.from_chain,
            "fingerprint": self.fingerprint,
            "fee_bps": int(self.fee_bps),
            "lp_fee": int(self.lp_fee),
            "incentive_fee": int(self.incentive_fee),
            "gas_fee": int(self.gas_fee),
            "status": self.status,
            "fail_reason": self.fail_reason,
        }

class ReceiptStore:
    def __init__(self) -> None:
        self.deposits: List[DepositReceipt] = []
        self.payouts: List[PayoutReceipt] = []

    def add_deposit(self, r: DepositReceipt) -> None:
        self.deposits.append(r)

    def add_payout(self, r: PayoutReceipt) -> None:
        self.payouts.append(r)

    def tail(self, n: int = 200) -> Tuple[List[DepositReceipt], List[PayoutReceipt]]:
        return self.deposits[-n:], self.payouts[-n:]


# -----------------------------
# Owned pool state
# -----------------------------
@dataclass
class PoolState:
    chain_id: str
    registry: AssetRegistry = field(default_factory=AssetRegistry)
    incentives: IncentivePool = field(default_factory=IncentivePool)
    gas_fees: GasFeeLedger = field(default_factory=GasFeeLedger)
    processed: ProcessedTransferSet = field(default_factory=ProcessedTransferSet)
    log: EventLog = field(default_factory=EventLog)
    receipts: ReceiptStore = field(default_factory=ReceiptStore)
    base_gas_units: int = 21_000
    tick: int = 0
