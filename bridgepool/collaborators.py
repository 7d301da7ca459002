"""
Interfaces the pool core consumes, plus in-memory implementations used by the
simulation engine and the test suite.
"""
from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Protocol, Set
import hashlib
import hmac
import logging

from .core import format_inventory
from .errors import PermitRejected, TransferFailed, Unauthorized

logger = logging.getLogger(__name__)


# -----------------------------
# Authorization
# -----------------------------
class Authorization(Protocol):
    def is_authorized_relayer(self, caller: str) -> bool: ...

    def is_owner(self, caller: str) -> bool: ...

    def is_paused(self) -> bool: ...

class StaticAuthorization:
    def __init__(self, owner: str, relayers: Optional[Set[str]] = None, pauser: Optional[str] = None) -> None:
        self.owner = owner
        self.pauser = pauser or owner
        self.relayers: Set[str] = set(relayers or ())
        self.paused = False

    def is_authorized_relayer(self, caller: str) -> bool:
        return caller in self.relayers

    def is_owner(self, caller: str) -> bool:
        return caller == self.owner

    def is_paused(self) -> bool:
        return self.paused

    def set_relayer(self, caller: str, relayer: str, enabled: bool = True) -> None:
        if caller != self.owner:
            raise Unauthorized(caller, "owner")
        if enabled:
            self.relayers.add(relayer)
        else:
            self.relayers.discard(relayer)

    def pause(self, caller: str) -> None:
        if caller != self.pauser:
            raise Unauthorized(caller, "pauser")
        self.paused = True

    def unpause(self, caller: str) -> None:
        if caller != self.pauser:
            raise Unauthorized(caller, "pauser")
        self.paused = False


# -----------------------------
# LP position ledger
# -----------------------------
class LpLedger(Protocol):
    def credit_lp_fee(self, asset_id: str, amount: int) -> None: ...

    def resolve_asset_for_position(self, position_id: str) -> str: ...

    def position_owner(self, position_id: str) -> str: ...

    def supplied_for(self, position_id: str) -> int: ...

    def record_supply(self, position_id: str, delta: int) -> None: ...

@dataclass
class LpPosition:
    position_id: str
    owner: str
    asset_id: str
    supplied: int = 0

class InMemoryLpLedger:
    def __init__(self) -> None:
        self.positions: Dict[str, LpPosition] = {}
        self.lp_fees: Dict[str, int] = {}
        self._counter = 0

    def open_position(self, owner: str, asset_id: str) -> str:
        self._counter += 1
        position_id = f"pos_{self._counter:04d}"
        self.positions[position_id] = LpPosition(position_id=position_id, owner=owner, asset_id=asset_id)
        return position_id

    def _require(self, position_id: str) -> LpPosition:
        pos = self.positions.get(position_id)
        if pos is None:
            raise KeyError(f"unknown position: {position_id}")
        return pos

    def resolve_asset_for_position(self, position_id: str) -> str:
        return self._require(position_id).asset_id

    def position_owner(self, position_id: str) -> str:
        return self._require(position_id).owner

    def supplied_for(self, position_id: str) -> int:
        return self._require(position_id).supplied

    def record_supply(self, position_id: str, delta: int) -> None:
        pos = self._require(position_id)
        pos.supplied = max(0, pos.supplied + int(delta))

    def credit_lp_fee(self, asset_id: str, amount: int) -> None:
        self.lp_fees[asset_id] = self.lp_fees.get(asset_id, 0) + int(amount)

    def fees_for(self, asset_id: str) -> int:
        return int(self.lp_fees.get(asset_id, 0))


# -----------------------------
# Asset transfer primitive
# -----------------------------
class AssetTransfer(Protocol):
    def transfer_in(self, asset_id: str, sender: str, amount: int) -> None: ...

    def transfer_out(self, asset_id: str, to: str, amount: int) -> bool: ...

    def balance_of(self, asset_id: str) -> int: ...

    def approve(self, owner: str, asset_id: str, amount: int) -> None: ...

    def allowance(self, owner: str, asset_id: str) -> int: ...

TransferHook = Callable[[str, str, int], None]

class AccountLedger:
    """
    Per-account balances for every asset on one chain. The pool holds its
    reserve under `pool_account`; native and token assets share one code path.
    """
    def __init__(self, pool_account: str = "pool", require_allowance: bool = False, debug: bool = False) -> None:
        self.pool_account = pool_account
        self.require_allowance = require_allowance
        self.debug = debug
        self.accounts: Dict[str, Dict[str, int]] = {}
        self.allowances: Dict[tuple, int] = {}  # (owner, asset_id) -> remaining
        self.on_transfer_out: List[TransferHook] = []

    def _debug_change(self, action: str, account: str, asset_id: str, amount: int) -> None:
        if not self.debug or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[XFER] action=%s account=%s asset=%s amount=%d balances={ %s }",
            action,
            account,
            asset_id,
            amount,
            format_inventory(self.accounts.get(account, {})),
        )

    def balance(self, account: str, asset_id: str) -> int:
        return int(self.accounts.get(account, {}).get(asset_id, 0))

    def mint(self, account: str, asset_id: str, amount: int) -> None:
        inv = self.accounts.setdefault(account, {})
        inv[asset_id] = inv.get(asset_id, 0) + int(amount)
        self._debug_change("mint", account, asset_id, amount)

    def _sub(self, account: str, asset_id: str, amount: int) -> bool:
        amt = int(amount)
        if self.balance(account, asset_id) < amt:
            return False
        inv = self.accounts[account]
        inv[asset_id] = inv[asset_id] - amt
        return True

    def approve(self, owner: str, asset_id: str, amount: int) -> None:
        self.allowances[(owner, asset_id)] = int(amount)

    def allowance(self, owner: str, asset_id: str) -> int:
        return int(self.allowances.get((owner, asset_id), 0))

    def transfer_in(self, asset_id: str, sender: str, amount: int) -> None:
        amt = int(amount)
        if self.require_allowance and self.allowance(sender, asset_id) < amt:
            raise TransferFailed(f"{sender}: allowance {self.allowance(sender, asset_id)} < {amt} for {asset_id}")
        if not self._sub(sender, asset_id, amt):
            raise TransferFailed(f"{sender}: balance {self.balance(sender, asset_id)} < {amt} for {asset_id}")
        if self.require_allowance:
            self.allowances[(sender, asset_id)] = self.allowance(sender, asset_id) - amt
        self.mint(self.pool_account, asset_id, amt)
        self._debug_change("transfer_in", sender, asset_id, amt)

    def transfer_out(self, asset_id: str, to: str, amount: int) -> bool:
        amt = int(amount)
        if not self._sub(self.pool_account, asset_id, amt):
            return False
        self.mint(to, asset_id, amt)
        self._debug_change("transfer_out", to, asset_id, amt)
        for hook in list(self.on_transfer_out):
            hook(asset_id, to, amt)
        return True

    def balance_of(self, asset_id: str) -> int:
        return self.balance(self.pool_account, asset_id)


# -----------------------------
# Signed permissions
# -----------------------------
@dataclass(frozen=True)
class SignedPermit:
    """
    Off-band approval granting the pool transfer rights over `owner`'s funds.

    Nonce-based permits carry `allowed` and grant an unlimited allowance;
    value-based permits carry an explicit `value`.
    """
    owner: str
    spender: str
    asset_id: str
    nonce: int
    deadline: int
    value: Optional[int] = None
    allowed: Optional[bool] = None
    signature: str = ""

    @property
    def kind(self) -> str:
        return "value" if self.value is not None else "nonce"

    def payload(self) -> bytes:
        fields = (
            self.kind,
            self.owner,
            self.spender,
            self.asset_id,
            str(self.nonce),
            str(self.deadline),
            "" if self.value is None else str(self.value),
            "" if self.allowed is None else str(int(self.allowed)),
        )
        return "|".join(fields).encode("utf-8")

class PermitVerifier(Protocol):
    def verify(self, permit: SignedPermit, spender: str, amount: int, now: int) -> int: ...

    def consume(self, permit: SignedPermit) -> None: ...

class HmacPermitVerifier:
    """
    Checks HMAC-SHA256 permits against per-owner keys. `verify` has no side
    effects; the nonce advances only when the caller consumes the permit.
    """

    UNLIMITED = 2 ** 256 - 1

    def __init__(self, keys: Optional[Dict[str, bytes]] = None) -> None:
        self.keys: Dict[str, bytes] = dict(keys or {})
        self.nonces: Dict[str, int] = {}

    def register(self, owner: str, key: bytes) -> None:
        self.keys[owner] = key

    def sign(self, permit: SignedPermit) -> SignedPermit:
        key = self.keys.get(permit.owner)
        if key is None:
            raise PermitRejected(f"no signing key for {permit.owner}")
        sig = hmac.new(key, permit.payload(), hashlib.sha256).hexdigest()
        return replace(permit, signature=sig)

    def next_nonce(self, owner: str) -> int:
        return self.nonces.get(owner, 0)

    def verify(self, permit: SignedPermit, spender: str, amount: int, now: int) -> int:
        key = self.keys.get(permit.owner)
        if key is None:
            raise PermitRejected(f"unknown permit owner {permit.owner}")
        expected = hmac.new(key, permit.payload(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, permit.signature):
            raise PermitRejected("bad permit signature")
        if permit.spender != spender:
            raise PermitRejected(f"permit spender {permit.spender} != {spender}")
        if permit.deadline < now:
            raise PermitRejected(f"permit expired at {permit.deadline}")
        if permit.nonce != self.next_nonce(permit.owner):
            raise PermitRejected(f"stale permit nonce {permit.nonce}")
        if permit.kind == "nonce":
            if not permit.allowed:
                raise PermitRejected("permit does not allow spending")
            granted = self.UNLIMITED
        else:
            if permit.value < amount:
                raise PermitRejected(f"permit value {permit.value} < {amount}")
            granted = int(permit.value)
        return granted

    def consume(self, permit: SignedPermit) -> None:
        self.nonces[permit.owner] = permit.nonce + 1
