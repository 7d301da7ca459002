"""
Exception hierarchy for the pool core.

Validation and authorization errors are raised before any state is touched.
Replay errors are permanent for a fingerprint. Invariant errors point at a
configuration or reserve-state problem.
"""
from __future__ import annotations


class PoolError(Exception):
    """Base class for every failure raised by the pool core."""

    reason = "pool_error"


# -----------------------------
# Validation
# -----------------------------
class ValidationError(PoolError):
    reason = "invalid_input"


class AssetNotSupported(ValidationError):
    reason = "asset_not_supported"

    def __init__(self, asset_id: str) -> None:
        super().__init__(f"asset not supported: {asset_id}")
        self.asset_id = asset_id


class AmountOutOfCapRange(ValidationError):
    reason = "amount_out_of_cap_range"

    def __init__(self, asset_id: str, amount: int, min_cap: int, max_cap: int) -> None:
        super().__init__(f"{asset_id}: amount {amount} outside [{min_cap}, {max_cap}]")
        self.asset_id = asset_id
        self.amount = amount
        self.min_cap = min_cap
        self.max_cap = max_cap


class ZeroReceiver(ValidationError):
    reason = "zero_receiver"

    def __init__(self) -> None:
        super().__init__("receiver must be set")


class ZeroAmount(ValidationError):
    reason = "zero_amount"

    def __init__(self) -> None:
        super().__init__("amount must be positive")


class InvalidAssetConfig(ValidationError):
    reason = "invalid_asset_config"


class NothingToWithdraw(ValidationError):
    reason = "nothing_to_withdraw"

    def __init__(self, asset_id: str, relayer: str) -> None:
        super().__init__(f"no gas fee accumulated for {relayer} on {asset_id}")
        self.asset_id = asset_id
        self.relayer = relayer


class PermitRejected(ValidationError):
    reason = "permit_rejected"


# -----------------------------
# Replay
# -----------------------------
class ReplayError(PoolError):
    reason = "replay"


class AlreadyProcessed(ReplayError):
    reason = "already_processed"

    def __init__(self, fingerprint: str) -> None:
        super().__init__(f"transfer already processed: {fingerprint}")
        self.fingerprint = fingerprint


# -----------------------------
# Arithmetic / invariants
# -----------------------------
class InvariantError(PoolError):
    reason = "invariant"


class InsufficientBalance(InvariantError):
    reason = "insufficient_balance"

    def __init__(self, asset_id: str, requested: int, available: int) -> None:
        super().__init__(f"{asset_id}: requested {requested} exceeds available liquidity {available}")
        self.asset_id = asset_id
        self.requested = requested
        self.available = available


class InsufficientReserve(InvariantError):
    reason = "insufficient_reserve"

    def __init__(self, asset_id: str, required: int, available: int) -> None:
        super().__init__(f"{asset_id}: reserve holds {available}, payout needs {required}")
        self.asset_id = asset_id
        self.required = required
        self.available = available


class FeeExceedsAmount(InvariantError):
    reason = "fee_exceeds_amount"

    def __init__(self, amount: int, fee: int, gas_fee: int) -> None:
        super().__init__(f"fee {fee} + gas {gas_fee} exceeds amount {amount}")
        self.amount = amount
        self.fee = fee
        self.gas_fee = gas_fee


class RewardExceedsPool(InvariantError):
    reason = "reward_exceeds_pool"

    def __init__(self, asset_id: str, reward: int, available: int) -> None:
        super().__init__(f"{asset_id}: reward {reward} exceeds incentive pool {available}")
        self.asset_id = asset_id
        self.reward = reward
        self.available = available


class DegenerateFeeCurve(InvariantError):
    reason = "degenerate_fee_curve"


# -----------------------------
# Authorization / gating
# -----------------------------
class AuthorizationError(PoolError):
    reason = "unauthorized"


class Unauthorized(AuthorizationError):
    reason = "unauthorized"

    def __init__(self, caller: str, capability: str) -> None:
        super().__init__(f"{caller} lacks capability {capability!r}")
        self.caller = caller
        self.capability = capability


class PoolPaused(AuthorizationError):
    reason = "paused"

    def __init__(self) -> None:
        super().__init__("pool is paused")


# -----------------------------
# Execution
# -----------------------------
class ReentrantCall(PoolError):
    reason = "reentrant_call"

    def __init__(self, operation: str, active: str) -> None:
        super().__init__(f"{operation} called while {active} is in progress")
        self.operation = operation
        self.active = active


class TransferFailed(PoolError):
    reason = "transfer_failed"
