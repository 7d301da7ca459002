"""
Fee curve and rebalancing reward kernels (deterministic, integer-only).

Fee rates are basis points carried at x10 precision: a rate of 10 is 1 bp and
FEE_DIVISOR converts a rate into a fraction of the transfer amount.
"""
from __future__ import annotations

from dataclasses import dataclass

from .core import FeeParameters
from .errors import DegenerateFeeCurve, InsufficientBalance

BPS_PRECISION = 10
FEE_DIVISOR = 10_000 * BPS_PRECISION
REWARD_SCALE = 10_000_000_000


@dataclass(frozen=True)
class FeeBreakdown:
    lp_fee: int
    incentive_fee: int
    total_fee: int

    def to_dict(self) -> dict:
        return {
            "lp_fee": int(self.lp_fee),
            "incentive_fee": int(self.incentive_fee),
            "total_fee": int(self.total_fee),
        }


def compute_transfer_fee_bps(params: FeeParameters, transfer_amount: int, current_liquidity: int,
                             asset_id: str = "") -> int:
    """
    Fee rate for moving `transfer_amount` out of a reserve currently holding
    `current_liquidity` free units.

    The rate sits at the equilibrium fee while the reserve stays at or above
    its provided level and climbs toward the max fee as the transfer drains it.
    """
    resulting = int(current_liquidity) - int(transfer_amount)
    if resulting < 0:
        raise InsufficientBalance(asset_id, int(transfer_amount), int(current_liquidity))

    provided = int(params.provided_liquidity)
    fe = int(params.equilibrium_fee_bps)
    fmax = int(params.max_fee_bps)

    numerator = provided * fe * fmax
    denominator = fe * provided + (fmax - fe) * resulting
    if denominator == 0:
        raise DegenerateFeeCurve(
            f"{asset_id or 'asset'}: zero denominator (provided={provided}, resulting={resulting}, "
            f"equilibrium={fe}, max={fmax})"
        )
    return numerator // denominator


def fee_amount(amount: int, fee_bps: int) -> int:
    return int(amount) * int(fee_bps) // FEE_DIVISOR


def split_fee(amount: int, fee_bps: int, equilibrium_fee_bps: int) -> FeeBreakdown:
    """
    Above the equilibrium rate the provider share is capped at equilibrium and
    the surplus funds the incentive pool. Rounding dust stays in the reserve.
    """
    total = fee_amount(amount, fee_bps)
    if fee_bps > equilibrium_fee_bps:
        lp_fee = fee_amount(amount, equilibrium_fee_bps)
        incentive = fee_amount(amount, fee_bps - equilibrium_fee_bps)
    else:
        lp_fee = total
        incentive = 0
    return FeeBreakdown(lp_fee=lp_fee, incentive_fee=incentive, total_fee=total)


def compute_reward(provided_liquidity: int, free_liquidity: int, incentive_balance: int,
                   deposit_amount: int) -> int:
    if free_liquidity >= provided_liquidity:
        return 0
    deficit = int(provided_liquidity) - int(free_liquidity)
    if deposit_amount >= deficit:
        return int(incentive_balance)
    scaled = int(deposit_amount) * int(incentive_balance) * REWARD_SCALE // deficit
    return scaled // REWARD_SCALE
