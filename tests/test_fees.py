import pytest

from bridgepool.core import FeeParameters
from bridgepool.errors import DegenerateFeeCurve, InsufficientBalance
from bridgepool.fees import compute_reward, compute_transfer_fee_bps, fee_amount, split_fee


class TestTransferFeeCurve:

    def test_partial_drain_lands_between_equilibrium_and_max(self):
        params = FeeParameters(equilibrium_fee_bps=10, max_fee_bps=200, provided_liquidity=1000)
        fee = compute_transfer_fee_bps(params, transfer_amount=100, current_liquidity=800)
        assert 10 < fee < 200
        assert fee == 13

    def test_surplus_reserve_charges_at_most_equilibrium(self):
        params = FeeParameters(10, 200, 1000)
        assert compute_transfer_fee_bps(params, 100, 5000) <= 10

    def test_full_drain_hits_max_fee(self):
        params = FeeParameters(10, 200, 1000)
        assert compute_transfer_fee_bps(params, 800, 800) == 200

    def test_larger_transfers_never_get_cheaper(self):
        params = FeeParameters(10, 200, 1_000_000)
        fees = [compute_transfer_fee_bps(params, amount, 900_000) for amount in range(0, 900_001, 50_000)]
        assert fees == sorted(fees)

    def test_amount_above_liquidity_rejected(self):
        params = FeeParameters(10, 200, 1000)
        with pytest.raises(InsufficientBalance) as exc:
            compute_transfer_fee_bps(params, 801, 800, asset_id="TKN")
        assert exc.value.requested == 801
        assert exc.value.available == 800

    def test_zero_denominator_is_reported(self):
        params = FeeParameters(10, 200, provided_liquidity=0)
        with pytest.raises(DegenerateFeeCurve):
            compute_transfer_fee_bps(params, 500, 500)


class TestFeeSplit:

    def test_fee_amount_uses_tenth_basis_points(self):
        # 10 = 1 bp
        assert fee_amount(1_000_000, 10) == 100

    def test_at_equilibrium_everything_goes_to_providers(self):
        fees = split_fee(1_000_000, 10, 10)
        assert fees.lp_fee == fees.total_fee == 100
        assert fees.incentive_fee == 0

    def test_surplus_over_equilibrium_funds_incentives(self):
        fees = split_fee(500_000, 19, 10)
        assert fees.total_fee == 95
        assert fees.lp_fee == 50
        assert fees.incentive_fee == 45

    def test_rounding_dust_is_not_distributed(self):
        fees = split_fee(15_555, 15, 10)
        assert fees.lp_fee + fees.incentive_fee <= fees.total_fee


class TestReward:

    def test_no_deficit_no_reward(self):
        assert compute_reward(1000, 1000, 50, 10) == 0
        assert compute_reward(1000, 1200, 50, 10) == 0

    def test_partial_refill_gets_proportional_share(self):
        assert compute_reward(provided_liquidity=1000, free_liquidity=800, incentive_balance=50,
                              deposit_amount=50) == 12

    def test_covering_the_deficit_takes_the_whole_pool(self):
        assert compute_reward(1000, 800, 50, 200) == 50
        assert compute_reward(1000, 800, 50, 300) == 50

    def test_empty_pool_pays_nothing(self):
        assert compute_reward(1000, 800, 0, 100) == 0
