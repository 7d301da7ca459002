import pytest

from bridgepool.collaborators import SignedPermit
from bridgepool.errors import PermitRejected, PoolError, PoolPaused, RewardExceedsPool, TransferFailed
from tests.conftest import ASSET, CHAIN, Harness, OWNER


class TestDepositRewards:

    def test_reward_added_to_recorded_amount(self, harness):
        harness.set_deficit(provided=1000, free=800, incentive=50)
        harness.ledger.mint("alice", ASSET, 50)

        assert harness.pool.get_reward_amount(ASSET, 50) == 12
        receipt = harness.pool.deposit("alice", ASSET, 50, "alice", "chain_a")

        assert receipt.reward == 12
        assert receipt.recorded_amount == 62
        assert harness.pool.incentive_balance(ASSET) == 38
        recorded = harness.state.log.of_type("DEPOSIT_RECORDED")[-1]
        assert recorded.amount == 62
        assert harness.state.log.of_type("REWARD_APPLIED")[-1].amount == 12

    def test_refilling_the_deficit_drains_the_pool(self, harness):
        harness.set_deficit(provided=1000, free=800, incentive=50)
        harness.ledger.mint("alice", ASSET, 300)

        receipt = harness.pool.deposit("alice", ASSET, 300, "alice", "chain_a")

        assert receipt.reward == 50
        assert harness.pool.incentive_balance(ASSET) == 0

    def test_balanced_reserve_pays_no_reward(self, funded):
        funded.ledger.mint("alice", ASSET, 100)
        receipt = funded.pool.deposit("alice", ASSET, 100, "alice", "chain_a")
        assert receipt.reward == 0
        assert not funded.state.log.of_type("REWARD_APPLIED")

    def test_failed_pull_leaves_incentives_untouched(self, harness):
        harness.set_deficit(provided=1000, free=800, incentive=50)
        before = harness.snapshot()
        with pytest.raises(TransferFailed):
            harness.pool.deposit("broke", ASSET, 50, "broke", "chain_a")
        assert harness.snapshot() == before
        assert not harness.state.receipts.deposits

    def test_reward_above_pool_rejected_before_pull(self, harness, monkeypatch):
        harness.set_deficit(provided=1000, free=800, incentive=50)
        harness.ledger.mint("alice", ASSET, 100)
        monkeypatch.setattr(harness.pool, "_reward_for", lambda config, amount: 51)
        before = harness.snapshot()

        with pytest.raises(RewardExceedsPool) as exc:
            harness.pool.deposit("alice", ASSET, 100, "alice", "chain_a")

        assert isinstance(exc.value, PoolError)
        assert exc.value.available == 50
        assert harness.snapshot() == before
        assert harness.ledger.balance("alice", ASSET) == 100

    def test_deposit_moves_funds_into_reserve(self, funded):
        funded.ledger.mint("alice", ASSET, 1_000)
        funded.pool.deposit("alice", ASSET, 400, "bob", "chain_a", tag="ref-1")
        assert funded.ledger.balance("alice", ASSET) == 600
        assert funded.ledger.balance_of(ASSET) == 1_000_400
        assert funded.state.receipts.deposits[-1].tag == "ref-1"

    def test_native_deposit_uses_native_asset(self, harness):
        harness.pool.add_supported_asset(OWNER, "NATIVE", 1, 10 ** 9, 10, 200)
        harness.ledger.mint("alice", "NATIVE", 500)
        receipt = harness.pool.deposit_native("alice", 500, "alice", "chain_a")
        assert receipt.asset_id == "NATIVE"
        assert harness.ledger.balance_of("NATIVE") == 500

    def test_paused_pool_rejects_deposits(self, harness):
        harness.ledger.mint("alice", ASSET, 100)
        harness.auth.pause(OWNER)
        with pytest.raises(PoolPaused):
            harness.pool.deposit("alice", ASSET, 100, "alice", "chain_a")
        harness.auth.unpause(OWNER)
        harness.pool.deposit("alice", ASSET, 100, "alice", "chain_a")


class TestPermitDeposits:

    @pytest.fixture
    def permitted(self):
        h = Harness(require_allowance=True)
        h.permits.register("alice", b"alice-key")
        h.ledger.mint("alice", ASSET, 1_000)
        return h

    def _permit(self, h, **overrides):
        fields = dict(owner="alice", spender=CHAIN, asset_id=ASSET, nonce=h.permits.next_nonce("alice"),
                      deadline=100, value=500)
        fields.update(overrides)
        return h.permits.sign(SignedPermit(**fields))

    def test_allowance_required_without_permit(self, permitted):
        with pytest.raises(TransferFailed):
            permitted.pool.deposit("alice", ASSET, 100, "alice", "chain_a")

    def test_value_permit_deposits_and_advances_nonce(self, permitted):
        permit = self._permit(permitted)
        receipt = permitted.pool.deposit_with_permit("alice", ASSET, 300, "alice", "chain_a", permit)
        assert receipt.amount == 300
        assert permitted.ledger.balance("alice", ASSET) == 700
        assert permitted.ledger.allowance("alice", ASSET) == 200
        assert permitted.permits.next_nonce("alice") == 1

    def test_permit_cannot_be_replayed(self, permitted):
        permit = self._permit(permitted)
        permitted.pool.deposit_with_permit("alice", ASSET, 300, "alice", "chain_a", permit)
        with pytest.raises(PermitRejected):
            permitted.pool.deposit_with_permit("alice", ASSET, 100, "alice", "chain_a", permit)

    def test_nonce_permit_grants_unlimited_allowance(self, permitted):
        permit = self._permit(permitted, value=None, allowed=True)
        permitted.pool.deposit_with_permit("alice", ASSET, 1_000, "alice", "chain_a", permit)
        assert permitted.ledger.balance("alice", ASSET) == 0

    @pytest.mark.parametrize("overrides", [
        {"spender": "chain_z"},
        {"deadline": -1},
        {"nonce": 5},
        {"value": 10},
        {"value": None, "allowed": False},
    ])
    def test_rejected_permit_changes_nothing(self, permitted, overrides):
        permit = self._permit(permitted, **overrides)
        with pytest.raises(PermitRejected):
            permitted.pool.deposit_with_permit("alice", ASSET, 300, "alice", "chain_a", permit)
        assert permitted.ledger.balance("alice", ASSET) == 1_000
        assert permitted.ledger.allowance("alice", ASSET) == 0
        assert permitted.permits.next_nonce("alice") == 0

    def test_failed_pull_restores_allowance_and_nonce(self, permitted):
        permitted.ledger.accounts["alice"][ASSET] = 100
        permit = self._permit(permitted)
        with pytest.raises(TransferFailed):
            permitted.pool.deposit_with_permit("alice", ASSET, 300, "alice", "chain_a", permit)
        assert permitted.ledger.allowance("alice", ASSET) == 0
        assert permitted.ledger.balance("alice", ASSET) == 100
        assert permitted.permits.next_nonce("alice") == 0
        assert not permitted.state.receipts.deposits

    def test_failed_pull_keeps_existing_allowance(self, permitted):
        permitted.ledger.approve("alice", ASSET, 42)
        permitted.ledger.accounts["alice"][ASSET] = 100
        permit = self._permit(permitted)
        with pytest.raises(TransferFailed):
            permitted.pool.deposit_with_permit("alice", ASSET, 300, "alice", "chain_a", permit)
        assert permitted.ledger.allowance("alice", ASSET) == 42

    def test_tampered_signature_rejected(self, permitted):
        permit = self._permit(permitted)
        forged = SignedPermit(**{**permit.__dict__, "value": 1_000})
        with pytest.raises(PermitRejected):
            permitted.pool.deposit_with_permit("alice", ASSET, 900, "alice", "chain_a", forged)

    def test_permit_for_someone_else_rejected(self, permitted):
        permit = self._permit(permitted)
        with pytest.raises(PermitRejected):
            permitted.pool.deposit_with_permit("mallory", ASSET, 300, "mallory", "chain_a", permit)
