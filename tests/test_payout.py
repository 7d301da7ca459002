import pytest

from bridgepool.core import transfer_fingerprint
from bridgepool.errors import (
    AlreadyProcessed, FeeExceedsAmount, InsufficientBalance, PoolPaused, ReentrantCall, TransferFailed,
    Unauthorized,
)
from bridgepool.fees import fee_amount
from tests.conftest import ASSET, OTHER_RELAYER, OWNER, RELAYER


def _payout(h, amount=500_000, receiver="bob", proof="proof-1", units=1_000, price=1, caller=RELAYER):
    return h.pool.payout(caller, ASSET, amount, receiver, proof, "chain_a", units, price)


class TestPayoutAccounting:

    def test_fees_split_between_providers_incentives_and_gas(self, funded):
        receipt = _payout(funded)

        assert receipt.fee_bps == 19
        assert (receipt.lp_fee, receipt.incentive_fee, receipt.gas_fee) == (50, 45, 1_000)
        assert receipt.amount_delivered == 500_000 - 95 - 1_000
        assert funded.ledger.balance("bob", ASSET) == receipt.amount_delivered
        assert funded.pool.incentive_balance(ASSET) == 45
        assert funded.pool.gas_fee_accumulated(ASSET) == 1_000
        assert funded.pool.gas_fee_accumulated(ASSET, RELAYER) == 1_000
        assert funded.lp_ledger.fees_for(ASSET) == 50
        # provider fee stays in the reserve as free liquidity
        assert funded.pool.current_free_liquidity(ASSET) == 500_050

    def test_round_trip_without_gas_delivers_amount_minus_fee(self, funded):
        amount = 10_000
        fee_bps = funded.pool.get_transfer_fee_bps(ASSET, amount)
        receipt = _payout(funded, amount=amount, price=0)
        assert receipt.amount_delivered == amount - fee_amount(amount, fee_bps)
        assert receipt.gas_fee == 0

    def test_quote_matches_executed_payout(self, funded):
        quote = funded.pool.quote_payout(ASSET, 250_000, execution_cost_units=3_000, unit_gas_price=2)
        receipt = _payout(funded, amount=250_000, units=3_000, price=2)
        assert quote.amount_delivered == receipt.amount_delivered
        assert (quote.fees.lp_fee, quote.fees.incentive_fee) == (receipt.lp_fee, receipt.incentive_fee)
        assert quote.gas_fee == receipt.gas_fee == (3_000 * 2)

    def test_status_view_reports_processed_fingerprint(self, funded):
        fingerprint, done = funded.pool.check_transfer_status(ASSET, 500_000, "bob", "proof-1")
        assert not done
        receipt = _payout(funded)
        assert receipt.fingerprint == fingerprint
        assert funded.pool.check_transfer_status(ASSET, 500_000, "bob", "proof-1") == (fingerprint, True)
        event = funded.state.log.of_type("PAYOUT_COMPLETED")[-1]
        assert event.meta["fingerprint"] == fingerprint
        assert event.meta["deposit_proof"] == "proof-1"


class TestReplayProtection:

    def test_second_payout_rejected_and_ledgers_unchanged(self, funded):
        _payout(funded)
        before = funded.snapshot()
        bob_before = funded.ledger.balance("bob", ASSET)

        with pytest.raises(AlreadyProcessed):
            _payout(funded, caller=OTHER_RELAYER)

        assert funded.snapshot() == before
        assert funded.ledger.balance("bob", ASSET) == bob_before
        assert funded.pool.gas_fee_accumulated(ASSET, OTHER_RELAYER) == 0

    def test_distinct_proofs_are_distinct_transfers(self, funded):
        _payout(funded, amount=10_000, proof="proof-1")
        _payout(funded, amount=10_000, proof="proof-2")
        assert len(funded.state.processed) == 2

    def test_fingerprint_binds_every_field(self):
        base = transfer_fingerprint(ASSET, 100, "bob", "p")
        assert base == transfer_fingerprint(ASSET, 100, "bob", b"p")
        assert base != transfer_fingerprint(ASSET, 101, "bob", "p")
        assert base != transfer_fingerprint(ASSET, 100, "carol", "p")
        assert base != transfer_fingerprint("OTHER", 100, "bob", "p")
        assert base != transfer_fingerprint(ASSET, 100, "bob", "q")

    def test_insufficient_liquidity_does_not_consume_fingerprint(self, funded):
        before = funded.snapshot()
        with pytest.raises(InsufficientBalance):
            _payout(funded, amount=2_000_000)
        assert funded.snapshot() == before
        _, done = funded.pool.check_transfer_status(ASSET, 2_000_000, "bob", "proof-1")
        assert not done

    def test_fee_above_amount_does_not_consume_fingerprint(self, funded):
        before = funded.snapshot()
        with pytest.raises(FeeExceedsAmount):
            _payout(funded, amount=1_000, units=1_000, price=10)
        assert funded.snapshot() == before

    def test_failed_transfer_rolls_back_but_consumes_fingerprint(self, funded, monkeypatch):
        before = funded.snapshot()
        monkeypatch.setattr(funded.ledger, "transfer_out", lambda asset_id, to, amount: False)

        with pytest.raises(TransferFailed):
            _payout(funded)

        after = funded.snapshot()
        assert after["processed"] == before["processed"] + 1
        assert {k: v for k, v in after.items() if k != "processed"} == \
            {k: v for k, v in before.items() if k != "processed"}

        monkeypatch.undo()
        with pytest.raises(AlreadyProcessed):
            _payout(funded)


class TestPayoutGating:

    def test_unknown_relayer_rejected(self, funded):
        before = funded.snapshot()
        with pytest.raises(Unauthorized):
            _payout(funded, caller="mallory")
        assert funded.snapshot() == before

    def test_deauthorized_relayer_rejected(self, funded):
        funded.auth.set_relayer(OWNER, RELAYER, enabled=False)
        with pytest.raises(Unauthorized):
            _payout(funded)

    def test_paused_pool_rejects_payouts(self, funded):
        funded.auth.pause(OWNER)
        with pytest.raises(PoolPaused):
            _payout(funded)


class TestReentrancy:

    def test_callback_during_payout_cannot_mutate(self, funded):
        funded.ledger.mint("bob", ASSET, 1_000)
        seen = []

        def hook(asset_id, to, amount):
            # reads are still allowed from inside the transfer
            seen.append(funded.pool.current_free_liquidity(asset_id))
            try:
                funded.pool.deposit("bob", ASSET, 1_000, "bob", "chain_a")
            except ReentrantCall as exc:
                seen.append(exc)

        funded.ledger.on_transfer_out.append(hook)
        receipt = _payout(funded)

        assert isinstance(seen[-1], ReentrantCall)
        assert seen[-1].active == "payout"
        assert not funded.state.receipts.deposits
        assert funded.state.receipts.payouts == [receipt]

    def test_raising_callback_unwinds_payout_credits(self, funded):
        funded.ledger.mint("bob", ASSET, 1_000)

        def hook(asset_id, to, amount):
            funded.pool.deposit("bob", ASSET, 1_000, "bob", "chain_a")

        funded.ledger.on_transfer_out.append(hook)
        before = funded.snapshot()

        with pytest.raises(ReentrantCall):
            _payout(funded)

        after = funded.snapshot()
        assert after["gas"] == before["gas"] == 0
        assert after["incentive"] == before["incentive"] == 0
        assert after["lp_fees"] == before["lp_fees"]
        assert funded.pool.gas_fee_accumulated(ASSET, RELAYER) == 0
        assert not funded.state.receipts.payouts
        assert not funded.state.log.of_type("PAYOUT_COMPLETED")
        # the fingerprint stays consumed
        assert after["processed"] == before["processed"] + 1
        _, done = funded.pool.check_transfer_status(ASSET, 500_000, "bob", "proof-1")
        assert done

        funded.ledger.on_transfer_out.clear()
        with pytest.raises(AlreadyProcessed):
            _payout(funded)

    def test_pool_usable_again_after_payout(self, funded):
        funded.ledger.on_transfer_out.append(lambda *args: None)
        _payout(funded, proof="a", amount=10_000)
        _payout(funded, proof="b", amount=10_000)
        assert len(funded.state.receipts.payouts) == 2
