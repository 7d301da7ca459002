import pytest

from bridgepool.collaborators import AccountLedger, HmacPermitVerifier, InMemoryLpLedger, StaticAuthorization
from bridgepool.config import PoolConfig
from bridgepool.core import PoolState
from bridgepool.pool import LiquidityPool

OWNER = "owner"
RELAYER = "relayer_1"
OTHER_RELAYER = "relayer_2"
LP = "lp_1"
ASSET = "TKN"
CHAIN = "chain_b"


class Harness:
    """One pool wired to in-memory collaborators."""

    def __init__(self, require_allowance: bool = False):
        self.ledger = AccountLedger(pool_account="pool", require_allowance=require_allowance)
        self.auth = StaticAuthorization(owner=OWNER, relayers={RELAYER, OTHER_RELAYER})
        self.lp_ledger = InMemoryLpLedger()
        self.permits = HmacPermitVerifier()
        self.state = PoolState(chain_id=CHAIN)
        self.pool = LiquidityPool(
            self.state, self.auth, self.lp_ledger, self.ledger,
            permits=self.permits, cfg=PoolConfig(base_gas_units=0),
        )
        self.pool.add_supported_asset(
            OWNER, ASSET, min_cap=1, max_cap=10 ** 12,
            equilibrium_fee_bps=10, max_fee_bps=200,
        )
        self.position = self.lp_ledger.open_position(LP, ASSET)

    def provide(self, amount: int) -> None:
        self.ledger.mint(LP, ASSET, amount)
        self.pool.add_liquidity(LP, self.position, amount)

    def set_deficit(self, provided: int, free: int, incentive: int) -> None:
        """Place the reserve directly into a given provided/free/incentive state."""
        self.state.registry.adjust_provided_liquidity(ASSET, provided)
        self.ledger.mint("pool", ASSET, free + incentive)
        self.state.incentives.add(ASSET, incentive)

    def snapshot(self) -> dict:
        return {
            "reserve": self.ledger.balance_of(ASSET),
            "incentive": self.state.incentives.get(ASSET),
            "gas": self.state.gas_fees.accumulated(ASSET),
            "processed": len(self.state.processed),
            "lp_fees": self.lp_ledger.fees_for(ASSET),
        }


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def funded():
    h = Harness()
    h.provide(1_000_000)
    return h
