from dataclasses import dataclass, field

@dataclass
class PoolConfig:
    # Assets
    native_asset: str = "NATIVE"

    # Gas reimbursement
    base_gas_units: int = 21_000

    # Ledger debugging / event retention
    debug_ledger: bool = False
    event_log_maxlen: int | None = None

    def __post_init__(self) -> None:
        if self.base_gas_units < 0:
            raise ValueError(f"base_gas_units must be non-negative, got {self.base_gas_units}")

@dataclass
class AssetSeed:
    asset_id: str
    min_cap: int = 1_000_000
    max_cap: int = 2_000_000_000
    equilibrium_fee_bps: int = 10      # 1 bp
    max_fee_bps: int = 2_000           # 200 bp
    transfer_overhead: int = 30_000
    initial_liquidity: int = 5_000_000_000

@dataclass
class ScenarioConfig:
    # Network
    chains: list[str] = field(default_factory=lambda: ["chain_a", "chain_b"])
    assets: list[AssetSeed] = field(default_factory=lambda: [
        AssetSeed("USDC"),
        AssetSeed("NATIVE", min_cap=100_000, max_cap=500_000_000, initial_liquidity=1_000_000_000, transfer_overhead=0),
    ])
    pool: PoolConfig = field(default_factory=PoolConfig)

    # Agents
    initial_depositors: int = 40
    initial_relayers: int = 3
    initial_liquidity_providers: int = 2
    depositor_initial_balance: int = 2_000_000_000

    # Activity (per tick, per chain)
    deposits_per_tick: int = 6
    deposit_size_mean_frac: float = 0.02   # of provided liquidity
    deposit_size_min: int = 1_000_000
    chain_bias: float = 0.7                # share of deposits originating on the first chain
    relay_batch_size: int = 10
    relay_delay_ticks: int = 1
    duplicate_relay_rate: float = 0.05     # share of relays retried by a second relayer
    gas_withdraw_interval_ticks: int = 8
    lp_topup_interval_ticks: int = 12
    lp_topup_frac: float = 0.05

    # Gas market
    gas_price_mean: float = 2.0
    gas_price_noise: float = 0.25          # relative stdev
    execution_cost_mean: int = 60_000

    # Metrics
    metrics_stride: int = 1
    event_tail_default: int = 200

    def __post_init__(self) -> None:
        if not self.chains:
            self.chains = ["chain_a", "chain_b"]
        if len(self.chains) < 2:
            raise ValueError("a scenario needs at least two chains")
        self.chain_bias = min(1.0, max(0.0, float(self.chain_bias)))
        self.duplicate_relay_rate = min(1.0, max(0.0, float(self.duplicate_relay_rate)))
        seen = set()
        for seed in self.assets:
            if seed.asset_id in seen:
                raise ValueError(f"duplicate asset seed: {seed.asset_id}")
            seen.add(seed.asset_id)
