from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional
import random

from .collaborators import AccountLedger, HmacPermitVerifier, InMemoryLpLedger, StaticAuthorization
from .config import AssetSeed, ScenarioConfig
from .core import EventLog, PoolState
from .pool import LiquidityPool

AgentRole = Literal["depositor", "relayer", "liquidity_provider"]

ADMIN_ID = "admin"

@dataclass
class Agent:
    agent_id: str
    role: AgentRole
    home_chain: str
    positions: Dict[str, str] = field(default_factory=dict)  # "chain/asset" -> position_id

@dataclass
class Chain:
    chain_id: str
    pool: LiquidityPool
    ledger: AccountLedger
    auth: StaticAuthorization
    lp_ledger: InMemoryLpLedger
    permits: HmacPermitVerifier

class PoolFactory:
    def __init__(self, cfg: ScenarioConfig) -> None:
        self.cfg = cfg
        self.agent_counter = 0
        self.asset_seeds: Dict[str, AssetSeed] = {seed.asset_id: seed for seed in cfg.assets}

    def _new_agent_id(self, role: AgentRole) -> str:
        self.agent_counter += 1
        return f"{role}_{self.agent_counter:04d}"

    def create_chain(self, chain_id: str) -> Chain:
        cfg = self.cfg
        ledger = AccountLedger(pool_account=f"pool:{chain_id}", debug=cfg.pool.debug_ledger)
        auth = StaticAuthorization(owner=ADMIN_ID)
        lp_ledger = InMemoryLpLedger()
        permits = HmacPermitVerifier()
        state = PoolState(chain_id=chain_id, log=EventLog(maxlen=cfg.pool.event_log_maxlen))
        pool = LiquidityPool(state, auth, lp_ledger, ledger, permits=permits, cfg=cfg.pool)
        for seed in cfg.assets:
            pool.add_supported_asset(
                ADMIN_ID,
                seed.asset_id,
                min_cap=seed.min_cap,
                max_cap=seed.max_cap,
                equilibrium_fee_bps=seed.equilibrium_fee_bps,
                max_fee_bps=seed.max_fee_bps,
                transfer_overhead=seed.transfer_overhead,
            )
        return Chain(chain_id=chain_id, pool=pool, ledger=ledger, auth=auth, lp_ledger=lp_ledger, permits=permits)

    def create_agent(self, role: AgentRole, chains: Dict[str, Chain], home_chain: Optional[str] = None) -> Agent:
        cfg = self.cfg
        agent = Agent(
            agent_id=self._new_agent_id(role),
            role=role,
            home_chain=home_chain or random.choice(cfg.chains),
        )
        if role == "relayer":
            for chain in chains.values():
                chain.auth.set_relayer(ADMIN_ID, agent.agent_id)
        elif role == "depositor":
            for chain in chains.values():
                for asset_id in self.asset_seeds:
                    chain.ledger.mint(agent.agent_id, asset_id, cfg.depositor_initial_balance)
        elif role == "liquidity_provider":
            for chain in chains.values():
                for asset_id, seed in self.asset_seeds.items():
                    position_id = chain.lp_ledger.open_position(agent.agent_id, asset_id)
                    agent.positions[f"{chain.chain_id}/{asset_id}"] = position_id
                    # enough headroom for the initial supply plus periodic top-ups
                    chain.ledger.mint(agent.agent_id, asset_id, seed.initial_liquidity * 4)
        return agent

    def seed_liquidity(self, agent: Agent, chains: Dict[str, Chain], share: float) -> None:
        for chain in chains.values():
            for asset_id, seed in self.asset_seeds.items():
                amount = int(seed.initial_liquidity * share)
                if amount <= 0:
                    continue
                position_id = agent.positions[f"{chain.chain_id}/{asset_id}"]
                chain.pool.add_liquidity(agent.agent_id, position_id, amount)

    def sample_amount(self, seed: AssetSeed, provided_liquidity: int, mean_frac: float, floor: int) -> int:
        """
        Deposit size drawn around a fraction of the asset's provided liquidity,
        clamped to the asset caps.
        """
        mean = max(float(floor), provided_liquidity * mean_frac)
        amount = int(random.expovariate(1.0 / mean)) if mean > 0 else floor
        return max(seed.min_cap, min(seed.max_cap, max(floor, amount)))

    def sample_chain_pair(self, bias: float) -> tuple[str, str]:
        chains: List[str] = list(self.cfg.chains)
        source = chains[0] if random.random() < bias else random.choice(chains[1:])
        dest = random.choice([c for c in chains if c != source])
        return source, dest
