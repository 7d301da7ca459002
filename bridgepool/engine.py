from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional
import hashlib
import logging
import numpy as np
import random

from .config import ScenarioConfig
from .core import DepositReceipt, Event, EventLog
from .errors import AlreadyProcessed, InsufficientBalance, InsufficientReserve, PoolError
from .factory import Agent, Chain, PoolFactory
from .fees import compute_transfer_fee_bps
from .metrics import MetricsStore

logger = logging.getLogger(__name__)

RETRYABLE_REASONS = (InsufficientBalance.reason, InsufficientReserve.reason)
MAX_RELAY_ATTEMPTS = 4

@dataclass
class TransferIntent:
    """A recorded deposit waiting to be paid out on its destination chain."""
    seq: int
    tick: int
    from_chain: str
    to_chain: str
    asset_id: str
    amount: int
    receiver: str
    deposit_proof: str
    attempts: int = 0

class SimulationEngine:
    """
    Drives deposits, relays, gas withdrawals and liquidity top-ups across a set
    of chains, one tick at a time. Failures raised by the pools are recorded
    as events; the engine never retries an intent whose fingerprint was used.
    """
    def __init__(self, cfg: ScenarioConfig, seed: int = 1) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        random.seed(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.log = EventLog(maxlen=cfg.pool.event_log_maxlen)
        self.metrics = MetricsStore()
        self.factory = PoolFactory(cfg)

        self.chains: Dict[str, Chain] = {}
        self.agents: Dict[str, Agent] = {}
        self.pending: Dict[str, Deque[TransferIntent]] = {}
        self._intent_seq: int = 0

        self._deposits_tick: int = 0
        self._payouts_tick: int = 0
        self._relay_failures_tick: int = 0
        self._duplicates_rejected_tick: int = 0
        self._rewards_paid_tick: int = 0
        self._volume_tick: Dict[str, int] = {}
        self._gas_withdrawn_total: int = 0

        self._bootstrap()

    def _bootstrap(self) -> None:
        for chain_id in self.cfg.chains:
            self.chains[chain_id] = self.factory.create_chain(chain_id)
            self.pending[chain_id] = deque()

        lps = max(1, int(self.cfg.initial_liquidity_providers))
        for _ in range(lps):
            agent = self.factory.create_agent("liquidity_provider", self.chains)
            self.agents[agent.agent_id] = agent
            self.factory.seed_liquidity(agent, self.chains, share=1.0 / lps)
        for _ in range(max(1, int(self.cfg.initial_relayers))):
            agent = self.factory.create_agent("relayer", self.chains)
            self.agents[agent.agent_id] = agent
        for _ in range(max(0, int(self.cfg.initial_depositors))):
            agent = self.factory.create_agent("depositor", self.chains)
            self.agents[agent.agent_id] = agent

        self.log.add(Event(self.tick, "SCENARIO_STARTED", meta={
            "chains": list(self.chains), "agents": len(self.agents),
        }))
        self.snapshot_metrics()

    def agents_by_role(self, role: str) -> List[Agent]:
        return [a for a in self.agents.values() if a.role == role]

    # -----------------------------
    # Tick loop
    # -----------------------------
    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            for chain in self.chains.values():
                chain.pool.state.tick = self.tick
            self._deposits_tick = 0
            self._payouts_tick = 0
            self._relay_failures_tick = 0
            self._duplicates_rejected_tick = 0
            self._rewards_paid_tick = 0
            self._volume_tick = {}

            self._generate_deposits()
            self._relay_pending()

            gas_stride = int(self.cfg.gas_withdraw_interval_ticks or 0)
            if gas_stride > 0 and self.tick % gas_stride == 0:
                self._withdraw_gas_fees()
            lp_stride = int(self.cfg.lp_topup_interval_ticks or 0)
            if lp_stride > 0 and self.tick % lp_stride == 0:
                self._apply_liquidity_topups()

            self.snapshot_metrics()

    def _next_proof(self, chain_id: str, receipt: DepositReceipt) -> tuple[int, str]:
        self._intent_seq += 1
        raw = f"{chain_id}:{self.tick}:{self._intent_seq}:{receipt.depositor}:{receipt.amount}"
        return self._intent_seq, hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _generate_deposits(self) -> None:
        depositors = self.agents_by_role("depositor")
        if not depositors:
            return
        for _ in range(max(0, int(self.cfg.deposits_per_tick))):
            source, dest = self.factory.sample_chain_pair(self.cfg.chain_bias)
            asset_id = self.rng.choice(list(self.factory.asset_seeds))
            seed = self.factory.asset_seeds[asset_id]
            pool = self.chains[source].pool
            if not pool.is_supported(asset_id):
                continue
            provided = pool.get_fee_parameters(asset_id).provided_liquidity
            amount = self.factory.sample_amount(seed, provided, self.cfg.deposit_size_mean_frac,
                                                self.cfg.deposit_size_min)
            depositor = self.rng.choice(depositors)
            try:
                receipt = pool.deposit(depositor.agent_id, asset_id, amount, depositor.agent_id, dest)
            except PoolError as exc:
                logger.warning("deposit rejected chain=%s asset=%s amount=%d: %s", source, asset_id, amount, exc)
                self.log.add(Event(self.tick, "DEPOSIT_FAILED", actor_id=depositor.agent_id, chain_id=source,
                                   asset_id=asset_id, amount=amount, meta={"reason": exc.reason}))
                continue
            seq, proof = self._next_proof(source, receipt)
            intent = TransferIntent(
                seq=seq,
                tick=self.tick,
                from_chain=source,
                to_chain=dest,
                asset_id=asset_id,
                amount=receipt.recorded_amount,
                receiver=receipt.receiver,
                deposit_proof=proof,
            )
            self.pending[dest].append(intent)
            self._deposits_tick += 1
            self._rewards_paid_tick += receipt.reward
            self._volume_tick[asset_id] = self._volume_tick.get(asset_id, 0) + amount
            self.log.add(Event(self.tick, "INTENT_QUEUED", actor_id=depositor.agent_id, chain_id=dest,
                               asset_id=asset_id, amount=intent.amount,
                               meta={"from_chain": source, "reward": receipt.reward}))

    def _sample_gas(self) -> tuple[int, int]:
        mean = float(self.cfg.gas_price_mean)
        price = np.random.normal(mean, mean * float(self.cfg.gas_price_noise))
        units = np.random.exponential(float(self.cfg.execution_cost_mean)) if self.cfg.execution_cost_mean > 0 else 0.0
        return int(units), max(0, int(round(price)))

    def _relay_pending(self) -> None:
        relayers = self.agents_by_role("relayer")
        if not relayers:
            return
        delay = max(0, int(self.cfg.relay_delay_ticks))
        batch = max(1, int(self.cfg.relay_batch_size))
        for chain_id, queue in self.pending.items():
            pool = self.chains[chain_id].pool
            requeue: List[TransferIntent] = []
            processed = 0
            while queue and processed < batch:
                if queue[0].tick > self.tick - delay:
                    break
                intent = queue.popleft()
                processed += 1
                relayer = self.rng.choice(relayers)
                units, price = self._sample_gas()
                intent.attempts += 1
                try:
                    receipt = pool.payout(
                        relayer.agent_id, intent.asset_id, intent.amount, intent.receiver,
                        intent.deposit_proof, intent.from_chain, units, price,
                    )
                except PoolError as exc:
                    self._relay_failures_tick += 1
                    retry = exc.reason in RETRYABLE_REASONS and intent.attempts < MAX_RELAY_ATTEMPTS
                    logger.warning("relay failed chain=%s seq=%d attempt=%d: %s",
                                   chain_id, intent.seq, intent.attempts, exc)
                    self.log.add(Event(self.tick, "RELAY_FAILED", actor_id=relayer.agent_id, chain_id=chain_id,
                                       asset_id=intent.asset_id, amount=intent.amount,
                                       meta={"reason": exc.reason, "seq": intent.seq, "retry": retry}))
                    if retry:
                        requeue.append(intent)
                    continue

                self._payouts_tick += 1
                self.log.add(Event(self.tick, "RELAY_EXECUTED", actor_id=relayer.agent_id, chain_id=chain_id,
                                   asset_id=intent.asset_id, amount=receipt.amount_delivered,
                                   meta={"receipt": receipt.to_dict()}))
                if self.rng.random() < self.cfg.duplicate_relay_rate:
                    self._duplicate_relay(intent, relayers)
            queue.extend(requeue)

    def _duplicate_relay(self, intent: TransferIntent, relayers: List[Agent]) -> None:
        pool = self.chains[intent.to_chain].pool
        relayer = self.rng.choice(relayers)
        units, price = self._sample_gas()
        try:
            pool.payout(relayer.agent_id, intent.asset_id, intent.amount, intent.receiver,
                        intent.deposit_proof, intent.from_chain, units, price)
        except AlreadyProcessed as exc:
            self._duplicates_rejected_tick += 1
            self.log.add(Event(self.tick, "RELAY_DUPLICATE_REJECTED", actor_id=relayer.agent_id,
                               chain_id=intent.to_chain, asset_id=intent.asset_id,
                               meta={"fingerprint": exc.fingerprint, "seq": intent.seq}))
            return
        # a second payout for the same intent means replay protection is broken
        logger.error("duplicate payout accepted for seq=%d on %s", intent.seq, intent.to_chain)
        self.log.add(Event(self.tick, "RELAY_DUPLICATE_PAID", chain_id=intent.to_chain, asset_id=intent.asset_id,
                           meta={"seq": intent.seq, "level": "error"}))

    def _withdraw_gas_fees(self) -> None:
        for chain in self.chains.values():
            for relayer in self.agents_by_role("relayer"):
                for asset_id in self.factory.asset_seeds:
                    if chain.pool.gas_fee_accumulated(asset_id, relayer.agent_id) <= 0:
                        continue
                    try:
                        amount = chain.pool.withdraw_gas_fee(relayer.agent_id, asset_id)
                    except PoolError as exc:
                        logger.warning("gas withdrawal failed chain=%s relayer=%s: %s",
                                       chain.chain_id, relayer.agent_id, exc)
                        continue
                    self._gas_withdrawn_total += amount

    def _apply_liquidity_topups(self) -> None:
        frac = float(self.cfg.lp_topup_frac)
        if frac <= 0.0:
            return
        for agent in self.agents_by_role("liquidity_provider"):
            # top up the asset furthest below its provided level
            best = None
            for chain in self.chains.values():
                for asset_id in self.factory.asset_seeds:
                    params = chain.pool.get_fee_parameters(asset_id)
                    deficit = params.provided_liquidity - chain.pool.current_free_liquidity(asset_id)
                    if best is None or deficit > best[0]:
                        best = (deficit, chain, asset_id, params.provided_liquidity)
            if best is None or best[0] <= 0:
                continue
            _, chain, asset_id, provided = best
            amount = int(provided * frac)
            position_id = agent.positions.get(f"{chain.chain_id}/{asset_id}")
            if amount <= 0 or position_id is None:
                continue
            try:
                chain.pool.add_liquidity(agent.agent_id, position_id, amount)
            except PoolError as exc:
                logger.warning("liquidity top-up failed chain=%s asset=%s: %s", chain.chain_id, asset_id, exc)
                continue
            self.log.add(Event(self.tick, "LIQUIDITY_TOPUP", actor_id=agent.agent_id, chain_id=chain.chain_id,
                               asset_id=asset_id, amount=amount))

    # -----------------------------
    # Metrics
    # -----------------------------
    def _probe_fee_bps(self, chain: Chain, asset_id: str, amount: int) -> Optional[int]:
        state = chain.pool.state
        params = state.registry.fee_parameters(asset_id)
        try:
            return compute_transfer_fee_bps(params, amount, chain.pool.current_free_liquidity(asset_id), asset_id)
        except PoolError:
            return None

    def event_tail(self, n: int = 200) -> List[Event]:
        """Latest events from the engine and every pool, oldest first."""
        merged = list(self.log.tail(n))
        for chain in self.chains.values():
            merged.extend(chain.pool.state.log.tail(n))
        merged.sort(key=lambda e: e.tick)
        return merged[-n:] if n > 0 else []

    def pending_count(self) -> int:
        return sum(len(q) for q in self.pending.values())

    def snapshot_metrics(self, force: bool = False) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if not force and (stride <= 0 or self.tick % stride != 0):
            return
        rows = []
        reserve_total = 0
        incentive_total = 0
        gas_total = 0
        for chain in self.chains.values():
            state = chain.pool.state
            for asset_id, seed in self.factory.asset_seeds.items():
                config = state.registry.get(asset_id)
                if config is None:
                    continue
                reserve = chain.ledger.balance_of(asset_id)
                free = chain.pool.current_free_liquidity(asset_id)
                incentive = state.incentives.get(asset_id)
                gas = state.gas_fees.accumulated(asset_id)
                probe_amount = max(seed.min_cap, int(config.provided_liquidity * self.cfg.deposit_size_mean_frac))
                reserve_total += reserve
                incentive_total += incentive
                gas_total += gas
                rows.append({
                    "tick": self.tick,
                    "chain_id": chain.chain_id,
                    "asset_id": asset_id,
                    "supported": bool(config.supported),
                    "reserve": reserve,
                    "free_liquidity": free,
                    "provided_liquidity": config.provided_liquidity,
                    "liquidity_ratio": free / max(1, config.provided_liquidity),
                    "incentive_pool": incentive,
                    "gas_fee_accumulated": gas,
                    "lp_fees_total": chain.lp_ledger.fees_for(asset_id),
                    "probe_fee_bps": self._probe_fee_bps(chain, asset_id, probe_amount),
                    "gas_ledger_consistent": state.gas_fees.is_consistent(asset_id),
                })
        self.metrics.add_asset_rows(rows)
        self.metrics.add_network({
            "tick": self.tick,
            "deposits_tick": self._deposits_tick,
            "payouts_tick": self._payouts_tick,
            "relay_failures_tick": self._relay_failures_tick,
            "duplicates_rejected_tick": self._duplicates_rejected_tick,
            "rewards_paid_tick": self._rewards_paid_tick,
            "volume_tick": sum(self._volume_tick.values()),
            "pending_intents": self.pending_count(),
            "processed_total": sum(len(c.pool.state.processed) for c in self.chains.values()),
            "reserve_total": reserve_total,
            "incentive_total": incentive_total,
            "gas_fee_outstanding": gas_total,
            "gas_fee_withdrawn_total": self._gas_withdrawn_total,
        })
