import json
import time
import numpy as np
import streamlit as st
import pandas as pd

from bridgepool.config import ScenarioConfig
from bridgepool.core import FeeParameters
from bridgepool.engine import SimulationEngine
from bridgepool.errors import PoolError
from bridgepool.factory import ADMIN_ID
from bridgepool.fees import FEE_DIVISOR, compute_transfer_fee_bps

st.set_page_config(page_title="Bridge Liquidity Pool Simulator", layout="wide")


def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
        st.session_state.seed = 1
        st.session_state.engine = SimulationEngine(cfg=cfg, seed=st.session_state.seed)
    return st.session_state.engine


def reset_engine(reset_config: bool = False) -> None:
    if reset_config:
        cfg = ScenarioConfig()
        seed = 1
        st.session_state.cfg = cfg
        st.session_state.seed = seed
    else:
        cfg = st.session_state.get("cfg", ScenarioConfig())
        seed = st.session_state.get("seed", 1)
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=seed)


engine = get_engine()

st.title("Bridge Liquidity Pool Simulator")
st.caption("Deposits on one chain are relayed as payouts on another; 1 tick = 1 relay round.")

def _fmt_elapsed(seconds: float, ticks: int) -> str:
    seconds = max(0.0, seconds)
    per_tick_ms = 1000.0 * seconds / max(1, ticks)
    return f"{seconds:0.2f}s, {per_tick_ms:0.0f} ms/tick"

def _fmt(value: float) -> str:
    return f"{float(value):,.0f}"

def _fmt_units(value: int) -> str:
    """Integer asset units, abbreviated past a million."""
    value = int(value)
    for scale, suffix in ((10 ** 12, "T"), (10 ** 9, "B"), (10 ** 6, "M")):
        if abs(value) >= scale:
            return f"{value / scale:,.2f}{suffix}"
    return f"{value:,d}"

def _render_kpi_grid(kpis, columns: int = 4) -> None:
    """`kpis` holds (label, value, is_units) tuples; unit values are abbreviated."""
    for idx in range(0, len(kpis), columns):
        cols = st.columns(columns)
        for col, (label, value, is_units) in zip(cols, kpis[idx: idx + columns]):
            col.metric(label, _fmt_units(value) if is_units else _fmt(value))

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

def _ensure_metrics_snapshot(engine: SimulationEngine) -> None:
    rows = engine.metrics.network_rows
    if not rows or rows[-1].get("tick") != engine.tick:
        engine.snapshot_metrics(force=True)

def _fee_curve(params: FeeParameters, free_liquidity: int, points: int = 60) -> pd.DataFrame:
    """Fee rate across transfer sizes from zero up to the current free liquidity."""
    if free_liquidity <= 0:
        return pd.DataFrame(columns=["amount", "fee_bps"])
    amounts = np.linspace(0, free_liquidity, num=points, dtype=np.int64)
    rows = []
    for amount in np.unique(amounts):
        try:
            fee_bps = compute_transfer_fee_bps(params, int(amount), free_liquidity)
        except PoolError:
            continue
        rows.append({"amount": int(amount), "fee_bps": fee_bps, "fee_pct": fee_bps * 100.0 / FEE_DIVISOR})
    return pd.DataFrame(rows)


with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Run")
    if st.button("Restart simulation"):
        reset_engine(reset_config=True)
        engine = st.session_state.engine
        st.session_state.run_progress = 0.0
        st.session_state.run_progress_label = "Idle"
    st.caption("Restart resets the simulation to tick 0 with default settings.")
    if "seed" not in st.session_state:
        st.session_state.seed = 1
    st.number_input(
        "Random seed",
        min_value=1,
        max_value=100000,
        key="seed",
    )

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=500, value=25)
    c3, c4 = st.columns(2)
    run_one = c3.button("Step 1 tick")
    run_many = c4.button("Run N ticks")
    progress_label = st.session_state.get("run_progress_label", "Idle")
    progress_value = float(st.session_state.get("run_progress", 0.0))
    progress_bar = st.progress(progress_value, text=progress_label)
    if run_one:
        start_ts = time.time()
        engine.step(1)
        _ensure_metrics_snapshot(engine)
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_elapsed(elapsed, 1)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    if run_many:
        total = int(run_ticks)
        start_ts = time.time()
        for idx in range(total):
            engine.step(1)
            progress = (idx + 1) / total
            progress_bar.progress(progress, text=f"Run progress: {progress:.0%}")
        elapsed = time.time() - start_ts
        _ensure_metrics_snapshot(engine)
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_elapsed(elapsed, total)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    st.caption(f"Current tick: {engine.tick}")

    st.subheader("Activity")
    engine.cfg.deposits_per_tick = int(st.number_input(
        "Deposits per tick", min_value=0, max_value=500, value=int(engine.cfg.deposits_per_tick), step=1,
    ))
    engine.cfg.deposit_size_mean_frac = st.slider(
        "Deposit size (share of provided liquidity)",
        0.0,
        0.5,
        float(engine.cfg.deposit_size_mean_frac),
        step=0.005,
    )
    engine.cfg.chain_bias = st.slider(
        "Share of deposits from first chain",
        0.0,
        1.0,
        float(engine.cfg.chain_bias),
        step=0.05,
        help="Values far from 0.5 drain the second chain's reserve and push fees up.",
    )
    engine.cfg.duplicate_relay_rate = st.slider(
        "Duplicate relay rate", 0.0, 1.0, float(engine.cfg.duplicate_relay_rate), step=0.01,
    )
    engine.cfg.gas_price_mean = st.number_input(
        "Gas price mean", min_value=0.0, value=float(engine.cfg.gas_price_mean), step=0.5,
    )

    st.subheader("Pause")
    pause_chain = st.selectbox("Chain", list(engine.chains.keys()), key="pause_chain")
    auth = engine.chains[pause_chain].auth
    pc1, pc2 = st.columns(2)
    if pc1.button("Pause"):
        auth.pause(ADMIN_ID)
    if pc2.button("Unpause"):
        auth.unpause(ADMIN_ID)
    st.caption(f"{pause_chain}: {'paused' if auth.is_paused() else 'active'}")

_ensure_metrics_snapshot(engine)
net_df = engine.metrics.network_df()
asset_df = engine.metrics.asset_df()

tab_network, tab_assets, tab_fees, tab_ledgers, tab_events, tab_manual = st.tabs(
    [
        "Network Overview",
        "Assets",
        "Fee Curve",
        "Ledgers",
        "Events",
        "Manual Operations",
    ]
)

with tab_network:
    st.subheader("Network KPIs")
    if net_df.empty:
        st.info("No metrics yet. Run ticks.")
    else:
        latest = net_df.iloc[-1].to_dict()
        kpis = [
            ("Deposits (tick)", latest.get("deposits_tick", 0), False),
            ("Payouts (tick)", latest.get("payouts_tick", 0), False),
            ("Relay failures (tick)", latest.get("relay_failures_tick", 0), False),
            ("Duplicates rejected (tick)", latest.get("duplicates_rejected_tick", 0), False),
            ("Pending intents", latest.get("pending_intents", 0), False),
            ("Processed transfers", latest.get("processed_total", 0), False),
            ("Incentive pools", latest.get("incentive_total", 0), True),
            ("Gas fees outstanding", latest.get("gas_fee_outstanding", 0), True),
        ]
        _render_kpi_grid(kpis, columns=4)

        st.subheader("Deposits vs Payouts per tick")
        st.line_chart(
            net_df,
            x="tick",
            y=["deposits_tick", "payouts_tick", "relay_failures_tick"],
        )

        st.subheader("Pending intents")
        st.line_chart(
            net_df,
            x="tick",
            y=["pending_intents"],
        )

        st.subheader("Incentive pools vs gas fees outstanding")
        st.line_chart(
            net_df,
            x="tick",
            y=["incentive_total", "gas_fee_outstanding", "rewards_paid_tick"],
        )

with tab_assets:
    st.subheader("Reserves (latest tick)")
    if asset_df.empty:
        st.info("No asset rows yet.")
    else:
        latest_tick = asset_df["tick"].max()
        cur = asset_df[asset_df["tick"] == latest_tick]
        st.dataframe(cur, use_container_width=True)

        ac1, ac2 = st.columns(2)
        sel_chain = ac1.selectbox("Chain", list(engine.chains.keys()), key="asset_chain")
        sel_asset = ac2.selectbox("Asset", list(engine.factory.asset_seeds.keys()), key="asset_id")
        series = pd.DataFrame({
            "free_liquidity": engine.metrics.asset_series(sel_chain, sel_asset, "free_liquidity"),
            "provided_liquidity": engine.metrics.asset_series(sel_chain, sel_asset, "provided_liquidity"),
        })
        st.write("**Free vs provided liquidity**")
        st.line_chart(series)
        st.write("**Probe fee (bps x10)**")
        st.line_chart(engine.metrics.asset_series(sel_chain, sel_asset, "probe_fee_bps"))
        st.write("**Incentive pool**")
        st.line_chart(engine.metrics.asset_series(sel_chain, sel_asset, "incentive_pool"))

with tab_fees:
    st.subheader("Fee curve at current reserve state")
    fc1, fc2 = st.columns(2)
    fee_chain = fc1.selectbox("Chain", list(engine.chains.keys()), key="fee_chain")
    fee_asset = fc2.selectbox("Asset", list(engine.factory.asset_seeds.keys()), key="fee_asset")
    pool = engine.chains[fee_chain].pool
    params = pool.get_fee_parameters(fee_asset)
    free = pool.current_free_liquidity(fee_asset)
    m1, m2, m3, m4 = st.columns(4)
    m1.metric("Provided", _fmt_units(params.provided_liquidity))
    m2.metric("Free", _fmt_units(free))
    m3.metric("Equilibrium fee (bps x10)", params.equilibrium_fee_bps)
    m4.metric("Max fee (bps x10)", params.max_fee_bps)
    curve = _fee_curve(params, free)
    if curve.empty:
        st.info("No free liquidity for this asset.")
    else:
        st.line_chart(curve, x="amount", y=["fee_bps"])

with tab_ledgers:
    led_chain = st.selectbox("Chain", list(engine.chains.keys()), key="ledger_chain")
    chain = engine.chains[led_chain]
    state = chain.pool.state
    gas_rows = [
        {"asset": asset_id, "relayer": relayer, "accumulated": amount}
        for asset_id, shares in state.gas_fees.by_relayer.items()
        for relayer, amount in shares.items()
    ]
    st.write("**Gas fees by relayer**")
    st.dataframe(pd.DataFrame(gas_rows), use_container_width=True)

    pos_rows = [
        {"position": p.position_id, "owner": p.owner, "asset": p.asset_id, "supplied": p.supplied}
        for p in chain.lp_ledger.positions.values()
    ]
    st.write("**LP positions**")
    st.dataframe(pd.DataFrame(pos_rows), use_container_width=True)
    st.write("**LP fees credited**")
    st.dataframe(pd.DataFrame([{"asset": a, "lp_fees": v} for a, v in chain.lp_ledger.lp_fees.items()]),
                 use_container_width=True)

    deposits, payouts = state.receipts.tail(engine.cfg.event_tail_default)
    st.write("**Recent deposits**")
    st.dataframe(pd.DataFrame([r.to_dict() for r in deposits]), use_container_width=True)
    st.write("**Recent payouts**")
    st.dataframe(pd.DataFrame([r.to_dict() for r in payouts]), use_container_width=True)

with tab_events:
    n_events = int(engine.cfg.event_tail_default)
    st.subheader(f"Event Log (latest {n_events})")
    tail = engine.event_tail(n_events)
    if not tail:
        st.info("No events yet.")
    else:
        df = pd.DataFrame([e.__dict__ for e in tail])
        df["_order"] = range(len(df))
        df = df.sort_values(["tick", "_order"], ascending=False).drop(columns="_order")
        if "meta" in df.columns:
            df["meta"] = df["meta"].apply(_format_event_meta)
        st.dataframe(df, use_container_width=True)

with tab_manual:
    st.subheader("Quote a payout")
    relayers = [a.agent_id for a in engine.agents_by_role("relayer")]
    with st.form("quote_form"):
        q_chain = st.selectbox("Destination chain", list(engine.chains.keys()))
        q_asset = st.selectbox("Asset", list(engine.factory.asset_seeds.keys()))
        q_amount = st.number_input("Amount", min_value=1, value=10_000_000, step=1_000_000)
        q_units = st.number_input("Execution cost (gas units)", min_value=0, value=60_000, step=1_000)
        q_price = st.number_input("Gas price", min_value=0, value=2, step=1)
        submitted = st.form_submit_button("Quote")
    if submitted:
        try:
            quote = engine.chains[q_chain].pool.quote_payout(q_asset, int(q_amount), int(q_units), int(q_price))
        except PoolError as exc:
            st.error(f"{exc.reason}: {exc}")
        else:
            st.json(quote.to_dict())

    st.subheader("Withdraw relayer gas fees")
    with st.form("gas_form"):
        g_chain = st.selectbox("Chain", list(engine.chains.keys()), key="gas_chain")
        g_relayer = st.selectbox("Relayer", relayers)
        g_asset = st.selectbox("Asset", list(engine.factory.asset_seeds.keys()), key="gas_asset")
        withdraw = st.form_submit_button("Withdraw")
    if withdraw:
        try:
            amount = engine.chains[g_chain].pool.withdraw_gas_fee(g_relayer, g_asset)
        except PoolError as exc:
            st.error(f"{exc.reason}: {exc}")
        else:
            st.success(f"Withdrew {_fmt_units(amount)} {g_asset}")
