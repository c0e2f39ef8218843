"""
Streamlit dashboard for the Deriv digit-pattern monitor.

Read-only view of the backend state snapshot plus control signals:
- Start button: locks config, writes START with settings, shows live cards
- Stop button: writes STOP, unlocks config
- Apply / Reset / Manual trade: write their own control actions

The backend owns all state; this script only renders data/monitor_state.json.
"""

import time
import json
import datetime
import streamlit as st
import plotly.graph_objects as go
import pandas as pd
from pathlib import Path

from utils import SYMBOL_NAMES, display_name


# ---------------- Page Config ----------------
st.set_page_config(
    page_title="Deriv Volatility Monitor",
    layout="wide",
    initial_sidebar_state="expanded"
)

# ---------------- Session State Initialization ----------------
if "running" not in st.session_state:
    st.session_state.running = False
if "last_version" not in st.session_state:
    st.session_state.last_version = -1
if "last_alert_ts" not in st.session_state:
    st.session_state.last_alert_ts = time.time()


# ---------------- Constants ----------------
DATA_DIR = Path("data")
DATA_DIR.mkdir(exist_ok=True)

CONTROL_PATH = DATA_DIR / "control.json"
STATE_PATH = DATA_DIR / "monitor_state.json"

MAX_SYMBOLS = 10

AVAILABLE_SYMBOLS = list(SYMBOL_NAMES.keys())

CLUSTER_COLORS = {0: "#2b2d42", 2: "#40916c", 3: "#00b4d8", 4: "#ffd60a", 5: "#f77f00", 6: "#e94560"}
ALERT_ICONS = {"info": "ℹ️", "warning": "⚠️", "success": "✅", "error": "❌"}


def write_control(action: str, **payload):
    with open(CONTROL_PATH, "w") as f:
        json.dump(dict(payload, action=action, timestamp=time.time()), f)


# ================== LOAD STATE ==========

def load_state():
    """
    Load the backend snapshot.
    Returns (version, state), (None, {}) if missing, or (None, None) on a partial write.
    """
    if not STATE_PATH.exists():
        return (None, {})
    try:
        with open(STATE_PATH) as f:
            content = f.read()
            if not content.strip():
                return (None, {})
            data = json.loads(content)
            return (data.get("version"), data.get("state", {}))
    except json.JSONDecodeError:
        # Partial write in progress - skip this frame
        return (None, None)
    except (FileNotFoundError, PermissionError):
        return (None, {})


state_version, state = load_state()
stored = (state or {}).get("settings") or {}


# ---------------- Custom CSS ----------------
st.markdown("""
<style>
    .stMetric {
        background: linear-gradient(135deg, #1a1a2e 0%, #16213e 100%);
        padding: 12px;
        border-radius: 10px;
        border: 1px solid #0f3460;
    }
    .stMetric label { color: #e94560 !important; font-size: 0.85rem; }
    .main-header {
        background: linear-gradient(135deg, #dc267f 0%, #9333ea 100%);
        padding: 25px;
        border-radius: 12px;
        margin-bottom: 20px;
    }
    .digit {
        display: inline-block;
        width: 26px; height: 26px;
        line-height: 26px;
        margin: 2px;
        border-radius: 6px;
        text-align: center;
        font-family: monospace;
        font-weight: bold;
        color: #ffffff;
    }
    .status-running {
        background: linear-gradient(90deg, #2d6a4f, #40916c);
        padding: 10px 15px;
        border-radius: 8px;
        margin: 10px 0;
    }
    .status-stopped {
        background: linear-gradient(90deg, #6c757d, #495057);
        padding: 10px 15px;
        border-radius: 8px;
        margin: 10px 0;
    }
</style>
""", unsafe_allow_html=True)


# ================== SIDEBAR - CONFIGURATION ==================
with st.sidebar:
    st.header("⚙️ Configuration")

    is_running = st.session_state.running

    # ========== CONNECTION ==========
    st.subheader("🔌 Connection")

    app_id = st.text_input(
        "App ID",
        value=str(stored.get("app_id", "1089")),
        disabled=is_running,
        help="Numeric Deriv application id"
    )

    default_symbols = [s for s in stored.get("symbols", AVAILABLE_SYMBOLS[:5]) if s in AVAILABLE_SYMBOLS]
    symbols = st.multiselect(
        "Volatility Indices",
        options=AVAILABLE_SYMBOLS,
        default=default_symbols or AVAILABLE_SYMBOLS[:5],
        format_func=display_name,
        disabled=is_running
    )

    window_size = st.slider(
        "Digit History Window",
        min_value=20,
        max_value=200,
        value=int(stored.get("history_window_size", 50)),
        step=10,
        disabled=is_running
    )

    st.divider()

    # ========== PATTERN & TRADING PARAMETERS ==========
    st.subheader("📈 Pattern & Trading")

    alert_threshold = st.slider(
        "Alert Threshold (clusters)",
        min_value=1,
        max_value=10,
        value=int(stored.get("alert_threshold", 5))
    )

    min_cluster_size = st.slider(
        "Min Clusters to Trade",
        min_value=2,
        max_value=10,
        value=int(stored.get("min_cluster_size", 5))
    )

    trade_amount = st.number_input(
        "Stake",
        min_value=0.35,
        max_value=1000.0,
        value=float(stored.get("trade_amount", 1.0)),
        step=0.5
    )

    trade_duration = st.number_input(
        "Duration (ticks)",
        min_value=1,
        max_value=10,
        value=int(stored.get("trade_duration", 1)),
        step=1
    )

    auto_trade = st.toggle("Auto-trade", value=bool(stored.get("auto_trade_enabled", False)))
    paper_trading = st.toggle("Paper trading", value=bool(stored.get("paper_trading_enabled", True)))
    sound_enabled = st.toggle("Alert notifications", value=bool(stored.get("sound_enabled", True)))

    refresh_rate = st.selectbox(
        "Refresh Rate",
        options=[0.5, 1.0, 2.0, 5.0],
        index=1,
        format_func=lambda x: f"{x}s"
    )

    settings_payload = {
        "app_id": app_id.strip(),
        "symbols": symbols,
        "history_window_size": window_size,
        "alert_threshold": alert_threshold,
        "min_cluster_size": min_cluster_size,
        "trade_amount": float(trade_amount),
        "trade_duration": int(trade_duration),
        "auto_trade_enabled": auto_trade,
        "paper_trading_enabled": paper_trading,
        "sound_enabled": sound_enabled,
    }

    st.divider()

    # ========== VALIDATION (FAIL-FAST) ==========
    validation_errors = []
    if not app_id.strip().isdigit():
        validation_errors.append("App ID must be numeric")
    if len(symbols) == 0:
        validation_errors.append("Select at least one volatility index")
    if len(symbols) > MAX_SYMBOLS:
        validation_errors.append(f"Maximum {MAX_SYMBOLS} symbols allowed (got {len(symbols)})")

    for error in validation_errors:
        st.error(f"❌ {error}")

    # ========== CALLBACKS ==========
    def start_callback():
        if len(validation_errors) == 0:
            st.session_state.running = True
            st.session_state.last_version = -1
            write_control("START", symbols=symbols, settings=settings_payload)

    def stop_callback():
        st.session_state.running = False
        write_control("STOP")

    def apply_callback():
        write_control("SETTINGS", settings=settings_payload)

    def reset_callback():
        write_control("RESET_STATS")

    st.subheader("🎮 Control")
    col1, col2 = st.columns(2)
    with col1:
        st.button(
            "▶️ Start",
            disabled=is_running or len(validation_errors) > 0,
            use_container_width=True,
            type="primary",
            on_click=start_callback,
            key="start_btn"
        )
    with col2:
        st.button(
            "⏹️ Stop",
            disabled=not is_running,
            use_container_width=True,
            on_click=stop_callback,
            key="stop_btn"
        )

    col3, col4 = st.columns(2)
    with col3:
        st.button("💾 Apply", use_container_width=True, on_click=apply_callback, key="apply_btn",
                  help="Thresholds, stake and trading toggles apply on the next tick")
    with col4:
        st.button("🧹 Reset Stats", use_container_width=True, on_click=reset_callback,
                  disabled=not is_running, key="reset_btn")

    # ========== STATUS INDICATOR ==========
    st.divider()
    if is_running:
        st.markdown(f"""
        <div class="status-running">
        🟢 <strong>RUNNING</strong><br>
        <small>{len(symbols)} indices monitored</small>
        </div>
        """, unsafe_allow_html=True)
    else:
        st.markdown("""
        <div class="status-stopped">
        ⚫ <strong>STOPPED</strong><br>
        <small>Configure and press Start</small>
        </div>
        """, unsafe_allow_html=True)


# ================== MAIN CONTENT ==================

st.markdown("""
<div class="main-header">
    <h1 style="margin:0; color: #ffffff;">🎯 Deriv Volatility Monitor</h1>
    <p style="margin:5px 0 0 0; color: #f0f0f0;">Real-time digit cluster detection across volatility indices with automated DIGITDIFF trading</p>
</div>
""", unsafe_allow_html=True)


# ========== GATE: Show content only when running ==========
if not st.session_state.running:
    st.info("👈 **Configure indices and press Start** to begin live monitoring.")
    trades = (state or {}).get("trades") or []
    if trades:
        st.caption(f"Last {len(trades)} stored trades")
        st.dataframe(pd.DataFrame(trades), use_container_width=True, hide_index=True)
    st.stop()


# FRAME SKIP: partial write
if state is None:
    st.info("⏳ Waiting for stable snapshot...")
    time.sleep(refresh_rate)
    st.rerun()

if not state or not state.get("symbols"):
    st.warning("⏳ **Waiting for backend...**")
    st.caption("Run `python app.py` and keep it running alongside this dashboard.")
    time.sleep(refresh_rate)
    st.rerun()


# ========== CONNECTION STATUS ==========
session = state.get("session") or {}
if session.get("connected"):
    account = session.get("loginid") or "no account"
    st.success(
        f"🟢 **LIVE** • {len(state['symbols'])} indices • Account: {account} • "
        f"Window: {window_size} • Refresh: {refresh_rate}s"
    )
else:
    st.warning("🟠 **Connecting to Deriv...**")
if not session.get("has_token"):
    st.caption("🔑 DERIV_API_TOKEN not set on the backend - signals only, no live trades.")


# ================== HELPERS ==================

def render_digit_stream(digits: list, sizes: list) -> str:
    cells = []
    for digit, size in zip(digits[-40:], sizes[-40:]):
        color = CLUSTER_COLORS.get(min(size, 6), CLUSTER_COLORS[0])
        cells.append(f'<span class="digit" style="background:{color}">{digit}</span>')
    return "".join(cells)


def render_symbol_card(symbol: str, snap: dict):
    name = display_name(symbol)
    last_quote = snap.get("last_quote")
    precision = snap.get("precision")
    if last_quote is not None and precision is not None:
        quote_text = f"{last_quote:.{precision}f}"
    else:
        quote_text = "--"

    st.markdown(f"#### {name} `{symbol}` · {quote_text}")

    digits = snap.get("digits") or []
    if digits:
        st.markdown(render_digit_stream(digits, snap.get("cluster_sizes") or []), unsafe_allow_html=True)
    else:
        st.caption("Waiting for ticks...")

    col_patterns, col_freq = st.columns([1, 1])
    with col_patterns:
        patterns = snap.get("patterns") or []
        if patterns:
            df = pd.DataFrame(patterns)[["digit", "clusters", "state", "waiting_for_trigger", "last_cluster_end"]]
            df.columns = ["Digit", "Clusters", "State", "Fired", "Last End"]
            st.dataframe(df, use_container_width=True, hide_index=True, height=180, key=f"patterns_{symbol}")
        else:
            st.caption("No active patterns")

    with col_freq:
        freq = (snap.get("frequencies") or {}).get("percent") or [0] * 10
        fig = go.Figure()
        fig.add_trace(go.Bar(
            x=[str(d) for d in range(10)],
            y=freq,
            marker_color="#9d4edd",
            name=f"Digits ({symbol})"
        ))
        fig.add_hline(y=10, line_dash="dot", line_color="gray")
        fig.update_layout(
            title=f"Digit share · {name}",
            xaxis_title="Digit",
            yaxis_title="%",
            height=200,
            template="plotly_dark",
            margin=dict(l=10, r=10, t=40, b=30),
            showlegend=False,
            uirevision=f"freq_{symbol}"
        )
        st.plotly_chart(fig, use_container_width=True, key=f"freq_{symbol}")

    st.caption(f"📍 {symbol} | Ticks: {snap.get('tick_count', 0)} | Window: {len(digits)}/{snap.get('window')}")


# ================== LAYOUT ==================
main_col, side_col = st.columns([3, 1])

with main_col:
    for symbol, snap in state["symbols"].items():
        with st.container(border=True):
            render_symbol_card(symbol, snap)

with side_col:
    # ====== STATISTICS ======
    stats = state.get("statistics") or {}
    ends = stats.get("pattern_ends") or {}
    st.markdown("### 📊 Pattern Statistics")
    labels = [f"{k}+" if k == "6" else k for k in ends.keys()]
    fig_stats = go.Figure(go.Bar(x=labels, y=list(ends.values()), marker_color="#e94560"))
    fig_stats.update_layout(
        xaxis_title="Ended at (clusters)",
        height=220,
        template="plotly_dark",
        margin=dict(l=10, r=10, t=10, b=30),
        showlegend=False
    )
    st.plotly_chart(fig_stats, use_container_width=True, key="stats_chart")
    s1, s2 = st.columns(2)
    s1.metric("Patterns", stats.get("total", 0))
    s2.metric("Signals", stats.get("triggers", 0))
    if stats.get("most_common"):
        st.caption(f"Most common: {stats['most_common']} clusters")

    # ====== P&L ======
    pnl = state.get("pnl") or {}
    st.markdown("### 💰 P&L")
    if pnl.get("net") is not None:
        st.metric(
            f"Balance ({session.get('currency', 'USD')})",
            f"{pnl['current_balance']:.2f}",
            delta=f"{pnl['net']:+.2f} ({pnl['pct']:+.2f}%)"
        )
    else:
        st.caption("No account balance yet")

    # ====== ALERTS ======
    st.markdown("### 🔔 Alerts")
    for alert in state.get("alerts") or []:
        ts = datetime.datetime.fromtimestamp(alert["timestamp"]).strftime("%H:%M:%S")
        st.caption(f"{ALERT_ICONS.get(alert['level'], '•')} `{ts}` {alert['message']}")

    # Toast new trade and pattern alerts once
    fresh = [a for a in state.get("alerts") or [] if a["timestamp"] > st.session_state.last_alert_ts]
    if fresh:
        st.session_state.last_alert_ts = max(a["timestamp"] for a in fresh)
        if sound_enabled:
            for alert in reversed(fresh):
                if alert["kind"] in ("trade", "pattern"):
                    st.toast(alert["message"], icon=ALERT_ICONS.get(alert["level"], "🔔"))


# ================== MANUAL TRADE ==================
st.markdown("---")
with st.expander("🖐️ Manual DIGITDIFF Trade", expanded=False):
    mt_col1, mt_col2, mt_col3 = st.columns([2, 1, 1])
    with mt_col1:
        manual_symbol = st.selectbox("Index", options=list(state["symbols"].keys()),
                                     format_func=display_name, key="manual_symbol")
    with mt_col2:
        manual_digit = st.number_input("Barrier digit", min_value=0, max_value=9, value=0, step=1,
                                       key="manual_digit")
    with mt_col3:
        st.write("")
        if st.button("Place trade", key="manual_trade_btn", use_container_width=True):
            write_control("MANUAL_TRADE", symbol=manual_symbol, digit=int(manual_digit))
            st.toast(f"Manual trade sent for {display_name(manual_symbol)}")


# ================== TRADE HISTORY ==================
with st.expander("📋 Trade History", expanded=False):
    trades = state.get("trades") or []
    if trades:
        trades_df = pd.DataFrame(trades)
        trades_df["time"] = pd.to_datetime(trades_df["timestamp"], unit="ms").dt.strftime("%H:%M:%S")
        trades_df["mode"] = trades_df["paper"].map({True: "paper", False: "live"})
        trades_df = trades_df[["time", "symbol", "contract_type", "target_digit", "amount", "duration", "mode"]]
        st.dataframe(trades_df, use_container_width=True, hide_index=True, key="trades_dataframe")
        st.download_button(
            label="📥 Download Trades (CSV)",
            data=trades_df.to_csv(index=False).encode("utf-8"),
            file_name="trades.csv",
            mime="text/csv",
            key="download_trades_csv"
        )
        st.caption(f"{state.get('trade_count', len(trades))} trades stored in total")
        summary = state.get("trade_summary") or []
        if summary:
            summary_df = pd.DataFrame(summary)
            summary_df["index"] = summary_df["symbol"].map(display_name)
            summary_df["mode"] = summary_df["paper"].map({True: "paper", False: "live"})
            st.dataframe(
                summary_df[["index", "mode", "trades", "total_stake"]],
                use_container_width=True,
                hide_index=True,
                key="trade_summary_dataframe"
            )
    else:
        st.info("No trades yet.")


# ================== FOOTER ==========
if state_version is not None:
    st.session_state.last_version = state_version
st.caption(
    f"🔒 Read-only dashboard | {len(state['symbols'])} indices | "
    f"Snapshot v{st.session_state.last_version} | Refresh: {refresh_rate}s"
)

# ================== AUTO REFRESH ==========
time.sleep(refresh_rate)
st.rerun()
