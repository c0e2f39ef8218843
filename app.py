"""
Application entry point - backend process.

Responsibilities:
- Read control signals from UI (START/STOP/SETTINGS/RESET_STATS/MANUAL_TRADE via control.json)
- Resolve the Deriv API token from the environment (never exposed to the UI)
- Build, start and tear down the monitoring pipeline
- Persist trades and settings to DuckDB
- Emit state snapshots for UI consumption

Single-command execution:
    python app.py
"""

import os
import math
import time
import json
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from ingest import IngestionManager
from monitor import MonitorPipeline
from storage import DuckDBStorage, TradeWriter
from utils import Settings, SettingsHolder


# ---------------- Logging ----------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger("app")


# ---------------- Configuration ----------------
PROJECT_ROOT = Path(__file__).resolve().parent
load_dotenv(PROJECT_ROOT / ".env")

DATA_DIR = Path("data")
CONTROL_PATH = DATA_DIR / "control.json"
STATE_PATH = DATA_DIR / "monitor_state.json"
DB_PATH = DATA_DIR / "monitor.duckdb"

STATE_INTERVAL = 0.5          # seconds
CONTROL_CHECK_INTERVAL = 0.5  # seconds
RECENT_TRADES = 20
MAX_SYMBOLS = 10              # Hard limit - never trust frontend

# Settings that only take effect on the next START
RESTART_ONLY_SETTINGS = ("symbols", "history_window_size", "app_id")


def get_api_token() -> str:
    """Single source of truth for the trading credential."""
    return os.environ.get("DERIV_API_TOKEN", "").strip()


def validate_start(control: Dict, current: Settings) -> Tuple[Optional[Settings], Optional[str]]:
    """
    Backend validation of a START payload - never trust frontend.
    Returns (settings, None) or (None, error_message).
    """
    incoming = control.get("settings") or {}
    if not isinstance(incoming, dict):
        return None, "Settings must be an object"

    symbols = control.get("symbols", incoming.get("symbols"))
    if symbols is not None:
        if not isinstance(symbols, list):
            return None, "Symbols must be a list"
        cleaned = [s.strip().upper() for s in symbols if isinstance(s, str)]
        cleaned = [s for s in cleaned if s and s.replace("_", "").isalnum()]
        if not cleaned:
            return None, "No valid symbols"
        incoming = dict(incoming, symbols=cleaned)

    try:
        settings = Settings.from_dict(incoming, base=current)
    except ValueError as e:
        return None, str(e)

    if not settings.symbols:
        return None, "No valid symbols"
    if len(settings.symbols) > MAX_SYMBOLS:
        return None, f"Too many symbols ({len(settings.symbols)} > {MAX_SYMBOLS})"
    return settings, None


def validate_manual_trade(control: Dict) -> Tuple[Optional[Tuple[str, int]], Optional[str]]:
    symbol = control.get("symbol")
    digit = control.get("digit")
    if not isinstance(symbol, str) or not symbol.strip():
        return None, "Manual trade needs a symbol"
    if isinstance(digit, bool) or not isinstance(digit, int) or not 0 <= digit <= 9:
        return None, f"Manual trade digit must be 0-9, got {digit!r}"
    return (symbol.strip().upper(), digit), None


def live_settings_changes(control: Dict) -> Dict:
    """Settings from a SETTINGS action minus those that need a restart."""
    incoming = control.get("settings") or {}
    if not isinstance(incoming, dict):
        return {}
    return {k: v for k, v in incoming.items() if k not in RESTART_ONLY_SETTINGS}


def control_timestamp(control: Dict) -> Optional[float]:
    """Numeric timestamp of a control payload, None when missing or malformed."""
    if not isinstance(control, dict) or isinstance(control.get("timestamp"), bool):
        return None
    try:
        value = float(control.get("timestamp", 0))
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def load_control():
    """Load control signal from UI."""
    if CONTROL_PATH.exists():
        try:
            with open(CONTROL_PATH) as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError):
            pass
    return None


def persist_state(state: dict, version: int):
    """Persist the snapshot atomically with Windows lock handling."""
    temp_path = STATE_PATH.with_suffix(".json.tmp")

    output = {
        "version": version,
        "state": state
    }

    with open(temp_path, "w") as f:
        json.dump(output, f, default=str)

    for attempt in range(3):
        try:
            os.replace(temp_path, STATE_PATH)
            return
        except PermissionError:
            if attempt < 2:
                time.sleep(0.1)
            else:
                logger.warning("State file locked, snapshot skipped")


def clear_state():
    """Clear stale state file."""
    if STATE_PATH.exists():
        STATE_PATH.unlink()


def build_state(running: bool, pipeline: Optional[MonitorPipeline], storage: DuckDBStorage,
                settings: SettingsHolder, has_token: bool) -> Dict:
    if pipeline is not None:
        state = pipeline.snapshot()
    else:
        state = {
            "symbols": {},
            "statistics": None,
            "session": {"connected": False, "has_account": False, "has_token": has_token},
            "alerts": [],
            "pnl": None,
            "settings": settings.get().to_dict(),
        }
    trades = storage.recent_trades(RECENT_TRADES)
    state["running"] = running
    state["trades"] = json.loads(trades.to_json(orient="records"))
    state["trade_count"] = storage.trade_count()
    state["trade_summary"] = json.loads(storage.trade_summary().to_json(orient="records"))
    state["health"] = storage.health()
    return state


def main():
    logger.info("=" * 60)
    logger.info("🎯 DERIV DIGIT MONITOR - Backend")
    logger.info("=" * 60)

    DATA_DIR.mkdir(exist_ok=True)

    if CONTROL_PATH.exists():
        CONTROL_PATH.unlink()
        logger.info("🧹 Cleared stale control.json")

    storage = DuckDBStorage(str(DB_PATH))
    trade_writer = TradeWriter(storage)
    trade_writer.start()
    settings = SettingsHolder(storage.load_settings())
    token = get_api_token()
    has_token = bool(token)

    if not has_token:
        logger.warning("⚠️ DERIV_API_TOKEN is not set - signals only, live trading unavailable")

    logger.info("Open Streamlit UI and click START to begin.")
    logger.info("-" * 60)

    is_running = False
    pipeline: Optional[MonitorPipeline] = None
    ingestion_manager: Optional[IngestionManager] = None

    last_control_check = 0
    last_state_write = 0
    last_control_timestamp = 0
    last_rejected = None
    snapshot_version = 0

    try:
        while True:
            now = time.time()

            # ======== CONTROL CHECK ========
            if now - last_control_check >= CONTROL_CHECK_INTERVAL:
                control = load_control()

                stamp = control_timestamp(control)
                if control is not None and stamp is None:
                    if control != last_rejected:
                        logger.error("❌ REJECTED: control payload without a numeric timestamp")
                    last_rejected = control
                elif stamp is not None and stamp > last_control_timestamp:
                    action = str(control.get("action", "")).upper()
                    last_control_timestamp = stamp

                    # -------- START ACTION --------
                    if action == "START":
                        new_settings, error = validate_start(control, settings.get())
                        if error:
                            logger.error(f"❌ REJECTED: {error}")
                        else:
                            logger.info("=" * 60)
                            logger.info("▶️  START SIGNAL RECEIVED")
                            logger.info(f"   Symbols: {', '.join(new_settings.symbols)}")
                            logger.info(f"   Window: {new_settings.history_window_size}")
                            logger.info(
                                f"   Auto-trade: {new_settings.auto_trade_enabled} | "
                                f"Paper: {new_settings.paper_trading_enabled} | "
                                f"Min clusters: {new_settings.min_cluster_size}"
                            )

                            # ====== EXPLICIT PIPELINE TEARDOWN ======
                            if is_running and ingestion_manager:
                                logger.info("🛑 Stopping existing pipeline...")
                                ingestion_manager.stop()
                                pipeline = None
                                ingestion_manager = None

                            settings.set(new_settings)
                            storage.save_settings(new_settings)

                            logger.info("🔧 Building new pipeline...")
                            pipeline = MonitorPipeline(
                                settings,
                                record_sink=trade_writer.submit,
                                has_token=has_token,
                            )
                            ingestion_manager = IngestionManager(
                                handler=pipeline,
                                app_id=new_settings.app_id,
                                token=token,
                            )
                            pipeline.attach_gateway(ingestion_manager)

                            clear_state()
                            ingestion_manager.start(list(new_settings.symbols))
                            is_running = True

                            logger.info("✅ Pipeline started successfully")
                            logger.info("=" * 60)

                    # -------- STOP ACTION --------
                    elif action == "STOP":
                        if is_running and ingestion_manager:
                            logger.info("=" * 60)
                            logger.info("⏹️  STOP SIGNAL RECEIVED")
                            ingestion_manager.stop()
                            is_running = False
                            trade_writer.flush()
                            if pipeline is not None:
                                pipeline.on_connection(False)
                                stats = pipeline.statistics.as_dict()
                                logger.info(
                                    f"📊 Final: {stats['triggers']} triggers, "
                                    f"{stats['trades']} trade intents, {stats['total']} patterns ended"
                                )
                            logger.info("✅ Pipeline stopped")
                            logger.info("=" * 60)
                            logger.info("Waiting for next START signal...")

                    # -------- SETTINGS ACTION --------
                    elif action == "SETTINGS":
                        changes = live_settings_changes(control)
                        try:
                            if pipeline is not None:
                                updated = pipeline.update_settings(changes)
                            else:
                                updated = settings.update(**changes)
                            storage.save_settings(updated)
                            logger.info(f"⚙️ Settings updated: {', '.join(sorted(changes)) or 'none'}")
                        except ValueError as e:
                            logger.error(f"❌ REJECTED settings: {e}")

                    # -------- RESET STATISTICS --------
                    elif action == "RESET_STATS":
                        if pipeline is not None:
                            pipeline.reset_statistics()
                            logger.info("🧹 Statistics reset")

                    # -------- MANUAL TRADE --------
                    elif action == "MANUAL_TRADE":
                        request, error = validate_manual_trade(control)
                        if error:
                            logger.error(f"❌ REJECTED: {error}")
                        elif not is_running or pipeline is None:
                            logger.error("❌ REJECTED: manual trade while stopped")
                        else:
                            pipeline.manual_trade(*request)

                    else:
                        logger.warning(f"⚠️ Unknown control action: {action!r}")

                last_control_check = now

            # ======== FEED WATCHDOG ========
            if is_running and ingestion_manager is not None and not ingestion_manager.running:
                logger.error("❌ Feed thread exited (retries exhausted or rejected) - press START to retry")
                if pipeline is not None:
                    pipeline.on_connection(False)
                ingestion_manager = None
                is_running = False

            # ======== STATE SNAPSHOT ========
            if now - last_state_write >= STATE_INTERVAL:
                snapshot_version += 1
                persist_state(
                    build_state(is_running, pipeline, storage, settings, has_token),
                    snapshot_version
                )
                last_state_write = now

            time.sleep(0.05)

    except KeyboardInterrupt:
        logger.info("")
        logger.info("=" * 60)
        logger.info("🛑 Shutting down...")
        if is_running and ingestion_manager:
            ingestion_manager.stop()
        trade_writer.stop()
        storage.close()
        logger.info("=" * 60)


if __name__ == "__main__":
    main()
