"""
Persistence layer using DuckDB.

Responsibilities:
- Append trade records (live and paper), never rewrite them
- Write trade records off the feed thread
- Store app settings as a single key/value JSON document
- Serve dashboard-ready trade queries

This module must never:
- Connect to WebSockets
- Perform pattern logic
- Know about Streamlit or UI
"""

import json
import queue
import logging
import threading
from typing import Dict, Optional

import duckdb
import pandas as pd

from utils import Settings, TradeRecord


logger = logging.getLogger("storage")

SETTINGS_KEY = "app"
MAX_TRADE_ROWS = 500
WRITE_QUEUE_SIZE = 10000


class DuckDBStorage:
    def __init__(self, db_path: str = ":memory:"):
        # Single writer: only the backend process opens a file-backed DB
        self.conn = duckdb.connect(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self):
        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS trade_id_seq START 1")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id BIGINT DEFAULT nextval('trade_id_seq') PRIMARY KEY,
                symbol TEXT NOT NULL,
                contract_type TEXT NOT NULL,
                amount DOUBLE NOT NULL,
                duration INTEGER NOT NULL,
                target_digit INTEGER NOT NULL,
                paper BOOLEAN NOT NULL,
                timestamp BIGINT NOT NULL
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)

    # ---------------- trades ----------------

    def insert_trade(self, record: TradeRecord):
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO trades (symbol, contract_type, amount, duration, target_digit, paper, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    record.symbol,
                    record.contract_type,
                    float(record.amount),
                    int(record.duration),
                    int(record.target_digit),
                    bool(record.is_paper_trade),
                    int(record.timestamp),
                ]
            )

    def recent_trades(self, limit: int = 100) -> pd.DataFrame:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = 100
        limit = max(1, min(limit, MAX_TRADE_ROWS))

        with self._lock:
            return self.conn.execute(
                "SELECT * FROM trades ORDER BY timestamp DESC, id DESC LIMIT ?",
                [limit]
            ).fetchdf()

    def trade_summary(self) -> pd.DataFrame:
        with self._lock:
            return self.conn.execute("""
                SELECT
                    symbol,
                    paper,
                    COUNT(*) AS trades,
                    SUM(amount) AS total_stake,
                    MAX(timestamp) AS last_timestamp
                FROM trades
                GROUP BY symbol, paper
                ORDER BY symbol, paper
            """).fetchdf()

    def trade_count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0]

    # ---------------- settings ----------------

    def load_settings(self) -> Settings:
        with self._lock:
            row = self.conn.execute(
                "SELECT value FROM settings WHERE key = ?", [SETTINGS_KEY]
            ).fetchone()
        if row is None:
            return Settings()
        try:
            return Settings.from_dict(json.loads(row[0]))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"[STORAGE] Stored settings unreadable, using defaults: {e}")
            return Settings()

    def save_settings(self, settings: Settings):
        payload = json.dumps(settings.to_dict())
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO settings (key, value) VALUES (?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value
                """,
                [SETTINGS_KEY, payload]
            )

    # ---------------- lifecycle ----------------

    def health(self) -> Dict:
        try:
            with self._lock:
                self.conn.execute("SELECT 1").fetchone()
            return {"ok": True, "db": True}
        except duckdb.Error as e:
            logger.error(f"[STORAGE] Health check failed: {e}")
            return {"ok": True, "db": False}

    def close(self):
        with self._lock:
            self.conn.close()


class TradeWriter:
    """
    Background writer for trade records.

    `submit` only enqueues, so the executor never waits on DuckDB from
    the feed thread. A full queue drops the record with an error log.
    """

    def __init__(self, storage: DuckDBStorage, maxsize: int = WRITE_QUEUE_SIZE):
        self.storage = storage
        self._queue: "queue.Queue[Optional[TradeRecord]]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="trade_writer", daemon=True)
        self._thread.start()

    def submit(self, record: TradeRecord):
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            logger.error(f"[STORAGE] Write queue full, trade on {record.symbol} not stored")

    def _run(self):
        while True:
            record = self._queue.get()
            try:
                if record is None:
                    return
                self.storage.insert_trade(record)
            except duckdb.Error as e:
                logger.error(f"[STORAGE] Failed to store trade on {record.symbol}: {e}")
            finally:
                self._queue.task_done()

    def flush(self):
        """Block until every queued record has been written."""
        self._queue.join()

    def stop(self, timeout: float = 3.0):
        """Write what is queued, then stop the worker."""
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
