"""
Asynchronous real-time connection to the Deriv WebSocket API.

Responsibilities:
- Maintain a resilient WebSocket connection
- Fetch symbol metadata (pip sizes) and subscribe to tick streams
- Authorize and follow the account balance when a token is configured
- Route every inbound message to a feed handler
- Act as the order gateway for the trade executor
- Support graceful stop and restart

This module must never:
- Run pattern logic
- Decide whether to trade
"""

import asyncio
import json
import time
import logging
import threading
from concurrent.futures import Future
from typing import Dict, List, Optional

import websockets

from utils import Tick


logger = logging.getLogger("ingest")

DERIV_WS_URL = "wss://ws.derivws.com/websockets/v3?app_id={app_id}"


class FeedHandler:
    """
    Callbacks invoked from the ingestor's event loop thread.

    Handlers must not block: the tick path is synchronous.
    """

    def on_connection(self, connected: bool):
        pass

    def on_active_symbols(self, symbols: List[Dict]):
        pass

    def on_tick(self, tick: Tick):
        pass

    def on_authorize(self, account: Dict):
        pass

    def on_balance(self, balance: Dict):
        pass

    def on_proposal(self, proposal: Dict):
        pass

    def on_buy(self, buy: Dict):
        pass

    def on_api_error(self, msg_type: Optional[str], error: Dict, echo: Dict):
        pass


class DerivIngestor:
    """
    Async WebSocket client with graceful shutdown support.
    """

    def __init__(
        self,
        symbols: List[str],
        handler: FeedHandler,
        app_id: str = "1089",
        token: Optional[str] = None,
        url: Optional[str] = None,
    ):
        self.symbols = list(symbols)
        self.handler = handler
        self.app_id = app_id
        self.token = token or None
        self.url = url or DERIV_WS_URL.format(app_id=app_id)
        self._running = False
        self._ws = None
        self._req_id = 0
        self._subscribed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    # ---------------- outbound ----------------

    def _next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    async def _send(self, payload: Dict):
        if self._ws is None:
            raise ConnectionError("WebSocket not connected")
        message = dict(payload)
        message["req_id"] = self._next_req_id()
        await self._ws.send(json.dumps(message))

    async def _send_all(self, payloads):
        for payload in payloads:
            await self._send(payload)

    def submit(self, *payloads: Dict) -> Future:
        """
        Schedule `payloads` to be sent in order; returns immediately.

        Safe to call from any thread, including the loop thread.
        """
        if self._ws is None or self._loop is None or not self._running:
            raise ConnectionError("Not connected to Deriv")
        return asyncio.run_coroutine_threadsafe(self._send_all(payloads), self._loop)

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ---------------- inbound ----------------

    async def _on_open(self):
        self._subscribed = False
        await self._send({"active_symbols": "brief", "product_type": "basic"})
        if self.token:
            await self._send({"authorize": self.token})

    async def _subscribe_ticks(self):
        if self._subscribed:
            return
        self._subscribed = True
        for symbol in self.symbols:
            await self._send({"ticks": symbol, "subscribe": 1})
            logger.info(f"[INGEST] Subscribed to {symbol}")

    async def _handle_message(self, data: Dict):
        msg_type = data.get("msg_type")
        error = data.get("error")

        if error:
            self.handler.on_api_error(msg_type, error, data.get("echo_req") or {})
            if msg_type == "active_symbols":
                # Ticks will be dropped until pip sizes are known
                await self._subscribe_ticks()
            return

        if msg_type == "tick":
            tick = data.get("tick") or {}
            symbol = tick.get("symbol")
            if symbol is None or tick.get("quote") is None:
                logger.debug(f"[INGEST] Ignoring incomplete tick: {tick}")
                return
            self.handler.on_tick(Tick(
                symbol=symbol,
                quote=tick["quote"],
                epoch=int(tick.get("epoch") or 0),
                receipt_time=time.time(),
            ))
        elif msg_type == "active_symbols":
            self.handler.on_active_symbols(data.get("active_symbols") or [])
            await self._subscribe_ticks()
        elif msg_type == "authorize":
            self.handler.on_authorize(data.get("authorize") or {})
            await self._send({"balance": 1, "subscribe": 1})
        elif msg_type == "balance":
            self.handler.on_balance(data.get("balance") or {})
        elif msg_type == "proposal":
            self.handler.on_proposal(data.get("proposal") or {})
        elif msg_type == "buy":
            self.handler.on_buy(data.get("buy") or {})
        else:
            logger.debug(f"[INGEST] Unhandled message type: {msg_type}")

    # ---------------- connection loop ----------------

    async def _connect(self):
        backoff = 1
        max_retries = 5
        retry_count = 0

        while self._running:
            try:
                logger.info(f"[INGEST] Connecting to {self.url}")
                async with websockets.connect(
                    self.url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5
                ) as ws:
                    self._ws = ws
                    logger.info("[INGEST] ✓ Connected to Deriv")
                    backoff = 1
                    retry_count = 0
                    self.handler.on_connection(True)
                    await self._on_open()

                    async for msg in ws:
                        if not self._running:
                            break
                        try:
                            data = json.loads(msg)
                        except json.JSONDecodeError:
                            logger.warning(f"[INGEST] Unparseable message: {msg[:200]}")
                            continue
                        await self._handle_message(data)

            except asyncio.CancelledError:
                logger.info("[INGEST] Connection task cancelled")
                break
            except websockets.exceptions.InvalidStatus as e:
                retry_count += 1
                status = e.response.status_code
                if status in (401, 403):
                    logger.error(f"[INGEST] ❌ Rejected by Deriv (HTTP {status}) - check app_id")
                    break
                logger.warning(f"[INGEST] HTTP error: {status}")
                if retry_count >= max_retries:
                    logger.error(f"[INGEST] ❌ Giving up after {max_retries} failures")
                    break
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30)
            except Exception as e:
                if not self._running:
                    break
                retry_count += 1
                logger.warning(f"[INGEST] Connection error: {e}")
                if retry_count >= max_retries:
                    logger.error("[INGEST] ❌ Max retries exceeded")
                    break
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30)
            finally:
                if self._ws is not None:
                    self._ws = None
                    self.handler.on_connection(False)

    async def run(self):
        """Connect and process messages until stopped."""
        self._running = True
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._connect())
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._running = False

    def stop(self):
        """Signal the connection task to stop (thread-safe)."""
        logger.info("[INGEST] Stop requested...")
        self._running = False
        loop, task = self._loop, self._task
        if loop is not None and task is not None and not task.done() and not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)


class IngestionManager:
    """
    Manages ingestion lifecycle.

    This manager:
    - Runs ingestion in a separate thread with its own event loop
    - Supports stopping; a new START builds a fresh manager
    - Exposes the running ingestor as the order gateway
    """

    def __init__(self, handler: FeedHandler, app_id: str = "1089", token: Optional[str] = None):
        self.handler = handler
        self.app_id = app_id
        self.token = token
        self._ingestor: Optional[DerivIngestor] = None
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()

    def _run_async_loop(self, ingestor: DerivIngestor):
        """Run async event loop in thread."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(ingestor.run())
        except Exception as e:
            logger.error(f"[INGEST] Loop error: {e}")
        finally:
            loop.close()

    def start(self, symbols: List[str]):
        """Start ingestion for given symbols."""
        with self._thread_lock:
            symbols = list(symbols)
            self._ingestor = DerivIngestor(
                symbols=symbols,
                handler=self.handler,
                app_id=self.app_id,
                token=self.token,
            )
            self._thread = threading.Thread(
                target=self._run_async_loop,
                args=(self._ingestor,),
                daemon=True
            )
            self._thread.start()
            logger.info(f"[INGEST] Started for: {', '.join(symbols)}")

    def stop(self):
        """Stop current ingestion."""
        with self._thread_lock:
            if self._ingestor:
                self._ingestor.stop()

            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=3.0)

            self._ingestor = None
            self._thread = None
            logger.info("[INGEST] Stopped")

    def submit(self, *payloads: Dict) -> Future:
        ingestor = self._ingestor
        if ingestor is None:
            raise ConnectionError("Ingestion is not running")
        return ingestor.submit(*payloads)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
