"""Solana ``logsSubscribe`` websocket stream.

One persistent connection, one subscription scoped to the program (the
tracked mint is matched client-side after the transaction is fetched).
Each ``logsNotification`` is handed to ``on_notification`` synchronously;
the callback must only schedule work so the receive loop never stalls.

Reconnect policy: an unexpected close (any code other than 1000) schedules
one reconnect attempt after a flat delay. A failed attempt schedules the
next one the same way. Explicit ``stop()`` never reconnects.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Callable
from typing import Any

import aiohttp

from solwatch.utils.logger import get_logger, mask_url

logger = get_logger("log_stream")

SUBSCRIBE_ID = 1
UNSUBSCRIBE_ID = 2


def resolve_ws_url(ws_endpoint: str | None, rpc_endpoint: str | None) -> str | None:
    """Pick the websocket endpoint.

    An explicit websocket endpoint wins. Otherwise the HTTP RPC endpoint is
    reused with its scheme swapped (https → wss, http → ws); host, path and
    query (including any api-key) are kept.
    """
    if ws_endpoint and ws_endpoint.strip():
        return ws_endpoint.strip()
    if not rpc_endpoint:
        return None
    rpc = rpc_endpoint.strip()
    if rpc.startswith("https://"):
        return "wss://" + rpc[len("https://") :]
    if rpc.startswith("http://"):
        return "ws://" + rpc[len("http://") :]
    return None


def build_subscribe(program_id: str, commitment: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": SUBSCRIBE_ID,
        "method": "logsSubscribe",
        "params": [{"mentions": [program_id]}, {"commitment": commitment}],
    }


def build_unsubscribe(subscription_id: int) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": UNSUBSCRIBE_ID,
        "method": "logsUnsubscribe",
        "params": [subscription_id],
    }


class LogStream:
    """Websocket lifecycle for a program log subscription.

    Args:
        url: Websocket endpoint.
        program_id: Program whose logs are subscribed.
        on_notification: Called with (signature, log lines) per notification.
        commitment: Subscription commitment level.
        heartbeat_s: aiohttp websocket heartbeat.
        reconnect_delay_s: Flat delay before each reconnect attempt.
        session: Optional shared aiohttp session.
    """

    def __init__(
        self,
        url: str,
        program_id: str,
        on_notification: Callable[[str, list[str]], None],
        commitment: str = "processed",
        heartbeat_s: float = 30.0,
        reconnect_delay_s: float = 1.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._program_id = program_id
        self._on_notification = on_notification
        self._commitment = commitment
        self._heartbeat_s = heartbeat_s
        self._reconnect_delay_s = reconnect_delay_s
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connected = False
        self._closing = False
        self._subscription_id: int | None = None
        self._logs_received = 0
        self._reconnects = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def subscription_id(self) -> int | None:
        return self._subscription_id

    @property
    def logs_received(self) -> int:
        return self._logs_received

    @property
    def reconnects(self) -> int:
        return self._reconnects

    async def start(self) -> bool:
        """Open the connection and subscribe. False if the first connect fails."""
        if self._connected:
            logger.info("stream_already_connected")
            return True
        self._closing = False
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return await self._connect()

    async def stop(self) -> None:
        """Unsubscribe (best effort), close with 1000 and stop reconnecting."""
        self._closing = True

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
        self._reconnect_task = None

        ws = self._ws
        if ws is not None and not ws.closed:
            if self._subscription_id is not None:
                try:
                    await ws.send_json(build_unsubscribe(self._subscription_id))
                except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                    logger.debug("stream_unsubscribe_error", error=str(e))
            await ws.close()
        self._subscription_id = None

        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self._ws = None
        self._connected = False

        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.info("stream_stopped", logs_received=self._logs_received)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect(self) -> bool:
        if self._session is None:
            raise RuntimeError("LogStream not started")

        logger.info("stream_connecting", url=mask_url(self._url))
        try:
            ws = await self._session.ws_connect(self._url, heartbeat=self._heartbeat_s)
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            logger.error("stream_connect_failed", error=str(e))
            self._connected = False
            self._schedule_reconnect()
            return False

        if self._closing:
            # stop() ran while the handshake was in flight
            await ws.close()
            logger.info("stream_connect_discarded")
            return False

        self._ws = ws
        self._connected = True
        try:
            await self._ws.send_json(build_subscribe(self._program_id, self._commitment))
            logger.info(
                "stream_subscribing",
                program_id=self._program_id,
                commitment=self._commitment,
            )
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            # The read loop sees the dead socket and schedules the reconnect
            logger.error("stream_subscribe_send_failed", error=str(e))
        self._task = asyncio.create_task(self._read_loop(self._ws))
        return True

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        try:
            await asyncio.sleep(self._reconnect_delay_s)
            if self._closing or self._connected:
                return
            self._reconnects += 1
            logger.info("stream_reconnecting", attempt=self._reconnects)
            # Still registered as the reconnect task so stop() can cancel the attempt
            connected = await self._connect()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
        if not connected:
            self._schedule_reconnect()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Read frames until the socket closes, then decide on reconnect."""
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("stream_read_error", error=str(e))
        finally:
            self._connected = False
            self._subscription_id = None

        close_code = ws.close_code
        logger.info("stream_closed", code=close_code, explicit=self._closing)
        if not self._closing and close_code != aiohttp.WSCloseCode.OK:
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def _handle_message(self, raw: str) -> None:
        """Dispatch one JSON-RPC frame: ack, error, or log notification."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.debug("stream_parse_error", error=str(e))
            return
        if not isinstance(message, dict):
            return

        if message.get("id") == SUBSCRIBE_ID and message.get("result") is not None:
            self._subscription_id = message["result"]
            logger.info("stream_subscribed", subscription_id=self._subscription_id)
            return

        if message.get("error"):
            # Left unsubscribed until a manual restart
            logger.error("stream_subscription_error", error=message["error"])
            return

        if message.get("method") != "logsNotification":
            return

        value = ((message.get("params") or {}).get("result") or {}).get("value") or {}
        signature = value.get("signature")
        if not signature:
            return

        self._logs_received += 1
        logs = value.get("logs") or []
        try:
            self._on_notification(signature, [str(line) for line in logs])
        except Exception as e:
            logger.warning("stream_dispatch_error", signature=signature[:16], error=str(e))
