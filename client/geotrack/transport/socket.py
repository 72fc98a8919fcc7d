"""Streaming channel to the server's /api/socket endpoint.

Runs as one background task: connect, read messages until the socket closes,
wait a fixed delay, reconnect. This repeats until ``close()`` is called.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import aiohttp
import structlog

from geotrack.core.errors import ChannelError

log = structlog.get_logger()

# Delay between a channel drop and the next connection attempt.
RECONNECT_DELAY_SECONDS = 5.0

MessageHandler = Callable[[dict], None]
Connector = Callable[[str, dict], Awaitable[Any]]


class SocketChannel:
    """Reconnecting websocket reader.

    ``connect`` opens one websocket for a URL and headers; it defaults to an
    aiohttp session owned by the channel. The returned object must support
    ``async for msg in ws`` and ``await ws.close()``.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        *,
        headers: dict[str, str] | None = None,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        connect: Connector | None = None,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._headers = headers or {}
        self._reconnect_delay = reconnect_delay
        self._connect = connect or self._aiohttp_connect
        self._session: aiohttp.ClientSession | None = None
        self._task: asyncio.Task | None = None
        self._closed = False

        self.attempts: int = 0
        self.connected: bool = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the connect/reconnect loop. Restarts it if already running."""
        self.close()
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        """Stop the loop and cancel any pending reconnect wait. Idempotent."""
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.connected = False

    async def aclose(self) -> None:
        """Close and wait for the loop to release its HTTP session."""
        task = self._task
        self.close()
        if task is not None:
            await asyncio.wait([task])

    async def _aiohttp_connect(self, url: str, headers: dict) -> aiohttp.ClientWebSocketResponse:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(url, headers=headers, heartbeat=30)

    async def _run(self) -> None:
        try:
            while not self._closed:
                self.attempts += 1
                try:
                    await self._read_once()
                except ChannelError as e:
                    log.warning("socket_error", url=self._url, error=str(e))
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                    log.warning("socket_connect_failed", url=self._url, error=str(e))
                except Exception:
                    log.error("socket_unexpected_error", url=self._url, exc_info=True)
                self.connected = False
                if self._closed:
                    break
                log.info("socket_reconnect_scheduled", delay=self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)
        finally:
            self.connected = False
            session, self._session = self._session, None
            if session is not None:
                await session.close()

    async def _read_once(self) -> None:
        ws = await self._connect(self._url, self._headers)
        self.connected = True
        log.info("socket_connected", url=self._url)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise ChannelError(f"websocket error: {msg.data}")
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            await ws.close()
            log.info("socket_disconnected", url=self._url)

    def _dispatch(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            log.warning("socket_message_malformed", size=len(raw or ""))
            return
        if not isinstance(data, dict):
            log.warning("socket_message_malformed", kind=type(data).__name__)
            return
        try:
            self._on_message(data)
        except Exception:
            log.error("socket_message_handler_failed", exc_info=True)
