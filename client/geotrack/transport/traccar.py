"""Traccar session & transport client.

Owns the session token, the tracking configuration and the offline queue.
Everything else reaches them through the public methods below.

Endpoints:
- POST {base}/api/session    form-encoded email/password -> {"token": ...}
- POST {base}/api/positions  one JSON record, or a JSON array for a batch
- {ws|wss}://host:port/api/socket  server-pushed updates
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from geotrack.core.errors import AuthenticationError, TransportError
from geotrack.queue.offline_queue import BoundedOfflineQueue
from geotrack.transport.socket import RECONNECT_DELAY_SECONDS, Connector, MessageHandler, SocketChannel

if TYPE_CHECKING:
    from geotrack.config import TraccarConfiguration
    from geotrack.core.models import PositionRecord
    from geotrack.queue.base import RecordQueue

log = structlog.get_logger()

# Inbound channel message types the server pushes.
MESSAGE_TYPES = ("position", "device", "event")

# Changing any of these requires a new socket URL.
_ENDPOINT_KEYS = {"server_url", "protocol", "port"}


class TraccarClient:
    """Authenticates, sends positions, buffers them while offline."""

    def __init__(
        self,
        config: TraccarConfiguration,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        queue: RecordQueue | None = None,
        connect: Connector | None = None,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        timeout: float = 10.0,
    ) -> None:
        self._config = config
        self._token = config.token
        self._http = httpx.AsyncClient(transport=transport, timeout=timeout)
        self._queue: RecordQueue = queue if queue is not None else BoundedOfflineQueue()
        self._retry_count = 0
        self._draining = False
        self._listeners: dict[str, list[MessageHandler]] = {}
        self._channel: SocketChannel | None = None
        self._connect = connect
        self._reconnect_delay = reconnect_delay

        self.is_authenticated = False
        self.is_connected = False
        self.last_error: str | None = None

    # -- configuration -----------------------------------------------------

    @property
    def config(self) -> TraccarConfiguration:
        return self._config

    @property
    def base_url(self) -> str:
        return self._config.base_url

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def channel(self) -> SocketChannel | None:
        return self._channel

    def update_config(self, **changes: Any) -> TraccarConfiguration:
        """Merge ``changes`` into the configuration and return the result."""
        new_config = self._config.merged(**changes)
        endpoint_changed = any(
            getattr(new_config, k) != getattr(self._config, k) for k in _ENDPOINT_KEYS
        )
        self._config = new_config
        if "token" in changes:
            self._token = new_config.token
        if endpoint_changed and self._channel is not None:
            log.info("socket_endpoint_changed", url=new_config.socket_url)
            self.connect_socket()
        return new_config

    def _headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    # -- session -----------------------------------------------------------

    async def authenticate(self, username: str | None, password: str | None) -> bool:
        """Open a server session. Returns False on rejection or network error."""
        if not username or not password:
            raise AuthenticationError("Username and password required for authentication")

        self._config = self._config.merged(username=username, password=password)
        url = f"{self.base_url}/api/session"

        try:
            resp = await self._http.post(url, data={"email": username, "password": password})
        except httpx.HTTPError as e:
            log.warning("authentication_failed", url=url, error=str(e))
            self.last_error = f"Authentication failed: {e}"
            self._mark_unauthenticated()
            return False

        if not resp.is_success:
            log.warning("authentication_rejected", url=url, status=resp.status_code)
            self.last_error = f"Authentication failed: {resp.status_code}"
            self._mark_unauthenticated()
            return False

        try:
            body = resp.json()
        except ValueError:
            body = {}
        token = body.get("token") if isinstance(body, dict) else None
        if token:
            self._token = token

        self.is_authenticated = True
        self.is_connected = True
        self.last_error = None
        log.info("authenticated", user=username, token=bool(self._token))
        return True

    def use_token(self, token: str | None = None) -> bool:
        """Adopt a bearer token instead of a password session.

        Falls back to the configured token. The server validates it on the
        first send.
        """
        token = token or self._config.token
        if not token:
            raise AuthenticationError("Bearer token required for token authentication")
        self._token = token
        self.is_authenticated = True
        self.is_connected = True
        log.info("token_adopted")
        return True

    def _mark_unauthenticated(self) -> None:
        self.is_authenticated = False
        self.is_connected = False

    # -- positions ---------------------------------------------------------

    async def _post_positions(self, payload: dict | list) -> None:
        url = f"{self.base_url}/api/positions"
        try:
            resp = await self._http.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransportError(f"network error: {e}") from e
        if not resp.is_success:
            raise TransportError(f"Failed to send position: {resp.status_code}")

    async def send_position(self, record: PositionRecord) -> bool:
        """Send one record. On failure, buffer it if offline mode is enabled."""
        try:
            await self._post_positions(record.to_json())
        except TransportError as e:
            self.last_error = str(e)
            if self._config.offline_mode:
                self._queue.append(record)
            log.warning("position_send_failed", error=str(e),
                        queued=self._config.offline_mode, queue_depth=len(self._queue))
            return False

        self.last_error = None
        self._retry_count = 0
        log.debug("position_sent", device=record.device_id, fix_time=record.fix_time)
        await self.drain_offline_queue()
        return True

    async def send_batch(self, records: list[PositionRecord]) -> bool:
        """Send several records in one request."""
        if not records:
            return True
        try:
            await self._post_positions([r.to_json() for r in records])
        except TransportError as e:
            log.warning("batch_send_failed", count=len(records), error=str(e))
            return False
        log.debug("batch_sent", count=len(records))
        return True

    async def drain_offline_queue(self) -> int:
        """Replay buffered records in batches. Returns how many were delivered.

        A failed batch goes back to the front of the queue. It is retried
        immediately while the retry counter stays within ``retry_attempts``;
        after that, draining waits for the next successful ``send_position``.
        """
        if self._draining or len(self._queue) == 0:
            return 0

        self._draining = True
        delivered = 0
        try:
            while len(self._queue) > 0:
                batch = self._queue.take(self._config.batch_size)
                try:
                    sent = await self.send_batch(batch)
                except BaseException:
                    # Cancelled mid-request: the batch stays queued.
                    self._queue.requeue_front(batch)
                    raise
                if sent:
                    delivered += len(batch)
                    continue
                self._queue.requeue_front(batch)
                self._retry_count += 1
                if self._retry_count > self._config.retry_attempts:
                    log.info("offline_drain_deferred", retries=self._retry_count,
                             queue_depth=len(self._queue))
                    break
        finally:
            self._draining = False

        if delivered:
            log.info("offline_queue_drained", delivered=delivered, remaining=len(self._queue))
        return delivered

    # -- streaming channel -------------------------------------------------

    def add_listener(self, kind: str, callback: MessageHandler) -> None:
        """Register a callback for one inbound message type."""
        if kind not in MESSAGE_TYPES:
            raise ValueError(f"unknown message type {kind!r}")
        self._listeners.setdefault(kind, []).append(callback)

    def _dispatch(self, data: dict) -> None:
        kind = data.get("type")
        if kind not in MESSAGE_TYPES:
            log.warning("socket_message_unknown_type", type=kind)
            return
        log.debug("socket_message", type=kind)
        for callback in self._listeners.get(kind, []):
            callback(data)

    def connect_socket(self) -> SocketChannel:
        """Open (or reopen) the reconnecting streaming channel."""
        if self._channel is not None:
            self._channel.close()
        self._channel = SocketChannel(
            self._config.socket_url,
            self._dispatch,
            headers=self._headers(),
            reconnect_delay=self._reconnect_delay,
            connect=self._connect,
        )
        self._channel.start()
        return self._channel

    def disconnect(self) -> None:
        """Close the channel and cancel any pending reconnect. Idempotent."""
        if self._channel is not None:
            self._channel.close()
            self._channel = None
            log.info("socket_closed")
        self._mark_unauthenticated()

    async def aclose(self) -> None:
        channel = self._channel
        self.disconnect()
        if channel is not None:
            await channel.aclose()
        await self._http.aclose()
