"""MQTT session port and adapters.

Provides MqttPort (Protocol) and two implementations:

- MqttClient — real aiomqtt-based session
- MockMqttClient — test double that records calls and injects failures

The port models one broker *session* whose lifecycle is driven from
outside: :meth:`connect` makes a single attempt and raises on failure,
:meth:`disconnect` tears the session down.  Retry policy lives with
the caller (:class:`~unipitt._handler.Handler`), which learns about
broken sessions through the connection-lost callback.

Design decisions:

- aiomqtt imported lazily inside MqttClient.connect() so the mock
  works without aiomqtt installed
- Subscriptions tracked internally and restored on every connect
- MessageCallback dispatches (topic, payload) to registered handlers
- TLS context built eagerly so a bad CA file fails at startup
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from unipitt._errors import ConfigurationError
from unipitt._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""

ConnectionLostCallback = Callable[[Exception], None]
"""Callback invoked with the cause when an established session breaks."""

# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for one MQTT broker session."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str, *, qos: int = 1) -> None: ...

    def on_message(self, callback: MessageCallback) -> None: ...

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None: ...


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------


def build_tls_context(settings: MqttSettings) -> ssl.SSLContext | None:
    """Return the TLS context for *settings*, or ``None`` for plain TCP.

    The system trust store is always loaded; ``ca_file`` adds to it.

    Raises:
        ConfigurationError: If ``ca_file`` cannot be loaded.
    """
    if not settings.use_tls:
        return None
    context = ssl.create_default_context()
    if settings.ca_file:
        try:
            context.load_verify_locations(cafile=settings.ca_file)
        except (OSError, ssl.SSLError) as exc:
            msg = f"Cannot load MQTT CA file {settings.ca_file}: {exc}"
            raise ConfigurationError(msg) from exc
    return context


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    Records publishes and subscriptions for assertion.  Supports
    callback registration, simulated message delivery via
    ``deliver()``, and failure injection: set ``fail_connects`` or
    ``fail_publishes`` to make that many upcoming calls raise
    ``ConnectionError``.
    """

    published: list[tuple[str, str, bool, int]] = field(
        default_factory=list,
    )
    subscriptions: list[str] = field(default_factory=list)
    connect_calls: int = 0
    disconnect_calls: int = 0
    fail_connects: int = 0
    fail_publishes: int = 0
    connected: bool = False
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _lost_callbacks: list[ConnectionLostCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """Whether the simulated session is up."""
        return self.connected

    async def connect(self) -> None:
        """Record a connect attempt, failing while ``fail_connects`` > 0."""
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            msg = "simulated connect failure"
            raise ConnectionError(msg)
        self.connected = True

    async def disconnect(self) -> None:
        """Record a disconnect."""
        self.disconnect_calls += 1
        self.connected = False

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call, failing while ``fail_publishes`` > 0."""
        if self.fail_publishes > 0:
            self.fail_publishes -= 1
            msg = "simulated publish failure"
            raise ConnectionError(msg)
        self.published.append((topic, payload, retain, qos))

    async def subscribe(self, topic: str, *, qos: int = 1) -> None:  # noqa: ARG002
        """Record a subscribe call."""
        self.subscriptions.append(topic)

    def on_message(self, callback: MessageCallback) -> None:
        """Register an inbound-message callback."""
        self._callbacks.append(callback)

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None:
        """Register a connection-lost callback."""
        self._lost_callbacks.append(callback)

    # -- Test helpers -------------------------------------------------------

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in self._callbacks:
            await cb(topic, payload)

    def lose_connection(self, cause: Exception | None = None) -> None:
        """Simulate the broker dropping an established session."""
        self.connected = False
        exc = cause if cause is not None else ConnectionError("connection lost")
        for cb in self._lost_callbacks:
            cb(exc)

    @property
    def publish_count(self) -> int:
        """Number of recorded publishes."""
        return len(self.published)

    def reset(self) -> None:
        """Clear all recorded data."""
        self.published.clear()
        self.subscriptions.clear()
        self.connect_calls = 0
        self.disconnect_calls = 0

    def get_messages_for(
        self,
        topic: str,
    ) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT session backed by *aiomqtt*.

    ``connect()`` opens a fresh ``aiomqtt.Client``, restores tracked
    subscriptions and starts a listener task that feeds inbound
    messages to the registered callbacks.  When the listener fails,
    the session is marked down and connection-lost callbacks fire;
    reconnecting is up to the owner.
    """

    settings: MqttSettings

    # internal state --------------------------------------------------------
    _tls_context: ssl.SSLContext | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _lost_callbacks: list[ConnectionLostCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: dict[str, int] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )

    def __post_init__(self) -> None:
        self._tls_context = build_tls_context(self.settings)

    # -- MqttPort methods --------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """Whether a session is currently established."""
        return self._client is not None

    async def connect(self) -> None:
        """Open a session with the broker (single attempt).

        Raises:
            RuntimeError: If aiomqtt is not installed.
            aiomqtt.MqttError: If the broker cannot be reached.
        """
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        if self._client is not None:
            await self.disconnect()

        password: str | None = None
        if self.settings.password is not None:
            password = self.settings.password.get_secret_value()

        client = aiomqtt.Client(
            hostname=self.settings.host,
            port=self.settings.port,
            username=self.settings.username,
            password=password,
            identifier=self.settings.client_id or None,
            tls_context=self._tls_context,
        )
        await client.__aenter__()
        try:
            for topic, qos in self._subscriptions.items():
                await client.subscribe(topic, qos=qos)
        except BaseException:
            with contextlib.suppress(Exception):
                await client.__aexit__(None, None, None)
            raise

        self._client = client
        self._listen_task = asyncio.create_task(
            self._listen(client),
            name="mqtt-listener",
        )
        logger.info(
            "MQTT connected to %s:%d",
            self.settings.host,
            self.settings.port,
        )

    async def disconnect(self) -> None:
        """Stop listening and close the session.  Idempotent."""
        task, self._listen_task = self._listen_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        client, self._client = self._client, None
        if client is not None:
            try:
                await client.__aexit__(None, None, None)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring error while disconnecting: %s", exc)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message to the broker.

        Raises:
            RuntimeError: If the client is not connected.
        """
        if self._client is None:
            msg = "MqttClient is not connected"
            raise RuntimeError(msg)
        await self._client.publish(
            topic,
            payload,
            retain=retain,
            qos=qos,
        )
        logger.debug(
            "Published to %s (qos=%d, retain=%s)",
            topic,
            qos,
            retain,
        )

    async def subscribe(self, topic: str, *, qos: int = 1) -> None:
        """Subscribe to *topic*.

        The subscription is tracked internally so it can be restored
        after a reconnection.
        """
        self._subscriptions[topic] = qos
        if self._client is not None:
            await self._client.subscribe(topic, qos=qos)

    # -- Callback registration ---------------------------------------------

    def on_message(self, callback: MessageCallback) -> None:
        """Register a callback for inbound messages."""
        self._callbacks.append(callback)

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None:
        """Register a callback for sessions that break unexpectedly."""
        self._lost_callbacks.append(callback)

    # -- Internal -----------------------------------------------------------

    async def _listen(self, client: Any) -> None:
        """Feed inbound messages to callbacks until the session breaks."""
        try:
            async for message in client.messages:
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("MQTT connection lost: %s", exc)
            await self._drop(client, exc)
        else:
            await self._drop(client, ConnectionError("message stream ended"))

    async def _drop(self, client: Any, exc: Exception) -> None:
        """Forget a broken *client* and notify connection-lost callbacks."""
        if self._client is not client:
            return
        self._client = None
        self._listen_task = None
        with contextlib.suppress(Exception):
            await client.__aexit__(None, None, None)
        for cb in self._lost_callbacks:
            try:
                cb(exc)
            except Exception:
                logger.exception("Error in connection-lost callback")

    async def _dispatch(self, message: Any) -> None:
        """Decode and fan-out an inbound message to callbacks."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug(
                "Skipping message with None payload on %s",
                topic,
            )
            return

        if isinstance(message.payload, (bytes, bytearray)):
            try:
                payload = message.payload.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(
                    "Dropping message with non-UTF-8 payload on %s",
                    topic,
                )
                return
        else:
            payload = str(message.payload)

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception(
                    "Error in message callback for %s",
                    topic,
                )
