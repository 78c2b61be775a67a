"""Unit tests for unipitt._mqtt — MQTT session port and adapters.

Test Techniques Used:
    - Protocol Conformance: isinstance checks for MqttPort structural subtyping
    - Specification-based Testing: MockMqttClient recording and failure injection
    - State Transition Testing: MqttClient connect / lose / disconnect
    - Mock-based Isolation: aiomqtt patched via sys.modules for MqttClient
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from unipitt._errors import ConfigurationError
from unipitt._mqtt import MockMqttClient, MqttClient, MqttPort, build_tls_context
from unipitt._settings import MqttSettings

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

_END = object()


@pytest.fixture
def inbound() -> asyncio.Queue[Any]:
    """Messages fed to the mocked aiomqtt message stream.

    Put a message namespace to deliver it, an exception to break the
    stream, or ``_END`` to end it.
    """
    return asyncio.Queue()


@pytest.fixture
def mock_aiomqtt(inbound: asyncio.Queue[Any]):
    """Mock aiomqtt module for testing MqttClient internals.

    Patches ``sys.modules`` so the lazy ``import aiomqtt`` inside
    ``connect()`` resolves to a controllable mock.
    """
    mock_module = MagicMock()

    mock_client_instance = AsyncMock()
    mock_client_instance.__aenter__ = AsyncMock(
        return_value=mock_client_instance,
    )
    mock_client_instance.__aexit__ = AsyncMock(return_value=False)

    async def _messages():
        while True:
            item = await inbound.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    type(mock_client_instance).messages = property(lambda self: _messages())
    mock_client_instance.subscribe = AsyncMock()
    mock_client_instance.publish = AsyncMock()

    mock_module.Client.return_value = mock_client_instance

    with patch.dict(sys.modules, {"aiomqtt": mock_module}):
        yield mock_module, mock_client_instance


def _message(topic: str, payload: Any) -> SimpleNamespace:
    return SimpleNamespace(topic=topic, payload=payload)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# MqttPort Protocol
# ---------------------------------------------------------------------------


class TestMqttPortProtocol:
    """Protocol conformance checks for both adapters.

    Technique: Protocol Conformance.
    """

    def test_mqtt_client_satisfies_protocol(self) -> None:
        """MqttClient is recognized as MqttPort."""
        assert isinstance(MqttClient(settings=MqttSettings()), MqttPort)

    def test_mock_mqtt_client_satisfies_protocol(self) -> None:
        """MockMqttClient is recognized as MqttPort."""
        assert isinstance(MockMqttClient(), MqttPort)

    def test_class_missing_publish_does_not_satisfy(self) -> None:
        """A class missing publish() is not recognized as MqttPort."""

        class Incomplete:
            async def subscribe(self, topic: str) -> None: ...

        assert not isinstance(Incomplete(), MqttPort)


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------


class TestBuildTlsContext:
    """TLS context selection.

    Technique: Specification-based Testing.
    """

    def test_plain_broker_has_no_context(self) -> None:
        """tcp:// brokers connect without TLS."""
        assert build_tls_context(MqttSettings(broker="tcp://h:1883")) is None

    def test_tls_broker_gets_default_context(self) -> None:
        """ssl:// brokers verify against the system trust store."""
        context = build_tls_context(MqttSettings(broker="ssl://h:8883"))
        assert isinstance(context, ssl.SSLContext)
        assert context.verify_mode == ssl.CERT_REQUIRED

    def test_ca_file_ignored_for_plain_broker(self, tmp_path: Path) -> None:
        """A CA file is only loaded when TLS is in use."""
        settings = MqttSettings(
            broker="tcp://h",
            ca_file=str(tmp_path / "missing.pem"),
        )
        assert build_tls_context(settings) is None

    def test_unreadable_ca_file_is_configuration_error(
        self,
        tmp_path: Path,
    ) -> None:
        """A missing CA file fails fast.

        Technique: Error Guessing.
        """
        settings = MqttSettings(
            broker="ssl://h",
            ca_file=str(tmp_path / "missing.pem"),
        )
        with pytest.raises(ConfigurationError, match="CA file"):
            build_tls_context(settings)

    def test_garbage_ca_file_is_configuration_error(
        self,
        tmp_path: Path,
    ) -> None:
        """A CA file without certificates fails fast."""
        ca_file = tmp_path / "garbage.pem"
        ca_file.write_text("not a certificate\n", encoding="ascii")
        settings = MqttSettings(broker="ssl://h", ca_file=str(ca_file))
        with pytest.raises(ConfigurationError):
            MqttClient(settings=settings)


# ---------------------------------------------------------------------------
# MockMqttClient
# ---------------------------------------------------------------------------


class TestMockMqttClient:
    """Recording and failure injection of the test double.

    Technique: Specification-based Testing.
    """

    async def test_records_publish_tuple(self) -> None:
        """publish() records (topic, payload, retain, qos)."""
        mock = MockMqttClient()
        await mock.publish("a/b", "ON", retain=True, qos=2)
        assert mock.published == [("a/b", "ON", True, 2)]
        assert mock.publish_count == 1

    async def test_get_messages_for_filters_by_topic(self) -> None:
        """get_messages_for() returns only matching publishes."""
        mock = MockMqttClient()
        await mock.publish("a", "ON")
        await mock.publish("b", "OFF", retain=True)
        assert mock.get_messages_for("b") == [("OFF", True, 1)]

    async def test_connect_failures_are_injected(self) -> None:
        """fail_connects makes that many connects raise."""
        mock = MockMqttClient(fail_connects=2)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await mock.connect()
        await mock.connect()
        assert mock.connect_calls == 3
        assert mock.is_connected

    async def test_publish_failures_are_injected(self) -> None:
        """fail_publishes makes that many publishes raise."""
        mock = MockMqttClient(fail_publishes=1)
        with pytest.raises(ConnectionError):
            await mock.publish("t", "ON")
        await mock.publish("t", "OFF")
        assert mock.published == [("t", "OFF", False, 1)]

    async def test_deliver_invokes_callbacks(self) -> None:
        """deliver() fans out to every registered callback."""
        mock = MockMqttClient()
        received: list[tuple[str, str]] = []

        async def _cb(topic: str, payload: str) -> None:
            received.append((topic, payload))

        mock.on_message(_cb)
        await mock.deliver("do_2_01/set", "ON")
        assert received == [("do_2_01/set", "ON")]

    def test_lose_connection_notifies(self) -> None:
        """lose_connection() marks the session down and calls back."""
        mock = MockMqttClient(connected=True)
        causes: list[Exception] = []
        mock.on_connection_lost(causes.append)
        mock.lose_connection()
        assert not mock.is_connected
        assert isinstance(causes[0], ConnectionError)

    async def test_reset_clears_records(self) -> None:
        """reset() forgets recorded calls."""
        mock = MockMqttClient()
        await mock.connect()
        await mock.subscribe("t")
        await mock.publish("t", "ON")
        mock.reset()
        assert mock.published == []
        assert mock.subscriptions == []
        assert mock.connect_calls == 0


# ---------------------------------------------------------------------------
# MqttClient
# ---------------------------------------------------------------------------


class TestMqttClientConnect:
    """Session setup against a mocked aiomqtt.

    Technique: Mock-based Isolation.
    """

    async def test_connect_passes_broker_parameters(self, mock_aiomqtt) -> None:
        """Host, port, credentials and client id reach aiomqtt.Client."""
        mock_module, _ = mock_aiomqtt
        settings = MqttSettings(
            broker="tcp://broker.lan:1884",
            client_id="bridge-1",
            username="user",
            password="secret",
        )
        client = MqttClient(settings=settings)

        await client.connect()
        try:
            kwargs = mock_module.Client.call_args.kwargs
            assert kwargs["hostname"] == "broker.lan"
            assert kwargs["port"] == 1884
            assert kwargs["username"] == "user"
            assert kwargs["password"] == "secret"
            assert kwargs["identifier"] == "bridge-1"
            assert kwargs["tls_context"] is None
            assert client.is_connected
        finally:
            await client.disconnect()

    async def test_tls_context_is_passed(self, mock_aiomqtt) -> None:
        """TLS brokers hand an SSLContext to aiomqtt."""
        mock_module, _ = mock_aiomqtt
        client = MqttClient(settings=MqttSettings(broker="ssl://broker.lan"))
        await client.connect()
        try:
            kwargs = mock_module.Client.call_args.kwargs
            assert isinstance(kwargs["tls_context"], ssl.SSLContext)
            assert kwargs["port"] == 8883
        finally:
            await client.disconnect()

    async def test_subscriptions_restored_on_connect(self, mock_aiomqtt) -> None:
        """Topics subscribed while offline are sent on connect."""
        _, instance = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        await client.subscribe("do_2_01/set", qos=1)
        await client.subscribe("ro_2_01/set", qos=0)
        instance.subscribe.assert_not_awaited()

        await client.connect()
        try:
            instance.subscribe.assert_any_await("do_2_01/set", qos=1)
            instance.subscribe.assert_any_await("ro_2_01/set", qos=0)
        finally:
            await client.disconnect()

    async def test_subscribe_while_connected_is_immediate(
        self,
        mock_aiomqtt,
    ) -> None:
        """Subscribing on a live session goes straight to the broker."""
        _, instance = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        await client.connect()
        try:
            await client.subscribe("do_2_02/set", qos=2)
            instance.subscribe.assert_awaited_with("do_2_02/set", qos=2)
        finally:
            await client.disconnect()

    async def test_failed_subscribe_closes_session(self, mock_aiomqtt) -> None:
        """A failure after entering the client exits it again."""
        _, instance = mock_aiomqtt
        instance.subscribe.side_effect = OSError("broken pipe")
        client = MqttClient(settings=MqttSettings())
        await client.subscribe("do_2_01/set")

        with pytest.raises(OSError):
            await client.connect()

        instance.__aexit__.assert_awaited()
        assert not client.is_connected

    async def test_broker_unreachable_propagates(self, mock_aiomqtt) -> None:
        """connect() makes one attempt and raises on failure."""
        _, instance = mock_aiomqtt
        instance.__aenter__.side_effect = ConnectionRefusedError()
        client = MqttClient(settings=MqttSettings())
        with pytest.raises(ConnectionRefusedError):
            await client.connect()
        assert not client.is_connected

    async def test_missing_aiomqtt_is_runtime_error(self) -> None:
        """Without aiomqtt the real adapter cannot connect."""
        client = MqttClient(settings=MqttSettings())
        with (
            patch.dict(sys.modules, {"aiomqtt": None}),
            pytest.raises(RuntimeError, match="aiomqtt"),
        ):
            await client.connect()


class TestMqttClientPublish:
    """Publishing.

    Technique: Specification-based Testing.
    """

    async def test_publish_forwards_flags(self, mock_aiomqtt) -> None:
        """retain and qos are passed through to aiomqtt."""
        _, instance = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        await client.connect()
        try:
            await client.publish("di_1_01/state", "ON", retain=True, qos=1)
            instance.publish.assert_awaited_once_with(
                "di_1_01/state",
                "ON",
                retain=True,
                qos=1,
            )
        finally:
            await client.disconnect()

    async def test_publish_while_disconnected_raises(self) -> None:
        """Publishing without a session is an error for the caller."""
        client = MqttClient(settings=MqttSettings())
        with pytest.raises(RuntimeError, match="not connected"):
            await client.publish("t", "ON")


class TestMqttClientSession:
    """Inbound messages and session loss.

    Technique: State Transition Testing.
    """

    async def test_messages_dispatched_as_text(
        self,
        mock_aiomqtt,
        inbound: asyncio.Queue[Any],
    ) -> None:
        """Byte payloads are decoded before reaching callbacks."""
        client = MqttClient(settings=MqttSettings())
        received: list[tuple[str, str]] = []

        async def _cb(topic: str, payload: str) -> None:
            received.append((topic, payload))

        client.on_message(_cb)
        await client.connect()
        try:
            await inbound.put(_message("do_2_01/set", b"ON"))
            await inbound.put(_message("do_2_02/set", None))
            await inbound.put(_message("do_2_03/set", "OFF"))
            await _settle()
            assert received == [("do_2_01/set", "ON"), ("do_2_03/set", "OFF")]
        finally:
            await client.disconnect()

    async def test_callback_error_does_not_stop_listener(
        self,
        mock_aiomqtt,
        inbound: asyncio.Queue[Any],
    ) -> None:
        """One failing callback does not break the session."""
        client = MqttClient(settings=MqttSettings())
        received: list[str] = []

        async def _bad(topic: str, payload: str) -> None:
            raise RuntimeError("boom")

        async def _good(topic: str, payload: str) -> None:
            received.append(payload)

        client.on_message(_bad)
        client.on_message(_good)
        await client.connect()
        try:
            await inbound.put(_message("t", b"ON"))
            await inbound.put(_message("t", b"OFF"))
            await _settle()
            assert received == ["ON", "OFF"]
            assert client.is_connected
        finally:
            await client.disconnect()

    async def test_undecodable_payload_is_dropped(
        self,
        mock_aiomqtt,
        inbound: asyncio.Queue[Any],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A non-UTF-8 payload is skipped without ending the session.

        Technique: Error Guessing.
        """
        client = MqttClient(settings=MqttSettings())
        received: list[tuple[str, str]] = []
        causes: list[Exception] = []

        async def _cb(topic: str, payload: str) -> None:
            received.append((topic, payload))

        client.on_message(_cb)
        client.on_connection_lost(causes.append)
        await client.connect()
        try:
            with caplog.at_level(logging.WARNING, logger="unipitt._mqtt"):
                await inbound.put(_message("do_2_01/set", b"\xff\xfe"))
                await inbound.put(_message("do_2_01/set", b"ON"))
                await _settle()
            assert received == [("do_2_01/set", "ON")]
            assert causes == []
            assert client.is_connected
            assert "non-UTF-8" in caplog.text
        finally:
            await client.disconnect()

    async def test_stream_error_reports_connection_lost(
        self,
        mock_aiomqtt,
        inbound: asyncio.Queue[Any],
    ) -> None:
        """A broken message stream drops the session and notifies."""
        _, instance = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        causes: list[Exception] = []
        client.on_connection_lost(causes.append)
        await client.connect()

        cause = OSError("connection reset")
        await inbound.put(cause)
        await _settle()

        assert causes == [cause]
        assert not client.is_connected
        instance.__aexit__.assert_awaited()

    async def test_stream_end_reports_connection_lost(
        self,
        mock_aiomqtt,
        inbound: asyncio.Queue[Any],
    ) -> None:
        """An exhausted message stream also counts as a lost session."""
        client = MqttClient(settings=MqttSettings())
        causes: list[Exception] = []
        client.on_connection_lost(causes.append)
        await client.connect()

        await inbound.put(_END)
        await _settle()

        assert len(causes) == 1
        assert isinstance(causes[0], ConnectionError)

    async def test_disconnect_does_not_report_loss(self, mock_aiomqtt) -> None:
        """An orderly disconnect is not a lost connection."""
        _, instance = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        causes: list[Exception] = []
        client.on_connection_lost(causes.append)
        await client.connect()

        await client.disconnect()
        await client.disconnect()

        assert causes == []
        assert not client.is_connected
        instance.__aexit__.assert_awaited_once()

    async def test_reconnect_replaces_session(self, mock_aiomqtt) -> None:
        """Connecting while connected tears down the old session first."""
        mock_module, instance = mock_aiomqtt
        client = MqttClient(settings=MqttSettings())
        await client.connect()
        await client.connect()
        try:
            assert mock_module.Client.call_count == 2
            instance.__aexit__.assert_awaited_once()
        finally:
            await client.disconnect()
