"""Orchestration of digital lines and the MQTT session.

The :class:`Handler` ties everything together:

- one polling task per :class:`~unipitt._input.DigitalInputReader`,
  all feeding a shared event queue;
- a single dispatch loop draining that queue and publishing input
  states (``ON`` / ``OFF``, retained) to ``{prefix}{alias}/state``;
- the inbound command path: messages on ``{prefix}{alias}/set`` are
  resolved to a :class:`~unipitt._output.DigitalOutputWriter` and
  applied;
- the broker session lifecycle::

      DISCONNECTED → CONNECTING → CONNECTED
                        ↑             │ publish failure / connection lost
                        └── RECONNECTING ←┘

  Reconnection runs in one supervised background task with
  exponential backoff; the dispatch loop never waits for it.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Iterable, Mapping
from typing import Self

from unipitt._backoff import ExponentialBackoff
from unipitt._discovery import find_input_readers, find_output_writers
from unipitt._input import DigitalInputReader, InputEvent
from unipitt._mqtt import MqttClient, MqttPort
from unipitt._output import DigitalOutputWriter
from unipitt._settings import Settings
from unipitt._topics import TopicMap

logger = logging.getLogger(__name__)

PAYLOAD_ON = "ON"
PAYLOAD_OFF = "OFF"


class SessionState(enum.StrEnum):
    """Broker session states tracked by the handler."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def encode_state(value: bool) -> str:
    """Payload published for an input *value*."""
    return PAYLOAD_ON if value else PAYLOAD_OFF


def decode_command(payload: str) -> bool:
    """Output value requested by a command *payload*."""
    return payload == PAYLOAD_ON


class Handler:
    """Bridges digital lines to one MQTT broker session.

    Use :meth:`from_settings` to discover lines below the configured
    sysfs root, then::

        async with Handler.from_settings(settings) as handler:
            await handler.run(shutdown_event)

    Leaving the context (or calling :meth:`close`) releases every
    reader handle, stops all background tasks and disconnects.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        mqtt: MqttPort,
        readers: Iterable[DigitalInputReader],
        writers: Mapping[str, DigitalOutputWriter],
        backoff: ExponentialBackoff | None = None,
    ) -> None:
        self._settings = settings
        self._topics = settings.topic_map()
        self._mqtt = mqtt
        self._readers = list(readers)
        self._writers = dict(writers)
        self._backoff = backoff or ExponentialBackoff(
            initial=settings.mqtt.reconnect_interval,
            maximum=settings.mqtt.reconnect_max_interval,
        )
        self._qos = settings.mqtt.qos
        self._events: asyncio.Queue[InputEvent] = asyncio.Queue()
        self._state = SessionState.DISCONNECTED
        self._reader_tasks: list[asyncio.Task[None]] = []
        self._reconnect_task: asyncio.Task[None] | None = None
        # States whose publish failed, re-sent once reconnected.
        self._pending: dict[str, bool] = {}
        self._closed = False

        mqtt.on_message(self.handle_message)
        mqtt.on_connection_lost(self._on_connection_lost)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        mqtt: MqttPort | None = None,
    ) -> Self:
        """Discover lines below ``settings.sys_fs_root`` and build a handler.

        Raises:
            DiscoveryError: If the sysfs root cannot be searched.
            ConfigurationError: If the MQTT TLS material is unusable.
        """
        root = settings.sys_fs_root
        readers = find_input_readers(root)
        try:
            writers = find_output_writers(root)
            if mqtt is None:
                mqtt = MqttClient(settings=settings.mqtt)
        except BaseException:
            for reader in readers:
                reader.close()
            raise
        logger.info(
            "Created %d digital input readers and %d digital output writers "
            "from path %s",
            len(readers),
            len(writers),
            root,
        )
        return cls(settings=settings, mqtt=mqtt, readers=readers, writers=writers)

    # -- Read-only properties -----------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current broker session state."""
        return self._state

    @property
    def topics(self) -> TopicMap:
        """Name/topic mapping in use."""
        return self._topics

    @property
    def readers(self) -> list[DigitalInputReader]:
        """Input readers, in discovery order."""
        return list(self._readers)

    @property
    def writers(self) -> dict[str, DigitalOutputWriter]:
        """Output writers keyed by line name."""
        return dict(self._writers)

    @property
    def reconnecting(self) -> bool:
        """Whether a reconnect task is currently running."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- Context management -------------------------------------------------

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Lifecycle ----------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Connect, start polling and dispatch events until shutdown.

        A failed initial connection is not fatal: the reconnect task
        takes over while polling starts regardless.
        """
        for name in self._writers:
            await self._mqtt.subscribe(self._topics.command_topic(name), qos=self._qos)

        if not await self.connect():
            self.schedule_reconnect()

        self.start_polling()
        try:
            await self._dispatch_loop(shutdown_event)
        finally:
            logger.info("Stopping handler")
            await self.close()

    async def connect(self) -> bool:
        """Make one connection attempt.  Returns whether it succeeded."""
        self._state = SessionState.CONNECTING
        try:
            await self._mqtt.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Cannot connect to MQTT broker: %s", exc)
            self._state = SessionState.DISCONNECTED
            return False
        self._state = SessionState.CONNECTED
        self._backoff.reset()
        return True

    def start_polling(self) -> None:
        """Start one polling task per input reader."""
        if self._reader_tasks:
            return
        interval = self._settings.polling_interval
        logger.info("Initiate polling for %d readers", len(self._readers))
        for reader in self._readers:
            self._reader_tasks.append(
                asyncio.create_task(
                    reader.poll(self._events, interval),
                    name=f"poll-{reader.name}",
                ),
            )

    async def close(self) -> None:
        """Release readers, stop background tasks and disconnect.

        Idempotent.
        """
        if self._closed:
            return
        self._closed = True

        # Closing the handles makes any reader still polling fail out.
        for reader in self._readers:
            reader.close()

        tasks = list(self._reader_tasks)
        if self._reconnect_task is not None:
            tasks.append(self._reconnect_task)
        await self._cancel_tasks(tasks)
        self._reader_tasks.clear()
        self._reconnect_task = None

        try:
            await self._mqtt.disconnect()
        except Exception:
            logger.exception("Error while disconnecting from MQTT broker")
        self._state = SessionState.DISCONNECTED

    # -- Outbound: input events ---------------------------------------------

    async def handle_event(self, event: InputEvent) -> None:
        """Publish one input event, or report its error."""
        if event.error is not None:
            logger.error(
                "Found error %s for digital input %s",
                event.error,
                event.name,
                extra={"line": event.name},
            )
            return

        topic = self._topics.state_topic(event.name)
        logger.info(
            "Trigger for topic %s: %s",
            topic,
            encode_state(event.value),
            extra={"line": event.name},
        )
        if await self._publish_state(event.name, event.value):
            self._pending.pop(event.name, None)
        else:
            self._pending[event.name] = event.value
            self.schedule_reconnect()

    async def _publish_state(self, name: str, value: bool) -> bool:
        """Publish *value* for *name*.  Returns whether it went out."""
        topic = self._topics.state_topic(name)
        try:
            await self._mqtt.publish(
                topic,
                encode_state(value),
                retain=True,
                qos=self._qos,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Publish to %s failed: %s", topic, exc)
            return False
        return True

    async def _dispatch_loop(self, shutdown_event: asyncio.Event) -> None:
        """Drain the event queue until *shutdown_event* is set."""
        shutdown_task = asyncio.ensure_future(shutdown_event.wait())
        try:
            while True:
                get_task = asyncio.ensure_future(self._events.get())
                done, _pending = await asyncio.wait(
                    {get_task, shutdown_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if shutdown_task in done:
                    get_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await get_task
                    return
                await self.handle_event(get_task.result())
        finally:
            shutdown_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_task

    # -- Inbound: commands --------------------------------------------------

    async def handle_message(self, topic: str, payload: str) -> None:
        """Apply an inbound command to the matching output line."""
        name = self._topics.command_name(topic)
        writer = self._writers.get(name)
        if writer is None:
            logger.warning(
                "No digital output %s for topic %s, dropping message",
                name,
                topic,
            )
            return
        try:
            writer.update(decode_command(payload))
        except OSError as exc:
            logger.error(
                "Cannot update digital output %s: %s",
                name,
                exc,
                extra={"line": name},
            )

    # -- Reconnection -------------------------------------------------------

    def schedule_reconnect(self) -> None:
        """Start the background reconnect task unless one is running."""
        if self._closed or self.reconnecting:
            return
        self._state = SessionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(),
            name="mqtt-reconnect",
        )

    def _on_connection_lost(self, exc: Exception) -> None:
        logger.warning("MQTT session lost: %s", exc)
        self.schedule_reconnect()

    async def _reconnect_loop(self) -> None:
        """Retry the broker connection with backoff until it succeeds."""
        try:
            await self._mqtt.disconnect()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ignoring error while disconnecting: %s", exc)

        while True:
            delay = self._backoff.next_delay()
            logger.warning("Reconnecting to MQTT broker in %.1fs", delay)
            await asyncio.sleep(delay)
            if await self.connect():
                logger.info("Reconnected to MQTT broker")
                break
            self._state = SessionState.RECONNECTING

        await self._flush_pending()

    async def _flush_pending(self) -> None:
        """Re-publish states whose publish failed while disconnected."""
        while self._pending:
            name = next(iter(self._pending))
            value = self._pending.pop(name)
            if not await self._publish_state(name, value):
                # A newer failed state may have been queued meanwhile.
                self._pending.setdefault(name, value)
                # Runs inside the reconnect task; hand over to a fresh one.
                self._reconnect_task = None
                self.schedule_reconnect()
                return

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task[None]]) -> None:
        """Cancel tasks and wait for graceful completion."""
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(
                result,
                asyncio.CancelledError,
            ):
                logger.error("Task error during shutdown: %s", result)
