"""Async entrypoint of the unipitt bridge.

:func:`run` is the composition root: it configures logging, builds
the :class:`~unipitt._handler.Handler` from resolved settings,
installs signal handlers and blocks until shutdown.

Typical usage::

    import asyncio

    import unipitt

    settings = unipitt.load_settings("/etc/unipitt/config.yaml")
    asyncio.run(unipitt.run(settings))
"""

from __future__ import annotations

import asyncio
import logging
import signal

from unipitt._handler import Handler
from unipitt._logging import configure_logging
from unipitt._mqtt import MqttPort
from unipitt._settings import Settings

logger = logging.getLogger(__name__)

SERVICE_NAME = "unipitt"


async def run(
    settings: Settings,
    *,
    mqtt: MqttPort | None = None,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the bridge until shutdown is requested.

    Pass a :class:`~unipitt.testing.MockMqttClient` and a manual
    :class:`asyncio.Event` in tests to avoid real I/O and OS signals.

    Args:
        settings: Fully resolved settings.
        mqtt: Override MQTT session (a real ``MqttClient`` otherwise).
        shutdown_event: Override shutdown event (skip signal handlers).

    Raises:
        DiscoveryError: If the sysfs root cannot be searched.
        ConfigurationError: If the MQTT TLS material is unusable.
    """
    from unipitt import __version__

    configure_logging(
        settings.logging,
        service=SERVICE_NAME,
        version=__version__,
    )
    logger.info("Starting %s v%s", SERVICE_NAME, __version__)

    shutdown_event = _install_signal_handlers(shutdown_event)

    async with Handler.from_settings(settings, mqtt=mqtt) as handler:
        await handler.run(shutdown_event)

    logger.info("Shutdown complete")


def _install_signal_handlers(
    shutdown_event: asyncio.Event | None,
) -> asyncio.Event:
    """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
    if shutdown_event is not None:
        return shutdown_event
    event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, event.set)
    return event
