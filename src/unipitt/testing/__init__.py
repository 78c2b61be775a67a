"""Public test-support utilities for unipitt.

Provided symbols:

- :class:`MockMqttClient` — in-memory MQTT session double.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
- :func:`make_line` — creates a fake sysfs line directory.
"""

from unipitt._mqtt import MockMqttClient
from unipitt.testing._settings import make_settings
from unipitt.testing._sysfs import make_line, read_line

__all__ = [
    "MockMqttClient",
    "make_line",
    "make_settings",
    "read_line",
]
