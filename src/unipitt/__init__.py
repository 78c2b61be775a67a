"""unipitt.

Bridge Unipi digital inputs and outputs, exposed as sysfs attributes,
to an MQTT broker.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("unipitt")
except PackageNotFoundError:
    # Running from a source tree without installed metadata
    __version__ = "0.0.0+unknown"

from unipitt._app import run
from unipitt._backoff import ExponentialBackoff
from unipitt._discovery import find_input_readers, find_output_writers, find_paths
from unipitt._errors import (
    ConfigurationError,
    DiscoveryError,
    LineIOError,
    UnipittError,
)
from unipitt._handler import PAYLOAD_OFF, PAYLOAD_ON, Handler, SessionState
from unipitt._input import DigitalInputReader, InputEvent
from unipitt._logging import JsonFormatter, configure_logging
from unipitt._mqtt import (
    ConnectionLostCallback,
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttPort,
)
from unipitt._output import DigitalOutputWriter
from unipitt._settings import LoggingSettings, MqttSettings, Settings, load_settings
from unipitt._topics import TopicMap

__all__ = [
    # Version
    "__version__",
    # Entrypoint
    "run",
    # Handler
    "Handler",
    "PAYLOAD_OFF",
    "PAYLOAD_ON",
    "SessionState",
    "ExponentialBackoff",
    # Lines
    "DigitalInputReader",
    "DigitalOutputWriter",
    "InputEvent",
    "find_input_readers",
    "find_output_writers",
    "find_paths",
    # Topics
    "TopicMap",
    # MQTT
    "ConnectionLostCallback",
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttPort",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # Errors
    "ConfigurationError",
    "DiscoveryError",
    "LineIOError",
    "UnipittError",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "Settings",
    "load_settings",
]
