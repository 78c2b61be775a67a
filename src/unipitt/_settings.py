"""Application configuration via pydantic-settings.

Configuration comes from three layers, highest priority first:

1. Explicit overrides (CLI options, tests).
2. A YAML configuration file (``--config``).
3. Environment variables prefixed ``UNIPITT_`` and/or a ``.env`` file.
   Nested models use ``__`` as the delimiter, e.g.
   ``UNIPITT_MQTT__BROKER=ssl://broker.lan:8883``.

The YAML file keeps the layout used by existing deployments::

    topics:
      di_1_01: kitchen switch
      do_2_02: living light
    mqtt:
      broker: ssl://raspberrypi.lan:8883
      client_id: unipitt
      ca_file: /etc/ssl/certs/broker-ca.pem
      topic_prefix: home/
    sys_fs_root: /sys/devices/platform/unipi_plc

All durations are in **seconds**.  Settings are frozen once loaded.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal
from urllib.parse import urlsplit

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from unipitt._errors import ConfigurationError
from unipitt._topics import TopicMap

DEFAULT_SYS_FS_ROOT = "/sys/devices/platform/unipi_plc"

_TLS_SCHEMES = frozenset({"ssl", "tls", "mqtts"})
_PLAIN_SCHEMES = frozenset({"tcp", "mqtt"})
_DEFAULT_PORTS = {True: 8883, False: 1883}

# -------------------------------------------------------------------
# Sub-models (BaseModel, nested into Settings by composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection and topic configuration.

    The broker is given as a URI; the scheme selects TLS::

        tcp://broker.lan:1883     plain TCP
        ssl://broker.lan:8883     TLS (also ``tls://`` and ``mqtts://``)

    A missing port falls back to 1883 (plain) or 8883 (TLS).
    """

    model_config = ConfigDict(frozen=True)

    broker: str = Field(
        default="tcp://localhost:1883",
        description="MQTT broker URI, e.g. 'ssl://raspberrypi.lan:8883'.",
    )
    client_id: str = Field(
        default="unipitt",
        description="MQTT client identifier.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    ca_file: str | None = Field(
        default=None,
        description=(
            "PEM file with extra CA certificates trusted on top of the "
            "system store.  Only used for TLS brokers."
        ),
    )
    topic_prefix: str = Field(
        default="",
        description=(
            "Literal prefix prepended to every topic.  Include the "
            "trailing '/' yourself, e.g. 'home/'."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS level for state publishes and command subscriptions.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=1.0,
        description=(
            "Initial seconds to wait before reconnecting after a "
            "failure.  Doubles on each consecutive failure "
            "(exponential backoff with jitter) up to "
            "``reconnect_max_interval``."
        ),
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Upper bound (seconds) for the reconnect backoff.",
    )

    @field_validator("broker")
    @classmethod
    def _check_broker(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in _TLS_SCHEMES | _PLAIN_SCHEMES:
            msg = (
                f"Unsupported broker scheme {parts.scheme!r} in {value!r}; "
                "use tcp://, mqtt://, ssl://, tls:// or mqtts://"
            )
            raise ValueError(msg)
        if not parts.hostname:
            msg = f"Broker URI {value!r} has no host"
            raise ValueError(msg)
        # Accessing .port validates the range.
        _ = parts.port
        return value

    @property
    def use_tls(self) -> bool:
        """Whether the broker URI selects a TLS transport."""
        return urlsplit(self.broker).scheme in _TLS_SCHEMES

    @property
    def host(self) -> str:
        """Broker hostname taken from the URI."""
        return urlsplit(self.broker).hostname or ""

    @property
    def port(self) -> int:
        """Broker port taken from the URI, or the scheme default."""
        port = urlsplit(self.broker).port
        return port if port is not None else _DEFAULT_PORTS[self.use_tls]


class LoggingSettings(BaseModel):
    """Logging configuration.

    When ``file`` is set, logs are also written to a rotating file
    (size-based rotation, ``backup_count`` generations kept).  When
    ``None``, logs go to stderr only.

    ``format`` is ``"text"`` (default, suited to a terminal or
    journald) or ``"json"`` for log aggregators.
    """

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format, 'text' or 'json'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for a unipitt bridge.

    Example ``.env``::

        UNIPITT_MQTT__BROKER=ssl://broker.lan:8883
        UNIPITT_MQTT__USERNAME=user
        UNIPITT_MQTT__PASSWORD=secret
        UNIPITT_SYS_FS_ROOT=/sys/devices/platform/unipi_plc
        UNIPITT_LOGGING__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="UNIPITT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="forbid",
        frozen=True,
    )

    topics: dict[str, str] = Field(
        default_factory=dict,
        description="Line name to topic alias mapping.",
    )
    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    sys_fs_root: str = Field(
        default=DEFAULT_SYS_FS_ROOT,
        description="Root folder searched for digital input/output lines.",
    )
    polling_interval: Annotated[float, Field(gt=0)] = Field(
        default=0.05,
        description="Seconds between two reads of the same input line.",
    )
    state_suffix: str = Field(
        default="/state",
        description="Suffix of the topics input states are published to.",
    )
    set_suffix: str = Field(
        default="/set",
        description="Suffix of the command topics output lines listen on.",
    )

    @field_validator("topics", mode="before")
    @classmethod
    def _empty_topics(cls, value: Any) -> Any:
        # An empty ``topics:`` key in YAML parses as None.
        return {} if value is None else value

    def topic_map(self) -> TopicMap:
        """Build the name/topic mapping for these settings."""
        return TopicMap(
            aliases=self.topics,
            prefix=self.mqtt.topic_prefix,
            state_suffix=self.state_suffix,
            set_suffix=self.set_suffix,
        )


# -------------------------------------------------------------------
# Loading
# -------------------------------------------------------------------


def read_config_file(config_file: str | Path) -> dict[str, Any]:
    """Parse a YAML configuration file into a plain mapping.

    Raises:
        ConfigurationError: If the file cannot be read, is not valid
            YAML, or does not contain a mapping at the top level.
    """
    path = Path(config_file)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file {path}: {exc}"
        raise ConfigurationError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML in config file {path}: {exc}"
        raise ConfigurationError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = (
            f"Config file {path} must contain a mapping, "
            f"got {type(data).__name__}"
        )
        raise ConfigurationError(msg)
    return data


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into a copy of *base*."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(
    config_file: str | Path | None = None,
    *,
    env_file: str | None = ".env",
    settings_class: type[Settings] = Settings,
    **overrides: Any,
) -> Settings:
    """Load settings from a YAML file, overrides and the environment.

    Values from *config_file* take precedence over the environment;
    *overrides* (nested dicts allowed, e.g. ``mqtt={"broker": ...}``)
    take precedence over the file.

    Raises:
        ConfigurationError: On any read, parse or validation problem.
            A partially loaded configuration is never returned.
    """
    values: dict[str, Any] = {}
    if config_file is not None:
        values = read_config_file(config_file)
    values = _merge(values, overrides)

    try:
        return settings_class(_env_file=env_file, **values)  # type: ignore[call-arg]
    except ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise ConfigurationError(msg) from exc
