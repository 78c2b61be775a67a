"""Command-line interface (Typer-based).

Parses startup parameters, loads settings and hands off to
:func:`unipitt._app.run`.  Options given on the command line win
over the configuration file, which wins over ``UNIPITT_*``
environment variables.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import Annotated, Any, get_args

import typer

from unipitt._app import SERVICE_NAME, run
from unipitt._errors import ConfigurationError, UnipittError
from unipitt._settings import LoggingSettings, load_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def _version_callback(value: bool) -> None:
    if value:
        from unipitt import __version__

        typer.echo(f"{SERVICE_NAME} v{__version__}")
        raise typer.Exit()


def build_overrides(
    *,
    sys_fs_root: str | None = None,
    polling_interval_ms: int | None = None,
    broker: str | None = None,
    client_id: str | None = None,
    ca_file: str | None = None,
    log_level: str | None = None,
    log_format: str | None = None,
) -> dict[str, Any]:
    """Translate CLI options into nested settings overrides.

    Options left at ``None`` are omitted so they do not mask values
    from the configuration file or environment.
    """
    overrides: dict[str, Any] = {}
    mqtt: dict[str, Any] = {}
    log: dict[str, Any] = {}

    if sys_fs_root is not None:
        overrides["sys_fs_root"] = sys_fs_root
    if polling_interval_ms is not None:
        overrides["polling_interval"] = polling_interval_ms / 1000
    if broker is not None:
        mqtt["broker"] = broker
    if client_id is not None:
        mqtt["client_id"] = client_id
    if ca_file is not None:
        mqtt["ca_file"] = ca_file
    if log_level is not None:
        log["level"] = log_level.upper()
    if log_format is not None:
        log["format"] = log_format.lower()

    if mqtt:
        overrides["mqtt"] = mqtt
    if log:
        overrides["logging"] = log
    return overrides


cli = typer.Typer(
    help=(
        f"{SERVICE_NAME}: bridge Unipi digital inputs and outputs "
        "to an MQTT broker."
    ),
    add_completion=False,
)


@cli.command()
def main(
    config: Annotated[
        str | None,
        typer.Option("--config", "-c", help="YAML configuration file."),
    ] = None,
    sys_fs_root: Annotated[
        str | None,
        typer.Option(
            "--sysfs-root",
            help="Root folder to search for digital inputs and outputs.",
        ),
    ] = None,
    polling_interval: Annotated[
        int | None,
        typer.Option(
            "--polling-interval",
            min=1,
            help="Polling interval for the digital inputs in milliseconds.",
        ),
    ] = None,
    broker: Annotated[
        str | None,
        typer.Option("--broker", help="MQTT broker URI, e.g. ssl://host:8883."),
    ] = None,
    client_id: Annotated[
        str | None,
        typer.Option("--client-id", help="MQTT client ID."),
    ] = None,
    ca_file: Annotated[
        str | None,
        typer.Option("--cafile", help="CA certificate used for MQTT TLS setup."),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override log level."),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option("--log-format", help="Override log format."),
    ] = None,
    env_file: Annotated[
        str,
        typer.Option("--env-file", help="Path to .env file."),
    ] = ".env",
    version: Annotated[  # noqa: ARG001
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Poll digital inputs and apply output commands until interrupted."""
    # -- validate enum-like options -----------------------------------------
    if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
        raise typer.BadParameter(
            f"Invalid log level '{log_level}'. "
            f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
            param_hint="'--log-level'",
        )

    if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
        raise typer.BadParameter(
            f"Invalid log format '{log_format}'. "
            f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
            param_hint="'--log-format'",
        )

    # -- build settings -----------------------------------------------------
    overrides = build_overrides(
        sys_fs_root=sys_fs_root,
        polling_interval_ms=polling_interval,
        broker=broker,
        client_id=client_id,
        ca_file=ca_file,
        log_level=log_level,
        log_format=log_format,
    )
    try:
        settings = load_settings(config, env_file=env_file, **overrides)
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc

    # -- run the async lifecycle --------------------------------------------
    try:
        with contextlib.suppress(KeyboardInterrupt):
            asyncio.run(run(settings))
    except SystemExit:
        raise
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(EXIT_CONFIG_ERROR)
    except UnipittError as exc:
        logger.error("Startup error: %s", exc)
        sys.exit(EXIT_RUNTIME_ERROR)
    except Exception as exc:
        logger.error("Runtime error: %s", exc)
        sys.exit(EXIT_RUNTIME_ERROR)
