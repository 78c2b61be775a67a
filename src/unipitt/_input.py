"""Digital input lines.

Each input line is a sysfs directory (``di_1_01``, ``di_2_07``, ...)
holding a ``di_value`` attribute whose first byte is ``"1"`` when the
input is high.  A :class:`DigitalInputReader` keeps the attribute open
and re-reads it from offset 0 on every tick.

Polling is edge-triggered: an :class:`InputEvent` is emitted only when
the decoded value changes, except for the very first read, which is
always announced so retained broker state matches the hardware right
after startup.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import IO, Self

from unipitt._errors import LineIOError

logger = logging.getLogger(__name__)

INPUT_FILENAME = "di_value"
INPUT_FOLDER_PATTERN = r"di_[0-9]_[0-9]{2}"
TRUE_TOKEN = b"1"

_LOG_EVERY_TICKS = 100


@dataclass(frozen=True, slots=True)
class InputEvent:
    """Snapshot of a reader taken when it reports.

    ``error`` is set on the final event of a reader whose attribute
    became unreadable; ``value`` then repeats the last good value.
    """

    name: str
    value: bool
    error: Exception | None = None


class DigitalInputReader:
    """Polls one digital input attribute.

    The attribute is opened unbuffered at construction so every read
    hits the kernel; a buffered reader could serve a stale byte after
    ``seek(0)``.  Use as a context manager or call :meth:`close`.

    Raises:
        LineIOError: If the attribute cannot be opened.
    """

    def __init__(self, name: str, path: str) -> None:
        self.name = name
        self.path = path
        self.value = False
        self.error: Exception | None = None
        attribute = os.path.join(path, INPUT_FILENAME)
        try:
            self._file: IO[bytes] | None = open(attribute, "rb", buffering=0)  # noqa: SIM115
        except OSError as exc:
            raise LineIOError(name, attribute, exc.strerror or str(exc)) from exc

    @classmethod
    def from_folder(cls, folder: str) -> Self:
        """Create a reader named after the trailing segment of *folder*."""
        return cls(os.path.basename(os.path.normpath(folder)), folder)

    def __repr__(self) -> str:
        return f"DigitalInputReader(name={self.name!r}, path={self.path!r})"

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        """Whether the backing handle has been released."""
        return self._file is None or self._file.closed

    def read(self) -> bool:
        """Decode the current attribute value.

        Raises:
            OSError: If the attribute cannot be read.
            ValueError: If the reader has been closed.
        """
        if self._file is None:
            msg = f"I/O operation on closed reader '{self.name}'"
            raise ValueError(msg)
        self._file.seek(0)
        return self._file.read(1) == TRUE_TOKEN

    async def poll(
        self,
        events: asyncio.Queue[InputEvent],
        interval: float,
        *,
        force: bool = True,
    ) -> None:
        """Read every *interval* seconds and report changes to *events*.

        With *force* the first read is reported whatever its value.
        Returns after reporting a read failure; the handle is released
        on every exit path, cancellation included.
        """
        announce = force
        ticks = 0
        try:
            while True:
                # Non-blocking: sysfs attributes are served from kernel memory.
                try:
                    value = self.read()
                except (OSError, ValueError) as exc:
                    self.error = exc
                    logger.error(
                        "Error polling digital input %s: %s",
                        self.name,
                        exc,
                        extra={"line": self.name},
                    )
                    await events.put(InputEvent(self.name, self.value, exc))
                    return

                if announce or value != self.value:
                    await events.put(InputEvent(self.name, value))
                    announce = False
                self.value = value

                ticks += 1
                if ticks % _LOG_EVERY_TICKS == 0:
                    logger.debug(
                        "Polling digital input %s ...",
                        self.name,
                        extra={"line": self.name},
                    )
                await asyncio.sleep(interval)
        finally:
            self.close()

    def close(self) -> None:
        """Release the backing handle.  Idempotent."""
        if self._file is not None:
            self._file.close()
            self._file = None
