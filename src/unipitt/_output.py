"""Digital output lines.

Output lines are sysfs directories named ``do_2_01`` (digital output)
or ``ro_2_01`` (relay output).  The value attribute takes the line
type's letter: ``do_value`` for digital outputs, ``ro_value`` for
relays.  Writing ``"1\\n"`` switches the output on, ``"0\\n"`` off.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Self

logger = logging.getLogger(__name__)

OUTPUT_FILENAME = "do_value"
OUTPUT_FOLDER_PATTERN = r"[dr]o_[0-9]_[0-9]{2}"
OUTPUT_TRUE_VALUE = "1\n"
OUTPUT_FALSE_VALUE = "0\n"


@dataclass(frozen=True, slots=True)
class DigitalOutputWriter:
    """Writes commanded values to one digital output attribute.

    Holds no state beyond its identity; every :meth:`update` rewrites
    the attribute from scratch.
    """

    name: str
    path: str

    @classmethod
    def from_folder(cls, folder: str) -> Self:
        """Create a writer named after the trailing segment of *folder*."""
        return cls(name=os.path.basename(os.path.normpath(folder)), path=folder)

    @property
    def filename(self) -> str:
        """Attribute path, ``<path>/do_value`` or ``<path>/ro_value``."""
        return os.path.join(self.path, self.name[:1] + OUTPUT_FILENAME[1:])

    def update(self, value: bool) -> None:
        """Switch the output to *value*.

        Raises:
            OSError: Whatever the filesystem reports; no retry.
        """
        with open(self.filename, "w", encoding="ascii") as f:
            f.write(OUTPUT_TRUE_VALUE if value else OUTPUT_FALSE_VALUE)
        logger.info(
            "Updated digital output %s to %s in %s",
            self.name,
            value,
            self.filename,
            extra={"line": self.name},
        )
