"""Exception types raised by unipitt.

Only configuration and discovery problems are fatal; they escalate
to the CLI, which maps them to a non-zero exit code.  Line I/O
failures stay local to the affected line: input read errors travel
on :class:`~unipitt._input.InputEvent`, output write errors surface
as the underlying :class:`OSError`.
"""

from __future__ import annotations


class UnipittError(Exception):
    """Base class for all unipitt errors."""


class ConfigurationError(UnipittError):
    """The configuration could not be loaded or is invalid."""


class DiscoveryError(UnipittError):
    """The sysfs root holding the digital lines cannot be searched."""


class LineIOError(UnipittError):
    """The backing attribute of a line cannot be opened."""

    def __init__(self, name: str, path: str, reason: str) -> None:
        super().__init__(f"Line '{name}' ({path}): {reason}")
        self.name = name
        self.path = path
