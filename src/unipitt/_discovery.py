"""Discovery of digital lines below a sysfs root.

Line directories are recognised by their name alone, e.g.
``di_1_01`` for inputs and ``do_2_01`` / ``ro_2_01`` for outputs,
wherever they sit below the root.
"""

from __future__ import annotations

import logging
import os
import re

from unipitt._errors import DiscoveryError, LineIOError
from unipitt._input import INPUT_FOLDER_PATTERN, DigitalInputReader
from unipitt._output import OUTPUT_FOLDER_PATTERN, DigitalOutputWriter

logger = logging.getLogger(__name__)


def find_paths(root: str, pattern: str) -> list[str]:
    """Return every directory below *root* whose name matches *pattern*.

    Paths come back sorted so discovery order is stable across runs.
    Symlinked directories are reported but not descended into.

    Raises:
        DiscoveryError: If *root* is missing or cannot be listed.
    """
    if not os.path.isdir(root):
        msg = f"sysfs root {root!r} does not exist or is not a directory"
        raise DiscoveryError(msg)

    regex = re.compile(pattern)
    paths: list[str] = []

    def _on_error(exc: OSError) -> None:
        raise DiscoveryError(f"Cannot search {exc.filename!r}: {exc}") from exc

    for dirpath, dirnames, _filenames in os.walk(root, onerror=_on_error):
        for dirname in dirnames:
            if regex.fullmatch(dirname):
                paths.append(os.path.join(dirpath, dirname))
    return sorted(paths)


def find_input_readers(root: str) -> list[DigitalInputReader]:
    """Open a reader for every input line below *root*.

    Lines whose attribute cannot be opened are logged and skipped, as
    are repeated line names.
    """
    paths = find_paths(root, INPUT_FOLDER_PATTERN)
    logger.info("Found %d matching digital input paths", len(paths))
    readers: list[DigitalInputReader] = []
    seen: set[str] = set()
    for folder in paths:
        try:
            reader = DigitalInputReader.from_folder(folder)
        except LineIOError as exc:
            logger.warning("Skipping digital input: %s", exc)
            continue
        if reader.name in seen:
            logger.warning("Duplicate digital input %s at %s", reader.name, folder)
            reader.close()
            continue
        seen.add(reader.name)
        readers.append(reader)
    return readers


def find_output_writers(root: str) -> dict[str, DigitalOutputWriter]:
    """Create a writer for every output line below *root*, keyed by name."""
    paths = find_paths(root, OUTPUT_FOLDER_PATTERN)
    logger.info("Found %d matching digital output paths", len(paths))
    writers: dict[str, DigitalOutputWriter] = {}
    for folder in paths:
        writer = DigitalOutputWriter.from_folder(folder)
        if writer.name in writers:
            logger.warning(
                "Duplicate digital output %s at %s, keeping %s",
                writer.name,
                folder,
                writers[writer.name].path,
            )
            continue
        writers[writer.name] = writer
    return writers
