"""Raw per-target output capture in a temporary directory."""

import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import TextIO

from sshtool.errors import CaptureError
from sshtool.targets import Target

logger = logging.getLogger(__name__)

TEMP_PREFIX = "__sshtool_temp_"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._@-]")


class CaptureStore:
    """One file per target, written while its output is drained.

    The files are never read back by sshtool; they only let an operator
    inspect the raw output while a run is in progress. The whole directory
    is removed in one go when the run ends.
    """

    def __init__(self, directory: Path):
        self.directory = directory
        self._sinks: dict[int, TextIO] = {}

    @classmethod
    def create(cls, base_dir: Path | None = None) -> "CaptureStore":
        """Create the capture directory.

        Raises:
            CaptureError: If the directory cannot be created.
        """
        try:
            directory = Path(tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=base_dir))
        except OSError as exc:
            raise CaptureError(f"cannot create temporary directory: {exc}") from exc
        logger.debug("Capturing raw output in %s", directory)
        return cls(directory)

    def path_for(self, index: int, target: Target) -> Path:
        """File that receives the raw output of target ``index``."""
        name = _UNSAFE_CHARS.sub("_", target.name)
        return self.directory / f"channel_{index}_{name}"

    def open(self, targets: list[Target]) -> None:
        """Create one capture file per target, before anything runs.

        Raises:
            CaptureError: If any file cannot be created.
        """
        for index, target in enumerate(targets):
            path = self.path_for(index, target)
            try:
                self._sinks[index] = open(path, "w", encoding="utf-8")
            except OSError as exc:
                raise CaptureError(f"cannot open temp file {path}: {exc}") from exc

    def write(self, index: int, chunk: str) -> None:
        """Append ``chunk`` to the capture file of target ``index``.

        Raises:
            OSError: If the write fails. Callers treat this as non-fatal.
        """
        sink = self._sinks[index]
        sink.write(chunk)
        sink.flush()

    def close(self) -> None:
        """Close every capture file."""
        for sink in self._sinks.values():
            try:
                sink.close()
            except OSError as exc:
                logger.warning("Error closing %s: %s", sink.name, exc)
        self._sinks.clear()

    def remove(self) -> None:
        """Close the files and delete the whole capture directory.

        Raises:
            CaptureError: If the directory cannot be removed.
        """
        self.close()
        try:
            shutil.rmtree(self.directory)
        except OSError as exc:
            raise CaptureError(f"Error removing temp directory {self.directory}: {exc}") from exc
