"""
Checkpoint storage for scanner cursors.

Each scanner owns exactly one cursor; the store only persists them so a
restart resumes where the previous run stopped.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from ..errors import ConfigError
from ..models import ScannerCursor

logger = logging.getLogger(__name__)


class CursorStore(Protocol):
    """Load and save scanner cursors keyed by chain ID."""

    def load(self, chain_id: int) -> ScannerCursor | None: ...

    def save(self, cursor: ScannerCursor) -> None: ...


class MemoryCursorStore:
    """Keeps cursors for the lifetime of the process only."""

    def __init__(self) -> None:
        self._cursors: dict[int, ScannerCursor] = {}

    def load(self, chain_id: int) -> ScannerCursor | None:
        return self._cursors.get(chain_id)

    def save(self, cursor: ScannerCursor) -> None:
        self._cursors[cursor.chain_id] = cursor


class JsonCursorStore:
    """
    Persists cursors to a single JSON document.

    The document maps chain IDs (as strings) to cursor dictionaries. Writes
    go to a temporary file in the same directory which then replaces the
    original, so a crash mid-write never leaves a truncated checkpoint.
    Saves may arrive from worker threads and are serialized by a lock.
    """

    def __init__(self, path: str | Path) -> None:
        """
        Initialize the store.

        Args:
            path: Location of the JSON checkpoint file
        """
        self.path = Path(path)
        self._lock = threading.Lock()
        self._cursors: dict[int, ScannerCursor] = self._read()

    def _read(self) -> dict[int, ScannerCursor]:
        """
        Load the checkpoint document.

        Raises:
            ConfigError: The file exists but is not a valid checkpoint document
        """
        if not self.path.exists():
            return {}

        try:
            with self.path.open() as file:
                raw = json.load(file)

            cursors = {}
            for key, value in raw.items():
                cursor = ScannerCursor(
                    chain_id=int(value["chain_id"]),
                    last_completed_block=int(value["last_completed_block"]),
                    last_completed_at=float(value.get("last_completed_at", 0.0)),
                )
                cursors[int(key)] = cursor
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ConfigError(f"Corrupt cursor checkpoint file {self.path}: {e}") from e

        logger.info(f"Loaded {len(cursors)} cursor checkpoints from {self.path}")
        return cursors

    def load(self, chain_id: int) -> ScannerCursor | None:
        return self._cursors.get(chain_id)

    def save(self, cursor: ScannerCursor) -> None:
        with self._lock:
            self._cursors[cursor.chain_id] = cursor
            document = {str(chain_id): c.to_dict() for chain_id, c in sorted(self._cursors.items())}

            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w") as file:
                    json.dump(document, file, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise
