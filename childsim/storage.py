"""JSON file storage for the game checkpoint.

One game at a time is kept in a single JSON file under a configurable base
directory. There is no database — reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      checkpoint.json     ← {"version": N, "data": Checkpoint}

A blob written under a different version is cleared on load instead of being
migrated; a file that no longer parses is treated the same way.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from childsim.models import Checkpoint

logger = logging.getLogger(__name__)

STORAGE_VERSION = 1
CHECKPOINT_FILE = "checkpoint.json"


class VersionMismatch(ValueError):
    """Raised when a stored blob was written under another storage version."""

    def __init__(self, found: Any, expected: int) -> None:
        super().__init__(f"checkpoint version {found!r} does not match {expected}")
        self.found = found
        self.expected = expected


class PersistenceStore(Protocol):
    def save(self, checkpoint: Checkpoint) -> None: ...

    def load(self) -> Checkpoint | None: ...

    def clear(self) -> None: ...


class CheckpointStore:
    def __init__(self, base_path: Path, version: int = STORAGE_VERSION) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)
        self._version = version

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._base / CHECKPOINT_FILE

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def _decode(self, blob: Any) -> Checkpoint:
        if not isinstance(blob, dict) or blob.get("version") != self._version:
            found = blob.get("version") if isinstance(blob, dict) else None
            raise VersionMismatch(found, self._version)
        return Checkpoint.model_validate(blob.get("data"))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, checkpoint: Checkpoint) -> None:
        self._write_json(
            self.path,
            {"version": self._version, "data": checkpoint.model_dump(mode="json")},
        )
        logger.debug("checkpoint saved age=%d phase=%s", checkpoint.state.age, checkpoint.state.phase.value)

    def load(self) -> Checkpoint | None:
        """Return the stored checkpoint, or None if absent or unusable."""
        if not self.path.exists():
            return None
        try:
            return self._decode(self._read_json(self.path))
        except VersionMismatch as e:
            logger.warning("discarding checkpoint: %s", e)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.warning("discarding unreadable checkpoint: %s", e)
        self.clear()
        return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
