"""Checkpoint store: persists the tailer's read position to survive restarts."""

import json
import os
import logging

from aiproxy.models import Checkpoint, CheckpointError

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Holds one Checkpoint; ``path=None`` keeps it in memory only."""

    def __init__(self, path: str | None):
        self._path = path
        self._checkpoint = Checkpoint()
        self._load()

    @property
    def path(self) -> str | None:
        return self._path

    def _load(self):
        if not self._path or not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._checkpoint = Checkpoint(
                byte_offset=int(data.get("offset", 0)),
                file_identity=data.get("identity"),
            )
            logger.info("Loaded checkpoint from %s (offset=%d)",
                        self._path, self._checkpoint.byte_offset)
        except (json.JSONDecodeError, OSError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Failed to load checkpoint %s: %s", self._path, e)
            self._checkpoint = Checkpoint()

    def get(self) -> Checkpoint:
        return self._checkpoint

    def save(self, checkpoint: Checkpoint):
        """Atomic write: write to tmp file then replace."""
        self._checkpoint = checkpoint
        if not self._path:
            return
        tmp_path = self._path + ".tmp"
        try:
            os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(
                    {"offset": checkpoint.byte_offset, "identity": checkpoint.file_identity},
                    f,
                    indent=2,
                )
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise CheckpointError(f"cannot write checkpoint {self._path}: {e}") from e
