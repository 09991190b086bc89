"""ResultSink: append-only analysis history plus the rolling summary file."""

import json
import os
import threading
import logging
from datetime import datetime
from typing import Iterator

from aiproxy.models import AnalysisResult, CycleFailure, ResultSinkError

logger = logging.getLogger(__name__)


class ResultSink:
    """One JSON line per cycle outcome; each line lands with a single write."""

    def __init__(self, history_path: str, summary_path: str | None = None):
        self._history_path = history_path
        self._summary_path = summary_path
        self._lock = threading.Lock()

    @property
    def history_path(self) -> str:
        return self._history_path

    def append(self, entry: AnalysisResult | CycleFailure):
        line = (json.dumps(entry.to_dict(), ensure_ascii=False) + "\n").encode("utf-8")
        with self._lock:
            try:
                os.makedirs(os.path.dirname(self._history_path) or ".", exist_ok=True)
                fd = os.open(self._history_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
                try:
                    written = os.write(fd, line)
                    os.fsync(fd)
                finally:
                    os.close(fd)
                if written != len(line):
                    raise ResultSinkError(
                        f"short write to {self._history_path}: {written}/{len(line)} bytes"
                    )
            except OSError as e:
                raise ResultSinkError(f"cannot write history {self._history_path}: {e}") from e
            if isinstance(entry, AnalysisResult):
                try:
                    self._save_summary(entry)
                except OSError as e:
                    # History is already durable; the next success rewrites the summary.
                    logger.error("Could not update rolling summary %s: %s", self._summary_path, e)
        logger.info("Recorded %s cycle in %s", entry.to_dict()["status"], self._history_path)

    def _save_summary(self, result: AnalysisResult):
        """Atomic write: write to tmp file then replace."""
        if not self._summary_path:
            return
        os.makedirs(os.path.dirname(self._summary_path) or ".", exist_ok=True)
        tmp_path = self._summary_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"text": result.summary, "updated": result.created_at.isoformat()}, f, indent=2)
        os.replace(tmp_path, self._summary_path)

    def latest_summary(self) -> str:
        """Text of the rolling summary, or "" when there is none yet."""
        if not self._summary_path or not os.path.exists(self._summary_path):
            return ""
        try:
            with open(self._summary_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable summary %s: %s", self._summary_path, e)
            return ""
        text = data.get("text") if isinstance(data, dict) else None
        return text if isinstance(text, str) else ""

    def last_window_end(self) -> datetime | None:
        """``window_end`` of the newest successful entry, or None."""
        end = None
        for entry in self.history():
            if entry.get("status") != "ok":
                continue
            try:
                end = datetime.fromisoformat(entry["window_end"])
            except (KeyError, TypeError, ValueError):
                logger.debug("History entry without a usable window_end: %s", entry)
        return end

    def history(self) -> Iterator[dict]:
        if not os.path.exists(self._history_path):
            return
        with open(self._history_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping corrupt history line: %s", line[:100])
