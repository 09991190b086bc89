"""RecordWindow: URL-deduplicated traffic awaiting the next analysis cycle."""

import threading
import logging
from datetime import datetime, timedelta
from typing import Iterable

from aiproxy.models import TrafficRecord

logger = logging.getLogger(__name__)

# Smallest step past a timestamp; turns the newest record time into an
# exclusive upper bound.
TICK = timedelta(microseconds=1)


class RecordWindow:
    """Maps URL -> latest TrafficRecord, bounded by ``[start, end)``.

    The tail loop is the only writer and the orchestrator the only reader;
    every operation holds the same lock so a snapshot never observes half of
    an ingested batch.

    Each stored record carries the ingest sequence number it arrived with.
    ``take()`` returns the sequence number current at snapshot time, and
    ``reset(..., through=seq)`` consumes only entries stored at or before it,
    so records ingested while a cycle runs survive that cycle's reset even
    when their timestamps fall inside its bounds.
    """

    def __init__(self, start: datetime, max_items: int = 500):
        self._lock = threading.Lock()
        self._records: dict[str, tuple[int, TrafficRecord]] = {}
        self._seq = 0
        self._start = start
        self._end = start
        self._max_items = max_items

    @property
    def start(self) -> datetime:
        return self._start

    @property
    def end(self) -> datetime:
        return self._end

    @property
    def max_items(self) -> int:
        return self._max_items

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _put(self, record: TrafficRecord):
        self._seq += 1
        current = self._records.get(record.url)
        if current is None or record.timestamp >= current[1].timestamp:
            self._records[record.url] = (self._seq, record)
        if record.timestamp + TICK > self._end:
            self._end = record.timestamp + TICK

    def ingest(self, record: TrafficRecord):
        with self._lock:
            self._put(record)

    def ingest_many(self, records: Iterable[TrafficRecord]) -> int:
        """Insert a whole batch atomically. Returns the batch size."""
        count = 0
        with self._lock:
            for record in records:
                self._put(record)
                count += 1
        return count

    def take(self, since: datetime | None = None) -> tuple[list[TrafficRecord], int]:
        """Like ``snapshot`` but also returns the ingest sequence it reflects."""
        with self._lock:
            seq = self._seq
            entries = self._records.values()
            if since is not None:
                entries = [e for e in entries if e[1].timestamp >= since]
            selected = sorted((r for _, r in entries), key=lambda r: r.timestamp)
        if len(selected) > self._max_items:
            dropped = len(selected) - self._max_items
            logger.debug("Snapshot capped: dropping %d oldest records", dropped)
            selected = selected[dropped:]
        return selected, seq

    def snapshot(self, since: datetime | None = None) -> list[TrafficRecord]:
        """Records with ``timestamp >= since``, oldest first, newest ``max_items`` kept.

        Without ``since`` every unconsumed record is returned, including ones
        older than ``start`` (lines the tailer picked up after a restart).
        """
        return self.take(since)[0]

    def reset(self, new_start: datetime, through: int | None = None) -> int:
        """Consume entries and re-base ``start``. Returns how many were dropped.

        With ``through`` (a sequence number from ``take``) only entries stored
        at or before it are dropped; otherwise entries strictly older than
        ``new_start`` are.
        """
        with self._lock:
            if through is None:
                stale = [url for url, (_, r) in self._records.items() if r.timestamp < new_start]
            else:
                stale = [url for url, (seq, _) in self._records.items() if seq <= through]
            for url in stale:
                del self._records[url]
            self._start = new_start
            if self._end < new_start:
                self._end = new_start
        return len(stale)
