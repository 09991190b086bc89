"""LogTailer: checkpointed incremental reader for the proxy access log."""

import asyncio
import os
import logging
from typing import Callable, Iterator

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from aiproxy.models import Checkpoint, CheckpointError, TrafficRecord
from aiproxy.parsers import parse_line
from aiproxy.registry import CheckpointStore
from aiproxy.window import RecordWindow

logger = logging.getLogger(__name__)


def file_identity(stat: os.stat_result) -> str:
    return f"{stat.st_dev}:{stat.st_ino}"


class LogTailer:
    """Reads complete lines appended since the last checkpoint.

    The checkpoint only ever covers complete lines: an unterminated final
    line stays unconsumed and is read again, together with its continuation,
    on the next poll (or after a restart).
    """

    def __init__(self, path: str, store: CheckpointStore):
        self._path = os.path.abspath(path)
        self._store = store
        self._last_timestamp = None
        self.lines_read = 0
        self.records_emitted = 0
        self.skipped_lines = 0
        self.out_of_order_lines = 0

    @property
    def path(self) -> str:
        return self._path

    def poll(self) -> Iterator[TrafficRecord]:
        """Yield records parsed from new complete lines.

        The checkpoint is persisted once the last record has been handed
        over; abandoning the iterator early re-delivers the batch next time.
        """
        try:
            stat = os.stat(self._path)
        except FileNotFoundError:
            logger.debug("Log file not found yet: %s", self._path)
            return

        identity = file_identity(stat)
        saved = self._store.get()
        offset = saved.byte_offset

        # Detect rotation (identity changed) or truncation (file smaller than offset)
        if saved.file_identity is not None and saved.file_identity != identity:
            logger.info("Log rotated (identity changed): %s", self._path)
            offset = 0
        elif stat.st_size < offset:
            logger.info("Log truncated: %s", self._path)
            offset = 0

        data = b""
        if stat.st_size > offset:
            try:
                with open(self._path, "rb") as fh:
                    fh.seek(offset)
                    data = fh.read(stat.st_size - offset)
            except FileNotFoundError:
                logger.debug("Log file vanished during poll: %s", self._path)
                return

        end = data.rfind(b"\n")
        if end < 0:
            # Nothing complete to hand over; still record a reset offset.
            if offset != saved.byte_offset or identity != saved.file_identity:
                self._store.save(Checkpoint(byte_offset=offset, file_identity=identity))
            return

        for raw in data[:end].split(b"\n"):
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            self.lines_read += 1
            record = parse_line(line)
            if record is None:
                self.skipped_lines += 1
                continue
            if self._last_timestamp is not None and record.timestamp < self._last_timestamp:
                self.out_of_order_lines += 1
                logger.debug("Dropping out-of-order line: %s", line[:100])
                continue
            self._last_timestamp = record.timestamp
            self.records_emitted += 1
            yield record

        self._store.save(Checkpoint(byte_offset=offset + end + 1, file_identity=identity))

    def stats(self) -> dict:
        return {
            "lines_read": self.lines_read,
            "records": self.records_emitted,
            "skipped": self.skipped_lines,
            "out_of_order": self.out_of_order_lines,
        }


class LogWatcher(FileSystemEventHandler):
    """Watchdog handler that calls ``on_change`` when the log file changes."""

    def __init__(self, path: str, on_change: Callable[[], None]):
        super().__init__()
        self._path = os.path.abspath(path)
        self._on_change = on_change

    def _matches(self, event) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.abspath(p) == self._path for p in paths)

    def on_modified(self, event):
        if self._matches(event):
            self._on_change()

    def on_created(self, event):
        if self._matches(event):
            logger.info("Log file created: %s", self._path)
            self._on_change()

    def on_moved(self, event):
        if self._matches(event):
            logger.info("Log file moved: %s", self._path)
            self._on_change()


def start_watcher(path: str, on_change: Callable[[], None]) -> Observer:
    """Schedule a LogWatcher on the log's parent directory and start it."""
    dir_path = os.path.dirname(os.path.abspath(path))
    os.makedirs(dir_path, exist_ok=True)
    observer = Observer()
    observer.schedule(LogWatcher(path, on_change), dir_path, recursive=False)
    observer.start()
    logger.info("Watching directory: %s", dir_path)
    return observer


class TailLoop:
    """Drives LogTailer.poll() and feeds each batch into a RecordWindow."""

    def __init__(
        self,
        tailer: LogTailer,
        window: RecordWindow | None,
        poll_interval: float = 1.0,
        on_record: Callable[[TrafficRecord], None] | None = None,
    ):
        self._tailer = tailer
        self._window = window
        self._poll_interval = poll_interval
        self._on_record = on_record
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self.error: CheckpointError | None = None

    def wake(self):
        """Thread-safe: cut the current sleep short (called from watchdog)."""
        if self._loop is not None and self._wake is not None:
            self._loop.call_soon_threadsafe(self._wake.set)

    def _drain(self) -> list[TrafficRecord]:
        return list(self._tailer.poll())

    async def poll_once(self) -> int:
        batch = await asyncio.to_thread(self._drain)
        if not batch:
            return 0
        if self._window is not None:
            self._window.ingest_many(batch)
        if self._on_record is not None:
            for record in batch:
                self._on_record(record)
        logger.debug("Ingested %d record(s)", len(batch))
        return len(batch)

    async def run(self, cancel: asyncio.Event):
        """Poll until ``cancel`` is set; the last poll completes before returning."""
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        logger.info("Tailing %s every %.1fs", self._tailer.path, self._poll_interval)
        try:
            while True:
                self._wake.clear()
                await self.poll_once()
                if cancel.is_set():
                    break
                await self._sleep(cancel)
        except CheckpointError as e:
            self.error = e
            logger.error("Tailer stopped: %s", e)
        finally:
            logger.info("Tailer stats: %s", self._tailer.stats())

    async def _sleep(self, cancel: asyncio.Event):
        waiters = [
            asyncio.ensure_future(self._wake.wait()),
            asyncio.ensure_future(cancel.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=self._poll_interval,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
