"""Traffic, checkpoint and analysis models plus the error hierarchy."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class AiProxyError(Exception):
    """Base class for errors raised by the pipeline."""


class CheckpointError(AiProxyError):
    """Checkpoint storage is unwritable; the tailer cannot continue."""


class ResultSinkError(AiProxyError):
    """History storage is unwritable."""


class MalformedResponseError(AiProxyError):
    """The model answered with a shape we refuse to interpret."""


class CycleFailedError(AiProxyError):
    """An analysis cycle ended in FAILED."""


@dataclass(frozen=True)
class TrafficRecord:
    timestamp: datetime   # UTC
    url: str
    host: str
    method: str | None = None


@dataclass(frozen=True)
class Checkpoint:
    byte_offset: int = 0
    file_identity: str | None = None   # "<st_dev>:<st_ino>"


class FetchStatus(Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class FetchResult:
    url: str
    status: FetchStatus
    text: str = ""
    reason: str = ""

    @classmethod
    def ok(cls, url: str, text: str) -> "FetchResult":
        return cls(url=url, status=FetchStatus.OK, text=text)

    @classmethod
    def skipped(cls, url: str, reason: str) -> "FetchResult":
        return cls(url=url, status=FetchStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, url: str, reason: str) -> "FetchResult":
        return cls(url=url, status=FetchStatus.FAILED, reason=reason)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AnalysisResult:
    window_start: datetime
    window_end: datetime
    summary: str
    urls_considered: int
    urls_fetched: int
    model: str
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "status": "ok",
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "summary": self.summary,
            "urls_considered": self.urls_considered,
            "urls_fetched": self.urls_fetched,
            "model": self.model,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CycleFailure:
    window_start: datetime
    window_end: datetime
    stage: str
    error: str
    model: str
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "status": "failed",
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "stage": self.stage,
            "error": self.error,
            "model": self.model,
            "created_at": self.created_at.isoformat(),
        }


class CycleState(Enum):
    IDLE = "idle"
    ROUND_ONE_REQUESTED = "round_one_requested"
    ROUND_ONE_COMPLETE = "round_one_complete"
    FETCHING = "fetching"
    ROUND_TWO_REQUESTED = "round_two_requested"
    DONE = "done"
    FAILED = "failed"
