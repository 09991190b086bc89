from datetime import datetime, timezone
from urllib.parse import urlsplit

import pytest

from aiproxy.models import FetchResult, TrafficRecord
from aiproxy.retry import RetryPolicy, StepResult
from aiproxy.sink import ResultSink
from aiproxy.window import RecordWindow

EPOCH = 1718000000.0
T0 = datetime.fromtimestamp(EPOCH, tz=timezone.utc)


def squid_line(url: str, ts: float = EPOCH, method: str = "GET", host: str | None = None) -> str:
    """One access-log line in the proxy's configured logformat."""
    if host is None:
        host = urlsplit(url).netloc or "-"
    return (
        f"{ts:.3f}    120 192.168.1.10 TCP_MISS/200 1234 {method} {url} {host} "
        f"- HIER_DIRECT/93.184.216.34 text/html"
    )


def record(url: str, offset: float = 0.0, method: str = "GET") -> TrafficRecord:
    ts = datetime.fromtimestamp(EPOCH + offset, tz=timezone.utc)
    return TrafficRecord(timestamp=ts, url=url, host=urlsplit(url).netloc, method=method)


class FakeLLM:
    """Scripted stand-in for CompletionClient; the last scripted result repeats."""

    model = "test-model"

    def __init__(self, selections=None, summaries=None):
        self.selections = list(selections or [StepResult.success([])])
        self.summaries = list(summaries or [StepResult.success("summary")])
        self.select_calls = []
        self.summarize_calls = []

    @staticmethod
    def _next(script):
        return script.pop(0) if len(script) > 1 else script[0]

    async def select_urls(self, records, previous_summary, limit):
        self.select_calls.append((list(records), previous_summary, limit))
        return self._next(self.selections)

    async def summarize(self, records, fetched, previous_summary):
        self.summarize_calls.append((list(records), list(fetched), previous_summary))
        return self._next(self.summaries)


class FakeFetcher:
    def __init__(self, results: dict | None = None):
        self.results = results or {}
        self.calls = []

    async def fetch_many(self, urls, concurrency_limit, per_request_timeout):
        urls = list(urls)
        self.calls.append(urls)
        return [self.results.get(u, FetchResult.failed(u, "unreachable")) for u in urls]


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def make_line():
    return squid_line


@pytest.fixture
def make_record():
    return record


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def window():
    return RecordWindow(start=T0, max_items=100)


@pytest.fixture
def sink(tmp_path):
    return ResultSink(str(tmp_path / "history.ndjson"), str(tmp_path / "rolling_summary.json"))


@pytest.fixture
def fast_policy():
    return RetryPolicy(attempts=3, base_delay=0.01, max_delay=0.05, jitter=False)


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def fake_llm_cls():
    return FakeLLM


@pytest.fixture
def fake_fetcher_cls():
    return FakeFetcher
