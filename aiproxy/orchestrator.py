"""AnalysisOrchestrator: the two-round selection / fetch / synthesis cycle."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from aiproxy.fetcher import ContentFetcher
from aiproxy.llm import CompletionClient
from aiproxy.models import (
    AnalysisResult,
    CycleFailure,
    CycleState,
    FetchStatus,
    ResultSinkError,
    TrafficRecord,
)
from aiproxy.retry import RetryPolicy, run_with_retry
from aiproxy.sink import ResultSink
from aiproxy.window import TICK, RecordWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleOutcome:
    state: CycleState
    result: AnalysisResult | None = None
    failure: CycleFailure | None = None

    @property
    def ok(self) -> bool:
        return self.state is CycleState.DONE

    @property
    def empty(self) -> bool:
        return self.ok and self.result is None


class AnalysisOrchestrator:
    """Runs one analysis cycle at a time over a RecordWindow.

    IDLE -> ROUND_ONE_REQUESTED -> ROUND_ONE_COMPLETE -> FETCHING
         -> ROUND_TWO_REQUESTED -> DONE, or FAILED from a *_REQUESTED state.

    Only a successful cycle consumes the window; a failed or cancelled one
    leaves it untouched and records a CycleFailure in the sink.
    """

    def __init__(
        self,
        window: RecordWindow,
        llm: CompletionClient,
        fetcher: ContentFetcher,
        sink: ResultSink,
        policy: RetryPolicy | None = None,
        max_fetch_urls: int = 5,
        fetch_concurrency: int = 4,
        fetch_timeout: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._window = window
        self._llm = llm
        self._fetcher = fetcher
        self._sink = sink
        self._policy = policy or RetryPolicy()
        self._max_fetch_urls = max_fetch_urls
        self._fetch_concurrency = fetch_concurrency
        self._fetch_timeout = fetch_timeout
        self._sleep = sleep
        self.state = CycleState.IDLE
        self.cycles_started = 0

    async def run_cycle(self, since: datetime | None = None) -> CycleOutcome:
        """Analyze the window (or everything since ``since``) once."""
        self.state = CycleState.IDLE
        records, through = self._window.take(since)
        if not records:
            logger.info("No new traffic to analyze")
            self.state = CycleState.DONE
            return CycleOutcome(CycleState.DONE)

        self.cycles_started += 1
        if since is not None:
            window_start = since
        else:
            window_start = min(self._window.start, records[0].timestamp)
        window_end = records[-1].timestamp + TICK
        previous = self._sink.latest_summary()
        if previous:
            logger.info("Updating existing analysis with %d URL(s)", len(records))
        else:
            logger.info("Starting fresh analysis with %d URL(s)", len(records))

        try:
            return await self._run(records, through, window_start, window_end, previous)
        except asyncio.CancelledError:
            logger.warning("Cycle cancelled in state %s", self.state.value)
            self._record_failure(window_start, window_end, self.state.value, "cancelled")
            self.state = CycleState.FAILED
            raise

    async def _run(
        self,
        records: list[TrafficRecord],
        through: int,
        window_start: datetime,
        window_end: datetime,
        previous: str,
    ) -> CycleOutcome:
        self.state = CycleState.ROUND_ONE_REQUESTED
        step = await run_with_retry(
            lambda: self._llm.select_urls(records, previous, self._max_fetch_urls),
            self._policy, "round one", self._sleep,
        )
        if not step.ok:
            return self._fail(window_start, window_end, step.error)
        selected: list[str] = step.value
        self.state = CycleState.ROUND_ONE_COMPLETE

        fetched = []
        if selected:
            self.state = CycleState.FETCHING
            fetched = await self._fetcher.fetch_many(
                selected, self._fetch_concurrency, self._fetch_timeout
            )

        self.state = CycleState.ROUND_TWO_REQUESTED
        step = await run_with_retry(
            lambda: self._llm.summarize(records, fetched, previous),
            self._policy, "round two", self._sleep,
        )
        if not step.ok:
            return self._fail(window_start, window_end, step.error)

        result = AnalysisResult(
            window_start=window_start,
            window_end=window_end,
            summary=step.value,
            urls_considered=len(records),
            urls_fetched=sum(1 for r in fetched if r.status is FetchStatus.OK),
            model=self._llm.model,
        )
        # Persist before consuming: a sink failure must not lose the window.
        self._sink.append(result)
        self._window.reset(window_end, through=through)
        self.state = CycleState.DONE
        logger.info("Cycle done: %d URL(s) considered, %d fetched",
                    result.urls_considered, result.urls_fetched)
        return CycleOutcome(CycleState.DONE, result=result)

    def _fail(self, window_start: datetime, window_end: datetime, error: str) -> CycleOutcome:
        stage = self.state.value
        logger.error("Cycle failed during %s: %s", stage, error)
        failure = self._record_failure(window_start, window_end, stage, error)
        self.state = CycleState.FAILED
        return CycleOutcome(CycleState.FAILED, failure=failure)

    def _record_failure(
        self, window_start: datetime, window_end: datetime, stage: str, error: str
    ) -> CycleFailure:
        failure = CycleFailure(
            window_start=window_start,
            window_end=window_end,
            stage=stage,
            error=error,
            model=self._llm.model,
        )
        try:
            self._sink.append(failure)
        except ResultSinkError as e:
            logger.error("Could not record cycle failure: %s", e)
        return failure
