"""AmbientScheduler: fixed-interval, single-flight analysis cycles."""

import asyncio
import logging

from aiproxy.models import ResultSinkError
from aiproxy.orchestrator import AnalysisOrchestrator

logger = logging.getLogger(__name__)


class AmbientScheduler:
    """Starts a cycle on every tick unless the previous one is still running.

    Skipped ticks are logged and counted, never queued. On cancel the
    in-flight cycle is awaited for up to ``shutdown_grace`` seconds.
    """

    def __init__(self, orchestrator: AnalysisOrchestrator, shutdown_grace: float = 120.0):
        self._orchestrator = orchestrator
        self._shutdown_grace = shutdown_grace
        self._inflight: asyncio.Task | None = None
        self.ticks = 0
        self.skipped_ticks = 0
        self.completed_cycles = 0
        self.failed_cycles = 0
        self.sink_error: ResultSinkError | None = None

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def run(self, interval: float, cancel: asyncio.Event):
        logger.info("Ambient analysis every %.1fs", interval)
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval
        while not cancel.is_set() and self.sink_error is None:
            try:
                await asyncio.wait_for(cancel.wait(), max(0.0, next_tick - loop.time()))
                break
            except asyncio.TimeoutError:
                pass
            if self.sink_error is not None:
                break
            next_tick += interval
            self._tick()
        await self._drain()
        logger.info(
            "Scheduler stats: %d ticks, %d skipped, %d completed, %d failed",
            self.ticks, self.skipped_ticks, self.completed_cycles, self.failed_cycles,
        )

    def _tick(self):
        self.ticks += 1
        if self.busy:
            self.skipped_ticks += 1
            logger.info("Tick %d skipped: previous cycle still running", self.ticks)
            return
        self._inflight = asyncio.create_task(self._cycle(self.ticks))

    async def _cycle(self, tick: int):
        try:
            outcome = await self._orchestrator.run_cycle()
        except ResultSinkError as e:
            self.failed_cycles += 1
            self.sink_error = e
            logger.error("Result history unwritable, stopping ambient analysis: %s", e)
            return
        except Exception:
            self.failed_cycles += 1
            logger.exception("Cycle for tick %d crashed", tick)
            return
        if outcome.ok:
            self.completed_cycles += 1
        else:
            self.failed_cycles += 1

    async def _drain(self):
        if not self.busy:
            return
        logger.info("Waiting up to %.0fs for the in-flight cycle", self._shutdown_grace)
        done, _ = await asyncio.wait({self._inflight}, timeout=self._shutdown_grace)
        if not done:
            logger.warning("In-flight cycle did not finish in time, cancelling it")
            self._inflight.cancel()
            await asyncio.gather(self._inflight, return_exceptions=True)
