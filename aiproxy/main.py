#!/usr/bin/env python3
"""ai-proxy entry point."""

import sys
import signal
import asyncio
import argparse
import logging
from datetime import datetime

import httpx
from dotenv import load_dotenv

from aiproxy.config import Config, load_config, load_yaml_config, parse_interval, parse_since
from aiproxy.fetcher import ContentFetcher
from aiproxy.llm import CompletionClient
from aiproxy.models import AiProxyError, CycleFailedError, TrafficRecord, utc_now
from aiproxy.orchestrator import AnalysisOrchestrator
from aiproxy.registry import CheckpointStore
from aiproxy.retry import RetryPolicy
from aiproxy.scheduler import AmbientScheduler
from aiproxy.sink import ResultSink
from aiproxy.tailer import LogTailer, TailLoop, start_watcher
from aiproxy.window import RecordWindow

logger = logging.getLogger(__name__)

USER_AGENT = "ai-proxy/0.1 (+browsing summarizer)"


def _add_model_args(parser: argparse.ArgumentParser):
    parser.add_argument("-m", "--model", default=None, help="Model name (env: MODEL)")
    parser.add_argument("--api-base", default=None,
                        help="OpenAI-compatible API base URL (env: API_BASE)")
    parser.add_argument("--api-key", default=None, help="API key (env: API_KEY)")


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ai-proxy", description="Traffic logger & summarizer")
    parser.add_argument("--config", default=None, help="Path to YAML config file")
    parser.add_argument("--log-path", default=None,
                        help="Proxy access log to tail (env: SQUID_LOG_PATH)")
    parser.add_argument("--data-dir", default=None,
                        help="Directory for checkpoint and history (env: AIPROXY_DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("log", help="Tail the proxy log only (no summarization)")

    analyze = sub.add_parser("analyze", help="One-shot summarization of traffic since a duration")
    analyze.add_argument("-s", "--since", required=True, type=parse_since,
                         help="Window start: 30m, 2h, 7d or an RFC 3339 timestamp")
    analyze.add_argument("-x", "--max-items", type=int, default=None,
                         help="Safety cap on analyzed URLs (env: MAX_ANALYSIS_ITEMS)")
    _add_model_args(analyze)

    ambient = sub.add_parser("ambient", help="Tail the log and summarize periodically")
    ambient.add_argument("-i", "--interval", dest="ambient_interval", type=parse_interval,
                         default=None, help="Seconds between cycles (env: AMBIENT_INTERVAL)")
    _add_model_args(ambient)
    return parser


def build_orchestrator(
    config: Config,
    window: RecordWindow,
    llm: CompletionClient,
    http: httpx.AsyncClient,
    sink: ResultSink | None = None,
) -> AnalysisOrchestrator:
    policy = RetryPolicy(
        attempts=config.retry_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
    )
    fetcher = ContentFetcher(
        http,
        policy=policy,
        max_body_bytes=config.max_body_bytes,
        max_text_chars=config.max_text_chars,
    )
    if sink is None:
        sink = ResultSink(config.history_file, config.summary_file)
    return AnalysisOrchestrator(
        window,
        llm,
        fetcher,
        sink,
        policy=policy,
        max_fetch_urls=config.max_fetch_urls,
        fetch_concurrency=config.fetch_concurrency,
        fetch_timeout=config.fetch_timeout,
    )


def ambient_window(config: Config, sink: ResultSink) -> RecordWindow:
    """Window resuming where the last successful cycle ended.

    Lines the tailer picks up after a restart are still analyzed; without any
    history the window starts now.
    """
    start = sink.last_window_end()
    if start is None:
        start = utc_now()
    else:
        logger.info("Resuming analysis window from %s", start.isoformat())
    return RecordWindow(start=start, max_items=config.max_items)


def _http_client(config: Config) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": USER_AGENT},
        limits=httpx.Limits(max_connections=max(1, config.fetch_concurrency) * 2),
    )


def _log_record(record: TrafficRecord):
    logger.info("%s %s", record.method or "-", record.url)


def _install_signal_handlers(cancel: asyncio.Event):
    loop = asyncio.get_running_loop()

    def _handler():
        logger.info("Shutdown signal received, stopping...")
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handler)


async def run_log(config: Config) -> int:
    cancel = asyncio.Event()
    _install_signal_handlers(cancel)
    tailer = LogTailer(config.log_path, CheckpointStore(config.checkpoint_file))
    tail_loop = TailLoop(tailer, None, config.poll_interval, on_record=_log_record)
    observer = start_watcher(config.log_path, tail_loop.wake)
    logger.info("Logging traffic from %s. Press Ctrl+C to stop.", config.log_path)
    try:
        await tail_loop.run(cancel)
    finally:
        observer.stop()
        observer.join(timeout=5)
    return 1 if tail_loop.error else 0


async def run_analyze(config: Config, since: datetime) -> int:
    logger.info("Starting analysis for traffic since %s", since.isoformat())
    # Fresh in-memory checkpoint: the one-shot window covers the whole log.
    tailer = LogTailer(config.log_path, CheckpointStore(None))
    window = RecordWindow(start=since, max_items=config.max_items)
    await TailLoop(tailer, window).poll_once()
    logger.info("Read %s", tailer.stats())

    llm = CompletionClient.create(config.model, config.api_base, config.api_key,
                                  config.request_timeout)
    try:
        async with _http_client(config) as http:
            orchestrator = build_orchestrator(config, window, llm, http)
            outcome = await orchestrator.run_cycle(since=since)
    finally:
        await llm.close()

    if outcome.empty:
        print(f"No traffic since {since.isoformat()}")
        return 0
    if not outcome.ok:
        raise CycleFailedError(outcome.failure.error)
    print(f"Summary:\n{outcome.result.summary}")
    return 0


async def run_ambient(config: Config) -> int:
    cancel = asyncio.Event()
    _install_signal_handlers(cancel)
    sink = ResultSink(config.history_file, config.summary_file)
    window = ambient_window(config, sink)
    tailer = LogTailer(config.log_path, CheckpointStore(config.checkpoint_file))
    tail_loop = TailLoop(tailer, window, config.poll_interval)

    llm = CompletionClient.create(config.model, config.api_base, config.api_key,
                                  config.request_timeout)
    observer = start_watcher(config.log_path, tail_loop.wake)
    try:
        async with _http_client(config) as http:
            scheduler = AmbientScheduler(build_orchestrator(config, window, llm, http, sink),
                                         config.shutdown_grace)
            await asyncio.gather(
                tail_loop.run(cancel),
                scheduler.run(config.ambient_interval, cancel),
            )
    finally:
        observer.stop()
        observer.join(timeout=5)
        await llm.close()
    return 1 if tail_loop.error or scheduler.sink_error else 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_cli_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [AIPROXY] %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(args, load_yaml_config(args.config))
    except ValueError as e:
        parser.error(str(e))
    logger.info("Config: log=%s, data_dir=%s, model=%s, api_base=%s",
                config.log_path, config.data_dir, config.model, config.api_base)

    try:
        if args.command == "log":
            return asyncio.run(run_log(config))
        if args.command == "analyze":
            return asyncio.run(run_analyze(config, args.since))
        return asyncio.run(run_ambient(config))
    except CycleFailedError as e:
        logger.error("Analysis failed: %s", e)
        return 1
    except AiProxyError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
