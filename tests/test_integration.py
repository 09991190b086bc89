"""End-to-end: log lines -> window -> two model rounds -> history on disk."""

import json
import os
from datetime import timedelta

import httpx
import pytest
from openai import AsyncOpenAI

from aiproxy.config import Config, resolve_paths
from aiproxy.llm import CompletionClient
from aiproxy.main import ambient_window, build_orchestrator, main
from aiproxy.models import AnalysisResult, utc_now
from aiproxy.prompts import SELECT_TOOL_NAME
from aiproxy.registry import CheckpointStore
from aiproxy.sink import ResultSink
from aiproxy.tailer import LogTailer, TailLoop
from aiproxy.window import RecordWindow

EPOCH = 1718000000.0
FINAL_SUMMARY = "User visited a.test repeatedly and explored b.test (Example B)."


def _model_handler(requests):
    def handler(request):
        body = json.loads(request.content)
        requests.append(body)
        if "tools" in body:
            message = {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": "call_1",
                    "type": "function",
                    "function": {
                        "name": SELECT_TOOL_NAME,
                        "arguments": json.dumps({"urls": ["https://b.test/"]}),
                    },
                }],
            }
        else:
            message = {"role": "assistant", "content": FINAL_SUMMARY}
        return httpx.Response(200, json={
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": int(EPOCH),
            "model": "test-model",
            "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        })
    return handler


def _web_handler(fetched):
    def handler(request):
        fetched.append(str(request.url))
        if request.url.host == "b.test":
            return httpx.Response(
                200,
                headers={"content-type": "text/html"},
                text="<html><head><title>Example B</title></head><body><p>Welcome.</p></body></html>",
            )
        return httpx.Response(404)
    return handler


def _llm(requests) -> CompletionClient:
    return CompletionClient(
        AsyncOpenAI(
            api_key="test",
            base_url="http://llm.test/v1",
            max_retries=0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_model_handler(requests))),
        ),
        "test-model",
    )


@pytest.fixture
def config(tmp_path):
    return resolve_paths(Config(
        log_path=str(tmp_path / "access.log"),
        data_dir=str(tmp_path / "data"),
        retry_base_delay=0.01,
        retry_max_delay=0.02,
    ))


class TestAmbientCycle:
    @pytest.mark.asyncio
    async def test_log_to_history(self, config, make_line, t0):
        with open(config.log_path, "w", encoding="utf-8") as f:
            f.write(make_line("https://a.test/", ts=EPOCH) + "\n")
            f.write(make_line("https://a.test/", ts=EPOCH + 1) + "\n")
            f.write(make_line("https://b.test/", ts=EPOCH + 2) + "\n")

        window = RecordWindow(start=t0, max_items=config.max_items)
        tail = TailLoop(LogTailer(config.log_path, CheckpointStore(config.checkpoint_file)), window)
        assert await tail.poll_once() == 3

        model_requests, fetched = [], []
        llm = _llm(model_requests)
        async with httpx.AsyncClient(transport=httpx.MockTransport(_web_handler(fetched))) as http:
            orchestrator = build_orchestrator(config, window, llm, http)
            outcome = await orchestrator.run_cycle()

        assert outcome.ok
        result = outcome.result
        assert result.summary == FINAL_SUMMARY
        assert result.urls_considered == 2
        assert result.urls_fetched == 1
        assert fetched == ["https://b.test/"]

        assert len(model_requests) == 2
        round_two = model_requests[1]["messages"][-1]["content"]
        assert "Example B" in round_two

        history = [json.loads(line) for line in open(config.history_file, encoding="utf-8")]
        assert len(history) == 1
        assert history[0]["status"] == "ok"
        assert history[0]["urls_fetched"] == 1
        with open(config.summary_file, encoding="utf-8") as f:
            assert json.load(f)["text"] == FINAL_SUMMARY

        assert window.snapshot() == []
        assert CheckpointStore(config.checkpoint_file).get().byte_offset == os.path.getsize(config.log_path)

        # Nothing new: the next cycle does not call the model.
        assert await tail.poll_once() == 0
        assert (await orchestrator.run_cycle()).empty
        assert len(model_requests) == 2


class TestAmbientRestart:
    @pytest.mark.asyncio
    async def test_lines_written_while_down_are_analyzed(self, config, make_line, t0):
        with open(config.log_path, "w", encoding="utf-8") as f:
            f.write(make_line("https://a.test/", ts=EPOCH) + "\n")
        list(LogTailer(config.log_path, CheckpointStore(config.checkpoint_file)).poll())

        previous = AnalysisResult(
            window_start=t0,
            window_end=t0 + timedelta(seconds=1),
            summary="earlier",
            urls_considered=1,
            urls_fetched=0,
            model="test-model",
        )
        ResultSink(config.history_file, config.summary_file).append(previous)

        # Written while the analyzer was not running.
        with open(config.log_path, "a", encoding="utf-8") as f:
            f.write(make_line("https://b.test/", ts=EPOCH + 60) + "\n")

        sink = ResultSink(config.history_file, config.summary_file)
        window = ambient_window(config, sink)
        assert window.start == previous.window_end
        tail = TailLoop(LogTailer(config.log_path, CheckpointStore(config.checkpoint_file)), window)
        assert await tail.poll_once() == 1

        model_requests, fetched = [], []
        async with httpx.AsyncClient(transport=httpx.MockTransport(_web_handler(fetched))) as http:
            orchestrator = build_orchestrator(config, window, _llm(model_requests), http, sink)
            outcome = await orchestrator.run_cycle()

        assert outcome.ok
        assert outcome.result.urls_considered == 1
        assert outcome.result.window_start == previous.window_end
        assert "https://b.test/" in model_requests[0]["messages"][-1]["content"]
        assert "earlier" in model_requests[0]["messages"][0]["content"]
        assert [e["status"] for e in sink.history()] == ["ok", "ok"]

    def test_window_starts_now_without_history(self, config):
        before = utc_now()
        window = ambient_window(config, ResultSink(config.history_file, config.summary_file))
        assert before <= window.start <= utc_now()
        assert window.max_items == config.max_items


class TestMain:
    def test_analyze_without_traffic(self, config, capsys):
        code = main([
            "--log-path", config.log_path,
            "--data-dir", config.data_dir,
            "analyze", "--since", "1h",
            "--api-base", "http://127.0.0.1:9/v1",
        ])
        assert code == 0
        assert "No traffic since" in capsys.readouterr().out
        assert not os.path.exists(config.history_file)

    def test_invalid_config_exits(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- not\n- a mapping\n")
        with pytest.raises(SystemExit):
            main(["--config", str(path), "log"])
