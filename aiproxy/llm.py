"""CompletionClient: the two model rounds over an OpenAI-compatible API."""

import json
import logging

import jsonschema
import openai
from openai import AsyncOpenAI

from aiproxy.models import FetchResult, MalformedResponseError, TrafficRecord
from aiproxy.prompts import (
    SELECT_TOOL,
    SELECT_TOOL_NAME,
    build_selection_messages,
    build_summary_messages,
)
from aiproxy.retry import StepResult

logger = logging.getLogger(__name__)

# Local OpenAI-compatible servers accept any key; the SDK refuses an empty one.
PLACEHOLDER_API_KEY = "not-needed"

_SELECTION_VALIDATOR = jsonschema.Draft202012Validator(SELECT_TOOL["function"]["parameters"])


def classify_error(exc: openai.OpenAIError) -> StepResult:
    """Timeouts, connection errors, 5xx and 429 are transient; the rest is fatal."""
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return StepResult.transient(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, openai.RateLimitError):
        return StepResult.transient(f"rate limited: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return StepResult.transient(f"HTTP {exc.status_code}: {exc}")
        return StepResult.fatal(f"HTTP {exc.status_code}: {exc}")
    return StepResult.fatal(f"{type(exc).__name__}: {exc}")


def first_message(response):
    choices = getattr(response, "choices", None)
    if not choices:
        raise MalformedResponseError("response has no choices")
    message = getattr(choices[0], "message", None)
    if message is None:
        raise MalformedResponseError("first choice has no message")
    return message


def parse_selection(message, allowed: set[str], limit: int) -> list[str]:
    """Validate round-one tool calls and reduce them to a capped URL list.

    Every tool call must target the selection tool and carry ``{"urls": [str, ...]}``;
    anything else is rejected. No tool call means no selection.
    """
    selected: list[str] = []
    for call in getattr(message, "tool_calls", None) or []:
        function = getattr(call, "function", None)
        if function is None or function.name != SELECT_TOOL_NAME:
            name = getattr(function, "name", None)
            raise MalformedResponseError(f"unexpected tool call: {name!r}")
        try:
            args = json.loads(function.arguments or "")
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"tool arguments are not JSON: {e}") from e
        errors = [e.message for e in _SELECTION_VALIDATOR.iter_errors(args)]
        if errors:
            raise MalformedResponseError(f"invalid tool arguments: {'; '.join(errors)}")
        selected.extend(u.strip() for u in args["urls"])

    unique = [u for u in dict.fromkeys(selected) if u]
    known = [u for u in unique if u in allowed]
    if len(known) < len(unique):
        logger.info("Ignoring %d selected URL(s) not in the window", len(unique) - len(known))
    if len(known) > limit:
        logger.info("Model selected %d URLs, keeping the first %d", len(known), limit)
    return known[:limit]


class CompletionClient:
    def __init__(self, client: AsyncOpenAI, model: str):
        self._client = client
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    @classmethod
    def create(cls, model: str, api_base: str, api_key: str | None = None,
               timeout: float = 60.0) -> "CompletionClient":
        client = AsyncOpenAI(
            base_url=api_base,
            api_key=api_key or PLACEHOLDER_API_KEY,
            timeout=timeout,
            max_retries=0,
        )
        return cls(client, model)

    async def _complete(self, **kwargs):
        return await self._client.chat.completions.create(model=self._model, **kwargs)

    async def select_urls(
        self, records: list[TrafficRecord], previous_summary: str, limit: int
    ) -> StepResult:
        """Round one. Success value: list of URLs to fetch (possibly empty)."""
        messages = build_selection_messages(records, previous_summary, limit)
        try:
            response = await self._complete(
                messages=messages, tools=[SELECT_TOOL], tool_choice="auto"
            )
            urls = parse_selection(
                first_message(response), {r.url for r in records}, limit
            )
        except openai.OpenAIError as e:
            return classify_error(e)
        except MalformedResponseError as e:
            return StepResult.fatal(f"malformed round-one response: {e}")
        logger.info("Round one selected %d URL(s)", len(urls))
        return StepResult.success(urls)

    async def summarize(
        self,
        records: list[TrafficRecord],
        fetched: list[FetchResult],
        previous_summary: str,
    ) -> StepResult:
        """Round two. Success value: the summary text."""
        messages = build_summary_messages(records, fetched, previous_summary)
        try:
            response = await self._complete(messages=messages)
            content = first_message(response).content
            if not isinstance(content, str) or not content.strip():
                raise MalformedResponseError("round-two message has no text content")
        except openai.OpenAIError as e:
            return classify_error(e)
        except MalformedResponseError as e:
            return StepResult.fatal(f"malformed round-two response: {e}")
        return StepResult.success(content.strip())

    async def close(self):
        await self._client.close()
