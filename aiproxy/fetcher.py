"""ContentFetcher: bounded-concurrency page retrieval and text extraction."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

import httpx
from bs4 import BeautifulSoup

from aiproxy.models import FetchResult, FetchStatus
from aiproxy.retry import Outcome, RetryPolicy, StepResult, run_with_retry

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")
STRIPPED_TAGS = ["script", "style", "noscript", "template"]


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def extract_text(html: str, max_chars: int = 4000) -> str:
    """Best-effort plain text: drop script/style, strip markup, collapse whitespace."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()
    return collapse_whitespace(soup.get_text(separator=" "))[:max_chars]


class ContentFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        max_body_bytes: int = 512 * 1024,
        max_text_chars: int = 4000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._policy = policy or RetryPolicy()
        self._max_body_bytes = max_body_bytes
        self._max_text_chars = max_text_chars
        self._sleep = sleep

    async def fetch_many(
        self,
        urls: Iterable[str],
        concurrency_limit: int,
        per_request_timeout: float,
    ) -> list[FetchResult]:
        """Fetch every URL; exactly one FetchResult per distinct URL, input order kept."""
        ordered = list(dict.fromkeys(urls))
        if not ordered:
            return []
        semaphore = asyncio.Semaphore(max(1, concurrency_limit))

        async def bounded(url: str) -> FetchResult:
            async with semaphore:
                return await self.fetch_one(url, per_request_timeout)

        results = await asyncio.gather(*(bounded(u) for u in ordered))
        ok = sum(1 for r in results if r.status is FetchStatus.OK)
        logger.info("Fetched %d/%d page(s)", ok, len(results))
        return list(results)

    async def fetch_one(self, url: str, timeout: float) -> FetchResult:
        result = await run_with_retry(
            lambda: self._attempt(url, timeout), self._policy, f"fetch {url}", self._sleep
        )
        if isinstance(result.value, FetchResult):
            return result.value
        return FetchResult.failed(url, result.error)

    async def _attempt(self, url: str, timeout: float) -> StepResult:
        try:
            return await asyncio.wait_for(self._get(url, timeout), timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return StepResult.transient(f"timed out after {timeout:.1f}s")
        except (httpx.UnsupportedProtocol, httpx.InvalidURL) as e:
            return StepResult.fatal(f"invalid URL: {e}")
        except httpx.TransportError as e:
            return StepResult.transient(f"{type(e).__name__}: {e}")
        except httpx.HTTPError as e:
            return StepResult.fatal(f"{type(e).__name__}: {e}")

    async def _get(self, url: str, timeout: float) -> StepResult:
        async with self._client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            code = response.status_code
            if code >= 500:
                reason = f"HTTP {code}"
                return StepResult(Outcome.TRANSIENT, value=FetchResult.skipped(url, reason), error=reason)
            if not response.is_success:
                return StepResult.success(FetchResult.skipped(url, f"HTTP {code}"))

            content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
            if content_type not in TEXT_CONTENT_TYPES:
                return StepResult.success(
                    FetchResult.skipped(url, f"content-type {content_type or 'missing'}")
                )

            body = bytearray()
            async for chunk in response.aiter_bytes():
                remaining = self._max_body_bytes - len(body)
                if len(chunk) > remaining:
                    body.extend(chunk[:remaining])
                    logger.debug("Truncated %s at %d bytes", url, self._max_body_bytes)
                    break
                body.extend(chunk)
            encoding = response.charset_encoding or "utf-8"

        try:
            decoded = bytes(body).decode(encoding, errors="replace")
        except LookupError:
            decoded = bytes(body).decode("utf-8", errors="replace")

        if content_type == "text/plain":
            text = collapse_whitespace(decoded)[: self._max_text_chars]
        else:
            text = extract_text(decoded, self._max_text_chars)
        return StepResult.success(FetchResult.ok(url, text))
