"""Access-log line parsers: squid native text and NDJSON with auto-detection."""

import json
import logging
from datetime import datetime, timezone
from urllib.parse import urlsplit

from aiproxy.models import TrafficRecord

logger = logging.getLogger(__name__)

# Fields of the squid logformat configured on the proxy:
#   %ts.%03tu %6tr %>a %Ss/%03>Hs %<st %rm %ru %{Host}>h %un %Sh/%<a %mt
SQUID_MIN_FIELDS = 8
_TS, _METHOD, _URL, _HOST = 0, 5, 6, 7


def _resolve_url(raw_url: str, method: str | None, host: str) -> str:
    """Absolute URLs pass through; CONNECT tunnels become https://host."""
    if raw_url.startswith(("http://", "https://")):
        return raw_url
    if method == "CONNECT":
        target = host or raw_url
        return f"https://{target}" if target else ""
    target = host or raw_url.lstrip("/")
    return f"http://{target}" if target else ""


def _host_of(url: str) -> str:
    return urlsplit(url).netloc


def parse_text_line(line: str) -> TrafficRecord | None:
    """Parse a squid access-log line.

    Expected format:
        1718000000.123    456 192.168.1.1 TCP_MISS/200 1234 GET http://example.com/ example.com - DIRECT/93.184.216.34 text/html
    """
    parts = line.split()
    if len(parts) < SQUID_MIN_FIELDS:
        logger.debug("Too few fields (%d): %s", len(parts), line[:100])
        return None
    try:
        ts = datetime.fromtimestamp(float(parts[_TS]), tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        logger.debug("Bad timestamp %r: %s", parts[_TS], e)
        return None

    method = parts[_METHOD]
    host = "" if parts[_HOST] == "-" else parts[_HOST]
    raw_url = "" if parts[_URL] == "-" else parts[_URL]
    url = _resolve_url(raw_url, method, host)
    if not url:
        return None
    return TrafficRecord(timestamp=ts, url=url, host=host or _host_of(url), method=method)


def parse_json_line(line: str) -> TrafficRecord | None:
    """Parse an NDJSON history line.

    Expected keys: ts (RFC 3339), url; optional host, method.
    """
    try:
        data = json.loads(line)
        url = data["url"]
        ts = datetime.fromisoformat(data["ts"].replace("Z", "+00:00"))
    except (json.JSONDecodeError, KeyError, TypeError, AttributeError, ValueError) as e:
        logger.debug("Failed to parse JSON line: %s", e)
        return None
    if not isinstance(url, str) or not url:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    host = data.get("host") or _host_of(url)
    return TrafficRecord(
        timestamp=ts.astimezone(timezone.utc),
        url=url,
        host=host,
        method=data.get("method"),
    )


def parse_line(line: str) -> TrafficRecord | None:
    """Auto-detect format and parse. Lines starting with '{' are JSON."""
    stripped = line.strip()
    if not stripped:
        return None
    if stripped.startswith("{"):
        return parse_json_line(stripped)
    return parse_text_line(stripped)
