"""Configuration loading from CLI args, env vars, and optional YAML file."""

import os
import re
import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta, timezone

import yaml

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = os.path.join("~", ".local", "share", "ai-proxy")


@dataclass(frozen=True)
class Config:
    log_path: str = "/tmp/squid_access.log"
    data_dir: str = DEFAULT_DATA_DIR
    checkpoint_file: str = ""     # "" -> <data_dir>/checkpoint.json
    history_file: str = ""        # "" -> <data_dir>/history.ndjson
    summary_file: str = ""        # "" -> <data_dir>/rolling_summary.json
    poll_interval: float = 1.0
    max_items: int = 500
    max_fetch_urls: int = 5
    fetch_concurrency: int = 4
    fetch_timeout: float = 10.0
    max_body_bytes: int = 512 * 1024
    max_text_chars: int = 4000
    model: str = "gpt-oss:20b"
    api_base: str = "http://localhost:11434/v1"
    api_key: str | None = None
    request_timeout: float = 60.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    ambient_interval: float = 30.0
    shutdown_grace: float = 120.0


ENV_VARS = {
    "log_path": "SQUID_LOG_PATH",
    "data_dir": "AIPROXY_DATA_DIR",
    "checkpoint_file": "CHECKPOINT_FILE",
    "history_file": "HISTORY_FILE",
    "summary_file": "SUMMARY_FILE",
    "poll_interval": "POLL_INTERVAL",
    "max_items": "MAX_ANALYSIS_ITEMS",
    "max_fetch_urls": "MAX_FETCH_URLS",
    "fetch_concurrency": "FETCH_CONCURRENCY",
    "fetch_timeout": "FETCH_TIMEOUT",
    "max_body_bytes": "MAX_BODY_BYTES",
    "max_text_chars": "MAX_TEXT_CHARS",
    "model": "MODEL",
    "api_base": "API_BASE",
    "api_key": "API_KEY",
    "request_timeout": "REQUEST_TIMEOUT",
    "retry_attempts": "RETRY_ATTEMPTS",
    "retry_base_delay": "RETRY_BASE_DELAY",
    "retry_max_delay": "RETRY_MAX_DELAY",
    "ambient_interval": "AMBIENT_INTERVAL",
    "shutdown_grace": "SHUTDOWN_GRACE",
}

_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")


def parse_interval(text: str) -> float:
    """Seconds from "45", "45s", "10m", "2h" or "1d"."""
    match = _DURATION_RE.match(str(text))
    if not match:
        raise ValueError(f"invalid duration: {text!r}")
    value, unit = match.groups()
    seconds = float(value) * _UNITS[unit or "s"]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {text!r}")
    return seconds


def parse_since(text: str, now: datetime | None = None) -> datetime:
    """Start of an analysis window from "30m", "2h", "7d" or an RFC 3339 timestamp."""
    now = now or datetime.now(timezone.utc)
    if _DURATION_RE.match(text) and text.strip()[-1:] in _UNITS:
        return now - timedelta(seconds=parse_interval(text))
    try:
        start = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"invalid --since value: {text!r} (use 30m, 2h, 7d or RFC 3339)") from None
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start.astimezone(timezone.utc)


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        logger.info("Loaded YAML config from %s", path)
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping")
    return data


def _coerce(name: str, value, kind):
    if value is None:
        return None
    if kind is int:
        return int(value)
    if kind is float:
        if name == "ambient_interval":
            return parse_interval(value)
        return float(value)
    return str(value)


def load_config(cli_args=None, yaml_data: dict | None = None, environ=None) -> Config:
    """Build Config from defaults <- YAML <- env vars <- CLI args (highest priority)."""
    yaml_data = yaml_data or {}
    environ = os.environ if environ is None else environ

    unknown = set(yaml_data) - {f.name for f in fields(Config)}
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))

    kwargs: dict = {}
    for f in fields(Config):
        value = yaml_data.get(f.name)
        env_name = ENV_VARS.get(f.name)
        if env_name and environ.get(env_name):
            value = environ[env_name]
        cli_value = getattr(cli_args, f.name, None) if cli_args is not None else None
        if cli_value is not None:
            value = cli_value
        if value is not None:
            kwargs[f.name] = _coerce(f.name, value, f.type)

    config = Config(**kwargs)
    return resolve_paths(config)


def resolve_paths(config: Config) -> Config:
    """Expand ``~`` and derive unset file paths from ``data_dir``."""
    data_dir = os.path.expanduser(config.data_dir)
    return replace(
        config,
        data_dir=data_dir,
        log_path=os.path.expanduser(config.log_path),
        checkpoint_file=os.path.expanduser(config.checkpoint_file)
        or os.path.join(data_dir, "checkpoint.json"),
        history_file=os.path.expanduser(config.history_file)
        or os.path.join(data_dir, "history.ndjson"),
        summary_file=os.path.expanduser(config.summary_file)
        or os.path.join(data_dir, "rolling_summary.json"),
    )
