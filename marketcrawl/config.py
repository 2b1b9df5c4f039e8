"""Crawler settings: ``.env`` + environment variables, optionally overlaid by YAML."""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[1]
ENV_PREFIX = "MARKETCRAWL_"

DEFAULT_STRATEGIES = [
    "header_swap",
    "timed_backoff",
    "egress_rotation",
    "manual_intervention",
]


@dataclass
class CrawlerSettings:
    """Every tunable of the crawl pipeline.

    Time values are seconds. ``signatures`` and ``selectors`` hold raw tables
    from YAML; they are parsed by the challenge detector and the extractor.
    """

    database_url: Optional[str] = None
    source_name: str = "leboncoin"
    base_url: str = "https://www.leboncoin.fr"

    # egress pool
    proxy_file: Optional[Path] = None
    proxy_list: List[str] = field(default_factory=list)
    failure_threshold: int = 3
    quarantine_cooldown: Optional[float] = None

    # retry/backoff
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_cap: float = 60.0
    max_transient_attempts: int = 3
    max_blocked_attempts: int = 5
    request_timeout: float = 20.0

    # challenges
    challenge_cooldown: float = 30.0
    challenge_strategies: List[str] = field(default_factory=lambda: list(DEFAULT_STRATEGIES))
    challenge_dir: Path = Path("captcha-saves")
    operator_poll_interval: float = 2.0
    signatures: List[Dict[str, Any]] = field(default_factory=list)

    # session
    duplicate_threshold: float = 0.8
    min_sample_size: int = 10
    sample_size: int = 20
    page_delay_min: float = 8.0
    page_delay_max: float = 15.0
    max_pages: int = 5
    max_concurrent_sessions: int = 2
    max_inflight_fetches: int = 4
    accept_language: str = "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7"
    selectors: Dict[str, List[str]] = field(default_factory=dict)
    queries: List[str] = field(default_factory=list)

    def validate(self) -> CrawlerSettings:
        """Raise ``ConfigurationError`` on values the pipeline cannot honour."""
        if not 0.0 < self.duplicate_threshold <= 1.0:
            raise ConfigurationError(
                f"duplicate_threshold must be in (0, 1], got {self.duplicate_threshold}"
            )
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if self.min_sample_size < 1 or self.sample_size < 1:
            raise ConfigurationError("sample sizes must be >= 1")
        if self.page_delay_min < 0 or self.page_delay_max < self.page_delay_min:
            raise ConfigurationError(
                f"invalid page delay range {self.page_delay_min}..{self.page_delay_max}"
            )
        if self.backoff_base < 0 or self.backoff_cap < 0 or self.backoff_multiplier < 1:
            raise ConfigurationError("backoff base/cap must be >= 0 and multiplier >= 1")
        if self.max_transient_attempts < 1 or self.max_blocked_attempts < 1:
            raise ConfigurationError("max attempts must be >= 1")
        if self.max_pages < 1 or self.max_concurrent_sessions < 1 or self.max_inflight_fetches < 1:
            raise ConfigurationError("max_pages and concurrency limits must be >= 1")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be > 0")
        unknown = set(self.challenge_strategies) - set(DEFAULT_STRATEGIES)
        if unknown:
            raise ConfigurationError(f"unknown challenge strategies: {sorted(unknown)}")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> CrawlerSettings:
        """Build settings from ``MARKETCRAWL_*`` variables (and ``.env``).

        ``DATABASE_URL`` and ``PROXY_LIST`` are also honoured without the prefix.
        """
        load_dotenv(env_file or BASE_DIR / ".env")
        values: Dict[str, Any] = {}
        for item in dataclasses.fields(cls):
            if item.name in _TABLE_FIELDS:
                continue
            raw = os.getenv(f"{ENV_PREFIX}{item.name.upper()}")
            if raw is None and item.name in _UNPREFIXED:
                raw = os.getenv(_UNPREFIXED[item.name])
            if raw is None or not raw.strip():
                continue
            values[item.name] = _convert(item.name, raw.strip())
        return cls(**values).validate()


def load_settings(path: Optional[str | Path] = None) -> CrawlerSettings:
    """Environment settings, overlaid by the YAML file at ``path`` if given."""
    settings = CrawlerSettings.from_env()
    if path is None:
        return settings

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"config file not found: {config_path}")
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("config file must contain a mapping")

    known = {item.name for item in dataclasses.fields(CrawlerSettings)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"unknown config keys: {sorted(unknown)}")

    overrides = {key: _convert(key, value) for key, value in data.items()}
    LOGGER.debug("Loaded %d setting(s) from %s", len(overrides), config_path)
    return dataclasses.replace(settings, **overrides).validate()


_UNPREFIXED = {
    "database_url": "DATABASE_URL",
    "proxy_list": "PROXY_LIST",
}

_TABLE_FIELDS = {"signatures", "selectors"}


def _to_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(part).strip() for part in value if str(part).strip()]
    raise TypeError(f"expected a list or comma-separated string, got {type(value).__name__}")


def _to_optional_float(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and value.lower() in {"", "none", "off"}):
        return None
    return float(value)


def _to_optional_path(value: Any) -> Optional[Path]:
    if value is None or value == "":
        return None
    return Path(str(value)).expanduser()


def _to_table(value: Any) -> Any:
    if not isinstance(value, (list, dict)):
        raise TypeError("expected a list or mapping")
    return value


_CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "int": int,
    "float": float,
    "str": str,
    "Path": lambda value: Path(str(value)).expanduser(),
    "Optional[str]": lambda value: None if value in (None, "") else str(value),
    "Optional[float]": _to_optional_float,
    "Optional[Path]": _to_optional_path,
    "List[str]": _to_list,
    "List[Dict[str, Any]]": _to_table,
    "Dict[str, List[str]]": _to_table,
}

_FIELD_TYPES = {item.name: str(item.type) for item in dataclasses.fields(CrawlerSettings)}


def _convert(name: str, value: Any) -> Any:
    converter = _CONVERTERS[_FIELD_TYPES[name]]
    try:
        return converter(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid value for {name}: {value!r} ({exc})") from exc
