import os
from pathlib import Path

import pytest

from marketcrawl.config import DEFAULT_STRATEGIES, CrawlerSettings, load_settings
from marketcrawl.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("MARKETCRAWL_") or name in ("DATABASE_URL", "PROXY_LIST"):
            monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = CrawlerSettings().validate()

    assert settings.duplicate_threshold == 0.8
    assert settings.min_sample_size == 10
    assert settings.failure_threshold == 3
    assert settings.max_transient_attempts == 3
    assert settings.max_blocked_attempts == 5
    assert settings.challenge_strategies == DEFAULT_STRATEGIES
    assert settings.challenge_dir == Path("captcha-saves")


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("MARKETCRAWL_DUPLICATE_THRESHOLD", "0.9")
    monkeypatch.setenv("MARKETCRAWL_MAX_PAGES", "12")
    monkeypatch.setenv("MARKETCRAWL_QUARANTINE_COOLDOWN", "off")
    monkeypatch.setenv("MARKETCRAWL_CHALLENGE_STRATEGIES", "header_swap, manual_intervention")
    monkeypatch.setenv("DATABASE_URL", "postgresql://crawler@localhost/market")
    monkeypatch.setenv("PROXY_LIST", "10.0.0.1:3128,10.0.0.2:3128")

    settings = CrawlerSettings.from_env(tmp_path / ".env")

    assert settings.duplicate_threshold == 0.9
    assert settings.max_pages == 12
    assert settings.quarantine_cooldown is None
    assert settings.challenge_strategies == ["header_swap", "manual_intervention"]
    assert settings.database_url == "postgresql://crawler@localhost/market"
    assert settings.proxy_list == ["10.0.0.1:3128", "10.0.0.2:3128"]


def test_from_env_reads_dotenv_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("MARKETCRAWL_SAMPLE_SIZE=30\n", encoding="utf-8")

    try:
        assert CrawlerSettings.from_env(env_file).sample_size == 30
    finally:
        os.environ.pop("MARKETCRAWL_SAMPLE_SIZE", None)


def test_invalid_env_value(monkeypatch, tmp_path):
    monkeypatch.setenv("MARKETCRAWL_MAX_PAGES", "many")

    with pytest.raises(ConfigurationError, match="max_pages"):
        CrawlerSettings.from_env(tmp_path / ".env")


def test_yaml_overlay(tmp_path):
    config = tmp_path / "crawl.yaml"
    config.write_text(
        """
duplicate_threshold: 0.75
page_delay_min: 1
page_delay_max: 2
challenge_dir: saves
queries: [velo, tandem]
selectors:
  container: ['li.ad']
signatures:
  - name: acme
    markers: ['acme shield']
""",
        encoding="utf-8",
    )

    settings = load_settings(config)

    assert settings.duplicate_threshold == 0.75
    assert settings.page_delay_max == 2.0
    assert settings.challenge_dir == Path("saves")
    assert settings.queries == ["velo", "tandem"]
    assert settings.selectors == {"container": ["li.ad"]}
    assert settings.signatures[0]["name"] == "acme"


def test_yaml_unknown_key(tmp_path):
    config = tmp_path / "crawl.yaml"
    config.write_text("dup_threshold: 0.5\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="dup_threshold"):
        load_settings(config)


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    "changes",
    [
        {"duplicate_threshold": 0.0},
        {"duplicate_threshold": 1.5},
        {"failure_threshold": 0},
        {"page_delay_min": 5.0, "page_delay_max": 1.0},
        {"backoff_multiplier": 0.5},
        {"max_blocked_attempts": 0},
        {"max_pages": 0},
        {"request_timeout": 0},
        {"challenge_strategies": ["header_swap", "solve_captcha"]},
    ],
)
def test_validate_rejects(changes):
    with pytest.raises(ConfigurationError):
        CrawlerSettings(**changes).validate()


def test_example_config_loads():
    from marketcrawl.antibot.challenge import ChallengeDetector

    example = Path(__file__).resolve().parents[1] / "config" / "marketcrawl.example.yaml"

    settings = load_settings(example)

    assert settings.quarantine_cooldown == 900.0
    assert settings.queries == ["velo electrique", "table en chene"]
    detector = ChallengeDetector.from_table(settings.signatures)
    assert [group.name for group in detector.signatures] == ["datadome", "cloudflare", "custom"]
