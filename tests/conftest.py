import pytest

from marketcrawl.config import CrawlerSettings


@pytest.fixture
def settings(tmp_path):
    """Settings with every delay disabled and a temporary challenge directory."""
    return CrawlerSettings(
        page_delay_min=0.0,
        page_delay_max=0.0,
        backoff_base=0.0,
        challenge_cooldown=0.0,
        operator_poll_interval=0.01,
        challenge_dir=tmp_path / "captcha-saves",
        max_pages=10,
    )
