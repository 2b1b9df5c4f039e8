"""Browser header profiles."""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

DEFAULT_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8"
)


@dataclass(frozen=True)
class HeaderProfile:
    """A complete, self-consistent browser header set."""

    name: str
    user_agent: str
    platform: str
    mobile: bool = False
    client_hints: Dict[str, str] = field(default_factory=dict)

    def build(
        self,
        *,
        accept_language: str,
        referer: Optional[str] = None,
        overrides: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """Headers for one navigation request.

        Parameters
        ----------
        accept_language : str
            Value of the ``Accept-Language`` header
        referer : str, optional
            Previous page; also switches ``Sec-Fetch-Site`` to same-origin
        overrides : dict, optional
            Headers applied last, e.g. from the crawl context

        Returns
        -------
        dict
            Header name to value
        """
        headers = {
            "User-Agent": self.user_agent,
            "Accept": DEFAULT_ACCEPT,
            "Accept-Language": accept_language,
            "Accept-Encoding": "gzip, deflate, br",
            "Upgrade-Insecure-Requests": "1",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "same-origin" if referer else "none",
            "Sec-Fetch-User": "?1",
        }
        headers.update(self.client_hints)
        if referer:
            headers["Referer"] = referer
        if overrides:
            headers.update(overrides)
        return headers


def _chromium_hints(brand: str, version: str, platform: str, mobile: bool) -> Dict[str, str]:
    return {
        "sec-ch-ua": f'"{brand}";v="{version}", "Chromium";v="{version}", "Not-A.Brand";v="99"',
        "sec-ch-ua-mobile": "?1" if mobile else "?0",
        "sec-ch-ua-platform": f'"{platform}"',
    }


class HeaderProfilePool:
    """Pool of realistic header profiles.

    Firefox and Safari profiles carry no client hints, as those browsers
    do not send them.
    """

    PROFILES: List[HeaderProfile] = [
        HeaderProfile(
            name="chrome-windows",
            user_agent=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
            ),
            platform="Windows",
            client_hints=_chromium_hints("Google Chrome", "124", "Windows", False),
        ),
        HeaderProfile(
            name="chrome-macos",
            user_agent=(
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
            ),
            platform="macOS",
            client_hints=_chromium_hints("Google Chrome", "124", "macOS", False),
        ),
        HeaderProfile(
            name="chrome-linux",
            user_agent=(
                "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
            ),
            platform="Linux",
            client_hints=_chromium_hints("Google Chrome", "123", "Linux", False),
        ),
        HeaderProfile(
            name="edge-windows",
            user_agent=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0"
            ),
            platform="Windows",
            client_hints=_chromium_hints("Microsoft Edge", "124", "Windows", False),
        ),
        HeaderProfile(
            name="firefox-windows",
            user_agent=(
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:124.0) "
                "Gecko/20100101 Firefox/124.0"
            ),
            platform="Windows",
        ),
        HeaderProfile(
            name="firefox-macos",
            user_agent=(
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:124.0) "
                "Gecko/20100101 Firefox/124.0"
            ),
            platform="macOS",
        ),
        HeaderProfile(
            name="safari-macos",
            user_agent=(
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
                "(KHTML, like Gecko) Version/17.4 Safari/605.1.15"
            ),
            platform="macOS",
        ),
        HeaderProfile(
            name="chrome-android",
            user_agent=(
                "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36"
            ),
            platform="Android",
            mobile=True,
            client_hints=_chromium_hints("Google Chrome", "124", "Android", True),
        ),
    ]

    def __init__(
        self,
        profiles: Optional[List[HeaderProfile]] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.profiles = list(profiles or self.PROFILES)
        if not self.profiles:
            raise ValueError("header profile pool cannot be empty")
        self._rng = rng or random.Random()

    def get_random(self) -> HeaderProfile:
        return self._rng.choice(self.profiles)

    def get_different(self, current: Optional[HeaderProfile]) -> HeaderProfile:
        """Random profile other than ``current`` (when the pool allows it)."""
        candidates = [p for p in self.profiles if current is None or p.name != current.name]
        return self._rng.choice(candidates or self.profiles)

    def get_by_name(self, name: str) -> Optional[HeaderProfile]:
        return next((p for p in self.profiles if p.name == name), None)
