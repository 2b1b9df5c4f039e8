"""Result-page extraction: listing cards and the next-page link."""
from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional, Protocol
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from ..models import ListingCandidate

LOGGER = logging.getLogger(__name__)

DEFAULT_SELECTORS: Dict[str, List[str]] = {
    "container": ['[data-qa-id="aditem_container"]', '[data-qa-id="aditem"]'],
    "link": ['a[href*="/ad/"]', "a[href]"],
    "title": ['[data-test-id="adcard-title"]', '[data-qa-id="aditem_title"]'],
    "price": ['[data-test-id*="price"]', '[data-qa-id="aditem_price"]'],
    "location": ['[data-test-id*="location"]', '[data-qa-id*="location"]', "p.text-caption.text-neutral"],
    "seller": ['[data-test-id*="seller"]', '[data-qa-id*="owner"]'],
    "delivery": ['[data-qa-id="delivery-badge"]', '[data-test-id*="delivery"]', '[data-test-id*="shipping"]'],
    "image": ['img[src*="img.leboncoin.fr"]'],
    "next_page": ['[data-spark-component="pagination-next-trigger"]', '[data-qa-id="pagination-next"]'],
}

_PRICE_RE = re.compile(r"\d+(?:[.,]\d{1,2})?")


class Extractor(Protocol):
    """Maps a result page to listing candidates; the crawl loop never reads the DOM."""

    def extract(self, html: str, base_url: str) -> List[ListingCandidate]:
        ...

    def find_next_page(self, html: str, base_url: str) -> Optional[str]:
        ...


def parse_price_cents(text: Optional[str]) -> Optional[int]:
    """Convert ``"1 250,50 €"`` to ``125050``; ``None`` when no amount is present."""
    if not text:
        return None
    compact = re.sub(r"\s", "", text)
    compact = re.sub(r"\.(?=\d{3}(?!\d))", "", compact)
    match = _PRICE_RE.search(compact)
    if not match:
        return None
    amount = match.group(0).replace(",", ".")
    return int(round(float(amount) * 100))


def external_id_from_href(href: str) -> Optional[str]:
    """Last path segment of a listing URL, without extension."""
    path = urlparse(href).path.rstrip("/")
    if not path:
        return None
    segment = path.rsplit("/", 1)[-1]
    segment = segment.split(".", 1)[0]
    return segment or None


def _page_number(url: str) -> int:
    values = parse_qs(urlparse(url).query).get("page")
    try:
        return int(values[0]) if values else 1
    except ValueError:
        return 1


class SelectorExtractor:
    """Selector-table driven extractor (BeautifulSoup).

    Parameters
    ----------
    selectors : mapping, optional
        Overrides for ``DEFAULT_SELECTORS``, one list of CSS selectors per field;
        the first selector that matches wins
    """

    def __init__(self, selectors: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self.selectors = {key: list(value) for key, value in DEFAULT_SELECTORS.items()}
        for key, value in (selectors or {}).items():
            self.selectors[key] = [value] if isinstance(value, str) else list(value)

    def extract(self, html: str, base_url: str) -> List[ListingCandidate]:
        soup = BeautifulSoup(html, "html.parser")
        containers = self._select_all(soup, "container")
        listings: List[ListingCandidate] = []
        seen = set()
        for index, card in enumerate(containers):
            candidate = self._parse_card(card, base_url)
            if candidate is None:
                LOGGER.debug("Card %d skipped: no listing link or title", index)
                continue
            if candidate.external_id in seen:
                continue
            seen.add(candidate.external_id)
            listings.append(candidate)
        LOGGER.info("Extracted %d listing(s) from %d card(s)", len(listings), len(containers))
        return listings

    def find_next_page(self, html: str, base_url: str) -> Optional[str]:
        soup = BeautifulSoup(html, "html.parser")
        for selector in self.selectors.get("next_page", []):
            node = soup.select_one(selector)
            if node is None:
                continue
            link = node if node.name == "a" else (node.find_parent("a") or node.find("a"))
            href = (link or node).get("href")
            if href:
                return urljoin(base_url, href)

        # numbered pagination: only the link to the page after this one
        wanted = _page_number(base_url) + 1
        for link in soup.select('a[href*="page="]'):
            href = urljoin(base_url, link["href"])
            if _page_number(href) == wanted:
                return href
        return None

    def _parse_card(self, card: Tag, base_url: str) -> Optional[ListingCandidate]:
        link = self._first(card, "link")
        href = link.get("href") if link is not None else None
        if not href:
            return None
        url = urljoin(base_url, href)
        external_id = external_id_from_href(url)
        title = self._text(card, "title") or (link.get("title") or "").strip()
        if not external_id or not title:
            return None

        delivery = self._first(card, "delivery") is not None or "livraison" in card.get_text(" ").lower()
        image = self._first(card, "image")
        images = [urljoin(base_url, image["src"])] if image is not None and image.get("src") else []
        return ListingCandidate(
            external_id=external_id,
            url=url,
            title=title,
            price_cents=parse_price_cents(self._text(card, "price")),
            location=self._text(card, "location"),
            seller_name=self._text(card, "seller"),
            has_shipping=delivery,
            images=images,
        )

    def _select_all(self, soup: BeautifulSoup, key: str) -> List[Tag]:
        for selector in self.selectors.get(key, []):
            found = soup.select(selector)
            if found:
                return found
        return []

    def _first(self, card: Tag, key: str) -> Optional[Tag]:
        for selector in self.selectors.get(key, []):
            node = card.select_one(selector)
            if node is not None:
                return node
        return None

    def _text(self, card: Tag, key: str) -> Optional[str]:
        node = self._first(card, key)
        if node is None:
            return None
        text = " ".join(node.get_text(" ").split())
        return text or None
