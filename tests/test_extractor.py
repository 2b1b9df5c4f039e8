import pytest

from marketcrawl.collector.extractor import SelectorExtractor, external_id_from_href, parse_price_cents

from pages import BASE_URL, listing_card, results_page, search_url


@pytest.mark.parametrize(
    "text, cents",
    [
        ("120 €", 12000),
        ("1 250,50 €", 125050),
        ("1.250 €", 125000),
        ("12.5 €", 1250),
        ("Prix : 45€", 4500),
        ("Gratuit", None),
        (None, None),
    ],
)
def test_parse_price_cents(text, cents):
    assert parse_price_cents(text) == cents


def test_external_id_from_href():
    assert external_id_from_href("https://www.leboncoin.fr/ad/velos/2716341102") == "2716341102"
    assert external_id_from_href("/ad/velos/2716341102.htm/") == "2716341102"
    assert external_id_from_href("https://www.leboncoin.fr") is None


def test_extract_cards():
    html = results_page([]).replace(
        "<main></main>",
        "<main>"
        + listing_card(101, title="Vélo de route", price="1 250 €", seller="Jean Dupont", delivery=True)
        + listing_card(102)
        + listing_card(101)
        + "</main>",
    )

    listings = SelectorExtractor().extract(html, search_url("velo"))

    assert [item.external_id for item in listings] == ["101", "102"]
    first = listings[0]
    assert first.url == f"{BASE_URL}/ad/velos/101"
    assert first.title == "Vélo de route"
    assert first.price_cents == 125000
    assert first.location == "Paris 75011"
    assert first.seller_name == "Jean Dupont"
    assert first.has_shipping is True
    assert first.images == ["https://img.leboncoin.fr/api/v1/ad-image/101.jpg"]
    assert listings[1].has_shipping is False


def test_cards_without_link_are_skipped():
    html = (
        '<div data-qa-id="aditem_container"><p data-test-id="adcard-title">Orphan</p></div>'
        + results_page([7])
    )

    assert [item.external_id for item in SelectorExtractor().extract(html, BASE_URL)] == ["7"]


def test_next_page_from_pagination_trigger():
    html = results_page([1], "/recherche?text=velo&page=2")

    assert SelectorExtractor().find_next_page(html, search_url("velo")) == search_url("velo", 2)


def test_next_page_from_numbered_links():
    html = (
        "<nav>"
        '<a href="/recherche?text=velo&page=1">1</a>'
        '<a href="/recherche?text=velo&page=3">3</a>'
        '<a href="/recherche?text=velo&page=4">4</a>'
        "</nav>"
    )

    assert SelectorExtractor().find_next_page(html, search_url("velo", 3)) == search_url("velo", 4)
    assert SelectorExtractor().find_next_page(html, search_url("velo", 4)) is None


def test_last_page_has_no_next():
    assert SelectorExtractor().find_next_page(results_page([1, 2]), search_url("velo")) is None


def test_selector_overrides():
    html = '<ul><li class="ad"><a href="/item/9">Nine</a></li></ul>'
    extractor = SelectorExtractor({"container": "li.ad", "link": ["a"], "title": ["a"]})

    [item] = extractor.extract(html, "https://shop.example")

    assert item.external_id == "9"
    assert item.title == "Nine"
    assert item.url == "https://shop.example/item/9"
