import httpx
import pytest
from pydantic import ValidationError

from landedcost.dialogue.resolver import (
    LinkMetadataResolver,
    ResolvedProduct,
    TextProductResolver,
    parse_product_metadata,
    title_from_url,
)

OG_PAGE = """
<html><head>
<meta property="og:title" content="Autoelevador eléctrico 3T">
<meta property="og:description" content="Batería de litio, horquillas de 1070 mm">
<meta property="og:image" content="https://img.test/1.jpg">
<meta property="og:image" content="https://img.test/2.jpg">
<meta property="product:price:amount" content="4.180,00">
<meta property="product:price:currency" content="USD">
</head><body></body></html>
"""

JSONLD_PAGE = """
<html><head><title>Tienda</title>
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "BreadcrumbList"},
  {"@type": "Product", "name": "Silla gamer", "image": "https://img.test/silla.jpg",
   "offers": {"@type": "AggregateOffer", "priceCurrency": "USD", "lowPrice": "89.90", "highPrice": "120"}}
]}
</script>
</head><body></body></html>
"""


def test_opengraph_metadata():
    product = parse_product_metadata(OG_PAGE, "https://shop.test/p/1")

    assert product.status == "resolved"
    assert product.title == "Autoelevador eléctrico 3T"
    assert product.description.startswith("Batería de litio")
    assert product.images == ["https://img.test/1.jpg", "https://img.test/2.jpg"]
    assert (product.price_range.min, product.price_range.max) == (4180.0, 4180.0)
    assert product.currency == "USD"


def test_jsonld_product_with_price_range():
    product = parse_product_metadata(JSONLD_PAGE, "https://shop.test/p/2")

    assert product.title == "Silla gamer"
    assert product.images == ["https://img.test/silla.jpg"]
    assert (product.price_range.min, product.price_range.max) == (89.9, 120.0)


def _jsonld_page(product: str) -> str:
    return f'<html><head><script type="application/ld+json">{product}</script></head><body></body></html>'


def test_jsonld_name_as_list_or_object():
    listed = _jsonld_page('{"@type": "Product", "name": ["Taladro percutor", "Drill"], "description": {"@value": "750 W"}}')
    nested = _jsonld_page('{"@type": "Product", "name": {"@language": "es", "name": "Amoladora angular"}}')

    assert parse_product_metadata(listed, "https://shop.test/p/3").title == "Taladro percutor"
    assert parse_product_metadata(listed, "https://shop.test/p/3").description == "750 W"
    assert parse_product_metadata(nested, "https://shop.test/p/4").title == "Amoladora angular"


def test_jsonld_prices_are_plain_decimals():
    page = _jsonld_page(
        '{"@type": "Product", "name": "Tornillos", "image": [{"url": "https://img.test/t.jpg"}],'
        ' "offers": [{"priceCurrency": "USD", "price": "12.345"}]}'
    )
    numeric = _jsonld_page('{"@type": "Product", "name": "Tuercas", "offers": {"priceCurrency": "USD", "price": 7.5}}')

    product = parse_product_metadata(page, "https://shop.test/p/5")

    assert (product.price_range.min, product.price_range.max) == (pytest.approx(12.345), pytest.approx(12.345))
    assert product.images == ["https://img.test/t.jpg"]
    assert parse_product_metadata(numeric, "https://shop.test/p/6").price_range.max == 7.5


def test_jsonld_unusable_price_is_ignored():
    page = _jsonld_page('{"@type": "Product", "name": "Tuercas", "offers": {"priceCurrency": "USD", "price": "consultar"}}')

    product = parse_product_metadata(page, "https://shop.test/p/7")

    assert product.status == "resolved"
    assert product.price_range is None


def test_non_usd_prices_are_dropped():
    page = OG_PAGE.replace('content="USD"', 'content="ARS"')
    product = parse_product_metadata(page, "https://shop.test/p/1")
    assert product.price_range is None
    assert product.currency is None


def test_page_without_title_fails():
    product = parse_product_metadata("<html><body></body></html>", "https://shop.test/p/123456")
    assert product.status == "failed"
    assert product.error == "no title in page"


def test_title_from_url_drops_listing_ids():
    url = "https://shop.test/articulos/silla-gamer-ergonomica-MLA123456789.html"
    assert title_from_url(url) == "silla gamer ergonomica"
    assert title_from_url("https://shop.test/p/123456") is None


def test_resolved_product_contract():
    with pytest.raises(ValidationError):
        ResolvedProduct(status="resolved")
    with pytest.raises(ValidationError):
        ResolvedProduct(status="failed", title="x")


def test_text_resolver_cleans_the_message():
    product = TextProductResolver().resolve("autoelevador eléctrico USD 4180")
    assert product.status == "text_only"
    assert product.title == "autoelevador eléctrico"


def _resolver(handler, sleeps):
    client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)
    return LinkMetadataResolver(retries=2, client=client, sleep=sleeps.append)


def test_transient_errors_are_retried_with_backoff():
    calls = []

    def handler(request):
        calls.append(request.url)
        if len(calls) < 3:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, text=OG_PAGE)

    sleeps = []
    product = _resolver(handler, sleeps).resolve("mirá esto https://shop.test/p/1")

    assert product.status == "resolved"
    assert product.source_url == "https://shop.test/p/1"
    assert len(calls) == 3
    assert sleeps == [pytest.approx(0.8), pytest.approx(1.6)]


def test_server_errors_exhaust_retries_then_fail():
    sleeps = []
    product = _resolver(lambda request: httpx.Response(500), sleeps).resolve(
        "https://shop.test/articulos/silla-gamer-ergonomica"
    )

    assert product.status == "failed"
    assert product.title == "silla gamer ergonomica"
    assert "500" in product.error
    assert len(sleeps) == 2


def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(404)

    sleeps = []
    product = _resolver(handler, sleeps).resolve("https://shop.test/p/1")

    assert product.status == "failed"
    assert len(calls) == 1
    assert sleeps == []


def test_plain_text_never_hits_the_network():
    def handler(request):
        raise AssertionError("no request expected")

    product = _resolver(handler, []).resolve("sillas de oficina")
    assert product.status == "text_only"
