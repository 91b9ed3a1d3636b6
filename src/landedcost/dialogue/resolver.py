"""Turning a pasted link or free text into product facts.

Only generic page metadata is read (OpenGraph tags and schema.org JSON-LD);
marketplace-specific scraping lives outside this package behind the same
``ProductSourceResolver`` interface.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from typing import Any, Callable, List, Literal, Optional, Protocol
from urllib.parse import unquote, urlparse

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field, model_validator

from landedcost.dialogue.parsing import clean_product_title, extract_url, parse_amount
from landedcost.models import MoneyRange

logger = logging.getLogger(__name__)


class ResolvedProduct(BaseModel):
    status: Literal["resolved", "text_only", "failed"]
    title: Optional[str] = None
    description: Optional[str] = None
    source_url: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    price_range: Optional[MoneyRange] = None
    currency: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_status(self) -> "ResolvedProduct":
        if self.status == "resolved" and not self.title:
            raise ValueError("a resolved product needs a title")
        if self.status == "failed" and not self.error:
            raise ValueError("a failed resolution needs an error")
        if self.price_range is not None and self.currency != "USD":
            raise ValueError("price ranges are kept in USD only")
        return self


class ProductSourceResolver(Protocol):
    def resolve(self, link_or_text: str) -> ResolvedProduct:
        ...


def title_from_url(url: str) -> Optional[str]:
    """Readable words from the last meaningful path segment."""

    segments = [s for s in urlparse(url).path.split("/") if s]
    for segment in reversed(segments):
        words = re.sub(r"[-_+]+", " ", unquote(segment))
        words = re.sub(r"\.(html?|php|aspx?)$", "", words)
        words = re.sub(r"\b[A-Z]{2,4}\d{5,}\b|\b\d{6,}\b", " ", words)
        words = re.sub(r"\s+", " ", words).strip()
        if len(re.findall(r"[A-Za-zÁÉÍÓÚáéíóúñÑ]", words)) >= 4:
            return words[:120]
    return None


class TextProductResolver:
    """No network: titles come from the message itself or the URL slug."""

    def resolve(self, link_or_text: str) -> ResolvedProduct:
        url = extract_url(link_or_text or "")
        if url:
            return ResolvedProduct(status="text_only", title=title_from_url(url), source_url=url)
        return ResolvedProduct(status="text_only", title=clean_product_title(link_or_text) or None)


def _iter_jsonld(soup: BeautifulSoup) -> List[dict]:
    found: List[dict] = []
    for node in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(node.string or "")
        except (json.JSONDecodeError, TypeError):
            continue
        stack: List[Any] = [data]
        while stack:
            item = stack.pop()
            if isinstance(item, list):
                stack.extend(item)
            elif isinstance(item, dict):
                found.append(item)
                if "@graph" in item:
                    stack.append(item["@graph"])
    return found


def _meta(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        node = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if node and node.get("content"):
            return str(node["content"]).strip()
    return None


def _schema_text(value: Any) -> Optional[str]:
    """schema.org text fields may come as a list or as a nested object."""

    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("name") or value.get("@value")
    if value is None:
        return None
    return str(value).strip() or None


def _schema_price(value: Any) -> Optional[float]:
    """schema.org prices are plain decimals with a dot and no grouping."""

    if value is None or isinstance(value, bool):
        return None
    try:
        amount = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


def _schema_images(value: Any) -> List[str]:
    items = value if isinstance(value, list) else [value]
    urls = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("url") or item.get("contentUrl")
        if isinstance(item, str) and item:
            urls.append(item)
    return urls


def parse_product_metadata(html: str, url: str) -> ResolvedProduct:
    soup = BeautifulSoup(html or "", "html.parser")
    title = _meta(soup, "og:title", "twitter:title")
    description = _meta(soup, "og:description", "description")
    images = [str(n["content"]) for n in soup.find_all("meta", attrs={"property": "og:image"}) if n.get("content")]

    low = high = None
    currency = _meta(soup, "product:price:currency", "og:price:currency")
    amount = _meta(soup, "product:price:amount", "og:price:amount")
    if amount:
        low = high = parse_amount(amount)

    for item in _iter_jsonld(soup):
        types = item.get("@type")
        types = types if isinstance(types, list) else [types]
        if "Product" not in types:
            continue
        title = title or _schema_text(item.get("name"))
        description = description or _schema_text(item.get("description"))
        images.extend(image for image in _schema_images(item.get("image")) if image not in images)
        offers = item.get("offers")
        offers = offers[0] if isinstance(offers, list) and offers else offers
        if isinstance(offers, dict):
            currency = _schema_text(offers.get("priceCurrency")) or currency
            price = _schema_price(offers.get("price"))
            low = _schema_price(offers.get("lowPrice")) or price or low
            high = _schema_price(offers.get("highPrice")) or price or high or low

    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip()
    title = re.sub(r"\s+", " ", title or "").strip() or title_from_url(url)

    price_range = None
    normalized_currency = (currency or "").upper() or None
    if normalized_currency == "USD" and low:
        price_range = MoneyRange(min=min(low, high or low), max=max(low, high or low))
    if not title:
        return ResolvedProduct(status="failed", source_url=url, images=images[:6], error="no title in page")
    return ResolvedProduct(
        status="resolved",
        title=title[:160],
        description=(description or None),
        source_url=url,
        images=images[:6],
        price_range=price_range,
        currency="USD" if price_range else None,
    )


class LinkMetadataResolver:
    """Fetches a product page with a fixed retry count and linear backoff."""

    def __init__(
        self,
        timeout: float = 18.0,
        retries: int = 2,
        user_agent: str = "Mozilla/5.0",
        backoff_seconds: float = 0.8,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retries = max(0, retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._client = client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent, "Accept-Language": "es-AR,es;q=0.9,en;q=0.8"},
        )
        self._fallback = TextProductResolver()

    def _fetch(self, url: str) -> str:
        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                response = self._client.get(url)
                if response.status_code < 500:
                    response.raise_for_status()
                    return response.text
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}", request=response.request, response=response
                )
            except httpx.HTTPStatusError:
                raise
            except httpx.HTTPError as exc:
                last_error = exc
            if attempt < self.retries:
                self._sleep(self.backoff_seconds * (attempt + 1))
        raise last_error or httpx.HTTPError(f"could not fetch {url}")

    def resolve(self, link_or_text: str) -> ResolvedProduct:
        url = extract_url(link_or_text or "")
        if not url:
            return self._fallback.resolve(link_or_text)
        try:
            html = self._fetch(url)
        except httpx.HTTPError as exc:
            logger.warning("Product link resolution failed for %s: %s", url, exc)
            return ResolvedProduct(status="failed", title=title_from_url(url), source_url=url, error=str(exc))
        return parse_product_metadata(html, url)
