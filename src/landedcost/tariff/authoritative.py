"""Authenticated client for the authoritative tariff nomenclature site.

Cookies are persisted in a Playwright-compatible storage-state JSON file so
the plain HTTP session and the headless browser share one login. A response
that lands on the login page triggers a single transparent re-login and
retry; every other failure is logged and surfaces as an absent result.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import httpx
from bs4 import BeautifulSoup
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright
from pydantic import ValidationError

from landedcost.config import Settings
from landedcost.models import TariffCandidate, TariffDetail
from landedcost.observability import redact_fields, redact_secret
from landedcost.tariff.codes import digits_only, normalize_code
from landedcost.tariff.detail_cache import DetailCache
from landedcost.tariff.detail_parser import (
    looks_like_login_page,
    parse_detail,
    parse_internal_taxes_from_text,
    parse_search_results,
)
from landedcost.tariff.local_index import IndexEntry, LocalTariffIndex

logger = logging.getLogger(__name__)

MIN_SEARCH_LIMIT = 1
MAX_SEARCH_LIMIT = 25
DEFAULT_SEARCH_LIMIT = 8


class TariffSourceError(RuntimeError):
    """The authoritative source could not be reached or parsed."""


class TariffAuthError(TariffSourceError):
    """Login failed or credentials are missing."""


class BrowserFetcher(Protocol):
    def fetch(self, url: str) -> Optional[str]:
        """Return the rendered HTML of ``url`` or ``None``."""


def _read_state(path: Path) -> Dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Ignoring unreadable session state at %s", path)
        return {}
    return data if isinstance(data, dict) else {}


def write_state_atomically(path: Path, state: Dict[str, object]) -> None:
    """Replace the state file in one step; concurrent writers resolve last-wins."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".state-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(state, handle, ensure_ascii=False)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class PlaywrightFetcher:
    """Headless Chromium fallback sharing the persisted storage state."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def fetch(self, url: str) -> Optional[str]:
        timeout_ms = int(self.settings.tariff_timeout_sec * 1000)
        state_path = self.settings.state_path
        try:
            with sync_playwright() as pw:
                browser = pw.chromium.launch(headless=True)
                try:
                    context = browser.new_context(
                        user_agent=self.settings.user_agent,
                        storage_state=str(state_path) if state_path.exists() else None,
                    )
                    page = context.new_page()
                    page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                    if page.locator("input[type=password]").count() > 0:
                        self._login(page, timeout_ms)
                        page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
                    self._expand_internal_tax_cards(page)
                    html = page.content()
                    try:
                        write_state_atomically(state_path, context.storage_state())
                    except OSError as exc:
                        logger.warning("Could not persist browser session state: %s", exc)
                    return html
                finally:
                    browser.close()
        except PlaywrightError as exc:
            logger.warning("Headless fetch failed for %s: %s", url, exc)
            return None

    def _login(self, page, timeout_ms: int) -> None:
        if not self.settings.has_credentials:
            raise TariffAuthError("missing tariff source credentials")
        page.goto(self.settings.login_url, wait_until="domcontentloaded", timeout=timeout_ms)
        page.locator("input[type=email], input[name=usuario], input[name=user], input[type=text]").first.fill(
            self.settings.username or ""
        )
        page.locator("input[type=password]").first.fill(self.settings.password or "")
        page.locator("button[type=submit], input[type=submit]").first.click()
        page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)

    @staticmethod
    def _expand_internal_tax_cards(page) -> None:
        cards = page.locator("text=Impuestos Internos")
        for index in range(min(cards.count(), 3)):
            try:
                cards.nth(index).click(timeout=1500)
            except PlaywrightError as exc:
                logger.debug("Could not expand internal tax card %s: %s", index, exc)


class AuthoritativeTariffClient:
    """Search and detail lookups against the authenticated nomenclature site."""

    def __init__(
        self,
        settings: Settings,
        cache: DetailCache,
        index: LocalTariffIndex,
        http_client: httpx.Client | None = None,
        browser: BrowserFetcher | None = None,
    ):
        self.settings = settings
        self.cache = cache
        self.index = index
        self.browser = browser
        self._client = http_client or httpx.Client(
            timeout=settings.tariff_timeout_sec,
            follow_redirects=True,
            headers={"User-Agent": settings.user_agent},
        )
        self._state_lock = threading.Lock()
        self._state_loaded = False
        self._auth_generation = 0

    @property
    def enabled(self) -> bool:
        return self.settings.has_credentials

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search_code(self, free_text: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[TariffCandidate]:
        query = (free_text or "").strip()
        if not query or not self.enabled:
            return []
        limit = max(MIN_SEARCH_LIMIT, min(MAX_SEARCH_LIMIT, int(limit or DEFAULT_SEARCH_LIMIT)))
        url = str(httpx.URL(f"{self.settings.base_url}/ncm.php", params={"q": query, "s": "0"}))
        try:
            html = self._fetch_authenticated(url)
            rows = parse_search_results(html, limit)
            candidates = [TariffCandidate(code=code, label=label, source="authoritative") for code, label in rows]
        except TariffSourceError as exc:
            logger.warning("Tariff search failed for %r: %s", query, exc)
            return []
        except ValueError as exc:
            logger.warning("Unusable tariff search page for %r: %s", query, exc)
            return []

        try:
            self.index.upsert(IndexEntry(code=code, label=label) for code, label in rows)
        except sqlite3.Error as exc:
            logger.warning("Could not index search results for %r: %s", query, exc)
        return candidates

    def get_detail(self, code: str, bypass_cache: bool = False) -> Optional[TariffDetail]:
        """Rates and internal taxes for ``code``; None whenever the source cannot provide them."""

        formatted = normalize_code(code)
        if not formatted:
            return None
        key = f"detail:{formatted}"

        if not bypass_cache:
            cached = self._cached_detail(key, formatted)
            if cached is not None:
                return cached

        if not self.enabled:
            return None

        url = self.detail_url(formatted)
        try:
            html = self._fetch_authenticated(url)
            detail = self._build_detail(formatted, url, html)
        except TariffSourceError as exc:
            logger.warning("Tariff detail fetch failed for %s: %s", formatted, exc)
            return None
        except ValueError as exc:
            logger.warning("Unusable tariff detail page for %s: %s", formatted, exc)
            return None

        try:
            self.cache.set(key, detail.model_dump(mode="json"))
            self.index.upsert([IndexEntry(code=formatted, label=detail.label, breadcrumbs=tuple(detail.breadcrumbs))])
        except sqlite3.Error as exc:
            logger.warning("Could not store detail for %s: %s", formatted, exc)
        return detail

    def detail_url(self, code: str) -> str:
        digits = digits_only(code)
        template = self.settings.detail_url_template
        if template:
            return template.replace("{code}", digits).replace("{ncm}", digits)
        return f"{self.settings.base_url}/obs.php?q={digits}"

    def close(self) -> None:
        self._client.close()

    def _cached_detail(self, key: str, formatted: str) -> Optional[TariffDetail]:
        try:
            cached = self.cache.get(key)
            if cached is None:
                return None
            try:
                return TariffDetail.model_validate({**cached, "provenance": "cache"})
            except ValidationError:
                logger.warning("Discarding invalid cached detail for %s", formatted)
                self.cache.delete(key)
        except sqlite3.Error as exc:
            logger.warning("Detail cache unavailable for %s: %s", formatted, exc)
        return None

    def _build_detail(self, formatted: str, url: str, html: str) -> TariffDetail:
        parsed = parse_detail(html, self.settings.base_url)
        schedule = parsed.internal_taxes
        if schedule is None and parsed.internal_tax_document:
            document_text = self._fetch_internal_tax_document(parsed.internal_tax_document)
            if document_text:
                schedule = parse_internal_taxes_from_text(document_text)

        label = parsed.label
        if not label:
            try:
                known = self.index.get(formatted)
            except sqlite3.Error as exc:
                logger.info("Local index lookup failed for %s: %s", formatted, exc)
                known = None
            label = known.label if known else None
        return TariffDetail(
            code=formatted,
            label=label,
            breadcrumbs=parsed.breadcrumbs,
            rates=parsed.rates,
            internal_taxes=schedule,
            interventions=parsed.interventions,
            reclassifications=parsed.reclassifications,
            source_url=url,
            provenance="live",
            fetched_at=datetime.now(timezone.utc).isoformat(),
        )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    def _load_state(self) -> None:
        with self._state_lock:
            if self._state_loaded:
                return
            state = _read_state(self.settings.state_path)
            for cookie in state.get("cookies") or []:
                if not isinstance(cookie, dict) or "name" not in cookie:
                    continue
                self._client.cookies.set(
                    cookie["name"],
                    str(cookie.get("value", "")),
                    domain=str(cookie.get("domain", "")).lstrip("."),
                    path=str(cookie.get("path", "/")),
                )
            self._state_loaded = True

    def _persist_state(self) -> None:
        cookies = [
            {
                "name": cookie.name,
                "value": cookie.value,
                "domain": cookie.domain,
                "path": cookie.path,
                "expires": cookie.expires if cookie.expires is not None else -1,
                "httpOnly": False,
                "secure": bool(cookie.secure),
                "sameSite": "Lax",
            }
            for cookie in self._client.cookies.jar
        ]
        existing = _read_state(self.settings.state_path)
        try:
            write_state_atomically(
                self.settings.state_path,
                {"cookies": cookies, "origins": existing.get("origins", [])},
            )
        except OSError as exc:
            logger.warning("Could not persist tariff session state to %s: %s", self.settings.state_path, exc)

    def _login(self, seen_generation: int) -> None:
        """Log in unless another caller already refreshed the session."""

        with self._state_lock:
            if self._auth_generation != seen_generation:
                return
            if not self.settings.has_credentials:
                raise TariffAuthError("missing tariff source credentials")
            logger.info(
                "Logging in to tariff source as %s", redact_secret(self.settings.username)
            )
            try:
                form_page = self._client.get(self.settings.login_url)
                action, fields = self._login_form(form_page.text, str(form_page.url))
                logger.debug("Submitting login form to %s with %s", action, redact_fields(fields))
                response = self._client.post(action, data=fields)
            except httpx.HTTPError as exc:
                raise TariffAuthError(f"login request failed: {exc}") from exc
            if response.status_code >= 400 or looks_like_login_page(response.text, str(response.url)):
                raise TariffAuthError("login rejected")
            self._auth_generation += 1
            self._persist_state()

    def _login_form(self, html: str, page_url: str) -> tuple[str, Dict[str, str]]:
        soup = BeautifulSoup(html or "", "html.parser")
        password_input = soup.select_one("input[type=password]")
        form = password_input.find_parent("form") if password_input else None
        if form is None:
            return self.settings.login_url, {
                "usuario": self.settings.username or "",
                "password": self.settings.password or "",
            }

        fields: Dict[str, str] = {}
        user_field: Optional[str] = None
        for node in form.find_all("input"):
            name = node.get("name")
            if not name:
                continue
            kind = (node.get("type") or "text").lower()
            if kind == "password":
                fields[name] = self.settings.password or ""
            elif kind in {"text", "email"} and user_field is None:
                user_field = name
                fields[name] = self.settings.username or ""
            elif kind not in {"submit", "button", "checkbox"}:
                fields[name] = node.get("value") or ""
        action = httpx.URL(page_url).join(form.get("action") or page_url)
        return str(action), fields

    def _get(self, url: str) -> httpx.Response:
        try:
            return self._client.get(url)
        except httpx.HTTPError as exc:
            raise TariffSourceError(f"request to {url} failed: {exc}") from exc

    @staticmethod
    def _needs_login(response: httpx.Response) -> bool:
        if response.status_code in (401, 403):
            return True
        return looks_like_login_page(response.text, str(response.url))

    def _fetch_authenticated(self, url: str) -> str:
        self._load_state()
        generation = self._auth_generation
        if not self._client.cookies:
            self._login(generation)
            generation = self._auth_generation

        response = self._get(url)
        if self._needs_login(response):
            self._login(generation)
            response = self._get(url)
            if self._needs_login(response):
                rendered = self.browser.fetch(url) if self.browser else None
                if rendered and not looks_like_login_page(rendered):
                    return rendered
                raise TariffAuthError(f"still unauthenticated after re-login: {url}")
        if response.status_code >= 400:
            raise TariffSourceError(f"{url} answered HTTP {response.status_code}")
        return response.text

    def _fetch_internal_tax_document(self, url: str) -> Optional[str]:
        try:
            response = self._get(url)
            if response.status_code < 400 and not self._needs_login(response):
                text = BeautifulSoup(response.text, "html.parser").get_text(" ")
                if parse_internal_taxes_from_text(text) is not None:
                    return text
        except TariffSourceError as exc:
            logger.info("Cookie fetch of internal tax document failed: %s", exc)

        if self.browser is None:
            return None
        try:
            rendered = self.browser.fetch(url)
        except TariffSourceError as exc:
            logger.info("Headless fetch of internal tax document failed: %s", exc)
            return None
        if not rendered:
            return None
        return BeautifulSoup(rendered, "html.parser").get_text(" ")
