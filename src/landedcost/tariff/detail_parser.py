"""Pure parsing helpers for authoritative tariff pages.

Nothing here performs I/O; the client feeds raw HTML or text in and gets
plain values back, which keeps every extraction rule testable on fixtures.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from landedcost.models import InternalTaxSchedule, InternalTaxTier, TaxKind
from landedcost.tariff.codes import UNKNOWN_CODE, format_code

DEFAULT_TOP_INTERNAL_RATE = 18.0
RAW_TEXT_LIMIT = 900
MAX_AMOUNTS = 12
MAX_RATES = 6
MAX_THRESHOLDS = 2

# Longer keys first so "IVA ADIC" is never read as "IVA".
TAX_KEYS: Tuple[Tuple[str, TaxKind], ...] = (
    ("IVA ADIC", TaxKind.VAT_SURCHARGE),
    ("GANANCIAS", TaxKind.INCOME_TAX_WITHHOLDING),
    ("IIBB", TaxKind.GROSS_RECEIPTS_WITHHOLDING),
    ("AEC", TaxKind.COMMON_EXTERNAL_TARIFF),
    ("DIE", TaxKind.IMPORT_DUTY),
    ("DII", TaxKind.INTRAZONE_DUTY),
    ("TE", TaxKind.STATISTICAL_FEE),
    ("IVA", TaxKind.VAT),
)

INTERVENTION_AGENCIES = ("ANMAT", "SENASA", "ENACOM", "INAL", "INTI")

_PERCENT_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*%")
_LOCAL_AMOUNT_RE = re.compile(r"\$\s*(\d{1,3}(?:\.\d{3})+(?:,\d{1,2})?|\d+(?:,\d{1,2})?)")
_NOMINAL_RATE_RE = re.compile(r"TASA\s+NOMINAL\s*:?\s*(\d+(?:[.,]\d+)?)\s*%", re.IGNORECASE)
_WINDOW_RE = re.compile(r"Del\s+(\d{2}/\d{2}/\d{4})\s+hasta\s+(\d{2}/\d{2}/\d{4})", re.IGNORECASE)
_INTERNAL_MARKERS_RE = re.compile(r"TASA\s+NOMINAL|Impuestos\s+Internos|EXENTO", re.IGNORECASE)
_DOC_LINK_RE = re.compile(r"viewobs\.php\?[^'\"\s<>]+", re.IGNORECASE)
_DOTTED_CODE_RE = re.compile(r"\b\d{4}\.\d{2}\.\d{2}\b")
_BLOCK_TAGS = ["p", "li", "td", "div", "section", "article", "pre"]


@dataclass(frozen=True)
class ParsedDetail:
    label: Optional[str]
    breadcrumbs: List[str]
    rates: Dict[TaxKind, float]
    interventions: List[str]
    reclassifications: List[str]
    internal_taxes: Optional[InternalTaxSchedule]
    internal_tax_document: Optional[str]


def _clean(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def parse_percent(raw: object) -> Optional[float]:
    match = re.search(r"(\d+(?:[.,]\d+)?)", str(raw or ""))
    if not match:
        return None
    try:
        return float(match.group(1).replace(",", "."))
    except ValueError:
        return None


def parse_local_amount(raw: str) -> Optional[float]:
    """Parse ``$ 40.253.421,77`` style amounts (dot thousands, comma decimals)."""

    cleaned = re.sub(r"[^\d.,]", "", raw or "")
    if not cleaned:
        return None
    cleaned = cleaned.replace(".", "").replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        return None


def _tax_kind_for_label(label: str) -> Optional[TaxKind]:
    normalized = re.sub(r"[^A-Z ]", " ", label.upper())
    normalized = re.sub(r"\s+", " ", normalized).strip()
    for key, kind in TAX_KEYS:
        if normalized == key or normalized.startswith(f"{key} "):
            return kind
    return None


def extract_tax_rates_from_text(text: str) -> Dict[TaxKind, float]:
    """Regex fallback: ``KEY ... N%`` within 60 characters."""

    rates: Dict[TaxKind, float] = {}
    for key, kind in TAX_KEYS:
        if key == "IVA":
            pattern = r"\bIVA\b(?!\s*ADIC)"
        else:
            pattern = r"\b" + re.escape(key) + r"\b"
        match = re.search(pattern + r"[\s\S]{0,60}?(\d+(?:[.,]\d+)?)\s*%", text or "")
        if match:
            rates[kind] = float(match.group(1).replace(",", "."))
    return rates


def _tier_rates(thresholds: int, nominal: List[float], exempt_first: bool) -> List[float]:
    top = nominal[-1] if nominal else DEFAULT_TOP_INTERNAL_RATE
    lower = ([0.0] if exempt_first else []) + nominal[:-1]
    if len(lower) < thresholds:
        lower = [0.0] * (thresholds - len(lower)) + lower
    return lower[-thresholds:] + [top]


def parse_internal_taxes_from_text(text: str) -> Optional[InternalTaxSchedule]:
    """Build a tier schedule from internal-tax prose.

    Currency thresholds split ``(0, inf)`` into contiguous bands; "EXENTO"
    makes the first band 0%, and the last "TASA NOMINAL" rate applies to the
    open-ended top band (18% when none is printed). Text without a threshold
    amount yields no schedule.
    """

    raw = _clean(text)
    if not raw or not _INTERNAL_MARKERS_RE.search(raw):
        return None

    window = _WINDOW_RE.search(raw)
    amounts: List[float] = []
    for match in _LOCAL_AMOUNT_RE.finditer(raw):
        value = parse_local_amount(match.group(1))
        if value and value > 0 and value not in amounts:
            amounts.append(value)
        if len(amounts) >= MAX_AMOUNTS:
            break
    nominal = [float(m.group(1).replace(",", ".")) for m in _NOMINAL_RATE_RE.finditer(raw)][:MAX_RATES]
    exempt = bool(re.search(r"\bEXENTO\b", raw, re.IGNORECASE))

    thresholds = sorted(amounts[:MAX_THRESHOLDS])
    if not thresholds:
        return None

    rates = _tier_rates(len(thresholds), nominal, exempt)
    bounds: List[Optional[float]] = [*thresholds, None]
    tiers: List[InternalTaxTier] = []
    lower = 0.0
    for index, (upper, rate) in enumerate(zip(bounds, rates)):
        label = "Exento" if (index == 0 and exempt and rate == 0 and upper is not None) else f"Tasa {rate:g}%"
        tiers.append(InternalTaxTier(lower_exclusive=lower, upper_inclusive=upper, rate_pct=rate, label=label))
        if upper is not None:
            lower = upper

    return InternalTaxSchedule(
        window_from=window.group(1) if window else None,
        window_to=window.group(2) if window else None,
        tiers=tiers,
        raw_text=raw[:RAW_TEXT_LIMIT],
    )


def looks_like_login_page(html: str, url: Optional[str] = None) -> bool:
    if url and "login.php" in url.lower():
        return True
    soup = BeautifulSoup(html or "", "html.parser")
    if soup.select_one("input[type=password]") is None:
        return False
    return soup.select_one("section#tax") is None and not _DOTTED_CODE_RE.search(soup.get_text(" "))


def parse_search_results(html: str, limit: int = 8) -> List[Tuple[str, Optional[str]]]:
    soup = BeautifulSoup(html or "", "html.parser")
    seen: set[str] = set()
    results: List[Tuple[str, Optional[str]]] = []

    for row in soup.select("table tr"):
        cells = row.find_all("td")
        if len(cells) < 2:
            continue
        code = format_code(_clean(cells[0].get_text(" ")))
        if code == UNKNOWN_CODE or code in seen:
            continue
        seen.add(code)
        results.append((code, _clean(cells[1].get_text(" ")) or None))
        if len(results) >= limit:
            return results

    if results:
        return results

    for anchor in soup.find_all("a"):
        text = _clean(anchor.get_text(" "))
        match = _DOTTED_CODE_RE.search(text)
        if not match:
            continue
        code = match.group(0)
        if code in seen:
            continue
        seen.add(code)
        parent_text = _clean(anchor.parent.get_text(" ")) if anchor.parent else ""
        label = _clean(parent_text.replace(code, "")) or None
        results.append((code, label))
        if len(results) >= limit:
            break
    return results


def _internal_tax_blocks(soup: BeautifulSoup) -> List[str]:
    """Text of each block element that mentions internal taxes, in page order."""

    blocks: List[str] = []
    for string in soup.find_all(string=_INTERNAL_MARKERS_RE):
        block = string.find_parent(_BLOCK_TAGS)
        if block is None:
            continue
        text = _clean(block.get_text(" "))
        if text and text not in blocks:
            blocks.append(text)
    return blocks


def find_internal_tax_document(html: str, base_url: str) -> Optional[str]:
    """Locate the secondary internal-tax document (``viewobs.php?...t=TI``)."""

    soup = BeautifulSoup(html or "", "html.parser")
    preferred: List[str] = []
    fallback: List[str] = []
    for anchor in soup.find_all("a"):
        href = anchor.get("href") or ""
        onclick = anchor.get("onclick") or ""
        match = _DOC_LINK_RE.search(href) or _DOC_LINK_RE.search(onclick)
        if not match or "t=TI" not in match.group(0):
            continue
        text = _clean(anchor.get_text(" ")).lower()
        target = preferred if ("intern" in text or "vehic" in text) else fallback
        target.append(match.group(0))
    if not preferred and not fallback:
        for match in _DOC_LINK_RE.finditer(html or ""):
            if "t=TI" in match.group(0):
                fallback.append(match.group(0))
    links = preferred or fallback
    if not links:
        return None
    return urljoin(base_url.rstrip("/") + "/", links[0].replace("&amp;", "&"))


def parse_detail(html: str, base_url: str = "") -> ParsedDetail:
    soup = BeautifulSoup(html or "", "html.parser")
    text = _clean(soup.get_text(" "))

    label = None
    for selector in ("div.alert.alert-info", "h1", "title"):
        node = soup.select_one(selector)
        if node and _clean(node.get_text(" ")):
            label = _clean(node.get_text(" "))
            break

    breadcrumbs = [_clean(a.get_text(" ")) for a in soup.select("nav a") if _clean(a.get_text(" "))]

    rates: Dict[TaxKind, float] = {}
    for row in soup.select("section#tax tr"):
        cells = [_clean(cell.get_text(" ")) for cell in row.find_all(["td", "th"])]
        if len(cells) < 2:
            continue
        kind = _tax_kind_for_label(cells[0])
        if kind is None or kind in rates:
            continue
        value = None
        for cell in cells[1:]:
            if _PERCENT_RE.search(cell) or re.fullmatch(r"\d+(?:[.,]\d+)?", cell):
                value = parse_percent(cell)
                break
        if value is not None:
            rates[kind] = value
    for kind, value in extract_tax_rates_from_text(text).items():
        rates.setdefault(kind, value)

    interventions: List[str] = []
    for anchor in soup.select("a[href*=interv]"):
        name = _clean(anchor.get_text(" "))
        if name and name not in interventions:
            interventions.append(name)
    for agency in INTERVENTION_AGENCIES:
        if re.search(r"\b" + agency + r"\b", text) and agency not in interventions:
            interventions.append(agency)

    reclassifications: List[str] = []
    for anchor in soup.select("a[href*=resclasif]"):
        name = _clean(anchor.get_text(" ")) or anchor.get("href")
        if name and name not in reclassifications:
            reclassifications.append(name)

    tax_section = soup.select_one("section#tax")
    inline = parse_internal_taxes_from_text(_clean(tax_section.get_text(" "))) if tax_section else None
    if inline is None:
        for block in _internal_tax_blocks(soup):
            inline = parse_internal_taxes_from_text(block)
            if inline is not None:
                break

    return ParsedDetail(
        label=label,
        breadcrumbs=breadcrumbs,
        rates=rates,
        interventions=interventions,
        reclassifications=reclassifications,
        internal_taxes=inline,
        internal_tax_document=find_internal_tax_document(html, base_url) if base_url else None,
    )
