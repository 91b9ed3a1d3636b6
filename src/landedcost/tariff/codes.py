"""Helpers for the dotted ``NNNN.NN.NN`` tariff code notation."""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional

UNKNOWN_CODE = "9999.99.99"

_DOTTED_RE = re.compile(r"\b(\d{4})\.(\d{2})\.(\d{2})(?:\.\d{2,3})?(?:\s*[A-Z])?\b")
# Bare 8-digit codes need a keyword in front of them.
_COMPACT_RE = re.compile(
    r"\b(?:ncm|posici[oó]n|partida)\b[^\d\n]{0,20}(?<![\d.,])(\d{8})(?![\d.,])",
    re.IGNORECASE,
)


def digits_only(value: object) -> str:
    return re.sub(r"\D", "", str(value or ""))


def format_code(value: object) -> str:
    """Return the dotted form, or ``UNKNOWN_CODE`` when fewer than 6 digits."""

    digits = digits_only(value)
    if len(digits) < 6:
        return UNKNOWN_CODE
    digits = digits[:8].ljust(8, "0")
    return f"{digits[0:4]}.{digits[4:6]}.{digits[6:8]}"


def normalize_code(value: object) -> Optional[str]:
    """Like :func:`format_code` but ``None`` for unusable input."""

    code = format_code(value)
    if code == UNKNOWN_CODE:
        return None
    return code


def heading_of(code: Optional[str]) -> Optional[str]:
    digits = digits_only(code)
    if len(digits) < 4 or digits.startswith("9999"):
        return None
    return digits[:4]


def normalize_heading(value: object) -> Optional[str]:
    digits = digits_only(value)
    if len(digits) < 4:
        return None
    return digits[:4]


def same_code(left: Optional[str], right: Optional[str]) -> bool:
    return bool(left) and bool(right) and digits_only(left) == digits_only(right)


def extract_tariff_code(text: str) -> Optional[str]:
    """Find a code written explicitly in free text.

    Dotted codes are taken anywhere; 8 bare digits only right after "NCM",
    "posición" or "partida".
    """

    raw = text or ""
    match = _DOTTED_RE.search(raw)
    if match:
        return f"{match.group(1)}.{match.group(2)}.{match.group(3)}"
    match = _COMPACT_RE.search(raw)
    if match:
        return format_code(match.group(1))
    return None


def unique_codes(codes: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for code in codes:
        key = digits_only(code)
        if not key or key in seen:
            continue
        seen.add(key)
        ordered.append(code)
    return ordered


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text or "")
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def fold_text(text: str) -> str:
    """Lowercase, strip accents, and collapse non-alphanumerics to single spaces."""

    folded = strip_accents((text or "").lower())
    folded = re.sub(r"[^a-z0-9]+", " ", folded)
    return re.sub(r"\s+", " ", folded).strip()


def find_tariff_codes(text: str) -> List[str]:
    """Every explicit code in ``text``, in order, deduplicated."""

    raw = text or ""
    found = [f"{m.group(1)}.{m.group(2)}.{m.group(3)}" for m in _DOTTED_RE.finditer(raw)]
    found.extend(format_code(m.group(1)) for m in _COMPACT_RE.finditer(raw))
    return unique_codes(found)
