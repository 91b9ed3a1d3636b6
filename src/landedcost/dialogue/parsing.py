"""Named predicates and parsers over single user messages.

All functions are pure and work on raw user text; accent and case folding
happens inside. Amounts accept either separator convention: the last
separator is the decimal one, except that a lone separator followed by
exactly three digits groups thousands (``9,800`` and ``15.000`` are
integers, ``120.50`` is not).
"""

from __future__ import annotations

import math
import re
from typing import Iterable, Literal, Optional, Protocol

from landedcost.models import ShippingProfile, Stage
from landedcost.tariff.codes import extract_tariff_code, strip_accents


class MessageLike(Protocol):
    role: str
    content: str


CURRENCY_WORDS = r"usd|us\$|u\$s|u\$d|dolares|dolar|dls"
_CURRENCY_RE = re.compile(r"(?<![a-z])(?:" + CURRENCY_WORDS + r")(?![a-z])|\$")
_QUANTITY_HINT_RES = (
    re.compile(r"\b(unid|unidad|unidades|pcs|piezas)\b"),
    re.compile(r"\bx\s*\d{1,6}\b"),
    re.compile(r"\b(cant|cantidad)\b"),
    re.compile(r"\b\d{1,6}\s*u\b"),
)
PRICE_TRIGGERS_RE = re.compile(
    r"(?<![a-z])(precio|vale|valen|cuesta|sale|valor|usd|us\$|u\$s|dolares|fob|por\s+unidad)(?![a-z])"
)
_PRICE_MESSAGE_RE = re.compile(r"(?<![a-z])(precio|sale|cuesta|valor|usd|us\$|u\$s|dolares)(?![a-z])|\$")
_NUMBER = r"\d[\d.,]*"
_TAGGED_PRICE_RES = (
    re.compile(r"(?:usd|us\$|u\$s|u\$d|\$)\s*(" + _NUMBER + r")"),
    re.compile(r"(" + _NUMBER + r")\s*(?:" + CURRENCY_WORDS + r")(?![a-z])"),
)
_BARE_NUMBER_RE = re.compile(r"(?<![\w.,$])(" + _NUMBER + r")(?![\w$])")
_QTY_NUMBER = r"(\d{1,3}(?:[.,]\d{3})+|\d{1,7})"
_EXPLICIT_QUANTITY_RES = (
    re.compile(r"\bx\s*" + _QTY_NUMBER + r"\b"),
    re.compile(r"\b" + _QTY_NUMBER + r"\s*(?:unid|unidad|unidades|pcs|piezas|u)\b"),
    re.compile(r"\b(?:cant|cantidad)\s*[:=]?\s*(?:de\s*)?" + _QTY_NUMBER + r"\b"),
)
_URL_RE = re.compile(r"https?://[^\s)]+", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_PHONE_RE = re.compile(r"\+?\d[\d\s().-]{7,}")
_AFFIRMATIVE_RE = re.compile(
    r"\b(si|dale|ok|okay|vamos|avanc\w*|quiero avanzar|de una|hagamos|continuemos|validar|validalo|"
    r"agendar|agendalo|consultoria|hablar con (?:un )?asesor|asesora? experto)\b"
)


def plain(text: Optional[str]) -> str:
    """Lowercase, accent-free, single-spaced."""

    return re.sub(r"\s+", " ", strip_accents((text or "").lower())).strip()


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------


def parse_amount(raw: Optional[str]) -> Optional[float]:
    cleaned = re.sub(r"[^\d.,]", "", raw or "").strip(".,")
    if not cleaned or not re.search(r"\d", cleaned):
        return None

    if "." in cleaned and "," in cleaned:
        decimal = "." if cleaned.rfind(".") > cleaned.rfind(",") else ","
        thousands = "," if decimal == "." else "."
        normalized = cleaned.replace(thousands, "").replace(decimal, ".")
    elif "." in cleaned or "," in cleaned:
        separator = "." if "." in cleaned else ","
        if cleaned.count(separator) > 1:
            normalized = cleaned.replace(separator, "")
        else:
            whole, fraction = cleaned.split(separator)
            if len(fraction) == 3 and whole.strip("0"):
                normalized = whole + fraction
            else:
                normalized = f"{whole or '0'}.{fraction}"
    else:
        normalized = cleaned

    try:
        value = float(normalized)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def has_currency_signal(text: str) -> bool:
    return bool(_CURRENCY_RE.search(plain(text)))


def has_quantity_hint(text: str) -> bool:
    folded = plain(text)
    return any(pattern.search(folded) for pattern in _QUANTITY_HINT_RES)


def has_price_trigger(text: str) -> bool:
    return bool(PRICE_TRIGGERS_RE.search(plain(text)))


def looks_like_just_number(text: str) -> bool:
    stripped = (text or "").strip()
    return bool(stripped) and re.fullmatch(r"[0-9.,\s]+", stripped) is not None


def extract_url(text: str) -> Optional[str]:
    match = _URL_RE.search(text or "")
    return match.group(0) if match else None


# ---------------------------------------------------------------------------
# Price and quantity
# ---------------------------------------------------------------------------


def parse_unit_price(text: str, allow_bare: bool = False) -> Optional[float]:
    """Unit price in USD.

    Currency-tagged amounts win. A message with a quantity hint and no
    currency signal never yields a price; bare numbers only count when
    ``allow_bare`` is set.
    """

    folded = plain(text)
    if not folded:
        return None
    currency = bool(_CURRENCY_RE.search(folded))
    if not currency and has_quantity_hint(folded):
        return None
    for pattern in _TAGGED_PRICE_RES:
        match = pattern.search(folded)
        if match:
            value = parse_amount(match.group(1))
            if value and value > 0:
                return value
    if not allow_bare:
        return None
    match = _BARE_NUMBER_RE.search(folded)
    if not match:
        return None
    value = parse_amount(match.group(1))
    return value if value and value > 0 else None


def parse_quantity(text: str, allow_bare: bool = False) -> Optional[int]:
    """Integer quantity; currency-only messages never yield one."""

    folded = plain(text)
    if not folded:
        return None
    currency = bool(_CURRENCY_RE.search(folded))
    hint = has_quantity_hint(folded)
    if currency and not hint:
        return None
    if not hint and not allow_bare:
        return None

    for pattern in _EXPLICIT_QUANTITY_RES:
        match = pattern.search(folded)
        if match:
            value = parse_amount(match.group(1))
            if value and value >= 1:
                return int(math.floor(value))

    without_prices = folded
    for pattern in _TAGGED_PRICE_RES:
        without_prices = pattern.sub(" ", without_prices)
    match = re.search(r"(?<![\w.,$])" + _QTY_NUMBER + r"(?![\w$]|[.,]\d)", without_prices)
    if not match:
        return None
    value = parse_amount(match.group(1))
    if not value or value < 1:
        return None
    return int(math.floor(value))


def parse_unit_price_smart(text: str) -> Optional[float]:
    strict = parse_unit_price(text)
    if strict is not None:
        return strict
    if not has_price_trigger(text):
        return None
    return parse_unit_price(text, allow_bare=True)


def parse_quantity_smart(text: str) -> Optional[int]:
    strict = parse_quantity(text)
    if strict is not None:
        return strict
    if not has_quantity_hint(text):
        return None
    return parse_quantity(text, allow_bare=True)


def parse_budget(text: str) -> Optional[float]:
    """Target spend in USD: a currency-tagged amount, else the first number."""

    folded = plain(text)
    for pattern in _TAGGED_PRICE_RES:
        match = pattern.search(folded)
        if match:
            value = parse_amount(match.group(1))
            if value and value > 0:
                return value
    match = _BARE_NUMBER_RE.search(folded)
    if not match:
        return None
    value = parse_amount(match.group(1))
    return value if value and value > 0 else None


# ---------------------------------------------------------------------------
# Product text
# ---------------------------------------------------------------------------


def looks_like_product_text(text: str) -> bool:
    """True when the message describes a product rather than a bare price/quantity."""

    raw = (text or "").strip()
    if not raw:
        return False
    if is_small_talk(raw):
        return False
    folded = plain(raw)
    if not re.search(r"[a-zñ]", folded):
        return False
    if parse_unit_price(raw) is not None and len(raw) <= 16:
        return False
    if _PRICE_MESSAGE_RE.search(folded) and not extract_url(raw):
        stripped = PRICE_TRIGGERS_RE.sub(" ", folded)
        stripped = re.sub(r"\$|usd|us\$|u\$s", " ", stripped)
        stripped = re.sub(r"\b\d[\d.,]*\b", " ", stripped)
        if len(re.sub(r"\s+", " ", stripped).strip()) < 10:
            return False
    if parse_quantity(raw) is not None:
        stripped = re.sub(r"\b(cant|cantidad|unid|unidad|unidades|pcs|piezas)\b", " ", folded)
        stripped = re.sub(r"\bx\b", " ", stripped)
        stripped = re.sub(r"\b\d[\d.,]*\s*u?\b", " ", stripped)
        if len(re.sub(r"\s+", " ", stripped).strip()) < 10:
            return False
    return True


def clean_product_title(text: str, max_len: int = 120) -> str:
    """Strip codes, prices, quantities and lead-ins from a mixed message."""

    original = re.sub(r"\s+", " ", text or "").strip()
    if not original:
        return original
    title = re.sub(r"\b\d{4}\.\d{2}\.\d{2}\b|\b\d{8}\b", " ", original)
    title = re.sub(
        r"(?:\b(precio|vale|valen|cuesta|sale|valor|fob)\b\s*[:=]?\s*)(?:usd|us\$|u\$s|\$)?\s*\d[\d.,]*",
        " ",
        title,
        flags=re.IGNORECASE,
    )
    title = re.sub(r"(?:\b(?:usd|us\$|u\$s)|\$)\s*\d[\d.,]*", " ", title, flags=re.IGNORECASE)
    title = re.sub(r"\b(usd|us\$|u\$s|d[oó]lares)(?![a-z])", " ", title, flags=re.IGNORECASE)
    title = re.sub(r"\b(cant|cantidad)\b\s*[:=]?\s*\d{1,6}\b", " ", title, flags=re.IGNORECASE)
    title = re.sub(r"\b\d{1,6}\s*(unid|unidad|unidades|pcs|piezas)\b", " ", title, flags=re.IGNORECASE)
    title = re.sub(r"\bx\s*\d{1,6}\b", " ", title, flags=re.IGNORECASE)
    title = re.sub(r"^\s*(quiero|quisiera|necesito|busco)\s+(importar|traer|comprar)\s+", "", title, flags=re.IGNORECASE)
    title = re.sub(r"^\s*(quiero|quisiera|necesito|busco)\s+", "", title, flags=re.IGNORECASE)
    title = re.sub(r"\s+", " ", title).strip()
    title = re.sub(r"[\s.,;:]+$", "", title).strip()
    chosen = title if len(title) >= 6 else original
    if len(chosen) <= max_len:
        return chosen
    return chosen[: max_len - 1].rstrip() + "…"


# ---------------------------------------------------------------------------
# Classification turns
# ---------------------------------------------------------------------------


def looks_like_code_disagreement(text: str) -> bool:
    folded = plain(text)
    mentions_code = bool(re.search(r"\bncm\b", folded) or extract_tariff_code(folded))
    disputes = re.search(r"\bno es\b|\bequivocad|\bincorrect|\bmal\b|\berrone", folded)
    return mentions_code and disputes is not None


def looks_like_classification_answer(text: str) -> bool:
    folded = plain(text)
    if not folded or len(folded) > 120:
        return False
    markers = (
        r"<=\s*\d|≤\s*\d|>\s*\d|\b\d+(?:[.,]\d+)?\s*(t|tn|ton|toneladas|kg)\b",
        r"\b(basculant\w*|volcador\w*|frigor\w*|isoterm\w*|chasis|oruga\w*|semirremolque\w*|eje)\b",
        r"\b(personas|carga|utilitario|partes|repuestos|completo)\b",
        r"\b(cm3|cc|cilindrada)\b",
        r"\b(diesel|nafta|gasolina|electrico|hibrid\w*)\b",
        r"\b(si|no)\b",
    )
    return any(re.search(marker, folded) for marker in markers)


def parse_choice_index(text: str, upper: int = 5) -> Optional[int]:
    stripped = (text or "").strip()
    if not re.fullmatch(r"\d{1,2}", stripped):
        return None
    value = int(stripped)
    return value if 1 <= value <= upper else None


# ---------------------------------------------------------------------------
# Post-quote turns
# ---------------------------------------------------------------------------


def is_affirmative(text: str) -> bool:
    folded = plain(text)
    if re.match(r"^(no|nop|nah)\b", folded):
        return False
    return bool(_AFFIRMATIVE_RE.search(folded))


def looks_like_contact(text: str) -> bool:
    stripped = (text or "").strip()
    return bool(_EMAIL_RE.search(stripped) or _PHONE_RE.search(stripped))


def contact_channel(text: str) -> Literal["email", "whatsapp", "unknown"]:
    stripped = (text or "").strip()
    if _EMAIL_RE.search(stripped):
        return "email"
    if _PHONE_RE.search(stripped):
        return "whatsapp"
    return "unknown"


def parse_assumption_update(text: str) -> Optional[dict]:
    """``Origen: China`` / ``perfil carga: pesada`` style refinements."""

    raw = (text or "").strip()
    if not raw:
        return None
    update: dict = {}

    origin = re.search(r"\borigen\b\s*[:=]\s*([^,;\n]+)", raw, re.IGNORECASE) or re.match(
        r"^\s*origen\s+([^,;\n]+)$", raw, re.IGNORECASE
    )
    if origin:
        value = origin.group(1).strip().rstrip(".")
        if value and len(value) <= 60:
            update["origin"] = value

    profile = re.search(
        r"\b(?:perfil\s*(?:de)?\s*carga|perfil\s*flete|carga|flete)\b\s*[:=]\s*(livian[ao]|media|medio|pesad[ao])",
        plain(raw),
    ) or re.match(r"^\s*(livian[ao]|media|medio|pesad[ao])\s*$", plain(raw))
    if profile:
        word = profile.group(1)
        shipping: ShippingProfile
        if word.startswith("livi"):
            shipping = "light"
        elif word.startswith("pes"):
            shipping = "heavy"
        else:
            shipping = "medium"
        update["shipping_profile"] = shipping

    return update or None


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

_QUOTE_SIGNAL_RE = re.compile(r"total estimado|flete internacional|costo puesto en destino")


def infer_stage_hint(messages: Iterable[MessageLike]) -> Optional[Stage]:
    """Which slot the latest assistant turn asked for, if any."""

    for message in reversed(list(messages)):
        if message.role != "assistant":
            continue
        folded = plain(message.content)
        if _QUOTE_SIGNAL_RE.search(folded):
            return None
        if re.search(r"precio unitario|precio por unidad|usd 120|solo el numero", folded):
            return Stage.AWAITING_PRICE
        if re.search(r"\bcantidad\b|\bunidades\b|\bpcs\b|\bpiezas\b", folded):
            return Stage.AWAITING_QUANTITY
        if re.search(r"que producto|pega el link", folded):
            return Stage.AWAITING_PRODUCT
    return None


def has_quote_signals(messages: Iterable[MessageLike]) -> bool:
    return any(m.role == "assistant" and _QUOTE_SIGNAL_RE.search(plain(m.content)) for m in messages)


def infer_product_seed(messages: Iterable[MessageLike]) -> Optional[str]:
    """The most recent pasted link, else the latest product-looking user text."""

    history = [m for m in messages if m.role == "user"]
    for message in reversed(history):
        url = extract_url(message.content)
        if url:
            return url
    for message in reversed(history):
        text = (message.content or "").strip()
        if not text or looks_like_just_number(text):
            continue
        if looks_like_product_text(text):
            return text
    return None


def last_user_message(messages: Iterable[MessageLike]) -> str:
    for message in reversed(list(messages)):
        if message.role == "user":
            return message.content or ""
    return ""


_SMALL_TALK_RE = re.compile(
    r"^(hola|holi|buenas|buen dia|buenos dias|buenas tardes|buenas noches|hey|gracias|muchas gracias|ok|okay)\W*$"
)


def is_small_talk(text: str) -> bool:
    return bool(_SMALL_TALK_RE.match(plain(text)))
