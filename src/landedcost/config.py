"""Environment-driven settings.

Every value has a default so the engine runs with no configuration at all:
without credentials the authoritative client is disabled, without an OpenAI
key the semantic classifier is skipped and classification relies on the
local index only.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_INSURANCE_RATE = 0.01


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def data_root() -> Path:
    return Path(os.getenv("LC_DATA_ROOT", "."))


def insurance_rate_from_env() -> float:
    """Insurance fraction of FOB; values outside (0, 0.2) fall back to 1%."""

    value = _env_float("INSURANCE_RATE", DEFAULT_INSURANCE_RATE)
    if 0 < value < 0.2:
        return value
    return DEFAULT_INSURANCE_RATE


@dataclass(frozen=True)
class Settings:
    base_url: str = "https://web.pcram.net"
    login_url: str = "https://web.pcram.net/login.php"
    detail_url_template: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    state_path: Path = field(default_factory=lambda: data_root() / "data" / "tariff_session.json")
    cache_path: Path = field(default_factory=lambda: data_root() / "data" / "tariff_cache.db")
    cache_ttl_days: int = 30
    index_path: Path = field(default_factory=lambda: data_root() / "data" / "tariff_index.db")
    tariff_timeout_sec: float = 25.0
    user_agent: str = DEFAULT_USER_AGENT
    resolver_timeout_sec: float = 18.0
    resolver_retries: int = 2
    fx_url: str = "https://dolarapi.com/v1/dolares/blue"
    fx_ttl_sec: int = 600
    fx_local_per_usd: Optional[float] = None
    insurance_rate: float = DEFAULT_INSURANCE_RATE
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    classifier_timeout_sec: float = 40.0
    redis_url: Optional[str] = None
    sessions_path: Path = field(default_factory=lambda: data_root() / "data" / "quote_drafts.jsonl")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @classmethod
    def from_env(cls) -> "Settings":
        root = data_root()
        base_url = (_env_str("TARIFF_BASE_URL") or "https://web.pcram.net").rstrip("/")
        fx_local = _env_float("FX_LOCAL_PER_USD", 0.0)
        return cls(
            base_url=base_url,
            login_url=_env_str("TARIFF_LOGIN_URL") or f"{base_url}/login.php",
            detail_url_template=_env_str("TARIFF_DETAIL_URL_TEMPLATE"),
            username=_env_str("TARIFF_USER"),
            password=_env_str("TARIFF_PASS"),
            state_path=Path(_env_str("TARIFF_STATE_PATH") or root / "data" / "tariff_session.json"),
            cache_path=Path(_env_str("TARIFF_CACHE_PATH") or root / "data" / "tariff_cache.db"),
            cache_ttl_days=max(1, _env_int("TARIFF_CACHE_TTL_DAYS", 30)),
            index_path=Path(_env_str("TARIFF_INDEX_PATH") or root / "data" / "tariff_index.db"),
            tariff_timeout_sec=_env_float("TARIFF_TIMEOUT_SEC", 25.0),
            user_agent=_env_str("SCRAPER_USER_AGENT") or DEFAULT_USER_AGENT,
            resolver_timeout_sec=_env_float("RESOLVER_TIMEOUT_SEC", 18.0),
            resolver_retries=max(0, _env_int("RESOLVER_RETRIES", 2)),
            fx_url=_env_str("FX_URL") or "https://dolarapi.com/v1/dolares/blue",
            fx_ttl_sec=max(1, _env_int("FX_TTL_SEC", 600)),
            fx_local_per_usd=fx_local if fx_local > 0 else None,
            insurance_rate=insurance_rate_from_env(),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_model=_env_str("OPENAI_MODEL") or "gpt-4o",
            classifier_timeout_sec=_env_float("CLASSIFIER_TIMEOUT_SEC", 40.0),
            redis_url=_env_str("REDIS_URL"),
            sessions_path=Path(_env_str("LC_SESSIONS_PATH") or root / "data" / "quote_drafts.jsonl"),
        )
