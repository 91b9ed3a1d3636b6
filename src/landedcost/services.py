"""Service wiring shared by the API and CLI entrypoints.

Nothing here runs at import time; callers decide when to build and close
services.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from landedcost.caching import RedisSessionLocks, get_redis_client
from landedcost.config import Settings
from landedcost.dialogue.engine import DialogueEngine, LeadSink
from landedcost.dialogue.resolver import LinkMetadataResolver
from landedcost.dialogue.session_store import DraftStore, SessionLockProvider, SessionLocks
from landedcost.observability import redact_secret
from landedcost.quote.calculator import LandedCostCalculator
from landedcost.quote.exchange import ExchangeRateCache, HttpRateFetcher
from landedcost.tariff.authoritative import AuthoritativeTariffClient, PlaywrightFetcher
from landedcost.tariff.classifier import TariffClassifier
from landedcost.tariff.detail_cache import DetailCache
from landedcost.tariff.local_index import LocalTariffIndex
from landedcost.tariff.semantic import OpenAISemanticClassifier, SemanticClassifier

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    index: LocalTariffIndex
    cache: DetailCache
    authoritative: AuthoritativeTariffClient
    classifier: TariffClassifier
    exchange_rates: ExchangeRateCache
    calculator: LandedCostCalculator
    store: DraftStore
    locks: SessionLockProvider
    engine: DialogueEngine

    def close(self) -> None:
        self.authoritative.close()
        self.cache.close()
        self.index.close()


def _semantic_classifier(settings: Settings) -> Optional[SemanticClassifier]:
    if not settings.openai_api_key:
        logger.info("OPENAI_API_KEY not set; semantic classification disabled")
        return None
    logger.info(
        "Semantic classifier %s enabled (key %s)",
        settings.openai_model,
        redact_secret(settings.openai_api_key),
    )
    return OpenAISemanticClassifier(
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        timeout=settings.classifier_timeout_sec,
    )


def _session_locks(settings: Settings) -> SessionLockProvider:
    if settings.redis_url:
        logger.info("Using Redis session locks at %s", settings.redis_url)
        return RedisSessionLocks(get_redis_client(settings.redis_url))
    return SessionLocks()


def build_services(settings: Optional[Settings] = None, lead_sink: Optional[LeadSink] = None) -> Services:
    settings = settings or Settings.from_env()
    index = LocalTariffIndex(settings.index_path)
    cache = DetailCache(settings.cache_path, ttl_days=settings.cache_ttl_days)
    authoritative = AuthoritativeTariffClient(
        settings,
        cache=cache,
        index=index,
        browser=PlaywrightFetcher(settings) if settings.has_credentials else None,
    )
    if not authoritative.enabled:
        logger.warning("Tariff credentials missing; quotes fall back to heuristic rates")

    classifier = TariffClassifier(index, authoritative=authoritative, semantic=_semantic_classifier(settings))
    exchange_rates = ExchangeRateCache(
        fetcher=HttpRateFetcher(settings.fx_url, timeout=10.0),
        ttl_seconds=settings.fx_ttl_sec,
        configured_rate=settings.fx_local_per_usd,
    )
    calculator = LandedCostCalculator(exchange_rates, insurance_rate=settings.insurance_rate)
    store = DraftStore(settings.sessions_path)
    locks = _session_locks(settings)
    resolver = LinkMetadataResolver(
        timeout=settings.resolver_timeout_sec,
        retries=settings.resolver_retries,
        user_agent=settings.user_agent,
    )
    engine = DialogueEngine(
        store=store,
        classifier=classifier,
        calculator=calculator,
        resolver=resolver,
        authoritative=authoritative,
        locks=locks,
        lead_sink=lead_sink,
    )
    logger.info("Services ready (index %s, %d codes)", settings.index_path, index.count())
    return Services(
        settings=settings,
        index=index,
        cache=cache,
        authoritative=authoritative,
        classifier=classifier,
        exchange_rates=exchange_rates,
        calculator=calculator,
        store=store,
        locks=locks,
        engine=engine,
    )
