from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from landedcost.api.dependencies import get_services
from landedcost.api.security import require_api_key
from landedcost.models import TariffCandidate, TariffDetail
from landedcost.services import Services
from landedcost.tariff.classifier import merge_candidates
from landedcost.tariff.codes import normalize_code

router = APIRouter(
    prefix="/api",
    tags=["tariff"],
    dependencies=[Depends(require_api_key)],
)


class TariffSearchResponse(BaseModel):
    query: str
    candidates: List[TariffCandidate]

    model_config = ConfigDict(extra="forbid")


class ExchangeRateResponse(BaseModel):
    local_per_usd: float
    source: str
    fetched_at: float

    model_config = ConfigDict(extra="forbid")


@router.get("/tariff/search", response_model=TariffSearchResponse)
def search_tariff(
    q: str = Query(..., min_length=2),
    limit: int = Query(12, ge=1, le=50),
    services: Services = Depends(get_services),
) -> TariffSearchResponse:
    local = [
        TariffCandidate(code=entry.code, label=entry.label, source="local_index")
        for entry in services.index.search(q, limit=limit)
    ]
    remote = services.authoritative.search_code(q, limit=min(limit, 25))
    merged = merge_candidates([remote, local], limit=limit)
    return TariffSearchResponse(query=q, candidates=merged)


@router.get("/tariff/codes/{code}", response_model=TariffDetail)
def get_tariff_detail(
    code: str,
    bypass_cache: bool = False,
    services: Services = Depends(get_services),
) -> TariffDetail:
    formatted = normalize_code(code)
    if not formatted:
        raise HTTPException(status_code=422, detail={"message": f"Invalid tariff code: {code}"})
    detail = services.authoritative.get_detail(formatted, bypass_cache=bypass_cache)
    if detail is None:
        raise HTTPException(status_code=404, detail="Tariff detail not available")
    return detail


@router.get("/fx", response_model=ExchangeRateResponse)
def get_exchange_rate(services: Services = Depends(get_services)) -> ExchangeRateResponse:
    snapshot = services.exchange_rates.get()
    return ExchangeRateResponse(
        local_per_usd=snapshot.local_per_usd,
        source=snapshot.source,
        fetched_at=snapshot.fetched_at,
    )
