from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from landedcost.api.dependencies import get_services
from landedcost.api.security import require_api_key
from landedcost.models import QuoteDraft, TurnRequest, TurnResponse
from landedcost.services import Services

router = APIRouter(
    prefix="/api",
    tags=["chat"],
    dependencies=[Depends(require_api_key)],
)


@router.post("/chat", response_model=TurnResponse)
def chat_turn(request: TurnRequest, services: Services = Depends(get_services)) -> TurnResponse:
    return services.engine.handle_turn(request)


@router.get("/sessions/{session_id}", response_model=QuoteDraft)
def get_session(session_id: str, services: Services = Depends(get_services)) -> QuoteDraft:
    draft = services.store.get(session_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return draft
