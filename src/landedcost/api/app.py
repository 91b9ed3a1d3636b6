from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from landedcost import __version__
from landedcost.api.routes_chat import router as chat_router
from landedcost.api.routes_tariff import router as tariff_router
from landedcost.observability import log_event, redact_secret, turn_scope
from landedcost.services import Services, build_services

logger = logging.getLogger(__name__)

_SENSITIVE_WORDS = ("key", "token", "secret", "password")


def _field_path(loc: Iterable[Any]) -> str:
    # "body" is implied for JSON payloads; query/path parameters keep their prefix.
    parts = [str(part) for part in loc if part != "body"]
    return ".".join(["request", *parts])


def _field_message(error: Mapping[str, Any]) -> str:
    text = str(error.get("msg") or "Invalid value")
    prefix = "Value error, "
    if text.startswith(prefix):
        text = text[len(prefix):]
    if any(word in text.lower() for word in _SENSITIVE_WORDS):
        return "Invalid request payload"
    return text


def validation_error_body(errors: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Flatten pydantic errors into ``{"error", "fields": [{"path", "message"}]}``."""

    return {
        "error": "VALIDATION_ERROR",
        "fields": [{"path": _field_path(err.get("loc", ())), "message": _field_message(err)} for err in errors],
    }


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API; ``services`` is injected by tests, otherwise built from the environment."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services if services is not None else build_services()
        yield
        if owned:
            app.state.services.close()
        app.state.services = None

    app = FastAPI(title="landed-cost assistant API", version=__version__, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["GET", "POST"], allow_headers=["*"])
    app.include_router(chat_router)
    app.include_router(tariff_router)

    @app.middleware("http")
    async def tag_turn(request: Request, call_next):
        with turn_scope() as turn:
            started = time.perf_counter()
            status = 500
            try:
                response = await call_next(request)
                status = response.status_code
                response.headers["X-Turn-ID"] = turn.turn_id
                return response
            finally:
                log_event(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status=status,
                    elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
                    api_key=redact_secret(request.headers.get("X-API-Key")),
                )

    @app.exception_handler(RequestValidationError)
    async def on_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content=validation_error_body(exc.errors()))

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        current: Optional[Services] = getattr(request.app.state, "services", None)
        if current is None:
            return {"ok": False, "status": "starting"}
        return {
            "ok": True,
            "version": __version__,
            "tariff_source": current.authoritative.enabled,
            "index_codes": current.index.count(),
        }

    return app


app = create_app()
