"""Lab status API — main application."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from labstatus import config
from labstatus.cache import RefreshCache
from labstatus.log_redact import install_log_redaction
from labstatus.upstream import UpstreamClient, UpstreamError

# --- Logging ---
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
install_log_redaction()
logger = logging.getLogger("labstatus.api")

_LOCALHOST_ADDRESSES = frozenset({"127.0.0.1", "::1"})


def _log_startup_env_warnings() -> None:
    if not config.HOMEASSISTANT_TOKEN:
        logger.warning("HOMEASSISTANT_TOKEN is not set; /lab will answer 500 until it is.")
    logger.info(
        "Proxying %s from %s",
        config.HOMEASSISTANT_ENTITY_ID,
        config.HOMEASSISTANT_URL,
    )


def _client_address(request: Request) -> str:
    """Peer address, or the first X-Forwarded-For hop when proxied locally."""
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for", "")
    if peer in _LOCALHOST_ADDRESSES and forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return peer


def _plain_status(code: int, text: str) -> PlainTextResponse:
    return PlainTextResponse(text, status_code=code)


def get_refresh_cache(request: Request) -> RefreshCache:
    refresh_cache = getattr(request.app.state, "refresh_cache", None)
    if refresh_cache is None:
        raise RuntimeError("RefreshCache not initialized. Check create_app().")
    return refresh_cache


router = APIRouter()


@router.get("/lab")
async def get_lab_status(request: Request, refresh_cache: RefreshCache = Depends(get_refresh_cache)):
    logger.info("Got /lab request from %s", _client_address(request))
    try:
        lab_state = await refresh_cache.get(datetime.now(timezone.utc))
    except UpstreamError as exc:
        logger.warning("Lab status unavailable (%s): %s", exc.kind, exc)
        return _plain_status(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")

    logger.info("Returning %s", lab_state.model_dump())
    return JSONResponse(
        content=lab_state.model_dump(),
        headers={"Access-Control-Allow-Origin": "*"},
    )


@router.get("/door")
async def get_door_status():
    return _plain_status(status.HTTP_501_NOT_IMPLEMENTED, "Not Implemented")


@router.get("/favicon.ico")
async def favicon():
    return _plain_status(status.HTTP_404_NOT_FOUND, "404 page not found")


@asynccontextmanager
async def _lifespan(_: FastAPI):
    _log_startup_env_warnings()
    yield


def create_app(refresh_cache: Optional[RefreshCache] = None) -> FastAPI:
    app = FastAPI(
        title="labstatus",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=_lifespan,
    )
    if refresh_cache is None:
        refresh_cache = RefreshCache(UpstreamClient())
    app.state.refresh_cache = refresh_cache
    app.include_router(router)
    return app


app = create_app()
