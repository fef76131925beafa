"""Smart Money sync service — FastAPI application entry point.

Thin HTTP surface over one SyncEngine: progressive profile windows, wallet
search and cache eviction.
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smartmoney.config import settings
from smartmoney.integrations.demo_source import DemoWalletSource
from smartmoney.integrations.smart_wallets import SmartWalletsClient
from smartmoney.orchestrator.engine import SyncEngine
from smartmoney.orchestrator.schemas import EvictResponse, ProfilesRequest
from smartmoney.services.kv_store import build_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("smartmoney")


# ═══════════════ LIFESPAN ═══════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Smart money sync starting | demo_mode=%s | cache_backend=%s",
        settings.is_demo_mode, settings.cache_backend,
    )

    # Store falls back to memory if Redis / the database is unreachable
    store = await build_store(settings)
    source = DemoWalletSource() if settings.is_demo_mode else SmartWalletsClient()
    app.state.engine = SyncEngine(store, source)
    logger.info("Cache store: %s", type(store).__name__)

    yield

    await app.state.engine.close()
    logger.info("Smart money sync shutting down")


# ═══════════════ APP ═══════════════

app = FastAPI(
    title="Smart Money Sync API",
    description="Progressive wallet profile sync, priority polling and search",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["POST", "OPTIONS", "GET"],
    allow_headers=["Content-Type"],
)


def _engine(request: Request) -> SyncEngine:
    return request.app.state.engine


# ═══════════════ ENDPOINTS ═══════════════

@app.get("/health")
async def health(request: Request):
    engine = _engine(request)
    return {
        "status": "ok",
        "demo_mode": settings.is_demo_mode,
        "cache_store": type(engine.store).__name__,
        **engine.stats(),
    }


@app.post("/api/profiles")
async def load_profiles(body: ProfilesRequest, request: Request):
    """First progressive window for a list of wallet addresses."""
    engine = _engine(request)
    start = time.monotonic()
    try:
        if body.followed:
            loader = await engine.load_followed_profiles(body.addresses)
        else:
            loader = await engine.load_progressive(
                body.addresses, initial_page_size=body.initial_page_size,
            )
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    view = loader.view()
    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Profiles loaded | keys=%d | window=%d | %dms",
        view.total, view.loaded_count, elapsed_ms,
    )
    return JSONResponse(content=view.model_dump())


@app.get("/api/search")
async def search(
    request: Request,
    q: str = "",
    limit: int = Query(default=settings.search_max_results, ge=1, le=100),
):
    start = time.monotonic()
    result = await _engine(request).search(q, limit)
    elapsed_ms = int((time.monotonic() - start) * 1000)
    logger.info("Search completed | found=%d | %dms", result.found_count, elapsed_ms)
    return JSONResponse(content=result.model_dump())


@app.post("/api/cache/evict")
async def evict_cache(request: Request):
    namespaces = await _engine(request).evict_expired_by_namespace()
    return EvictResponse(removed=sum(namespaces.values()), namespaces=namespaces)
