# app/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.routers import vehicles, valets, zones, stats, health
from app.config import settings
from app.domain.exceptions import ValetParkingError
from app.utils.logger import get_logger
import time
import asyncio

logger = get_logger(__name__)

app = FastAPI(
    title="Valet Parking API",
    description="Walk-up valet flow: entry, round-robin valet dispatch, mark-out and retrieval.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow operator tablets on the same LAN to call the API) ───────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard IP in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    async def dispatch(self, request: Request, call_next):
        open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}
        if request.url.path in open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(ValetParkingError)
async def valet_error_handler(request: Request, exc: ValetParkingError):
    if exc.status_code >= 500:
        logger.error(f"{request.url.path}: {exc.detail}")
    else:
        logger.warning(f"{request.url.path}: {type(exc).__name__}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(vehicles.router, prefix="/api/v1", tags=["🚗 Vehicles"])
app.include_router(valets.router,   prefix="/api/v1", tags=["🧑 Valets"])
app.include_router(zones.router,    prefix="/api/v1", tags=["🅿️  Zones"])
app.include_router(stats.router,    prefix="/api/v1", tags=["📊 Stats"])
app.include_router(health.router,   prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 Valet Backend starting up...")
    if settings.STORE_BACKEND == "sql":
        from app.database import create_tables
        create_tables()
        logger.info("✅ Database tables ready")
    logger.info(f"🌐 Listening on http://{settings.BACKEND_HOST}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")

    if settings.RETRIEVAL_POLLER_ENABLED:
        from app.container import get_container
        from app.services.retrieval_poller import start_retrieval_polling
        app.state.poller = asyncio.create_task(start_retrieval_polling(get_container()))
        logger.info("⏱  Retrieval poller started")


@app.on_event("shutdown")
async def shutdown():
    poller = getattr(app.state, "poller", None)
    if poller:
        poller.cancel()
    logger.info("🛑 Valet Backend shutting down...")
