from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import time

from db.database import init_db
from routers import receipts, items, parser_health

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("kvitto")

VERSION = "0.1.0"

app = FastAPI(
    title="Kvitto — Swedish Grocery Receipt Parser",
    description="Line-item parsing of Swedish grocery receipts with multi-buy discount resolution",
    version=VERSION,
)

_cors_origins = os.environ.get("CORS_ORIGINS", "").strip()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins.split(",") if _cors_origins else ["*"],
    allow_credentials=bool(_cors_origins),  # only send credentials when origins are explicit
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(receipts.router,      prefix="/api/receipts",      tags=["receipts"])
app.include_router(items.router,         prefix="/api/items",         tags=["items"])
app.include_router(parser_health.router, prefix="/api/parser-health", tags=["parser-health"])

@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response

@app.on_event("startup")
async def on_startup():
    logger.info("Starting Kvitto v%s  LOG_LEVEL=%s  DB=%s",
                VERSION, LOG_LEVEL, os.environ.get("DB_PATH", "(default)"))
    await init_db()

@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "ai_fallback": bool(os.environ.get("ANTHROPIC_API_KEY")),
    }
