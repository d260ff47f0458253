from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os

from app.api.relay import router as relay_router
from app.schemas import HealthResponse
from app.system_metrics import get_metrics_snapshot
from core.config import CHAT_RESPONDER_ENABLED, OPENAI_API_KEY, REALTIME_MODEL, SESSIONS_DIR
from core.logger import configure_logging

configure_logging()

app = FastAPI(title="Voice Session Relay")
logger = logging.getLogger("app.main")


def _get_allowed_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [item.strip() for item in raw.split(",") if item.strip()]


_allowed_origins = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

app.include_router(relay_router)


@app.on_event("startup")
async def startup_banner():
    if not OPENAI_API_KEY:
        logger.warning("[SYSTEM] OPENAI_API_KEY not set; /session-token and chat responses will fail")
    logger.info("[SYSTEM] CORS allow_origins=%s", _allowed_origins)
    logger.info(
        "[SYSTEM] realtime_model=%s chat_responder=%s sessions_dir=%s",
        REALTIME_MODEL,
        CHAT_RESPONDER_ENABLED,
        SESSIONS_DIR,
    )


@app.on_event("shutdown")
async def shutdown_handler():
    logger.info("[SYSTEM] shutdown complete")


@app.get("/healthz", response_model=HealthResponse)
async def healthz():
    return {"status": "ok", "service": "relay"}


@app.get("/api/system/metrics")
def system_metrics():
    return get_metrics_snapshot()
