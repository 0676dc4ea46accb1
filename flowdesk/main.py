import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowdesk.config import settings
from flowdesk.logging_config import get_logger, setup_logging
from flowdesk.routers import chats, otp, realtime, schedule, send, session
from flowdesk.runtime import build_runtime

setup_logging(settings.log_level, settings.log_format)
logger = get_logger("main")

app = FastAPI(
    title="Flowdesk API",
    description="Multi-tenant WhatsApp messaging and flow engine",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(send.router)
app.include_router(session.router)
app.include_router(chats.router)
app.include_router(schedule.router)
app.include_router(otp.router)
app.include_router(realtime.router)


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_runtime_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("RUNTIME_ENABLED"), default=True)


@app.on_event("startup")
async def start_runtime() -> None:
    if not _is_runtime_enabled():
        return
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime()
        await app.state.runtime.start()


@app.on_event("shutdown")
async def stop_runtime() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return
    try:
        await runtime.stop()
    except Exception as exc:
        logger.error("Runtime shutdown failed", extra={"context": {"error": str(exc)}})
    app.state.runtime = None


@app.get("/health")
async def health():
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return {"status": "ok", "runtime": False}
    return {"status": "ok", "runtime": True, **runtime.registry.summary()}
