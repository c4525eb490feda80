import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from sophia_api.config import settings
from sophia_api.database import SessionLocal, get_db
from sophia_api.dependencies import build_container
from sophia_api.logging_config import get_logger, setup_logging
from sophia_api.routers import calculators, document_sessions, telegram_webhook, whatsapp_webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="Sophia API",
    description="Messaging front-end for the Sophia real-estate assistant",
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

app.state.container = build_container(settings, session_factory=SessionLocal)

app.include_router(telegram_webhook.router)
app.include_router(whatsapp_webhook.router)
app.include_router(document_sessions.router)
app.include_router(calculators.router)

maintenance_logger = get_logger("maintenance_worker")
_maintenance_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_maintenance_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("MAINTENANCE_WORKER_ENABLED"), default=True)


async def _maintenance_loop() -> None:
    container = app.state.container
    while True:
        try:
            await asyncio.sleep(max(settings.maintenance_interval_seconds, 1.0))
            db = SessionLocal()
            try:
                results = container.run_maintenance(db)
                if any(results.values()):
                    maintenance_logger.info("Maintenance pass", extra={"context": results})
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            maintenance_logger.error(
                "Maintenance loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_maintenance_worker() -> None:
    global _maintenance_task
    if not _is_maintenance_worker_enabled():
        return
    if _maintenance_task is None or _maintenance_task.done():
        _maintenance_task = asyncio.create_task(_maintenance_loop())
        maintenance_logger.info("Maintenance worker started")


@app.on_event("shutdown")
async def stop_maintenance_worker() -> None:
    global _maintenance_task
    if _maintenance_task is None:
        return
    _maintenance_task.cancel()
    try:
        await _maintenance_task
    except asyncio.CancelledError:
        pass
    _maintenance_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
