import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from relaydesk.channels import available_channels
from relaydesk.config import settings
from relaydesk.database import SessionLocal, get_db
from relaydesk.logging_config import get_logger, setup_logging
from relaydesk.models import AgentPresence, Conversation, Escalation, Message
from relaydesk.routers import conversations, escalations, presence, webhooks
from relaydesk.services.sweep_service import run_sweep

setup_logging()

app = FastAPI(
    title="relaydesk",
    description="Multi-channel conversation routing and human escalation",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(escalations.router)
app.include_router(presence.router)
app.include_router(conversations.router)

sweep_logger = get_logger("sweep_worker")
_sweep_worker_task: asyncio.Task | None = None


def _is_sweep_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.sweep_worker_enabled


def _sweep_once() -> dict:
    db = SessionLocal()
    try:
        return run_sweep(db)
    finally:
        db.close()


async def _sweep_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.sweep_interval_seconds, 1))
            summary = await asyncio.to_thread(_sweep_once)
            if any(summary.get(key) for key in ("expired", "abandoned", "assigned")):
                sweep_logger.info("Sweep worker processed", extra={"context": summary})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweep_logger.error(
                "Sweep worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_sweep_worker() -> None:
    global _sweep_worker_task
    if not _is_sweep_worker_enabled():
        return
    if _sweep_worker_task is None or _sweep_worker_task.done():
        _sweep_worker_task = asyncio.create_task(_sweep_worker_loop())
        sweep_logger.info("Sweep worker started")


@app.on_event("shutdown")
async def stop_sweep_worker() -> None:
    global _sweep_worker_task
    if _sweep_worker_task is None:
        return
    _sweep_worker_task.cancel()
    try:
        await _sweep_worker_task
    except asyncio.CancelledError:
        pass
    _sweep_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok", "channels": available_channels()}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "escalations": db.query(Escalation).count(),
        "agents": db.query(AgentPresence).count(),
    }
