import asyncio
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wa_control.config import settings
from wa_control.database import SessionLocal, init_db
from wa_control.logging_config import get_logger, setup_logging
from wa_control.routers import admin, conversations, handovers, messages, webhook
from wa_control.services.alert_service import alert_critical
from wa_control.services.reconciler_service import release_stale_handovers

setup_logging(settings.log_level, log_format=settings.log_format, mask_phones=settings.log_mask_phones)

reconciler_logger = get_logger("reconciler_worker")
_reconciler_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_reconciler_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("RECONCILER_WORKER_ENABLED"), default=True)


def _get_reconciler_interval() -> float:
    interval_seconds = float(os.environ.get("RECONCILER_INTERVAL_SECONDS", "60"))
    return max(interval_seconds, 1.0)


def _run_reconciler_once() -> dict:
    db = SessionLocal()
    try:
        return release_stale_handovers(db, timeout_minutes=settings.handover_timeout_minutes)
    finally:
        db.close()


async def _reconciler_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(_get_reconciler_interval())
            summary = await asyncio.to_thread(_run_reconciler_once)
            if summary["released"]:
                reconciler_logger.info(
                    "Reconciler released stale handovers",
                    extra={"context": {"released": summary["released"], "skipped": summary["skipped"]}},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            reconciler_logger.error(
                "Reconciler loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.to_thread(alert_critical, "Reconciler loop failed", {"error": str(exc)})


async def _start_reconciler_worker() -> None:
    global _reconciler_task
    if not _is_reconciler_worker_enabled():
        return
    if _reconciler_task is None or _reconciler_task.done():
        _reconciler_task = asyncio.create_task(_reconciler_worker_loop())
        reconciler_logger.info("Reconciler worker started")


async def _stop_reconciler_worker() -> None:
    global _reconciler_task
    if _reconciler_task is None:
        return
    _reconciler_task.cancel()
    try:
        await _reconciler_task
    except asyncio.CancelledError:
        pass
    _reconciler_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    await _start_reconciler_worker()
    yield
    await _stop_reconciler_worker()


app = FastAPI(
    title="WhatsApp Control Plane",
    description="Conversation ownership and outbound delivery for WhatsApp",
    version="0.1.0",
    lifespan=lifespan,
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

app.include_router(webhook.router)
app.include_router(messages.router)
app.include_router(conversations.router)
app.include_router(handovers.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
