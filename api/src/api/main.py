"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from catracker.config import get_settings
from catracker.database import close_engine, get_engine
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from api.errors import register_exception_handlers
from api.routers import health, payment_webhook, subscriptions
from api.services.maintenance import run_maintenance_worker

logger = logging.getLogger(__name__)


def _migration_heads(repo_root: Path) -> set[str] | None:
    alembic_ini = repo_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found; skipping migration revision check")
        return None
    config = AlembicConfig(str(alembic_ini))
    config.set_main_option("script_location", str(repo_root / "alembic"))
    return set(ScriptDirectory.from_config(config).get_heads())


async def _applied_revisions() -> set[str]:
    async with get_engine().connect() as connection:
        result = await connection.execute(text("SELECT version_num FROM alembic_version"))
        return {str(version) for (version,) in result.fetchall() if version}


async def _assert_database_revision_current() -> None:
    """Refuse to start against a schema older or newer than the bundled migrations."""
    if get_settings().skip_migration_check:
        return
    expected = _migration_heads(Path(__file__).resolve().parents[3])
    if not expected:
        return
    try:
        applied = await _applied_revisions()
    except Exception as exc:
        raise RuntimeError(
            "Could not read alembic_version; run `alembic upgrade head` first"
        ) from exc
    if applied != expected:
        raise RuntimeError(
            f"Schema at {sorted(applied)} but migrations expect {sorted(expected)}; "
            "run `alembic upgrade head`"
        )


async def _stop_worker(task: asyncio.Task, stop_event: asyncio.Event) -> None:
    stop_event.set()
    try:
        await asyncio.wait_for(task, timeout=5)
    except Exception:
        logger.warning("Maintenance worker did not stop cleanly; cancelling")
        task.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await task


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    try:
        await _assert_database_revision_current()
    except Exception:
        await close_engine()
        raise
    stop_event = asyncio.Event()
    worker = asyncio.create_task(run_maintenance_worker(stop_event))
    try:
        yield
    finally:
        await _stop_worker(worker, stop_event)
        await close_engine()


def _warn_insecure_defaults() -> None:
    settings = get_settings()
    if settings.secret_key == "change-me-in-production":
        logger.warning("SECRET_KEY uses insecure default value")
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is empty; all webhook events will be rejected")


def _webhook_prefix(path: str) -> str:
    normalized = "/" + path.strip().strip("/")
    return normalized if normalized != "/" else "/ca-stripe-webho"


def create_app() -> FastAPI:
    app = FastAPI(title="CA Tracker API", version="0.1.0", lifespan=lifespan)
    settings = get_settings()
    _warn_insecure_defaults()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.public_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(health.router, tags=["health"])
    app.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
    app.include_router(
        payment_webhook.router,
        prefix=_webhook_prefix(settings.stripe_webhook_path),
        tags=["webhooks"],
    )
    return app


app = create_app()
