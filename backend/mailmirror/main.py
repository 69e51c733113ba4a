"""Mail Mirror Engine — FastAPI Application."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select

from mailmirror.config import settings
from mailmirror.database import async_session, init_db
from mailmirror.api import accounts, sync
from mailmirror.errors import AccountNotFoundError, ReauthRequiredError
from mailmirror.models.account import Account, AccountStatus
from mailmirror.services.graph_client import create_graph_client
from mailmirror.services.sync_orchestrator import SyncOrchestrator
from mailmirror.services.token_service import token_manager

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("mail-mirror-engine")

# Background task handles
_sync_task: asyncio.Task = None
_token_task: asyncio.Task = None


async def syncable_account_ids() -> list[str]:
    """Accounts a scheduled run may touch; needs_reauth waits for a sign-in."""
    async with async_session() as db:
        result = await db.execute(
            select(Account.id).where(Account.status != AccountStatus.NEEDS_REAUTH).order_by(Account.created_at)
        )
        return [row[0] for row in result.all()]


async def sync_all_accounts():
    """One scheduled pass over every syncable account, one account at a time."""
    for account_id in await syncable_account_ids():
        try:
            async with create_graph_client(account_id) as graph:
                result = await SyncOrchestrator(graph, account_id).perform_full_sync()
        except AccountNotFoundError:
            logger.warning(f"Periodic sync: account {account_id} disappeared, skipping")
            continue
        logger.info(
            f"Periodic sync: {result.account_email} {result.overall_status.value}, "
            f"{result.message_sync.total_messages} messages"
        )


async def periodic_sync():
    """Background task that syncs all accounts on a schedule."""
    while True:
        try:
            await asyncio.sleep(settings.sync_interval_minutes * 60)
            await sync_all_accounts()
        except asyncio.CancelledError:
            logger.info("Periodic sync task cancelled")
            break
        except Exception as e:
            logger.error(f"Periodic sync error: {e}")
            await asyncio.sleep(30)  # Brief pause on error before retry


async def periodic_token_refresh():
    """Background task that refreshes tokens before they expire."""
    while True:
        try:
            await asyncio.sleep(settings.token_refresh_interval_minutes * 60)
            await token_manager.refresh_expiring_tokens()
        except asyncio.CancelledError:
            logger.info("Token refresh task cancelled")
            break
        except Exception as e:
            logger.error(f"Token refresh job error: {e}")
            await asyncio.sleep(30)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _sync_task, _token_task

    # Startup
    logger.info("=" * 60)
    logger.info("Mail Mirror Engine starting up")
    logger.info(f"Graph: {settings.graph_base_url}")
    logger.info(f"Database: {settings.database_url.split('@')[-1]}")
    logger.info(f"Sync interval: {settings.sync_interval_minutes} min")
    logger.info(f"Token refresh interval: {settings.token_refresh_interval_minutes} min")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    _sync_task = asyncio.create_task(periodic_sync())
    _token_task = asyncio.create_task(periodic_token_refresh())
    logger.info("Periodic sync and token refresh tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in (_sync_task, _token_task):
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    logger.info("Shutdown complete")


# Create app
app = FastAPI(
    title="Mail Mirror Engine",
    description="One-way Microsoft Graph mailbox mirror",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS, allow frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3100", "http://127.0.0.1:3100"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AccountNotFoundError)
async def account_not_found_handler(request: Request, exc: AccountNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ReauthRequiredError)
async def reauth_required_handler(request: Request, exc: ReauthRequiredError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# Register routers
app.include_router(sync.router)
app.include_router(accounts.router)


@app.get("/")
async def root():
    """Root endpoint — basic info."""
    return {
        "app": "Mail Mirror Engine",
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "periodic_sync": _sync_task is not None and not _sync_task.done(),
        "token_refresh": _token_task is not None and not _token_task.done(),
    }
