import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from api import admin, webhooks
from config import get_settings
from db import dispose_engine, init_engine
from db.connection import create_schema
from errors import LeadRouterError
from tools.auth import token_verifier
from tools.dead_letter import dead_letter_queue
from tools.llm import llm_client
from tools.processing_status import processing_status
from tools.registry import registry_client
from tools.slack import slack_notifier

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Raises FatalConfigurationError so the process never starts half-configured
    settings = get_settings()

    os.makedirs("logs", exist_ok=True)
    sink_id = logger.add("logs/app.log", rotation="1 day", retention="7 days", level=settings.log_level)
    logger.info(f"Starting Sales Lead Router ({settings.app_env})")

    init_engine(settings.database_url)
    await create_schema()

    llm_client.configure(settings)
    registry_client.configure(settings)
    slack_notifier.configure(settings)
    token_verifier.configure(settings)
    await dead_letter_queue.start(
        redis_url=settings.redis_url,
        max_size=settings.dead_letter_max_size,
        ttl_seconds=settings.dead_letter_ttl_seconds,
    )
    await processing_status.start(ttl_seconds=settings.status_ttl_seconds, max_size=settings.status_max_size)

    try:
        yield
    finally:
        await processing_status.close()
        await dead_letter_queue.close()
        await dispose_engine()
        logger.info("Sales Lead Router stopped")
        logger.remove(sink_id)


# Initialize FastAPI app
app = FastAPI(
    title="Sales Lead Router",
    description="Campaign click intake, AI enrichment and sales-team lead routing",
    version=VERSION,
    lifespan=lifespan,
)

app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": VERSION,
        "dead_letter": dead_letter_queue.storage,
        "circuits": [
            llm_client.breaker.snapshot(),
            registry_client.breaker.snapshot(),
            slack_notifier.breaker.snapshot(),
        ],
    }


# Error handlers
@app.exception_handler(LeadRouterError)
async def lead_router_exception_handler(request: Request, exc: LeadRouterError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "error", "code": exc.code, "message": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
    return JSONResponse(
        status_code=400,
        content={"status": "error", "code": "VALIDATION_ERROR", "message": details},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=not get_settings().is_production,
        log_level="info"
    )
