"""
FastAPI Application — email submission and queue administration.

Provides:
- Email submission endpoint backed by the durable queue
- Queue status, retry-all-failed and clear-failed admin endpoints
- Store persistence diagnostics
- Health check
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from channels.base import LogOnlyTransport, SendFn, TransportError
from channels.email_adapter import SmtpEmailTransport
from config.settings import Settings, get_settings
from job_queue.email_queue import EmailQueue
from job_queue.errors import QueueDisabledError, QueueError, StoreUnavailableError
from job_queue.store import QueueStore, create_queue_store

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class SendEmailRequest(BaseModel):
    to: str = Field(..., min_length=1)
    subject: str
    body: str


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_transport(settings: Settings) -> SendFn:
    if settings.smtp.enabled:
        return SmtpEmailTransport(settings.smtp)
    logger.warning("smtp_disabled_log_only_transport")
    return LogOnlyTransport()


def get_email_queue(request: Request) -> EmailQueue:
    return request.app.state.email_queue


def create_app(
    settings: Settings = None,
    store: Optional[QueueStore] = None,
    transport: SendFn = None,
) -> FastAPI:
    settings = settings or get_settings()
    if store is None:
        store = create_queue_store(settings.redis)
    email_queue = EmailQueue(store, settings.queue, transport or build_transport(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await email_queue.start()
        logger.info("mailqueue_started",
                    app_name=settings.app_name,
                    store=type(email_queue.store).__name__,
                    queue_enabled=email_queue.enabled)
        yield
        await email_queue.stop()
        logger.info("mailqueue_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Asynchronous email delivery queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.email_queue = email_queue
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    register_routes(app)
    return app


# ──────────────────────────────────────────────────────────────
#  Error Handling
# ──────────────────────────────────────────────────────────────

def register_error_handlers(app: FastAPI):

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        status = 503 if isinstance(exc, (QueueDisabledError, StoreUnavailableError)) else 500
        logger.error("email_queue_request_failed",
                     path=request.url.path,
                     status=status,
                     error=str(exc))
        return JSONResponse(status_code=status, content={"success": False, "message": str(exc)})

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError):
        logger.error("email_transport_request_failed",
                     path=request.url.path,
                     retryable=exc.retryable,
                     error=str(exc))
        return JSONResponse(
            status_code=502,
            content={"success": False, "message": f"Email delivery failed: {exc}"},
        )


def register_routes(app: FastAPI):

    # ══════════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        queue = get_email_queue(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queue_enabled": queue.enabled,
            "store_ping": await queue.store.ping() if queue.store is not None else False,
        }

    # ══════════════════════════════════════════════════════════════
    #  SUBMISSION
    # ══════════════════════════════════════════════════════════════

    @app.post("/api/v1/emails")
    async def submit_email(req: SendEmailRequest, request: Request):
        queue = get_email_queue(request)
        task_id = await queue.submit(req.to, req.subject, req.body)
        if task_id is not None:
            status = "queued"
        elif queue.enabled:
            status = "accepted"
        else:
            status = "sent"
        return {"success": True, "status": status, "task_id": task_id}

    # ══════════════════════════════════════════════════════════════
    #  QUEUE ADMIN
    # ══════════════════════════════════════════════════════════════

    @app.get("/api/v1/email-queue/status")
    async def email_queue_status(request: Request):
        stats = await get_email_queue(request).stats()
        return {"success": True, "data": stats}

    @app.post("/api/v1/email-queue/retry")
    async def retry_failed_emails(request: Request):
        count = await get_email_queue(request).retry_failed_all()
        return {
            "success": True,
            "message": f"Requeued {count} failed emails",
            "count": count,
        }

    @app.post("/api/v1/email-queue/clear")
    async def clear_failed_emails(request: Request):
        count = await get_email_queue(request).clear_failed_all()
        return {
            "success": True,
            "message": f"Cleared {count} failed emails",
            "count": count,
        }

    @app.get("/api/v1/email-queue/persistence")
    async def email_queue_persistence(request: Request):
        status = await get_email_queue(request).persistence_status()
        return {"success": True, "data": status}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
