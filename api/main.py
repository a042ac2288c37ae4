"""
FastAPI Application: health and diagnostics for the mail queue worker.

Provides:
- Health endpoint reporting broker and SMTP state (503 while degraded)
- Queue/worker counters for debugging
- Lifespan hooks that start and stop the Runtime
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
from fastapi.responses import JSONResponse

from config.logging import setup_logging
from config.settings import get_settings
from core.runtime import Runtime

logger = structlog.get_logger()


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the app around ``runtime``, or around one built from settings
    when the app starts."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime
        if rt is None:
            settings = get_settings()
            setup_logging(settings.log_level, debug=settings.debug)
            rt = Runtime(settings)
        app.state.runtime = rt
        await rt.start()
        yield
        await rt.stop()

    app = FastAPI(
        title="Mail Queue",
        description="Resilient email job queue over RabbitMQ",
        version="1.0.0",
        lifespan=lifespan,
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        rt: Runtime = request.app.state.runtime
        report = await rt.health()
        body = {
            "service": "email",
            "status": "running" if report["healthy"] else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "connections": {
                "broker": report["broker"],
                "broker_state": report["broker_state"],
                "smtp": report["smtp"],
            },
            "worker": rt.worker.stats(),
        }
        return JSONResponse(body, status_code=200 if report["healthy"] else 503)

    @app.get("/")
    async def index(request: Request):
        rt: Runtime = request.app.state.runtime
        return {
            "service": "email",
            "message": "Hello from email service",
            "emailServiceReady": rt.email_sender.is_ready,
        }

    @app.get("/api/v1/queue/stats")
    async def queue_stats(request: Request):
        rt: Runtime = request.app.state.runtime
        return {
            "broker": rt.supervisor.stats(),
            "consumers": rt.gateway.consumers(),
            "worker": rt.worker.stats(),
            "sender": await rt.email_sender.health_check(),
            "sender_kinds": [k.value for k in rt.senders.get_available()],
            "store": await rt.job_summary(),
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=3001)


if __name__ == "__main__":
    main()
