"""HTTP surface: push notification receiver plus cron and health endpoints.

Routes:
- POST /webhook/calendar             Google push notifications (always answered quickly;
                                     the reconciliation itself runs later on a timer)
- GET  /webhook/calendar?token=...   pending debounce timers
- GET  /healthz                      liveness
- POST /cron/sync                    full reconciliation of every source calendar
- POST /cron/renew-subscriptions     renew channels that are absent or near expiry
Cron routes require "Authorization: Bearer <server.cron_secret>".

Usage:
    shadowcal serve --config /data/config.yaml
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .errors import ValidationError
from .ingress import NotificationIngress

logger = logging.getLogger(__name__)

__all__ = ["create_app"]


def create_app(
    ingress: NotificationIngress,
    *,
    cron_secret: str | None,
    sync_all: Callable[[], dict[str, Any]],
    renew_all: Callable[[], dict[str, Any]],
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("server-started")
        yield
        cancelled = ingress.coalescer.cancel_all()
        logger.info("server-stopped", extra={"cancelled_timers": cancelled})

    app = FastAPI(title="shadowcal", docs_url=None, redoc_url=None, lifespan=lifespan)

    def require_cron(request: Request) -> None:
        header = request.headers.get("authorization", "")
        expected = f"Bearer {cron_secret}" if cron_secret else ""
        if not expected or not hmac.compare_digest(header.encode("utf-8"), expected.encode("utf-8")):
            logger.warning("cron-rejected", extra={"path": request.url.path})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc)})

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok", "timestamp": datetime.now(tz=UTC).isoformat()}

    @app.post("/webhook/calendar")
    def receive_notification(request: Request) -> dict[str, Any]:
        ack = ingress.handle(request.headers, request.query_params)
        return {
            "success": True,
            "message": ack.message,
            "calendar_id": ack.calendar_id,
            "resource_state": ack.resource_state,
        }

    @app.get("/webhook/calendar")
    def timer_status(request: Request) -> dict[str, Any]:
        if not ingress.authorized(request.query_params.get("token")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        timers = ingress.coalescer.pending()
        return {
            "success": True,
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "active_timers": len(timers),
            "timers": timers,
        }

    @app.post("/cron/sync")
    def cron_sync(request: Request) -> dict[str, Any]:
        require_cron(request)
        return {"success": True, "data": sync_all()}

    @app.post("/cron/renew-subscriptions")
    def cron_renew(request: Request) -> dict[str, Any]:
        require_cron(request)
        return {"success": True, "data": renew_all()}

    return app
