"""
Pickrr HTTP API
Webhook receiver, request lifecycle operations and operational endpoints.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .exceptions import (
    ConfigurationError,
    ExternalServiceError,
    NotFoundError,
    PickrrError,
    ValidationError,
    WebhookAuthError,
)
from .logging_config import ActivityLogHandler, setup_logging
from .models import (
    RejectionInput,
    RemovalInput,
    SelectionInput,
    ServiceTestInput,
    UserContext,
)
from .services import Services, build_services
from .status import RequestStatus

logger = logging.getLogger(__name__)


# Global instances
settings = Settings()
services: Optional[Services] = None
activity_log_handler: Optional[ActivityLogHandler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global services, activity_log_handler

    activity_log_handler = setup_logging(
        log_level=settings.log_level,
        log_file=settings.log_file,
        log_format=settings.log_format,
        max_file_size_mb=settings.log_max_size_mb,
        backup_count=settings.log_backup_count,
        activity_log_size=settings.activity_log_size,
    )

    logger.info("Starting Pickrr...")
    os.makedirs(settings.config_path, exist_ok=True)
    services = await build_services(settings)
    logger.info(f"Store: {settings.db_path}")

    yield

    if services:
        await services.close()
    logger.info("Pickrr stopped")


app = FastAPI(
    title="Pickrr",
    description="Request lifecycle reconciliation between Overseerr, qBittorrent and the *arr apps",
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Helper Functions
# =============================================================================


def sanitize_error_message(error: Exception) -> str:
    """Sanitize error messages to avoid leaking sensitive information."""
    error_str = str(error)
    sensitive_patterns = [
        "token",
        "password",
        "secret",
        "key",
        "auth",
        "credential",
        "bearer",
        "sid=",
    ]
    error_lower = error_str.lower()
    for pattern in sensitive_patterns:
        if pattern in error_lower:
            return "An internal error occurred. Check server logs for details."
    if len(error_str) > 200:
        return error_str[:200] + "..."
    return error_str


def status_for(error: PickrrError) -> int:
    if isinstance(error, WebhookAuthError):
        return 401
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConfigurationError):
        return 503
    if isinstance(error, ExternalServiceError):
        return 502
    return 500


@app.exception_handler(PickrrError)
async def pickrr_error_handler(request: Request, exc: PickrrError):
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    message = exc.message if status < 500 else sanitize_error_message(exc)
    return JSONResponse({"ok": False, "error": message}, status_code=status)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        {"ok": False, "error": sanitize_error_message(exc)}, status_code=500
    )


def get_services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


def current_user(request: Request) -> UserContext:
    """Opaque caller identity forwarded by the fronting auth layer."""
    return UserContext(
        name=request.headers.get("x-pickrr-user") or "admin",
        role=request.headers.get("x-pickrr-role") or "admin",
    )


async def read_model(request: Request, model):
    """Parse a JSON body into ``model``; malformed input is a 400."""
    try:
        body = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON") from e
    try:
        return model.model_validate(body if body is not None else {})
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise HTTPException(status_code=400, detail=errors) from e


def parse_statuses(raw: Optional[str]) -> Optional[list[RequestStatus]]:
    if not raw or raw == "all":
        return None
    try:
        return [RequestStatus(s.strip()) for s in raw.split(",") if s.strip()]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Unknown status: {e}") from e


# =============================================================================
# Webhook
# =============================================================================


@app.post("/api/webhook/overseerr")
async def overseerr_webhook(request: Request):
    """Receive request-manager notifications. Answers 200 unless auth or JSON fails."""
    svc = get_services()
    await svc.webhook.authenticate(request.headers, request.query_params)
    data = svc.webhook.parse(await request.body())
    return JSONResponse(await svc.webhook.handle(data))


# =============================================================================
# Requests
# =============================================================================


@app.post("/api/requests/sync")
async def sync_requests():
    """Run the reconciliation job once."""
    svc = get_services()
    result = await svc.reconciliation.run()
    return JSONResponse({"ok": True, **result.to_dict()})


@app.get("/api/requests")
async def list_requests(status: Optional[str] = None):
    svc = get_services()
    requests = await svc.persistence.list_requests(parse_statuses(status))
    return JSONResponse([r.to_dict() for r in requests])


@app.get("/api/requests/{request_id}")
async def get_request(request_id: str):
    svc = get_services()
    request = await svc.persistence.get_request(request_id)
    if request is None:
        raise HTTPException(status_code=404, detail="Not found")
    return JSONResponse(request.to_dict())


@app.post("/api/requests/{request_id}/reject")
async def reject_request(request_id: str, request: Request):
    svc = get_services()
    body = await request.body()
    options = await read_model(request, RejectionInput) if body.strip() else RejectionInput()
    return JSONResponse(await svc.rejection.reject(request_id, options.stop_download))


@app.get("/api/history")
async def history():
    """Finished requests, most recently changed first."""
    svc = get_services()
    requests = await svc.persistence.list_requests(
        [RequestStatus.DONE, RequestStatus.FAILED], order_by="updated_at"
    )
    return JSONResponse([r.to_dict() for r in requests])


# =============================================================================
# Downloads
# =============================================================================


@app.post("/api/download")
async def grab(request: Request):
    """Send a chosen search result to the download client."""
    svc = get_services()
    selection = await read_model(request, SelectionInput)
    return JSONResponse(await svc.selection.select(selection, current_user(request)))


@app.get("/api/downloads")
async def downloads():
    """Download-client torrents merged with local linkage; completes finished requests."""
    svc = get_services()
    return JSONResponse(await svc.poller.poll())


@app.post("/api/downloads/remove")
async def remove_download(request: Request):
    svc = get_services()
    action = await read_model(request, RemovalInput)
    return JSONResponse(await svc.poller.apply_action(action))


# =============================================================================
# Operations
# =============================================================================


@app.post("/api/settings/test")
async def test_service(request: Request):
    """Test connectivity to one external service."""
    svc = get_services()
    target = await read_model(request, ServiceTestInput)
    client = svc.clients[target.service]
    ok, message = await client.test_connection(timeout=svc.settings.health_check_timeout)
    result = {"ok": ok, "service": target.service}
    if not ok:
        result["error"] = sanitize_error_message(Exception(message))
    return JSONResponse(result)


@app.get("/health")
async def health():
    """Health check endpoint."""
    if services is None:
        return JSONResponse({"status": "starting"}, status_code=503)

    components = {}
    try:
        stats = await services.persistence.get_stats()
        components["store"] = {"ok": True, "requests": stats.get("requests", 0),
                               "queued_jobs": stats.get("webhook_jobs", 0)}
    except Exception as e:
        components["store"] = {"ok": False, "error": sanitize_error_message(e)}

    for name, client in services.clients.items():
        components[name] = {"configured": client.configured}

    healthy = components["store"]["ok"]
    return JSONResponse(
        {"status": "healthy" if healthy else "degraded", "components": components},
        status_code=200 if healthy else 503,
    )


@app.get("/api/logs")
async def get_activity_logs(
    limit: int = 100,
    level: Optional[str] = None,
    request_id: Optional[str] = None,
    torrent_hash: Optional[str] = None,
):
    """Get activity logs for debugging and monitoring."""
    if not activity_log_handler:
        return JSONResponse({"count": 0, "logs": []})

    logs = activity_log_handler.get_logs(
        limit=limit,
        level=level,
        request_id=request_id,
        torrent_hash=torrent_hash,
    )
    return JSONResponse({"count": len(logs), "logs": logs})


# =============================================================================
# Main entry point
# =============================================================================


def main():
    """Run the server."""
    import uvicorn
    uvicorn.run(
        "pickrr.server:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
