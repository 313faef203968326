"""
HTTP API for the certificate monitor.

Routes live under ``/api/v1`` and wrap payloads in ``{"data": ...}``; the
domain listing additionally carries ``total``, ``page`` and ``limit``.
Manual triggers answer 202 with the queued task, which can be polled under
``/tasks/{id}``.
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .exceptions import (
    CertMonitorError,
    ConfigError,
    PartialBatchFailure,
    PersistenceError,
    ProviderError,
    RecordNotFoundError,
    RenewalError,
    TemplateError,
    ValidationError,
)
from .models import NotificationSettings, utcnow
from .service import MonitorService


API_PREFIX = "/api/v1"

ERROR_STATUS = {
    ValidationError: 400,
    TemplateError: 400,
    RecordNotFoundError: 404,
    PartialBatchFailure: 207,
    RenewalError: 409,
    ProviderError: 502,
    ConfigError: 500,
    PersistenceError: 500,
}


class SettingsPatch(BaseModel):
    is_ignored: Optional[bool] = None
    auto_renew: Optional[bool] = None


class BatchSettingsRequest(BaseModel):
    ids: list[str]
    is_ignored: bool


class RenewRequest(BaseModel):
    domain: str


class AcmeRequest(BaseModel):
    email: str


def get_service(request: Request) -> MonitorService:
    return request.app.state.service


def status_for(error: CertMonitorError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 500


async def handle_monitor_error(request: Request, exc: CertMonitorError) -> JSONResponse:
    return JSONResponse(status_code=status_for(exc), content={"error": exc.to_dict()})


def parse_settings(payload: dict) -> NotificationSettings:
    try:
        return NotificationSettings.from_dict(payload)
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(
            code="invalid_settings",
            message=f"Invalid notification settings: {e}",
        ) from e


router = APIRouter(prefix=API_PREFIX)


# --- Domains -------------------------------------------------------------------


@router.get("/domains", tags=["domains"])
async def list_domains(
    page: int = Query(1),
    limit: int = Query(10),
    sort: str = Query(""),
    status: str = Query(""),
    proxied: str = Query(""),
    ignored: str = Query(""),
    zone: str = Query(""),
    service: MonitorService = Depends(get_service),
):
    """Filtered, sorted page of domain records."""
    result = service.reconciler.query(
        page=page,
        page_size=limit,
        sort=sort,
        status=status,
        proxied=proxied,
        ignored=ignored,
        zone=zone,
    )
    return result.to_dict()


@router.get("/domains/{record_id}", tags=["domains"])
async def get_domain(record_id: str, service: MonitorService = Depends(get_service)):
    return {"data": service.reconciler.get_record(record_id).to_dict()}


@router.post("/domains/sync", status_code=202, tags=["domains"])
async def sync_domains(service: MonitorService = Depends(get_service)):
    return {"data": service.submit_sync().to_dict()}


@router.post("/domains/scan", status_code=202, tags=["domains"])
async def scan_domains(service: MonitorService = Depends(get_service)):
    return {"data": service.submit_scan().to_dict()}


@router.patch("/domains/{record_id}/settings", tags=["domains"])
async def update_domain_settings(
    record_id: str,
    patch: SettingsPatch,
    service: MonitorService = Depends(get_service),
):
    record = service.reconciler.get_record(record_id)
    if patch.is_ignored is not None:
        record = await service.reconciler.set_ignored(record_id, patch.is_ignored)
    if patch.auto_renew is not None:
        record = await service.reconciler.set_auto_renew(record_id, patch.auto_renew)
    return {"data": record.to_dict()}


@router.post("/domains/batch-settings", tags=["domains"])
async def batch_update_settings(
    request: BatchSettingsRequest,
    service: MonitorService = Depends(get_service),
):
    """Apply is_ignored to many ids; 207 enumerates the ids that failed."""
    result = await service.reconciler.batch_set_ignored(request.ids, request.is_ignored)
    result.raise_for_failures()
    return {"data": result.to_dict()}


@router.post("/domains/renew", status_code=202, tags=["domains"])
async def renew_domain(request: RenewRequest, service: MonitorService = Depends(get_service)):
    task = await service.submit_renew(request.domain)
    return {"data": task.to_dict()}


@router.get("/zones", tags=["domains"])
async def list_zones(service: MonitorService = Depends(get_service)):
    return {"data": service.reconciler.list_zones()}


@router.get("/stats", tags=["domains"])
async def get_stats(service: MonitorService = Depends(get_service)):
    return {"data": service.reconciler.stats().to_dict()}


# --- Settings ------------------------------------------------------------------


@router.get("/settings", tags=["settings"])
async def get_settings(service: MonitorService = Depends(get_service)):
    return {"data": service.get_settings().to_dict()}


@router.post("/settings", tags=["settings"])
async def save_settings(
    payload: dict[str, Any] = Body(...),
    service: MonitorService = Depends(get_service),
):
    saved = service.save_settings(parse_settings(payload))
    return {"data": saved.to_dict()}


@router.post("/settings/test", status_code=202, tags=["settings"])
async def test_settings(
    payload: dict[str, Any] = Body(...),
    service: MonitorService = Depends(get_service),
):
    task = service.submit_test_notification(parse_settings(payload))
    return {"data": task.to_dict()}


@router.get("/settings/test", tags=["settings"])
async def last_test_results(service: MonitorService = Depends(get_service)):
    results = service.dispatcher.last_test_results
    return {"data": {channel: record.to_dict() for channel, record in results.items()}}


@router.post("/settings/acme", tags=["settings"])
async def save_acme(request: AcmeRequest, service: MonitorService = Depends(get_service)):
    settings = service.save_acme_email(request.email)
    return {"data": {"acme_email": settings.acme_email}}


# --- Tasks and notifications ---------------------------------------------------


@router.get("/tasks", tags=["tasks"])
async def list_tasks(service: MonitorService = Depends(get_service)):
    return {"data": [task.to_dict() for task in service.tasks.list()]}


@router.get("/tasks/{task_id}", tags=["tasks"])
async def get_task(task_id: str, service: MonitorService = Depends(get_service)):
    return {"data": service.tasks.get(task_id).to_dict()}


@router.get("/notifications/deliveries", tags=["notifications"])
async def list_deliveries(service: MonitorService = Depends(get_service)):
    return {
        "data": [record.to_dict() for record in service.dispatcher.deliveries],
        "failure_count": service.dispatcher.failure_count,
    }


@router.get("/health", tags=["health"])
async def health_check():
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": utcnow().isoformat(),
    }


def create_app(service: MonitorService, run_scheduler: bool = True) -> FastAPI:
    """
    Build the FastAPI application around a service instance.

    Args:
        service: The wired MonitorService
        run_scheduler: Start the recurring scan/sync schedule with the app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_scheduler:
            await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(title="cert-monitor", version=__version__, lifespan=lifespan)
    app.state.service = service
    app.add_exception_handler(CertMonitorError, handle_monitor_error)
    app.include_router(router)
    return app
