from contextlib import contextmanager
from typing import Iterator

from fastapi import APIRouter, Depends, Header, HTTPException

from vm_orchestrator.auth import token_matches
from vm_orchestrator.config import get_settings
from vm_orchestrator.errors import (
    PreconditionNotMet,
    RemoteRejected,
    RemoteUnavailable,
    ValidationError,
)
from vm_orchestrator.metrics import metrics
from vm_orchestrator.runtime import Services, get_services
from vm_orchestrator.schemas import (
    ActionResponse,
    CloneRequest,
    ConfirmRequest,
    ConsoleRead,
    DeleteResourceRequest,
    FocusRead,
    OperationResult,
    PhaseTransitionRead,
    ProvisioningRequest,
    ProvisioningRunRead,
    ResourceListRead,
    SeriesPoint,
    SnapshotCreateRequest,
    TelemetryRead,
    TelemetrySampleRead,
)
from vm_orchestrator.services.focus import FocusView, ResourceFocusController
from vm_orchestrator.services.provisioning import ProvisioningRun, validate_request


def _bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    return authorization.split(" ", 1)[1]


def require_api_token(authorization: str | None = Header(default=None)) -> None:
    expected = get_settings().api_token
    if not expected:
        return
    if not token_matches(_bearer_token(authorization), expected):
        raise HTTPException(status_code=401, detail="invalid api token")


router = APIRouter()
v1_router = APIRouter(prefix="/v1", dependencies=[Depends(require_api_token)])


@contextmanager
def _translated_errors() -> Iterator[None]:
    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except PreconditionNotMet as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except RemoteRejected as exc:
        raise HTTPException(status_code=502, detail=exc.detail) from exc
    except RemoteUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _run_read(run: ProvisioningRun) -> ProvisioningRunRead:
    error = run.error
    return ProvisioningRunRead(
        run_id=run.run_id,
        hostname=run.hostname,
        state=run.state.value,
        phase=run.phase.value if run.phase else None,
        address=run.address,
        failed_phase=error.phase if error else None,
        reason=error.reason if error else None,
        resource_created=error.resource_created if error else None,
        warnings=list(run.warnings),
        connect_hint=run.connect_hint,
        transitions=[
            PhaseTransitionRead(
                phase=t.phase.value, status=t.status.value, detail=t.detail, at=t.at
            )
            for t in list(run.transitions)
        ],
    )


def _focus_read(view: FocusView) -> FocusRead:
    return FocusRead(
        name=view.name,
        state=view.state.value if view.state else None,
        running=view.running,
        monitoring=view.monitoring,
        detail=view.detail,
        snapshots=view.snapshots,
    )


def _action_response(
    controller: ResourceFocusController, result: OperationResult | None
) -> ActionResponse:
    return ActionResponse(
        performed=result is not None,
        result=result,
        focus=_focus_read(controller.view()),
    )


def _get_run(services: Services, run_id: str) -> ProvisioningRun:
    run = services.orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="unknown provisioning run")
    return run


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@v1_router.get("/resources", response_model=ResourceListRead)
def list_resources(services: Services = Depends(get_services)) -> ResourceListRead:
    with _translated_errors():
        resources = services.focus.refresh_list()
    return ResourceListRead(
        resources=resources,
        running_count=sum(1 for r in resources if r.running),
        total_count=len(resources),
    )


@v1_router.post("/provisioning", response_model=ProvisioningRunRead, status_code=202)
def submit_provisioning(
    req: ProvisioningRequest, services: Services = Depends(get_services)
) -> ProvisioningRunRead:
    with _translated_errors():
        validate_request(req)
        run = services.orchestrator.submit(req)
    return _run_read(run)


@v1_router.get("/provisioning", response_model=list[ProvisioningRunRead])
def list_provisioning(
    services: Services = Depends(get_services),
) -> list[ProvisioningRunRead]:
    return [_run_read(run) for run in services.orchestrator.list_runs()]


@v1_router.get("/provisioning/{run_id}", response_model=ProvisioningRunRead)
def get_provisioning(
    run_id: str, services: Services = Depends(get_services)
) -> ProvisioningRunRead:
    return _run_read(_get_run(services, run_id))


@v1_router.post("/provisioning/{run_id}/cancel", response_model=ProvisioningRunRead)
def cancel_provisioning(
    run_id: str, services: Services = Depends(get_services)
) -> ProvisioningRunRead:
    run = _get_run(services, run_id)
    run.cancel()
    return _run_read(run)


@v1_router.get("/focus", response_model=FocusRead)
def get_focus(services: Services = Depends(get_services)) -> FocusRead:
    return _focus_read(services.focus.view())


@v1_router.put("/focus/{name}", response_model=FocusRead)
def set_focus(name: str, services: Services = Depends(get_services)) -> FocusRead:
    with _translated_errors():
        view = services.focus.focus(name)
    return _focus_read(view)


@v1_router.delete("/focus")
def clear_focus(services: Services = Depends(get_services)) -> dict[str, bool]:
    services.focus.unfocus()
    return {"ok": True}


@v1_router.post("/focus/actions/{action}", response_model=ActionResponse)
def focus_action(
    action: str,
    req: ConfirmRequest | None = None,
    services: Services = Depends(get_services),
) -> ActionResponse:
    controller = services.focus
    confirm = req.confirm if req else False
    operations = {
        "start": controller.start,
        "reboot": controller.reboot,
        "pause": controller.pause,
        "resume": controller.resume,
        "shutdown": lambda: controller.shutdown(confirm=confirm),
        "destroy": lambda: controller.destroy(confirm=confirm),
    }
    operation = operations.get(action)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"unknown action {action}")
    with _translated_errors():
        result = operation()
    return _action_response(controller, result)


@v1_router.post("/focus/delete", response_model=ActionResponse)
def delete_focused(
    req: DeleteResourceRequest, services: Services = Depends(get_services)
) -> ActionResponse:
    with _translated_errors():
        result = services.focus.delete(
            confirm=req.confirm,
            confirm_name=req.confirm_name,
            remove_disks=req.remove_disks,
        )
    return _action_response(services.focus, result)


@v1_router.get("/focus/telemetry", response_model=TelemetryRead)
def focus_telemetry(services: Services = Depends(get_services)) -> TelemetryRead:
    handle = services.focus.monitor_handle
    if handle is None:
        raise HTTPException(status_code=404, detail="no active telemetry monitor")
    latest = handle.latest
    return TelemetryRead(
        resource_id=handle.resource_id,
        samples_appended=handle.samples_appended,
        failures=handle.failures,
        latest=TelemetrySampleRead.model_validate(latest) if latest else None,
        series={
            name: [SeriesPoint(label=label, value=value) for label, value in points]
            for name, points in handle.series_snapshot().items()
        },
    )


@v1_router.get("/focus/console", response_model=ConsoleRead)
def focus_console(services: Services = Depends(get_services)) -> ConsoleRead:
    with _translated_errors():
        endpoint = services.focus.console_endpoint()
    if endpoint is None:
        raise HTTPException(status_code=404, detail="no resource focused")
    return ConsoleRead(
        host=endpoint.host,
        port=endpoint.port,
        display=endpoint.display,
        connection_string=endpoint.connection_string,
    )


@v1_router.post("/focus/snapshots", response_model=ActionResponse)
def create_snapshot(
    req: SnapshotCreateRequest, services: Services = Depends(get_services)
) -> ActionResponse:
    with _translated_errors():
        result = services.focus.create_snapshot(req.snapshot_name, req.description)
    return _action_response(services.focus, result)


@v1_router.post("/focus/snapshots/{snapshot_name}/revert", response_model=ActionResponse)
def revert_snapshot(
    snapshot_name: str, services: Services = Depends(get_services)
) -> ActionResponse:
    with _translated_errors():
        result = services.focus.revert_snapshot(snapshot_name)
    return _action_response(services.focus, result)


@v1_router.delete("/focus/snapshots/{snapshot_name}", response_model=ActionResponse)
def delete_snapshot(
    snapshot_name: str, services: Services = Depends(get_services)
) -> ActionResponse:
    with _translated_errors():
        result = services.focus.delete_snapshot(snapshot_name)
    return _action_response(services.focus, result)


@v1_router.post("/focus/clone", response_model=ActionResponse)
def clone_focused(
    req: CloneRequest, services: Services = Depends(get_services)
) -> ActionResponse:
    with _translated_errors():
        result = services.focus.clone(req.clone_name)
    return _action_response(services.focus, result)
