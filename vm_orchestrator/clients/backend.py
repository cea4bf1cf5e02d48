from typing import Any
from urllib.parse import quote

import httpx

from vm_orchestrator.clients.http import RetryPolicy, request_with_retry
from vm_orchestrator.errors import RemoteRejected
from vm_orchestrator.schemas import (
    ConsoleEndpoint,
    OperationResult,
    ResourceStats,
    ResourceStatus,
    ResourceSummary,
    SnapshotRecord,
)


POWER_OPERATIONS = ("start", "shutdown", "reboot", "pause", "resume", "destroy")


def _segment(value: str) -> str:
    return quote(value, safe="")


class BackendClient:
    """RPC surface of the remote management backend."""

    def __init__(
        self,
        base_url: str,
        retry: RetryPolicy,
        auth_token: str | None = None,
        api_prefix: str = "/api",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self.client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, headers=headers
        )
        self.prefix = "/" + api_prefix.strip("/") if api_prefix.strip("/") else ""
        self.retry = retry

    def close(self) -> None:
        self.client.close()

    def _call(self, method: str, path: str, **kwargs: Any) -> dict:
        url = f"{self.prefix}{path}"
        response = request_with_retry(self.client, method, url, self.retry, **kwargs)
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteRejected(
                method=method,
                url=url,
                attempts=1,
                error_type="ValueError",
                detail="non-JSON response from backend",
                status_code=response.status_code,
                response_text=response.text,
            ) from exc
        if not isinstance(body, dict):
            body = {"success": True, "data": body}
        if body.get("success") is False:
            detail = body.get("error") or body.get("output") or "operation failed"
            raise RemoteRejected(
                method=method,
                url=url,
                attempts=1,
                error_type="OperationFailed",
                detail=str(detail),
                status_code=response.status_code,
                response_text=response.text,
            )
        return body

    def list_resources(self) -> list[ResourceSummary]:
        body = self._call("GET", "/vms")
        return [ResourceSummary.model_validate(row) for row in body.get("vms") or []]

    def get_resource_detail(self, name: str) -> str:
        body = self._call("GET", f"/vms/{_segment(name)}")
        return str(body.get("info") or "")

    def get_resource_status(self, name: str) -> ResourceStatus:
        body = self._call("GET", f"/vms/{_segment(name)}/status")
        return ResourceStatus.model_validate(body)

    def get_resource_stats(self, name: str) -> ResourceStats | None:
        body = self._call("GET", f"/vms/{_segment(name)}/stats")
        stats = body.get("stats")
        if not isinstance(stats, dict) or not stats:
            return None
        return ResourceStats.model_validate(stats)

    def power(self, name: str, operation: str) -> OperationResult:
        if operation not in POWER_OPERATIONS:
            raise ValueError(f"unsupported power operation {operation}")
        body = self._call("POST", f"/vms/{_segment(name)}/{operation}")
        return OperationResult.model_validate(body)

    def start(self, name: str, timeout: float | None = None) -> OperationResult:
        kwargs = {"timeout": timeout} if timeout is not None else {}
        body = self._call("POST", f"/vms/{_segment(name)}/start", **kwargs)
        return OperationResult.model_validate(body)

    def shutdown(self, name: str) -> OperationResult:
        return self.power(name, "shutdown")

    def reboot(self, name: str) -> OperationResult:
        return self.power(name, "reboot")

    def pause(self, name: str) -> OperationResult:
        return self.power(name, "pause")

    def resume(self, name: str) -> OperationResult:
        return self.power(name, "resume")

    def destroy(self, name: str) -> OperationResult:
        return self.power(name, "destroy")

    def delete_resource(self, name: str, remove_disks: bool) -> OperationResult:
        body = self._call(
            "DELETE",
            f"/vms/{_segment(name)}",
            params={"removeDisks": str(remove_disks).lower()},
        )
        return OperationResult.model_validate(body)

    def list_snapshots(self, name: str) -> list[SnapshotRecord]:
        body = self._call("GET", f"/vms/{_segment(name)}/snapshots")
        return [SnapshotRecord.model_validate(row) for row in body.get("snapshots") or []]

    def create_snapshot(
        self, name: str, snapshot_name: str, description: str
    ) -> OperationResult:
        body = self._call(
            "POST",
            f"/vms/{_segment(name)}/snapshots",
            json={"snapshotName": snapshot_name, "description": description},
        )
        return OperationResult.model_validate(body)

    def revert_snapshot(self, name: str, snapshot_name: str) -> OperationResult:
        body = self._call(
            "POST", f"/vms/{_segment(name)}/snapshots/{_segment(snapshot_name)}/revert"
        )
        return OperationResult.model_validate(body)

    def delete_snapshot(self, name: str, snapshot_name: str) -> OperationResult:
        body = self._call(
            "DELETE", f"/vms/{_segment(name)}/snapshots/{_segment(snapshot_name)}"
        )
        return OperationResult.model_validate(body)

    def clone_resource(self, name: str, clone_name: str) -> OperationResult:
        body = self._call(
            "POST", f"/vms/{_segment(name)}/clone", json={"cloneName": clone_name}
        )
        return OperationResult.model_validate(body)

    def get_console_endpoint(self, name: str) -> ConsoleEndpoint:
        body = self._call("GET", f"/vms/{_segment(name)}/vnc")
        return ConsoleEndpoint.model_validate(body)

    def create_resource(self, payload: dict, timeout: float | None = None) -> str:
        kwargs: dict[str, Any] = {"json": payload}
        if timeout is not None:
            kwargs["timeout"] = timeout
        body = self._call("POST", "/vms/deploy", **kwargs)
        return str(body.get("vmName") or payload["hostname"])

    def get_resource_address(self, name: str) -> str | None:
        try:
            body = self._call("GET", f"/vms/{_segment(name)}/ip")
        except RemoteRejected as exc:
            # 404 / success=false is how the backend says "no lease yet".
            if exc.status_code in (200, 404):
                return None
            raise
        address = body.get("primaryIP")
        if isinstance(address, str) and address:
            return address
        return None

    def system_info(self) -> dict:
        body = self._call("GET", "/system/info")
        return {"node_info": body.get("nodeInfo"), "version": body.get("version")}
