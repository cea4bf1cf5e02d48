from datetime import UTC, datetime
from threading import Lock

from fastapi import APIRouter, Body, FastAPI, HTTPException

from fake_backend.config import get_settings


app = FastAPI(title="Fake Management Backend")
api = APIRouter(prefix="/api")

_lock = Lock()
_vms: dict[str, dict] = {}
_deployed = 0

POWER_TRANSITIONS = {
    # operation: (states it is allowed from, resulting state)
    "start": ({"shut off", "crashed"}, "running"),
    "shutdown": ({"running", "paused"}, "shut off"),
    "destroy": ({"running", "paused"}, "shut off"),
    "reboot": ({"running"}, "running"),
    "pause": ({"running"}, "paused"),
    "resume": ({"paused"}, "running"),
}


def _new_record(name: str, payload: dict) -> dict:
    global _deployed
    _deployed += 1
    settings = get_settings()
    return {
        "name": name,
        "state": "shut off",
        "memory_mb": int(payload.get("memory") or 2048),
        "vcpus": int(payload.get("vcpus") or 1),
        "disk_gb": int(payload.get("disk") or 20),
        "os_variant": payload.get("osVariant") or "ubuntu22.04",
        "username": payload.get("username") or "ubuntu",
        "address": f"{settings.address_prefix}{4 + _deployed}",
        "display": _deployed - 1,
        "ip_polls": 0,
        "ticks": 0,
        "snapshots": [],
        "created_at": datetime.now(UTC).isoformat(),
    }


def reset() -> None:
    global _deployed
    with _lock:
        _vms.clear()
        _deployed = 0
        for name in get_settings().seed_resources:
            record = _new_record(name, {})
            record["state"] = "running"
            _vms[name] = record


def _get(name: str) -> dict:
    row = _vms.get(name)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Domain not found: {name}")
    return row


def _stats(row: dict) -> dict:
    if row["state"] != "running":
        return {}
    row["ticks"] += 1
    ticks = row["ticks"]
    max_kb = row["memory_mb"] * 1024
    used_kb = max_kb // 2 + (ticks % 10) * 1024
    return {
        "cpu": float((ticks * 7) % 100),
        "memory": {
            "used": used_kb,
            "max": max_kb,
            "percent": round(used_kb * 100.0 / max_kb, 2),
        },
        "disk": {"readMB": ticks * 0.5, "writeMB": ticks * 0.25},
        "network": {"rxMB": ticks * 0.1, "txMB": ticks * 0.05},
    }


def _summary(row: dict) -> dict:
    return {
        "name": row["name"],
        "state": row["state"],
        "running": row["state"] == "running",
    }


@app.on_event("startup")
def startup() -> None:
    reset()


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@api.get("/system/info")
def system_info() -> dict:
    settings = get_settings()
    return {"success": True, "nodeInfo": settings.node_info, "version": settings.version}


@api.get("/vms")
def list_vms() -> dict:
    with _lock:
        rows = [_summary(row) for row in _vms.values()]
    return {"success": True, "vms": rows}


@api.post("/vms/deploy")
def deploy_vm(payload: dict = Body(...)) -> dict:
    name = str(payload.get("hostname") or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="hostname is required")
    with _lock:
        if name in _vms:
            raise HTTPException(status_code=409, detail=f"Domain already exists: {name}")
        _vms[name] = _new_record(name, payload)
    return {"success": True, "vmName": name, "message": f"VM {name} created"}


@api.get("/vms/{name}")
def vm_info(name: str) -> dict:
    with _lock:
        row = _get(name)
        info = "\n".join(
            [
                f"Name:           {row['name']}",
                f"State:          {row['state']}",
                f"CPU(s):         {row['vcpus']}",
                f"Max memory:     {row['memory_mb'] * 1024} KiB",
                f"OS variant:     {row['os_variant']}",
            ]
        )
    return {"success": True, "info": info}


@api.get("/vms/{name}/status")
def vm_status(name: str) -> dict:
    with _lock:
        row = _get(name)
        return {"success": True, **_summary(row)}


@api.get("/vms/{name}/stats")
def vm_stats(name: str) -> dict:
    with _lock:
        row = _get(name)
        return {"success": True, "stats": _stats(row)}


@api.get("/vms/{name}/ip")
def vm_ip(name: str) -> dict:
    settings = get_settings()
    with _lock:
        row = _get(name)
        if row["state"] != "running":
            raise HTTPException(status_code=404, detail="VM is not running")
        row["ip_polls"] += 1
        if row["ip_polls"] < settings.address_after_polls:
            raise HTTPException(status_code=404, detail="IP address not yet available")
        return {"success": True, "primaryIP": row["address"], "vmName": name}


@api.get("/vms/{name}/vnc")
def vm_vnc(name: str) -> dict:
    settings = get_settings()
    with _lock:
        row = _get(name)
        display = row["display"]
    return {
        "success": True,
        "host": settings.vnc_host,
        "port": settings.vnc_base_port + display,
        "display": display,
    }


@api.delete("/vms/{name}")
def delete_vm(name: str, removeDisks: bool = True) -> dict:
    steps: list[str] = []
    with _lock:
        row = _get(name)
        if row["state"] != "shut off":
            steps.append("Destroyed running domain")
        del _vms[name]
    steps.append("Undefined domain")
    if removeDisks:
        steps.append("Removed disk images")
    response = {"success": True, "message": f"VM {name} deleted", "steps": steps}
    if not removeDisks:
        response["warning"] = "Disk images were kept"
    return response


@api.get("/vms/{name}/snapshots")
def list_snapshots(name: str) -> dict:
    with _lock:
        row = _get(name)
        return {"success": True, "snapshots": [dict(s) for s in row["snapshots"]]}


@api.post("/vms/{name}/snapshots")
def create_snapshot(name: str, payload: dict = Body(...)) -> dict:
    snapshot_name = str(payload.get("snapshotName") or "").strip()
    if not snapshot_name:
        raise HTTPException(status_code=400, detail="snapshotName is required")
    with _lock:
        row = _get(name)
        if any(s["name"] == snapshot_name for s in row["snapshots"]):
            raise HTTPException(
                status_code=409, detail=f"Snapshot already exists: {snapshot_name}"
            )
        row["snapshots"].append(
            {
                "name": snapshot_name,
                "creationTime": datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S"),
                "state": row["state"],
                "description": payload.get("description"),
            }
        )
    return {"success": True, "output": f"Domain snapshot {snapshot_name} created"}


def _get_snapshot(row: dict, snapshot_name: str) -> dict:
    for snapshot in row["snapshots"]:
        if snapshot["name"] == snapshot_name:
            return snapshot
    raise HTTPException(status_code=404, detail=f"Snapshot not found: {snapshot_name}")


@api.post("/vms/{name}/snapshots/{snapshot_name}/revert")
def revert_snapshot(name: str, snapshot_name: str) -> dict:
    with _lock:
        row = _get(name)
        snapshot = _get_snapshot(row, snapshot_name)
        row["state"] = snapshot.get("state") or "shut off"
    return {"success": True, "output": f"Domain reverted to snapshot {snapshot_name}"}


@api.delete("/vms/{name}/snapshots/{snapshot_name}")
def delete_snapshot(name: str, snapshot_name: str) -> dict:
    with _lock:
        row = _get(name)
        row["snapshots"].remove(_get_snapshot(row, snapshot_name))
    return {"success": True, "output": f"Domain snapshot {snapshot_name} deleted"}


@api.post("/vms/{name}/clone")
def clone_vm(name: str, payload: dict = Body(...)) -> dict:
    clone_name = str(payload.get("cloneName") or "").strip()
    if not clone_name:
        raise HTTPException(status_code=400, detail="cloneName is required")
    with _lock:
        row = _get(name)
        if row["state"] != "shut off":
            raise HTTPException(
                status_code=400, detail="VM must be shut off before cloning"
            )
        if clone_name in _vms:
            raise HTTPException(
                status_code=409, detail=f"Domain already exists: {clone_name}"
            )
        clone = _new_record(
            clone_name,
            {
                "memory": row["memory_mb"],
                "vcpus": row["vcpus"],
                "disk": row["disk_gb"],
                "osVariant": row["os_variant"],
                "username": row["username"],
            },
        )
        _vms[clone_name] = clone
    return {"success": True, "output": f"Domain {name} cloned to {clone_name}"}


# Registered last so the fixed sub-routes above take precedence.
@api.post("/vms/{name}/{operation}")
def vm_power(name: str, operation: str) -> dict:
    transition = POWER_TRANSITIONS.get(operation)
    if transition is None:
        raise HTTPException(status_code=404, detail=f"unknown operation {operation}")
    allowed, target = transition
    with _lock:
        row = _get(name)
        if row["state"] not in allowed:
            raise HTTPException(
                status_code=400,
                detail=f"cannot {operation} domain {name} in state {row['state']}",
            )
        row["state"] = target
        if operation == "start":
            row["ip_polls"] = 0
    return {"success": True, "output": f"Domain '{name}' {operation} requested"}


app.include_router(api)
