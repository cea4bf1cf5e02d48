import time

import httpx
from fastapi.testclient import TestClient

from fake_backend.app import app as fake_app
from fake_backend.app import reset
from vm_orchestrator.config import Settings, get_settings
from vm_orchestrator.main import app
from vm_orchestrator.metrics import metrics
from vm_orchestrator.runtime import Services, build_services, get_services


KEY = "ssh-ed25519 " + "A" * 120
services: Services | None = None


def _settings() -> Settings:
    return Settings(
        await_init_sec=0,
        address_interval_sec=0.01,
        address_timeout_sec=2,
        retry_sleep_sec=0,
        telemetry_period_sec=0.05,
    )


def _install(new_services: Services) -> None:
    global services
    services = new_services
    app.dependency_overrides[get_services] = lambda: new_services


def setup_function() -> None:
    reset()
    get_settings.cache_clear()
    _install(build_services(_settings(), client=TestClient(fake_app)))


def teardown_function() -> None:
    app.dependency_overrides.clear()
    get_settings.cache_clear()
    if services is not None:
        services.close()


def _wait_for(fetch, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    body = fetch()
    while not predicate(body) and time.monotonic() < deadline:
        time.sleep(0.02)
        body = fetch()
    return body


def _create(name: str, running: bool = True) -> None:
    assert services is not None
    services.backend.create_resource({"hostname": name})
    if running:
        services.backend.start(name)


def test_healthz():
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint_exposes_counters():
    metrics.inc("lifecycle_operations_total", 2)
    client = TestClient(app)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.json()["lifecycle_operations_total"] >= 2


def test_provisioning_run_end_to_end():
    client = TestClient(app)
    submitted = client.post(
        "/v1/provisioning",
        json={"hostname": "test-vm", "ssh_key": KEY, "flavor": "small"},
    )
    assert submitted.status_code == 202
    run_id = submitted.json()["run_id"]

    body = _wait_for(
        lambda: client.get(f"/v1/provisioning/{run_id}").json(),
        lambda b: b["state"] in ("Succeeded", "Failed"),
    )
    assert body["state"] == "Succeeded"
    assert body["address"] == "10.0.0.5"
    assert body["connect_hint"] == "ssh ubuntu@10.0.0.5"
    assert [t["phase"] for t in body["transitions"] if t["status"] == "completed"] == [
        "GenerateConfig",
        "Create",
        "Start",
        "AwaitInit",
        "ResolveAddress",
    ]
    listed = client.get("/v1/provisioning").json()
    assert [r["run_id"] for r in listed] == [run_id]

    resources = client.get("/v1/resources").json()
    assert resources["total_count"] == 1
    assert resources["running_count"] == 1


def test_provisioning_rejects_invalid_requests():
    client = TestClient(app)
    both = client.post(
        "/v1/provisioning",
        json={"hostname": "test-vm", "ssh_key": KEY, "password": "Mixed-Case-1"},
    )
    assert both.status_code == 422
    assert "credentials" in both.json()["detail"]

    unknown_field = client.post(
        "/v1/provisioning", json={"hostname": "test-vm", "ssh_key": KEY, "ram": 1}
    )
    assert unknown_field.status_code == 422
    assert client.get("/v1/provisioning").json() == []


def test_unknown_run_is_404():
    client = TestClient(app)
    assert client.get("/v1/provisioning/nope").status_code == 404
    assert client.post("/v1/provisioning/nope/cancel").status_code == 404


def test_focus_and_telemetry():
    _create("vm-a")
    client = TestClient(app)

    focused = client.put("/v1/focus/vm-a")
    assert focused.status_code == 200
    body = focused.json()
    assert body["name"] == "vm-a"
    assert body["state"] == "Running"
    assert body["monitoring"] is True
    assert "Name:           vm-a" in body["detail"]

    telemetry = _wait_for(
        lambda: client.get("/v1/focus/telemetry").json(),
        lambda b: b["samples_appended"] >= 1,
    )
    assert telemetry["resource_id"] == "vm-a"
    assert telemetry["latest"] is not None
    assert len(telemetry["series"]["cpu"]) >= 1

    assert client.delete("/v1/focus").json() == {"ok": True}
    assert client.get("/v1/focus").json()["name"] is None
    assert client.get("/v1/focus/telemetry").status_code == 404


def test_focus_on_unknown_resource_maps_backend_rejection():
    client = TestClient(app)
    response = client.put("/v1/focus/missing")
    assert response.status_code == 502
    assert "Domain not found" in response.json()["detail"]


def test_lifecycle_actions():
    _create("vm-a")
    client = TestClient(app)
    client.put("/v1/focus/vm-a")

    assert client.post("/v1/focus/actions/shutdown").status_code == 409
    assert client.post("/v1/focus/actions/hibernate").status_code == 404

    stopped = client.post("/v1/focus/actions/destroy", json={"confirm": True})
    assert stopped.status_code == 200
    assert stopped.json()["performed"] is True
    assert stopped.json()["focus"]["monitoring"] is False

    rejected = client.post("/v1/focus/actions/reboot")
    assert rejected.status_code == 502
    assert "cannot reboot" in rejected.json()["detail"]

    started = client.post("/v1/focus/actions/start")
    assert started.status_code == 200
    assert started.json()["focus"]["monitoring"] is True


def test_snapshots_clone_and_console():
    _create("vm-a", running=False)
    client = TestClient(app)
    client.put("/v1/focus/vm-a")

    created = client.post("/v1/focus/snapshots", json={"snapshot_name": "snap1"})
    assert created.status_code == 200
    assert [s["name"] for s in created.json()["focus"]["snapshots"]] == ["snap1"]
    invalid = client.post("/v1/focus/snapshots", json={"snapshot_name": "bad name"})
    assert invalid.status_code == 422

    assert client.post("/v1/focus/snapshots/snap1/revert").status_code == 200
    deleted = client.delete("/v1/focus/snapshots/snap1")
    assert deleted.json()["focus"]["snapshots"] == []

    cloned = client.post("/v1/focus/clone", json={"clone_name": "vm-a-copy"})
    assert cloned.status_code == 200
    assert client.get("/v1/resources").json()["total_count"] == 2

    console = client.get("/v1/focus/console").json()
    assert console["connection_string"] == "localhost:0"


def test_delete_focused_resource():
    _create("vm-a")
    client = TestClient(app)
    client.put("/v1/focus/vm-a")

    mismatch = client.post(
        "/v1/focus/delete", json={"confirm": True, "confirm_name": "vm-b"}
    )
    assert mismatch.status_code == 409

    deleted = client.post(
        "/v1/focus/delete", json={"confirm": True, "confirm_name": "vm-a"}
    )
    assert deleted.status_code == 200
    assert deleted.json()["performed"] is True
    assert deleted.json()["focus"]["name"] is None

    noop = client.post("/v1/focus/actions/start")
    assert noop.status_code == 200
    assert noop.json()["performed"] is False
    assert client.get("/v1/focus/console").status_code == 404


def test_unreachable_backend_maps_to_503():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    settings = _settings()
    _install(
        build_services(
            settings,
            client=httpx.Client(
                base_url="http://backend.test", transport=httpx.MockTransport(handler)
            ),
        )
    )
    client = TestClient(app)
    assert client.get("/v1/resources").status_code == 503


def test_api_token_required_when_configured(monkeypatch):
    monkeypatch.setenv("VM_ORCHESTRATOR_API_TOKEN", "s3cret")
    get_settings.cache_clear()
    client = TestClient(app)

    assert client.get("/healthz").status_code == 200
    assert client.get("/v1/focus").status_code == 401
    assert (
        client.get("/v1/focus", headers={"Authorization": "Bearer wrong"}).status_code
        == 401
    )
    assert (
        client.get("/v1/focus", headers={"Authorization": "Bearer s3cret"}).status_code
        == 200
    )
