import logging

from vm_orchestrator.config import Settings, get_settings
from vm_orchestrator.logging_config import configure_logging
from vm_orchestrator.runtime import build_backend_client, build_services


def teardown_function() -> None:
    get_settings.cache_clear()


def test_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("VM_ORCHESTRATOR_BACKEND_URL", "http://kvm-01:3000")
    monkeypatch.setenv("VM_ORCHESTRATOR_ADDRESS_TIMEOUT_SEC", "45")
    monkeypatch.setenv("VM_ORCHESTRATOR_AWAIT_INIT_BY_FLAVOR", '{"small": 20}')
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.backend_url == "http://kvm-01:3000"
    assert settings.address_timeout_sec == 45
    assert settings.await_init_for("small") == 20
    assert settings.await_init_for("medium") == 60
    assert get_settings() is settings


def test_defaults_match_backend_timings():
    settings = Settings()
    assert settings.address_interval_sec == 2
    assert settings.telemetry_capacity == 20
    assert settings.telemetry_period_sec == 3


def test_backend_client_gets_scheme_and_auth_header():
    backend = build_backend_client(
        Settings(backend_url="kvm-01:3000", backend_auth_token="tok")
    )
    try:
        assert str(backend.client.base_url) == "http://kvm-01:3000/"
        assert backend.client.headers["Authorization"] == "Bearer tok"
        assert backend.prefix == "/api"
    finally:
        backend.close()


def test_build_services_wires_shared_backend():
    services = build_services(Settings(telemetry_capacity=5, telemetry_stop_join_sec=0.1))
    try:
        assert services.orchestrator.backend is services.backend
        assert services.focus.backend is services.backend
        assert services.focus.monitor is services.monitor
        assert services.monitor.capacity == 5
        assert services.monitor.join_timeout_sec == 0.1
    finally:
        services.close()


def test_configure_logging_is_idempotent():
    root = logging.getLogger()
    configure_logging("DEBUG")
    configure_logging("WARNING")
    named = [h for h in root.handlers if h.get_name() == "vm-orchestrator"]
    assert len(named) == 1
    assert root.level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
