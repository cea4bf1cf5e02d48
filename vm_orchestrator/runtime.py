import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from vm_orchestrator.clients.backend import BackendClient
from vm_orchestrator.clients.http import RetryPolicy
from vm_orchestrator.config import Settings, get_settings
from vm_orchestrator.services.focus import ResourceFocusController
from vm_orchestrator.services.provisioning import ProvisioningOrchestrator
from vm_orchestrator.services.telemetry import TelemetryMonitor


logger = logging.getLogger(__name__)


@dataclass
class Services:
    backend: BackendClient
    orchestrator: ProvisioningOrchestrator
    monitor: TelemetryMonitor
    focus: ResourceFocusController

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.focus.unfocus()
        self.backend.close()


_services: Services | None = None


def _normalize_backend_url(raw_url: str) -> str:
    if raw_url.startswith("http://") or raw_url.startswith("https://"):
        return raw_url
    return f"http://{raw_url}"


def build_backend_client(
    settings: Settings | None = None, client: httpx.Client | None = None
) -> BackendClient:
    settings = settings or get_settings()
    base_url = _normalize_backend_url(settings.backend_url)
    if not urlparse(base_url).hostname:
        logger.warning("backend url missing hostname url=%s", base_url)
    return BackendClient(
        base_url=base_url,
        retry=RetryPolicy(settings.retry_attempts, settings.retry_sleep_sec),
        auth_token=settings.backend_auth_token,
        api_prefix=settings.backend_api_prefix,
        timeout=settings.backend_timeout_sec,
        client=client,
    )


def build_services(
    settings: Settings | None = None, client: httpx.Client | None = None
) -> Services:
    settings = settings or get_settings()
    backend = build_backend_client(settings, client=client)
    monitor = TelemetryMonitor(
        backend,
        period_sec=settings.telemetry_period_sec,
        capacity=settings.telemetry_capacity,
        join_timeout_sec=settings.telemetry_stop_join_sec,
    )
    return Services(
        backend=backend,
        orchestrator=ProvisioningOrchestrator(backend, settings=settings),
        monitor=monitor,
        focus=ResourceFocusController(backend, monitor),
    )


def install_services(services: Services | None) -> Services | None:
    """Swap the process-wide services; returns the previous ones."""
    global _services
    previous, _services = _services, services
    return previous


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("services are not initialized")
    return _services
