import logging

from fastapi import FastAPI

from vm_orchestrator.api import router, v1_router
from vm_orchestrator.config import get_settings
from vm_orchestrator.logging_config import configure_logging
from vm_orchestrator.runtime import build_services, install_services


logger = logging.getLogger(__name__)


app = FastAPI(title="VM Orchestrator")
app.include_router(router)
app.include_router(v1_router)


@app.on_event("startup")
def startup() -> None:
    configure_logging()
    settings = get_settings()
    if not settings.backend_url:
        raise RuntimeError("VM_ORCHESTRATOR_BACKEND_URL is required")

    install_services(build_services(settings))
    logger.info("vm-orchestrator startup complete backend=%s", settings.backend_url)


@app.on_event("shutdown")
def shutdown() -> None:
    services = install_services(None)
    if services is not None:
        services.close()
