import uvicorn

from fake_backend.config import get_settings as get_fake_backend_settings
from vm_orchestrator.config import get_settings


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "vm_orchestrator.main:app",
        host=settings.bind_host,
        port=settings.bind_port,
        log_config=None,
    )


def run_fake_backend() -> None:
    settings = get_fake_backend_settings()
    uvicorn.run("fake_backend.app:app", host=settings.bind_host, port=settings.bind_port)


if __name__ == "__main__":
    run()
