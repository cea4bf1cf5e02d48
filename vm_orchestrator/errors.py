class OrchestratorError(RuntimeError):
    """Base class for every error raised by the orchestration core."""


class ValidationError(OrchestratorError):
    """A provisioning request was rejected before any remote call."""

    def __init__(self, field: str, detail: str):
        self.field = field
        self.detail = detail
        super().__init__(f"invalid {field}: {detail}")


class PreconditionNotMet(OrchestratorError):
    """An operation was refused client side; no remote call was issued."""


class RequestFailure(OrchestratorError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


class RemoteUnavailable(RequestFailure):
    """Transport-level failure: the backend could not be reached."""


class RemoteRejected(RequestFailure):
    """The backend answered with a structured error for one operation."""


class ProvisioningError(OrchestratorError):
    def __init__(
        self,
        *,
        run_id: str,
        hostname: str,
        phase: str,
        reason: str,
        resource_created: bool | None,
    ):
        self.run_id = run_id
        self.hostname = hostname
        self.phase = phase
        self.reason = reason
        # None means the remote side may or may not hold the resource.
        self.resource_created = resource_created
        super().__init__(
            f"provisioning failed run_id={run_id} hostname={hostname} phase={phase} "
            f"resource_created={resource_created}: {reason}"
        )
