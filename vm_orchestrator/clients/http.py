import time
from typing import Any

import httpx

from vm_orchestrator.errors import RemoteRejected, RemoteUnavailable


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float):
        self.attempts = attempts
        self.sleep_sec = sleep_sec


def _rejection_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "detail", "output", "message"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    text = (response.text or "").strip()
    if text:
        return f"HTTP {response.status_code}: {text[:240]}"
    return f"HTTP {response.status_code}"


SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Failures raised before any bytes of the request reached the backend.
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


def is_replayable(method: str, exc: httpx.RequestError) -> bool:
    return method.upper() in SAFE_METHODS or isinstance(exc, UNSENT_ERRORS)


def request_with_retry(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> httpx.Response:
    """Issue a request, retrying transport errors only.

    An HTTP error status is a structured answer from the backend and is
    raised as RemoteRejected on the first attempt. Reads are retried on any
    transport error; a mutating request is retried only when the connection
    was never established, so a deploy or power operation the backend may
    have received is never sent twice.
    """
    error: Exception | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    attempts = 0
    for attempt in range(1, retry.attempts + 1):
        attempts = attempt
        try:
            response = client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc) or exc.__class__.__name__
            error_type = exc.__class__.__name__
            if not is_replayable(method, exc):
                break
            if attempt < retry.attempts:
                time.sleep(retry.sleep_sec)
            continue
        if response.is_error:
            raise RemoteRejected(
                method=method,
                url=url,
                attempts=attempt,
                error_type="HTTPStatusError",
                detail=_rejection_detail(response),
                status_code=response.status_code,
                response_text=response.text,
            )
        return response
    raise RemoteUnavailable(
        method=method,
        url=url,
        attempts=attempts,
        error_type=error_type,
        detail=detail,
    ) from error
