import httpx
import pytest

from vm_orchestrator.clients.http import RetryPolicy, request_with_retry
from vm_orchestrator.errors import RemoteRejected, RemoteUnavailable


def test_request_with_retry_raises_rejection_without_retrying():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            status_code=500, json={"success": False, "error": "boom"}, request=request
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RemoteRejected) as excinfo:
        request_with_retry(
            client, "POST", "http://example.test/x", RetryPolicy(attempts=3, sleep_sec=0)
        )
    assert len(calls) == 1
    assert excinfo.value.status_code == 500
    assert excinfo.value.detail == "boom"
    assert excinfo.value.attempts == 1


def test_request_with_retry_retries_transport_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RemoteUnavailable) as excinfo:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
        )
    assert len(calls) == 2
    assert excinfo.value.attempts == 2
    assert excinfo.value.error_type == "ConnectError"


def test_request_with_retry_recovers_after_transient_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(status_code=200, json={"ok": True}, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    response = request_with_retry(
        client, "GET", "http://example.test", RetryPolicy(attempts=3, sleep_sec=0)
    )
    assert response.json() == {"ok": True}
    assert len(calls) == 2


def test_request_with_retry_succeeds():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=200, json={"ok": True}, request=request
        )
    )
    client = httpx.Client(transport=transport)
    response = request_with_retry(
        client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
    )
    assert response.json() == {"ok": True}


def test_rejection_detail_falls_back_to_body_text():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=503, text="backend down", request=request
        )
    )
    client = httpx.Client(transport=transport)
    with pytest.raises(RemoteRejected) as excinfo:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=1, sleep_sec=0)
        )
    assert excinfo.value.detail == "HTTP 503: backend down"


def test_request_with_retry_does_not_replay_mutation_after_read_timeout():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(status_code=200, json={"success": True}, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RemoteUnavailable) as excinfo:
        request_with_retry(
            client,
            "POST",
            "http://example.test/api/vms/deploy",
            RetryPolicy(attempts=3, sleep_sec=0),
        )
    assert len(calls) == 1
    assert excinfo.value.attempts == 1
    assert excinfo.value.error_type == "ReadTimeout"


def test_request_with_retry_does_not_replay_delete_after_protocol_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.RemoteProtocolError("peer closed connection", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RemoteUnavailable):
        request_with_retry(
            client,
            "DELETE",
            "http://example.test/api/vms/web-01",
            RetryPolicy(attempts=3, sleep_sec=0),
        )
    assert len(calls) == 1


def test_request_with_retry_replays_mutation_that_never_connected():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(status_code=200, json={"success": True}, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    response = request_with_retry(
        client,
        "POST",
        "http://example.test/api/vms/web-01/start",
        RetryPolicy(attempts=3, sleep_sec=0),
    )
    assert response.json() == {"success": True}
    assert len(calls) == 2
