"""Tests for subscription renewal and the retry policy."""

import json
import logging

import httpx
import pytest

from src.clients.retry import RequestFailedError, RetryPolicy, parse_retry_after, send_with_retry
from src.config import settings
from src.handlers.renewal import RenewalOutcome, renew_subscription

POLICY = RetryPolicy(max_attempts=3, timeout=5.0, base_delay=1.0, max_delay=30.0)


@pytest.fixture(autouse=True)
def _graph_settings(monkeypatch):
    monkeypatch.setattr(settings, "graph_subscription_id", "abcdef12-3456-7890")
    monkeypatch.setattr(settings, "azure_tenant_id", "tenant")
    monkeypatch.setattr(settings, "azure_client_id", "client")
    monkeypatch.setattr(settings, "azure_client_secret", "secret")


class Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _happy_handler(requests: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/oauth2/v2.0/token"):
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3599})
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={"id": "abcdef12-3456-7890", "expirationDateTime": body["expirationDateTime"]},
            headers={"request-id": "req-1"},
        )
    return handler


async def test_renewal_success_patches_expiry():
    requests: list[httpx.Request] = []
    async with _client(_happy_handler(requests)) as client:
        outcome = await renew_subscription(client=client, policy=POLICY, sleep=Recorder())

    assert outcome is RenewalOutcome.RENEWED
    token_req, patch_req = requests
    assert token_req.url.path == "/tenant/oauth2/v2.0/token"
    assert b"grant_type=client_credentials" in token_req.content
    assert patch_req.method == "PATCH"
    assert patch_req.url.path == "/v1.0/subscriptions/abcdef12-3456-7890"
    assert patch_req.headers["Authorization"] == "Bearer tok"
    assert json.loads(patch_req.content)["expirationDateTime"].endswith("Z")


async def test_renewal_success_logs_attempts_and_duration(caplog):
    patches = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/v2.0/token"):
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3599})
        patches.append(request)
        if len(patches) == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"expirationDateTime": "2030-01-01T00:00:00Z"})

    with caplog.at_level(logging.INFO, logger="src.handlers.renewal"):
        async with _client(handler) as client:
            outcome = await renew_subscription(client=client, policy=POLICY, sleep=Recorder())

    assert outcome is RenewalOutcome.RENEWED
    success = [r.getMessage() for r in caplog.records if "[Renew] SUCCESS" in r.getMessage()]
    assert len(success) == 1
    assert "attempts=2" in success[0]
    assert "duration=" in success[0]


async def test_no_subscription_configured_is_a_noop(monkeypatch):
    monkeypatch.setattr(settings, "graph_subscription_id", "")
    requests: list[httpx.Request] = []
    async with _client(_happy_handler(requests)) as client:
        outcome = await renew_subscription(client=client, policy=POLICY)

    assert outcome is RenewalOutcome.SKIPPED
    assert requests == []


async def test_missing_identity_settings_fail_renewal_without_raising(monkeypatch, caplog):
    monkeypatch.setattr(settings, "azure_tenant_id", "")
    requests: list[httpx.Request] = []

    with caplog.at_level(logging.ERROR, logger="src.handlers.renewal"):
        async with _client(_happy_handler(requests)) as client:
            outcome = await renew_subscription(client=client, policy=POLICY)

    assert outcome is RenewalOutcome.FAILED
    assert requests == []
    assert "Identity not configured: set DISPATCH_AZURE_TENANT_ID" in caplog.text


async def test_always_503_exhausts_attempts_with_growing_delays(caplog):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    sleep = Recorder()
    with caplog.at_level(logging.ERROR, logger="src.handlers.renewal"):
        async with _client(handler) as client:
            outcome = await renew_subscription(client=client, policy=POLICY, sleep=sleep)

    assert outcome is RenewalOutcome.FAILED
    assert len(calls) == POLICY.max_attempts
    assert len(sleep.delays) == POLICY.max_attempts - 1
    assert sleep.delays == sorted(sleep.delays)
    assert all(d <= POLICY.max_delay for d in sleep.delays)
    assert "attempts=3" in caplog.text


async def test_retry_after_header_is_honoured():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json={"ok": True}),
    ])
    sleep = Recorder()
    async with _client(lambda request: next(responses)) as client:
        resp = await send_with_retry(
            lambda: client.get("https://graph.example/x"), POLICY, operation="test", sleep=sleep
        )

    assert resp.status_code == 200
    assert sleep.delays == [7.0]


async def test_non_retryable_status_aborts_immediately():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(403, text="forbidden")

    sleep = Recorder()
    async with _client(handler) as client:
        with pytest.raises(RequestFailedError) as excinfo:
            await send_with_retry(lambda: client.get("https://graph.example/x"), POLICY, operation="test", sleep=sleep)

    assert len(calls) == 1
    assert sleep.delays == []
    assert excinfo.value.retryable is False
    assert excinfo.value.status_code == 403


async def test_non_retryable_renewal_failure_is_logged_not_raised(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(404, text="subscription gone")

    with caplog.at_level(logging.ERROR, logger="src.handlers.renewal"):
        async with _client(handler) as client:
            outcome = await renew_subscription(client=client, policy=POLICY, sleep=Recorder())

    assert outcome is RenewalOutcome.FAILED
    assert "renew failed" in caplog.text
    assert "retryable=False" in caplog.text


async def test_timeouts_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={})

    sleep = Recorder()
    async with _client(handler) as client:
        resp = await send_with_retry(lambda: client.get("https://graph.example/x"), POLICY, operation="test", sleep=sleep)

    assert resp.status_code == 200
    assert len(attempts) == 3
    assert len(sleep.delays) == 2


def test_backoff_delay_is_capped_and_non_decreasing():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=30.0)
    for rng in (lambda: 0.0, lambda: 0.5, lambda: 0.999):
        delays = [policy.backoff_delay(n, rng) for n in range(1, 10)]
        assert delays == sorted(delays)
        assert max(delays) == 30.0


def test_parse_retry_after():
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("garbage") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
