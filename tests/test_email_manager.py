"""
Tests for EmailManager delivery: the HTTP provider's request and status handling, and the
fallback across providers. The HTTP API is replaced with ``httpx.MockTransport``.
"""

import json

import httpx
from pydantic import SecretStr
import pytest

from family_finance.config import settings
from family_finance.managers.email import EmailManager
from family_finance.utils.error_handling import UpstreamFailure


def _http_manager(handler):
    manager = EmailManager(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    manager.providers = [manager._send_via_http]
    return manager


@pytest.fixture(autouse=True)
def email_api_key(monkeypatch):
    monkeypatch.setattr(settings, "EMAIL_API_KEY", SecretStr("re_test_key"))


@pytest.mark.asyncio
async def test_http_provider_posts_message():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"id": "email_1"})

    sent = await _http_manager(handler).send_html_email("bob@example.com", "Hello", "<p>Hi</p>")

    assert sent is True
    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == settings.EMAIL_API_URL
    assert request.headers["Authorization"] == "Bearer re_test_key"
    body = json.loads(request.content)
    assert body["to"] == ["bob@example.com"]
    assert body["subject"] == "Hello"
    assert body["html"] == "<p>Hi</p>"
    assert body["from"] == settings.EMAIL_FROM


@pytest.mark.asyncio
async def test_rejected_send_raises_upstream_failure():
    manager = _http_manager(lambda request: httpx.Response(422, text="invalid recipient"))

    with pytest.raises(UpstreamFailure) as exc_info:
        await manager._send_via_http("bob@example.com", "Hello", "<p>Hi</p>")

    assert exc_info.value.error_code == "EMAIL_PROVIDER_ERROR"
    assert exc_info.value.context == {"status_code": 422, "body": "invalid recipient"}


@pytest.mark.asyncio
async def test_rejected_send_returns_false():
    manager = _http_manager(lambda request: httpx.Response(500, text="boom"))
    assert await manager.send_html_email("bob@example.com", "Hello", "<p>Hi</p>") is False


@pytest.mark.asyncio
async def test_network_error_returns_false():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert await _http_manager(handler).send_html_email("bob@example.com", "Hello", "<p>Hi</p>") is False


@pytest.mark.asyncio
async def test_falls_back_to_next_provider():
    manager = _http_manager(lambda request: httpx.Response(503, text="unavailable"))
    delivered = []

    async def _send_via_backup(to_email, subject, html_content):
        delivered.append(to_email)

    manager.providers.append(_send_via_backup)

    assert await manager.send_html_email("bob@example.com", "Hello", "<p>Hi</p>") is True
    assert delivered == ["bob@example.com"]


@pytest.mark.asyncio
async def test_welcome_email_goes_through_provider():
    subjects = []

    def handler(request):
        subjects.append(json.loads(request.content)["subject"])
        return httpx.Response(202)

    assert await _http_manager(handler).send_welcome_email("bob@example.com", "Bob") is True
    assert subjects == ["Welcome to Family Finance"]
