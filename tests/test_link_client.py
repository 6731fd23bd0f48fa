"""
Tests for the link function clients.
"""
import asyncio
import json

import httpx
import pytest

from app.core.errors import LinkTimeout, TransportError
from app.core.security import is_service_token
from app.schemas.billing import LinkRequest
from app.services.link_client import HttpLinkClient, LocalLinkClient

REQUEST = LinkRequest(
    provider_subscription_id="sub_gold",
    user_id=1,
    plan_type="gold",
    track="interview",
)


def client_for(handler):
    return HttpLinkClient("https://billing.example.com/", transport=httpx.MockTransport(handler))


def test_http_link_success():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["token"] = request.headers["Authorization"].split(" ", 1)[1]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True})

    response = asyncio.run(client_for(handler).link(REQUEST))

    assert response.success is True
    assert seen["url"] == "https://billing.example.com/billing/link"
    assert is_service_token(seen["token"])
    assert seen["body"]["providerSubscriptionId"] == "sub_gold"
    assert seen["body"]["isNewSubscription"] is True


def test_http_link_explicit_failure_is_returned():
    def handler(request):
        return httpx.Response(200, json={"success": False, "error": "User not found"})

    response = asyncio.run(client_for(handler).link(REQUEST))

    assert response.success is False
    assert response.error == "User not found"


@pytest.mark.parametrize("response", [
    httpx.Response(502, text="Bad Gateway"),
    httpx.Response(200, json=["unexpected"]),
    httpx.Response(403, json={"detail": "Forbidden"}),
])
def test_http_link_without_answer_is_transport_error(response):
    with pytest.raises(TransportError):
        asyncio.run(client_for(lambda request: response).link(REQUEST))


def test_http_link_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(LinkTimeout):
        asyncio.run(client_for(handler).link(REQUEST))


def test_http_link_connection_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as exc:
        asyncio.run(client_for(handler).link(REQUEST))

    assert not isinstance(exc.value, LinkTimeout)


def test_local_link_runs_link_service(make_user, provider, session_factory):
    user = make_user()
    provider.add("sub_gold", "active", "gold", "interview")
    client = LocalLinkClient(session_factory, lambda: provider)

    response = asyncio.run(client.link(REQUEST.model_copy(update={"user_id": user.id})))

    assert response.success is True


def test_local_link_unexpected_error_is_transport_error(session_factory):
    def broken_provider():
        raise RuntimeError("provider misconfigured")

    client = LocalLinkClient(session_factory, broken_provider)

    with pytest.raises(TransportError):
        asyncio.run(client.link(REQUEST))
