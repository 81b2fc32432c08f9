"""Tests for the aiohttp clients: generation webhook and Razorpay orders."""
import asyncio
import re

import aiohttp
import pytest

import razorpay_client
from errors import ConfigurationError, GenerationTimeout, UpstreamError
from generation_gateway import FAILURE_MESSAGE, TIMEOUT_MESSAGE, GenerationGateway
from razorpay_client import RazorpayClient


class _FakeResponse:
    def __init__(self, status: int, payload=None, text: str = ""):
        self.status = status
        self._payload = payload
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return self._text


class _FakeSession:
    def __init__(self, response: _FakeResponse = None, error: Exception = None):
        self.response = response
        self.error = error
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def fake_session(monkeypatch):
    """Install a fake aiohttp session; returns a setter for its behaviour."""
    def _install(response=None, error=None):
        session = _FakeSession(response, error)
        monkeypatch.setattr(aiohttp, "ClientSession", lambda *args, **kwargs: session)
        return session

    return _install


def _generate(gateway, prompt="a cat", user_id="u1"):
    return asyncio.run(gateway.generate(prompt, user_id))


# ----- generation webhook -----

def test_generate_returns_image_url(fake_session):
    session = fake_session(_FakeResponse(200, {"imageUrl": "https://img.example.com/cat.png"}))
    gateway = GenerationGateway("https://hooks.example.com/generate", timeout_seconds=30)

    assert _generate(gateway) == "https://img.example.com/cat.png"

    url, kwargs = session.requests[0]
    assert url == "https://hooks.example.com/generate"
    assert kwargs["json"] == {"prompt": "a cat", "userId": "u1"}
    assert kwargs["timeout"].total == 30


def test_generate_timeout(fake_session):
    fake_session(error=asyncio.TimeoutError())
    gateway = GenerationGateway("https://hooks.example.com/generate")

    with pytest.raises(GenerationTimeout) as exc_info:
        _generate(gateway)
    assert exc_info.value.message == TIMEOUT_MESSAGE
    assert exc_info.value.status_code == 502


def test_generate_transport_error(fake_session):
    fake_session(error=aiohttp.ClientConnectionError("connection refused"))
    gateway = GenerationGateway("https://hooks.example.com/generate")

    with pytest.raises(UpstreamError) as exc_info:
        _generate(gateway)
    assert not isinstance(exc_info.value, GenerationTimeout)
    assert exc_info.value.message == FAILURE_MESSAGE


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(500, text="internal error"),
        _FakeResponse(200, {"status": "ok"}),
        _FakeResponse(200, {"imageUrl": 42}),
        _FakeResponse(200, {"imageUrl": ""}),
        _FakeResponse(200, ["https://img.example.com/cat.png"]),
        _FakeResponse(200, ValueError("Expecting value")),
    ],
)
def test_generate_rejects_bad_responses(fake_session, response):
    fake_session(response)
    gateway = GenerationGateway("https://hooks.example.com/generate")

    with pytest.raises(UpstreamError) as exc_info:
        _generate(gateway)
    assert exc_info.value.message == FAILURE_MESSAGE


def test_generate_without_webhook_url_is_a_configuration_error(fake_session):
    session = fake_session(_FakeResponse(200, {"imageUrl": "https://img.example.com/cat.png"}))

    with pytest.raises(ConfigurationError):
        _generate(GenerationGateway(""))
    assert session.requests == []


# ----- razorpay orders -----

def test_create_order_posts_with_basic_auth(fake_session):
    session = fake_session(_FakeResponse(200, {"id": "order_Abc", "amount": 1000, "currency": "INR"}))
    client = RazorpayClient("rzp_key", "rzp_secret", api_base="https://api.razorpay.com/v1/")

    order = asyncio.run(client.create_order("u1", 1000, "INR"))
    assert order["id"] == "order_Abc"

    url, kwargs = session.requests[0]
    assert url == "https://api.razorpay.com/v1/orders"
    assert kwargs["auth"] == aiohttp.BasicAuth("rzp_key", "rzp_secret")
    assert kwargs["json"]["amount"] == 1000
    assert kwargs["json"]["currency"] == "INR"
    assert kwargs["json"]["notes"] == {"user_id": "u1"}
    assert re.fullmatch(r"receipt_[0-9a-f]{12}", kwargs["json"]["receipt"])


def test_create_order_surfaces_gateway_description(fake_session):
    fake_session(_FakeResponse(400, {"error": {"code": "BAD_REQUEST_ERROR", "description": "Authentication failed"}}))
    client = RazorpayClient("rzp_key", "rzp_secret")

    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(client.create_order("u1", 1000))
    assert exc_info.value.message == "Authentication failed"


def test_create_order_requires_keys(fake_session):
    session = fake_session(_FakeResponse(200, {"id": "order_Abc"}))

    with pytest.raises(ConfigurationError) as exc_info:
        asyncio.run(RazorpayClient("", "").create_order("u1", 1000))
    assert exc_info.value.message == razorpay_client.MISSING_KEYS_MESSAGE
    assert session.requests == []
