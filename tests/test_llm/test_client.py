import json

import httpx
import pytest

from taskpilot.config import Config, NetworkConfig
from taskpilot.credentials import EXHAUSTED, KeyRing, looks_rate_limited
from taskpilot.exceptions import (
    CancelledRequestError,
    CredentialsExhaustedError,
    LLMAPIError,
)
from taskpilot.llm import CanonicalRequest, GoogleAdapter, OllamaAdapter
from taskpilot.llm.client import ProviderClient
from taskpilot.llm.parsing import STOP

OK_BODY = {"candidates": [{"content": {"parts": [{"text": "hi"}]}, "finishReason": "STOP"}]}


def _config(**network) -> Config:
    settings = {"retry_initial_delay": 0.0, "retry_max_delay": 0.0, **network}
    return Config(network=NetworkConfig(**settings))


def _request() -> CanonicalRequest:
    return CanonicalRequest(contents=[{"role": "user", "parts": [{"text": "hello"}]}])


def _client(handler, keys: list[str], config: Config | None = None) -> ProviderClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderClient(
        GoogleAdapter(),
        KeyRing(keys, model="gemini-2.0-flash"),
        config=config or _config(),
        http_client=http_client,
    )


@pytest.mark.asyncio
async def test_generate_posts_converted_body_and_parses_reply():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=OK_BODY)

    client = _client(handler, ["k1"])
    response = await client.generate(_request())

    assert response.text == "hi"
    assert response.finish_reason == STOP
    assert seen[0].url.params["key"] == "k1"
    assert "gemini-2.0-flash:generateContent" in seen[0].url.path
    assert json.loads(seen[0].content)["contents"][0]["parts"] == [{"text": "hello"}]
    await client.client.aclose()


@pytest.mark.asyncio
async def test_transport_errors_are_retried_then_succeed():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=OK_BODY)

    client = _client(handler, ["k1"])
    response = await client.generate(_request())

    assert response.text == "hi"
    assert attempts["count"] == 3
    await client.client.aclose()


@pytest.mark.asyncio
async def test_transport_errors_give_up_after_max_retries():
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        raise httpx.ReadTimeout("timed out", request=request)

    client = _client(handler, ["k1"], config=_config(max_retries=2))

    with pytest.raises(LLMAPIError, match="failed after 3 attempts"):
        await client.generate(_request())
    assert attempts["count"] == 3
    await client.client.aclose()


@pytest.mark.asyncio
async def test_rate_limited_key_rotates_to_next_key():
    keys_used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.params["key"]
        keys_used.append(key)
        if key == "k1":
            return httpx.Response(429, json={"error": {"message": "quota"}})
        return httpx.Response(200, json=OK_BODY)

    client = _client(handler, ["k1", "k2"])
    response = await client.generate(_request())

    assert response.text == "hi"
    assert keys_used == ["k1", "k2"]

    # The working key stays first for the next request.
    await client.generate(_request())
    assert keys_used[-1] == "k2"
    await client.client.aclose()


@pytest.mark.asyncio
async def test_all_keys_rate_limited_raises_credentials_exhausted():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="Too Many Requests")

    client = _client(handler, ["k1", "k2"])

    with pytest.raises(CredentialsExhaustedError):
        await client.generate(_request())
    await client.client.aclose()


@pytest.mark.asyncio
async def test_no_keys_is_exhausted_on_first_call():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler, [])

    with pytest.raises(CredentialsExhaustedError):
        await client.generate(_request())
    await client.client.aclose()


@pytest.mark.asyncio
async def test_non_rate_limit_error_is_raised_without_rotation():
    keys_used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys_used.append(request.url.params["key"])
        return httpx.Response(400, text="bad request")

    client = _client(handler, ["k1", "k2"])

    with pytest.raises(LLMAPIError) as exc_info:
        await client.generate(_request())
    assert exc_info.value.status_code == 400
    assert keys_used == ["k1"]
    await client.client.aclose()


@pytest.mark.asyncio
async def test_cancelled_client_refuses_to_send():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=OK_BODY)

    client = _client(handler, ["k1"])
    client.cancel()

    with pytest.raises(CancelledRequestError):
        await client.generate(_request())

    client.clear_cancel()
    assert (await client.generate(_request())).text == "hi"
    await client.client.aclose()


def test_self_hosted_adapter_gets_long_read_timeout():
    config = _config(read_timeout=60.0, long_read_timeout=600.0)
    client = ProviderClient(OllamaAdapter(), KeyRing([], keyless=True), config=config)

    assert client.timeout_for(_request()).read == 600.0


def test_large_prompt_gets_long_read_timeout():
    config = _config(large_prompt_chars=10)
    client = ProviderClient(GoogleAdapter(), KeyRing(["k"]), config=config)
    big = CanonicalRequest(contents=[{"role": "user", "parts": [{"text": "x" * 50}]}])

    assert client.timeout_for(_request()).read == config.network.read_timeout
    assert client.timeout_for(big).read == config.network.long_read_timeout


def test_key_ring_hands_out_each_key_once_per_cycle():
    ring = KeyRing(["a", "b", " ", ""])

    assert len(ring) == 2
    assert [ring.next_key(), ring.next_key(), ring.next_key()] == ["a", "b", EXHAUSTED]
    ring.reset()
    assert ring.next_key() == "b"


def test_keyless_ring_yields_single_empty_key():
    ring = KeyRing([], keyless=True)

    assert ring.next_key() == ""
    assert ring.next_key() is EXHAUSTED


def test_rate_limit_detection():
    assert looks_rate_limited(LLMAPIError("boom", status_code=429))
    assert looks_rate_limited(LLMAPIError("Quota exceeded for model"))
    assert not looks_rate_limited(LLMAPIError("bad request", status_code=400))
