"""HTTP transport for provider adapters: timeouts, retries and key rotation."""

import asyncio

import httpx

from taskpilot.config import Config, get_config
from taskpilot.credentials import EXHAUSTED, CredentialProvider, KeyRing
from taskpilot.exceptions import (
    CancelledRequestError,
    CredentialsExhaustedError,
    LLMAPIError,
)
from taskpilot.llm import create_adapter
from taskpilot.llm.base import CanonicalRequest, ProviderAdapter
from taskpilot.llm.parsing import ParsedResponse
from taskpilot.logging import get_logger

log = get_logger(__name__)


class ProviderClient:
    """Sends canonical requests through one adapter.

    Transport failures (connection errors, timeouts) are retried with
    exponential backoff on the same credential. Rate-limit responses move
    on to the next credential; once every credential has been tried the
    request fails with ``CredentialsExhaustedError``.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        credentials: CredentialProvider,
        config: Config | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.adapter = adapter
        self.credentials = credentials
        self.config = config or get_config()

        network = self.config.network
        self._timeout = httpx.Timeout(
            connect=network.connect_timeout,
            read=network.read_timeout,
            write=network.write_timeout,
            pool=network.pool_timeout,
        )
        self._long_timeout = httpx.Timeout(
            connect=max(network.connect_timeout, 120.0),
            read=network.long_read_timeout,
            write=max(network.write_timeout, 120.0),
            pool=network.pool_timeout,
        )
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
        )
        self._cancel_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: Config | None = None) -> "ProviderClient":
        """Build adapter, key ring and client from configuration."""
        cfg = config or get_config()
        adapter = create_adapter(cfg.model.provider, base_url=cfg.model.base_url)
        credentials = KeyRing(
            cfg.model.api_keys,
            model=cfg.model.model,
            keyless=not adapter.requires_credential,
        )
        return cls(adapter, credentials, config=cfg)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Raise the cooperative cancellation flag."""
        self._cancel_event.set()

    def clear_cancel(self) -> None:
        self._cancel_event.clear()

    def timeout_for(self, request: CanonicalRequest) -> httpx.Timeout:
        """Large generations (self-hosted models, huge prompts) get the long read timeout."""
        if self.adapter.self_hosted:
            return self._long_timeout
        if request.prompt_size() > self.config.network.large_prompt_chars:
            return self._long_timeout
        return self._timeout

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledRequestError("Cancelled")

    async def _backoff(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early on cancellation."""
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return

    async def generate(self, request: CanonicalRequest, model: str | None = None) -> ParsedResponse:
        """Send a request and parse the reply.

        Args:
            request: Canonical request
            model: Model override; defaults to the credential provider's model

        Returns:
            ParsedResponse

        Raises:
            CredentialsExhaustedError, LLMAPIError, MalformedRequestError,
            MalformedResponseError, CancelledRequestError
        """
        model = model or self.credentials.current_model()
        self.credentials.reset()
        last_error: Exception | None = None

        while True:
            self._check_cancelled()
            key = self.credentials.next_key()
            if key is EXHAUSTED:
                message = "All API keys are rate limited or exhausted"
                if last_error is not None:
                    message = f"{message}: {last_error}"
                raise CredentialsExhaustedError(message, last_error)

            try:
                return await self._send(request, model, key)
            except LLMAPIError as e:
                if not self.credentials.is_rate_limit_error(e):
                    raise
                log.warning(
                    "Rate limited, rotating credential",
                    provider=self.adapter.provider.value,
                    status=e.status_code,
                    error=str(e)[:200],
                )
                last_error = e

    async def _send(self, request: CanonicalRequest, model: str, key: str) -> ParsedResponse:
        provider = self.adapter.provider.value
        url, provider_headers = self.adapter.resolve_endpoint(model, key)
        body = self.adapter.convert_request(request, model)
        headers = {"Content-Type": "application/json", **provider_headers}
        timeout = self.timeout_for(request)

        network = self.config.network
        attempt = 0
        while True:
            self._check_cancelled()
            try:
                log.debug(
                    "Calling provider",
                    provider=provider,
                    model=model,
                    attempt=attempt + 1,
                    contents=len(request.contents),
                )
                response = await self.client.post(url, json=body, headers=headers, timeout=timeout)
            except httpx.TransportError as e:
                # Covers connection failures and all httpx timeouts.
                attempt += 1
                if attempt > network.max_retries:
                    raise LLMAPIError(
                        f"{provider} request failed after {attempt} attempts: {type(e).__name__}: {e}"
                    ) from e
                delay = min(network.retry_initial_delay * (2 ** (attempt - 1)), network.retry_max_delay)
                log.warning(
                    "Provider request failed, retrying",
                    provider=provider,
                    attempt=attempt,
                    delay=delay,
                    error=f"{type(e).__name__}: {e}",
                )
                await self._backoff(delay)
                continue

            log.debug("Provider response status", provider=provider, status=response.status_code)
            if not response.is_success:
                raise LLMAPIError(
                    f"{provider} API error {response.status_code}: {response.text[:1000]}",
                    status_code=response.status_code,
                )
            return self.adapter.parse_response(response.text)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
