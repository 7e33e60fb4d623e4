"""
Client for the OpenAI-compatible completion provider.

One ``OpenAICompatibleClient`` is constructed per application (or per
test) and passed to every relay session; there is no process-global
client. It owns a pooled httpx ``AsyncClient`` whose limits and timeouts
come from ``RelaySettings``:

    HTTP_MAX_CONNECTIONS / HTTP_MAX_KEEPALIVE: pool limits
    HTTP_TIMEOUT_CONNECT: establishing the upstream connection
    HTTP_TIMEOUT_READ: waiting for each chunk of the stream
    HTTP_TIMEOUT_WRITE / HTTP_TIMEOUT_POOL: request upload / pool checkout

httpx failures are translated into the relay error taxonomy:

    - timeout while connecting or reading -> UpstreamTimeoutError
    - non-2xx status or transport failure before streaming -> UpstreamConnectError
    - transport failure while streaming -> UpstreamStreamError

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
import structlog
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from chat_relay.config import RelaySettings
from chat_relay.errors import (
    UpstreamConnectError,
    UpstreamStreamError,
    UpstreamTimeoutError,
)

logger = structlog.get_logger(__name__)

Message = Dict[str, str]

# Upstream error bodies are only logged as a short preview
_ERROR_PREVIEW_LENGTH: int = 300


# ============================================================================
# Interfaces
# ============================================================================

class CompletionStream(Protocol):
    """An opened streaming completion."""

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


class CompletionClient(Protocol):
    """What a relay session needs from the provider."""

    async def open_stream(self, model: str, messages: List[Message]) -> CompletionStream:
        ...

    async def complete(
        self,
        model: str,
        messages: List[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> str:
        ...

    async def aclose(self) -> None:
        ...


# ============================================================================
# Client Configuration
# ============================================================================

def _create_limits(settings: RelaySettings) -> httpx.Limits:
    """
    Create connection pool limits configuration.

    Returns:
        httpx.Limits: Configured connection limits
    """
    return httpx.Limits(
        max_connections=settings.http_max_connections,
        max_keepalive_connections=settings.http_max_keepalive,
        keepalive_expiry=5.0,  # Close idle connections after 5 seconds
    )


def _create_timeout(settings: RelaySettings) -> httpx.Timeout:
    """
    Create timeout configuration for upstream requests.

    Returns:
        httpx.Timeout: Configured timeout settings
    """
    return httpx.Timeout(
        connect=settings.http_timeout_connect,
        read=settings.http_timeout_read,
        write=settings.http_timeout_write,
        pool=settings.http_timeout_pool,
    )


# ============================================================================
# Streaming Response Wrapper
# ============================================================================

class UpstreamStream:
    """
    Open streaming response from the provider.

    Wraps an ``httpx.Response`` obtained with ``send(..., stream=True)``.
    Iterate ``aiter_bytes()`` once; always call ``aclose()``.

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(detail=f"read timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise UpstreamStreamError(detail=f"{type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


# ============================================================================
# Client
# ============================================================================

class OpenAICompatibleClient:
    """
    Explicitly constructed provider client.

    Args:
        settings: Relay settings (base URL, key, pool and timeouts)
        http_client: Pre-built httpx client (tests pass one with a MockTransport)

    Example:
        client = OpenAICompatibleClient(get_settings())
        stream = await client.open_stream("gpt-4o-mini", [{"role": "user", "content": "Hi"}])
        try:
            async for chunk in stream.aiter_bytes():
                ...
        finally:
            await stream.aclose()

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """

    def __init__(self, settings: RelaySettings, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._url = settings.chat_completions_url
        if http_client is None:
            logger.info(
                "upstream_client.init",
                url=self._url,
                max_connections=settings.http_max_connections,
                max_keepalive=settings.http_max_keepalive,
            )
            http_client = httpx.AsyncClient(
                limits=_create_limits(settings),
                timeout=_create_timeout(settings),
                http2=True,
            )
        self._client = http_client

    def _headers(self, streaming: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if streaming:
            headers["Accept"] = "text/event-stream"
        if self._settings.upstream_api_key:
            headers["Authorization"] = f"Bearer {self._settings.upstream_api_key}"
        return headers

    async def open_stream(self, model: str, messages: List[Message]) -> UpstreamStream:
        """
        Start a streaming chat completion.

        Returns only once the provider answered with a 2xx status, so the
        caller still knows nothing was streamed yet if this raises.

        Args:
            model: Upstream model identifier
            messages: Ordered ``{"role", "content"}`` messages

        Returns:
            UpstreamStream: Open stream; caller must ``aclose()`` it

        Raises:
            UpstreamTimeoutError: Connect (or first byte) timed out
            UpstreamConnectError: Transport failure or non-2xx status

        Last Grunted: 10/18/2026 10:00:00 AM UTC
        """
        request = self._client.build_request(
            "POST",
            self._url,
            json={"model": model, "messages": messages, "stream": True},
            headers=self._headers(streaming=True),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(detail=f"connect timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise UpstreamConnectError(detail=f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            try:
                body = (await response.aread())[:_ERROR_PREVIEW_LENGTH]
            except httpx.HTTPError:
                body = b""
            finally:
                await response.aclose()
            logger.warning(
                "upstream.stream.bad_status",
                status_code=response.status_code,
                model=model,
                body=body.decode("utf-8", errors="replace"),
            )
            raise UpstreamConnectError(
                detail=f"upstream returned {response.status_code}",
                upstream_status=response.status_code,
            )

        return UpstreamStream(response)

    async def complete(
        self,
        model: str,
        messages: List[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Non-streaming completion, returning the first choice's text.

        Raises:
            UpstreamTimeoutError: Request timed out
            UpstreamConnectError: Transport failure, non-2xx, or no choices
        """
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature

        request_kwargs: Dict[str, Any] = {}
        if timeout:
            request_kwargs["timeout"] = httpx.Timeout(timeout)

        try:
            response = await self._client.post(
                self._url,
                json=payload,
                headers=self._headers(streaming=False),
                **request_kwargs,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(detail=f"completion timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise UpstreamConnectError(detail=f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise UpstreamConnectError(
                detail=f"upstream returned {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamConnectError(detail="upstream returned invalid JSON") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise UpstreamConnectError(detail="upstream returned no choices")
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""

    async def aclose(self) -> None:
        """Close the pooled client and release all connections."""
        logger.info("upstream_client.close")
        await self._client.aclose()
