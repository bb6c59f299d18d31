"""
Forwarding of client requests to the upstream API.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional

import httpx

from ..config.loader import DEFAULT_UPSTREAM_TIMEOUT, DEFAULT_UPSTREAM_URL
from ..log import get_logger
from .errors import UpstreamForwardError

logger = get_logger(__name__)

FORWARDED_HEADERS = ("OpenAI-Organization", "OpenAI-Project")


@dataclass
class UpstreamResponse:
    """Response of the upstream API.

    Exactly one of ``content`` (fully read body) and ``chunks`` (streamed
    body, read lazily) is set.
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: Optional[bytes] = None
    chunks: Optional[Iterator[bytes]] = None


class StreamedBody:
    """Raw chunks of a streamed upstream response.

    The upstream connection goes back to the pool once the body is
    exhausted, fails, or is closed, whether or not iteration ever started.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks = response.iter_raw()

    def __iter__(self) -> "StreamedBody":
        return self

    def __next__(self) -> bytes:
        try:
            return next(self._chunks)
        except StopIteration:
            self.close()
            raise
        except Exception:
            self.close()
            raise

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    def close(self) -> None:
        self._response.close()


class UpstreamForwarder:
    """Sends requests to the upstream API with the proxy's own key.

    The client's Authorization header is never forwarded.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_UPSTREAM_URL,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def _build_headers(self, headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
        outgoing = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if headers:
            lowered = {key.lower(): value for key, value in headers.items()}
            for name in FORWARDED_HEADERS:
                value = lowered.get(name.lower())
                if value:
                    outgoing[name] = value
        return outgoing

    def forward(
        self,
        method: str,
        path: str,
        payload: Dict[str, Any],
        headers: Optional[Mapping[str, str]] = None,
        stream: bool = False,
    ) -> UpstreamResponse:
        """Forward a request and return the upstream response.

        Non-streaming bodies are read in full before returning. Streaming
        bodies are passed through as a StreamedBody; callers that stop
        reading early must close it.

        Args:
            method: HTTP method
            path: Request path, e.g. /v1/chat/completions
            payload: Decoded JSON payload of the client request
            headers: Client request headers
            stream: Whether the client asked for a streamed response

        Raises:
            UpstreamForwardError: If the upstream API could not be reached
        """
        if not self.api_key:
            logger.error("OPENAI_API_KEY is not set, cannot forward %s %s", method, path)
            raise UpstreamForwardError()

        request = self._client.build_request(
            method,
            path,
            json=payload,
            headers=self._build_headers(headers),
        )
        try:
            response = self._client.send(request, stream=stream)
        except httpx.HTTPError as e:
            logger.error("Error proxying request to OpenAI: %s", e)
            raise UpstreamForwardError() from e

        if stream:
            return UpstreamResponse(
                status=response.status_code,
                headers={
                    "Content-Type": response.headers.get("Content-Type", "text/event-stream"),
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                },
                chunks=StreamedBody(response),
            )

        return UpstreamResponse(
            status=response.status_code,
            headers={"Content-Type": response.headers.get("Content-Type", "application/json")},
            content=response.content,
        )

    def close(self) -> None:
        self._client.close()
