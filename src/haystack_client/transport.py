"""HTTP transport primitive used by RequestSession and TokenManager"""

import logging
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

from .exceptions import TransportError

SUPPORTED_METHODS = ("GET", "POST", "PATCH", "PUT")


class _LoguruHandler(logging.Handler):
    """Bridge stdlib logging into loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(depth=6, exception=record.exc_info).log(
            level, record.getMessage()
        )


_logging_bridge_installed = False


def install_logging_bridge() -> None:
    """Bridge stdlib logging used by httpx into loguru once."""
    global _logging_bridge_installed
    if _logging_bridge_installed:
        return

    handler = _LoguruHandler()
    for name in ("haystack_client", "httpx"):
        std_logger = logging.getLogger(name)
        std_logger.setLevel(logging.DEBUG)
        std_logger.addHandler(handler)
        std_logger.propagate = False

    _logging_bridge_installed = True


@runtime_checkable
class Transport(Protocol):
    """Protocol for the raw request primitive

    `config` is a dict that may hold "headers", "params" and "auth"
    (a (username, password) tuple for HTTP basic auth).
    """

    async def submit(
        self,
        method: str,
        uri: str,
        body: Any = None,
        config: dict | None = None,
    ) -> Any:
        """Send one request and return the decoded response body.

        Raises:
            TransportError: If no response was received or it was not 2xx
        """
        ...

    async def aclose(self) -> None:
        """Release any connection resources."""
        ...


class HttpxTransport:
    """Transport backed by an httpx.AsyncClient

    Responsibilities:
    - HTTP request execution against the base URI
    - Request/response debug logging with credentials masked
    - Mapping of failed responses onto TransportError
    """

    def __init__(
        self,
        base_uri: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize transport

        Args:
            base_uri: URI of the API server; request URIs are relative to it
            timeout: Request timeout in seconds
            transport: Optional httpx transport (for testing)
        """
        self._base_uri = base_uri
        self._timeout = timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        install_logging_bridge()

    def _build_http_client(self) -> httpx.AsyncClient:
        """Create an AsyncClient with httpx request/response logging hooks."""
        return httpx.AsyncClient(
            base_url=self._base_uri,
            timeout=self._timeout,
            transport=self._transport,
            event_hooks={
                "request": [self._log_httpx_request],
                "response": [self._log_httpx_response],
            },
        )

    async def _log_httpx_request(self, request: httpx.Request) -> None:
        """Log outbound httpx requests with headers (auth masked)."""
        headers = {
            k: ("***" if k.lower() == "authorization" else v)
            for k, v in request.headers.items()
        }
        logger.debug(f"HTTPX request: {request.method} {request.url} {headers}")

    async def _log_httpx_response(self, response: httpx.Response) -> None:
        """Log httpx responses with status only; bodies may hold tokens."""
        logger.debug(
            f"HTTPX response: status={response.status_code} url={response.url}"
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = self._build_http_client()
        return self._http_client

    def set_http_client(self, client: httpx.AsyncClient) -> None:
        """Set the HTTP client (for testing or external management)"""
        self._http_client = client

    async def submit(
        self,
        method: str,
        uri: str,
        body: Any = None,
        config: dict | None = None,
    ) -> Any:
        """Send one request and return the decoded response body

        Args:
            method: HTTP method, not case-sensitive
            uri: Endpoint relative to the base URI
            body: JSON body, ignored for GET
            config: Request config ("headers", "params", "auth")

        Returns:
            Decoded JSON body, raw text if not JSON, {} if empty

        Raises:
            ValueError: If the method is not supported
            TransportError: If the request fails or returns a non-2xx status
        """
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Not configured for method {method}.")

        config = config or {}
        kwargs: dict[str, Any] = {
            "headers": config.get("headers"),
            "params": config.get("params"),
        }
        if config.get("auth") is not None:
            kwargs["auth"] = config["auth"]
        if method != "GET" and body is not None:
            kwargs["json"] = body

        try:
            response = await self.http_client.request(method, uri, **kwargs)
        except httpx.RequestError as e:
            logger.warning(f"Network error: {e}")
            raise TransportError(f"Request failed: {e}") from e

        if response.is_success:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                return response.text

        data = self._parse_body(response)
        raise TransportError(
            self._format_error(response, data),
            status_code=response.status_code,
            data=data,
        )

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _parse_body(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _format_error(self, response: httpx.Response, data: Any) -> str:
        """Return a safe string describing an HTTP error without assuming keys."""
        body = str(data) if data is not None else response.text
        return f"Request failed: {response.status_code} - {body}"
