"""RequestSession - authenticated requests with a single retry on 401"""

from typing import Any

from loguru import logger

from .auth import TokenManager
from .exceptions import RequestError, TransportError
from .transport import Transport


class RequestSession:
    """Executes API requests with credentials attached

    Responsibilities:
    - Bearer token and header attachment
    - One token refresh and retry when the server answers 401
    - Reclassification of error payloads into HaystackError/GraphQLError
    """

    def __init__(
        self,
        transport: Transport,
        token_manager: TokenManager,
        accept_gzip: bool = True,
        impersonate_as: str | None = None,
    ) -> None:
        """Initialize request session

        Args:
            transport: Raw transport the requests are delegated to
            token_manager: Source of access tokens
            accept_gzip: Ask the server for compressed responses
            impersonate_as: User ID to act as on every request
        """
        self._transport = transport
        self._token_manager = token_manager
        self._accept_gzip = accept_gzip
        self._impersonate: str | None = impersonate_as

    @property
    def token_manager(self) -> TokenManager:
        return self._token_manager

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def impersonating(self) -> str | None:
        """Get the user ID being impersonated, if any"""
        return self._impersonate

    def impersonate_as(self, user_id: str) -> None:
        self._impersonate = user_id

    def unset_impersonate(self) -> None:
        self._impersonate = None

    def is_impersonating(self) -> bool:
        return self._impersonate is not None

    def set_accept_gzip(self, accept_gzip: bool) -> None:
        self._accept_gzip = bool(accept_gzip)

    def is_accepting_gzip(self) -> bool:
        return self._accept_gzip

    async def submit_request(
        self,
        method: str,
        uri: str,
        body: Any = None,
        config: dict | None = None,
    ) -> Any:
        """Submit a request against the API server

        Args:
            method: HTTP method, not case-sensitive
            uri: Endpoint relative to the base URI
            body: Request body, ignored for GET
            config: Request config ("headers", "params"); not modified

        Returns:
            Decoded response body

        Raises:
            HaystackError: If the server reports a Haystack op error
            GraphQLError: If the server reports GraphQL errors
            TransportError: If the request fails otherwise, or fails again
                after the token refresh
        """
        token = await self._token_manager.get_valid_token()
        attached = self._attach_config(config, token)
        logger.debug(f"{method.upper()} {uri}")

        try:
            return await self._transport.submit(method, uri, body, attached)
        except TransportError as err:
            if err.is_auth_error:
                logger.warning(f"Unauthorized - refreshing token: {uri}")
                token = await self._token_manager.force_refresh(token)
                attached = self._attach_config(config, token)
                return await self._transport.submit(
                    method, uri, body, attached
                )

            classified = RequestError.make(err)
            if classified is err:
                raise
            raise classified from err

    def _attach_config(self, config: dict | None, token: str) -> dict:
        """Return a copy of config with auth and content headers applied"""
        attached = dict(config or {})
        headers = dict(attached.get("headers") or {})

        headers["Authorization"] = f"Bearer {token}"
        headers["Accept"] = "application/json"
        if self._accept_gzip:
            headers["Accept-Encoding"] = "gzip, deflate"
        if self._impersonate is not None:
            headers["X-IMPERSONATE"] = self._impersonate

        attached["headers"] = headers
        return attached
