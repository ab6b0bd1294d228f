"""TokenManager - OAuth2 access token lifecycle with single-flight login"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import cast

from loguru import logger

from .exceptions import AuthenticationError
from .transport import Transport

# expires_in values at or above this are absolute epoch milliseconds
EPOCH_MS_THRESHOLD = 10**11

TOKEN_PROPERTIES = ("refresh_token", "expires_in", "token_type", "access_token")


class LifecycleState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass
class TokenState:
    """Credential state owned by a TokenManager"""

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at_ms: int | None = None
    lifecycle: LifecycleState = LifecycleState.UNAUTHENTICATED


def _now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


class TokenManager:
    """Manages the access token used for every API request

    Responsibilities:
    - Password-grant login and refresh-token grant against /oauth2/token
    - Expiry tracking
    - Collapsing concurrent token requests onto one in-flight operation
    """

    TOKEN_URI = "/oauth2/token"

    def __init__(
        self,
        transport: Transport,
        username: str | None,
        password: str | None,
        client_id: str | None,
        client_secret: str | None,
        access_token: dict | None = None,
        expiry_skew_seconds: float = 0,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        """Initialize token manager

        Args:
            transport: Raw transport used for the token endpoint
            username: User to log in as
            password: Password of the user
            client_id: OAuth2 client ID
            client_secret: OAuth2 client secret
            access_token: Previously issued token response to start from
            expiry_skew_seconds: Treat tokens this close to expiry as expired
            clock: Returns the current time in epoch milliseconds

        Raises:
            ValueError: If credentials are missing or access_token is not a
                token response
        """
        required = {
            "username": username,
            "password": password,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        missing = [k for k, v in required.items() if not v]
        if missing:
            raise ValueError(f"Missing client credentials: {missing}")

        self._transport = transport
        self._username = cast(str, username)
        self._password = cast(str, password)
        self._client_id = cast(str, client_id)
        self._client_secret = cast(str, client_secret)
        self._skew_ms = int(expiry_skew_seconds * 1000)
        self._clock = clock

        self._state = TokenState()
        self._pending: asyncio.Task[str] | None = None
        # bumped by reset(); a login started under an older generation
        # must not write into the state that replaced it
        self._generation = 0

        if access_token is not None:
            if not isinstance(access_token, dict) or any(
                prop not in access_token for prop in TOKEN_PROPERTIES
            ):
                raise ValueError(
                    "Parameter 'access_token' is not a valid token."
                )
            self._store(access_token)

    @property
    def state(self) -> TokenState:
        """Get the current token state"""
        return self._state

    @property
    def lifecycle(self) -> LifecycleState:
        """Get the current lifecycle state"""
        return self._state.lifecycle

    @property
    def access_token(self) -> str | None:
        """Get the cached access token, valid or not"""
        return self._state.access_token

    @property
    def is_pending(self) -> bool:
        """Check if a login or refresh is in flight"""
        return self._pending is not None

    @property
    def is_authenticated(self) -> bool:
        """Check if the cached access token can be used as-is"""
        state = self._state
        return (
            state.lifecycle is LifecycleState.AUTHENTICATED
            and state.expires_at_ms is not None
            and self._clock() + self._skew_ms < state.expires_at_ms
        )

    async def get_valid_token(self) -> str:
        """Return an access token that is valid right now

        Returns the cached token when usable. Otherwise joins the in-flight
        login/refresh or starts one: refresh when a refresh token is known,
        falling back to a full login, or a full login directly.

        Raises:
            Exception: Whatever the final login attempt raised, unwrapped
        """
        if self.is_authenticated:
            return cast(str, self._state.access_token)

        if self._pending is None:
            self._pending = asyncio.get_running_loop().create_task(
                self._authenticate(self._generation, self._state)
            )
        else:
            logger.debug("Waiting for token acquisition")

        return await asyncio.shield(self._pending)

    async def force_refresh(self, rejected_token: str | None = None) -> str:
        """Discard the cached token and authenticate again

        Args:
            rejected_token: Token the server just refused. If a concurrent
                refresh already replaced it, the newer token is returned
                without another round trip.

        Returns:
            The new access token
        """
        if self._pending is not None:
            return await asyncio.shield(self._pending)

        state = self._state
        if (
            rejected_token is not None
            and state.access_token != rejected_token
            and self.is_authenticated
        ):
            return cast(str, state.access_token)

        logger.info("Forcing token refresh")
        state.expires_at_ms = 0
        return await self.get_valid_token()

    def reset(self) -> None:
        """Forget every token (explicit logout)

        A login or refresh still in flight is detached: its callers get
        its result, but the token it obtains is not kept.
        """
        logger.info("Token state reset")
        self._generation += 1
        self._pending = None
        self._state = TokenState()

    async def _authenticate(self, generation: int, state: TokenState) -> str:
        task = asyncio.current_task()
        try:
            if state.refresh_token:
                token = await self._refresh_or_login(state)
            else:
                logger.debug("Begin token acquisition")
                state.lifecycle = LifecycleState.AUTHENTICATING
                token = await self._do_login()
        except Exception as e:
            logger.warning(f"Failed to log into API server: {e}")
            if generation == self._generation:
                self._state = TokenState(lifecycle=LifecycleState.FAILED)
            raise
        else:
            if generation != self._generation:
                logger.info("Token state was reset during login, discarding token")
                return cast(str, token["access_token"])
            self._store(token)
            logger.info("Logged in to API server")
            return cast(str, self._state.access_token)
        finally:
            if self._pending is task:
                self._pending = None

    async def _refresh_or_login(self, state: TokenState) -> dict:
        logger.debug("Begin token refresh")
        state.lifecycle = LifecycleState.REFRESHING
        try:
            return await self._do_refresh(cast(str, state.refresh_token))
        except Exception as e:
            logger.info(f"Refresh fails, trying log-in instead: {e}")
            state.lifecycle = LifecycleState.AUTHENTICATING
            return await self._do_login()

    async def _do_login(self) -> dict:
        logger.debug("Performing login attempt")
        return self._check_token(
            await self._transport.submit(
                "POST",
                self.TOKEN_URI,
                {
                    "username": self._username,
                    "password": self._password,
                    "grant_type": "password",
                },
                {"auth": (self._client_id, self._client_secret)},
            )
        )

    async def _do_refresh(self, refresh_token: str) -> dict:
        logger.debug("Performing token refresh attempt")
        return self._check_token(
            await self._transport.submit(
                "POST",
                self.TOKEN_URI,
                {
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                {"auth": (self._client_id, self._client_secret)},
            )
        )

    def _check_token(self, token: object) -> dict:
        if not isinstance(token, dict) or not token.get("access_token"):
            raise AuthenticationError(
                "Token response did not contain an access token"
            )
        if token.get("expires_in") is None:
            raise AuthenticationError("Token response did not contain expiry")
        return token

    def _store(self, token: dict) -> None:
        state = self._state
        state.access_token = token["access_token"]
        if token.get("refresh_token"):
            state.refresh_token = token["refresh_token"]
        state.expires_at_ms = self._expiry_from(token["expires_in"])
        state.lifecycle = LifecycleState.AUTHENTICATED

        expiration_dt = datetime.fromtimestamp(state.expires_at_ms / 1000)
        logger.debug(f"Access token expires at {expiration_dt}")

    def _expiry_from(self, expires_in: int | float | str) -> int:
        value = int(expires_in)
        if value >= EPOCH_MS_THRESHOLD:
            return value
        return self._clock() + value * 1000
