"""Unit tests for TokenManager"""

import asyncio

import pytest

from haystack_client.auth import LifecycleState, TokenManager
from haystack_client.exceptions import AuthenticationError, TransportError


@pytest.mark.unit
class TestTokenManagerInit:
    def test_missing_credentials(self, mock_transport):
        with pytest.raises(ValueError, match="Missing client credentials"):
            TokenManager(mock_transport, "user", "", "client-id", None)

    def test_invalid_access_token(self, mock_transport):
        with pytest.raises(ValueError, match="not a valid token"):
            TokenManager(
                mock_transport,
                "user",
                "pass",
                "client-id",
                "client-secret",
                access_token={"access_token": "abc"},
            )

    @pytest.mark.asyncio
    async def test_initial_access_token_is_reused(
        self, mock_transport, clock, token_factory
    ):
        """Test a supplied token is used without contacting the server"""
        manager = TokenManager(
            mock_transport,
            "user",
            "pass",
            "client-id",
            "client-secret",
            access_token=token_factory(access="given"),
            clock=clock,
        )

        assert await manager.get_valid_token() == "given"
        mock_transport.submit.assert_not_called()


@pytest.mark.unit
class TestGetValidToken:
    """Tests for TokenManager.get_valid_token()"""

    @pytest.mark.asyncio
    async def test_login_request(self, token_manager, mock_transport, token_factory):
        """Test login posts the password grant with client basic auth"""
        mock_transport.submit.return_value = token_factory()

        token = await token_manager.get_valid_token()

        assert token == "access-1"
        assert token_manager.lifecycle is LifecycleState.AUTHENTICATED
        mock_transport.submit.assert_awaited_once_with(
            "POST",
            "/oauth2/token",
            {
                "username": "user@example.com",
                "password": "secret",
                "grant_type": "password",
            },
            {"auth": ("client-id", "client-secret")},
        )

    @pytest.mark.asyncio
    async def test_cached_token_reused(self, token_manager, mock_transport, token_factory):
        mock_transport.submit.return_value = token_factory()

        await token_manager.get_valid_token()
        await token_manager.get_valid_token()

        assert mock_transport.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_login(
        self, token_manager, mock_transport, token_factory
    ):
        """Test concurrent requests collapse onto a single login"""
        release = asyncio.Event()

        async def slow_login(*args, **kwargs):
            await release.wait()
            return token_factory(access="shared")

        mock_transport.submit.side_effect = slow_login

        waiters = [
            asyncio.create_task(token_manager.get_valid_token()) for _ in range(5)
        ]
        await asyncio.sleep(0)
        assert token_manager.is_pending
        release.set()
        tokens = await asyncio.gather(*waiters)

        assert tokens == ["shared"] * 5
        assert mock_transport.submit.await_count == 1
        assert not token_manager.is_pending

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(
        self, token_manager, mock_transport, clock, token_factory
    ):
        """Test an expired token triggers the refresh grant"""
        mock_transport.submit.side_effect = [
            token_factory(access="first", refresh="r-1"),
            token_factory(access="second", refresh="r-2"),
        ]
        await token_manager.get_valid_token()
        clock.advance(3601)

        token = await token_manager.get_valid_token()

        assert token == "second"
        refresh_call = mock_transport.submit.await_args_list[1]
        assert refresh_call.args[2] == {
            "refresh_token": "r-1",
            "grant_type": "refresh_token",
        }
        assert token_manager.state.refresh_token == "r-2"

    @pytest.mark.asyncio
    async def test_refresh_failure_falls_back_to_login(
        self, token_manager, mock_transport, clock, token_factory
    ):
        mock_transport.submit.side_effect = [
            token_factory(access="first"),
            TransportError("Request failed", status_code=400),
            token_factory(access="relogged"),
        ]
        await token_manager.get_valid_token()
        clock.advance(3601)

        token = await token_manager.get_valid_token()

        assert token == "relogged"
        last_body = mock_transport.submit.await_args_list[2].args[2]
        assert last_body["grant_type"] == "password"

    @pytest.mark.asyncio
    async def test_login_failure_propagates_to_every_waiter(
        self, token_manager, mock_transport
    ):
        """Test a failed login rejects all waiters and leaves FAILED state"""
        mock_transport.submit.side_effect = TransportError(
            "Request failed", status_code=401
        )

        results = await asyncio.gather(
            token_manager.get_valid_token(),
            token_manager.get_valid_token(),
            return_exceptions=True,
        )

        assert all(isinstance(r, TransportError) for r in results)
        assert mock_transport.submit.await_count == 1
        assert token_manager.lifecycle is LifecycleState.FAILED
        assert token_manager.access_token is None
        assert not token_manager.is_pending

    @pytest.mark.asyncio
    async def test_login_retried_after_failure(
        self, token_manager, mock_transport, token_factory
    ):
        mock_transport.submit.side_effect = [
            TransportError("Request failed"),
            token_factory(access="later"),
        ]

        with pytest.raises(TransportError):
            await token_manager.get_valid_token()

        assert await token_manager.get_valid_token() == "later"

    @pytest.mark.asyncio
    async def test_token_response_without_access_token(
        self, token_manager, mock_transport
    ):
        mock_transport.submit.return_value = {"expires_in": 3600}

        with pytest.raises(AuthenticationError):
            await token_manager.get_valid_token()

    @pytest.mark.asyncio
    async def test_absolute_expiry_in_epoch_ms(
        self, token_manager, mock_transport, clock, token_factory
    ):
        """Test large expires_in values are taken as absolute timestamps"""
        token = token_factory()
        token["expires_in"] = clock.now_ms + 5000
        mock_transport.submit.return_value = token

        await token_manager.get_valid_token()

        assert token_manager.state.expires_at_ms == clock.now_ms + 5000

    @pytest.mark.asyncio
    async def test_expiry_skew(self, mock_transport, clock, token_factory):
        manager = TokenManager(
            mock_transport,
            "user",
            "pass",
            "client-id",
            "client-secret",
            expiry_skew_seconds=60,
            clock=clock,
        )
        mock_transport.submit.return_value = token_factory()
        await manager.get_valid_token()

        clock.advance(3550)

        assert not manager.is_authenticated


@pytest.mark.unit
class TestForceRefresh:
    """Tests for TokenManager.force_refresh()"""

    @pytest.mark.asyncio
    async def test_force_refresh_replaces_token(
        self, token_manager, mock_transport, token_factory
    ):
        mock_transport.submit.side_effect = [
            token_factory(access="old"),
            token_factory(access="new"),
        ]
        await token_manager.get_valid_token()

        assert await token_manager.force_refresh("old") == "new"
        assert mock_transport.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_stale_rejection_returns_current_token(
        self, token_manager, mock_transport, token_factory
    ):
        """Test a rejection of an already replaced token skips the refresh"""
        mock_transport.submit.side_effect = [
            token_factory(access="old"),
            token_factory(access="new"),
        ]
        await token_manager.get_valid_token()
        await token_manager.force_refresh("old")

        assert await token_manager.force_refresh("old") == "new"
        assert mock_transport.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_force_refresh_single_flight(
        self, token_manager, mock_transport, token_factory
    ):
        mock_transport.submit.side_effect = [
            token_factory(access="old"),
            token_factory(access="new"),
        ]
        await token_manager.get_valid_token()

        tokens = await asyncio.gather(
            token_manager.force_refresh("old"),
            token_manager.force_refresh("old"),
            token_manager.force_refresh("old"),
        )

        assert tokens == ["new", "new", "new"]
        assert mock_transport.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_reset_forgets_tokens(
        self, token_manager, mock_transport, token_factory
    ):
        mock_transport.submit.return_value = token_factory()
        await token_manager.get_valid_token()

        token_manager.reset()

        assert token_manager.access_token is None
        assert token_manager.lifecycle is LifecycleState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_reset_during_login_discards_token(
        self, token_manager, mock_transport, token_factory
    ):
        """Test a login settling after reset() does not re-authenticate"""
        release = asyncio.Event()

        async def slow_login(*args, **kwargs):
            await release.wait()
            return token_factory(access="stale")

        mock_transport.submit.side_effect = slow_login
        waiter = asyncio.create_task(token_manager.get_valid_token())
        await asyncio.sleep(0)
        assert token_manager.is_pending

        token_manager.reset()
        assert not token_manager.is_pending
        release.set()

        assert await waiter == "stale"
        assert token_manager.lifecycle is LifecycleState.UNAUTHENTICATED
        assert token_manager.access_token is None
        assert token_manager.state.refresh_token is None

    @pytest.mark.asyncio
    async def test_failed_login_after_reset_keeps_reset_state(
        self, token_manager, mock_transport
    ):
        release = asyncio.Event()

        async def failing_login(*args, **kwargs):
            await release.wait()
            raise TransportError("boom")

        mock_transport.submit.side_effect = failing_login
        waiter = asyncio.create_task(token_manager.get_valid_token())
        await asyncio.sleep(0)

        token_manager.reset()
        release.set()

        with pytest.raises(TransportError):
            await waiter
        assert token_manager.lifecycle is LifecycleState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_login_after_reset_does_not_join_detached_login(
        self, token_manager, mock_transport, token_factory
    ):
        release = asyncio.Event()
        tokens = iter(["stale", "fresh"])

        async def login(*args, **kwargs):
            access = next(tokens)
            if access == "stale":
                await release.wait()
            return token_factory(access=access)

        mock_transport.submit.side_effect = login
        detached = asyncio.create_task(token_manager.get_valid_token())
        await asyncio.sleep(0)
        token_manager.reset()

        assert await token_manager.get_valid_token() == "fresh"
        release.set()
        await detached

        assert token_manager.access_token == "fresh"
        assert token_manager.lifecycle is LifecycleState.AUTHENTICATED
        assert mock_transport.submit.await_count == 2
