"""Tests for the OAuth manager orchestrating the full flow."""

from __future__ import annotations

import asyncio
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

import pytest

from authbroker.auth.manager import OAuthManager, create_default_manager
from authbroker.auth.pkce import compute_challenge
from authbroker.auth.scopes import ScopeRegistry
from authbroker.auth.token_store import TokenStore
from authbroker.exceptions import (
    AuthenticationRequiredError,
    AuthorizationError,
    CallbackTimeoutError,
    ConfigurationError,
    CsrfError,
    InvalidGrantError,
    NetworkError,
    ResourceError,
    ScopeError,
)
from authbroker.models import AuthState, BrokerConfig, CallbackResult, TokenSet

REGISTRY = ScopeRegistry()
CALENDAR = REGISTRY.scopes_for("calendar")
GMAIL = REGISTRY.scopes_for("gmail")


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestConstruction:
    def test_missing_client_id(self, token_store: TokenStore) -> None:
        with pytest.raises(ConfigurationError, match="Missing required OAuth credentials"):
            OAuthManager(BrokerConfig(client_secret="s"), token_store)

    def test_missing_client_secret(self, token_store: TokenStore) -> None:
        with pytest.raises(ConfigurationError, match="GOOGLE_CLIENT_SECRET"):
            OAuthManager(BrokerConfig(client_id="c"), token_store)

    def test_unknown_service(self, token_store: TokenStore) -> None:
        config = BrokerConfig(client_id="c", client_secret="s", enabled_services=["photos"])
        with pytest.raises(ConfigurationError, match="Unknown service"):
            OAuthManager(config, token_store)

    def test_create_default_manager(self, broker_config: BrokerConfig, quiet_output: Any) -> None:
        config = broker_config.model_copy(update={"token_encryption_key": "passphrase"})
        manager = create_default_manager(config)
        assert manager.state is AuthState.UNAUTHENTICATED
        status = manager.get_auth_status()
        assert status.encrypted
        assert not status.ephemeral_key

    def test_create_default_manager_requires_credentials(self) -> None:
        with pytest.raises(ConfigurationError):
            create_default_manager(BrokerConfig())


class TestAuthorizationUrl:
    def test_contains_pkce_and_offline_params(self, make_manager: Callable[..., OAuthManager]) -> None:
        manager = make_manager()
        url = manager.get_authorization_url()
        params = _query(url)

        pending = manager.pending
        assert pending is not None
        assert params["client_id"] == "test-client.apps.googleusercontent.com"
        assert params["redirect_uri"] == manager.config.redirect_uri
        assert params["response_type"] == "code"
        assert params["state"] == pending.state
        assert params["code_challenge"] == compute_challenge(pending.code_verifier)
        assert params["code_challenge_method"] == "S256"
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"
        assert params["include_granted_scopes"] == "true"
        assert params["scope"].split() == CALENDAR
        assert pending.code_verifier not in url

    def test_scope_is_union_with_granted(
        self,
        make_manager: Callable[..., OAuthManager],
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        drive = REGISTRY.scopes_for("drive")
        token_store.save(make_token(scopes=drive))
        manager = make_manager()
        scopes = _query(manager.get_authorization_url(["gmail.readonly"]))["scope"].split()
        assert scopes == drive + CALENDAR + [GMAIL[0]]

    def test_each_call_replaces_pending_attempt(self, make_manager: Callable[..., OAuthManager]) -> None:
        manager = make_manager()
        first = _query(manager.get_authorization_url())["state"]
        second = _query(manager.get_authorization_url())["state"]
        assert first != second
        assert manager.pending is not None
        assert manager.pending.state == second


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_fresh_install_ensure_scopes(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
        token_store: TokenStore,
    ) -> None:
        launcher = make_launcher(code="code-from-google")
        async with make_manager(launcher=launcher) as manager:
            assert manager.state is AuthState.UNAUTHENTICATED
            await manager.ensure_scopes()

            assert manager.state is AuthState.AUTHENTICATED
            assert await manager.is_authenticated()
            assert await manager.get_access_token() == "access-1"

        assert len(launcher.urls) == 1
        assert launcher.responses[0][0] == 200
        params = launcher.last_params
        assert params["scope"].split() == CALENDAR

        call = fake_exchanger.exchange_calls[0]
        assert call["code"] == "code-from-google"
        assert compute_challenge(call["code_verifier"]) == params["code_challenge"]
        assert call["redirect_uri"] == params["redirect_uri"]

        stored = token_store.load()
        assert stored is not None
        assert stored.access_token == "access-1"
        assert manager.pending is None

    @pytest.mark.asyncio
    async def test_enabling_gmail_reauthorizes_with_union(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
        token_store: TokenStore,
    ) -> None:
        launcher = make_launcher()
        async with make_manager(launcher=launcher) as manager:
            await manager.ensure_scopes()
            assert manager.get_granted_scopes() == CALENDAR

            manager.enabled_services = ["calendar", "gmail"]
            assert not await manager.is_authenticated()
            await manager.ensure_scopes()

            assert manager.state is AuthState.AUTHENTICATED
            assert await manager.is_authenticated()

        assert len(launcher.urls) == 2
        assert launcher.last_params["scope"].split() == CALENDAR + GMAIL
        assert len(fake_exchanger.exchange_calls) == 2
        stored = token_store.load()
        assert stored is not None
        assert stored.access_token == "access-2"
        assert set(stored.scopes) == set(CALENDAR + GMAIL)

    @pytest.mark.asyncio
    async def test_ensure_scopes_noop_when_satisfied(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token())
        launcher = make_launcher()
        async with make_manager(launcher=launcher) as manager:
            await manager.ensure_scopes()
        assert launcher.urls == []

    @pytest.mark.asyncio
    async def test_ensure_scopes_with_additional_scopes(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token())
        launcher = make_launcher()
        async with make_manager(launcher=launcher) as manager:
            await manager.ensure_scopes(["drive.file"])
            assert "https://www.googleapis.com/auth/drive.file" in manager.get_granted_scopes()
        assert launcher.last_params["scope"].split() == CALENDAR + [
            "https://www.googleapis.com/auth/drive.file"
        ]

    @pytest.mark.asyncio
    async def test_access_denied(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
        token_store: TokenStore,
    ) -> None:
        async with make_manager(launcher=make_launcher(mode="deny")) as manager:
            with pytest.raises(AuthorizationError, match="denied"):
                await manager.authenticate()
            assert manager.state is AuthState.UNAUTHENTICATED
            assert manager.pending is None
        assert fake_exchanger.exchange_calls == []
        assert token_store.load() is None

    @pytest.mark.asyncio
    async def test_forged_state_leaves_tokens_unchanged(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        original = make_token(access_token="original-access")
        token_store.save(original)
        launcher = make_launcher(mode="forged")
        async with make_manager(launcher=launcher, callback_timeout=0.5) as manager:
            with pytest.raises(CsrfError):
                await manager.authenticate()
            assert manager.state is AuthState.AUTHENTICATED
            assert await manager.get_access_token() == "original-access"

        assert launcher.responses[0][0] == 400
        assert fake_exchanger.exchange_calls == []
        assert token_store.load() == original

    @pytest.mark.asyncio
    async def test_scope_shortfall_saves_tokens_and_raises(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
    ) -> None:
        fake_exchanger.granted_scopes = CALENDAR[:1]
        async with make_manager() as manager:
            with pytest.raises(ScopeError) as exc_info:
                await manager.authenticate()
            assert exc_info.value.missing == CALENDAR[1:]
            assert manager.state is AuthState.AUTHENTICATED
            assert not await manager.is_authenticated()
        assert token_store.load() is not None

    @pytest.mark.asyncio
    async def test_timeout_keeps_attempt_for_manual_completion(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
    ) -> None:
        launcher = make_launcher(mode="none")
        async with make_manager(launcher=launcher, callback_timeout=0.2) as manager:
            with pytest.raises(CallbackTimeoutError):
                await manager.authenticate()
            assert manager.state is AuthState.UNAUTHENTICATED

            state = launcher.last_params["state"]
            token = await manager.complete_authorization("pasted-code", state)

            assert token.access_token == "access-1"
            assert manager.state is AuthState.AUTHENTICATED
            assert manager.pending is None
        assert fake_exchanger.exchange_calls[0]["code"] == "pasted-code"

    @pytest.mark.asyncio
    async def test_manual_completion_with_wrong_state(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
    ) -> None:
        async with make_manager() as manager:
            manager.get_authorization_url()
            with pytest.raises(CsrfError):
                await manager.complete_authorization("code", "forged-state")
            assert manager.pending is None
            with pytest.raises(AuthorizationError, match="No sign-in attempt"):
                await manager.complete_authorization("code", "forged-state")
        assert fake_exchanger.exchange_calls == []

    @pytest.mark.asyncio
    async def test_manual_completion_without_pending(self, make_manager: Callable[..., OAuthManager]) -> None:
        async with make_manager() as manager:
            with pytest.raises(AuthorizationError, match="No sign-in attempt"):
                await manager.complete_authorization("code", "state")

    @pytest.mark.asyncio
    async def test_pending_attempt_expires(
        self,
        broker_config: BrokerConfig,
        token_store: TokenStore,
        fake_exchanger: Any,
        quiet_output: Any,
    ) -> None:
        from datetime import timedelta

        from authbroker.models import utcnow

        offset = [timedelta(0)]
        manager = OAuthManager(
            broker_config,
            token_store,
            exchanger=fake_exchanger,
            clock=lambda: utcnow() + offset[0],
        )
        state = _query(manager.get_authorization_url())["state"]
        offset[0] = timedelta(seconds=301)
        with pytest.raises(AuthorizationError):
            await manager.complete_authorization("code", state)
        assert fake_exchanger.exchange_calls == []

    @pytest.mark.asyncio
    async def test_concurrent_authenticate_is_coalesced(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
    ) -> None:
        launcher = make_launcher()
        async with make_manager(launcher=launcher) as manager:
            first, second = await asyncio.gather(manager.authenticate(), manager.authenticate())
        assert first == second
        assert len(launcher.urls) == 1
        assert len(fake_exchanger.exchange_calls) == 1

    @pytest.mark.asyncio
    async def test_port_conflict(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        broker_config: BrokerConfig,
    ) -> None:
        import socket

        port = urlparse(broker_config.redirect_uri).port
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", port))
        blocker.listen(1)
        launcher = make_launcher()
        try:
            async with make_manager(launcher=launcher) as manager:
                with pytest.raises(ResourceError, match="Callback listener unavailable"):
                    await manager.authenticate()
                assert manager.state is AuthState.UNAUTHENTICATED
        finally:
            blocker.close()
        assert launcher.urls == []

    @pytest.mark.asyncio
    async def test_failed_reauthorization_raises_once_with_instruction(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token())
        launcher = make_launcher(mode="deny")
        async with make_manager(launcher=launcher, enabled_services=["calendar", "gmail"]) as manager:
            with pytest.raises(ScopeError, match="authbroker login") as exc_info:
                await manager.ensure_scopes()
            assert exc_info.value.missing == GMAIL
            assert isinstance(exc_info.value.__cause__, AuthorizationError)
        assert len(launcher.urls) == 1


class TestTokens:
    @pytest.mark.asyncio
    async def test_no_tokens(self, make_manager: Callable[..., OAuthManager]) -> None:
        async with make_manager() as manager:
            assert not await manager.is_authenticated()
            with pytest.raises(AuthenticationRequiredError, match="Not authenticated"):
                await manager.get_access_token()

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_refresh(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token(access_token="still-good"))
        async with make_manager() as manager:
            assert manager.state is AuthState.AUTHENTICATED
            assert await manager.get_access_token() == "still-good"
        assert fake_exchanger.refresh_calls == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token(expires_in=-10))
        async with make_manager() as manager:
            assert not await manager.is_authenticated()
            assert await manager.get_access_token() == "refreshed-1"
            assert await manager.is_authenticated()

        assert fake_exchanger.refresh_calls == ["refresh-initial"]
        stored = token_store.load()
        assert stored is not None
        assert stored.access_token == "refreshed-1"
        assert stored.refresh_token == "refresh-initial"
        assert stored.scope == make_token().scope

    @pytest.mark.asyncio
    async def test_token_inside_expiry_buffer_refreshed(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token(expires_in=120))
        async with make_manager() as manager:
            assert await manager.get_access_token() == "refreshed-1"
        assert len(fake_exchanger.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_kept(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        fake_exchanger.rotate_refresh_token = True
        token_store.save(make_token(expires_in=-10))
        async with make_manager() as manager:
            await manager.get_access_token()
        stored = token_store.load()
        assert stored is not None
        assert stored.refresh_token == "rotated-refresh"

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        fake_exchanger.refresh_delay = 0.05
        token_store.save(make_token(expires_in=-10))
        async with make_manager() as manager:
            tokens = await asyncio.gather(*(manager.get_access_token() for _ in range(10)))
        assert tokens == ["refreshed-1"] * 10
        assert len(fake_exchanger.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_refresh(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        fake_exchanger.refresh_delay = 0.05
        token_store.save(make_token(expires_in=-10))
        async with make_manager() as manager:
            impatient = asyncio.ensure_future(manager.get_access_token())
            patient = asyncio.ensure_future(manager.get_access_token())
            await asyncio.sleep(0.01)
            impatient.cancel()
            assert await patient == "refreshed-1"
        assert len(fake_exchanger.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_grant_clears_tokens(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        fake_exchanger.refresh_error = InvalidGrantError("Token has been expired or revoked.", status_code=400)
        token_store.save(make_token(expires_in=-10))
        async with make_manager() as manager:
            with pytest.raises(InvalidGrantError, match="Interactive authentication is required"):
                await manager.get_access_token()
            assert manager.state is AuthState.UNAUTHENTICATED
            assert token_store.load() is None

            with pytest.raises(AuthenticationRequiredError):
                await manager.get_access_token()
        assert len(fake_exchanger.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_network_error_keeps_tokens(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        fake_exchanger.refresh_error = NetworkError("Token refresh timed out")
        token_store.save(make_token(expires_in=-10))
        async with make_manager() as manager:
            with pytest.raises(NetworkError):
                await manager.get_access_token()
            assert manager.state is AuthState.AUTHENTICATED
        assert token_store.load() is not None

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self,
        make_manager: Callable[..., OAuthManager],
        fake_exchanger: Any,
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token(refresh_token=None, expires_in=-10))
        async with make_manager() as manager:
            with pytest.raises(AuthenticationRequiredError, match="no refresh token"):
                await manager.get_access_token()
        assert fake_exchanger.refresh_calls == []

    @pytest.mark.asyncio
    async def test_clear_tokens(
        self,
        make_manager: Callable[..., OAuthManager],
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token())
        async with make_manager() as manager:
            assert manager.state is AuthState.AUTHENTICATED
            await manager.clear_tokens()
            assert manager.state is AuthState.UNAUTHENTICATED
            assert not await manager.is_authenticated()
        assert not token_store.exists()


class TestAuthStatus:
    def test_without_tokens(self, make_manager: Callable[..., OAuthManager]) -> None:
        status = make_manager().get_auth_status()
        assert status.state is AuthState.UNAUTHENTICATED
        assert not status.has_tokens
        assert not status.is_authenticated
        assert status.missing_scopes == CALENDAR
        assert status.encrypted

    def test_with_tokens(
        self,
        make_manager: Callable[..., OAuthManager],
        token_store: TokenStore,
        make_token: Callable[..., TokenSet],
    ) -> None:
        token_store.save(make_token(expires_in=3600))
        status = make_manager(enabled_services=["calendar", "gmail"]).get_auth_status()
        assert status.has_tokens
        assert status.has_refresh_token
        assert not status.needs_refresh
        assert 3500 < (status.seconds_until_expiry or 0) <= 3600
        assert status.scopes == CALENDAR
        assert status.missing_scopes == GMAIL
        assert not status.is_authenticated


class TestAclose:
    @pytest.mark.asyncio
    async def test_aclose_cancels_flow_and_releases_listener(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
        fake_exchanger: Any,
    ) -> None:
        manager = make_manager(launcher=make_launcher(mode="none"))
        flow = asyncio.ensure_future(manager.authenticate())
        await asyncio.sleep(0.1)
        await manager.aclose()

        with pytest.raises(asyncio.CancelledError):
            await flow
        assert manager.pending is None
        assert manager.state is AuthState.UNAUTHENTICATED
        assert fake_exchanger.closed

    @pytest.mark.asyncio
    async def test_aclose_without_flow(self, make_manager: Callable[..., OAuthManager], fake_exchanger: Any) -> None:
        manager = make_manager()
        await manager.aclose()
        assert fake_exchanger.closed


class TestPersistenceAcrossInstances:
    @pytest.mark.asyncio
    async def test_new_manager_reads_stored_grant(
        self,
        make_manager: Callable[..., OAuthManager],
        make_launcher: Callable[..., Any],
    ) -> None:
        async with make_manager(launcher=make_launcher()) as manager:
            await manager.ensure_scopes()

        launcher = make_launcher()
        async with make_manager(launcher=launcher) as restarted:
            assert await restarted.is_authenticated()
            await restarted.ensure_scopes()
        assert launcher.urls == []


class _StaticListener:
    """Listener stand-in that resolves at once with a fixed result."""

    redirect_uri = "http://127.0.0.1:9/auth/callback"

    def __init__(self, result: CallbackResult) -> None:
        self.result = result
        self.closed = False

    def start(self, expected_state: str, timeout: float) -> asyncio.Task[CallbackResult]:
        async def _resolve() -> CallbackResult:
            return self.result

        return asyncio.get_running_loop().create_task(_resolve())

    def close(self) -> None:
        self.closed = True


class TestCallbackWithoutCode:
    @pytest.mark.asyncio
    async def test_result_without_code_or_error_is_rejected(
        self,
        broker_config: BrokerConfig,
        token_store: TokenStore,
        fake_exchanger: Any,
        make_launcher: Callable[..., Any],
        quiet_output: Any,
    ) -> None:
        listener = _StaticListener(CallbackResult(state="whatever"))
        manager = OAuthManager(
            broker_config,
            token_store,
            exchanger=fake_exchanger,
            launcher=make_launcher("none"),
            listener=listener,  # type: ignore[arg-type]
        )
        with pytest.raises(AuthorizationError, match="missing_code"):
            await manager.authenticate()
        assert manager.pending is None
        assert fake_exchanger.exchange_calls == []
        assert listener.closed
        assert manager.state is AuthState.UNAUTHENTICATED
