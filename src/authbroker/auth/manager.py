"""OAuth manager -- the orchestrator every Google-facing consumer talks to.

:class:`OAuthManager` owns the process's single Google grant. It

* runs the interactive Authorization Code + PKCE flow through a
  :class:`~authbroker.auth.callback.CallbackListener` and a
  :class:`~authbroker.auth.base.BrowserLauncher`,
* persists tokens through a :class:`~authbroker.auth.token_store.TokenStore`,
* refreshes the access token transparently before it expires,
* re-runs the consent flow when newly enabled services need scopes the
  stored grant lacks (:meth:`OAuthManager.ensure_scopes`).

Construct one manager per process with :func:`create_default_manager` and
pass it to every consumer. There is no module-level singleton.

Concurrency model (single event loop):

* Concurrent :meth:`~OAuthManager.authenticate` callers are coalesced onto
  one in-flight flow and all receive its result. Only one browser window,
  one listener and one pending attempt exist at a time.
* Concurrent :meth:`~OAuthManager.get_access_token` callers that find the
  token expired share one memoized refresh task. Cancelling a caller does
  not cancel the shared task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx

from authbroker.auth.base import BrowserLauncher, HtmlRenderer
from authbroker.auth.browser import WebBrowserLauncher
from authbroker.auth.callback import CallbackListener
from authbroker.auth.exchanger import TokenExchanger
from authbroker.auth.pages import DefaultHtmlRenderer
from authbroker.auth.pkce import generate_pkce, states_match
from authbroker.auth.scopes import ScopeRegistry, compare_scopes, merge_scopes
from authbroker.auth.token_store import TokenStore
from authbroker.config import resolve_token_path
from authbroker.exceptions import (
    AuthenticationRequiredError,
    AuthorizationError,
    BrokerError,
    CallbackTimeoutError,
    ConfigurationError,
    CsrfError,
    InvalidGrantError,
    ScopeError,
)
from authbroker.models import (
    AuthState,
    AuthStatus,
    BrokerConfig,
    CallbackResult,
    PendingAuthorization,
    TokenSet,
    utcnow,
)
from authbroker.output import info

logger = logging.getLogger(__name__)

PENDING_TTL = 300.0
"""Seconds a pending authorization attempt stays redeemable."""

_LOGIN_HINT = "Run `authbroker login` (or call OAuthManager.authenticate()) to sign in."


def _require_credentials(config: BrokerConfig) -> None:
    if not config.client_id or not config.client_secret:
        raise ConfigurationError(
            "Missing required OAuth credentials.",
            remediation="Set the GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET "
            "environment variables.",
        )


class OAuthManager:
    """Owns the Google grant for one process.

    Args:
        config: Effective broker configuration. ``client_id`` and
            ``client_secret`` are required.
        token_store: Where tokens are persisted.
        exchanger: Token endpoint client. Built from *config* when omitted.
        registry: Scope groups. Defaults to the built-in Google services.
        launcher: Opens the authorization URL. Defaults to
            :class:`~authbroker.auth.browser.WebBrowserLauncher`.
        renderer: Pages answered to the browser. Defaults to
            :class:`~authbroker.auth.pages.DefaultHtmlRenderer`.
        listener: Receives the redirect. Built from ``config.redirect_uri``
            and *renderer* when omitted.
        clock: Returns the current UTC time.

    Raises:
        ConfigurationError: If the client credentials are missing or an
            enabled service is unknown.
    """

    def __init__(
        self,
        config: BrokerConfig,
        token_store: TokenStore,
        exchanger: Optional[TokenExchanger] = None,
        registry: Optional[ScopeRegistry] = None,
        launcher: Optional[BrowserLauncher] = None,
        renderer: Optional[HtmlRenderer] = None,
        listener: Optional[CallbackListener] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        _require_credentials(config)
        self._config = config
        self._store = token_store
        self._registry = registry or ScopeRegistry()
        self._registry.get_required_scopes(config.enabled_services)
        self._exchanger = exchanger or TokenExchanger(
            config.token_url,
            config.client_id,
            config.client_secret,
            timeout=config.http_timeout,
            clock=clock,
        )
        self._launcher = launcher or WebBrowserLauncher()
        self._listener = listener or CallbackListener(
            config.redirect_uri,
            renderer or DefaultHtmlRenderer(config.auto_close_delay),
        )
        self._clock = clock

        self._tokens: Optional[TokenSet] = None
        self._loaded = False
        self._state = AuthState.UNAUTHENTICATED
        self._pending: Optional[PendingAuthorization] = None
        self._flow_lock = asyncio.Lock()
        self._auth_task: Optional[asyncio.Task[TokenSet]] = None
        self._refresh_task: Optional[asyncio.Task[TokenSet]] = None

    async def __aenter__(self) -> OAuthManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> AuthState:
        self._current_tokens()
        return self._state

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def pending(self) -> Optional[PendingAuthorization]:
        """The in-flight authorization attempt, if one is still redeemable."""
        if self._pending is not None and self._pending.is_expired(PENDING_TTL, self._clock()):
            logger.debug("Discarding expired pending authorization")
            self._pending = None
        return self._pending

    @property
    def enabled_services(self) -> list[str]:
        return list(self._config.enabled_services)

    @enabled_services.setter
    def enabled_services(self, groups: Sequence[str]) -> None:
        self._registry.get_required_scopes(groups)
        self._config = self._config.model_copy(update={"enabled_services": list(groups)})

    def get_required_scopes(self, additional_scopes: Optional[Sequence[str]] = None) -> list[str]:
        """Scopes of every enabled service plus *additional_scopes*, normalised."""
        return merge_scopes(
            self._registry.get_required_scopes(self._config.enabled_services),
            self._registry.normalize_all(additional_scopes or ()),
        )

    def get_granted_scopes(self) -> list[str]:
        """Scopes recorded on the stored grant (empty without tokens)."""
        tokens = self._current_tokens()
        return self._registry.parse(tokens.scope) if tokens else []

    async def is_authenticated(self) -> bool:
        """Whether a stored grant exists, is not about to expire and covers the required scopes.

        A token inside the expiry buffer counts as not authenticated even if
        it could still be refreshed.
        """
        tokens = self._current_tokens()
        if tokens is None:
            return False
        if tokens.expires_within(self._config.expiry_buffer, self._clock()):
            return False
        return compare_scopes(self.get_granted_scopes(), self.get_required_scopes()).satisfied

    def get_auth_status(self) -> AuthStatus:
        """A point-in-time snapshot for status reporting."""
        tokens = self._current_tokens()
        now = self._clock()
        granted = self.get_granted_scopes()
        missing = compare_scopes(granted, self.get_required_scopes()).missing
        if tokens is None:
            return AuthStatus(
                state=self._state,
                is_authenticated=False,
                has_tokens=False,
                missing_scopes=missing,
                encrypted=self._store.encrypted,
                ephemeral_key=self._store.ephemeral_key,
            )
        needs_refresh = tokens.expires_within(self._config.expiry_buffer, now)
        return AuthStatus(
            state=self._state,
            is_authenticated=not needs_refresh and not missing,
            has_tokens=True,
            token_expiry=tokens.expiry_date,
            seconds_until_expiry=max(0.0, (tokens.expiry_date - now).total_seconds()),
            needs_refresh=needs_refresh,
            has_refresh_token=bool(tokens.refresh_token),
            scopes=granted,
            missing_scopes=missing,
            encrypted=self._store.encrypted,
            ephemeral_key=self._store.ephemeral_key,
        )

    # ------------------------------------------------------------------ #
    # Authorization flow
    # ------------------------------------------------------------------ #

    def get_authorization_url(self, required_scopes: Optional[Sequence[str]] = None) -> str:
        """Start a new attempt and return the URL the user must visit.

        The requested scope is the union of what is already granted, the
        enabled services and *required_scopes*, so re-consent never drops
        an existing permission. Any previous pending attempt is replaced.
        """
        url, _ = self._begin_attempt(required_scopes)
        return url

    def _begin_attempt(
        self, required_scopes: Optional[Sequence[str]]
    ) -> tuple[str, PendingAuthorization]:
        scopes = merge_scopes(self.get_granted_scopes(), self.get_required_scopes(required_scopes))
        pkce = generate_pkce()
        pending = PendingAuthorization(
            state=pkce.state,
            code_verifier=pkce.verifier,
            code_challenge=pkce.challenge,
            created_at=self._clock(),
            requested_scopes=scopes,
            redirect_uri=self._listener.redirect_uri,
        )
        self._pending = pending
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": pending.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": pkce.state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        base = self._config.authorization_url
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode(params)}", pending

    async def authenticate(self, scopes: Optional[Sequence[str]] = None) -> TokenSet:
        """Run the interactive browser flow and return the new token set.

        Callers arriving while a flow is in progress join it and receive its
        result, whatever scopes they asked for.

        Raises:
            AuthorizationError: The user denied consent or the redirect
                carried an error.
            CallbackTimeoutError: No redirect arrived in time.
            CsrfError: Only redirects with a foreign ``state`` arrived.
            ScopeError: The grant lacks requested scopes (tokens are still
                saved).
            ResourceError: The callback port is unavailable.
            NetworkError: The token endpoint was unreachable.
        """
        return await self._start_flow(scopes, reauthorizing=False)

    async def complete_authorization(self, code: str, state: str) -> TokenSet:
        """Finish the pending attempt with a code copied from the redirect URL.

        Fallback for hosts where the browser cannot reach the callback
        listener.

        Raises:
            AuthorizationError: No attempt is pending, it expired, or a
                browser flow is still waiting on the listener.
            CsrfError: *state* does not match the pending attempt. The
                attempt is discarded.
        """
        if self._auth_task is not None and not self._auth_task.done():
            raise AuthorizationError(
                "A sign-in is still waiting for the browser redirect.",
                remediation="Finish it in the browser, or wait for it to time out first.",
            )
        pending = self.pending
        if pending is None:
            raise AuthorizationError(
                "No sign-in attempt is pending or it has expired.",
                remediation="Start a new sign-in.",
            )
        if not states_match(state, pending.state):
            logger.warning("Security: manual authorization code presented with a mismatched state")
            self._pending = None
            raise CsrfError(
                "Authorization rejected: the state does not match the pending sign-in attempt.",
                remediation="Start a new sign-in and copy the code from that attempt's redirect.",
            )
        async with self._flow_lock:
            return await self._redeem(code, pending)

    async def ensure_scopes(self, additional_scopes: Optional[Sequence[str]] = None) -> None:
        """Make sure the grant covers every enabled service plus *additional_scopes*.

        * no tokens -> interactive authentication for the required scopes;
        * scopes missing -> state ``REAUTHORIZING``, tokens cleared, and a
          consent flow for the union of granted and required scopes.

        A failed re-authorization raises once; it is never retried here.
        """
        required = self.get_required_scopes(additional_scopes)
        tokens = self._current_tokens()
        if tokens is None:
            logger.info("No stored grant; starting interactive authorization")
            await self._start_flow(required, reauthorizing=False)
            return

        granted = self.get_granted_scopes()
        comparison = compare_scopes(granted, required)
        if comparison.satisfied:
            return

        logger.info(
            "Stored grant is missing %d scope(s): %s; re-authorizing",
            len(comparison.missing),
            " ".join(comparison.missing),
        )
        union = merge_scopes(granted, required)
        await self.clear_tokens()
        try:
            await self._start_flow(union, reauthorizing=True)
        except (CsrfError, ScopeError):
            raise
        except BrokerError as exc:
            raise ScopeError(
                "Additional Google permissions are required "
                f"({', '.join(comparison.missing)}) but re-authorization did not complete: {exc}",
                comparison.missing,
                remediation=_LOGIN_HINT,
            ) from exc

    async def _start_flow(self, scopes: Optional[Sequence[str]], reauthorizing: bool) -> TokenSet:
        task = self._auth_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._run_flow(scopes, reauthorizing)
            )
            task.add_done_callback(self._forget_auth_task)
            self._auth_task = task
        else:
            logger.info("Joining the authorization flow already in progress")
        return await asyncio.shield(task)

    def _forget_auth_task(self, task: asyncio.Task[TokenSet]) -> None:
        if self._auth_task is task:
            self._auth_task = None
        if not task.cancelled():
            task.exception()

    async def _run_flow(self, scopes: Optional[Sequence[str]], reauthorizing: bool) -> TokenSet:
        async with self._flow_lock:
            self._state = AuthState.REAUTHORIZING if reauthorizing else AuthState.AUTHORIZING
            try:
                url, pending = self._begin_attempt(scopes)
                waiter = self._listener.start(
                    pending.state, min(self._config.callback_timeout, PENDING_TTL)
                )
                try:
                    await self._open_browser(url)
                    result = await waiter
                finally:
                    if not waiter.done():
                        waiter.cancel()
                    self._listener.close()
                return await self._complete(result, pending)
            except CallbackTimeoutError:
                # Stays redeemable through complete_authorization until PENDING_TTL.
                raise
            except BaseException:
                self._pending = None
                raise
            finally:
                self._state = (
                    AuthState.AUTHENTICATED if self._tokens is not None else AuthState.UNAUTHENTICATED
                )

    async def _open_browser(self, url: str) -> None:
        try:
            opened = await asyncio.to_thread(self._launcher.open, url)
        except Exception as exc:
            logger.warning("Could not launch a browser: %s", exc)
            opened = False
        if opened:
            info("Opened your browser to sign in with Google. If it did not appear, visit:")
        else:
            info("Open the following URL in a browser to sign in with Google:")
        info(url)
        info("Waiting for authorization...")

    async def _complete(self, result: CallbackResult, pending: PendingAuthorization) -> TokenSet:
        if result.error or not result.code:
            self._pending = None
            if result.error == "access_denied":
                raise AuthorizationError(
                    "Google sign-in was denied.",
                    remediation="Run the sign-in again and approve the requested permissions.",
                )
            error = result.error or "missing_code"
            detail = f": {result.error_description}" if result.error_description else ""
            raise AuthorizationError(
                f"Authorization failed ({error}){detail}",
                remediation="Start a new sign-in.",
            )
        return await self._redeem(result.code, pending)

    async def _redeem(self, code: str, pending: PendingAuthorization) -> TokenSet:
        # Consumed before the exchange: a code is single-use either way.
        self._pending = None
        if pending.is_expired(PENDING_TTL, self._clock()):
            raise AuthorizationError(
                "The sign-in attempt expired before it was completed.",
                remediation="Start a new sign-in.",
            )
        token = await self._exchanger.exchange_code(
            code,
            pending.code_verifier,
            pending.redirect_uri,
            requested_scopes=pending.requested_scopes,
        )
        previous = self._tokens
        if token.refresh_token is None and previous is not None and previous.refresh_token:
            token = token.model_copy(update={"refresh_token": previous.refresh_token})
        if token.refresh_token is None:
            logger.warning("Google returned no refresh token; the grant cannot be renewed silently")

        self._persist(token)
        self._state = AuthState.AUTHENTICATED

        comparison = compare_scopes(self._registry.parse(token.scope), pending.requested_scopes)
        if comparison.missing:
            raise ScopeError(
                "Google granted fewer permissions than requested; missing: "
                + ", ".join(comparison.missing),
                comparison.missing,
                remediation="Run the sign-in again and leave every requested permission checked.",
            )
        logger.info("Authorization complete; %d scope(s) granted", len(token.scopes))
        return token

    # ------------------------------------------------------------------ #
    # Tokens
    # ------------------------------------------------------------------ #

    async def get_access_token(self) -> str:
        """Return an access token valid beyond the expiry buffer.

        Refreshes first when needed. Never starts an interactive flow.

        Raises:
            AuthenticationRequiredError: No grant is stored, or it expired
                without a refresh token.
            InvalidGrantError: The refresh token was revoked; stored tokens
                have been cleared.
            NetworkError: The token endpoint was unreachable.
        """
        tokens = self._current_tokens()
        if tokens is None:
            raise AuthenticationRequiredError(
                "Not authenticated with Google.", remediation=_LOGIN_HINT
            )
        if not tokens.expires_within(self._config.expiry_buffer, self._clock()):
            return tokens.access_token
        if not tokens.refresh_token:
            raise AuthenticationRequiredError(
                "The Google access token expired and no refresh token is stored.",
                remediation=_LOGIN_HINT,
            )
        refreshed = await self.refresh()
        return refreshed.access_token

    async def refresh(self) -> TokenSet:
        """Force a refresh. Concurrent callers share one in-flight request."""
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._do_refresh())
            task.add_done_callback(self._forget_refresh_task)
            self._refresh_task = task
        return await asyncio.shield(task)

    def _forget_refresh_task(self, task: asyncio.Task[TokenSet]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            task.exception()

    async def _do_refresh(self) -> TokenSet:
        tokens = self._current_tokens()
        if tokens is None or not tokens.refresh_token:
            raise AuthenticationRequiredError(
                "No refresh token is stored.", remediation=_LOGIN_HINT
            )
        try:
            fresh = await self._exchanger.refresh(tokens.refresh_token, previous_scope=tokens.scope)
        except InvalidGrantError as exc:
            logger.warning("Refresh token rejected by Google; clearing stored tokens")
            await self.clear_tokens()
            raise InvalidGrantError(
                "Google rejected the stored refresh token; the grant was revoked or has expired.",
                status_code=exc.status_code,
                remediation="Interactive authentication is required. " + _LOGIN_HINT,
            ) from exc

        if self._tokens is not tokens:
            # Cleared or replaced by a new grant while the request was in flight.
            raise AuthenticationRequiredError(
                "Stored tokens changed while refreshing.", remediation=_LOGIN_HINT
            )
        if not fresh.refresh_token:
            fresh = fresh.model_copy(update={"refresh_token": tokens.refresh_token})
        self._persist(fresh)
        self._state = AuthState.AUTHENTICATED
        return fresh

    async def get_oauth2_client(self, **client_kwargs: Any) -> httpx.AsyncClient:
        """Return an :class:`httpx.AsyncClient` that authenticates through this manager.

        The access token is validated (and refreshed) first, so a missing
        grant fails here rather than on the first request. Keyword
        arguments are passed to :class:`httpx.AsyncClient`.
        """
        from authbroker.client.auth import BrokerAuth

        await self.get_access_token()
        client_kwargs.setdefault("timeout", self._config.http_timeout)
        return httpx.AsyncClient(auth=BrokerAuth(self), **client_kwargs)

    async def clear_tokens(self) -> None:
        """Delete stored tokens and return to ``UNAUTHENTICATED``."""
        self._store.clear()
        self._tokens = None
        self._loaded = True
        self._state = AuthState.UNAUTHENTICATED
        logger.info("Cleared stored Google tokens")

    async def aclose(self) -> None:
        """Cancel an in-flight flow, release the listener and the HTTP client."""
        task = self._auth_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._listener.close()
        self._pending = None
        await self._exchanger.aclose()

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _current_tokens(self) -> Optional[TokenSet]:
        if not self._loaded:
            self._tokens = self._store.load()
            self._loaded = True
            if self._tokens is not None and self._state is AuthState.UNAUTHENTICATED:
                self._state = AuthState.AUTHENTICATED
        return self._tokens

    def _persist(self, token: TokenSet) -> None:
        self._store.save(token)
        self._tokens = token
        self._loaded = True


def create_default_manager(
    config: BrokerConfig,
    launcher: Optional[BrowserLauncher] = None,
    renderer: Optional[HtmlRenderer] = None,
) -> OAuthManager:
    """Create an :class:`OAuthManager` wired with the default collaborators.

    - :class:`~authbroker.auth.token_store.TokenStore` at the configured
      token path, encrypted with ``token_encryption_key`` when enabled.
    - :class:`~authbroker.auth.exchanger.TokenExchanger` for
      ``config.token_url``.
    - :class:`~authbroker.auth.callback.CallbackListener` on
      ``config.redirect_uri``.
    - :class:`~authbroker.auth.browser.WebBrowserLauncher` unless
      *launcher* is given.

    Raises:
        ConfigurationError: If the client credentials are missing.
    """
    _require_credentials(config)
    store = TokenStore(
        resolve_token_path(config),
        encryption_key=config.token_encryption_key,
        encrypt=config.encrypt_tokens,
    )
    return OAuthManager(config, store, launcher=launcher, renderer=renderer)
