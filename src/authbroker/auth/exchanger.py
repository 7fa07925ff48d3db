"""Token endpoint client for the two grants the broker uses.

:class:`TokenExchanger` POSTs ``application/x-www-form-urlencoded`` bodies
to the provider token endpoint:

* ``authorization_code`` with the PKCE ``code_verifier``
  (:meth:`~TokenExchanger.exchange_code`)
* ``refresh_token`` (:meth:`~TokenExchanger.refresh`)

Failures are mapped to tagged exceptions rather than free text:

* transport errors, timeouts, 5xx and ``temporarily_unavailable`` ->
  :class:`~authbroker.exceptions.NetworkError` (retryable by the caller)
* ``invalid_grant`` -> :class:`~authbroker.exceptions.InvalidGrantError`
  (terminal for the grant, never retried here)
* any other OAuth error -> :class:`~authbroker.exceptions.TokenExchangeError`
  carrying a :class:`~authbroker.exceptions.TokenErrorKind`

Neither tokens nor the client secret are ever written to logs or messages.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from authbroker.exceptions import (
    InvalidGrantError,
    NetworkError,
    TokenErrorKind,
    TokenExchangeError,
)
from authbroker.models import TokenSet, utcnow

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600.0

_RETRYABLE_KINDS = frozenset({TokenErrorKind.SERVER_ERROR, TokenErrorKind.TEMPORARILY_UNAVAILABLE})


class TokenExchanger:
    """Performs the ``authorization_code`` and ``refresh_token`` grants.

    Args:
        token_url: The provider token endpoint.
        client_id: OAuth client identifier.
        client_secret: OAuth client secret.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass
            :class:`httpx.MockTransport`).
        clock: Returns the current UTC time; used to compute ``expiry_date``.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        requested_scopes: Optional[list[str]] = None,
    ) -> TokenSet:
        """Exchange an authorization code for a token set.

        Args:
            code: The authorization code from the callback.
            code_verifier: The PKCE verifier matching the challenge sent in
                the authorization request.
            redirect_uri: The exact redirect URI used in that request.
            requested_scopes: Recorded as the grant's scope if the response
                omits ``scope``.

        Raises:
            InvalidGrantError: The code was already used, expired, or the
                verifier does not match.
            TokenExchangeError: Any other OAuth error.
            NetworkError: Transport failure or provider outage.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        payload = await self._post(data, "authorization code exchange")
        token = self._to_token_set(payload, fallback_scope=" ".join(requested_scopes or []))
        logger.info("Exchanged authorization code for tokens")
        return token

    async def refresh(self, refresh_token: str, previous_scope: str = "") -> TokenSet:
        """Mint a new access token from *refresh_token*.

        The returned set carries a ``refresh_token`` only if the provider
        rotated it; the caller keeps the old one otherwise.

        Raises:
            InvalidGrantError: The refresh token was revoked or expired.
            TokenExchangeError: Any other OAuth error.
            NetworkError: Transport failure or provider outage.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        payload = await self._post(data, "token refresh")
        token = self._to_token_set(payload, fallback_scope=previous_scope)
        logger.info("Refreshed access token")
        return token

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def _post(self, data: dict[str, str], operation: str) -> dict[str, Any]:
        form = dict(data)
        form["client_id"] = self._client_id
        form["client_secret"] = self._client_secret

        try:
            response = await self._get_client().post(
                self._token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{operation.capitalize()} timed out") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(
                f"{operation.capitalize()} failed: {type(exc).__name__}"
            ) from exc

        if response.is_success:
            try:
                payload = response.json()
            except ValueError as exc:
                raise TokenExchangeError(
                    f"{operation.capitalize()} returned a non-JSON response",
                    status_code=response.status_code,
                ) from exc
            if not isinstance(payload, dict) or not payload.get("access_token"):
                raise TokenExchangeError(
                    f"{operation.capitalize()} response missing 'access_token' field",
                    status_code=response.status_code,
                )
            return payload

        raise self._map_error(response, operation)

    def _map_error(self, response: httpx.Response, operation: str) -> Exception:
        status = response.status_code
        kind = TokenErrorKind.UNKNOWN
        description = ""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            kind = TokenErrorKind.parse(body.get("error"))
            description = str(body.get("error_description") or "")

        message = f"{operation.capitalize()} failed with status {status} ({kind.value})"
        if description:
            message += f": {description[:200]}"
        logger.warning("%s failed: status=%s kind=%s", operation, status, kind.value)

        if kind is TokenErrorKind.INVALID_GRANT:
            return InvalidGrantError(message, status_code=status)
        if status >= 500 or kind in _RETRYABLE_KINDS:
            return NetworkError(message)
        return TokenExchangeError(message, kind=kind, status_code=status)

    def _to_token_set(self, payload: dict[str, Any], fallback_scope: str) -> TokenSet:
        expires_in = payload.get("expires_in")
        try:
            seconds = float(expires_in) if expires_in is not None else DEFAULT_EXPIRES_IN
        except (TypeError, ValueError):
            seconds = DEFAULT_EXPIRES_IN
        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            scope=payload.get("scope") or fallback_scope,
            token_type=payload.get("token_type") or "Bearer",
            expiry_date=self._clock() + timedelta(seconds=seconds),
        )
