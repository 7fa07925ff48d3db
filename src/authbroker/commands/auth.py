"""Auth commands -- sign in to Google and manage the stored grant.

Registered directly on the root application:

- ``authbroker login`` -- interactive sign-in, or re-consent when enabled
  services need scopes the stored grant lacks.
- ``authbroker status`` -- snapshot of the stored grant.
- ``authbroker scopes`` -- required versus granted scopes.
- ``authbroker refresh`` -- force an access-token refresh.
- ``authbroker logout`` -- delete the stored tokens.

Typical workflow::

    export GOOGLE_CLIENT_ID=... GOOGLE_CLIENT_SECRET=... AUTHBROKER_TOKEN_KEY=...
    authbroker login --service gmail
    authbroker status
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any, Optional, TypeVar
from urllib.parse import parse_qs, urlparse

import typer

from authbroker.auth import NullBrowserLauncher, TokenStore, compare_scopes, create_default_manager
from authbroker.auth.manager import OAuthManager
from authbroker.config import load_broker_config, resolve_token_path
from authbroker.exceptions import (
    AuthenticationRequiredError,
    AuthorizationError,
    BrokerError,
    CallbackTimeoutError,
    InvalidGrantError,
    ScopeError,
)
from authbroker.exit_codes import EXIT_SCOPE_ERROR
from authbroker.models import AuthStatus
from authbroker.output import (
    OutputFormat,
    error,
    format_response,
    get_output,
    info,
    print_table,
    success,
    suggest,
    warning,
)

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run *coro* to completion, turning broker errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except BrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None


def _open_manager(
    services: Optional[list[str]] = None,
    no_browser: bool = False,
) -> OAuthManager:
    overrides: dict[str, Any] = {}
    if services:
        base = load_broker_config()
        overrides["enabled_services"] = list(dict.fromkeys([*base.enabled_services, *services]))
    config = load_broker_config(overrides=overrides)
    launcher = NullBrowserLauncher() if no_browser else None
    return create_default_manager(config, launcher=launcher)


def _timed_out(exc: BrokerError) -> bool:
    # A timed-out re-consent arrives wrapped in ScopeError.
    return isinstance(exc, CallbackTimeoutError) or isinstance(exc.__cause__, CallbackTimeoutError)


def _parse_redirect(value: str) -> tuple[str, str]:
    """Pull ``code`` and ``state`` out of a pasted redirect URL or query string."""
    value = value.strip()
    query = urlparse(value).query if "?" in value else value
    params = parse_qs(query)
    code = params.get("code", [""])[0]
    state = params.get("state", [""])[0]
    if not code or not state:
        raise AuthorizationError(
            "The pasted URL does not contain both a code and a state.",
            remediation="Copy the complete address from the browser's address bar "
            "after approving access.",
        )
    return code, state


async def _complete_manually(manager: OAuthManager, exc: BrokerError) -> None:
    """Finish a timed-out sign-in with the redirect URL pasted by the operator.

    An empty answer or end of input re-raises *exc*.
    """
    info("The browser redirect did not reach this host.")
    try:
        pasted = await asyncio.to_thread(
            typer.prompt,
            "Paste the full URL your browser was redirected to",
            default="",
            show_default=False,
            err=True,
        )
    except typer.Abort:
        pasted = ""
    if not pasted.strip():
        raise exc
    code, state = _parse_redirect(pasted)
    await manager.complete_authorization(code, state)


def _format_expiry(status: AuthStatus) -> str:
    if status.token_expiry is None:
        return "-"
    remaining = int(status.seconds_until_expiry or 0)
    return f"{status.token_expiry.isoformat()} ({remaining}s)"


def _print_status(status: AuthStatus) -> None:
    if get_output().format == OutputFormat.JSON:
        format_response(status.model_dump(mode="json"))
        return
    rows = [
        ["state", status.state.value],
        ["authenticated", "yes" if status.is_authenticated else "no"],
        ["tokens stored", "yes" if status.has_tokens else "no"],
        ["refresh token", "yes" if status.has_refresh_token else "no"],
        ["expires", _format_expiry(status)],
        ["needs refresh", "yes" if status.needs_refresh else "no"],
        ["encrypted", "yes" if status.encrypted else "no"],
        ["granted scopes", " ".join(status.scopes) or "-"],
        ["missing scopes", " ".join(status.missing_scopes) or "-"],
    ]
    print_table(["Field", "Value"], rows, title="Google authorization")


def auth_login(
    scope: Optional[list[str]] = typer.Option(
        None, "--scope", "-s", help="Extra scope to request (repeatable)."
    ),
    service: Optional[list[str]] = typer.Option(
        None, "--service", help="Enable an additional service group (repeatable)."
    ),
    no_browser: bool = typer.Option(
        False,
        "--no-browser",
        help="Print the sign-in URL instead of opening a browser, and accept the "
        "pasted redirect URL if the redirect cannot reach this host.",
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Discard the stored grant and sign in again."
    ),
) -> None:
    """Sign in to Google, or upgrade the grant to cover newly required scopes.

    Does nothing beyond a token check when the stored grant already covers
    every enabled service.

    Example::

        authbroker login --service gmail --scope drive.readonly
    """

    async def _login() -> AuthStatus:
        async with _open_manager(service, no_browser) as manager:
            if force:
                await manager.clear_tokens()
            try:
                await manager.ensure_scopes(scope)
            except (CallbackTimeoutError, ScopeError) as exc:
                if not no_browser or not _timed_out(exc) or manager.pending is None:
                    raise
                await _complete_manually(manager, exc)
            try:
                await manager.get_access_token()
            except (AuthenticationRequiredError, InvalidGrantError):
                # Expired without a usable refresh token.
                await manager.authenticate(scope)
            return manager.get_auth_status()

    status = _run(_login())
    success(f"Authenticated with Google ({len(status.scopes)} scope(s) granted).")
    if status.ephemeral_key:
        suggest("Set AUTHBROKER_TOKEN_KEY so the tokens survive a restart.")


def auth_status() -> None:
    """Show the stored grant: expiry, refresh token, granted and missing scopes."""

    async def _status() -> AuthStatus:
        async with _open_manager() as manager:
            return manager.get_auth_status()

    status = _run(_status())
    _print_status(status)
    if not status.has_tokens:
        suggest("Sign in: authbroker login")
    elif status.missing_scopes:
        suggest("Grant the missing scopes: authbroker login")


def auth_scopes(
    service: Optional[list[str]] = typer.Option(
        None, "--service", help="Also check this service group (repeatable)."
    ),
) -> None:
    """Compare the scopes required by the enabled services with the stored grant.

    Exits with the scope-error code when any required scope is missing.
    """

    async def _scopes() -> tuple[list[str], list[str]]:
        async with _open_manager(service) as manager:
            return manager.get_required_scopes(), manager.get_granted_scopes()

    required, granted = _run(_scopes())
    comparison = compare_scopes(granted, required)
    missing = set(comparison.missing)
    rows = [
        [s, "yes", "no" if s in missing else "yes"] for s in required
    ] + [
        [s, "no", "yes"] for s in comparison.extra
    ]
    print_table(["Scope", "Required", "Granted"], rows, title="Google scopes")

    if comparison.missing:
        warning(f"{len(comparison.missing)} required scope(s) not granted.")
        suggest("Grant them: authbroker login")
        raise typer.Exit(code=EXIT_SCOPE_ERROR)


def auth_refresh() -> None:
    """Force a refresh of the access token using the stored refresh token."""

    async def _refresh() -> AuthStatus:
        async with _open_manager() as manager:
            await manager.refresh()
            return manager.get_auth_status()

    status = _run(_refresh())
    success(f"Access token refreshed; expires {_format_expiry(status)}.")


def auth_logout() -> None:
    """Delete the stored Google tokens.

    Works without client credentials. The grant itself stays valid at
    Google until revoked from the account's security settings.
    """
    try:
        config = load_broker_config()
        store = TokenStore(resolve_token_path(config), encrypt=False)
        existed = store.exists()
        store.clear()
    except BrokerError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    if existed:
        success(f"Removed stored tokens at {store.path}.")
    else:
        info("No stored tokens to remove.")
