"""authbroker -- delegated, scoped Google API access for long-running processes.

This package implements an OAuth2 Authorization Code + PKCE credential
broker. A process constructs one :class:`~authbroker.auth.manager.OAuthManager`
at startup and hands it to every consumer that needs to call a Google API.
The manager performs the interactive browser flow when needed, persists
tokens to disk (optionally encrypted), refreshes them transparently, and
re-runs the consent flow when a newly enabled service needs scopes the
current grant does not cover.

Typical usage::

    from authbroker.auth import create_default_manager
    from authbroker.config import load_broker_config

    manager = create_default_manager(load_broker_config())
    await manager.ensure_scopes()
    async with await manager.get_oauth2_client() as client:
        resp = await client.get("https://www.googleapis.com/calendar/v3/users/me/calendarList")

Modules:
    app: Typer application and CLI entry point.
    models: Pydantic models shared across the package.
    config: XDG-aware configuration loading and atomic writes.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes.
    output: stdout/stderr formatting with Rich support.
"""

__version__ = "0.3.0"
