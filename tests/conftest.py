"""Shared test fixtures for authbroker.

Provides isolated config environments, output state management, fake
collaborators for the OAuth manager (token endpoint, browser) and factories
for token sets and managers. These fixtures are automatically discovered by
pytest and available to all test modules without explicit imports.
"""

from __future__ import annotations

import asyncio
import socket
from datetime import timedelta
from http.client import HTTPConnection
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import pytest

from authbroker.auth.base import BrowserLauncher
from authbroker.auth.manager import OAuthManager
from authbroker.auth.token_store import TokenStore, generate_key
from authbroker.models import BrokerConfig, TokenSet, utcnow
from authbroker.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale
    ("I/O operation on closed file"). Resetting forces a fresh manager
    to be created on next use.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path so
    that tests never touch real user config or tokens. Clears all
    GOOGLE_* and AUTHBROKER_* environment variables and changes the
    working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    for var in [
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
        "GOOGLE_REDIRECT_URI",
        "AUTHBROKER_ENABLED_SERVICES",
        "AUTHBROKER_TOKEN_PATH",
        "AUTHBROKER_TOKEN_KEY",
        "AUTHBROKER_ENCRYPT_TOKENS",
        "AUTHBROKER_CALLBACK_TIMEOUT",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()


# ---------------------------------------------------------------------------
# Network helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def free_port() -> int:
    """A loopback TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def http_get(url: str) -> tuple[int, str]:
    """Blocking GET against the local callback listener."""
    parsed = urlparse(url)
    path = parsed.path + (f"?{parsed.query}" if parsed.query else "")
    conn = HTTPConnection(parsed.hostname, parsed.port, timeout=5)
    try:
        conn.request("GET", path)
        response = conn.getresponse()
        return response.status, response.read().decode("utf-8")
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Token fixtures
# ---------------------------------------------------------------------------

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]
GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.labels",
]


@pytest.fixture
def make_token() -> Callable[..., TokenSet]:
    """Factory for :class:`TokenSet` instances.

    ``expires_in`` is relative to now in seconds; negative means expired.
    """

    def _make(
        access_token: str = "access-initial",
        refresh_token: Optional[str] = "refresh-initial",
        scopes: Optional[list[str]] = None,
        expires_in: float = 3600,
    ) -> TokenSet:
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            scope=" ".join(CALENDAR_SCOPES if scopes is None else scopes),
            expiry_date=utcnow() + timedelta(seconds=expires_in),
        )

    return _make


@pytest.fixture
def token_store(tmp_path: Path) -> TokenStore:
    """An encrypted TokenStore in a temp directory with a fixed key."""
    return TokenStore(tmp_path / "tokens" / "google-tokens.json", encryption_key=generate_key())


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeExchanger:
    """Stands in for TokenExchanger; records calls and echoes requested scopes.

    ``granted_scopes`` overrides the scope returned by ``exchange_code``.
    ``refresh_error`` / ``exchange_error`` are raised when set.
    """

    def __init__(self) -> None:
        self.exchange_calls: list[dict[str, Any]] = []
        self.refresh_calls: list[str] = []
        self.granted_scopes: Optional[list[str]] = None
        self.rotate_refresh_token = False
        self.refresh_delay = 0.0
        self.refresh_error: Optional[Exception] = None
        self.exchange_error: Optional[Exception] = None
        self.closed = False

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        requested_scopes: Optional[list[str]] = None,
    ) -> TokenSet:
        self.exchange_calls.append({
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
            "requested_scopes": list(requested_scopes or []),
        })
        if self.exchange_error is not None:
            raise self.exchange_error
        scopes = self.granted_scopes if self.granted_scopes is not None else requested_scopes
        return TokenSet(
            access_token=f"access-{len(self.exchange_calls)}",
            refresh_token=f"refresh-{len(self.exchange_calls)}",
            scope=" ".join(scopes or []),
            expiry_date=utcnow() + timedelta(hours=1),
        )

    async def refresh(self, refresh_token: str, previous_scope: str = "") -> TokenSet:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenSet(
            access_token=f"refreshed-{len(self.refresh_calls)}",
            refresh_token="rotated-refresh" if self.rotate_refresh_token else None,
            scope=previous_scope,
            expiry_date=utcnow() + timedelta(hours=1),
        )

    async def aclose(self) -> None:
        self.closed = True


class CallbackLauncher(BrowserLauncher):
    """Plays the user's browser: follows the authorization URL to the redirect.

    Args:
        mode: ``"approve"`` sends the code with the real state, ``"deny"``
            sends ``error=access_denied``, ``"forged"`` sends a code with a
            wrong state, ``"none"`` does nothing (headless host).
        code: The authorization code to deliver.
    """

    def __init__(self, mode: str = "approve", code: str = "auth-code") -> None:
        self.mode = mode
        self.code = code
        self.urls: list[str] = []
        self.responses: list[tuple[int, str]] = []

    def open(self, url: str) -> bool:
        self.urls.append(url)
        if self.mode == "none":
            return False
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        redirect = params["redirect_uri"]
        if self.mode == "approve":
            query = {"code": self.code, "state": params["state"]}
        elif self.mode == "deny":
            query = {"error": "access_denied", "state": params["state"]}
        else:
            query = {"code": self.code, "state": "forged-state"}
        self.responses.append(http_get(f"{redirect}?{urlencode(query)}"))
        return True

    @property
    def last_params(self) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(urlparse(self.urls[-1]).query).items()}


@pytest.fixture
def fake_exchanger() -> FakeExchanger:
    return FakeExchanger()


@pytest.fixture
def broker_config(tmp_path: Path, free_port: int) -> BrokerConfig:
    """Config with test credentials and a redirect URI on a free loopback port."""
    return BrokerConfig(
        client_id="test-client.apps.googleusercontent.com",
        client_secret="test-client-secret",
        redirect_uri=f"http://127.0.0.1:{free_port}/auth/callback",
        token_path=str(tmp_path / "tokens" / "google-tokens.json"),
        callback_timeout=5,
    )


@pytest.fixture
def make_manager(
    broker_config: BrokerConfig,
    token_store: TokenStore,
    fake_exchanger: FakeExchanger,
    quiet_output: OutputManager,
) -> Callable[..., OAuthManager]:
    """Factory for an OAuthManager wired to the fake exchanger and launcher."""

    def _make(
        launcher: Optional[BrowserLauncher] = None,
        **config_updates: Any,
    ) -> OAuthManager:
        config = broker_config.model_copy(update=config_updates)
        return OAuthManager(
            config,
            token_store,
            exchanger=fake_exchanger,  # type: ignore[arg-type]
            launcher=launcher or CallbackLauncher(),
        )

    return _make


@pytest.fixture
def make_launcher() -> Callable[..., CallbackLauncher]:
    """Factory for :class:`CallbackLauncher` instances."""
    return CallbackLauncher
