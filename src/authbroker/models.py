"""Canonical Pydantic models shared across all authbroker modules.

Every other module imports its data shapes from here. The models fall into
two groups:

**Configuration** -- :class:`BrokerConfig`, loaded by
:func:`authbroker.config.load_broker_config`.

**Token and flow data** -- :class:`TokenSet`, :class:`StoredTokenRecord`,
:class:`PKCEMaterial`, :class:`PendingAuthorization`,
:class:`CallbackResult`, :class:`ScopeComparison`, :class:`AuthState`
and :class:`AuthStatus`.

Secret-bearing fields (tokens, verifiers, codes, the client secret and the
encryption key) are declared with ``repr=False`` so that they never leak
into log lines or tracebacks through ``repr()``.
"""

from __future__ import annotations

import enum
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URI = "http://localhost:8080/auth/callback"

TOKEN_RECORD_VERSION = 1


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Configuration ---


class BrokerConfig(BaseModel):
    """Effective configuration for one broker instance.

    Only ``client_id`` and ``client_secret`` have no usable default; the
    :class:`~authbroker.auth.manager.OAuthManager` constructor refuses to
    start without them.

    Example::

        BrokerConfig(
            client_id="123.apps.googleusercontent.com",
            client_secret="...",
            enabled_services=["calendar", "gmail"],
        )
    """

    model_config = ConfigDict(extra="ignore")

    client_id: Optional[str] = None
    client_secret: Optional[str] = Field(default=None, repr=False)
    redirect_uri: str = DEFAULT_REDIRECT_URI
    enabled_services: list[str] = Field(
        default_factory=lambda: ["calendar"],
        description="Capability groups whose scopes are required",
    )
    authorization_url: str = GOOGLE_AUTHORIZATION_URL
    token_url: str = GOOGLE_TOKEN_URL
    token_path: Optional[str] = Field(
        default=None,
        description="Token file path; defaults to <data_dir>/tokens/google-tokens.json",
    )
    encrypt_tokens: bool = True
    token_encryption_key: Optional[str] = Field(default=None, repr=False)
    callback_timeout: float = Field(
        default=120.0, gt=0, description="Seconds to wait for the browser redirect"
    )
    expiry_buffer: float = Field(
        default=300.0, ge=0, description="Seconds before expiry a token counts as expired"
    )
    auto_close_delay: int = Field(
        default=3000, ge=0, description="Milliseconds before the success page closes itself"
    )
    http_timeout: float = Field(default=30.0, gt=0)


# --- Token data ---


class TokenSet(BaseModel):
    """An access token plus the metadata needed to use and renew it.

    ``expiry_date`` always describes ``access_token``. ``refresh_token`` is
    carried over across refreshes unless the provider rotates it.
    """

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    scope: str = ""
    token_type: str = "Bearer"
    expiry_date: datetime

    @property
    def scopes(self) -> list[str]:
        """The granted scopes as an ordered list."""
        return [s for s in self.scope.split() if s]

    def expires_within(self, buffer: float, now: Optional[datetime] = None) -> bool:
        """Return ``True`` if the token expires within *buffer* seconds of *now*."""
        now = _aware(now or utcnow())
        return _aware(self.expiry_date) <= now + timedelta(seconds=buffer)


def scope_fingerprint(scopes: list[str]) -> str:
    """SHA-256 hex digest of the sorted, de-duplicated scope list."""
    canonical = " ".join(sorted(set(scopes)))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class StoredTokenRecord(BaseModel):
    """The JSON payload persisted by :class:`~authbroker.auth.token_store.TokenStore`."""

    version: int = TOKEN_RECORD_VERSION
    token: TokenSet
    scope_fingerprint: str
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def wrap(cls, token: TokenSet) -> StoredTokenRecord:
        return cls(token=token, scope_fingerprint=scope_fingerprint(token.scopes))

    def fingerprint_matches(self) -> bool:
        return self.scope_fingerprint == scope_fingerprint(self.token.scopes)


# --- Flow data ---


class PKCEMaterial(BaseModel):
    """A PKCE verifier/challenge pair plus an independent CSRF ``state``."""

    verifier: str = Field(repr=False)
    challenge: str
    state: str


class PendingAuthorization(BaseModel):
    """The single in-flight authorization attempt owned by the manager."""

    state: str
    code_verifier: str = Field(repr=False)
    code_challenge: str
    created_at: datetime = Field(default_factory=utcnow)
    requested_scopes: list[str] = Field(default_factory=list)
    redirect_uri: str

    def is_expired(self, ttl: float, now: Optional[datetime] = None) -> bool:
        now = _aware(now or utcnow())
        return _aware(self.created_at) + timedelta(seconds=ttl) <= now


class CallbackResult(BaseModel):
    """What the browser redirect delivered: a code or an error."""

    code: Optional[str] = Field(default=None, repr=False)
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.code)


class ScopeComparison(BaseModel):
    """Result of :func:`~authbroker.auth.scopes.compare_scopes`."""

    missing: list[str] = Field(default_factory=list)
    extra: list[str] = Field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return not self.missing


class AuthState(str, enum.Enum):
    """Lifecycle of the manager's grant."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZING = "authorizing"
    AUTHENTICATED = "authenticated"
    REAUTHORIZING = "reauthorizing"


class AuthStatus(BaseModel):
    """A point-in-time snapshot reported by ``OAuthManager.get_auth_status``."""

    state: AuthState
    is_authenticated: bool
    has_tokens: bool
    token_expiry: Optional[datetime] = None
    seconds_until_expiry: Optional[float] = None
    needs_refresh: bool = False
    has_refresh_token: bool = False
    scopes: list[str] = Field(default_factory=list)
    missing_scopes: list[str] = Field(default_factory=list)
    encrypted: bool = False
    ephemeral_key: bool = False
