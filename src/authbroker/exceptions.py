"""Exception hierarchy for authbroker.

All exceptions inherit from :class:`BrokerError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`authbroker.exit_codes`
and an optional ``remediation`` string telling a human what to do next.
The CLI entry point in :func:`authbroker.app.main` catches ``BrokerError``
and exits with the appropriate code.

Subclass hierarchy::

    BrokerError (exit 1)
    +-- ConfigurationError            (exit 8)
    +-- AuthorizationError            (exit 3)
    |   +-- CallbackTimeoutError      (exit 3)
    +-- AuthenticationRequiredError   (exit 3)
    +-- CsrfError                     (exit 7)
    +-- NetworkError                  (exit 6)
    +-- TokenExchangeError            (exit 3)
    |   +-- InvalidGrantError         (exit 3)
    +-- ScopeError                    (exit 4)
    +-- ResourceError                 (exit 5)

Error messages never contain access tokens, refresh tokens, authorization
codes, or the client secret.
"""

from __future__ import annotations

import enum
from typing import Optional, Sequence

from authbroker.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_CONFIG_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_RESOURCE_ERROR,
    EXIT_SCOPE_ERROR,
    EXIT_SECURITY_ERROR,
)


class TokenErrorKind(str, enum.Enum):
    """Tagged error kinds returned by the OAuth2 token endpoint (:rfc:`6749#section-5.2`).

    ``UNKNOWN`` covers non-standard codes and responses without a parseable
    ``error`` field.
    """

    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> TokenErrorKind:
        """Map a raw ``error`` field to a kind, falling back to ``UNKNOWN``."""
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


class BrokerError(Exception):
    """Base exception for all authbroker errors.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
        remediation: Optional next step for the operator.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        remediation: str | None = None,
    ):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code
        self.remediation = remediation

    def __str__(self) -> str:
        message = super().__str__()
        if self.remediation:
            return f"{message} {self.remediation}"
        return message


class ConfigurationError(BrokerError):
    """Raised when client credentials or other settings are missing or invalid."""

    exit_code = EXIT_CONFIG_ERROR


class AuthorizationError(BrokerError):
    """Raised when the user denies consent or the authorization attempt is unusable."""

    exit_code = EXIT_AUTH_FAILURE


class CallbackTimeoutError(AuthorizationError):
    """Raised when no matching redirect reaches the callback listener in time."""


class AuthenticationRequiredError(BrokerError):
    """Raised when no usable grant exists and interactive authentication is needed."""

    exit_code = EXIT_AUTH_FAILURE


class CsrfError(BrokerError):
    """Raised when a callback's ``state`` does not match the pending attempt.

    This is a security failure. It is never retried automatically.
    """

    exit_code = EXIT_SECURITY_ERROR


class NetworkError(BrokerError):
    """Raised on transient failures talking to the token endpoint. Callers may retry."""

    exit_code = EXIT_CONNECTION_ERROR


class TokenExchangeError(BrokerError):
    """Raised when the token endpoint rejects a grant.

    Args:
        message: Human-readable description.
        kind: The tagged :class:`TokenErrorKind` parsed from the response.
        status_code: HTTP status returned by the endpoint, if any.
    """

    exit_code = EXIT_AUTH_FAILURE

    def __init__(
        self,
        message: str,
        kind: TokenErrorKind = TokenErrorKind.UNKNOWN,
        status_code: Optional[int] = None,
        remediation: str | None = None,
    ):
        super().__init__(message, remediation=remediation)
        self.kind = kind
        self.status_code = status_code


class InvalidGrantError(TokenExchangeError):
    """Raised when the refresh token or authorization code was revoked or expired.

    Terminal for the current grant: stored tokens must be cleared and a
    fresh interactive authentication performed.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        remediation: str | None = None,
    ):
        super().__init__(
            message,
            kind=TokenErrorKind.INVALID_GRANT,
            status_code=status_code,
            remediation=remediation,
        )


class ScopeError(BrokerError):
    """Raised when a grant does not cover the scopes that were required.

    Args:
        message: Human-readable description.
        missing: The scopes absent from the grant.
    """

    exit_code = EXIT_SCOPE_ERROR

    def __init__(
        self,
        message: str,
        missing: Sequence[str] = (),
        remediation: str | None = None,
    ):
        super().__init__(message, remediation=remediation)
        self.missing = list(missing)


class ResourceError(BrokerError):
    """Raised when a local resource is unavailable (port conflict, unwritable token file)."""

    exit_code = EXIT_RESOURCE_ERROR
