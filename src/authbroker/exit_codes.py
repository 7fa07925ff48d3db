"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~authbroker.exceptions.BrokerError` subclass.
Supervisors and shell wrappers can inspect the exit code to decide whether
a human needs to be involved without parsing stderr.

Example::

    $ authbroker refresh
    $ echo $?
    3   # EXIT_AUTH_FAILURE -- the grant was revoked, run `authbroker login`
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments."""

EXIT_AUTH_FAILURE = 3
"""Authentication is required, was denied, or the grant is no longer valid."""

EXIT_SCOPE_ERROR = 4
"""The stored grant does not cover the scopes the enabled services need."""

EXIT_RESOURCE_ERROR = 5
"""A local resource was unavailable (callback port in use, token file unwritable)."""

EXIT_CONNECTION_ERROR = 6
"""A network-level error occurred talking to the token endpoint."""

EXIT_SECURITY_ERROR = 7
"""A callback failed CSRF state validation."""

EXIT_CONFIG_ERROR = 8
"""Client credentials or other configuration are missing or invalid."""
