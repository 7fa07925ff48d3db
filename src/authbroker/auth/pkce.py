"""PKCE material generation (:rfc:`7636`).

:func:`generate_pkce` returns a :class:`~authbroker.models.PKCEMaterial`
holding a ``code_verifier``, its S256 ``code_challenge``, and an
independently generated CSRF ``state``. :func:`generate_pkce_pair` returns
just the verifier/challenge tuple.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Optional

from authbroker.models import PKCEMaterial

VERIFIER_BYTES = 96
STATE_BYTES = 32


def compute_challenge(code_verifier: str) -> str:
    """Return ``BASE64URL(SHA256(code_verifier))`` without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636 maximum: 96 random bytes encode to exactly 128 unreserved characters
    code_verifier = secrets.token_urlsafe(VERIFIER_BYTES)
    return code_verifier, compute_challenge(code_verifier)


def generate_pkce() -> PKCEMaterial:
    """Generate a verifier, its challenge, and a 256-bit CSRF state."""
    verifier, challenge = generate_pkce_pair()
    return PKCEMaterial(
        verifier=verifier,
        challenge=challenge,
        state=secrets.token_urlsafe(STATE_BYTES),
    )


def states_match(received: Optional[str], expected: str) -> bool:
    """Constant-time comparison of a returned ``state`` against the expected one."""
    if received is None:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
