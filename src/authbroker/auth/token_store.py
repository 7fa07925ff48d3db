"""Persistent, optionally encrypted token store.

Stores a single :class:`~authbroker.models.TokenSet` at a well-known path
(by default ``~/.local/share/authbroker/tokens/google-tokens.json``). The
payload is a :class:`~authbroker.models.StoredTokenRecord` -- the token set
plus a scope fingerprint -- serialised as JSON.

When encryption is enabled the JSON is sealed with AES-256-GCM and written
as an envelope::

    {"iv": "<base64>", "authTag": "<base64>", "data": "<base64>"}

Files are written atomically via :func:`authbroker.config.atomic_write`
with ``0o600`` permissions.

If encryption is enabled but no key is configured, a random key is
generated for the lifetime of the process. Tokens written with it cannot
be decrypted after a restart, so the store reports
:attr:`TokenStore.ephemeral_key` and warns the operator.

The file is assumed to be owned by a single process. Concurrent writers
from several processes are not supported.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from authbroker.config import atomic_write
from authbroker.exceptions import ResourceError
from authbroker.models import StoredTokenRecord, TokenSet
from authbroker.output import warning

logger = logging.getLogger(__name__)

_KEY_BYTES = 32
_IV_BYTES = 12
_TAG_BYTES = 16
_ENVELOPE_KEYS = frozenset({"iv", "authTag", "data"})


def derive_key(secret: str) -> bytes:
    """Turn configured key material into a 32-byte AES key.

    A urlsafe-base64 string that decodes to exactly 32 bytes is used as-is
    (see :func:`generate_key`). Anything else is treated as a passphrase
    and hashed with SHA-256.
    """
    try:
        padded = secret + "=" * (-len(secret) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        if len(raw) == _KEY_BYTES:
            return raw
    except (binascii.Error, ValueError, UnicodeEncodeError):
        pass
    return hashlib.sha256(secret.encode("utf-8")).digest()


def generate_key() -> str:
    """Return a new random key in the form accepted by :func:`derive_key`."""
    return base64.urlsafe_b64encode(os.urandom(_KEY_BYTES)).decode("ascii")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _seal(aesgcm: AESGCM, plaintext: bytes) -> dict[str, str]:
    iv = os.urandom(_IV_BYTES)
    sealed = aesgcm.encrypt(iv, plaintext, None)
    # AESGCM appends the tag to the ciphertext.
    return {
        "iv": _b64(iv),
        "authTag": _b64(sealed[-_TAG_BYTES:]),
        "data": _b64(sealed[:-_TAG_BYTES]),
    }


class TokenStore:
    """Read/write the broker's token record.

    Args:
        path: The token file location.
        encryption_key: Key material for AES-GCM. When ``None`` and
            *encrypt* is true, an ephemeral key is generated.
        encrypt: Whether to seal the record. When false the file holds
            plain JSON.

    Example::

        store = TokenStore(tmp_path / "tokens.json", encryption_key=generate_key())
        store.save(token_set)
        assert store.load() == token_set
    """

    def __init__(
        self,
        path: Path,
        encryption_key: Optional[str] = None,
        encrypt: bool = True,
    ) -> None:
        self._path = Path(path)
        self._ephemeral = False
        self._aesgcm: Optional[AESGCM] = None
        if encrypt:
            if encryption_key:
                key = derive_key(encryption_key)
            else:
                key = os.urandom(_KEY_BYTES)
                self._ephemeral = True
                self._warn_ephemeral()
            self._aesgcm = AESGCM(key)

    @property
    def path(self) -> Path:
        """The filesystem path of the token file."""
        return self._path

    @property
    def encrypted(self) -> bool:
        return self._aesgcm is not None

    @property
    def ephemeral_key(self) -> bool:
        """``True`` when the encryption key was generated for this process only."""
        return self._ephemeral

    def exists(self) -> bool:
        return self._path.is_file()

    def save(self, token_set: TokenSet) -> None:
        """Persist *token_set* atomically with ``0o600`` permissions.

        Raises:
            ResourceError: If the file cannot be written.
        """
        record = StoredTokenRecord.wrap(token_set)
        text = record.model_dump_json(indent=2)
        if self._aesgcm is not None:
            text = json.dumps(_seal(self._aesgcm, text.encode("utf-8")), indent=2)
        try:
            atomic_write(self._path, text + "\n", mode=0o600)
        except OSError as exc:
            raise ResourceError(
                f"Cannot write token file {self._path}: {exc.strerror or exc}",
                remediation="Check that the directory exists and is writable, "
                "or set AUTHBROKER_TOKEN_PATH to another location.",
            ) from exc
        logger.debug("Stored tokens at %s (encrypted=%s)", self._path, self.encrypted)

    def load(self) -> Optional[TokenSet]:
        """Load the stored token set.

        Returns:
            The :class:`~authbroker.models.TokenSet`, or ``None`` when no
            file exists (fresh install) or the file cannot be decrypted or
            parsed. Unreadable files are logged, not raised.
        """
        if not self._path.is_file():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", self._path, exc)
            return None

        if isinstance(raw, dict) and _ENVELOPE_KEYS.issubset(raw):
            plaintext = self._open(raw)
            if plaintext is None:
                return None
            try:
                raw = json.loads(plaintext)
            except json.JSONDecodeError as exc:
                logger.warning("Decrypted token file %s is not JSON: %s", self._path, exc)
                return None

        try:
            record = StoredTokenRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed token record at %s", self._path)
            return None
        if not record.fingerprint_matches():
            logger.warning("Scope fingerprint mismatch in %s; ignoring stored tokens", self._path)
            return None
        return record.token

    def clear(self) -> None:
        """Delete the token file. No-op when it does not exist."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise ResourceError(f"Cannot remove token file {self._path}: {exc}") from exc
        logger.debug("Removed token file %s", self._path)

    # ------------------------------------------------------------------ #
    # Envelope helpers
    # ------------------------------------------------------------------ #

    def _open(self, envelope: dict[str, Any]) -> Optional[bytes]:
        if self._aesgcm is None:
            logger.warning(
                "Token file %s is encrypted but encryption is disabled; ignoring it",
                self._path,
            )
            return None
        try:
            iv = base64.b64decode(envelope["iv"])
            tag = base64.b64decode(envelope["authTag"])
            data = base64.b64decode(envelope["data"])
            return self._aesgcm.decrypt(iv, data + tag, None)
        except (InvalidTag, binascii.Error, ValueError, TypeError):
            logger.warning(
                "Cannot decrypt token file %s (wrong or ephemeral key); "
                "interactive authentication will be required",
                self._path,
            )
            return None

    def _warn_ephemeral(self) -> None:
        logger.warning("No token encryption key configured; using an ephemeral key")
        warning(
            "No token encryption key is configured. Tokens are encrypted with a "
            "key that only lives as long as this process, so you will have to "
            "sign in again after a restart. Set AUTHBROKER_TOKEN_KEY to keep them."
        )
