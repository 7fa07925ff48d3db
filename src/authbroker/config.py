"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for authbroker:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.authbroker/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Broker config** -- an optional ``config.json`` in the config directory,
  deserialised into :class:`~authbroker.models.BrokerConfig`.
* **Precedence resolution** -- :func:`load_broker_config` merges explicit
  overrides, environment variables, the config file, and defaults.

All file writes use an atomic temp-file-then-rename strategy
(:func:`atomic_write`) so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from authbroker.exceptions import ConfigurationError
from authbroker.models import BrokerConfig

_APP_NAME = "authbroker"
_CONFIG_FILENAME = "config.json"
_TOKEN_FILENAME = "google-tokens.json"

_ENV_FIELDS: dict[str, str] = {
    "GOOGLE_CLIENT_ID": "client_id",
    "GOOGLE_CLIENT_SECRET": "client_secret",
    "GOOGLE_REDIRECT_URI": "redirect_uri",
    "AUTHBROKER_ENABLED_SERVICES": "enabled_services",
    "AUTHBROKER_TOKEN_PATH": "token_path",
    "AUTHBROKER_TOKEN_KEY": "token_encryption_key",
    "AUTHBROKER_ENCRYPT_TOKENS": "encrypt_tokens",
    "AUTHBROKER_CALLBACK_TIMEOUT": "callback_timeout",
}

_FALSE_VALUES = {"0", "false", "no", "off"}


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform uses the XDG Base Directory layout (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/authbroker/`` (default ``~/.config/authbroker/``).
    On macOS/Windows: ``~/.authbroker/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (tokens, crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/authbroker/`` (default ``~/.local/share/authbroker/``).
    On macOS/Windows: ``~/.authbroker/data/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir() / "data"
    path.mkdir(parents=True, exist_ok=True)
    return path


def default_token_path() -> Path:
    """Return ``<data_dir>/tokens/google-tokens.json``."""
    return get_data_dir() / "tokens" / _TOKEN_FILENAME


def resolve_token_path(config: BrokerConfig) -> Path:
    """The token file for *config*, honouring ``token_path`` when set."""
    if config.token_path:
        return Path(config.token_path).expanduser()
    return default_token_path()


# --- Atomic file writes ---


def atomic_write(path: Path, data: str, mode: Optional[int] = None) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. When *mode* is
    given, permissions are applied to the temp file before any content is
    written, so the secret is never readable by others even momentarily.
    On any failure the temp file is removed and the error re-raised.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        if mode is not None:
            os.chmod(tmp_path, mode)
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None  # prevent double-close below
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up the temp file on any error (including KeyboardInterrupt).
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Broker config ---


def _config_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_config_file(path: Optional[Path] = None) -> dict[str, Any]:
    """Load the JSON config file, returning an empty dict when it is absent.

    Raises:
        ConfigurationError: If the file exists but is not a JSON object.
    """
    path = path or _config_path()
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigurationError(f"Invalid config file at {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file at {path} must contain a JSON object")
    return data


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, field in _ENV_FIELDS.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        if field == "enabled_services":
            overrides[field] = [s.strip() for s in value.split(",") if s.strip()]
        elif field == "encrypt_tokens":
            overrides[field] = value.strip().lower() not in _FALSE_VALUES
        else:
            overrides[field] = value
    return overrides


def load_broker_config(
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    path: Optional[Path] = None,
) -> BrokerConfig:
    """Resolve the effective :class:`~authbroker.models.BrokerConfig`.

    Precedence (high to low):
        1. *overrides* (e.g. CLI flags)
        2. Environment variables (``GOOGLE_CLIENT_ID``, ``AUTHBROKER_*``)
        3. ``<config_dir>/config.json``
        4. Model defaults

    Missing client credentials are not an error here; the manager raises
    :class:`~authbroker.exceptions.ConfigurationError` when it is built.

    Raises:
        ConfigurationError: If the file is malformed or a value fails validation.
    """
    merged: dict[str, Any] = load_config_file(path)
    merged.update(_env_overrides(os.environ if env is None else env))
    if overrides:
        merged.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return BrokerConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def save_config(config: BrokerConfig, path: Optional[Path] = None) -> None:
    """Persist *config* atomically with ``0o600`` permissions.

    The file may hold the client secret, hence the restrictive mode.
    """
    data = config.model_dump(mode="json", exclude_none=True)
    atomic_write(path or _config_path(), json.dumps(data, indent=2) + "\n", mode=0o600)
