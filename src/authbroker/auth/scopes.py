"""Scope registry -- which Google scopes each capability group needs.

Each enabled service (``calendar``, ``gmail``, ``drive``, ``sheets``,
``docs``) contributes a fixed list of scopes. The manager asks the
registry for the union over the enabled groups and compares it against
the scopes recorded on the stored grant with :func:`compare_scopes`.

Scopes may be written in short form (``gmail.readonly``); they are
normalised to the full ``https://www.googleapis.com/auth/...`` URL before
any comparison so that provider responses and configuration agree.

Everything in this module is pure: no I/O, deterministic ordering.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from authbroker.exceptions import ConfigurationError
from authbroker.models import ScopeComparison

GOOGLE_SCOPE_PREFIX = "https://www.googleapis.com/auth/"

# OpenID Connect scopes are never prefixed.
_BARE_SCOPES = frozenset({"openid", "email", "profile"})

DEFAULT_SERVICE_SCOPES: dict[str, tuple[str, ...]] = {
    "calendar": ("calendar", "calendar.events"),
    "gmail": ("gmail.readonly", "gmail.send", "gmail.labels"),
    "drive": ("drive.file", "drive"),
    "sheets": ("spreadsheets",),
    "docs": ("documents",),
}


def normalize_scope(scope: str, prefix: str = GOOGLE_SCOPE_PREFIX) -> str:
    """Expand a short scope name to its full URL form.

    ``"gmail.readonly"`` becomes ``"https://www.googleapis.com/auth/gmail.readonly"``.
    Full URLs and OpenID scopes are returned unchanged.
    """
    scope = scope.strip()
    if not scope or "://" in scope or scope in _BARE_SCOPES:
        return scope
    return prefix + scope


def merge_scopes(*groups: Iterable[str]) -> list[str]:
    """Ordered union: first occurrence wins, duplicates and blanks dropped."""
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for scope in group:
            if scope and scope not in seen:
                seen.add(scope)
                merged.append(scope)
    return merged


def compare_scopes(current: Sequence[str], required: Sequence[str]) -> ScopeComparison:
    """Compute ``missing = required - current`` and ``extra = current - required``.

    ``missing`` preserves the order of *required*; ``extra`` preserves the
    order of *current*. Duplicates are reported once.

    Example::

        >>> compare_scopes(["a", "b"], ["a", "b", "c"]).missing
        ['c']
    """
    current_set = set(current)
    required_set = set(required)
    return ScopeComparison(
        missing=merge_scopes(s for s in required if s not in current_set),
        extra=merge_scopes(s for s in current if s not in required_set),
    )


class ScopeRegistry:
    """Declares the scopes required by each capability group.

    Args:
        groups: Mapping of group name to scope names (short or full form).
            Defaults to :data:`DEFAULT_SERVICE_SCOPES`.
        prefix: URL prefix applied by :func:`normalize_scope`.

    Example::

        registry = ScopeRegistry()
        registry.get_required_scopes(["calendar", "gmail"])
    """

    def __init__(
        self,
        groups: Mapping[str, Sequence[str]] | None = None,
        prefix: str = GOOGLE_SCOPE_PREFIX,
    ) -> None:
        self._prefix = prefix
        source = DEFAULT_SERVICE_SCOPES if groups is None else groups
        self._groups: dict[str, list[str]] = {
            name: [self.normalize(s) for s in scopes] for name, scopes in source.items()
        }

    @property
    def groups(self) -> list[str]:
        """Known group names, sorted."""
        return sorted(self._groups)

    def normalize(self, scope: str) -> str:
        return normalize_scope(scope, self._prefix)

    def normalize_all(self, scopes: Iterable[str]) -> list[str]:
        return merge_scopes(self.normalize(s) for s in scopes)

    def parse(self, scope_string: str) -> list[str]:
        """Split a provider ``scope`` string and normalise each entry."""
        return self.normalize_all(scope_string.split())

    def scopes_for(self, group: str) -> list[str]:
        """Return the scopes of a single group.

        Raises:
            ConfigurationError: If *group* is not registered.
        """
        try:
            return list(self._groups[group])
        except KeyError:
            available = ", ".join(self.groups) or "(none)"
            raise ConfigurationError(
                f"Unknown service '{group}'. Available services: {available}"
            ) from None

    def get_required_scopes(self, enabled_groups: Iterable[str]) -> list[str]:
        """Ordered, de-duplicated scopes for every group in *enabled_groups*."""
        return merge_scopes(*(self.scopes_for(g) for g in enabled_groups))

    @staticmethod
    def compare_scopes(current: Sequence[str], required: Sequence[str]) -> ScopeComparison:
        return compare_scopes(current, required)
