"""Abstract collaborator interfaces consumed by the OAuth manager.

The manager never talks to a browser or renders HTML itself. It is handed
two collaborators:

- :class:`BrowserLauncher` -- opens the authorization URL for the user.
  Best-effort: failures must not abort the flow.
- :class:`HtmlRenderer` -- produces the page returned to the browser after
  the redirect.

Default implementations live in :mod:`authbroker.auth.browser` and
:mod:`authbroker.auth.pages`. Tests inject fakes so that the core runs
without a browser or a filesystem.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BrowserLauncher(ABC):
    """Opens a URL in the user's browser."""

    @abstractmethod
    def open(self, url: str) -> bool:
        """Try to open *url*.

        Called from a worker thread; may block.

        Returns:
            ``True`` if a browser was launched. ``False`` (or an exception)
            makes the manager print the URL for the user instead.
        """
        ...


class HtmlRenderer(ABC):
    """Renders the confirmation pages served by the callback listener."""

    @abstractmethod
    def render_success(self) -> str:
        """Return the HTML shown after a successful redirect."""
        ...

    @abstractmethod
    def render_error(self, title: str, message: str) -> str:
        """Return the HTML shown when the redirect cannot be used.

        Implementations must escape *title* and *message*.
        """
        ...
