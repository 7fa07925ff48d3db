"""Default :class:`~authbroker.auth.base.BrowserLauncher` backed by :mod:`webbrowser`."""

from __future__ import annotations

import logging
import webbrowser

from authbroker.auth.base import BrowserLauncher

logger = logging.getLogger(__name__)


class WebBrowserLauncher(BrowserLauncher):
    """Open URLs with the platform's registered browser."""

    def open(self, url: str) -> bool:
        try:
            return webbrowser.open(url, new=2)
        except webbrowser.Error as exc:
            logger.debug("webbrowser could not open the authorization URL: %s", exc)
            return False


class NullBrowserLauncher(BrowserLauncher):
    """Never opens anything; the manager prints the URL instead (headless hosts)."""

    def open(self, url: str) -> bool:
        return False
