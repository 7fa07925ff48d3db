"""OAuth2 Authorization Code + PKCE machinery for authbroker.

The main entry points are:

- :class:`OAuthManager` -- owns the process's Google grant: interactive
  authorization, persistence, refresh and scope upgrades.
- :func:`create_default_manager` -- factory wiring an :class:`OAuthManager`
  with the default token store, exchanger, listener and browser launcher.
- :class:`TokenStore` -- persistent, optionally AES-GCM encrypted token file.
- :class:`ScopeRegistry` -- scopes required by each enabled service.

Typical usage::

    from authbroker.auth import create_default_manager

    manager = create_default_manager(config)
    await manager.ensure_scopes()
    token = await manager.get_access_token()
"""

from authbroker.auth.base import BrowserLauncher, HtmlRenderer
from authbroker.auth.browser import NullBrowserLauncher, WebBrowserLauncher
from authbroker.auth.callback import CallbackListener
from authbroker.auth.exchanger import TokenExchanger
from authbroker.auth.manager import OAuthManager, create_default_manager
from authbroker.auth.pages import DefaultHtmlRenderer
from authbroker.auth.pkce import generate_pkce, generate_pkce_pair
from authbroker.auth.scopes import ScopeRegistry, compare_scopes, merge_scopes
from authbroker.auth.token_store import TokenStore, generate_key

__all__ = [
    "BrowserLauncher",
    "CallbackListener",
    "DefaultHtmlRenderer",
    "HtmlRenderer",
    "NullBrowserLauncher",
    "OAuthManager",
    "ScopeRegistry",
    "TokenExchanger",
    "TokenStore",
    "WebBrowserLauncher",
    "compare_scopes",
    "create_default_manager",
    "generate_key",
    "generate_pkce",
    "generate_pkce_pair",
    "merge_scopes",
]
