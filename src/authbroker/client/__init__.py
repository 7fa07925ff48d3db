"""HTTP client integration for authbroker.

Provides :class:`BrokerAuth`, an :class:`httpx.Auth` that injects the
manager's access token into every request and retries once after a
``401``. Obtain a ready client with
:meth:`~authbroker.auth.manager.OAuthManager.get_oauth2_client`.
"""

from authbroker.client.auth import BrokerAuth

__all__ = ["BrokerAuth"]
