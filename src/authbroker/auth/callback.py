"""Local HTTP listener that receives the OAuth2 redirect.

:class:`CallbackListener` binds the host/port of the configured redirect
URI, serves requests with :class:`http.server.ThreadingHTTPServer` (one
daemon thread per connection) and hands the first request carrying the
expected ``state`` back to the event loop as a
:class:`~authbroker.models.CallbackResult`.

Contract:

* The port is bound synchronously in :meth:`CallbackListener.start`; a
  conflict raises :class:`~authbroker.exceptions.ResourceError` at once.
* Requests with a wrong or missing ``state`` get the same generic page as
  requests arriving after the attempt was consumed, so a caller cannot
  probe whether an attempt is pending. They never resolve the wait.
* If the wait times out after such a request was seen, it fails with
  :class:`~authbroker.exceptions.CsrfError`; otherwise with
  :class:`~authbroker.exceptions.CallbackTimeoutError`.
* A connection that sends nothing is dropped after a few seconds and never
  delays other requests or shutdown.
* The socket is closed on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from authbroker.auth.base import HtmlRenderer
from authbroker.auth.pkce import states_match
from authbroker.exceptions import (
    CallbackTimeoutError,
    ConfigurationError,
    CsrfError,
    ResourceError,
)
from authbroker.models import CallbackResult

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
# Seconds a connection may sit idle before its handler thread drops it.
_REQUEST_TIMEOUT = 5.0

_GENERIC_TITLE = "Invalid Request"
_GENERIC_MESSAGE = (
    "This authorization request could not be processed. "
    "Please start the sign-in again from the application."
)


def _first(params: dict[str, list[str]], name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


class _CallbackServer(ThreadingHTTPServer):
    """One thread per connection, so an idle socket cannot stall the redirect."""

    daemon_threads = True
    block_on_close = False

    def handle_error(self, request: Any, client_address: Any) -> None:
        logger.debug("Callback connection from %s failed", client_address[0], exc_info=True)


class CallbackListener:
    """Serve the redirect URI for one authorization attempt at a time.

    Args:
        redirect_uri: The ``http://`` redirect URI registered for the client,
            e.g. ``http://localhost:8080/auth/callback``.
        renderer: Produces the HTML answered to the browser.

    Raises:
        ConfigurationError: If *redirect_uri* is not a plain ``http`` URL.
    """

    def __init__(self, redirect_uri: str, renderer: HtmlRenderer) -> None:
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or not parsed.hostname:
            raise ConfigurationError(
                f"Redirect URI must be a local http:// URL, got {redirect_uri!r}"
            )
        self._redirect_uri = redirect_uri
        self._host = "127.0.0.1" if parsed.hostname == "localhost" else parsed.hostname
        self._port = parsed.port or 80
        self._path = parsed.path or "/"
        self._renderer = renderer
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._mismatches = 0

    @property
    def redirect_uri(self) -> str:
        return self._redirect_uri

    @property
    def active(self) -> bool:
        """Whether the socket is currently bound."""
        return self._server is not None

    def start(self, expected_state: str, timeout: float) -> asyncio.Task[CallbackResult]:
        """Bind the port and wait in the background for the matching redirect.

        Must be called from a running event loop.

        Args:
            expected_state: The ``state`` sent in the authorization request.
            timeout: Seconds to wait before giving up.

        Returns:
            A task resolving to the :class:`~authbroker.models.CallbackResult`.
            It fails with :class:`~authbroker.exceptions.CallbackTimeoutError`
            or :class:`~authbroker.exceptions.CsrfError`.

        Raises:
            ResourceError: If the port cannot be bound or a wait is already
                in progress.
        """
        if self._server is not None:
            raise ResourceError("The callback listener is already waiting for a redirect")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[CallbackResult] = loop.create_future()
        consumed = threading.Event()
        lock = threading.Lock()
        listener = self
        renderer = self._renderer
        self._mismatches = 0

        def deliver(result: CallbackResult) -> None:
            if not future.done():
                future.set_result(result)

        class CallbackHandler(BaseHTTPRequestHandler):
            timeout = _REQUEST_TIMEOUT

            def do_GET(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path != listener._path:
                    self._respond(404, "<html><body><h1>Not Found</h1></body></html>")
                    return

                params = parse_qs(parsed.query)
                state = _first(params, "state")
                with lock:
                    accepted = not consumed.is_set() and states_match(state, expected_state)
                    if accepted:
                        consumed.set()
                    elif not consumed.is_set():
                        listener._mismatches += 1
                        logger.warning(
                            "Security: rejected OAuth callback with invalid state from %s",
                            self.client_address[0],
                        )
                if not accepted:
                    self._respond(400, renderer.render_error(_GENERIC_TITLE, _GENERIC_MESSAGE))
                    return

                error = _first(params, "error")
                code = _first(params, "code")
                if error:
                    result = CallbackResult(
                        state=state,
                        error=error,
                        error_description=_first(params, "error_description"),
                    )
                    self._respond(400, renderer.render_error(
                        "Authorization Failed",
                        f"The authorization request was denied or failed ({error}).",
                    ))
                elif code:
                    result = CallbackResult(code=code, state=state)
                    self._respond(200, renderer.render_success())
                else:
                    result = CallbackResult(state=state, error="missing_code")
                    self._respond(400, renderer.render_error(
                        "No Authorization Code",
                        "No authorization code was received from Google. Please try again.",
                    ))

                try:
                    loop.call_soon_threadsafe(deliver, result)
                except RuntimeError:
                    # The loop closed while the browser was still redirecting.
                    logger.debug("Event loop closed before the callback was delivered")

            def _respond(self, status: int, body: str) -> None:
                payload = body.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(payload)))
                self.send_header("Cache-Control", "no-store")
                self.end_headers()
                self.wfile.write(payload)

            def log_message(self, format: str, *args: Any) -> None:
                # Query strings carry codes; keep them out of stderr.
                pass

        try:
            server = _CallbackServer((self._host, self._port), CallbackHandler)
        except OSError as exc:
            raise ResourceError(
                f"Callback listener unavailable: cannot bind {self._host}:{self._port} "
                f"({exc.strerror or exc})",
                remediation="Stop the process using that port, or set "
                "GOOGLE_REDIRECT_URI to another localhost port registered for this client.",
            ) from exc

        thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": _POLL_INTERVAL},
            name="authbroker-callback",
            daemon=True,
        )
        thread.start()
        self._server = server
        self._thread = thread
        logger.debug("Callback listener bound to %s:%s%s", self._host, self._port, self._path)
        task = loop.create_task(self._wait(future, timeout, server))
        # Covers a task cancelled before its first step.
        task.add_done_callback(lambda _: self._release(server))
        return task

    def close(self) -> None:
        """Stop serving and release the socket. Safe to call repeatedly."""
        if self._server is not None:
            self._release(self._server)

    def _release(self, server: HTTPServer) -> None:
        if server is not self._server:
            return
        thread = self._thread
        self._server = None
        self._thread = None
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=1.0)
        logger.debug("Callback listener closed")

    async def _wait(
        self,
        future: asyncio.Future[CallbackResult],
        timeout: float,
        server: HTTPServer,
    ) -> CallbackResult:
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            if self._mismatches:
                raise CsrfError(
                    "Authorization rejected: the callback's state did not match "
                    "the pending sign-in attempt.",
                    remediation="This may be a cross-site request forgery attempt. "
                    "Start a new sign-in from the application and do not reuse old links.",
                ) from None
            raise CallbackTimeoutError(
                f"No authorization callback received within {timeout:g} seconds.",
                remediation="Finish signing in within the browser, or paste the code "
                "from the redirect URL to complete the sign-in manually.",
            ) from None
        finally:
            self._release(server)
