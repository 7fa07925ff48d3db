"""Default confirmation pages answered to the browser after the redirect.

The templates are inline :class:`string.Template` strings rather than files
on disk. Every substituted value is HTML-escaped.
"""

from __future__ import annotations

import html
import math
from string import Template

from authbroker.auth.base import HtmlRenderer

_SUCCESS_TEMPLATE = Template("""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Authentication Successful</title>
    <style>
        body { font-family: Arial, sans-serif; text-align: center; padding: 50px; }
        .success { color: #2e7d32; }
    </style>
</head>
<body>
    <h1 class="success">Authentication Successful!</h1>
    <p>Access to your Google account has been granted.</p>
    <p><small>This window will close in $seconds seconds. You can also close it now.</small></p>
    <script>setTimeout(function () { window.close(); }, $delay);</script>
</body>
</html>
""")

_ERROR_TEMPLATE = Template("""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Authentication Error</title>
    <style>
        body { font-family: Arial, sans-serif; text-align: center; padding: 50px; }
        .error { color: #d32f2f; }
    </style>
</head>
<body>
    <h1 class="error">$title</h1>
    <p>$message</p>
    <p><small>Please close this window and try again.</small></p>
</body>
</html>
""")


class DefaultHtmlRenderer(HtmlRenderer):
    """Render the built-in success and error pages.

    Args:
        auto_close_delay: Milliseconds before the success page closes
            itself. ``0`` closes immediately.
    """

    def __init__(self, auto_close_delay: int = 3000) -> None:
        self._delay = max(0, int(auto_close_delay))

    def render_success(self) -> str:
        return _SUCCESS_TEMPLATE.substitute(
            seconds=math.ceil(self._delay / 1000),
            delay=self._delay,
        )

    def render_error(self, title: str, message: str) -> str:
        return _ERROR_TEMPLATE.substitute(
            title=html.escape(title),
            message=html.escape(message),
        )
