"""ASGI middleware for the ingress-facing app."""

import re

_REPEATED_SLASHES = re.compile(r"/{2,}")


class NormalizePathMiddleware:
    """Collapse repeated slashes in request paths.

    The platform's ingress appends its own trailing slash to the proxied
    prefix, so requests arrive as ``//api/devices``.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] in ("http", "websocket") and "//" in scope["path"]:
            path = _REPEATED_SLASHES.sub("/", scope["path"])
            scope = dict(scope, path=path, raw_path=path.encode())
        await self.app(scope, receive, send)
