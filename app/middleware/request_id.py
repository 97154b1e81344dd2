"""Request ID middleware: injects X-Request-ID into context for logging.

If incoming request has X-Request-ID header, reuse it; otherwise generate a UUID4.
The value is attached to log records by DriveContextFilter and echoed back in the response.
"""

from __future__ import annotations

import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.packages.drive.core.logger import set_request_id


class RequestIdMiddleware:
    header_name = b"x-request-id"

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(self.header_name)
        rid = raw.decode("latin-1") if raw else str(uuid.uuid4())
        set_request_id(rid)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].append((self.header_name, rid.encode("latin-1")))
            await send(message)

        await self.app(scope, receive, send_with_request_id)
