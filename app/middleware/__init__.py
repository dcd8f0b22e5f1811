"""Request-ID middleware — tags every HTTP request with an ID for log tracing.

Pure ASGI rather than ``BaseHTTPMiddleware``: the latter buffers and
wraps the response, which breaks long-lived ``text/event-stream``
responses such as a job run.
"""

import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = b"x-request-id"


class RequestIDMiddleware:
    """Adds ``X-Request-ID`` to every HTTP response.

    A client-supplied ID is reused; otherwise a random UUID-4 is issued.
    The ID is also stored on ``request.state.request_id`` for handlers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = dict(scope.get("headers", [])).get(REQUEST_ID_HEADER, b"")
        request_id = incoming.decode("latin-1") or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((REQUEST_ID_HEADER, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_id)
