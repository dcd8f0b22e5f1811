"""HTTP access log middleware — one structured METRIC line per request.

Logged fields: method, path, status, wall time, bytes sent, whether the
response was an SSE stream, the request ID, and the error detail of
4xx/5xx JSON bodies.  For a job run the wall time covers the whole
stream, so the line doubles as a run-duration record.

Writes to the ``claude_jobs.access`` logger.
"""

from __future__ import annotations

import json
import logging
import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("claude_jobs.access")

_SKIP_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


class AccessLogMiddleware:
    """ASGI middleware that logs every HTTP request as a METRIC line."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path: str = scope.get("path", "")
        if path.startswith(_SKIP_PREFIXES):
            await self.app(scope, receive, send)
            return

        method: str = scope.get("method", "?")
        request_id: str = scope.get("state", {}).get("request_id", "-")
        t0 = time.perf_counter()
        status_code = 0
        streamed = False
        bytes_sent = 0
        error_detail = ""

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code, streamed, bytes_sent, error_detail
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
                headers = dict(message.get("headers", []))
                streamed = headers.get(b"content-type", b"").startswith(b"text/event-stream")
            elif message["type"] == "http.response.body":
                body = message.get("body", b"")
                bytes_sent += len(body)
                if status_code >= 400 and body and not error_detail:
                    error_detail = _error_detail(body)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            # Raised before a response started.
            if status_code == 0:
                status_code = 500
            raise
        finally:
            _emit(
                method, path, status_code,
                (time.perf_counter() - t0) * 1000,
                bytes_sent, streamed, request_id, error_detail,
            )


def _error_detail(body: bytes) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("detail", payload.get("error", "")))[:200]


def _emit(
    method: str,
    path: str,
    status_code: int,
    wall_ms: float,
    bytes_sent: int,
    streamed: bool,
    request_id: str,
    error_detail: str,
) -> None:
    parts = [
        "METRIC | type=http_request",
        f"method={method}",
        f"path={path}",
        f"status={status_code}",
        f"wall_ms={wall_ms:.0f}",
        f"bytes={bytes_sent}",
        f"sse={'yes' if streamed else 'no'}",
        f"req_id={request_id}",
    ]
    if error_detail:
        # Pipes separate METRIC fields
        parts.append(f"error={error_detail.replace('|', '/')}")
    line = " | ".join(parts)

    if status_code >= 500:
        logger.error(line)
    elif status_code >= 400:
        logger.warning(line)
    else:
        logger.info(line)
