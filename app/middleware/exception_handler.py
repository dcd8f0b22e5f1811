"""Error responses for the jobs API.

Failures reach the client in one of two shapes, chosen by the request's
``Accept`` header:

* JSON (default): ``{"error", "detail", "request_id"}``.
* Event stream: a single ``data: {"type": "error", ...}`` frame.  The run
  endpoints answer with SSE, so a dashboard reading ``/api/jobs/run``
  sees a rejected run (unknown job, busy job, bad backend) as an
  ``error`` event instead of a JSON body it does not parse.

Status codes: ``JobsError`` carries its own, engine errors are the
caller's fault (400), request validation is 400 and anything else is a
500 whose message stays in the server log.
"""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.errors import JobsError, format_error_response
from job_engine import ErrorEvent, event_to_json
from job_engine.errors import EngineError

logger = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or uuid.uuid4().hex


def _wants_stream(request: Request) -> bool:
    return SSE_MEDIA_TYPE in request.headers.get("accept", "")


def _respond(
    request: Request,
    status_code: int,
    error: str,
    detail: object = None,
    *,
    message: str | None = None,
) -> Response:
    """Render one failure for *request*.

    *message* is the one-line text used for the stream frame; it
    defaults to *detail* when that is a string, else *error*.
    """
    if _wants_stream(request):
        if message is None:
            message = detail if isinstance(detail, str) else error
        frame = f"data: {event_to_json(ErrorEvent(error=message))}\n\n"
        return Response(frame, status_code=status_code, media_type=SSE_MEDIA_TYPE)
    return JSONResponse(
        format_error_response(error=error, detail=detail, request_id=_request_id(request)),
        status_code=status_code,
    )


async def _on_jobs_error(request: Request, exc: JobsError) -> Response:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _respond(request, exc.status_code, str(exc), str(exc))


async def _on_engine_error(request: Request, exc: EngineError) -> Response:
    # detail keeps the structured fields, e.g. the registered backends
    logger.warning("Engine rejected %s %s: %s", request.method, request.url.path, exc)
    return _respond(request, 400, type(exc).__name__, exc.to_dict(), message=exc.message)


async def _on_invalid_request(request: Request, exc: RequestValidationError) -> Response:
    problems = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    logger.warning("Invalid request %s %s: %s", request.method, request.url.path, problems)
    summary = "; ".join(
        f"{'.'.join(str(part) for part in p['loc'])}: {p['msg']}" for p in problems
    )
    return _respond(request, 400, "Validation failed", problems, message=summary)


async def _on_http_error(request: Request, exc: StarletteHTTPException) -> Response:
    text = str(exc.detail) if exc.detail else "Error"
    return _respond(request, exc.status_code, text, text)


async def _on_unhandled(request: Request, exc: Exception) -> Response:
    logger.error(
        "Unhandled %s on %s %s [request_id=%s]",
        type(exc).__name__, request.method, request.url.path, _request_id(request),
        exc_info=exc,
    )
    return _respond(request, 500, "Internal Server Error", "Internal server error")


_HANDLERS = (
    (RequestValidationError, _on_invalid_request),
    (StarletteHTTPException, _on_http_error),
    (JobsError, _on_jobs_error),
    (EngineError, _on_engine_error),
    (Exception, _on_unhandled),
)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the error handlers on *app*."""
    for exc_class, handler in _HANDLERS:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
