"""ASGI middleware guarding JSON request bodies."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Message, Receive, Scope, Send


# Routes whose handlers parse a JSON object from the body.
_JSON_BODY_ROUTES: dict[str, re.Pattern[str]] = {
    "POST": re.compile(
        r"^/(tasks"
        r"|tasks/[^/]+/(cancel|complete|bids)"
        r"|tasks/[^/]+/bids/[^/]+/accept"
        r"|disputes"
        r"|disputes/[^/]+/(evidence|review|resolve)"
        r"|webhooks"
        r"|webhooks/[^/]+/(active|test)"
        r"|escrow/[^/]+/release)$"
    ),
    "PUT": re.compile(r"^/escrow/config$"),
}


class BodyTooLarge(Exception):
    """Raised while buffering a body that exceeds the configured limit."""


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": {}},
    )


class RequestValidationMiddleware:
    """
    Reject malformed JSON requests before they reach a router.

    Only routes listed in ``_JSON_BODY_ROUTES`` are checked: a Content-Type
    other than application/json gets 415 and a body over ``max_body_size``
    bytes gets 413. Everything else, including bodyless POSTs such as
    verify and trigger-releases, passes through untouched so that routing
    can still answer 404 or 405.
    """

    def __init__(self, app: ASGIApp, max_body_size: int) -> None:
        self.app = app
        self.max_body_size = max_body_size

    def _expects_json(self, scope: Scope) -> bool:
        pattern = _JSON_BODY_ROUTES.get(cast("str", scope.get("method", "")))
        return pattern is not None and pattern.match(cast("str", scope.get("path", ""))) is not None

    async def _buffer_body(self, receive: Receive) -> bytes:
        chunks: list[bytes] = []
        size = 0
        more_body = True
        while more_body:
            message = cast("dict[str, Any]", await receive())
            chunk = cast("bytes", message.get("body", b""))
            size += len(chunk)
            if size > self.max_body_size:
                raise BodyTooLarge
            chunks.append(chunk)
            more_body = bool(message.get("more_body", False))
        return b"".join(chunks)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._expects_json(scope):
            await self.app(scope, receive, send)
            return

        headers = dict(cast("list[tuple[bytes, bytes]]", scope.get("headers", [])))
        content_type = headers.get(b"content-type", b"").decode("latin-1").lower()
        if not content_type.startswith("application/json"):
            response = _error_response(
                415, "UNSUPPORTED_MEDIA_TYPE", "Content-Type must be application/json"
            )
            await response(scope, receive, send)
            return

        try:
            body = await self._buffer_body(receive)
        except BodyTooLarge:
            response = _error_response(
                413, "PAYLOAD_TOO_LARGE", "Request body exceeds maximum allowed size"
            )
            await response(scope, receive, send)
            return

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if replayed:
                return {"type": "http.disconnect"}
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay, send)
