from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AliasTaken(HTTPException):
    def __init__(self, detail: str = "Custom alias already in use.") -> None:
        super().__init__(status_code=400, detail=detail)


class InvalidUrl(HTTPException):
    def __init__(self, detail: str = "Invalid URL format.") -> None:
        super().__init__(status_code=400, detail=detail)


class InvalidAlias(HTTPException):
    def __init__(self, detail: str = "Invalid custom alias.") -> None:
        super().__init__(status_code=400, detail=detail)


class NotAuthenticated(HTTPException):
    def __init__(self, detail: str = "Unauthorized: Please log in") -> None:
        super().__init__(status_code=401, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found") -> None:
        super().__init__(status_code=404, detail=detail)


class RateLimited(HTTPException):
    def __init__(self, detail: str = "Rate limit exceeded. Try again later.") -> None:
        super().__init__(status_code=429, detail=detail)


def _validation_message(exc: RequestValidationError) -> str:
    for err in exc.errors():
        loc = err.get("loc", ())
        if "longUrl" in loc or "long_url" in loc:
            return InvalidUrl().detail
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    msg = first.get("msg", "Invalid request")
    return f"{field}: {msg}" if field else msg


def install_error_handlers(app: FastAPI) -> None:
    """
    Every error leaves the API as {"message": ...}, except 429 which is
    plain text.
    """

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 429:
            return PlainTextResponse(str(exc.detail), status_code=429, headers=exc.headers)
        return JSONResponse({"message": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"message": _validation_message(exc)}, status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"message": "Internal server error"}, status_code=500)
