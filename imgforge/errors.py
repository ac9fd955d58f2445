"""Exceptions and FastAPI error handler registration."""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ImgforgeError(Exception):
    status_code = 500


class NotFoundError(ImgforgeError):
    status_code = 404


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class LogNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(f"No log for job {job_id}")
        self.job_id = job_id


class BadRequestError(ImgforgeError):
    status_code = 400


class InvalidTransitionError(ImgforgeError):
    """Raised when a job that already reached a terminal status is moved again."""

    status_code = 409


class InternalError(ImgforgeError):
    status_code = 500


class SpawnError(InternalError):
    """The external executable could not be launched."""


def _error_body(message: str) -> dict:
    return {"error": message}


async def _imgforge_error(request: Request, exc: ImgforgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc)))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content=_error_body("; ".join(parts) or "invalid request"))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ImgforgeError, _imgforge_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
