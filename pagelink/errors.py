from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .graph_api import GraphAPIError, ProviderNotConfiguredError
from .pages import IdentityNotFoundError
from .reconciliation import RecentIdentityNotFoundError

logger = logging.getLogger(__name__)


def _status_title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _status_error_code(status_code: int) -> str:
    return f"http_{status_code}"


def _normalize_detail(detail: Any) -> tuple[str, str]:
    if isinstance(detail, dict):
        text = str(detail.get("detail", "Request failed"))
        code = str(detail.get("error_code", "request_failed"))
        return text, code
    if detail is None:
        return "Request failed", "request_failed"
    return str(detail), "request_failed"


def problem_document(
    *,
    request: Request,
    status_code: int,
    title: str,
    detail: str,
    error_code: str,
    type_uri: str = "about:blank",
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": type_uri,
        "title": title,
        "status": status_code,
        "detail": detail,
        "instance": str(request.url.path),
        "error_code": error_code,
        # UI clients read a flat ``error`` message.
        "error": detail,
    }
    if extra:
        payload.update(extra)
    return payload


def problem_response(
    *,
    request: Request,
    status_code: int,
    title: str,
    detail: str,
    error_code: str,
    type_uri: str = "about:blank",
    headers: dict[str, str] | None = None,
    extra: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=problem_document(
            request=request,
            status_code=status_code,
            title=title,
            detail=detail,
            error_code=error_code,
            type_uri=type_uri,
            extra=extra,
        ),
        headers=headers,
        media_type="application/problem+json",
    )


def _graph_error_response(request: Request, exc: GraphAPIError) -> JSONResponse:
    if exc.permission:
        status_code = 400
        detail = "The provider rejected the stored credential. Please reconnect your account."
        error_code = "reconnect_required"
    else:
        status_code = 502
        detail = "The provider could not be reached. Please try again later."
        error_code = "provider_unavailable"
    return problem_response(
        request=request,
        status_code=status_code,
        title=_status_title(status_code),
        detail=detail,
        error_code=error_code,
        extra={"reason": exc.reason},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(
        request: Request, exc: HTTPException | StarletteHTTPException
    ) -> JSONResponse:
        detail, error_code = _normalize_detail(exc.detail)
        return problem_response(
            request=request,
            status_code=exc.status_code,
            title=_status_title(exc.status_code),
            detail=detail,
            error_code=error_code or _status_error_code(exc.status_code),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return problem_response(
            request=request,
            status_code=422,
            title=_status_title(422),
            detail="Request validation failed",
            error_code="validation_error",
            extra={"errors": exc.errors()},
        )

    @app.exception_handler(GraphAPIError)
    async def _graph_api_exception_handler(
        request: Request, exc: GraphAPIError
    ) -> JSONResponse:
        return _graph_error_response(request, exc)

    @app.exception_handler(ProviderNotConfiguredError)
    async def _provider_not_configured_handler(
        request: Request, exc: ProviderNotConfiguredError
    ) -> JSONResponse:
        return problem_response(
            request=request,
            status_code=503,
            title=_status_title(503),
            detail=str(exc),
            error_code="provider_not_configured",
        )

    @app.exception_handler(IdentityNotFoundError)
    async def _identity_not_found_handler(
        request: Request, exc: IdentityNotFoundError
    ) -> JSONResponse:
        return problem_response(
            request=request,
            status_code=404,
            title=_status_title(404),
            detail=str(exc),
            error_code="identity_not_found",
        )

    @app.exception_handler(RecentIdentityNotFoundError)
    async def _recent_identity_not_found_handler(
        request: Request, exc: RecentIdentityNotFoundError
    ) -> JSONResponse:
        logger.info("Manual link found nothing to link: %s", exc)
        return problem_response(
            request=request,
            status_code=404,
            title=_status_title(404),
            detail="No recent identity found to link. Please try connecting again.",
            error_code="no_recent_identity",
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
        return problem_response(
            request=request,
            status_code=500,
            title=_status_title(500),
            detail="Internal Server Error",
            error_code=_status_error_code(500),
        )
