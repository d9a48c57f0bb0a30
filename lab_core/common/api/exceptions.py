# lab_core/common/api/exceptions.py
from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    NotAuthenticated,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.serializers import as_serializer_error
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "HTTP_X_REQUEST_ID"


def ensure_request_id(request) -> str:
    """
    Ensures request has a stable request_id attribute and returns it.
    An inbound X-Request-Id header wins over a generated one.
    Safe to call from middleware and DRF exception handler.
    """
    rid = getattr(request, "request_id", None) if request is not None else None
    if not rid:
        meta = getattr(request, "META", None) or {}
        rid = (meta.get(REQUEST_ID_HEADER) or "").strip()[:64] or uuid.uuid4().hex
        if request is not None:
            setattr(request, "request_id", rid)
    return rid


def build_error_envelope(*, request=None, code: str, message: str, details: Any = None) -> dict[str, Any]:
    """
    Canonical error envelope:
        {"success": false, "message": ..., "error": {"code", "details", "request_id"}}
    Reusable from Django middleware (JsonResponse) and DRF (Response).
    """
    rid = ensure_request_id(request)
    return {
        "success": False,
        "message": message,
        "error": {
            "code": code,
            "details": details,
            "request_id": rid,
        },
    }


class ConflictError(APIException):
    """
    409 Conflict: duplicates, one-shot violations and lost races.
    Callers must not retry automatically.
    """
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict."
    default_code = "conflict"

    def __init__(self, detail=None, code=None):
        super().__init__(detail=detail or self.default_detail, code=code or self.default_code)


class PreconditionFailedError(APIException):
    """
    412: a business rule blocks the operation (insufficient stock,
    instrument not ready, returned lot, ...).
    """
    status_code = status.HTTP_412_PRECONDITION_FAILED
    default_detail = "Precondition failed."
    default_code = "precondition_failed"

    def __init__(self, detail=None, code=None):
        super().__init__(detail=detail or self.default_detail, code=code or self.default_code)


def _code_for(exc: Exception, http_status: int) -> str:
    if isinstance(exc, ValidationError):
        return "validation_error"
    if isinstance(exc, NotAuthenticated):
        return "not_authenticated"
    if isinstance(exc, PermissionDenied):
        return "permission_denied"
    if isinstance(exc, (Http404, NotFound)):
        return "not_found"
    if isinstance(exc, APIException):
        return getattr(exc, "default_code", "api_error") or "api_error"
    if http_status >= 500:
        return "server_error"
    return "error"


def _first_message(data: Any) -> str | None:
    if isinstance(data, list) and data:
        return _first_message(data[0])
    if isinstance(data, dict) and data:
        key, value = next(iter(data.items()))
        inner = _first_message(value)
        if inner is None:
            return None
        return inner if key in ("detail", "non_field_errors") else f"{key}: {inner}"
    if isinstance(data, str):
        return data
    return None


def api_exception_handler(exc: Exception, context: dict[str, Any]):
    request = context.get("request")

    # Model-level full_clean() errors surface as regular validation errors.
    if isinstance(exc, DjangoValidationError):
        exc = ValidationError(detail=as_serializer_error(exc))

    response = drf_exception_handler(exc, context)

    # Truly unhandled error
    if response is None:
        logger.exception(
            "Unhandled error on %s %s",
            getattr(request, "method", "?"),
            getattr(request, "path", "?"),
            exc_info=exc,
        )
        details = None
        if settings.DEBUG:
            details = {"trace": traceback.format_exception(type(exc), exc, exc.__traceback__)}
        return Response(
            build_error_envelope(
                request=request,
                code="server_error",
                message="Unexpected server error.",
                details=details,
            ),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    http_status = response.status_code
    code = _code_for(exc, http_status)
    data = response.data

    # Message + details rules:
    # 1) {"detail": "..."} only -> message=detail, details=None
    # 2) {"detail": "...", ...} -> message=detail, details={...without detail}
    # 3) list of messages -> message=first, details=list when more than one
    # 4) field errors -> message="<field>: <first error>", details=data
    message = "Request failed."
    details = data

    if isinstance(data, dict) and "detail" in data:
        message = str(data.get("detail"))
        rest = {k: v for k, v in data.items() if k != "detail"}
        details = rest or None
    elif isinstance(data, list):
        message = _first_message(data) or message
        details = data if len(data) > 1 else None
    elif isinstance(data, dict):
        message = _first_message(data) or message

    return Response(
        build_error_envelope(
            request=request,
            code=code,
            message=message,
            details=details,
        ),
        status=http_status,
        headers=response.headers,
    )
