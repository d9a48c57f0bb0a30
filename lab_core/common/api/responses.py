from __future__ import annotations

from typing import Any

from rest_framework import status
from rest_framework.response import Response


def envelope(data: Any = None, *, message: str = "Success") -> dict[str, Any]:
    body: dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


def ok(data: Any = None, *, message: str = "Success", status_code: int = status.HTTP_200_OK) -> Response:
    return Response(envelope(data, message=message), status=status_code)


def created(data: Any = None, *, message: str = "Created") -> Response:
    return ok(data, message=message, status_code=status.HTTP_201_CREATED)
