# lab_core/common/idempotency.py
from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from typing import Any

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction

from lab_core.common.api.exceptions import ConflictError
from lab_core.common.models import IdempotencyRecord

HEADER = "HTTP_IDEMPOTENCY_KEY"

_LOCK = threading.Lock()
_STORE: dict[tuple, "CachedResponse"] = {}


@dataclass(frozen=True)
class CachedResponse:
    data: Any
    status_code: int
    request_hash: str


def _use_db() -> bool:
    """
    Enable durable storage with:
        COMMON_IDEMPOTENCY_USE_DB = True
    """
    return bool(getattr(settings, "COMMON_IDEMPOTENCY_USE_DB", False))


def get_key(request) -> str | None:
    # DRF test client: HTTP_IDEMPOTENCY_KEY=... lands in request.META
    key = (request.META.get(HEADER) or "").strip()
    return key[:255] or None


def request_hash(data) -> str:
    """Stable digest of the request payload; a replayed key must carry the same body."""
    canonical = json.dumps(data, sort_keys=True, cls=DjangoJSONEncoder, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _norm(user_id, method, path, key) -> tuple:
    return (str(user_id), method.upper(), path, key)


def _check(cached: CachedResponse | None, digest: str) -> CachedResponse | None:
    if cached is not None and cached.request_hash != digest:
        raise ConflictError("Idempotency-Key was already used with a different request body")
    return cached


def load_response(user_id, method, path, key, *, digest: str) -> CachedResponse | None:
    if not key:
        return None

    if not _use_db():
        with _LOCK:
            return _check(_STORE.get(_norm(user_id, method, path, key)), digest)

    rec = IdempotencyRecord.objects.filter(
        user_id=int(user_id),
        method=method.upper(),
        path=path,
        idempotency_key=key,
    ).first()
    if rec is None:
        return None
    return _check(
        CachedResponse(data=rec.response_data, status_code=rec.status_code, request_hash=rec.request_hash),
        digest,
    )


def save_response(user_id, method, path, key, response_data, *, digest: str, status_code: int = 200) -> None:
    if not key:
        return

    if not _use_db():
        with _LOCK:
            _STORE[_norm(user_id, method, path, key)] = CachedResponse(response_data, status_code, digest)
        return

    try:
        with transaction.atomic():
            IdempotencyRecord.objects.create(
                user_id=int(user_id),
                method=method.upper(),
                path=path,
                idempotency_key=key,
                request_hash=digest,
                status_code=int(status_code),
                response_data=response_data,
            )
    except IntegrityError:
        # a concurrent request with the same key stored first
        pass
