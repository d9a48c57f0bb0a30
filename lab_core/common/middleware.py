from __future__ import annotations

from django.utils.deprecation import MiddlewareMixin

from lab_core.common.api.exceptions import ensure_request_id


class RequestIdMiddleware(MiddlewareMixin):
    """
    Attaches request.request_id (from X-Request-Id or generated) and echoes it
    back on every response so error envelopes and logs can be correlated.
    """

    RESPONSE_HEADER = "X-Request-Id"

    def process_request(self, request):
        ensure_request_id(request)

    def process_response(self, request, response):
        response[self.RESPONSE_HEADER] = ensure_request_id(request)
        return response
