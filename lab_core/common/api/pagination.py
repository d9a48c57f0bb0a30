from __future__ import annotations

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class DefaultPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = "limit"
    max_page_size = 200

    message = "Success"

    def get_paginated_response(self, data):
        paginator = self.page.paginator
        return Response(
            {
                "success": True,
                "message": self.message,
                "data": data,
                "pagination": {
                    "page": self.page.number,
                    "limit": paginator.per_page,
                    "total": paginator.count,
                    "totalPages": paginator.num_pages,
                },
            }
        )

    def get_paginated_response_schema(self, schema):
        return {
            "type": "object",
            "properties": {
                "success": {"type": "boolean"},
                "message": {"type": "string"},
                "data": schema,
                "pagination": {
                    "type": "object",
                    "properties": {
                        "page": {"type": "integer"},
                        "limit": {"type": "integer"},
                        "total": {"type": "integer"},
                        "totalPages": {"type": "integer"},
                    },
                },
            },
        }


def paginate(
    request,
    queryset,
    serializer_class,
    *,
    message: str = "Success",
    paginator: PageNumberPagination | None = None,
) -> Response:
    """
    Shared pagination helper to enforce a stable contract:
      { success, message, data, pagination: { page, limit, total, totalPages } }
    """
    p = paginator or DefaultPagination()
    p.message = message
    page = p.paginate_queryset(queryset, request)
    ser = serializer_class(page, many=True)
    return p.get_paginated_response(ser.data)
