from __future__ import annotations

from rest_framework.exceptions import ValidationError


def apply_filterset(filterset_class, request, queryset):
    """
    Run a django-filter FilterSet against query params; bad params -> 400.
    """
    fs = filterset_class(data=request.query_params, queryset=queryset, request=request)
    if not fs.is_valid():
        raise ValidationError(fs.errors)
    return fs.qs
