import hmac

from django.conf import settings
from rest_framework.permissions import BasePermission


class IsOperator(BasePermission):
    """Allows access only to requests carrying the operator API token."""

    message = "Operator token missing or invalid."

    def has_permission(self, request, view):
        expected = getattr(settings, "OPERATOR_API_TOKEN", "")
        supplied = request.META.get("HTTP_X_OPERATOR_TOKEN", "")
        if not expected or not supplied:
            return False
        return hmac.compare_digest(supplied.encode(), expected.encode())
