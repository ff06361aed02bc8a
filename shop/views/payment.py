import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from shop.exceptions import InvalidSignature
from shop.models import Order
from shop.services import PaymentService

logger = logging.getLogger(__name__)


class PaymentCallbackView(APIView):
    """POST /payments/callback — Payment gateway status notification."""

    def post(self, request, *args, **kwargs):
        payload = request.data
        if hasattr(payload, "dict"):
            payload = payload.dict()

        try:
            result = PaymentService.handle_callback(payload)
        except InvalidSignature:
            return Response(
                {"error": "Invalid signature."},
                status=status.HTTP_400_BAD_REQUEST,
            )
        except Order.DoesNotExist:
            logger.warning("Payment callback for unknown order=%s", payload.get("order_id"))
            return Response(
                {"error": "Order not found."},
                status=status.HTTP_404_NOT_FOUND,
            )

        return Response(
            {"status": "ok", "outcome": result.outcome.value},
            status=status.HTTP_200_OK,
        )
