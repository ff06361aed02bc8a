import logging

from rest_framework import status
from rest_framework.generics import RetrieveAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from shop.exceptions import PaymentGatewayError, TransitionError
from shop.models import Customer, Order
from shop.serializers import (
    CreateOrderSerializer,
    OrderSerializer,
    SubmitCodeSerializer,
    SubmitEmailSerializer,
)
from shop.services import OrderService, PaymentService

logger = logging.getLogger(__name__)


class CreateOrderView(APIView):
    """
    POST /orders/ — Create an order and open a payment for it.

    Request body: {"items": {"<product>": <qty>}, "total": <int>, "customer_id": <id>}
    A gateway failure answers 502 but the order is kept; the client retries
    through the payment endpoint.
    """

    def post(self, request, *args, **kwargs):
        serializer = CreateOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            order = OrderService.create_order(
                items=serializer.validated_data["items"],
                total=serializer.validated_data["total"],
                customer_id=serializer.validated_data.get("customer_id"),
            )
        except Customer.DoesNotExist:
            return Response(
                {"error": "Customer not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except ValueError as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            payment_url = PaymentService.initiate(order.order_id)
        except PaymentGatewayError as exc:
            return Response(
                {"error": str(exc), "order_id": order.order_id},
                status=status.HTTP_502_BAD_GATEWAY,
            )

        return Response(
            {"order_id": order.order_id, "payment_url": payment_url},
            status=status.HTTP_201_CREATED,
        )


class OrderDetailView(RetrieveAPIView):
    """GET /orders/<order_id>/ — Order status and customer-facing stage."""

    serializer_class = OrderSerializer
    queryset = Order.objects.all()
    lookup_field = "order_id"


class OrderPaymentView(APIView):
    """POST /orders/<order_id>/payment — Open a new payment for an unpaid order."""

    def post(self, request, order_id, *args, **kwargs):
        try:
            payment_url = PaymentService.initiate(order_id)
        except Order.DoesNotExist:
            return Response(
                {"error": "Order not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except TransitionError as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_409_CONFLICT,
            )
        except PaymentGatewayError as exc:
            return Response(
                {"error": str(exc), "order_id": order_id},
                status=status.HTTP_502_BAD_GATEWAY,
            )

        return Response(
            {"order_id": order_id, "payment_url": payment_url},
            status=status.HTTP_200_OK,
        )


class SubmitEmailView(APIView):
    """
    POST /orders/<order_id>/email — Customer submits the account email.

    Request body: {"email": "<address>"}
    """

    def post(self, request, order_id, *args, **kwargs):
        serializer = SubmitEmailSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = OrderService.submit_email(
                order_id, serializer.validated_data["email"]
            )
        except Order.DoesNotExist:
            return Response(
                {"error": "Order not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except TransitionError as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_409_CONFLICT,
            )

        return Response(
            {"order": OrderSerializer(result.order).data, "outcome": result.outcome.value},
            status=status.HTTP_200_OK,
        )


class SubmitCodeView(APIView):
    """
    POST /orders/<order_id>/code — Customer submits the fulfillment code.

    Request body: {"code": "<1-6 digits>"}
    The answer's `status` is `waiting`, `support_needed` or `not_requested`;
    the latter two leave the order untouched.
    """

    def post(self, request, order_id, *args, **kwargs):
        serializer = SubmitCodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = OrderService.submit_code(order_id, serializer.validated_data["code"])
        except Order.DoesNotExist:
            return Response(
                {"error": "Order not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        except TransitionError as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_409_CONFLICT,
            )
        except ValueError as exc:
            return Response(
                {"error": str(exc)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        return Response(
            {
                "status": result.decision.value,
                "changed": result.changed,
                "order": OrderSerializer(result.order).data,
            },
            status=status.HTTP_200_OK,
        )
