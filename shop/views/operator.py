import hmac
import logging
import uuid

from django.conf import settings
from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from shop.exceptions import TransitionError
from shop.models import Customer, Order
from shop.permissions import IsOperator
from shop.serializers import (
    DepositSerializer,
    MarkCompletedSerializer,
    OrderSerializer,
    RefundSerializer,
    WalletSerializer,
    WalletTransactionSerializer,
)
from shop.services import (
    OperatorCommandDispatcher,
    OrderService,
    OrderStatsService,
    SettlementService,
    WalletService,
)

logger = logging.getLogger(__name__)

MAX_ORDER_LIST_LIMIT = 100


class OperatorOrderListView(ListAPIView):
    """
    GET /operator/orders/ — Latest orders, newest first.

    Query params:
        - limit: Number of orders (default 10, at most 100)
        - status: Filter by order status
    """

    serializer_class = OrderSerializer
    permission_classes = [IsOperator]

    def get_queryset(self):
        try:
            limit = int(self.request.query_params.get("limit", 10))
        except ValueError:
            limit = 10
        limit = max(1, min(limit, MAX_ORDER_LIST_LIMIT))

        queryset = Order.objects.all()
        order_status = self.request.query_params.get("status")
        if order_status:
            queryset = queryset.filter(status=order_status.lower())
        return queryset[:limit]


class OperatorStatsView(APIView):
    """GET /operator/stats/ — Paid order counts, revenue and orders per status."""

    permission_classes = [IsOperator]

    def get(self, request, *args, **kwargs):
        return Response(OrderStatsService.collect(), status=status.HTTP_200_OK)


def _mark_completed(order_id, data):
    serializer = MarkCompletedSerializer(data=data)
    serializer.is_valid(raise_exception=True)
    return OrderService.mark_completed(
        order_id, override=serializer.validated_data["override"]
    )


def _grant_refund(order_id, data):
    serializer = RefundSerializer(data=data)
    serializer.is_valid(raise_exception=True)
    return SettlementService.grant_refund(order_id, serializer.validated_data["amount"])


ORDER_COMMANDS = {
    "request-code": lambda order_id, data: OrderService.request_code(order_id),
    "confirm-code": lambda order_id, data: OrderService.confirm_code(order_id),
    "reject-code": lambda order_id, data: OrderService.reject_code(order_id),
    "complete": _mark_completed,
    "cancel": lambda order_id, data: OrderService.cancel(order_id),
    "refund": _grant_refund,
    "reverse-refund": lambda order_id, data: SettlementService.reverse_refund(order_id),
}


class OperatorOrderCommandView(APIView):
    """
    POST /operator/orders/<order_id>/<command> — Run a lifecycle command.

    Commands: request-code, confirm-code, reject-code, complete
    ({"override": bool}), cancel, refund ({"amount": int}), reverse-refund.
    """

    permission_classes = [IsOperator]

    def post(self, request, order_id, command, *args, **kwargs):
        handler = ORDER_COMMANDS.get(command)
        if handler is None:
            return Response(
                {"error": f"Unknown command: {command}."},
                status=status.HTTP_404_NOT_FOUND,
            )

        try:
            result = handler(order_id, request.data)
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

        logger.info(
            "Operator command: order=%s command=%s outcome=%s",
            order_id,
            command,
            result.outcome.value,
        )
        body = {"order": OrderSerializer(result.order).data, "outcome": result.outcome.value}
        if hasattr(result, "wallet"):
            body["wallet"] = WalletSerializer(result.wallet).data
        return Response(body, status=status.HTTP_200_OK)


class OperatorDepositView(APIView):
    """
    POST /operator/customers/<id>/deposit — Top up a customer's wallet.

    Request body: {"amount": <positive integer>}
    Optional header Idempotency-Key: <uuid>. Open debt is repaid first.
    """

    permission_classes = [IsOperator]

    def post(self, request, customer_id, *args, **kwargs):
        serializer = DepositSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        idempotency_key = request.META.get("HTTP_IDEMPOTENCY_KEY")
        if idempotency_key:
            try:
                idempotency_key = str(uuid.UUID(idempotency_key))
            except ValueError:
                return Response(
                    {"error": "Idempotency-Key must be a UUID."},
                    status=status.HTTP_400_BAD_REQUEST,
                )

        try:
            result = WalletService.deposit(
                customer_id=customer_id,
                amount=serializer.validated_data["amount"],
                idempotency_key=idempotency_key,
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

        return Response(
            {
                "wallet": WalletSerializer(result.wallet).data,
                "applied_to_debt": result.applied_to_debt,
                "credited": result.credited,
                "transactions": WalletTransactionSerializer(
                    result.transactions, many=True
                ).data,
            },
            status=status.HTTP_200_OK,
        )


class TelegramOperatorWebhookView(APIView):
    """POST /telegram/operator — Operator bot updates pushed by Telegram."""

    def post(self, request, *args, **kwargs):
        expected = getattr(settings, "TELEGRAM_WEBHOOK_SECRET", "")
        supplied = request.META.get("HTTP_X_TELEGRAM_BOT_API_SECRET_TOKEN", "")
        if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
            logger.warning("Operator webhook rejected: bad secret token.")
            return Response(
                {"error": "Forbidden."},
                status=status.HTTP_403_FORBIDDEN,
            )

        result = OperatorCommandDispatcher().handle_update(request.data)
        return Response({"ok": True, **result}, status=status.HTTP_200_OK)
