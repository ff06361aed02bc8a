import logging

from rest_framework import status
from rest_framework.generics import ListAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from shop.models import Customer, WalletTransaction
from shop.serializers import (
    ExchangeSerializer,
    WalletSerializer,
    WalletTransactionSerializer,
)
from shop.services import WalletService

logger = logging.getLogger(__name__)


class WalletDetailView(APIView):
    """GET /customers/<id>/wallet/ — Balances, outstanding debt and recent entries."""

    def get(self, request, customer_id, *args, **kwargs):
        try:
            wallet = WalletService.get_wallet(customer_id)
        except Customer.DoesNotExist:
            return Response(
                {"error": "Customer not found."},
                status=status.HTTP_404_NOT_FOUND,
            )
        return Response(WalletSerializer(wallet).data, status=status.HTTP_200_OK)


class WalletTransactionListView(ListAPIView):
    """
    GET /customers/<id>/wallet/transactions/ — List a customer's ledger entries.

    Query params:
        - type: Filter by entry type (deposit, withdraw, refund, debt, debt_paid, debt_payment)
    """

    serializer_class = WalletTransactionSerializer

    def get_queryset(self):
        queryset = WalletTransaction.objects.filter(
            wallet__customer_id=self.kwargs["customer_id"]
        ).select_related("order")

        tx_type = self.request.query_params.get("type")
        if tx_type:
            queryset = queryset.filter(transaction_type=tx_type.lower())

        return queryset


class ExchangeView(APIView):
    """
    POST /customers/<id>/wallet/exchange — Move frozen funds to the available balance.

    Request body: {"amount": <positive integer>} (optional, defaults to all frozen funds)

    Carries no credentials of its own: the customer-facing front end must
    authenticate the customer and only forward requests for that customer's
    own wallet. Never expose this route directly.
    """

    def post(self, request, customer_id, *args, **kwargs):
        serializer = ExchangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = WalletService.exchange_frozen(
                customer_id, amount=serializer.validated_data.get("amount")
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
            },
            status=status.HTTP_200_OK,
        )
