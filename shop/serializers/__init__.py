from shop.serializers.order import (
    CreateOrderSerializer,
    MarkCompletedSerializer,
    OrderSerializer,
    RefundSerializer,
    SubmitCodeSerializer,
    SubmitEmailSerializer,
)
from shop.serializers.deposit import DepositSerializer, ExchangeSerializer
from shop.serializers.wallet import WalletSerializer, WalletTransactionSerializer

__all__ = [
    "CreateOrderSerializer",
    "MarkCompletedSerializer",
    "OrderSerializer",
    "RefundSerializer",
    "SubmitCodeSerializer",
    "SubmitEmailSerializer",
    "DepositSerializer",
    "ExchangeSerializer",
    "WalletSerializer",
    "WalletTransactionSerializer",
]
