from shop.views.order import (
    CreateOrderView,
    OrderDetailView,
    OrderPaymentView,
    SubmitCodeView,
    SubmitEmailView,
)
from shop.views.payment import PaymentCallbackView
from shop.views.wallet import ExchangeView, WalletDetailView, WalletTransactionListView
from shop.views.operator import (
    OperatorDepositView,
    OperatorOrderCommandView,
    OperatorOrderListView,
    OperatorStatsView,
    TelegramOperatorWebhookView,
)

__all__ = [
    "CreateOrderView",
    "OrderDetailView",
    "OrderPaymentView",
    "SubmitCodeView",
    "SubmitEmailView",
    "PaymentCallbackView",
    "ExchangeView",
    "WalletDetailView",
    "WalletTransactionListView",
    "OperatorDepositView",
    "OperatorOrderCommandView",
    "OperatorOrderListView",
    "OperatorStatsView",
    "TelegramOperatorWebhookView",
]
