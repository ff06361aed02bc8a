from django.urls import path

from shop.views import (
    CreateOrderView,
    ExchangeView,
    OperatorDepositView,
    OperatorOrderCommandView,
    OperatorOrderListView,
    OperatorStatsView,
    OrderDetailView,
    OrderPaymentView,
    PaymentCallbackView,
    SubmitCodeView,
    SubmitEmailView,
    TelegramOperatorWebhookView,
    WalletDetailView,
    WalletTransactionListView,
)

urlpatterns = [
    path("orders/", CreateOrderView.as_view(), name="order-create"),
    path("orders/<str:order_id>/", OrderDetailView.as_view(), name="order-detail"),
    path("orders/<str:order_id>/payment", OrderPaymentView.as_view(), name="order-payment"),
    path("orders/<str:order_id>/email", SubmitEmailView.as_view(), name="order-email"),
    path("orders/<str:order_id>/code", SubmitCodeView.as_view(), name="order-code"),
    path("payments/callback", PaymentCallbackView.as_view(), name="payment-callback"),
    path(
        "customers/<int:customer_id>/wallet/",
        WalletDetailView.as_view(),
        name="wallet-detail",
    ),
    path(
        "customers/<int:customer_id>/wallet/transactions/",
        WalletTransactionListView.as_view(),
        name="wallet-transactions",
    ),
    path(
        "customers/<int:customer_id>/wallet/exchange",
        ExchangeView.as_view(),
        name="wallet-exchange",
    ),
    path("operator/orders/", OperatorOrderListView.as_view(), name="operator-orders"),
    path("operator/stats/", OperatorStatsView.as_view(), name="operator-stats"),
    path(
        "operator/orders/<str:order_id>/<slug:command>",
        OperatorOrderCommandView.as_view(),
        name="operator-order-command",
    ),
    path(
        "operator/customers/<int:customer_id>/deposit",
        OperatorDepositView.as_view(),
        name="operator-deposit",
    ),
    path(
        "telegram/operator",
        TelegramOperatorWebhookView.as_view(),
        name="telegram-operator-webhook",
    ),
]
