from django.contrib import admin

from shop.models import Customer, Order, Wallet, WalletTransaction


class ReadOnlyAdminMixin:
    """
    Mixin that makes an admin model completely read-only.

    Order state and wallet balances change only through the service layer,
    which takes the row locks and writes the ledger.
    """

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Customer)
class CustomerAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ("id", "tg_id", "username", "created_at")
    search_fields = ("tg_id", "username")


@admin.register(Order)
class OrderAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "order_id",
        "customer",
        "total",
        "status",
        "payment_status",
        "wrong_code_attempts",
        "refund_amount",
        "created_at",
    )
    list_filter = ("status", "payment_status")
    search_fields = ("order_id", "email", "customer__username")
    readonly_fields = (
        "order_id",
        "customer",
        "items",
        "total",
        "email",
        "code_requested",
        "wrong_code_attempts",
        "payment_id",
        "payment_status",
        "status",
        "refund_amount",
        "created_at",
        "updated_at",
    )
    exclude = ("code",)


@admin.register(Wallet)
class WalletAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "customer",
        "frozen_balance",
        "available_balance",
        "created_at",
        "updated_at",
    )
    search_fields = ("customer__tg_id", "customer__username")
    readonly_fields = (
        "customer",
        "frozen_balance",
        "available_balance",
        "created_at",
        "updated_at",
    )


@admin.register(WalletTransaction)
class WalletTransactionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "id",
        "wallet",
        "transaction_type",
        "amount",
        "order",
        "created_at",
    )
    list_filter = ("transaction_type",)
    search_fields = ("wallet__customer__tg_id", "order__order_id")
    readonly_fields = (
        "wallet",
        "transaction_type",
        "amount",
        "order",
        "metadata",
        "idempotency_key",
        "created_at",
        "updated_at",
    )
