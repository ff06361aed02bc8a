from rest_framework import serializers

from shop.models import Wallet, WalletTransaction


class WalletTransactionSerializer(serializers.ModelSerializer):
    """Read-only serializer for ledger entries."""

    order_id = serializers.CharField(source="order.order_id", read_only=True, default=None)

    class Meta:
        model = WalletTransaction
        fields = (
            "id",
            "transaction_type",
            "amount",
            "order_id",
            "metadata",
            "created_at",
        )
        read_only_fields = fields


class WalletSerializer(serializers.ModelSerializer):
    customer_id = serializers.IntegerField(read_only=True)
    balance = serializers.IntegerField(read_only=True)
    outstanding_debt = serializers.SerializerMethodField()
    transactions = serializers.SerializerMethodField()

    class Meta:
        model = Wallet
        fields = (
            "customer_id",
            "balance",
            "frozen_balance",
            "available_balance",
            "outstanding_debt",
            "transactions",
        )
        read_only_fields = fields

    def get_outstanding_debt(self, obj):
        return obj.outstanding_debt()

    def get_transactions(self, obj):
        if obj.pk is None:
            return []
        recent = obj.transactions.select_related("order")[:20]
        return WalletTransactionSerializer(recent, many=True).data
