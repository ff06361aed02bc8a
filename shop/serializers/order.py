from rest_framework import serializers

from shop.models import Order
from shop.services.code_policy import is_locked_out
from shop.services.stage import resolve_stage


class CreateOrderSerializer(serializers.Serializer):
    """Validates order creation requests."""

    items = serializers.DictField(
        child=serializers.IntegerField(min_value=1), allow_empty=False
    )
    total = serializers.IntegerField(min_value=1)
    customer_id = serializers.IntegerField(required=False, allow_null=True)


class OrderSerializer(serializers.ModelSerializer):
    """Read-only serializer for order status responses."""

    stage = serializers.SerializerMethodField()
    max_attempts_reached = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = (
            "order_id",
            "customer",
            "items",
            "total",
            "email",
            "status",
            "payment_status",
            "code_requested",
            "wrong_code_attempts",
            "refund_amount",
            "stage",
            "max_attempts_reached",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields

    def get_stage(self, obj):
        return resolve_stage(obj)

    def get_max_attempts_reached(self, obj):
        return is_locked_out(obj.wrong_code_attempts)


class SubmitEmailSerializer(serializers.Serializer):
    email = serializers.EmailField(max_length=100)


class SubmitCodeSerializer(serializers.Serializer):
    code = serializers.RegexField(
        r"^\d{1,6}$",
        error_messages={"invalid": "Code must be 1 to 6 digits."},
    )


class RefundSerializer(serializers.Serializer):
    amount = serializers.IntegerField(min_value=1)


class MarkCompletedSerializer(serializers.Serializer):
    override = serializers.BooleanField(default=False)
