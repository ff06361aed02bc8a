import logging

from django.conf import settings
from django.db import transaction

from shop.exceptions import InvalidSignature, PaymentGatewayError, TransitionError
from shop.models import Order
from shop.services.notifications import format_amount, get_notifier
from shop.services.orders import CommandResult, Outcome, lock_order
from shop.utils import request_payment_init, validate_signature

logger = logging.getLogger(__name__)


class PaymentService:
    """Payment gateway integration: opening payments and accepting callbacks."""

    @staticmethod
    def initiate(order_id: str) -> str:
        """
        Open a gateway payment for the order and return the payment page URL.

        The gateway call happens outside any database transaction; only the
        returned payment reference is written afterwards. Nothing is retried
        here: on failure the caller re-issues the request.

        Raises:
            Order.DoesNotExist: If the order doesn't exist.
            TransitionError: If the order is already paid, canceled or refunded.
            PaymentGatewayError: If the gateway call fails.
        """
        order = Order.objects.get(order_id=order_id)
        if order.payment_status == Order.PaymentStatus.CONFIRMED:
            raise TransitionError(f"Order {order_id} is already paid.")
        if order.status in (Order.Status.CANCELED, Order.Status.MANYBACK):
            raise TransitionError(
                f"Order {order_id} cannot be paid (status={order.status})."
            )

        result = request_payment_init(order.order_id, order.total)
        if not result["success"]:
            raise PaymentGatewayError(
                f"Payment gateway refused order {order_id}.", result["response"]
            )

        response = result["response"]
        payment_id = (response.get("payment") or {}).get("id")
        Order.objects.filter(pk=order.pk).update(
            payment_id=str(payment_id) if payment_id is not None else None
        )

        logger.info("Payment initiated: order=%s payment=%s", order_id, payment_id)
        return response.get("url")

    @staticmethod
    @transaction.atomic
    def handle_callback(payload: dict, notifier=None) -> CommandResult:
        """
        Apply a payment gateway callback.

        Only a payload whose signature verifies is trusted. A `confirmed`
        status marks the order paid; confirmation is never reverted and a
        repeated callback changes nothing.

        Raises:
            InvalidSignature: If the signature does not match.
            Order.DoesNotExist: If the order doesn't exist.
        """
        if not validate_signature(payload, getattr(settings, "PAYMENT_PASSWORD", "")):
            logger.error(
                "Payment callback with invalid signature: order=%s",
                payload.get("order_id"),
            )
            raise InvalidSignature("Invalid payment callback signature.")

        order = lock_order(payload.get("order_id"))
        payment_reference = payload.get("id")

        if payload.get("status") != "confirmed":
            logger.info(
                "Payment callback ignored: order=%s status=%s",
                order.order_id,
                payload.get("status"),
            )
            return CommandResult(order, Outcome.IGNORED)

        if order.payment_status == Order.PaymentStatus.CONFIRMED:
            logger.info("Duplicate payment confirmation: order=%s", order.order_id)
            return CommandResult(order, Outcome.ALREADY_DONE)

        order.payment_status = Order.PaymentStatus.CONFIRMED
        update_fields = ["payment_status", "updated_at"]
        if payment_reference is not None:
            order.payment_id = str(payment_reference)
            update_fields.append("payment_id")
        order.save(update_fields=update_fields)

        logger.info(
            "Payment confirmed: order=%s payment=%s", order.order_id, payment_reference
        )
        (notifier or get_notifier()).notify_operator(
            f"Payment received for order #{order.order_id}\n"
            f"Total: {format_amount(order.total)}\n"
            f"Email: {order.email or '-'}\nPayment id: {payment_reference}"
        )
        return CommandResult(order, Outcome.DONE)
