import secrets
import time

from django.db import models

from shop.models.base import BaseModel
from shop.models.customer import Customer


def generate_order_id():
    return f"ORD{int(time.time() * 1000)}{secrets.randbelow(1000)}"


class Order(BaseModel):
    """
    A customer order and its fulfillment state.

    `status` drives which operator commands are valid; the permitted edges are
    listed in ALLOWED_TRANSITIONS and enforced by OrderService. Every
    multi-step change locks the row with select_for_update() first.
    """

    class Status(models.TextChoices):
        NEW = "new", "New"
        PENDING = "pending", "Awaiting payment"
        CONFIRMED = "confirmed", "Paid"
        WAITING_CODE_REQUEST = "waiting_code_request", "Awaiting code request"
        WAITING = "waiting", "Awaiting fulfillment"
        COMPLETED = "completed", "Completed"
        CANCELED = "canceled", "Canceled"
        MANYBACK = "manyback", "Refund in progress"

    class PaymentStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        CONFIRMED = "confirmed", "Confirmed"

    order_id = models.CharField(
        max_length=50, unique=True, default=generate_order_id, editable=False
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    items = models.JSONField(
        default=dict,
        help_text="Product id to quantity, fixed at creation.",
    )
    total = models.PositiveIntegerField(help_text="Amount owed in minor units.")
    email = models.EmailField(max_length=100, null=True, blank=True)
    code = models.CharField(max_length=6, null=True, blank=True)
    code_requested = models.BooleanField(default=False)
    wrong_code_attempts = models.PositiveIntegerField(default=0)
    payment_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="Payment reference assigned by the gateway.",
    )
    payment_status = models.CharField(
        max_length=10,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    status = models.CharField(
        max_length=24,
        choices=Status.choices,
        default=Status.NEW,
    )
    refund_amount = models.PositiveIntegerField(null=True, blank=True)

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(fields=["status"], name="idx_order_status"),
            models.Index(fields=["customer", "status"], name="idx_order_customer_status"),
        ]

    def __str__(self):
        return f"Order {self.order_id} | {self.total} | {self.status}"

    @property
    def is_terminal(self):
        return self.status in (self.Status.COMPLETED, self.Status.CANCELED)

    def can_transition_to(self, status):
        return status in ALLOWED_TRANSITIONS.get(self.status, ())


_OPEN_TARGETS = frozenset(
    {
        Order.Status.WAITING_CODE_REQUEST,
        Order.Status.WAITING,
        Order.Status.COMPLETED,
        Order.Status.CANCELED,
        Order.Status.MANYBACK,
    }
)

ALLOWED_TRANSITIONS = {
    Order.Status.NEW: _OPEN_TARGETS,
    Order.Status.PENDING: _OPEN_TARGETS,
    Order.Status.CONFIRMED: _OPEN_TARGETS,
    Order.Status.WAITING_CODE_REQUEST: _OPEN_TARGETS,
    Order.Status.WAITING: _OPEN_TARGETS,
    Order.Status.COMPLETED: frozenset({Order.Status.MANYBACK}),
    Order.Status.MANYBACK: frozenset({Order.Status.COMPLETED}),
    Order.Status.CANCELED: frozenset(),
}
