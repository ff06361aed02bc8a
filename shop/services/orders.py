import enum
import logging
from dataclasses import dataclass

from django.db import transaction

from shop.exceptions import TransitionError
from shop.models import Customer, Order
from shop.services.code_policy import CodeDecision, evaluate_code_submission
from shop.services.notifications import format_amount, get_notifier

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    DONE = "done"
    ALREADY_DONE = "already_done"
    CONFIRMATION_REQUIRED = "confirmation_required"
    IGNORED = "ignored"


@dataclass
class CommandResult:
    order: Order
    outcome: str

    @property
    def changed(self):
        return self.outcome == Outcome.DONE


@dataclass
class CodeSubmissionResult:
    order: Order
    decision: CodeDecision
    changed: bool


def lock_order(order_id: str) -> Order:
    """Fetch an order with its row locked. Must run inside transaction.atomic()."""
    return Order.objects.select_for_update().get(order_id=order_id)


def apply_status(order: Order, status: str):
    if not order.can_transition_to(status):
        raise TransitionError(
            f"Order {order.order_id} cannot move from {order.status} to {status}."
        )
    order.status = status


class OrderService:
    """
    The order lifecycle state machine.

    Each command locks the order row, checks the current state, and writes
    the new state in the same transaction. A command whose effect already
    holds returns ALREADY_DONE without writing; a command that is invalid
    for the current state raises TransitionError.
    """

    @staticmethod
    @transaction.atomic
    def create_order(items: dict, total: int, customer_id=None, notifier=None) -> Order:
        """
        Create a new order.

        Raises:
            Customer.DoesNotExist: If customer_id is given but unknown.
            ValueError: If items are empty or malformed, or total is not positive.
        """
        if not isinstance(items, dict) or not items:
            raise ValueError("Order must contain at least one item.")
        for product_id, quantity in items.items():
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
                raise ValueError(f"Quantity for {product_id} must be a positive integer.")
        if not isinstance(total, int) or total <= 0:
            raise ValueError("Order total must be positive.")

        customer = None
        if customer_id is not None:
            customer = Customer.objects.get(pk=customer_id)

        order = Order.objects.create(
            customer=customer,
            items={str(k): v for k, v in items.items()},
            total=total,
        )

        logger.info(
            "Order created: order=%s customer=%s total=%d items=%d",
            order.order_id,
            customer_id,
            total,
            len(items),
        )
        (notifier or get_notifier()).notify_operator(
            f"New order #{order.order_id}\nTotal: {format_amount(total)}\n"
            f"Items: {sum(items.values())}"
        )
        return order

    @staticmethod
    @transaction.atomic
    def submit_email(order_id: str, email: str, notifier=None) -> CommandResult:
        order = lock_order(order_id)

        if order.email:
            if order.email == email:
                return CommandResult(order, Outcome.ALREADY_DONE)
            raise TransitionError(f"Order {order_id} already has a contact email.")

        if order.status not in (
            Order.Status.NEW,
            Order.Status.PENDING,
            Order.Status.CONFIRMED,
            Order.Status.WAITING_CODE_REQUEST,
        ):
            raise TransitionError(
                f"Order {order_id} no longer accepts an email (status={order.status})."
            )

        order.email = email
        apply_status(order, Order.Status.WAITING_CODE_REQUEST)
        order.save(update_fields=["email", "status", "updated_at"])

        logger.info("Email saved: order=%s status=%s", order_id, order.status)
        (notifier or get_notifier()).notify_operator(
            f"Order #{order_id} is ready for fulfillment\n"
            f"Total: {format_amount(order.total)}\nEmail: {email}",
            buttons=[[("Request code", f"request_code:{order_id}")]],
        )
        return CommandResult(order, Outcome.DONE)

    @staticmethod
    @transaction.atomic
    def request_code(order_id: str) -> CommandResult:
        """Open the code entry step for the customer and clear any lockout."""
        order = lock_order(order_id)

        if order.status in (
            Order.Status.COMPLETED,
            Order.Status.CANCELED,
            Order.Status.MANYBACK,
        ):
            raise TransitionError(
                f"Cannot request a code for order {order_id} (status={order.status})."
            )
        if not order.email:
            raise TransitionError(f"Order {order_id} has no email yet.")
        if order.code:
            raise TransitionError(
                f"Order {order_id} has a submitted code awaiting review."
            )
        if (
            order.code_requested
            and order.wrong_code_attempts == 0
            and order.status == Order.Status.WAITING_CODE_REQUEST
        ):
            return CommandResult(order, Outcome.ALREADY_DONE)

        apply_status(order, Order.Status.WAITING_CODE_REQUEST)
        order.code_requested = True
        order.wrong_code_attempts = 0
        order.save(
            update_fields=["status", "code_requested", "wrong_code_attempts", "updated_at"]
        )

        logger.info("Code requested: order=%s", order_id)
        return CommandResult(order, Outcome.DONE)

    @staticmethod
    @transaction.atomic
    def submit_code(order_id: str, code: str, notifier=None) -> CodeSubmissionResult:
        """
        Store a customer's fulfillment code for operator review.

        Lockout and an unopened entry step are returned as decisions, not
        raised; neither mutates the order.
        """
        order = lock_order(order_id)

        decision = evaluate_code_submission(
            order.wrong_code_attempts, order.code_requested, code
        )
        if decision != CodeDecision.ACCEPT:
            logger.info(
                "Code submission refused: order=%s decision=%s attempts=%d",
                order_id,
                decision.value,
                order.wrong_code_attempts,
            )
            return CodeSubmissionResult(order, decision, changed=False)

        if order.code == code and order.status == Order.Status.WAITING:
            return CodeSubmissionResult(order, decision, changed=False)

        if order.status in (
            Order.Status.COMPLETED,
            Order.Status.CANCELED,
            Order.Status.MANYBACK,
        ):
            raise TransitionError(
                f"Order {order_id} no longer accepts codes (status={order.status})."
            )

        order.code = code
        apply_status(order, Order.Status.WAITING)
        order.save(update_fields=["code", "status", "updated_at"])

        logger.info("Code submitted: order=%s", order_id)
        (notifier or get_notifier()).notify_operator(
            f"Code entered for order #{order_id}\n"
            f"Total: {format_amount(order.total)}\n"
            f"Email: {order.email or '-'}\nCode: {code}",
            buttons=[
                [
                    ("Order ready", f"order_ready:{order_id}"),
                    ("Wrong code", f"wrong_code:{order_id}"),
                ]
            ],
        )
        return CodeSubmissionResult(order, decision, changed=True)

    @staticmethod
    @transaction.atomic
    def confirm_code(order_id: str) -> CommandResult:
        order = lock_order(order_id)

        if order.status == Order.Status.COMPLETED:
            return CommandResult(order, Outcome.ALREADY_DONE)
        if not order.code:
            raise TransitionError(f"Order {order_id} has no submitted code.")
        if order.status != Order.Status.WAITING:
            raise TransitionError(
                f"Order {order_id} is not awaiting review (status={order.status})."
            )

        apply_status(order, Order.Status.COMPLETED)
        order.save(update_fields=["status", "updated_at"])

        logger.info("Code confirmed, order completed: order=%s", order_id)
        return CommandResult(order, Outcome.DONE)

    @staticmethod
    @transaction.atomic
    def reject_code(order_id: str) -> CommandResult:
        order = lock_order(order_id)

        if order.status in (
            Order.Status.COMPLETED,
            Order.Status.CANCELED,
            Order.Status.MANYBACK,
        ):
            raise TransitionError(
                f"Cannot reject a code for order {order_id} (status={order.status})."
            )
        if not order.code:
            if order.status == Order.Status.WAITING and order.wrong_code_attempts:
                # The last submission was already rejected.
                return CommandResult(order, Outcome.ALREADY_DONE)
            raise TransitionError(f"Order {order_id} has no submitted code.")

        order.wrong_code_attempts += 1
        order.code = None
        order.code_requested = False
        apply_status(order, Order.Status.WAITING)
        order.save(
            update_fields=[
                "wrong_code_attempts",
                "code",
                "code_requested",
                "status",
                "updated_at",
            ]
        )

        logger.info(
            "Code rejected: order=%s attempts=%d", order_id, order.wrong_code_attempts
        )
        return CommandResult(order, Outcome.DONE)

    @staticmethod
    @transaction.atomic
    def mark_completed(order_id: str, override: bool = False) -> CommandResult:
        """
        Complete an order without code review.

        If a code was requested but never entered the operator must pass
        override=True; otherwise CONFIRMATION_REQUIRED is returned unchanged.
        """
        order = lock_order(order_id)

        if order.status == Order.Status.COMPLETED:
            return CommandResult(order, Outcome.ALREADY_DONE)
        if order.status == Order.Status.MANYBACK:
            raise TransitionError(
                f"Order {order_id} has a refund in progress; reverse it instead."
            )
        if order.code_requested and not order.code and not override:
            return CommandResult(order, Outcome.CONFIRMATION_REQUIRED)

        apply_status(order, Order.Status.COMPLETED)
        order.save(update_fields=["status", "updated_at"])

        logger.info("Order marked completed: order=%s override=%s", order_id, override)
        return CommandResult(order, Outcome.DONE)

    @staticmethod
    @transaction.atomic
    def cancel(order_id: str) -> CommandResult:
        order = lock_order(order_id)

        if order.status == Order.Status.CANCELED:
            return CommandResult(order, Outcome.ALREADY_DONE)
        if order.status == Order.Status.MANYBACK:
            raise TransitionError(f"Order {order_id} has a refund in progress.")

        apply_status(order, Order.Status.CANCELED)
        order.save(update_fields=["status", "updated_at"])

        logger.info("Order canceled: order=%s", order_id)
        return CommandResult(order, Outcome.DONE)

    @staticmethod
    def grant_refund(order_id: str, amount: int, notifier=None):
        from shop.services.settlement import SettlementService

        return SettlementService.grant_refund(order_id, amount, notifier=notifier)

    @staticmethod
    def reverse_refund(order_id: str, notifier=None):
        from shop.services.settlement import SettlementService

        return SettlementService.reverse_refund(order_id, notifier=notifier)
