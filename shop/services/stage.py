from shop.models import Order
from shop.services.code_policy import is_locked_out


class Stage:
    EMAIL_REQUIRED = "email_required"
    WAITING_CODE_REQUEST = "waiting_code_request"
    CODE_REQUIRED = "code_required"
    SUPPORT_NEEDED = "support_needed"
    WAITING_EXECUTION = "waiting_execution"
    COMPLETED = "completed"
    CANCELED = "canceled"
    REFUND_IN_PROGRESS = "refund_in_progress"
    UNKNOWN = "unknown"


def resolve_stage(order: Order) -> str:
    """Map an order onto the step the customer-facing pages should show."""
    status = order.status
    has_email = bool(order.email and order.email.strip())
    has_code = bool(order.code and order.code.strip())

    if status == Order.Status.COMPLETED:
        return Stage.COMPLETED
    if status == Order.Status.CANCELED:
        return Stage.CANCELED
    if status == Order.Status.MANYBACK:
        return Stage.REFUND_IN_PROGRESS

    if not has_email and status in (
        Order.Status.NEW,
        Order.Status.PENDING,
        Order.Status.CONFIRMED,
    ):
        return Stage.EMAIL_REQUIRED

    if has_code:
        if status == Order.Status.WAITING:
            return Stage.WAITING_EXECUTION
        return Stage.UNKNOWN

    if is_locked_out(order.wrong_code_attempts):
        return Stage.SUPPORT_NEEDED

    if order.code_requested or order.wrong_code_attempts:
        return Stage.CODE_REQUIRED

    if has_email and status == Order.Status.WAITING_CODE_REQUEST:
        return Stage.WAITING_CODE_REQUEST

    return Stage.UNKNOWN
