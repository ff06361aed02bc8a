import logging

from django.conf import settings

from shop.exceptions import TransitionError
from shop.models import Order
from shop.services.notifications import format_amount, get_notifier
from shop.services.operator_sessions import OperatorSessionStore
from shop.services.orders import OrderService, Outcome
from shop.services.settlement import SettlementService
from shop.services.stats import OrderStatsService

logger = logging.getLogger(__name__)

REFUND_ACTION = "refund"
AMOUNT_STEP = "amount"


class OperatorCommandDispatcher:
    """
    Translates operator chat updates into order commands.

    Inline buttons arrive as callback data `<action>:<order_id>`. The refund
    button opens a two-step wizard whose state lives in OperatorSessionStore;
    the next numeric message from the same chat is taken as the amount.
    Every command replies to the operator chat, including failures.
    """

    def __init__(self, notifier=None, sessions=None):
        self.notifier = notifier or get_notifier()
        self.sessions = sessions or OperatorSessionStore()
        self.callbacks = {
            "request_code": self._request_code,
            "order_ready": self._order_ready,
            "wrong_code": self._wrong_code,
            "mark_completed": self._mark_completed,
            "force_complete": self._force_complete,
            "cancel_order": self._cancel_order,
            "refund": self._start_refund,
            "reverse_refund": self._reverse_refund,
        }

    def handle_update(self, update: dict) -> dict:
        if "callback_query" in update:
            query = update["callback_query"]
            chat_id = ((query.get("message") or {}).get("chat") or {}).get("id")
            if not self._is_operator_chat(chat_id):
                return {"handled": False, "reason": "foreign_chat"}
            return self._handle_callback(chat_id, query.get("data") or "")

        message = update.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id")
        if not message or not self._is_operator_chat(chat_id):
            return {"handled": False, "reason": "foreign_chat" if message else "empty"}
        return self._handle_text(chat_id, (message.get("text") or "").strip())

    def _is_operator_chat(self, chat_id):
        return chat_id is not None and chat_id == getattr(settings, "OPERATOR_CHAT_ID", 0)

    def _handle_callback(self, chat_id, data):
        action, _, order_id = data.partition(":")
        handler = self.callbacks.get(action)
        if handler is None or not order_id:
            logger.warning("Unknown operator callback: data=%r", data)
            return {"handled": False, "reason": "unknown_callback"}

        logger.info("Operator callback: action=%s order=%s", action, order_id)
        try:
            outcome = handler(chat_id, order_id)
        except Order.DoesNotExist:
            self.notifier.notify_operator(f"Order #{order_id} not found.")
            return {"handled": True, "action": action, "error": "not_found"}
        except (TransitionError, ValueError) as exc:
            self.notifier.notify_operator(f"Order #{order_id}: {exc}")
            return {"handled": True, "action": action, "error": str(exc)}
        return {"handled": True, "action": action, "outcome": outcome}

    def _handle_text(self, chat_id, text):
        if text == "/cancel":
            if self.sessions.clear(chat_id):
                self.notifier.notify_operator("Action canceled.")
            return {"handled": True, "action": "cancel_wizard"}

        if text == "/stats":
            self.notifier.notify_operator(_stats_message(OrderStatsService.collect()))
            return {"handled": True, "action": "stats"}

        session = self.sessions.get(chat_id)
        if session is not None and session.action == REFUND_ACTION:
            return self._finish_refund(chat_id, session, text)

        return {"handled": False, "reason": "no_command"}

    def _request_code(self, chat_id, order_id):
        result = OrderService.request_code(order_id)
        if result.outcome == Outcome.ALREADY_DONE:
            self.notifier.notify_operator(f"Code already requested for order #{order_id}.")
        else:
            self.notifier.notify_operator(
                f"Code requested for order #{order_id}.",
                buttons=[[("Mark completed", f"mark_completed:{order_id}")]],
            )
        return result.outcome

    def _order_ready(self, chat_id, order_id):
        result = OrderService.confirm_code(order_id)
        self._report_completed(result)
        return result.outcome

    def _wrong_code(self, chat_id, order_id):
        result = OrderService.reject_code(order_id)
        order = result.order
        if result.outcome == Outcome.ALREADY_DONE:
            self.notifier.notify_operator(f"Code for order #{order_id} already rejected.")
            return result.outcome
        text = f"Code for order #{order_id} rejected ({order.wrong_code_attempts} wrong)."
        buttons = None
        if not order.code_requested:
            buttons = [[("Request code again", f"request_code:{order_id}")]]
        self.notifier.notify_operator(text, buttons=buttons)
        return result.outcome

    def _mark_completed(self, chat_id, order_id):
        result = OrderService.mark_completed(order_id)
        if result.outcome == Outcome.CONFIRMATION_REQUIRED:
            self.notifier.notify_operator(
                f"A code was requested for order #{order_id} but never entered. "
                f"Complete anyway?",
                buttons=[[("Complete anyway", f"force_complete:{order_id}")]],
            )
        else:
            self._report_completed(result)
        return result.outcome

    def _force_complete(self, chat_id, order_id):
        result = OrderService.mark_completed(order_id, override=True)
        self._report_completed(result)
        return result.outcome

    def _cancel_order(self, chat_id, order_id):
        result = OrderService.cancel(order_id)
        if result.outcome == Outcome.ALREADY_DONE:
            self.notifier.notify_operator(f"Order #{order_id} is already canceled.")
        else:
            self.notifier.notify_operator(f"Order #{order_id} canceled.")
        return result.outcome

    def _start_refund(self, chat_id, order_id):
        order = Order.objects.get(order_id=order_id)
        if not order.can_transition_to(Order.Status.MANYBACK):
            raise TransitionError(f"cannot be refunded (status={order.status}).")
        self.sessions.start(
            chat_id, REFUND_ACTION, AMOUNT_STEP, payload={"order_id": order_id}
        )
        self.notifier.notify_operator(
            f"Enter the refund amount for order #{order_id} "
            f"(1 to {order.total}), or /cancel."
        )
        return "awaiting_amount"

    def _finish_refund(self, chat_id, session, text):
        order_id = session.payload.get("order_id")
        if not text.isdigit():
            self.notifier.notify_operator("Enter the amount as a whole number, or /cancel.")
            return {"handled": True, "action": REFUND_ACTION, "error": "not_a_number"}

        try:
            result = SettlementService.grant_refund(order_id, int(text))
        except ValueError as exc:
            # Out of range; the wizard stays open for another try.
            self.notifier.notify_operator(f"{exc} Enter another amount, or /cancel.")
            return {"handled": True, "action": REFUND_ACTION, "error": str(exc)}
        except (Order.DoesNotExist, TransitionError) as exc:
            self.sessions.clear(chat_id)
            self.notifier.notify_operator(f"Refund for order #{order_id} failed: {exc}")
            return {"handled": True, "action": REFUND_ACTION, "error": str(exc)}

        self.sessions.clear(chat_id)
        self.notifier.notify_operator(
            f"Refund of {format_amount(int(text))} granted for order #{order_id}.",
            buttons=[[("Reverse refund", f"reverse_refund:{order_id}")]],
        )
        return {"handled": True, "action": REFUND_ACTION, "outcome": result.outcome}

    def _reverse_refund(self, chat_id, order_id):
        result = SettlementService.reverse_refund(order_id)
        if result.outcome == Outcome.ALREADY_DONE:
            self.notifier.notify_operator(f"Refund for order #{order_id} is already reversed.")
        else:
            self.notifier.notify_operator(f"Refund for order #{order_id} reversed.")
        return result.outcome

    def _report_completed(self, result):
        order_id = result.order.order_id
        if result.outcome == Outcome.ALREADY_DONE:
            self.notifier.notify_operator(f"Order #{order_id} is already completed.")
            return
        self.notifier.notify_operator(f"Order #{order_id} completed.")
        self._offer_refund(result.order)

    def _offer_refund(self, order):
        if order.customer_id is None or order.status != Order.Status.COMPLETED:
            return
        self.notifier.notify_operator(
            f"Order #{order.order_id} can still be refunded.",
            buttons=[[("Refund", f"refund:{order.order_id}")]],
        )


def _stats_message(stats):
    lines = [
        f"Paid orders: {stats['paid_orders']} ({format_amount(stats['revenue'])})",
        f"Today: {stats['paid_orders_today']} ({format_amount(stats['revenue_today'])})",
    ]
    lines += [f"{status}: {count}" for status, count in stats["orders_by_status"].items()]
    return "\n".join(lines)
