import logging

from django.conf import settings
from django.db import transaction

logger = logging.getLogger(__name__)


def format_amount(amount) -> str:
    return f"{int(amount or 0):,}".replace(",", " ") + " ₽"


class Notifier:
    """
    Outbound chat capability used by the services.

    Both operations are best-effort: a delivery problem is logged and never
    reaches the caller, so it cannot block or roll back the change that
    triggered it. Subclasses implement the _send_* hooks.
    """

    def notify_operator(self, text, buttons=None):
        try:
            self._send_operator(text, buttons)
        except Exception:
            logger.exception("Operator notification failed: text=%r", text[:80])

    def notify_customer(self, customer, text):
        if customer is None:
            return
        try:
            self._send_customer(customer, text)
        except Exception:
            logger.exception(
                "Customer notification failed: customer=%s text=%r",
                customer.pk,
                text[:80],
            )

    def _send_operator(self, text, buttons):
        raise NotImplementedError

    def _send_customer(self, customer, text):
        raise NotImplementedError


class ChatNotifier(Notifier):
    """
    Delivers messages through the send_chat_message Celery task.

    Messages are queued only once the surrounding database transaction has
    committed; a rolled-back change sends nothing.
    """

    def _send_operator(self, text, buttons):
        chat_id = getattr(settings, "OPERATOR_CHAT_ID", 0)
        transaction.on_commit(lambda: _enqueue("operator", chat_id, text, buttons))

    def _send_customer(self, customer, text):
        chat_id = customer.tg_id
        transaction.on_commit(lambda: _enqueue("customer", chat_id, text, None))


def _enqueue(bot, chat_id, text, buttons):
    from shop.tasks import send_chat_message

    try:
        send_chat_message.delay(bot, chat_id, text, buttons)
    except Exception:
        logger.exception("Could not queue chat message: bot=%s chat=%s", bot, chat_id)


_default_notifier = None


def get_notifier() -> Notifier:
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = ChatNotifier()
    return _default_notifier
