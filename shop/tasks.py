import logging

from celery import shared_task

from shop.services.operator_sessions import OperatorSessionStore
from shop.utils import send_telegram_message

logger = logging.getLogger(__name__)


@shared_task(bind=True, acks_late=True)
def send_chat_message(self, bot: str, chat_id: int, text: str, buttons=None):
    """
    Deliver one chat message through the Telegram Bot API.

    Delivery is best-effort: a failed send is logged and reported in the
    result, never raised, so a flaky chat API cannot pile up retries.
    """
    try:
        result = send_telegram_message(bot, chat_id, text, buttons=buttons)
    except Exception as exc:
        logger.exception(
            "Unexpected error sending chat message: bot=%s chat=%s: %s",
            bot,
            chat_id,
            str(exc),
        )
        return {"bot": bot, "chat_id": chat_id, "sent": False}

    if not result["success"]:
        logger.warning(
            "Chat message not delivered: bot=%s chat=%s response=%s",
            bot,
            chat_id,
            result["response"],
        )
    return {"bot": bot, "chat_id": chat_id, "sent": result["success"]}


@shared_task
def purge_expired_operator_sessions():
    """
    Periodic task: remove operator wizard sessions past their TTL.

    Runs via Celery Beat on a configurable interval.
    """
    purged = OperatorSessionStore().purge_expired()
    if purged:
        logger.info("Purged %d expired operator session(s).", purged)
    return {"purged": purged}
