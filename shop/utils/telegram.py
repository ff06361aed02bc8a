import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = getattr(settings, "TELEGRAM_API_URL", "https://api.telegram.org")
TELEGRAM_TIMEOUT = getattr(settings, "TELEGRAM_TIMEOUT", 10)

BOT_TOKEN_SETTINGS = {
    "operator": "OPERATOR_BOT_TOKEN",
    "customer": "CUSTOMER_BOT_TOKEN",
}


def _inline_keyboard(buttons):
    return {
        "inline_keyboard": [
            [{"text": text, "callback_data": data} for text, data in row]
            for row in buttons
        ]
    }


def send_telegram_message(bot: str, chat_id: int, text: str, buttons=None) -> dict:
    """
    Send a text message through one of the shop's two Telegram bots.

    Args:
        bot: "operator" or "customer".
        chat_id: Destination chat.
        text: Message body.
        buttons: Optional rows of (label, callback_data) pairs.

    Returns:
        dict with keys:
            - success (bool): Whether Telegram accepted the message.
            - response (dict): The raw response data or error details.
    """
    token = getattr(settings, BOT_TOKEN_SETTINGS.get(bot, ""), "")
    if not token or not chat_id:
        logger.info("Chat delivery skipped (not configured): bot=%s chat=%s", bot, chat_id)
        return {"success": False, "response": {"error": "not_configured"}}

    payload = {"chat_id": chat_id, "text": text}
    if buttons:
        payload["reply_markup"] = _inline_keyboard(buttons)

    try:
        response = requests.post(
            f"{TELEGRAM_API_URL}/bot{token}/sendMessage",
            json=payload,
            timeout=TELEGRAM_TIMEOUT,
        )
        response_data = response.json()

        if response_data.get("ok"):
            return {"success": True, "response": response_data}

        logger.warning(
            "Telegram refused message: bot=%s chat=%s response=%s",
            bot,
            chat_id,
            response_data,
        )
        return {"success": False, "response": response_data}

    except requests.exceptions.Timeout as exc:
        logger.error("Telegram timeout: bot=%s chat=%s error=%s", bot, chat_id, str(exc))
        return {"success": False, "response": {"error": "timeout", "detail": str(exc)}}

    except requests.exceptions.RequestException as exc:
        logger.error(
            "Telegram request error: bot=%s chat=%s error=%s", bot, chat_id, str(exc)
        )
        return {
            "success": False,
            "response": {"error": "request_error", "detail": str(exc)},
        }

    except ValueError as exc:
        logger.error("Telegram returned a non-JSON body: bot=%s error=%s", bot, str(exc))
        return {
            "success": False,
            "response": {"error": "invalid_response", "detail": str(exc)},
        }
