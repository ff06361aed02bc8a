from shop.utils.gateway import (
    generate_signature,
    request_payment_init,
    validate_signature,
)
from shop.utils.telegram import send_telegram_message

__all__ = [
    "generate_signature",
    "request_payment_init",
    "validate_signature",
    "send_telegram_message",
]
