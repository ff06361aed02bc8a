import hashlib
import hmac
import logging
from datetime import timedelta

import requests
from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)

# Configurable via Django settings with sensible defaults
PAYMENT_GATEWAY_URL = getattr(
    settings, "PAYMENT_GATEWAY_URL", "https://paymentgate.bilee.ru/api"
)
PAYMENT_TIMEOUT = getattr(settings, "PAYMENT_TIMEOUT", 10)

SIGNATURE_EXCLUDED_KEYS = ("metadata", "signature")


def _signature_value(value):
    # Values are joined the way the gateway's JavaScript reference does it.
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float) and value.is_integer():
        # JSON numbers such as 1000.00 are written without a fraction.
        return str(int(value))
    return str(value)


def generate_signature(data: dict, password: str) -> str:
    """
    Compute the gateway signature for a payload.

    The shared password is added as a `password` field, `metadata` and
    `signature` are dropped, the remaining values are concatenated in key
    order and hashed with SHA-256.
    """
    token_data = dict(data, password=password)
    joined = "".join(
        _signature_value(token_data[key])
        for key in sorted(token_data)
        if key not in SIGNATURE_EXCLUDED_KEYS
    )
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def validate_signature(body: dict, password: str) -> bool:
    received = body.get("signature")
    if not received or not isinstance(received, str):
        return False
    expected = generate_signature(body, password)
    return hmac.compare_digest(expected, received)


def request_payment_init(order_id: str, amount: int) -> dict:
    """
    Ask the payment gateway to open a card payment for an order.

    Handles both gateway-level refusals and network failures (connection
    errors, timeouts). Returns a structured result dict for consistent
    downstream handling.

    Args:
        order_id: External id of the order being paid.
        amount: Amount to charge, in minor units.

    Returns:
        dict with keys:
            - success (bool): Whether the gateway created the payment.
            - response (dict): The raw response data or error details.
    """
    password = getattr(settings, "PAYMENT_PASSWORD", "")
    server_url = getattr(settings, "SERVER_URL", "")
    site_url = getattr(settings, "SITE_URL", "")
    expires_at = timezone.now() + getattr(
        settings, "PAYMENT_EXPIRY", timedelta(hours=24)
    )

    payload = {
        "order_id": order_id,
        "method_slug": "card",
        "amount": amount,
        "description": f"Order #{order_id}",
        "shop_id": getattr(settings, "PAYMENT_SHOP_ID", 0),
        "notify_url": f"{server_url}/api/payments/callback",
        "success_url": f"{site_url}/success.html?order={order_id}",
        "fail_url": f"{site_url}/main.html?payment=fail&order={order_id}",
        "expires_at": expires_at.isoformat(),
    }
    payload["signature"] = generate_signature(payload, password)

    try:
        response = requests.post(
            f"{PAYMENT_GATEWAY_URL}/payment/init",
            json=payload,
            timeout=PAYMENT_TIMEOUT,
        )

        response_data = response.json()

        if response_data.get("success"):
            logger.info(
                "Payment init succeeded: order=%s amount=%d payment=%s",
                order_id,
                amount,
                (response_data.get("payment") or {}).get("id"),
            )
            return {"success": True, "response": response_data}

        logger.warning(
            "Payment init refused: order=%s amount=%d response=%s",
            order_id,
            amount,
            response_data,
        )
        return {"success": False, "response": response_data}

    except requests.exceptions.ConnectionError as exc:
        logger.error(
            "Payment gateway connection error: order=%s amount=%d error=%s",
            order_id,
            amount,
            str(exc),
        )
        return {
            "success": False,
            "response": {"error": "connection_error", "detail": str(exc)},
        }

    except requests.exceptions.Timeout as exc:
        logger.error(
            "Payment gateway timeout: order=%s amount=%d error=%s",
            order_id,
            amount,
            str(exc),
        )
        return {
            "success": False,
            "response": {"error": "timeout", "detail": str(exc)},
        }

    except requests.exceptions.RequestException as exc:
        logger.error(
            "Payment gateway request error: order=%s amount=%d error=%s",
            order_id,
            amount,
            str(exc),
        )
        return {
            "success": False,
            "response": {"error": "request_error", "detail": str(exc)},
        }

    except ValueError as exc:
        logger.error(
            "Payment gateway returned a non-JSON body: order=%s error=%s",
            order_id,
            str(exc),
        )
        return {
            "success": False,
            "response": {"error": "invalid_response", "detail": str(exc)},
        }
