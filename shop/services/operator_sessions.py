import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from shop.models import OperatorSession

logger = logging.getLogger(__name__)


class OperatorSessionStore:
    """
    Persistent, expiring wizard state keyed by operator chat.

    Survives process restarts; an expired session reads as absent.
    """

    def __init__(self, ttl=None):
        if ttl is None:
            ttl = getattr(settings, "OPERATOR_SESSION_TTL", 600)
        self.ttl = int(ttl)

    def start(self, chat_id: int, action: str, step: str, payload=None) -> OperatorSession:
        session, _ = OperatorSession.objects.update_or_create(
            chat_id=chat_id,
            defaults={
                "action": action,
                "step": step,
                "payload": payload or {},
                "expires_at": timezone.now() + timedelta(seconds=self.ttl),
            },
        )
        logger.info(
            "Operator session started: chat=%s action=%s step=%s", chat_id, action, step
        )
        return session

    def get(self, chat_id: int):
        session = OperatorSession.objects.filter(chat_id=chat_id).first()
        if session is None:
            return None
        if session.is_expired:
            session.delete()
            logger.info("Operator session expired: chat=%s action=%s", chat_id, session.action)
            return None
        return session

    def clear(self, chat_id: int) -> bool:
        deleted, _ = OperatorSession.objects.filter(chat_id=chat_id).delete()
        return bool(deleted)

    def purge_expired(self) -> int:
        deleted, _ = OperatorSession.get_expired().delete()
        return deleted
