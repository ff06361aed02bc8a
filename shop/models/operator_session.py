from django.db import models
from django.utils import timezone

from shop.models.base import BaseModel


class OperatorSession(BaseModel):
    """
    Step state of a multi-message operator chat wizard.

    One row per operator chat. A row past `expires_at` is treated as absent
    and removed by the periodic purge task; nothing assumes a wizard survives
    longer than its TTL.
    """

    chat_id = models.BigIntegerField(unique=True)
    action = models.CharField(max_length=32)
    step = models.CharField(max_length=32)
    payload = models.JSONField(default=dict, blank=True)
    expires_at = models.DateTimeField(db_index=True)

    def __str__(self):
        return f"OperatorSession {self.chat_id} | {self.action}:{self.step}"

    @property
    def is_expired(self):
        return self.expires_at <= timezone.now()

    @classmethod
    def get_expired(cls):
        return cls.objects.filter(expires_at__lte=timezone.now())
