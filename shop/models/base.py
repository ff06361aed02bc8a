from django.db import models


class BaseModel(models.Model):
    """
    Abstract base with created_at / updated_at timestamps.

    Rows list newest first; the id breaks ties between rows written in the
    same transaction, such as the entries of one settlement.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at", "-id"]
