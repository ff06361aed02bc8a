from django.db import models

from shop.models.base import BaseModel


class Customer(BaseModel):
    """
    A shop customer, identified by their chat platform user id.

    Registration and login happen outside this app; orders and the wallet
    only need the account row and the chat id used for notifications.
    """

    tg_id = models.BigIntegerField(unique=True)
    username = models.CharField(max_length=100, blank=True, default="")

    def __str__(self):
        return f"Customer {self.pk} (tg_id={self.tg_id})"
