from django.db import models
from django.db.models import Sum

from shop.models.base import BaseModel
from shop.models.customer import Customer


class Wallet(BaseModel):
    """
    A customer's wallet, split into frozen and available funds.

    Amounts are integers in minor currency units. Frozen funds come from
    granted refunds and become available only through an exchange. The
    service layer never drives available_balance below zero; a shortfall is
    recorded as a `debt` ledger entry instead. Concurrency safety is handled
    at the service layer via select_for_update() and F() expressions.
    """

    customer = models.OneToOneField(
        Customer,
        on_delete=models.CASCADE,
        related_name="wallet",
    )
    frozen_balance = models.BigIntegerField(default=0)
    available_balance = models.BigIntegerField(default=0)

    class Meta(BaseModel.Meta):
        constraints = [
            models.CheckConstraint(
                condition=models.Q(frozen_balance__gte=0),
                name="wallet_frozen_balance_non_negative",
            ),
        ]

    def __str__(self):
        return (
            f"Wallet of customer {self.customer_id} "
            f"(available={self.available_balance}, frozen={self.frozen_balance})"
        )

    @property
    def balance(self):
        return self.frozen_balance + self.available_balance

    def outstanding_debt(self):
        """Total still owed across open debt entries, as a positive number."""
        if self.pk is None:
            return 0
        owed = self.transactions.outstanding_debts().aggregate(total=Sum("amount"))
        return -(owed["total"] or 0)

    @classmethod
    def lock_for_customer(cls, customer_id):
        """
        Return the customer's wallet with its row locked, creating it on first use.

        Must be called inside transaction.atomic().
        """
        cls.objects.get_or_create(customer_id=customer_id)
        return cls.objects.select_for_update().get(customer_id=customer_id)
