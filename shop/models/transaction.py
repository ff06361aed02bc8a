from django.db import models

from shop.models.base import BaseModel
from shop.models.order import Order
from shop.models.wallet import Wallet


class WalletTransactionQuerySet(models.QuerySet):
    def outstanding_debts(self):
        """Open debt entries, oldest first (the repayment order)."""
        return self.filter(
            transaction_type=WalletTransaction.TransactionType.DEBT
        ).order_by("created_at", "id")

    def for_order(self, order):
        return self.filter(order=order)


class WalletTransaction(BaseModel):
    """
    An entry in a wallet's ledger.

    Entries are append-only history. The one exception is a `debt` entry,
    whose amount moves toward zero as it is repaid (with the running total
    kept in metadata["paid"]) and which is retagged `debt_paid` once settled.
    """

    class TransactionType(models.TextChoices):
        DEPOSIT = "deposit", "Deposit"
        WITHDRAW = "withdraw", "Withdraw"
        REFUND = "refund", "Refund"
        DEBT = "debt", "Debt"
        DEBT_PAID = "debt_paid", "Debt paid"
        DEBT_PAYMENT = "debt_payment", "Debt payment"

    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.CASCADE,
        related_name="transactions",
    )
    transaction_type = models.CharField(
        max_length=16,
        choices=TransactionType.choices,
    )
    amount = models.BigIntegerField(help_text="Positive credits, negative debits.")
    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="wallet_transactions",
    )
    metadata = models.JSONField(default=dict, blank=True)
    idempotency_key = models.UUIDField(
        unique=True,
        null=True,
        blank=True,
        editable=False,
        help_text="Client-generated UUID for idempotency.",
    )

    objects = WalletTransactionQuerySet.as_manager()

    class Meta(BaseModel.Meta):
        indexes = [
            models.Index(
                fields=["wallet", "transaction_type"], name="idx_wallet_tx_type"
            ),
        ]

    def __str__(self):
        return f"WalletTransaction {self.id} | {self.transaction_type} | {self.amount}"
