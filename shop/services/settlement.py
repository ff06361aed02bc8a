import logging
from dataclasses import dataclass, field

from django.db import transaction
from django.db.models import F

from shop.exceptions import TransitionError
from shop.models import Order, Wallet, WalletTransaction
from shop.services.notifications import format_amount, get_notifier
from shop.services.orders import Outcome, apply_status, lock_order

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    order: Order
    wallet: Wallet
    outcome: str
    transactions: list = field(default_factory=list)


class SettlementService:
    """
    Refund and debt accounting.

    Every operation runs in one database transaction and locks rows in a
    fixed order (order, then wallet, then the wallet's debt entries), so a
    refund grant and a reversal on two orders of the same customer cannot
    deadlock and nothing is ever half-applied.
    """

    @staticmethod
    @transaction.atomic
    def grant_refund(order_id: str, amount: int, notifier=None) -> SettlementResult:
        """
        Freeze `amount` in the customer's wallet and put the order into manyback.

        Raises:
            Order.DoesNotExist: If the order doesn't exist.
            ValueError: If amount is outside [1, order.total].
            TransitionError: If the order cannot be refunded in its current state.
        """
        order = lock_order(order_id)

        if order.status == Order.Status.MANYBACK:
            if order.refund_amount == amount:
                wallet = Wallet.objects.get(customer_id=order.customer_id)
                return SettlementResult(order, wallet, Outcome.ALREADY_DONE)
            raise TransitionError(f"Order {order_id} already has a refund in progress.")

        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValueError("Refund amount must be a positive integer.")
        if amount > order.total:
            raise ValueError(
                f"Refund amount {amount} exceeds order total {order.total}."
            )
        if order.customer_id is None:
            raise TransitionError(f"Order {order_id} is not linked to a customer.")

        apply_status(order, Order.Status.MANYBACK)

        wallet = Wallet.lock_for_customer(order.customer_id)
        Wallet.objects.filter(pk=wallet.pk).update(
            frozen_balance=F("frozen_balance") + amount
        )
        wallet.refresh_from_db()

        tx = WalletTransaction.objects.create(
            wallet=wallet,
            transaction_type=WalletTransaction.TransactionType.REFUND,
            amount=amount,
            order=order,
            metadata={"frozen": True},
        )

        order.refund_amount = amount
        order.save(update_fields=["status", "refund_amount", "updated_at"])

        logger.info(
            "Refund granted: order=%s customer=%s amount=%d frozen_balance=%d tx=%d",
            order_id,
            order.customer_id,
            amount,
            wallet.frozen_balance,
            tx.id,
        )
        (notifier or get_notifier()).notify_customer(
            order.customer,
            f"A refund of {format_amount(amount)} for order #{order_id} "
            f"was added to your frozen balance.",
        )
        return SettlementResult(order, wallet, Outcome.DONE, [tx])

    @staticmethod
    @transaction.atomic
    def reverse_refund(order_id: str, notifier=None) -> SettlementResult:
        """
        Take a granted refund back and return the order to completed.

        The refund amount is debited from the available balance as far as it
        goes (never below zero); any shortfall becomes a debt entry that later
        deposits pay off.

        Raises:
            Order.DoesNotExist: If the order doesn't exist.
            TransitionError: If the order has no refund in progress.
        """
        order = lock_order(order_id)

        if order.status != Order.Status.MANYBACK:
            already_reversed = (
                order.status == Order.Status.COMPLETED
                and order.wallet_transactions.filter(
                    transaction_type=WalletTransaction.TransactionType.WITHDRAW
                ).exists()
            )
            if already_reversed:
                wallet = Wallet.objects.get(customer_id=order.customer_id)
                return SettlementResult(order, wallet, Outcome.ALREADY_DONE)
            raise TransitionError(f"Order {order_id} has no refund in progress.")

        refund_amount = order.refund_amount or 0
        apply_status(order, Order.Status.COMPLETED)

        wallet = Wallet.lock_for_customer(order.customer_id)
        covered = max(wallet.available_balance, 0)
        spent = min(refund_amount, covered)
        shortfall = refund_amount - spent

        if spent:
            Wallet.objects.filter(pk=wallet.pk).update(
                available_balance=F("available_balance") - spent
            )
            wallet.refresh_from_db()

        transactions = [
            WalletTransaction.objects.create(
                wallet=wallet,
                transaction_type=WalletTransaction.TransactionType.WITHDRAW,
                amount=-spent,
                order=order,
                metadata={
                    "spent": spent,
                    "remaining_debt": shortfall,
                    "refund_amount": refund_amount,
                },
            )
        ]
        if shortfall:
            transactions.append(
                WalletTransaction.objects.create(
                    wallet=wallet,
                    transaction_type=WalletTransaction.TransactionType.DEBT,
                    amount=-shortfall,
                    order=order,
                    metadata={
                        "debt": True,
                        "original_refund": refund_amount,
                        "remaining": shortfall,
                        "paid": 0,
                    },
                )
            )

        order.refund_amount = None
        order.save(update_fields=["status", "refund_amount", "updated_at"])

        logger.info(
            "Refund reversed: order=%s customer=%s refund=%d spent=%d debt=%d "
            "available_balance=%d",
            order_id,
            order.customer_id,
            refund_amount,
            spent,
            shortfall,
            wallet.available_balance,
        )
        message = (
            f"The refund of {format_amount(refund_amount)} for order #{order_id} "
            f"was reversed."
        )
        if shortfall:
            message += f" Outstanding debt: {format_amount(shortfall)}."
        (notifier or get_notifier()).notify_customer(order.customer, message)
        return SettlementResult(order, wallet, Outcome.DONE, transactions)

    @staticmethod
    def settle_debts(wallet: Wallet, amount: int):
        """
        Apply up to `amount` to the wallet's open debts, oldest first.

        Must be called inside transaction.atomic() with the wallet row already
        locked. Fully repaid entries are retagged `debt_paid`.

        Returns:
            (applied, repaid_entries): the total put toward debt and the
            debt entries that were touched.
        """
        remaining = amount
        repaid = []

        debts = WalletTransaction.objects.select_for_update().filter(wallet=wallet)
        for debt in debts.outstanding_debts():
            if remaining <= 0:
                break

            owed = -debt.amount
            payment = min(owed, remaining)

            metadata = dict(debt.metadata or {})
            metadata["paid"] = metadata.get("paid", 0) + payment
            metadata["remaining"] = owed - payment

            debt.amount += payment
            if debt.amount == 0:
                debt.transaction_type = WalletTransaction.TransactionType.DEBT_PAID
                metadata["fully_paid"] = True
            debt.metadata = metadata
            debt.save(update_fields=["amount", "transaction_type", "metadata", "updated_at"])

            remaining -= payment
            repaid.append(debt)

        applied = amount - remaining
        if applied:
            logger.info(
                "Debt repaid: wallet=%d applied=%d entries=%s",
                wallet.pk,
                applied,
                [debt.pk for debt in repaid],
            )
        return applied, repaid
