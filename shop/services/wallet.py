import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import F

from shop.models import Customer, Wallet, WalletTransaction
from shop.services.notifications import format_amount, get_notifier
from shop.services.settlement import SettlementService

logger = logging.getLogger(__name__)


@dataclass
class CreditResult:
    wallet: Wallet
    applied_to_debt: int
    credited: int
    transactions: list = field(default_factory=list)


class WalletService:
    """
    Handles wallet credits with atomic database transactions.

    Uses select_for_update() to acquire a row-level lock on the wallet,
    preventing race conditions when concurrent deposits, exchanges or refund
    reversals target the same wallet. Every credit pays down open debt
    before anything reaches the available balance.
    """

    @staticmethod
    @transaction.atomic
    def deposit(
        customer_id: int, amount: int, idempotency_key: str = None, notifier=None
    ) -> CreditResult:
        """
        Deposit the given amount into the customer's wallet.

        Args:
            customer_id: Primary key of the customer.
            amount: Positive integer amount to deposit.
            idempotency_key: Optional UUID key for idempotency.

        Returns:
            CreditResult describing how the amount was split between debt
            repayment and the available balance.

        Raises:
            Customer.DoesNotExist: If the customer doesn't exist.
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            raise ValueError("Deposit amount must be positive.")

        # Check for existing idempotent transaction
        if idempotency_key:
            existing_tx = (
                WalletTransaction.objects.filter(idempotency_key=idempotency_key)
                .select_related("wallet")
                .first()
            )
            if existing_tx:
                if (
                    existing_tx.metadata.get("amount") != amount
                    or existing_tx.wallet.customer_id != int(customer_id)
                ):
                    logger.warning(
                        "Idempotency conflict: key=%s existing_amount=%s new_amount=%d",
                        idempotency_key,
                        existing_tx.metadata.get("amount"),
                        amount,
                    )
                logger.info(
                    "Idempotent deposit request: key=%s tx=%d",
                    idempotency_key,
                    existing_tx.id,
                )
                return CreditResult(
                    wallet=existing_tx.wallet,
                    applied_to_debt=existing_tx.metadata.get("applied_to_debt", 0),
                    credited=existing_tx.metadata.get("credited", 0),
                    transactions=[existing_tx],
                )

        customer = Customer.objects.get(pk=customer_id)
        wallet = Wallet.lock_for_customer(customer.pk)

        result = WalletService._credit(
            wallet,
            amount,
            source="deposit",
            idempotency_key=idempotency_key,
        )

        logger.info(
            "Deposit completed: customer=%s amount=%d applied_to_debt=%d credited=%d "
            "available_balance=%d idempotency_key=%s",
            customer_id,
            amount,
            result.applied_to_debt,
            result.credited,
            result.wallet.available_balance,
            idempotency_key,
        )
        (notifier or get_notifier()).notify_customer(
            customer, _credit_message("Deposit", amount, result)
        )
        return result

    @staticmethod
    @transaction.atomic
    def exchange_frozen(
        customer_id: int, amount: int = None, rate=None, notifier=None
    ) -> CreditResult:
        """
        Convert frozen funds into available funds.

        `amount` defaults to the whole frozen balance. The credited value is
        amount * rate rounded down to whole minor units; the rate defaults to
        settings.WALLET_EXCHANGE_RATE.

        Raises:
            Customer.DoesNotExist: If the customer doesn't exist.
            ValueError: If there is nothing to exchange, the amount is out of
                range, or the rate is not positive.
        """
        customer = Customer.objects.get(pk=customer_id)
        wallet = Wallet.lock_for_customer(customer.pk)

        if amount is None:
            amount = wallet.frozen_balance
        if amount <= 0:
            raise ValueError("Nothing to exchange.")
        if amount > wallet.frozen_balance:
            raise ValueError(
                f"Exchange amount {amount} exceeds frozen balance {wallet.frozen_balance}."
            )

        rate = Decimal(
            str(rate if rate is not None else getattr(settings, "WALLET_EXCHANGE_RATE", 1))
        )
        if rate <= 0:
            raise ValueError("Exchange rate must be positive.")
        credited = int((Decimal(amount) * rate).to_integral_value(rounding=ROUND_DOWN))
        if credited <= 0:
            raise ValueError("Exchange amount is too small for the current rate.")

        Wallet.objects.filter(pk=wallet.pk).update(
            frozen_balance=F("frozen_balance") - amount
        )
        wallet.refresh_from_db()

        result = WalletService._credit(
            wallet,
            credited,
            source="exchange",
            extra_metadata={"frozen_amount": amount, "rate": str(rate)},
        )

        logger.info(
            "Frozen funds exchanged: customer=%s frozen_amount=%d rate=%s credited=%d "
            "applied_to_debt=%d frozen_balance=%d available_balance=%d",
            customer_id,
            amount,
            rate,
            credited,
            result.applied_to_debt,
            result.wallet.frozen_balance,
            result.wallet.available_balance,
        )
        (notifier or get_notifier()).notify_customer(
            customer, _credit_message("Exchange", credited, result)
        )
        return result

    @staticmethod
    def get_wallet(customer_id: int) -> Wallet:
        """
        Return the customer's wallet for reading.

        Has no side effects: a customer without a wallet gets an unsaved,
        empty one.

        Raises:
            Customer.DoesNotExist: If the customer doesn't exist.
        """
        customer = Customer.objects.get(pk=customer_id)
        wallet = Wallet.objects.filter(customer=customer).first()
        return wallet or Wallet(customer=customer)

    @staticmethod
    def _credit(wallet, amount, source, idempotency_key=None, extra_metadata=None):
        """
        Pay down debt with `amount`, then credit whatever is left.

        Must run inside transaction.atomic() with the wallet row locked. The
        entry created last carries the idempotency key and a summary of the
        split.
        """
        extra_metadata = extra_metadata or {}
        transactions = []

        applied, repaid = SettlementService.settle_debts(wallet, amount) if amount else (0, [])
        remainder = amount - applied

        if applied:
            transactions.append(
                WalletTransaction(
                    wallet=wallet,
                    transaction_type=WalletTransaction.TransactionType.DEBT_PAYMENT,
                    amount=applied,
                    metadata={
                        "source": source,
                        "debts": [debt.pk for debt in repaid],
                        **extra_metadata,
                    },
                )
            )

        if remainder:
            Wallet.objects.filter(pk=wallet.pk).update(
                available_balance=F("available_balance") + remainder
            )
            wallet.refresh_from_db()
            transactions.append(
                WalletTransaction(
                    wallet=wallet,
                    transaction_type=WalletTransaction.TransactionType.DEPOSIT,
                    amount=remainder,
                    metadata={"source": source, **extra_metadata},
                )
            )

        if transactions:
            summary = transactions[-1]
            summary.idempotency_key = idempotency_key
            summary.metadata.update(
                {"amount": amount, "applied_to_debt": applied, "credited": remainder}
            )
            for tx in transactions:
                tx.save()

        return CreditResult(
            wallet=wallet,
            applied_to_debt=applied,
            credited=remainder,
            transactions=transactions,
        )


def _credit_message(label, amount, result):
    message = f"{label} of {format_amount(amount)} received."
    if result.applied_to_debt:
        message += f" {format_amount(result.applied_to_debt)} went toward your debt."
    message += f" Available balance: {format_amount(result.wallet.available_balance)}."
    return message
