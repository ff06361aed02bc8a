import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.db import DatabaseError, IntegrityError, transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from shop.exceptions import InvalidSignature, PaymentGatewayError, TransitionError
from shop.models import Customer, OperatorSession, Order, Wallet, WalletTransaction
from shop.models.order import ALLOWED_TRANSITIONS
from shop.services import (
    CodeDecision,
    OperatorCommandDispatcher,
    OperatorSessionStore,
    OrderService,
    Outcome,
    PaymentService,
    SettlementService,
    WalletService,
)
from shop.services.code_policy import evaluate_code_submission
from shop.services.notifications import Notifier
from shop.services.stage import Stage, resolve_stage
from shop.utils import generate_signature, request_payment_init, validate_signature

OPERATOR_CHAT = 555
OPERATOR_HEADERS = {"HTTP_X_OPERATOR_TOKEN": "op-secret"}


class RecordingNotifier(Notifier):
    """Notifier that keeps messages in memory instead of sending them."""

    def __init__(self):
        self.operator_messages = []
        self.customer_messages = []

    def _send_operator(self, text, buttons):
        self.operator_messages.append((text, buttons))

    def _send_customer(self, customer, text):
        self.customer_messages.append((customer.tg_id, text))

    def last_operator_buttons(self):
        return [data for row in self.operator_messages[-1][1] or [] for _, data in row]


def make_customer(tg_id=1001, username="duck"):
    return Customer.objects.create(tg_id=tg_id, username=username)


def make_order(customer=None, total=1000, **fields):
    return Order.objects.create(
        customer=customer,
        items={"game-key": 1},
        total=total,
        **fields,
    )


# ============================================================
# Model Tests
# ============================================================


class OrderModelTest(TestCase):
    def test_create_order_defaults(self):
        order = make_order()
        self.assertTrue(order.order_id.startswith("ORD"))
        self.assertEqual(order.status, Order.Status.NEW)
        self.assertEqual(order.payment_status, Order.PaymentStatus.PENDING)
        self.assertEqual(order.wrong_code_attempts, 0)
        self.assertFalse(order.code_requested)
        self.assertIsNone(order.refund_amount)

    def test_order_ids_are_unique(self):
        self.assertNotEqual(make_order().order_id, make_order().order_id)

    def test_order_str(self):
        order = make_order()
        self.assertIn(order.order_id, str(order))

    def test_canceled_is_terminal_without_exits(self):
        order = make_order(status=Order.Status.CANCELED)
        self.assertTrue(order.is_terminal)
        for status in Order.Status.values:
            self.assertFalse(order.can_transition_to(status))

    def test_completed_only_moves_to_manyback(self):
        order = make_order(status=Order.Status.COMPLETED)
        self.assertTrue(order.can_transition_to(Order.Status.MANYBACK))
        self.assertFalse(order.can_transition_to(Order.Status.CANCELED))
        self.assertFalse(order.can_transition_to(Order.Status.WAITING))

    def test_manyback_only_returns_to_completed(self):
        self.assertEqual(
            ALLOWED_TRANSITIONS[Order.Status.MANYBACK], {Order.Status.COMPLETED}
        )

    def test_canceled_and_completed_never_connect(self):
        self.assertNotIn(Order.Status.COMPLETED, ALLOWED_TRANSITIONS[Order.Status.CANCELED])
        self.assertNotIn(Order.Status.CANCELED, ALLOWED_TRANSITIONS[Order.Status.COMPLETED])

    def test_every_status_has_transition_entry(self):
        self.assertEqual(set(ALLOWED_TRANSITIONS), set(Order.Status.values))


class WalletModelTest(TestCase):
    def setUp(self):
        self.customer = make_customer()

    def test_create_wallet(self):
        wallet = Wallet.objects.create(customer=self.customer)
        self.assertEqual(wallet.frozen_balance, 0)
        self.assertEqual(wallet.available_balance, 0)
        self.assertEqual(wallet.balance, 0)

    def test_balance_is_sum_of_parts(self):
        wallet = Wallet.objects.create(
            customer=self.customer, frozen_balance=300, available_balance=200
        )
        self.assertEqual(wallet.balance, 500)

    def test_frozen_balance_cannot_go_negative(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                Wallet.objects.create(customer=self.customer, frozen_balance=-1)

    def test_lock_for_customer_creates_wallet_once(self):
        with transaction.atomic():
            first = Wallet.lock_for_customer(self.customer.pk)
        with transaction.atomic():
            second = Wallet.lock_for_customer(self.customer.pk)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Wallet.objects.count(), 1)

    def test_outstanding_debt_sums_open_debts(self):
        wallet = Wallet.objects.create(customer=self.customer)
        WalletTransaction.objects.create(
            wallet=wallet, transaction_type=WalletTransaction.TransactionType.DEBT, amount=-400
        )
        WalletTransaction.objects.create(
            wallet=wallet, transaction_type=WalletTransaction.TransactionType.DEBT, amount=-100
        )
        WalletTransaction.objects.create(
            wallet=wallet,
            transaction_type=WalletTransaction.TransactionType.DEBT_PAID,
            amount=0,
        )
        self.assertEqual(wallet.outstanding_debt(), 500)

    def test_unsaved_wallet_has_no_debt(self):
        self.assertEqual(Wallet(customer=self.customer).outstanding_debt(), 0)


class OperatorSessionModelTest(TestCase):
    def test_get_expired(self):
        stale = OperatorSession.objects.create(
            chat_id=1,
            action="refund",
            step="amount",
            expires_at=timezone.now() - timedelta(seconds=1),
        )
        OperatorSession.objects.create(
            chat_id=2,
            action="refund",
            step="amount",
            expires_at=timezone.now() + timedelta(minutes=5),
        )
        self.assertTrue(stale.is_expired)
        self.assertEqual(list(OperatorSession.get_expired()), [stale])


# ============================================================
# Code Verification Policy Tests
# ============================================================


class CodePolicyTest(SimpleTestCase):
    def test_accepts_when_code_requested(self):
        self.assertEqual(evaluate_code_submission(0, True, "123456"), CodeDecision.ACCEPT)

    def test_accepts_retry_after_rejection(self):
        self.assertEqual(evaluate_code_submission(1, False, "4321"), CodeDecision.ACCEPT)

    def test_not_requested(self):
        self.assertEqual(
            evaluate_code_submission(0, False, "123456"), CodeDecision.NOT_REQUESTED
        )

    def test_lockout_wins_over_everything(self):
        self.assertEqual(
            evaluate_code_submission(2, True, "123456"), CodeDecision.SUPPORT_NEEDED
        )
        self.assertEqual(evaluate_code_submission(3, False, ""), CodeDecision.SUPPORT_NEEDED)

    def test_empty_code_raises(self):
        with self.assertRaises(ValueError):
            evaluate_code_submission(0, True, "")
        with self.assertRaises(ValueError):
            evaluate_code_submission(0, True, "   ")

    def test_accept_maps_to_waiting_status(self):
        self.assertEqual(CodeDecision.ACCEPT.value, Order.Status.WAITING)

    @override_settings(MAX_WRONG_CODE_ATTEMPTS=3)
    def test_lockout_threshold_from_settings(self):
        self.assertEqual(evaluate_code_submission(2, True, "1"), CodeDecision.ACCEPT)
        self.assertEqual(evaluate_code_submission(3, True, "1"), CodeDecision.SUPPORT_NEEDED)


# ============================================================
# Stage Resolution Tests
# ============================================================


class StageResolutionTest(SimpleTestCase):
    def stage(self, **fields):
        return resolve_stage(Order(items={"a": 1}, total=100, **fields))

    def test_final_states(self):
        self.assertEqual(self.stage(status=Order.Status.COMPLETED), Stage.COMPLETED)
        self.assertEqual(self.stage(status=Order.Status.CANCELED), Stage.CANCELED)
        self.assertEqual(self.stage(status=Order.Status.MANYBACK), Stage.REFUND_IN_PROGRESS)

    def test_email_required(self):
        self.assertEqual(self.stage(status=Order.Status.CONFIRMED), Stage.EMAIL_REQUIRED)

    def test_waiting_code_request(self):
        self.assertEqual(
            self.stage(status=Order.Status.WAITING_CODE_REQUEST, email="a@b.cd"),
            Stage.WAITING_CODE_REQUEST,
        )

    def test_code_required(self):
        self.assertEqual(
            self.stage(
                status=Order.Status.WAITING_CODE_REQUEST,
                email="a@b.cd",
                code_requested=True,
            ),
            Stage.CODE_REQUIRED,
        )

    def test_waiting_execution(self):
        self.assertEqual(
            self.stage(status=Order.Status.WAITING, email="a@b.cd", code="123456"),
            Stage.WAITING_EXECUTION,
        )

    def test_support_needed(self):
        self.assertEqual(
            self.stage(status=Order.Status.WAITING, email="a@b.cd", wrong_code_attempts=2),
            Stage.SUPPORT_NEEDED,
        )


# ============================================================
# Order Lifecycle Tests
# ============================================================


class CreateOrderTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()

    def test_create_order_success(self):
        order = OrderService.create_order(
            {"game-key": 2}, 1500, customer_id=self.customer.pk, notifier=self.notifier
        )
        self.assertEqual(order.status, Order.Status.NEW)
        self.assertEqual(order.items, {"game-key": 2})
        self.assertEqual(order.customer, self.customer)
        self.assertEqual(len(self.notifier.operator_messages), 1)

    def test_create_order_empty_items_raises(self):
        with self.assertRaises(ValueError):
            OrderService.create_order({}, 1500, notifier=self.notifier)

    def test_create_order_bad_quantity_raises(self):
        with self.assertRaises(ValueError):
            OrderService.create_order({"game-key": 0}, 1500, notifier=self.notifier)

    def test_create_order_zero_total_raises(self):
        with self.assertRaises(ValueError):
            OrderService.create_order({"game-key": 1}, 0, notifier=self.notifier)

    def test_create_order_unknown_customer_raises(self):
        with self.assertRaises(Customer.DoesNotExist):
            OrderService.create_order(
                {"game-key": 1}, 100, customer_id=999999, notifier=self.notifier
            )
        self.assertEqual(Order.objects.count(), 0)


class SubmitEmailTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.order = make_order(status=Order.Status.CONFIRMED)

    def test_submit_email_moves_to_waiting_code_request(self):
        result = OrderService.submit_email(
            self.order.order_id, "duck@example.com", notifier=self.notifier
        )
        self.assertEqual(result.outcome, Outcome.DONE)
        self.assertEqual(result.order.status, Order.Status.WAITING_CODE_REQUEST)
        self.assertEqual(
            self.notifier.last_operator_buttons(), [f"request_code:{self.order.order_id}"]
        )

    def test_same_email_twice_is_noop(self):
        OrderService.submit_email(self.order.order_id, "duck@example.com", notifier=self.notifier)
        result = OrderService.submit_email(
            self.order.order_id, "duck@example.com", notifier=self.notifier
        )
        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)
        self.assertEqual(len(self.notifier.operator_messages), 1)

    def test_different_email_raises(self):
        OrderService.submit_email(self.order.order_id, "duck@example.com", notifier=self.notifier)
        with self.assertRaises(TransitionError):
            OrderService.submit_email(
                self.order.order_id, "goose@example.com", notifier=self.notifier
            )

    def test_canceled_order_rejects_email(self):
        order = make_order(status=Order.Status.CANCELED)
        with self.assertRaises(TransitionError):
            OrderService.submit_email(order.order_id, "duck@example.com", notifier=self.notifier)

    def test_unknown_order_raises(self):
        with self.assertRaises(Order.DoesNotExist):
            OrderService.submit_email("ORD-missing", "duck@example.com", notifier=self.notifier)


class CodeCycleTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.order = make_order(
            status=Order.Status.WAITING_CODE_REQUEST, email="duck@example.com"
        )

    def submit(self, code="123456"):
        return OrderService.submit_code(self.order.order_id, code, notifier=self.notifier)

    def test_request_code_opens_entry(self):
        result = OrderService.request_code(self.order.order_id)
        self.assertEqual(result.outcome, Outcome.DONE)
        self.assertTrue(result.order.code_requested)
        self.assertEqual(result.order.wrong_code_attempts, 0)

    def test_request_code_twice_is_noop(self):
        OrderService.request_code(self.order.order_id)
        result = OrderService.request_code(self.order.order_id)
        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)

    def test_request_code_without_email_raises(self):
        order = make_order(status=Order.Status.CONFIRMED)
        with self.assertRaises(TransitionError):
            OrderService.request_code(order.order_id)

    def test_submit_before_request_is_refused(self):
        result = self.submit()
        self.assertEqual(result.decision, CodeDecision.NOT_REQUESTED)
        self.assertFalse(result.changed)
        self.order.refresh_from_db()
        self.assertIsNone(self.order.code)
        self.assertEqual(self.order.status, Order.Status.WAITING_CODE_REQUEST)

    def test_submit_after_request_waits_for_review(self):
        OrderService.request_code(self.order.order_id)
        result = self.submit()
        self.assertEqual(result.decision, CodeDecision.ACCEPT)
        self.assertTrue(result.changed)
        self.assertEqual(result.order.status, Order.Status.WAITING)
        self.assertEqual(result.order.code, "123456")
        self.assertEqual(
            self.notifier.last_operator_buttons(),
            [f"order_ready:{self.order.order_id}", f"wrong_code:{self.order.order_id}"],
        )

    def test_confirm_code_completes(self):
        OrderService.request_code(self.order.order_id)
        self.submit()
        result = OrderService.confirm_code(self.order.order_id)
        self.assertEqual(result.outcome, Outcome.DONE)
        self.assertEqual(result.order.status, Order.Status.COMPLETED)

    def test_confirm_completed_order_is_noop(self):
        OrderService.request_code(self.order.order_id)
        self.submit()
        OrderService.confirm_code(self.order.order_id)
        result = OrderService.confirm_code(self.order.order_id)
        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)
        self.assertEqual(result.order.status, Order.Status.COMPLETED)

    def test_confirm_without_code_raises(self):
        with self.assertRaises(TransitionError):
            OrderService.confirm_code(self.order.order_id)

    def test_reject_code(self):
        OrderService.request_code(self.order.order_id)
        self.submit()
        result = OrderService.reject_code(self.order.order_id)
        self.assertEqual(result.order.wrong_code_attempts, 1)
        self.assertIsNone(result.order.code)
        self.assertFalse(result.order.code_requested)
        self.assertEqual(result.order.status, Order.Status.WAITING)

    def test_reject_twice_is_noop(self):
        OrderService.request_code(self.order.order_id)
        self.submit()
        OrderService.reject_code(self.order.order_id)
        result = OrderService.reject_code(self.order.order_id)
        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)
        self.assertEqual(result.order.wrong_code_attempts, 1)

    def test_lockout_after_two_rejections(self):
        OrderService.request_code(self.order.order_id)
        self.submit("111111")
        OrderService.reject_code(self.order.order_id)
        self.submit("222222")
        OrderService.reject_code(self.order.order_id)

        result = self.submit("333333")
        self.assertEqual(result.decision, CodeDecision.SUPPORT_NEEDED)
        self.assertFalse(result.changed)

        self.order.refresh_from_db()
        self.assertEqual(self.order.wrong_code_attempts, 2)
        self.assertIsNone(self.order.code)
        self.assertEqual(self.order.status, Order.Status.WAITING)

        # A fresh request clears the lockout.
        OrderService.request_code(self.order.order_id)
        result = self.submit("444444")
        self.assertEqual(result.decision, CodeDecision.ACCEPT)
        self.assertEqual(result.order.wrong_code_attempts, 0)
        self.assertEqual(result.order.code, "444444")

    def test_lockout_from_one_prior_rejection(self):
        Order.objects.filter(pk=self.order.pk).update(
            wrong_code_attempts=1, status=Order.Status.WAITING
        )
        self.assertEqual(self.submit().decision, CodeDecision.ACCEPT)

        rejected = OrderService.reject_code(self.order.order_id).order
        self.assertEqual(rejected.wrong_code_attempts, 2)
        self.assertIsNone(rejected.code)
        self.assertEqual(rejected.status, Order.Status.WAITING)

        result = self.submit()
        self.assertEqual(result.decision, CodeDecision.SUPPORT_NEEDED)
        self.order.refresh_from_db()
        self.assertIsNone(self.order.code)
        self.assertEqual(self.order.wrong_code_attempts, 2)


class CompleteAndCancelTest(TestCase):
    def test_mark_completed_needs_confirmation_when_code_pending(self):
        order = make_order(
            status=Order.Status.WAITING_CODE_REQUEST,
            email="duck@example.com",
            code_requested=True,
        )
        result = OrderService.mark_completed(order.order_id)
        self.assertEqual(result.outcome, Outcome.CONFIRMATION_REQUIRED)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.WAITING_CODE_REQUEST)

        result = OrderService.mark_completed(order.order_id, override=True)
        self.assertEqual(result.outcome, Outcome.DONE)
        self.assertEqual(result.order.status, Order.Status.COMPLETED)

    def test_mark_completed_plain(self):
        order = make_order(status=Order.Status.CONFIRMED)
        result = OrderService.mark_completed(order.order_id)
        self.assertEqual(result.order.status, Order.Status.COMPLETED)

    def test_canceled_order_cannot_complete(self):
        order = make_order(status=Order.Status.CANCELED)
        with self.assertRaises(TransitionError):
            OrderService.mark_completed(order.order_id, override=True)

    def test_completed_order_cannot_cancel(self):
        order = make_order(status=Order.Status.COMPLETED)
        with self.assertRaises(TransitionError):
            OrderService.cancel(order.order_id)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.COMPLETED)

    def test_cancel_twice_is_noop(self):
        order = make_order(status=Order.Status.PENDING)
        self.assertEqual(OrderService.cancel(order.order_id).outcome, Outcome.DONE)
        self.assertEqual(OrderService.cancel(order.order_id).outcome, Outcome.ALREADY_DONE)

    def test_manyback_cannot_cancel_or_complete(self):
        order = make_order(status=Order.Status.MANYBACK, refund_amount=100)
        with self.assertRaises(TransitionError):
            OrderService.cancel(order.order_id)
        with self.assertRaises(TransitionError):
            OrderService.mark_completed(order.order_id, override=True)


# ============================================================
# Refund / Debt Settlement Tests
# ============================================================


class GrantRefundTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()
        self.order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)

    def test_grant_refund_freezes_amount(self):
        result = SettlementService.grant_refund(
            self.order.order_id, 600, notifier=self.notifier
        )

        self.assertEqual(result.outcome, Outcome.DONE)
        self.assertEqual(result.order.status, Order.Status.MANYBACK)
        self.assertEqual(result.order.refund_amount, 600)
        self.assertEqual(result.wallet.frozen_balance, 600)
        self.assertEqual(result.wallet.available_balance, 0)

        tx = WalletTransaction.objects.get(wallet=result.wallet)
        self.assertEqual(tx.transaction_type, WalletTransaction.TransactionType.REFUND)
        self.assertEqual(tx.amount, 600)
        self.assertEqual(tx.order, self.order)
        self.assertEqual(tx.metadata, {"frozen": True})
        self.assertEqual(self.notifier.customer_messages[0][0], self.customer.tg_id)

    def test_grant_same_refund_twice_is_noop(self):
        SettlementService.grant_refund(self.order.order_id, 600, notifier=self.notifier)
        result = SettlementService.grant_refund(
            self.order.order_id, 600, notifier=self.notifier
        )

        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)
        self.assertEqual(WalletTransaction.objects.count(), 1)
        self.assertEqual(Wallet.objects.get().frozen_balance, 600)

    def test_grant_different_amount_while_in_progress_raises(self):
        SettlementService.grant_refund(self.order.order_id, 600, notifier=self.notifier)
        with self.assertRaises(TransitionError):
            SettlementService.grant_refund(self.order.order_id, 500, notifier=self.notifier)

    def test_amount_above_total_raises(self):
        with self.assertRaises(ValueError):
            SettlementService.grant_refund(self.order.order_id, 1001, notifier=self.notifier)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.COMPLETED)
        self.assertFalse(Wallet.objects.exists())

    def test_zero_amount_raises(self):
        with self.assertRaises(ValueError):
            SettlementService.grant_refund(self.order.order_id, 0, notifier=self.notifier)

    def test_canceled_order_cannot_be_refunded(self):
        order = make_order(self.customer, status=Order.Status.CANCELED)
        with self.assertRaises(TransitionError):
            SettlementService.grant_refund(order.order_id, 100, notifier=self.notifier)

    def test_order_without_customer_raises(self):
        order = make_order(status=Order.Status.COMPLETED)
        with self.assertRaises(TransitionError):
            SettlementService.grant_refund(order.order_id, 100, notifier=self.notifier)

    def test_unknown_order_raises(self):
        with self.assertRaises(Order.DoesNotExist):
            SettlementService.grant_refund("ORD-missing", 100, notifier=self.notifier)


class ReverseRefundTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()
        self.order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)

    def grant(self, amount=600):
        return SettlementService.grant_refund(
            self.order.order_id, amount, notifier=self.notifier
        )

    def set_available(self, amount):
        Wallet.objects.filter(customer=self.customer).update(available_balance=amount)

    def test_reverse_with_shortfall_creates_debt(self):
        self.grant(600)
        self.set_available(200)

        result = SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)

        self.assertEqual(result.outcome, Outcome.DONE)
        self.assertEqual(result.order.status, Order.Status.COMPLETED)
        self.assertIsNone(result.order.refund_amount)
        self.assertEqual(result.wallet.available_balance, 0)

        withdraw, debt = result.transactions
        self.assertEqual(withdraw.transaction_type, WalletTransaction.TransactionType.WITHDRAW)
        self.assertEqual(withdraw.amount, -200)
        self.assertEqual(
            withdraw.metadata, {"spent": 200, "remaining_debt": 400, "refund_amount": 600}
        )
        self.assertEqual(debt.transaction_type, WalletTransaction.TransactionType.DEBT)
        self.assertEqual(debt.amount, -400)
        self.assertEqual(
            debt.metadata,
            {"debt": True, "original_refund": 600, "remaining": 400, "paid": 0},
        )
        self.assertEqual(result.wallet.outstanding_debt(), 400)

    def test_reverse_fully_covered(self):
        self.grant(600)
        self.set_available(1000)

        result = SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)

        self.assertEqual(result.wallet.available_balance, 400)
        self.assertEqual(len(result.transactions), 1)
        self.assertEqual(result.transactions[0].amount, -600)
        self.assertEqual(result.wallet.outstanding_debt(), 0)

    def test_withdraw_and_debt_add_up_to_refund(self):
        for available in (0, 250, 600, 900):
            with self.subTest(available=available):
                order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
                SettlementService.grant_refund(order.order_id, 600, notifier=self.notifier)
                self.set_available(available)

                result = SettlementService.reverse_refund(
                    order.order_id, notifier=self.notifier
                )
                magnitudes = sum(abs(tx.amount) for tx in result.transactions)
                self.assertEqual(magnitudes, 600)
                self.assertGreaterEqual(result.wallet.available_balance, 0)

    def test_reverse_twice_is_noop(self):
        self.grant(600)
        SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)
        count = WalletTransaction.objects.count()

        result = SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)

        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)
        self.assertEqual(WalletTransaction.objects.count(), count)

    def test_reverse_without_refund_raises(self):
        with self.assertRaises(TransitionError):
            SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)

    def test_frozen_balance_is_untouched(self):
        self.grant(600)
        result = SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)
        self.assertEqual(result.wallet.frozen_balance, 600)


class DebtRepaymentTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()
        order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
        SettlementService.grant_refund(order.order_id, 500, notifier=self.notifier)
        SettlementService.reverse_refund(order.order_id, notifier=self.notifier)
        self.debt = WalletTransaction.objects.get(
            transaction_type=WalletTransaction.TransactionType.DEBT
        )

    def deposit(self, amount):
        return WalletService.deposit(self.customer.pk, amount, notifier=self.notifier)

    def test_deposit_below_debt_goes_entirely_to_debt(self):
        result = self.deposit(300)

        self.assertEqual(result.applied_to_debt, 300)
        self.assertEqual(result.credited, 0)
        self.assertEqual(result.wallet.available_balance, 0)
        self.assertEqual(result.wallet.outstanding_debt(), 200)

        self.debt.refresh_from_db()
        self.assertEqual(self.debt.amount, -200)
        self.assertEqual(self.debt.metadata["paid"], 300)
        self.assertEqual(self.debt.metadata["remaining"], 200)
        self.assertEqual(self.debt.transaction_type, WalletTransaction.TransactionType.DEBT)

        payment = result.transactions[0]
        self.assertEqual(
            payment.transaction_type, WalletTransaction.TransactionType.DEBT_PAYMENT
        )
        self.assertEqual(payment.amount, 300)

    def test_deposit_equal_to_debt_clears_it(self):
        result = self.deposit(500)

        self.assertEqual(result.wallet.available_balance, 0)
        self.assertEqual(result.wallet.outstanding_debt(), 0)
        self.debt.refresh_from_db()
        self.assertEqual(self.debt.transaction_type, WalletTransaction.TransactionType.DEBT_PAID)
        self.assertTrue(self.debt.metadata["fully_paid"])

    def test_deposit_above_debt_credits_remainder(self):
        result = self.deposit(800)

        self.assertEqual(result.applied_to_debt, 500)
        self.assertEqual(result.credited, 300)
        self.assertEqual(result.wallet.available_balance, 300)
        self.assertEqual(result.wallet.outstanding_debt(), 0)
        self.assertEqual(
            [tx.transaction_type for tx in result.transactions],
            [
                WalletTransaction.TransactionType.DEBT_PAYMENT,
                WalletTransaction.TransactionType.DEPOSIT,
            ],
        )

    def test_oldest_debt_is_repaid_first(self):
        order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
        SettlementService.grant_refund(order.order_id, 200, notifier=self.notifier)
        SettlementService.reverse_refund(order.order_id, notifier=self.notifier)
        newer = WalletTransaction.objects.filter(
            transaction_type=WalletTransaction.TransactionType.DEBT
        ).exclude(pk=self.debt.pk).get()

        self.deposit(600)

        self.debt.refresh_from_db()
        newer.refresh_from_db()
        self.assertEqual(self.debt.transaction_type, WalletTransaction.TransactionType.DEBT_PAID)
        self.assertEqual(newer.amount, -100)
        self.assertEqual(newer.metadata["paid"], 100)


class SettlementScenarioTest(TransactionTestCase):
    def test_grant_then_reverse_with_partial_balance(self):
        notifier = RecordingNotifier()
        customer = make_customer()
        order = make_order(customer, total=1000, status=Order.Status.COMPLETED)

        SettlementService.grant_refund(order.order_id, 600, notifier=notifier)
        wallet = Wallet.objects.get(customer=customer)
        self.assertEqual(wallet.frozen_balance, 600)

        WalletService.deposit(customer.pk, 200, notifier=notifier)
        SettlementService.reverse_refund(order.order_id, notifier=notifier)

        wallet.refresh_from_db()
        order.refresh_from_db()
        self.assertEqual(order.status, Order.Status.COMPLETED)
        self.assertIsNone(order.refund_amount)
        self.assertEqual(wallet.available_balance, 0)
        self.assertEqual(wallet.outstanding_debt(), 400)
        withdraw = WalletTransaction.objects.get(
            transaction_type=WalletTransaction.TransactionType.WITHDRAW
        )
        self.assertEqual(withdraw.amount, -200)


class SettlementRollbackTest(TransactionTestCase):
    """A failure partway through a settlement leaves no trace in the ledger."""

    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()

    def test_failed_debt_entry_rolls_back_reversal(self):
        order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
        SettlementService.grant_refund(order.order_id, 600, notifier=self.notifier)
        WalletService.deposit(self.customer.pk, 200, notifier=self.notifier)
        count = WalletTransaction.objects.count()

        real_create = WalletTransaction.objects.create

        def create(**kwargs):
            if kwargs["transaction_type"] == WalletTransaction.TransactionType.DEBT:
                raise DatabaseError("disk full")
            return real_create(**kwargs)

        with patch.object(WalletTransaction.objects, "create", side_effect=create):
            with self.assertRaises(DatabaseError):
                SettlementService.reverse_refund(order.order_id, notifier=self.notifier)

        order.refresh_from_db()
        wallet = Wallet.objects.get(customer=self.customer)
        self.assertEqual(order.status, Order.Status.MANYBACK)
        self.assertEqual(order.refund_amount, 600)
        self.assertEqual(wallet.frozen_balance, 600)
        self.assertEqual(wallet.available_balance, 200)
        self.assertEqual(WalletTransaction.objects.count(), count)
        self.assertFalse(
            WalletTransaction.objects.filter(
                transaction_type=WalletTransaction.TransactionType.WITHDRAW
            ).exists()
        )

    def test_failed_debt_repayment_rolls_back_deposit(self):
        for amount in (300, 200):
            order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
            SettlementService.grant_refund(order.order_id, amount, notifier=self.notifier)
            SettlementService.reverse_refund(order.order_id, notifier=self.notifier)
        count = WalletTransaction.objects.count()

        real_save = WalletTransaction.save
        saves = []

        def save(instance, *args, **kwargs):
            saves.append(instance.pk)
            if len(saves) > 1:
                raise DatabaseError("connection lost")
            return real_save(instance, *args, **kwargs)

        with patch.object(WalletTransaction, "save", autospec=True, side_effect=save):
            with self.assertRaises(DatabaseError):
                WalletService.deposit(self.customer.pk, 400, notifier=self.notifier)

        wallet = Wallet.objects.get(customer=self.customer)
        debts = WalletTransaction.objects.filter(
            transaction_type=WalletTransaction.TransactionType.DEBT
        ).order_by("id")
        self.assertEqual([debt.amount for debt in debts], [-300, -200])
        self.assertEqual([debt.metadata["paid"] for debt in debts], [0, 0])
        self.assertEqual(wallet.available_balance, 0)
        self.assertEqual(wallet.frozen_balance, 500)
        self.assertEqual(wallet.outstanding_debt(), 500)
        self.assertEqual(WalletTransaction.objects.count(), count)


# ============================================================
# Wallet Service Tests
# ============================================================


class DepositTest(TransactionTestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()

    def test_deposit_success(self):
        result = WalletService.deposit(self.customer.pk, 1000, notifier=self.notifier)

        self.assertEqual(result.credited, 1000)
        self.assertEqual(result.applied_to_debt, 0)
        self.assertEqual(result.wallet.available_balance, 1000)
        tx = result.transactions[-1]
        self.assertEqual(tx.transaction_type, WalletTransaction.TransactionType.DEPOSIT)
        self.assertEqual(tx.amount, 1000)
        self.assertEqual(len(self.notifier.customer_messages), 1)

    def test_deposit_multiple(self):
        WalletService.deposit(self.customer.pk, 1000, notifier=self.notifier)
        WalletService.deposit(self.customer.pk, 2500, notifier=self.notifier)

        wallet = Wallet.objects.get(customer=self.customer)
        self.assertEqual(wallet.available_balance, 3500)

    def test_deposit_zero_amount_raises(self):
        with self.assertRaises(ValueError):
            WalletService.deposit(self.customer.pk, 0, notifier=self.notifier)

    def test_deposit_negative_amount_raises(self):
        with self.assertRaises(ValueError):
            WalletService.deposit(self.customer.pk, -100, notifier=self.notifier)

    def test_deposit_nonexistent_customer_raises(self):
        with self.assertRaises(Customer.DoesNotExist):
            WalletService.deposit(999999, 1000, notifier=self.notifier)

    def test_deposit_idempotency(self):
        key = str(uuid.uuid4())

        first = WalletService.deposit(
            self.customer.pk, 1000, idempotency_key=key, notifier=self.notifier
        )
        self.assertEqual(str(first.transactions[-1].idempotency_key), key)

        second = WalletService.deposit(
            self.customer.pk, 1000, idempotency_key=key, notifier=self.notifier
        )

        self.assertEqual(first.transactions[-1].id, second.transactions[-1].id)
        self.assertEqual(second.credited, 1000)
        wallet = Wallet.objects.get(customer=self.customer)
        self.assertEqual(wallet.available_balance, 1000)
        self.assertEqual(WalletTransaction.objects.count(), 1)


class ExchangeTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.customer = make_customer()
        order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
        SettlementService.grant_refund(order.order_id, 600, notifier=self.notifier)

    def test_exchange_all_frozen(self):
        result = WalletService.exchange_frozen(self.customer.pk, notifier=self.notifier)

        self.assertEqual(result.wallet.frozen_balance, 0)
        self.assertEqual(result.wallet.available_balance, 600)
        tx = result.transactions[-1]
        self.assertEqual(tx.metadata["source"], "exchange")
        self.assertEqual(tx.metadata["frozen_amount"], 600)

    def test_exchange_part_with_rate(self):
        result = WalletService.exchange_frozen(
            self.customer.pk, amount=250, rate=Decimal("0.5"), notifier=self.notifier
        )
        self.assertEqual(result.wallet.frozen_balance, 350)
        self.assertEqual(result.credited, 125)

    @override_settings(WALLET_EXCHANGE_RATE=Decimal("0.9"))
    def test_exchange_rounds_down(self):
        result = WalletService.exchange_frozen(
            self.customer.pk, amount=15, notifier=self.notifier
        )
        self.assertEqual(result.credited, 13)

    def test_exchange_more_than_frozen_raises(self):
        with self.assertRaises(ValueError):
            WalletService.exchange_frozen(self.customer.pk, amount=601, notifier=self.notifier)
        self.assertEqual(Wallet.objects.get().frozen_balance, 600)

    def test_exchange_with_nothing_frozen_raises(self):
        other = make_customer(tg_id=2002)
        with self.assertRaises(ValueError):
            WalletService.exchange_frozen(other.pk, notifier=self.notifier)

    def test_exchange_repays_debt_first(self):
        order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)
        SettlementService.grant_refund(order.order_id, 400, notifier=self.notifier)
        SettlementService.reverse_refund(order.order_id, notifier=self.notifier)

        result = WalletService.exchange_frozen(
            self.customer.pk, amount=600, notifier=self.notifier
        )

        self.assertEqual(result.applied_to_debt, 400)
        self.assertEqual(result.credited, 200)
        self.assertEqual(result.wallet.available_balance, 200)
        self.assertEqual(result.wallet.outstanding_debt(), 0)


class GetWalletTest(TestCase):
    def test_missing_wallet_is_empty_and_unsaved(self):
        customer = make_customer()
        wallet = WalletService.get_wallet(customer.pk)
        self.assertIsNone(wallet.pk)
        self.assertEqual(wallet.balance, 0)
        self.assertFalse(Wallet.objects.exists())

    def test_unknown_customer_raises(self):
        with self.assertRaises(Customer.DoesNotExist):
            WalletService.get_wallet(999999)


# ============================================================
# Payment Gateway Client Tests
# ============================================================


class SignatureTest(SimpleTestCase):
    def test_signature_matches_reference_digest(self):
        import hashlib

        payload = {"b": 2, "a": "x", "flag": True, "empty": None, "metadata": {"k": 1}}
        # Sorted keys a, b, empty, flag, password; metadata is excluded.
        expected = hashlib.sha256("x2truesecret".encode()).hexdigest()
        self.assertEqual(generate_signature(payload, "secret"), expected)

    def test_signature_field_is_ignored(self):
        payload = {"order_id": "ORD1", "amount": 100}
        signed = dict(payload, signature=generate_signature(payload, "secret"))
        self.assertEqual(generate_signature(signed, "secret"), signed["signature"])

    def test_validate_signature(self):
        payload = {"order_id": "ORD1", "status": "confirmed", "id": 7}
        payload["signature"] = generate_signature(payload, "secret")
        self.assertTrue(validate_signature(payload, "secret"))
        self.assertFalse(validate_signature(payload, "other"))
        self.assertFalse(validate_signature(dict(payload, status="failed"), "secret"))

    def test_missing_signature_is_invalid(self):
        self.assertFalse(validate_signature({"order_id": "ORD1"}, "secret"))

    def test_integral_float_signs_like_integer(self):
        import hashlib

        payload = {"order_id": "ORD1", "status": "confirmed", "amount": 1000.0, "id": 5}
        # Sorted keys amount, id, order_id, password, status.
        expected = hashlib.sha256("10005ORD1secretconfirmed".encode()).hexdigest()
        self.assertEqual(generate_signature(payload, "secret"), expected)
        self.assertEqual(
            generate_signature(payload, "secret"),
            generate_signature(dict(payload, amount=1000), "secret"),
        )

    def test_fractional_float_keeps_its_fraction(self):
        import hashlib

        expected = hashlib.sha256("10.5secret".encode()).hexdigest()
        self.assertEqual(generate_signature({"amount": 10.5}, "secret"), expected)


@override_settings(PAYMENT_PASSWORD="secret", SERVER_URL="https://api.shop", SITE_URL="https://shop")
class RequestPaymentInitTest(SimpleTestCase):
    @patch("shop.utils.gateway.requests.post")
    def test_success(self, mock_post):
        mock_post.return_value = MagicMock(
            json=MagicMock(
                return_value={"success": True, "url": "https://pay/1", "payment": {"id": 1}}
            )
        )

        result = request_payment_init("ORD1", 1000)

        self.assertTrue(result["success"])
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(payload["amount"], 1000)
        self.assertEqual(payload["notify_url"], "https://api.shop/api/payments/callback")
        self.assertTrue(validate_signature(payload, "secret"))

    @patch("shop.utils.gateway.requests.post")
    def test_refusal(self, mock_post):
        mock_post.return_value = MagicMock(
            json=MagicMock(return_value={"success": False, "message": "bad shop"})
        )
        result = request_payment_init("ORD1", 1000)
        self.assertFalse(result["success"])

    @patch("shop.utils.gateway.requests.post")
    def test_timeout(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("slow")
        result = request_payment_init("ORD1", 1000)
        self.assertFalse(result["success"])
        self.assertEqual(result["response"]["error"], "timeout")

    @patch("shop.utils.gateway.requests.post")
    def test_connection_error(self, mock_post):
        mock_post.side_effect = requests.exceptions.ConnectionError("down")
        result = request_payment_init("ORD1", 1000)
        self.assertEqual(result["response"]["error"], "connection_error")


# ============================================================
# Payment Service Tests
# ============================================================


class InitiatePaymentTest(TestCase):
    def setUp(self):
        self.order = make_order(status=Order.Status.NEW)

    @patch("shop.services.payments.request_payment_init")
    def test_initiate_stores_payment_reference(self, mock_init):
        mock_init.return_value = {
            "success": True,
            "response": {"success": True, "url": "https://pay/42", "payment": {"id": 42}},
        }

        url = PaymentService.initiate(self.order.order_id)

        self.assertEqual(url, "https://pay/42")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_id, "42")
        mock_init.assert_called_once_with(self.order.order_id, 1000)

    @patch("shop.services.payments.request_payment_init")
    def test_gateway_failure_raises(self, mock_init):
        mock_init.return_value = {"success": False, "response": {"error": "timeout"}}

        with self.assertRaises(PaymentGatewayError) as ctx:
            PaymentService.initiate(self.order.order_id)
        self.assertEqual(ctx.exception.response, {"error": "timeout"})

    @patch("shop.services.payments.request_payment_init")
    def test_paid_order_raises(self, mock_init):
        Order.objects.filter(pk=self.order.pk).update(
            payment_status=Order.PaymentStatus.CONFIRMED
        )
        with self.assertRaises(TransitionError):
            PaymentService.initiate(self.order.order_id)
        mock_init.assert_not_called()


@override_settings(PAYMENT_PASSWORD="secret")
class PaymentCallbackTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.order = make_order(status=Order.Status.PENDING)

    def payload(self, status="confirmed", **extra):
        body = {"order_id": self.order.order_id, "id": 77, "status": status, **extra}
        body["signature"] = generate_signature(body, "secret")
        return body

    def test_confirmed_callback_marks_paid(self):
        result = PaymentService.handle_callback(self.payload(), notifier=self.notifier)

        self.assertEqual(result.outcome, Outcome.DONE)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.CONFIRMED)
        self.assertEqual(self.order.payment_id, "77")
        self.assertEqual(len(self.notifier.operator_messages), 1)

    def test_duplicate_confirmation_is_noop(self):
        PaymentService.handle_callback(self.payload(), notifier=self.notifier)
        result = PaymentService.handle_callback(self.payload(), notifier=self.notifier)

        self.assertEqual(result.outcome, Outcome.ALREADY_DONE)
        self.assertEqual(len(self.notifier.operator_messages), 1)

    def test_other_status_is_ignored(self):
        result = PaymentService.handle_callback(self.payload("failed"), notifier=self.notifier)
        self.assertEqual(result.outcome, Outcome.IGNORED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    def test_confirmation_is_never_reverted(self):
        PaymentService.handle_callback(self.payload(), notifier=self.notifier)
        PaymentService.handle_callback(self.payload("failed"), notifier=self.notifier)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.CONFIRMED)

    def test_metadata_does_not_affect_signature(self):
        body = self.payload()
        body["metadata"] = {"anything": "goes"}
        result = PaymentService.handle_callback(body, notifier=self.notifier)
        self.assertEqual(result.outcome, Outcome.DONE)

    def test_float_amount_in_callback_is_accepted(self):
        body = {"order_id": self.order.order_id, "id": 5, "status": "confirmed", "amount": 1000}
        # The gateway signs the number as "1000" even though the JSON says 1000.00.
        signature = generate_signature(body, "secret")
        body.update(amount=1000.0, signature=signature)

        result = PaymentService.handle_callback(body, notifier=self.notifier)

        self.assertEqual(result.outcome, Outcome.DONE)

    def test_bad_signature_raises(self):
        body = self.payload()
        body["signature"] = "0" * 64
        with self.assertRaises(InvalidSignature):
            PaymentService.handle_callback(body, notifier=self.notifier)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    def test_unknown_order_raises(self):
        body = {"order_id": "ORD-missing", "status": "confirmed"}
        body["signature"] = generate_signature(body, "secret")
        with self.assertRaises(Order.DoesNotExist):
            PaymentService.handle_callback(body, notifier=self.notifier)


# ============================================================
# Operator Session Store Tests
# ============================================================


class OperatorSessionStoreTest(TestCase):
    def setUp(self):
        self.store = OperatorSessionStore(ttl=600)

    def test_start_and_get(self):
        self.store.start(OPERATOR_CHAT, "refund", "amount", {"order_id": "ORD1"})
        session = self.store.get(OPERATOR_CHAT)
        self.assertEqual(session.action, "refund")
        self.assertEqual(session.payload, {"order_id": "ORD1"})

    def test_start_replaces_previous_session(self):
        self.store.start(OPERATOR_CHAT, "refund", "amount", {"order_id": "ORD1"})
        self.store.start(OPERATOR_CHAT, "refund", "amount", {"order_id": "ORD2"})
        self.assertEqual(OperatorSession.objects.count(), 1)
        self.assertEqual(self.store.get(OPERATOR_CHAT).payload["order_id"], "ORD2")

    def test_expired_session_reads_as_absent(self):
        self.store.start(OPERATOR_CHAT, "refund", "amount")
        OperatorSession.objects.update(expires_at=timezone.now() - timedelta(seconds=1))
        self.assertIsNone(self.store.get(OPERATOR_CHAT))
        self.assertFalse(OperatorSession.objects.exists())

    def test_clear(self):
        self.store.start(OPERATOR_CHAT, "refund", "amount")
        self.assertTrue(self.store.clear(OPERATOR_CHAT))
        self.assertFalse(self.store.clear(OPERATOR_CHAT))

    def test_purge_expired(self):
        self.store.start(OPERATOR_CHAT, "refund", "amount")
        self.store.start(OPERATOR_CHAT + 1, "refund", "amount")
        OperatorSession.objects.filter(chat_id=OPERATOR_CHAT).update(
            expires_at=timezone.now() - timedelta(seconds=1)
        )
        self.assertEqual(self.store.purge_expired(), 1)
        self.assertEqual(OperatorSession.objects.get().chat_id, OPERATOR_CHAT + 1)


# ============================================================
# Operator Chat Command Tests
# ============================================================


@override_settings(OPERATOR_CHAT_ID=OPERATOR_CHAT)
class OperatorCommandDispatcherTest(TestCase):
    def setUp(self):
        self.notifier = RecordingNotifier()
        self.dispatcher = OperatorCommandDispatcher(notifier=self.notifier)
        self.customer = make_customer()
        self.order = make_order(
            self.customer,
            total=1000,
            status=Order.Status.WAITING_CODE_REQUEST,
            email="duck@example.com",
        )

    def press(self, action, order_id=None, chat_id=OPERATOR_CHAT):
        return self.dispatcher.handle_update(
            {
                "update_id": 1,
                "callback_query": {
                    "id": "cb",
                    "data": f"{action}:{order_id or self.order.order_id}",
                    "message": {"chat": {"id": chat_id}},
                },
            }
        )

    def say(self, text, chat_id=OPERATOR_CHAT):
        return self.dispatcher.handle_update(
            {"update_id": 2, "message": {"chat": {"id": chat_id}, "text": text}}
        )

    def test_request_code_button(self):
        result = self.press("request_code")
        self.assertEqual(result["outcome"], Outcome.DONE)
        self.order.refresh_from_db()
        self.assertTrue(self.order.code_requested)

    def test_foreign_chat_is_ignored(self):
        result = self.press("request_code", chat_id=1)
        self.assertFalse(result["handled"])
        self.order.refresh_from_db()
        self.assertFalse(self.order.code_requested)
        self.assertEqual(self.notifier.operator_messages, [])

    def test_unknown_callback(self):
        self.assertFalse(self.press("launch_rocket")["handled"])

    def test_order_ready_and_wrong_code(self):
        Order.objects.filter(pk=self.order.pk).update(
            code="123456", status=Order.Status.WAITING
        )
        self.press("wrong_code")
        self.order.refresh_from_db()
        self.assertEqual(self.order.wrong_code_attempts, 1)
        self.assertIsNone(self.order.code)

        Order.objects.filter(pk=self.order.pk).update(code="654321")
        self.press("order_ready")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.COMPLETED)
        self.assertIn(f"refund:{self.order.order_id}", self.notifier.last_operator_buttons())

    def test_mark_completed_asks_for_confirmation(self):
        self.press("request_code")
        result = self.press("mark_completed")

        self.assertEqual(result["outcome"], Outcome.CONFIRMATION_REQUIRED)
        self.assertEqual(
            self.notifier.last_operator_buttons(), [f"force_complete:{self.order.order_id}"]
        )

        self.press("force_complete")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.COMPLETED)

    def test_invalid_command_replies_with_error(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.CANCELED)
        result = self.press("mark_completed")
        self.assertIn("error", result)
        self.assertIn(self.order.order_id, self.notifier.operator_messages[-1][0])

    def test_missing_order_replies_not_found(self):
        result = self.press("cancel_order", order_id="ORD-missing")
        self.assertEqual(result["error"], "not_found")

    def test_cancel_order(self):
        self.press("cancel_order")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELED)

    def test_refund_wizard(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.COMPLETED)

        self.assertEqual(self.press("refund")["outcome"], "awaiting_amount")
        self.assertEqual(self.say("abc")["error"], "not_a_number")
        self.assertIn("error", self.say("5000"))
        self.assertIsNotNone(OperatorSession.objects.filter(chat_id=OPERATOR_CHAT).first())

        result = self.say("600")

        self.assertEqual(result["outcome"], Outcome.DONE)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.MANYBACK)
        self.assertEqual(self.order.refund_amount, 600)
        self.assertEqual(Wallet.objects.get(customer=self.customer).frozen_balance, 600)
        self.assertFalse(OperatorSession.objects.exists())

        self.press("reverse_refund")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.COMPLETED)

    def test_cancel_wizard(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.COMPLETED)
        self.press("refund")
        self.say("/cancel")
        self.assertFalse(OperatorSession.objects.exists())
        self.assertFalse(self.say("600")["handled"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.COMPLETED)

    def test_refund_of_canceled_order_is_refused(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.CANCELED)
        result = self.press("refund")
        self.assertIn("error", result)
        self.assertFalse(OperatorSession.objects.exists())

    def test_stats_command(self):
        self.assertEqual(self.say("/stats")["action"], "stats")
        self.assertIn("Paid orders: 0", self.notifier.operator_messages[-1][0])

    def test_order_ready_twice_reports_already_done(self):
        Order.objects.filter(pk=self.order.pk).update(
            code="123456", status=Order.Status.WAITING
        )
        self.press("order_ready")
        result = self.press("order_ready")

        self.assertEqual(result["outcome"], Outcome.ALREADY_DONE)
        text, buttons = self.notifier.operator_messages[-1]
        self.assertIn("already completed", text)
        self.assertIsNone(buttons)
        refund_offers = [
            message
            for message in self.notifier.operator_messages
            if message[1] and f"refund:{self.order.order_id}" in str(message[1])
        ]
        self.assertEqual(len(refund_offers), 1)

    def test_force_complete_twice_reports_already_done(self):
        self.press("force_complete")
        result = self.press("force_complete")
        self.assertEqual(result["outcome"], Outcome.ALREADY_DONE)
        self.assertIn("already completed", self.notifier.operator_messages[-1][0])

    def test_cancel_order_twice_reports_already_done(self):
        self.press("cancel_order")
        result = self.press("cancel_order")
        self.assertEqual(result["outcome"], Outcome.ALREADY_DONE)
        self.assertIn("already canceled", self.notifier.operator_messages[-1][0])

    def test_reverse_refund_twice_reports_already_done(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.COMPLETED)
        SettlementService.grant_refund(self.order.order_id, 300, notifier=self.notifier)

        self.assertEqual(self.press("reverse_refund")["outcome"], Outcome.DONE)
        result = self.press("reverse_refund")

        self.assertEqual(result["outcome"], Outcome.ALREADY_DONE)
        self.assertIn("already reversed", self.notifier.operator_messages[-1][0])
        self.assertEqual(
            WalletTransaction.objects.filter(
                transaction_type=WalletTransaction.TransactionType.WITHDRAW
            ).count(),
            1,
        )

    def test_wrong_code_twice_reports_already_done(self):
        Order.objects.filter(pk=self.order.pk).update(
            code="123456", status=Order.Status.WAITING
        )
        self.press("wrong_code")
        result = self.press("wrong_code")
        self.assertEqual(result["outcome"], Outcome.ALREADY_DONE)
        self.assertIn("already rejected", self.notifier.operator_messages[-1][0])


# ============================================================
# Celery Task Tests (with mocked HTTP)
# ============================================================


@override_settings(OPERATOR_BOT_TOKEN="op-token", CUSTOMER_BOT_TOKEN="cu-token")
class SendChatMessageTaskTest(TestCase):
    @patch("shop.utils.telegram.requests.post")
    def test_sends_message_with_buttons(self, mock_post):
        mock_post.return_value = MagicMock(json=MagicMock(return_value={"ok": True}))

        from shop.tasks import send_chat_message

        result = send_chat_message.apply(
            args=["operator", 555, "hello", [[("Go", "request_code:ORD1")]]]
        )

        self.assertTrue(result.get()["sent"])
        url = mock_post.call_args.args[0]
        self.assertTrue(url.endswith("/botop-token/sendMessage"))
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(
            payload["reply_markup"],
            {"inline_keyboard": [[{"text": "Go", "callback_data": "request_code:ORD1"}]]},
        )

    @patch("shop.utils.telegram.requests.post")
    def test_delivery_failure_does_not_raise(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("slow")

        from shop.tasks import send_chat_message

        result = send_chat_message.apply(args=["customer", 1001, "hi"])

        self.assertFalse(result.get()["sent"])

    @override_settings(CUSTOMER_BOT_TOKEN="")
    @patch("shop.utils.telegram.requests.post")
    def test_unconfigured_bot_skips_delivery(self, mock_post):
        from shop.tasks import send_chat_message

        result = send_chat_message.apply(args=["customer", 1001, "hi"])

        self.assertFalse(result.get()["sent"])
        mock_post.assert_not_called()


class PurgeExpiredSessionsTaskTest(TestCase):
    def test_purge(self):
        OperatorSession.objects.create(
            chat_id=1,
            action="refund",
            step="amount",
            expires_at=timezone.now() - timedelta(minutes=1),
        )

        from shop.tasks import purge_expired_operator_sessions

        result = purge_expired_operator_sessions.apply()

        self.assertEqual(result.get()["purged"], 1)
        self.assertFalse(OperatorSession.objects.exists())


@override_settings(OPERATOR_BOT_TOKEN="op-token", OPERATOR_CHAT_ID=555)
class NotificationDeliveryTest(TransactionTestCase):
    @patch("shop.utils.telegram.requests.post")
    def test_message_sent_after_commit(self, mock_post):
        mock_post.return_value = MagicMock(json=MagicMock(return_value={"ok": True}))

        order = OrderService.create_order({"game-key": 1}, 500)

        mock_post.assert_called_once()
        payload = mock_post.call_args.kwargs["json"]
        self.assertEqual(payload["chat_id"], 555)
        self.assertIn(order.order_id, payload["text"])

    @patch("shop.utils.telegram.requests.post")
    def test_failed_command_sends_nothing(self, mock_post):
        order = make_order(status=Order.Status.CANCELED)

        with self.assertRaises(TransitionError):
            OrderService.submit_email(order.order_id, "duck@example.com")

        mock_post.assert_not_called()


# ============================================================
# Customer Order API Tests
# ============================================================


class OrderAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.customer = make_customer()

    @patch("shop.services.payments.request_payment_init")
    def test_create_order(self, mock_init):
        mock_init.return_value = {
            "success": True,
            "response": {"success": True, "url": "https://pay/1", "payment": {"id": 1}},
        }

        response = self.client.post(
            "/api/orders/",
            {"items": {"game-key": 2}, "total": 1500, "customer_id": self.customer.pk},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["payment_url"], "https://pay/1")
        order = Order.objects.get(order_id=response.data["order_id"])
        self.assertEqual(order.payment_id, "1")

    @patch("shop.services.payments.request_payment_init")
    def test_create_order_gateway_down_keeps_order(self, mock_init):
        mock_init.return_value = {"success": False, "response": {"error": "timeout"}}

        response = self.client.post(
            "/api/orders/", {"items": {"game-key": 1}, "total": 500}, format="json"
        )

        self.assertEqual(response.status_code, 502)
        self.assertTrue(Order.objects.filter(order_id=response.data["order_id"]).exists())

    def test_create_order_validation(self):
        for body in (
            {"items": {}, "total": 500},
            {"items": {"game-key": 0}, "total": 500},
            {"items": {"game-key": 1}, "total": 0},
            {"total": 500},
        ):
            with self.subTest(body=body):
                response = self.client.post("/api/orders/", body, format="json")
                self.assertEqual(response.status_code, 400)
        self.assertEqual(Order.objects.count(), 0)

    def test_create_order_unknown_customer(self):
        response = self.client.post(
            "/api/orders/",
            {"items": {"game-key": 1}, "total": 500, "customer_id": 999999},
            format="json",
        )
        self.assertEqual(response.status_code, 404)

    def test_order_detail(self):
        order = make_order(status=Order.Status.CONFIRMED)
        response = self.client.get(f"/api/orders/{order.order_id}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["stage"], "email_required")
        self.assertFalse(response.data["max_attempts_reached"])
        self.assertNotIn("code", response.data)

    def test_order_detail_not_found(self):
        self.assertEqual(self.client.get("/api/orders/ORD-missing/").status_code, 404)

    @patch("shop.services.payments.request_payment_init")
    def test_retry_payment_for_paid_order(self, mock_init):
        order = make_order(payment_status=Order.PaymentStatus.CONFIRMED)
        response = self.client.post(f"/api/orders/{order.order_id}/payment")
        self.assertEqual(response.status_code, 409)
        mock_init.assert_not_called()

    def test_submit_email(self):
        order = make_order(status=Order.Status.CONFIRMED)
        response = self.client.post(
            f"/api/orders/{order.order_id}/email", {"email": "duck@example.com"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["order"]["status"], "waiting_code_request")

    def test_submit_invalid_email(self):
        order = make_order(status=Order.Status.CONFIRMED)
        response = self.client.post(
            f"/api/orders/{order.order_id}/email", {"email": "not-an-email"}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_submit_code_flow(self):
        order = make_order(
            status=Order.Status.WAITING_CODE_REQUEST,
            email="duck@example.com",
            code_requested=True,
        )
        response = self.client.post(
            f"/api/orders/{order.order_id}/code", {"code": "123456"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "waiting")

    def test_submit_code_not_requested(self):
        order = make_order(status=Order.Status.WAITING_CODE_REQUEST, email="duck@example.com")
        response = self.client.post(
            f"/api/orders/{order.order_id}/code", {"code": "123456"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "not_requested")

    def test_submit_code_locked_out(self):
        order = make_order(
            status=Order.Status.WAITING, email="duck@example.com", wrong_code_attempts=2
        )
        response = self.client.post(
            f"/api/orders/{order.order_id}/code", {"code": "123456"}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "support_needed")
        self.assertFalse(response.data["changed"])

    def test_submit_code_must_be_digits(self):
        order = make_order(status=Order.Status.WAITING_CODE_REQUEST, code_requested=True)
        response = self.client.post(
            f"/api/orders/{order.order_id}/code", {"code": "12ab"}, format="json"
        )
        self.assertEqual(response.status_code, 400)


# ============================================================
# Payment Callback API Tests
# ============================================================


@override_settings(PAYMENT_PASSWORD="secret")
class PaymentCallbackAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.order = make_order(status=Order.Status.PENDING)

    def signed(self, **fields):
        body = {"order_id": self.order.order_id, "id": 9, "status": "confirmed", **fields}
        body["signature"] = generate_signature(body, "secret")
        return body

    def test_callback_confirms_payment(self):
        response = self.client.post("/api/payments/callback", self.signed(), format="json")
        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.CONFIRMED)

    def test_callback_bad_signature(self):
        body = self.signed()
        body["amount"] = 1
        response = self.client.post("/api/payments/callback", body, format="json")
        self.assertEqual(response.status_code, 400)

    def test_callback_repeated(self):
        self.client.post("/api/payments/callback", self.signed(), format="json")
        response = self.client.post("/api/payments/callback", self.signed(), format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["outcome"], "already_done")


# ============================================================
# Wallet API Tests
# ============================================================


class WalletAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.notifier = RecordingNotifier()
        self.customer = make_customer()
        self.order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)

    def test_wallet_without_activity(self):
        response = self.client.get(f"/api/customers/{self.customer.pk}/wallet/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["balance"], 0)
        self.assertEqual(response.data["transactions"], [])
        self.assertEqual(
            set(response.data),
            {
                "customer_id",
                "balance",
                "frozen_balance",
                "available_balance",
                "outstanding_debt",
                "transactions",
            },
        )
        self.assertFalse(Wallet.objects.exists())

    def test_wallet_unknown_customer(self):
        self.assertEqual(self.client.get("/api/customers/999999/wallet/").status_code, 404)

    def test_wallet_with_debt(self):
        SettlementService.grant_refund(self.order.order_id, 600, notifier=self.notifier)
        SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)

        response = self.client.get(f"/api/customers/{self.customer.pk}/wallet/")

        self.assertEqual(response.data["frozen_balance"], 600)
        self.assertEqual(response.data["available_balance"], 0)
        self.assertEqual(response.data["outstanding_debt"], 600)
        self.assertEqual(len(response.data["transactions"]), 3)

    def test_transaction_list_filter(self):
        SettlementService.grant_refund(self.order.order_id, 600, notifier=self.notifier)
        SettlementService.reverse_refund(self.order.order_id, notifier=self.notifier)

        response = self.client.get(
            f"/api/customers/{self.customer.pk}/wallet/transactions/", {"type": "debt"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["amount"], -600)
        self.assertEqual(response.data[0]["order_id"], self.order.order_id)

    def test_exchange(self):
        SettlementService.grant_refund(self.order.order_id, 600, notifier=self.notifier)

        response = self.client.post(
            f"/api/customers/{self.customer.pk}/wallet/exchange", {"amount": 100}, format="json"
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["wallet"]["frozen_balance"], 500)
        self.assertEqual(response.data["wallet"]["available_balance"], 100)

    def test_exchange_ignores_operator_token(self):
        # Authentication belongs to the front end that forwards this route.
        SettlementService.grant_refund(self.order.order_id, 600, notifier=self.notifier)

        response = self.client.post(
            f"/api/customers/{self.customer.pk}/wallet/exchange",
            {"amount": 100},
            format="json",
            HTTP_X_OPERATOR_TOKEN="wrong",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["credited"], 100)

    def test_exchange_nothing_frozen(self):
        response = self.client.post(
            f"/api/customers/{self.customer.pk}/wallet/exchange", {}, format="json"
        )
        self.assertEqual(response.status_code, 400)


# ============================================================
# Operator API Tests
# ============================================================


@override_settings(OPERATOR_API_TOKEN="op-secret")
class OperatorAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.customer = make_customer()
        self.order = make_order(self.customer, total=1000, status=Order.Status.COMPLETED)

    def command(self, command, body=None, order_id=None):
        return self.client.post(
            f"/api/operator/orders/{order_id or self.order.order_id}/{command}",
            body or {},
            format="json",
            **OPERATOR_HEADERS,
        )

    def test_requires_operator_token(self):
        response = self.client.post(
            f"/api/operator/orders/{self.order.order_id}/cancel",
            format="json",
            HTTP_X_OPERATOR_TOKEN="wrong",
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get("/api/operator/stats/").status_code, 403)

    @override_settings(OPERATOR_API_TOKEN="")
    def test_unset_token_denies_everyone(self):
        response = self.client.get("/api/operator/orders/", HTTP_X_OPERATOR_TOKEN="")
        self.assertEqual(response.status_code, 403)

    def test_order_list(self):
        for _ in range(12):
            make_order()
        response = self.client.get("/api/operator/orders/", **OPERATOR_HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data), 10)

    def test_stats(self):
        Order.objects.filter(pk=self.order.pk).update(
            payment_status=Order.PaymentStatus.CONFIRMED
        )
        response = self.client.get("/api/operator/stats/", **OPERATOR_HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["paid_orders"], 1)
        self.assertEqual(response.data["revenue"], 1000)
        self.assertEqual(response.data["orders_by_status"]["completed"], 1)

    def test_refund_and_reverse(self):
        response = self.command("refund", {"amount": 600})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["order"]["status"], "manyback")
        self.assertEqual(response.data["wallet"]["frozen_balance"], 600)

        response = self.command("reverse-refund")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["order"]["status"], "completed")
        self.assertEqual(response.data["wallet"]["outstanding_debt"], 600)

    def test_refund_too_large(self):
        self.assertEqual(self.command("refund", {"amount": 5000}).status_code, 400)

    def test_refund_missing_amount(self):
        self.assertEqual(self.command("refund").status_code, 400)

    def test_invalid_transition_is_conflict(self):
        self.assertEqual(self.command("cancel").status_code, 409)

    def test_complete_with_override(self):
        order = make_order(
            status=Order.Status.WAITING_CODE_REQUEST,
            email="duck@example.com",
            code_requested=True,
        )
        response = self.command("complete", order_id=order.order_id)
        self.assertEqual(response.data["outcome"], "confirmation_required")

        response = self.command("complete", {"override": True}, order_id=order.order_id)
        self.assertEqual(response.data["outcome"], "done")
        self.assertEqual(response.data["order"]["status"], "completed")

    def test_unknown_command(self):
        self.assertEqual(self.command("explode").status_code, 404)

    def test_unknown_order(self):
        self.assertEqual(self.command("cancel", order_id="ORD-missing").status_code, 404)

    def test_deposit_repays_debt(self):
        self.command("refund", {"amount": 600})
        self.command("reverse-refund")

        response = self.client.post(
            f"/api/operator/customers/{self.customer.pk}/deposit",
            {"amount": 1000},
            format="json",
            **OPERATOR_HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["applied_to_debt"], 600)
        self.assertEqual(response.data["credited"], 400)
        self.assertEqual(response.data["wallet"]["available_balance"], 400)
        self.assertEqual(response.data["wallet"]["outstanding_debt"], 0)

    def test_deposit_idempotency_key(self):
        key = str(uuid.uuid4())
        url = f"/api/operator/customers/{self.customer.pk}/deposit"

        first = self.client.post(
            url, {"amount": 500}, format="json", HTTP_IDEMPOTENCY_KEY=key, **OPERATOR_HEADERS
        )
        second = self.client.post(
            url, {"amount": 500}, format="json", HTTP_IDEMPOTENCY_KEY=key, **OPERATOR_HEADERS
        )

        self.assertEqual(first.status_code, 200)
        self.assertEqual(
            first.data["transactions"][0]["id"], second.data["transactions"][0]["id"]
        )
        self.assertEqual(
            WalletTransaction.objects.filter(
                transaction_type=WalletTransaction.TransactionType.DEPOSIT
            ).count(),
            1,
        )

    def test_deposit_bad_idempotency_key(self):
        response = self.client.post(
            f"/api/operator/customers/{self.customer.pk}/deposit",
            {"amount": 500},
            format="json",
            HTTP_IDEMPOTENCY_KEY="not-a-uuid",
            **OPERATOR_HEADERS,
        )
        self.assertEqual(response.status_code, 400)


# ============================================================
# Operator Bot Webhook Tests
# ============================================================


@override_settings(TELEGRAM_WEBHOOK_SECRET="hook-secret", OPERATOR_CHAT_ID=555)
class TelegramWebhookAPITest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.order = make_order(
            status=Order.Status.WAITING_CODE_REQUEST, email="duck@example.com"
        )
        self.update = {
            "update_id": 1,
            "callback_query": {
                "id": "cb",
                "data": f"request_code:{self.order.order_id}",
                "message": {"chat": {"id": 555}},
            },
        }

    def test_webhook_runs_command(self):
        response = self.client.post(
            "/api/telegram/operator",
            self.update,
            format="json",
            HTTP_X_TELEGRAM_BOT_API_SECRET_TOKEN="hook-secret",
        )
        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertTrue(self.order.code_requested)

    def test_webhook_rejects_bad_secret(self):
        response = self.client.post(
            "/api/telegram/operator",
            self.update,
            format="json",
            HTTP_X_TELEGRAM_BOT_API_SECRET_TOKEN="guess",
        )
        self.assertEqual(response.status_code, 403)
        self.order.refresh_from_db()
        self.assertFalse(self.order.code_requested)
