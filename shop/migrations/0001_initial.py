import django.db.models.deletion
from django.db import migrations, models

import shop.models.order


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("tg_id", models.BigIntegerField(unique=True)),
                ("username", models.CharField(blank=True, default="", max_length=100)),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="OperatorSession",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("chat_id", models.BigIntegerField(unique=True)),
                ("action", models.CharField(max_length=32)),
                ("step", models.CharField(max_length=32)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("expires_at", models.DateTimeField(db_index=True)),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "order_id",
                    models.CharField(
                        default=shop.models.order.generate_order_id,
                        editable=False,
                        max_length=50,
                        unique=True,
                    ),
                ),
                ("items", models.JSONField(default=dict, help_text="Product id to quantity, fixed at creation.")),
                ("total", models.PositiveIntegerField(help_text="Amount owed in minor units.")),
                ("email", models.EmailField(blank=True, max_length=100, null=True)),
                ("code", models.CharField(blank=True, max_length=6, null=True)),
                ("code_requested", models.BooleanField(default=False)),
                ("wrong_code_attempts", models.PositiveIntegerField(default=0)),
                (
                    "payment_id",
                    models.CharField(
                        blank=True,
                        help_text="Payment reference assigned by the gateway.",
                        max_length=64,
                        null=True,
                    ),
                ),
                (
                    "payment_status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("confirmed", "Confirmed")],
                        default="pending",
                        max_length=10,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("new", "New"),
                            ("pending", "Awaiting payment"),
                            ("confirmed", "Paid"),
                            ("waiting_code_request", "Awaiting code request"),
                            ("waiting", "Awaiting fulfillment"),
                            ("completed", "Completed"),
                            ("canceled", "Canceled"),
                            ("manyback", "Refund in progress"),
                        ],
                        default="new",
                        max_length=24,
                    ),
                ),
                ("refund_amount", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="orders",
                        to="shop.customer",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "abstract": False,
                "indexes": [
                    models.Index(fields=["status"], name="idx_order_status"),
                    models.Index(fields=["customer", "status"], name="idx_order_customer_status"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Wallet",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("frozen_balance", models.BigIntegerField(default=0)),
                ("available_balance", models.BigIntegerField(default=0)),
                (
                    "customer",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="wallet",
                        to="shop.customer",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "abstract": False,
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(frozen_balance__gte=0),
                        name="wallet_frozen_balance_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WalletTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "transaction_type",
                    models.CharField(
                        choices=[
                            ("deposit", "Deposit"),
                            ("withdraw", "Withdraw"),
                            ("refund", "Refund"),
                            ("debt", "Debt"),
                            ("debt_paid", "Debt paid"),
                            ("debt_payment", "Debt payment"),
                        ],
                        max_length=16,
                    ),
                ),
                ("amount", models.BigIntegerField(help_text="Positive credits, negative debits.")),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "idempotency_key",
                    models.UUIDField(
                        blank=True,
                        editable=False,
                        help_text="Client-generated UUID for idempotency.",
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "order",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wallet_transactions",
                        to="shop.order",
                    ),
                ),
                (
                    "wallet",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="transactions",
                        to="shop.wallet",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "abstract": False,
                "indexes": [
                    models.Index(fields=["wallet", "transaction_type"], name="idx_wallet_tx_type"),
                ],
            },
        ),
    ]
