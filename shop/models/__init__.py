from shop.models.customer import Customer
from shop.models.order import Order
from shop.models.wallet import Wallet
from shop.models.transaction import WalletTransaction
from shop.models.operator_session import OperatorSession

__all__ = [
    "Customer",
    "Order",
    "Wallet",
    "WalletTransaction",
    "OperatorSession",
]
