from shop.services.code_policy import CodeDecision, evaluate_code_submission
from shop.services.notifications import ChatNotifier, Notifier, get_notifier
from shop.services.operator_bot import OperatorCommandDispatcher
from shop.services.operator_sessions import OperatorSessionStore
from shop.services.orders import OrderService, Outcome
from shop.services.payments import PaymentService
from shop.services.settlement import SettlementService
from shop.services.stage import resolve_stage
from shop.services.stats import OrderStatsService
from shop.services.wallet import WalletService

__all__ = [
    "CodeDecision",
    "evaluate_code_submission",
    "ChatNotifier",
    "Notifier",
    "get_notifier",
    "OperatorCommandDispatcher",
    "OperatorSessionStore",
    "OrderService",
    "Outcome",
    "PaymentService",
    "SettlementService",
    "resolve_stage",
    "OrderStatsService",
    "WalletService",
]
