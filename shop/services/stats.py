import logging

from django.db.models import Count, Sum
from django.utils import timezone

from shop.models import Order

logger = logging.getLogger(__name__)


class OrderStatsService:
    @staticmethod
    def collect() -> dict:
        """
        Order statistics for the operator.

        Revenue counts only orders whose payment was confirmed. "Today" starts
        at local midnight in settings.TIME_ZONE.
        """
        midnight = timezone.localtime().replace(hour=0, minute=0, second=0, microsecond=0)
        paid = Order.objects.filter(payment_status=Order.PaymentStatus.CONFIRMED)

        totals = paid.aggregate(count=Count("id"), revenue=Sum("total"))
        today = paid.filter(created_at__gte=midnight).aggregate(
            count=Count("id"), revenue=Sum("total")
        )
        by_status = {status: 0 for status in Order.Status.values}
        for row in Order.objects.values("status").annotate(count=Count("id")).order_by():
            by_status[row["status"]] = row["count"]

        return {
            "paid_orders": totals["count"],
            "revenue": totals["revenue"] or 0,
            "paid_orders_today": today["count"],
            "revenue_today": today["revenue"] or 0,
            "orders_by_status": by_status,
        }
