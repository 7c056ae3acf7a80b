"""
Celery tasks for order processing.

Tasks:
    - send_order_status_notification: Customer notification after a status change
    - cancel_stale_pending_orders: Periodic cleanup of abandoned PENDING orders
    - generate_daily_order_report: Daily summary by status
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    'PENDING': 'We have received your order.',
    'CONFIRMED': 'Your order is confirmed.',
    'PROCESSING': 'Your jewelry is being prepared.',
    'SHIPPED': 'Your order is on its way.',
    'DELIVERED': 'Your order has been delivered.',
    'CANCELLED': 'Your order has been cancelled.',
    'RETURNED': 'Your return has been received.',
}


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(ConnectionError,),
    retry_backoff=True
)
def send_order_status_notification(self, order_id: int, from_status=None, to_status=None):
    """
    Notify the customer that their order changed status.

    Delivery (email/SMS) is an external collaborator; this task builds the
    message and hands it to the log.

    Returns:
        Dict with notification details
    """
    from orders.models import Order

    try:
        order = Order.objects.prefetch_related('items__product').get(id=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order #{order_id} not found for notification")
        return {'status': 'error', 'message': f'Order {order_id} not found'}

    if to_status and order.status != to_status:
        logger.warning(
            f"Order #{order_id} moved on to {order.status} before notifying {to_status}, skipping"
        )
        return {'status': 'skipped', 'message': f'Order {order_id} is no longer {to_status}'}

    items_summary = "\n".join(
        f"  - {item.quantity}x {item.product.name} @ {item.unit_price}"
        for item in order.items.all()
    )
    message = (
        f"Order #{order.id} for {order.customer_name} <{order.customer_email}>\n"
        f"{STATUS_MESSAGES.get(order.status, order.status)}\n"
        f"Status: {from_status or 'NEW'} -> {order.status}\n"
        f"Total: {order.total}\n"
        f"Items:\n{items_summary}"
    )
    logger.info(message)

    return {
        'status': 'success',
        'order_id': order.id,
        'order_status': order.status,
        'message': f'Notification sent for order {order_id}'
    }


@shared_task
def cancel_stale_pending_orders():
    """
    Cancel PENDING orders older than STALE_ORDER_HOURS.

    Goes through update_order so each order is restocked and audited.
    """
    from core.exceptions import StorefrontError
    from orders.models import Order
    from orders.services import update_order
    from orders.status import OrderStatus

    threshold = timezone.now() - timedelta(hours=getattr(settings, 'STALE_ORDER_HOURS', 48))
    stale_ids = list(
        Order.objects.filter(status=OrderStatus.PENDING, created_at__lt=threshold)
        .values_list('id', flat=True)
    )

    cancelled = 0
    for order_id in stale_ids:
        try:
            update_order(
                order_id,
                status=OrderStatus.CANCELLED,
                note='Cancelled automatically: pending too long'
            )
            cancelled += 1
        except StorefrontError as e:
            # Order changed since the query; leave it for the next run
            logger.warning(f"Could not cancel stale order #{order_id}: {e}")

    if stale_ids:
        logger.warning(f"Cancelled {cancelled} of {len(stale_ids)} stale pending orders")
    return {'found': len(stale_ids), 'cancelled': cancelled}


@shared_task
def generate_daily_order_report():
    """
    Generate yesterday's order statistics.

    Scheduled via Celery Beat (see CELERY_BEAT_SCHEDULE).
    """
    from django.db.models import Count, Sum
    from orders.models import Order, OrderStatusHistory
    from orders.status import OrderStatus

    yesterday = timezone.localdate() - timedelta(days=1)
    orders = Order.objects.filter(created_at__date=yesterday)

    by_status = {
        row['status']: row['count']
        for row in orders.values('status').annotate(count=Count('id'))
    }
    revenue = orders.exclude(
        status__in=[OrderStatus.CANCELLED, OrderStatus.RETURNED]
    ).aggregate(total=Sum('total'))['total']

    stats = {
        'date': yesterday.isoformat(),
        'total_orders': sum(by_status.values()),
        'by_status': {s: by_status.get(s, 0) for s in OrderStatus.values},
        'revenue': str(revenue or '0.00'),
        'forced_changes': OrderStatusHistory.objects.filter(
            forced=True, created_at__date=yesterday
        ).count(),
    }

    logger.info(
        f"Daily order report {stats['date']}: {stats['total_orders']} orders, "
        f"revenue {stats['revenue']}, by status {stats['by_status']}"
    )
    return stats
