"""
Celery tasks for the order item negotiation.

Tasks:
    - notify_order_item_action: Notify the customer (and admins for
      suggestions) after a committed store or admin action
    - generate_daily_negotiation_report: Daily per-status item counts
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.utils import timezone

logger = logging.getLogger(__name__)

NOTIFICATION_MESSAGES = {
    'accept': 'Store {store} accepted {product} at {price}',
    'refuse': 'Store {store} cannot supply {product}: {notes}',
    'suggest': 'Store {store} suggests {suggested} instead of {product} at {price}',
    'approve': 'Substitute {product} approved for your order {reference}',
}


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def notify_order_item_action(self, order_item_id: int, action: str):
    """
    Deliver the notification for a negotiation action.

    Push and email delivery are external; the message is logged here and
    returned so a delivery backend can consume it.
    """
    from orders.models import OrderItem

    try:
        item = OrderItem.objects.select_related(
            'order', 'order__customer', 'product', 'suggested_product', 'store'
        ).get(id=order_item_id)
    except OrderItem.DoesNotExist:
        logger.error(f"Order item #{order_item_id} not found for notification")
        return {'status': 'error', 'message': f'Order item {order_item_id} not found'}

    template = NOTIFICATION_MESSAGES.get(action)
    if template is None:
        logger.warning(f"Unknown negotiation action '{action}' for order item #{order_item_id}")
        return {'status': 'skipped', 'message': f'Unknown action {action}'}

    message = template.format(
        store=item.store.name,
        product=item.product.name,
        suggested=item.suggested_product.name if item.suggested_product else '',
        price=item.store_price,
        notes=item.store_notes or '',
        reference=item.order.reference,
    )

    recipients = [item.order.customer.get_username()]
    if action == 'suggest':
        recipients.append('admins')

    logger.info(f"[NOTIFY] Order {item.order.reference} -> {', '.join(recipients)}: {message}")

    return {
        'status': 'success',
        'order_item_id': item.id,
        'recipients': recipients,
        'message': message,
    }


@shared_task
def generate_daily_negotiation_report():
    """
    Per-status counts of store actions taken yesterday.

    Can be scheduled via Celery Beat for daily execution.
    """
    from orders.models import OrderItem
    from orders.services import negotiation_stats
    from django.db.models import Count

    today = timezone.now().date()
    yesterday = today - timedelta(days=1)

    items = OrderItem.objects.filter(store_action_at__date=yesterday)
    stats = negotiation_stats(items)

    per_store = list(
        items.values('store__name').annotate(actions=Count('id')).order_by('-actions')[:10]
    )
    busiest = ', '.join(f"{row['store__name']} ({row['actions']})" for row in per_store) or '-'

    report = f"""
    ===============================================
    DAILY NEGOTIATION REPORT - {yesterday}
    ===============================================
    Store actions: {stats['total_items']}
    Accepted: {stats['accepted']}
    Refused: {stats['refused']}
    Suggested: {stats['suggested']}
    Accepted revenue: {stats['accepted_revenue']}
    Busiest stores: {busiest}
    ===============================================
    """

    logger.info(report)

    return stats

