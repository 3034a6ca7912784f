"""Customer status derived from the customer's orders and invoices."""
import datetime
import logging

from models import Customer, Order, Invoice

logger = logging.getLogger(__name__)

PENDING = 'pending_updates'
COMPLETED = 'completed'


def calculate_customer_status(db, dbx_customer_id):
    """
    pending_updates: no orders, any order still pending, or any invoice
    with an open balance. completed otherwise.
    """
    orders = db.query(Order).filter(Order.customer_id == dbx_customer_id).all()
    if not orders:
        return PENDING

    if any(o.status != COMPLETED for o in orders):
        return PENDING

    order_ids = [o.id for o in orders]
    invoices = db.query(Invoice).filter(Invoice.order_id.in_(order_ids)).all()
    if any(inv.open_balance() > 0 for inv in invoices):
        return PENDING

    return COMPLETED


def update_customer_status(db, dbx_customer_id):
    customer = db.get(Customer, dbx_customer_id)
    if not customer:
        return None
    new_status = calculate_customer_status(db, dbx_customer_id)
    if customer.status != new_status:
        logger.info(f"Customer {dbx_customer_id} status {customer.status} -> {new_status}")
        customer.status = new_status
        customer.updated_at = datetime.datetime.now()
    return new_status


def recalculate_customer_status_for_order(db, order_id):
    order = db.get(Order, order_id)
    if not order:
        return None
    return update_customer_status(db, order.customer_id)
