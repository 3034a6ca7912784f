"""
Change history (audit log) helpers.

Every edit to customers, orders, order items and invoices appends one
ChangeHistory row describing the field, old value and new value. Rows are
added to the caller's session so they commit together with the edit that
produced them. Logging is best-effort: a failure here is logged and never
propagates into the request.
"""

import datetime
import logging
from decimal import Decimal

from flask import session, has_request_context

from db import get_db
from models import ChangeHistory

logger = logging.getLogger(__name__)

NUMERIC_TOLERANCE = 0.0001


def _current_user_id():
    if not has_request_context():
        return None
    return session.get('user_id')


def _format_number(value):
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def value_to_string(value):
    """Canonical text form of a field value (None for empty)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float, Decimal)):
        return _format_number(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    text = str(value).strip()
    return text if text else None


def _to_float(text):
    try:
        return float(text)
    except (TypeError, ValueError):
        return None


def normalize_numeric_string(value):
    """'100.00' -> '100'; non-numeric strings are returned unchanged."""
    if not value:
        return None
    num = _to_float(value)
    if num is None:
        return value
    return _format_number(num)


def values_are_equal(old_value, new_value):
    old_str = value_to_string(old_value)
    new_str = value_to_string(new_value)

    if old_str is None and new_str is None:
        return True
    if old_str is None or new_str is None:
        return False

    old_num = _to_float(old_str)
    new_num = _to_float(new_str)
    if old_num is not None and new_num is not None:
        return abs(old_num - new_num) < NUMERIC_TOLERANCE

    return old_str == new_str


def log_change(change_type, field_name, old_value, new_value, customer_id=None,
               order_id=None, order_item_id=None, row_index=None, user_id=None, db=None):
    """Append one change row. Returns the row, or None when nothing was logged."""
    try:
        user_id = user_id or _current_user_id()
        # anonymous edits (startup scripts, migrations) are not audited
        if not user_id:
            return None

        db = db or get_db()
        entry = ChangeHistory(
            change_type=change_type,
            field_name=field_name,
            old_value=value_to_string(old_value),
            new_value=value_to_string(new_value),
            changed_by=user_id,
            customer_id=customer_id,
            order_id=order_id,
            order_item_id=order_item_id,
            row_index=row_index,
            changed_at=datetime.datetime.now(),
        )
        db.add(entry)
        return entry
    except Exception as e:
        logger.error(f"Failed to log change {change_type}/{field_name}: {e}")
        return None


def log_if_changed(change_type, field_name, old_value, new_value, **options):
    if values_are_equal(old_value, new_value):
        return None
    return log_change(change_type, field_name, old_value, new_value, **options)


def log_order_item_change(change_type, field_name, old_value, new_value, order_id,
                          customer_id, order_item_id=None, row_index=None, **options):
    return log_change(change_type, field_name, old_value, new_value,
                      order_id=order_id, customer_id=customer_id,
                      order_item_id=order_item_id, row_index=row_index, **options)


def log_customer_edit(field_name, old_value, new_value, customer_id, **options):
    return log_if_changed('customer_edit', field_name, old_value, new_value,
                          customer_id=customer_id, **options)


def log_order_edit(field_name, old_value, new_value, order_id, customer_id, **options):
    return log_if_changed('order_edit', field_name, old_value, new_value,
                          order_id=order_id, customer_id=customer_id, **options)


def log_invoice_change(change_type, field_name, old_value, new_value, order_id,
                       customer_id, row_index=None, **options):
    return log_change(change_type, field_name, old_value, new_value,
                      order_id=order_id, customer_id=customer_id, row_index=row_index, **options)


def log_contract_add(customer_id, order_id, client_name, order_no, **options):
    description = f"Contract for {client_name} - Order #{order_no}"
    return log_change('contract_add', 'contract', None, description,
                      customer_id=customer_id, order_id=order_id, **options)


def log_stage_update(old_stage, new_stage, order_id, customer_id, **options):
    return log_change('stage_update', 'stage', old_stage, new_stage,
                      order_id=order_id, customer_id=customer_id, **options)


def log_customer_delete(customer_id, customer_name, **options):
    return log_change('customer_delete', 'customer', customer_name, 'deleted',
                      customer_id=customer_id, **options)


def log_customer_restore(customer_id, customer_name, **options):
    return log_change('customer_restore', 'customer', 'deleted', customer_name,
                      customer_id=customer_id, **options)


def log_row_add(product_service, order_id, customer_id, row_index=None, order_item_id=None, **options):
    return log_change('row_add', 'row', None, product_service, order_id=order_id,
                      customer_id=customer_id, order_item_id=order_item_id,
                      row_index=row_index, **options)


def log_row_delete(product_service, order_id, customer_id, row_index=None, **options):
    return log_change('row_delete', 'row', product_service, None, order_id=order_id,
                      customer_id=customer_id, row_index=row_index, **options)


def diff_fields(obj, new_values, mapping):
    """
    Compare an ORM object against incoming JSON values.

    mapping: {json_key: attribute_name}. Keys missing from new_values are
    ignored. Returns [(json_key, attribute_name, old, new)] for changed fields.
    """
    changes = []
    for key, attr in mapping.items():
        if key not in new_values:
            continue
        old = getattr(obj, attr, None)
        new = new_values.get(key)
        if not values_are_equal(old, new):
            changes.append((key, attr, old, new))
    return changes


HISTORY_PERIODS = {
    'day': datetime.timedelta(days=1),
    'week': datetime.timedelta(days=7),
    'month': datetime.timedelta(days=30),
}


def period_start(period, now=None):
    """Lower bound of changed_at for day / week / month (30 days); None for all."""
    delta = HISTORY_PERIODS.get(period)
    if delta is None:
        return None
    return (now or datetime.datetime.now()) - delta


def format_change(change):
    """History entry with the customer and order it refers to."""
    data = change.to_dict()
    if data['changedBy']['username'] is None:
        data['changedBy']['username'] = 'Unknown'
    data['customer'] = {
        'dbxCustomerId': change.customer.dbx_customer_id,
        'clientName': change.customer.client_name,
    } if change.customer else None
    data['order'] = {
        'id': change.order.id,
        'orderNo': change.order.order_no,
    } if change.order else None
    return data


def history_page(query, page, limit):
    """Newest-first page of a ChangeHistory query, in the list response shape."""
    total = query.count()
    offset = (page - 1) * limit
    changes = (query.order_by(ChangeHistory.changed_at.desc())
               .offset(offset).limit(limit).all())
    return {
        'success': True,
        'changes': [format_change(c) for c in changes],
        'total': total,
        'page': page,
        'limit': limit,
        'hasMore': offset + limit < total,
    }
