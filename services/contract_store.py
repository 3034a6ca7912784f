"""
Contract persistence.

A "contract" is the JSON document the UI works with:
  {id, customer: {...}, order: {...}, items: [...], parsedAt}
It is stored as one customer row, one order row and the order's item rows.
"""
import datetime
import logging

from addendum_parser import addendum_header_label, parse_addendum_header
from constants import COLUMN_A_LABELS, COLUMN_B_ADDENDUM, COLUMN_B_INITIAL
from models import Customer, Order, OrderItem

logger = logging.getLogger(__name__)

# JSON key -> column
CUSTOMER_FIELDS = {
    'clientName': 'client_name',
    'email': 'email',
    'phone': 'phone',
    'streetAddress': 'street_address',
    'city': 'city',
    'state': 'state',
    'zip': 'zip',
}

ORDER_FIELDS = {
    'orderDate': 'order_date',
    'orderPO': 'order_po',
    'orderDueDate': 'order_due_date',
    'orderType': 'order_type',
    'orderDelivered': 'order_delivered',
    'quoteExpirationDate': 'quote_expiration_date',
    'orderGrandTotal': 'order_grand_total',
    'progressPayments': 'progress_payments',
    'balanceDue': 'balance_due',
    'salesRep': 'sales_rep',
}

# item JSON key -> column for the numeric progress columns
ITEM_NUMBER_FIELDS = {
    'qty': 'qty',
    'rate': 'rate',
    'amount': 'amount',
    'progressOverallPct': 'progress_overall_pct',
    'completedAmount': 'completed_amount',
    'previouslyInvoicedPct': 'previously_invoiced_pct',
    'previouslyInvoicedAmount': 'previously_invoiced_amount',
    'newProgressPct': 'new_progress_pct',
    'thisBill': 'this_bill',
}


class ContractValidationError(ValueError):
    pass


def _number_or_none(value):
    """'' / None / unparsable -> None; '1,200.50' -> 1200.5"""
    if value is None or value == '' or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value).replace(',', '').replace('$', '').strip())
    except ValueError:
        return None


def _text_or_none(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def column_a_label(item):
    if item.get('isBlankRow'):
        return COLUMN_A_LABELS['blank']
    if item.get('isAddendumHeader') or item.get('type') == 'maincategory':
        return COLUMN_A_LABELS['maincategory']
    if item.get('type') == 'subcategory':
        return COLUMN_A_LABELS['subcategory']
    return COLUMN_A_LABELS['item']


def validate_contract(contract):
    if not isinstance(contract, dict):
        raise ContractValidationError('Contract must have customer, order, and items')
    customer = contract.get('customer')
    order = contract.get('order')
    items = contract.get('items')
    if not isinstance(customer, dict) or not isinstance(order, dict) or not isinstance(items, list):
        raise ContractValidationError('Contract must have customer, order, and items')
    if not _text_or_none(customer.get('dbxCustomerId')):
        raise ContractValidationError('dbxCustomerId is required')
    if not _text_or_none(order.get('orderNo')):
        raise ContractValidationError('orderNo is required')


def build_item(order_id, item, row_index):
    """OrderItem row for one contract item dict."""
    row = OrderItem(
        order_id=order_id,
        row_index=row_index,
        column_a_label=column_a_label(item),
        column_b_label=item.get('columnBLabel') or COLUMN_B_INITIAL,
        product_service=item.get('productService') or '',
        item_type=item.get('type') or 'item',
        main_category=item.get('mainCategory') or None,
        sub_category=item.get('subCategory') or None,
    )
    for key, attr in ITEM_NUMBER_FIELDS.items():
        setattr(row, attr, _number_or_none(item.get(key)))
    return row


def replace_items(db, order, items):
    """Drop the order's items and insert the given ones with sequential row_index."""
    order.items.clear()
    db.flush()
    for index, item in enumerate(items or []):
        order.items.append(build_item(order.id, item, index))
    db.flush()
    return order.items


def save_contract(db, contract, user_id=None):
    """
    Upsert customer (by DBX id) and order (by order_no), then replace the
    order's items. Does not commit. Returns (order, is_new).
    """
    validate_contract(contract)
    customer_data = contract['customer']
    order_data = contract['order']
    now = datetime.datetime.now()

    dbx_id = str(customer_data['dbxCustomerId']).strip()
    customer = db.get(Customer, dbx_id)
    if customer is None:
        customer = Customer(dbx_customer_id=dbx_id, created_at=now)
        db.add(customer)
    customer.client_name = customer_data.get('clientName') or ''
    customer.email = _text_or_none(customer_data.get('email'))
    customer.phone = _text_or_none(customer_data.get('phone'))
    customer.street_address = customer_data.get('streetAddress') or ''
    customer.city = customer_data.get('city') or ''
    customer.state = customer_data.get('state') or ''
    customer.zip = customer_data.get('zip') or ''
    customer.updated_at = now

    order_no = str(order_data['orderNo']).strip()
    order = db.query(Order).filter(Order.order_no == order_no).first()
    is_new = order is None
    if is_new:
        order = Order(order_no=order_no, created_at=now, created_by=user_id)
        db.add(order)

    order.customer_id = dbx_id
    order.order_date = _text_or_none(order_data.get('orderDate'))
    order.order_po = _text_or_none(order_data.get('orderPO'))
    order.order_due_date = _text_or_none(order_data.get('orderDueDate'))
    order.order_type = _text_or_none(order_data.get('orderType'))
    order.order_delivered = bool(order_data.get('orderDelivered'))
    order.quote_expiration_date = _text_or_none(order_data.get('quoteExpirationDate'))
    order.order_grand_total = _number_or_none(order_data.get('orderGrandTotal')) or 0
    order.progress_payments = _text_or_none(order_data.get('progressPayments'))
    order.balance_due = _number_or_none(order_data.get('balanceDue')) or 0
    order.sales_rep = _text_or_none(order_data.get('salesRep'))
    if order_data.get('emlFilename'):
        order.eml_filename = order_data['emlFilename']
    order.updated_at = now
    order.updated_by = user_id
    db.flush()

    replace_items(db, order, contract['items'])
    logger.info(f"Saved contract order {order_no} ({len(contract['items'])} items, new={is_new})")
    return order, is_new


def _addendum_key(item):
    """URL id (or number) of an addendum header row, else None."""
    if item.column_a_label != COLUMN_A_LABELS['maincategory'] or item.column_b_label != COLUMN_B_ADDENDUM:
        return None
    parsed = parse_addendum_header(item.product_service)
    if not parsed:
        return None
    number, url_id = parsed
    return url_id or number


def append_addendum(db, order, addendum):
    """
    Append an addendum block (header row + items) to a stored order.
    A block already stored for the same URL id is replaced; other rows keep
    their ids and progress values. Returns the added OrderItem rows.
    """
    url_id = addendum.url_id or addendum.addendum_number
    skipping = False
    for row in sorted(order.items, key=lambda r: r.row_index):
        key = _addendum_key(row)
        if key is not None:
            skipping = key == url_id
        elif row.column_b_label != COLUMN_B_ADDENDUM:
            skipping = False
        if skipping:
            order.items.remove(row)
    db.flush()

    remaining = sorted(order.items, key=lambda r: r.row_index)
    for index, row in enumerate(remaining):
        row.row_index = index

    header = {
        'type': 'maincategory',
        'productService': addendum_header_label(addendum),
        'isAddendumHeader': True,
        'columnBLabel': COLUMN_B_ADDENDUM,
    }
    new_items = [header] + [dict(i.to_dict(), columnBLabel=COLUMN_B_ADDENDUM) for i in addendum.items]
    added = []
    for offset, item in enumerate(new_items):
        row = build_item(order.id, item, len(remaining) + offset)
        order.items.append(row)
        added.append(row)
    order.updated_at = datetime.datetime.now()
    db.flush()
    return added


def item_to_contract_dict(item):
    data = {
        'id': item.id,
        'type': item.item_type,
        'productService': item.product_service,
        'mainCategory': item.main_category,
        'subCategory': item.sub_category,
        'columnBLabel': item.column_b_label or COLUMN_B_INITIAL,
    }
    for key, attr in ITEM_NUMBER_FIELDS.items():
        value = getattr(item, attr)
        if key in ('qty', 'rate', 'amount'):
            data[key] = float(value) if value is not None else ''
        else:
            data[key] = float(value) if value is not None else None

    if item.column_a_label == COLUMN_A_LABELS['blank']:
        data['isBlankRow'] = True
    elif (item.column_b_label == COLUMN_B_ADDENDUM
          and item.column_a_label == COLUMN_A_LABELS['maincategory']
          and (item.product_service or '').startswith('Addendum #')):
        data['isAddendumHeader'] = True
        parsed = parse_addendum_header(item.product_service)
        if parsed:
            data['addendumNumber'], data['addendumUrlId'] = parsed
    return data


def contract_to_dict(order):
    customer = order.customer
    return {
        'id': order.id,
        'customer': {
            'dbxCustomerId': customer.dbx_customer_id,
            'clientName': customer.client_name,
            'email': customer.email,
            'phone': customer.phone,
            'streetAddress': customer.street_address,
            'city': customer.city,
            'state': customer.state,
            'zip': customer.zip,
        },
        'order': {
            'id': order.id,
            'orderNo': order.order_no,
            'orderDate': order.order_date,
            'orderPO': order.order_po,
            'orderDueDate': order.order_due_date,
            'orderType': order.order_type,
            'orderDelivered': bool(order.order_delivered),
            'quoteExpirationDate': order.quote_expiration_date,
            'orderGrandTotal': float(order.order_grand_total or 0),
            'progressPayments': order.progress_payments,
            'balanceDue': float(order.balance_due or 0),
            'salesRep': order.sales_rep,
            'stage': order.stage,
            'status': order.status,
        },
        'items': [item_to_contract_dict(i) for i in sorted(order.items, key=lambda i: i.row_index)],
        'parsedAt': order.created_at.isoformat() if order.created_at else None,
        'isDeleted': customer.deleted_at is not None,
        'deletedAt': customer.deleted_at.isoformat() if customer.deleted_at else None,
    }


def find_contract(db, contract_id):
    """Order by id, else most recent order of a DBX customer id, else by order_no."""
    order = db.get(Order, contract_id)
    if order is not None:
        return order

    customer = db.get(Customer, contract_id)
    if customer is not None:
        order = (db.query(Order)
                 .filter(Order.customer_id == customer.dbx_customer_id)
                 .order_by(Order.created_at.desc())
                 .first())
        if order is not None:
            return order

    return db.query(Order).filter(Order.order_no == contract_id).first()


def contract_from_extraction(location, items, grand_total=None, eml_filename=None):
    """Contract document for a freshly parsed e-mail."""
    loc = location.to_dict()
    return {
        'customer': {
            'dbxCustomerId': loc['dbxCustomerId'],
            'clientName': loc['clientName'],
            'streetAddress': loc['streetAddress'],
            'city': loc['city'],
            'state': loc['state'],
            'zip': loc['zip'],
        },
        'order': {
            'orderNo': loc['orderNo'],
            'orderGrandTotal': grand_total or 0,
            'balanceDue': grand_total or 0,
            'emlFilename': eml_filename,
        },
        'items': [i.to_dict() for i in items],
    }
