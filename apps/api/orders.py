import datetime
import re

from flask import Blueprint, jsonify, session, current_app

from apps.auth import login_required, role_required
from db import get_db
from models import Order, OrderItem, Invoice, Customer
from constants import (
    EDITOR_ROLES, STAFF_ROLES, INVOICE_ROLES, PROJECT_STAGES, CUSTOMER_STATUS,
    INVOICE_ROW_START, INVOICE_ROW_END, MAX_INVOICES,
)
from services.contract_store import build_item
from services.change_history import (
    log_change, log_if_changed, log_order_edit, log_stage_update, log_customer_edit,
    log_invoice_change,
)
from services.customer_status import recalculate_customer_status_for_order
from services.invoice_validation import (
    parse_decimal, linked_amounts_by_item, validate_linked_line_items,
)
from services.order_validation import validate_order_items_total
from services.request_utils import get_json_payload

orders_bp = Blueprint('orders', __name__, url_prefix='/api')

DATE_PATTERN = re.compile(r'^(0[1-9]|1[0-2])/(0[1-9]|[12][0-9]|3[01])/\d{4}$')

# JSON key -> column, for the project-status dates
PROJECT_DATE_FIELDS = {
    'contractDate': 'contract_date',
    'firstBuildInvoiceDate': 'first_build_invoice_date',
    'projectStartDate': 'project_start_date',
    'projectEndDate': 'project_end_date',
}

INVOICE_FIELDS = {
    'invoiceNumber': 'invoice_number',
    'invoiceDate': 'invoice_date',
    'invoiceAmount': 'invoice_amount',
    'paymentsReceived': 'payments_received',
    'exclude': 'exclude',
}


def _order_or_404(db, order_id):
    order = db.get(Order, order_id)
    if order is None:
        return None, (jsonify({'success': False, 'message': 'Order not found', 'id': order_id}), 404)
    return order, None


def completed_amount_for(item):
    """(progress % / 100) * amount for detail rows, else the explicit value."""
    amount = parse_decimal(item.get('amount'))
    pct = parse_decimal(item.get('progressOverallPct'))
    if item.get('type') == 'item' and pct > 0 and amount > 0:
        return round(pct / 100 * amount, 2)
    explicit = item.get('completedAmount')
    return parse_decimal(explicit) if explicit not in (None, '') else None


@orders_bp.route('/orders/<order_id>', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_order(order_id):
    db = get_db()
    order, error = _order_or_404(db, order_id)
    if error:
        return error

    data = order.to_dict()
    data['items'] = [i.to_dict() for i in order.items]
    data['invoices'] = [inv.to_dict() for inv in order.invoices]
    data['totals'] = validate_order_items_total(order.items, order.order_grand_total).to_dict()
    return jsonify({'success': True, 'order': data})


@orders_bp.route('/orders/<order_id>/items', methods=['PUT'])
@login_required
@role_required(EDITOR_ROLES)
def replace_order_items(order_id):
    """Replace every item of the order. Row indexes are reassigned in list order."""
    db = get_db()
    items = get_json_payload().get('items')
    if items is None:
        items = []
    if not isinstance(items, list):
        return jsonify({'success': False, 'message': 'items must be an array'}), 400

    order, error = _order_or_404(db, order_id)
    if error:
        return error

    try:
        previous_count = len(order.items)
        order.items.clear()
        db.flush()
        for index, item in enumerate(items):
            row = build_item(order.id, item, index)
            row.completed_amount = completed_amount_for(item)
            order.items.append(row)

        order.updated_at = datetime.datetime.now()
        order.updated_by = session.get('user_id')
        log_change('row_update', 'items', f"{previous_count} items", f"{len(items)} items",
                   order_id=order.id, customer_id=order.customer_id, db=db)
        db.flush()
        recalculate_customer_status_for_order(db, order.id)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update items of order {order_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update order items'}), 500

    current_app.logger.info(f"Order {order_id}: replaced {previous_count} items with {len(items)}")
    return jsonify({'success': True, 'message': 'Order items updated successfully',
                    'items': [i.to_dict() for i in order.items]})


@orders_bp.route('/orders/<order_id>/items/<item_id>', methods=['PATCH'])
@login_required
@role_required(EDITOR_ROLES)
def update_order_item(order_id, item_id):
    """Edit cells of one item. Each changed cell is logged as cell_edit."""
    db = get_db()
    payload = get_json_payload()

    item = db.get(OrderItem, item_id)
    if item is None or item.order_id != order_id:
        return jsonify({'success': False, 'message': 'Order item not found'}), 404

    unknown = [k for k in payload if k not in OrderItem.EDITABLE_FIELDS]
    if unknown:
        return jsonify({'success': False, 'message': f"Unknown fields: {', '.join(unknown)}"}), 400

    order = item.order
    try:
        for key, value in payload.items():
            attr = OrderItem.EDITABLE_FIELDS[key]
            old = getattr(item, attr)
            if attr == 'product_service':
                new = value or ''
            elif attr in ('main_category', 'sub_category'):
                new = value or None
            else:
                new = parse_decimal(value) if value not in (None, '') else None
            log_if_changed('cell_edit', key, old, new, order_id=order.id,
                           customer_id=order.customer_id, order_item_id=item.id,
                           row_index=item.row_index, db=db)
            setattr(item, attr, new)

        if item.item_type == 'item' and ('progressOverallPct' in payload or 'amount' in payload):
            item.completed_amount = completed_amount_for(item.to_dict())
        item.updated_at = datetime.datetime.now()
        order.updated_at = item.updated_at
        db.flush()
        recalculate_customer_status_for_order(db, order.id)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update item {item_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update order item'}), 500

    return jsonify({'success': True, 'item': item.to_dict()})


@orders_bp.route('/orders/<order_id>/project-status', methods=['PATCH'])
@login_required
@role_required(EDITOR_ROLES)
def update_project_status(order_id):
    db = get_db()
    payload = get_json_payload()

    for key in PROJECT_DATE_FIELDS:
        value = payload.get(key)
        if value and not DATE_PATTERN.match(str(value)):
            return jsonify({'success': False, 'message': f"Invalid {key} format. Expected MM/DD/YYYY"}), 400

    stage = payload.get('stage')
    if stage and stage not in PROJECT_STAGES:
        return jsonify({'success': False,
                        'message': f"Invalid stage value. Must be one of: {', '.join(PROJECT_STAGES)}"}), 400

    order, error = _order_or_404(db, order_id)
    if error:
        return error

    user_id = session.get('user_id')
    try:
        if 'stage' in payload and order.stage != (stage or None):
            log_stage_update(order.stage, stage or None, order.id, order.customer_id, user_id=user_id, db=db)
            order.stage = stage or None
            # order status follows the project stage; customer status is derived from it
            order.status = CUSTOMER_STATUS['COMPLETED'] if stage == 'completed' else CUSTOMER_STATUS['PENDING_UPDATES']

        for key, attr in PROJECT_DATE_FIELDS.items():
            if key not in payload:
                continue
            new = payload[key] or None
            log_order_edit(key, getattr(order, attr), new, order.id, order.customer_id, user_id=user_id, db=db)
            setattr(order, attr, new)

        if stage == 'completed':
            customer = db.get(Customer, order.customer_id)
            if customer and customer.status != CUSTOMER_STATUS['COMPLETED']:
                log_customer_edit('status', customer.status, CUSTOMER_STATUS['COMPLETED'],
                                  customer.dbx_customer_id, user_id=user_id, db=db)
                customer.status = CUSTOMER_STATUS['COMPLETED']
                customer.updated_at = datetime.datetime.now()

        order.updated_at = datetime.datetime.now()
        order.updated_by = user_id
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update project status of {order_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update project status'}), 500

    return jsonify({'success': True, 'order': order.to_dict()})


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def _invoice_or_error(db, order_id, invoice_id):
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        return None, (jsonify({'success': False, 'message': 'Invoice not found', 'id': invoice_id}), 404)
    if invoice.order_id != order_id:
        return None, (jsonify({'success': False, 'message': 'Invoice does not belong to this order'}), 400)
    return invoice, None


def _requested_links(payload):
    """[{'orderItemId', 'thisBillAmount'?}] from linkedLineItemIds or linkedLineItems, else None."""
    if 'linkedLineItemIds' in payload:
        ids = payload['linkedLineItemIds']
        if not isinstance(ids, list):
            raise ValueError('linkedLineItemIds must be an array')
        return [{'orderItemId': i} for i in ids]
    if 'linkedLineItems' in payload:
        links = payload['linkedLineItems']
        if not isinstance(links, list):
            raise ValueError('linkedLineItems must be an array')
        return links
    return None


def _validate_amount(value):
    if value in (None, ''):
        return
    try:
        amount = float(value)
    except (TypeError, ValueError):
        amount = -1
    if amount < 0:
        raise ValueError('invoiceAmount must be a valid positive number')


@orders_bp.route('/orders/<order_id>/invoices', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def list_invoices(order_id):
    db = get_db()
    order, error = _order_or_404(db, order_id)
    if error:
        return error
    return jsonify({'success': True, 'invoices': [inv.to_dict() for inv in order.invoices]})


@orders_bp.route('/orders/<order_id>/invoices', methods=['POST'])
@login_required
@role_required(INVOICE_ROLES)
def create_invoice(order_id):
    db = get_db()
    payload = get_json_payload()
    order, error = _order_or_404(db, order_id)
    if error:
        return error

    try:
        _validate_amount(payload.get('invoiceAmount'))
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    existing = sorted(order.invoices, key=lambda inv: inv.row_index)
    next_row = (existing[-1].row_index + 1) if existing else INVOICE_ROW_START
    if next_row > INVOICE_ROW_END:
        return jsonify({'success': False,
                        'message': f"Maximum number of invoices reached ({MAX_INVOICES} invoices)"}), 400

    try:
        invoice = Invoice(
            order_id=order.id,
            invoice_number=payload.get('invoiceNumber') or None,
            invoice_date=payload.get('invoiceDate') or None,
            invoice_amount=parse_decimal(payload.get('invoiceAmount')) if payload.get('invoiceAmount') not in (None, '') else None,
            payments_received=parse_decimal(payload.get('paymentsReceived')),
            exclude=bool(payload.get('exclude')),
            row_index=next_row,
        )
        db.add(invoice)
        db.flush()
        log_invoice_change('row_add', 'invoice', None, f"Invoice {invoice.invoice_number or 'New'}",
                           order.id, order.customer_id, row_index=next_row, db=db)
        recalculate_customer_status_for_order(db, order.id)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to create invoice for {order_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to create invoice'}), 500

    return jsonify({'success': True, 'invoice': invoice.to_dict()}), 201


@orders_bp.route('/orders/<order_id>/invoices/<invoice_id>', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_invoice(order_id, invoice_id):
    db = get_db()
    invoice, error = _invoice_or_error(db, order_id, invoice_id)
    if error:
        return error
    return jsonify({'success': True, 'invoice': invoice.to_dict()})


def _optional_number(value):
    return float(value) if value else None


@orders_bp.route('/orders/<order_id>/invoices/<invoice_id>/line-items', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_invoice_line_items(order_id, invoice_id):
    """Order items linked to an invoice, with the amount billed on it. Links to removed items are dropped."""
    db = get_db()
    invoice, error = _invoice_or_error(db, order_id, invoice_id)
    if error:
        return error

    links = [l for l in (invoice.linked_line_items or []) if isinstance(l, dict) and l.get('orderItemId')]
    items = {}
    if links:
        item_ids = [l['orderItemId'] for l in links]
        items = {i.id: i for i in db.query(OrderItem).filter(OrderItem.id.in_(item_ids)).all()}

    linked = []
    for link in links:
        item = items.get(link['orderItemId'])
        if item is None:
            continue
        linked.append({
            'orderItemId': item.id,
            'thisBillAmount': parse_decimal(link.get('thisBillAmount')),
            'productService': item.product_service,
            'amount': parse_decimal(item.amount),
            'qty': _optional_number(item.qty),
            'rate': _optional_number(item.rate),
            'progressOverallPct': _optional_number(item.progress_overall_pct),
            'previouslyInvoicedPct': _optional_number(item.previously_invoiced_pct),
            'currentThisBill': _optional_number(item.this_bill),
        })

    return jsonify({
        'success': True,
        'linkedItems': linked,
        'totalBilledAmount': round(sum(l['thisBillAmount'] for l in linked), 2),
    })


@orders_bp.route('/orders/<order_id>/invoices/<invoice_id>', methods=['PATCH'])
@login_required
@role_required(INVOICE_ROLES)
def update_invoice(order_id, invoice_id):
    """
    Update invoice fields. Linking line items recalculates the invoice
    amount from their THIS BILL values; an empty list clears the links.
    """
    db = get_db()
    payload = get_json_payload()
    try:
        _validate_amount(payload.get('invoiceAmount'))
        links = _requested_links(payload)
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    invoice, error = _invoice_or_error(db, order_id, invoice_id)
    if error:
        return error
    order = invoice.order

    new_values = {k: payload[k] for k in INVOICE_FIELDS if k in payload}
    if links is not None:
        if links:
            items_by_id = {i.id: i for i in order.items if i.item_type == 'item'}
            active = [inv for inv in order.invoices if not inv.exclude]
            existing_totals = linked_amounts_by_item(active, exclude_invoice_id=invoice.id)
            normalized, errors = validate_linked_line_items(links, items_by_id, existing_totals)
            if errors:
                return jsonify({'success': False, 'message': f"Validation failed for {len(errors)} item(s)",
                                'validationErrors': errors}), 400
            new_values['invoiceAmount'] = round(sum(l['thisBillAmount'] for l in normalized), 2)
        else:
            normalized = None

    user_id = session.get('user_id')
    try:
        for key, value in new_values.items():
            attr = INVOICE_FIELDS[key]
            if attr == 'exclude':
                value = bool(value)
            elif attr in ('invoice_amount', 'payments_received'):
                value = parse_decimal(value) if value not in (None, '') else (0 if attr == 'payments_received' else None)
            else:
                value = value or None
            log_if_changed('row_update', key, getattr(invoice, attr), value, order_id=order.id,
                           customer_id=order.customer_id, row_index=invoice.row_index,
                           user_id=user_id, db=db)
            setattr(invoice, attr, value)
        if links is not None:
            invoice.linked_line_items = normalized
        invoice.updated_at = datetime.datetime.now()
        db.flush()
        recalculate_customer_status_for_order(db, order.id)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update invoice {invoice_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update invoice'}), 500

    return jsonify({'success': True, 'invoice': invoice.to_dict()})


@orders_bp.route('/orders/<order_id>/invoices/<invoice_id>', methods=['DELETE'])
@login_required
@role_required(INVOICE_ROLES)
def delete_invoice(order_id, invoice_id):
    db = get_db()
    invoice, error = _invoice_or_error(db, order_id, invoice_id)
    if error:
        return error
    order = invoice.order

    try:
        log_invoice_change('row_delete', 'invoice', f"Invoice {invoice.invoice_number or invoice.id}", None,
                           order.id, order.customer_id, row_index=invoice.row_index, db=db)
        order.invoices.remove(invoice)
        db.flush()
        recalculate_customer_status_for_order(db, order.id)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to delete invoice {invoice_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to delete invoice'}), 500

    return jsonify({'success': True, 'message': 'Invoice deleted successfully'})


def invoice_summary(order):
    """Billing summary block of the progress invoice."""
    original = parse_decimal(order.order_grand_total)
    total_completed = 0.0
    for item in order.items:
        if item.item_type != 'item':
            continue
        amount = parse_decimal(item.amount)
        pct = parse_decimal(item.progress_overall_pct)
        if amount > 0 and pct > 0:
            total_completed += pct / 100 * amount

    payments = sum(parse_decimal(inv.payments_received) for inv in order.invoices if not inv.exclude)
    less_payments = -payments
    return {
        'originalInvoice': original,
        'totalCompleted': round(total_completed, 2),
        'balanceRemaining': round(original - total_completed, 2),
        'percentCompleted': round(total_completed / original * 100, 2) if original > 0 else 0,
        'lessPaymentsReceived': round(less_payments, 2),
        'totalDueUponReceipt': round(total_completed + less_payments, 2),
    }


@orders_bp.route('/orders/<order_id>/invoice-summary', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_invoice_summary(order_id):
    db = get_db()
    order, error = _order_or_404(db, order_id)
    if error:
        return error
    return jsonify({'success': True, 'summary': invoice_summary(order)})
