"""
Customer API: listing, edits, trash (soft delete / recover / purge),
validation alerts and the per-customer change history.
"""
import datetime
import hmac
import os

from flask import Blueprint, jsonify, request, session, current_app
from sqlalchemy import or_

from apps.auth import login_required, role_required, log_access
from db import get_db
from models import (
    Customer, Order, OrderItem, Invoice, ChangeHistory, AlertAcknowledgment, OrderApproval, User,
)
from constants import (
    STAFF_ROLES, EDITOR_ROLES, INVOICE_ROLES, CUSTOMER_STATUS, DEFAULT_PROJECT_STAGE,
    TRASH_RETENTION_DAYS, ALERT_ORDER_ITEMS_MISMATCH,
)
from services.change_history import (
    log_customer_edit, log_customer_delete, log_customer_restore, period_start, history_page,
)
from services.contract_store import CUSTOMER_FIELDS
from services.customer_status import update_customer_status
from services.order_validation import validate_order_items_total
from services.request_utils import get_json_payload, parse_bool_arg, get_pagination

customers_bp = Blueprint('customers', __name__, url_prefix='/api')


def _customer_or_404(db, customer_id):
    customer = db.get(Customer, customer_id)
    if customer is None:
        return None, (jsonify({'success': False, 'message': 'Customer not found'}), 404)
    return customer, None


def _acknowledged_types(db, customer_id):
    rows = db.query(AlertAcknowledgment.alert_type).filter(AlertAcknowledgment.customer_id == customer_id).all()
    return {r[0] for r in rows}


def order_alerts(orders):
    """[(order, TotalsCheck)] for orders whose item total disagrees with the grand total."""
    alerts = []
    for order in orders:
        check = validate_order_items_total(order.items, order.order_grand_total)
        if not check.is_valid:
            alerts.append((order, check))
    return alerts


def customer_summary(db, customer):
    """List row: customer fields plus stage of the latest order, contract count and open alerts."""
    orders = sorted(customer.orders, key=lambda o: o.created_at or datetime.datetime.min, reverse=True)
    stage = (orders[0].stage if orders else None) or DEFAULT_PROJECT_STAGE

    if stage == 'completed' and customer.status != CUSTOMER_STATUS['COMPLETED']:
        update_customer_status(db, customer.dbx_customer_id)

    issues = []
    if ALERT_ORDER_ITEMS_MISMATCH not in _acknowledged_types(db, customer.dbx_customer_id):
        issues = [f"Order {order.order_no}: Items total mismatch" for order, _ in order_alerts(orders)]

    data = customer.to_dict()
    data.update({
        'id': customer.dbx_customer_id,
        'stage': stage,
        'contractCount': len(orders),
        'hasValidationIssues': bool(issues),
        'validationIssues': issues or None,
    })
    return data


@customers_bp.route('/customers', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def list_customers():
    db = get_db()
    status = request.args.get('status')

    query = db.query(Customer)
    if parse_bool_arg('trashOnly'):
        query = query.filter(Customer.deleted_at.isnot(None))
    elif not parse_bool_arg('includeDeleted'):
        query = query.filter(Customer.deleted_at.is_(None))
    if status and status != 'all':
        query = query.filter(Customer.status == status)

    try:
        customers = query.order_by(Customer.updated_at.desc()).all()
        result = [customer_summary(db, c) for c in customers]
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to list customers: {e}")
        return jsonify({'success': False, 'message': 'Failed to fetch customers'}), 500

    return jsonify({'success': True, 'customers': result})


@customers_bp.route('/customers/check-exists', methods=['GET'])
@login_required
def check_customer_exists():
    dbx_customer_id = request.args.get('dbxCustomerId')
    if not dbx_customer_id:
        return jsonify({'success': False, 'message': 'dbxCustomerId is required'}), 400
    return jsonify({'exists': get_db().get(Customer, dbx_customer_id) is not None})


@customers_bp.route('/customers/cleanup-trash', methods=['POST'])
def cleanup_trash():
    """
    Purge customers trashed more than TRASH_RETENTION_DAYS ago.
    With CLEANUP_API_TOKEN set, a matching bearer token is required (cron);
    otherwise an admin session is.
    """
    expected = os.environ.get('CLEANUP_API_TOKEN')
    if expected:
        supplied = request.headers.get('Authorization', '')
        if not hmac.compare_digest(supplied, f"Bearer {expected}"):
            return jsonify({'success': False, 'message': 'Unauthorized'}), 401
    elif session.get('role') != 'admin':
        return jsonify({'success': False, 'message': 'Unauthorized'}), 401

    db = get_db()
    cutoff = datetime.datetime.now() - datetime.timedelta(days=TRASH_RETENTION_DAYS)
    expired = (db.query(Customer)
               .filter(Customer.deleted_at.isnot(None), Customer.deleted_at < cutoff)
               .all())
    current_app.logger.info(f"[CLEANUP] {len(expired)} customers trashed before {cutoff.isoformat()}")

    deleted, errors = 0, []
    for customer in expired:
        customer_id = customer.dbx_customer_id
        try:
            purge_customer(db, customer_id)
            db.commit()
            deleted += 1
        except Exception as e:
            db.rollback()
            errors.append(f"Failed to delete customer {customer_id}: {e}")
            current_app.logger.error(f"[CLEANUP] {errors[-1]}")

    return jsonify({
        'success': True,
        'message': f"Cleanup completed. Permanently deleted {deleted} customer(s).",
        'deletedCount': deleted,
        'errors': errors or None,
    })


@customers_bp.route('/customers/<customer_id>', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_customer(customer_id):
    db = get_db()
    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error
    data = customer.to_dict()
    data['orders'] = [o.to_dict() for o in customer.orders]
    return jsonify({'success': True, 'customer': data})


@customers_bp.route('/customers/<customer_id>', methods=['PUT'])
@login_required
@role_required(EDITOR_ROLES)
def update_customer(customer_id):
    db = get_db()
    payload = get_json_payload()
    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error

    if 'clientName' in payload and not (payload.get('clientName') or '').strip():
        return jsonify({'success': False, 'message': 'clientName cannot be empty'}), 400

    user_id = session.get('user_id')
    try:
        for key, attr in CUSTOMER_FIELDS.items():
            if key not in payload:
                continue
            new = payload[key]
            new = new.strip() if isinstance(new, str) else new
            if attr in ('email', 'phone'):
                new = new or None
            else:
                new = new or ''
            log_customer_edit(key, getattr(customer, attr), new, customer_id, user_id=user_id, db=db)
            setattr(customer, attr, new)
        customer.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update customer {customer_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update customer'}), 500

    return jsonify({'success': True, 'customer': customer.to_dict()})


@customers_bp.route('/customers/<customer_id>/invoicing-status', methods=['PATCH'])
@login_required
@role_required(INVOICE_ROLES)
def update_invoicing_status(customer_id):
    db = get_db()
    status = get_json_payload().get('status')
    if status not in CUSTOMER_STATUS.values():
        return jsonify({'success': False,
                        'message': 'Invalid status. Must be "pending_updates" or "completed"'}), 400

    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error
    try:
        log_customer_edit('status', customer.status, status, customer_id, db=db)
        customer.status = status
        customer.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update invoicing status of {customer_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update invoicing status'}), 500

    return jsonify({'success': True, 'customer': {
        'id': customer.dbx_customer_id, 'dbxCustomerId': customer.dbx_customer_id, 'status': customer.status,
    }})


@customers_bp.route('/customers/<customer_id>', methods=['DELETE'])
@login_required
@role_required(EDITOR_ROLES)
def delete_customer(customer_id):
    """Move to trash. Orders stay but drop out of the default listings."""
    db = get_db()
    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error
    if customer.deleted_at:
        return jsonify({'success': False, 'message': 'Customer is already deleted'}), 400

    now = datetime.datetime.now()
    try:
        log_customer_delete(customer_id, customer.client_name or 'Unknown Customer', db=db)
        customer.deleted_at = now
        customer.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to delete customer {customer_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to delete customer'}), 500

    return jsonify({
        'success': True,
        'message': f"Customer moved to trash. It will be permanently deleted after {TRASH_RETENTION_DAYS} days.",
        'deletedAt': now.isoformat(),
    })


@customers_bp.route('/customers/<customer_id>/recover', methods=['POST'])
@login_required
@role_required(EDITOR_ROLES)
def recover_customer(customer_id):
    db = get_db()
    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error
    if not customer.deleted_at:
        return jsonify({'success': False, 'message': 'Customer is not in trash'}), 400

    try:
        log_customer_restore(customer_id, customer.client_name or 'Unknown Customer', db=db)
        customer.deleted_at = None
        customer.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to recover customer {customer_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to recover customer'}), 500

    return jsonify({'success': True, 'message': 'Customer recovered from trash successfully'})


def purge_customer(db, customer_id):
    """
    Delete a customer with its orders, items, invoices, history and alert
    acknowledgments. Does not commit. Customers referenced by an order
    approval are kept (ValueError).
    """
    if db.query(OrderApproval).filter(OrderApproval.customer_id == customer_id).count():
        raise ValueError('Customer is referenced by order approvals')

    order_ids = [row[0] for row in db.query(Order.id).filter(Order.customer_id == customer_id).all()]
    item_ids = []
    if order_ids:
        item_ids = [row[0] for row in db.query(OrderItem.id).filter(OrderItem.order_id.in_(order_ids)).all()]

    db.query(AlertAcknowledgment).filter(
        AlertAcknowledgment.customer_id == customer_id).delete(synchronize_session=False)

    history_filter = [ChangeHistory.customer_id == customer_id]
    if order_ids:
        history_filter.append(ChangeHistory.order_id.in_(order_ids))
    if item_ids:
        history_filter.append(ChangeHistory.order_item_id.in_(item_ids))
    db.query(ChangeHistory).filter(or_(*history_filter)).delete(synchronize_session=False)

    if order_ids:
        db.query(Invoice).filter(Invoice.order_id.in_(order_ids)).delete(synchronize_session=False)
        db.query(OrderItem).filter(OrderItem.order_id.in_(order_ids)).delete(synchronize_session=False)
        db.query(Order).filter(Order.id.in_(order_ids)).delete(synchronize_session=False)
    db.query(Customer).filter(Customer.dbx_customer_id == customer_id).delete(synchronize_session=False)
    db.expire_all()
    return len(order_ids)


@customers_bp.route('/customers/<customer_id>/permanent-delete', methods=['POST'])
@login_required
@role_required(['admin'])
def permanent_delete_customer(customer_id):
    db = get_db()
    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error
    client_name = customer.client_name

    try:
        order_count = purge_customer(db, customer_id)
        db.commit()
    except ValueError as e:
        db.rollback()
        return jsonify({'success': False, 'message': str(e)}), 409
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to permanently delete customer {customer_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to permanently delete customer'}), 500

    log_access(f"Permanent delete: customer {customer_id} ({client_name})", session.get('user_id'),
               {'customerId': customer_id, 'orders': order_count})
    return jsonify({'success': True,
                    'message': 'Customer and all associated data permanently deleted successfully'})


@customers_bp.route('/customers/<customer_id>/alerts', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_customer_alerts(customer_id):
    """Current validation alerts and who acknowledged which alert type."""
    db = get_db()
    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error

    acknowledgments = db.query(AlertAcknowledgment).filter(AlertAcknowledgment.customer_id == customer_id).all()
    ack_list = []
    for ack in acknowledgments:
        user = db.get(User, ack.acknowledged_by)
        ack_list.append({
            'alertType': ack.alert_type,
            'acknowledgedBy': {'id': user.id if user else None, 'username': user.username if user else 'Unknown'},
            'acknowledgedAt': ack.acknowledged_at.isoformat() if ack.acknowledged_at else None,
        })

    acknowledged = {a.alert_type for a in acknowledgments}
    alerts = [{
        'alertType': ALERT_ORDER_ITEMS_MISMATCH,
        'orderId': order.id,
        'orderNo': order.order_no,
        'acknowledged': ALERT_ORDER_ITEMS_MISMATCH in acknowledged,
        **check.to_dict(),
    } for order, check in order_alerts(customer.orders)]

    return jsonify({'success': True, 'alerts': alerts, 'acknowledgments': ack_list})


@customers_bp.route('/customers/<customer_id>/alerts/acknowledge', methods=['POST'])
@login_required
@role_required(STAFF_ROLES)
def acknowledge_alert(customer_id):
    db = get_db()
    alert_type = get_json_payload().get('alertType')
    if not alert_type:
        return jsonify({'success': False, 'message': 'alertType is required'}), 400

    customer, error = _customer_or_404(db, customer_id)
    if error:
        return error

    try:
        ack = (db.query(AlertAcknowledgment)
               .filter(AlertAcknowledgment.customer_id == customer_id,
                       AlertAcknowledgment.alert_type == alert_type)
               .first())
        if ack is None:
            ack = AlertAcknowledgment(customer_id=customer_id, alert_type=alert_type)
            db.add(ack)
        ack.acknowledged_by = session.get('user_id')
        ack.acknowledged_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to acknowledge alert for {customer_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to acknowledge alert'}), 500

    return jsonify({'success': True, 'message': 'Alert acknowledged successfully'})


@customers_bp.route('/customers/<customer_id>/history', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def customer_history(customer_id):
    db = get_db()
    page, limit, _ = get_pagination(default_limit=10)

    query = db.query(ChangeHistory).filter(ChangeHistory.customer_id == customer_id)
    since = period_start(request.args.get('period', 'all'))
    if since is not None:
        query = query.filter(ChangeHistory.changed_at >= since)

    return jsonify(history_page(query, page, limit))
