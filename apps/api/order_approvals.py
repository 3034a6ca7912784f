"""
Order approval (vendor negotiation) API.

GET/POST   /api/order-approvals
GET/PATCH/DELETE /api/order-approvals/<id>
POST       /api/order-approvals/<id>/restore
GET/PUT/PATCH /api/order-approvals/<id>/items
POST       /api/order-approvals/<id>/send
GET        /api/order-approvals/<id>/preview-email
GET        /api/order-approvals/approved
GET/POST   /api/order-approvals/approved-batch
"""

import datetime
from flask import Blueprint, request, jsonify, current_app
from sqlalchemy import or_, asc, desc

from db import get_db
from models import (
    OrderApproval, OrderApprovalItem, Vendor, Customer, Order, OrderItem,
)
from apps.auth import login_required, get_current_user, get_vendor_for_user, is_vendor
from constants import VENDOR_VISIBLE_STAGES
from services.approval_policy import (
    ApprovalRuleError,
    resolve_update,
    check_vendor_access,
    check_vendor_can_view,
    check_can_select_items,
    check_can_send,
    check_can_edit_amounts,
)
from services.approval_email import build_approval_email
from services.reference_numbers import generate_reference_number
from services.request_utils import (
    get_json_payload, get_pagination, pagination_dict, parse_bool_arg, is_uuid,
)


order_approvals_bp = Blueprint('order_approvals', __name__, url_prefix='/api')

SORT_COLUMNS = {
    'reference_no': OrderApproval.reference_no,
    'vendor': Vendor.name,
    'date_created': OrderApproval.date_created,
    'stage': OrderApproval.stage,
}


def _rule_error(e):
    return jsonify({'success': False, 'message': e.message}), e.status


def _not_found():
    return jsonify({'success': False, 'message': 'Order approval not found'}), 404


def _vendor_forbidden(action):
    return jsonify({'success': False, 'message': f'Vendors cannot {action}'}), 403


def _num(value):
    return float(value) if value is not None else None


def _approval_summary(approval):
    data = approval.to_dict()
    data['vendorName'] = approval.vendor.name if approval.vendor else None
    data['customerName'] = approval.customer.client_name if approval.customer else None
    return data


def _selected_item(approval_item, live_item):
    return {
        'id': approval_item.id,
        'orderItemId': approval_item.order_item_id,
        'productService': approval_item.product_service,
        'qty': _num(approval_item.qty),
        'rate': _num(approval_item.rate),
        'amount': _num(approval_item.amount),
        'negotiatedVendorAmount': _num(approval_item.negotiated_vendor_amount),
        'snapshotDate': approval_item.snapshot_date.isoformat() if approval_item.snapshot_date else None,
        'orderItem': live_item.to_dict() if live_item is not None else None,
    }


def _selected_items(db, approval):
    item_ids = [i.order_item_id for i in approval.items]
    live = {}
    if item_ids:
        live = {i.id: i for i in db.query(OrderItem).filter(OrderItem.id.in_(item_ids)).all()}
    return [_selected_item(i, live.get(i.order_item_id)) for i in approval.items]


def _load_for_user(db, approval_id, user, for_update=False):
    """
    Approval visible to the user, or raise ApprovalRuleError.
    Returns (approval, vendor_id) where vendor_id is set for vendor users.
    Vendors only read approvals that were sent to them; stage checks for
    updates happen in resolve_update.
    """
    approval = db.get(OrderApproval, approval_id)
    if approval is None:
        raise ApprovalRuleError('Order approval not found', status=404)
    vendor_id = None
    if is_vendor(user):
        vendor = get_vendor_for_user(user)
        vendor_id = vendor.id if vendor else None
        if approval.deleted_at is not None:
            raise ApprovalRuleError('Order approval not found', status=404)
        if for_update:
            check_vendor_access(approval, vendor_id)
        else:
            check_vendor_can_view(approval, vendor_id)
    return approval, vendor_id


@order_approvals_bp.route('/order-approvals', methods=['GET'])
@login_required
def list_order_approvals():
    """Search / sort / paginate approvals. Vendors see only their own, once sent."""
    db = get_db()
    user = get_current_user()

    search = (request.args.get('search') or '').strip()
    sort_by = request.args.get('sortBy', 'date_created')
    sort_order = request.args.get('sortOrder', 'desc')
    page, limit, offset = get_pagination(default_limit=20, max_limit=100)
    trash_only = parse_bool_arg('trashOnly')
    include_deleted = parse_bool_arg('includeDeleted')
    vendor_id = request.args.get('vendor_id')

    query = db.query(OrderApproval).outerjoin(Vendor, OrderApproval.vendor_id == Vendor.id)

    if is_vendor(user):
        trash_only = include_deleted = False

    if trash_only:
        query = query.filter(OrderApproval.deleted_at.isnot(None))
    elif not include_deleted:
        query = query.filter(OrderApproval.deleted_at.is_(None))

    if is_vendor(user):
        vendor = get_vendor_for_user(user)
        if vendor is None:
            return jsonify({'success': True, 'data': [], 'pagination': pagination_dict(1, limit, 0)})
        query = query.filter(OrderApproval.vendor_id == vendor.id,
                             OrderApproval.stage.in_(VENDOR_VISIBLE_STAGES))
    elif vendor_id:
        query = query.filter(OrderApproval.vendor_id == vendor_id)

    if search:
        term = f"%{search}%"
        query = query.filter(or_(OrderApproval.reference_no.ilike(term), Vendor.name.ilike(term)))

    total = query.count()

    column = SORT_COLUMNS.get(sort_by, OrderApproval.date_created)
    direction = asc if sort_order == 'asc' else desc
    approvals = query.order_by(direction(column)).offset(offset).limit(limit).all()

    return jsonify({
        'success': True,
        'data': [_approval_summary(a) for a in approvals],
        'pagination': pagination_dict(page, limit, total),
    })


@order_approvals_bp.route('/order-approvals', methods=['POST'])
@login_required
def create_order_approval():
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('create approvals')

    db = get_db()
    data = get_json_payload()
    vendor_id = data.get('vendorId')
    customer_id = data.get('customerId')

    if not vendor_id or not customer_id:
        return jsonify({'success': False, 'message': 'Missing required fields: vendorId, customerId'}), 400

    if db.get(Vendor, vendor_id) is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404
    if db.get(Customer, customer_id) is None:
        return jsonify({'success': False, 'message': 'Customer not found'}), 404

    try:
        now = datetime.datetime.now()
        approval = OrderApproval(
            reference_no=generate_reference_number(db),
            vendor_id=vendor_id,
            customer_id=customer_id,
            order_id=None,
            stage='draft',
            pm_approved=False,
            vendor_approved=False,
            created_by=user.id,
            date_created=now,
            updated_at=now,
        )
        db.add(approval)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Order approval create failed: {e}")
        return jsonify({'success': False, 'message': 'Failed to create order approval'}), 500

    current_app.logger.info(f"Order approval {approval.reference_no} created by {user.username}")
    return jsonify({'success': True, 'data': approval.to_dict()}), 201


@order_approvals_bp.route('/order-approvals/<approval_id>', methods=['GET'])
@login_required
def get_order_approval(approval_id):
    db = get_db()
    user = get_current_user()
    try:
        approval, _ = _load_for_user(db, approval_id, user)
    except ApprovalRuleError as e:
        return _rule_error(e)

    data = _approval_summary(approval)
    data.update({
        'vendorEmail': approval.vendor.email if approval.vendor else None,
        'orderNo': approval.order.order_no if approval.order else None,
        'createdByEmail': approval.creator.email if approval.creator else None,
        'createdByUsername': approval.creator.username if approval.creator else None,
        'selectedItems': _selected_items(db, approval),
    })
    return jsonify({'success': True, 'data': data})


@order_approvals_bp.route('/order-approvals/<approval_id>', methods=['PATCH'])
@login_required
def update_order_approval(approval_id):
    """Stage moves and PM / vendor sign-off."""
    db = get_db()
    user = get_current_user()
    payload = get_json_payload()

    try:
        approval, vendor_id = _load_for_user(db, approval_id, user, for_update=True)
        update = resolve_update(approval, payload, is_vendor=is_vendor(user), vendor_id=vendor_id)
    except ApprovalRuleError as e:
        return _rule_error(e)

    try:
        for attr, value in update.changes.items():
            setattr(approval, attr, value)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Order approval update failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to update order approval'}), 500

    if update.stage_changed:
        current_app.logger.info(f"Order approval {approval.reference_no} moved to {approval.stage}")
    return jsonify({'success': True, 'data': approval.to_dict()})


@order_approvals_bp.route('/order-approvals/<approval_id>', methods=['DELETE'])
@login_required
def delete_order_approval(approval_id):
    """Soft delete (moves the approval to the trash)."""
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('delete approvals')

    db = get_db()
    approval = db.get(OrderApproval, approval_id)
    if approval is None:
        return _not_found()
    if approval.deleted_at is not None:
        return jsonify({'success': False, 'message': 'Approval is already deleted'}), 400

    try:
        now = datetime.datetime.now()
        approval.deleted_at = now
        approval.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Order approval delete failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to delete order approval'}), 500

    return jsonify({'success': True, 'message': 'Order approval deleted'})


@order_approvals_bp.route('/order-approvals/<approval_id>/restore', methods=['POST'])
@login_required
def restore_order_approval(approval_id):
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('restore approvals')

    db = get_db()
    approval = db.get(OrderApproval, approval_id)
    if approval is None:
        return _not_found()
    if approval.deleted_at is None:
        return jsonify({'success': False, 'message': 'Approval is not deleted'}), 400

    try:
        approval.deleted_at = None
        approval.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Order approval restore failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to restore order approval'}), 500

    return jsonify({'success': True, 'data': approval.to_dict()})


@order_approvals_bp.route('/order-approvals/<approval_id>/items', methods=['GET'])
@login_required
def get_order_approval_items(approval_id):
    db = get_db()
    user = get_current_user()
    try:
        approval, _ = _load_for_user(db, approval_id, user)
    except ApprovalRuleError as e:
        return _rule_error(e)
    return jsonify({'success': True, 'data': _selected_items(db, approval)})


@order_approvals_bp.route('/order-approvals/<approval_id>/items', methods=['PUT'])
@login_required
def replace_order_approval_items(approval_id):
    """Replace the item selection with fresh snapshots of the chosen order items."""
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('update item selection')

    db = get_db()
    item_ids = get_json_payload().get('itemIds')
    if not isinstance(item_ids, list):
        return jsonify({'success': False, 'message': 'itemIds must be an array'}), 400
    if not all(isinstance(i, str) for i in item_ids):
        return jsonify({'success': False, 'message': 'itemIds must be an array of strings'}), 400
    unique_ids = list(dict.fromkeys(i for i in item_ids if i))

    approval = db.get(OrderApproval, approval_id)
    if approval is None:
        return _not_found()
    try:
        check_can_select_items(approval)
    except ApprovalRuleError as e:
        return _rule_error(e)

    order_items = []
    if unique_ids:
        order_ids = [o.id for o in db.query(Order.id).filter(Order.customer_id == approval.customer_id).all()]
        if not order_ids:
            return jsonify({'success': False, 'message': 'No orders found for this customer'}), 400
        order_items = db.query(OrderItem).filter(
            OrderItem.order_id.in_(order_ids),
            OrderItem.id.in_(unique_ids),
        ).all()
        if len(order_items) != len(unique_ids):
            return jsonify({'success': False,
                            'message': 'Some item IDs do not belong to orders for this customer'}), 400

    try:
        by_id = {i.id: i for i in order_items}
        now = datetime.datetime.now()
        approval.items.clear()
        db.flush()
        for item_id in unique_ids:
            item = by_id[item_id]
            approval.items.append(OrderApprovalItem(
                order_item_id=item_id,
                product_service=item.product_service,
                qty=item.qty,
                rate=item.rate,
                amount=item.amount,
                negotiated_vendor_amount=None,
                snapshot_date=now,
                created_at=now,
            ))
        source_orders = {i.order_id for i in order_items}
        approval.order_id = source_orders.pop() if len(source_orders) == 1 else None
        approval.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Approval item selection failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to update approval items'}), 500

    return jsonify({'success': True, 'data': _selected_items(db, approval)})


@order_approvals_bp.route('/order-approvals/<approval_id>/items', methods=['PATCH'])
@login_required
def update_negotiated_amounts(approval_id):
    """amounts: [{orderApprovalItemId, negotiatedVendorAmount}]; null or '' clears."""
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('update amounts')

    db = get_db()
    amounts = get_json_payload().get('amounts')
    if not isinstance(amounts, list):
        return jsonify({'success': False, 'message': 'amounts must be an array'}), 400

    approval = db.get(OrderApproval, approval_id)
    if approval is None:
        return _not_found()
    try:
        check_can_edit_amounts(approval)
    except ApprovalRuleError as e:
        return _rule_error(e)

    items_by_id = {i.id: i for i in approval.items}
    requested = [a for a in amounts if isinstance(a, dict)]
    if any(a.get('orderApprovalItemId') not in items_by_id for a in requested):
        return jsonify({'success': False, 'message': 'Some item IDs do not belong to this approval'}), 400

    try:
        for entry in requested:
            raw = entry.get('negotiatedVendorAmount')
            value = None
            if raw not in (None, ''):
                try:
                    value = float(raw)
                except (TypeError, ValueError):
                    db.rollback()
                    return jsonify({'success': False,
                                    'message': f'Invalid negotiatedVendorAmount: {raw}'}), 400
            items_by_id[entry['orderApprovalItemId']].negotiated_vendor_amount = value
        approval.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Negotiated amount update failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to update approval item amounts'}), 500

    return jsonify({'success': True, 'data': _selected_items(db, approval)})


@order_approvals_bp.route('/order-approvals/<approval_id>/send', methods=['POST'])
@login_required
def send_order_approval(approval_id):
    """draft -> negotiating. E-mail delivery to the vendor is handled outside this service."""
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('send approvals')

    db = get_db()
    approval = db.get(OrderApproval, approval_id)
    if approval is None:
        return _not_found()
    try:
        check_can_send(approval, len(approval.items))
    except ApprovalRuleError as e:
        return _rule_error(e)

    try:
        now = datetime.datetime.now()
        approval.stage = 'negotiating'
        approval.sent_at = now
        approval.updated_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Order approval send failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to send approval'}), 500

    current_app.logger.info(f"Order approval {approval.reference_no} sent to vendor {approval.vendor_id}")
    return jsonify({
        'success': True,
        'message': 'Approval sent to vendor successfully',
        'data': approval.to_dict(),
    })


@order_approvals_bp.route('/order-approvals/<approval_id>/preview-email', methods=['GET'])
@login_required
def preview_approval_email(approval_id):
    """Rendered confirmation e-mail for an approval; nothing is sent."""
    user = get_current_user()
    if is_vendor(user):
        return _vendor_forbidden('preview approval emails')

    approval = get_db().get(OrderApproval, approval_id)
    if approval is None or approval.deleted_at is not None:
        return _not_found()

    try:
        email = build_approval_email(approval)
    except Exception as e:
        current_app.logger.error(f"Approval email preview failed ({approval_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to generate email preview'}), 500

    return jsonify({'success': True, 'data': email})


def _approved_rows(db, item_ids, customer_id=None):
    if not item_ids:
        return []
    query = (
        db.query(OrderApprovalItem, OrderApproval, Vendor)
        .join(OrderApproval, OrderApprovalItem.order_approval_id == OrderApproval.id)
        .join(Vendor, OrderApproval.vendor_id == Vendor.id)
        .filter(
            OrderApprovalItem.order_item_id.in_(item_ids),
            OrderApproval.stage == 'approved',
            OrderApproval.deleted_at.is_(None),
        )
    )
    if customer_id:
        query = query.filter(OrderApproval.customer_id == customer_id)
    return query.all()


def _approved_entry(approval_item, approval, vendor):
    return {
        'approvalId': approval.id,
        'referenceNo': approval.reference_no,
        'vendorId': vendor.id,
        'vendorName': vendor.name,
        'negotiatedVendorAmount': _num(approval_item.negotiated_vendor_amount),
        'approvedAt': approval.updated_at.isoformat() if approval.updated_at else None,
        'snapshotData': {
            'productService': approval_item.product_service,
            'amount': _num(approval_item.amount),
            'qty': _num(approval_item.qty),
            'rate': _num(approval_item.rate),
        },
    }


@order_approvals_bp.route('/order-approvals/approved', methods=['GET'])
@login_required
def approved_for_item():
    """Approved vendor prices for one order item."""
    order_item_id = request.args.get('orderItemId')
    customer_id = request.args.get('customerId')
    if not order_item_id:
        return jsonify({'success': False, 'message': 'orderItemId query parameter is required'}), 400
    if not is_uuid(order_item_id):
        return jsonify({'success': True, 'data': []})

    rows = _approved_rows(get_db(), [order_item_id], customer_id)
    return jsonify({'success': True, 'data': [_approved_entry(*row) for row in rows]})


@order_approvals_bp.route('/order-approvals/approved-batch', methods=['GET', 'POST'])
@login_required
def approved_batch():
    """
    Approved vendor prices for many items, keyed by order item id.
    GET ?orderId=&customerId= covers every item of an order;
    POST {orderItemIds, customerId} covers an explicit list.
    """
    db = get_db()
    if request.method == 'POST':
        data = get_json_payload()
        item_ids = data.get('orderItemIds')
        customer_id = data.get('customerId')
        if not isinstance(item_ids, list):
            return jsonify({'success': False, 'message': 'orderItemIds must be an array'}), 400
        item_ids = list(dict.fromkeys(i for i in item_ids if isinstance(i, str) and is_uuid(i)))
    else:
        order_id = request.args.get('orderId')
        customer_id = request.args.get('customerId')
        if not order_id:
            return jsonify({'success': False, 'message': 'orderId query parameter is required'}), 400
        item_ids = [row.id for row in db.query(OrderItem.id).filter(OrderItem.order_id == order_id).all()]

    result = {}
    for approval_item, approval, vendor in _approved_rows(db, item_ids, customer_id):
        result.setdefault(approval_item.order_item_id, []).append(
            _approved_entry(approval_item, approval, vendor)
        )
    return jsonify({'success': True, 'data': result})
