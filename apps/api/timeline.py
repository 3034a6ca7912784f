from flask import Blueprint, jsonify, request

from apps.auth import login_required, role_required
from db import get_db
from models import ChangeHistory
from constants import STAFF_ROLES, CHANGE_TYPES
from services.change_history import period_start, history_page
from services.request_utils import get_pagination

timeline_bp = Blueprint('timeline', __name__, url_prefix='/api')


@timeline_bp.route('/timeline', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_timeline():
    """
    Global change feed, newest first.

    Query: period (day|week|month|all), changeType, userId, customerId
    (partial, case-insensitive), search (field name), page, limit.
    Unknown change types are ignored rather than rejected.
    """
    db = get_db()
    page, limit, _ = get_pagination(default_limit=10)

    query = db.query(ChangeHistory)
    since = period_start(request.args.get('period', 'all'))
    if since is not None:
        query = query.filter(ChangeHistory.changed_at >= since)

    change_type = request.args.get('changeType')
    if change_type in CHANGE_TYPES:
        query = query.filter(ChangeHistory.change_type == change_type)

    user_id = request.args.get('userId')
    if user_id:
        query = query.filter(ChangeHistory.changed_by == user_id)

    customer_id = (request.args.get('customerId') or '').strip()
    if customer_id:
        query = query.filter(ChangeHistory.customer_id.ilike(f"%{customer_id}%"))

    search = (request.args.get('search') or '').strip()
    if search:
        query = query.filter(ChangeHistory.field_name.ilike(f"%{search}%"))

    return jsonify(history_page(query, page, limit))
