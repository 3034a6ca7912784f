"""User administration API.

/api/admin/users                        - list users
/api/admin/users/<id>                   - get / update / suspend a user
/api/admin/users/<id>/reset-password    - set a new password
"""
import datetime
from flask import Blueprint, request, jsonify, session, current_app
from werkzeug.security import generate_password_hash

from apps.auth import login_required, role_required, log_access, is_password_strong
from db import get_db
from models import User
from constants import ROLES, USER_STATUS
from services.request_utils import get_json_payload

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


@admin_bp.route('/users', methods=['GET'])
@login_required
@role_required(['admin'])
def list_users():
    db = get_db()
    query = db.query(User)
    status = request.args.get('status')
    if status:
        query = query.filter(User.status == status)
    users = query.order_by(User.created_at.desc()).all()
    return jsonify({'success': True, 'users': [u.to_dict() for u in users]})


@admin_bp.route('/users/<user_id>', methods=['GET'])
@login_required
@role_required(['admin'])
def get_user(user_id):
    user = get_db().get(User, user_id)
    if not user:
        return jsonify({'success': False, 'message': 'User not found'}), 404
    return jsonify({'success': True, 'user': user.to_dict()})


@admin_bp.route('/users/<user_id>', methods=['PATCH'])
@login_required
@role_required(['admin'])
def update_user(user_id):
    """Assign role / status / sales rep name / e-mail."""
    db = get_db()
    data = get_json_payload()

    user = db.get(User, user_id)
    if not user:
        return jsonify({'success': False, 'message': 'User not found'}), 404

    if 'role' in data and data['role'] and data['role'] not in ROLES:
        return jsonify({'success': False, 'message': f"Invalid role: {data['role']}"}), 400
    if 'status' in data and data['status'] not in USER_STATUS:
        return jsonify({'success': False, 'message': f"Invalid status: {data['status']}"}), 400

    try:
        if 'email' in data:
            user.email = (data['email'] or '').strip() or None
        if 'role' in data:
            user.role = data['role'] or None
        if 'status' in data:
            user.status = data['status']
        if 'salesRepName' in data:
            user.sales_rep_name = (data['salesRepName'] or '').strip() or None
        user.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"User update failed ({user_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to update user'}), 500

    log_access(f"User updated: {user.username} (role={user.role}, status={user.status})",
               session.get('user_id'), {'target_user_id': user_id})
    return jsonify({'success': True, 'user': user.to_dict()})


@admin_bp.route('/users/<user_id>/reset-password', methods=['POST'])
@login_required
@role_required(['admin'])
def reset_password(user_id):
    db = get_db()
    data = get_json_payload()
    new_password = data.get('newPassword')

    if not new_password:
        return jsonify({'success': False, 'message': 'New password is required'}), 400
    if not is_password_strong(new_password):
        return jsonify({'success': False, 'message': 'Password is too short'}), 400

    user = db.get(User, user_id)
    if not user:
        return jsonify({'success': False, 'message': 'User not found'}), 404

    try:
        user.password_hash = generate_password_hash(new_password)
        user.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Password reset failed ({user_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to reset password'}), 500

    log_access(f"Password reset: {user.username}", session.get('user_id'), {'target_user_id': user_id})
    return jsonify({'success': True, 'message': 'Password reset successfully'})


@admin_bp.route('/users/<user_id>', methods=['DELETE'])
@login_required
@role_required(['admin'])
def delete_user(user_id):
    """Users are suspended, not removed: their change history must keep resolving."""
    if user_id == session.get('user_id'):
        return jsonify({'success': False, 'message': 'Cannot delete your own account'}), 400

    db = get_db()
    user = db.get(User, user_id)
    if not user:
        return jsonify({'success': False, 'message': 'User not found'}), 404

    try:
        user.status = 'suspended'
        user.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"User delete failed ({user_id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to delete user'}), 500

    log_access(f"User suspended: {user.username}", session.get('user_id'), {'target_user_id': user_id})
    return jsonify({'success': True})
