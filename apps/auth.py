from flask import Blueprint, request, jsonify, session, current_app
from functools import wraps
from datetime import datetime
from werkzeug.security import check_password_hash, generate_password_hash
from sqlalchemy import func

from db import get_db
from models import User, SecurityLog, Vendor
from constants import ROLES, EDITOR_ROLES
from services.rate_limit import limiter, LOGIN_LIMIT

auth_bp = Blueprint('auth', __name__)

MIN_PASSWORD_LENGTH = 6


def log_access(action, user_id=None, additional_data=None):
    """Write a security log row. Commits the current session."""
    db = get_db()
    try:
        log = SecurityLog(user_id=user_id, message=action, additional_data=additional_data)
        db.add(log)
        db.commit()
    except Exception as e:
        current_app.logger.error(f"[LOG ERROR] Failed to log access: {e}")
        db.rollback()


def is_password_strong(password):
    """Check if password meets security requirements"""
    return len(password or '') >= MIN_PASSWORD_LENGTH


def get_user_by_username(username):
    """Retrieve user by username"""
    db = get_db()
    return db.query(User).filter(User.username == username).first()


def get_user_by_id(user_id):
    """Retrieve user by ID"""
    if not user_id:
        return None
    db = get_db()
    return db.get(User, user_id)


def get_current_user():
    return get_user_by_id(session.get('user_id'))


def get_vendor_for_user(user):
    """Vendor record whose e-mail matches the user's (case-insensitive)."""
    if user is None or not user.email:
        return None
    db = get_db()
    email = user.email.strip().lower()
    return db.query(Vendor).filter(
        Vendor.email.isnot(None),
        Vendor.deleted_at.is_(None),
    ).filter(func.lower(Vendor.email) == email).first()


# -----------------------------
# permission helpers
# -----------------------------

def has_role(user, roles):
    if user is None or not user.role:
        return False
    if isinstance(roles, str):
        roles = [roles]
    return user.role in roles


def is_admin(user):
    return has_role(user, 'admin')


def is_vendor(user):
    return has_role(user, 'vendor')


def can_edit_contracts(user):
    return has_role(user, EDITOR_ROLES)


def can_view_all_contracts(user):
    return has_role(user, ['admin', 'contract_manager', 'accountant', 'viewer'])


def can_manage_users(user):
    return is_admin(user)


def sales_rep_names(user):
    """Names a sales rep's own orders are recorded under."""
    return [n for n in {user.sales_rep_name, user.username} if n]


def update_last_login(user_id):
    """Update the last login timestamp for a user"""
    db = get_db()
    try:
        user = db.get(User, user_id)
        if user:
            user.last_login = datetime.now()
            db.commit()
    except Exception as e:
        current_app.logger.error(f"last_login update failed for {user_id}: {e}")
        db.rollback()


def _unauthorized():
    return jsonify({'success': False, 'message': 'Authentication required'}), 401


def login_required(f):
    """Decorator to require login for routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return _unauthorized()
        user = get_current_user()
        if user is None or not user.is_active:
            session.clear()
            return _unauthorized()
        return f(*args, **kwargs)
    return decorated_function


def role_required(roles):
    """Decorator to require specific roles for routes"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if 'user_id' not in session:
                return _unauthorized()

            user = get_current_user()
            if not user or not user.is_active:
                session.clear()
                return _unauthorized()

            if user.role not in roles:
                log_access(f"Permission denied: {request.method} {request.path}", user.id,
                           {'role': user.role})
                return jsonify({'success': False, 'message': 'Insufficient permissions'}), 403

            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _credentials():
    data = request.get_json(silent=True) if request.is_json else None
    return data if isinstance(data, dict) else request.form


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(LOGIN_LIMIT)
def login():
    data = _credentials()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        return jsonify({'success': False, 'message': 'Username and password are required'}), 400

    user = get_user_by_username(username)

    if not user:
        log_access(f"Login failed: user {username} (no account)")
        return jsonify({'success': False, 'message': 'Invalid username or password'}), 401

    if not check_password_hash(user.password_hash, password):
        log_access(f"Login failed: user {username} (ID: {user.id}) (wrong password)", user.id)
        return jsonify({'success': False, 'message': 'Invalid username or password'}), 401

    if user.status == 'pending':
        log_access(f"Login failed: pending account {username} (ID: {user.id})", user.id)
        return jsonify({'success': False, 'message': 'Your account is pending admin approval'}), 403

    if not user.is_active:
        log_access(f"Login failed: suspended account {username} (ID: {user.id})", user.id)
        return jsonify({'success': False, 'message': 'Your account has been suspended'}), 403

    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role

    update_last_login(user.id)
    log_access(f"Login: user {user.username} (ID: {user.id})", user.id)

    return jsonify({'success': True, 'user': user.to_dict()})


@auth_bp.route('/logout', methods=['GET', 'POST'])
def logout():
    if 'user_id' in session:
        user_id = session['user_id']
        username = session.get('username', 'Unknown')

        session.clear()
        log_access(f"Logout: user {username} (ID: {user_id})", user_id)

    return jsonify({'success': True, 'message': 'Logged out'})


@auth_bp.route('/register', methods=['POST'])
@limiter.limit(LOGIN_LIMIT)
def register():
    """Self-registration. New accounts are pending until an admin assigns a role."""
    data = _credentials()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    email = (data.get('email') or '').strip() or None

    if not username or not password:
        return jsonify({'success': False, 'message': 'Username and password are required'}), 400

    if not is_password_strong(password):
        return jsonify({'success': False,
                        'message': f'Password must be at least {MIN_PASSWORD_LENGTH} characters long'}), 400

    if get_user_by_username(username):
        return jsonify({'success': False, 'message': 'Username already exists'}), 400

    db = get_db()
    if email and db.query(User).filter(func.lower(User.email) == email.lower()).first():
        return jsonify({'success': False, 'message': 'Email already registered'}), 400

    new_user = User(
        username=username,
        password_hash=generate_password_hash(password),
        email=email,
        role=None,
        status='pending',
    )

    try:
        db.add(new_user)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Registration failed for {username}: {e}")
        return jsonify({'success': False, 'message': 'Failed to register user'}), 500

    log_access(f"Registered: user {username} (ID: {new_user.id})", new_user.id)
    return jsonify({
        'success': True,
        'message': 'Registration successful. Your account is pending admin approval.',
        'user': new_user.to_dict(),
    }), 201


@auth_bp.route('/api/session', methods=['GET'])
def current_session():
    user = get_current_user()
    if user is None or not user.is_active:
        return _unauthorized()
    return jsonify({
        'success': True,
        'user': {
            'id': user.id,
            'username': user.username,
            'email': user.email,
            'role': user.role,
            'roleLabel': ROLES.get(user.role),
            'status': user.status,
        },
    })
