import os
import logging

from flask import Flask, jsonify, request, session
from flask_compress import Compress
from werkzeug.middleware.proxy_fix import ProxyFix

from db import close_db
from services.app_init import run_auto_init
from services.rate_limit import init_limiter

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Gzip JSON responses (contract documents get large)
Compress(app)

# Secret Key from environment variable (never hardcode in production)
app.secret_key = os.environ.get('SECRET_KEY')
if not app.secret_key:
    if os.environ.get('FLASK_ENV') == 'production':
        raise ValueError("SECRET_KEY environment variable must be set in production!")
    app.secret_key = 'dev-secret-key-CHANGE-IN-PRODUCTION'
    logger.warning("Using development secret key. Set SECRET_KEY environment variable for production!")

app.config['SESSION_COOKIE_NAME'] = 'pool_contracts_session'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
# .eml uploads arrive base64-encoded in JSON
app.config['MAX_CONTENT_LENGTH'] = 50 * 1024 * 1024

# Behind a reverse proxy / load balancer
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

limiter = init_limiter(app)

# Blueprints
from apps.auth import auth_bp
app.register_blueprint(auth_bp)

from apps.admin import admin_bp
app.register_blueprint(admin_bp)

from apps.api.contracts import contracts_bp
app.register_blueprint(contracts_bp)

from apps.api.orders import orders_bp
app.register_blueprint(orders_bp)

from apps.api.customers import customers_bp
app.register_blueprint(customers_bp)

from apps.api.timeline import timeline_bp
app.register_blueprint(timeline_bp)

from apps.api.vendors import vendors_bp
app.register_blueprint(vendors_bp)

from apps.api.order_approvals import order_approvals_bp
app.register_blueprint(order_approvals_bp)

from apps.api.dashboard import dashboard_bp
app.register_blueprint(dashboard_bp)

app.teardown_appcontext(close_db)


@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'message': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'success': False, 'message': 'Method not allowed'}), 405


@app.errorhandler(413)
def payload_too_large(error):
    return jsonify({'success': False, 'message': 'Uploaded file is too large'}), 413


@app.errorhandler(500)
def internal_error(error):
    # Production: log the error, show a generic message
    app.logger.error(f"Internal Server Error on {request.path}: {error}")
    if app.debug or os.environ.get('FLASK_ENV') != 'production':
        return jsonify({'success': False, 'message': f'Internal server error: {error}'}), 500
    return jsonify({'success': False, 'message': 'Internal server error'}), 500


@app.route('/')
def index():
    """Service banner; the UI is served separately."""
    return jsonify({
        'success': True,
        'service': 'pool-contracts',
        'version': os.environ.get('APP_VERSION', '1.0.0'),
        'authenticated': 'user_id' in session,
    })


@app.route('/api/version')
def version():
    return jsonify({'version': os.environ.get('APP_VERSION', '1.0.0')})


# Production: auto-initialize database tables when a WSGI server imports 'app'.
# `python run.py` does its own startup instead.
if os.environ.get('SKIP_AUTO_INIT') != '1':
    run_auto_init(app)
