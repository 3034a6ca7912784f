"""DB auto-initialisation at WSGI startup."""
import logging
import os

from werkzeug.security import generate_password_hash

from db import init_db, get_db
from models import User

logger = logging.getLogger(__name__)


def run_auto_init(app):
    """Create tables and the default admin user. Called when app.py is imported."""
    try:
        with app.app_context():
            logger.info("[AUTO-INIT] Checking database tables...")
            init_db()
            logger.info("[AUTO-INIT] Tables checked/created successfully.")

            db_session = get_db()
            try:
                admin = db_session.query(User).filter_by(username='admin').first()
                if not admin:
                    password = os.environ.get('DEFAULT_ADMIN_PASSWORD', 'admin1234')
                    logger.info("[AUTO-INIT] Creating default admin user...")
                    new_admin = User(
                        username='admin',
                        password_hash=generate_password_hash(password),
                        role='admin',
                        status='active',
                    )
                    db_session.add(new_admin)
                    db_session.commit()
                else:
                    logger.info("[AUTO-INIT] Admin user exists.")
            except Exception as e:
                logger.error(f"[AUTO-INIT] Failed to create admin user: {e}")
                db_session.rollback()
    except Exception as e:
        logger.error(f"[AUTO-INIT] Database initialization failed: {e}")
