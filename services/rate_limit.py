"""
Request rate limiting (flask-limiter).

`limiter` is created unbound so blueprints can decorate routes at import
time; app.py binds it with init_limiter(). Defaults apply to every route,
the tighter limits below to login / registration and to the endpoints
that parse uploads or fetch addendum pages from the contract site.
"""
import hashlib
import os

from flask import current_app, request, session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

DEFAULT_LIMITS = '5000 per day,1200 per hour'
LOGIN_LIMIT = '20 per minute'
PARSE_LIMIT = '30 per minute'
ADDENDUM_FETCH_LIMIT = '10 per minute'


def rate_limit_key():
    """Signed-in user, else session cookie, else the forwarded client IP."""
    uid = session.get('user_id')
    if uid:
        return f"user:{uid}"

    cookie_name = current_app.config.get('SESSION_COOKIE_NAME', 'session')
    raw_cookie = request.cookies.get(cookie_name, '').strip()
    if raw_cookie:
        return f"sess:{hashlib.sha1(raw_cookie.encode('utf-8')).hexdigest()[:16]}"

    forwarded = request.headers.get('X-Forwarded-For', '').split(',')[0].strip()
    if forwarded:
        return forwarded
    return request.headers.get('X-Real-IP', '').strip() or get_remote_address()


limiter = Limiter(key_func=rate_limit_key)


def init_limiter(app):
    """Bind the limiter; RATELIMIT_ENABLED=0 turns it off (tests)."""
    app.config.setdefault('RATELIMIT_ENABLED', os.environ.get('RATELIMIT_ENABLED', '1') == '1')
    app.config.setdefault('RATELIMIT_STORAGE_URI', os.environ.get('REDIS_URL') or 'memory://')
    app.config.setdefault('RATELIMIT_DEFAULT',
                          os.environ.get('FLASK_DEFAULT_RATE_LIMITS') or DEFAULT_LIMITS)
    limiter.init_app(app)
    return limiter
