"""Smoke tests for the app wiring."""


def test_app_import():
    """App module imports and exposes Flask app."""
    from app import app as flask_app
    assert flask_app is not None


def test_index_returns_ok(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.get_json()['authenticated'] is False


def test_login_requires_post(client):
    r = client.get("/login")
    assert r.status_code == 405
    assert r.is_json


def test_unknown_path_returns_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.get_json()['success'] is False


def test_api_requires_authentication(client):
    for path in ("/api/contracts", "/api/customers", "/api/order-approvals", "/api/timeline",
                 "/api/dashboard/stats"):
        r = client.get(path)
        assert r.status_code == 401, path
        assert r.get_json()['message'] == 'Authentication required'


def test_all_blueprints_registered(app):
    for name in ('auth', 'admin', 'contracts', 'orders', 'customers', 'timeline',
                 'vendors', 'order_approvals', 'dashboard'):
        assert name in app.blueprints


def test_rate_limiter_disabled_for_tests(app):
    assert app.config['RATELIMIT_ENABLED'] is False
    assert 'limiter' in app.extensions
