from conftest import PASSWORD
from db import db_session
from models import SecurityLog, User


def test_login_with_json_and_session(client, make_user):
    make_user('pat', role='sales_rep')
    r = client.post("/login", json={'username': 'pat', 'password': PASSWORD})
    assert r.status_code == 200
    assert r.get_json()['user']['role'] == 'sales_rep'

    session = client.get("/api/session").get_json()['user']
    assert session['username'] == 'pat'
    assert session['roleLabel'] == 'Sales Rep'

    user = db_session.query(User).filter_by(username='pat').one()
    assert user.last_login is not None


def test_login_failures(client, make_user):
    make_user('waiting', role=None, status='pending')
    make_user('banned', role='viewer', status='suspended')

    assert client.post("/login", json={'username': 'pat'}).status_code == 400

    r = client.post("/login", json={'username': 'nobody', 'password': PASSWORD})
    assert r.status_code == 401
    assert r.get_json()['message'] == 'Invalid username or password'

    r = client.post("/login", json={'username': 'banned', 'password': 'wrong-password'})
    assert r.status_code == 401

    r = client.post("/login", json={'username': 'waiting', 'password': PASSWORD})
    assert r.status_code == 403
    assert r.get_json()['message'] == 'Your account is pending admin approval'

    r = client.post("/login", json={'username': 'banned', 'password': PASSWORD})
    assert r.status_code == 403
    assert r.get_json()['message'] == 'Your account has been suspended'

    messages = [log.message for log in db_session.query(SecurityLog)]
    assert any(m.startswith('Login failed: user nobody') for m in messages)


def test_logout_clears_session(login):
    assert login.get("/api/session").status_code == 200
    assert login.post("/logout").get_json()['success'] is True
    assert login.get("/api/session").status_code == 401


def test_register_creates_pending_user(client):
    r = client.post("/register", json={'username': 'newbie', 'password': 'abcdef', 'email': 'n@example.com'})
    assert r.status_code == 201
    user = r.get_json()['user']
    assert user['status'] == 'pending'
    assert user['role'] is None

    r = client.post("/register", json={'username': 'newbie', 'password': 'abcdef'})
    assert r.get_json()['message'] == 'Username already exists'
    r = client.post("/register", json={'username': 'other', 'password': 'abcdef', 'email': 'N@example.com'})
    assert r.get_json()['message'] == 'Email already registered'
    # wildcard characters are not patterns
    r = client.post("/register", json={'username': 'other', 'password': 'abcdef', 'email': 'n@example_com'})
    assert r.status_code == 201
    r = client.post("/register", json={'username': 'short', 'password': 'abc'})
    assert r.status_code == 400
    assert r.get_json()['message'] == 'Password must be at least 6 characters long'


def test_suspended_user_loses_access(login, make_user, app):
    user_id = make_user('temp', role='viewer')
    other = app.test_client()
    other.post("/login", json={'username': 'temp', 'password': PASSWORD})
    assert other.get("/api/customers").status_code == 200

    login.patch(f"/api/admin/users/{user_id}", json={'status': 'suspended'})
    assert other.get("/api/customers").status_code == 401


def test_admin_lists_and_approves_users(login, client):
    client.post("/register", json={'username': 'newbie', 'password': 'abcdef'})
    pending = login.get("/api/admin/users?status=pending").get_json()['users']
    assert [u['username'] for u in pending] == ['newbie']
    user_id = pending[0]['id']

    r = login.patch(f"/api/admin/users/{user_id}",
                    json={'role': 'sales_rep', 'status': 'active', 'salesRepName': 'New Bie'})
    assert r.status_code == 200
    assert r.get_json()['user']['salesRepName'] == 'New Bie'

    assert login.patch(f"/api/admin/users/{user_id}", json={'role': 'king'}).status_code == 400
    assert login.patch(f"/api/admin/users/{user_id}", json={'status': 'gone'}).status_code == 400
    assert login.get("/api/admin/users/missing").status_code == 404


def test_admin_routes_require_admin(login_as):
    manager = login_as('contract_manager')
    r = manager.get("/api/admin/users")
    assert r.status_code == 403
    assert r.get_json()['message'] == 'Insufficient permissions'


def test_reset_password(login, make_user, app):
    user_id = make_user('forgetful', role='viewer')
    assert login.post(f"/api/admin/users/{user_id}/reset-password", json={}).status_code == 400
    assert login.post(f"/api/admin/users/{user_id}/reset-password",
                      json={'newPassword': '123'}).status_code == 400

    r = login.post(f"/api/admin/users/{user_id}/reset-password", json={'newPassword': 'brand-new'})
    assert r.status_code == 200

    c = app.test_client()
    assert c.post("/login", json={'username': 'forgetful', 'password': 'brand-new'}).status_code == 200


def test_delete_user_suspends(login, admin_id, make_user):
    user_id = make_user('leaver', role='viewer')
    assert login.delete(f"/api/admin/users/{admin_id}").status_code == 400

    assert login.delete(f"/api/admin/users/{user_id}").status_code == 200
    assert db_session.get(User, user_id).status == 'suspended'
