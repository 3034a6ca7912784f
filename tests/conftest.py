"""Pytest fixtures: in-memory database, logged-in clients per role, seeded contract."""
import base64
import os
from email.message import EmailMessage

import pytest
from werkzeug.security import generate_password_hash

# 1. Set environment variables for the test database BEFORE importing app/db
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SKIP_AUTO_INIT"] = "1"
os.environ["RATELIMIT_ENABLED"] = "0"

from app import app as flask_app
from db import db_session, Base, engine
from models import User, Vendor
from services.contract_store import save_contract

PASSWORD = "secret123"


def sample_contract(order_no="1001", customer_id="DBX-1", sales_rep="Pat Seller"):
    return {
        'customer': {
            'dbxCustomerId': customer_id,
            'clientName': 'Jane Smith',
            'email': 'jane@example.com',
            'phone': '555-0100',
            'streetAddress': '12 Palm Way',
            'city': 'Tampa',
            'state': 'FL',
            'zip': '33601',
        },
        'order': {
            'orderNo': order_no,
            'orderDate': '01/15/2025',
            'orderGrandTotal': 1500,
            'balanceDue': 1500,
            'salesRep': sales_rep,
        },
        'items': [
            {'type': 'maincategory', 'productService': 'Pool Construction'},
            {'type': 'subcategory', 'productService': 'Excavation'},
            {'type': 'item', 'productService': 'Dig pool', 'qty': 1, 'rate': 1000, 'amount': 1000},
            {'type': 'item', 'productService': 'Haul dirt', 'qty': 2, 'rate': 250, 'amount': 500},
        ],
    }


@pytest.fixture
def app():
    """Flask app with TESTING config and in-memory DB."""
    flask_app.config["TESTING"] = True

    # Create tables
    Base.metadata.create_all(bind=engine)

    yield flask_app

    # Cleanup
    db_session.remove()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(app):
    """Test client."""
    return app.test_client()


@pytest.fixture
def make_user(app):
    """Create an active user with the given role. Returns the user id."""
    def _make(username, role='admin', status='active', email=None, sales_rep_name=None):
        user = User(
            username=username,
            password_hash=generate_password_hash(PASSWORD),
            role=role,
            status=status,
            email=email,
            sales_rep_name=sales_rep_name,
        )
        db_session.add(user)
        db_session.commit()
        return user.id
    return _make


@pytest.fixture
def login_as(app, make_user):
    """New logged-in test client for a fresh user of the given role."""
    def _login(role, username=None, **kwargs):
        username = username or f"{role}_user"
        make_user(username, role=role, **kwargs)
        c = app.test_client()
        r = c.post("/login", json={"username": username, "password": PASSWORD})
        assert r.status_code == 200, r.get_json()
        return c
    return _login


@pytest.fixture
def login(client, make_user):
    """Login helper. Creates admin user and logs in."""
    make_user("admin", role="admin")

    # Login
    client.post("/login", data={
        "username": "admin",
        "password": PASSWORD,
    })

    return client


@pytest.fixture
def admin_id(login):
    return db_session.query(User).filter_by(username="admin").one().id


@pytest.fixture
def contract(app):
    """A stored contract (customer DBX-1, order 1001). Returns the ids."""
    order, _ = save_contract(db_session, sample_contract())
    db_session.commit()
    ids = {
        'order_id': order.id,
        'customer_id': order.customer_id,
        'item_ids': [i.id for i in order.items if i.item_type == 'item'],
    }
    db_session.remove()
    return ids


@pytest.fixture
def vendor(app):
    v = Vendor(name="Blue Water Supply", email="Sales@BlueWater.example", status="active")
    db_session.add(v)
    db_session.commit()
    vendor_id = v.id
    db_session.remove()
    return vendor_id


CONTRACT_HTML = """
<html><body>
<div><strong>Original Contract</strong> <a href="https://l1.prodbx.com/go/view/?11111.1.2025">View contract</a></div>
<div><strong>Addendums</strong></div>
<div><a href="https://l1.prodbx.com/go/view/?35587.426.2025">Addendum</a></div>
<table class="pos">
  <tr><td>DESCRIPTION</td><td>QTY</td><td>EXTENDED</td></tr>
  <tr><td><strong>Pool Construction</strong> <em>Gunite shell</em></td><td>1</td><td>$1,500.00</td></tr>
  <tr class="ssg_title"><td>Excavation</td></tr>
  <tr><td style="padding-left: 30px">Dig pool</td><td>1 EA</td><td>$1,000.00</td></tr>
  <tr><td style="padding-left: 30px">Haul dirt</td><td>2 LD</td><td>$500.00</td></tr>
  <tr><td>Subtotal</td><td></td><td>$1,500.00</td></tr>
</table>
</body></html>
"""

CONTRACT_TEXT = """Order Id: 2002
DBX Customer Id: DBX-77
Client: John Doe
Address: 5 Ocean Dr
City: Miami
State: FL
Zip: 33139
Grand Total: $1,500.00
"""

ADDENDUM_URL = "https://l1.prodbx.com/go/view/?35587.426.2025"

ADDENDUM_HTML = """
<html><body><h2>Addendum #: 7</h2>
<table class="pos">
  <tr><td>DESCRIPTION</td><td>QTY</td><td>EXTENDED</td></tr>
  <tr><td><strong>Decking</strong></td><td>1</td><td>$300.00</td></tr>
  <tr><td>Extra pavers</td><td>10 SF</td><td>$300.00</td></tr>
  <tr><td>Credit: remove light</td><td>1</td><td>-$50.00</td></tr>
  <tr><td>Subtotal</td><td></td><td>$250.00</td></tr>
</table>
</body></html>
"""


def build_eml(html=CONTRACT_HTML, text=CONTRACT_TEXT, subject="Signed contract #2002"):
    """Raw bytes of a multipart/alternative contract e-mail."""
    msg = EmailMessage()
    msg['Subject'] = subject
    msg['From'] = 'contracts@example.com'
    msg['To'] = 'office@example.com'
    msg['Date'] = 'Wed, 15 Jan 2025 10:30:00 -0500'
    msg.set_content(text)
    msg.add_alternative(html, subtype='html')
    return bytes(msg)


def eml_payload(raw=None, filename="contract.eml"):
    return {'file': base64.b64encode(raw or build_eml()).decode('ascii'), 'filename': filename}


class FakeResponse:
    def __init__(self, text='', status_code=200, reason='OK'):
        self.text = text
        self.status_code = status_code
        self.reason = reason

    @property
    def ok(self):
        return self.status_code < 400


@pytest.fixture
def addendum_site(monkeypatch):
    """Serve addendum pages from a dict {url: FakeResponse} instead of the network."""
    import requests
    pages = {ADDENDUM_URL: FakeResponse(ADDENDUM_HTML)}
    calls = []

    def fake_get(url, headers=None, timeout=None):
        calls.append(url)
        if url not in pages:
            return FakeResponse('', status_code=404, reason='Not Found')
        return pages[url]

    monkeypatch.setattr(requests, 'get', fake_get)
    return pages, calls
