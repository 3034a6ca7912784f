import datetime

from conftest import sample_contract
from db import db_session
from models import (
    AlertAcknowledgment, ChangeHistory, Customer, Invoice, Order, OrderApproval, OrderItem,
)


def _trash(customer_id, days_ago):
    customer = db_session.get(Customer, customer_id)
    customer.deleted_at = datetime.datetime.now() - datetime.timedelta(days=days_ago)
    db_session.commit()
    db_session.remove()


def _set_grand_total(order_id, total):
    order = db_session.get(Order, order_id)
    order.order_grand_total = total
    db_session.commit()
    db_session.remove()


def test_list_customers(login, contract):
    r = login.get("/api/customers")
    assert r.status_code == 200
    customers = r.get_json()['customers']
    assert len(customers) == 1
    row = customers[0]
    assert row['id'] == 'DBX-1'
    assert row['clientName'] == 'Jane Smith'
    assert row['stage'] == 'waiting_for_permit'
    assert row['contractCount'] == 1
    assert row['hasValidationIssues'] is False


def test_list_flags_items_total_mismatch(login, contract):
    _set_grand_total(contract['order_id'], 2000)
    row = login.get("/api/customers").get_json()['customers'][0]
    assert row['hasValidationIssues'] is True
    assert row['validationIssues'] == ['Order 1001: Items total mismatch']


def test_list_filters_by_status_and_trash(login, contract):
    login.post("/api/contracts", json=sample_contract(order_no="1002", customer_id="DBX-2"))
    _trash('DBX-2', days_ago=1)

    ids = [c['id'] for c in login.get("/api/customers").get_json()['customers']]
    assert ids == ['DBX-1']
    trash = login.get("/api/customers", query_string={'trashOnly': 'true'}).get_json()['customers']
    assert [c['id'] for c in trash] == ['DBX-2']
    everyone = login.get("/api/customers", query_string={'includeDeleted': 'true'}).get_json()['customers']
    assert len(everyone) == 2

    completed = login.get("/api/customers", query_string={'status': 'completed'}).get_json()['customers']
    assert completed == []


def test_check_exists(login, contract):
    assert login.get("/api/customers/check-exists?dbxCustomerId=DBX-1").get_json() == {'exists': True}
    assert login.get("/api/customers/check-exists?dbxCustomerId=DBX-9").get_json() == {'exists': False}
    assert login.get("/api/customers/check-exists").status_code == 400


def test_get_customer_with_orders(login, contract):
    r = login.get("/api/customers/DBX-1")
    assert r.status_code == 200
    assert [o['orderNo'] for o in r.get_json()['customer']['orders']] == ['1001']
    assert login.get("/api/customers/DBX-404").status_code == 404


def test_update_customer_logs_each_changed_field(login, contract):
    r = login.put("/api/customers/DBX-1", json={'phone': '555-0199', 'city': 'Tampa', 'email': ''})
    assert r.status_code == 200
    assert r.get_json()['customer']['email'] is None

    edits = {(c.field_name, c.old_value, c.new_value)
             for c in db_session.query(ChangeHistory).filter_by(change_type='customer_edit')}
    assert edits == {('phone', '555-0100', '555-0199'), ('email', 'jane@example.com', None)}


def test_update_customer_rejects_empty_name(login, contract):
    r = login.put("/api/customers/DBX-1", json={'clientName': '  '})
    assert r.status_code == 400


def test_invoicing_status(login, login_as, contract):
    r = login.patch("/api/customers/DBX-1/invoicing-status", json={'status': 'completed'})
    assert r.status_code == 200
    assert r.get_json()['customer']['status'] == 'completed'

    r = login.patch("/api/customers/DBX-1/invoicing-status", json={'status': 'done'})
    assert r.status_code == 400

    accountant = login_as('accountant')
    r = accountant.patch("/api/customers/DBX-1/invoicing-status", json={'status': 'pending_updates'})
    assert r.status_code == 200
    viewer = login_as('viewer')
    r = viewer.patch("/api/customers/DBX-1/invoicing-status", json={'status': 'completed'})
    assert r.status_code == 403


def test_soft_delete_and_recover(login, contract):
    r = login.delete("/api/customers/DBX-1")
    assert r.status_code == 200
    assert r.get_json()['message'] == (
        'Customer moved to trash. It will be permanently deleted after 30 days.')
    assert login.delete("/api/customers/DBX-1").status_code == 400

    # orders survive the soft delete
    assert db_session.get(Order, contract['order_id']) is not None

    r = login.post("/api/customers/DBX-1/recover")
    assert r.status_code == 200
    assert login.post("/api/customers/DBX-1/recover").status_code == 400

    types = [c.change_type for c in db_session.query(ChangeHistory).order_by(ChangeHistory.changed_at)]
    assert types == ['customer_delete', 'customer_restore']


def test_permanent_delete_removes_everything(login, contract):
    login.patch(f"/api/orders/{contract['order_id']}/items/{contract['item_ids'][0]}",
                json={'progressOverallPct': 10})
    login.post(f"/api/orders/{contract['order_id']}/invoices", json={'invoiceAmount': 100})
    login.post("/api/customers/DBX-1/alerts/acknowledge", json={'alertType': 'order_items_mismatch'})
    db_session.remove()

    r = login.post("/api/customers/DBX-1/permanent-delete")
    assert r.status_code == 200

    assert db_session.get(Customer, 'DBX-1') is None
    assert db_session.query(Order).count() == 0
    assert db_session.query(OrderItem).count() == 0
    assert db_session.query(Invoice).count() == 0
    assert db_session.query(ChangeHistory).count() == 0
    assert db_session.query(AlertAcknowledgment).count() == 0


def test_permanent_delete_is_blocked_by_approvals(login, contract, vendor):
    db_session.add(OrderApproval(reference_no='2025-00001', vendor_id=vendor,
                                 customer_id='DBX-1', stage='draft'))
    db_session.commit()
    db_session.remove()

    r = login.post("/api/customers/DBX-1/permanent-delete")
    assert r.status_code == 409
    assert db_session.get(Customer, 'DBX-1') is not None


def test_permanent_delete_is_admin_only(login_as, contract):
    manager = login_as('contract_manager')
    assert manager.post("/api/customers/DBX-1/permanent-delete").status_code == 403


def test_cleanup_trash_with_token(client, contract, monkeypatch):
    monkeypatch.setenv('CLEANUP_API_TOKEN', 'cron-token')
    _trash('DBX-1', days_ago=31)

    assert client.post("/api/customers/cleanup-trash").status_code == 401
    r = client.post("/api/customers/cleanup-trash", headers={'Authorization': 'Bearer wrong'})
    assert r.status_code == 401

    r = client.post("/api/customers/cleanup-trash", headers={'Authorization': 'Bearer cron-token'})
    assert r.status_code == 200
    assert r.get_json()['deletedCount'] == 1
    assert db_session.get(Customer, 'DBX-1') is None


def test_cleanup_trash_keeps_recent_deletes(login, contract, monkeypatch):
    monkeypatch.delenv('CLEANUP_API_TOKEN', raising=False)
    _trash('DBX-1', days_ago=5)

    r = login.post("/api/customers/cleanup-trash")
    assert r.status_code == 200
    assert r.get_json()['deletedCount'] == 0
    assert db_session.get(Customer, 'DBX-1') is not None


def test_alerts_and_acknowledgment(login, contract):
    _set_grand_total(contract['order_id'], 2000)

    alerts = login.get("/api/customers/DBX-1/alerts").get_json()['alerts']
    assert len(alerts) == 1
    assert alerts[0]['orderNo'] == '1001'
    assert alerts[0]['difference'] == 500.0
    assert alerts[0]['acknowledged'] is False

    assert login.post("/api/customers/DBX-1/alerts/acknowledge", json={}).status_code == 400
    r = login.post("/api/customers/DBX-1/alerts/acknowledge", json={'alertType': 'order_items_mismatch'})
    assert r.status_code == 200
    # acknowledging twice keeps a single row
    login.post("/api/customers/DBX-1/alerts/acknowledge", json={'alertType': 'order_items_mismatch'})
    assert db_session.query(AlertAcknowledgment).count() == 1

    body = login.get("/api/customers/DBX-1/alerts").get_json()
    assert body['alerts'][0]['acknowledged'] is True
    assert body['acknowledgments'][0]['acknowledgedBy']['username'] == 'admin'

    row = login.get("/api/customers").get_json()['customers'][0]
    assert row['hasValidationIssues'] is False


def test_customer_history_pagination(login, admin_id, contract):
    now = datetime.datetime.now()
    for minutes in range(12):
        db_session.add(ChangeHistory(change_type='cell_edit', field_name=f"field{minutes}",
                                     changed_by=admin_id, customer_id='DBX-1',
                                     order_id=contract['order_id'],
                                     changed_at=now - datetime.timedelta(minutes=minutes)))
    db_session.add(ChangeHistory(change_type='cell_edit', field_name='ancient', changed_by=admin_id,
                                 customer_id='DBX-1', changed_at=now - datetime.timedelta(days=40)))
    db_session.commit()
    db_session.remove()

    first = login.get("/api/customers/DBX-1/history").get_json()
    assert first['total'] == 13
    assert first['limit'] == 10
    assert first['hasMore'] is True
    assert first['changes'][0]['fieldName'] == 'field0'
    assert first['changes'][0]['changedBy']['username'] == 'admin'
    assert first['changes'][0]['order']['orderNo'] == '1001'
    assert first['changes'][0]['customer']['clientName'] == 'Jane Smith'

    second = login.get("/api/customers/DBX-1/history?page=2").get_json()
    assert len(second['changes']) == 3
    assert second['hasMore'] is False

    month = login.get("/api/customers/DBX-1/history?period=month").get_json()
    assert month['total'] == 12


def test_list_leaves_unchanged_status_untouched(login, contract):
    order = db_session.get(Order, contract['order_id'])
    order.stage = 'completed'
    order.status = 'completed'
    db_session.add(Invoice(order_id=order.id, row_index=354, invoice_amount=300, payments_received=0))
    customer = db_session.get(Customer, 'DBX-1')
    customer.status = 'pending_updates'
    customer.updated_at = stamp = datetime.datetime(2025, 1, 1, 9, 0)
    db_session.commit()
    db_session.remove()

    row = login.get("/api/customers").get_json()['customers'][0]
    assert row['status'] == 'pending_updates'
    db_session.remove()
    assert db_session.get(Customer, 'DBX-1').updated_at == stamp
