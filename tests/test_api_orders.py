from db import db_session
from models import Order, OrderItem, Invoice, ChangeHistory, Customer


def test_get_order_includes_items_and_totals(login, contract):
    r = login.get(f"/api/orders/{contract['order_id']}")
    assert r.status_code == 200
    data = r.get_json()['order']
    assert data['orderNo'] == '1001'
    assert len(data['items']) == 4
    assert data['totals']['isValid'] is True


def test_get_unknown_order_returns_404(login):
    r = login.get("/api/orders/missing")
    assert r.status_code == 404
    assert r.get_json()['message'] == 'Order not found'


def test_replace_items_computes_completed_amount(login, contract):
    items = [
        {'type': 'maincategory', 'productService': 'Pool'},
        {'type': 'item', 'productService': 'Dig pool', 'amount': 1000, 'progressOverallPct': 25},
        {'type': 'item', 'productService': 'Tile', 'amount': 400, 'completedAmount': 50},
    ]
    r = login.put(f"/api/orders/{contract['order_id']}/items", json={'items': items})
    assert r.status_code == 200
    assert r.get_json()['message'] == 'Order items updated successfully'

    rows = (db_session.query(OrderItem)
            .filter_by(order_id=contract['order_id'])
            .order_by(OrderItem.row_index).all())
    assert [r.row_index for r in rows] == [0, 1, 2]
    assert rows[0].column_a_label == '1 - Header'
    assert rows[1].column_a_label == '1 - Detail'
    assert float(rows[1].completed_amount) == 250.0
    assert float(rows[2].completed_amount) == 50.0

    summary = db_session.query(ChangeHistory).filter_by(change_type='row_update').one()
    assert summary.old_value == '4 items'
    assert summary.new_value == '3 items'


def test_replace_items_rejects_non_list(login, contract):
    r = login.put(f"/api/orders/{contract['order_id']}/items", json={'items': 'nope'})
    assert r.status_code == 400


def test_replace_items_requires_editor_role(login_as, contract):
    viewer = login_as('viewer')
    r = viewer.put(f"/api/orders/{contract['order_id']}/items", json={'items': []})
    assert r.status_code == 403


def test_patch_item_logs_cell_edit(login, contract):
    item_id = contract['item_ids'][0]
    r = login.patch(f"/api/orders/{contract['order_id']}/items/{item_id}",
                    json={'progressOverallPct': 50, 'productService': 'Dig pool'})
    assert r.status_code == 200
    item = r.get_json()['item']
    assert item['progressOverallPct'] == 50.0
    assert item['completedAmount'] == 500.0

    edits = db_session.query(ChangeHistory).filter_by(change_type='cell_edit').all()
    # productService did not change, so only the percentage is logged
    assert len(edits) == 1
    assert edits[0].field_name == 'progressOverallPct'
    assert edits[0].old_value is None
    assert edits[0].new_value == '50'
    assert edits[0].order_item_id == item_id


def test_patch_item_rejects_unknown_field(login, contract):
    item_id = contract['item_ids'][0]
    r = login.patch(f"/api/orders/{contract['order_id']}/items/{item_id}", json={'bogus': 1})
    assert r.status_code == 400


def test_patch_item_of_other_order_is_404(login, contract):
    r = login.patch(f"/api/orders/other/items/{contract['item_ids'][0]}", json={'qty': 2})
    assert r.status_code == 404


def test_project_status_validates_dates_and_stage(login, contract):
    url = f"/api/orders/{contract['order_id']}/project-status"
    r = login.patch(url, json={'contractDate': '2025-01-01'})
    assert r.status_code == 400
    assert 'MM/DD/YYYY' in r.get_json()['message']

    r = login.patch(url, json={'stage': 'paused'})
    assert r.status_code == 400


def test_project_status_completed_marks_customer_completed(login, contract):
    url = f"/api/orders/{contract['order_id']}/project-status"
    r = login.patch(url, json={'stage': 'completed', 'projectStartDate': '02/01/2025'})
    assert r.status_code == 200
    assert r.get_json()['order']['stage'] == 'completed'

    customer = db_session.get(Customer, contract['customer_id'])
    assert customer.status == 'completed'

    types = {(c.change_type, c.field_name) for c in db_session.query(ChangeHistory).all()}
    assert ('stage_update', 'stage') in types
    assert ('order_edit', 'projectStartDate') in types
    assert ('customer_edit', 'status') in types


def test_create_invoice_assigns_rows_from_354(login, contract):
    url = f"/api/orders/{contract['order_id']}/invoices"
    first = login.post(url, json={'invoiceNumber': 'INV-1', 'invoiceAmount': 300})
    second = login.post(url, json={'invoiceNumber': 'INV-2'})
    assert first.status_code == 201
    assert first.get_json()['invoice']['rowIndex'] == 354
    assert second.get_json()['invoice']['rowIndex'] == 355

    r = login.get(url)
    assert [i['invoiceNumber'] for i in r.get_json()['invoices']] == ['INV-1', 'INV-2']


def test_create_invoice_limit(login, contract):
    db_session.add(Invoice(order_id=contract['order_id'], row_index=391))
    db_session.commit()

    r = login.post(f"/api/orders/{contract['order_id']}/invoices", json={'invoiceNumber': 'late'})
    assert r.status_code == 400
    assert r.get_json()['message'] == 'Maximum number of invoices reached (38 invoices)'


def test_create_invoice_rejects_negative_amount(login, contract):
    r = login.post(f"/api/orders/{contract['order_id']}/invoices", json={'invoiceAmount': -5})
    assert r.status_code == 400


def test_open_invoice_keeps_customer_pending(login, contract):
    login.patch(f"/api/orders/{contract['order_id']}/project-status", json={'stage': 'completed'})
    db_session.remove()
    login.post(f"/api/orders/{contract['order_id']}/invoices",
               json={'invoiceAmount': 300, 'paymentsReceived': 100})
    customer = db_session.get(Customer, contract['customer_id'])
    assert customer.status == 'pending_updates'


def test_paid_invoice_keeps_customer_completed(login, contract):
    login.patch(f"/api/orders/{contract['order_id']}/project-status", json={'stage': 'completed'})
    db_session.remove()
    login.post(f"/api/orders/{contract['order_id']}/invoices",
               json={'invoiceAmount': 300, 'paymentsReceived': 300})
    assert db_session.get(Order, contract['order_id']).status == 'completed'
    assert db_session.get(Customer, contract['customer_id']).status == 'completed'


def test_link_line_items_recalculates_amount(login, contract):
    order_id = contract['order_id']
    item_id = contract['item_ids'][0]
    login.patch(f"/api/orders/{order_id}/items/{item_id}", json={'progressOverallPct': 40})
    invoice = login.post(f"/api/orders/{order_id}/invoices", json={'invoiceNumber': 'INV-1'}).get_json()['invoice']

    r = login.patch(f"/api/orders/{order_id}/invoices/{invoice['id']}",
                    json={'linkedLineItemIds': [item_id]})
    assert r.status_code == 200
    data = r.get_json()['invoice']
    assert data['invoiceAmount'] == 400.0
    assert data['linkedLineItems'] == [{'orderItemId': item_id, 'thisBillAmount': 400.0}]


def test_link_line_item_without_progress_fails(login, contract):
    order_id = contract['order_id']
    invoice = login.post(f"/api/orders/{order_id}/invoices", json={}).get_json()['invoice']
    r = login.patch(f"/api/orders/{order_id}/invoices/{invoice['id']}",
                    json={'linkedLineItemIds': [contract['item_ids'][1]]})
    assert r.status_code == 400
    errors = r.get_json()['validationErrors']
    assert errors[0]['reason'] == 'Item must have Progress Overall % greater than 0'


def test_invoice_of_other_order_is_rejected(login, contract):
    invoice = login.post(f"/api/orders/{contract['order_id']}/invoices", json={}).get_json()['invoice']
    r = login.get(f"/api/orders/someone-else/invoices/{invoice['id']}")
    assert r.status_code == 400
    assert r.get_json()['message'] == 'Invoice does not belong to this order'


def test_delete_invoice_logs_row_delete(login, contract):
    order_id = contract['order_id']
    invoice = login.post(f"/api/orders/{order_id}/invoices", json={'invoiceNumber': 'INV-9'}).get_json()['invoice']
    r = login.delete(f"/api/orders/{order_id}/invoices/{invoice['id']}")
    assert r.status_code == 200
    assert db_session.get(Invoice, invoice['id']) is None
    entry = db_session.query(ChangeHistory).filter_by(change_type='row_delete').one()
    assert entry.old_value == 'Invoice INV-9'


def test_invoice_summary(login, contract):
    order_id = contract['order_id']
    login.patch(f"/api/orders/{order_id}/items/{contract['item_ids'][0]}", json={'progressOverallPct': 50})
    login.post(f"/api/orders/{order_id}/invoices", json={'invoiceAmount': 500, 'paymentsReceived': 200})
    login.post(f"/api/orders/{order_id}/invoices",
               json={'invoiceAmount': 100, 'paymentsReceived': 100, 'exclude': True})

    summary = login.get(f"/api/orders/{order_id}/invoice-summary").get_json()['summary']
    assert summary['originalInvoice'] == 1500.0
    assert summary['totalCompleted'] == 500.0
    assert summary['balanceRemaining'] == 1000.0
    assert summary['lessPaymentsReceived'] == -200.0
    assert summary['totalDueUponReceipt'] == 300.0
    assert round(summary['percentCompleted'], 2) == 33.33


def test_invoice_line_items(login, contract):
    order_id = contract['order_id']
    item_id = contract['item_ids'][0]
    login.patch(f"/api/orders/{order_id}/items/{item_id}", json={'progressOverallPct': 40})
    invoice = login.post(f"/api/orders/{order_id}/invoices", json={'invoiceNumber': 'INV-1'}).get_json()['invoice']
    url = f"/api/orders/{order_id}/invoices/{invoice['id']}/line-items"

    r = login.get(url)
    assert r.get_json() == {'success': True, 'linkedItems': [], 'totalBilledAmount': 0}

    login.patch(f"/api/orders/{order_id}/invoices/{invoice['id']}", json={'linkedLineItemIds': [item_id]})
    stored = db_session.get(Invoice, invoice['id'])
    stored.linked_line_items = stored.linked_line_items + [{'orderItemId': 'removed-item', 'thisBillAmount': 99}]
    db_session.commit()
    db_session.remove()

    data = login.get(url).get_json()
    assert data['totalBilledAmount'] == 400.0
    [linked] = data['linkedItems']
    assert linked['orderItemId'] == item_id
    assert linked['productService'] == 'Dig pool'
    assert linked['amount'] == 1000.0
    assert linked['progressOverallPct'] == 40.0
    assert linked['thisBillAmount'] == 400.0

    assert login.get(f"/api/orders/someone-else/invoices/{invoice['id']}/line-items").status_code == 400
    assert login.get(f"/api/orders/{order_id}/invoices/missing/line-items").status_code == 404
