from io import BytesIO

from openpyxl import load_workbook

from conftest import (
    ADDENDUM_URL, build_eml, eml_payload, sample_contract, FakeResponse,
)
from db import db_session
from models import ChangeHistory, Customer, Order


def test_parse_contract_returns_spreadsheet(login):
    r = login.post("/api/parse-contract", json=eml_payload())
    assert r.status_code == 200
    assert r.mimetype == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    assert 'J. Doe - #DBX-77 - 5 Ocean Dr.xlsx' in r.headers['Content-Disposition']

    ws = load_workbook(BytesIO(r.data)).active
    assert ws['D16'].value == 'Pool & Spa - Miami, FL 33139, United States'
    assert ws['D17'].value == 'Excavation'
    assert ws['D18'].value == 'Dig pool'
    assert ws['H18'].value == 1000
    assert ws['D19'].value == 'Haul dirt'
    assert ws['F19'].value == 2
    assert ws['G19'].value == 250


def test_parse_contract_json(login):
    r = login.post("/api/parse-contract?format=json", json=eml_payload())
    assert r.status_code == 200
    body = r.get_json()
    contract = body['contract']
    assert contract['customer']['dbxCustomerId'] == 'DBX-77'
    assert contract['customer']['clientName'] == 'John Doe'
    assert contract['order']['orderNo'] == '2002'
    assert contract['order']['orderGrandTotal'] == 1500
    assert contract['order']['emlFilename'] == 'contract.eml'
    assert [i['type'] for i in contract['items']] == ['maincategory', 'subcategory', 'item', 'item']
    assert contract['items'][0]['productService'] == 'Pool Construction - Gunite shell:'
    assert body['links']['addendumUrls'] == [ADDENDUM_URL]
    assert body['email']['subject'] == 'Signed contract #2002'


def test_parse_contract_includes_addendums(login, addendum_site):
    r = login.post("/api/parse-contract?format=json&includeAddendums=true", json=eml_payload())
    body = r.get_json()
    items = body['contract']['items']
    assert body['addendumErrors'] == []
    headers = [i for i in items if i['isAddendumHeader']]
    assert [h['productService'] for h in headers] == ['Addendum #7 (35587)']
    assert items[-1]['productService'] == 'Credit: remove light'
    assert items[-1]['amount'] == -50
    assert items[-1]['columnBLabel'] == 'Addendum'


def test_parse_contract_reports_bad_input(login):
    r = login.post("/api/parse-contract", json={})
    assert r.status_code == 400
    assert r.get_json()['message'].startswith('No file data in request')

    r = login.post("/api/parse-contract", json={'file': 'not base64!!'})
    assert r.status_code == 400

    no_table = build_eml(html="<html><body><p>Thanks for signing</p></body></html>")
    r = login.post("/api/parse-contract", json=eml_payload(no_table))
    assert r.status_code == 422
    assert r.get_json()['message'] == 'Order Items Table not found'


def test_parse_contract_rejects_other_uploads(login):
    r = login.post("/api/parse-contract",
                   data={'file': (BytesIO(b'hello'), 'notes.txt')},
                   content_type='multipart/form-data')
    assert r.status_code == 400
    assert r.get_json()['message'] == 'Only .eml files are supported'


def test_parse_contract_accepts_multipart_upload(login):
    r = login.post("/api/parse-contract?format=json",
                   data={'file': (BytesIO(build_eml()), 'signed.eml')},
                   content_type='multipart/form-data')
    assert r.status_code == 200
    assert r.get_json()['contract']['order']['emlFilename'] == 'signed.eml'


def test_vendor_cannot_parse_contracts(login_as):
    portal = login_as('vendor')
    assert portal.post("/api/parse-contract", json=eml_payload()).status_code == 403


def test_extract_contract_links(login):
    r = login.post("/api/extract-contract-links", json=eml_payload())
    assert r.status_code == 200
    links = r.get_json()['links']
    assert links['originalContractUrl'] == 'https://l1.prodbx.com/go/view/?11111.1.2025'
    assert links['addendumUrls'] == [ADDENDUM_URL]


def test_validate_link(login, addendum_site):
    assert login.post("/api/validate-link", json={}).status_code == 400

    r = login.post("/api/validate-link", json={'url': 'https://example.com/page'})
    assert r.status_code == 200
    assert r.get_json()['valid'] is False

    assert login.post("/api/validate-link", json={'url': ADDENDUM_URL}).get_json() == {'valid': True}

    r = login.post("/api/validate-link", json={'url': 'https://l1.prodbx.com/go/view/?999.1'})
    assert r.get_json()['valid'] is False
    assert '404' in r.get_json()['error']


def test_store_contract_creates_then_updates(login):
    r = login.post("/api/contracts", json=sample_contract())
    assert r.status_code == 201
    contract = r.get_json()['contract']
    assert contract['customer']['clientName'] == 'Jane Smith'
    assert len(contract['items']) == 4

    r = login.post("/api/contracts", json=sample_contract())
    assert r.status_code == 200

    adds = db_session.query(ChangeHistory).filter_by(change_type='contract_add').all()
    assert len(adds) == 1
    assert adds[0].new_value == 'Contract for Jane Smith - Order #1001'
    assert db_session.query(Order).count() == 1


def test_store_contract_validates(login):
    body = sample_contract()
    body['customer']['dbxCustomerId'] = ''
    r = login.post("/api/contracts", json=body)
    assert r.status_code == 400
    assert r.get_json()['message'] == 'dbxCustomerId is required'

    r = login.post("/api/contracts", json={'customer': {}})
    assert r.status_code == 400
    assert r.get_json()['message'] == 'Contract must have customer, order, and items'


def test_viewer_cannot_store_contracts(login_as):
    viewer = login_as('viewer')
    assert viewer.post("/api/contracts", json=sample_contract()).status_code == 403
    assert viewer.get("/api/contracts").status_code == 200


def test_sales_rep_sees_only_own_contracts(login, login_as):
    login.post("/api/contracts", json=sample_contract())
    login.post("/api/contracts", json=sample_contract(order_no="1002", customer_id="DBX-2",
                                                      sales_rep="Other Rep"))

    rep = login_as('sales_rep', sales_rep_name='Pat Seller')
    contracts = rep.get("/api/contracts").get_json()['contracts']
    assert [c['order']['orderNo'] for c in contracts] == ['1001']
    assert rep.get("/api/contracts/DBX-1").status_code == 200
    assert rep.get("/api/contracts/DBX-2").status_code == 404

    assert len(login.get("/api/contracts").get_json()['contracts']) == 2


def test_get_contract_by_any_id(login, contract):
    by_order = login.get(f"/api/contracts/{contract['order_id']}").get_json()['contract']
    by_customer = login.get("/api/contracts/DBX-1").get_json()['contract']
    by_number = login.get("/api/contracts/1001").get_json()['contract']
    assert by_order['id'] == by_customer['id'] == by_number['id'] == contract['order_id']

    r = login.get("/api/contracts/unknown")
    assert r.status_code == 404
    assert r.get_json()['message'] == 'Contract not found'


def test_update_contract_logs_changed_fields(login, contract):
    body = sample_contract()
    body['customer']['city'] = 'Orlando'
    body['order']['salesRep'] = 'New Rep'

    r = login.put(f"/api/contracts/{contract['order_id']}", json=body)
    assert r.status_code == 200
    assert r.get_json()['contractId'] == contract['order_id']

    edits = {(c.change_type, c.field_name, c.old_value, c.new_value)
             for c in db_session.query(ChangeHistory).all()}
    assert edits == {
        ('customer_edit', 'city', 'Tampa', 'Orlando'),
        ('order_edit', 'salesRep', 'Pat Seller', 'New Rep'),
    }
    assert db_session.get(Customer, 'DBX-1').city == 'Orlando'


def test_add_addendums_to_stored_contract(login, contract, addendum_site):
    url = f"/api/contracts/{contract['order_id']}/addendums"
    r = login.post(url, json={'urls': [ADDENDUM_URL]})
    assert r.status_code == 200
    body = r.get_json()
    assert body['errors'] == []
    assert body['added'][0]['addendumNumber'] == '7'

    items = body['contract']['items']
    assert len(items) == 7
    header = items[4]
    assert header['isAddendumHeader'] is True
    assert header['addendumNumber'] == '7'
    assert header['addendumUrlId'] == '35587'
    # original rows keep their ids
    assert [i['id'] for i in items if i['type'] == 'item'][:2] == contract['item_ids']

    # the same addendum again replaces its block
    r = login.post(url, json={'urls': [ADDENDUM_URL]})
    assert len(r.get_json()['contract']['items']) == 7

    logged = db_session.query(ChangeHistory).filter_by(change_type='row_add').all()
    assert [c.new_value for c in logged] == ['Addendum #7 (35587)'] * 2


def test_add_addendums_reports_failures(login, contract, addendum_site):
    pages, _ = addendum_site
    pages[ADDENDUM_URL] = FakeResponse('', status_code=500, reason='Server Error')

    r = login.post(f"/api/contracts/{contract['order_id']}/addendums", json={'urls': [ADDENDUM_URL]})
    assert r.status_code == 502
    assert r.get_json()['message'].startswith('All addendum URLs failed to process')

    r = login.post(f"/api/contracts/{contract['order_id']}/addendums", json={'urls': []})
    assert r.status_code == 400


def test_download_stored_contract_spreadsheet(login, contract):
    r = login.get(f"/api/contracts/{contract['order_id']}/spreadsheet")
    assert r.status_code == 200
    assert 'J. Smith - #DBX-1 - 12 Palm Way.xlsx' in r.headers['Content-Disposition']

    ws = load_workbook(BytesIO(r.data)).active
    assert ws['D17'].value == 'Excavation'
    assert ws['H19'].value == 500
