"""
Contract API: parsing signed-contract e-mails and storing the result.

POST /api/parse-contract               .eml -> xlsx (or JSON with ?format=json)
POST /api/extract-contract-links       .eml -> Original Contract / Addendum links
POST /api/validate-link                check an addendum link is reachable
GET/POST /api/contracts
GET/PUT  /api/contracts/<id>
POST /api/contracts/<id>/addendums     fetch addenda and append their items
GET  /api/contracts/<id>/spreadsheet
"""
import base64
import binascii
from io import BytesIO
from urllib.parse import quote

from flask import Blueprint, request, jsonify, session, send_file, current_app

from db import get_db
from models import Order, Customer
from apps.auth import (
    login_required, role_required, get_current_user, can_view_all_contracts,
    sales_rep_names, log_access,
)
from constants import EDITOR_ROLES, STAFF_ROLES, ALLOWED_UPLOAD_EXTENSIONS
from eml_parser import parse_eml, EmlParseError
from contract_extractor import (
    extract_location, extract_order_items, extract_grand_total, OrderItemsTableNotFound,
)
from contract_link_extractor import extract_contract_links
from addendum_parser import (
    AddendumError, validate_addendum_url, fetch_addendum_html,
    fetch_and_parse_addendums, merge_addendum_items, addendum_header_label,
)
from filename_generator import generate_spreadsheet_filename
from spreadsheet_generator import generate_spreadsheet
from services.rate_limit import limiter, PARSE_LIMIT, ADDENDUM_FETCH_LIMIT
from services.contract_store import (
    ContractValidationError, CUSTOMER_FIELDS, ORDER_FIELDS,
    save_contract, contract_to_dict, find_contract, contract_from_extraction,
    append_addendum,
)
from services.change_history import (
    log_contract_add, log_customer_edit, log_order_edit, log_row_add, diff_fields,
)
from services.customer_status import update_customer_status
from services.request_utils import get_json_payload, parse_bool_arg

contracts_bp = Blueprint('contracts', __name__, url_prefix='/api')

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


def _allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_UPLOAD_EXTENSIONS


def _read_upload():
    """
    Raw .eml bytes and filename from a JSON body ({file|data: base64,
    filename}) or a multipart upload (field 'file'). Raises ValueError.
    """
    if request.files:
        upload = request.files.get('file')
        if upload is None or upload.filename == '':
            raise ValueError('No file uploaded')
        if not _allowed_file(upload.filename):
            raise ValueError('Only .eml files are supported')
        content = upload.read()
        filename = upload.filename
    else:
        body = get_json_payload()
        encoded = body.get('file') or body.get('data')
        if not encoded:
            raise ValueError('No file data in request. Expected "file" or "data" field with base64 content.')
        try:
            content = base64.b64decode(encoded)
        except (binascii.Error, ValueError):
            raise ValueError('File content is not valid base64')
        filename = body.get('filename')

    if not content:
        raise ValueError('No file uploaded or file is empty')
    return content, filename


def _xlsx_response(data, filename):
    response = send_file(BytesIO(data), mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=filename)
    response.headers['Content-Disposition'] = (
        f"attachment; filename=\"{filename}\"; filename*=UTF-8''{quote(filename)}"
    )
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


def _can_see(user, order):
    if can_view_all_contracts(user):
        return True
    return order.sales_rep in sales_rep_names(user)


@contracts_bp.route('/parse-contract', methods=['POST'])
@limiter.limit(PARSE_LIMIT)
@login_required
@role_required(STAFF_ROLES)
def parse_contract():
    try:
        content, filename = _read_upload()
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    try:
        parsed = parse_eml(content)
        location = extract_location(parsed.text)
        items = extract_order_items(parsed.html)
    except EmlParseError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    except OrderItemsTableNotFound as e:
        return jsonify({'success': False, 'message': str(e)}), 422
    except Exception as e:
        current_app.logger.error(f"Contract parse failed ({filename}): {e}")
        return jsonify({'success': False, 'message': 'Failed to process contract'}), 500

    if request.args.get('format') == 'json':
        links = extract_contract_links(parsed)
        contract = contract_from_extraction(location, items, extract_grand_total(parsed.text), filename)
        addendum_errors = []
        if parse_bool_arg('includeAddendums') and links.addendum_urls:
            try:
                addenda, addendum_errors = fetch_and_parse_addendums(links.addendum_urls)
            except AddendumError as e:
                addenda, addendum_errors = [], [{'url': None, 'error': str(e)}]
            for addendum in addenda:
                items = merge_addendum_items(items, addendum)
            contract['items'] = [i.to_dict() for i in items]
        return jsonify({
            'success': True,
            'contract': contract,
            'location': location.to_dict(),
            'links': links.to_dict(),
            'addendumErrors': addendum_errors,
            'email': parsed.to_dict(),
        })

    spreadsheet = generate_spreadsheet(items, location)
    download_name = generate_spreadsheet_filename(location)
    current_app.logger.info(f"Contract spreadsheet generated: {download_name} ({len(items)} items)")
    return _xlsx_response(spreadsheet, download_name)


@contracts_bp.route('/extract-contract-links', methods=['POST'])
@limiter.limit(PARSE_LIMIT)
@login_required
def extract_links():
    try:
        content, _ = _read_upload()
    except ValueError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    try:
        parsed = parse_eml(content)
    except EmlParseError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    return jsonify({'success': True, 'links': extract_contract_links(parsed).to_dict()})


@contracts_bp.route('/validate-link', methods=['POST'])
@limiter.limit(ADDENDUM_FETCH_LIMIT)
@login_required
def validate_link():
    """Always 200 for a checked link; 'valid' tells the outcome."""
    url = get_json_payload().get('url')
    if not url or not isinstance(url, str):
        return jsonify({'success': False, 'message': 'URL is required'}), 400

    url = url.strip()
    if not validate_addendum_url(url):
        return jsonify({'valid': False,
                        'error': 'Invalid URL format. Expected format: https://l1.prodbx.com/go/view/?...'})
    try:
        fetch_addendum_html(url)
    except AddendumError as e:
        return jsonify({'valid': False, 'error': str(e)})
    return jsonify({'valid': True})


@contracts_bp.route('/contracts', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def list_contracts():
    """All stored contracts, newest first. Sales reps only see their own."""
    db = get_db()
    user = get_current_user()

    query = db.query(Order).join(Customer, Order.customer_id == Customer.dbx_customer_id)
    if not can_view_all_contracts(user):
        query = query.filter(Order.sales_rep.in_(sales_rep_names(user)))
    orders = query.order_by(Order.created_at.desc()).all()

    return jsonify({'success': True, 'contracts': [contract_to_dict(o) for o in orders]})


@contracts_bp.route('/contracts', methods=['POST'])
@login_required
@role_required(EDITOR_ROLES)
def store_contract():
    db = get_db()
    contract = get_json_payload()
    user_id = session.get('user_id')

    try:
        order, is_new = save_contract(db, contract, user_id)
        if is_new:
            log_contract_add(order.customer_id, order.id, order.customer.client_name or 'Unknown',
                             order.order_no, user_id=user_id, db=db)
        update_customer_status(db, order.customer_id)
        db.commit()
    except ContractValidationError as e:
        db.rollback()
        return jsonify({'success': False, 'message': str(e)}), 400
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to store contract: {e}")
        return jsonify({'success': False, 'message': 'Failed to store contract'}), 500

    return jsonify({'success': True, 'contract': contract_to_dict(order)}), 201 if is_new else 200


@contracts_bp.route('/contracts/<contract_id>', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_contract(contract_id):
    """Lookup by order id, then DBX customer id (most recent order), then order number."""
    db = get_db()
    order = find_contract(db, contract_id)
    if order is None or not _can_see(get_current_user(), order):
        return jsonify({'success': False, 'message': 'Contract not found', 'id': contract_id}), 404
    return jsonify({'success': True, 'contract': contract_to_dict(order)})


@contracts_bp.route('/contracts/<contract_id>', methods=['PUT'])
@login_required
@role_required(EDITOR_ROLES)
def update_contract(contract_id):
    """Save an edited contract and log each changed customer / order field."""
    db = get_db()
    contract = get_json_payload()
    user_id = session.get('user_id')

    customer_data = contract.get('customer') if isinstance(contract.get('customer'), dict) else {}
    order_data = contract.get('order') if isinstance(contract.get('order'), dict) else {}
    customer_id = customer_data.get('dbxCustomerId')
    if not customer_id:
        return jsonify({'success': False, 'message': 'Contract customer must have dbxCustomerId'}), 400

    existing_customer = db.get(Customer, customer_id)
    existing_order = db.query(Order).filter(Order.order_no == order_data.get('orderNo')).first()
    customer_changes = diff_fields(existing_customer, customer_data, CUSTOMER_FIELDS) if existing_customer else []
    order_changes = diff_fields(existing_order, order_data, ORDER_FIELDS) if existing_order else []

    try:
        order, _ = save_contract(db, contract, user_id)
        for key, _attr, old, new in customer_changes:
            log_customer_edit(key, old, new, customer_id, user_id=user_id, db=db)
        for key, _attr, old, new in order_changes:
            log_order_edit(key, old, new, order.id, customer_id, user_id=user_id, db=db)
        update_customer_status(db, customer_id)
        db.commit()
    except ContractValidationError as e:
        db.rollback()
        return jsonify({'success': False, 'message': str(e)}), 400
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update contract {contract_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update contract'}), 500

    return jsonify({'success': True, 'contractId': order.id, 'contract': contract_to_dict(order)})


@contracts_bp.route('/contracts/<contract_id>/addendums', methods=['POST'])
@limiter.limit(ADDENDUM_FETCH_LIMIT)
@login_required
@role_required(EDITOR_ROLES)
def add_addendums(contract_id):
    """Fetch addendum pages and append each as a header row plus its items."""
    db = get_db()
    urls = get_json_payload().get('urls')
    if not isinstance(urls, list) or not urls:
        return jsonify({'success': False, 'message': 'urls must be a non-empty array'}), 400

    order = find_contract(db, contract_id)
    if order is None:
        return jsonify({'success': False, 'message': 'Contract not found'}), 404

    try:
        addenda, errors = fetch_and_parse_addendums([u.strip() for u in urls if isinstance(u, str)])
    except AddendumError as e:
        return jsonify({'success': False, 'message': str(e)}), 502

    user_id = session.get('user_id')
    try:
        for addendum in addenda:
            rows = append_addendum(db, order, addendum)
            header = rows[0]
            log_row_add(addendum_header_label(addendum), order.id, order.customer_id,
                        row_index=header.row_index, order_item_id=header.id, user_id=user_id, db=db)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to add addendums to {contract_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to add addendums'}), 500

    return jsonify({
        'success': True,
        'added': [a.to_dict() for a in addenda],
        'errors': errors,
        'contract': contract_to_dict(order),
    })


@contracts_bp.route('/contracts/<contract_id>/spreadsheet', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def contract_spreadsheet(contract_id):
    db = get_db()
    order = find_contract(db, contract_id)
    if order is None or not _can_see(get_current_user(), order):
        return jsonify({'success': False, 'message': 'Contract not found'}), 404

    contract = contract_to_dict(order)
    location = dict(contract['customer'], orderNo=order.order_no)
    try:
        spreadsheet = generate_spreadsheet(contract['items'], location)
    except Exception as e:
        current_app.logger.error(f"Spreadsheet generation failed for {contract_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to generate spreadsheet'}), 500

    log_access(f"Spreadsheet download: order {order.order_no}", session.get('user_id'))
    return _xlsx_response(spreadsheet, generate_spreadsheet_filename(location))
