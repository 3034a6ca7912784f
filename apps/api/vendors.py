import datetime
from io import BytesIO

from flask import Blueprint, jsonify, request, session, send_file, current_app
from sqlalchemy import or_

from apps.auth import login_required, role_required, log_access, get_current_user, get_vendor_for_user
from db import get_db
from models import Vendor
from constants import STAFF_ROLES, EDITOR_ROLES, VENDOR_STATUS, VENDOR_IMPORT_EXTENSIONS
from services.request_utils import get_json_payload, parse_bool_arg, get_pagination, pagination_dict
from services.vendor_sheets import export_vendors_xlsx, export_vendors_csv, read_vendor_rows
from services.vendor_analytics import (
    approved_vendor_rows, summarize, project_summaries, trends, PROJECT_SORTS, TREND_PERIODS,
)

vendors_bp = Blueprint('vendors', __name__, url_prefix='/api')

# Contact details a vendor may change on their own profile
SELF_EDITABLE_FIELDS = (
    'phone', 'contactPerson', 'address', 'city', 'state', 'zip',
    'category', 'notes', 'specialties',
)


def _clean(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _apply_fields(vendor, payload):
    """Copy the known vendor fields present in payload onto the row."""
    for key, attr in Vendor.FIELDS.items():
        if key not in payload:
            continue
        value = payload[key]
        if key == 'specialties':
            value = [str(s).strip() for s in value if str(s).strip()] if isinstance(value, list) else None
        elif key == 'status':
            value = value or 'active'
        else:
            value = _clean(value)
        setattr(vendor, attr, value)


def _name_taken(db, name, exclude_id=None):
    query = db.query(Vendor).filter(Vendor.name == name)
    if exclude_id:
        query = query.filter(Vendor.id != exclude_id)
    return query.first() is not None


def _filtered_vendors(db, default_active=True):
    query = db.query(Vendor)
    trash_only = parse_bool_arg('trashOnly')
    include_deleted = parse_bool_arg('includeDeleted')
    if trash_only:
        query = query.filter(Vendor.deleted_at.isnot(None))
    elif not include_deleted:
        query = query.filter(Vendor.deleted_at.is_(None))

    status = request.args.get('status')
    if status and status != 'all':
        query = query.filter(Vendor.status == status)
    elif default_active and not trash_only and not include_deleted:
        query = query.filter(Vendor.status == 'active')

    category = request.args.get('category')
    if category and category != 'all':
        query = query.filter(Vendor.category == category)

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Vendor.name.ilike(pattern), Vendor.email.ilike(pattern),
                                 Vendor.phone.ilike(pattern)))
    return query.order_by(Vendor.name)


@vendors_bp.route('/vendors', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def list_vendors():
    db = get_db()
    page, page_size, offset = get_pagination(default_limit=10, max_limit=100, limit_name='pageSize')
    query = _filtered_vendors(db)
    total = query.count()
    vendors = query.offset(offset).limit(page_size).all()

    pagination = pagination_dict(page, page_size, total)
    pagination['pageSize'] = pagination.pop('limit')
    return jsonify({'success': True, 'data': [v.to_dict() for v in vendors], 'pagination': pagination})


@vendors_bp.route('/vendors', methods=['POST'])
@login_required
@role_required(EDITOR_ROLES)
def create_vendor():
    db = get_db()
    payload = get_json_payload()
    name = _clean(payload.get('name')) if isinstance(payload.get('name'), str) else None
    if not name:
        return jsonify({'success': False, 'message': 'Vendor name is required'}), 400
    if payload.get('status') and payload['status'] not in VENDOR_STATUS:
        return jsonify({'success': False, 'message': 'Invalid vendor status'}), 400
    if _name_taken(db, name):
        return jsonify({'success': False, 'message': 'Vendor with this name already exists'}), 409

    try:
        vendor = Vendor(status='active')
        _apply_fields(vendor, payload)
        vendor.name = name
        db.add(vendor)
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to create vendor: {e}")
        return jsonify({'success': False, 'message': 'Failed to create vendor'}), 500

    return jsonify({'success': True, 'data': vendor.to_dict()}), 201


@vendors_bp.route('/vendors/export', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def export_vendors():
    """All matching vendors as .xlsx (default) or .csv (?format=csv)."""
    db = get_db()
    vendors = _filtered_vendors(db, default_active=False).all()
    stamp = datetime.date.today().isoformat()

    if request.args.get('format') == 'csv':
        return send_file(BytesIO(export_vendors_csv(vendors)), mimetype='text/csv',
                         as_attachment=True, download_name=f"vendors-export-{stamp}.csv")
    return send_file(BytesIO(export_vendors_xlsx(vendors)),
                     mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
                     as_attachment=True, download_name=f"vendors-export-{stamp}.xlsx")


@vendors_bp.route('/vendors/import', methods=['POST'])
@login_required
@role_required(EDITOR_ROLES)
def import_vendors():
    """Create vendors from a sheet. Existing names are skipped, so re-imports are harmless."""
    upload = request.files.get('file')
    if upload is None or not upload.filename:
        return jsonify({'success': False, 'message': 'No file provided'}), 400
    if upload.filename.rsplit('.', 1)[-1].lower() not in VENDOR_IMPORT_EXTENSIONS:
        return jsonify({'success': False, 'message': 'Only .xlsx and .csv files are supported'}), 400

    try:
        rows = read_vendor_rows(upload.stream, upload.filename)
    except Exception as e:
        current_app.logger.error(f"Vendor import: unreadable file {upload.filename}: {e}")
        return jsonify({'success': False, 'message': 'Could not read the uploaded file'}), 400
    if not rows:
        return jsonify({'success': False, 'message': 'No vendor names found in file'}), 400

    db = get_db()
    created, skipped, seen = 0, 0, set()
    try:
        for row in rows:
            if row['name'] in seen or _name_taken(db, row['name']):
                skipped += 1
                continue
            seen.add(row['name'])
            vendor = Vendor(status='active')
            _apply_fields(vendor, row)
            if vendor.status not in VENDOR_STATUS:
                vendor.status = 'active'
            db.add(vendor)
            created += 1
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Vendor import failed: {e}")
        return jsonify({'success': False, 'message': 'Failed to import vendors'}), 500

    log_access(f"Vendor import: {created} created, {skipped} skipped", session.get('user_id'))
    return jsonify({
        'success': True,
        'message': f"Imported {created} new vendors, skipped {skipped} existing",
        'created': created,
        'skipped': skipped,
        'total': len(rows),
    })


@vendors_bp.route('/vendors/<vendor_id>', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def get_vendor(vendor_id):
    vendor = get_db().get(Vendor, vendor_id)
    if vendor is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404
    return jsonify({'success': True, 'data': vendor.to_dict()})


@vendors_bp.route('/vendors/<vendor_id>', methods=['PUT'])
@login_required
@role_required(EDITOR_ROLES)
def update_vendor(vendor_id):
    db = get_db()
    payload = get_json_payload()
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404

    if 'name' in payload:
        name = _clean(payload.get('name'))
        if not name:
            return jsonify({'success': False, 'message': 'Vendor name is required'}), 400
        if _name_taken(db, name, exclude_id=vendor.id):
            return jsonify({'success': False, 'message': 'Vendor with this name already exists'}), 409
    if 'status' in payload and payload['status'] not in VENDOR_STATUS:
        return jsonify({'success': False, 'message': 'Invalid vendor status'}), 400

    try:
        _apply_fields(vendor, payload)
        vendor.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to update vendor {vendor_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to update vendor'}), 500

    return jsonify({'success': True, 'data': vendor.to_dict()})


@vendors_bp.route('/vendors/<vendor_id>', methods=['DELETE'])
@login_required
@role_required(EDITOR_ROLES)
def delete_vendor(vendor_id):
    db = get_db()
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404
    if vendor.deleted_at:
        return jsonify({'success': False, 'message': 'Vendor is already deleted'}), 400

    try:
        vendor.deleted_at = datetime.datetime.now()
        vendor.updated_at = vendor.deleted_at
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to delete vendor {vendor_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to delete vendor'}), 500

    return jsonify({'success': True, 'data': vendor.to_dict(), 'message': 'Vendor deleted successfully'})


@vendors_bp.route('/vendors/<vendor_id>/restore', methods=['POST'])
@login_required
@role_required(EDITOR_ROLES)
def restore_vendor(vendor_id):
    db = get_db()
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404
    if not vendor.deleted_at:
        return jsonify({'success': False, 'message': 'Vendor is not deleted'}), 400

    try:
        vendor.deleted_at = None
        vendor.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Failed to restore vendor {vendor_id}: {e}")
        return jsonify({'success': False, 'message': 'Failed to restore vendor'}), 500

    return jsonify({'success': True, 'data': vendor.to_dict(), 'message': 'Vendor restored successfully'})


# ---------------------------------------------------------------------------
# Profitability (approved order approvals)
# ---------------------------------------------------------------------------

@vendors_bp.route('/vendors/analytics', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def vendor_analytics():
    """Profitability by category and by vendor; ?vendorId= narrows to one vendor."""
    db = get_db()
    vendor_id = request.args.get('vendorId')
    if vendor_id and db.get(Vendor, vendor_id) is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404
    return jsonify({'success': True, 'data': summarize(approved_vendor_rows(db, vendor_id))})


@vendors_bp.route('/vendors/<vendor_id>/projects', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def vendor_projects(vendor_id):
    db = get_db()
    if db.get(Vendor, vendor_id) is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404

    sort_by = request.args.get('sortBy', 'orderNo')
    if sort_by not in PROJECT_SORTS:
        sort_by = 'orderNo'
    page, page_size, offset = get_pagination(default_limit=50, max_limit=200, limit_name='pageSize')
    projects = project_summaries(approved_vendor_rows(db, vendor_id), sort_by)

    pagination = pagination_dict(page, page_size, len(projects))
    pagination['pageSize'] = pagination.pop('limit')
    return jsonify({'success': True, 'data': projects[offset:offset + page_size], 'pagination': pagination})


@vendors_bp.route('/vendors/<vendor_id>/trends', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def vendor_trends(vendor_id):
    db = get_db()
    if db.get(Vendor, vendor_id) is None:
        return jsonify({'success': False, 'message': 'Vendor not found'}), 404

    period = request.args.get('period', 'monthly')
    if period not in TREND_PERIODS:
        return jsonify({'success': False, 'message': 'period must be monthly or quarterly'}), 400
    rows = approved_vendor_rows(db, vendor_id)
    return jsonify({'success': True, 'data': {'period': period, 'trends': trends(rows, period)}})


# ---------------------------------------------------------------------------
# Vendor self-service profile
# ---------------------------------------------------------------------------

def _own_vendor():
    """(vendor, None) for the signed-in vendor user, else (None, error response)."""
    user = get_current_user()
    if not user.email:
        return None, (jsonify({'success': False, 'message': 'User email is required to find vendor profile'}), 400)
    vendor = get_vendor_for_user(user)
    if vendor is None:
        return None, (jsonify({'success': False, 'message': 'Vendor profile not found for this user'}), 404)
    return vendor, None


@vendors_bp.route('/users/vendor', methods=['GET'])
@login_required
@role_required(['vendor'])
def get_own_vendor_profile():
    vendor, error = _own_vendor()
    if error:
        return error
    return jsonify({'success': True, 'data': vendor.to_dict()})


@vendors_bp.route('/users/vendor', methods=['PATCH'])
@login_required
@role_required(['vendor'])
def update_own_vendor_profile():
    """Vendors edit their contact details; name, email and status stay with the office."""
    vendor, error = _own_vendor()
    if error:
        return error

    payload = get_json_payload()
    changes = {k: v for k, v in payload.items() if k in SELF_EDITABLE_FIELDS}
    db = get_db()
    try:
        _apply_fields(vendor, changes)
        vendor.updated_at = datetime.datetime.now()
        db.commit()
    except Exception as e:
        db.rollback()
        current_app.logger.error(f"Vendor self-update failed ({vendor.id}): {e}")
        return jsonify({'success': False, 'message': 'Failed to update vendor profile'}), 500

    return jsonify({'success': True, 'data': vendor.to_dict()})
