"""
Contract workbook export (openpyxl).

Layout of the "Order Items" sheet:
  rows 1-14  header block (contract / customer details)
  row 15     column headings
  row 16     location line in D (merged D:E)
  row 17+    sub-category rows (bold, D:E merged) and line items
             D product/service, F qty, G rate, H amount
Main-category rows are not written. Items stop at row 452.
"""
import io
import logging
import re

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

logger = logging.getLogger(__name__)

LOCATION_ROW = 16
FIRST_ITEM_ROW = 17
MAX_ITEM_ROW = 452

COL_PRODUCT = 4  # D
COL_QTY = 6      # F
COL_RATE = 7     # G
COL_AMOUNT = 8   # H

_INVALID_SHEET_CHARS = re.compile(r"[\\/?*\[\]]")
_INVISIBLE = re.compile(r"[\u200b-\u200d\ufeff\u202a-\u202e\u2060-\u206f\ue000-\uf8ff]")

HEADER_FILL = PatternFill(start_color="1F4E78", end_color="1F4E78", fill_type="solid")
SUBCATEGORY_FILL = PatternFill(start_color="DDEBF7", end_color="DDEBF7", fill_type="solid")
THIN = Side(style='thin')


def sanitize_sheet_name(name):
    sanitized = _INVALID_SHEET_CHARS.sub('', name or '')
    return sanitized[:31] or 'Order Items'


def clean_cell_text(value):
    text = str(value or '').replace('*', '')
    text = _INVISIBLE.sub('', text)
    return re.sub(r"\s+", " ", text).strip()


def location_header(location):
    loc = _location_dict(location)
    text = f"Pool & Spa - {loc['city']}, {loc['state']} {loc['zip']}, United States"
    return clean_cell_text(text)


def _location_dict(location):
    if isinstance(location, dict):
        return {
            'orderNo': location.get('orderNo') or '',
            'streetAddress': location.get('streetAddress') or '',
            'city': location.get('city') or '',
            'state': location.get('state') or '',
            'zip': location.get('zip') or '',
            'clientName': location.get('clientName') or '',
            'dbxCustomerId': location.get('dbxCustomerId') or '',
        }
    return location.to_dict()


def _item_value(item, attr, key):
    if isinstance(item, dict):
        return item.get(key, item.get(attr))
    return getattr(item, attr, None)


def _number(value):
    if value in (None, ''):
        return 0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


def _write_header_block(ws, loc):
    ws.cell(row=1, column=COL_PRODUCT, value='Progress Billing Worksheet').font = Font(bold=True, size=16)
    details = [
        ('Client', loc['clientName']),
        ('DBX Customer Id', loc['dbxCustomerId']),
        ('Order Id', loc['orderNo']),
        ('Address', loc['streetAddress']),
        ('City', loc['city']),
        ('State', loc['state']),
        ('Zip', loc['zip']),
    ]
    for offset, (label, value) in enumerate(details):
        row = 3 + offset
        ws.cell(row=row, column=COL_PRODUCT, value=f"{label}:").font = Font(bold=True)
        ws.cell(row=row, column=COL_QTY, value=value)

    headings = {COL_PRODUCT: 'Product / Service', COL_QTY: 'Qty', COL_RATE: 'Rate', COL_AMOUNT: 'Amount'}
    for col, title in headings.items():
        cell = ws.cell(row=15, column=col, value=title)
        cell.font = Font(bold=True, color="FFFFFF")
        cell.fill = HEADER_FILL
        cell.border = Border(bottom=THIN)
        cell.alignment = Alignment(horizontal='center', vertical='center')
    ws.merge_cells(start_row=15, start_column=COL_PRODUCT, end_row=15, end_column=COL_PRODUCT + 1)


def generate_spreadsheet(items, location):
    """Workbook bytes for the given contract items (ContractItem or dict)."""
    loc = _location_dict(location)
    wb = Workbook()
    ws = wb.active
    ws.title = sanitize_sheet_name(f"#{loc['orderNo']}-{loc['streetAddress']}")

    _write_header_block(ws, loc)

    location_cell = ws.cell(row=LOCATION_ROW, column=COL_PRODUCT, value=location_header(loc))
    location_cell.font = Font(size=11, bold=False)
    location_cell.alignment = Alignment(vertical='center', wrap_text=True)
    ws.merge_cells(start_row=LOCATION_ROW, start_column=COL_PRODUCT, end_row=LOCATION_ROW, end_column=COL_PRODUCT + 1)

    row = FIRST_ITEM_ROW
    skipped = 0
    for item in items or []:
        item_type = _item_value(item, 'type', 'type')
        if item_type not in ('subcategory', 'item'):
            continue
        if row > MAX_ITEM_ROW:
            skipped += 1
            continue

        text = clean_cell_text(_item_value(item, 'product_service', 'productService'))
        cell = ws.cell(row=row, column=COL_PRODUCT, value=text)
        ws.merge_cells(start_row=row, start_column=COL_PRODUCT, end_row=row, end_column=COL_PRODUCT + 1)

        if item_type == 'subcategory':
            cell.font = Font(size=11, bold=True)
            cell.alignment = Alignment(vertical='center', indent=1, wrap_text=True)
            for col in range(COL_PRODUCT, COL_AMOUNT + 1):
                ws.cell(row=row, column=col).fill = SUBCATEGORY_FILL
        else:
            cell.font = Font(size=11, bold=False)
            ws.cell(row=row, column=COL_QTY, value=_number(_item_value(item, 'qty', 'qty')))
            rate = ws.cell(row=row, column=COL_RATE, value=_number(_item_value(item, 'rate', 'rate')))
            amount = ws.cell(row=row, column=COL_AMOUNT, value=_number(_item_value(item, 'amount', 'amount')))
            rate.number_format = '#,##0.00'
            amount.number_format = '#,##0.00'
        row += 1

    if skipped:
        logger.warning(f"Spreadsheet row limit reached; {skipped} rows not written")

    for letter, width in (('D', 50), ('E', 10), ('F', 10), ('G', 14), ('H', 14)):
        ws.column_dimensions[letter].width = width

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
