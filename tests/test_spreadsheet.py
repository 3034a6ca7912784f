from io import BytesIO

from openpyxl import load_workbook

from filename_generator import format_client_name, generate_spreadsheet_filename, sanitize_filename
from services.vendor_sheets import export_vendors_csv, read_vendor_rows
from models import Vendor
from spreadsheet_generator import (
    MAX_ITEM_ROW, clean_cell_text, generate_spreadsheet, location_header, sanitize_sheet_name,
)

LOCATION = {
    'orderNo': '1001', 'streetAddress': '12 Palm Way', 'city': 'Tampa', 'state': 'FL',
    'zip': '33601', 'clientName': 'Jane Smith', 'dbxCustomerId': 'DBX-1',
}


def test_format_client_name():
    assert format_client_name('Ely Przybyl') == 'E. Przybyl'
    assert format_client_name('mary ann lee') == 'M. lee'
    assert format_client_name('Cher') == 'Cher'
    assert format_client_name('  ') == ''


def test_sanitize_filename():
    assert sanitize_filename(' a/b:c?. ') == 'abc'
    assert sanitize_filename('x   y') == 'x y'
    assert len(sanitize_filename('z' * 400)) == 247


def test_spreadsheet_filename():
    assert generate_spreadsheet_filename(LOCATION) == 'J. Smith - #DBX-1 - 12 Palm Way.xlsx'
    assert generate_spreadsheet_filename({'orderNo': '77'}) == 'Contract - #77.xlsx'
    fallback = generate_spreadsheet_filename({})
    assert fallback.startswith('contract-') and fallback.endswith('.xlsx')


def test_sheet_and_cell_text_cleanup():
    assert sanitize_sheet_name('#1001-12 Palm [Way]/?') == '#1001-12 Palm Way'
    assert len(sanitize_sheet_name('x' * 40)) == 31
    assert sanitize_sheet_name('[]') == 'Order Items'
    assert clean_cell_text('**Dig​   pool** ') == 'Dig pool'
    assert clean_cell_text(None) == ''


def test_location_header():
    assert location_header(LOCATION) == 'Pool & Spa - Tampa, FL 33601, United States'


def test_generate_spreadsheet_layout():
    items = [
        {'type': 'maincategory', 'productService': 'Pool'},
        {'type': 'subcategory', 'productService': 'Excavation'},
        {'type': 'item', 'productService': 'Dig pool', 'qty': 1, 'rate': 1000, 'amount': 1000},
        {'type': 'item', 'productService': 'Haul dirt', 'qty': '2', 'rate': None, 'amount': 'n/a'},
    ]
    ws = load_workbook(BytesIO(generate_spreadsheet(items, LOCATION))).active
    assert ws.title == '#1001-12 Palm Way'
    assert ws['D15'].value == 'Product / Service'
    assert ws['D16'].value == 'Pool & Spa - Tampa, FL 33601, United States'
    assert ws['D17'].value == 'Excavation'
    assert ws['F17'].value is None
    assert ws['D18'].value == 'Dig pool'
    assert ws['H18'].value == 1000
    assert ws['F19'].value == 2
    assert ws['G19'].value == 0
    assert ws['H19'].value == 0
    assert ws['D20'].value is None


def test_generate_spreadsheet_stops_at_last_row():
    items = [{'type': 'item', 'productService': f"Row {n}", 'amount': 1} for n in range(500)]
    ws = load_workbook(BytesIO(generate_spreadsheet(items, LOCATION))).active
    assert ws.cell(row=MAX_ITEM_ROW, column=4).value == f"Row {MAX_ITEM_ROW - 17}"
    assert ws.cell(row=MAX_ITEM_ROW + 1, column=4).value is None


def test_read_vendor_rows_with_headers():
    csv = b"vendor,Email,Specialties,Unknown\nAcme Pools,acme@example.com,Tile; Coping,x\n,,,\n"
    rows = read_vendor_rows(BytesIO(csv), 'list.CSV')
    assert rows == [{'name': 'Acme Pools', 'email': 'acme@example.com',
                     'specialties': ['Tile', 'Coping']}]


def test_read_vendor_rows_names_only():
    rows = read_vendor_rows(BytesIO(b"Acme Pools\nBlue Water Supply\n"), 'names.csv')
    assert rows == [{'name': 'Acme Pools'}, {'name': 'Blue Water Supply'}]


def test_export_csv_columns():
    vendor = Vendor(name='Acme Pools', email='acme@example.com', status='active',
                    specialties=['Tile', 'Coping'])
    lines = export_vendors_csv([vendor]).decode('utf-8').splitlines()
    assert lines[0].startswith('VENDOR,EMAIL,PHONE')
    assert 'Tile; Coping' in lines[1]
