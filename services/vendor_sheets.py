"""Vendor list import / export as spreadsheets (pandas + openpyxl)."""
from io import BytesIO

import pandas as pd

# sheet column -> Vendor JSON key
EXPORT_COLUMNS = {
    'VENDOR': 'name',
    'EMAIL': 'email',
    'PHONE': 'phone',
    'CONTACT_PERSON': 'contactPerson',
    'ADDRESS': 'address',
    'CITY': 'city',
    'STATE': 'state',
    'ZIP': 'zip',
    'CATEGORY': 'category',
    'STATUS': 'status',
    'NOTES': 'notes',
    'SPECIALTIES': 'specialties',
}

SPECIALTY_SEPARATOR = '; '


def _cell_text(raw_val):
    if raw_val is None or pd.isna(raw_val):
        return None
    text = str(raw_val).strip()
    return text or None


def vendors_dataframe(vendors):
    rows = []
    for vendor in vendors:
        data = vendor.to_dict()
        row = {col: data.get(key) for col, key in EXPORT_COLUMNS.items()}
        row['SPECIALTIES'] = SPECIALTY_SEPARATOR.join(data.get('specialties') or [])
        rows.append(row)
    return pd.DataFrame(rows, columns=list(EXPORT_COLUMNS))


def export_vendors_xlsx(vendors):
    buffer = BytesIO()
    vendors_dataframe(vendors).to_excel(buffer, index=False, sheet_name='Vendors', engine='openpyxl')
    return buffer.getvalue()


def export_vendors_csv(vendors):
    return vendors_dataframe(vendors).to_csv(index=False).encode('utf-8')


def read_vendor_rows(stream, filename):
    """
    Vendor dicts (JSON keys) from an uploaded .xlsx / .csv.

    Headers are matched case-insensitively against the export columns; a
    sheet without a VENDOR header is read as a bare list of names in its
    first column. Rows without a name are dropped.
    """
    extension = filename.rsplit('.', 1)[-1].lower()
    if extension == 'csv':
        df = pd.read_csv(stream, dtype=str, header=None)
    else:
        df = pd.read_excel(stream, dtype=str, header=None, engine='openpyxl')
    if df.empty:
        return []

    first_row = [(_cell_text(v) or '').upper() for v in df.iloc[0].tolist()]
    if 'VENDOR' in first_row:
        columns = {i: EXPORT_COLUMNS.get(col) for i, col in enumerate(first_row)}
        body = df.iloc[1:]
    else:
        columns = {0: 'name'}
        body = df

    rows = []
    for _, record in body.iterrows():
        vendor = {}
        for index, key in columns.items():
            if key is None:
                continue
            value = _cell_text(record.iloc[index])
            if key == 'specialties':
                value = [s.strip() for s in value.split(';') if s.strip()] if value else None
            vendor[key] = value
        if vendor.get('name'):
            rows.append(vendor)
    return rows
