"""Download filenames for generated contract spreadsheets."""
import re
import time

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*]')
MAX_FILENAME_LENGTH = 247  # 255 minus room for ".xlsx"


def format_client_name(client_name):
    """'Ely Przybyl' -> 'E. Przybyl'; single names are returned as-is."""
    if not client_name or not client_name.strip():
        return ''
    parts = client_name.split()
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0][0].upper()}. {parts[-1]}"


def sanitize_filename(filename):
    sanitized = _INVALID_CHARS.sub('', filename or '')
    sanitized = re.sub(r"^[\s.]+|[\s.]+$", "", sanitized)
    sanitized = re.sub(r"\s+", " ", sanitized)
    if len(sanitized) > MAX_FILENAME_LENGTH:
        sanitized = sanitized[:MAX_FILENAME_LENGTH]
        sanitized = re.sub(r"[\s-]+$", "", sanitized)
    return sanitized


def _get(location, attr, key):
    if isinstance(location, dict):
        return location.get(key) or location.get(attr) or ''
    return getattr(location, attr, '') or ''


def generate_spreadsheet_filename(location):
    """
    "{F. Last} - #{DBX id} - {street}.xlsx", e.g.
    "E. Przybyl - #9682 - 1041 Temple terrace.xlsx".
    Accepts a Location or its camelCase dict.
    """
    parts = []
    client = format_client_name(_get(location, 'client_name', 'clientName'))
    if client:
        parts.append(client)
    dbx_id = _get(location, 'dbx_customer_id', 'dbxCustomerId')
    if dbx_id:
        parts.append(f"#{dbx_id}")
    street = _get(location, 'street_address', 'streetAddress')
    if street:
        parts.append(street)

    if not parts:
        order_no = _get(location, 'order_no', 'orderNo')
        if order_no:
            return sanitize_filename(f"Contract - #{order_no}.xlsx")
        return f"contract-{int(time.time() * 1000)}.xlsx"

    return f"{sanitize_filename(' - '.join(parts))}.xlsx"
