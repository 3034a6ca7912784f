"""
Contract content extraction.

The signed-contract e-mail carries a labelled header block (order id,
customer id, client, address) in its text body and an "Order Items" table
in its HTML body. The table mixes three kinds of rows: main categories
(bold, or a category code like "0100 Calimingo ..."), sub-categories
(ssg_title rows) and line items (indented rows with qty and amount).
"""
import html as html_lib
import re
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from bs4 import BeautifulSoup


class OrderItemsTableNotFound(Exception):
    pass


@dataclass
class Location:
    order_no: str = ''
    street_address: str = ''
    city: str = ''
    state: str = ''
    zip: str = ''
    client_name: str = ''
    dbx_customer_id: str = ''

    def to_dict(self):
        return {
            'orderNo': self.order_no,
            'streetAddress': self.street_address,
            'city': self.city,
            'state': self.state,
            'zip': self.zip,
            'clientName': self.client_name,
            'dbxCustomerId': self.dbx_customer_id,
        }


@dataclass
class ContractItem:
    type: str
    product_service: str
    qty: object = ''
    rate: object = ''
    amount: object = ''
    main_category: Optional[str] = None
    sub_category: Optional[str] = None
    column_b_label: Optional[str] = None
    is_blank_row: bool = False
    is_addendum_header: bool = False
    addendum_number: Optional[str] = None
    addendum_url_id: Optional[str] = None
    is_optional: bool = False
    optional_package_number: Optional[int] = None

    _JSON_KEYS = {
        'product_service': 'productService',
        'main_category': 'mainCategory',
        'sub_category': 'subCategory',
        'column_b_label': 'columnBLabel',
        'is_blank_row': 'isBlankRow',
        'is_addendum_header': 'isAddendumHeader',
        'addendum_number': 'addendumNumber',
        'addendum_url_id': 'addendumUrlId',
        'is_optional': 'isOptional',
        'optional_package_number': 'optionalPackageNumber',
    }

    def to_dict(self):
        return {self._JSON_KEYS.get(k, k): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data):
        reverse = {v: k for k, v in cls._JSON_KEYS.items()}
        kwargs = {}
        for key, value in (data or {}).items():
            attr = reverse.get(key, key)
            if attr in cls.__dataclass_fields__:
                kwargs[attr] = value
        kwargs.setdefault('type', 'item')
        kwargs.setdefault('product_service', '')
        return cls(**kwargs)


# -----------------------------
# text helpers
# -----------------------------

_WS = re.compile(r"\s+")
_CATEGORY_CODE = re.compile(r"^\s*\d{4}\s+Calimingo", re.IGNORECASE)
_STOP_ROW = re.compile(r"subtotal|\btax\b|grand total|current (job )?balance")
_ADDENDUM_NO = re.compile(r"addendum\s*#\s*(\d+)", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")


def clean_text(text: Optional[str]) -> str:
    if not text:
        return ''
    text = html_lib.unescape(text).replace('\u00a0', ' ')
    text = text.replace('*', '')
    return _WS.sub(' ', text).strip()


def extract_quantity(qty_text: Optional[str]) -> float:
    """Leading number of '162 SF', '1 EA' ... (1 when there is none)."""
    if not qty_text:
        return 1
    m = re.match(r"^(\d+(?:\.\d+)?)", qty_text.replace('\u00a0', ' ').strip())
    if m:
        return _num(float(m.group(1)))
    return 1


def parse_amount(text: Optional[str]) -> float:
    if not text:
        return 0
    cleaned = re.sub(r"[$,\s]", "", text)
    m = re.search(r"-?\d+(?:\.\d+)?", cleaned)
    if not m:
        return 0
    return _num(float(m.group(0)))


def _num(value: float):
    return int(value) if float(value).is_integer() else value


def _cell_text(tag) -> str:
    return clean_text(tag.get_text(' ')) if tag is not None else ''


def _style(tag) -> str:
    return (tag.get('style') or '') if tag is not None else ''


def _has_class(tag, name: str) -> bool:
    if tag is None:
        return False
    return any(name in c for c in (tag.get('class') or []))


def _extract_first(patterns: List[str], blob: str) -> str:
    for pat in patterns:
        m = re.search(pat, blob, re.MULTILINE | re.IGNORECASE)
        if m:
            return m.group(1).strip()
    return ''


# -----------------------------
# location
# -----------------------------

_LOCATION_LABELS = {
    'order_no': r"Order\s*Id",
    'dbx_customer_id': r"DBX\s+Customer\s+Id",
    'client_name': r"Client",
    'street_address': r"Address",
    'city': r"City",
    'state': r"State",
    'zip': r"Zip",
}


def extract_location(text: Optional[str]) -> Location:
    """Labelled header values ('Order Id:', 'Client:', ...) from the text body."""
    location = Location()
    if not text or not text.strip():
        return location

    blob = text.replace('\r\n', '\n').replace('\r', '\n')
    for attr, label in _LOCATION_LABELS.items():
        value = _extract_first([
            rf"^[ \t]*{label}[:：][ \t]*([^\n]+)",   # label at line start
            rf"{label}[:：][ \t]*([^\n]+)",
        ], blob)
        setattr(location, attr, value)
    return location


def extract_grand_total(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    m = re.search(r"Grand\s+Total[:\s]*\$?\s*(-?[\d,]+(?:\.\d+)?)", text, re.IGNORECASE)
    if not m:
        return None
    return parse_amount(m.group(1))


# -----------------------------
# order items table
# -----------------------------

def _is_header_row(cells) -> bool:
    if len(cells) < 3:
        return False
    first, second, third = (_cell_text(c).upper() for c in cells[:3])
    return 'DESCRIPTION' in first and 'QTY' in second and 'EXTENDED' in third


def find_order_items_table(soup):
    table = soup.select_one('table.pos')
    if table is not None:
        return table
    for candidate in soup.find_all('table'):
        for row in candidate.find_all('tr'):
            if _is_header_row(row.find_all('td')):
                return candidate
    raise OrderItemsTableNotFound('Order Items Table not found')


def _direct_rows(table):
    sections = table.find_all(['thead', 'tbody', 'tfoot'], recursive=False)
    if sections:
        rows = []
        for section in sections:
            rows.extend(section.find_all('tr', recursive=False))
        return rows
    return table.find_all('tr', recursive=False)


def _progress_payment_addendums(nested_table) -> List[ContractItem]:
    """Addendum totals listed in the progress-payments block."""
    items = []
    for row in nested_table.find_all('tr'):
        m = _ADDENDUM_NO.search(_cell_text(row))
        if not m:
            continue
        cells = row.find_all('td')
        if len(cells) < 3:
            continue
        amount = parse_amount(_cell_text(cells[2]))
        if amount < 1:
            # amount column shifted; take the largest plausible amount on the row
            candidates = [parse_amount(_cell_text(c)) for c in cells]
            candidates = [a for a in candidates if 1 <= a <= 1000000]
            amount = max(candidates) if candidates else 0
        if amount <= 0:
            continue
        name = f"Addendum #{m.group(1)}"
        items.append(ContractItem(type='maincategory', product_service=f"{name}:"))
        items.append(ContractItem(type='item', product_service=name, qty=1, rate=amount,
                                  amount=amount, main_category=f"{name}:"))
    return items


def _subcategory_name(row, cells) -> Optional[str]:
    first = cells[0]
    if _has_class(row, 'ssg_title') or _has_class(first, 'ssg_title'):
        return _cell_text(first) or None

    if len(cells) < 2 or _cell_text(first):
        return None
    second = cells[1]
    style = _style(second).lower()
    strong = second.find('strong')
    if 'border-top:solid 1px #bbb' in style and 'letter-spacing:2px' in style and strong is not None:
        return clean_text(strong.get_text(' ')) or None
    return None


def _main_category_name(first) -> Optional[str]:
    """Category name for a main-category cell, or None if the cell is not one."""
    first_html = first.decode_contents()
    plain = _cell_text(first)

    bold_span = first.find(
        'span', style=lambda s: bool(s) and ('font-weight: bold' in s or 'font-size: 14px' in s)
    )
    old_format = (
        'font-weight: bold' in first_html
        or 'font-size: 14px' in first_html
        or bold_span is not None
        or first.find('strong') is not None
    )
    new_format = 'border-top:solid 1px #666' in _style(first) and bool(_CATEGORY_CODE.match(plain))

    if old_format:
        if bold_span is not None:
            name = clean_text(bold_span.get_text(' '))
        elif first.find('strong') is not None:
            name = clean_text(first.find('strong').get_text(' '))
        else:
            name = plain
    elif new_format:
        # category code and name come before the first <br> / <em>
        cut = [i for i in (first_html.find('<br'), first_html.find('<em')) if i > -1]
        head = first_html[:min(cut)] if cut else first_html
        name = clean_text(_TAG.sub(' ', head))
    else:
        return None

    em = first.find('em')
    description = clean_text(em.get_text(' ')) if em is not None else ''
    name = re.sub(r":\s*$", "", name.strip()).strip()
    if description:
        name = f"{name} - {description}"
    return f"{name}:"


def extract_order_items(html: str) -> List[ContractItem]:
    """Items of the contract's Order Items table, in document order."""
    soup = BeautifulSoup(html or '', 'html.parser')
    table = find_order_items_table(soup)
    rows = _direct_rows(table)

    items: List[ContractItem] = []
    current_main = None
    current_sub = None

    for index, row in enumerate(rows):
        nested = row.find('table')
        if nested is not None:
            items.extend(_progress_payment_addendums(nested))
            break

        cells = row.find_all('td', recursive=False)
        if not cells:
            continue

        row_text = _cell_text(row).lower()
        progress_header = 'phase' in row_text and (
            'completed' in row_text or 'amt paid' in row_text or 'date paid' in row_text
        )
        addendum_payment_row = 'addendum #' in row_text and ('date paid' in row_text or len(cells) > 3)
        if _STOP_ROW.search(row_text) or progress_header or addendum_payment_row:
            break

        sub_name = _subcategory_name(row, cells)
        if sub_name:
            current_sub = sub_name
            items.append(ContractItem(type='subcategory', product_service=sub_name,
                                      main_category=current_main, sub_category=sub_name))
            continue

        if len(cells) < 3:
            continue

        first, qty_cell, amount_cell = cells[0], cells[1], cells[2]
        qty_text = _cell_text(qty_cell)
        amount_text = _cell_text(amount_cell)

        main_name = _main_category_name(first)
        if main_name and qty_text and amount_text:
            current_main = main_name
            current_sub = None
            items.append(ContractItem(type='maincategory', product_service=main_name))

            # a category followed directly by its subtotal has no detail rows;
            # bill the category amount as a single item
            if index + 1 < len(rows) and 'subtotal' in _cell_text(rows[index + 1]).lower():
                amount = parse_amount(amount_text)
                if amount > 0:
                    qty = extract_quantity(qty_text)
                    items.append(ContractItem(
                        type='item',
                        product_service=main_name.rstrip(':').strip(),
                        qty=qty,
                        rate=amount / qty if qty > 0 else amount,
                        amount=amount,
                        main_category=main_name,
                    ))
            continue

        style = _style(first).replace(' ', '')
        indented = 'padding-left:30px' in style
        description = clean_text(first.get_text(' '))

        if not description:
            continue
        lowered = description.lower()
        if 'description' in lowered and 'qty' in qty_text.lower():
            continue
        if _STOP_ROW.search(lowered):
            continue

        if indented or (qty_text and amount_text):
            qty = extract_quantity(qty_text)
            strong = amount_cell.find('strong')
            amount = parse_amount(clean_text(strong.get_text(' ')) if strong is not None else amount_text)
            rate = amount / qty if qty > 0 else 0
            if amount > 0 or indented:
                items.append(ContractItem(
                    type='item',
                    product_service=description,
                    qty=qty,
                    rate=rate,
                    amount=amount,
                    main_category=current_main,
                    sub_category=current_sub,
                ))

    return items
