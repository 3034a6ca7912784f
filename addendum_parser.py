"""
Addendum pages.

Addenda are not in the signed-contract e-mail; the e-mail links to them on
the contract provider (https://l1.prodbx.com/go/view/?<id>.<...>). Each page
holds a "pos" table shaped like the contract's Order Items table.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from contract_extractor import (
    ContractItem,
    clean_text,
    extract_quantity,
    parse_amount,
)
from constants import COLUMN_B_ADDENDUM

logger = logging.getLogger(__name__)

ADDENDUM_URL_PATTERN = re.compile(r"^https?://(l1|login)\.prodbx\.com/go/view/\?", re.IGNORECASE)
FETCH_TIMEOUT = int(os.getenv('ADDENDUM_FETCH_TIMEOUT', '30'))
USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36'

_CATEGORY_CODE = re.compile(r"^\s*\d{4}\s+Calimingo", re.IGNORECASE)
_SKIP_ROW = re.compile(r"subtotal|\btax\b|grand total|current balance")
_OPTIONAL_PACKAGE = re.compile(r"-OPTIONAL\s+PACKAGE\s+(\d+)-", re.IGNORECASE)
_HEADER_LABEL = re.compile(r"^Addendum #(\d+)(?: \((\d+)\))?$")


class AddendumError(Exception):
    pass


@dataclass
class AddendumData:
    addendum_number: str
    url: str
    items: List[ContractItem] = field(default_factory=list)
    url_id: Optional[str] = None

    def to_dict(self):
        return {
            'addendumNumber': self.addendum_number,
            'url': self.url,
            'urlId': self.url_id,
            'items': [i.to_dict() for i in self.items],
        }


def validate_addendum_url(url) -> bool:
    if not url or not isinstance(url, str):
        return False
    return bool(ADDENDUM_URL_PATTERN.match(url.strip()))


def extract_addendum_number(url: str) -> str:
    """'https://l1.prodbx.com/go/view/?35587.426.2025...' -> '35587'"""
    try:
        query = urlparse(url).query
    except ValueError as e:
        raise AddendumError(f"Invalid URL format: {url}. Error: {e}") from e
    first = query.split('.')[0].strip() if query else ''
    if first:
        return first
    m = re.search(r"[?&](\d+)\.", url)
    if m:
        return m.group(1)
    raise AddendumError(f"Could not extract addendum number from URL: {url}")


def fetch_addendum_html(url: str) -> str:
    if not validate_addendum_url(url):
        raise AddendumError(
            f"Invalid addendum URL format: {url}. Expected format: https://l1.prodbx.com/go/view/?..."
        )
    try:
        response = requests.get(url, headers={'User-Agent': USER_AGENT}, timeout=FETCH_TIMEOUT)
    except requests.Timeout as e:
        raise AddendumError(f"Timeout while fetching addendum URL: {url}") from e
    except requests.RequestException as e:
        raise AddendumError(f"Failed to fetch addendum HTML: {e}") from e

    if not response.ok:
        raise AddendumError(
            f"Failed to fetch addendum URL: {response.status_code} {response.reason}"
        )
    html = response.text
    if not html or not html.strip():
        raise AddendumError('Empty HTML content received from addendum URL')
    return html


def _description(cell) -> str:
    return clean_text(cell.get_text(' '))


def _is_bold(cell) -> bool:
    cell_html = cell.decode_contents()
    if 'font-weight: bold' in cell_html or 'font-size: 14px' in cell_html:
        return True
    return cell.find('strong') is not None or cell.find('b') is not None


def _is_subcategory_class(row, cell) -> bool:
    classes = (row.get('class') or []) + (cell.get('class') or [])
    return any('ssg_title' in c or 'subcategory' in c for c in classes)


def _pos_table(soup, what):
    table = soup.select_one('table.pos') or soup.find('table')
    if table is None:
        raise AddendumError(f'Order Items Table not found in {what} HTML. Expected table with class "pos"')
    rows = table.find_all('tr')
    if not rows:
        raise AddendumError(f'No rows found in {what} table')
    return rows


def parse_addendum(html: str, addendum_number: str, url: str) -> AddendumData:
    """Line items of one addendum page. Category rows only set context."""
    try:
        soup = BeautifulSoup(html or '', 'html.parser')
        page_match = re.search(r"Addendum\s*#\s*:?\s*(\d+)", soup.get_text(' '), re.IGNORECASE)
        display_number = page_match.group(1) if page_match else addendum_number

        items: List[ContractItem] = []
        current_main = None
        current_sub = None

        for row in _pos_table(soup, 'addendum'):
            cells = row.find_all('td')
            if not cells:
                continue
            row_text = clean_text(row.get_text(' ')).lower()
            if 'description' in row_text and 'qty' in row_text and 'extended' in row_text:
                continue

            first = cells[0]
            if _is_subcategory_class(row, first):
                name = _description(first)
                if name:
                    current_sub = name
                    items.append(ContractItem(type='subcategory', product_service=name,
                                              main_category=current_main, sub_category=name,
                                              column_b_label=COLUMN_B_ADDENDUM))
                continue

            if len(cells) < 3:
                continue

            description = _description(first)
            qty_text = clean_text(cells[1].get_text(' '))
            extended_text = clean_text(cells[2].get_text(' '))
            has_qty_and_extended = bool(qty_text and extended_text)

            if has_qty_and_extended and (_CATEGORY_CODE.match(description) or _is_bold(first)):
                if description:
                    current_main = description
                continue
            if not description or _SKIP_ROW.search(description.lower()):
                continue

            amount = parse_amount(extended_text)
            # credits come through as negative amounts and are kept
            if amount != 0:
                items.append(ContractItem(
                    type='item',
                    product_service=description,
                    qty=extract_quantity(qty_text),
                    rate='',
                    amount=amount,
                    main_category=current_main,
                    sub_category=current_sub,
                    column_b_label=COLUMN_B_ADDENDUM,
                ))

        if not any(i.type == 'item' for i in items):
            raise AddendumError(
                f"No order items found in addendum {addendum_number}. Please verify the HTML structure."
            )
        return AddendumData(addendum_number=display_number, url=url, items=items, url_id=addendum_number)
    except AddendumError as e:
        raise AddendumError(f"Failed to parse addendum {addendum_number}: {e}") from e


def parse_original_contract(html: str) -> List[ContractItem]:
    """Original Contract page: like an addendum but main categories are kept as rows."""
    soup = BeautifulSoup(html or '', 'html.parser')
    items: List[ContractItem] = []
    current_main = None
    current_sub = None
    package_no = None

    for row in _pos_table(soup, 'Original Contract'):
        cells = row.find_all('td')
        if not cells:
            continue
        row_text = clean_text(row.get_text(' '))
        m = _OPTIONAL_PACKAGE.search(row_text)
        if m and int(m.group(1)) > 0:
            package_no = int(m.group(1))
        lowered = row_text.lower()
        if 'description' in lowered and 'qty' in lowered and 'extended' in lowered:
            continue

        optional = {'is_optional': True, 'optional_package_number': package_no} if package_no else {}
        first = cells[0]

        sub_name = None
        if len(cells) == 2 and not _description(first):
            style = (cells[1].get('style') or '').lower()
            strong = cells[1].find('strong')
            if 'border-top:solid 1px #bbb' in style and 'letter-spacing:2px' in style and strong is not None:
                sub_name = clean_text(strong.get_text(' '))
        if not sub_name and _is_subcategory_class(row, first):
            sub_name = _description(first)
        if sub_name:
            current_sub = sub_name
            items.append(ContractItem(type='subcategory', product_service=sub_name,
                                      main_category=current_main, sub_category=sub_name, **optional))
            continue

        if len(cells) < 3:
            continue

        description = _description(first)
        qty_text = clean_text(cells[1].get_text(' '))
        extended_text = clean_text(cells[2].get_text(' '))
        has_qty_and_extended = bool(qty_text and extended_text)

        if has_qty_and_extended and (_CATEGORY_CODE.match(description) or _is_bold(first)) and description:
            name = re.sub(r":\s*$", "", description).strip() + ':'
            current_main = name
            current_sub = None
            items.append(ContractItem(type='maincategory', product_service=name,
                                      qty=extract_quantity(qty_text), rate='',
                                      amount=parse_amount(extended_text),
                                      main_category=name, **optional))
            continue

        if not description or _SKIP_ROW.search(description.lower()):
            continue
        items.append(ContractItem(
            type='item',
            product_service=description,
            qty=extract_quantity(qty_text),
            rate='',
            amount=parse_amount(extended_text),
            main_category=current_main,
            sub_category=current_sub,
            **optional,
        ))

    if not items:
        raise AddendumError('No order items found in Original Contract. Please verify the HTML structure.')
    return items


def fetch_and_parse_addendum(url: str) -> AddendumData:
    if not validate_addendum_url(url):
        raise AddendumError(f"Invalid addendum URL format: {url}")
    addendum_number = extract_addendum_number(url)
    html = fetch_addendum_html(url)
    return parse_addendum(html, addendum_number, url)


def fetch_and_parse_addendums(urls):
    """
    Fetch every URL. Returns (results, errors); raises AddendumError only
    when every URL failed.
    """
    results = []
    errors = []
    for url in urls:
        try:
            results.append(fetch_and_parse_addendum(url))
        except AddendumError as e:
            logger.warning(f"Addendum {url} failed: {e}")
            errors.append({'url': url, 'error': str(e)})

    if urls and not results:
        raise AddendumError(
            'All addendum URLs failed to process. Errors: ' + '; '.join(e['error'] for e in errors)
        )
    return results, errors


def addendum_header_label(addendum: AddendumData) -> str:
    if addendum.url_id and addendum.url_id != addendum.addendum_number:
        return f"Addendum #{addendum.addendum_number} ({addendum.url_id})"
    return f"Addendum #{addendum.addendum_number}"


def parse_addendum_header(label: str):
    """'Addendum #7 (35587)' -> ('7', '35587'); None for other labels."""
    m = _HEADER_LABEL.match((label or '').strip())
    if not m:
        return None
    return m.group(1), m.group(2)


def merge_addendum_items(items: List[ContractItem], addendum: AddendumData) -> List[ContractItem]:
    """
    Append an addendum (header row + its items) to a contract's item list.
    A previous copy of the same addendum (same URL id) is replaced.
    The copied block ends at the first row that is not an addendum row.
    """
    url_id = addendum.url_id or addendum.addendum_number
    merged: List[ContractItem] = []
    skipping = False
    for item in items:
        if item.is_addendum_header:
            skipping = (item.addendum_url_id or item.addendum_number) == url_id
        elif item.column_b_label != COLUMN_B_ADDENDUM:
            skipping = False
        if not skipping:
            merged.append(item)

    merged.append(ContractItem(
        type='maincategory',
        product_service=addendum_header_label(addendum),
        is_addendum_header=True,
        addendum_number=addendum.addendum_number,
        addendum_url_id=url_id,
        column_b_label=COLUMN_B_ADDENDUM,
    ))
    for item in addendum.items:
        item.column_b_label = COLUMN_B_ADDENDUM
        merged.append(item)
    return merged
