"""Order items total vs. Order Grand Total check (drives the customer alert)."""
import re
from dataclasses import dataclass
from typing import Optional

_MONEY_JUNK = re.compile(r"[$,*]")


@dataclass
class TotalsCheck:
    is_valid: bool
    items_total: float
    order_grand_total: float
    difference: float
    message: Optional[str] = None

    def to_dict(self):
        return {
            'isValid': self.is_valid,
            'itemsTotal': round(self.items_total, 2),
            'orderGrandTotal': round(self.order_grand_total, 2),
            'difference': round(self.difference, 2),
            'message': self.message,
        }


def _item_field(item, key, attr):
    if isinstance(item, dict):
        return item.get(key)
    return getattr(item, attr, None)


def parse_money(value):
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _MONEY_JUNK.sub('', str(value)).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def format_money(value):
    return f"${value:,.2f}"


def calculate_items_total(items):
    """Sum of positive amounts of 'item' rows (categories are headers only)."""
    total = 0.0
    for item in items or []:
        if _item_field(item, 'type', 'item_type') != 'item':
            continue
        amount = parse_money(_item_field(item, 'amount', 'amount'))
        if amount is not None and amount > 0:
            total += amount
    return total


def validate_order_items_total(items, order_grand_total, tolerance=0.01):
    items_total = calculate_items_total(items)
    grand_total = parse_money(order_grand_total) or 0.0

    if not grand_total:
        return TotalsCheck(False, items_total, 0.0, items_total,
                           'Order Grand Total is missing or zero')

    difference = abs(items_total - grand_total)
    if difference > tolerance:
        message = (
            f"Order items total ({format_money(items_total)}) does not match "
            f"Order Grand Total ({format_money(grand_total)}). "
            f"Difference: {format_money(difference)}"
        )
        return TotalsCheck(False, items_total, grand_total, difference, message)

    return TotalsCheck(True, items_total, grand_total, 0.0)
