"""
Order approval confirmation e-mail.

build_approval_email() renders the HTML copy of an approved order that goes
to the vendor and the project manager. Nothing is sent from here; the
preview route returns the rendered message and delivery is handled by the
mail integration outside this service.
"""
import datetime
from html import escape

CONSENT_REMINDER = (
    'When you approved this order, you acknowledged and agreed that your approval decision, '
    'your organization name, and the approval timestamp are permanently recorded; that this '
    'approval is a binding business, legal, and compliance record; that you had reviewed the '
    'product/service descriptions, quantities, rates, and amounts; and that you were authorized '
    'to approve on behalf of your organization.'
)

PLACEHOLDER = '-'

_CELL = 'border:1px solid #dddddd; padding:10px 8px; font-family:Arial,sans-serif; font-size:13px; color:#232F47;'
_HEAD = 'border:1px solid #232F47; padding:10px 8px; color:#fff; font-family:Arial,sans-serif; font-size:13px;'
_LABEL = 'padding:6px 0; width:210px; font-family:Arial,sans-serif; font-size:13px; font-weight:bold; color:#232F47;'
_VALUE = 'padding:6px 0; font-family:Arial,sans-serif; font-size:13px; color:#232F47;'
_TITLE = 'padding:0 35px 12px; font-family:Arial,sans-serif; font-size:18px; line-height:24px; color:#D79A29;'
_TEXT = 'padding:0 35px 20px; font-family:Arial,sans-serif; font-size:13px; line-height:22px; color:#232F47;'


def format_currency(value):
    value = float(value or 0)
    sign = '-' if value < 0 else ''
    return f"{sign}${abs(value):,.2f}"


def format_qty(value):
    return f"{float(value or 0):.2f}"


def format_timestamp(value):
    """'January 05, 2025 3:07 PM'"""
    if value is None:
        return PLACEHOLDER
    hour = value.strftime('%I').lstrip('0') or '12'
    return f"{value.strftime('%B %d, %Y')} {hour}:{value.strftime('%M %p')}"


def email_items(approval):
    """Snapshot rows of the approval as plain numbers; amount falls back to qty * rate."""
    items = []
    for item in approval.items:
        qty = float(item.qty or 0)
        rate = float(item.rate or 0)
        amount = float(item.amount) if item.amount is not None else qty * rate
        items.append({
            'productService': (item.product_service or '').strip() or 'Untitled Item',
            'qty': qty,
            'rate': rate,
            'amount': amount,
        })
    return items


def _detail_rows(details):
    return ''.join(
        f'<tr><td style="{_LABEL}">{escape(label)}:</td><td style="{_VALUE}">{escape(value)}</td></tr>'
        for label, value in details
    )


def _item_rows(items):
    rows = []
    for index, item in enumerate(items):
        shade = 'background-color:#f9f9f9;' if index % 2 == 1 else ''
        rows.append(
            f'<tr style="{shade}">'
            f'<td style="{_CELL} word-wrap:break-word;">{escape(item["productService"])}</td>'
            f'<td style="{_CELL} text-align:right;">{format_qty(item["qty"])}</td>'
            f'<td style="{_CELL} text-align:right;">{format_currency(item["rate"])}</td>'
            f'<td style="{_CELL} text-align:right;">{format_currency(item["amount"])}</td>'
            '</tr>'
        )
    return ''.join(rows)


def render_approval_html(details, items):
    return f"""<!DOCTYPE html>
<html>
<head><meta http-equiv="Content-Type" content="text/html; charset=utf-8"/></head>
<body style="margin:0; padding:0; background-color:#fff;">
<table width="600" align="center" border="0" cellpadding="0" cellspacing="0" style="margin:0 auto; width:600px;">
  <tr><td style="padding:26px 35px 8px; font-family:Arial,sans-serif; font-size:28px; line-height:34px; color:#D79A29;">Order Approval Confirmation</td></tr>
  <tr><td style="{_TEXT}">This email serves as an official copy of approved vendor order items for your records.</td></tr>
  <tr><td style="padding:0 35px 20px;"><table width="100%" border="0" cellpadding="0" cellspacing="0">{_detail_rows(details)}</table></td></tr>
  <tr><td style="{_TITLE}">Acknowledgement and consent</td></tr>
  <tr><td style="{_TEXT}">{escape(CONSENT_REMINDER)}</td></tr>
  <tr><td style="{_TITLE}">Order Items</td></tr>
  <tr><td style="padding:0 35px 32px;">
    <table width="100%" border="0" cellpadding="0" cellspacing="0" style="border-collapse:collapse; table-layout:fixed;">
      <thead><tr style="background:#232F47;">
        <th style="{_HEAD} text-align:left; width:45%;">PRODUCT/SERVICE</th>
        <th style="{_HEAD} text-align:right; width:15%;">QTY</th>
        <th style="{_HEAD} text-align:right; width:20%;">RATE</th>
        <th style="{_HEAD} text-align:right; width:20%;">AMOUNT</th>
      </tr></thead>
      <tbody>{_item_rows(items)}</tbody>
    </table>
  </td></tr>
  <tr><td style="padding:28px 30px; background:#232F47; color:#ffffff; font-family:Arial,sans-serif; font-size:13px; text-align:center;">This is an automated copy of the approved order. Retain for your records.</td></tr>
</table>
</body>
</html>"""


def build_approval_email(approval):
    """
    Subject, HTML body and addressing for one approval.

    Missing customer / vendor / creator details render as a placeholder so a
    half-filled approval still previews.
    """
    vendor = approval.vendor
    customer = approval.customer
    creator = approval.creator

    reference_no = approval.reference_no or PLACEHOLDER
    vendor_name = (vendor.name if vendor else None) or PLACEHOLDER
    contact_person = (vendor.contact_person if vendor else None) or PLACEHOLDER
    vendor_email = (vendor.email if vendor else None) or ''
    approved_at = approval.vendor_approved_at or approval.updated_at or datetime.datetime.now()

    details = [
        ('Reference No', reference_no),
        ('Customer Name', (customer.client_name if customer else None) or PLACEHOLDER),
        ('Project Manager', (creator.email if creator else None) or PLACEHOLDER),
        ('Vendor Contact Person / Name', f"{contact_person} / {vendor_name}"),
        ('Vendor Contact Number', (vendor.phone if vendor else None) or PLACEHOLDER),
        ('Vendor Email', vendor_email),
        ('Vendor Approval Timestamp', format_timestamp(approved_at)),
    ]

    return {
        'approvalId': approval.id,
        'referenceNo': reference_no,
        'subject': f"Order Approval Confirmation - {reference_no}",
        'vendorEmail': vendor_email,
        'approvedAt': approved_at.isoformat(),
        'htmlEmail': render_approval_html(details, email_items(approval)),
    }
