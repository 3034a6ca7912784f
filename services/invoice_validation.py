"""Rules for linking order items to an invoice."""


def parse_decimal(value):
    if value is None or value == '':
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def calculate_this_bill(item):
    """Stored THIS BILL, else (overall % - previously invoiced %) of the amount."""
    this_bill = parse_decimal(item.this_bill)
    if this_bill:
        return this_bill

    amount = parse_decimal(item.amount)
    new_progress_pct = parse_decimal(item.progress_overall_pct) - parse_decimal(item.previously_invoiced_pct)
    if new_progress_pct > 0 and amount > 0:
        return new_progress_pct / 100 * amount
    return 0.0


def validate_item_for_linking(item, invoice_amount, existing_invoice_amounts=0.0):
    """Returns an error message, or None when the link is allowed."""
    amount = parse_decimal(item.amount)

    if parse_decimal(item.progress_overall_pct) <= 0:
        return 'Item must have Progress Overall % greater than 0'
    if invoice_amount <= 0:
        return 'Invoice amount must be greater than 0'
    if existing_invoice_amounts + invoice_amount > amount:
        remaining = amount - existing_invoice_amounts
        return f"Would exceed item amount. Remaining billable: ${remaining:.2f}"
    return None


def linked_amounts_by_item(invoices, exclude_invoice_id=None):
    """{order_item_id: sum of thisBillAmount} over the order's other invoices."""
    totals = {}
    for inv in invoices:
        if exclude_invoice_id and inv.id == exclude_invoice_id:
            continue
        for link in inv.linked_line_items or []:
            item_id = link.get('orderItemId')
            if not item_id:
                continue
            totals[item_id] = totals.get(item_id, 0.0) + parse_decimal(link.get('thisBillAmount'))
    return totals


def validate_linked_line_items(links, items_by_id, existing_totals):
    """
    links: [{'orderItemId', 'thisBillAmount'}]. Returns (normalized_links, errors).
    A missing thisBillAmount falls back to the item's calculated THIS BILL.
    """
    normalized = []
    errors = []
    for link in links or []:
        item_id = (link or {}).get('orderItemId')
        item = items_by_id.get(item_id)
        if item is None:
            errors.append({'orderItemId': item_id, 'reason': 'Item does not belong to this order'})
            continue
        raw_amount = link.get('thisBillAmount')
        amount = parse_decimal(raw_amount) if raw_amount not in (None, '') else calculate_this_bill(item)
        error = validate_item_for_linking(item, amount, existing_totals.get(item_id, 0.0))
        if error:
            errors.append({'orderItemId': item_id, 'reason': error})
            continue
        normalized.append({'orderItemId': item_id, 'thisBillAmount': round(amount, 2)})
    return normalized, errors
