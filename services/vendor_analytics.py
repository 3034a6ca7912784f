"""
Vendor profitability from approved order approvals.

Each item of an approved (not deleted) approval is one row: the contract
amount of the order item is the work assigned to the vendor, the
negotiated vendor amount is what the vendor charges for it. An item the
vendor approved without a negotiated amount was accepted at the listed
amount. Approvals of trashed customers are left out.
"""
import datetime

from models import OrderApprovalItem, OrderApproval, Vendor, Customer, OrderItem

TREND_PERIODS = ('monthly', 'quarterly')
PROJECT_SORTS = ('orderNo', 'customerName', 'totalWorkAssigned', 'profitability', 'profitMargin')


def margin(profit, base):
    return round(profit / base * 100, 2) if base > 0 else 0


def approved_vendor_rows(db, vendor_id=None):
    query = (
        db.query(OrderApprovalItem, OrderApproval, Vendor, Customer, OrderItem)
        .join(OrderApproval, OrderApprovalItem.order_approval_id == OrderApproval.id)
        .join(Vendor, OrderApproval.vendor_id == Vendor.id)
        .join(Customer, OrderApproval.customer_id == Customer.dbx_customer_id)
        .outerjoin(OrderItem, OrderItem.id == OrderApprovalItem.order_item_id)
        .filter(
            OrderApproval.stage == 'approved',
            OrderApproval.deleted_at.is_(None),
            Customer.deleted_at.is_(None),
        )
    )
    if vendor_id:
        query = query.filter(OrderApproval.vendor_id == vendor_id)

    rows = []
    for approval_item, approval, vendor, customer, order_item in query.all():
        order = order_item.order if order_item is not None else approval.order
        work = float(approval_item.amount or 0)
        cost = approval_item.negotiated_vendor_amount
        rows.append({
            'vendorId': vendor.id,
            'vendorName': vendor.name,
            'subCategory': (order_item.sub_category if order_item is not None else None) or 'Uncategorized',
            'orderId': order.id if order else None,
            'orderNo': order.order_no if order else None,
            'projectStartDate': order.project_start_date if order else None,
            'projectEndDate': order.project_end_date if order else None,
            'customerId': customer.dbx_customer_id,
            'customerName': customer.client_name,
            'workAssigned': work,
            'vendorCost': float(cost) if cost is not None else work,
            'approvedAt': approval.vendor_approved_at or approval.updated_at,
        })
    return rows


def _totals(rows):
    work = sum(r['workAssigned'] for r in rows)
    cost = sum(r['vendorCost'] for r in rows)
    return {
        'totalWorkAssigned': round(work, 2),
        'totalVendorCost': round(cost, 2),
        'profitability': round(work - cost, 2),
        'profitMargin': margin(work - cost, work),
        'itemCount': len(rows),
        'projectCount': len({r['orderId'] for r in rows if r['orderId']}),
    }


def _group(rows, key):
    groups = {}
    for row in rows:
        groups.setdefault(key(row), []).append(row)
    return groups


def summarize(rows):
    """{'overall', 'byCategory', 'byVendorAndCategory'}"""
    by_pair = []
    for (category, vendor_name), group in _group(rows, lambda r: (r['subCategory'], r['vendorName'])).items():
        entry = {'subCategory': category, 'vendorName': vendor_name}
        entry.update(_totals(group))
        by_pair.append(entry)
    by_pair.sort(key=lambda e: (e['subCategory'], e['vendorName']))

    by_category = []
    for category, group in _group(rows, lambda r: r['subCategory']).items():
        entry = {'category': category, 'vendorCount': len({r['vendorId'] for r in group})}
        entry.update(_totals(group))
        by_category.append(entry)
    by_category.sort(key=lambda e: e['category'])

    overall = _totals(rows)
    overall['vendorCount'] = len({r['vendorId'] for r in rows})
    overall['categoryCount'] = len(by_category)
    return {'overall': overall, 'byCategory': by_category, 'byVendorAndCategory': by_pair}


def project_summaries(rows, sort_by='orderNo'):
    """One entry per order the vendor worked on."""
    projects = []
    for order_id, group in _group(rows, lambda r: r['orderId']).items():
        first = group[0]
        entry = {
            'orderId': order_id,
            'orderNo': first['orderNo'] or 'N/A',
            'customerId': first['customerId'],
            'customerName': first['customerName'] or 'Unknown',
            'projectStartDate': first['projectStartDate'],
            'projectEndDate': first['projectEndDate'],
        }
        entry.update(_totals(group))
        del entry['projectCount']
        projects.append(entry)

    if sort_by in ('orderNo', 'customerName'):
        projects.sort(key=lambda p: (p[sort_by] or '').lower())
    elif sort_by in PROJECT_SORTS:
        projects.sort(key=lambda p: p[sort_by], reverse=True)
    return projects


def _month_start(today, months_back):
    year, month = divmod(today.year * 12 + today.month - 1 - months_back, 12)
    return datetime.date(year, month + 1, 1)


def trend_start(period, today):
    """First day of the window: the last 12 months, or the last 4 quarters."""
    if period == 'quarterly':
        quarter_start = _month_start(today, (today.month - 1) % 3)
        return _month_start(quarter_start, 9)
    return _month_start(today, 11)


def period_key(value, period):
    if period == 'quarterly':
        return f"{value.year}-Q{(value.month - 1) // 3 + 1}"
    return f"{value.year}-{value.month:02d}"


def trends(rows, period='monthly', today=None):
    """Per-month (or per-quarter) totals inside the window, oldest first."""
    today = today or datetime.date.today()
    start = trend_start(period, today)
    dated = [r for r in rows if r['approvedAt'] and r['approvedAt'].date() >= start]

    result = []
    for key, group in _group(dated, lambda r: period_key(r['approvedAt'], period)).items():
        entry = {'period': key}
        entry.update(_totals(group))
        result.append(entry)
    result.sort(key=lambda e: e['period'])
    return result
