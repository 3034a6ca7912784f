"""
Dashboard API.

/api/dashboard/stats            - payments received (?period=day|week|month|all)
/api/dashboard/revenue          - earned vs invoiced vs collected
/api/dashboard/receivables      - outstanding balances by age
/api/dashboard/project-health   - overdue, due soon and stalled projects
/api/dashboard/sales-performance - totals per sales rep (?period=month|all)

Orders of trashed customers and excluded invoices are left out everywhere.
"""
import datetime
from datetime import date, timedelta

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from apps.auth import login_required, role_required
from db import get_db
from models import Order, OrderItem, Invoice, Customer
from constants import STAFF_ROLES, CUSTOMER_STATUS, DATE_FORMAT
from services.invoice_validation import parse_decimal

dashboard_bp = Blueprint('dashboard', __name__, url_prefix='/api')

STATS_PERIODS = ('day', 'week', 'month', 'all')
SALES_PERIODS = ('month', 'all')
AGING_BUCKETS = ('0-30', '31-60', '61-90', '90+')
TOP_LIMIT = 10
LOW_PROGRESS_PCT = 25
STALLED_AFTER_DAYS = 30


def parse_order_date(value):
    """MM/DD/YYYY (or ISO) text -> date, None when blank or unreadable."""
    if not value or not value.strip():
        return None
    for fmt in (DATE_FORMAT, '%Y-%m-%d'):
        try:
            return datetime.datetime.strptime(value.strip(), fmt).date()
        except ValueError:
            continue
    return None


def order_start(order):
    """Order date, else the day the order was stored."""
    started = parse_order_date(order.order_date)
    if started is None and order.created_at:
        started = order.created_at.date()
    return started


def aging_bucket(days):
    if days <= 30:
        return '0-30'
    if days <= 60:
        return '31-60'
    if days <= 90:
        return '61-90'
    return '90+'


def _live_orders(db):
    return (
        db.query(Order)
        .join(Customer, Order.customer_id == Customer.dbx_customer_id)
        .filter(Customer.deleted_at.is_(None))
        .all()
    )


def _invoice_total(db, column, since=None):
    """Sum of an invoice column over counted invoices, optionally those updated since a time."""
    query = (
        db.query(func.coalesce(func.sum(column), 0))
        .select_from(Invoice)
        .join(Order, Invoice.order_id == Order.id)
        .join(Customer, Order.customer_id == Customer.dbx_customer_id)
        .filter(Customer.deleted_at.is_(None), Invoice.exclude == False)
    )
    if since is not None:
        query = query.filter(Invoice.updated_at >= since)
    return parse_decimal(query.scalar())


def _client_name(order):
    return order.customer.client_name if order.customer else 'Unknown'


def _project_entry(order, **extra):
    entry = {
        'orderId': order.id,
        'orderNo': order.order_no,
        'customerId': order.customer_id,
        'clientName': _client_name(order),
    }
    entry.update(extra)
    return entry


@dashboard_bp.route('/dashboard/stats', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def dashboard_stats():
    """Payments received, counted by when the invoice was last updated."""
    period = request.args.get('period', 'all')
    if period not in STATS_PERIODS:
        return jsonify({'success': False, 'message': 'period must be one of day, week, month, all'}), 400

    now = datetime.datetime.now()
    since = None
    if period == 'day':
        since = datetime.datetime.combine(now.date(), datetime.time.min)
    elif period == 'week':
        since = now - timedelta(days=7)
    elif period == 'month':
        since = now - timedelta(days=30)

    total_paid = _invoice_total(get_db(), Invoice.payments_received, since)
    return jsonify({'success': True, 'totalPaid': round(total_paid, 2), 'period': period})


@dashboard_bp.route('/dashboard/revenue', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def dashboard_revenue():
    db = get_db()
    total_earned = parse_decimal(
        db.query(func.coalesce(func.sum(OrderItem.completed_amount), 0))
        .select_from(OrderItem)
        .join(Order, OrderItem.order_id == Order.id)
        .join(Customer, Order.customer_id == Customer.dbx_customer_id)
        .filter(Customer.deleted_at.is_(None))
        .scalar()
    )
    total_invoiced = _invoice_total(db, Invoice.invoice_amount)
    total_collected = _invoice_total(db, Invoice.payments_received)

    return jsonify({'success': True, 'data': {
        'totalEarned': round(total_earned, 2),
        'totalInvoiced': round(total_invoiced, 2),
        'totalCollected': round(total_collected, 2),
        'revenueGap': round(total_earned - total_invoiced - total_collected, 2),
        'collectionEfficiency': round(total_collected / total_invoiced * 100, 2) if total_invoiced > 0 else 0,
        'billingEfficiency': round(total_invoiced / total_earned * 100, 2) if total_earned > 0 else 0,
    }})


@dashboard_bp.route('/dashboard/receivables', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def dashboard_receivables():
    """Balance due less payments per order, bucketed by days since the order date."""
    db = get_db()
    today = date.today()

    receivables = []
    total_invoiced = total_collected = 0.0
    for order in _live_orders(db):
        active = [inv for inv in order.invoices if not inv.exclude]
        payments = sum(parse_decimal(inv.payments_received) for inv in active)
        total_invoiced += sum(parse_decimal(inv.invoice_amount) for inv in active)
        total_collected += payments

        outstanding = parse_decimal(order.balance_due) - payments
        if outstanding <= 0:
            continue
        started = order_start(order)
        days = (today - started).days if started else 0
        receivables.append(_project_entry(
            order,
            outstanding=round(outstanding, 2),
            daysOutstanding=days,
            agingBucket=aging_bucket(days),
        ))

    buckets = dict.fromkeys(AGING_BUCKETS, 0.0)
    by_customer = {}
    for rec in receivables:
        buckets[rec['agingBucket']] += rec['outstanding']
        customer = by_customer.setdefault(rec['customerId'], {
            'customerId': rec['customerId'], 'clientName': rec['clientName'], 'total': 0.0,
        })
        customer['total'] += rec['outstanding']

    top_customers = sorted(by_customer.values(), key=lambda c: c['total'], reverse=True)[:TOP_LIMIT]
    for customer in top_customers:
        customer['total'] = round(customer['total'], 2)

    return jsonify({'success': True, 'data': {
        'totalOutstanding': round(sum(r['outstanding'] for r in receivables), 2),
        'agingBuckets': {k: round(v, 2) for k, v in buckets.items()},
        'topCustomers': top_customers,
        'collectionRate': round(total_collected / total_invoiced * 100, 2) if total_invoiced > 0 else 0,
        'totalInvoiced': round(total_invoiced, 2),
        'totalCollected': round(total_collected, 2),
        'receivablesCount': len(receivables),
    }})


@dashboard_bp.route('/dashboard/project-health', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def dashboard_project_health():
    db = get_db()
    today = date.today()
    next_week = today + timedelta(days=7)
    next_month = today + timedelta(days=30)
    stalled_before = today - timedelta(days=STALLED_AFTER_DAYS)
    pending = CUSTOMER_STATUS['PENDING_UPDATES']

    overdue, due_7, due_30, low_progress = [], [], [], []
    completion_days = []
    for order in _live_orders(db):
        status = order.status or pending
        due = parse_order_date(order.order_due_date)
        started = order_start(order)

        if due:
            if due < today and status == pending:
                overdue.append(_project_entry(order, orderDueDate=order.order_due_date,
                                              daysOverdue=(today - due).days, status=status))
            elif today <= due <= next_week:
                due_7.append(_project_entry(order, orderDueDate=order.order_due_date, status=status))
            elif next_week < due <= next_month:
                due_30.append(_project_entry(order, orderDueDate=order.order_due_date, status=status))

        if started and started <= stalled_before and status == pending and order.items:
            average = sum(parse_decimal(i.progress_overall_pct) for i in order.items) / len(order.items)
            if average < LOW_PROGRESS_PCT:
                low_progress.append(_project_entry(order, orderDate=order.order_date,
                                                   daysSinceStart=(today - started).days,
                                                   averageProgress=round(average, 2)))

        if status == CUSTOMER_STATUS['COMPLETED'] and started and order.updated_at:
            completion_days.append((order.updated_at.date() - started).days)

    overdue.sort(key=lambda p: p['daysOverdue'], reverse=True)

    return jsonify({'success': True, 'data': {
        'overdueCount': len(overdue),
        'overdueProjects': overdue[:TOP_LIMIT],
        'dueSoon7DaysCount': len(due_7),
        'dueSoon7Days': due_7[:TOP_LIMIT],
        'dueSoon30DaysCount': len(due_30),
        'dueSoon30Days': due_30[:TOP_LIMIT],
        'lowProgressCount': len(low_progress),
        'lowProgressProjects': low_progress[:TOP_LIMIT],
        'averageCompletionTime': sum(completion_days) // len(completion_days) if completion_days else 0,
    }})


def _month_start(day, months_back=0):
    year, month = divmod(day.year * 12 + day.month - 1 - months_back, 12)
    return date(year, month + 1, 1)


@dashboard_bp.route('/dashboard/sales-performance', methods=['GET'])
@login_required
@role_required(STAFF_ROLES)
def dashboard_sales_performance():
    """Order totals per sales rep; ?period=month adds a this-month vs last-month comparison."""
    period = request.args.get('period', 'all')
    if period not in SALES_PERIODS:
        return jsonify({'success': False, 'message': 'period must be month or all'}), 400

    orders = [(o, order_start(o)) for o in _live_orders(get_db())]
    this_month = _month_start(date.today())
    selected = orders
    if period == 'month':
        selected = [(o, d) for o, d in orders if d and d >= this_month]

    reps = {}
    for order, _ in selected:
        name = order.sales_rep or 'Unassigned'
        rep = reps.setdefault(name, {'repName': name, 'totalSales': 0.0, 'orderCount': 0,
                                     'completedCount': 0, 'pendingCount': 0})
        rep['totalSales'] += parse_decimal(order.order_grand_total)
        rep['orderCount'] += 1
        if order.status == CUSTOMER_STATUS['COMPLETED']:
            rep['completedCount'] += 1
        else:
            rep['pendingCount'] += 1

    performance = sorted(reps.values(), key=lambda r: r['totalSales'], reverse=True)
    for rep in performance:
        rep['totalSales'] = round(rep['totalSales'], 2)
        rep['averageOrderValue'] = round(rep['totalSales'] / rep['orderCount'], 2)
        rep['completionRate'] = round(rep['completedCount'] / rep['orderCount'] * 100, 2)

    totals = {
        'totalSales': round(sum(r['totalSales'] for r in performance), 2),
        'totalOrders': sum(r['orderCount'] for r in performance),
        'totalCompleted': sum(r['completedCount'] for r in performance),
        'totalPending': sum(r['pendingCount'] for r in performance),
    }

    comparison = None
    if period == 'month':
        last_month = _month_start(this_month, 1)
        last_sales = round(sum(parse_decimal(o.order_grand_total) for o, d in orders
                               if d and last_month <= d < this_month), 2)
        comparison = {
            'thisMonth': totals['totalSales'],
            'lastMonth': last_sales,
            'change': round(totals['totalSales'] - last_sales, 2),
            'changePercent': round((totals['totalSales'] - last_sales) / last_sales * 100, 2) if last_sales > 0 else 0,
        }

    return jsonify({'success': True, 'data': {
        'repPerformance': performance,
        'totals': totals,
        'monthComparison': comparison,
        'period': period,
    }})
