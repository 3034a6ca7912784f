import datetime

from conftest import sample_contract
from db import db_session
from models import Customer, Invoice, Order, OrderItem
from services.contract_store import save_contract
from apps.api.dashboard import aging_bucket, parse_order_date


def _day(days_from_today):
    return (datetime.date.today() + datetime.timedelta(days=days_from_today)).strftime('%m/%d/%Y')


def _set_order(order_id, **fields):
    order = db_session.get(Order, order_id)
    for key, value in fields.items():
        setattr(order, key, value)
    db_session.commit()
    db_session.remove()


def _second_contract(grand_total=1000, balance_due=1000):
    data = sample_contract(order_no='1002', customer_id='DBX-2', sales_rep=None)
    data['customer']['clientName'] = 'Sam Lee'
    data['order']['orderGrandTotal'] = grand_total
    data['order']['balanceDue'] = balance_due
    order, _ = save_contract(db_session, data)
    db_session.commit()
    order_id = order.id
    db_session.remove()
    return order_id


def _invoice(client, order_id, **fields):
    r = client.post(f"/api/orders/{order_id}/invoices", json=fields)
    assert r.status_code == 201, r.get_json()
    return r.get_json()['invoice']['id']


def test_parse_order_date():
    assert parse_order_date('01/15/2025') == datetime.date(2025, 1, 15)
    assert parse_order_date('2025-01-15') == datetime.date(2025, 1, 15)
    assert parse_order_date('soon') is None
    assert parse_order_date('  ') is None
    assert parse_order_date(None) is None


def test_aging_bucket_edges():
    assert [aging_bucket(d) for d in (0, 30, 31, 60, 61, 90, 91)] == \
        ['0-30', '0-30', '31-60', '31-60', '61-90', '61-90', '90+']


def test_stats_total_paid_by_period(login, contract):
    order_id = contract['order_id']
    _invoice(login, order_id, invoiceAmount=500, paymentsReceived=200)
    _invoice(login, order_id, invoiceAmount=100, paymentsReceived=100, exclude=True)
    old = _invoice(login, order_id, invoiceAmount=300, paymentsReceived=50)
    invoice = db_session.get(Invoice, old)
    invoice.updated_at = datetime.datetime.now() - datetime.timedelta(days=40)
    db_session.commit()
    db_session.remove()

    r = login.get("/api/dashboard/stats")
    assert r.get_json() == {'success': True, 'totalPaid': 250.0, 'period': 'all'}
    assert login.get("/api/dashboard/stats?period=month").get_json()['totalPaid'] == 200.0
    assert login.get("/api/dashboard/stats?period=day").get_json()['totalPaid'] == 200.0

    r = login.get("/api/dashboard/stats?period=year")
    assert r.status_code == 400


def test_revenue(login, contract):
    item = db_session.get(OrderItem, contract['item_ids'][0])
    item.completed_amount = 500
    db_session.commit()
    db_session.remove()
    _invoice(login, contract['order_id'], invoiceAmount=400, paymentsReceived=100)

    data = login.get("/api/dashboard/revenue").get_json()['data']
    assert data == {
        'totalEarned': 500.0,
        'totalInvoiced': 400.0,
        'totalCollected': 100.0,
        'revenueGap': 0.0,
        'collectionEfficiency': 25.0,
        'billingEfficiency': 80.0,
    }


def test_revenue_empty(login):
    data = login.get("/api/dashboard/revenue").get_json()['data']
    assert data['collectionEfficiency'] == 0
    assert data['billingEfficiency'] == 0


def test_receivables(login, contract):
    _set_order(contract['order_id'], order_date=_day(-45))
    _invoice(login, contract['order_id'], invoiceAmount=500, paymentsReceived=200)
    paid_off = _second_contract()
    _invoice(login, paid_off, invoiceAmount=1000, paymentsReceived=1000)

    data = login.get("/api/dashboard/receivables").get_json()['data']
    assert data['receivablesCount'] == 1
    assert data['totalOutstanding'] == 1300.0
    assert data['agingBuckets'] == {'0-30': 0, '31-60': 1300.0, '61-90': 0, '90+': 0}
    assert data['topCustomers'] == [{'customerId': 'DBX-1', 'clientName': 'Jane Smith', 'total': 1300.0}]
    assert data['totalInvoiced'] == 1500.0
    assert data['totalCollected'] == 1200.0
    assert data['collectionRate'] == 80.0


def test_receivables_skip_trashed_customers(login, contract):
    customer = db_session.get(Customer, contract['customer_id'])
    customer.deleted_at = datetime.datetime.now()
    db_session.commit()
    db_session.remove()

    data = login.get("/api/dashboard/receivables").get_json()['data']
    assert data['receivablesCount'] == 0
    assert data['totalOutstanding'] == 0


def test_project_health(login, contract):
    _set_order(contract['order_id'], order_date=_day(-45), order_due_date=_day(-1))
    soon = _second_contract()
    _set_order(soon, order_date=_day(0), order_due_date=_day(3))

    data = login.get("/api/dashboard/project-health").get_json()['data']
    assert data['overdueCount'] == 1
    assert data['overdueProjects'][0]['orderNo'] == '1001'
    assert data['overdueProjects'][0]['daysOverdue'] == 1
    assert [p['orderNo'] for p in data['dueSoon7Days']] == ['1002']
    assert data['dueSoon30DaysCount'] == 0
    assert data['lowProgressCount'] == 1
    assert data['lowProgressProjects'][0]['daysSinceStart'] == 45
    assert data['lowProgressProjects'][0]['averageProgress'] == 0
    assert data['averageCompletionTime'] == 0


def test_project_health_completion_time(login, contract):
    _set_order(contract['order_id'], order_date=_day(-10), status='completed',
               updated_at=datetime.datetime.now())

    data = login.get("/api/dashboard/project-health").get_json()['data']
    assert data['averageCompletionTime'] == 10
    assert data['lowProgressCount'] == 0


def test_sales_performance(login, contract):
    _second_contract()
    _set_order(contract['order_id'], status='completed')

    data = login.get("/api/dashboard/sales-performance").get_json()['data']
    reps = data['repPerformance']
    assert [r['repName'] for r in reps] == ['Pat Seller', 'Unassigned']
    assert reps[0]['totalSales'] == 1500.0
    assert reps[0]['completionRate'] == 100.0
    assert reps[1]['pendingCount'] == 1
    assert data['totals'] == {'totalSales': 2500.0, 'totalOrders': 2, 'totalCompleted': 1, 'totalPending': 1}
    assert data['monthComparison'] is None


def test_sales_performance_this_month(login, contract):
    last_order = _second_contract()
    today = datetime.date.today()
    last_month = (today.replace(day=1) - datetime.timedelta(days=1)).replace(day=1)
    _set_order(contract['order_id'], order_date=today.strftime('%m/%d/%Y'))
    _set_order(last_order, order_date=last_month.strftime('%m/%d/%Y'))

    data = login.get("/api/dashboard/sales-performance?period=month").get_json()['data']
    assert [r['repName'] for r in data['repPerformance']] == ['Pat Seller']
    assert data['monthComparison'] == {
        'thisMonth': 1500.0, 'lastMonth': 1000.0, 'change': 500.0, 'changePercent': 50.0,
    }
    assert login.get("/api/dashboard/sales-performance?period=week").status_code == 400


def test_dashboard_not_for_vendors(login_as):
    portal = login_as('vendor')
    for path in ("/api/dashboard/stats", "/api/dashboard/revenue", "/api/dashboard/receivables",
                 "/api/dashboard/project-health", "/api/dashboard/sales-performance"):
        assert portal.get(path).status_code == 403, path
