import pytest

from medchain import analytics
from medchain.models import Bill, BillWindow, InventoryItem, MedicationSuggestion

from conftest import pending_request


def _item(item_id, expiry, stock=10, threshold=5, cost=1.0):
    return InventoryItem(
        id=item_id, name=f'Item {item_id}', batch_id='B', stock_level=stock,
        critical_threshold=threshold, expiry_date=expiry, cost_per_unit=cost,
        location='Central Pharmacy', category='Tablet',
    )


def _bill(bill_id, day, grand_total=100.0, patient='Test Patient'):
    return Bill(
        id=bill_id, patient_id='P9', patient_name=patient, doctor_name='Dr. Test',
        date=day, items=[], subtotal=grand_total, gst=0, grand_total=grand_total,
    )


class TestInventory:
    def test_low_stock(self, snapshot):
        ids = {i.id for i in analytics.low_stock(snapshot.inventory)}
        assert ids == {'1', '3', '5'}

    def test_low_stock_is_strict(self):
        assert analytics.low_stock([_item('a', '2030-01-01', stock=5, threshold=5)]) == []

    def test_expiring_soon(self, snapshot, now):
        ids = {i.id for i in analytics.expiring_soon(snapshot.inventory, now)}
        assert ids == {'3', '4'}

    def test_amoxicillin_expiring_then_wasted(self, snapshot):
        amoxicillin = snapshot.find_item('3')
        assert analytics.days_until(amoxicillin.expiry_date, '2024-03-22') == 3
        assert amoxicillin in analytics.expiring_soon(snapshot.inventory, '2024-03-22')
        assert amoxicillin not in analytics.wastage(snapshot.inventory, '2024-03-22')

        assert amoxicillin not in analytics.expiring_soon(snapshot.inventory, '2024-04-01')
        assert amoxicillin in analytics.wastage(snapshot.inventory, '2024-04-01')

    def test_expiry_boundaries_excluded(self):
        on_day_30 = _item('a', '2024-04-21')
        today = _item('b', '2024-03-22')
        just_inside = _item('c', '2024-04-20')
        result = analytics.expiring_soon([on_day_30, today, just_inside], '2024-03-22')
        assert result == [just_inside]
        assert analytics.wastage([today], '2024-03-22') == []

    def test_wastage_and_loss(self, snapshot):
        expired = analytics.wastage(snapshot.inventory, '2024-04-01')
        assert [i.id for i in expired] == ['3']
        assert analytics.loss_value(expired) == 25 * 45.0

    def test_inventory_value(self, snapshot):
        assert analytics.inventory_value(snapshot.inventory) == pytest.approx(110545.0)

    def test_search_inventory(self, snapshot):
        assert [i.id for i in analytics.search_inventory(snapshot.inventory, 'INSULIN')] == ['1']
        assert len(analytics.search_inventory(snapshot.inventory, '')) == 8

    def test_stock_alerts(self, snapshot, now):
        alerts = analytics.stock_alerts(snapshot.inventory, now)
        by_item = {}
        for alert in alerts:
            by_item.setdefault(alert['item'], []).append(alert)

        assert by_item['Insulin Glargine'][0]['type'] == 'critical'
        assert by_item['Salbutamol Inhaler'][0]['type'] == 'critical'
        assert {a['type'] for a in by_item['Amoxicillin 250mg']} == {'warning'}
        assert len(by_item['Amoxicillin 250mg']) == 2
        assert by_item['Morphine Sulfate'][0]['message'].startswith('EXPIRING')
        assert 'Paracetamol 500mg' not in by_item

    def test_stock_alerts_expired(self, snapshot):
        alerts = analytics.stock_alerts(snapshot.inventory, '2024-04-01')
        expired = [a for a in alerts if a['message'].startswith('EXPIRED')]
        assert [a['item'] for a in expired] == ['Amoxicillin 250mg']


class TestDemand:
    def test_flagged_requests_ignored(self, snapshot):
        assert analytics.deficits(snapshot.requests, snapshot.inventory) == []

    def test_insulin_deficit(self, snapshot):
        requests = [pending_request('R1', ('1', 'Insulin Glargine', 50))]
        [deficit] = analytics.deficits(requests, snapshot.inventory)
        assert deficit.needed == 50
        assert deficit.available == 15
        assert deficit.deficit == 35
        assert deficit.financial_impact == 43750
        assert deficit.to_json()['financialImpact'] == 43750

    def test_aggregates_across_requests(self, snapshot):
        requests = [
            pending_request('R1', ('1', 'Insulin', 30)),
            pending_request('R2', ('1', 'Insulin', 30), ('2', 'Paracetamol', 10)),
        ]
        [deficit] = analytics.deficits(requests, snapshot.inventory)
        assert (deficit.needed, deficit.deficit) == (60, 45)

    def test_sorted_by_financial_impact(self, snapshot):
        requests = [pending_request(
            'R1',
            ('X9', 'Mystery', 3),
            ('5', 'Salbutamol', 10),
            ('2', 'Paracetamol', 10),
            ('1', 'Insulin', 50),
        )]
        result = analytics.deficits(requests, snapshot.inventory)
        assert [d.id for d in result] == ['1', '5', 'X9']
        assert all(d.deficit > 0 for d in result)
        unknown = result[-1]
        assert unknown.name == 'Unknown Node'
        assert (unknown.available, unknown.financial_impact) == (0, 0)
        assert result[1].financial_impact == 6 * 320

    def test_stock_gap_keeps_covered_lines(self, snapshot):
        requests = [pending_request('R1', ('2', 'Paracetamol 500mg', 10), ('5', 'Salbutamol', 10))]
        gaps = analytics.stock_gap(requests, snapshot.inventory)
        assert [g.id for g in gaps] == ['5', '2']
        assert gaps[1].needed == 10 and gaps[1].available == 500
        assert gaps[0].name == 'Salbutamol'

    def test_request_has_shortfall(self, snapshot):
        assert analytics.request_has_shortfall(pending_request('R1', ('1', 'Insulin', 50)), snapshot.inventory)
        assert analytics.request_has_shortfall(pending_request('R1', ('nope', 'Ghost', 1)), snapshot.inventory)
        assert not analytics.request_has_shortfall(pending_request('R1', ('1', 'Insulin', 15)), snapshot.inventory)


class TestProcurement:
    def test_vendor_metrics(self, snapshot):
        metrics = {m.name: m for m in analytics.vendor_metrics(snapshot.vendors, snapshot.orders)}
        assert metrics['Apex Pharma India'].order_count == 1
        assert metrics['Apex Pharma India'].total_value == 250000
        assert metrics['Apex Pharma India'].rating == 4.8
        assert metrics['Nexus Clinical Logistics'].order_count == 0

    def test_pending_orders_and_staff(self, snapshot):
        assert [o.id for o in analytics.pending_orders(snapshot.orders)] == ['PO-900']
        assert len(analytics.on_duty_staff(snapshot.staff)) == 6


class TestBilling:
    def test_windows_inclusive(self):
        bills = [_bill('A', '2024-03-15'), _bill('B', '2024-02-21'), _bill('C', '2023-03-23'),
                 _bill('D', '2023-03-22')]
        now = '2024-03-22'
        assert [b.id for b in analytics.bills_in_window(bills, 'weekly', now)] == ['A']
        assert [b.id for b in analytics.bills_in_window(bills, BillWindow.MONTHLY, now)] == ['A', 'B']
        assert [b.id for b in analytics.bills_in_window(bills, 'yearly', now)] == ['A', 'B', 'C']
        assert len(analytics.bills_in_window(bills, 'all')) == 4

    def test_window_past_boundary(self, now):
        # midday clock: a bill from exactly 7 days ago by date is 7.5 days old
        assert analytics.bills_in_window([_bill('A', '2024-03-15')], 'weekly', now) == []

    def test_search(self, snapshot):
        assert [b.id for b in analytics.bills_in_window(snapshot.bills, search='jane')] == ['BILL-002']
        assert [b.id for b in analytics.bills_in_window(snapshot.bills, search='bill-001')] == ['BILL-001']

    def test_dated_window_needs_clock(self, snapshot):
        with pytest.raises(ValueError):
            analytics.bills_in_window(snapshot.bills, 'weekly')

    def test_unknown_window(self, snapshot, now):
        with pytest.raises(ValueError):
            analytics.bills_in_window(snapshot.bills, 'daily', now)

    def test_daily_consumption(self, snapshot, now):
        bills = snapshot.bills + (_bill('T', '2024-03-22', 250.0),)
        assert analytics.daily_consumption(bills, now) == 250.0
        assert analytics.daily_consumption(snapshot.bills, now) == 0

    def test_bills_total(self, snapshot):
        assert analytics.bills_total(snapshot.bills) == pytest.approx(1498.6)


def test_search_patients(snapshot):
    assert [p.id for p in analytics.search_patients(snapshot.patients, 'rigby')] == ['P4']
    assert [p.id for p in analytics.search_patients(snapshot.patients, 'p2')] == ['P2']


def test_match_suggestions(snapshot):
    suggestions = [
        MedicationSuggestion(name='Insulin Glargine 10 units', category='First-line', reason='basal'),
        MedicationSuggestion(name='Metformin 500mg', category='First-line', reason='oral'),
        MedicationSuggestion(name='paracetamol', category='Supportive', reason='pain'),
    ]
    matched = analytics.match_suggestions(suggestions, snapshot.inventory)
    assert [item.id if item else None for _, item in matched] == ['1', None, '2']


def test_dashboard(snapshot, now):
    board = analytics.dashboard(snapshot, now)
    assert {i['id'] for i in board['lowStock']} == {'1', '3', '5'}
    assert board['totalInventoryValue'] == pytest.approx(110545.0)
    assert board['lossValue'] == 0
    assert board['deficits'] == []
    assert len(board['vendorMetrics']) == 3
    assert board['pendingPOs'][0]['id'] == 'PO-900'
