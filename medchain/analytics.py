"""
Operational analytics for MedChain
- Critical stock and expiry classification
- Demand vs supply deficits with financial impact
- Vendor rollups and bill aggregation

Every function is pure: it reads a snapshot (or parts of one) and an
injected `now`, and never mutates anything.
"""

from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .models import (
    Bill, BillWindow, InventoryItem, MedicationRequest, MedicationSuggestion,
    OrderStatus, PurchaseOrder, Record, RequestStatus, Snapshot, StaffMember,
    DutyStatus, Vendor, parse_iso,
)

DAY_SECONDS = 86_400

# Upper bound (inclusive) in days for each bill window
WINDOW_DAYS = {
    BillWindow.WEEKLY: 7,
    BillWindow.MONTHLY: 30,
    BillWindow.YEARLY: 365,
}

EXPIRY_HORIZON_DAYS = 30
UNKNOWN_ITEM = 'Unknown Node'

Moment = Union[datetime, date, str]


class Deficit(Record):
    id: str
    name: str
    needed: int
    available: int
    deficit: int
    financial_impact: float


class StockGap(Record):
    id: str
    name: str
    needed: int
    available: int


class VendorMetric(Record):
    name: str
    rating: float
    order_count: int
    total_value: float


def to_utc(value: Moment) -> datetime:
    """Normalise an ISO string, date or datetime to an aware UTC datetime"""
    if isinstance(value, str):
        value = parse_iso(value)
    elif not isinstance(value, datetime):
        # plain date: midnight UTC, same as a date-only ISO string
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_until(target: Moment, now: Moment) -> float:
    return (to_utc(target) - to_utc(now)).total_seconds() / DAY_SECONDS


def today_iso(now: Moment) -> str:
    return to_utc(now).date().isoformat()


# ---------------- INVENTORY ----------------

def low_stock(inventory: Iterable[InventoryItem]) -> List[InventoryItem]:
    return [i for i in inventory if i.stock_level < i.critical_threshold]


def expiring_soon(inventory: Iterable[InventoryItem], now: Moment) -> List[InventoryItem]:
    """Items expiring strictly within the next 30 days (today and day 30 excluded)"""
    return [i for i in inventory if 0 < days_until(i.expiry_date, now) < EXPIRY_HORIZON_DAYS]


def wastage(inventory: Iterable[InventoryItem], now: Moment) -> List[InventoryItem]:
    current = to_utc(now)
    return [i for i in inventory if to_utc(i.expiry_date) < current]


def inventory_value(inventory: Iterable[InventoryItem]) -> float:
    return sum(i.stock_level * i.cost_per_unit for i in inventory)


def loss_value(wastage_items: Iterable[InventoryItem]) -> float:
    return sum(i.stock_level * i.cost_per_unit for i in wastage_items)


def search_inventory(inventory: Iterable[InventoryItem], term: str = '') -> List[InventoryItem]:
    needle = (term or '').lower()
    return [i for i in inventory if needle in i.name.lower()]


def stock_alerts(inventory: Sequence[InventoryItem], now: Moment) -> List[Dict]:
    """Check inventory for stock and expiry alerts"""
    alerts = []
    expired_ids = {i.id for i in wastage(inventory, now)}

    for item in inventory:
        if item.id in expired_ids:
            alerts.append({
                'type': 'critical',
                'item': item.name,
                'quantity': item.stock_level,
                'message': f'EXPIRED: {item.name} passed expiry on {item.expiry_date} ({item.stock_level} units written off)',
                'priority': 'high'
            })
            continue

        if item.stock_level < item.critical_threshold:
            ratio = item.stock_level / item.critical_threshold if item.critical_threshold else 0
            if ratio <= 0.3:
                alerts.append({
                    'type': 'critical',
                    'item': item.name,
                    'quantity': item.stock_level,
                    'message': f'CRITICAL: {item.name} is running very low ({item.stock_level} remaining)',
                    'priority': 'high'
                })
            else:
                alerts.append({
                    'type': 'warning',
                    'item': item.name,
                    'quantity': item.stock_level,
                    'message': f'WARNING: {item.name} is below threshold ({item.stock_level}/{item.critical_threshold})',
                    'priority': 'medium'
                })

        days_left = days_until(item.expiry_date, now)
        if 0 < days_left < EXPIRY_HORIZON_DAYS:
            alerts.append({
                'type': 'warning',
                'item': item.name,
                'quantity': item.stock_level,
                'message': f'EXPIRING: {item.name} expires in {int(days_left)} days',
                'priority': 'medium'
            })

    return alerts


# ---------------- DEMAND ----------------

def _pending(requests: Iterable[MedicationRequest]) -> List[MedicationRequest]:
    return [r for r in requests if r.status == RequestStatus.PENDING]


def deficits(requests: Iterable[MedicationRequest],
             inventory: Sequence[InventoryItem]) -> List[Deficit]:
    """Aggregate pending demand per medicine and rank shortfalls by cost"""
    needed = defaultdict(int)
    for req in _pending(requests):
        for line in req.items:
            needed[line.medicine_id] += line.quantity

    by_id = {i.id: i for i in inventory}
    result = []
    for medicine_id, qty in needed.items():
        item = by_id.get(medicine_id)
        available = item.stock_level if item else 0
        short = max(0, qty - available)
        if short <= 0:
            continue
        result.append(Deficit(
            id=medicine_id,
            name=item.name if item else UNKNOWN_ITEM,
            needed=qty,
            available=available,
            deficit=short,
            financial_impact=short * (item.cost_per_unit if item else 0),
        ))

    result.sort(key=lambda d: d.financial_impact, reverse=True)
    return result


def stock_gap(requests: Iterable[MedicationRequest],
              inventory: Sequence[InventoryItem]) -> List[StockGap]:
    """Required vs available for every medicine in pending requests"""
    by_id = {i.id: i for i in inventory}
    rows = {}
    for req in _pending(requests):
        for line in req.items:
            row = rows.get(line.medicine_id)
            if row is None:
                item = by_id.get(line.medicine_id)
                row = rows[line.medicine_id] = {
                    'id': line.medicine_id,
                    'name': line.medicine_name,
                    'needed': 0,
                    'available': item.stock_level if item else 0,
                }
            row['needed'] += line.quantity

    gaps = [StockGap(**row) for row in rows.values()]
    gaps.sort(key=lambda g: g.needed - g.available, reverse=True)
    return gaps


def request_has_shortfall(request: MedicationRequest,
                          inventory: Sequence[InventoryItem]) -> bool:
    by_id = {i.id: i for i in inventory}
    for line in request.items:
        item = by_id.get(line.medicine_id)
        if item is None or item.stock_level < line.quantity:
            return True
    return False


# ---------------- PROCUREMENT ----------------

def vendor_metrics(vendors: Iterable[Vendor], orders: Sequence[PurchaseOrder]) -> List[VendorMetric]:
    """Order count and value per vendor. Joined on vendor name, exactly as entered."""
    metrics = []
    for vendor in vendors:
        vendor_orders = [o for o in orders if o.vendor_name == vendor.name]
        metrics.append(VendorMetric(
            name=vendor.name,
            rating=vendor.performance_rating,
            order_count=len(vendor_orders),
            total_value=sum(o.cost for o in vendor_orders),
        ))
    return metrics


def pending_orders(orders: Iterable[PurchaseOrder]) -> List[PurchaseOrder]:
    open_states = (OrderStatus.AWAITING_AUTHORIZATION, OrderStatus.PENDING)
    return [o for o in orders if o.status in open_states]


def on_duty_staff(staff: Iterable[StaffMember]) -> List[StaffMember]:
    return [s for s in staff if s.status == DutyStatus.ON_DUTY]


# ---------------- BILLING ----------------

def bills_in_window(bills: Iterable[Bill], window: Union[BillWindow, str] = BillWindow.ALL,
                    now: Optional[Moment] = None, search: str = '') -> List[Bill]:
    window = BillWindow(window)
    needle = (search or '').lower()
    result = []
    for bill in bills:
        if needle and needle not in bill.patient_name.lower() and needle not in bill.id.lower():
            continue
        if window != BillWindow.ALL:
            if now is None:
                raise ValueError('now is required for a dated bill window')
            elapsed = days_until(now, bill.date)
            if elapsed > WINDOW_DAYS[window]:
                continue
        result.append(bill)
    return result


def bills_total(bills: Iterable[Bill]) -> float:
    return sum(b.grand_total for b in bills)


def daily_consumption(bills: Iterable[Bill], now: Moment) -> float:
    today = today_iso(now)
    return sum(b.grand_total for b in bills if b.date == today)


# ---------------- PATIENTS ----------------

def search_patients(patients, term: str = ''):
    needle = (term or '').lower()
    return [p for p in patients if needle in p.name.lower() or needle in p.id.lower()]


def match_suggestions(suggestions: Iterable[MedicationSuggestion],
                      inventory: Sequence[InventoryItem]) -> List[Tuple[MedicationSuggestion, Optional[InventoryItem]]]:
    """
    Pair each suggested drug with a stocked item, if any.
    Matching is by the leading word of either name, case-insensitive.
    """
    matched = []
    for suggestion in suggestions:
        words = suggestion.name.lower().split()
        key = words[0] if words else ''
        hit = None
        if key:
            for item in inventory:
                item_name = item.name.lower()
                item_key = item_name.split()[0] if item_name.split() else ''
                if key in item_name or (item_key and item_key in suggestion.name.lower()):
                    hit = item
                    break
        matched.append((suggestion, hit))
    return matched


# ---------------- DASHBOARD ----------------

def dashboard(snapshot: Snapshot, now: Moment) -> Dict:
    """Everything the admin overview displays, in one pass"""
    expired = wastage(snapshot.inventory, now)
    return {
        'lowStock': [i.to_json() for i in low_stock(snapshot.inventory)],
        'expiringSoon': [i.to_json() for i in expiring_soon(snapshot.inventory, now)],
        'wastage': [i.to_json() for i in expired],
        'totalInventoryValue': inventory_value(snapshot.inventory),
        'lossValue': loss_value(expired),
        'dailyConsumption': daily_consumption(snapshot.bills, now),
        'deficits': [d.to_json() for d in deficits(snapshot.requests, snapshot.inventory)],
        'vendorMetrics': [v.to_json() for v in vendor_metrics(snapshot.vendors, snapshot.orders)],
        'pendingPOs': [o.to_json() for o in pending_orders(snapshot.orders)],
        'onDutyStaff': [s.to_json() for s in on_duty_staff(snapshot.staff)],
    }
