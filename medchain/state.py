"""
State mutation layer for MedChain

Each operation takes the current Snapshot plus a typed payload and returns an
Outcome: the new Snapshot and the notifications to show the user. Snapshots
are never modified in place.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from pydantic import Field

from .analytics import request_has_shortfall, today_iso, to_utc
from .exceptions import InsufficientStockError, InvalidTransitionError, NotFoundError
from .models import (
    AccessLogEntry, Bill, Doctor, DoctorStatus, DutyStatus, InventoryItem,
    IsoDate, ItemCategory, JUST_ADDED, Location, MedicationLog, MedicationRequest,
    Notification, OrderStatus, Patient, Priority, PurchaseOrder, Record,
    RequestLine, RequestStatus, Severity, Shift, Snapshot, StaffMember,
    StaffRole, UserRole, Vendor,
)

logger = logging.getLogger(__name__)

PHARMACY_TERMINAL = 'Pharmacy Terminal'
FALLBACK_DOCTOR = 'Clinical Lead'
TERMINAL_ORDER_STATES = (OrderStatus.AUTHORIZED, OrderStatus.CANCELLED)


class Outcome(NamedTuple):
    snapshot: Snapshot
    notifications: Tuple[Notification, ...] = ()
    created: Optional[Record] = None  # entity added by the operation, if any


def _note(message: str, severity: Severity) -> Notification:
    return Notification(message=message, severity=severity)


def _now(now: Optional[datetime]) -> datetime:
    return to_utc(now) if now is not None else datetime.now(timezone.utc)


def _timestamp_id(prefix: str, now: datetime, taken) -> str:
    """PREFIX-NNNN from the last four digits of the epoch millis, bumped on collision"""
    millis = int(now.timestamp() * 1000)
    candidate = f'{prefix}-{str(millis)[-4:]}'
    while candidate in taken:
        millis += 1
        candidate = f'{prefix}-{str(millis)[-4:]}'
    return candidate


# ---------------- ACTION PAYLOADS ----------------

class AddInventoryItem(Record):
    name: str
    batch_id: str = Field(alias='batchID')
    stock_level: int = Field(ge=0)
    critical_threshold: int = 10
    expiry_date: IsoDate
    cost_per_unit: float = Field(ge=0)
    location: Location = Location.CENTRAL_PHARMACY
    category: ItemCategory = ItemCategory.TABLET


class AddStaff(Record):
    name: str
    role: StaffRole = StaffRole.NURSE
    shift: Shift = Shift.DAY
    status: DutyStatus = DutyStatus.ON_DUTY


class AddDoctor(Record):
    name: str
    specialization: str
    status: DoctorStatus = DoctorStatus.ON_DUTY


class AddVendor(Record):
    name: str
    contact: str = ''
    performance_rating: float = 5.0


class AddPatient(Record):
    name: str
    age: int = Field(ge=0)
    assigned_doctor_id: str = Field(alias='assignedDoctorID')
    diagnosis: str = ''
    bed_number: str = ''


class CreateMedicationRequest(Record):
    patient_id: str
    patient_name: str
    items: Tuple[RequestLine, ...]


class CompleteMedicationRequest(Record):
    req_id: str
    bill: Optional[Bill] = None
    is_emergency_stockout: bool = False
    administered_by: str = PHARMACY_TERMINAL


class RaisePurchaseOrder(Record):
    item_name: str
    quantity: int = Field(ge=1)
    vendor_name: str
    priority: Priority = Priority.MEDIUM
    cost: float = Field(ge=0)
    requested_by: str = PHARMACY_TERMINAL


class AuthorizeOrder(Record):
    order_id: str
    action: str  # 'authorize' or 'cancel'


class DeleteBill(Record):
    bill_id: str


class SetRole(Record):
    role: UserRole


# ---------------- REGISTRATION ----------------

def add_inventory_item(snapshot: Snapshot, payload: AddInventoryItem, now=None) -> Outcome:
    item = InventoryItem(
        id=f'M{len(snapshot.inventory) + 1}',
        last_used_date=JUST_ADDED,
        **payload.model_dump(),
    )
    logger.info("Inventory item %s added (%s)", item.id, item.name)
    return Outcome(
        snapshot.model_copy(update={'inventory': snapshot.inventory + (item,)}),
        (_note(f'Resource Added: {item.name}', Severity.SUCCESS),),
        item,
    )


def add_staff(snapshot: Snapshot, payload: AddStaff, now=None) -> Outcome:
    member = StaffMember(id=f'S{len(snapshot.staff) + 1}', **payload.model_dump())
    return Outcome(
        snapshot.model_copy(update={'staff': snapshot.staff + (member,)}),
        (_note(f'Staff Added: {member.name}', Severity.SUCCESS),),
        member,
    )


def add_doctor(snapshot: Snapshot, payload: AddDoctor, now=None) -> Outcome:
    doctor = Doctor(id=f'D{len(snapshot.doctors) + 1}', patient_load=0, **payload.model_dump())
    return Outcome(
        snapshot.model_copy(update={'doctors': snapshot.doctors + (doctor,)}),
        (_note(f'Specialist Registered: {doctor.name}', Severity.SUCCESS),),
        doctor,
    )


def add_vendor(snapshot: Snapshot, payload: AddVendor, now=None) -> Outcome:
    vendor = Vendor(id=f'V{len(snapshot.vendors) + 1}', **payload.model_dump())
    return Outcome(
        snapshot.model_copy(update={'vendors': snapshot.vendors + (vendor,)}),
        (_note(f'Partner Integrated: {vendor.name}', Severity.SUCCESS),),
        vendor,
    )


def add_patient(snapshot: Snapshot, payload: AddPatient, now=None) -> Outcome:
    if snapshot.find_doctor(payload.assigned_doctor_id) is None:
        raise NotFoundError('Doctor', payload.assigned_doctor_id)
    patient = Patient(
        id=f'P{len(snapshot.patients) + 1}',
        medication_history=(),
        **payload.model_dump(),
    )
    logger.info("Patient %s admitted under %s", patient.id, patient.assigned_doctor_id)
    return Outcome(
        snapshot.model_copy(update={'patients': snapshot.patients + (patient,)}),
        (_note(f'Patient Intaked: {patient.name}', Severity.SUCCESS),),
        patient,
    )


# ---------------- MEDICATION REQUESTS ----------------

def create_medication_request(snapshot: Snapshot, payload: CreateMedicationRequest, now=None) -> Outcome:
    """Queue a request for the pharmacy. Stock is checked at fulfilment, not here."""
    now = _now(now)
    if not payload.items:
        raise ValueError('A medication request needs at least one item')
    if snapshot.find_patient(payload.patient_id) is None:
        raise NotFoundError('Patient', payload.patient_id)

    req = MedicationRequest(
        id=_timestamp_id('REQ', now, {r.id for r in snapshot.requests}),
        patient_id=payload.patient_id,
        patient_name=payload.patient_name,
        items=payload.items,
        requested_at=now.isoformat(),
        status=RequestStatus.PENDING,
    )
    logger.info("Request %s created for %s (%d lines)", req.id, req.patient_id, len(req.items))
    return Outcome(
        snapshot.model_copy(update={'requests': (req,) + snapshot.requests}),
        (_note('Request Sent to Pharmacy', Severity.WARNING),),
        req,
    )


def _set_request_status(requests, req_id: str, status: RequestStatus):
    return tuple(r.model_copy(update={'status': status}) if r.id == req_id else r for r in requests)


def complete_medication_request(snapshot: Snapshot, payload: CompleteMedicationRequest, now=None) -> Outcome:
    now = _now(now)
    req = snapshot.find_request(payload.req_id)
    if req is None:
        raise NotFoundError('Request', payload.req_id)
    if req.status != RequestStatus.PENDING:
        raise InvalidTransitionError(f'Request {req.id} is {req.status.value}, not PENDING')

    if payload.is_emergency_stockout:
        logger.warning("Emergency stockout flagged on %s", req.id)
        return Outcome(
            snapshot.model_copy(update={
                'requests': _set_request_status(snapshot.requests, req.id, RequestStatus.EMERGENCY_STOCKOUT)
            }),
            (_note(f'Critical Stockout Flagged for {req.patient_name}', Severity.ERROR),),
        )

    wanted: Dict[str, int] = defaultdict(int)
    for line in req.items:
        wanted[line.medicine_id] += line.quantity
    for medicine_id, qty in wanted.items():
        item = snapshot.find_item(medicine_id)
        available = item.stock_level if item else 0
        if available < qty:
            raise InsufficientStockError(medicine_id, qty, available)

    stamp = now.isoformat()
    inventory = tuple(
        i.model_copy(update={'stock_level': i.stock_level - wanted[i.id], 'last_used_date': stamp})
        if i.id in wanted else i
        for i in snapshot.inventory
    )

    logs = tuple(
        MedicationLog(medicine_name=line.medicine_name, quantity=line.quantity,
                      timestamp=stamp, administered_by=payload.administered_by)
        for line in req.items
    )
    patients = tuple(
        p.model_copy(update={'medication_history': p.medication_history + logs})
        if p.id == req.patient_id else p
        for p in snapshot.patients
    )

    bills = (payload.bill,) + snapshot.bills if payload.bill is not None else snapshot.bills
    logger.info("Request %s fulfilled (%d lines, bill=%s)", req.id, len(req.items),
                payload.bill.id if payload.bill else None)
    return Outcome(
        snapshot.model_copy(update={
            'inventory': inventory,
            'patients': patients,
            'bills': bills,
            'requests': _set_request_status(snapshot.requests, req.id, RequestStatus.COMPLETED),
        }),
        (_note(f'Verified & Fulfilled: {req.patient_name}', Severity.SUCCESS),),
        payload.bill,
    )


def prepare_fulfillment(snapshot: Snapshot, req_id: str, assistant) -> CompleteMedicationRequest:
    """
    Decide how a pending request gets completed: flag a stockout when any
    line is short, otherwise have the assistant synthesize the bill.
    Reads the snapshot only, so it can run while other actions are applied.
    """
    req = snapshot.find_request(req_id)
    if req is None:
        raise NotFoundError('Request', req_id)
    if req.status != RequestStatus.PENDING:
        raise InvalidTransitionError(f'Request {req.id} is {req.status.value}, not PENDING')

    if request_has_shortfall(req, snapshot.inventory):
        return CompleteMedicationRequest(req_id=req_id, is_emergency_stockout=True)

    patient = snapshot.find_patient(req.patient_id)
    if patient is None:
        raise NotFoundError('Patient', req.patient_id)
    doctor = snapshot.find_doctor(patient.assigned_doctor_id)

    lines = [
        {'medicine_name': line.medicine_name, 'quantity': line.quantity,
         'unit_price': snapshot.find_item(line.medicine_id).cost_per_unit}
        for line in req.items
    ]
    bill = assistant.synthesize_bill(patient, doctor.name if doctor else FALLBACK_DOCTOR, lines)
    return CompleteMedicationRequest(req_id=req_id, bill=bill)


def _complete_prepared(snapshot: Snapshot, payload: CompleteMedicationRequest, now=None) -> Outcome:
    req = snapshot.find_request(payload.req_id)
    if (not payload.is_emergency_stockout and req is not None
            and request_has_shortfall(req, snapshot.inventory)):
        # stock moved while the bill was being synthesized
        logger.warning("Stock changed during billing of %s, discarding bill %s", req.id,
                       payload.bill.id if payload.bill else None)
        payload = CompleteMedicationRequest(req_id=payload.req_id, is_emergency_stockout=True)
    outcome = complete_medication_request(snapshot, payload, now)
    if payload.bill is None and not payload.is_emergency_stockout:
        logger.error("Billing unavailable for %s, stock committed without a bill", payload.req_id)
        outcome = outcome._replace(notifications=outcome.notifications + (
            _note(f'Billing unavailable for {req.patient_name}: no bill recorded', Severity.WARNING),
        ))
    return outcome


def fulfill_request(snapshot: Snapshot, req_id: str, assistant, now=None) -> Outcome:
    """
    Pharmacy fulfilment in one step.

    If billing fails the request still completes and stock is committed
    without a bill record; a warning notification reports it.
    """
    return _complete_prepared(snapshot, prepare_fulfillment(snapshot, req_id, assistant), now)


# ---------------- PROCUREMENT ----------------

def raise_purchase_order(snapshot: Snapshot, payload: RaisePurchaseOrder, now=None) -> Outcome:
    now = _now(now)
    if not any(v.name == payload.vendor_name for v in snapshot.vendors):
        raise NotFoundError('Vendor', payload.vendor_name)

    order = PurchaseOrder(
        id=_timestamp_id('PO', now, {o.id for o in snapshot.orders}),
        status=OrderStatus.AWAITING_AUTHORIZATION,
        order_date=today_iso(now),
        **payload.model_dump(),
    )
    logger.info("Purchase order %s raised: %d x %s from %s", order.id, order.quantity,
                order.item_name, order.vendor_name)
    return Outcome(
        snapshot.model_copy(update={'orders': (order,) + snapshot.orders}),
        (_note(f'PO Request Sent to Admin: {order.item_name}', Severity.WARNING),),
        order,
    )


def authorize_order(snapshot: Snapshot, payload: AuthorizeOrder, now=None) -> Outcome:
    if payload.action not in ('authorize', 'cancel'):
        raise ValueError(f'Unknown order action: {payload.action}')
    order = snapshot.find_order(payload.order_id)
    if order is None:
        raise NotFoundError('Order', payload.order_id)

    if order.status in TERMINAL_ORDER_STATES:
        return Outcome(snapshot, (
            _note(f'Order {order.id} already {order.status.value}', Severity.WARNING),
        ))

    new_status = OrderStatus.AUTHORIZED if payload.action == 'authorize' else OrderStatus.CANCELLED
    orders = tuple(
        o.model_copy(update={'status': new_status}) if o.id == order.id else o
        for o in snapshot.orders
    )
    logger.info("Order %s -> %s", order.id, new_status.value)
    severity = Severity.SUCCESS if new_status == OrderStatus.AUTHORIZED else Severity.ERROR
    return Outcome(
        snapshot.model_copy(update={'orders': orders}),
        (_note(f'Order {new_status.value}', severity),),
    )


# ---------------- BILLING ----------------

def delete_bill(snapshot: Snapshot, payload: DeleteBill, now=None) -> Outcome:
    if not any(b.id == payload.bill_id for b in snapshot.bills):
        raise NotFoundError('Bill', payload.bill_id)
    return Outcome(
        snapshot.model_copy(update={'bills': tuple(b for b in snapshot.bills if b.id != payload.bill_id)}),
        (_note(f'Bill {payload.bill_id} removed from registry', Severity.WARNING),),
    )


def set_role(snapshot: Snapshot, payload: SetRole, now=None) -> Outcome:
    return Outcome(snapshot.model_copy(update={'role': payload.role}))


# ---------------- REDUCER ----------------

HANDLERS: Dict[type, Callable[..., Outcome]] = {
    AddInventoryItem: add_inventory_item,
    AddStaff: add_staff,
    AddDoctor: add_doctor,
    AddVendor: add_vendor,
    AddPatient: add_patient,
    CreateMedicationRequest: create_medication_request,
    CompleteMedicationRequest: complete_medication_request,
    RaisePurchaseOrder: raise_purchase_order,
    AuthorizeOrder: authorize_order,
    DeleteBill: delete_bill,
    SetRole: set_role,
}


def _log_access(snapshot: Snapshot, user: str, action: str, now: datetime) -> Snapshot:
    entry = AccessLogEntry(user=user, time=now.isoformat(), action=action)
    return snapshot.model_copy(update={'access_logs': snapshot.access_logs + (entry,)})


def dispatch(snapshot: Snapshot, action: Record, now=None) -> Outcome:
    """(snapshot, action) -> (snapshot, notifications)"""
    handler = HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f'No handler for {type(action).__name__}')
    now = _now(now)
    user = snapshot.role.value
    outcome = handler(snapshot, action, now)
    return outcome._replace(snapshot=_log_access(outcome.snapshot, user, type(action).__name__, now))


class Store:
    """Holds the process-owned snapshot and applies one action at a time"""

    def __init__(self, snapshot: Snapshot, clock: Callable[[], datetime] = None):
        self._snapshot = snapshot
        self._initial = snapshot
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    def now(self) -> datetime:
        return self._clock()

    def dispatch(self, action: Record) -> Outcome:
        with self._lock:
            outcome = dispatch(self._snapshot, action, self.now())
            self._snapshot = outcome.snapshot
        return outcome

    def fulfill(self, req_id: str, assistant) -> Outcome:
        # the assistant call runs without the lock; completion re-checks
        # status and stock against whatever snapshot is current by then
        prepared = prepare_fulfillment(self._snapshot, req_id, assistant)
        with self._lock:
            now = self.now()
            user = self._snapshot.role.value
            outcome = _complete_prepared(self._snapshot, prepared, now)
            outcome = outcome._replace(snapshot=_log_access(outcome.snapshot, user, 'FulfillRequest', now))
            self._snapshot = outcome.snapshot
        return outcome

    def reset(self) -> None:
        with self._lock:
            self._snapshot = self._initial
