from datetime import datetime
from enum import Enum
from typing import Annotated, List, Optional, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Location(str, Enum):
    CENTRAL_PHARMACY = 'Central Pharmacy'
    WARD_FLOOR = 'Ward Floor'
    EMERGENCY_DEPOT = 'Emergency Depot'


class ItemCategory(str, Enum):
    TABLET = 'Tablet'
    VIAL = 'Vial'
    SYRINGE = 'Syringe'
    INFUSION = 'Infusion'


class StaffRole(str, Enum):
    NURSE = 'Nurse'
    PHARMACIST = 'Pharmacist'
    ADMIN = 'Admin'
    RECEPTIONIST = 'Receptionist'


class Shift(str, Enum):
    DAY = 'Day'
    NIGHT = 'Night'
    EVENING = 'Evening'


class DutyStatus(str, Enum):
    ON_DUTY = 'On Duty'
    OFF_DUTY = 'Off Duty'


class DoctorStatus(str, Enum):
    ON_LEAVE = 'On Leave'
    ON_DUTY = 'On Duty'
    IN_SURGERY = 'In Surgery'


class OrderStatus(str, Enum):
    AWAITING_AUTHORIZATION = 'Awaiting Authorization'
    AUTHORIZED = 'Authorized'
    PENDING = 'Pending'
    RECEIVED = 'Received'
    CANCELLED = 'Cancelled'


class Priority(str, Enum):
    HIGH = 'High'
    MEDIUM = 'Medium'
    LOW = 'Low'


class RequestStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    REJECTED = 'REJECTED'
    FLAGGED = 'FLAGGED'
    EMERGENCY_STOCKOUT = 'EMERGENCY_STOCKOUT'


class UserRole(str, Enum):
    ADMIN = 'ADMIN'
    PHARMACIST = 'PHARMACIST'
    RECEPTIONIST = 'RECEPTIONIST'
    GUEST = 'GUEST'


class Severity(str, Enum):
    SUCCESS = 'success'
    ERROR = 'error'
    WARNING = 'warning'


class BillWindow(str, Enum):
    ALL = 'all'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


# Marker stored in last_used_date for items that were never dispensed
JUST_ADDED = 'Just Added'


def parse_iso(text: str) -> datetime:
    """ISO date or datetime string, with a trailing Z read as UTC"""
    text = text.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return datetime.fromisoformat(text)


def _check_iso(value: str) -> str:
    try:
        parse_iso(value)
    except ValueError:
        raise ValueError(f'{value!r} is not an ISO date') from None
    return value


# Stored as given; anything fromisoformat cannot read is rejected
IsoDate = Annotated[str, AfterValidator(_check_iso)]


class Record(BaseModel):
    """Base for every entity: immutable, camelCase on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        use_enum_values=False,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode='json', by_alias=True)


class InventoryItem(Record):
    id: str
    name: str
    batch_id: str = Field(alias='batchID')
    stock_level: int = Field(ge=0)
    critical_threshold: int
    expiry_date: IsoDate
    cost_per_unit: float = Field(ge=0)
    location: Location
    last_used_date: str = JUST_ADDED
    category: ItemCategory


class MedicationLog(Record):
    medicine_name: str
    quantity: int
    timestamp: str
    administered_by: str


class Patient(Record):
    id: str
    name: str
    age: int = Field(ge=0)
    assigned_doctor_id: str = Field(alias='assignedDoctorID')
    diagnosis: str = ''
    bed_number: str = ''
    medication_history: Tuple[MedicationLog, ...] = ()


class Doctor(Record):
    id: str
    name: str
    specialization: str
    status: DoctorStatus = DoctorStatus.ON_DUTY
    patient_load: int = 0


class StaffMember(Record):
    id: str
    name: str
    role: StaffRole
    shift: Shift
    status: DutyStatus = DutyStatus.ON_DUTY


class Vendor(Record):
    id: str
    name: str
    contact: str = ''
    performance_rating: float = 5.0


class PurchaseOrder(Record):
    id: str
    item_name: str
    quantity: int = Field(ge=1)
    vendor_name: str
    status: OrderStatus = OrderStatus.AWAITING_AUTHORIZATION
    order_date: str
    cost: float = Field(ge=0)
    priority: Priority = Priority.MEDIUM
    requested_by: str = 'Pharmacy Terminal'


class RequestLine(Record):
    medicine_id: str
    medicine_name: str
    quantity: int = Field(ge=1)


class MedicationRequest(Record):
    id: str
    patient_id: str
    patient_name: str
    items: Tuple[RequestLine, ...]
    requested_at: str
    status: RequestStatus = RequestStatus.PENDING
    is_override: Optional[bool] = None


class BillItem(Record):
    name: str
    quantity: float
    unit_price: float
    total: float


class Bill(Record):
    id: str
    patient_id: str = ''
    patient_name: str
    doctor_name: str = ''
    date: IsoDate
    items: Tuple[BillItem, ...]
    subtotal: float
    gst: float
    grand_total: float


class AccessLogEntry(Record):
    user: str
    time: str
    action: str


class Notification(Record):
    message: str
    severity: Severity


class Snapshot(Record):
    """Complete state of every domain entity at a point in time."""
    inventory: Tuple[InventoryItem, ...] = ()
    patients: Tuple[Patient, ...] = ()
    doctors: Tuple[Doctor, ...] = ()
    staff: Tuple[StaffMember, ...] = ()
    vendors: Tuple[Vendor, ...] = ()
    orders: Tuple[PurchaseOrder, ...] = ()
    requests: Tuple[MedicationRequest, ...] = ()
    bills: Tuple[Bill, ...] = ()
    role: UserRole = UserRole.GUEST
    access_logs: Tuple[AccessLogEntry, ...] = ()

    def find_item(self, item_id: str) -> Optional[InventoryItem]:
        return next((i for i in self.inventory if i.id == item_id), None)

    def find_patient(self, patient_id: str) -> Optional[Patient]:
        return next((p for p in self.patients if p.id == patient_id), None)

    def find_doctor(self, doctor_id: str) -> Optional[Doctor]:
        return next((d for d in self.doctors if d.id == doctor_id), None)

    def find_request(self, req_id: str) -> Optional[MedicationRequest]:
        return next((r for r in self.requests if r.id == req_id), None)

    def find_order(self, order_id: str) -> Optional[PurchaseOrder]:
        return next((o for o in self.orders if o.id == order_id), None)


class MedicationSuggestion(Record):
    name: str
    category: str
    reason: str


def dump_all(records) -> List[dict]:
    return [r.to_json() for r in records]
