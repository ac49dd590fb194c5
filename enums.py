from enum import Enum


class DeviceStatus(str, Enum):
    AVAILABLE = "available"
    ON_LOAN = "on_loan"
    MAINTENANCE = "maintenance"
    UNDER_WARRANTY = "under_warranty"
    BROKEN = "broken"


class PartnerType(str, Enum):
    BORROWER = "borrower"
    MAINTENANCE = "maintenance"


class LoanSlipStatus(str, Enum):
    BORROWING = "borrowing"
    PARTIAL_RETURNED = "partial_returned"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class LoanLineStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    BROKEN = "broken"


class ReturnSlipStatus(str, Enum):
    RETURNED = "returned"
    CANCELLED = "cancelled"


class MaintenanceSlipStatus(str, Enum):
    SENDING = "sending"
    PARTIAL_RETURNED = "partial_returned"
    CLOSED = "closed"
    CANCELLED = "cancelled"


class MaintenanceLineStatus(str, Enum):
    SENT = "sent"
    RETURNED = "returned"
    BROKEN = "broken"


class MaintenanceReturnSlipStatus(str, Enum):
    RETURNED = "returned"
    CANCELLED = "cancelled"


class WarrantyStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Moves the device record may make. Staying in place is always allowed.
DEVICE_TRANSITIONS: dict[DeviceStatus, frozenset[DeviceStatus]] = {
    DeviceStatus.AVAILABLE: frozenset({
        DeviceStatus.ON_LOAN,
        DeviceStatus.MAINTENANCE,
        DeviceStatus.UNDER_WARRANTY,
    }),
    DeviceStatus.ON_LOAN: frozenset({
        DeviceStatus.AVAILABLE,
        DeviceStatus.BROKEN,
    }),
    DeviceStatus.MAINTENANCE: frozenset({
        DeviceStatus.AVAILABLE,
        DeviceStatus.BROKEN,
    }),
    DeviceStatus.UNDER_WARRANTY: frozenset({
        DeviceStatus.AVAILABLE,
        DeviceStatus.BROKEN,
    }),
    DeviceStatus.BROKEN: frozenset({
        DeviceStatus.UNDER_WARRANTY,
        # compensation of a maintenance return that reported the device broken
        DeviceStatus.MAINTENANCE,
    }),
}

WARRANTY_TRANSITIONS: dict[WarrantyStatus, frozenset[WarrantyStatus]] = {
    WarrantyStatus.PENDING: frozenset({
        WarrantyStatus.PROCESSING,
        WarrantyStatus.REJECTED,
        WarrantyStatus.CANCELLED,
    }),
    WarrantyStatus.PROCESSING: frozenset({
        WarrantyStatus.COMPLETED,
        WarrantyStatus.REJECTED,
        WarrantyStatus.CANCELLED,
    }),
    WarrantyStatus.COMPLETED: frozenset(),
    WarrantyStatus.REJECTED: frozenset(),
    WarrantyStatus.CANCELLED: frozenset(),
}

OPEN_WARRANTY_STATUSES = frozenset({WarrantyStatus.PENDING, WarrantyStatus.PROCESSING})

# Device status a resolved line leaves behind, shared by loan and maintenance lines.
RESOLUTION_DEVICE_STATUS: dict[str, DeviceStatus] = {
    "returned": DeviceStatus.AVAILABLE,
    "broken": DeviceStatus.BROKEN,
}
