from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional
from datetime import date, datetime

from enums import (
    DeviceStatus,
    LoanLineStatus,
    LoanSlipStatus,
    MaintenanceLineStatus,
    MaintenanceReturnSlipStatus,
    MaintenanceSlipStatus,
    PartnerType,
    ReturnSlipStatus,
    WarrantyStatus,
)

# A line is resolved as returned or broken; both cycles share the values.
ResolutionStatus = Literal["returned", "broken"]


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------- reference records ----------
class DeviceIn(BaseModel):
    name: str
    serial: Optional[str] = None
    model: Optional[str] = None
    warranty_expiration_date: Optional[date] = None
    note: Optional[str] = None


class Device(Record):
    id: str
    name: str
    serial: Optional[str] = None
    model: Optional[str] = None
    warranty_expiration_date: Optional[date] = None
    note: Optional[str] = None
    status: DeviceStatus
    version: int
    created_at: datetime
    updated_at: datetime


class PartnerIn(BaseModel):
    name: str
    partner_type: PartnerType = PartnerType.BORROWER
    phone: Optional[str] = None
    note: Optional[str] = None


class Partner(Record):
    id: str
    name: str
    partner_type: PartnerType
    phone: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ListMeta(BaseModel):
    total: int
    limit: int
    offset: int
    total_pages: int


# ---------- shared line input ----------
class ResolveItem(BaseModel):
    device_id: str
    status: ResolutionStatus
    note: Optional[str] = None


class ResolveIn(BaseModel):
    items: list[ResolveItem] = Field(min_length=1)


# ---------- loan ----------
class LoanSlipIn(BaseModel):
    borrower_id: str
    loaner_id: str
    device_ids: list[str] = Field(min_length=1)
    note: Optional[str] = None


class LoanSlipUpdate(BaseModel):
    borrower_id: Optional[str] = None
    loaner_id: Optional[str] = None
    note: Optional[str] = None


class LoanSlipDetail(Record):
    id: str
    device_id: str
    line_no: int
    status: LoanLineStatus
    return_date: Optional[datetime] = None
    note: Optional[str] = None


class LoanSlip(Record):
    id: str
    code: str
    borrower_id: str
    loaner_id: str
    status: LoanSlipStatus
    note: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
    details: list[LoanSlipDetail] = []


# ---------- return slip ----------
class ReturnSlipItem(BaseModel):
    device_id: str
    note: Optional[str] = None


class ReturnSlipIn(BaseModel):
    loan_slip_id: str
    returner_id: str
    return_date: Optional[datetime] = None
    items: list[ReturnSlipItem] = Field(min_length=1)
    note: Optional[str] = None


class ReturnSlipUpdate(BaseModel):
    returner_id: Optional[str] = None
    note: Optional[str] = None


class ReturnSlipDetail(Record):
    id: str
    loan_slip_detail_id: str
    device_id: str
    line_no: int
    note: Optional[str] = None


class ReturnSlip(Record):
    id: str
    code: str
    loan_slip_id: str
    returner_id: str
    return_date: datetime
    status: ReturnSlipStatus
    note: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
    details: list[ReturnSlipDetail] = []


# ---------- maintenance ----------
class MaintenanceSlipIn(BaseModel):
    device_ids: list[str] = Field(min_length=1)
    partner_id: Optional[str] = None
    reason: Optional[str] = None
    request_date: Optional[date] = None


class MaintenanceSlipUpdate(BaseModel):
    partner_id: Optional[str] = None
    reason: Optional[str] = None
    request_date: Optional[date] = None


class MaintenanceSlipDetail(Record):
    id: str
    device_id: str
    line_no: int
    status: MaintenanceLineStatus
    return_date: Optional[datetime] = None
    note: Optional[str] = None


class MaintenanceSlip(Record):
    id: str
    code: str
    partner_id: Optional[str] = None
    reason: Optional[str] = None
    request_date: date
    status: MaintenanceSlipStatus
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
    details: list[MaintenanceSlipDetail] = []


class MaintenanceReturnSlipIn(BaseModel):
    maintenance_slip_id: str
    return_date: Optional[datetime] = None
    devices: list[ResolveItem] = Field(min_length=1)
    note: Optional[str] = None


class MaintenanceReturnSlipUpdate(BaseModel):
    note: Optional[str] = None


class MaintenanceReturnSlipDetail(Record):
    id: str
    maintenance_slip_detail_id: str
    device_id: str
    line_no: int
    status: MaintenanceLineStatus
    note: Optional[str] = None


class MaintenanceReturnSlip(Record):
    id: str
    code: str
    maintenance_slip_id: str
    return_date: datetime
    status: MaintenanceReturnSlipStatus
    note: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
    details: list[MaintenanceReturnSlipDetail] = []


# ---------- warranty ----------
class WarrantyIn(BaseModel):
    device_id: str
    reason: str
    request_date: date


class WarrantyUpdate(BaseModel):
    reason: Optional[str] = None
    request_date: Optional[date] = None


class Warranty(Record):
    id: str
    code: str
    device_id: str
    reason: Optional[str] = None
    request_date: date
    status: WarrantyStatus
    prior_device_status: DeviceStatus
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int
