from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import Date, DateTime, Enum as SAEnum, ForeignKey, Integer, String, Text
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base
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


def status_column(enum_cls: type[Enum]) -> SAEnum:
    # stored as the enum's value string, no native DB enum
    return SAEnum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        validate_strings=True,
        length=32,
    )


class UTCDateTime(TypeDecorator):
    """Stored as naive UTC, always read back as an aware UTC datetime."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class DeviceORM(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    serial: Mapped[str | None] = mapped_column(String, nullable=True, unique=True, index=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[DeviceStatus] = mapped_column(
        status_column(DeviceStatus), nullable=False, default=DeviceStatus.AVAILABLE, index=True
    )
    warranty_expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class PartnerORM(Base):
    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    partner_type: Mapped[PartnerType] = mapped_column(status_column(PartnerType), nullable=False)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class CodeCounterORM(Base):
    __tablename__ = "code_counters"

    prefix: Mapped[str] = mapped_column(String(16), primary_key=True)
    day: Mapped[str] = mapped_column(String(6), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------- Loan ----------
class LoanSlipORM(Base):
    __tablename__ = "loan_slips"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    borrower_id: Mapped[str] = mapped_column(String, ForeignKey("partners.id"), nullable=False, index=True)
    loaner_id: Mapped[str] = mapped_column(String, ForeignKey("partners.id"), nullable=False)
    status: Mapped[LoanSlipStatus] = mapped_column(status_column(LoanSlipStatus), nullable=False, index=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    details: Mapped[list["LoanSlipDetailORM"]] = relationship(
        back_populates="loan_slip", order_by="LoanSlipDetailORM.line_no"
    )

    __mapper_args__ = {"version_id_col": version}


class LoanSlipDetailORM(Base):
    __tablename__ = "loan_slip_details"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    loan_slip_id: Mapped[str] = mapped_column(String, ForeignKey("loan_slips.id"), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String, ForeignKey("devices.id"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[LoanLineStatus] = mapped_column(status_column(LoanLineStatus), nullable=False)
    return_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    loan_slip: Mapped[LoanSlipORM] = relationship(back_populates="details")


class ReturnSlipORM(Base):
    __tablename__ = "return_slips"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    loan_slip_id: Mapped[str] = mapped_column(String, ForeignKey("loan_slips.id"), nullable=False, index=True)
    returner_id: Mapped[str] = mapped_column(String, ForeignKey("partners.id"), nullable=False)
    return_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[ReturnSlipStatus] = mapped_column(status_column(ReturnSlipStatus), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    details: Mapped[list["ReturnSlipDetailORM"]] = relationship(
        back_populates="return_slip", order_by="ReturnSlipDetailORM.line_no"
    )

    __mapper_args__ = {"version_id_col": version}


class ReturnSlipDetailORM(Base):
    __tablename__ = "return_slip_details"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    return_slip_id: Mapped[str] = mapped_column(String, ForeignKey("return_slips.id"), nullable=False, index=True)
    loan_slip_detail_id: Mapped[str] = mapped_column(String, ForeignKey("loan_slip_details.id"), nullable=False)
    device_id: Mapped[str] = mapped_column(String, ForeignKey("devices.id"), nullable=False)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    return_slip: Mapped[ReturnSlipORM] = relationship(back_populates="details")


# ---------- Maintenance ----------
class MaintenanceSlipORM(Base):
    __tablename__ = "maintenance_slips"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    partner_id: Mapped[str | None] = mapped_column(String, ForeignKey("partners.id"), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[MaintenanceSlipStatus] = mapped_column(
        status_column(MaintenanceSlipStatus), nullable=False, index=True
    )

    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    details: Mapped[list["MaintenanceSlipDetailORM"]] = relationship(
        back_populates="maintenance_slip", order_by="MaintenanceSlipDetailORM.line_no"
    )

    __mapper_args__ = {"version_id_col": version}


class MaintenanceSlipDetailORM(Base):
    __tablename__ = "maintenance_slip_details"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    maintenance_slip_id: Mapped[str] = mapped_column(
        String, ForeignKey("maintenance_slips.id"), nullable=False, index=True
    )
    device_id: Mapped[str] = mapped_column(String, ForeignKey("devices.id"), nullable=False, index=True)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[MaintenanceLineStatus] = mapped_column(status_column(MaintenanceLineStatus), nullable=False)
    return_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    maintenance_slip: Mapped[MaintenanceSlipORM] = relationship(back_populates="details")


class MaintenanceReturnSlipORM(Base):
    __tablename__ = "maintenance_return_slips"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    maintenance_slip_id: Mapped[str] = mapped_column(
        String, ForeignKey("maintenance_slips.id"), nullable=False, index=True
    )
    return_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[MaintenanceReturnSlipStatus] = mapped_column(
        status_column(MaintenanceReturnSlipStatus), nullable=False
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    details: Mapped[list["MaintenanceReturnSlipDetailORM"]] = relationship(
        back_populates="maintenance_return_slip", order_by="MaintenanceReturnSlipDetailORM.line_no"
    )

    __mapper_args__ = {"version_id_col": version}


class MaintenanceReturnSlipDetailORM(Base):
    __tablename__ = "maintenance_return_slip_details"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    maintenance_return_slip_id: Mapped[str] = mapped_column(
        String, ForeignKey("maintenance_return_slips.id"), nullable=False, index=True
    )
    maintenance_slip_detail_id: Mapped[str] = mapped_column(
        String, ForeignKey("maintenance_slip_details.id"), nullable=False
    )
    device_id: Mapped[str] = mapped_column(String, ForeignKey("devices.id"), nullable=False)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    # resolution this document applied to the maintenance line (returned / broken)
    status: Mapped[MaintenanceLineStatus] = mapped_column(status_column(MaintenanceLineStatus), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    maintenance_return_slip: Mapped[MaintenanceReturnSlipORM] = relationship(back_populates="details")


# ---------- Warranty ----------
class WarrantyORM(Base):
    __tablename__ = "warranties"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    code: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    device_id: Mapped[str] = mapped_column(String, ForeignKey("devices.id"), nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[WarrantyStatus] = mapped_column(status_column(WarrantyStatus), nullable=False, index=True)
    prior_device_status: Mapped[DeviceStatus] = mapped_column(status_column(DeviceStatus), nullable=False)

    # document that auto-created the request, if any
    source_type: Mapped[str | None] = mapped_column(String, nullable=True)
    source_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
