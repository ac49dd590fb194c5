"""Line resolution shared by the loan and maintenance cycles."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from crud import utcnow
from devices import load_devices, transition_device
from enums import (
    RESOLUTION_DEVICE_STATUS,
    DeviceStatus,
    LoanLineStatus,
    LoanSlipStatus,
    MaintenanceLineStatus,
    MaintenanceSlipStatus,
)
from errors import ConflictError, NotFoundError, ValidationError
import warranties

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LineCycle:
    name: str
    line_status: type[Enum]
    line_open: Enum
    header_open: Enum
    header_partial: Enum
    header_closed: Enum
    header_cancelled: Enum
    device_open: DeviceStatus
    broken_reason: str

    @property
    def resolved(self) -> frozenset:
        return frozenset(s for s in self.line_status if s != self.line_open)

    @property
    def resolvable_headers(self) -> frozenset:
        return frozenset({self.header_open, self.header_partial})


LOAN = LineCycle(
    name="loan",
    line_status=LoanLineStatus,
    line_open=LoanLineStatus.BORROWED,
    header_open=LoanSlipStatus.BORROWING,
    header_partial=LoanSlipStatus.PARTIAL_RETURNED,
    header_closed=LoanSlipStatus.CLOSED,
    header_cancelled=LoanSlipStatus.CANCELLED,
    device_open=DeviceStatus.ON_LOAN,
    broken_reason="Device broken during loan",
)

MAINTENANCE = LineCycle(
    name="maintenance",
    line_status=MaintenanceLineStatus,
    line_open=MaintenanceLineStatus.SENT,
    header_open=MaintenanceSlipStatus.SENDING,
    header_partial=MaintenanceSlipStatus.PARTIAL_RETURNED,
    header_closed=MaintenanceSlipStatus.CLOSED,
    header_cancelled=MaintenanceSlipStatus.CANCELLED,
    device_open=DeviceStatus.MAINTENANCE,
    broken_reason="Device broken during maintenance",
)


@dataclass(frozen=True)
class Resolution:
    device_id: str
    status: str  # "returned" | "broken"
    note: Optional[str] = None


def lock_header(db: Session, orm_cls: type[T], header_id: str, label: str) -> T:
    header = db.execute(
        select(orm_cls)
        .where(orm_cls.id == header_id)
        .options(selectinload(orm_cls.details))
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if header is None:
        raise NotFoundError(f"{label} {header_id} not found", id=header_id)
    return header


def aggregate_status(cycle: LineCycle, line_statuses: Sequence[Enum]) -> Enum:
    resolved = sum(1 for s in line_statuses if s in cycle.resolved)
    if resolved == 0:
        return cycle.header_open
    if resolved == len(line_statuses):
        return cycle.header_closed
    return cycle.header_partial


def recompute_header(cycle: LineCycle, header) -> Enum:
    header.status = aggregate_status(cycle, [line.status for line in header.details])
    header.updated_at = utcnow()
    return header.status


def require_resolvable(cycle: LineCycle, header, label: str) -> None:
    if header.status not in cycle.resolvable_headers:
        raise ConflictError(
            f"{label} {header.code} is {header.status.value}, nothing can be returned against it",
            status=header.status.value,
        )


def open_lines_for(cycle: LineCycle, header, items: Sequence[Resolution]) -> list:
    """Match each item to an open line of the header, validating before any write."""
    device_ids = [i.device_id for i in items]
    if len(set(device_ids)) != len(device_ids):
        raise ValidationError("a device appears more than once", device_ids=device_ids)

    by_device = {line.device_id: line for line in header.details}
    lines = []
    for item in items:
        if item.status not in RESOLUTION_DEVICE_STATUS:
            raise ValidationError(f"invalid resolution {item.status!r}", device_id=item.device_id)
        line = by_device.get(item.device_id)
        if line is None or line.status != cycle.line_open:
            raise ValidationError(
                f"device is not an open {cycle.name} line of {header.code}",
                device_id=item.device_id,
            )
        lines.append(line)
    return lines


def resolve_lines(
    db: Session,
    cycle: LineCycle,
    header,
    items: Sequence[Resolution],
    *,
    when: Optional[datetime] = None,
    source_type: str,
    source_id: str,
    actor_id: Optional[str] = None,
) -> list:
    """Resolve a subset of a header's open lines and move their devices.

    Every item is validated before anything is written. A broken resolution
    opens a PENDING warranty for the device unless one is already open.
    Returns the resolved lines in item order.
    """
    require_resolvable(cycle, header, f"{cycle.name} slip")
    lines = open_lines_for(cycle, header, items)
    devices = load_devices(db, [i.device_id for i in items], lock=True)
    when = when or utcnow()

    warranties_opened = 0
    for item, line, device in zip(items, lines, devices):
        line.status = cycle.line_status(item.status)
        line.return_date = when
        if item.note is not None:
            line.note = item.note
        line.updated_at = utcnow()

        transition_device(db, device, cycle.device_open, RESOLUTION_DEVICE_STATUS[item.status])

        if item.status == "broken":
            opened = warranties.open_for_broken_device(
                db,
                device,
                reason=f"{cycle.broken_reason} - {item.note or 'No note'}",
                source_type=source_type,
                source_id=source_id,
                actor_id=actor_id,
            )
            if opened is not None:
                warranties_opened += 1

    db.flush()
    status = recompute_header(cycle, header)
    logger.info(
        "%s_lines_resolved code=%s lines=%s status=%s warranties_opened=%s",
        cycle.name,
        header.code,
        len(lines),
        status.value,
        warranties_opened,
    )
    return lines


def revert_lines(
    db: Session,
    cycle: LineCycle,
    header,
    reverts: Sequence[tuple[Any, str]],
    *,
    source_type: str,
    source_id: str,
) -> None:
    """Compensate earlier resolutions: lines back to open, devices back out.

    ``reverts`` pairs each header line with the resolution being undone. A
    device that has moved on since (reloaned, warranty work started) makes
    the whole cancel fail with ConflictError.
    """
    if header.status == cycle.header_cancelled:
        raise ConflictError(f"{header.code} is cancelled", status=header.status.value)

    devices = load_devices(db, [line.device_id for line, _ in reverts], lock=True)

    for (line, resolution), device in zip(reverts, devices):
        left_as = RESOLUTION_DEVICE_STATUS[resolution]
        if line.status != cycle.line_status(resolution) or device.status != left_as:
            raise ConflictError(
                f"device {device.id} has moved on since it was returned",
                device_id=device.id,
                device_status=device.status.value,
            )

    for (line, resolution), device in zip(reverts, devices):
        if resolution == "broken":
            warranties.withdraw_auto_warranty(db, device.id, source_type=source_type, source_id=source_id)
        transition_device(db, device, RESOLUTION_DEVICE_STATUS[resolution], cycle.device_open)
        line.status = cycle.line_open
        line.return_date = None
        line.updated_at = utcnow()

    db.flush()
    status = recompute_header(cycle, header)
    logger.info(
        "%s_lines_reverted code=%s lines=%s status=%s",
        cycle.name,
        header.code,
        len(reverts),
        status.value,
    )


def cancel_header(db: Session, cycle: LineCycle, header, label: str) -> None:
    """Cancel a header nobody has returned anything against yet."""
    if header.status != cycle.header_open:
        raise ConflictError(
            f"{label} {header.code} is {header.status.value}, only {cycle.header_open.value} can be cancelled",
            status=header.status.value,
        )
    devices = load_devices(db, [line.device_id for line in header.details], lock=True)
    for device in devices:
        transition_device(db, device, cycle.device_open, DeviceStatus.AVAILABLE)

    header.status = cycle.header_cancelled
    header.updated_at = utcnow()
    logger.info("%s_cancelled code=%s devices=%s", label.replace(" ", "_"), header.code, len(devices))
