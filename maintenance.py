from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from crud import as_utc, new_id, snapshot, unit_of_work, utcnow
from devices import load_devices, require_status, transition_device
from enums import (
    DeviceStatus,
    MaintenanceLineStatus,
    MaintenanceReturnSlipStatus,
    MaintenanceSlipStatus,
)
from errors import ConflictError, NotFoundError, ValidationError
from lifecycle import MAINTENANCE, Resolution, cancel_header, lock_header, resolve_lines, revert_lines
from models import (
    MaintenanceReturnSlip,
    MaintenanceReturnSlipIn,
    MaintenanceReturnSlipUpdate,
    MaintenanceSlip,
    MaintenanceSlipDetail,
    MaintenanceSlipIn,
    MaintenanceSlipUpdate,
    ResolveItem,
)
from orm import (
    MaintenanceReturnSlipDetailORM,
    MaintenanceReturnSlipORM,
    MaintenanceSlipDetailORM,
    MaintenanceSlipORM,
    PartnerORM,
)
from ports import AuditContextPort, CacheInvalidationPort, audit_after, audit_before, invalidate_caches
import sequencer

logger = logging.getLogger(__name__)

SLIP_SOURCE = "maintenance_slip"
RETURN_SOURCE = "maintenance_return_slip"


def _require_partner(db: Session, partner_id: Optional[str]) -> None:
    if partner_id and db.get(PartnerORM, partner_id) is None:
        raise ValidationError("maintenance partner not found", partner_id=partner_id)


def _require_sending(slip: MaintenanceSlipORM, action: str) -> None:
    if slip.status != MaintenanceSlipStatus.SENDING:
        raise ConflictError(
            f"maintenance slip {slip.code} is {slip.status.value}, only sending slips can be {action}",
            status=slip.status.value,
        )


# ---------- maintenance slip ----------
def create_maintenance_slip(
    db: Session,
    body: MaintenanceSlipIn,
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceSlip:
    with unit_of_work(db, commit=commit):
        _require_partner(db, body.partner_id)
        devices = load_devices(db, body.device_ids, lock=True)
        require_status(devices, DeviceStatus.AVAILABLE)

        now = utcnow()
        slip = MaintenanceSlipORM(
            id=new_id(),
            code=sequencer.next_code(db, sequencer.MAINTENANCE_SLIP),
            partner_id=body.partner_id,
            reason=body.reason,
            request_date=body.request_date or now.date(),
            status=MaintenanceSlipStatus.SENDING,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        db.add(slip)
        for line_no, device in enumerate(devices, start=1):
            slip.details.append(
                MaintenanceSlipDetailORM(
                    id=new_id(),
                    device_id=device.id,
                    line_no=line_no,
                    status=MaintenanceLineStatus.SENT,
                    created_at=now,
                    updated_at=now,
                )
            )
            transition_device(db, device, DeviceStatus.AVAILABLE, DeviceStatus.MAINTENANCE)

        db.flush()
        result = MaintenanceSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("maintenance_slip_created code=%s devices=%s", result.code, len(result.details))
    if commit:
        invalidate_caches(cache, "maintenance", "devices")
    return result


def return_maintenance_devices(
    db: Session,
    maintenance_slip_id: str,
    items: Sequence[ResolveItem],
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceSlip:
    if not items:
        raise ValidationError("no devices to return")

    with unit_of_work(db, commit=commit):
        slip = lock_header(db, MaintenanceSlipORM, maintenance_slip_id, "maintenance slip")
        audit_before(audit, snapshot(MaintenanceSlip, slip))
        resolve_lines(
            db,
            MAINTENANCE,
            slip,
            [Resolution(i.device_id, i.status, i.note) for i in items],
            source_type=SLIP_SOURCE,
            source_id=slip.id,
            actor_id=actor_id,
        )
        db.flush()
        result = MaintenanceSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "maintenance", "devices", "warranty")
    return result


def cancel_maintenance_slip(
    db: Session,
    maintenance_slip_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceSlip:
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, MaintenanceSlipORM, maintenance_slip_id, "maintenance slip")
        audit_before(audit, snapshot(MaintenanceSlip, slip))
        cancel_header(db, MAINTENANCE, slip, "maintenance slip")
        db.flush()
        result = MaintenanceSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "maintenance", "devices")
    return result


def update_maintenance_slip(
    db: Session,
    maintenance_slip_id: str,
    body: MaintenanceSlipUpdate,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceSlip:
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, MaintenanceSlipORM, maintenance_slip_id, "maintenance slip")
        _require_sending(slip, "edited")
        audit_before(audit, snapshot(MaintenanceSlip, slip))

        if body.partner_id is not None:
            _require_partner(db, body.partner_id)
            slip.partner_id = body.partner_id
        if body.reason is not None:
            slip.reason = body.reason
        if body.request_date is not None:
            slip.request_date = body.request_date
        slip.updated_at = utcnow()

        db.flush()
        result = MaintenanceSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "maintenance")
    return result


def get_maintenance_slip(db: Session, maintenance_slip_id: str) -> MaintenanceSlip:
    slip = db.execute(
        select(MaintenanceSlipORM)
        .where(MaintenanceSlipORM.id == maintenance_slip_id)
        .options(selectinload(MaintenanceSlipORM.details))
    ).scalar_one_or_none()
    if slip is None:
        raise NotFoundError(f"maintenance slip {maintenance_slip_id} not found", id=maintenance_slip_id)
    return MaintenanceSlip.model_validate(slip)


def count_maintenance_slips(db: Session, *, status: Optional[MaintenanceSlipStatus] = None) -> int:
    stmt = select(func.count()).select_from(MaintenanceSlipORM)
    if status:
        stmt = stmt.where(MaintenanceSlipORM.status == status)
    return int(db.execute(stmt).scalar_one())


def list_maintenance_slips(
    db: Session,
    *,
    status: Optional[MaintenanceSlipStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[MaintenanceSlip]:
    stmt = select(MaintenanceSlipORM).options(selectinload(MaintenanceSlipORM.details))
    if status:
        stmt = stmt.where(MaintenanceSlipORM.status == status)
    stmt = stmt.order_by(MaintenanceSlipORM.created_at.desc(), MaintenanceSlipORM.code.desc())
    rows = db.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return [MaintenanceSlip.model_validate(s) for s in rows]


def list_returnable_maintenance_slips(db: Session) -> list[MaintenanceSlip]:
    rows = db.execute(
        select(MaintenanceSlipORM)
        .where(MaintenanceSlipORM.status.in_(MAINTENANCE.resolvable_headers))
        .options(selectinload(MaintenanceSlipORM.details))
        .order_by(MaintenanceSlipORM.created_at.desc(), MaintenanceSlipORM.code.desc())
    ).scalars().all()
    return [MaintenanceSlip.model_validate(s) for s in rows]


def list_returnable_maintenance_devices(db: Session, maintenance_slip_id: str) -> list[MaintenanceSlipDetail]:
    slip = db.execute(
        select(MaintenanceSlipORM)
        .where(MaintenanceSlipORM.id == maintenance_slip_id)
        .options(selectinload(MaintenanceSlipORM.details))
    ).scalar_one_or_none()
    if slip is None:
        raise NotFoundError(f"maintenance slip {maintenance_slip_id} not found", id=maintenance_slip_id)
    if slip.status not in MAINTENANCE.resolvable_headers:
        return []
    return [
        MaintenanceSlipDetail.model_validate(d)
        for d in slip.details
        if d.status == MaintenanceLineStatus.SENT
    ]


# ---------- maintenance return slip ----------
def create_maintenance_return_slip(
    db: Session,
    body: MaintenanceReturnSlipIn,
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceReturnSlip:
    with unit_of_work(db, commit=commit):
        maint = lock_header(db, MaintenanceSlipORM, body.maintenance_slip_id, "maintenance slip")
        maint_code = maint.code

        now = utcnow()
        return_date = as_utc(body.return_date) if body.return_date else now
        slip = MaintenanceReturnSlipORM(
            id=new_id(),
            code=sequencer.next_code(db, sequencer.MAINTENANCE_RETURN_SLIP),
            maintenance_slip_id=maint.id,
            return_date=return_date,
            status=MaintenanceReturnSlipStatus.RETURNED,
            note=body.note,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        lines = resolve_lines(
            db,
            MAINTENANCE,
            maint,
            [Resolution(i.device_id, i.status, i.note) for i in body.devices],
            when=return_date,
            source_type=RETURN_SOURCE,
            source_id=slip.id,
            actor_id=actor_id,
        )

        db.add(slip)
        for line_no, (item, line) in enumerate(zip(body.devices, lines), start=1):
            slip.details.append(
                MaintenanceReturnSlipDetailORM(
                    id=new_id(),
                    maintenance_slip_detail_id=line.id,
                    device_id=line.device_id,
                    line_no=line_no,
                    status=MaintenanceLineStatus(item.status),
                    note=item.note,
                    created_at=now,
                )
            )

        db.flush()
        result = MaintenanceReturnSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info(
        "maintenance_return_slip_created code=%s maintenance_slip=%s devices=%s",
        result.code,
        maint_code,
        len(result.details),
    )
    if commit:
        invalidate_caches(cache, "maintenance", "devices", "warranty")
    return result


def cancel_maintenance_return_slip(
    db: Session,
    maintenance_return_slip_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceReturnSlip:
    """Undo a maintenance return slip.

    Lines go back to SENT and devices back to MAINTENANCE. A warranty request
    the slip opened for a broken device is rejected while still PENDING; once
    work on it has started the cancel fails with ConflictError.
    """
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, MaintenanceReturnSlipORM, maintenance_return_slip_id, "maintenance return slip")
        if slip.status == MaintenanceReturnSlipStatus.CANCELLED:
            raise ConflictError(
                f"maintenance return slip {slip.code} is already cancelled",
                status=slip.status.value,
            )
        audit_before(audit, snapshot(MaintenanceReturnSlip, slip))

        maint = lock_header(db, MaintenanceSlipORM, slip.maintenance_slip_id, "maintenance slip")
        maint_code = maint.code
        lines_by_id = {line.id: line for line in maint.details}
        reverts = [(lines_by_id[d.maintenance_slip_detail_id], d.status.value) for d in slip.details]
        revert_lines(db, MAINTENANCE, maint, reverts, source_type=RETURN_SOURCE, source_id=slip.id)

        slip.status = MaintenanceReturnSlipStatus.CANCELLED
        slip.updated_at = utcnow()
        db.flush()
        result = MaintenanceReturnSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("maintenance_return_slip_cancelled code=%s maintenance_slip=%s", result.code, maint_code)
    if commit:
        invalidate_caches(cache, "maintenance", "devices", "warranty")
    return result


def update_maintenance_return_slip(
    db: Session,
    maintenance_return_slip_id: str,
    body: MaintenanceReturnSlipUpdate,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> MaintenanceReturnSlip:
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, MaintenanceReturnSlipORM, maintenance_return_slip_id, "maintenance return slip")
        if slip.status == MaintenanceReturnSlipStatus.CANCELLED:
            raise ConflictError(f"maintenance return slip {slip.code} is cancelled", status=slip.status.value)
        audit_before(audit, snapshot(MaintenanceReturnSlip, slip))

        if body.note is not None:
            slip.note = body.note
        slip.updated_at = utcnow()

        db.flush()
        result = MaintenanceReturnSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "maintenance")
    return result


def get_maintenance_return_slip(db: Session, maintenance_return_slip_id: str) -> MaintenanceReturnSlip:
    slip = db.execute(
        select(MaintenanceReturnSlipORM)
        .where(MaintenanceReturnSlipORM.id == maintenance_return_slip_id)
        .options(selectinload(MaintenanceReturnSlipORM.details))
    ).scalar_one_or_none()
    if slip is None:
        raise NotFoundError(
            f"maintenance return slip {maintenance_return_slip_id} not found",
            id=maintenance_return_slip_id,
        )
    return MaintenanceReturnSlip.model_validate(slip)


def list_maintenance_return_slips(
    db: Session,
    *,
    maintenance_slip_id: Optional[str] = None,
    status: Optional[MaintenanceReturnSlipStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[MaintenanceReturnSlip]:
    stmt = select(MaintenanceReturnSlipORM).options(selectinload(MaintenanceReturnSlipORM.details))
    if maintenance_slip_id:
        stmt = stmt.where(MaintenanceReturnSlipORM.maintenance_slip_id == maintenance_slip_id)
    if status:
        stmt = stmt.where(MaintenanceReturnSlipORM.status == status)
    stmt = stmt.order_by(MaintenanceReturnSlipORM.created_at.desc(), MaintenanceReturnSlipORM.code.desc())
    rows = db.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return [MaintenanceReturnSlip.model_validate(s) for s in rows]
