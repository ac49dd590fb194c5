from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crud import new_id, snapshot, unit_of_work, utcnow
from devices import load_device, transition_device
from enums import OPEN_WARRANTY_STATUSES, WARRANTY_TRANSITIONS, DeviceStatus, WarrantyStatus
from errors import ConflictError, NotFoundError, ValidationError
from models import Warranty, WarrantyIn, WarrantyUpdate
from orm import DeviceORM, WarrantyORM
from ports import AuditContextPort, CacheInvalidationPort, audit_after, audit_before, invalidate_caches
import sequencer

logger = logging.getLogger(__name__)

# device statuses a warranty request may be opened from
REQUESTABLE_DEVICE_STATUSES = frozenset({DeviceStatus.AVAILABLE, DeviceStatus.BROKEN})


def find_open_warranty(db: Session, device_id: str) -> Optional[WarrantyORM]:
    return db.execute(
        select(WarrantyORM)
        .where(
            WarrantyORM.device_id == device_id,
            WarrantyORM.status.in_(OPEN_WARRANTY_STATUSES),
        )
        .limit(1)
    ).scalars().first()


def _lock_warranty(db: Session, warranty_id: str) -> WarrantyORM:
    w = db.execute(
        select(WarrantyORM)
        .where(WarrantyORM.id == warranty_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if w is None:
        raise NotFoundError(f"warranty {warranty_id} not found", id=warranty_id)
    return w


def _move(w: WarrantyORM, target: WarrantyStatus) -> None:
    if target not in WARRANTY_TRANSITIONS[w.status]:
        raise ConflictError(
            f"warranty {w.code} is {w.status.value}, cannot become {target.value}",
            status=w.status.value,
        )
    w.status = target
    w.updated_at = utcnow()


def _check_expiry(device: DeviceORM, request_date: date) -> None:
    expires = device.warranty_expiration_date
    if expires is not None and request_date > expires:
        raise ValidationError(
            f"device warranty expired on {expires.isoformat()}",
            device_id=device.id,
            warranty_expiration_date=expires.isoformat(),
            request_date=request_date.isoformat(),
        )


def _new_warranty(
    db: Session,
    device: DeviceORM,
    *,
    reason: Optional[str],
    request_date: date,
    prior: DeviceStatus,
    actor_id: Optional[str],
    source_type: Optional[str] = None,
    source_id: Optional[str] = None,
) -> WarrantyORM:
    now = utcnow()
    w = WarrantyORM(
        id=new_id(),
        code=sequencer.next_code(db, sequencer.WARRANTY),
        device_id=device.id,
        reason=reason,
        request_date=request_date,
        status=WarrantyStatus.PENDING,
        prior_device_status=prior,
        source_type=source_type,
        source_id=source_id,
        created_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    db.add(w)
    return w


# ---------- hooks used by the return engine ----------
def open_for_broken_device(
    db: Session,
    device: DeviceORM,
    *,
    reason: str,
    source_type: str,
    source_id: str,
    actor_id: Optional[str] = None,
) -> Optional[WarrantyORM]:
    """Open a PENDING request for a device just reported broken.

    Returns None when the device already has an open request. The device is
    left BROKEN; work on it starts when the request is assigned.
    """
    db.flush()
    if find_open_warranty(db, device.id) is not None:
        return None
    w = _new_warranty(
        db,
        device,
        reason=reason,
        request_date=utcnow().date(),
        prior=DeviceStatus.BROKEN,
        actor_id=actor_id,
        source_type=source_type,
        source_id=source_id,
    )
    logger.info("warranty_auto_opened code=%s device_id=%s source=%s:%s", w.code, device.id, source_type, source_id)
    return w


def withdraw_auto_warranty(db: Session, device_id: str, *, source_type: str, source_id: str) -> None:
    """Reject the still-pending request a cancelled document opened, if any."""
    rows = db.execute(
        select(WarrantyORM).where(
            WarrantyORM.device_id == device_id,
            WarrantyORM.source_type == source_type,
            WarrantyORM.source_id == source_id,
        )
    ).scalars().all()
    for w in rows:
        if w.status == WarrantyStatus.PENDING:
            _move(w, WarrantyStatus.REJECTED)
            logger.info("warranty_withdrawn code=%s device_id=%s", w.code, device_id)
        elif w.status == WarrantyStatus.PROCESSING:
            raise ConflictError(
                f"warranty {w.code} for device {device_id} is already being processed",
                warranty_id=w.id,
            )


# ---------- operations ----------
def create_warranty_request(
    db: Session,
    body: WarrantyIn,
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> Warranty:
    with unit_of_work(db, commit=commit):
        device = db.execute(
            select(DeviceORM).where(DeviceORM.id == body.device_id).with_for_update()
        ).scalar_one_or_none()
        if device is None:
            raise ValidationError("device not found", device_id=body.device_id)

        _check_expiry(device, body.request_date)

        if find_open_warranty(db, device.id) is not None:
            raise ValidationError("device already has an open warranty request", device_id=device.id)

        if device.status not in REQUESTABLE_DEVICE_STATUSES:
            raise ValidationError(
                f"device is {device.status.value}, warranty needs it available or broken",
                device_id=device.id,
            )

        w = _new_warranty(
            db,
            device,
            reason=body.reason,
            request_date=body.request_date,
            prior=device.status,
            actor_id=actor_id,
        )
        transition_device(db, device, device.status, DeviceStatus.UNDER_WARRANTY)
        db.flush()
        result = Warranty.model_validate(w)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("warranty_created code=%s device_id=%s", result.code, result.device_id)
    if commit:
        invalidate_caches(cache, "warranty", "devices")
    return result


def assign_warranty(
    db: Session,
    warranty_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> Warranty:
    with unit_of_work(db, commit=commit):
        w = _lock_warranty(db, warranty_id)
        audit_before(audit, snapshot(Warranty, w))
        _move(w, WarrantyStatus.PROCESSING)
        device = load_device(db, w.device_id, lock=True)
        transition_device(db, device, None, DeviceStatus.UNDER_WARRANTY)
        db.flush()
        result = Warranty.model_validate(w)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("warranty_assigned code=%s", result.code)
    if commit:
        invalidate_caches(cache, "warranty", "devices")
    return result


def complete_warranty(
    db: Session,
    warranty_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> Warranty:
    with unit_of_work(db, commit=commit):
        w = _lock_warranty(db, warranty_id)
        audit_before(audit, snapshot(Warranty, w))
        _move(w, WarrantyStatus.COMPLETED)
        device = load_device(db, w.device_id, lock=True)
        transition_device(db, device, DeviceStatus.UNDER_WARRANTY, DeviceStatus.AVAILABLE)
        db.flush()
        result = Warranty.model_validate(w)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("warranty_completed code=%s", result.code)
    if commit:
        invalidate_caches(cache, "warranty", "devices")
    return result


def reject_warranty(
    db: Session,
    warranty_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> Warranty:
    with unit_of_work(db, commit=commit):
        w = _lock_warranty(db, warranty_id)
        audit_before(audit, snapshot(Warranty, w))
        _move(w, WarrantyStatus.REJECTED)
        device = load_device(db, w.device_id, lock=True)
        transition_device(db, device, None, w.prior_device_status)
        db.flush()
        result = Warranty.model_validate(w)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("warranty_rejected code=%s restored=%s", result.code, result.prior_device_status.value)
    if commit:
        invalidate_caches(cache, "warranty", "devices")
    return result


def cancel_warranty(
    db: Session,
    warranty_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> Warranty:
    with unit_of_work(db, commit=commit):
        w = _lock_warranty(db, warranty_id)
        audit_before(audit, snapshot(Warranty, w))
        _move(w, WarrantyStatus.CANCELLED)
        w.deleted_at = w.updated_at
        device = load_device(db, w.device_id, lock=True)
        transition_device(db, device, None, w.prior_device_status)
        db.flush()
        result = Warranty.model_validate(w)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("warranty_cancelled code=%s restored=%s", result.code, result.prior_device_status.value)
    if commit:
        invalidate_caches(cache, "warranty", "devices")
    return result


def update_warranty(
    db: Session,
    warranty_id: str,
    body: WarrantyUpdate,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> Warranty:
    with unit_of_work(db, commit=commit):
        w = _lock_warranty(db, warranty_id)
        if w.status != WarrantyStatus.PENDING:
            raise ConflictError(f"warranty {w.code} is {w.status.value}, only pending requests can be edited")
        audit_before(audit, snapshot(Warranty, w))

        data = body.model_dump(exclude_unset=True)
        if data.get("request_date") is not None:
            _check_expiry(load_device(db, w.device_id), data["request_date"])
        for k, v in data.items():
            if v is not None:
                setattr(w, k, v)
        w.updated_at = utcnow()
        db.flush()
        result = Warranty.model_validate(w)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "warranty")
    return result


def get_warranty(db: Session, warranty_id: str) -> Warranty:
    w = db.get(WarrantyORM, warranty_id)
    if w is None:
        raise NotFoundError(f"warranty {warranty_id} not found", id=warranty_id)
    return Warranty.model_validate(w)


def count_warranties(db: Session, *, status: Optional[WarrantyStatus] = None) -> int:
    stmt = select(func.count()).select_from(WarrantyORM)
    if status:
        stmt = stmt.where(WarrantyORM.status == status)
    return int(db.execute(stmt).scalar_one())


def list_warranties(
    db: Session,
    *,
    status: Optional[WarrantyStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Warranty]:
    stmt = select(WarrantyORM)
    if status:
        stmt = stmt.where(WarrantyORM.status == status)
    stmt = stmt.order_by(WarrantyORM.created_at.desc(), WarrantyORM.code.desc()).limit(limit).offset(offset)
    return [Warranty.model_validate(w) for w in db.execute(stmt).scalars().all()]


def list_device_warranties(db: Session, device_id: str) -> list[Warranty]:
    rows = db.execute(
        select(WarrantyORM)
        .where(WarrantyORM.device_id == device_id)
        .order_by(WarrantyORM.created_at.desc(), WarrantyORM.code.desc())
    ).scalars().all()
    return [Warranty.model_validate(w) for w in rows]
