from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from typing import Optional
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import select, func, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from enums import DeviceStatus
from errors import ConflictError
from models import Device, DeviceIn, Partner, PartnerIn
from orm import DeviceORM, PartnerORM


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # naive input is taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()


@contextmanager
def unit_of_work(db: Session, *, commit: bool = True) -> Iterator[None]:
    """All writes made inside the block land together or not at all.

    With ``commit=False`` the block is only flushed and the caller owns the
    transaction; a failure still rolls the session back.
    """
    try:
        yield
        persist(db, commit=commit)
    except StaleDataError as exc:
        db.rollback()
        raise ConflictError("record was modified concurrently, reload and retry") from exc
    except Exception:
        db.rollback()
        raise


def snapshot(schema: type[BaseModel], row) -> dict:
    return schema.model_validate(row).model_dump(mode="json")


def page_meta(total: int, *, limit: int, offset: int) -> dict:
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "total_pages": max(1, (total + limit - 1) // limit),
    }


def _device_to_schema(d: DeviceORM) -> Device:
    return Device.model_validate(d)


def _partner_to_schema(p: PartnerORM) -> Partner:
    return Partner.model_validate(p)


# ---------- Device ----------
def serial_exists(db: Session, serial: str) -> bool:
    return db.execute(select(DeviceORM.id).where(DeviceORM.serial == serial)).first() is not None


def get_device(db: Session, device_id: str) -> Optional[Device]:
    row = db.get(DeviceORM, device_id)
    return _device_to_schema(row) if row else None


def create_device(db: Session, body: DeviceIn, *, commit: bool = True) -> Device:
    now = utcnow()
    d = DeviceORM(
        id=new_id(),
        name=body.name,
        serial=body.serial,
        model=body.model,
        warranty_expiration_date=body.warranty_expiration_date,
        note=body.note,
        status=DeviceStatus.AVAILABLE,
        created_at=now,
        updated_at=now,
    )
    db.add(d)
    persist(db, commit=commit)
    if commit:
        db.refresh(d)
    return _device_to_schema(d)


def build_devices_query(q: str | None, status: DeviceStatus | None):
    stmt = select(DeviceORM)
    if q:
        like = f"%{q}%"
        stmt = stmt.where(
            or_(
                DeviceORM.name.ilike(like),
                DeviceORM.serial.ilike(like),
                DeviceORM.model.ilike(like),
            )
        )
    if status:
        stmt = stmt.where(DeviceORM.status == status)
    return stmt


def count_devices(db: Session, *, q: str | None, status: DeviceStatus | None) -> int:
    stmt = build_devices_query(q, status)
    return int(db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one())


def list_devices(
    db: Session,
    *,
    q: str | None = None,
    status: DeviceStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Device]:
    stmt = build_devices_query(q, status).order_by(DeviceORM.name.asc(), DeviceORM.id.asc())
    rows = db.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return [_device_to_schema(d) for d in rows]


# ---------- Partner ----------
def get_partner(db: Session, partner_id: str) -> Optional[Partner]:
    row = db.get(PartnerORM, partner_id)
    return _partner_to_schema(row) if row else None


def create_partner(db: Session, body: PartnerIn, *, commit: bool = True) -> Partner:
    now = utcnow()
    p = PartnerORM(
        id=new_id(),
        name=body.name.strip(),
        partner_type=body.partner_type,
        phone=body.phone,
        note=body.note,
        created_at=now,
        updated_at=now,
    )
    db.add(p)
    persist(db, commit=commit)
    if commit:
        db.refresh(p)
    return _partner_to_schema(p)


def list_partners(db: Session) -> list[Partner]:
    rows = db.execute(select(PartnerORM).order_by(PartnerORM.name.asc())).scalars().all()
    return [_partner_to_schema(p) for p in rows]
