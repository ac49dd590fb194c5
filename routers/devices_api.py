from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import warranties
from dependencies import get_db
from enums import DeviceStatus
from errors import ConflictError, NotFoundError, ValidationError
from filter_helpers import blank_to_none, normalize_limit, normalize_offset, normalize_status
from models import Device, DeviceIn, ListMeta, Partner, PartnerIn, Warranty

router = APIRouter()


@router.get("/devices", response_model=list[Device])
def list_devices_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return crud.list_devices(
        db,
        q=blank_to_none(q),
        status=normalize_status(status, DeviceStatus),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/devices/meta", response_model=ListMeta)
def devices_meta_api(
    q: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    limit = normalize_limit(limit)
    offset = normalize_offset(offset)
    total = crud.count_devices(db, q=blank_to_none(q), status=normalize_status(status, DeviceStatus))
    return ListMeta(**crud.page_meta(total, limit=limit, offset=offset))


@router.post("/devices", response_model=Device, status_code=201)
def create_device_api(
    body: DeviceIn,
    db: Session = Depends(get_db),
):
    if body.serial and crud.serial_exists(db, body.serial):
        raise ConflictError("serial already exists", serial=body.serial)
    return crud.create_device(db, body)


@router.get("/devices/{device_id}", response_model=Device)
def get_device_api(
    device_id: str,
    db: Session = Depends(get_db),
):
    device = crud.get_device(db, device_id)
    if not device:
        raise NotFoundError("device not found", id=device_id)
    return device


@router.get("/devices/{device_id}/warranties", response_model=list[Warranty])
def list_device_warranties_api(
    device_id: str,
    db: Session = Depends(get_db),
):
    if not crud.get_device(db, device_id):
        raise NotFoundError("device not found", id=device_id)
    return warranties.list_device_warranties(db, device_id)


@router.get("/partners", response_model=list[Partner])
def list_partners_api(db: Session = Depends(get_db)):
    return crud.list_partners(db)


@router.post("/partners", response_model=Partner, status_code=201)
def create_partner_api(
    body: PartnerIn,
    db: Session = Depends(get_db),
):
    if not body.name.strip():
        raise ValidationError("name is required")
    return crud.create_partner(db, body)


@router.get("/partners/{partner_id}", response_model=Partner)
def get_partner_api(
    partner_id: str,
    db: Session = Depends(get_db),
):
    partner = crud.get_partner(db, partner_id)
    if not partner:
        raise NotFoundError("partner not found", id=partner_id)
    return partner
