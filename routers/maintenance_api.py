from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import maintenance
from dependencies import get_actor_id, get_audit, get_cache, get_db
from enums import MaintenanceReturnSlipStatus, MaintenanceSlipStatus
from filter_helpers import blank_to_none, normalize_limit, normalize_offset, normalize_status
from models import (
    ListMeta,
    MaintenanceReturnSlip,
    MaintenanceReturnSlipIn,
    MaintenanceReturnSlipUpdate,
    MaintenanceSlip,
    MaintenanceSlipDetail,
    MaintenanceSlipIn,
    MaintenanceSlipUpdate,
    ResolveIn,
)
from ports import AuditContext, InMemoryCache

router = APIRouter()


# ---------- maintenance slips ----------
@router.get("/maintenance-slips", response_model=list[MaintenanceSlip])
def list_maintenance_slips_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return maintenance.list_maintenance_slips(
        db,
        status=normalize_status(status, MaintenanceSlipStatus),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/maintenance-slips/meta", response_model=ListMeta)
def maintenance_slips_meta_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    limit = normalize_limit(limit)
    offset = normalize_offset(offset)
    total = maintenance.count_maintenance_slips(db, status=normalize_status(status, MaintenanceSlipStatus))
    return ListMeta(**crud.page_meta(total, limit=limit, offset=offset))


@router.get("/maintenance-slips/returnable", response_model=list[MaintenanceSlip])
def list_returnable_maintenance_slips_api(db: Session = Depends(get_db)):
    return maintenance.list_returnable_maintenance_slips(db)


@router.post("/maintenance-slips", response_model=MaintenanceSlip, status_code=201)
def create_maintenance_slip_api(
    body: MaintenanceSlipIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return maintenance.create_maintenance_slip(db, body, actor_id=actor_id, cache=cache, audit=audit)


@router.get("/maintenance-slips/{slip_id}", response_model=MaintenanceSlip)
def get_maintenance_slip_api(
    slip_id: str,
    db: Session = Depends(get_db),
):
    return maintenance.get_maintenance_slip(db, slip_id)


@router.get("/maintenance-slips/{slip_id}/returnable-devices", response_model=list[MaintenanceSlipDetail])
def list_returnable_maintenance_devices_api(
    slip_id: str,
    db: Session = Depends(get_db),
):
    return maintenance.list_returnable_maintenance_devices(db, slip_id)


@router.patch("/maintenance-slips/{slip_id}", response_model=MaintenanceSlip)
def update_maintenance_slip_api(
    slip_id: str,
    body: MaintenanceSlipUpdate,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return maintenance.update_maintenance_slip(db, slip_id, body, cache=cache, audit=audit)


@router.post("/maintenance-slips/{slip_id}/return", response_model=MaintenanceSlip)
def return_maintenance_devices_api(
    slip_id: str,
    body: ResolveIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return maintenance.return_maintenance_devices(
        db, slip_id, body.items, actor_id=actor_id, cache=cache, audit=audit
    )


@router.post("/maintenance-slips/{slip_id}/cancel", response_model=MaintenanceSlip)
def cancel_maintenance_slip_api(
    slip_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return maintenance.cancel_maintenance_slip(db, slip_id, cache=cache, audit=audit)


# ---------- maintenance return slips ----------
@router.get("/maintenance-return-slips", response_model=list[MaintenanceReturnSlip])
def list_maintenance_return_slips_api(
    maintenance_slip_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return maintenance.list_maintenance_return_slips(
        db,
        maintenance_slip_id=blank_to_none(maintenance_slip_id),
        status=normalize_status(status, MaintenanceReturnSlipStatus),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.post("/maintenance-return-slips", response_model=MaintenanceReturnSlip, status_code=201)
def create_maintenance_return_slip_api(
    body: MaintenanceReturnSlipIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return maintenance.create_maintenance_return_slip(db, body, actor_id=actor_id, cache=cache, audit=audit)


@router.get("/maintenance-return-slips/{slip_id}", response_model=MaintenanceReturnSlip)
def get_maintenance_return_slip_api(
    slip_id: str,
    db: Session = Depends(get_db),
):
    return maintenance.get_maintenance_return_slip(db, slip_id)


@router.patch("/maintenance-return-slips/{slip_id}", response_model=MaintenanceReturnSlip)
def update_maintenance_return_slip_api(
    slip_id: str,
    body: MaintenanceReturnSlipUpdate,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return maintenance.update_maintenance_return_slip(db, slip_id, body, cache=cache, audit=audit)


@router.post("/maintenance-return-slips/{slip_id}/cancel", response_model=MaintenanceReturnSlip)
def cancel_maintenance_return_slip_api(
    slip_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return maintenance.cancel_maintenance_return_slip(db, slip_id, cache=cache, audit=audit)
