from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import warranties
from dependencies import get_actor_id, get_audit, get_cache, get_db
from enums import WarrantyStatus
from filter_helpers import normalize_limit, normalize_offset, normalize_status
from models import ListMeta, Warranty, WarrantyIn, WarrantyUpdate
from ports import AuditContext, InMemoryCache

router = APIRouter()


@router.get("/warranties", response_model=list[Warranty])
def list_warranties_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return warranties.list_warranties(
        db,
        status=normalize_status(status, WarrantyStatus),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/warranties/meta", response_model=ListMeta)
def warranties_meta_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    limit = normalize_limit(limit)
    offset = normalize_offset(offset)
    total = warranties.count_warranties(db, status=normalize_status(status, WarrantyStatus))
    return ListMeta(**crud.page_meta(total, limit=limit, offset=offset))


@router.post("/warranties", response_model=Warranty, status_code=201)
def create_warranty_request_api(
    body: WarrantyIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return warranties.create_warranty_request(db, body, actor_id=actor_id, cache=cache, audit=audit)


@router.get("/warranties/{warranty_id}", response_model=Warranty)
def get_warranty_api(
    warranty_id: str,
    db: Session = Depends(get_db),
):
    return warranties.get_warranty(db, warranty_id)


@router.patch("/warranties/{warranty_id}", response_model=Warranty)
def update_warranty_api(
    warranty_id: str,
    body: WarrantyUpdate,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return warranties.update_warranty(db, warranty_id, body, cache=cache, audit=audit)


@router.post("/warranties/{warranty_id}/assign", response_model=Warranty)
def assign_warranty_api(
    warranty_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return warranties.assign_warranty(db, warranty_id, cache=cache, audit=audit)


@router.post("/warranties/{warranty_id}/complete", response_model=Warranty)
def complete_warranty_api(
    warranty_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return warranties.complete_warranty(db, warranty_id, cache=cache, audit=audit)


@router.post("/warranties/{warranty_id}/reject", response_model=Warranty)
def reject_warranty_api(
    warranty_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return warranties.reject_warranty(db, warranty_id, cache=cache, audit=audit)


@router.post("/warranties/{warranty_id}/cancel", response_model=Warranty)
def cancel_warranty_api(
    warranty_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return warranties.cancel_warranty(db, warranty_id, cache=cache, audit=audit)
