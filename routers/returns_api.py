from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import returns
from dependencies import get_actor_id, get_audit, get_cache, get_db
from enums import ReturnSlipStatus
from filter_helpers import blank_to_none, normalize_limit, normalize_offset, normalize_status
from models import ListMeta, ReturnSlip, ReturnSlipIn, ReturnSlipUpdate
from ports import AuditContext, InMemoryCache

router = APIRouter()


@router.get("/return-slips", response_model=list[ReturnSlip])
def list_return_slips_api(
    loan_slip_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return returns.list_return_slips(
        db,
        loan_slip_id=blank_to_none(loan_slip_id),
        status=normalize_status(status, ReturnSlipStatus),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/return-slips/meta", response_model=ListMeta)
def return_slips_meta_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    limit = normalize_limit(limit)
    offset = normalize_offset(offset)
    total = returns.count_return_slips(db, status=normalize_status(status, ReturnSlipStatus))
    return ListMeta(**crud.page_meta(total, limit=limit, offset=offset))


@router.post("/return-slips", response_model=ReturnSlip, status_code=201)
def create_return_slip_api(
    body: ReturnSlipIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return returns.create_return_slip(db, body, actor_id=actor_id, cache=cache, audit=audit)


@router.get("/return-slips/{return_slip_id}", response_model=ReturnSlip)
def get_return_slip_api(
    return_slip_id: str,
    db: Session = Depends(get_db),
):
    return returns.get_return_slip(db, return_slip_id)


@router.patch("/return-slips/{return_slip_id}", response_model=ReturnSlip)
def update_return_slip_api(
    return_slip_id: str,
    body: ReturnSlipUpdate,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return returns.update_return_slip(db, return_slip_id, body, cache=cache, audit=audit)


@router.post("/return-slips/{return_slip_id}/cancel", response_model=ReturnSlip)
def cancel_return_slip_api(
    return_slip_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return returns.cancel_return_slip(db, return_slip_id, cache=cache, audit=audit)
