from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import loans
import returns
from dependencies import get_actor_id, get_audit, get_cache, get_db
from enums import LoanSlipStatus
from filter_helpers import normalize_limit, normalize_offset, normalize_status
from models import ListMeta, LoanSlip, LoanSlipDetail, LoanSlipIn, LoanSlipUpdate, ResolveIn
from ports import AuditContext, InMemoryCache

router = APIRouter()


@router.get("/loan-slips", response_model=list[LoanSlip])
def list_loan_slips_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return loans.list_loan_slips(
        db,
        status=normalize_status(status, LoanSlipStatus),
        limit=normalize_limit(limit),
        offset=normalize_offset(offset),
    )


@router.get("/loan-slips/meta", response_model=ListMeta)
def loan_slips_meta_api(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    limit = normalize_limit(limit)
    offset = normalize_offset(offset)
    total = loans.count_loan_slips(db, status=normalize_status(status, LoanSlipStatus))
    return ListMeta(**crud.page_meta(total, limit=limit, offset=offset))


@router.get("/loan-slips/returnable", response_model=list[LoanSlip])
def list_returnable_loan_slips_api(db: Session = Depends(get_db)):
    return returns.list_returnable_loan_slips(db)


@router.post("/loan-slips", response_model=LoanSlip, status_code=201)
def create_loan_slip_api(
    body: LoanSlipIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return loans.create_loan_slip(db, body, actor_id=actor_id, cache=cache, audit=audit)


@router.get("/loan-slips/{loan_slip_id}", response_model=LoanSlip)
def get_loan_slip_api(
    loan_slip_id: str,
    db: Session = Depends(get_db),
):
    return loans.get_loan_slip(db, loan_slip_id)


@router.get("/loan-slips/{loan_slip_id}/returnable-devices", response_model=list[LoanSlipDetail])
def list_returnable_devices_api(
    loan_slip_id: str,
    db: Session = Depends(get_db),
):
    return returns.list_returnable_devices(db, loan_slip_id)


@router.patch("/loan-slips/{loan_slip_id}", response_model=LoanSlip)
def update_loan_slip_api(
    loan_slip_id: str,
    body: LoanSlipUpdate,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return loans.update_loan_slip(db, loan_slip_id, body, cache=cache, audit=audit)


@router.post("/loan-slips/{loan_slip_id}/return", response_model=LoanSlip)
def return_loan_devices_api(
    loan_slip_id: str,
    body: ResolveIn,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    return loans.return_loan_devices(
        db, loan_slip_id, body.items, actor_id=actor_id, cache=cache, audit=audit
    )


@router.post("/loan-slips/{loan_slip_id}/cancel", response_model=LoanSlip)
def cancel_loan_slip_api(
    loan_slip_id: str,
    db: Session = Depends(get_db),
    cache: InMemoryCache = Depends(get_cache),
    audit: AuditContext = Depends(get_audit),
):
    return loans.cancel_loan_slip(db, loan_slip_id, cache=cache, audit=audit)
