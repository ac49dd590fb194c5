from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from crud import new_id, snapshot, unit_of_work, utcnow
from devices import load_devices, require_status, transition_device
from enums import DeviceStatus, LoanLineStatus, LoanSlipStatus
from errors import ConflictError, NotFoundError, ValidationError
from lifecycle import LOAN, Resolution, cancel_header, lock_header, resolve_lines
from models import LoanSlip, LoanSlipIn, LoanSlipUpdate, ResolveItem
from orm import LoanSlipDetailORM, LoanSlipORM, PartnerORM
from ports import AuditContextPort, CacheInvalidationPort, audit_after, audit_before, invalidate_caches
import sequencer

logger = logging.getLogger(__name__)

SOURCE_TYPE = "loan_slip"


def _require_partner(db: Session, partner_id: str, role: str) -> None:
    if db.get(PartnerORM, partner_id) is None:
        raise ValidationError(f"{role} not found", **{f"{role}_id": partner_id})


def create_loan_slip(
    db: Session,
    body: LoanSlipIn,
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> LoanSlip:
    with unit_of_work(db, commit=commit):
        _require_partner(db, body.borrower_id, "borrower")
        _require_partner(db, body.loaner_id, "loaner")

        devices = load_devices(db, body.device_ids, lock=True)
        require_status(devices, DeviceStatus.AVAILABLE)

        now = utcnow()
        slip = LoanSlipORM(
            id=new_id(),
            code=sequencer.next_code(db, sequencer.LOAN_SLIP),
            borrower_id=body.borrower_id,
            loaner_id=body.loaner_id,
            status=LoanSlipStatus.BORROWING,
            note=body.note,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        db.add(slip)
        for line_no, device in enumerate(devices, start=1):
            slip.details.append(
                LoanSlipDetailORM(
                    id=new_id(),
                    device_id=device.id,
                    line_no=line_no,
                    status=LoanLineStatus.BORROWED,
                    created_at=now,
                    updated_at=now,
                )
            )
            transition_device(db, device, DeviceStatus.AVAILABLE, DeviceStatus.ON_LOAN)

        db.flush()
        result = LoanSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("loan_slip_created code=%s devices=%s", result.code, len(result.details))
    if commit:
        invalidate_caches(cache, "loan", "devices")
    return result


def return_loan_devices(
    db: Session,
    loan_slip_id: str,
    items: Sequence[ResolveItem],
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> LoanSlip:
    """Resolve some of a slip's devices as returned or broken.

    A broken device gets a PENDING warranty request unless it already has an
    open one. The slip becomes PARTIAL_RETURNED or CLOSED.
    """
    if not items:
        raise ValidationError("no devices to return")

    with unit_of_work(db, commit=commit):
        slip = lock_header(db, LoanSlipORM, loan_slip_id, "loan slip")
        audit_before(audit, snapshot(LoanSlip, slip))
        resolve_lines(
            db,
            LOAN,
            slip,
            [Resolution(i.device_id, i.status, i.note) for i in items],
            source_type=SOURCE_TYPE,
            source_id=slip.id,
            actor_id=actor_id,
        )
        db.flush()
        result = LoanSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "loan", "devices", "warranty")
    return result


def cancel_loan_slip(
    db: Session,
    loan_slip_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> LoanSlip:
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, LoanSlipORM, loan_slip_id, "loan slip")
        audit_before(audit, snapshot(LoanSlip, slip))
        cancel_header(db, LOAN, slip, "loan slip")
        db.flush()
        result = LoanSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "loan", "devices")
    return result


def update_loan_slip(
    db: Session,
    loan_slip_id: str,
    body: LoanSlipUpdate,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> LoanSlip:
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, LoanSlipORM, loan_slip_id, "loan slip")
        if slip.status != LoanSlipStatus.BORROWING:
            raise ConflictError(
                f"loan slip {slip.code} is {slip.status.value}, only borrowing slips can be edited",
                status=slip.status.value,
            )
        audit_before(audit, snapshot(LoanSlip, slip))

        if body.borrower_id is not None:
            _require_partner(db, body.borrower_id, "borrower")
            slip.borrower_id = body.borrower_id
        if body.loaner_id is not None:
            _require_partner(db, body.loaner_id, "loaner")
            slip.loaner_id = body.loaner_id
        if body.note is not None:
            slip.note = body.note
        slip.updated_at = utcnow()

        db.flush()
        result = LoanSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "loan")
    return result


def get_loan_slip(db: Session, loan_slip_id: str) -> LoanSlip:
    slip = db.execute(
        select(LoanSlipORM)
        .where(LoanSlipORM.id == loan_slip_id)
        .options(selectinload(LoanSlipORM.details))
    ).scalar_one_or_none()
    if slip is None:
        raise NotFoundError(f"loan slip {loan_slip_id} not found", id=loan_slip_id)
    return LoanSlip.model_validate(slip)


def count_loan_slips(db: Session, *, status: Optional[LoanSlipStatus] = None) -> int:
    stmt = select(func.count()).select_from(LoanSlipORM)
    if status:
        stmt = stmt.where(LoanSlipORM.status == status)
    return int(db.execute(stmt).scalar_one())


def list_loan_slips(
    db: Session,
    *,
    status: Optional[LoanSlipStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[LoanSlip]:
    stmt = select(LoanSlipORM).options(selectinload(LoanSlipORM.details))
    if status:
        stmt = stmt.where(LoanSlipORM.status == status)
    stmt = stmt.order_by(LoanSlipORM.created_at.desc(), LoanSlipORM.code.desc()).limit(limit).offset(offset)
    return [LoanSlip.model_validate(s) for s in db.execute(stmt).scalars().all()]
