from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from crud import as_utc, new_id, snapshot, unit_of_work, utcnow
from enums import LoanLineStatus, LoanSlipStatus, ReturnSlipStatus
from errors import ConflictError, NotFoundError, ValidationError
from lifecycle import LOAN, Resolution, lock_header, resolve_lines, revert_lines
from models import LoanSlip, LoanSlipDetail, ReturnSlip, ReturnSlipIn, ReturnSlipUpdate
from orm import LoanSlipORM, PartnerORM, ReturnSlipDetailORM, ReturnSlipORM
from ports import AuditContextPort, CacheInvalidationPort, audit_after, audit_before, invalidate_caches
import sequencer

logger = logging.getLogger(__name__)

SOURCE_TYPE = "return_slip"


def _require_returner(db: Session, returner_id: str) -> None:
    if db.get(PartnerORM, returner_id) is None:
        raise ValidationError("returner not found", returner_id=returner_id)


def create_return_slip(
    db: Session,
    body: ReturnSlipIn,
    *,
    actor_id: Optional[str] = None,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> ReturnSlip:
    with unit_of_work(db, commit=commit):
        loan = lock_header(db, LoanSlipORM, body.loan_slip_id, "loan slip")
        loan_code = loan.code
        _require_returner(db, body.returner_id)

        now = utcnow()
        return_date = as_utc(body.return_date) if body.return_date else now
        slip = ReturnSlipORM(
            id=new_id(),
            code=sequencer.next_code(db, sequencer.RETURN_SLIP),
            loan_slip_id=loan.id,
            returner_id=body.returner_id,
            return_date=return_date,
            status=ReturnSlipStatus.RETURNED,
            note=body.note,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        lines = resolve_lines(
            db,
            LOAN,
            loan,
            [Resolution(i.device_id, "returned", i.note) for i in body.items],
            when=return_date,
            source_type=SOURCE_TYPE,
            source_id=slip.id,
            actor_id=actor_id,
        )

        db.add(slip)
        for line_no, (item, line) in enumerate(zip(body.items, lines), start=1):
            slip.details.append(
                ReturnSlipDetailORM(
                    id=new_id(),
                    loan_slip_detail_id=line.id,
                    device_id=line.device_id,
                    line_no=line_no,
                    note=item.note,
                    created_at=now,
                )
            )

        db.flush()
        result = ReturnSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info(
        "return_slip_created code=%s loan_slip=%s devices=%s",
        result.code,
        loan_code,
        len(result.details),
    )
    if commit:
        invalidate_caches(cache, "return", "loan", "devices")
    return result


def cancel_return_slip(
    db: Session,
    return_slip_id: str,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> ReturnSlip:
    """Undo a return slip: its loan lines reopen and the devices go back on loan."""
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, ReturnSlipORM, return_slip_id, "return slip")
        if slip.status == ReturnSlipStatus.CANCELLED:
            raise ConflictError(f"return slip {slip.code} is already cancelled", status=slip.status.value)
        audit_before(audit, snapshot(ReturnSlip, slip))

        loan = lock_header(db, LoanSlipORM, slip.loan_slip_id, "loan slip")
        loan_code = loan.code
        lines_by_id = {line.id: line for line in loan.details}
        reverts = [(lines_by_id[d.loan_slip_detail_id], "returned") for d in slip.details]
        revert_lines(db, LOAN, loan, reverts, source_type=SOURCE_TYPE, source_id=slip.id)

        slip.status = ReturnSlipStatus.CANCELLED
        slip.updated_at = utcnow()
        db.flush()
        result = ReturnSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    logger.info("return_slip_cancelled code=%s loan_slip=%s", result.code, loan_code)
    if commit:
        invalidate_caches(cache, "return", "loan", "devices")
    return result


def update_return_slip(
    db: Session,
    return_slip_id: str,
    body: ReturnSlipUpdate,
    *,
    cache: Optional[CacheInvalidationPort] = None,
    audit: Optional[AuditContextPort] = None,
    commit: bool = True,
) -> ReturnSlip:
    with unit_of_work(db, commit=commit):
        slip = lock_header(db, ReturnSlipORM, return_slip_id, "return slip")
        if slip.status == ReturnSlipStatus.CANCELLED:
            raise ConflictError(f"return slip {slip.code} is cancelled", status=slip.status.value)
        audit_before(audit, snapshot(ReturnSlip, slip))

        if body.returner_id is not None:
            _require_returner(db, body.returner_id)
            slip.returner_id = body.returner_id
        if body.note is not None:
            slip.note = body.note
        slip.updated_at = utcnow()

        db.flush()
        result = ReturnSlip.model_validate(slip)
        audit_after(audit, result.model_dump(mode="json"))

    if commit:
        invalidate_caches(cache, "return")
    return result


def get_return_slip(db: Session, return_slip_id: str) -> ReturnSlip:
    slip = db.execute(
        select(ReturnSlipORM)
        .where(ReturnSlipORM.id == return_slip_id)
        .options(selectinload(ReturnSlipORM.details))
    ).scalar_one_or_none()
    if slip is None:
        raise NotFoundError(f"return slip {return_slip_id} not found", id=return_slip_id)
    return ReturnSlip.model_validate(slip)


def list_return_slips(
    db: Session,
    *,
    loan_slip_id: Optional[str] = None,
    status: Optional[ReturnSlipStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ReturnSlip]:
    stmt = select(ReturnSlipORM).options(selectinload(ReturnSlipORM.details))
    if loan_slip_id:
        stmt = stmt.where(ReturnSlipORM.loan_slip_id == loan_slip_id)
    if status:
        stmt = stmt.where(ReturnSlipORM.status == status)
    stmt = stmt.order_by(ReturnSlipORM.created_at.desc(), ReturnSlipORM.code.desc()).limit(limit).offset(offset)
    return [ReturnSlip.model_validate(s) for s in db.execute(stmt).scalars().all()]


def count_return_slips(db: Session, *, status: Optional[ReturnSlipStatus] = None) -> int:
    stmt = select(func.count()).select_from(ReturnSlipORM)
    if status:
        stmt = stmt.where(ReturnSlipORM.status == status)
    return int(db.execute(stmt).scalar_one())


# ---------- what can still be returned ----------
def list_returnable_loan_slips(db: Session) -> list[LoanSlip]:
    rows = db.execute(
        select(LoanSlipORM)
        .where(LoanSlipORM.status.in_(LOAN.resolvable_headers))
        .options(selectinload(LoanSlipORM.details))
        .order_by(LoanSlipORM.created_at.desc(), LoanSlipORM.code.desc())
    ).scalars().all()
    return [LoanSlip.model_validate(s) for s in rows]


def list_returnable_devices(db: Session, loan_slip_id: str) -> list[LoanSlipDetail]:
    loan = db.execute(
        select(LoanSlipORM)
        .where(LoanSlipORM.id == loan_slip_id)
        .options(selectinload(LoanSlipORM.details))
    ).scalar_one_or_none()
    if loan is None:
        raise NotFoundError(f"loan slip {loan_slip_id} not found", id=loan_slip_id)
    if loan.status not in (LoanSlipStatus.BORROWING, LoanSlipStatus.PARTIAL_RETURNED):
        return []
    return [LoanSlipDetail.model_validate(d) for d in loan.details if d.status == LoanLineStatus.BORROWED]
