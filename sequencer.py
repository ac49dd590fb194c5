from __future__ import annotations

import logging
import os
from datetime import date
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crud import utcnow
from orm import CodeCounterORM

logger = logging.getLogger(__name__)

LOAN_SLIP = "loan_slip"
RETURN_SLIP = "return_slip"
MAINTENANCE_SLIP = "maintenance_slip"
MAINTENANCE_RETURN_SLIP = "maintenance_return_slip"
WARRANTY = "warranty"

# document type -> (default prefix, sequence width)
DOCUMENT_PREFIXES: dict[str, tuple[str, int]] = {
    LOAN_SLIP: ("PMTB", 3),
    RETURN_SLIP: ("GDNT", 3),
    MAINTENANCE_SLIP: ("PXBT", 3),
    MAINTENANCE_RETURN_SLIP: ("PNBT", 3),
    WARRANTY: ("YCBH", 2),
}


def prefix_for(document_type: str) -> tuple[str, int]:
    default, width = DOCUMENT_PREFIXES[document_type]
    prefix = os.getenv(f"APP_PREFIX_{document_type.upper()}", default).strip() or default
    return prefix, width


def format_code(prefix: str, day: date, seq: int, width: int = 3) -> str:
    return f"{prefix}_{day:%d%m%y}_{seq:0{width}d}"


def _claim(db: Session, prefix: str, day_key: str) -> Optional[int]:
    # the day resets the count; one UPDATE so concurrent creates never share a value
    stmt = (
        update(CodeCounterORM)
        .where(CodeCounterORM.prefix == prefix)
        .values(
            value=case((CodeCounterORM.day == day_key, CodeCounterORM.value + 1), else_=1),
            day=day_key,
        )
        .returning(CodeCounterORM.value)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).scalar_one_or_none()


def _insert_counter(db: Session, prefix: str, day_key: str, value: int) -> bool:
    """Insert a counter row inside a savepoint. False when another session got there first."""
    try:
        with db.begin_nested():
            db.add(CodeCounterORM(prefix=prefix, day=day_key, value=value))
    except IntegrityError:
        logger.debug("code_counter_race_retry prefix=%s", prefix)
        return False
    return True


def next_sequence(db: Session, prefix: str, day: date) -> int:
    day_key = f"{day:%d%m%y}"
    value = _claim(db, prefix, day_key)
    if value is None:
        if _insert_counter(db, prefix, day_key, 1):
            value = 1
        else:
            value = _claim(db, prefix, day_key)
    logger.debug("code_sequence_allocated prefix=%s day=%s value=%s", prefix, day_key, value)
    return value


def next_code(db: Session, document_type: str, *, today: Optional[date] = None) -> str:
    prefix, width = prefix_for(document_type)
    day = today or utcnow().date()
    return format_code(prefix, day, next_sequence(db, prefix, day), width)


def ensure_counters(db: Session) -> None:
    """Seed one counter row per configured prefix so no create has to insert one."""
    existing = set(db.execute(select(CodeCounterORM.prefix)).scalars().all())
    for document_type in DOCUMENT_PREFIXES:
        prefix, _ = prefix_for(document_type)
        if prefix not in existing:
            _insert_counter(db, prefix, "", 0)
            existing.add(prefix)
    db.commit()
