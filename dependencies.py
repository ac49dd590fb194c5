import logging
from collections.abc import Generator
from typing import Optional

from fastapi import Header
from sqlalchemy.orm import Session

from db import SessionLocal
from ports import AuditContext, InMemoryCache

logger = logging.getLogger("app.audit")

_cache = InMemoryCache()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_cache() -> InMemoryCache:
    return _cache


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_actor_id


def get_audit() -> Generator[AuditContext, None, None]:
    audit = AuditContext()
    yield audit
    if audit.after is None:
        return
    record_id = audit.after.get("id") if isinstance(audit.after, dict) else None
    if audit.before is None:
        logger.info("audit created id=%s", record_id)
    else:
        logger.info("audit updated id=%s changed=%s", record_id, ",".join(audit.changed_keys()) or "-")
