from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from crud import utcnow
from enums import DEVICE_TRANSITIONS, DeviceStatus
from errors import NotFoundError, PreconditionFailed, ValidationError
from orm import DeviceORM

logger = logging.getLogger(__name__)


def load_device(db: Session, device_id: str, *, lock: bool = False) -> DeviceORM:
    stmt = select(DeviceORM).where(DeviceORM.id == device_id)
    if lock:
        stmt = stmt.with_for_update()
    device = db.execute(stmt).scalar_one_or_none()
    if device is None:
        raise NotFoundError(f"device {device_id} not found", device_id=device_id)
    return device


def load_devices(db: Session, device_ids: Iterable[str], *, lock: bool = False) -> list[DeviceORM]:
    """Load every referenced device, in request order.

    Raises ValidationError when an id is missing or repeated; a document
    referencing an unknown device is a bad request, not a missing resource.
    """
    ids = list(device_ids)
    if len(set(ids)) != len(ids):
        raise ValidationError("device list contains duplicates", device_ids=ids)

    stmt = select(DeviceORM).where(DeviceORM.id.in_(ids))
    if lock:
        stmt = stmt.with_for_update()
    found = {d.id: d for d in db.execute(stmt).scalars().all()}
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValidationError("device not found", device_ids=missing)
    return [found[i] for i in ids]


def require_status(devices: Iterable[DeviceORM], expected: DeviceStatus) -> None:
    bad = [d.id for d in devices if d.status != expected]
    if bad:
        raise ValidationError(
            f"device not {expected.value}",
            device_ids=bad,
            expected=expected.value,
        )


def transition_device(
    db: Session,
    device: DeviceORM | str,
    expected: Optional[DeviceStatus],
    next_status: DeviceStatus,
) -> DeviceORM:
    """Move a device to ``next_status``.

    ``expected`` (when given) must match the current status, otherwise
    PreconditionFailed is raised and nothing is written. Moving to the
    status the device already has is a no-op.
    """
    if isinstance(device, str):
        device = load_device(db, device)

    current = device.status
    if expected is not None and current != expected:
        raise PreconditionFailed(device.id, expected, current, next_status)
    if current == next_status:
        return device
    if next_status not in DEVICE_TRANSITIONS[current]:
        raise PreconditionFailed(device.id, "a status that allows " + next_status.value, current, next_status)

    device.status = next_status
    device.updated_at = utcnow()
    logger.debug("device_transition device_id=%s from=%s to=%s", device.id, current.value, next_status.value)
    return device
