import pytest
from sqlalchemy import select

import crud
import loans
import warranties
from enums import DeviceStatus, LoanLineStatus, LoanSlipStatus, WarrantyStatus
from errors import ConflictError, NotFoundError, ValidationError
from models import LoanSlipIn, LoanSlipUpdate, ResolveItem
from orm import DeviceORM, LoanSlipORM
from ports import AuditContext, InMemoryCache


def _status(db, device_id):
    db.expire_all()
    return crud.get_device(db, device_id).status


def _loan(db, borrower, loaner, *devices, **kw):
    body = LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=[d.id for d in devices])
    return loans.create_loan_slip(db, body, **kw)


def test_loan_return_round_trip(db_session, borrower, loaner, make_device):
    d1 = make_device()
    d2 = make_device()

    slip = _loan(db_session, borrower, loaner, d1, d2)
    assert slip.status == LoanSlipStatus.BORROWING
    assert slip.code.startswith("PMTB_")
    assert [line.status for line in slip.details] == [LoanLineStatus.BORROWED] * 2
    assert _status(db_session, d1.id) == DeviceStatus.ON_LOAN
    assert _status(db_session, d2.id) == DeviceStatus.ON_LOAN

    slip = loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d1.id, status="returned")])
    assert slip.status == LoanSlipStatus.PARTIAL_RETURNED
    assert _status(db_session, d1.id) == DeviceStatus.AVAILABLE
    assert _status(db_session, d2.id) == DeviceStatus.ON_LOAN

    slip = loans.return_loan_devices(
        db_session, slip.id, [ResolveItem(device_id=d2.id, status="broken", note="screen cracked")]
    )
    assert slip.status == LoanSlipStatus.CLOSED
    by_device = {line.device_id: line for line in slip.details}
    assert by_device[d1.id].status == LoanLineStatus.RETURNED
    assert by_device[d2.id].status == LoanLineStatus.BROKEN
    assert by_device[d2.id].return_date is not None
    assert _status(db_session, d2.id) == DeviceStatus.BROKEN

    opened = warranties.list_device_warranties(db_session, d2.id)
    assert len(opened) == 1
    assert opened[0].status == WarrantyStatus.PENDING
    assert opened[0].prior_device_status == DeviceStatus.BROKEN
    assert opened[0].source_type == "loan_slip"
    assert "screen cracked" in opened[0].reason
    assert warranties.list_device_warranties(db_session, d1.id) == []


def test_create_requires_every_device_available(db_session, borrower, loaner, make_device):
    d1 = make_device()
    d2 = make_device()
    _loan(db_session, borrower, loaner, d2)

    with pytest.raises(ValidationError) as exc:
        _loan(db_session, borrower, loaner, d1, d2)

    assert exc.value.details["device_ids"] == [d2.id]
    # nothing from the failed create is left behind
    assert _status(db_session, d1.id) == DeviceStatus.AVAILABLE
    assert len(loans.list_loan_slips(db_session)) == 1


def test_create_rejects_unknown_partner_or_device(db_session, borrower, loaner, make_device):
    d = make_device()

    with pytest.raises(ValidationError):
        loans.create_loan_slip(
            db_session, LoanSlipIn(borrower_id="ghost", loaner_id=loaner.id, device_ids=[d.id])
        )
    with pytest.raises(ValidationError):
        loans.create_loan_slip(
            db_session, LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=["ghost"])
        )
    assert _status(db_session, d.id) == DeviceStatus.AVAILABLE


def test_return_rejects_device_not_on_slip(db_session, borrower, loaner, make_device):
    d1 = make_device()
    stranger = make_device()
    slip = _loan(db_session, borrower, loaner, d1)

    with pytest.raises(ValidationError):
        loans.return_loan_devices(
            db_session,
            slip.id,
            [
                ResolveItem(device_id=d1.id, status="returned"),
                ResolveItem(device_id=stranger.id, status="returned"),
            ],
        )

    # validated before anything was written
    assert _status(db_session, d1.id) == DeviceStatus.ON_LOAN
    assert loans.get_loan_slip(db_session, slip.id).status == LoanSlipStatus.BORROWING


def test_return_rejects_line_already_resolved(db_session, borrower, loaner, make_device):
    d1 = make_device()
    d2 = make_device()
    slip = _loan(db_session, borrower, loaner, d1, d2)
    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d1.id, status="returned")])

    with pytest.raises(ValidationError):
        loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d1.id, status="broken")])


def test_return_against_closed_slip_conflicts(db_session, borrower, loaner, make_device):
    d = make_device()
    slip = _loan(db_session, borrower, loaner, d)
    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d.id, status="returned")])

    with pytest.raises(ConflictError):
        loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d.id, status="returned")])


def test_return_unknown_slip_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        loans.return_loan_devices(db_session, "missing", [ResolveItem(device_id="x", status="returned")])


def test_broken_device_with_open_warranty_gets_no_second_one(db_session, borrower, loaner, make_device):
    d1 = make_device()
    d2 = make_device()
    slip = _loan(db_session, borrower, loaner, d1, d2)
    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d1.id, status="broken")])
    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d2.id, status="returned")])

    # the device stays broken with its pending request; a second break report finds it open
    assert len(warranties.list_device_warranties(db_session, d1.id)) == 1
    device = db_session.get(DeviceORM, d1.id)
    assert warranties.open_for_broken_device(
        db_session, device, reason="again", source_type="loan_slip", source_id=slip.id
    ) is None


def test_mid_operation_failure_rolls_back_everything(db_session, borrower, loaner, make_device):
    d1 = make_device()
    d2 = make_device()
    slip = _loan(db_session, borrower, loaner, d1, d2)

    # someone moved d2 behind the slip's back; its transition fails after d1 was already applied
    db_session.get(DeviceORM, d2.id).status = DeviceStatus.AVAILABLE
    db_session.commit()

    with pytest.raises(ValidationError):
        loans.return_loan_devices(
            db_session,
            slip.id,
            [
                ResolveItem(device_id=d1.id, status="returned"),
                ResolveItem(device_id=d2.id, status="returned"),
            ],
        )

    assert _status(db_session, d1.id) == DeviceStatus.ON_LOAN
    reloaded = loans.get_loan_slip(db_session, slip.id)
    assert reloaded.status == LoanSlipStatus.BORROWING
    assert all(line.status == LoanLineStatus.BORROWED for line in reloaded.details)


def test_warranty_failure_rolls_back_the_return(db_session, borrower, loaner, make_device, monkeypatch):
    d = make_device()
    slip = _loan(db_session, borrower, loaner, d)

    def _boom(*args, **kwargs):
        raise RuntimeError("warranty store down")

    monkeypatch.setattr(warranties, "open_for_broken_device", _boom)

    with pytest.raises(RuntimeError):
        loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d.id, status="broken")])

    assert _status(db_session, d.id) == DeviceStatus.ON_LOAN
    assert loans.get_loan_slip(db_session, slip.id).details[0].status == LoanLineStatus.BORROWED


def test_cancel_compensates_and_second_cancel_conflicts(db_session, borrower, loaner, make_device):
    d = make_device()
    slip = _loan(db_session, borrower, loaner, d)
    assert _status(db_session, d.id) == DeviceStatus.ON_LOAN

    cancelled = loans.cancel_loan_slip(db_session, slip.id)
    assert cancelled.status == LoanSlipStatus.CANCELLED
    assert _status(db_session, d.id) == DeviceStatus.AVAILABLE

    version = db_session.get(LoanSlipORM, slip.id).version
    with pytest.raises(ConflictError):
        loans.cancel_loan_slip(db_session, slip.id)

    db_session.expire_all()
    assert db_session.get(LoanSlipORM, slip.id).version == version
    assert _status(db_session, d.id) == DeviceStatus.AVAILABLE


def test_cancel_after_partial_return_conflicts(db_session, borrower, loaner, make_device):
    d1 = make_device()
    d2 = make_device()
    slip = _loan(db_session, borrower, loaner, d1, d2)
    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d1.id, status="returned")])

    with pytest.raises(ConflictError):
        loans.cancel_loan_slip(db_session, slip.id)
    assert _status(db_session, d2.id) == DeviceStatus.ON_LOAN


def test_header_status_tracks_line_mix(db_session, borrower, loaner, make_device):
    devices = [make_device() for _ in range(3)]
    slip = _loan(db_session, borrower, loaner, *devices)

    for i, d in enumerate(devices):
        slip = loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d.id, status="returned")])
        resolved = sum(1 for line in slip.details if line.status != LoanLineStatus.BORROWED)
        assert resolved == i + 1
        expected = LoanSlipStatus.CLOSED if resolved == len(devices) else LoanSlipStatus.PARTIAL_RETURNED
        assert slip.status == expected


def test_update_only_while_borrowing(db_session, borrower, loaner, make_device, make_partner):
    d = make_device()
    other = make_partner("Bob")
    slip = _loan(db_session, borrower, loaner, d)

    updated = loans.update_loan_slip(db_session, slip.id, LoanSlipUpdate(borrower_id=other.id, note="moved desk"))
    assert updated.borrower_id == other.id
    assert updated.note == "moved desk"

    with pytest.raises(ValidationError):
        loans.update_loan_slip(db_session, slip.id, LoanSlipUpdate(loaner_id="ghost"))

    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d.id, status="returned")])
    with pytest.raises(ConflictError):
        loans.update_loan_slip(db_session, slip.id, LoanSlipUpdate(note="late"))


def test_list_loan_slips_filters_by_status(db_session, borrower, loaner, make_device):
    a = _loan(db_session, borrower, loaner, make_device())
    b = _loan(db_session, borrower, loaner, make_device())
    loans.cancel_loan_slip(db_session, b.id)

    borrowing = loans.list_loan_slips(db_session, status=LoanSlipStatus.BORROWING)
    assert [s.id for s in borrowing] == [a.id]
    assert loans.count_loan_slips(db_session) == 2


def test_audit_and_cache_ports_are_called(db_session, borrower, loaner, make_device):
    d = make_device()
    cache = InMemoryCache(prefix="test")
    cache.set(cache.key("loan", "list"), ["stale"])
    cache.set(cache.key("partners"), ["kept"])
    slip = _loan(db_session, borrower, loaner, d, cache=cache)

    assert cache.get(cache.key("loan", "list")) is None
    assert cache.get(cache.key("partners")) == ["kept"]

    audit = AuditContext()
    loans.return_loan_devices(
        db_session, slip.id, [ResolveItem(device_id=d.id, status="returned")], audit=audit
    )
    assert audit.before["status"] == "borrowing"
    assert audit.after["status"] == "closed"
    assert "status" in audit.changed_keys()


def test_cache_failure_does_not_fail_the_operation(db_session, borrower, loaner, make_device):
    class BrokenCache:
        def invalidate(self, tag):
            raise ConnectionError("cache down")

    d = make_device()
    slip = _loan(db_session, borrower, loaner, d, cache=BrokenCache())

    assert db_session.execute(select(LoanSlipORM.status).where(LoanSlipORM.id == slip.id)).scalar_one() == (
        LoanSlipStatus.BORROWING
    )


def test_stale_device_read_surfaces_as_conflict(db_session, borrower, loaner, make_device):
    from sqlalchemy import func

    from db import SessionLocal

    d = make_device()
    stale = db_session.get(DeviceORM, d.id)
    assert stale.status == DeviceStatus.AVAILABLE

    # 別セッションが先に貸出してコミットする
    with SessionLocal() as other:
        winner = _loan(other, borrower, loaner, d)

    with pytest.raises(ConflictError):
        _loan(db_session, borrower, loaner, d)

    slips = db_session.execute(select(func.count()).select_from(LoanSlipORM)).scalar_one()
    assert slips == 1
    assert _status(db_session, d.id) == DeviceStatus.ON_LOAN
    assert loans.get_loan_slip(db_session, winner.id).status == LoanSlipStatus.BORROWING
