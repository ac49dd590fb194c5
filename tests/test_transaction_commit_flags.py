from datetime import date

from sqlalchemy import func, select

import crud
import loans
import maintenance
import warranties
from enums import DeviceStatus, LoanSlipStatus
from models import DeviceIn, LoanSlipIn, MaintenanceSlipIn, ResolveItem, WarrantyIn
from orm import LoanSlipORM, WarrantyORM
from ports import InMemoryCache


def test_create_device_commit_false_requires_manual_commit(db_session):
    created = crud.create_device(db_session, DeviceIn(name="Tablet", serial="T-001"), commit=False)

    db_session.commit()
    db_session.expire_all()

    loaded = crud.get_device(db_session, created.id)
    assert loaded is not None
    assert loaded.serial == "T-001"


def test_create_device_commit_false_rollback_discards_change(db_session):
    created = crud.create_device(db_session, DeviceIn(name="Tablet", serial="T-002"), commit=False)

    db_session.rollback()
    db_session.expire_all()

    assert crud.get_device(db_session, created.id) is None


def test_create_loan_slip_commit_false_requires_manual_commit(db_session, borrower, loaner, make_device):
    d = make_device()

    slip = loans.create_loan_slip(
        db_session,
        LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=[d.id]),
        commit=False,
    )
    db_session.commit()
    db_session.expire_all()

    assert db_session.get(LoanSlipORM, slip.id).status == LoanSlipStatus.BORROWING
    assert crud.get_device(db_session, d.id).status == DeviceStatus.ON_LOAN


def test_return_commit_false_rollback_discards_return(db_session, borrower, loaner, make_device):
    d = make_device()
    slip = loans.create_loan_slip(
        db_session, LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=[d.id])
    )

    loans.return_loan_devices(
        db_session, slip.id, [ResolveItem(device_id=d.id, status="broken")], commit=False
    )
    db_session.rollback()
    db_session.expire_all()

    assert crud.get_device(db_session, d.id).status == DeviceStatus.ON_LOAN
    assert loans.get_loan_slip(db_session, slip.id).status == LoanSlipStatus.BORROWING
    assert db_session.execute(select(func.count()).select_from(WarrantyORM)).scalar_one() == 0


def test_two_operations_share_one_caller_transaction(db_session, make_device):
    d1 = make_device()
    d2 = make_device()

    maintenance.create_maintenance_slip(db_session, MaintenanceSlipIn(device_ids=[d1.id]), commit=False)
    warranties.create_warranty_request(
        db_session, WarrantyIn(device_id=d2.id, reason="dead pixel", request_date=date.today()), commit=False
    )
    db_session.rollback()
    db_session.expire_all()

    assert crud.get_device(db_session, d1.id).status == DeviceStatus.AVAILABLE
    assert crud.get_device(db_session, d2.id).status == DeviceStatus.AVAILABLE


def test_commit_false_skips_cache_invalidation(db_session, make_device):
    cache = InMemoryCache(prefix="test")
    key = cache.key("devices", "list")
    cache.set(key, ["stale"])
    d = make_device()

    maintenance.create_maintenance_slip(
        db_session, MaintenanceSlipIn(device_ids=[d.id]), cache=cache, commit=False
    )
    assert cache.get(key) == ["stale"]

    db_session.rollback()
