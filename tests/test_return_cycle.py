import pytest

import crud
import loans
import returns
from enums import DeviceStatus, LoanLineStatus, LoanSlipStatus, ReturnSlipStatus
from errors import ConflictError, ValidationError
from models import LoanSlipIn, ResolveItem, ReturnSlipIn, ReturnSlipItem, ReturnSlipUpdate


def _status(db, device_id):
    db.expire_all()
    return crud.get_device(db, device_id).status


@pytest.fixture()
def loan(db_session, borrower, loaner, make_device):
    devices = [make_device() for _ in range(3)]
    slip = loans.create_loan_slip(
        db_session,
        LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=[d.id for d in devices]),
    )
    return slip, devices


def _return(db, slip, returner, *devices):
    body = ReturnSlipIn(
        loan_slip_id=slip.id,
        returner_id=returner.id,
        items=[ReturnSlipItem(device_id=d.id) for d in devices],
    )
    return returns.create_return_slip(db, body)


def test_return_slip_resolves_lines_as_returned(db_session, borrower, loan):
    slip, (d1, d2, d3) = loan

    rs = _return(db_session, slip, borrower, d1, d2)

    assert rs.status == ReturnSlipStatus.RETURNED
    assert rs.code.startswith("GDNT_")
    assert [d.device_id for d in rs.details] == [d1.id, d2.id]
    assert _status(db_session, d1.id) == DeviceStatus.AVAILABLE
    assert _status(db_session, d3.id) == DeviceStatus.ON_LOAN

    refreshed = loans.get_loan_slip(db_session, slip.id)
    assert refreshed.status == LoanSlipStatus.PARTIAL_RETURNED
    lines = {line.device_id: line for line in refreshed.details}
    assert lines[d1.id].status == LoanLineStatus.RETURNED
    assert lines[d3.id].status == LoanLineStatus.BORROWED
    assert {d.loan_slip_detail_id for d in rs.details} == {lines[d1.id].id, lines[d2.id].id}


def test_return_slip_closing_every_line_closes_loan(db_session, borrower, loan):
    slip, devices = loan

    _return(db_session, slip, borrower, *devices)

    assert loans.get_loan_slip(db_session, slip.id).status == LoanSlipStatus.CLOSED
    assert returns.list_returnable_loan_slips(db_session) == []


def test_cancel_reverts_lines_and_devices(db_session, borrower, loan):
    slip, (d1, d2, d3) = loan
    first = _return(db_session, slip, borrower, d1)
    _return(db_session, slip, borrower, d2)

    cancelled = returns.cancel_return_slip(db_session, first.id)

    assert cancelled.status == ReturnSlipStatus.CANCELLED
    assert _status(db_session, d1.id) == DeviceStatus.ON_LOAN
    refreshed = loans.get_loan_slip(db_session, slip.id)
    lines = {line.device_id: line for line in refreshed.details}
    assert lines[d1.id].status == LoanLineStatus.BORROWED
    assert lines[d1.id].return_date is None
    assert lines[d2.id].status == LoanLineStatus.RETURNED
    # d2 is still returned, so the loan stays partial
    assert refreshed.status == LoanSlipStatus.PARTIAL_RETURNED


def test_cancel_of_only_return_reopens_loan(db_session, borrower, loan):
    slip, devices = loan
    rs = _return(db_session, slip, borrower, *devices)

    returns.cancel_return_slip(db_session, rs.id)

    assert loans.get_loan_slip(db_session, slip.id).status == LoanSlipStatus.BORROWING
    assert all(_status(db_session, d.id) == DeviceStatus.ON_LOAN for d in devices)


def test_double_cancel_conflicts(db_session, borrower, loan):
    slip, (d1, _, _) = loan
    rs = _return(db_session, slip, borrower, d1)
    returns.cancel_return_slip(db_session, rs.id)

    with pytest.raises(ConflictError):
        returns.cancel_return_slip(db_session, rs.id)
    assert _status(db_session, d1.id) == DeviceStatus.ON_LOAN


def test_cancel_conflicts_once_device_moved_on(db_session, borrower, loaner, loan):
    slip, (d1, _, _) = loan
    rs = _return(db_session, slip, borrower, d1)
    loans.create_loan_slip(
        db_session, LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=[d1.id])
    )

    with pytest.raises(ConflictError):
        returns.cancel_return_slip(db_session, rs.id)

    assert returns.get_return_slip(db_session, rs.id).status == ReturnSlipStatus.RETURNED


def test_create_rejects_device_not_borrowed_on_slip(db_session, borrower, loan, make_device):
    slip, (d1, _, _) = loan
    stranger = make_device()

    with pytest.raises(ValidationError):
        _return(db_session, slip, borrower, d1, stranger)

    assert _status(db_session, d1.id) == DeviceStatus.ON_LOAN
    assert returns.list_return_slips(db_session) == []


def test_create_rejects_unknown_returner(db_session, loan):
    slip, (d1, _, _) = loan

    with pytest.raises(ValidationError):
        returns.create_return_slip(
            db_session,
            ReturnSlipIn(loan_slip_id=slip.id, returner_id="ghost", items=[ReturnSlipItem(device_id=d1.id)]),
        )


def test_create_against_cancelled_loan_conflicts(db_session, borrower, loaner, make_device):
    d = make_device()
    slip = loans.create_loan_slip(
        db_session, LoanSlipIn(borrower_id=borrower.id, loaner_id=loaner.id, device_ids=[d.id])
    )
    loans.cancel_loan_slip(db_session, slip.id)

    with pytest.raises(ConflictError):
        _return(db_session, slip, borrower, d)


def test_direct_and_document_returns_share_lines(db_session, borrower, loan):
    slip, (d1, d2, d3) = loan
    loans.return_loan_devices(db_session, slip.id, [ResolveItem(device_id=d1.id, status="broken")])

    with pytest.raises(ValidationError):
        _return(db_session, slip, borrower, d1)

    _return(db_session, slip, borrower, d2, d3)
    assert loans.get_loan_slip(db_session, slip.id).status == LoanSlipStatus.CLOSED


def test_returnable_lists(db_session, borrower, loan):
    slip, (d1, d2, d3) = loan
    _return(db_session, slip, borrower, d1)

    assert [s.id for s in returns.list_returnable_loan_slips(db_session)] == [slip.id]
    assert [line.device_id for line in returns.list_returnable_devices(db_session, slip.id)] == [d2.id, d3.id]


def test_update_return_slip(db_session, borrower, make_partner, loan):
    slip, (d1, _, _) = loan
    other = make_partner("Carol")
    rs = _return(db_session, slip, borrower, d1)

    updated = returns.update_return_slip(db_session, rs.id, ReturnSlipUpdate(returner_id=other.id, note="by courier"))
    assert updated.returner_id == other.id
    assert updated.note == "by courier"

    returns.cancel_return_slip(db_session, rs.id)
    with pytest.raises(ConflictError):
        returns.update_return_slip(db_session, rs.id, ReturnSlipUpdate(note="too late"))


def test_list_return_slips_by_loan(db_session, borrower, loan):
    slip, (d1, d2, _) = loan
    a = _return(db_session, slip, borrower, d1)
    b = _return(db_session, slip, borrower, d2)
    returns.cancel_return_slip(db_session, a.id)

    assert {r.id for r in returns.list_return_slips(db_session, loan_slip_id=slip.id)} == {a.id, b.id}
    active = returns.list_return_slips(db_session, status=ReturnSlipStatus.RETURNED)
    assert [r.id for r in active] == [b.id]
    assert returns.count_return_slips(db_session) == 2
