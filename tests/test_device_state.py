import pytest

from devices import load_device, load_devices, transition_device
from enums import DeviceStatus
from errors import NotFoundError, PreconditionFailed, ValidationError


def test_transition_moves_device_when_expectation_matches(db_session, make_device):
    d = make_device()

    device = transition_device(db_session, d.id, DeviceStatus.AVAILABLE, DeviceStatus.ON_LOAN)
    db_session.commit()

    assert device.status == DeviceStatus.ON_LOAN
    assert load_device(db_session, d.id).status == DeviceStatus.ON_LOAN


def test_transition_rejects_wrong_expected_status(db_session, make_device):
    d = make_device()

    with pytest.raises(PreconditionFailed) as exc:
        transition_device(db_session, d.id, DeviceStatus.ON_LOAN, DeviceStatus.AVAILABLE)

    assert exc.value.details["expected"] == "on_loan"
    assert exc.value.details["actual"] == "available"
    assert load_device(db_session, d.id).status == DeviceStatus.AVAILABLE


def test_transition_rejects_move_missing_from_table(db_session, make_device):
    d = make_device()
    transition_device(db_session, d.id, None, DeviceStatus.MAINTENANCE)

    # maintenance -> on_loan is never legal
    with pytest.raises(PreconditionFailed):
        transition_device(db_session, d.id, None, DeviceStatus.ON_LOAN)


def test_precondition_failed_is_a_validation_error():
    assert issubclass(PreconditionFailed, ValidationError)
    assert PreconditionFailed.http_status == 400


def test_transition_to_same_status_is_noop(db_session, make_device):
    d = make_device()
    before = load_device(db_session, d.id).updated_at

    transition_device(db_session, d.id, DeviceStatus.AVAILABLE, DeviceStatus.AVAILABLE)

    assert load_device(db_session, d.id).updated_at == before


def test_load_device_missing_raises_not_found(db_session):
    with pytest.raises(NotFoundError):
        load_device(db_session, "nope")


def test_load_devices_keeps_request_order(db_session, make_device):
    a = make_device("A")
    b = make_device("B")

    loaded = load_devices(db_session, [b.id, a.id])

    assert [d.id for d in loaded] == [b.id, a.id]


def test_load_devices_rejects_duplicates_and_unknown_ids(db_session, make_device):
    a = make_device()

    with pytest.raises(ValidationError):
        load_devices(db_session, [a.id, a.id])
    with pytest.raises(ValidationError) as exc:
        load_devices(db_session, [a.id, "ghost"])
    assert exc.value.details["device_ids"] == ["ghost"]
