"""Interleaved requests: one session reads, another commits, then the first writes.

The slow session keeps the rows it read in its identity map, so its plain
pre-checks pass on stale state and only the conditional UPDATEs can stop it.
"""
import pytest

from dispatch_ledger.database import SessionLocal, session_scope
from dispatch_ledger.errors import ConflictError
from dispatch_ledger.ledger import post_payment
from dispatch_ledger.lifecycle import accept_ride, get_ride, verify_drop_otp, verify_pickup_otp
from dispatch_ledger.models import Driver, LedgerEntry, Ride, Rider
from dispatch_ledger.parties import get_driver, get_rider

from factories import DROP, PICKUP, make_driver, make_rider


@pytest.fixture
def slow_session():
    db = SessionLocal()
    yield db
    db.rollback()
    db.close()


def _accept(db, driver_id, rider_id):
    return accept_ride(db, driver_id, rider_id, dict(PICKUP), dict(DROP), 10, 100)[0]


def _accepted_ride():
    driver, rider = make_driver(), make_rider()
    with session_scope() as db:
        ride = _accept(db, driver, rider)
        return driver, ride.id, ride.pickup_otp, ride.drop_otp


def test_two_accepts_for_one_driver_book_once(slow_session):
    driver = make_driver()
    first, second = make_rider(), make_rider()
    get_driver(slow_session, driver)
    get_rider(slow_session, second)
    slow_session.commit()

    with session_scope() as db:
        _accept(db, driver, first)

    with pytest.raises(ConflictError) as exc:
        _accept(slow_session, driver, second)
    assert exc.value.message == "Driver is already on a ride"
    slow_session.rollback()

    with session_scope() as db:
        assert db.query(Ride).count() == 1
        assert db.get(Rider, second).current_ride_id is None


def test_two_accepts_for_one_rider_leave_losing_driver_free(slow_session):
    rider = make_rider()
    winner, loser = make_driver(), make_driver()
    get_driver(slow_session, loser)
    get_rider(slow_session, rider)
    slow_session.commit()

    with session_scope() as db:
        _accept(db, winner, rider)

    with pytest.raises(ConflictError) as exc:
        _accept(slow_session, loser, rider)
    assert exc.value.message == "Rider is already on a ride"
    slow_session.rollback()

    with session_scope() as db:
        assert db.query(Ride).count() == 1
        assert db.get(Driver, loser).current_ride_id is None
        assert db.get(Driver, winner).current_ride_id is not None


def test_pickup_verified_twice_starts_ride_once(slow_session):
    driver, ride_id, pickup_otp, _ = _accepted_ride()
    get_ride(slow_session, ride_id)
    slow_session.commit()

    with session_scope() as db:
        ride, already, notes = verify_pickup_otp(db, ride_id, pickup_otp, driver)
        started_at = ride.started_at
        assert already is False and len(notes) == 2

    ride, already, notes = verify_pickup_otp(slow_session, ride_id, pickup_otp, driver)
    assert already is True
    assert notes == []
    assert ride.started_at == started_at
    slow_session.commit()


def test_drop_verified_twice_counts_ride_once(slow_session):
    driver, ride_id, pickup_otp, drop_otp = _accepted_ride()
    with session_scope() as db:
        verify_pickup_otp(db, ride_id, pickup_otp, driver)
    get_ride(slow_session, ride_id)
    slow_session.commit()

    with session_scope() as db:
        verify_drop_otp(db, ride_id, drop_otp, driver)

    ride, already, notes = verify_drop_otp(slow_session, ride_id, drop_otp, driver)
    assert already is True and notes == []
    slow_session.commit()

    with session_scope() as db:
        drv = db.get(Driver, driver)
        assert drv.total_completed_rides == 1
        assert drv.total_distance_km == 10
        assert drv.is_on_ride is False


def test_payment_posted_twice_credits_once(slow_session):
    driver, ride_id, pickup_otp, drop_otp = _accepted_ride()
    with session_scope() as db:
        verify_pickup_otp(db, ride_id, pickup_otp, driver)
    with session_scope() as db:
        verify_drop_otp(db, ride_id, drop_otp, driver)
    get_ride(slow_session, ride_id)
    slow_session.commit()

    with session_scope() as db:
        post_payment(db, ride_id, "cash")

    with pytest.raises(ConflictError) as exc:
        post_payment(slow_session, ride_id, "online")
    assert exc.value.message == "Payment already recorded for this ride"
    slow_session.rollback()

    with session_scope() as db:
        drv = db.get(Driver, driver)
        assert (drv.cash_wallet, drv.online_wallet, drv.due_wallet) == (100, 0, 18)
        assert db.query(LedgerEntry).count() == 1
        assert db.get(Ride, ride_id).payment_mode == "cash"
