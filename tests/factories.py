import uuid

from dispatch_ledger.auth import create_access_token
from dispatch_ledger.database import session_scope
from dispatch_ledger.ledger import post_payment
from dispatch_ledger.lifecycle import accept_ride, verify_pickup_otp, verify_drop_otp
from dispatch_ledger.models import Driver, DriverLocation, Franchise, Rider


ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}

# Damascus centre
PICKUP = {"lat": 33.5138, "lon": 36.2765}
DROP = {"lat": 33.5400, "lon": 36.3000}


def bearer(role: str, subject_id) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(subject_id), role)}"}


def _phone() -> str:
    return "+963" + str(uuid.uuid4().int)[:9]


def make_franchise(name: str = "North", approved: bool = True, active: bool = True, **kw) -> uuid.UUID:
    with session_scope() as db:
        fr = Franchise(name=name, is_approved=approved, is_active=active, **kw)
        db.add(fr)
        db.flush()
        return fr.id


def make_driver(franchise_id=None, lat: float = PICKUP["lat"], lon: float = PICKUP["lon"],
                approved: bool = True, active: bool = True, name: str = "Driver", **kw) -> uuid.UUID:
    with session_scope() as db:
        drv = Driver(name=name, phone=_phone(), franchise_id=franchise_id, is_approved=approved, is_active=active, **kw)
        db.add(drv)
        db.flush()
        db.add(DriverLocation(driver_id=drv.id, lat=lat, lon=lon))
        return drv.id


def make_rider(name: str = "Rider") -> uuid.UUID:
    with session_scope() as db:
        rider = Rider(name=name, phone=_phone(), lat=PICKUP["lat"], lon=PICKUP["lon"])
        db.add(rider)
        db.flush()
        return rider.id


def complete_ride(driver_id, rider_id, total_price: int = 100, total_km: float = 10.0, payment_mode: str | None = "cash"):
    """Accept, verify both OTPs and optionally post payment; returns the ride id."""
    with session_scope() as db:
        ride, _ = accept_ride(db, driver_id, rider_id, dict(PICKUP), dict(DROP), total_km, total_price)
        ride_id, pickup_otp, drop_otp = ride.id, ride.pickup_otp, ride.drop_otp
    with session_scope() as db:
        verify_pickup_otp(db, ride_id, pickup_otp, driver_id)
    with session_scope() as db:
        verify_drop_otp(db, ride_id, drop_otp, driver_id)
    if payment_mode:
        with session_scope() as db:
            post_payment(db, ride_id, payment_mode)
    return ride_id
