"""Ride state machine.

Accepted -> PickupVerified/Started -> DropVerified/Ended -> PaymentModeSet,
with Cancelled reachable only before pickup. Every transition is a guarded
UPDATE so concurrent requests cannot double-book a party or apply a gate
twice. Notifications are returned to the caller, which delivers them after
the transaction commits.
"""
import logging
import secrets
import uuid
from datetime import datetime

from prometheus_client import Counter
from sqlalchemy import update, delete, and_
from sqlalchemy.orm import Session

from .commission import resolve_split
from .config import settings
from .errors import ValidationError, NotFoundError, ConflictError, AuthorizationError
from .models import Driver, Rider, Ride
from .parties import get_driver, get_rider
from .pricing import fare_settings_store
from .ws_manager import Notification


logger = logging.getLogger("dispatch_ledger.rides")

RIDE_TRANSITIONS = Counter(
    "dispatch_ride_transitions_total",
    "Ride lifecycle transitions",
    ["from", "to"],
)

SPLIT_FIELDS = ("admin_rate", "franchise_rate", "admin_profit", "franchise_profit", "driver_profit")


def generate_ride_otp(digits: int | None = None) -> str:
    digits = digits or settings.RIDE_OTP_DIGITS
    low = 10 ** (digits - 1)
    return str(low + secrets.randbelow(9 * low))


def _count(frm: str, to: str) -> None:
    RIDE_TRANSITIONS.labels(frm, to).inc()


def get_ride(db: Session, ride_id) -> Ride:
    ride = db.get(Ride, ride_id)
    if ride is None:
        raise NotFoundError("Ride not found")
    return ride


def ride_state(ride: Ride) -> str:
    if ride.is_payment_done:
        return "payment_mode_set"
    if ride.is_ride_ended:
        return "ended"
    if ride.is_ride_started:
        return "started"
    return "accepted"


def serialize_ride(ride: Ride, include_otps: bool = False) -> dict:
    data = {
        "id": str(ride.id),
        "state": ride_state(ride),
        "rider_id": str(ride.rider_id),
        "driver_id": str(ride.driver_id),
        "franchise_id": str(ride.franchise_id) if ride.franchise_id else None,
        "pickup": {"lat": ride.pickup_lat, "lon": ride.pickup_lon, "address": ride.pickup_address},
        "drop": {"lat": ride.drop_lat, "lon": ride.drop_lon, "address": ride.drop_address},
        "total_km": ride.total_km,
        "total_amount": ride.total_amount,
        "admin_profit": ride.admin_profit,
        "franchise_profit": ride.franchise_profit,
        "driver_profit": ride.driver_profit,
        "admin_commission_rate": ride.admin_commission_rate,
        "franchise_commission_rate": ride.franchise_commission_rate,
        "is_pickup_verified": ride.is_pickup_verified,
        "is_ride_started": ride.is_ride_started,
        "is_drop_verified": ride.is_drop_verified,
        "is_ride_ended": ride.is_ride_ended,
        "is_payment_done": ride.is_payment_done,
        "payment_mode": ride.payment_mode,
        "accepted_at": ride.accepted_at.isoformat() + "Z" if ride.accepted_at else None,
        "started_at": ride.started_at.isoformat() + "Z" if ride.started_at else None,
        "ended_at": ride.ended_at.isoformat() + "Z" if ride.ended_at else None,
        "paid_at": ride.paid_at.isoformat() + "Z" if ride.paid_at else None,
    }
    if include_otps:
        data["pickup_otp"] = ride.pickup_otp
        data["drop_otp"] = ride.drop_otp
    return data


def _supplied_split_matches(supplied: dict | None, split) -> bool:
    if not supplied:
        return False
    for name in SPLIT_FIELDS:
        value = supplied.get(name)
        if value is None or float(value) != float(getattr(split, name)):
            return False
    return True


def accept_ride(
    db: Session,
    driver_id,
    rider_id,
    pickup: dict,
    drop: dict,
    total_km: float,
    total_price: int,
    supplied_split: dict | None = None,
) -> tuple[Ride, list[Notification]]:
    if total_km is None or total_km <= 0:
        raise ValidationError("Total kilometers must be positive")
    if total_price is None or total_price <= 0 or int(total_price) != total_price:
        raise ValidationError("Total price must be a positive whole amount")
    rider = get_rider(db, rider_id)
    driver = get_driver(db, driver_id)
    if rider.is_on_ride or rider.current_ride_id is not None:
        raise ConflictError("Rider is already on a ride")
    if driver.is_on_ride or driver.current_ride_id is not None:
        raise ConflictError("Driver is already on a ride")
    if not driver.is_approved:
        raise ConflictError("Driver is not approved")

    split = resolve_split(db, int(total_price), driver.franchise, create_missing=True)
    if supplied_split and not _supplied_split_matches(supplied_split, split):
        logger.warning(
            "Supplied commission split for driver %s does not match current rates; using %s",
            driver.id, split.as_dict(),
        )

    ride_id = uuid.uuid4()
    # reservation: exactly one concurrent accept per party wins
    for model, party_id, label in ((Driver, driver.id, "Driver"), (Rider, rider.id, "Rider")):
        res = db.execute(
            update(model)
            .where(model.id == party_id, model.is_on_ride.is_(False), model.current_ride_id.is_(None))
            .values(current_ride_id=ride_id)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConflictError(f"{label} is already on a ride")

    ride = Ride(
        id=ride_id,
        rider_id=rider.id,
        driver_id=driver.id,
        franchise_id=split.franchise_id,
        pickup_lat=pickup["lat"],
        pickup_lon=pickup["lon"],
        pickup_address=pickup.get("address"),
        drop_lat=drop["lat"],
        drop_lon=drop["lon"],
        drop_address=drop.get("address"),
        total_km=float(total_km),
        total_amount=split.total_fare,
        admin_profit=split.admin_profit,
        franchise_profit=split.franchise_profit,
        driver_profit=split.driver_profit,
        admin_commission_rate=split.admin_rate,
        franchise_commission_rate=split.franchise_rate,
        fare_settings_version=fare_settings_store.get(db).version,
        pickup_otp=generate_ride_otp(),
        drop_otp=generate_ride_otp(),
        accepted_at=datetime.utcnow(),
    )
    db.add(ride)
    db.flush()
    db.refresh(driver)
    db.refresh(rider)
    _count("requested", "accepted")
    logger.info("Ride %s accepted by driver %s for rider %s (fare %s)", ride.id, driver.id, rider.id, ride.total_amount)

    loc = driver.location
    notifications = [
        Notification("rider", str(rider.id), "rideAccepted", {
            "ride_id": str(ride.id),
            "driver_id": str(driver.id),
            "driver_name": driver.name,
            "driver_location": {"lat": loc.lat, "lon": loc.lon} if loc else None,
            "total_price": ride.total_amount,
            "pickup_otp": ride.pickup_otp,
            "drop_otp": ride.drop_otp,
        }),
        Notification("driver", str(driver.id), "rideAccepted", {
            "ride_id": str(ride.id),
            "rider_id": str(rider.id),
            "rider_location": {"lat": rider.lat, "lon": rider.lon} if rider.lat is not None else None,
            "pickup": {"lat": ride.pickup_lat, "lon": ride.pickup_lon},
            "drop": {"lat": ride.drop_lat, "lon": ride.drop_lon},
            "total_amount": ride.total_amount,
            "admin_profit": ride.admin_profit,
            "franchise_profit": ride.franchise_profit,
            "driver_profit": ride.driver_profit,
            "has_franchise": ride.franchise_id is not None,
        }),
    ]
    return ride, notifications


def reject_ride(db: Session, driver_id, rider_id) -> list[Notification]:
    rider = get_rider(db, rider_id)
    driver = get_driver(db, driver_id)
    logger.info("Driver %s rejected rider %s", driver.id, rider.id)
    return [
        Notification("rider", str(rider.id), "rideRejected", {
            "driver_id": str(driver.id),
            "is_booked": False,
            "message": "Your ride request has been rejected by the driver",
        })
    ]


def _check_driver(ride: Ride, driver_id) -> None:
    if driver_id is not None and ride.driver_id != driver_id:
        raise AuthorizationError("Only the assigned driver can verify this ride")


def verify_pickup_otp(db: Session, ride_id, otp: str, driver_id=None) -> tuple[Ride, bool, list[Notification]]:
    """Returns (ride, already_verified, notifications)."""
    ride = get_ride(db, ride_id)
    _check_driver(ride, driver_id)
    if str(otp).strip() != ride.pickup_otp:
        raise ValidationError("Invalid pickup OTP")
    if ride.is_pickup_verified:
        return ride, True, []
    now = datetime.utcnow()
    res = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.is_pickup_verified.is_(False))
        .values(is_pickup_verified=True, is_ride_started=True, started_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.refresh(ride)
        return ride, True, []
    for model, party_id in ((Driver, ride.driver_id), (Rider, ride.rider_id)):
        db.execute(
            update(model)
            .where(model.id == party_id)
            .values(is_on_ride=True, current_ride_id=ride.id)
            .execution_options(synchronize_session=False)
        )
    db.flush()
    db.refresh(ride)
    _count("accepted", "started")
    logger.info("Pickup verified for ride %s", ride.id)
    payload = {"ride_id": str(ride.id), "started_at": now.isoformat() + "Z"}
    return ride, False, [
        Notification("rider", str(ride.rider_id), "pickupVerified", payload),
        Notification("driver", str(ride.driver_id), "pickupVerified", payload),
    ]


def verify_drop_otp(db: Session, ride_id, otp: str, driver_id=None) -> tuple[Ride, bool, list[Notification]]:
    ride = get_ride(db, ride_id)
    _check_driver(ride, driver_id)
    if not ride.is_pickup_verified:
        raise ConflictError("Pickup has not been verified for this ride")
    if str(otp).strip() != ride.drop_otp:
        raise ValidationError("Invalid drop OTP")
    if ride.is_drop_verified:
        return ride, True, []
    now = datetime.utcnow()
    res = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.is_drop_verified.is_(False))
        .values(is_drop_verified=True, is_ride_ended=True, ended_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.refresh(ride)
        return ride, True, []
    db.execute(
        update(Driver)
        .where(Driver.id == ride.driver_id, Driver.current_ride_id == ride.id)
        .values(
            is_on_ride=False,
            current_ride_id=None,
            total_completed_rides=Driver.total_completed_rides + 1,
            total_distance_km=Driver.total_distance_km + ride.total_km,
        )
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(Rider)
        .where(Rider.id == ride.rider_id, Rider.current_ride_id == ride.id)
        .values(is_on_ride=False, current_ride_id=None)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    db.refresh(ride)
    _count("started", "ended")
    logger.info("Drop verified for ride %s", ride.id)
    payload = {"ride_id": str(ride.id), "ended_at": now.isoformat() + "Z", "total_amount": ride.total_amount}
    return ride, False, [
        Notification("rider", str(ride.rider_id), "rideCompleted", payload),
        Notification("driver", str(ride.driver_id), "rideCompleted", payload),
    ]


def cancel_ride(db: Session, ride_id, rider_id) -> list[Notification]:
    ride = get_ride(db, ride_id)
    if ride.rider_id != rider_id:
        raise AuthorizationError("Only the rider who booked this ride can cancel it")
    if ride.is_pickup_verified:
        raise ConflictError("Ride cannot be cancelled after pickup")
    driver_id, the_ride_id = ride.driver_id, ride.id
    res = db.execute(
        delete(Ride)
        .where(Ride.id == the_ride_id, Ride.is_pickup_verified.is_(False))
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConflictError("Ride cannot be cancelled after pickup")
    db.expunge(ride)
    for model, party_id in ((Driver, driver_id), (Rider, rider_id)):
        db.execute(
            update(model)
            .where(and_(model.id == party_id, model.current_ride_id == the_ride_id))
            .values(is_on_ride=False, current_ride_id=None)
            .execution_options(synchronize_session=False)
        )
    _count("accepted", "cancelled")
    logger.info("Ride %s cancelled by rider %s", the_ride_id, rider_id)
    return [
        Notification("driver", str(driver_id), "cancelRide", {
            "ride_id": str(the_ride_id),
            "rider_id": str(rider_id),
            "message": "The rider cancelled this ride",
        })
    ]
