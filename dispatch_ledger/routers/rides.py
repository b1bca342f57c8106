from fastapi import APIRouter, Depends, BackgroundTasks, Query
from sqlalchemy.orm import Session
from sqlalchemy import select, func
import uuid

from ..auth import Principal, get_current_principal, get_db, require_roles
from ..errors import envelope, AuthorizationError, NotFoundError
from ..ledger import post_payment
from ..lifecycle import (
    accept_ride,
    reject_ride,
    verify_pickup_otp,
    verify_drop_otp,
    cancel_ride,
    get_ride,
    serialize_ride,
)
from ..locator import find_available_drivers
from ..models import Ride
from ..schemas import (
    FindDriversIn,
    AcceptRideIn,
    RejectRideIn,
    VerifyOtpIn,
    CancelRideIn,
    PaymentModeIn,
)
from ..ws_manager import schedule


router = APIRouter(prefix="/rides", tags=["rides"])

require_rider = require_roles("rider")
require_driver = require_roles("driver")


def _party_column(principal: Principal):
    if principal.role == "rider":
        return Ride.rider_id
    if principal.role == "driver":
        return Ride.driver_id
    if principal.role == "franchise":
        return Ride.franchise_id
    return None


def _check_party(ride: Ride, principal: Principal) -> None:
    if principal.is_admin:
        return
    col = _party_column(principal)
    if col is None or getattr(ride, col.key) != principal.subject_id:
        raise AuthorizationError("Not a party to this ride")


@router.post("/find-drivers")
def find_drivers(payload: FindDriversIn, principal: Principal = Depends(require_rider), db: Session = Depends(get_db)):
    data = find_available_drivers(
        db,
        principal.subject_id,
        payload.pickup_lat,
        payload.pickup_lon,
        payload.drop_lat,
        payload.drop_lon,
        payload.start_time,
    )
    message = "Drivers found" if data["is_available"] else "No drivers available nearby"
    return envelope(data, message)


@router.post("/accept", status_code=201)
def accept(
    payload: AcceptRideIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_driver),
    db: Session = Depends(get_db),
):
    supplied = payload.commission_breakdown.model_dump() if payload.commission_breakdown else None
    ride, notifications = accept_ride(
        db,
        principal.subject_id,
        payload.rider_id,
        payload.pickup.model_dump(),
        payload.drop.model_dump(),
        payload.total_km,
        payload.total_price,
        supplied,
    )
    schedule(background_tasks, notifications)
    return envelope(serialize_ride(ride), "Ride accepted", 201)


@router.post("/reject")
def reject(
    payload: RejectRideIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_driver),
    db: Session = Depends(get_db),
):
    notifications = reject_ride(db, principal.subject_id, payload.rider_id)
    schedule(background_tasks, notifications)
    return envelope({"rider_id": str(payload.rider_id), "is_booked": False}, "Ride rejected")


@router.post("/verify-pickup-otp")
def pickup_otp(
    payload: VerifyOtpIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_driver),
    db: Session = Depends(get_db),
):
    ride, already, notifications = verify_pickup_otp(db, payload.ride_id, payload.otp, principal.subject_id)
    schedule(background_tasks, notifications)
    return envelope(serialize_ride(ride), "Pickup already verified" if already else "Pickup verified")


@router.post("/verify-drop-otp")
def drop_otp(
    payload: VerifyOtpIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_driver),
    db: Session = Depends(get_db),
):
    ride, already, notifications = verify_drop_otp(db, payload.ride_id, payload.otp, principal.subject_id)
    schedule(background_tasks, notifications)
    return envelope(serialize_ride(ride), "Drop already verified" if already else "Ride completed")


@router.post("/cancel")
def cancel(
    payload: CancelRideIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_rider),
    db: Session = Depends(get_db),
):
    notifications = cancel_ride(db, payload.ride_id, principal.subject_id)
    schedule(background_tasks, notifications)
    return envelope({"ride_id": str(payload.ride_id)}, "Ride cancelled")


@router.post("/payment-mode")
def payment_mode(
    payload: PaymentModeIn,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(require_roles("rider", "driver")),
    db: Session = Depends(get_db),
):
    _check_party(get_ride(db, payload.ride_id), principal)
    ride, entry, notifications = post_payment(db, payload.ride_id, payload.payment_mode)
    schedule(background_tasks, notifications)
    data = serialize_ride(ride)
    data["ledger_entry_id"] = str(entry.id)
    return envelope(data, "Payment mode updated")


@router.get("/active")
def active_ride(principal: Principal = Depends(require_roles("rider", "driver", "admin")), db: Session = Depends(get_db)):
    if principal.is_admin:
        rows = db.execute(
            select(Ride).where(Ride.is_payment_done.is_(False)).order_by(Ride.accepted_at.desc())
        ).scalars().all()
        return envelope({"rides": [serialize_ride(r) for r in rows], "total": len(rows)})
    col = _party_column(principal)
    ride = db.execute(
        select(Ride)
        .where(col == principal.subject_id, Ride.is_payment_done.is_(False))
        .order_by(Ride.accepted_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if ride is None:
        return envelope(None, "No active ride")
    return envelope(serialize_ride(ride, include_otps=principal.role == "rider"))


@router.get("/history")
def ride_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    q = select(Ride).where(Ride.is_ride_ended.is_(True), Ride.is_payment_done.is_(True))
    col = _party_column(principal)
    if col is not None:
        q = q.where(col == principal.subject_id)
    elif not principal.is_admin:
        raise AuthorizationError("Not allowed to list rides")
    total = db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = db.execute(q.order_by(Ride.accepted_at.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return envelope({
        "rides": [serialize_ride(r) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": int(total)},
    })


@router.get("/{ride_id}")
def ride_detail(ride_id: uuid.UUID, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    ride = db.get(Ride, ride_id)
    if ride is None:
        raise NotFoundError("Ride not found")
    _check_party(ride, principal)
    return envelope(serialize_ride(ride, include_otps=principal.role in ("rider", "admin")))
