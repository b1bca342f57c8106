import logging
from datetime import datetime

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from .errors import NotFoundError, AuthorizationError, ConflictError
from .models import Admin, Driver, DriverLocation, Franchise, Rider


logger = logging.getLogger("dispatch_ledger.parties")


def get_platform_admin(db: Session, for_update: bool = False) -> Admin:
    q = select(Admin).where(Admin.singleton_key == "default")
    if for_update:
        q = q.with_for_update()
    admin = db.execute(q).scalar_one_or_none()
    if admin is not None:
        return admin
    try:
        with db.begin_nested():
            admin = Admin(singleton_key="default")
            db.add(admin)
            db.flush()
    except DBIntegrityError:
        admin = db.execute(q).scalar_one()
    return admin


def get_driver(db: Session, driver_id, for_update: bool = False) -> Driver:
    if for_update:
        drv = db.execute(select(Driver).where(Driver.id == driver_id).with_for_update().execution_options(populate_existing=True)).scalar_one_or_none()
    else:
        drv = db.get(Driver, driver_id)
    if drv is None:
        raise NotFoundError("Driver not found")
    return drv


def get_rider(db: Session, rider_id) -> Rider:
    rider = db.get(Rider, rider_id)
    if rider is None:
        raise NotFoundError("Rider not found")
    return rider


def get_franchise(db: Session, franchise_id, for_update: bool = False) -> Franchise:
    if for_update:
        fr = db.execute(select(Franchise).where(Franchise.id == franchise_id).with_for_update().execution_options(populate_existing=True)).scalar_one_or_none()
    else:
        fr = db.get(Franchise, franchise_id)
    if fr is None:
        raise NotFoundError("Franchise not found")
    return fr


def recompute_total_drivers(db: Session, franchise_id) -> int:
    count = db.execute(
        select(func.count()).select_from(Driver).where(Driver.franchise_id == franchise_id, Driver.is_approved.is_(True))
    ).scalar_one()
    db.execute(update(Franchise).where(Franchise.id == franchise_id).values(total_drivers=count))
    return int(count)


def set_driver_approval(db: Session, driver_id, approved: bool, approver_role: str, approver_id=None) -> Driver:
    """Franchise approves its own drivers; admin approves anyone."""
    drv = get_driver(db, driver_id, for_update=True)
    if approver_role == "franchise":
        if drv.franchise_id is None or drv.franchise_id != approver_id:
            raise AuthorizationError("Franchise can only approve its own drivers")
    elif approver_role != "admin":
        raise AuthorizationError("Only a franchise or the admin can approve drivers")
    if not approved and (drv.is_on_ride or drv.current_ride_id is not None):
        raise ConflictError("Driver is on an active ride")
    drv.is_approved = approved
    if not approved:
        drv.is_active = False
    db.flush()
    if drv.franchise_id is not None:
        recompute_total_drivers(db, drv.franchise_id)
    logger.info("Driver %s %s by %s", drv.id, "approved" if approved else "unapproved", approver_role)
    return drv


def set_driver_active(db: Session, driver_id, active: bool) -> Driver:
    drv = get_driver(db, driver_id, for_update=True)
    if active and not drv.is_approved:
        raise ConflictError("Driver is not approved yet")
    if not active and drv.current_ride_id is not None:
        raise ConflictError("Finish the current ride before going offline")
    drv.is_active = active
    db.flush()
    return drv


def set_driver_location(db: Session, driver_id, lat: float, lon: float) -> DriverLocation:
    drv = get_driver(db, driver_id)
    loc = db.execute(select(DriverLocation).where(DriverLocation.driver_id == drv.id)).scalar_one_or_none()
    if loc is None:
        loc = DriverLocation(driver_id=drv.id, lat=lat, lon=lon)
        db.add(loc)
    else:
        loc.lat = lat
        loc.lon = lon
        loc.updated_at = datetime.utcnow()
    db.flush()
    return loc


def serialize_driver(drv: Driver) -> dict:
    return {
        "id": str(drv.id),
        "name": drv.name,
        "phone": drv.phone,
        "franchise_id": str(drv.franchise_id) if drv.franchise_id else None,
        "is_active": drv.is_active,
        "is_approved": drv.is_approved,
        "is_on_ride": drv.is_on_ride,
        "current_ride_id": str(drv.current_ride_id) if drv.current_ride_id else None,
        "wallets": {
            "cash": drv.cash_wallet,
            "online": drv.online_wallet,
            "due": drv.due_wallet,
        },
        "total_earning": drv.total_earning,
        "total_completed_rides": drv.total_completed_rides,
        "total_distance_km": round(drv.total_distance_km or 0.0, 2),
    }


def serialize_franchise(fr: Franchise) -> dict:
    return {
        "id": str(fr.id),
        "name": fr.name,
        "is_active": fr.is_active,
        "is_approved": fr.is_approved,
        "due_wallet": fr.due_wallet,
        "total_earnings": fr.total_earnings,
        "settled_earnings": fr.settled_earnings,
        "accumulated_admin_profit": fr.accumulated_admin_profit,
        "total_drivers": fr.total_drivers,
        "weekly_accumulations": fr.weekly_accumulations or {},
        "auto_bill_generation_enabled": fr.auto_bill_generation_enabled,
        "next_bill_generation_date": fr.next_bill_generation_date.isoformat() + "Z" if fr.next_bill_generation_date else None,
    }
