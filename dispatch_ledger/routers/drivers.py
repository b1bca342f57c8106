from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import uuid

from ..auth import Principal, get_db, require_roles
from ..errors import envelope
from ..parties import get_driver, set_driver_active, set_driver_approval, set_driver_location, serialize_driver
from ..schemas import DriverLocationIn, DriverStatusIn


router = APIRouter(prefix="/drivers", tags=["drivers"])

require_driver = require_roles("driver")


@router.put("/me/location")
def update_location(payload: DriverLocationIn, principal: Principal = Depends(require_driver), db: Session = Depends(get_db)):
    loc = set_driver_location(db, principal.subject_id, payload.lat, payload.lon)
    return envelope({"lat": loc.lat, "lon": loc.lon, "updated_at": loc.updated_at.isoformat() + "Z"}, "Location updated")


@router.put("/me/status")
def update_status(payload: DriverStatusIn, principal: Principal = Depends(require_driver), db: Session = Depends(get_db)):
    drv = set_driver_active(db, principal.subject_id, payload.is_active)
    return envelope(serialize_driver(drv), "Driver is online" if drv.is_active else "Driver is offline")


@router.get("/me/wallet")
def my_wallet(principal: Principal = Depends(require_driver), db: Session = Depends(get_db)):
    drv = get_driver(db, principal.subject_id)
    data = serialize_driver(drv)
    return envelope({
        "wallets": data["wallets"],
        "total_earning": data["total_earning"],
        "total_completed_rides": data["total_completed_rides"],
        "total_distance_km": data["total_distance_km"],
    })


@router.post("/{driver_id}/approve")
def approve_driver(
    driver_id: uuid.UUID,
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    drv = set_driver_approval(db, driver_id, True, principal.role, principal.subject_id)
    return envelope(serialize_driver(drv), "Driver approved")


@router.post("/{driver_id}/reject")
def reject_driver(
    driver_id: uuid.UUID,
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    drv = set_driver_approval(db, driver_id, False, principal.role, principal.subject_id)
    return envelope(serialize_driver(drv), "Driver rejected")
