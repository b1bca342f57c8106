from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import Principal, get_current_principal, get_db, require_admin
from ..errors import envelope, ValidationError
from ..pricing import (
    FARE_FIELDS,
    fare_settings_store,
    get_or_create_fare_setting,
    quote_fare,
    update_fare_settings,
    reset_fare_settings,
    fare_history,
    serialize_fare_setting,
    serialize_fare_history,
)
from ..schemas import FareSettingsUpdateIn, FareResetIn, FareCalculateIn


router = APIRouter(prefix="/fare-settings", tags=["fare-settings"])


@router.get("")
def get_fare_settings(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return envelope(serialize_fare_setting(get_or_create_fare_setting(db)))


@router.put("")
def put_fare_settings(payload: FareSettingsUpdateIn, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    values = payload.model_dump(exclude={"reason"}, exclude_none=True)
    row, changes = update_fare_settings(db, values, principal.actor, payload.reason)
    message = "Fare settings updated" if changes else "No changes detected"
    return envelope({"settings": serialize_fare_setting(row), "changes_made": changes}, message)


@router.post("/calculate")
def calculate_fare(payload: FareCalculateIn, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    quote = quote_fare(fare_settings_store.get(db), payload.distance_km, payload.start_time)
    return envelope(quote.as_dict(), "Fare calculated")


@router.get("/history")
def get_fare_history(
    field_name: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if field_name and field_name not in FARE_FIELDS:
        raise ValidationError(f"Unknown fare setting field '{field_name}'")
    rows, total = fare_history(db, field_name, start_date, end_date, page, limit)
    return envelope({
        "history": [serialize_fare_history(h) for h in rows],
        "pagination": {"page": page, "limit": limit, "total": total},
    })


@router.post("/reset")
def post_reset(payload: FareResetIn, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    row, changes = reset_fare_settings(db, principal.actor, payload.reason)
    return envelope({"settings": serialize_fare_setting(row), "changes_made": changes}, "Fare settings reset to defaults")
