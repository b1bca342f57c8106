import logging
from datetime import datetime

from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.orm import Session

from .commission import resolve_rates, split_fare
from .config import settings
from .errors import NotFoundError, ValidationError
from .geo import haversine_km, bounding_box, eta_range_minutes
from .models import Driver, DriverLocation, Rider
from .pricing import fare_settings_store, quote_fare


logger = logging.getLogger("dispatch_ledger.locator")

DRIVER_SEARCH = Counter(
    "dispatch_driver_search_total",
    "Nearby driver searches",
    ["result"],
)


def _eligible_drivers_near(db: Session, lat: float, lon: float, radius_km: float) -> list[tuple[Driver, DriverLocation, float]]:
    min_lat, max_lat, min_lon, max_lon = bounding_box(lat, lon, radius_km)
    rows = db.execute(
        select(Driver, DriverLocation)
        .join(DriverLocation, Driver.id == DriverLocation.driver_id)
        .where(
            Driver.is_active.is_(True),
            Driver.is_approved.is_(True),
            Driver.is_on_ride.is_(False),
            Driver.current_ride_id.is_(None),
            Driver.due_wallet < settings.DRIVER_DUE_LIMIT,
            DriverLocation.lat.between(min_lat, max_lat),
            DriverLocation.lon.between(min_lon, max_lon),
        )
    ).all()
    candidates = []
    for drv, loc in rows:
        d = haversine_km(lat, lon, loc.lat, loc.lon)
        if d > radius_km:
            continue
        candidates.append((drv, loc, d))
    candidates.sort(key=lambda item: item[2])
    return candidates


def find_available_drivers(
    db: Session,
    rider_id,
    pickup_lat: float,
    pickup_lon: float,
    drop_lat: float,
    drop_lon: float,
    start_time: datetime | None = None,
) -> dict:
    rider = db.get(Rider, rider_id)
    if rider is None:
        raise NotFoundError("Rider not found")
    trip_km = haversine_km(pickup_lat, pickup_lon, drop_lat, drop_lon)
    if trip_km <= 0:
        raise ValidationError("Pickup and drop locations must differ")
    snapshot = fare_settings_store.get(db)
    start_time = start_time or datetime.now()

    rates_by_franchise: dict = {}
    results = []
    for drv, loc, to_pickup_km in _eligible_drivers_near(db, pickup_lat, pickup_lon, settings.DISPATCH_RADIUS_KM):
        fkey = drv.franchise_id
        if fkey not in rates_by_franchise:
            # quote only: never creates commission rows
            rates_by_franchise[fkey] = resolve_rates(db, drv.franchise, create_missing=False)
        admin_rate, franchise_rate, franchise_id = rates_by_franchise[fkey]
        quote = quote_fare(snapshot, to_pickup_km + trip_km, start_time)
        split = split_fare(quote.total_fare, admin_rate, franchise_rate, franchise_id)
        eta_min, eta_max = eta_range_minutes(to_pickup_km)
        results.append(
            {
                "driver_id": str(drv.id),
                "name": drv.name,
                "phone": drv.phone,
                "location": {"lat": loc.lat, "lon": loc.lon},
                "has_franchise": split.has_franchise,
                "franchise_id": str(franchise_id) if franchise_id else None,
                "franchise_name": drv.franchise.name if franchise_id else None,
                "distance_to_pickup_km": round(to_pickup_km, 2),
                "eta_minutes": {"min": eta_min, "max": eta_max},
                "total_price": quote.total_fare,
                "fare_breakdown": quote.as_dict(),
                "commission_breakdown": split.as_dict(),
            }
        )

    DRIVER_SEARCH.labels("found" if results else "empty").inc()
    logger.info("Driver search for rider %s: %d candidates", rider.id, len(results))
    return {
        "available_drivers": results,
        "fare_settings": snapshot.summary(),
        "total_km_pickup_to_drop": round(trip_km, 2),
        "is_available": bool(results),
    }
