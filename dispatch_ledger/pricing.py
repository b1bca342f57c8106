"""Fare quoting and the fare settings singleton.

Quotes are a pure function of a :class:`FareSettingsSnapshot`; the snapshot
is loaded through :data:`fare_settings_store`, which caches it for
``FARE_SETTINGS_CACHE_SECS`` and is invalidated whenever this process changes
the settings.
"""
import logging
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal, ROUND_CEILING

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ValidationError
from .models import FareSetting, FareSettingHistory


logger = logging.getLogger("dispatch_ledger.pricing")

FARE_FIELDS = ("base_fare", "per_km_charge", "night_surcharge_percent", "night_start_hour", "night_end_hour")
_SINGLETON_KEY = "default"


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def ceil_money(value) -> int:
    return int(to_decimal(value).to_integral_value(rounding=ROUND_CEILING))


def is_night_hour(hour: int, start_hour: int, end_hour: int) -> bool:
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    if start_hour > end_hour:
        # window wraps past midnight, e.g. 22 -> 6
        return hour >= start_hour or hour < end_hour
    return False


@dataclass(frozen=True)
class FareSettingsSnapshot:
    base_fare: float
    per_km_charge: float
    night_surcharge_percent: float
    night_start_hour: int
    night_end_hour: int
    version: int = 0

    @classmethod
    def from_row(cls, row: FareSetting) -> "FareSettingsSnapshot":
        return cls(
            base_fare=row.base_fare,
            per_km_charge=row.per_km_charge,
            night_surcharge_percent=row.night_surcharge_percent,
            night_start_hour=row.night_start_hour,
            night_end_hour=row.night_end_hour,
            version=row.version,
        )

    @property
    def night_hours(self) -> str:
        return f"{self.night_start_hour}:00 - {self.night_end_hour}:00"

    def summary(self) -> dict:
        data = asdict(self)
        data["night_hours"] = self.night_hours
        return data


def default_fare_values() -> dict:
    return {
        "base_fare": float(settings.DEFAULT_BASE_FARE),
        "per_km_charge": float(settings.DEFAULT_PER_KM_CHARGE),
        "night_surcharge_percent": float(settings.DEFAULT_NIGHT_SURCHARGE_PERCENT),
        "night_start_hour": int(settings.DEFAULT_NIGHT_START_HOUR),
        "night_end_hour": int(settings.DEFAULT_NIGHT_END_HOUR),
    }


@dataclass(frozen=True)
class FareQuote:
    distance_km: float
    base_fare: float
    per_km_charge: float
    distance_charge: int
    subtotal: int
    is_night_time: bool
    night_surcharge_percent: float
    night_surcharge_amount: int
    total_fare: int
    settings_version: int

    def as_dict(self) -> dict:
        data = asdict(self)
        data["distance_km"] = round(self.distance_km, 2)
        return data


def quote_fare(snapshot: FareSettingsSnapshot, distance_km: float, start_time: datetime | None = None) -> FareQuote:
    """ceil(base + km * per_km), then ceil(x * (1 + surcharge/100)) inside the night window."""
    if distance_km is None or distance_km <= 0:
        raise ValidationError("Valid distance in kilometers is required")
    start_time = start_time or datetime.now()
    distance = to_decimal(distance_km)
    raw_distance_charge = distance * to_decimal(snapshot.per_km_charge)
    subtotal = ceil_money(to_decimal(snapshot.base_fare) + raw_distance_charge)
    night = is_night_hour(start_time.hour, snapshot.night_start_hour, snapshot.night_end_hour)
    total = subtotal
    if night:
        multiplier = 1 + to_decimal(snapshot.night_surcharge_percent) / 100
        total = ceil_money(subtotal * multiplier)
    return FareQuote(
        distance_km=float(distance_km),
        base_fare=snapshot.base_fare,
        per_km_charge=snapshot.per_km_charge,
        distance_charge=ceil_money(raw_distance_charge),
        subtotal=subtotal,
        is_night_time=night,
        night_surcharge_percent=snapshot.night_surcharge_percent if night else 0,
        night_surcharge_amount=total - subtotal,
        total_fare=total,
        settings_version=snapshot.version,
    )


def _singleton_query(for_update: bool = False):
    q = select(FareSetting).where(FareSetting.singleton_key == _SINGLETON_KEY)
    if for_update:
        q = q.with_for_update()
    return q


def get_or_create_fare_setting(db: Session, for_update: bool = False) -> FareSetting:
    row = db.execute(_singleton_query(for_update)).scalar_one_or_none()
    if row is not None:
        return row
    try:
        with db.begin_nested():
            row = FareSetting(singleton_key=_SINGLETON_KEY, version=1, updated_by="system", **default_fare_values())
            db.add(row)
            db.flush()
            db.add(
                FareSettingHistory(
                    fare_setting_id=row.id,
                    field_name="initial_setup",
                    old_value=0,
                    new_value=1,
                    changed_by="system",
                    reason="Initial fare settings created",
                )
            )
            db.flush()
        logger.info("Created default fare settings")
    except DBIntegrityError:
        # another transaction created it first
        row = db.execute(_singleton_query(for_update)).scalar_one()
    return row


class FareSettingsStore:
    def __init__(self, ttl_secs: int) -> None:
        self._ttl = max(0, int(ttl_secs))
        self._lock = threading.Lock()
        self._snapshot: FareSettingsSnapshot | None = None
        self._loaded_at = 0.0

    def get(self, db: Session) -> FareSettingsSnapshot:
        with self._lock:
            snap = self._snapshot
            fresh = snap is not None and (time.monotonic() - self._loaded_at) < self._ttl
        if fresh:
            return snap
        return self.reload(db)

    def reload(self, db: Session) -> FareSettingsSnapshot:
        snap = FareSettingsSnapshot.from_row(get_or_create_fare_setting(db))
        with self._lock:
            self._snapshot = snap
            self._loaded_at = time.monotonic()
        return snap

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
            self._loaded_at = 0.0


fare_settings_store = FareSettingsStore(settings.FARE_SETTINGS_CACHE_SECS)


def _validate_fare_values(values: dict) -> None:
    for name in ("base_fare", "per_km_charge"):
        if name in values and values[name] < 0:
            raise ValidationError(f"{name} cannot be negative")
    pct = values.get("night_surcharge_percent")
    if pct is not None and not (0 <= pct <= 100):
        raise ValidationError("Night surcharge must be between 0 and 100")
    for name in ("night_start_hour", "night_end_hour"):
        if name not in values:
            continue
        hour = values[name]
        if int(hour) != hour or not (0 <= hour <= 23):
            raise ValidationError("Night hours must be whole numbers between 0 and 23")


def _apply_changes(db: Session, row: FareSetting, values: dict, actor: str, reason: str) -> dict:
    changes: dict = {}
    now = datetime.utcnow()
    for name in FARE_FIELDS:
        if name not in values:
            continue
        new = int(values[name]) if name.endswith("_hour") else float(values[name])
        old = getattr(row, name)
        if old == new:
            continue
        db.add(
            FareSettingHistory(
                fare_setting_id=row.id,
                field_name=name,
                old_value=old,
                new_value=new,
                changed_by=actor,
                reason=reason,
                changed_at=now,
            )
        )
        setattr(row, name, new)
        changes[name] = {"old": old, "new": new}
    if changes:
        row.version = (row.version or 0) + 1
        row.updated_by = actor
        row.updated_at = now
        db.flush()
        fare_settings_store.invalidate()
        logger.info("Fare settings v%s changed by %s: %s", row.version, actor, sorted(changes))
    return changes


def update_fare_settings(db: Session, values: dict, actor: str, reason: str | None = None) -> tuple[FareSetting, dict]:
    provided = {k: v for k, v in values.items() if k in FARE_FIELDS and v is not None}
    if not provided:
        raise ValidationError("No fields provided for update")
    _validate_fare_values(provided)
    row = get_or_create_fare_setting(db, for_update=True)
    changes = _apply_changes(db, row, provided, actor, reason or "Fare settings updated")
    return row, changes


def reset_fare_settings(db: Session, actor: str, reason: str | None) -> tuple[FareSetting, dict]:
    if not reason or not reason.strip():
        raise ValidationError("Reason for reset is required")
    row = get_or_create_fare_setting(db, for_update=True)
    changes = _apply_changes(db, row, default_fare_values(), actor, f"Reset to default: {reason.strip()}")
    return row, changes


def fare_history(
    db: Session,
    field_name: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[FareSettingHistory], int]:
    q = select(FareSettingHistory)
    if field_name:
        q = q.where(FareSettingHistory.field_name == field_name)
    if start is not None:
        q = q.where(FareSettingHistory.changed_at >= start)
    if end is not None:
        q = q.where(FareSettingHistory.changed_at <= end)
    total = db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = (
        db.execute(
            q.order_by(FareSettingHistory.changed_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def serialize_fare_setting(row: FareSetting) -> dict:
    return {
        "id": str(row.id),
        "base_fare": row.base_fare,
        "per_km_charge": row.per_km_charge,
        "night_surcharge_percent": row.night_surcharge_percent,
        "night_start_hour": row.night_start_hour,
        "night_end_hour": row.night_end_hour,
        "night_hours": f"{row.night_start_hour}:00 - {row.night_end_hour}:00",
        "version": row.version,
        "updated_by": row.updated_by,
        "updated_at": row.updated_at.isoformat() + "Z",
    }


def serialize_fare_history(h: FareSettingHistory) -> dict:
    return {
        "id": str(h.id),
        "field_name": h.field_name,
        "old_value": h.old_value,
        "new_value": h.new_value,
        "changed_by": h.changed_by,
        "reason": h.reason,
        "changed_at": h.changed_at.isoformat() + "Z",
    }
