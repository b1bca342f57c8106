import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ValidationError, NotFoundError, ConflictError, IntegrityError
from .models import Franchise, CommissionSetting, CommissionSettingHistory, Driver, DueRequest
from .pricing import ceil_money, to_decimal


logger = logging.getLogger("dispatch_ledger.commission")


@dataclass(frozen=True)
class CommissionSplit:
    total_fare: int
    admin_rate: float
    franchise_rate: float
    admin_profit: int
    franchise_profit: int
    driver_profit: int
    franchise_id: uuid.UUID | None = None

    @property
    def has_franchise(self) -> bool:
        return self.franchise_id is not None

    def as_dict(self) -> dict:
        data = asdict(self)
        data["franchise_id"] = str(self.franchise_id) if self.franchise_id else None
        data["has_franchise"] = self.has_franchise
        return data


def franchise_is_eligible(franchise: Franchise | None) -> bool:
    return bool(franchise is not None and franchise.is_active and franchise.is_approved)


def _check_rate(name: str, value) -> None:
    if value is None or not (0 <= value <= 100):
        raise ValidationError(f"{name} must be between 0 and 100")


def split_fare(fare: int, admin_rate: float, franchise_rate: float = 0, franchise_id: uuid.UUID | None = None) -> CommissionSplit:
    """Split a fare into admin/franchise/driver shares.

    The franchise and admin shares are each rounded up; the driver keeps the
    remainder, so the three always sum to ``fare``.
    """
    if fare is None or fare <= 0 or int(fare) != fare:
        raise ValidationError("Fare must be a positive whole amount")
    fare = int(fare)
    _check_rate("admin_commission_rate", admin_rate)
    if franchise_id is None:
        franchise_rate = 0
    _check_rate("franchise_commission_rate", franchise_rate)
    franchise_profit = ceil_money(to_decimal(franchise_rate) * fare / 100) if franchise_id is not None else 0
    admin_profit = ceil_money(to_decimal(admin_rate) * fare / 100)
    driver_profit = fare - franchise_profit - admin_profit
    if driver_profit < 0:
        logger.error(
            "Negative driver share: fare=%s admin_rate=%s franchise_rate=%s franchise=%s",
            fare, admin_rate, franchise_rate, franchise_id,
        )
        raise IntegrityError("Commission shares exceed the fare")
    return CommissionSplit(
        total_fare=fare,
        admin_rate=float(admin_rate),
        franchise_rate=float(franchise_rate),
        admin_profit=admin_profit,
        franchise_profit=franchise_profit,
        driver_profit=driver_profit,
        franchise_id=franchise_id,
    )


def _setting_query(franchise_id, for_update: bool = False):
    q = select(CommissionSetting).where(CommissionSetting.franchise_id == franchise_id)
    if for_update:
        q = q.with_for_update()
    return q


def get_or_create_commission_setting(
    db: Session, franchise: Franchise, actor: str = "system", for_update: bool = False
) -> tuple[CommissionSetting, bool]:
    """Idempotent; a created row gets one history entry per rate."""
    row = db.execute(_setting_query(franchise.id, for_update)).scalar_one_or_none()
    if row is not None:
        return row, False
    admin_rate = float(settings.DEFAULT_FRANCHISE_ADMIN_RATE)
    franchise_rate = float(settings.DEFAULT_FRANCHISE_COMMISSION_RATE)
    try:
        with db.begin_nested():
            row = CommissionSetting(
                franchise_id=franchise.id,
                admin_commission_rate=admin_rate,
                franchise_commission_rate=franchise_rate,
                is_active=True,
                created_by=actor,
            )
            db.add(row)
            db.flush()
            for setting_type, field_name, value in (
                ("admin_commission", "admin_commission_rate", admin_rate),
                ("franchise_commission", "franchise_commission_rate", franchise_rate),
            ):
                db.add(
                    CommissionSettingHistory(
                        commission_setting_id=row.id,
                        franchise_id=franchise.id,
                        setting_type=setting_type,
                        field_name=field_name,
                        old_value=0,
                        new_value=value,
                        changed_by=actor,
                        reason="Initial commission settings created",
                    )
                )
            db.flush()
    except DBIntegrityError:
        row = db.execute(_setting_query(franchise.id, for_update)).scalar_one()
        return row, False
    logger.info("Created default commission settings for franchise %s (%s/%s)", franchise.id, admin_rate, franchise_rate)
    return row, True


def resolve_rates(db: Session, franchise: Franchise | None, create_missing: bool = False) -> tuple[float, float, uuid.UUID | None]:
    if not franchise_is_eligible(franchise):
        return float(settings.PLATFORM_ADMIN_COMMISSION_RATE), 0.0, None
    defaults = (
        float(settings.DEFAULT_FRANCHISE_ADMIN_RATE),
        float(settings.DEFAULT_FRANCHISE_COMMISSION_RATE),
        franchise.id,
    )
    row = db.execute(_setting_query(franchise.id)).scalar_one_or_none()
    if row is None:
        if not create_missing:
            return defaults
        row, _ = get_or_create_commission_setting(db, franchise)
    if not row.is_active:
        return defaults
    return row.admin_commission_rate, row.franchise_commission_rate, franchise.id


def resolve_split(db: Session, fare: int, franchise: Franchise | None, create_missing: bool = False) -> CommissionSplit:
    admin_rate, franchise_rate, franchise_id = resolve_rates(db, franchise, create_missing=create_missing)
    return split_fare(fare, admin_rate, franchise_rate, franchise_id)


def _get_franchise(db: Session, franchise_id) -> Franchise:
    franchise = db.get(Franchise, franchise_id)
    if franchise is None:
        raise NotFoundError("Franchise not found")
    return franchise


def _history(row: CommissionSetting, setting_type: str, field_name: str, old, new, actor: str, reason: str, now: datetime):
    return CommissionSettingHistory(
        commission_setting_id=row.id,
        franchise_id=row.franchise_id,
        setting_type=setting_type,
        field_name=field_name,
        old_value=old,
        new_value=new,
        changed_by=actor,
        reason=reason,
        changed_at=now,
    )


def get_commission_settings(db: Session, franchise_id, actor: str = "system") -> CommissionSetting:
    franchise = _get_franchise(db, franchise_id)
    row, _ = get_or_create_commission_setting(db, franchise, actor=actor)
    return row


def update_commission_settings(
    db: Session,
    franchise_id,
    admin_rate: float | None,
    franchise_rate: float | None,
    actor: str,
    reason: str | None = None,
) -> dict:
    if admin_rate is None and franchise_rate is None:
        raise ValidationError("At least one commission rate is required")
    if admin_rate is not None:
        _check_rate("admin_commission_rate", admin_rate)
    if franchise_rate is not None:
        _check_rate("franchise_commission_rate", franchise_rate)
    franchise = _get_franchise(db, franchise_id)

    busy = (
        db.execute(
            select(Driver).where(
                Driver.franchise_id == franchise.id,
                or_(Driver.is_on_ride.is_(True), Driver.current_ride_id.is_not(None)),
            )
        )
        .scalars()
        .all()
    )
    if busy:
        names = ", ".join(d.name or str(d.id) for d in busy)
        raise ConflictError(f"Cannot update commission settings while drivers are on active rides: {names}")

    row, _ = get_or_create_commission_setting(db, franchise, actor=actor, for_update=True)
    new_admin = float(admin_rate) if admin_rate is not None else row.admin_commission_rate
    new_franchise = float(franchise_rate) if franchise_rate is not None else row.franchise_commission_rate
    if new_admin + new_franchise > 100:
        raise ValidationError("Admin and franchise commission rates together cannot exceed 100")

    due_drivers = db.execute(
        select(func.count()).select_from(Driver).where(Driver.franchise_id == franchise.id, Driver.due_wallet > 0)
    ).scalar_one()
    pending = db.execute(
        select(func.count())
        .select_from(DueRequest)
        .join(Driver, Driver.id == DueRequest.requester_id)
        .where(
            DueRequest.requester_kind == "driver",
            DueRequest.status == "pending",
            Driver.franchise_id == franchise.id,
        )
    ).scalar_one()
    warning = None
    if due_drivers or pending:
        warning = (
            "Some drivers have due balances or pending due requests. "
            "Commission changes will affect future rides only."
        )

    now = datetime.utcnow()
    changes: dict = {}
    if new_admin != row.admin_commission_rate:
        db.add(_history(row, "admin_commission", "admin_commission_rate", row.admin_commission_rate, new_admin,
                        actor, reason or "Admin commission rate updated", now))
        changes["admin_commission_rate"] = {"old": row.admin_commission_rate, "new": new_admin}
        row.admin_commission_rate = new_admin
    if new_franchise != row.franchise_commission_rate:
        db.add(_history(row, "franchise_commission", "franchise_commission_rate", row.franchise_commission_rate,
                        new_franchise, actor, reason or "Franchise commission rate updated", now))
        changes["franchise_commission_rate"] = {"old": row.franchise_commission_rate, "new": new_franchise}
        row.franchise_commission_rate = new_franchise
    if changes:
        row.updated_by = actor
        row.updated_at = now
        db.flush()
        logger.info("Commission settings for franchise %s changed by %s: %s", franchise.id, actor, changes)
    return {
        "setting": row,
        "changes_made": changes,
        "warnings": {
            "has_due_issues": bool(due_drivers or pending),
            "due_drivers_count": int(due_drivers),
            "pending_requests_count": int(pending),
            "message": warning,
        },
    }


def _set_active(db: Session, franchise_id, active: bool, actor: str, reason: str | None) -> CommissionSetting:
    _get_franchise(db, franchise_id)
    row = db.execute(_setting_query(franchise_id, for_update=True)).scalar_one_or_none()
    if row is None:
        raise NotFoundError("Commission settings not found")
    if row.is_active == active:
        raise ConflictError(f"Commission settings are already {'active' if active else 'inactive'}")
    now = datetime.utcnow()
    default_reason = "Commission settings reactivated" if active else "Commission settings deactivated"
    db.add(_history(row, "system", "is_active", float(row.is_active), float(active), actor, reason or default_reason, now))
    row.is_active = active
    row.updated_by = actor
    row.updated_at = now
    db.flush()
    logger.info("Commission settings for franchise %s %s by %s", franchise_id, "reactivated" if active else "deactivated", actor)
    return row


def deactivate_commission_settings(db: Session, franchise_id, actor: str, reason: str | None = None) -> CommissionSetting:
    return _set_active(db, franchise_id, False, actor, reason)


def reactivate_commission_settings(db: Session, franchise_id, actor: str, reason: str | None = None) -> CommissionSetting:
    return _set_active(db, franchise_id, True, actor, reason)


def list_commission_settings(db: Session) -> list[dict]:
    rows = db.execute(
        select(Franchise, CommissionSetting)
        .outerjoin(CommissionSetting, CommissionSetting.franchise_id == Franchise.id)
        .order_by(Franchise.created_at.asc())
    ).all()
    items = []
    for franchise, setting in rows:
        if setting is not None and setting.is_active:
            admin_rate, franchise_rate = setting.admin_commission_rate, setting.franchise_commission_rate
        else:
            admin_rate = float(settings.DEFAULT_FRANCHISE_ADMIN_RATE)
            franchise_rate = float(settings.DEFAULT_FRANCHISE_COMMISSION_RATE)
        items.append(
            {
                "franchise": {
                    "id": str(franchise.id),
                    "name": franchise.name,
                    "is_active": franchise.is_active,
                    "is_approved": franchise.is_approved,
                },
                "admin_commission_rate": admin_rate,
                "franchise_commission_rate": franchise_rate,
                "driver_share_percent": 100 - admin_rate - franchise_rate,
                "is_default": setting is None or not setting.is_active,
                "settings": serialize_commission_setting(setting) if setting is not None else None,
            }
        )
    return items


def commission_history(db: Session, franchise_id, page: int = 1, limit: int = 50) -> tuple[list[CommissionSettingHistory], int]:
    _get_franchise(db, franchise_id)
    q = select(CommissionSettingHistory).where(CommissionSettingHistory.franchise_id == franchise_id)
    total = db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = (
        db.execute(
            q.order_by(CommissionSettingHistory.changed_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        .scalars()
        .all()
    )
    return list(rows), int(total)


def serialize_commission_setting(row: CommissionSetting) -> dict:
    return {
        "id": str(row.id),
        "franchise_id": str(row.franchise_id),
        "admin_commission_rate": row.admin_commission_rate,
        "franchise_commission_rate": row.franchise_commission_rate,
        "is_active": row.is_active,
        "created_by": row.created_by,
        "updated_by": row.updated_by,
        "updated_at": row.updated_at.isoformat() + "Z",
    }


def serialize_commission_history(h: CommissionSettingHistory) -> dict:
    return {
        "id": str(h.id),
        "setting_type": h.setting_type,
        "field_name": h.field_name,
        "old_value": h.old_value,
        "new_value": h.new_value,
        "changed_by": h.changed_by,
        "reason": h.reason,
        "changed_at": h.changed_at.isoformat() + "Z",
    }
