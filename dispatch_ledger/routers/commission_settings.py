from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
import uuid

from ..auth import Principal, get_db, require_admin, require_roles
from ..commission import (
    get_commission_settings,
    update_commission_settings,
    deactivate_commission_settings,
    reactivate_commission_settings,
    list_commission_settings,
    commission_history,
    serialize_commission_setting,
    serialize_commission_history,
)
from ..errors import envelope, AuthorizationError
from ..schemas import CommissionUpdateIn, ReasonIn


router = APIRouter(prefix="/commission-settings", tags=["commission-settings"])


def _own_or_admin(principal: Principal, franchise_id: uuid.UUID) -> None:
    if principal.role == "franchise" and principal.subject_id != franchise_id:
        raise AuthorizationError("Franchise can only view its own commission settings")


@router.get("")
def list_settings(principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    items = list_commission_settings(db)
    return envelope({"franchises": items, "total": len(items)})


@router.get("/{franchise_id}")
def get_settings(
    franchise_id: uuid.UUID,
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    _own_or_admin(principal, franchise_id)
    row = get_commission_settings(db, franchise_id, actor=principal.actor)
    return envelope(serialize_commission_setting(row))


@router.put("/{franchise_id}")
def put_settings(
    franchise_id: uuid.UUID,
    payload: CommissionUpdateIn,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    result = update_commission_settings(
        db,
        franchise_id,
        payload.admin_commission_rate,
        payload.franchise_commission_rate,
        principal.actor,
        payload.reason,
    )
    data = {
        "setting": serialize_commission_setting(result["setting"]),
        "changes_made": result["changes_made"],
        "warnings": result["warnings"],
    }
    message = "Commission settings updated" if result["changes_made"] else "No changes detected"
    return envelope(data, message)


@router.get("/{franchise_id}/history")
def get_history(
    franchise_id: uuid.UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    _own_or_admin(principal, franchise_id)
    rows, total = commission_history(db, franchise_id, page, limit)
    return envelope({
        "history": [serialize_commission_history(h) for h in rows],
        "pagination": {"page": page, "limit": limit, "total": total},
    })


@router.put("/{franchise_id}/deactivate")
def deactivate(
    franchise_id: uuid.UUID,
    payload: ReasonIn | None = None,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    row = deactivate_commission_settings(db, franchise_id, principal.actor, payload.reason if payload else None)
    return envelope(serialize_commission_setting(row), "Commission settings deactivated")


@router.put("/{franchise_id}/reactivate")
def reactivate(
    franchise_id: uuid.UUID,
    payload: ReasonIn | None = None,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    row = reactivate_commission_settings(db, franchise_id, principal.actor, payload.reason if payload else None)
    return envelope(serialize_commission_setting(row), "Commission settings reactivated")
