from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import uuid

from ..auth import Principal, get_db, require_roles
from ..errors import envelope, AuthorizationError
from ..ledger import driver_ledger
from ..parties import get_driver


router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/drivers/{driver_id}")
def get_driver_ledger(
    driver_id: uuid.UUID,
    principal: Principal = Depends(require_roles("admin", "franchise", "driver")),
    db: Session = Depends(get_db),
):
    driver = get_driver(db, driver_id)
    if principal.role == "driver" and principal.subject_id != driver.id:
        raise AuthorizationError("Drivers can only view their own ledger")
    if principal.role == "franchise" and principal.subject_id != driver.franchise_id:
        raise AuthorizationError("Franchise can only view its own drivers' ledgers")
    return envelope(driver_ledger(db, driver.id))
