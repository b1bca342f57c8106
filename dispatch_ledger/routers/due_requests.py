from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
import uuid

from ..auth import Principal, get_current_principal, get_db, require_admin, require_roles
from ..errors import envelope
from ..schemas import DriverDueRequestIn, FranchiseBillRequestIn, ApproveDueIn, RejectDueIn, WeeklyBillIn
from ..settlement import (
    create_driver_due_request,
    create_franchise_bill_request,
    approve_due_request,
    reject_due_request,
    generate_weekly_bill,
    run_scheduled_weekly_bills,
    list_due_requests,
    due_request_detail,
    due_request_statistics,
    list_weekly_bills,
    serialize_due_request,
    serialize_weekly_bill,
)


router = APIRouter(prefix="/due-requests", tags=["due-requests"])


@router.post("", status_code=201)
def create_driver_request(
    payload: DriverDueRequestIn,
    principal: Principal = Depends(require_roles("driver")),
    db: Session = Depends(get_db),
):
    req = create_driver_due_request(
        db,
        principal.subject_id,
        payload.due_amount,
        notes=payload.notes,
        payment_method=payload.payment_method,
        payment_photo=payload.payment_photo,
    )
    return envelope(serialize_due_request(req), "Due request submitted", 201)


@router.post("/franchise", status_code=201)
def create_franchise_request(
    payload: FranchiseBillRequestIn,
    principal: Principal = Depends(require_roles("franchise")),
    db: Session = Depends(get_db),
):
    req = create_franchise_bill_request(
        db,
        principal.subject_id,
        payload.weekly_bill_id,
        payload.payment_method,
        payload.payment_photo,
        payload.notes,
    )
    return envelope(serialize_due_request(req), "Weekly bill payment submitted", 201)


@router.get("")
def list_requests(
    status: str | None = None,
    request_type: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    rows, total = list_due_requests(db, principal.role, principal.subject_id, status, request_type, page, limit)
    return envelope({
        "due_requests": [serialize_due_request(r) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total},
    })


@router.get("/statistics")
def statistics(principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return envelope(due_request_statistics(db, principal.role, principal.subject_id))


@router.post("/weekly-bill", status_code=201)
def create_weekly_bill(payload: WeeklyBillIn, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    bill = generate_weekly_bill(db, payload.franchise_id, payload.period_start, payload.period_end)
    return envelope(serialize_weekly_bill(bill), "Weekly bill generated", 201)


@router.post("/weekly-bill/run")
def run_weekly_bills(principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    result = run_scheduled_weekly_bills(db)
    return envelope(
        {
            "generated": [serialize_weekly_bill(b) for b in result["generated"]],
            "skipped": result["skipped"],
        },
        f"Generated {len(result['generated'])} weekly bills",
    )


@router.get("/weekly-bills")
def weekly_bills(
    franchise_id: uuid.UUID | None = None,
    status: str | None = None,
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    bills = list_weekly_bills(db, principal.role, principal.subject_id, franchise_id, status)
    return envelope({"weekly_bills": [serialize_weekly_bill(b) for b in bills], "total": len(bills)})


@router.get("/{request_id}")
def request_detail(request_id: uuid.UUID, principal: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
    return envelope(due_request_detail(db, request_id, principal.role, principal.subject_id))


@router.patch("/{request_id}/approve")
def approve(
    request_id: uuid.UUID,
    payload: ApproveDueIn | None = None,
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    payload = payload or ApproveDueIn()
    req = approve_due_request(
        db,
        request_id,
        principal.role,
        principal.subject_id,
        payment_method=payload.payment_method,
        payment_photo=payload.payment_photo,
        note=payload.note,
    )
    return envelope(serialize_due_request(req), "Due request approved")


@router.patch("/{request_id}/reject")
def reject(
    request_id: uuid.UUID,
    payload: RejectDueIn | None = None,
    principal: Principal = Depends(require_roles("admin", "franchise")),
    db: Session = Depends(get_db),
):
    req = reject_due_request(db, request_id, principal.role, principal.subject_id, payload.note if payload else None)
    return envelope(serialize_due_request(req), "Due request rejected")
