"""Due requests and weekly franchise bills.

A driver asks to clear what they owe (``driver_due``); their active
franchise or the admin approves it, and a single approval settles the
driver's ledger. Franchises pay the admin's commission through weekly bills
(``franchise_weekly_bill``) which only the admin approves. Rejections record
a reason and never touch balances.
"""
import logging
from datetime import datetime, timezone

from prometheus_client import Counter
from sqlalchemy import select, update, delete, func, case
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from .commission import franchise_is_eligible
from .config import settings
from .errors import ValidationError, NotFoundError, ConflictError, AuthorizationError
from .ledger import profit_summary, PAYMENT_MODES
from .models import Admin, Driver, DueRequest, Franchise, LedgerAccount, LedgerEntry, Ride, WeeklyBill
from .parties import get_driver, get_franchise, get_platform_admin, serialize_franchise


logger = logging.getLogger("dispatch_ledger.settlement")

DRIVER_DUE = "driver_due"
FRANCHISE_WEEKLY_BILL = "franchise_weekly_bill"
REQUEST_TYPES = (DRIVER_DUE, FRANCHISE_WEEKLY_BILL)
STATUSES = ("pending", "approved", "rejected")

SETTLEMENT_EVENTS = Counter(
    "dispatch_settlement_events_total",
    "Due request and weekly bill events",
    ["request_type", "action", "result"],
)


def iso_week_key(when: datetime) -> str:
    year, week, _ = when.isocalendar()
    return f"{year}-W{week:02d}"


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _floored_decrement(column, amount: int):
    return case((column > amount, column - amount), else_=0)


def _check_payment_method(method: str | None) -> None:
    if method is not None and method not in PAYMENT_MODES:
        raise ValidationError("Payment method must be 'cash' or 'online'")


def _has_pending(db: Session, requester_kind: str, requester_id) -> bool:
    return (
        db.execute(
            select(DueRequest.id).where(
                DueRequest.requester_kind == requester_kind,
                DueRequest.requester_id == requester_id,
                DueRequest.status == "pending",
            )
        ).first()
        is not None
    )


def _insert_request(db: Session, req: DueRequest) -> DueRequest:
    try:
        with db.begin_nested():
            db.add(req)
            db.flush()
    except DBIntegrityError:
        # the partial unique index on pending requests
        raise ConflictError("A pending due request already exists")
    return req


def create_driver_due_request(
    db: Session,
    driver_id,
    amount: int,
    notes: str | None = None,
    payment_method: str | None = None,
    payment_photo: str | None = None,
) -> DueRequest:
    if amount is None or amount <= 0 or int(amount) != amount:
        raise ValidationError("Due amount must be a positive whole amount")
    _check_payment_method(payment_method)
    driver = get_driver(db, driver_id, for_update=True)
    if _has_pending(db, "driver", driver.id):
        SETTLEMENT_EVENTS.labels(DRIVER_DUE, "create", "duplicate").inc()
        raise ConflictError("A pending due request already exists")
    if amount > driver.due_wallet:
        SETTLEMENT_EVENTS.labels(DRIVER_DUE, "create", "exceeds_balance").inc()
        raise ValidationError(f"Requested amount exceeds current due balance ({driver.due_wallet})")
    franchised = franchise_is_eligible(driver.franchise)
    req = _insert_request(
        db,
        DueRequest(
            requester_kind="driver",
            requester_id=driver.id,
            request_type=DRIVER_DUE,
            franchise_id=driver.franchise_id if franchised else None,
            due_amount=int(amount),
            status="pending",
            approval_level="franchise_first" if franchised else "admin_only",
            payment_method=payment_method,
            payment_photo=payment_photo,
            notes=notes,
        ),
    )
    SETTLEMENT_EVENTS.labels(DRIVER_DUE, "create", "success").inc()
    logger.info("Driver %s requested due clearance of %s", driver.id, amount)
    return req


def create_franchise_bill_request(
    db: Session,
    franchise_id,
    bill_id,
    payment_method: str | None,
    payment_photo: str | None,
    notes: str | None = None,
) -> DueRequest:
    _check_payment_method(payment_method)
    if not payment_photo:
        raise ValidationError("Payment photo is required for a weekly bill payment")
    franchise = get_franchise(db, franchise_id, for_update=True)
    bill = db.execute(select(WeeklyBill).where(WeeklyBill.id == bill_id).with_for_update()).scalar_one_or_none()
    if bill is None:
        raise NotFoundError("Weekly bill not found")
    if bill.franchise_id != franchise.id:
        raise AuthorizationError("This bill belongs to another franchise")
    if bill.status != "generated" or bill.due_request_id is not None:
        raise ConflictError(f"Bill is {bill.status} and cannot take a new payment request")
    if _has_pending(db, "franchise", franchise.id):
        SETTLEMENT_EVENTS.labels(FRANCHISE_WEEKLY_BILL, "create", "duplicate").inc()
        raise ConflictError("A pending due request already exists")
    req = _insert_request(
        db,
        DueRequest(
            requester_kind="franchise",
            requester_id=franchise.id,
            request_type=FRANCHISE_WEEKLY_BILL,
            franchise_id=franchise.id,
            due_amount=bill.admin_commission_amount,
            status="pending",
            approval_level="admin_only",
            payment_method=payment_method or "online",
            payment_photo=payment_photo,
            notes=notes,
            weekly_bill_id=bill.id,
        ),
    )
    res = db.execute(
        update(WeeklyBill)
        .where(WeeklyBill.id == bill.id, WeeklyBill.status == "generated", WeeklyBill.due_request_id.is_(None))
        .values(status="pending_payment", due_request_id=req.id)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConflictError("Bill already has a payment request")
    db.refresh(bill)
    SETTLEMENT_EVENTS.labels(FRANCHISE_WEEKLY_BILL, "create", "success").inc()
    logger.info("Franchise %s submitted payment for bill %s (%s)", franchise.id, bill.id, req.due_amount)
    return req


def _get_request(db: Session, request_id) -> DueRequest:
    req = db.get(DueRequest, request_id)
    if req is None:
        raise NotFoundError("Due request not found")
    return req


def _approver_level(db: Session, req: DueRequest, role: str, principal_id) -> str:
    if role == "admin":
        return "admin"
    if req.request_type == FRANCHISE_WEEKLY_BILL:
        raise AuthorizationError("Only the admin can approve weekly bill payments")
    if role == "franchise":
        driver = get_driver(db, req.requester_id)
        if driver.franchise_id is not None and driver.franchise_id == principal_id and franchise_is_eligible(driver.franchise):
            return "franchise"
        raise AuthorizationError("Franchise can only resolve requests from its own drivers")
    raise AuthorizationError("Only a franchise or the admin can resolve due requests")


def _claim_pending(db: Session, req: DueRequest, values: dict) -> None:
    res = db.execute(
        update(DueRequest)
        .where(DueRequest.id == req.id, DueRequest.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConflictError("Due request has already been resolved")


def approve_due_request(
    db: Session,
    request_id,
    role: str,
    principal_id=None,
    payment_method: str | None = None,
    payment_photo: str | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> DueRequest:
    _check_payment_method(payment_method)
    req = _get_request(db, request_id)
    if req.status != "pending":
        raise ConflictError("Due request has already been resolved")
    level = _approver_level(db, req, role, principal_id)
    now = now or datetime.utcnow()
    values = {
        "status": "approved",
        "approved_by_kind": level,
        "resolved_at": now,
        "paid_amount": req.due_amount,
        "payment_date": now,
        "payment_method": payment_method or req.payment_method or "cash",
        "payment_photo": payment_photo or req.payment_photo,
    }
    if level == "franchise":
        values.update(approved_by_franchise=True, franchise_approved_at=now, franchise_approved_by=principal_id)
    else:
        values.update(approved_by_admin=True, admin_approved_at=now)
    if note:
        values["notes"] = note
    _claim_pending(db, req, values)

    if req.request_type == DRIVER_DUE:
        _settle_driver_due(db, req, now)
    else:
        _settle_weekly_bill(db, req, now)
    db.flush()
    db.refresh(req)
    SETTLEMENT_EVENTS.labels(req.request_type, "approve", "success").inc()
    logger.info("Due request %s approved by %s", req.id, level)
    return req


def _settle_driver_due(db: Session, req: DueRequest, now: datetime) -> None:
    driver = get_driver(db, req.requester_id, for_update=True)
    accounts = (
        db.execute(select(LedgerAccount).where(LedgerAccount.driver_id == driver.id).with_for_update())
        .scalars()
        .all()
    )
    account_ids = [a.id for a in accounts]
    per_scope = db.execute(
        select(
            LedgerAccount.franchise_id,
            func.coalesce(func.sum(LedgerEntry.driver_profit), 0),
            func.coalesce(func.sum(LedgerEntry.admin_profit), 0),
            func.coalesce(func.sum(LedgerEntry.franchise_profit), 0),
            func.count(LedgerEntry.id),
        )
        .select_from(LedgerAccount)
        .join(LedgerEntry, LedgerEntry.account_id == LedgerAccount.id)
        .where(LedgerAccount.driver_id == driver.id)
        .group_by(LedgerAccount.franchise_id)
    ).all()

    total_driver = total_admin = total_franchise = total_rides = 0
    platform_admin_profit = 0
    for franchise_id, driver_profit, admin_profit, franchise_profit, rides in per_scope:
        total_driver += int(driver_profit)
        total_admin += int(admin_profit)
        total_franchise += int(franchise_profit)
        total_rides += int(rides)
        if franchise_id is None:
            platform_admin_profit += int(admin_profit)
            continue
        franchise = get_franchise(db, franchise_id, for_update=True)
        franchise.due_wallet += int(franchise_profit)
        franchise.settled_earnings += int(franchise_profit)
        franchise.accumulated_admin_profit += int(admin_profit)
        weekly = dict(franchise.weekly_accumulations or {})
        key = iso_week_key(now)
        bucket = dict(weekly.get(key) or {"adminProfit": 0, "franchiseProfit": 0, "totalRides": 0})
        bucket["adminProfit"] += int(admin_profit)
        bucket["franchiseProfit"] += int(franchise_profit)
        bucket["totalRides"] += int(rides)
        weekly[key] = bucket
        franchise.weekly_accumulations = weekly

    if account_ids:
        db.execute(
            delete(LedgerEntry)
            .where(LedgerEntry.account_id.in_(account_ids))
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(LedgerAccount)
            .where(LedgerAccount.id.in_(account_ids))
            .values(driverdue=0, admindue=0, franchisedue=0, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        for account in accounts:
            db.expire(account)

    amount = req.due_amount
    db.execute(
        update(Driver)
        .where(Driver.id == driver.id)
        .values(
            due_wallet=_floored_decrement(Driver.due_wallet, amount),
            total_earning=Driver.total_earning + total_driver,
        )
        .execution_options(synchronize_session=False)
    )
    admin = get_platform_admin(db, for_update=True)
    db.execute(
        update(Admin)
        .where(Admin.id == admin.id)
        .values(
            due_wallet=_floored_decrement(Admin.due_wallet, amount),
            total_earning=Admin.total_earning + platform_admin_profit,
        )
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(DueRequest)
        .where(DueRequest.id == req.id)
        .values(
            settled_driver_profit=total_driver,
            settled_admin_profit=total_admin,
            settled_franchise_profit=total_franchise,
            settled_ride_count=total_rides,
        )
        .execution_options(synchronize_session=False)
    )
    db.flush()
    db.refresh(driver)
    db.refresh(admin)
    logger.info(
        "Settled driver %s: cleared %d rides (driver=%s admin=%s franchise=%s), due -%s",
        driver.id, total_rides, total_driver, total_admin, total_franchise, amount,
    )


def _settle_weekly_bill(db: Session, req: DueRequest, now: datetime) -> None:
    bill = db.execute(select(WeeklyBill).where(WeeklyBill.id == req.weekly_bill_id).with_for_update()).scalar_one_or_none()
    if bill is None:
        raise NotFoundError("Weekly bill not found")
    amount = bill.admin_commission_amount
    db.execute(
        update(Franchise)
        .where(Franchise.id == bill.franchise_id)
        .values(
            due_wallet=_floored_decrement(Franchise.due_wallet, amount),
            accumulated_admin_profit=_floored_decrement(Franchise.accumulated_admin_profit, amount),
        )
        .execution_options(synchronize_session=False)
    )
    admin = get_platform_admin(db, for_update=True)
    db.execute(
        update(Admin)
        .where(Admin.id == admin.id)
        .values(total_earning=Admin.total_earning + amount)
        .execution_options(synchronize_session=False)
    )
    bill.status = "paid"
    bill.paid_at = now
    db.flush()
    db.refresh(admin)
    logger.info("Weekly bill %s paid by franchise %s (%s)", bill.id, bill.franchise_id, amount)


def reject_due_request(db: Session, request_id, role: str, principal_id=None, reason: str | None = None) -> DueRequest:
    req = _get_request(db, request_id)
    if req.status != "pending":
        raise ConflictError("Due request has already been resolved")
    _approver_level(db, req, role, principal_id)
    now = datetime.utcnow()
    _claim_pending(
        db,
        req,
        {"status": "rejected", "notes": reason or "No rejection reason provided", "resolved_at": now},
    )
    if req.weekly_bill_id is not None:
        db.execute(
            update(WeeklyBill)
            .where(WeeklyBill.id == req.weekly_bill_id, WeeklyBill.due_request_id == req.id)
            .values(status="generated", due_request_id=None)
            .execution_options(synchronize_session=False)
        )
    db.flush()
    db.refresh(req)
    SETTLEMENT_EVENTS.labels(req.request_type, "reject", "success").inc()
    logger.info("Due request %s rejected by %s", req.id, role)
    return req


def generate_weekly_bill(
    db: Session,
    franchise_id,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    now: datetime | None = None,
) -> WeeklyBill:
    now = _naive_utc(now) or datetime.utcnow()
    period_end = _naive_utc(period_end) or now
    period_start = _naive_utc(period_start) or (period_end - settings.weekly_bill_period)
    if period_end <= period_start:
        raise ValidationError("Bill period end must be after its start")
    franchise = get_franchise(db, franchise_id, for_update=True)
    existing = db.execute(
        select(WeeklyBill.id).where(
            WeeklyBill.franchise_id == franchise.id,
            WeeklyBill.period_start == period_start,
            WeeklyBill.period_end == period_end,
        )
    ).first()
    if existing is not None:
        SETTLEMENT_EVENTS.labels(FRANCHISE_WEEKLY_BILL, "generate", "duplicate").inc()
        raise ConflictError("A bill already exists for this franchise and period")
    # a ride is billed at most once, whatever windows the bills cover
    billable = (
        Ride.franchise_id == franchise.id,
        Ride.is_payment_done.is_(True),
        Ride.weekly_bill_id.is_(None),
        Ride.ended_at >= period_start,
        Ride.ended_at < period_end,
    )
    admin_sum, franchise_sum, total_sum, rides = db.execute(
        select(
            func.coalesce(func.sum(Ride.admin_profit), 0),
            func.coalesce(func.sum(Ride.franchise_profit), 0),
            func.coalesce(func.sum(Ride.total_amount), 0),
            func.count(Ride.id),
        ).where(*billable)
    ).one()
    if int(admin_sum) <= 0:
        SETTLEMENT_EVENTS.labels(FRANCHISE_WEEKLY_BILL, "generate", "empty").inc()
        raise ValidationError("No billable admin commission in this period")
    bill = WeeklyBill(
        franchise_id=franchise.id,
        period_start=period_start,
        period_end=period_end,
        admin_commission_amount=int(admin_sum),
        franchise_commission_amount=int(franchise_sum),
        total_generated_amount=int(total_sum),
        ride_count=int(rides),
        status="generated",
        generated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(bill)
            db.flush()
            tagged = db.execute(
                update(Ride)
                .where(*billable)
                .values(weekly_bill_id=bill.id)
                .execution_options(synchronize_session=False)
            ).rowcount
            if tagged != bill.ride_count:
                raise ConflictError("Rides in this period were billed concurrently")
    except DBIntegrityError:
        raise ConflictError("A bill already exists for this franchise and period")
    franchise.last_weekly_bill_generated_at = now
    franchise.next_bill_generation_date = now + settings.weekly_bill_period
    db.flush()
    SETTLEMENT_EVENTS.labels(FRANCHISE_WEEKLY_BILL, "generate", "success").inc()
    logger.info(
        "Generated bill %s for franchise %s [%s, %s): %s over %s rides",
        bill.id, franchise.id, period_start, period_end, bill.admin_commission_amount, bill.ride_count,
    )
    return bill


def run_scheduled_weekly_bills(db: Session, now: datetime | None = None) -> dict:
    """Bill every auto-billed franchise whose next generation date has passed."""
    now = now or datetime.utcnow()
    due = (
        db.execute(
            select(Franchise).where(
                Franchise.is_active.is_(True),
                Franchise.auto_bill_generation_enabled.is_(True),
                (Franchise.next_bill_generation_date.is_(None)) | (Franchise.next_bill_generation_date <= now),
            )
        )
        .scalars()
        .all()
    )
    generated, skipped = [], []
    for franchise in due:
        last_end = db.execute(
            select(func.max(WeeklyBill.period_end)).where(WeeklyBill.franchise_id == franchise.id)
        ).scalar_one()
        start = last_end or (now - settings.weekly_bill_period)
        try:
            if start >= now:
                raise ValidationError("Nothing to bill yet")
            bill = generate_weekly_bill(db, franchise.id, start, now, now=now)
            generated.append(bill)
        except (ValidationError, ConflictError) as exc:
            logger.info("Skipping weekly bill for franchise %s: %s", franchise.id, exc.message)
            skipped.append({"franchise_id": str(franchise.id), "reason": exc.message})
            franchise.next_bill_generation_date = now + settings.weekly_bill_period
    db.flush()
    return {"generated": generated, "skipped": skipped}


def _visible_requests_query(role: str, principal_id):
    q = select(DueRequest)
    if role == "admin":
        return q
    if role == "franchise":
        return q.where(DueRequest.franchise_id == principal_id)
    if role == "driver":
        return q.where(DueRequest.requester_kind == "driver", DueRequest.requester_id == principal_id)
    raise AuthorizationError("Riders have no due requests")


def list_due_requests(
    db: Session,
    role: str,
    principal_id=None,
    status: str | None = None,
    request_type: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[DueRequest], int]:
    q = _visible_requests_query(role, principal_id)
    if status:
        if status not in STATUSES:
            raise ValidationError("Unknown status filter")
        q = q.where(DueRequest.status == status)
    if request_type:
        if request_type not in REQUEST_TYPES:
            raise ValidationError("Unknown request type filter")
        q = q.where(DueRequest.request_type == request_type)
    total = db.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = db.execute(q.order_by(DueRequest.created_at.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return list(rows), int(total)


def _can_view(req: DueRequest, role: str, principal_id) -> bool:
    if role == "admin":
        return True
    if role == "franchise":
        return req.franchise_id is not None and req.franchise_id == principal_id
    if role == "driver":
        return req.requester_kind == "driver" and req.requester_id == principal_id
    return False


def due_request_detail(db: Session, request_id, role: str, principal_id=None) -> dict:
    req = _get_request(db, request_id)
    if not _can_view(req, role, principal_id):
        raise AuthorizationError("Not allowed to view this due request")
    data = {"due_request": serialize_due_request(req)}
    if req.requester_kind == "driver":
        driver = get_driver(db, req.requester_id)
        accounts = db.execute(select(LedgerAccount).where(LedgerAccount.driver_id == driver.id)).scalars().all()
        data["driver"] = {
            "id": str(driver.id),
            "name": driver.name,
            "phone": driver.phone,
            "due_wallet": driver.due_wallet,
            "cash_wallet": driver.cash_wallet,
            "online_wallet": driver.online_wallet,
            "total_earning": driver.total_earning,
        }
        data["profit_summary"] = profit_summary(db, driver.id)
        data["khata_summary"] = {
            "driverdue": sum(a.driverdue for a in accounts),
            "admindue": sum(a.admindue for a in accounts),
            "franchisedue": sum(a.franchisedue for a in accounts),
            "total_due_payments": sum(len(a.entries) for a in accounts),
        }
    if req.weekly_bill_id is not None:
        bill = db.get(WeeklyBill, req.weekly_bill_id)
        data["weekly_bill"] = serialize_weekly_bill(bill) if bill else None
    if req.franchise_id is not None:
        fr = db.get(Franchise, req.franchise_id)
        data["franchise"] = serialize_franchise(fr) if fr else None
    return data


def due_request_statistics(db: Session, role: str, principal_id=None) -> dict:
    base = _visible_requests_query(role, principal_id).subquery()
    rows = db.execute(
        select(base.c.request_type, base.c.status, func.count(), func.coalesce(func.sum(base.c.due_amount), 0))
        .group_by(base.c.request_type, base.c.status)
    ).all()
    by_status = {s: {"count": 0, "amount": 0} for s in STATUSES}
    by_type = {t: {s: {"count": 0, "amount": 0} for s in STATUSES} for t in REQUEST_TYPES}
    for request_type, status, count, amount in rows:
        by_status[status]["count"] += int(count)
        by_status[status]["amount"] += int(amount)
        by_type[request_type][status] = {"count": int(count), "amount": int(amount)}
    return {
        "total_requests": sum(v["count"] for v in by_status.values()),
        "by_status": by_status,
        "by_type": by_type,
    }


def list_weekly_bills(db: Session, role: str, principal_id=None, franchise_id=None, status: str | None = None) -> list[WeeklyBill]:
    q = select(WeeklyBill)
    if role == "franchise":
        q = q.where(WeeklyBill.franchise_id == principal_id)
    elif role != "admin":
        raise AuthorizationError("Only franchises and the admin can view weekly bills")
    elif franchise_id is not None:
        q = q.where(WeeklyBill.franchise_id == franchise_id)
    if status:
        q = q.where(WeeklyBill.status == status)
    return list(db.execute(q.order_by(WeeklyBill.period_end.desc())).scalars().all())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() + "Z" if value else None


def serialize_due_request(req: DueRequest) -> dict:
    return {
        "id": str(req.id),
        "requested_by": {"kind": req.requester_kind, "id": str(req.requester_id)},
        "request_type": req.request_type,
        "franchise_id": str(req.franchise_id) if req.franchise_id else None,
        "due_amount": req.due_amount,
        "status": req.status,
        "approval_level": req.approval_level,
        "approved_by_franchise": req.approved_by_franchise,
        "franchise_approved_at": _iso(req.franchise_approved_at),
        "approved_by_admin": req.approved_by_admin,
        "admin_approved_at": _iso(req.admin_approved_at),
        "approved_by_kind": req.approved_by_kind,
        "payment_method": req.payment_method,
        "payment_photo": req.payment_photo,
        "paid_amount": req.paid_amount,
        "payment_date": _iso(req.payment_date),
        "notes": req.notes,
        "weekly_bill_id": str(req.weekly_bill_id) if req.weekly_bill_id else None,
        "settled": {
            "driver_profit": req.settled_driver_profit,
            "admin_profit": req.settled_admin_profit,
            "franchise_profit": req.settled_franchise_profit,
            "ride_count": req.settled_ride_count,
        } if req.status == "approved" and req.request_type == DRIVER_DUE else None,
        "created_at": _iso(req.created_at),
        "resolved_at": _iso(req.resolved_at),
    }


def serialize_weekly_bill(bill: WeeklyBill) -> dict:
    return {
        "id": str(bill.id),
        "franchise_id": str(bill.franchise_id),
        "period_start": _iso(bill.period_start),
        "period_end": _iso(bill.period_end),
        "admin_commission_amount": bill.admin_commission_amount,
        "franchise_commission_amount": bill.franchise_commission_amount,
        "total_generated_amount": bill.total_generated_amount,
        "ride_count": bill.ride_count,
        "status": bill.status,
        "due_request_id": str(bill.due_request_id) if bill.due_request_id else None,
        "generated_at": _iso(bill.generated_at),
        "paid_at": _iso(bill.paid_at),
    }
