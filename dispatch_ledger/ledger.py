"""Khata: per-driver running account of dues owed upstream.

A ride is posted exactly once, when its payment mode is chosen. Posting
credits the driver's cash/online wallet with the whole fare, raises the
driver's due wallet by what they owe the admin (and franchise), appends a
ledger entry and bumps the account's running balances, all in the caller's
transaction.
"""
import logging
from datetime import datetime

from prometheus_client import Counter
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from .errors import ValidationError, ConflictError, IntegrityError
from .lifecycle import get_ride
from .models import Admin, Driver, Franchise, LedgerAccount, LedgerEntry, Ride, PLATFORM_SCOPE
from .parties import get_platform_admin, get_driver
from .ws_manager import Notification


logger = logging.getLogger("dispatch_ledger.ledger")

PAYMENT_MODES = ("cash", "online")

LEDGER_POSTINGS = Counter(
    "dispatch_ledger_postings_total",
    "Ledger postings from payment-mode selection",
    ["payment_mode", "result"],
)


def scope_key_for(franchise_id) -> str:
    return str(franchise_id) if franchise_id else PLATFORM_SCOPE


def _account_query(driver_id, scope_key: str, for_update: bool = False):
    q = select(LedgerAccount).where(LedgerAccount.driver_id == driver_id, LedgerAccount.scope_key == scope_key)
    if for_update:
        q = q.with_for_update()
    return q


def get_or_create_ledger_account(db: Session, driver_id, franchise_id=None) -> LedgerAccount:
    scope = scope_key_for(franchise_id)
    account = db.execute(_account_query(driver_id, scope, for_update=True)).scalar_one_or_none()
    if account is not None:
        return account
    try:
        with db.begin_nested():
            account = LedgerAccount(driver_id=driver_id, franchise_id=franchise_id, scope_key=scope)
            db.add(account)
            db.flush()
    except DBIntegrityError:
        account = db.execute(_account_query(driver_id, scope, for_update=True)).scalar_one()
    return account


def post_payment(db: Session, ride_id, payment_mode: str) -> tuple[Ride, LedgerEntry, list[Notification]]:
    if payment_mode not in PAYMENT_MODES:
        LEDGER_POSTINGS.labels(str(payment_mode), "invalid").inc()
        raise ValidationError("Payment mode must be 'cash' or 'online'")
    ride = get_ride(db, ride_id)
    if not ride.is_ride_ended:
        raise ConflictError("Ride has not ended yet")
    if ride.is_payment_done:
        LEDGER_POSTINGS.labels(payment_mode, "duplicate").inc()
        raise ConflictError("Payment already recorded for this ride")
    if ride.admin_profit + ride.franchise_profit + ride.driver_profit != ride.total_amount:
        logger.error("Ride %s shares do not sum to its fare", ride.id)
        raise IntegrityError("Ride shares do not sum to the fare")

    now = datetime.utcnow()
    res = db.execute(
        update(Ride)
        .where(Ride.id == ride.id, Ride.is_payment_done.is_(False))
        .values(is_payment_done=True, payment_mode=payment_mode, paid_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        LEDGER_POSTINGS.labels(payment_mode, "duplicate").inc()
        raise ConflictError("Payment already recorded for this ride")

    driver = get_driver(db, ride.driver_id)
    account = get_or_create_ledger_account(db, driver.id, ride.franchise_id)
    upstream = ride.admin_profit + (ride.franchise_profit if ride.franchise_id else 0)
    wallet_col = Driver.cash_wallet if payment_mode == "cash" else Driver.online_wallet
    db.execute(
        update(Driver)
        .where(Driver.id == driver.id)
        .values({wallet_col: wallet_col + ride.total_amount, Driver.due_wallet: Driver.due_wallet + upstream})
        .execution_options(synchronize_session=False)
    )
    entry = LedgerEntry(
        account_id=account.id,
        ride_id=ride.id,
        total_price=ride.total_amount,
        admin_profit=ride.admin_profit,
        franchise_profit=ride.franchise_profit,
        driver_profit=ride.driver_profit,
        admin_commission_rate=ride.admin_commission_rate,
        franchise_commission_rate=ride.franchise_commission_rate,
        payment_mode=payment_mode,
        created_at=now,
    )
    db.add(entry)
    db.execute(
        update(LedgerAccount)
        .where(LedgerAccount.id == account.id)
        .values(
            driverdue=LedgerAccount.driverdue + ride.driver_profit,
            admindue=LedgerAccount.admindue + ride.admin_profit,
            franchisedue=LedgerAccount.franchisedue + ride.franchise_profit,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if ride.franchise_id:
        db.execute(
            update(Franchise)
            .where(Franchise.id == ride.franchise_id)
            .values(total_earnings=Franchise.total_earnings + ride.franchise_profit)
            .execution_options(synchronize_session=False)
        )
    admin = get_platform_admin(db)
    db.execute(
        update(Admin)
        .where(Admin.id == admin.id)
        .values(due_wallet=Admin.due_wallet + ride.admin_profit)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    for obj in (ride, driver, account, admin):
        db.refresh(obj)
    LEDGER_POSTINGS.labels(payment_mode, "success").inc()
    logger.info(
        "Posted ride %s (%s) to ledger %s: admin=%s franchise=%s driver=%s",
        ride.id, payment_mode, account.id, ride.admin_profit, ride.franchise_profit, ride.driver_profit,
    )
    payload = {
        "ride_id": str(ride.id),
        "payment_mode": payment_mode,
        "total_amount": ride.total_amount,
    }
    return ride, entry, [
        Notification("rider", str(ride.rider_id), "paymentModeUpdated", payload),
        Notification("driver", str(ride.driver_id), "paymentModeUpdated", payload),
    ]


def ledger_totals(db: Session, driver_id) -> dict:
    row = db.execute(
        select(
            func.coalesce(func.sum(LedgerEntry.driver_profit), 0),
            func.coalesce(func.sum(LedgerEntry.admin_profit), 0),
            func.coalesce(func.sum(LedgerEntry.franchise_profit), 0),
            func.coalesce(func.sum(LedgerEntry.total_price), 0),
            func.count(LedgerEntry.id),
        )
        .select_from(LedgerEntry)
        .join(LedgerAccount, LedgerAccount.id == LedgerEntry.account_id)
        .where(LedgerAccount.driver_id == driver_id)
    ).one()
    driver_profit, admin_profit, franchise_profit, total, rides = (int(v) for v in row)
    return {
        "total_driver_profit": driver_profit,
        "total_admin_profit": admin_profit,
        "total_franchise_profit": franchise_profit,
        "total_amount": total,
        "total_rides": rides,
    }


def profit_summary(db: Session, driver_id) -> dict:
    totals = ledger_totals(db, driver_id)
    total = totals["total_amount"]

    def pct(part: int) -> float:
        return round(part * 100 / total, 2) if total else 0.0

    totals["percentage_breakdown"] = {
        "driver": pct(totals["total_driver_profit"]),
        "admin": pct(totals["total_admin_profit"]),
        "franchise": pct(totals["total_franchise_profit"]),
    }
    return totals


def serialize_entry(e: LedgerEntry) -> dict:
    return {
        "id": str(e.id),
        "ride_id": str(e.ride_id),
        "total_price": e.total_price,
        "admin_profit": e.admin_profit,
        "franchise_profit": e.franchise_profit,
        "driver_profit": e.driver_profit,
        "admin_commission_rate": e.admin_commission_rate,
        "franchise_commission_rate": e.franchise_commission_rate,
        "payment_mode": e.payment_mode,
        "created_at": e.created_at.isoformat() + "Z",
    }


def serialize_account(account: LedgerAccount) -> dict:
    return {
        "id": str(account.id),
        "driver_id": str(account.driver_id),
        "franchise_id": str(account.franchise_id) if account.franchise_id else None,
        "driverdue": account.driverdue,
        "admindue": account.admindue,
        "franchisedue": account.franchisedue,
        "entries": [serialize_entry(e) for e in account.entries],
    }


def driver_ledger(db: Session, driver_id) -> dict:
    driver = get_driver(db, driver_id)
    accounts = (
        db.execute(select(LedgerAccount).where(LedgerAccount.driver_id == driver.id).order_by(LedgerAccount.created_at))
        .scalars()
        .all()
    )
    return {
        "driver_id": str(driver.id),
        "due_wallet": driver.due_wallet,
        "accounts": [serialize_account(a) for a in accounts],
        "profit_summary": profit_summary(db, driver.id),
    }
