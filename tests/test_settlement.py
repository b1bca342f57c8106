import uuid
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from dispatch_ledger.database import session_scope
from dispatch_ledger.errors import AuthorizationError, ConflictError, ValidationError
from dispatch_ledger.main import app
from dispatch_ledger.models import Admin, Driver, DueRequest, Franchise, LedgerAccount, LedgerEntry, Ride, WeeklyBill
from dispatch_ledger.parties import get_platform_admin
from dispatch_ledger.settlement import (
    approve_due_request,
    create_driver_due_request,
    create_franchise_bill_request,
    due_request_detail,
    due_request_statistics,
    generate_weekly_bill,
    iso_week_key,
    list_due_requests,
    reject_due_request,
    run_scheduled_weekly_bills,
)

from factories import ADMIN_HEADERS, bearer, complete_ride, make_driver, make_franchise, make_rider


client = TestClient(app)


def _request(driver_id, amount):
    with session_scope() as db:
        return create_driver_due_request(db, driver_id, amount).id


def _admin() -> Admin:
    with session_scope() as db:
        return get_platform_admin(db)


def test_amount_above_due_balance_rejected():
    driver = make_driver(due_wallet=250)
    with session_scope() as db:
        with pytest.raises(ValidationError) as exc:
            create_driver_due_request(db, driver, 300)
        assert "250" in exc.value.message


def test_one_pending_request_per_driver():
    driver = make_driver(due_wallet=250)
    _request(driver, 250)
    with session_scope() as db:
        with pytest.raises(ConflictError):
            create_driver_due_request(db, driver, 100)


def test_approval_level_follows_franchise_eligibility():
    fid = make_franchise()
    franchised = make_driver(fid, due_wallet=10)
    solo = make_driver(due_wallet=10)
    franchised_req, solo_req = _request(franchised, 10), _request(solo, 10)
    with session_scope() as db:
        assert db.get(DueRequest, franchised_req).approval_level == "franchise_first"
        assert db.get(DueRequest, solo_req).approval_level == "admin_only"


def test_franchise_approval_settles_ledger_exactly():
    fid = make_franchise()
    driver = make_driver(fid)
    complete_ride(driver, make_rider(), total_price=100)
    complete_ride(driver, make_rider(), total_price=50)
    # shares: 100 -> 18/10/72, 50 -> 9/5/36
    with session_scope() as db:
        assert db.get(Driver, driver).due_wallet == 42
    req_id = _request(driver, 42)

    with session_scope() as db:
        req = approve_due_request(db, req_id, "franchise", fid, payment_method="cash")
        assert req.status == "approved"
        assert req.approved_by_franchise is True and req.approved_by_admin is False
        assert req.approved_by_kind == "franchise"
        assert req.paid_amount == 42
        assert (req.settled_driver_profit, req.settled_admin_profit, req.settled_franchise_profit) == (108, 27, 15)

    with session_scope() as db:
        drv = db.get(Driver, driver)
        assert drv.due_wallet == 0
        assert drv.total_earning == 108
        assert db.query(LedgerEntry).count() == 0
        account = db.query(LedgerAccount).filter_by(driver_id=driver).one()
        assert (account.driverdue, account.admindue, account.franchisedue) == (0, 0, 0)
        fr = db.get(Franchise, fid)
        assert fr.due_wallet == 15
        assert fr.settled_earnings == 15
        assert fr.accumulated_admin_profit == 27
        week = fr.weekly_accumulations[iso_week_key(datetime.utcnow())]
        assert week == {"adminProfit": 27, "franchiseProfit": 15, "totalRides": 2}
        admin = get_platform_admin(db)
        # 27 posted, 42 cleared
        assert admin.due_wallet == 0
        # franchise-scope admin profit is collected through the weekly bill
        assert admin.total_earning == 0


def test_admin_approval_of_platform_driver_books_admin_earning():
    driver = make_driver()
    complete_ride(driver, make_rider(), total_price=100)
    req_id = _request(driver, 18)
    with session_scope() as db:
        req = approve_due_request(db, req_id, "admin")
        assert req.approved_by_admin is True and req.approved_by_franchise is False
    with session_scope() as db:
        admin = get_platform_admin(db)
        assert admin.due_wallet == 0
        assert admin.total_earning == 18
        assert db.get(Driver, driver).total_earning == 82


def test_balances_floor_at_zero():
    driver = make_driver(due_wallet=50)
    with session_scope() as db:
        get_platform_admin(db).due_wallet = 5
    req_id = _request(driver, 50)
    with session_scope() as db:
        db.get(Driver, driver).due_wallet = 20
    with session_scope() as db:
        approve_due_request(db, req_id, "admin")
    with session_scope() as db:
        assert db.get(Driver, driver).due_wallet == 0
        assert get_platform_admin(db).due_wallet == 0


def test_other_franchise_cannot_approve():
    fid = make_franchise()
    other = make_franchise("South")
    driver = make_driver(fid, due_wallet=30)
    req_id = _request(driver, 30)
    with session_scope() as db:
        with pytest.raises(AuthorizationError):
            approve_due_request(db, req_id, "franchise", other)
    with session_scope() as db:
        assert db.get(DueRequest, req_id).status == "pending"


def test_driver_cannot_approve_own_request():
    driver = make_driver(due_wallet=30)
    req_id = _request(driver, 30)
    with session_scope() as db:
        with pytest.raises(AuthorizationError):
            approve_due_request(db, req_id, "driver", driver)


def test_reject_leaves_balances_untouched():
    driver = make_driver()
    complete_ride(driver, make_rider(), total_price=100)
    req_id = _request(driver, 18)
    with session_scope() as db:
        req = reject_due_request(db, req_id, "admin")
        assert req.status == "rejected"
        assert req.notes == "No rejection reason provided"
        assert req.resolved_at is not None
    with session_scope() as db:
        assert db.get(Driver, driver).due_wallet == 18
        assert db.query(LedgerEntry).count() == 1
        assert get_platform_admin(db).due_wallet == 18
    with session_scope() as db:
        with pytest.raises(ConflictError):
            approve_due_request(db, req_id, "admin")
    # a new request may follow a rejection
    _request(driver, 18)


def test_second_approval_conflicts():
    driver = make_driver(due_wallet=10)
    req_id = _request(driver, 10)
    with session_scope() as db:
        approve_due_request(db, req_id, "admin")
    with session_scope() as db:
        with pytest.raises(ConflictError):
            approve_due_request(db, req_id, "admin")


def _franchise_with_paid_rides(count=2):
    fid = make_franchise()
    driver = make_driver(fid)
    for _ in range(count):
        complete_ride(driver, make_rider(), total_price=100)
    return fid, driver


def test_weekly_bill_sums_admin_commission():
    fid, _ = _franchise_with_paid_rides()
    with session_scope() as db:
        bill = generate_weekly_bill(db, fid)
        assert bill.admin_commission_amount == 36
        assert bill.franchise_commission_amount == 20
        assert bill.total_generated_amount == 200
        assert bill.ride_count == 2
        assert bill.status == "generated"
    with session_scope() as db:
        fr = db.get(Franchise, fid)
        assert fr.last_weekly_bill_generated_at is not None
        assert fr.next_bill_generation_date > datetime.utcnow()


def test_duplicate_bill_window_rejected():
    fid, _ = _franchise_with_paid_rides(1)
    end = datetime.utcnow() + timedelta(minutes=1)
    start = end - timedelta(days=7)
    with session_scope() as db:
        generate_weekly_bill(db, fid, start, end)
    with session_scope() as db:
        with pytest.raises(ConflictError):
            generate_weekly_bill(db, fid, start, end)


def test_empty_window_is_not_billed():
    fid = make_franchise()
    with session_scope() as db:
        with pytest.raises(ValidationError):
            generate_weekly_bill(db, fid)


def test_bill_payment_flow():
    fid, _ = _franchise_with_paid_rides()
    with session_scope() as db:
        db.get(Franchise, fid).due_wallet = 30
        db.get(Franchise, fid).accumulated_admin_profit = 50
    with session_scope() as db:
        bill_id = generate_weekly_bill(db, fid).id

    with session_scope() as db:
        with pytest.raises(ValidationError):
            create_franchise_bill_request(db, fid, bill_id, "online", None)
    with session_scope() as db:
        with pytest.raises(AuthorizationError):
            create_franchise_bill_request(db, make_franchise("South"), bill_id, "online", "receipt.jpg")

    with session_scope() as db:
        req = create_franchise_bill_request(db, fid, bill_id, "online", "receipt.jpg")
        req_id = req.id
        assert req.due_amount == 36
        assert req.approval_level == "admin_only"
        assert db.get(WeeklyBill, bill_id).status == "pending_payment"

    with session_scope() as db:
        with pytest.raises(AuthorizationError):
            approve_due_request(db, req_id, "franchise", fid)

    with session_scope() as db:
        approve_due_request(db, req_id, "admin")
    with session_scope() as db:
        bill = db.get(WeeklyBill, bill_id)
        assert bill.status == "paid" and bill.paid_at is not None
        fr = db.get(Franchise, fid)
        assert fr.due_wallet == 0
        assert fr.accumulated_admin_profit == 14
        assert get_platform_admin(db).total_earning == 36


def test_rejected_bill_payment_reopens_bill():
    fid, _ = _franchise_with_paid_rides(1)
    with session_scope() as db:
        bill_id = generate_weekly_bill(db, fid).id
    with session_scope() as db:
        req_id = create_franchise_bill_request(db, fid, bill_id, "cash", "slip.png").id
    with session_scope() as db:
        with pytest.raises(ConflictError):
            create_franchise_bill_request(db, fid, bill_id, "cash", "slip.png")
    with session_scope() as db:
        reject_due_request(db, req_id, "admin", reason="Blurry photo")
    with session_scope() as db:
        bill = db.get(WeeklyBill, bill_id)
        assert bill.status == "generated" and bill.due_request_id is None
        assert db.get(DueRequest, req_id).notes == "Blurry photo"
    with session_scope() as db:
        create_franchise_bill_request(db, fid, bill_id, "cash", "clear.png")


def test_scheduled_run_bills_due_franchises_once():
    fid, _ = _franchise_with_paid_rides(1)
    idle = make_franchise("Idle")
    make_franchise("Manual", auto_bill_generation_enabled=False)
    now = datetime.utcnow() + timedelta(seconds=1)
    with session_scope() as db:
        result = run_scheduled_weekly_bills(db, now=now)
        assert [b.franchise_id for b in result["generated"]] == [fid]
        assert [s["franchise_id"] for s in result["skipped"]] == [str(idle)]
    with session_scope() as db:
        again = run_scheduled_weekly_bills(db, now=now + timedelta(hours=1))
        assert again == {"generated": [], "skipped": []}
    with session_scope() as db:
        assert db.query(WeeklyBill).count() == 1


def test_listing_is_scoped_by_role():
    fid = make_franchise()
    mine = make_driver(fid, due_wallet=10)
    other = make_driver(due_wallet=10)
    _request(mine, 10)
    _request(other, 10)
    with session_scope() as db:
        assert list_due_requests(db, "admin")[1] == 2
        assert list_due_requests(db, "franchise", fid)[1] == 1
        assert list_due_requests(db, "driver", other)[1] == 1
        stats = due_request_statistics(db, "admin")
        assert stats["by_status"]["pending"] == {"count": 2, "amount": 20}


def test_detail_includes_profit_summary():
    driver = make_driver()
    complete_ride(driver, make_rider(), total_price=100)
    req_id = _request(driver, 18)
    with session_scope() as db:
        data = due_request_detail(db, req_id, "driver", driver)
        assert data["profit_summary"]["total_admin_profit"] == 18
        assert data["khata_summary"]["total_due_payments"] == 1
        with pytest.raises(AuthorizationError):
            due_request_detail(db, req_id, "driver", uuid.uuid4())


def test_due_request_api_flow():
    fid = make_franchise()
    driver = make_driver(fid)
    complete_ride(driver, make_rider(), total_price=100)

    r = client.post("/due-requests", headers=bearer("driver", driver), json={"due_amount": 500})
    assert r.status_code == 400
    r = client.post("/due-requests", headers=bearer("driver", driver), json={"due_amount": 28, "payment_method": "cash"})
    assert r.status_code == 201
    req_id = r.json()["data"]["id"]

    r = client.get("/due-requests", headers=bearer("franchise", fid), params={"status": "pending"})
    assert r.json()["data"]["pagination"]["total"] == 1

    r = client.patch(f"/due-requests/{req_id}/approve", headers=bearer("franchise", fid), json={})
    assert r.status_code == 200
    assert r.json()["data"]["approved_by_franchise"] is True
    r = client.patch(f"/due-requests/{req_id}/reject", headers=ADMIN_HEADERS, json={"note": "late"})
    assert r.status_code == 409

    r = client.get("/drivers/me/wallet", headers=bearer("driver", driver))
    assert r.json()["data"]["wallets"]["due"] == 0


def test_weekly_bill_api_is_admin_only():
    fid, _ = _franchise_with_paid_rides(1)
    r = client.post("/due-requests/weekly-bill", headers=bearer("franchise", fid), json={"franchise_id": str(fid)})
    assert r.status_code == 403
    r = client.post("/due-requests/weekly-bill", headers=ADMIN_HEADERS, json={"franchise_id": str(fid)})
    assert r.status_code == 201
    bill_id = r.json()["data"]["id"]
    r = client.get("/due-requests/weekly-bills", headers=bearer("franchise", fid))
    assert [b["id"] for b in r.json()["data"]["weekly_bills"]] == [bill_id]
    r = client.post(
        "/due-requests/franchise",
        headers=bearer("franchise", fid),
        json={"weekly_bill_id": bill_id, "payment_photo": "r.jpg"},
    )
    assert r.status_code == 201
    r = client.patch(f"/due-requests/{r.json()['data']['id']}/approve", headers=ADMIN_HEADERS)
    assert r.status_code == 200


def test_overlapping_windows_never_bill_a_ride_twice():
    fid, _ = _franchise_with_paid_rides(1)
    end = datetime.utcnow() + timedelta(seconds=1)
    start = end - timedelta(days=7)
    with session_scope() as db:
        first = generate_weekly_bill(db, fid, start, end)
        bill_id = first.id
        assert first.admin_commission_amount == 18
    with session_scope() as db:
        with pytest.raises(ValidationError):
            generate_weekly_bill(db, fid, start + timedelta(seconds=1), end + timedelta(seconds=1))
    with session_scope() as db:
        result = run_scheduled_weekly_bills(db, now=end + timedelta(days=8))
        assert result["generated"] == []
        assert db.query(WeeklyBill).count() == 1
        assert {r.weekly_bill_id for r in db.query(Ride).all()} == {bill_id}

    with session_scope() as db:
        req_id = create_franchise_bill_request(db, fid, bill_id, "online", "receipt.jpg").id
    with session_scope() as db:
        approve_due_request(db, req_id, "admin")
    with session_scope() as db:
        assert get_platform_admin(db).total_earning == 18


def test_rides_after_a_bill_go_into_the_next_one():
    fid, driver = _franchise_with_paid_rides(1)
    with session_scope() as db:
        generate_weekly_bill(db, fid, now=datetime.utcnow() + timedelta(seconds=1))
    complete_ride(driver, make_rider(), total_price=50)
    with session_scope() as db:
        bill = generate_weekly_bill(db, fid, now=datetime.utcnow() + timedelta(seconds=2))
        assert (bill.admin_commission_amount, bill.ride_count) == (9, 1)


def test_weekly_bill_api_accepts_timezone_aware_bounds():
    fid, _ = _franchise_with_paid_rides(1)
    r = client.post(
        "/due-requests/weekly-bill",
        headers=ADMIN_HEADERS,
        json={"franchise_id": str(fid), "period_start": "2020-01-01T03:00:00+03:00"},
    )
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["period_start"] == "2020-01-01T00:00:00Z"
    assert data["admin_commission_amount"] == 18
