import uuid

from fastapi.testclient import TestClient

from dispatch_ledger.database import session_scope
from dispatch_ledger.main import app
from dispatch_ledger.models import Driver, Ride, Rider

from factories import ADMIN_HEADERS, DROP, PICKUP, bearer, complete_ride, make_driver, make_franchise, make_rider


client = TestClient(app)


def _accept(driver_id, rider_id, total_price=100, **extra):
    body = {
        "rider_id": str(rider_id),
        "pickup": dict(PICKUP, address="Umayyad Square"),
        "drop": dict(DROP),
        "total_km": 10,
        "total_price": total_price,
    }
    body.update(extra)
    return client.post("/rides/accept", headers=bearer("driver", driver_id), json=body)


def _otps(ride_id):
    with session_scope() as db:
        ride = db.get(Ride, uuid.UUID(ride_id))
        return ride.pickup_otp, ride.drop_otp


def test_find_drivers_requires_rider_token():
    r = client.post("/rides/find-drivers", json={"pickup_lat": 33.5, "pickup_lon": 36.2, "drop_lat": 33.6, "drop_lon": 36.3})
    assert r.status_code == 401
    assert r.json()["data"] is None


def test_find_drivers_envelope():
    rider = make_rider()
    make_driver()
    r = client.post(
        "/rides/find-drivers",
        headers=bearer("rider", rider),
        json={"pickup_lat": PICKUP["lat"], "pickup_lon": PICKUP["lon"], "drop_lat": DROP["lat"], "drop_lon": DROP["lon"]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == 200
    assert len(body["data"]["available_drivers"]) == 1
    assert body["data"]["fare_settings"]["base_fare"] == 20


def test_accept_snapshots_split_and_reserves_both_parties():
    rider = make_rider()
    fid = make_franchise()
    driver = make_driver(fid)
    r = _accept(driver, rider)
    assert r.status_code == 201
    ride = r.json()["data"]
    assert (ride["admin_profit"], ride["franchise_profit"], ride["driver_profit"]) == (18, 10, 72)
    assert ride["franchise_id"] == str(fid)
    # otps never go back to the driver
    assert "pickup_otp" not in ride
    with session_scope() as db:
        assert str(db.get(Driver, driver).current_ride_id) == ride["id"]
        assert str(db.get(Rider, rider).current_ride_id) == ride["id"]


def test_mismatching_supplied_split_is_replaced():
    rider = make_rider()
    driver = make_driver()
    r = _accept(driver, rider, commission_breakdown={"admin_rate": 5, "admin_profit": 5, "driver_profit": 95})
    assert r.status_code == 201
    assert r.json()["data"]["admin_profit"] == 18


def test_driver_cannot_be_double_booked():
    driver = make_driver()
    first, second = make_rider(), make_rider()
    assert _accept(driver, first).status_code == 201
    r = _accept(driver, second)
    assert r.status_code == 409
    assert r.json()["code"] == "conflict"


def test_rider_cannot_be_double_booked():
    rider = make_rider()
    d1, d2 = make_driver(), make_driver()
    assert _accept(d1, rider).status_code == 201
    assert _accept(d2, rider).status_code == 409


def test_unapproved_driver_cannot_accept():
    rider = make_rider()
    driver = make_driver(approved=False)
    assert _accept(driver, rider).status_code == 409


def test_otp_gates_in_order():
    rider, driver = make_rider(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    pickup_otp, drop_otp = _otps(ride_id)
    hd = bearer("driver", driver)

    r = client.post("/rides/verify-drop-otp", headers=hd, json={"ride_id": ride_id, "otp": drop_otp})
    assert r.status_code == 409

    wrong = "000" if pickup_otp != "000" else "999"
    r = client.post("/rides/verify-pickup-otp", headers=hd, json={"ride_id": ride_id, "otp": wrong})
    assert r.status_code == 400

    r = client.post("/rides/verify-pickup-otp", headers=hd, json={"ride_id": ride_id, "otp": pickup_otp})
    assert r.status_code == 200
    assert r.json()["data"]["state"] == "started"
    with session_scope() as db:
        assert db.get(Driver, driver).is_on_ride is True

    # idempotent second verification
    r = client.post("/rides/verify-pickup-otp", headers=hd, json={"ride_id": ride_id, "otp": pickup_otp})
    assert r.status_code == 200
    assert r.json()["message"] == "Pickup already verified"

    r = client.post("/rides/verify-drop-otp", headers=hd, json={"ride_id": ride_id, "otp": drop_otp})
    assert r.status_code == 200
    assert r.json()["data"]["state"] == "ended"
    with session_scope() as db:
        drv = db.get(Driver, driver)
        assert drv.is_on_ride is False and drv.current_ride_id is None
        assert drv.total_completed_rides == 1
        assert drv.total_distance_km == 10
        assert db.get(Rider, rider).current_ride_id is None


def test_only_assigned_driver_verifies():
    rider, driver, other = make_rider(), make_driver(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    pickup_otp, _ = _otps(ride_id)
    r = client.post("/rides/verify-pickup-otp", headers=bearer("driver", other), json={"ride_id": ride_id, "otp": pickup_otp})
    assert r.status_code == 403


def test_cancel_before_pickup_frees_both_parties():
    rider, driver = make_rider(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    r = client.post("/rides/cancel", headers=bearer("rider", rider), json={"ride_id": ride_id})
    assert r.status_code == 200
    with session_scope() as db:
        assert db.get(Ride, uuid.UUID(ride_id)) is None
        assert db.get(Driver, driver).current_ride_id is None
        assert db.get(Rider, rider).current_ride_id is None
    # driver is free again
    assert _accept(driver, make_rider()).status_code == 201


def test_cancel_after_pickup_rejected():
    rider, driver = make_rider(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    pickup_otp, _ = _otps(ride_id)
    client.post("/rides/verify-pickup-otp", headers=bearer("driver", driver), json={"ride_id": ride_id, "otp": pickup_otp})
    r = client.post("/rides/cancel", headers=bearer("rider", rider), json={"ride_id": ride_id})
    assert r.status_code == 409


def test_other_rider_cannot_cancel():
    rider, driver = make_rider(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    r = client.post("/rides/cancel", headers=bearer("rider", make_rider()), json={"ride_id": ride_id})
    assert r.status_code == 403


def test_reject_does_not_create_ride():
    rider, driver = make_rider(), make_driver()
    r = client.post("/rides/reject", headers=bearer("driver", driver), json={"rider_id": str(rider)})
    assert r.status_code == 200
    with session_scope() as db:
        assert db.query(Ride).count() == 0


def test_rider_sees_otps_on_ride_detail():
    rider, driver = make_rider(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    r = client.get(f"/rides/{ride_id}", headers=bearer("rider", rider))
    assert r.status_code == 200
    assert len(r.json()["data"]["pickup_otp"]) == 3
    r = client.get(f"/rides/{ride_id}", headers=bearer("driver", driver))
    assert "pickup_otp" not in r.json()["data"]
    r = client.get(f"/rides/{ride_id}", headers=bearer("rider", make_rider()))
    assert r.status_code == 403


def test_active_and_history():
    rider, driver = make_rider(), make_driver()
    ride_id = _accept(driver, rider).json()["data"]["id"]
    r = client.get("/rides/active", headers=bearer("driver", driver))
    assert r.json()["data"]["id"] == ride_id
    r = client.get("/rides/active", headers=ADMIN_HEADERS)
    assert [ride["id"] for ride in r.json()["data"]["rides"]] == [ride_id]
    # history only lists completed, paid rides
    r = client.get("/rides/history", headers=bearer("rider", rider))
    assert r.json()["data"]["pagination"]["total"] == 0

    other = make_rider()
    done = complete_ride(make_driver(), other)
    r = client.get("/rides/history", headers=bearer("rider", other))
    assert [ride["id"] for ride in r.json()["data"]["rides"]] == [str(done)]
    r = client.get("/rides/history", headers=ADMIN_HEADERS)
    assert r.json()["data"]["pagination"]["total"] == 1


def test_invalid_body_uses_error_envelope():
    driver = make_driver()
    r = client.post("/rides/accept", headers=bearer("driver", driver), json={"rider_id": "nope"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "validation_error"
    assert body["data"] is None
