import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, ForeignKey, Float, Index, UniqueConstraint, JSON, Uuid, text
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


PLATFORM_SCOPE = "platform"


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    singleton_key = Column(String(16), nullable=False, unique=True, default="default")
    name = Column(String(128), nullable=False, default="Platform")
    due_wallet = Column(Integer, nullable=False, default=0)
    total_earning = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Franchise(Base):
    __tablename__ = "franchises"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(128), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_approved = Column(Boolean, nullable=False, default=False)
    due_wallet = Column(Integer, nullable=False, default=0)
    # accrued at ledger posting
    total_earnings = Column(Integer, nullable=False, default=0)
    # credited when driver dues are settled
    settled_earnings = Column(Integer, nullable=False, default=0)
    accumulated_admin_profit = Column(Integer, nullable=False, default=0)
    # {"2024-W21": {"adminProfit": .., "franchiseProfit": .., "totalRides": ..}}
    weekly_accumulations = Column(JSON, nullable=False, default=dict)
    total_drivers = Column(Integer, nullable=False, default=0)
    auto_bill_generation_enabled = Column(Boolean, nullable=False, default=True)
    last_weekly_bill_generated_at = Column(DateTime, nullable=True)
    next_bill_generation_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    drivers = relationship("Driver", back_populates="franchise")
    commission_setting = relationship("CommissionSetting", uselist=False, back_populates="franchise")


class Rider(Base):
    __tablename__ = "riders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(128), nullable=True)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)
    is_on_ride = Column(Boolean, nullable=False, default=False)
    current_ride_id = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Driver(Base):
    __tablename__ = "drivers"
    __table_args__ = (Index("ix_drivers_dispatch", "is_active", "is_approved", "is_on_ride"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(128), nullable=True)
    phone = Column(String(32), nullable=False, unique=True, index=True)
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=True, index=True)
    vehicle_plate = Column(String(32), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    is_approved = Column(Boolean, nullable=False, default=False)
    is_on_ride = Column(Boolean, nullable=False, default=False)
    current_ride_id = Column(Uuid(as_uuid=True), nullable=True)
    cash_wallet = Column(Integer, nullable=False, default=0)
    online_wallet = Column(Integer, nullable=False, default=0)
    due_wallet = Column(Integer, nullable=False, default=0)
    total_earning = Column(Integer, nullable=False, default=0)
    total_completed_rides = Column(Integer, nullable=False, default=0)
    total_distance_km = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    franchise = relationship("Franchise", back_populates="drivers")
    location = relationship("DriverLocation", uselist=False, back_populates="driver")
    rides = relationship("Ride", back_populates="driver")


class DriverLocation(Base):
    __tablename__ = "driver_locations"
    __table_args__ = (
        Index("ix_driver_loc_updated", "updated_at"),
        Index("ix_driver_loc_latlon", "lat", "lon"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("drivers.id"), nullable=False, unique=True)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    driver = relationship("Driver", back_populates="location")


class FareSetting(Base):
    __tablename__ = "fare_settings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    singleton_key = Column(String(16), nullable=False, unique=True, default="default")
    base_fare = Column(Float, nullable=False)
    per_km_charge = Column(Float, nullable=False)
    night_surcharge_percent = Column(Float, nullable=False)
    night_start_hour = Column(Integer, nullable=False)
    night_end_hour = Column(Integer, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    history = relationship("FareSettingHistory", back_populates="fare_setting")


class FareSettingHistory(Base):
    __tablename__ = "fare_setting_history"
    __table_args__ = (Index("ix_fare_history_changed", "changed_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    fare_setting_id = Column(Uuid(as_uuid=True), ForeignKey("fare_settings.id"), nullable=False)
    field_name = Column(String(64), nullable=False, index=True)
    old_value = Column(Float, nullable=True)
    new_value = Column(Float, nullable=True)
    changed_by = Column(String(64), nullable=False)
    reason = Column(String(512), nullable=True)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    fare_setting = relationship("FareSetting", back_populates="history")


class CommissionSetting(Base):
    __tablename__ = "commission_settings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=False, unique=True)
    admin_commission_rate = Column(Float, nullable=False)
    franchise_commission_rate = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(64), nullable=False, default="system")
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    franchise = relationship("Franchise", back_populates="commission_setting")
    history = relationship("CommissionSettingHistory", back_populates="commission_setting")


class CommissionSettingHistory(Base):
    __tablename__ = "commission_setting_history"
    __table_args__ = (Index("ix_commission_history_franchise", "franchise_id", "changed_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    commission_setting_id = Column(Uuid(as_uuid=True), ForeignKey("commission_settings.id"), nullable=False)
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=False)
    setting_type = Column(String(32), nullable=False)  # admin_commission|franchise_commission|system
    field_name = Column(String(64), nullable=False)
    old_value = Column(Float, nullable=True)
    new_value = Column(Float, nullable=True)
    changed_by = Column(String(64), nullable=False)
    reason = Column(String(512), nullable=True)
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    commission_setting = relationship("CommissionSetting", back_populates="history")


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        Index("ix_rides_created", "created_at"),
        Index("ix_rides_franchise_ended", "franchise_id", "ended_at"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    rider_id = Column(Uuid(as_uuid=True), ForeignKey("riders.id"), nullable=False, index=True)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("drivers.id"), nullable=False, index=True)
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=True)
    pickup_lat = Column(Float, nullable=False)
    pickup_lon = Column(Float, nullable=False)
    pickup_address = Column(String(256), nullable=True)
    drop_lat = Column(Float, nullable=False)
    drop_lon = Column(Float, nullable=False)
    drop_address = Column(String(256), nullable=True)
    total_km = Column(Float, nullable=False)
    total_amount = Column(Integer, nullable=False)
    admin_profit = Column(Integer, nullable=False)
    franchise_profit = Column(Integer, nullable=False, default=0)
    driver_profit = Column(Integer, nullable=False)
    # rates frozen at acceptance
    admin_commission_rate = Column(Float, nullable=False)
    franchise_commission_rate = Column(Float, nullable=False, default=0.0)
    fare_settings_version = Column(Integer, nullable=True)
    pickup_otp = Column(String(8), nullable=False)
    drop_otp = Column(String(8), nullable=False)
    is_pickup_verified = Column(Boolean, nullable=False, default=False)
    is_ride_started = Column(Boolean, nullable=False, default=False)
    is_drop_verified = Column(Boolean, nullable=False, default=False)
    is_ride_ended = Column(Boolean, nullable=False, default=False)
    is_payment_done = Column(Boolean, nullable=False, default=False)
    payment_mode = Column(String(16), nullable=True)  # cash|online
    accepted_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    weekly_bill_id = Column(Uuid(as_uuid=True), ForeignKey("weekly_bills.id"), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    driver = relationship("Driver", back_populates="rides")
    rider = relationship("Rider")


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (UniqueConstraint("driver_id", "scope_key", name="uq_ledger_driver_scope"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("drivers.id"), nullable=False, index=True)
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=True)
    # franchise id as text, or PLATFORM_SCOPE for drivers without a franchise
    scope_key = Column(String(64), nullable=False)
    driverdue = Column(Integer, nullable=False, default=0)
    admindue = Column(Integer, nullable=False, default=0)
    franchisedue = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    entries = relationship(
        "LedgerEntry",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="LedgerEntry.created_at",
    )


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("ledger_accounts.id"), nullable=False, index=True)
    ride_id = Column(Uuid(as_uuid=True), ForeignKey("rides.id"), nullable=False, unique=True)
    total_price = Column(Integer, nullable=False)
    admin_profit = Column(Integer, nullable=False)
    franchise_profit = Column(Integer, nullable=False, default=0)
    driver_profit = Column(Integer, nullable=False)
    admin_commission_rate = Column(Float, nullable=False)
    franchise_commission_rate = Column(Float, nullable=False, default=0.0)
    payment_mode = Column(String(16), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    account = relationship("LedgerAccount", back_populates="entries")


class WeeklyBill(Base):
    __tablename__ = "weekly_bills"
    __table_args__ = (
        UniqueConstraint("franchise_id", "period_start", "period_end", name="uq_weekly_bill_window"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    admin_commission_amount = Column(Integer, nullable=False, default=0)
    franchise_commission_amount = Column(Integer, nullable=False, default=0)
    total_generated_amount = Column(Integer, nullable=False, default=0)
    ride_count = Column(Integer, nullable=False, default=0)
    status = Column(String(24), nullable=False, default="generated")  # generated|pending_payment|paid
    due_request_id = Column(Uuid(as_uuid=True), nullable=True, unique=True)
    generated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    paid_at = Column(DateTime, nullable=True)


class DueRequest(Base):
    __tablename__ = "due_requests"
    __table_args__ = (
        Index("ix_due_requests_status", "status", "created_at"),
        Index(
            "uq_due_requests_one_pending",
            "requester_kind",
            "requester_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    requester_kind = Column(String(16), nullable=False)  # driver|franchise
    requester_id = Column(Uuid(as_uuid=True), nullable=False)
    request_type = Column(String(32), nullable=False)  # driver_due|franchise_weekly_bill
    franchise_id = Column(Uuid(as_uuid=True), ForeignKey("franchises.id"), nullable=True, index=True)
    due_amount = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")  # pending|approved|rejected
    approval_level = Column(String(24), nullable=False, default="admin_only")  # franchise_first|admin_only
    approved_by_franchise = Column(Boolean, nullable=False, default=False)
    franchise_approved_at = Column(DateTime, nullable=True)
    franchise_approved_by = Column(Uuid(as_uuid=True), nullable=True)
    approved_by_admin = Column(Boolean, nullable=False, default=False)
    admin_approved_at = Column(DateTime, nullable=True)
    approved_by_kind = Column(String(16), nullable=True)  # franchise|admin
    payment_method = Column(String(16), nullable=True)  # cash|online
    payment_photo = Column(String(512), nullable=True)
    paid_amount = Column(Integer, nullable=True)
    payment_date = Column(DateTime, nullable=True)
    notes = Column(String(1024), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    weekly_bill_id = Column(Uuid(as_uuid=True), ForeignKey("weekly_bills.id"), nullable=True)
    settled_driver_profit = Column(Integer, nullable=True)
    settled_admin_profit = Column(Integer, nullable=True)
    settled_franchise_profit = Column(Integer, nullable=True)
    settled_ride_count = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    weekly_bill = relationship("WeeklyBill", foreign_keys=[weekly_bill_id])
