from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime
import uuid


class PointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    address: Optional[str] = Field(default=None, max_length=255)


class DriverLocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class DriverStatusIn(BaseModel):
    is_active: bool


class FindDriversIn(BaseModel):
    pickup_lat: float = Field(ge=-90, le=90)
    pickup_lon: float = Field(ge=-180, le=180)
    drop_lat: float = Field(ge=-90, le=90)
    drop_lon: float = Field(ge=-180, le=180)
    # local wall-clock time used for the night surcharge; defaults to now
    start_time: Optional[datetime] = None


class CommissionBreakdownIn(BaseModel):
    admin_rate: Optional[float] = None
    franchise_rate: Optional[float] = None
    admin_profit: Optional[int] = None
    franchise_profit: Optional[int] = None
    driver_profit: Optional[int] = None


class AcceptRideIn(BaseModel):
    rider_id: uuid.UUID
    pickup: PointIn
    drop: PointIn
    total_km: float = Field(gt=0)
    total_price: int = Field(gt=0)
    commission_breakdown: Optional[CommissionBreakdownIn] = None


class RejectRideIn(BaseModel):
    rider_id: uuid.UUID


class VerifyOtpIn(BaseModel):
    ride_id: uuid.UUID
    otp: str = Field(min_length=1, max_length=8)


class CancelRideIn(BaseModel):
    ride_id: uuid.UUID


class PaymentModeIn(BaseModel):
    ride_id: uuid.UUID
    payment_mode: Literal["cash", "online"]


class FareSettingsUpdateIn(BaseModel):
    base_fare: Optional[float] = Field(default=None, ge=0)
    per_km_charge: Optional[float] = Field(default=None, ge=0)
    night_surcharge_percent: Optional[float] = Field(default=None, ge=0, le=100)
    night_start_hour: Optional[int] = Field(default=None, ge=0, le=23)
    night_end_hour: Optional[int] = Field(default=None, ge=0, le=23)
    reason: Optional[str] = Field(default=None, max_length=512)


class FareResetIn(BaseModel):
    reason: str = Field(min_length=1, max_length=512)


class FareCalculateIn(BaseModel):
    distance_km: float = Field(gt=0)
    start_time: Optional[datetime] = None


class CommissionUpdateIn(BaseModel):
    admin_commission_rate: Optional[float] = Field(default=None, ge=0, le=100)
    franchise_commission_rate: Optional[float] = Field(default=None, ge=0, le=100)
    reason: Optional[str] = Field(default=None, max_length=512)


class ReasonIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=512)


class DriverDueRequestIn(BaseModel):
    due_amount: int = Field(gt=0)
    payment_method: Optional[Literal["cash", "online"]] = None
    payment_photo: Optional[str] = Field(default=None, max_length=512)
    notes: Optional[str] = Field(default=None, max_length=1024)


class FranchiseBillRequestIn(BaseModel):
    weekly_bill_id: uuid.UUID
    payment_method: Optional[Literal["cash", "online"]] = None
    payment_photo: str = Field(min_length=1, max_length=512)
    notes: Optional[str] = Field(default=None, max_length=1024)


class ApproveDueIn(BaseModel):
    payment_method: Optional[Literal["cash", "online"]] = None
    payment_photo: Optional[str] = Field(default=None, max_length=512)
    note: Optional[str] = Field(default=None, max_length=1024)


class RejectDueIn(BaseModel):
    note: Optional[str] = Field(default=None, max_length=1024)


class WeeklyBillIn(BaseModel):
    franchise_id: uuid.UUID
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
