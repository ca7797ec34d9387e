from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal
import re


class ReservationCreate(BaseModel):
    resource_type: str = Field(..., min_length=1, max_length=50)
    time_slot: str = Field(..., min_length=1, max_length=20)
    duration_code: str = Field(..., min_length=1, max_length=20)
    start_date: date
    end_date: date
    payment_method: str = Field(..., min_length=1, max_length=20)
    amount: Decimal = Field(Decimal("0"), ge=0)
    preferred_seat: Optional[str] = Field(None, max_length=10)
    # Admins may book on behalf of a member
    user_id: Optional[str] = Field(None, max_length=36)

    @field_validator('preferred_seat', mode='before')
    @classmethod
    def normalize_seat(cls, v):
        if v is None:
            return v
        v = str(v).strip().upper()
        if not v:
            return None
        if not re.fullmatch(r"[A-Z]\d{1,2}", v):
            raise ValueError("Seat labels look like A01")
        return v

    @model_validator(mode='after')
    def validate_dates(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class PaymentResultRequest(BaseModel):
    success: bool
    method: Optional[str] = Field(None, max_length=20)
    payment_reference: Optional[str] = Field(None, max_length=255)


class CashConfirmRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ReservationResponse(BaseModel):
    id: str
    user_id: str
    resource_type: str
    time_slot: str
    duration_code: str
    start_date: date
    end_date: date
    seat_label: Optional[str] = None
    payment_status: str
    payment_method: str
    payment_reference: Optional[str] = None
    lifecycle_status: str
    amount: Decimal
    admin_note: Optional[str] = None
    paid_at: Optional[datetime] = None
    cash_confirmed_at: Optional[datetime] = None
    cash_confirmed_by_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentOutcomeResponse(BaseModel):
    reservation: ReservationResponse
    membership_id: Optional[str] = None
    membership_id_issued: bool = False
    seat_changed: bool = False


class OccupiedSeatResponse(BaseModel):
    seat_label: str
    reservation_id: str
    occupied_by: str
    start_date: date
    end_date: date
    payment_status: str

    class Config:
        from_attributes = True


class OccupancyResponse(BaseModel):
    resource_type: str
    time_slot: str
    start_date: date
    end_date: date
    occupied: List[OccupiedSeatResponse]
