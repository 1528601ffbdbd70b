from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire and in the store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ---------- Users ----------
class User(CamelModel):
    id: str
    email: str
    name: str
    farm_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    stripe_connected: bool = False
    stripe_account_id: Optional[str] = None
    is_admin: bool = False
    created_at: str


class UserCreate(CamelModel):
    id: Optional[str] = None
    email: EmailStr
    name: str = Field(..., min_length=1)


class UserUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    farm_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    stripe_connected: Optional[bool] = None
    stripe_account_id: Optional[str] = None


# ---------- Classes ----------
class ClassIn(CamelModel):
    # Unknown fields sent by the client are stored as-is.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    description: str = ""
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    address: Optional[str] = None
    max_students: int = Field(..., ge=1)
    price_per_person: float = Field(..., ge=0)
    auto_approve_bookings: bool = True
    photos: List[str] = []
    created_at: Optional[str] = None


class ClassRecord(ClassIn):
    id: str
    instructor_id: str
    instructor_name: Optional[str] = None
    created_at: str


class AvailableSpots(CamelModel):
    max_students: int
    confirmed_bookings: int
    available_spots: int


class DeleteClassResponse(CamelModel):
    success: bool = True
    message: str
    deleted_class_id: str


# ---------- Bookings ----------
class BookRequest(CamelModel):
    class_id: str
    student_count: int
    student_names: List[str]
    subtotal: Optional[float] = None
    herd_fee: Optional[float] = None
    total_amount: Optional[float] = None
    # Informational only; the class's policy at booking time decides.
    auto_approve: Optional[bool] = None
    # Stable per logical booking attempt so client retries do not duplicate.
    request_id: Optional[str] = Field(None, max_length=128)


class RespondRequest(CamelModel):
    action: Literal["approve", "deny", "decline"]
    message: Optional[str] = None


class Booking(CamelModel):
    id: str
    class_id: str
    user_id: str
    user_email: str
    user_name: str
    host_id: str
    host_email: str
    host_name: str
    student_count: int
    student_names: List[str]
    subtotal: float
    herd_fee: float
    total_amount: float
    status: BookingStatus
    payment_status: PaymentStatus
    auto_approve: bool
    created_at: str
    approved_at: Optional[str] = None
    denied_at: Optional[str] = None
    host_message: Optional[str] = None
    payment_reference: Optional[str] = None
    request_id: Optional[str] = None


class BookingOut(CamelModel):
    success: bool = True
    booking: Booking
    message: str
