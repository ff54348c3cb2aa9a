from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# Ratings are stored as fixed-point integers: 47 means 4.7 stars.
RATING_SCALE = 10


def rating_to_display(rating: int) -> float:
    return round(rating / RATING_SCALE, 1)


def rating_from_display(value: float) -> int:
    return int(round(value * RATING_SCALE))


class Role(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMINISTRATOR = "administrator"


class BookingStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

STATUSES_WITH_PROVIDER = frozenset(
    {
        BookingStatus.ASSIGNED,
        BookingStatus.ACCEPTED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
    }
)


class Actor(BaseModel):
    account_id: str
    role: Role


class Account(BaseModel):
    id: str
    name: str
    email: str
    phone: str
    role: Role
    address: Optional[str] = None
    created_at: str
    updated_at: str


class Provider(BaseModel):
    id: str
    account_id: str
    specializations: list[str] = Field(default_factory=list)
    is_available: bool = False
    is_verified: bool = False
    experience_years: int = 0
    rating: int = 0
    total_jobs: int = 0
    license_number: Optional[str] = None
    created_at: str
    updated_at: str

    @property
    def eligible(self) -> bool:
        return self.is_available and self.is_verified


class ProviderView(BaseModel):
    provider: Provider
    account: Optional[Account] = None
    rating_display: float = 0.0


class AssignmentRecord(BaseModel):
    provider_id: str
    assigned_at: str
    status: BookingStatus = BookingStatus.ASSIGNED


class Booking(BaseModel):
    id: str
    account_id: str
    category: str
    description: str
    address: str
    phone: str
    preferred_date: Optional[str] = None
    preferred_time_slot: Optional[str] = None
    status: BookingStatus = BookingStatus.PENDING
    assigned_provider_id: Optional[str] = None
    assignment_history: list[AssignmentRecord] = Field(default_factory=list)
    created_at: str
    updated_at: str


class BookingPatch(BaseModel):
    """Partial booking update.

    Only fields explicitly set are written, so ``assigned_provider_id=None``
    clears the assignment while an unset field is left alone. ``history_entry``
    is appended to the assignment history in the same transaction.
    """

    status: Optional[BookingStatus] = None
    assigned_provider_id: Optional[str] = None
    history_entry: Optional[AssignmentRecord] = None


class Category(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    is_active: bool = True


class BookingCreateRequest(BaseModel):
    category: str
    description: str
    address: str
    phone: str
    preferred_date: Optional[str] = None
    preferred_time_slot: Optional[str] = None


class BookingCreateResult(BaseModel):
    booking: Booking
    assigned_provider: Optional[Provider] = None
    message: str


class BookingStatusUpdateRequest(BaseModel):
    status: BookingStatus


class RejectionOutcome(BaseModel):
    message: str
    reassigned: bool
    booking: Booking


class CategoryCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None


class ProviderVerifyRequest(BaseModel):
    is_verified: bool


class ProviderSelfUpdateRequest(BaseModel):
    is_available: Optional[bool] = None
    specializations: Optional[list[str]] = None
    experience_years: Optional[int] = Field(default=None, ge=0)
    license_number: Optional[str] = None


class ProviderOnboardRequest(BaseModel):
    name: str
    email: str
    phone: str
    password: str = Field(min_length=6)
    specializations: list[str] = Field(default_factory=list)
    experience_years: int = Field(default=0, ge=0)
    license_number: Optional[str] = None


class ProviderOnboardResult(BaseModel):
    account: Account
    provider: Provider


class DashboardStats(BaseModel):
    total_bookings: int
    active_providers: int
    total_customers: int
    pending_bookings: int
    completed_bookings: int


class AuthRegisterRequest(BaseModel):
    name: str
    email: str
    phone: str
    password: str = Field(min_length=6)
    role: Role = Role.CUSTOMER
    address: Optional[str] = None


class AuthLoginRequest(BaseModel):
    email: str
    password: str


class AuthTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: Account
    expires_at: str


class DeviceTokenRegisterRequest(BaseModel):
    device_token: str
    platform: str = "android"


class NotificationRecord(BaseModel):
    id: str
    account_id: str
    title: str
    body: str
    category: str = "booking"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
