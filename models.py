from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime, the form every timestamp is stored in."""
    return datetime.now(timezone.utc)


class DonationStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    PICKED_UP = "picked_up"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class FoodType(str, Enum):
    VEG = "veg"
    NON_VEG = "non-veg"
    PACKAGED = "packaged"
    COOKED = "cooked"
    FRUITS = "fruits"
    DAIRY = "dairy"
    BEVERAGES = "beverages"
    OTHER = "other"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    role: str = UserRole.USER.value
    is_verified: bool = True

    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    avatar_url: Optional[str] = None

    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Donation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    donor_id: int = Field(foreign_key="user.id", index=True)

    title: str
    description: str = ""
    food_type: str
    quantity: str
    expiry_date: datetime = Field(index=True)
    pickup_location: str
    image_url: Optional[str] = None
    status: str = Field(default=DonationStatus.AVAILABLE.value, index=True)

    # Contact details as entered at creation time, not the live user row.
    donor_contact: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    additional_notes: str = ""

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class PickupRequest(SQLModel, table=True):
    __tablename__ = "pickup_request"
    __table_args__ = (
        Index(
            "uq_pickup_request_pending",
            "donation_id",
            "requester_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    donation_id: int = Field(foreign_key="donation.id", index=True)
    requester_id: int = Field(foreign_key="user.id", index=True)

    message: Optional[str] = None
    pickup_time: Optional[str] = None
    status: str = RequestStatus.PENDING.value

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Recipe(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    title: str
    description: str = ""
    ingredients: list = Field(default_factory=list, sa_column=Column(JSON))
    instructions: list = Field(default_factory=list, sa_column=Column(JSON))
    prep_time: Optional[str] = None
    servings: int = 2
    difficulty: Optional[str] = None
    dietary_restrictions: list = Field(default_factory=list, sa_column=Column(JSON))
    tips: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)


class Feedback(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")

    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: str
    rating: Optional[int] = None
    category: str = "general"
    status: str = "open"

    created_at: datetime = Field(default_factory=utcnow)
