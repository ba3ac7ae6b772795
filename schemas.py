from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class CamelModel(BaseModel):
    """Request bodies use the camelCase keys the web client sends."""

    model_config = ConfigDict(populate_by_name=True)


# ----- users -----

class UserPublic(BaseModel):
    id: int
    name: str
    email: EmailStr
    phone: Optional[str] = None
    avatar_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserRead(UserPublic):
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str


class UserSignIn(BaseModel):
    email: EmailStr
    password: str


class AuthResult(BaseModel):
    message: str
    user: UserPublic
    token: str


class ProfileUpdate(CamelModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(default=None, alias="zipCode")


class ProfileStats(CamelModel):
    total_donations: int = Field(alias="totalDonations")
    active_donations: int = Field(alias="activeDonations")
    total_recipes: int = Field(alias="totalRecipes")
    total_requests_sent: int = Field(alias="totalRequestsSent")


class ProfileRead(BaseModel):
    user: UserRead
    stats: ProfileStats


class ProfileUpdated(BaseModel):
    message: str
    user: UserRead


# ----- pagination -----

class Pagination(CamelModel):
    limit: int
    offset: int
    has_more: bool = Field(alias="hasMore")


MAX_PAGE_SIZE = 100


def page_window(limit: int, offset: int) -> tuple:
    """Clamp client-supplied paging to 1..MAX_PAGE_SIZE rows from offset >= 0."""
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


# ----- donations -----

class DonationCreate(BaseModel):
    """Raw donation fields as submitted; the lifecycle engine validates them."""

    title: Optional[str] = None
    food_type: Optional[str] = None
    quantity: Optional[str] = None
    expiry_date: Optional[str] = None
    pickup_location: Optional[str] = None
    description: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    additional_notes: Optional[str] = None


class DonorContact(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class DonationRead(BaseModel):
    id: int
    donor_id: int
    title: str
    description: str
    food_type: str
    quantity: str
    expiry_date: datetime
    pickup_location: str
    image_url: Optional[str] = None
    status: str
    donor_contact: Optional[DonorContact] = None
    additional_notes: str = ""
    created_at: datetime
    updated_at: datetime
    donor: Optional[UserPublic] = None

    model_config = ConfigDict(from_attributes=True)


class DonationCreated(BaseModel):
    message: str
    donation: DonationRead


class DonationList(BaseModel):
    donations: List[DonationRead]
    pagination: Pagination


# ----- pickup requests -----

class PickupRequestCreate(CamelModel):
    donation_id: Optional[int] = Field(default=None, alias="donationId")
    message: Optional[str] = None
    pickup_time: Optional[str] = Field(default=None, alias="pickupTime")


class PickupRequestStatusUpdate(BaseModel):
    status: Optional[str] = None


class PickupRequestRead(BaseModel):
    id: int
    donation_id: int
    requester_id: int
    message: Optional[str] = None
    pickup_time: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PickupRequestDetail(PickupRequestRead):
    donation: Optional[DonationRead] = None
    requester: Optional[UserPublic] = None


class PickupRequestEnvelope(CamelModel):
    message: str
    pickup_request: PickupRequestRead = Field(alias="pickupRequest")


class PickupRequestDetailEnvelope(CamelModel):
    pickup_request: PickupRequestDetail = Field(alias="pickupRequest")


class PickupRequestList(BaseModel):
    requests: List[PickupRequestDetail]
    pagination: Pagination


class Message(BaseModel):
    message: str


# ----- recipes -----

class RecipeIngredient(BaseModel):
    name: str
    quantity: str = ""

    model_config = ConfigDict(coerce_numbers_to_str=True)


class RecipeGenerate(CamelModel):
    ingredients: List[RecipeIngredient] = []
    number_of_people: Optional[int] = Field(default=None, alias="numberOfPeople")
    food_type: Optional[str] = Field(default=None, alias="foodType")
    dietary_restrictions: List[str] = Field(default_factory=list, alias="dietaryRestrictions")


class RecipeContent(CamelModel):
    """The recipe object the AI is asked to return."""

    title: str
    description: str = ""
    ingredients: List[RecipeIngredient] = []
    instructions: List[str] = []
    prep_time: str = Field(default="", alias="prepTime")
    difficulty: str = "Medium"
    tips: str = ""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class RecipeRead(BaseModel):
    id: int
    user_id: int
    title: str
    description: str
    ingredients: list
    instructions: list
    prep_time: Optional[str] = None
    servings: int
    difficulty: Optional[str] = None
    dietary_restrictions: list
    tips: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RecipeList(BaseModel):
    recipes: List[RecipeRead]
    pagination: Pagination


# ----- feedback -----

class FeedbackCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    rating: Optional[int] = None
    category: Optional[str] = None


class FeedbackRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: str
    rating: Optional[int] = None
    category: str
    status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FeedbackList(BaseModel):
    feedback: List[FeedbackRead]
    pagination: Pagination
