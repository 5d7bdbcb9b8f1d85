"""
Schemas for Campus Market

Backend rows (profiles, products, wishlists, messages) are plain dicts keyed
by column name; the models here are what the stores hand to callers and what
the API accepts. Product rows carry `title` in the backend and `name` here.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

Condition = Literal['New', 'Like New', 'Good', 'Fair', 'Poor']
ProductStatus = Literal['Active', 'Sold', 'Reserved']
SortOption = Literal['newest', 'oldest', 'price-low', 'price-high']

CATEGORIES = [
    "Books",
    "Electronics",
    "Clothing",
    "Home & Decor",
    "Sports & Fitness",
    "Stationery",
    "Cosmetics",
    "Furniture",
    "Other",
]
CONDITIONS = ['New', 'Like New', 'Good', 'Fair', 'Poor']
MAX_IMAGES = 5
MIN_PASSWORD_LENGTH = 6
UNKNOWN_SELLER = "Unknown User"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _not_blank(value: Optional[str], label: str) -> Optional[str]:
    if value is not None and not value.strip():
        raise ValueError(f"{label} cannot be empty")
    return value


# Profile row, keyed by the auth user id
class Profile(BaseModel):
    id: str
    full_name: str = Field("", description="Full name")
    student_id: str = Field("", description="Campus student id")
    phone_number: Optional[str] = None
    hostel_details: Optional[str] = Field(None, description="Hostel block / room")
    avatar_url: Optional[str] = None


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    student_id: Optional[str] = None
    phone_number: Optional[str] = None
    hostel_details: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator('full_name', 'student_id')
    @classmethod
    def required_text(cls, v, info):
        return _not_blank(v, "Name" if info.field_name == 'full_name' else "Student id")

    def changes(self) -> dict:
        # Contact fields may be cleared with null, name and student id may not
        changes = self.model_dump(exclude_unset=True)
        return {k: v for k, v in changes.items() if v is not None or k not in ('full_name', 'student_id')}


# Identity plus profile, as shown to the user
class UserInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    email: str
    full_name: Optional[str] = None
    student_id: Optional[str] = None
    phone_number: Optional[str] = None
    hostel_details: Optional[str] = None
    profile_image: Optional[str] = None

    def with_profile(self, profile: Profile) -> "UserInfo":
        return self.model_copy(update={
            "full_name": profile.full_name,
            "student_id": profile.student_id,
            "phone_number": profile.phone_number,
            "hostel_details": profile.hostel_details,
            "profile_image": profile.avatar_url,
        })


class RegisterData(BaseModel):
    full_name: str
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    confirm_password: Optional[str] = None
    student_id: str
    phone_number: Optional[str] = None
    hostel_details: Optional[str] = None

    @field_validator('full_name', 'student_id')
    @classmethod
    def required_text(cls, v, info):
        return _not_blank(v, info.field_name.replace('_', ' ').capitalize())

    @model_validator(mode='after')
    def passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self

    def metadata(self) -> dict:
        return self.model_dump(include={'full_name', 'student_id', 'phone_number', 'hostel_details'})


# Listing as buyers see it, seller fields joined from profiles at read time
class Product(BaseModel):
    id: str
    name: str
    description: str = ""
    price: int = Field(..., ge=0)
    negotiable: bool = False
    condition: Condition
    category: str
    location: str = ""
    images: List[str] = Field(default_factory=list)
    seller_id: str
    seller_name: str = UNKNOWN_SELLER
    seller_image: Optional[str] = None
    seller_phone: Optional[str] = None
    created_at: datetime
    status: ProductStatus = 'Active'


# Listing form
class ProductCreate(BaseModel):
    name: str = Field(..., max_length=140)
    description: str = Field(..., max_length=5000)
    price: int = Field(..., ge=0)
    negotiable: bool = False
    condition: Condition
    category: str
    location: str
    images: List[str] = Field(..., min_length=1, max_length=MAX_IMAGES)

    @field_validator('name', 'description', 'location', 'category')
    @classmethod
    def required_text(cls, v, info):
        return _not_blank(v, info.field_name.capitalize())


class ProductUpdate(BaseModel):
    """Only the fields explicitly set are written."""
    name: Optional[str] = Field(None, max_length=140)
    description: Optional[str] = Field(None, max_length=5000)
    price: Optional[int] = Field(None, ge=0)
    negotiable: Optional[bool] = None
    condition: Optional[Condition] = None
    category: Optional[str] = None
    location: Optional[str] = None
    images: Optional[List[str]] = Field(None, max_length=MAX_IMAGES)
    status: Optional[ProductStatus] = None

    def changes(self) -> dict:
        # null means "leave as is"; none of the listing columns are nullable
        return self.model_dump(exclude_unset=True, exclude_none=True)


# Direct message between two users, optionally about a listing
class Message(BaseModel):
    id: str
    sender_id: str
    receiver_id: str
    content: str = Field(..., max_length=5000)
    product_id: Optional[str] = None
    timestamp: datetime
    read: bool = False


class Conversation(BaseModel):
    user_id: str
    user_name: str
    user_image: Optional[str] = None
    last_message: str
    timestamp: datetime
    unread_count: int = 0


class ProductFilter(BaseModel):
    search: str = ""
    category: str = ""
    condition: str = ""
    min_price: int = Field(0, ge=0)
    max_price: int = Field(50000, ge=0)
    negotiable_only: bool = False
    sort: SortOption = 'newest'


class Notification(BaseModel):
    level: Literal['success', 'error', 'info']
    message: str
    created_at: datetime = Field(default_factory=utcnow)
