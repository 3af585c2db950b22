"""
Database Schemas for the Bookstore

MongoDB collections are defined below using Pydantic models. Cross references
(user_id, book_id, order_id) are stored as hex strings of the target _id.

We will use these collections:
- users: customers, moderators and admins
- books: catalog entries with embedded purchasable formats
- orders: one per checkout
- order_items: price snapshots of each purchased line
- digital_access: library grants (digital downloads and physical purchases)

Request payloads accepted by the API live at the bottom of this module.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Role = Literal["customer", "moderator", "admin"]
FormatType = Literal["physical", "digital", "both"]
OrderStatus = Literal["pending", "completed", "cancelled"]
DeliveryStatus = Literal["pending", "accepted", "in_transit", "delivered"]

DIGITAL_FORMATS = ("digital", "both")


class User(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field("customer")
    is_premium: bool = False
    premium_until: Optional[datetime] = None
    loyalty_points: int = Field(0, ge=0)
    is_active: bool = True


class Format(BaseModel):
    type: FormatType
    price: float = Field(..., gt=0)
    stock_quantity: int = Field(..., ge=0)


def check_unique_types(formats: List[Format]) -> List[Format]:
    types = [f.type for f in formats]
    if len(types) != len(set(types)):
        raise ValueError("format types must be unique per book")
    return formats


class Book(BaseModel):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    description: str = ""
    image_url: str = ""
    published_year: Optional[int] = None
    isbn: str = ""
    category: str = ""
    rating: float = Field(0, ge=0, le=5)
    formats: List[Format] = Field(..., min_length=1)

    @field_validator("formats")
    @classmethod
    def unique_format_types(cls, formats: List[Format]) -> List[Format]:
        return check_unique_types(formats)


class Order(BaseModel):
    user_id: str
    status: OrderStatus = "pending"
    subtotal: float = Field(..., ge=0, description="Sum of line totals before discounts")
    discount: float = Field(0, ge=0, lt=1)
    total_amount: float = Field(..., ge=0, description="Amount charged after discounts")
    item_count: int = Field(..., gt=0)
    delivery_status: Optional[DeliveryStatus] = None
    delivery_address: Optional[str] = None
    order_date: datetime


class OrderItem(BaseModel):
    order_id: str
    book_id: str
    format_type: FormatType
    quantity: int = Field(..., gt=0)
    price: float = Field(..., gt=0, description="Unit price at time of purchase")


class DigitalAccess(BaseModel):
    user_id: str
    book_id: str
    format_type: FormatType
    order_id: Optional[str] = None
    access_granted_date: datetime
    expiry_date: Optional[datetime] = Field(None, description="None means perpetual")
    access_url: str = ""


# Request payloads

class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)

    @field_validator("password")
    @classmethod
    def no_whitespace(cls, value: str) -> str:
        if any(ch.isspace() for ch in value):
            raise ValueError("Password must not contain whitespace")
        return value


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UpdateProfileRequest(BaseModel):
    username: Optional[str] = Field(None, max_length=50)
    email: Optional[EmailStr] = None


class UpdateBookRequest(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    published_year: Optional[int] = None
    isbn: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    formats: Optional[List[Format]] = None


class OrderLine(BaseModel):
    book_id: str
    format_type: FormatType
    quantity: int = Field(..., gt=0)


class CreateOrderRequest(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)
    delivery_address: Optional[str] = Field(None, max_length=400)


class UpdateOrderStatusRequest(BaseModel):
    status: Literal["completed", "cancelled"]


class UpdateDeliveryRequest(BaseModel):
    delivery_status: DeliveryStatus
    delivery_address: Optional[str] = Field(None, max_length=400)


class UpdateRoleRequest(BaseModel):
    role: Role


class GrantPremiumRequest(BaseModel):
    days: int = Field(..., gt=0, le=3650)
