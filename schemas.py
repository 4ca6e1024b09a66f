"""
Database Schemas

MongoDB collection schemas for the storefront, as Pydantic models.
Model name lowercased is the collection name; Address, WishlistItem and
Preferences are embedded in user documents.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

ADDRESS_LABELS = ("home", "work", "other")
USER_ROLES = ("user", "admin", "customer")
GENDERS = ("male", "female", "other", "")
ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]


class Address(BaseModel):
    id: str
    street: str
    city: str
    state: str
    zip_code: str = Field(..., description="Digits only")
    country: str = "Bangladesh"
    is_default: bool = False
    label: Literal["home", "work", "other"] = "home"
    phone: str = ""


class WishlistItem(BaseModel):
    product_id: str
    added_at: Optional[datetime] = None


class Preferences(BaseModel):
    newsletter: bool = True
    sms_notifications: bool = False
    email_notifications: bool = True
    product_recommendations: bool = True


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Literal["user", "admin", "customer"] = "customer"
    phone: str = ""
    date_of_birth: Optional[datetime] = None
    gender: Literal["male", "female", "other", ""] = ""
    addresses: List[Address] = Field(default_factory=list)
    wishlist: List[WishlistItem] = Field(default_factory=list)
    preferences: Preferences = Field(default_factory=Preferences)
    version: int = Field(0, description="Bumped on every address book write")


class Product(BaseModel):
    product_id: str = Field(..., min_length=1, description="Caller-assigned unique id")
    name: str
    description: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0, description="Pre-discount price")
    category: str
    images: List[str] = Field(default_factory=list)
    rating: float = Field(default=0, ge=0, le=5)
    reviews: int = Field(default=0, ge=0)
    in_stock: bool = True
    features: List[str] = Field(default_factory=list)


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total_price: float = 0
    shipping_address: Optional[dict] = None
    status: OrderStatus = "pending"
    notes: Optional[str] = None
    status_updated_at: Optional[datetime] = None
