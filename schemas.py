"""
Database Schemas

MongoDB collection schemas for the photo studio, as Pydantic models.
Each Pydantic model represents a collection in the database.
Model name lowercased is the collection name.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

Role = Literal["user", "admin"]
ImageCategory = Literal["portrait", "wedding", "nature", "event", "other"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
SessionType = Literal["portrait", "wedding", "event", "family", "commercial", "other"]
PaymentMethod = Literal["credit_card", "paypal", "cash", "bank_transfer"]

SESSION_TYPES = ("portrait", "wedding", "event", "family", "commercial", "other")


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = Field("user", description="Role: user | admin")
    is_photographer: bool = Field(False, description="Can be assigned to bookings")
    phone: Optional[str] = None
    address: Optional[Address] = None
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None


class Image(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    category: ImageCategory = "other"
    tags: List[str] = Field(default_factory=list)
    image_url: str
    thumbnail_url: Optional[str] = None
    original_filename: Optional[str] = None
    size: int = 0
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    location: Optional[str] = None
    date_taken: Optional[datetime] = None
    featured: bool = False
    in_portfolio: bool = True
    is_for_sale: bool = False
    uploaded_by: str
    uploaded_at: datetime

    @field_validator("tags")
    @classmethod
    def unique_tags(cls, v: List[str]) -> List[str]:
        seen = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = "print"
    image_url: Optional[str] = None
    image_id: Optional[str] = None
    featured: bool = False


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class ShippingAddress(BaseModel):
    name: str
    street: str
    city: str
    state: Optional[str] = None
    zip_code: str
    country: str
    phone: Optional[str] = None


class PaymentInfo(BaseModel):
    type: Literal["stripe", "paypal"] = "stripe"
    transaction_id: Optional[str] = None
    status: PaymentStatus = "pending"


class Order(BaseModel):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    payment_info: PaymentInfo = Field(default_factory=PaymentInfo)
    status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class TimeSlot(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def end_after_start(self):
        if self.end <= self.start:
            raise ValueError("Time slot end must be after its start")
        return self


class BookingPayment(BaseModel):
    amount: float = Field(..., ge=0)
    deposit: float = Field(0, ge=0)
    is_paid: bool = False
    method: PaymentMethod = "credit_card"
    transaction_id: Optional[str] = None


class AdditionalDetails(BaseModel):
    number_of_people: Optional[int] = Field(None, ge=1)
    special_requirements: Optional[str] = None
    preferred_style: Optional[str] = None
    outfit_changes: Optional[int] = Field(None, ge=0)


class Deliverables(BaseModel):
    digital_images: int = 0
    printed_photos: int = 0
    album_pages: int = 0
    video_length: int = Field(0, description="Minutes")


class Booking(BaseModel):
    client_id: str
    photographer_id: Optional[str] = None
    session_type: SessionType
    date: datetime
    time_slot: TimeSlot
    location: str = Field(..., min_length=1)
    additional_details: AdditionalDetails = Field(default_factory=AdditionalDetails)
    payment: BookingPayment
    status: BookingStatus = "pending"
    calendly_event_id: Optional[str] = None
    notes: Optional[str] = None
    deliverables: Deliverables = Field(default_factory=Deliverables)

    @field_validator("location")
    @classmethod
    def strip_location(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Please provide a location")
        return v
