"""
Database Schemas for QueueLess Kirana

Each Pydantic model describes the documents of one MongoDB collection.
References between documents are stored as id strings.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["buyer", "shopowner"]
OrderStatus = Literal["pending", "confirmed", "preparing", "ready", "completed", "cancelled"]
PaymentMethod = Literal["cash", "online"]
PaymentStatus = Literal["pending", "paid", "refunded"]

ORDER_STATUSES = ("pending", "confirmed", "preparing", "ready", "completed", "cancelled")
TERMINAL_STATUSES = ("completed", "cancelled")


class User(BaseModel):
    mobile: str = Field(..., pattern=r"^[0-9]{10}$")
    password_hash: Optional[str] = Field(None, description="bcrypt hash, absent for OTP-only accounts")
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Role = "buyer"
    is_verified: bool = False


class OTP(BaseModel):
    mobile: str
    otp: str
    expires_at: datetime
    attempts: int = 0


class Coordinates(BaseModel):
    lat: float
    lng: float


class Shop(BaseModel):
    owner_id: str
    name: str
    description: Optional[str] = None
    category: str
    image: Optional[str] = None
    phone: str
    address: str
    city: str
    state: str
    pincode: str
    coordinates: Optional[Coordinates] = None
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    is_open: bool = True
    rating: float = Field(0, ge=0, le=5)


class Product(BaseModel):
    shop_id: str
    name: str
    description: Optional[str] = None
    category: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    unit: str
    image: Optional[str] = None
    is_available: bool = True
    stock: int = Field(0, ge=0)


class Cart(BaseModel):
    user_id: str
    shop_id: str
    shop_name: Optional[str] = None


class CartItem(BaseModel):
    cart_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class OrderItem(BaseModel):
    product_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: float


class Order(BaseModel):
    order_number: str
    user_id: str
    shop_id: str
    status: OrderStatus = "pending"
    total_amount: float = Field(..., ge=0)
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    items: List[OrderItem]
