"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the plural lowercase class name (users, products, ...).
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


ROLES = ("user", "admin")
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
DEFAULT_CATEGORIES = ("Shirts", "Pants", "Shoes", "Accessories", "Others")


class User(BaseModel):
    username: str = Field(..., description="Unique login name")
    password: str = Field(..., description="bcrypt hash, never returned")
    email: str = Field(..., description="Email address")
    phone: Optional[str] = Field(None, description="Contact phone")
    role: str = Field("user", description="user or admin")
    image_uri: Optional[str] = Field(None, description="Avatar path under /uploads")


class Product(BaseModel):
    title: str = Field(..., description="Product title")
    description: str = Field(..., description="Product description")
    price: float = Field(..., gt=0, allow_inf_nan=False, description="Unit price")
    category: str = Field(..., description="Free-text category name")
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(0, ge=0, description="Sellable units remaining")
    image_uri: Optional[str] = Field(None, description="Image path under /uploads")
    user_id: Optional[str] = Field(None, description="Seller id")


class Category(BaseModel):
    name: str = Field(..., description="Unique category name")
    image_uri: Optional[str] = None


class Order(BaseModel):
    user_id: str = Field(..., description="Buyer id")
    product_id: str = Field(..., description="Purchased product id")
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., gt=0, description="Price snapshot at purchase time")
    total_price: float = Field(..., gt=0, description="unit_price * quantity, frozen at creation")
    status: str = Field("pending", description="pending|processing|shipped|delivered|cancelled")
    shipping_address: Optional[str] = None
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None


class Payment(BaseModel):
    payment_id: str
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    currency: str = Field("THB")
    status: str = Field("completed")
    created_at: Optional[datetime] = None


def public_user(doc: Optional[dict]) -> Optional[dict]:
    """User projection safe to send to clients."""
    if not doc:
        return doc
    return {k: v for k, v in doc.items() if k != "password"}

