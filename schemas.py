"""
API Schemas

Pydantic views of the SQLAlchemy models in models.py.
Each schema reads straight from an ORM object (from_attributes) and the
serialization aliases give the JSON keys the API returns:
- User -> "users" table (password hash never serialized)
- Product -> "products" table
- CartItem / CartItemWithProduct -> "cart_items" table
- Order / OrderItem -> "orders" / "order_items" tables
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Literal, Optional, List


class User(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: Optional[str] = Field(None, exclude=True, description="BCrypt hashed password")
    role: Literal["admin", "user"] = Field("user", description="Role: admin | user")
    created_at: Optional[datetime] = Field(None, serialization_alias="createdAt")


class Product(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    price: float = Field(..., gt=0)
    stock: int = Field(..., ge=0)
    category: Optional[str] = None
    image: Optional[str] = None
    created_at: Optional[datetime] = Field(None, serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(None, serialization_alias="updatedAt")


class CartItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    product_id: int
    quantity: int


class CartItemWithProduct(CartItem):
    product: Product


class OrderItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    product_id: int
    quantity: int
    price: float


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    total_amount: float
    status: str = "completed"
    ordered_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)


class DashboardStats(BaseModel):
    total_products: int = Field(..., serialization_alias="totalProducts")
    total_revenue: float = Field(..., serialization_alias="totalRevenue")
    total_orders: int = Field(..., serialization_alias="totalOrders")
    low_stock_items: int = Field(..., serialization_alias="lowStockItems")


# Integer key columns are 32-bit on Postgres; ids above this cannot exist.
MAX_ID = 2**31 - 1
