"""
Database Schemas for the Bookstore API

Each Pydantic model represents a collection in MongoDB. The collection name is the
lowercase of the class name (e.g., ShoppingBag -> "shoppingbag").
"""

import re

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal

BOOK_STATUS = ("ACTIVE", "INACTIVE")
USER_STATUS = ("ACTIVE", "INACTIVE", "BLOCKED")
USER_ROLES = ("ADMIN", "CUSTOMER")
BAG_STATUS = ("OPEN", "CLOSED")
ORDER_STATUS = ("PROCESSING", "COMPLETED")
ORDER_PAYMENT = ("COD", "CARD", "UPI")

BookStatus = Literal["ACTIVE", "INACTIVE"]
UserStatus = Literal["ACTIVE", "INACTIVE", "BLOCKED"]
Role = Literal["ADMIN", "CUSTOMER"]
BagStatus = Literal["OPEN", "CLOSED"]
OrderStatus = Literal["PROCESSING", "COMPLETED"]
PaymentMode = Literal["COD", "CARD", "UPI"]

PHONE_REGEX = re.compile(r"^[1-9][0-9]{9}$")
# at least 8 characters, letters and digits only, one of each
PASSWORD_REGEX = re.compile(r"^(?=.*[A-Za-z])(?=.*\d)[A-Za-z\d]{8,}$")


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    phone: str = Field(..., description="10 digit phone number")
    email: EmailStr = Field(..., description="Email address (unique)")
    status: UserStatus = Field("ACTIVE", description="ACTIVE, INACTIVE or BLOCKED")
    role: Role = Field("CUSTOMER", description="ADMIN or CUSTOMER")
    password_hash: str = Field(..., description="Hashed password")


class Profile(BaseModel):
    """
    Customer profile: order history and known delivery addresses
    Collection name: "profile"
    """
    user_id: str
    orders: List[str] = Field(default_factory=list)
    addresses: List[str] = Field(default_factory=list)


class Author(BaseModel):
    """Collection name: "author" """
    name: str = Field(..., min_length=1)
    bio: Optional[str] = None


class Book(BaseModel):
    """
    Books collection schema
    Collection name: "book"
    """
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field(..., min_length=1, description="Author name")
    author_id: Optional[str] = Field(None, description="Reference to an author document")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(..., ge=0, description="Units in stock")
    status: BookStatus = Field("ACTIVE", description="ACTIVE or INACTIVE")
    image: Optional[str] = Field(None, description="Cover image path or URL")


class BagItem(BaseModel):
    book_id: str
    quantity: int = Field(..., ge=1)


class ShoppingBag(BaseModel):
    """
    Shopping bag collection schema, one OPEN bag per user
    Collection name: "shoppingbag"
    """
    user_id: str
    books: List[BagItem] = Field(default_factory=list)
    total: float = Field(0, ge=0)
    status: BagStatus = "OPEN"
    version: int = 0


class OrderItem(BaseModel):
    book_id: str
    title: str
    unit_price: float
    quantity: int
    subtotal: float


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    books: List[OrderItem]
    address: str
    payment: PaymentMode = "COD"
    status: OrderStatus = "PROCESSING"
    total: float
