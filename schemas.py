"""
Database Schemas for the storefront

Each top-level Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name (product, order, admin).
Request-only models live at the bottom of the module.
"""
import re
from enum import Enum
from typing import Dict, List, Literal, Optional, Set, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

AttributeValue = Union[str, int, float, bool]
StockStatus = Literal["in_stock", "out_of_stock", "preorder"]
PaymentMethod = Literal["cod", "card", "paypal"]


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def error_details(exc: PydanticValidationError) -> List[str]:
    """One message per violated field, e.g. ``price: Input should be greater than or equal to 0``."""
    details = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        details.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return details


def _unique(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return values
    seen = set()
    out = []
    for v in values:
        v = v.strip()
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out


# ---------------------------------------------------------------------------
# Product
# ---------------------------------------------------------------------------
class Attribute(BaseModel):
    name: str = Field(..., min_length=1)
    value: AttributeValue

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data):
        if isinstance(data, dict) and "attribute_name" in data:
            data = dict(data)
            data.setdefault("name", data.pop("attribute_name"))
            data.setdefault("value", data.pop("attribute_value", None))
        return data


class Dimensions(BaseModel):
    length: Optional[float] = Field(None, ge=0)
    width: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)


class Variant(BaseModel):
    sku: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    quantity_in_stock: int = Field(0, ge=0)
    attributes: List[Attribute] = []


class ProductFields(BaseModel):
    """Validators shared by the create and update shapes."""

    @field_validator("categories", "tags", "meta_keywords", check_fields=False)
    @classmethod
    def dedupe(cls, v):
        return _unique(v)

    @field_validator("currency", check_fields=False)
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if v else v

    @field_validator("slug", check_fields=False)
    @classmethod
    def normalize_slug(cls, v):
        if v is None:
            return v
        slug = slugify(v)
        if not slug:
            raise ValueError("slug must contain at least one letter or digit")
        return slug


class Product(ProductFields):
    name: str = Field(..., min_length=1)
    slug: str
    description: Optional[str] = None
    short_description: Optional[str] = None
    sku: Optional[str] = None
    brand_id: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: str = Field("USD", pattern=r"^[A-Za-z]{3}$")
    quantity_in_stock: int = Field(0, ge=0)
    stock_status: StockStatus = "in_stock"
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    shipping_class: Optional[str] = None
    categories: List[str] = []
    tags: List[str] = []
    attributes: List[Attribute] = []
    variants: List[Variant] = []
    images: List[str] = []
    videos: List[str] = []
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: List[str] = []
    rating_average: float = 0.0
    rating_count: int = 0
    featured: bool = False
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def default_slug(cls, data):
        if isinstance(data, dict) and not data.get("slug") and data.get("name"):
            data = {**data, "slug": data["name"]}
        return data

    @model_validator(mode="after")
    def sale_below_price(self):
        if self.sale_price is not None and self.sale_price > self.price:
            raise ValueError("sale_price must not exceed price")
        return self


class ProductUpdate(ProductFields):
    name: Optional[str] = Field(None, min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    sku: Optional[str] = None
    brand_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, pattern=r"^[A-Za-z]{3}$")
    quantity_in_stock: Optional[int] = Field(None, ge=0)
    stock_status: Optional[StockStatus] = None
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    shipping_class: Optional[str] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    attributes: Optional[List[Attribute]] = None
    variants: Optional[List[Variant]] = None
    videos: Optional[List[str]] = None
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[List[str]] = None
    featured: Optional[bool] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Order
# ---------------------------------------------------------------------------
class OrderStatus(str, Enum):
    PENDING = "Pending"
    DISPATCHED = "Dispatched"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.DISPATCHED, OrderStatus.CANCELLED},
    OrderStatus.DISPATCHED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class Customer(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)


class ShippingAddress(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1, alias="zipCode")
    country: str = "United States"


class OrderItem(BaseModel):
    """Snapshot of the product at purchase time."""

    model_config = ConfigDict(populate_by_name=True)

    product: str
    product_name: str = Field(..., min_length=1, alias="productName")
    price: float = Field(..., ge=0)
    selected_size: Optional[str] = Field(None, alias="selectedSize")
    selected_color: Optional[str] = Field(None, alias="selectedColor")
    quantity: int = Field(..., ge=1)

    @field_validator("product")
    @classmethod
    def valid_product_id(cls, v):
        if not ObjectId.is_valid(v):
            raise ValueError("must be a valid product id")
        return v


class Order(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer: Customer
    shipping_address: ShippingAddress = Field(..., alias="shippingAddress")
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: Optional[float] = Field(None, ge=0)
    shipping_cost: float = Field(0, ge=0, alias="shippingCost")
    tax: float = Field(0, ge=0)
    total_amount: float = Field(..., gt=0, alias="totalAmount")
    payment_method: PaymentMethod = Field("cod", alias="paymentMethod")
    order_notes: Optional[str] = Field(None, alias="orderNotes")


class StatusUpdate(BaseModel):
    status: str


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------
class Admin(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password_hash: str
    role: str = "admin"


class AdminRegister(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)


class AdminLogin(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class AdminOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    role: str


class Token(BaseModel):
    token: str
    token_type: str = "bearer"
    admin: AdminOut
