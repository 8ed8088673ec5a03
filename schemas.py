"""
Database Schemas for the food court ordering app

Each Pydantic model maps to a MongoDB collection.

Collections:
- users
- user_profiles
- stalls
- menu_items
- carts
- orders
- reviews

Request payloads that need validation beyond FastAPI's parameter parsing
live at the bottom of this module.
"""
import json
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator, model_validator


class Role(str, Enum):
    USER = "user"
    STALL_OWNER = "stall_owner"
    ADMIN = "admin"


class StallCategory(str, Enum):
    INDONESIAN_FOOD = "Indonesian Food"
    FAST_FOOD = "Fast Food"
    BEVERAGES = "Beverages"
    SNACKS = "Snacks"
    DESSERTS = "Desserts"
    ASIAN_FOOD = "Asian Food"
    WESTERN_FOOD = "Western Food"
    HALAL_FOOD = "Halal Food"
    VEGETARIAN = "Vegetarian"
    OTHERS = "Others"


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"  # placeholder, checkout never produces it
    WAITING_CONFIRMATION = "waiting_confirmation"
    PROCESSING = "processing"
    READY = "ready"
    COMPLETED = "completed"
    REJECTED = "rejected"


class DeliveryMethod(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class ReviewTag(str, Enum):
    PORSI_BESAR = "Porsi Besar"
    ENAK_BANGET = "Enak Banget"
    HARGA_TERJANGKAU = "Harga Terjangkau"
    CEPAT_DISAJIKAN = "Cepat Disajikan"
    BERSIH_HIGIENIS = "Bersih & Higienis"
    PELAYANAN_RAMAH = "Pelayanan Ramah"
    BUMBU_PAS = "Bumbu Pas"
    MASIH_HANGAT = "Masih Hangat"
    BAHAN_SEGAR = "Bahan Segar"
    LOKASI_STRATEGIS = "Lokasi Strategis"
    LAMA_PENYAJIAN = "Lama Penyajian"
    AGAK_MAHAL = "Agak Mahal"
    PORSI_KECIL = "Porsi Kecil"
    KURANG_BUMBU = "Kurang Bumbu"
    SUDAH_DINGIN = "Sudah Dingin"
    KURANG_HIGIENIS = "Kurang Higienis"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class User(Document):
    """
    Users collection schema
    Collection name: "users"
    """
    username: str = Field(..., description="Lowercase unique username")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Field(Role.USER, description="user | stall_owner | admin")
    photo_url: Optional[str] = Field(None, description="Profile picture URL")
    token_version: int = Field(0, ge=0, description="Bumped on logout to revoke issued tokens")


class UserProfile(Document):
    """
    Delivery address, keyed by user id
    Collection name: "user_profiles"
    """
    user_id: str
    address_name: Optional[str] = None
    address_detail: Optional[str] = None


class Stall(Document):
    """
    Stalls collection schema
    Collection name: "stalls"
    """
    owner_id: str = Field(..., description="Id of the owning stall_owner account")
    name: str = Field(..., description="Stall name")
    description: str = Field(..., description="Stall description")
    category: StallCategory
    food_types: List[str] = Field(default_factory=list, description="Kinds of food sold")
    stall_image_url: str = Field(..., description="Cover image URL")
    qris_image_url: Optional[str] = Field(None, description="Payment QR image URL")
    rating: float = Field(0.0, ge=0, le=5, description="Average review rating, one decimal")
    total_reviews: int = Field(0, ge=0)


class MenuItem(Document):
    """
    Menu items collection schema
    Collection name: "menu_items"
    """
    stall_id: str
    name: str
    description: str
    category: List[str] = Field(default_factory=list)
    price: int = Field(..., ge=0, description="Price in Rupiah")
    image_url: str
    is_available: bool = True


class CartItem(Document):
    menu_item_id: str
    name: str
    price: int = Field(..., ge=0)
    image_url: Optional[str] = None
    quantity: int = Field(..., ge=1, le=99)
    subtotal: int = Field(..., ge=0)


class Cart(Document):
    """
    Carts collection schema, one document per user keyed by user id
    Collection name: "carts"
    """
    user_id: str
    stall_id: str
    stall_name: str
    items: List[CartItem]
    total_price: int = Field(..., ge=0)
    version: int = Field(1, ge=1, description="Bumped on every write")


class OrderItem(CartItem):
    """Frozen snapshot of a cart line at checkout."""
    pass


class Order(Document):
    """
    Orders collection schema
    Collection name: "orders"
    """
    user_id: str
    stall_id: str
    stall_name: str
    stall_image_url: str = ""
    items: List[OrderItem]
    items_total: int = Field(..., ge=0)
    app_fee: int = Field(..., ge=0)
    delivery_method: DeliveryMethod
    delivery_fee: int = Field(..., ge=0)
    total_price: int = Field(..., ge=0)
    payment_proof_url: Optional[str] = None
    status: OrderStatus
    rejection_reason: Optional[str] = None
    is_reviewed: bool = False

    @model_validator(mode="after")
    def _check_total(self):
        if self.total_price != self.items_total + self.app_fee + self.delivery_fee:
            raise ValueError("total_price must equal items_total + app_fee + delivery_fee")
        return self


class Review(Document):
    """
    Reviews collection schema, at most one per order
    Collection name: "reviews"
    """
    order_id: str
    user_id: str
    stall_id: str
    stall_name: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    tags: List[ReviewTag] = Field(default_factory=list, max_length=5)
    image_urls: List[str] = Field(default_factory=list, max_length=5)


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

Username = Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=20, pattern=r"^[A-Za-z0-9_]+$")]
Password = Annotated[str, StringConstraints(min_length=6)]


def parse_string_list(value) -> List[str]:
    """Accept a list, a JSON array string or a comma-separated string."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, list):
        return [str(v).strip() for v in parsed if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class RegisterRequest(BaseModel):
    username: Username
    email: EmailStr
    password: Password
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Password and confirmation do not match")
        return self


class LoginRequest(BaseModel):
    identifier: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    password: Annotated[str, StringConstraints(min_length=1)]


class UpdateAddressRequest(BaseModel):
    address_name: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=100)]] = None
    address_detail: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)]] = None


class UpdateProfileRequest(BaseModel):
    username: Optional[Username] = None
    old_password: Optional[str] = None
    new_password: Optional[Password] = None

    @model_validator(mode="after")
    def _old_password_required(self):
        if self.new_password and not self.old_password:
            raise ValueError("old_password is required to change the password")
        return self


class StallCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=100)]
    description: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=500)]
    category: StallCategory
    food_types: List[Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]] = Field(..., min_length=1, max_length=10)

    @field_validator("food_types", mode="before")
    @classmethod
    def _split_food_types(cls, value):
        return parse_string_list(value)


class StallUpdate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: Optional[Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=100)]] = None
    description: Optional[Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=500)]] = None
    category: Optional[StallCategory] = None
    food_types: Optional[List[Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]]] = Field(None, min_length=1, max_length=10)

    @field_validator("food_types", mode="before")
    @classmethod
    def _split_food_types(cls, value):
        if value is None:
            return None
        return parse_string_list(value)


MenuLabel = Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]


class MenuItemCreate(BaseModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=100)]
    description: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=500)]
    category: List[MenuLabel] = Field(..., min_length=1, max_length=5)
    price: int = Field(..., ge=100, le=1_000_000)
    is_available: bool = True

    @field_validator("category", mode="before")
    @classmethod
    def _split_category(cls, value):
        return parse_string_list(value)


class MenuItemUpdate(BaseModel):
    name: Optional[Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=100)]] = None
    description: Optional[Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=500)]] = None
    category: Optional[List[MenuLabel]] = Field(None, min_length=1, max_length=5)
    price: Optional[int] = Field(None, ge=100, le=1_000_000)
    is_available: Optional[bool] = None

    @field_validator("category", mode="before")
    @classmethod
    def _split_category(cls, value):
        if value is None:
            return None
        return parse_string_list(value)


class AddToCartRequest(BaseModel):
    menu_item_id: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    quantity: int = Field(1, ge=1, le=99)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1, le=99)


class RejectOrderRequest(BaseModel):
    reason: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=500)]


class ReviewCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    tags: List[ReviewTag] = Field(default_factory=list, max_length=5)

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        return parse_string_list(value)

    @field_validator("comment", mode="before")
    @classmethod
    def _comment_default(cls, value):
        return value or ""
