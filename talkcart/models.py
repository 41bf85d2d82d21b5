import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


Privacy = Literal["public", "followers", "private"]
Role = Literal["user", "vendor", "admin"]

PRODUCT_CATEGORIES = [
    "Digital Art", "Electronics", "Fashion", "Gaming", "Music", "Books",
    "Collectibles", "Education", "Accessories", "Food & Beverages", "Fitness", "Other",
]
ProductCategory = Literal[
    "Digital Art", "Electronics", "Fashion", "Gaming", "Music", "Books",
    "Collectibles", "Education", "Accessories", "Food & Beverages", "Fitness", "Other",
]
Currency = Literal["ETH", "BTC", "USD", "USDC", "USDT"]
CRYPTO_CURRENCIES = {"ETH", "BTC", "USDC", "USDT"}

OrderStatus = Literal[
    "pending", "processing", "shipped", "delivered", "completed", "cancelled", "refunded"
]
NotificationType = Literal[
    "follow", "like", "comment", "mention", "message", "post", "order", "system"
]

# Sentinel used in place of a user id for the vendor support side of a chat
ADMIN_PARTICIPANT = "admin"


# Users
class User(BaseModel):
    id: str = Field(default_factory=_new_id)
    username: str
    email: str
    display_name: str
    role: Role = "user"
    bio: Optional[str] = None
    avatar: Optional[str] = None
    location: Optional[str] = None
    wallet_address: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    follower_count: int = 0
    following_count: int = 0
    created_at: datetime = Field(default_factory=_now)


class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_]+$")
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    display_name: str = Field(..., max_length=50)
    role: Literal["user", "vendor"] = "user"


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=50)
    bio: Optional[str] = Field(None, max_length=500)
    avatar: Optional[str] = None
    location: Optional[str] = Field(None, max_length=100)
    wallet_address: Optional[str] = None


class UserSummary(BaseModel):
    id: str
    username: str
    display_name: str
    avatar: Optional[str] = None
    is_verified: bool = False
    role: Role = "user"


class SessionData(BaseModel):
    session_token: str
    user_id: str
    expires_at: datetime


# Posts
class Media(BaseModel):
    public_id: str
    secure_url: str
    resource_type: Literal["image", "video"]
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    bytes: Optional[int] = None
    duration: Optional[float] = None


class Interaction(BaseModel):
    user_id: str
    created_at: datetime = Field(default_factory=_now)


class Post(BaseModel):
    id: str = Field(default_factory=_new_id)
    author_id: str
    content: str
    type: Literal["text", "image", "video"] = "text"
    media: List[Media] = []
    hashtags: List[str] = []
    mentions: List[str] = []
    location: Optional[str] = None
    privacy: Privacy = "public"
    likes: List[Interaction] = []
    shares: List[Interaction] = []
    bookmarks: List[Interaction] = []
    views: int = 0
    comment_count: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class PostCreate(BaseModel):
    content: str = Field(..., max_length=2000)
    type: Literal["text", "image", "video"] = "text"
    media: List[Media] = []
    hashtags: List[str] = []
    mentions: List[str] = []
    location: Optional[str] = None
    privacy: Privacy = "public"

    @field_validator("content")
    @classmethod
    def strip_content(cls, v):
        return v.strip()

    @field_validator("hashtags")
    @classmethod
    def normalize_hashtags(cls, v):
        tags = [t.strip().lstrip("#").lower() for t in v]
        if any(len(t) > 50 for t in tags):
            raise ValueError("Hashtag cannot exceed 50 characters")
        return [t for t in tags if t]


class PostView(BaseModel):
    id: str
    author_id: str
    author: Optional[UserSummary] = None
    content: str
    type: str
    media: List[Media] = []
    hashtags: List[str] = []
    location: Optional[str] = None
    privacy: Privacy
    views: int = 0
    like_count: int = 0
    comment_count: int = 0
    share_count: int = 0
    bookmark_count: int = 0
    is_liked: bool = False
    is_bookmarked: bool = False
    is_shared: bool = False
    created_at: datetime


class PostPage(BaseModel):
    posts: List[PostView]
    pagination: Dict[str, int]
    feed_type: Optional[str] = None


class Comment(BaseModel):
    id: str = Field(default_factory=_new_id)
    post_id: str
    author_id: str
    content: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)


class ShareRequest(BaseModel):
    platform: str = "internal"


class Follow(BaseModel):
    id: str = Field(default_factory=_new_id)
    follower_id: str
    following_id: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)


# Notifications
class Notification(BaseModel):
    id: str = Field(default_factory=_new_id)
    recipient_id: str
    sender_id: Optional[str] = None
    type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = {}
    priority: Literal["low", "normal", "high"] = "normal"
    action_url: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)


class MarkReadRequest(BaseModel):
    notification_ids: List[str]


# Marketplace
class ProductImage(BaseModel):
    public_id: Optional[str] = None
    secure_url: Optional[str] = None
    url: Optional[str] = None


class Product(BaseModel):
    id: str = Field(default_factory=_new_id)
    vendor_id: str
    name: str
    description: str
    price: float
    currency: Currency = "ETH"
    images: List[ProductImage] = []
    category: ProductCategory
    tags: List[str] = []
    stock: int = 1
    is_active: bool = True
    featured: bool = False
    is_nft: bool = False
    contract_address: Optional[str] = None
    token_id: Optional[str] = None
    network_id: int = 1
    sales: int = 0
    views: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    price: float = Field(..., ge=0)
    currency: Currency = "ETH"
    images: List[ProductImage] = []
    category: ProductCategory
    tags: List[str] = []
    stock: int = Field(1, ge=0)
    featured: bool = False
    is_nft: bool = False
    contract_address: Optional[str] = None
    token_id: Optional[str] = None
    network_id: int = 1


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[Currency] = None
    images: Optional[List[ProductImage]] = None
    category: Optional[ProductCategory] = None
    tags: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    featured: Optional[bool] = None
    is_active: Optional[bool] = None


class BuyRequest(BaseModel):
    payment_method: Optional[Literal["stripe", "flutterwave", "crypto"]] = None
    payment_details: Dict[str, Any] = {}


class OrderItem(BaseModel):
    product_id: str
    vendor_id: Optional[str] = None
    name: str
    price: float
    quantity: int = Field(1, ge=1)
    currency: str = "USD"
    is_nft: bool = False


class VendorPayout(BaseModel):
    vendor_id: str
    vendor_amount: float
    commission_amount: float
    commission_rate: float
    currency: str
    status: Literal["pending", "paid", "failed"] = "pending"


class Order(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    order_number: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    currency: str = "USD"
    payment_method: Literal["stripe", "flutterwave", "crypto", "nft"]
    payment_details: Dict[str, Any] = {}
    tx_ref: Optional[str] = None
    status: OrderStatus = "pending"
    vendor_payout: Optional[VendorPayout] = None
    vendor_payout_processed: bool = False
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Payout(BaseModel):
    id: str = Field(default_factory=_new_id)
    # "{order_id}:{item index}" for reconciled orders
    payout_key: str = Field(default_factory=_new_id)
    vendor_id: str
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    amount: float
    currency: str
    method: Literal["wallet", "manual"]
    status: Literal["pending", "paid", "failed"] = "pending"
    commission_rate: Optional[float] = None
    commission_amount: Optional[float] = None
    meta: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_now)


# Chatbot
class SuggestedResponse(BaseModel):
    text: str
    action: str


class ChatbotConversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    customer_id: str
    vendor_id: str
    product_id: Optional[str] = None
    product_name: str
    last_message_id: Optional[str] = None
    last_activity: datetime = Field(default_factory=_now)
    is_active: bool = True
    is_resolved: bool = False
    bot_enabled: bool = True
    bot_personality: Literal["friendly", "professional", "concise"] = "friendly"
    created_at: datetime = Field(default_factory=_now)


class ChatbotMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    sender_id: str
    content: str = Field(..., max_length=2000)
    type: Literal["text", "system", "suggestion"] = "text"
    is_bot_message: bool = False
    bot_confidence: float = Field(1.0, ge=0, le=1)
    suggested_responses: List[SuggestedResponse] = []
    is_edited: bool = False
    is_deleted: bool = False
    reply_to: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ConversationCreate(BaseModel):
    vendor_id: str
    product_id: str


class MessageCreate(BaseModel):
    content: str = Field(..., max_length=2000)


# Direct messages
class ReadReceipt(BaseModel):
    user_id: str
    read_at: datetime = Field(default_factory=_now)


class Reaction(BaseModel):
    user_id: str
    emoji: str
    created_at: datetime = Field(default_factory=_now)


class EditRecord(BaseModel):
    content: str
    edited_at: datetime = Field(default_factory=_now)


class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    participants: List[str]
    is_group: bool = False
    group_name: Optional[str] = None
    group_description: Optional[str] = None
    admin_id: Optional[str] = None
    last_message_id: Optional[str] = None
    last_activity: datetime = Field(default_factory=_now)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)


class DirectMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    sender_id: str
    content: str = ""
    type: Literal["text", "image", "video", "audio", "file"] = "text"
    media: List[Dict[str, Any]] = []
    reply_to: Optional[str] = None
    read_by: List[ReadReceipt] = []
    reactions: List[Reaction] = []
    edit_history: List[EditRecord] = []
    is_edited: bool = False
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class DirectConversationCreate(BaseModel):
    participant_ids: List[str] = []
    is_group: bool = False
    group_name: Optional[str] = Field(None, max_length=100)
    group_description: Optional[str] = Field(None, max_length=500)


class DirectMessageCreate(BaseModel):
    content: str = Field("", max_length=5000)
    type: Literal["text", "image", "video", "audio", "file"] = "text"
    media: List[Dict[str, Any]] = []
    reply_to: Optional[str] = None


class MessageEdit(BaseModel):
    content: str = Field(..., max_length=5000)


class ReactionRequest(BaseModel):
    emoji: str = Field(..., max_length=16)


# Webhooks
class WebhookEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    source: Literal["stripe", "flutterwave"]
    event_id: str
    tx_ref: Optional[str] = None
    meta: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_now)
