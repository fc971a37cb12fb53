import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from finance_bot.errors import RejectionReason

TransactionType = Literal["income", "expense", "transfer", "convert"]
Role = Literal["super_admin", "admin", "member", "viewer"]
GroupStatus = Literal["ACTIVE", "INACTIVE", "BANNED"]
MessageType = Literal["text", "voice"]
IntentSource = Literal["primary", "secondary", "fallback"]
Sentiment = Literal["positive", "neutral", "negative"]

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "viewer": frozenset({"read"}),
    "member": frozenset({"read", "record"}),
    "admin": frozenset({"read", "record", "approve", "configure"}),
    "super_admin": frozenset({"read", "record", "approve", "configure", "moderate"}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# ── Groups and participants ─────────────────────────────────────────


class GroupSettings(BaseModel):
    group_name: str = ""
    owner_user_id: int | None = None
    owner_username: str = ""
    currency: str = "IDR"
    # Limits are denominated in USD and compared after conversion.
    daily_limit: float = 20
    monthly_limit: float = 1000
    timezone: str = "Asia/Jakarta"
    enable_chat: bool = True
    require_admin_approval: bool = True
    big_transaction_threshold: float = 1_000_000
    notify_on_limit: bool = True
    exchange_rate: float = 15000


class Group(BaseModel):
    chat_id: int
    name: str
    sheet_id: str
    owner_user_id: int | None = None
    status: GroupStatus = "ACTIVE"
    created_at: datetime = Field(default_factory=utcnow)
    settings: GroupSettings = Field(default_factory=GroupSettings)


class Participant(BaseModel):
    user_id: int
    username: str = ""
    display_name: str = ""
    role: Role = "member"
    joined_at: datetime = Field(default_factory=utcnow)
    last_active: datetime = Field(default_factory=utcnow)
    total_transactions: int = 0
    totals: dict[str, float] = {}

    @property
    def permissions(self) -> frozenset[str]:
        return ROLE_PERMISSIONS[self.role]

    def can(self, permission: str) -> bool:
        return permission in self.permissions

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "super_admin")


# ── Transactions ────────────────────────────────────────────────────


class TransactionDraft(BaseModel):
    """Unvalidated transaction fields as extracted from a message."""

    type: str | None = None
    amount: float | None = None
    currency: str | None = None
    description: str | None = None
    category: str | None = None
    target_currency: str | None = None
    target_amount: float | None = None
    exchange_rate: float | None = None
    counts_to_daily_limit: bool | None = None
    tags: list[str] = []
    notes: str | None = None

    @field_validator("currency", "target_currency")
    @classmethod
    def _upper(cls, value: str | None) -> str | None:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("type")
    @classmethod
    def _lower(cls, value: str | None) -> str | None:
        return value.strip().lower() if isinstance(value, str) else value


class Transaction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("txn"))
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: int
    username: str = ""
    type: TransactionType
    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    target_currency: str | None = None
    target_amount: float | None = None
    exchange_rate: float | None = None
    description: str
    category: str | None = None
    counts_to_daily_limit: bool = False
    canceled: bool = False
    canceled_at: datetime | None = None
    canceled_by: int | None = None
    requires_admin_approval: bool = False
    approved_by: int | None = None
    approved_at: datetime | None = None
    tags: list[str] = []
    notes: str | None = None

    @property
    def awaiting_approval(self) -> bool:
        return self.requires_admin_approval and self.approved_by is None and not self.canceled


# ── Memory ──────────────────────────────────────────────────────────


class MemoryEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("mem"))
    timestamp: datetime = Field(default_factory=utcnow)
    chat_id: int
    user_id: int
    username: str = ""
    thread_id: str | None = None
    message: str
    reply: str = ""
    intent: str = ""
    entities: dict[str, Any] = {}
    confidence: float = 0.0
    sentiment: Sentiment = "neutral"
    message_type: MessageType = "text"
    tokens_used: int = 0
    model: str = ""


class MemoryBundle(BaseModel):
    entries: list[MemoryEntry] = []
    summary: str = "No conversation history"
    context_hash: str = ""


# ── Pending confirmations ───────────────────────────────────────────


class PendingConfirmation(BaseModel):
    token: str
    owner_user_id: int
    action: str
    payload: dict[str, Any]
    created_at: float
    expires_at: float


# ── Transport events ────────────────────────────────────────────────


class InboundMessage(BaseModel):
    conversation_id: int
    user_id: int
    username: str = ""
    display_name: str = ""
    chat_title: str | None = None
    text: str | None = None
    voice_ref: str | None = None
    voice_data: bytes | None = Field(default=None, exclude=True)
    thread_id: str | None = None


class CommandEvent(BaseModel):
    conversation_id: int
    user_id: int
    username: str = ""
    chat_title: str | None = None
    command: str
    args: list[str] = []


class ConfirmationCallback(BaseModel):
    conversation_id: int
    token: str
    action: Literal["confirm", "cancel"]
    by_user: int


class ReplyAction(BaseModel):
    label: str
    callback_data: str


class OutboundReply(BaseModel):
    text: str
    parse_mode: str | None = None
    actions: list[ReplyAction] = []
    silent: bool = False
    # Set when a confirmation callback was refused.
    rejection: RejectionReason | None = None


# ── API request bodies ──────────────────────────────────────────────


class SettingUpdateRequest(BaseModel):
    key: str
    value: str
    updated_by: int


class CancelTransactionRequest(BaseModel):
    by_user: int
