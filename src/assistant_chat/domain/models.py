"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class SubscriptionTier(str, Enum):
    """Quota/pricing class applied to a user."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class User(BaseModel):
    """User model."""

    id: UUID = Field(default_factory=uuid4)
    email: Optional[str] = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    message_count: int = Field(default=0, ge=0)
    token_count: int = Field(default=0, ge=0)
    role: UserRole = UserRole.USER
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


DEFAULT_CONVERSATION_TITLE = "New Chat"


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: str = DEFAULT_CONVERSATION_TITLE
    model: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    user_id: UUID
    role: MessageRole
    content: str
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class UsageLogEntry(BaseModel):
    """One completed exchange's token consumption."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    message_id: UUID
    tokens_used: int = Field(ge=0)
    cost_estimate: float = Field(ge=0)
    created_at: datetime = Field(default_factory=utcnow)


class ApiSettings(BaseModel):
    """Per-user completion preferences."""

    user_id: UUID
    model: str = Field(min_length=1)
    temperature: float = Field(ge=0.0, le=2.0)
    max_tokens: int = Field(gt=0)
    updated_at: datetime = Field(default_factory=utcnow)


class AdminLogEntry(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    admin_id: UUID
    action: str
    details: str
    target_user_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)


class SystemSetting(BaseModel):
    key: str
    value: str
    updated_by: Optional[UUID] = None
    updated_at: datetime = Field(default_factory=utcnow)


class ChatTurn(BaseModel):
    """A single {role, content} entry of the history sent for completion."""

    role: str  # "system", "user" or "assistant"
    content: str


class Usage(BaseModel):
    """Token counts reported by the completion service for one exchange."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: Optional[int] = None

    @property
    def total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return self.prompt_tokens + self.completion_tokens


class Completion(BaseModel):
    text: str
    usage: Usage


class StreamChunk(BaseModel):
    """An incremental fragment; the last chunk of a stream carries the usage."""

    content: str = ""
    usage: Optional[Usage] = None
