"""Base repository interface.

Every operation may raise ``StorageFailure``. No transactional guarantee
spans multiple calls.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..domain.models import (
    AdminLogEntry,
    ApiSettings,
    Conversation,
    Message,
    SystemSetting,
    UsageLogEntry,
    User,
)


@dataclass(frozen=True)
class OrderBy:
    """Order-by-field/direction pair for list operations."""

    field: str
    descending: bool = False


class Repository(ABC):
    """Abstract base class for repositories."""

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User:
        """Persist a new user and return the stored record."""
        pass

    @abstractmethod
    async def get_user(self, user_id: UUID) -> Optional[User]:
        """Retrieve a user by ID."""
        pass

    @abstractmethod
    async def update_user(self, user_id: UUID, changes: Dict[str, Any]) -> User:
        """Apply a partial update to a user and return the stored record."""
        pass

    @abstractmethod
    async def list_users(
        self,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[User]:
        """List users matching every field in ``where``."""
        pass

    # Conversations

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Create a new conversation."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def update_conversation(
        self, conversation_id: UUID, changes: Dict[str, Any]
    ) -> Conversation:
        """Apply a partial update to a conversation."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation and all of its messages."""
        pass

    @abstractmethod
    async def list_conversations(
        self,
        user_id: Optional[UUID] = None,
        order_by: OrderBy = OrderBy("updated_at", descending=True),
        limit: int = 100,
        offset: int = 0,
    ) -> List[Conversation]:
        """List conversations, most recently updated first by default."""
        pass

    # Messages

    @abstractmethod
    async def create_message(self, message: Message) -> Message:
        """Add a message to a conversation."""
        pass

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: Optional[UUID] = None,
        order_by: OrderBy = OrderBy("created_at"),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Message]:
        """Get messages for a conversation, oldest first by default."""
        pass

    @abstractmethod
    async def delete_message(self, message_id: UUID) -> None:
        """Delete a single message."""
        pass

    # Usage log

    @abstractmethod
    async def append_usage_log(self, entry: UsageLogEntry) -> UsageLogEntry:
        pass

    @abstractmethod
    async def list_usage_logs(self, user_id: Optional[UUID] = None) -> List[UsageLogEntry]:
        pass

    # Settings

    @abstractmethod
    async def get_api_settings(self, user_id: UUID) -> Optional[ApiSettings]:
        pass

    @abstractmethod
    async def save_api_settings(self, settings: ApiSettings) -> ApiSettings:
        pass

    @abstractmethod
    async def get_system_setting(self, key: str) -> Optional[SystemSetting]:
        pass

    @abstractmethod
    async def save_system_setting(self, setting: SystemSetting) -> SystemSetting:
        pass

    @abstractmethod
    async def list_system_settings(self) -> List[SystemSetting]:
        pass

    # Admin log

    @abstractmethod
    async def append_admin_log(self, entry: AdminLogEntry) -> AdminLogEntry:
        pass

    @abstractmethod
    async def list_admin_logs(self, limit: int = 50) -> List[AdminLogEntry]:
        """Most recent admin actions first."""
        pass
