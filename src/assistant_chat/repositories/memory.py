"""In-memory repository implementation."""

import asyncio
from typing import Any, Dict, Hashable, List, Optional, Type, TypeVar
from uuid import UUID

import structlog
from pydantic import BaseModel, ValidationError

from ..domain.errors import StorageFailure
from ..domain.models import (
    AdminLogEntry,
    ApiSettings,
    Conversation,
    Message,
    SystemSetting,
    UsageLogEntry,
    User,
)
from .base import OrderBy, Repository

logger = structlog.get_logger()

RecordT = TypeVar("RecordT", bound=BaseModel)

USERS = "users"
CONVERSATIONS = "conversations"
MESSAGES = "messages"
USAGE_LOGS = "usage_logs"
API_SETTINGS = "api_settings"
SYSTEM_SETTINGS = "system_settings"
ADMIN_LOGS = "admin_logs"


class InMemoryRepository(Repository):
    """Async-safe in-memory repository.

    Records are kept as plain dicts, the shape a document store would hand
    back, and validated into typed records on the way out. A stored record
    that no longer matches its model raises ``StorageFailure`` instead of
    leaking partially-populated objects.
    """

    def __init__(self) -> None:
        """Initialize the repository with empty tables."""
        self._tables: Dict[str, Dict[Hashable, Dict[str, Any]]] = {
            USERS: {},
            CONVERSATIONS: {},
            MESSAGES: {},
            USAGE_LOGS: {},
            API_SETTINGS: {},
            SYSTEM_SETTINGS: {},
            ADMIN_LOGS: {},
        }
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized")

    # Helpers

    @staticmethod
    def _load(model: Type[RecordT], raw: Dict[str, Any], operation: str) -> RecordT:
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.error("record_shape_mismatch", operation=operation, error=str(e))
            raise StorageFailure(operation, f"Stored record does not match {model.__name__}") from e

    def _insert(self, table: str, key: Hashable, record: BaseModel, operation: str) -> None:
        if key in self._tables[table]:
            raise StorageFailure(operation, f"Record {key} already exists")
        self._tables[table][key] = record.model_dump()

    def _update(
        self,
        table: str,
        model: Type[RecordT],
        key: Hashable,
        changes: Dict[str, Any],
        operation: str,
    ) -> RecordT:
        raw = self._tables[table].get(key)
        if raw is None:
            raise StorageFailure(operation, f"Record {key} not found")
        rejected = (set(changes) - set(model.model_fields)) | ({"id"} & set(changes))
        if rejected:
            raise StorageFailure(operation, f"Cannot update fields {sorted(rejected)}")
        merged = self._load(model, {**raw, **changes}, operation)
        self._tables[table][key] = merged.model_dump()
        return merged

    def _select(
        self,
        table: str,
        model: Type[RecordT],
        operation: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[RecordT]:
        rows = [
            raw
            for raw in self._tables[table].values()
            if all(raw.get(field) == value for field, value in (where or {}).items())
        ]
        if order_by is not None:
            # sorted() is stable, so ties keep insertion order
            rows = sorted(rows, key=lambda raw: raw[order_by.field], reverse=order_by.descending)
        return [self._load(model, raw, operation) for raw in rows]

    # Users

    async def create_user(self, user: User) -> User:
        async with self._async_lock:
            self._insert(USERS, user.id, user, "create_user")
        logger.info("user_created", user_id=str(user.id), tier=user.subscription_tier.value)
        return user

    async def get_user(self, user_id: UUID) -> Optional[User]:
        async with self._async_lock:
            raw = self._tables[USERS].get(user_id)
            if raw is None:
                logger.warning("user_not_found", user_id=str(user_id))
                return None
            return self._load(User, raw, "get_user")

    async def update_user(self, user_id: UUID, changes: Dict[str, Any]) -> User:
        async with self._async_lock:
            return self._update(USERS, User, user_id, changes, "update_user")

    async def list_users(
        self,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[OrderBy] = None,
    ) -> List[User]:
        async with self._async_lock:
            return self._select(
                USERS, User, "list_users", where, order_by or OrderBy("created_at", descending=True)
            )

    # Conversations

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Create a new conversation."""
        async with self._async_lock:
            self._insert(CONVERSATIONS, conversation.id, conversation, "create_conversation")
        logger.info("conversation_created", conversation_id=str(conversation.id))
        return conversation

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        async with self._async_lock:
            raw = self._tables[CONVERSATIONS].get(conversation_id)
            if raw is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return None
            return self._load(Conversation, raw, "get_conversation")

    async def update_conversation(
        self, conversation_id: UUID, changes: Dict[str, Any]
    ) -> Conversation:
        async with self._async_lock:
            return self._update(
                CONVERSATIONS, Conversation, conversation_id, changes, "update_conversation"
            )

    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation and cascade to its messages."""
        async with self._async_lock:
            if self._tables[CONVERSATIONS].pop(conversation_id, None) is None:
                logger.error("conversation_not_found_for_delete", conversation_id=str(conversation_id))
                raise StorageFailure("delete_conversation", f"Conversation {conversation_id} not found")
            messages = self._tables[MESSAGES]
            orphaned = [key for key, raw in messages.items() if raw["conversation_id"] == conversation_id]
            for key in orphaned:
                del messages[key]
        logger.info(
            "conversation_deleted",
            conversation_id=str(conversation_id),
            cascaded_messages=len(orphaned),
        )

    async def list_conversations(
        self,
        user_id: Optional[UUID] = None,
        order_by: OrderBy = OrderBy("updated_at", descending=True),
        limit: int = 100,
        offset: int = 0,
    ) -> List[Conversation]:
        """List conversations with pagination."""
        where = {"user_id": user_id} if user_id is not None else None
        async with self._async_lock:
            conversations = self._select(
                CONVERSATIONS, Conversation, "list_conversations", where, order_by
            )
        return conversations[offset : offset + limit]

    # Messages

    async def create_message(self, message: Message) -> Message:
        """Add a message to a conversation."""
        async with self._async_lock:
            if message.conversation_id not in self._tables[CONVERSATIONS]:
                logger.error(
                    "conversation_not_found_for_message",
                    conversation_id=str(message.conversation_id),
                )
                raise StorageFailure(
                    "create_message", f"Conversation {message.conversation_id} not found"
                )
            self._insert(MESSAGES, message.id, message, "create_message")

        logger.info(
            "message_added",
            conversation_id=str(message.conversation_id),
            message_role=message.role.value,
        )
        return message

    async def list_messages(
        self,
        conversation_id: Optional[UUID] = None,
        order_by: OrderBy = OrderBy("created_at"),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Message]:
        """Get messages with pagination, oldest first by default."""
        where = {"conversation_id": conversation_id} if conversation_id is not None else None
        async with self._async_lock:
            messages = self._select(MESSAGES, Message, "list_messages", where, order_by)
        end = None if limit is None else offset + limit
        return messages[offset:end]

    async def delete_message(self, message_id: UUID) -> None:
        async with self._async_lock:
            if self._tables[MESSAGES].pop(message_id, None) is None:
                raise StorageFailure("delete_message", f"Message {message_id} not found")
        logger.info("message_deleted", message_id=str(message_id))

    # Usage log

    async def append_usage_log(self, entry: UsageLogEntry) -> UsageLogEntry:
        async with self._async_lock:
            self._insert(USAGE_LOGS, entry.id, entry, "append_usage_log")
        return entry

    async def list_usage_logs(self, user_id: Optional[UUID] = None) -> List[UsageLogEntry]:
        where = {"user_id": user_id} if user_id is not None else None
        async with self._async_lock:
            return self._select(
                USAGE_LOGS, UsageLogEntry, "list_usage_logs", where, OrderBy("created_at")
            )

    # Settings

    async def get_api_settings(self, user_id: UUID) -> Optional[ApiSettings]:
        async with self._async_lock:
            raw = self._tables[API_SETTINGS].get(user_id)
            return None if raw is None else self._load(ApiSettings, raw, "get_api_settings")

    async def save_api_settings(self, settings: ApiSettings) -> ApiSettings:
        async with self._async_lock:
            self._tables[API_SETTINGS][settings.user_id] = settings.model_dump()
        return settings

    async def get_system_setting(self, key: str) -> Optional[SystemSetting]:
        async with self._async_lock:
            raw = self._tables[SYSTEM_SETTINGS].get(key)
            return None if raw is None else self._load(SystemSetting, raw, "get_system_setting")

    async def save_system_setting(self, setting: SystemSetting) -> SystemSetting:
        async with self._async_lock:
            self._tables[SYSTEM_SETTINGS][setting.key] = setting.model_dump()
        return setting

    async def list_system_settings(self) -> List[SystemSetting]:
        async with self._async_lock:
            return self._select(
                SYSTEM_SETTINGS, SystemSetting, "list_system_settings", order_by=OrderBy("key")
            )

    # Admin log

    async def append_admin_log(self, entry: AdminLogEntry) -> AdminLogEntry:
        async with self._async_lock:
            self._insert(ADMIN_LOGS, entry.id, entry, "append_admin_log")
        return entry

    async def list_admin_logs(self, limit: int = 50) -> List[AdminLogEntry]:
        async with self._async_lock:
            logs = self._select(
                ADMIN_LOGS, AdminLogEntry, "list_admin_logs",
                order_by=OrderBy("created_at", descending=True),
            )
        return logs[:limit]
