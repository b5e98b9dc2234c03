"""Administrative operations: user management, system settings, stats.

Every mutation is recorded in the admin log. Callers must carry the admin
role; this is the only authorization the application models.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

import structlog

from ..domain.errors import InvalidInput, PermissionDenied
from ..domain.models import (
    AdminLogEntry,
    Conversation,
    SubscriptionTier,
    SystemSetting,
    User,
    UserRole,
    utcnow,
)
from ..repositories.base import Repository
from .usage import UsageLedger

logger = structlog.get_logger()


@dataclass(frozen=True)
class DashboardStats:
    total_users: int
    active_users: int
    free_users: int
    basic_users: int
    pro_users: int
    total_conversations: int
    total_messages: int
    total_tokens: int
    exchanges_last_24h: int
    tokens_last_24h: int


class AdminService:
    def __init__(self, repository: Repository, usage_ledger: UsageLedger) -> None:
        self.repository = repository
        self.usage_ledger = usage_ledger

    @staticmethod
    def _require_admin(admin: User) -> None:
        if not admin.is_admin or not admin.is_active:
            logger.warning("admin_permission_denied", user_id=str(admin.id))
            raise PermissionDenied("Administrator access required")

    async def _target(self, user_id: UUID) -> User:
        user = await self.repository.get_user(user_id)
        if user is None:
            raise InvalidInput(f"User {user_id} not found")
        return user

    async def _log(
        self, admin: User, action: str, details: str, target_user_id: Optional[UUID] = None
    ) -> None:
        await self.repository.append_admin_log(
            AdminLogEntry(
                admin_id=admin.id,
                action=action,
                details=details,
                target_user_id=target_user_id,
            )
        )
        logger.info(
            "admin_action",
            admin_id=str(admin.id),
            action=action,
            target_user_id=str(target_user_id) if target_user_id else None,
        )

    async def list_users(self, admin: User) -> List[User]:
        self._require_admin(admin)
        return await self.repository.list_users()

    async def update_user_role(self, admin: User, user_id: UUID, role: UserRole) -> User:
        self._require_admin(admin)
        await self._target(user_id)
        user = await self.repository.update_user(user_id, {"role": role, "updated_at": utcnow()})
        await self._log(admin, "updated_user_role", f"Changed role to {role.value}", user_id)
        return user

    async def update_user_tier(
        self, admin: User, user_id: UUID, tier: SubscriptionTier
    ) -> User:
        self._require_admin(admin)
        await self._target(user_id)
        user = await self.repository.update_user(
            user_id, {"subscription_tier": tier, "updated_at": utcnow()}
        )
        await self._log(admin, "updated_subscription", f"Changed subscription to {tier.value}", user_id)
        return user

    async def set_user_active(self, admin: User, user_id: UUID, is_active: bool) -> User:
        self._require_admin(admin)
        if user_id == admin.id and not is_active:
            raise InvalidInput("Administrators cannot deactivate themselves")
        await self._target(user_id)
        user = await self.repository.update_user(
            user_id, {"is_active": is_active, "updated_at": utcnow()}
        )
        status = "activated" if is_active else "deactivated"
        await self._log(admin, f"{status}_user", f"User {status}", user_id)
        return user

    async def delete_conversation(self, admin: User, conversation_id: UUID) -> Conversation:
        """Delete any user's conversation together with its messages.

        Returns the deleted record so the caller can notify the owner's session.
        """
        self._require_admin(admin)
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise InvalidInput("Conversation not found")
        await self.repository.delete_conversation(conversation_id)
        await self._log(
            admin,
            "deleted_conversation",
            f"Deleted conversation {conversation_id}",
            conversation.user_id,
        )
        return conversation

    async def update_system_setting(self, admin: User, key: str, value: str) -> SystemSetting:
        self._require_admin(admin)
        if not key.strip():
            raise InvalidInput("Setting key cannot be empty")
        setting = await self.repository.save_system_setting(
            SystemSetting(key=key.strip(), value=value, updated_by=admin.id)
        )
        await self._log(admin, "updated_system_setting", f"Set {setting.key} to {value}")
        return setting

    async def list_system_settings(self, admin: User) -> List[SystemSetting]:
        self._require_admin(admin)
        return await self.repository.list_system_settings()

    async def list_admin_logs(self, admin: User, limit: int = 50) -> List[AdminLogEntry]:
        self._require_admin(admin)
        return await self.repository.list_admin_logs(limit)

    async def dashboard_stats(self, admin: User) -> DashboardStats:
        self._require_admin(admin)
        users = await self.repository.list_users()
        conversations = await self.repository.list_conversations(limit=1_000_000)
        messages = await self.repository.list_messages()
        overall = await self.usage_ledger.summarize()
        recent = await self.usage_ledger.summarize(since=utcnow() - timedelta(hours=24))

        def tier_count(tier: SubscriptionTier) -> int:
            return sum(1 for user in users if user.subscription_tier == tier)

        return DashboardStats(
            total_users=len(users),
            active_users=sum(1 for user in users if user.is_active),
            free_users=tier_count(SubscriptionTier.FREE),
            basic_users=tier_count(SubscriptionTier.BASIC),
            pro_users=tier_count(SubscriptionTier.PRO),
            total_conversations=len(conversations),
            total_messages=len(messages),
            total_tokens=overall.tokens_used,
            exchanges_last_24h=recent.exchanges,
            tokens_last_24h=recent.tokens_used,
        )
