"""Tier-based usage limits checked before, and charged after, each exchange."""

from dataclasses import dataclass
from typing import Dict, Optional, Union

import structlog

from ..domain.errors import LimitKind
from ..domain.models import SubscriptionTier, User, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class TierLimits:
    """Per-period allowance and price of a subscription tier."""

    messages: int
    tokens: int
    monthly_price: int


TIER_LIMITS: Dict[SubscriptionTier, TierLimits] = {
    SubscriptionTier.FREE: TierLimits(messages=1000, tokens=50000, monthly_price=0),
    SubscriptionTier.BASIC: TierLimits(messages=10000, tokens=500000, monthly_price=10),
    SubscriptionTier.PRO: TierLimits(messages=50000, tokens=2500000, monthly_price=50),
}


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class Denied:
    reason: str
    limit_kind: LimitKind


QuotaDecision = Union[Allowed, Denied]


@dataclass(frozen=True)
class QuotaStatus:
    tier: SubscriptionTier
    messages_used: int
    messages_limit: int
    tokens_used: int
    tokens_limit: int

    @property
    def messages_remaining(self) -> int:
        return max(0, self.messages_limit - self.messages_used)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.tokens_limit - self.tokens_used)


class QuotaGuard:
    """Evaluates accumulated usage against the user's tier limits.

    ``authorize`` must run before any remote completion call so that a
    request that cannot be billed to the user never reaches the backend.
    ``record`` returns the updated user; persisting it is the caller's job.
    """

    def __init__(self, limits: Optional[Dict[SubscriptionTier, TierLimits]] = None) -> None:
        self.limits = limits or TIER_LIMITS

    def limits_for(self, user: User) -> TierLimits:
        return self.limits[user.subscription_tier]

    def authorize(self, user: User) -> QuotaDecision:
        """Allow the exchange unless a counter is already at or above its limit."""
        limits = self.limits_for(user)
        if user.message_count >= limits.messages:
            logger.warning(
                "quota_denied",
                user_id=str(user.id),
                limit_kind=LimitKind.MESSAGES.value,
                used=user.message_count,
                limit=limits.messages,
            )
            return Denied(
                reason=(
                    f"You've reached your monthly limit of {limits.messages} messages. "
                    "Please upgrade your plan."
                ),
                limit_kind=LimitKind.MESSAGES,
            )
        if user.token_count >= limits.tokens:
            logger.warning(
                "quota_denied",
                user_id=str(user.id),
                limit_kind=LimitKind.TOKENS.value,
                used=user.token_count,
                limit=limits.tokens,
            )
            return Denied(
                reason="You've reached your monthly token limit. Please upgrade your plan.",
                limit_kind=LimitKind.TOKENS,
            )
        return Allowed()

    def record(self, user: User, tokens_used: int) -> User:
        """Charge one quota unit: one message and ``tokens_used`` tokens."""
        if tokens_used < 0:
            raise ValueError("tokens_used must not be negative")
        return user.model_copy(
            update={
                "message_count": user.message_count + 1,
                "token_count": user.token_count + tokens_used,
                "updated_at": utcnow(),
            }
        )

    def status(self, user: User) -> QuotaStatus:
        limits = self.limits_for(user)
        return QuotaStatus(
            tier=user.subscription_tier,
            messages_used=user.message_count,
            messages_limit=limits.messages,
            tokens_used=user.token_count,
            tokens_limit=limits.tokens,
        )
