"""Tests for tier limits and quota charging."""

import pytest

from assistant_chat.domain.errors import LimitKind
from assistant_chat.domain.models import SubscriptionTier, User
from assistant_chat.services.quota import TIER_LIMITS, Allowed, Denied, QuotaGuard


def test_tier_table():
    """Test the configured tier limits."""
    assert TIER_LIMITS[SubscriptionTier.FREE].messages == 1000
    assert TIER_LIMITS[SubscriptionTier.FREE].tokens == 50000
    assert TIER_LIMITS[SubscriptionTier.BASIC].messages == 10000
    assert TIER_LIMITS[SubscriptionTier.PRO].tokens == 2500000


def test_fresh_user_is_allowed():
    """Test that a new user may send."""
    assert isinstance(QuotaGuard().authorize(User()), Allowed)


def test_limit_is_inclusive():
    """Test that reaching the limit denies the next exchange."""
    guard = QuotaGuard()
    assert isinstance(guard.authorize(User(message_count=999)), Allowed)

    decision = guard.authorize(User(message_count=1000))
    assert isinstance(decision, Denied)
    assert decision.limit_kind == LimitKind.MESSAGES
    assert "1000 messages" in decision.reason


def test_token_limit():
    """Test denial on the token limit."""
    decision = QuotaGuard().authorize(User(token_count=50000))
    assert isinstance(decision, Denied)
    assert decision.limit_kind == LimitKind.TOKENS


def test_message_limit_checked_first():
    """Test that the message limit is reported first."""
    decision = QuotaGuard().authorize(User(message_count=1000, token_count=50000))
    assert decision.limit_kind == LimitKind.MESSAGES


def test_higher_tier_raises_limits():
    """Test that paid tiers allow more usage."""
    user = User(subscription_tier=SubscriptionTier.BASIC, message_count=1000, token_count=50000)
    assert isinstance(QuotaGuard().authorize(user), Allowed)


def test_record_charges_one_unit():
    """Test that recording adds one message and the tokens used."""
    user = User(message_count=3, token_count=100)
    charged = QuotaGuard().record(user, 42)

    assert charged.message_count == 4
    assert charged.token_count == 142
    assert charged.updated_at >= user.updated_at
    assert user.message_count == 3


def test_record_rejects_negative_tokens():
    """Test that negative token counts are rejected."""
    with pytest.raises(ValueError):
        QuotaGuard().record(User(), -1)


def test_status_remaining():
    """Test remaining allowance reporting."""
    status = QuotaGuard().status(User(message_count=10, token_count=60000))
    assert status.messages_remaining == 990
    assert status.tokens_remaining == 0
