"""Tests for the in-memory repository."""

import pytest

from assistant_chat.domain.errors import StorageFailure
from assistant_chat.domain.models import (
    AdminLogEntry,
    ApiSettings,
    Conversation,
    Message,
    MessageRole,
    SystemSetting,
    User,
)
from assistant_chat.repositories.base import OrderBy


@pytest.mark.asyncio
async def test_user_roundtrip_and_update(repository):
    """Test creating and updating a user."""
    user = await repository.create_user(User(email="ada@example.com"))

    updated = await repository.update_user(user.id, {"message_count": 5})

    assert updated.message_count == 5
    assert (await repository.get_user(user.id)).message_count == 5


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields_and_id(repository):
    """Test that updates cannot add fields or change ids."""
    user = await repository.create_user(User())

    with pytest.raises(StorageFailure):
        await repository.update_user(user.id, {"nickname": "x"})
    with pytest.raises(StorageFailure):
        await repository.update_user(user.id, {"id": User().id})


@pytest.mark.asyncio
async def test_update_rejects_invalid_values(repository):
    """Test that invalid updates leave the record unchanged."""
    user = await repository.create_user(User())

    with pytest.raises(StorageFailure):
        await repository.update_user(user.id, {"message_count": -1})
    assert (await repository.get_user(user.id)).message_count == 0


@pytest.mark.asyncio
async def test_duplicate_insert_fails(repository):
    """Test that inserting the same record twice fails."""
    user = User()
    await repository.create_user(user)
    with pytest.raises(StorageFailure):
        await repository.create_user(user)


@pytest.mark.asyncio
async def test_missing_records(repository):
    """Test lookups and updates of missing records."""
    assert await repository.get_user(User().id) is None
    with pytest.raises(StorageFailure):
        await repository.update_user(User().id, {"message_count": 1})


@pytest.mark.asyncio
async def test_conversations_ordered_by_recent_update(repository, user):
    """Test conversation ordering and pagination."""
    older = await repository.create_conversation(Conversation(user_id=user.id, model="m"))
    newer = await repository.create_conversation(Conversation(user_id=user.id, model="m"))
    await repository.update_conversation(older.id, {"updated_at": newer.updated_at.replace(year=2100)})

    listed = await repository.list_conversations(user.id)

    assert [c.id for c in listed] == [older.id, newer.id]
    assert await repository.list_conversations(user.id, limit=1, offset=1) == [newer]


@pytest.mark.asyncio
async def test_messages_in_creation_order(repository, user):
    """Test that messages come back oldest first."""
    conversation = await repository.create_conversation(Conversation(user_id=user.id, model="m"))
    for i in range(3):
        await repository.create_message(
            Message(
                conversation_id=conversation.id,
                user_id=user.id,
                role=MessageRole.USER,
                content=str(i),
            )
        )

    messages = await repository.list_messages(conversation.id)
    assert [m.content for m in messages] == ["0", "1", "2"]

    newest = await repository.list_messages(
        conversation.id, order_by=OrderBy("created_at", descending=True), limit=1
    )
    assert len(newest) == 1


@pytest.mark.asyncio
async def test_message_requires_conversation(repository, user):
    """Test that messages need an existing conversation."""
    with pytest.raises(StorageFailure):
        await repository.create_message(
            Message(
                conversation_id=User().id,
                user_id=user.id,
                role=MessageRole.USER,
                content="orphan",
            )
        )


@pytest.mark.asyncio
async def test_delete_conversation_cascades(repository, user):
    """Test that deleting a conversation removes its messages."""
    conversation = await repository.create_conversation(Conversation(user_id=user.id, model="m"))
    await repository.create_message(
        Message(conversation_id=conversation.id, user_id=user.id, role=MessageRole.USER, content="x")
    )

    await repository.delete_conversation(conversation.id)

    assert await repository.get_conversation(conversation.id) is None
    assert await repository.list_messages(conversation.id) == []
    with pytest.raises(StorageFailure):
        await repository.delete_conversation(conversation.id)


@pytest.mark.asyncio
async def test_settings_and_admin_logs(repository, user):
    """Test settings storage and admin log limits."""
    saved = await repository.save_api_settings(
        ApiSettings(user_id=user.id, model="m", temperature=1.0, max_tokens=10)
    )
    assert await repository.get_api_settings(user.id) == saved

    await repository.save_system_setting(SystemSetting(key="b", value="2"))
    await repository.save_system_setting(SystemSetting(key="a", value="1"))
    assert [s.key for s in await repository.list_system_settings()] == ["a", "b"]

    for action in ("first", "second"):
        await repository.append_admin_log(AdminLogEntry(admin_id=user.id, action=action, details=""))
    logs = await repository.list_admin_logs(limit=1)
    assert len(logs) == 1
