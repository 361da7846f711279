"""Test suite for the in-process document store."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from zeus_chat.domain.errors import NotFoundError, ValidationError
from zeus_chat.domain.models import Message, MessageRole, MessageStatus, utcnow
from zeus_chat.repositories.memory import CONVERSATIONS, WriteBatch


@pytest.mark.asyncio
async def test_list_conversations_newest_first(repository, make_conversation):
    now = utcnow()
    older = await repository.create_conversation(make_conversation(title="Older", updated_at=now - timedelta(hours=1)))
    newer = await repository.create_conversation(make_conversation(title="Newer", updated_at=now))
    await repository.create_conversation(make_conversation(user_id="user-2"))

    conversations = await repository.list_conversations("user-1")
    assert [c.id for c in conversations] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_add_message_updates_parent_counters(repository, make_conversation):
    """Message and parent counters are written together."""
    conversation = await repository.create_conversation(make_conversation())
    message = Message(conversation_id=conversation.id, content="Hello", token_count=5, cost=0.01)

    await repository.add_message(message)

    stored = await repository.get_conversation(conversation.id)
    assert stored.message_count == 1
    assert stored.token_count == 5
    assert stored.estimated_cost == pytest.approx(0.01)
    assert stored.last_message == "Hello"
    assert stored.last_message_at == message.created_at
    assert stored.updated_at >= conversation.updated_at
    assert await repository.get_message(message.id) == message


@pytest.mark.asyncio
async def test_add_message_to_missing_conversation_writes_nothing(repository):
    message = Message(conversation_id=uuid4(), content="orphan")

    with pytest.raises(NotFoundError):
        await repository.add_message(message)

    assert await repository.get_message(message.id) is None


@pytest.mark.asyncio
async def test_update_message_applies_deltas_and_preview(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    user = await repository.add_message(Message(conversation_id=conversation.id, content="Hello"))
    reply = await repository.add_message(
        Message(
            conversation_id=conversation.id,
            role=MessageRole.ASSISTANT,
            content="",
            status=MessageStatus.GENERATING,
        )
    )

    await repository.update_message(
        reply.with_status(MessageStatus.COMPLETED, content="Hi!", token_count=30, cost=0.5)
    )

    stored = await repository.get_conversation(conversation.id)
    assert stored.message_count == 2
    assert stored.token_count == 30
    assert stored.estimated_cost == pytest.approx(0.5)
    assert stored.last_message == "Hi!"

    # Editing an older message leaves the preview alone.
    await repository.update_message(user.edited("Hello again"))
    assert (await repository.get_conversation(conversation.id)).last_message == "Hi!"


@pytest.mark.asyncio
async def test_update_missing_message_raises(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    with pytest.raises(NotFoundError):
        await repository.update_message(Message(conversation_id=conversation.id, content="ghost"))


@pytest.mark.asyncio
async def test_delete_message_recomputes_counters(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    first = await repository.add_message(Message(conversation_id=conversation.id, content="first", token_count=3))
    second = await repository.add_message(Message(conversation_id=conversation.id, content="second", token_count=4))

    await repository.delete_message(second.id)

    stored = await repository.get_conversation(conversation.id)
    assert stored.message_count == 1
    assert stored.token_count == 3
    assert stored.last_message == "first"
    assert stored.last_message_at == first.created_at

    await repository.delete_message(first.id)
    stored = await repository.get_conversation(conversation.id)
    assert stored.message_count == 0
    assert stored.last_message is None


@pytest.mark.asyncio
async def test_messages_ordered_by_creation(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    now = utcnow()
    late = await repository.add_message(Message(conversation_id=conversation.id, content="late", created_at=now))
    early = await repository.add_message(
        Message(conversation_id=conversation.id, content="early", created_at=now - timedelta(seconds=5))
    )
    tied = await repository.add_message(Message(conversation_id=conversation.id, content="tied", created_at=now))

    messages = await repository.list_messages(conversation.id)
    assert [m.id for m in messages] == [early.id, late.id, tied.id]


@pytest.mark.asyncio
async def test_flags_toggle(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())

    await repository.archive_conversation(conversation.id)
    await repository.pin_conversation(conversation.id)
    stored = await repository.get_conversation(conversation.id)
    assert stored.is_archived and stored.is_pinned

    await repository.unarchive_conversation(conversation.id)
    await repository.unpin_conversation(conversation.id)
    stored = await repository.get_conversation(conversation.id)
    assert not stored.is_archived and not stored.is_pinned

    with pytest.raises(NotFoundError):
        await repository.archive_conversation(uuid4())


@pytest.mark.asyncio
async def test_soft_delete_is_idempotent_and_restorable(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())

    await repository.delete_conversation(conversation.id)
    first = await repository.get_conversation(conversation.id)
    await repository.delete_conversation(conversation.id)
    second = await repository.get_conversation(conversation.id)

    assert first.is_deleted
    assert second.deleted_at == first.deleted_at
    assert await repository.list_conversations("user-1") == []
    assert len(await repository.list_conversations("user-1", include_deleted=True)) == 1

    await repository.restore_conversation(conversation.id)
    restored = await repository.get_conversation(conversation.id)
    assert not restored.is_deleted
    assert restored.deleted_at is None


@pytest.mark.asyncio
async def test_permanent_delete_removes_messages(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    messages = [
        await repository.add_message(Message(conversation_id=conversation.id, content=f"message {i}"))
        for i in range(3)
    ]

    await repository.permanently_delete_conversation(conversation.id)

    assert await repository.get_conversation(conversation.id) is None
    assert await repository.list_messages(conversation.id) == []
    for message in messages:
        assert await repository.get_message(message.id) is None


@pytest.mark.asyncio
async def test_search_matches_title_and_preview(repository, make_conversation):
    python = await repository.create_conversation(make_conversation(title="Python tips"))
    other = await repository.create_conversation(make_conversation(title="Dinner plans"))
    await repository.add_message(Message(conversation_id=other.id, content="Try PYTHON cooking"))
    deleted = await repository.create_conversation(make_conversation(title="Python old"))
    await repository.delete_conversation(deleted.id)

    results = await repository.search_conversations("user-1", "python")
    assert {c.id for c in results} == {python.id, other.id}
    assert await repository.search_conversations("user-1", "   ") == []
    assert await repository.search_conversations("user-1", "zzzz-no-match") == []
    assert await repository.search_conversations("user-2", "python") == []


@pytest.mark.asyncio
async def test_reconcile_repairs_drifted_counters(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    await repository.add_message(Message(conversation_id=conversation.id, content="one", token_count=2))
    await repository.add_message(Message(conversation_id=conversation.id, content="two", token_count=3))

    # Counters drift when a store applies writes without a transaction.
    async with repository._lock:
        batch = WriteBatch()
        batch.update(CONVERSATIONS, conversation.id, {"messageCount": 7, "tokenCount": 0, "lastMessage": "stale"})
        repository._commit(batch)

    reconciled = await repository.reconcile_conversation(conversation.id)
    assert reconciled.message_count == 2
    assert reconciled.token_count == 5
    assert reconciled.last_message == "two"
    assert await repository.get_conversation(conversation.id) == reconciled


@pytest.mark.asyncio
async def test_update_conversation_keeps_counters_from_a_stale_read(repository, make_conversation):
    """A settings update never writes back counters the caller read earlier."""
    conversation = await repository.create_conversation(make_conversation())
    stale = await repository.get_conversation(conversation.id)
    message = await repository.add_message(Message(conversation_id=conversation.id, content="Hello", token_count=4))

    updated = await repository.update_conversation(stale.id, {"title": "Renamed chat", "temperature": 0.3})

    stored = await repository.get_conversation(conversation.id)
    assert stored == updated
    assert stored.title == "Renamed chat"
    assert stored.temperature == 0.3
    assert stored.message_count == 1
    assert stored.token_count == 4
    assert stored.last_message == "Hello"
    assert stored.last_message_at == message.created_at


@pytest.mark.asyncio
async def test_invalid_conversation_update_writes_nothing(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    before = (await repository.get_conversation(conversation.id)).to_document()

    with pytest.raises(ValidationError):
        await repository.update_conversation(conversation.id, {"model_id": None})
    with pytest.raises(ValidationError):
        await repository.update_conversation(conversation.id, {"message_count": 5})
    with pytest.raises(ValidationError):
        await repository.update_conversation(conversation.id, {"is_pinned": True})
    with pytest.raises(NotFoundError):
        await repository.update_conversation(uuid4(), {"title": "Valid title"})

    assert (await repository.get_conversation(conversation.id)).to_document() == before
    assert len(await repository.list_conversations("user-1")) == 1


@pytest.mark.asyncio
async def test_update_message_rejects_backward_status(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    reply = await repository.add_message(
        Message(
            conversation_id=conversation.id,
            role=MessageRole.ASSISTANT,
            content="",
            status=MessageStatus.GENERATING,
        )
    )
    completed = reply.with_status(MessageStatus.COMPLETED, content="Done")
    await repository.update_message(completed)

    with pytest.raises(ValidationError, match="completed to generating"):
        await repository.update_message(completed.model_copy(update={"status": MessageStatus.GENERATING}))

    assert (await repository.get_message(reply.id)).status == MessageStatus.COMPLETED
    # Same-status updates stay allowed.
    await repository.update_message(completed.model_copy(update={"content": "Done!"}))
    assert (await repository.get_message(reply.id)).content == "Done!"


@pytest.mark.asyncio
async def test_archive_round_trip_changes_only_the_flag(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation(tags=["work"]))
    await repository.add_message(Message(conversation_id=conversation.id, content="Hello", token_count=3))
    before = (await repository.get_conversation(conversation.id)).to_document()

    await repository.archive_conversation(conversation.id)
    archived = (await repository.get_conversation(conversation.id)).to_document()
    assert archived["isArchived"] is True
    assert {k: v for k, v in archived.items() if k != "isArchived"} == {
        k: v for k, v in before.items() if k != "isArchived"
    }

    await repository.unarchive_conversation(conversation.id)
    assert (await repository.get_conversation(conversation.id)).to_document() == before


@pytest.mark.asyncio
async def test_pin_round_trip_changes_only_the_flag(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation(system_prompt="Be brief."))
    await repository.add_message(Message(conversation_id=conversation.id, content="Hello", token_count=3))
    before = (await repository.get_conversation(conversation.id)).to_document()

    await repository.pin_conversation(conversation.id)
    pinned = (await repository.get_conversation(conversation.id)).to_document()
    assert pinned["isPinned"] is True
    assert {k: v for k, v in pinned.items() if k != "isPinned"} == {
        k: v for k, v in before.items() if k != "isPinned"
    }

    await repository.unpin_conversation(conversation.id)
    assert (await repository.get_conversation(conversation.id)).to_document() == before


@pytest.mark.asyncio
async def test_conversation_stream_pushes_snapshots(repository, make_conversation):
    stream = repository.stream_conversations("user-1")
    try:
        assert await asyncio.wait_for(stream.__anext__(), 1) == []

        conversation = await repository.create_conversation(make_conversation())
        snapshot = await asyncio.wait_for(stream.__anext__(), 1)
        assert [c.id for c in snapshot] == [conversation.id]

        await repository.archive_conversation(conversation.id)
        snapshot = await asyncio.wait_for(stream.__anext__(), 1)
        assert snapshot[0].is_archived
    finally:
        await stream.aclose()


@pytest.mark.asyncio
async def test_message_stream_pushes_snapshots(repository, make_conversation):
    conversation = await repository.create_conversation(make_conversation())
    stream = repository.stream_messages(conversation.id)
    try:
        assert await asyncio.wait_for(stream.__anext__(), 1) == []

        message = await repository.add_message(Message(conversation_id=conversation.id, content="Hello"))
        snapshot = await asyncio.wait_for(stream.__anext__(), 1)
        assert snapshot == [message]
    finally:
        await stream.aclose()
