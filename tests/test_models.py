"""Test suite for domain models, the model catalog and input validation."""

from datetime import timedelta
from uuid import uuid4

import pytest

from zeus_chat.domain.catalog import ModelCatalog
from zeus_chat.domain.errors import UpstreamAPIError, ValidationError
from zeus_chat.domain.models import (
    AttachmentType,
    Conversation,
    Message,
    MessageAttachment,
    MessageRole,
    MessageStatus,
    utcnow,
)
from zeus_chat.domain.validators import validate_message_content, validate_sampling, validate_title


def test_message_lifecycle_moves_forward():
    """Sending goes to sent, generating goes to completed."""
    message = Message(conversation_id=uuid4(), content="Hello")
    assert message.status == MessageStatus.SENDING
    assert message.is_loading

    sent = message.with_status(MessageStatus.SENT)
    assert sent.status == MessageStatus.SENT
    assert not sent.is_loading
    assert sent.updated_at is not None
    assert sent.completed_at is None

    reply = Message(
        conversation_id=message.conversation_id,
        role=MessageRole.ASSISTANT,
        content="",
        status=MessageStatus.GENERATING,
    )
    completed = reply.with_status(MessageStatus.COMPLETED, content="Hi")
    assert completed.is_completed
    assert completed.content == "Hi"
    assert completed.completed_at == completed.updated_at


def test_message_lifecycle_rejects_backward_moves():
    """A failed reply cannot go back to generating."""
    failed = Message(
        conversation_id=uuid4(),
        role=MessageRole.ASSISTANT,
        content="",
        status=MessageStatus.GENERATING,
    ).with_status(MessageStatus.FAILED)
    assert failed.has_failed
    assert failed.completed_at is not None

    with pytest.raises(ValidationError):
        failed.with_status(MessageStatus.GENERATING)
    with pytest.raises(ValidationError):
        Message(conversation_id=uuid4(), content="x", status=MessageStatus.SENT).with_status(
            MessageStatus.SENDING
        )


def test_edited_message_keeps_history():
    message = Message(conversation_id=uuid4(), content="first", status=MessageStatus.SENT)
    once = message.edited("second")
    twice = once.edited("third")

    assert twice.content == "third"
    assert twice.edit_history == ["first", "second"]
    assert twice.is_edited
    assert twice.edited_at is not None
    assert message.edit_history == []


def test_message_document_uses_camel_case_keys():
    message = Message(conversation_id=uuid4(), content="Hello", model_id="gpt-4")
    document = message.to_document()

    assert "conversationId" in document
    assert "modelId" in document
    assert "editHistory" in document
    assert Message.from_document(document) == message


def test_message_preview_and_attachments():
    long_message = Message(conversation_id=uuid4(), content="a" * 60)
    assert long_message.preview == "a" * 50 + "..."
    assert Message(conversation_id=uuid4(), content="short").preview == "short"

    message = Message(
        conversation_id=uuid4(),
        content="see attached",
        attachments=[
            MessageAttachment(type=AttachmentType.IMAGE, url="https://example.com/a.png"),
            MessageAttachment(type=AttachmentType.FILE, url="https://example.com/b.pdf"),
        ],
    )
    assert message.has_attachments
    assert len(message.image_attachments) == 1
    assert len(message.file_attachments) == 1
    assert message.audio_attachments == []


def test_conversation_preview_and_flags(make_conversation):
    conversation = make_conversation()
    assert conversation.preview == "No messages yet"
    assert conversation.is_active

    long_preview = conversation.model_copy(update={"last_message": "b" * 120})
    assert long_preview.preview == "b" * 100 + "..."

    assert not conversation.model_copy(update={"is_archived": True}).is_active
    assert not conversation.model_copy(update={"is_deleted": True}).is_active


def test_conversation_time_ago(make_conversation):
    now = utcnow()
    conversation = make_conversation(updated_at=now)

    assert conversation.time_ago(now + timedelta(seconds=30)) == "Just now"
    assert conversation.time_ago(now + timedelta(minutes=5)) == "5m ago"
    assert conversation.time_ago(now + timedelta(hours=3)) == "3h ago"
    assert conversation.time_ago(now + timedelta(days=2)) == "2d ago"
    assert conversation.time_ago(now + timedelta(days=15)) == "2w ago"


def test_catalog_estimates_cost():
    catalog = ModelCatalog()
    cost = catalog.estimate_cost("gpt-4", prompt_tokens=1000, completion_tokens=500)
    assert cost == pytest.approx(0.03 + 0.03)
    assert catalog.estimate_cost("unknown-model", 10, 10) is None

    claude = catalog.get("claude-3-opus")
    assert claude.supports_vision
    assert claude.formatted_context_window == "200K"
    assert claude.provider_display_name == "Anthropic"
    assert {m.model_id for m in catalog.list()} == {"gpt-4", "claude-3-opus", "gemini-pro", "llama-3-70b"}


def test_upstream_error_message_format():
    error = UpstreamAPIError("Rate limit exceeded", status_code=429)
    assert str(error) == "API Error (429): Rate limit exceeded"
    assert error.is_rate_limited
    assert not error.is_auth_failure
    assert UpstreamAPIError("Unauthorized", status_code=401).is_auth_failure


def test_validators():
    assert validate_title("  My chat  ") == "My chat"
    with pytest.raises(ValidationError, match="Title is required"):
        validate_title("   ")
    with pytest.raises(ValidationError):
        validate_title("ab")
    with pytest.raises(ValidationError):
        validate_title("x" * 101)

    with pytest.raises(ValidationError, match="Message cannot be empty"):
        validate_message_content("  \n ", 100)
    with pytest.raises(ValidationError, match="too long"):
        validate_message_content("x" * 101, 100)

    validate_sampling(None, None)
    validate_sampling(0.7, 256)
    with pytest.raises(ValidationError):
        validate_sampling(2.5, None)
    with pytest.raises(ValidationError):
        validate_sampling(None, 0)
