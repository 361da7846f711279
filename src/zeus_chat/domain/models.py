"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .errors import ValidationError

MESSAGE_PREVIEW_LENGTH = 50
CONVERSATION_PREVIEW_LENGTH = 100

# Counters, preview and flags are owned by the repository write path.
EDITABLE_CONVERSATION_FIELDS = frozenset(
    {
        "title",
        "model_id",
        "provider",
        "team_id",
        "system_prompt",
        "temperature",
        "max_tokens",
        "tags",
        "folder_id",
        "folder_name",
        "metadata",
    }
)
REQUIRED_CONVERSATION_FIELDS = frozenset({"title", "model_id", "provider"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Forward-only lifecycle; anything else is a new send attempt.
ALLOWED_TRANSITIONS = {
    MessageStatus.SENDING: {MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.GENERATING: {
        MessageStatus.COMPLETED,
        MessageStatus.FAILED,
        MessageStatus.CANCELLED,
    },
}


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS.get(current, ())


class AttachmentType(str, Enum):
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"


class DocumentModel(BaseModel):
    """Immutable record stored as a camelCase key/value document."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        protected_namespaces=(),
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]):
        return cls.model_validate(data)


class MessageAttachment(DocumentModel):
    """File, image, audio or video attached to a message."""

    id: UUID = Field(default_factory=uuid4)
    type: AttachmentType
    url: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None
    thumbnail_url: Optional[str] = None


class Message(DocumentModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    role: MessageRole = MessageRole.USER
    content: str
    status: MessageStatus = MessageStatus.SENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    user_id: Optional[str] = None
    model_id: Optional[str] = None
    provider: Optional[str] = None
    attachments: List[MessageAttachment] = Field(default_factory=list)
    token_count: Optional[int] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    cost: Optional[float] = None
    error_message: Optional[str] = None
    parent_message_id: Optional[UUID] = None
    edit_history: List[str] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    regenerated_from_message_id: Optional[UUID] = None
    metadata: Optional[Dict[str, Any]] = None

    @property
    def is_user(self) -> bool:
        return self.role == MessageRole.USER

    @property
    def is_assistant(self) -> bool:
        return self.role == MessageRole.ASSISTANT

    @property
    def is_system(self) -> bool:
        return self.role == MessageRole.SYSTEM

    @property
    def is_loading(self) -> bool:
        return self.status in (MessageStatus.SENDING, MessageStatus.GENERATING)

    @property
    def has_failed(self) -> bool:
        return self.status == MessageStatus.FAILED

    @property
    def is_completed(self) -> bool:
        return self.status == MessageStatus.COMPLETED

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)

    def attachments_of(self, attachment_type: AttachmentType) -> List[MessageAttachment]:
        return [a for a in self.attachments if a.type == attachment_type]

    @property
    def image_attachments(self) -> List[MessageAttachment]:
        return self.attachments_of(AttachmentType.IMAGE)

    @property
    def file_attachments(self) -> List[MessageAttachment]:
        return self.attachments_of(AttachmentType.FILE)

    @property
    def audio_attachments(self) -> List[MessageAttachment]:
        return self.attachments_of(AttachmentType.AUDIO)

    @property
    def formatted_time(self) -> str:
        return self.created_at.strftime("%H:%M")

    @property
    def preview(self) -> str:
        if len(self.content) <= MESSAGE_PREVIEW_LENGTH:
            return self.content
        return f"{self.content[:MESSAGE_PREVIEW_LENGTH]}..."

    def with_status(self, status: MessageStatus, **changes: Any) -> "Message":
        """Return a copy moved forward to ``status``.

        Raises ValidationError for backward or sideways moves such as
        ``failed -> generating``; a failed message is retried with a new send.
        """
        if not can_transition(self.status, status):
            raise ValidationError(
                f"Cannot move message from {self.status.value} to {status.value}",
                details={"message_id": str(self.id)},
            )
        changes.setdefault("updated_at", utcnow())
        if status in (MessageStatus.COMPLETED, MessageStatus.FAILED):
            changes.setdefault("completed_at", changes["updated_at"])
        return self.model_copy(update={"status": status, **changes})

    def edited(self, new_content: str) -> "Message":
        now = utcnow()
        return self.model_copy(
            update={
                "content": new_content,
                "edit_history": [*self.edit_history, self.content],
                "is_edited": True,
                "edited_at": now,
                "updated_at": now,
            }
        )


class Conversation(DocumentModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    title: str
    model_id: str
    provider: str
    team_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tags: List[str] = Field(default_factory=list)
    folder_id: Optional[str] = None
    folder_name: Optional[str] = None
    message_count: int = 0
    token_count: int = 0
    estimated_cost: float = 0.0
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    is_pinned: bool = False
    is_archived: bool = False
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    is_shared: bool = False
    shared_with_user_ids: List[str] = Field(default_factory=list)
    shared_with_team_ids: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    @property
    def is_active(self) -> bool:
        return not self.is_deleted and not self.is_archived

    @property
    def preview(self) -> str:
        if not self.last_message:
            return "No messages yet"
        if len(self.last_message) > CONVERSATION_PREVIEW_LENGTH:
            return f"{self.last_message[:CONVERSATION_PREVIEW_LENGTH]}..."
        return self.last_message

    def time_ago(self, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        difference = now - (self.last_message_at or self.updated_at)
        minutes = int(difference.total_seconds() // 60)
        if minutes < 1:
            return "Just now"
        if minutes < 60:
            return f"{minutes}m ago"
        if difference.days < 1:
            return f"{minutes // 60}h ago"
        if difference.days < 7:
            return f"{difference.days}d ago"
        return f"{difference.days // 7}w ago"
