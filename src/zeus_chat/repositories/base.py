"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import UUID

from ..domain.models import Conversation, Message


class ConversationRepository(ABC):
    """Persistence contract consumed by the orchestration layer.

    Stream methods return live subscriptions: the first item is the current
    snapshot and every later item is the full collection after a change.
    Each call opens an independent subscription.
    """

    @abstractmethod
    def stream_conversations(self, user_id: str) -> AsyncIterator[List[Conversation]]:
        """Non-deleted conversations of a user, most recently updated first."""

    @abstractmethod
    async def list_conversations(
        self, user_id: str, include_deleted: bool = False
    ) -> List[Conversation]:
        """One-shot read of a user's conversations."""

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID, or None when absent."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Persist a new conversation."""

    @abstractmethod
    async def update_conversation(self, conversation_id: UUID, changes: Dict[str, Any]) -> Conversation:
        """Write only the given editable fields and return the stored conversation.

        Counters, preview and flags are never touched here. Unknown fields or
        values the stored record would not accept raise ValidationError.
        """

    @abstractmethod
    async def archive_conversation(self, conversation_id: UUID) -> None:
        pass

    @abstractmethod
    async def unarchive_conversation(self, conversation_id: UUID) -> None:
        pass

    @abstractmethod
    async def pin_conversation(self, conversation_id: UUID) -> None:
        pass

    @abstractmethod
    async def unpin_conversation(self, conversation_id: UUID) -> None:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Soft delete: set the deleted flag and timestamp."""

    @abstractmethod
    async def restore_conversation(self, conversation_id: UUID) -> None:
        """Undo a soft delete."""

    @abstractmethod
    async def permanently_delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation and all of its messages in one batch."""

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        """Persist a message and update the parent's counters and preview."""

    @abstractmethod
    async def update_message(self, message: Message) -> Message:
        """Replace a message document; the status may only move forward."""

    @abstractmethod
    async def delete_message(self, message_id: UUID) -> None:
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        pass

    @abstractmethod
    async def list_messages(self, conversation_id: UUID) -> List[Message]:
        """Messages of a conversation ordered by creation time."""

    @abstractmethod
    def stream_messages(self, conversation_id: UUID) -> AsyncIterator[List[Message]]:
        """Live message snapshots of a conversation, oldest first."""

    @abstractmethod
    async def search_conversations(self, user_id: str, query: str) -> List[Conversation]:
        """Case-insensitive substring match over title and last message."""

    @abstractmethod
    async def reconcile_conversation(self, conversation_id: UUID) -> Conversation:
        """Recompute denormalized counters from the message collection."""
