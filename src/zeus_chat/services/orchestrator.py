"""Conversation orchestration: list state and the per-conversation send lifecycle.

The controllers sit between a caller (HTTP handler, UI) and two collaborators
passed in by the caller: a ``ConversationRepository`` and a
``CompletionClient``. Local state is updated optimistically after each write
and replaced wholesale whenever the repository pushes a new snapshot.
"""

import asyncio
from collections import OrderedDict
from typing import Any, Awaitable, Dict, List, Optional, Sequence
from uuid import UUID

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..domain.catalog import ModelCatalog
from ..domain.errors import (
    AuthenticationError,
    ChatError,
    IllegalStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from ..domain.models import (
    EDITABLE_CONVERSATION_FIELDS,
    REQUIRED_CONVERSATION_FIELDS,
    Conversation,
    Message,
    MessageAttachment,
    MessageRole,
    MessageStatus,
    utcnow,
)
from ..domain.validators import validate_message_content, validate_sampling, validate_title
from ..repositories.base import ConversationRepository
from . import export
from .completion import CompletionClient, CompletionResult
from .send_queue import SendQueue

logger = structlog.get_logger()

APOLOGY_MESSAGE = "Sorry, I encountered an error generating a response. Please try again."

# Turns that never reached the model are left out of the history sent to it.
EXCLUDED_FROM_HISTORY = {MessageStatus.GENERATING, MessageStatus.FAILED, MessageStatus.CANCELLED}


class ConversationListState(BaseModel):
    """Conversation list state."""

    model_config = ConfigDict(frozen=True)

    conversations: List[Conversation] = Field(default_factory=list)
    is_loading: bool = True
    error_message: Optional[str] = None

    @property
    def pinned_conversations(self) -> List[Conversation]:
        return [c for c in self.conversations if c.is_pinned and c.is_active]

    @property
    def active_conversations(self) -> List[Conversation]:
        return [c for c in self.conversations if not c.is_pinned and c.is_active]

    @property
    def archived_conversations(self) -> List[Conversation]:
        return [c for c in self.conversations if c.is_archived and not c.is_deleted]


class ConversationState(BaseModel):
    """Single conversation state."""

    model_config = ConfigDict(frozen=True)

    conversation: Optional[Conversation] = None
    messages: List[Message] = Field(default_factory=list)
    is_loading: bool = False
    is_sending: bool = False
    error_message: Optional[str] = None


async def _guarded(operation: str, awaitable: Awaitable[Any], on_error, **context: Any) -> Any:
    """Await a repository call, log failures and rethrow them as ChatError."""
    try:
        return await awaitable
    except ChatError as e:
        logger.error(f"{operation}_failed", error=str(e), **context)
        on_error(e)
        raise
    except Exception as e:
        logger.error(f"{operation}_failed", error=str(e), **context)
        wrapped = PersistenceError(f"Failed to {operation.replace('_', ' ')}", details=context)
        on_error(wrapped)
        raise wrapped from e


class ConversationListController:
    """Conversation list for one user, fed by a live repository subscription."""

    def __init__(self, repository: ConversationRepository, user_id: Optional[str]) -> None:
        self._repository = repository
        self._user_id = user_id
        self.state = ConversationListState(is_loading=user_id is not None)
        self._subscription: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def start(self) -> None:
        if self._user_id is None or self._subscription is not None:
            return
        self._subscription = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        if self._subscription is None:
            return
        self._subscription.cancel()
        try:
            await self._subscription
        except asyncio.CancelledError:
            pass
        self._subscription = None

    async def _consume(self) -> None:
        try:
            async for conversations in self._repository.stream_conversations(self._user_id):
                self.state = self.state.model_copy(
                    update={"conversations": conversations, "is_loading": False, "error_message": None}
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("conversations_stream_error", user_id=self._user_id, error=str(e))
            self.state = self.state.model_copy(update={"is_loading": False, "error_message": str(e)})

    def _record_error(self, error: ChatError) -> None:
        self.state = self.state.model_copy(update={"error_message": error.message})

    def _require_user(self) -> str:
        if self._user_id is None:
            raise AuthenticationError("User not authenticated")
        return self._user_id

    async def create_conversation(
        self,
        title: str,
        model_id: str,
        provider: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        team_id: Optional[str] = None,
    ) -> Conversation:
        user_id = self._require_user()
        title = validate_title(title)
        validate_sampling(temperature, max_tokens)

        now = utcnow()
        conversation = Conversation(
            user_id=user_id,
            team_id=team_id,
            title=title,
            model_id=model_id,
            provider=provider,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            created_at=now,
            updated_at=now,
        )
        logger.info("creating_conversation", user_id=user_id, title=title, model_id=model_id)
        return await _guarded(
            "create_conversation",
            self._repository.create_conversation(conversation),
            self._record_error,
            conversation_id=str(conversation.id),
        )

    async def delete_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "delete_conversation",
            self._repository.delete_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )
        logger.info("conversation_deleted", conversation_id=str(conversation_id))

    async def restore_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "restore_conversation",
            self._repository.restore_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )

    async def permanently_delete_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "permanently_delete_conversation",
            self._repository.permanently_delete_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )

    async def archive_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "archive_conversation",
            self._repository.archive_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )

    async def unarchive_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "unarchive_conversation",
            self._repository.unarchive_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )

    async def pin_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "pin_conversation",
            self._repository.pin_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )

    async def unpin_conversation(self, conversation_id: UUID) -> None:
        await _guarded(
            "unpin_conversation",
            self._repository.unpin_conversation(conversation_id),
            self._record_error,
            conversation_id=str(conversation_id),
        )

    async def search_conversations(self, query: str) -> List[Conversation]:
        """Blank queries match nothing."""
        if self._user_id is None or not query.strip():
            return []
        return await _guarded(
            "search_conversations",
            self._repository.search_conversations(self._user_id, query),
            self._record_error,
            query=query,
        )

    async def update_conversation(self, conversation_id: UUID, **changes: Any) -> Conversation:
        """Apply caller-editable settings; counters and flags are left to the write path."""
        unknown = set(changes) - EDITABLE_CONVERSATION_FIELDS
        if unknown:
            raise ValidationError(
                "Only editable conversation fields can be updated", details={"fields": sorted(unknown)}
            )
        for name in REQUIRED_CONVERSATION_FIELDS & set(changes):
            if changes[name] is None:
                raise ValidationError(f"{name} cannot be null", details={"field": name})
        if "title" in changes:
            changes["title"] = validate_title(changes["title"])
        validate_sampling(changes.get("temperature"), changes.get("max_tokens"))

        updated = await _guarded(
            "update_conversation",
            self._repository.update_conversation(conversation_id, changes),
            self._record_error,
            conversation_id=str(conversation_id),
        )
        logger.info("conversation_updated", conversation_id=str(conversation_id), fields=sorted(changes))
        return updated

    async def update_conversation_title(self, conversation_id: UUID, new_title: str) -> Conversation:
        return await self.update_conversation(conversation_id, title=new_title)


class ConversationSession:
    """Message lifecycle for one open conversation.

    A send goes through ``sending -> sent`` for the user message and
    ``generating -> completed | failed`` for the assistant placeholder. Sends
    in the same conversation run one at a time through the ``SendQueue``.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        completion_client: CompletionClient,
        conversation_id: UUID,
        send_queue: Optional[SendQueue] = None,
        catalog: Optional[ModelCatalog] = None,
        max_message_length: int = 10000,
    ) -> None:
        self._repository = repository
        self._completion_client = completion_client
        self.conversation_id = conversation_id
        self._owns_queue = send_queue is None
        self._send_queue = send_queue or SendQueue(max_concurrent=1)
        self._catalog = catalog or ModelCatalog()
        self._max_message_length = max_message_length
        self._sends_in_flight = 0
        self._subscription: Optional[asyncio.Task] = None
        self.state = ConversationState()

    @property
    def is_sending(self) -> bool:
        return self.state.is_sending

    def _set(self, **changes: Any) -> None:
        self.state = self.state.model_copy(update=changes)

    async def load(self) -> Conversation:
        self._set(is_loading=True)
        try:
            conversation = await self._repository.get_conversation(self.conversation_id)
        except ChatError as e:
            logger.error("load_conversation_failed", conversation_id=str(self.conversation_id), error=str(e))
            self._set(is_loading=False, error_message=e.message)
            raise
        if conversation is None:
            self._set(is_loading=False, error_message="Conversation not found")
            raise NotFoundError("Conversation not found", details={"id": str(self.conversation_id)})
        self._set(conversation=conversation, is_loading=False, error_message=None)
        return conversation

    async def start(self) -> None:
        await self.load()
        if self._subscription is None:
            self._subscription = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        if self._owns_queue:
            await self._send_queue.cleanup()
        if self._subscription is None:
            return
        self._subscription.cancel()
        try:
            await self._subscription
        except asyncio.CancelledError:
            pass
        self._subscription = None

    async def _consume(self) -> None:
        try:
            async for messages in self._repository.stream_messages(self.conversation_id):
                self._set(messages=messages, error_message=None)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("messages_stream_error", conversation_id=str(self.conversation_id), error=str(e))
            self._set(error_message=str(e))

    def _apply_local(self, message: Message) -> None:
        """Optimistically upsert a message until the next snapshot lands."""
        messages = [m for m in self.state.messages if m.id != message.id]
        messages.append(message)
        messages.sort(key=lambda m: m.created_at)
        self._set(messages=messages)

    # ----- sending -----

    async def send_message(
        self, content: str, attachments: Sequence[MessageAttachment] = ()
    ) -> Message:
        """Send a user message and fill an assistant reply.

        Returns the final assistant message. On completion failure the
        placeholder is stored as failed and the error is re-raised.
        """
        if self.state.conversation is None:
            raise IllegalStateError("Conversation not loaded")
        validate_message_content(content, self._max_message_length)

        self._sends_in_flight += 1
        self._set(is_sending=True)
        try:
            return await self._send_queue.submit(
                self.conversation_id, self._send, content, list(attachments)
            )
        except ChatError as e:
            logger.error("send_message_failed", conversation_id=str(self.conversation_id), error=str(e))
            self._set(error_message=e.message)
            raise
        finally:
            self._sends_in_flight -= 1
            self._set(is_sending=self._sends_in_flight > 0)

    async def _send(self, content: str, attachments: List[MessageAttachment]) -> Message:
        conversation = await self._repository.get_conversation(self.conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", details={"id": str(self.conversation_id)})
        self._set(conversation=conversation)

        user_message = Message(
            conversation_id=self.conversation_id,
            role=MessageRole.USER,
            content=content,
            status=MessageStatus.SENDING,
            user_id=conversation.user_id,
            attachments=attachments,
        )
        # Recorded before any assistant work; a crash here leaves it at "sending".
        await self._repository.add_message(user_message)
        self._apply_local(user_message)
        user_message = user_message.with_status(MessageStatus.SENT)
        await self._repository.update_message(user_message)
        self._apply_local(user_message)

        history = await self._history(including=user_message)

        placeholder = Message(
            conversation_id=self.conversation_id,
            role=MessageRole.ASSISTANT,
            content="",
            status=MessageStatus.GENERATING,
            model_id=conversation.model_id,
            provider=conversation.provider,
            parent_message_id=user_message.id,
        )
        await self._repository.add_message(placeholder)
        self._apply_local(placeholder)

        try:
            result = await self._completion_client.complete(
                conversation.model_id,
                history,
                provider=conversation.provider,
                system_prompt=conversation.system_prompt,
                temperature=conversation.temperature,
                max_tokens=conversation.max_tokens,
            )
        except asyncio.CancelledError:
            logger.warning(
                "completion_cancelled",
                conversation_id=str(self.conversation_id),
                message_id=str(placeholder.id),
            )
            cancelled = placeholder.with_status(MessageStatus.CANCELLED)
            await self._repository.update_message(cancelled)
            self._apply_local(cancelled)
            raise
        except Exception as e:
            logger.error(
                "completion_failed",
                conversation_id=str(self.conversation_id),
                message_id=str(placeholder.id),
                error=str(e),
            )
            failed = placeholder.with_status(
                MessageStatus.FAILED, content=APOLOGY_MESSAGE, error_message=str(e)
            )
            await self._repository.update_message(failed)
            self._apply_local(failed)
            if isinstance(e, ChatError):
                raise
            raise ChatError("Failed to get AI response") from e

        completed = placeholder.with_status(MessageStatus.COMPLETED, **self._usage_fields(result))
        await self._repository.update_message(completed)
        self._apply_local(completed)
        logger.info(
            "assistant_response_saved",
            conversation_id=str(self.conversation_id),
            message_id=str(completed.id),
            characters=len(completed.content),
        )
        return completed

    async def _history(self, including: Message) -> List[Message]:
        """Authoritative prior messages plus ``including``, oldest first."""
        messages = await self._repository.list_messages(self.conversation_id)
        history = [
            m for m in messages
            if m.id != including.id and m.status not in EXCLUDED_FROM_HISTORY
        ]
        history.append(including)
        return history

    def _usage_fields(self, result: CompletionResult) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"content": result.content}
        if result.usage is not None:
            fields.update(
                prompt_tokens=result.usage.prompt_tokens,
                completion_tokens=result.usage.completion_tokens,
                token_count=result.usage.total_tokens
                or result.usage.prompt_tokens + result.usage.completion_tokens,
            )
            model_id = self.state.conversation.model_id if self.state.conversation else result.model_id
            cost = self._catalog.estimate_cost(
                model_id, result.usage.prompt_tokens, result.usage.completion_tokens
            )
            if cost is not None:
                fields["cost"] = cost
        return fields

    async def regenerate_message(self, message_id: UUID) -> None:
        """Extension point for regenerating an assistant reply; currently a no-op."""
        logger.info("regenerate_requested", conversation_id=str(self.conversation_id), message_id=str(message_id))
        return None

    # ----- editing -----

    async def _find_message(self, message_id: UUID) -> Message:
        message = await self._repository.get_message(message_id)
        if message is None or message.conversation_id != self.conversation_id:
            raise NotFoundError("Message not found", details={"id": str(message_id)})
        return message

    async def edit_message(self, message_id: UUID, new_content: str) -> Message:
        validate_message_content(new_content, self._max_message_length)
        try:
            message = await self._find_message(message_id)
            updated = message.edited(new_content)
            await self._repository.update_message(updated)
        except ChatError as e:
            logger.error("edit_message_failed", message_id=str(message_id), error=str(e))
            self._set(error_message=e.message)
            raise
        self._apply_local(updated)
        return updated

    async def update_message(self, message: Message) -> Message:
        await _guarded(
            "update_message",
            self._repository.update_message(message),
            lambda e: self._set(error_message=e.message),
            message_id=str(message.id),
        )
        self._apply_local(message)
        return message

    async def delete_message(self, message_id: UUID) -> None:
        await _guarded(
            "delete_message",
            self._repository.delete_message(message_id),
            lambda e: self._set(error_message=e.message),
            message_id=str(message_id),
        )
        self._set(messages=[m for m in self.state.messages if m.id != message_id])

    async def clear_history(self) -> int:
        """Delete every message in the conversation; returns how many were removed."""
        logger.info("clearing_conversation_history", conversation_id=str(self.conversation_id))
        messages = await self._repository.list_messages(self.conversation_id)
        for message in messages:
            await self.delete_message(message.id)
        logger.info("conversation_history_cleared", conversation_id=str(self.conversation_id), deleted=len(messages))
        return len(messages)

    # ----- export -----

    def shareable_text(self) -> str:
        return export.shareable_text(self.state.conversation, self.state.messages)

    def export_data(self) -> Dict[str, Any]:
        return export.export_data(self.state.conversation, self.state.messages)


class SessionRegistry:
    """Started sessions keyed by conversation id, for long-lived hosts.

    Sessions idle for ``idle_timeout`` seconds, or the least recently used
    beyond ``max_sessions``, are stopped on the next ``get`` or
    ``prune_idle``. A session with sends queued or running is never evicted.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        completion_client: CompletionClient,
        send_queue: SendQueue,
        catalog: Optional[ModelCatalog] = None,
        max_message_length: int = 10000,
        max_sessions: int = 100,
        idle_timeout: float = 300.0,
    ) -> None:
        self._repository = repository
        self._completion_client = completion_client
        self._send_queue = send_queue
        self._catalog = catalog or ModelCatalog()
        self._max_message_length = max_message_length
        self._max_sessions = max_sessions
        self._idle_timeout = idle_timeout
        self._sessions: "OrderedDict[UUID, ConversationSession]" = OrderedDict()
        self._last_used: Dict[UUID, float] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, conversation_id: UUID) -> bool:
        return conversation_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def get(self, conversation_id: UUID) -> ConversationSession:
        async with self._lock:
            session = self._sessions.get(conversation_id)
            if session is None:
                session = ConversationSession(
                    self._repository,
                    self._completion_client,
                    conversation_id,
                    send_queue=self._send_queue,
                    catalog=self._catalog,
                    max_message_length=self._max_message_length,
                )
                await session.start()
                self._sessions[conversation_id] = session
            self._sessions.move_to_end(conversation_id)
            self._last_used[conversation_id] = asyncio.get_running_loop().time()
            evicted = self._pop_evictable(keep=conversation_id)
        await self._stop_all(evicted)
        return session

    def _pop_evictable(self, keep: Optional[UUID] = None) -> List[ConversationSession]:
        now = asyncio.get_running_loop().time()
        evicted = []
        # Oldest first, so capacity eviction drops the least recently used.
        for conversation_id, session in list(self._sessions.items()):
            if conversation_id == keep or session.is_sending:
                continue
            idle = now - self._last_used[conversation_id] >= self._idle_timeout
            if idle or len(self._sessions) > self._max_sessions:
                evicted.append(self._sessions.pop(conversation_id))
                del self._last_used[conversation_id]
        return evicted

    async def _stop_all(self, sessions: List[ConversationSession]) -> None:
        for session in sessions:
            logger.debug("session_closed", conversation_id=str(session.conversation_id))
            await session.stop()

    async def prune_idle(self) -> int:
        """Stop idle sessions now; returns how many were closed."""
        async with self._lock:
            evicted = self._pop_evictable()
        await self._stop_all(evicted)
        return len(evicted)

    async def close(self, conversation_id: UUID) -> None:
        async with self._lock:
            session = self._sessions.pop(conversation_id, None)
            self._last_used.pop(conversation_id, None)
        if session is not None:
            await session.stop()

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._last_used.clear()
        await self._stop_all(sessions)
