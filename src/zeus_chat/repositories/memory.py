"""In-process document store implementation of the conversation repository."""

import asyncio
import contextlib
import itertools
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple
from uuid import UUID

import structlog
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..domain.errors import ChatError, NotFoundError, PersistenceError, ValidationError
from ..domain.models import (
    EDITABLE_CONVERSATION_FIELDS,
    Conversation,
    Message,
    MessageStatus,
    can_transition,
    utcnow,
)
from .base import ConversationRepository

logger = structlog.get_logger()

CONVERSATIONS = "conversations"
MESSAGES = "messages"

Document = Dict[str, Any]


class WriteBatch:
    """Staged writes applied all-or-nothing on commit."""

    def __init__(self) -> None:
        self.operations: List[Tuple[str, str, str, Optional[Document]]] = []

    def set(self, collection: str, doc_id: UUID, data: Document) -> None:
        self.operations.append(("set", collection, str(doc_id), data))

    def update(self, collection: str, doc_id: UUID, fields: Document) -> None:
        self.operations.append(("update", collection, str(doc_id), fields))

    def delete(self, collection: str, doc_id: UUID) -> None:
        self.operations.append(("delete", collection, str(doc_id), None))


class InMemoryConversationRepository(ConversationRepository):
    """Document store with camelCase documents, batches and snapshot listeners.

    One asyncio lock serializes every write, so a batch commit is the
    transaction primitive: ``add_message`` writes the message and the parent's
    counters together.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {CONVERSATIONS: {}, MESSAGES: {}}
        self._insertion_order: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self._conversation_listeners: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._message_listeners: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        logger.info("repository_initialized", backend="memory")

    # ----- transaction plumbing -----

    @contextlib.asynccontextmanager
    async def _transaction(self, operation: str, **context: Any):
        async with self._lock:
            try:
                yield
            except ChatError as e:
                logger.warning("repository_operation_rejected", operation=operation, error=str(e), **context)
                raise
            except Exception as e:
                logger.error("repository_operation_failed", operation=operation, error=str(e), **context)
                raise PersistenceError(
                    f"Failed to {operation.replace('_', ' ')}",
                    details={"operation": operation, **context},
                ) from e

    def _require(self, collection: str, doc_id: UUID) -> Document:
        doc = self._collections[collection].get(str(doc_id))
        if doc is None:
            raise NotFoundError(
                f"{collection[:-1].capitalize()} not found",
                details={"id": str(doc_id)},
            )
        return doc

    def _commit(self, batch: WriteBatch) -> None:
        """Validate the whole batch, then apply it and notify listeners."""
        staged = {name: dict(docs) for name, docs in self._collections.items()}
        for op, collection, doc_id, data in batch.operations:
            docs = staged[collection]
            if op == "set":
                docs[doc_id] = dict(data)
            elif op == "update":
                if doc_id not in docs:
                    raise NotFoundError(
                        f"{collection[:-1].capitalize()} not found", details={"id": doc_id}
                    )
                docs[doc_id] = {**docs[doc_id], **data}
            else:
                docs.pop(doc_id, None)

        users, conversations = self._affected(batch, staged)
        for op, collection, doc_id, _ in batch.operations:
            if op == "set" and doc_id not in self._insertion_order:
                self._insertion_order[doc_id] = next(self._sequence)
            elif op == "delete":
                self._insertion_order.pop(doc_id, None)
        self._collections = staged
        self._notify(users, conversations)

    def _affected(
        self, batch: WriteBatch, staged: Dict[str, Dict[str, Document]]
    ) -> Tuple[Set[str], Set[str]]:
        users: Set[str] = set()
        conversations: Set[str] = set()
        for _, collection, doc_id, _ in batch.operations:
            for source in (self._collections, staged):
                doc = source[collection].get(doc_id)
                if doc is None:
                    continue
                if collection == CONVERSATIONS:
                    users.add(doc["userId"])
                    conversations.add(doc_id)
                else:
                    conversations.add(str(doc["conversationId"]))
        return users, conversations

    def _notify(self, users: Set[str], conversations: Set[str]) -> None:
        for user_id in users:
            listeners = self._conversation_listeners.get(user_id)
            if listeners:
                snapshot = self._conversations_snapshot(user_id)
                for queue in listeners:
                    queue.put_nowait(snapshot)
        for conversation_id in conversations:
            listeners = self._message_listeners.get(conversation_id)
            if listeners:
                snapshot = self._messages_snapshot(conversation_id)
                for queue in listeners:
                    queue.put_nowait(snapshot)

    # ----- snapshots -----

    def _conversations_snapshot(self, user_id: str, include_deleted: bool = False) -> List[Conversation]:
        conversations = [
            Conversation.from_document(doc)
            for doc in self._collections[CONVERSATIONS].values()
            if doc["userId"] == user_id and (include_deleted or not doc["isDeleted"])
        ]
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    def _message_documents(self, conversation_id: UUID) -> List[Document]:
        key = str(conversation_id)
        docs = [
            doc for doc in self._collections[MESSAGES].values()
            if str(doc["conversationId"]) == key
        ]
        return sorted(
            docs,
            key=lambda d: (d["createdAt"], self._insertion_order.get(str(d["id"]), 0)),
        )

    def _messages_snapshot(self, conversation_id: UUID) -> List[Message]:
        return [Message.from_document(doc) for doc in self._message_documents(conversation_id)]

    async def _subscribe(
        self, listeners: Dict[str, List[asyncio.Queue]], key: str, snapshot
    ) -> AsyncIterator[list]:
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            listeners[key].append(queue)
            queue.put_nowait(snapshot())
        logger.debug("subscription_opened", key=key)
        try:
            while True:
                yield await queue.get()
        finally:
            listeners[key].remove(queue)
            if not listeners[key]:
                del listeners[key]
            logger.debug("subscription_closed", key=key)

    # ----- conversations -----

    def stream_conversations(self, user_id: str) -> AsyncIterator[List[Conversation]]:
        return self._subscribe(
            self._conversation_listeners, user_id, lambda: self._conversations_snapshot(user_id)
        )

    async def list_conversations(
        self, user_id: str, include_deleted: bool = False
    ) -> List[Conversation]:
        async with self._lock:
            return self._conversations_snapshot(user_id, include_deleted=include_deleted)

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        async with self._lock:
            doc = self._collections[CONVERSATIONS].get(str(conversation_id))
        if doc is None:
            logger.warning("conversation_not_found", conversation_id=str(conversation_id))
            return None
        return Conversation.from_document(doc)

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._transaction("create_conversation", conversation_id=str(conversation.id)):
            batch = WriteBatch()
            batch.set(CONVERSATIONS, conversation.id, conversation.to_document())
            self._commit(batch)
        logger.info("conversation_created", conversation_id=str(conversation.id), title=conversation.title)
        return conversation

    async def update_conversation(self, conversation_id: UUID, changes: Document) -> Conversation:
        unknown = set(changes) - EDITABLE_CONVERSATION_FIELDS
        if unknown:
            raise ValidationError(
                "Only editable conversation fields can be updated",
                details={"fields": sorted(unknown)},
            )
        async with self._transaction("update_conversation", conversation_id=str(conversation_id)):
            current = self._require(CONVERSATIONS, conversation_id)
            fields = {to_camel(name): value for name, value in changes.items()}
            fields["updatedAt"] = utcnow()
            try:
                updated = Conversation.from_document({**current, **fields})
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid conversation update",
                    details={"fields": sorted({".".join(map(str, err["loc"])) for err in e.errors()})},
                ) from e
            stored = updated.to_document()
            batch = WriteBatch()
            batch.update(CONVERSATIONS, conversation_id, {key: stored[key] for key in fields})
            self._commit(batch)
        logger.debug("conversation_updated", conversation_id=str(conversation_id), fields=sorted(changes))
        return updated

    async def _update_fields(self, operation: str, conversation_id: UUID, fields: Document) -> None:
        async with self._transaction(operation, conversation_id=str(conversation_id)):
            batch = WriteBatch()
            batch.update(CONVERSATIONS, conversation_id, fields)
            self._commit(batch)
        logger.debug(operation, conversation_id=str(conversation_id))

    async def archive_conversation(self, conversation_id: UUID) -> None:
        await self._update_fields("archive_conversation", conversation_id, {"isArchived": True})

    async def unarchive_conversation(self, conversation_id: UUID) -> None:
        await self._update_fields("unarchive_conversation", conversation_id, {"isArchived": False})

    async def pin_conversation(self, conversation_id: UUID) -> None:
        await self._update_fields("pin_conversation", conversation_id, {"isPinned": True})

    async def unpin_conversation(self, conversation_id: UUID) -> None:
        await self._update_fields("unpin_conversation", conversation_id, {"isPinned": False})

    async def delete_conversation(self, conversation_id: UUID) -> None:
        async with self._transaction("delete_conversation", conversation_id=str(conversation_id)):
            doc = self._require(CONVERSATIONS, conversation_id)
            if not doc["isDeleted"]:
                batch = WriteBatch()
                batch.update(CONVERSATIONS, conversation_id, {"isDeleted": True, "deletedAt": utcnow()})
                self._commit(batch)
        logger.warning("conversation_soft_deleted", conversation_id=str(conversation_id))

    async def restore_conversation(self, conversation_id: UUID) -> None:
        await self._update_fields(
            "restore_conversation", conversation_id, {"isDeleted": False, "deletedAt": None}
        )

    async def permanently_delete_conversation(self, conversation_id: UUID) -> None:
        async with self._transaction("permanently_delete_conversation", conversation_id=str(conversation_id)):
            self._require(CONVERSATIONS, conversation_id)
            batch = WriteBatch()
            messages = self._message_documents(conversation_id)
            for doc in messages:
                batch.delete(MESSAGES, doc["id"])
            batch.delete(CONVERSATIONS, conversation_id)
            self._commit(batch)
        logger.warning(
            "conversation_permanently_deleted",
            conversation_id=str(conversation_id),
            messages_deleted=len(messages),
        )

    # ----- messages -----

    async def add_message(self, message: Message) -> Message:
        async with self._transaction(
            "add_message", conversation_id=str(message.conversation_id), message_id=str(message.id)
        ):
            parent = self._require(CONVERSATIONS, message.conversation_id)
            batch = WriteBatch()
            batch.set(MESSAGES, message.id, message.to_document())
            batch.update(
                CONVERSATIONS,
                message.conversation_id,
                {
                    "lastMessage": message.content,
                    "lastMessageAt": message.created_at,
                    "messageCount": parent["messageCount"] + 1,
                    "tokenCount": parent["tokenCount"] + (message.token_count or 0),
                    "estimatedCost": parent["estimatedCost"] + (message.cost or 0.0),
                    "updatedAt": utcnow(),
                },
            )
            self._commit(batch)
        logger.info(
            "message_added",
            conversation_id=str(message.conversation_id),
            message_id=str(message.id),
            message_role=message.role.value,
        )
        return message

    async def update_message(self, message: Message) -> Message:
        async with self._transaction("update_message", message_id=str(message.id)):
            previous = self._require(MESSAGES, message.id)
            previous_status = MessageStatus(previous["status"])
            if not can_transition(previous_status, message.status):
                raise ValidationError(
                    f"Cannot move message from {previous_status.value} to {message.status.value}",
                    details={"message_id": str(message.id)},
                )
            parent = self._require(CONVERSATIONS, message.conversation_id)
            batch = WriteBatch()
            batch.set(MESSAGES, message.id, message.to_document())

            fields: Document = {}
            token_delta = (message.token_count or 0) - (previous["tokenCount"] or 0)
            cost_delta = (message.cost or 0.0) - (previous["cost"] or 0.0)
            if token_delta:
                fields["tokenCount"] = parent["tokenCount"] + token_delta
            if cost_delta:
                fields["estimatedCost"] = parent["estimatedCost"] + cost_delta
            newest = self._message_documents(message.conversation_id)[-1]
            if str(newest["id"]) == str(message.id) and parent["lastMessage"] != message.content:
                fields["lastMessage"] = message.content
                fields["updatedAt"] = utcnow()
            if fields:
                batch.update(CONVERSATIONS, message.conversation_id, fields)
            self._commit(batch)
        logger.debug("message_updated", message_id=str(message.id), status=message.status.value)
        return message

    async def delete_message(self, message_id: UUID) -> None:
        async with self._transaction("delete_message", message_id=str(message_id)):
            doc = self._require(MESSAGES, message_id)
            conversation_id = doc["conversationId"]
            batch = WriteBatch()
            batch.delete(MESSAGES, message_id)
            parent = self._collections[CONVERSATIONS].get(str(conversation_id))
            if parent is not None:
                remaining = [
                    d for d in self._message_documents(conversation_id)
                    if str(d["id"]) != str(message_id)
                ]
                fields = {
                    "messageCount": max(parent["messageCount"] - 1, 0),
                    "tokenCount": max(parent["tokenCount"] - (doc["tokenCount"] or 0), 0),
                    "estimatedCost": max(parent["estimatedCost"] - (doc["cost"] or 0.0), 0.0),
                    **self._preview_fields(remaining),
                }
                batch.update(CONVERSATIONS, conversation_id, fields)
            self._commit(batch)
        logger.warning("message_deleted", message_id=str(message_id))

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        async with self._lock:
            doc = self._collections[MESSAGES].get(str(message_id))
        return Message.from_document(doc) if doc is not None else None

    async def list_messages(self, conversation_id: UUID) -> List[Message]:
        async with self._lock:
            return self._messages_snapshot(conversation_id)

    def stream_messages(self, conversation_id: UUID) -> AsyncIterator[List[Message]]:
        return self._subscribe(
            self._message_listeners,
            str(conversation_id),
            lambda: self._messages_snapshot(conversation_id),
        )

    # ----- queries and maintenance -----

    async def search_conversations(self, user_id: str, query: str) -> List[Conversation]:
        needle = query.strip().lower()
        if not needle:
            return []
        async with self._lock:
            conversations = self._conversations_snapshot(user_id)
        results = [
            c for c in conversations
            if needle in c.title.lower() or (c.last_message is not None and needle in c.last_message.lower())
        ]
        logger.debug("conversations_searched", user_id=user_id, query=query, results=len(results))
        return results

    @staticmethod
    def _preview_fields(messages: List[Document]) -> Document:
        if not messages:
            return {"lastMessage": None, "lastMessageAt": None}
        return {"lastMessage": messages[-1]["content"], "lastMessageAt": messages[-1]["createdAt"]}

    async def reconcile_conversation(self, conversation_id: UUID) -> Conversation:
        async with self._transaction("reconcile_conversation", conversation_id=str(conversation_id)):
            parent = self._require(CONVERSATIONS, conversation_id)
            messages = self._message_documents(conversation_id)
            fields = {
                "messageCount": len(messages),
                "tokenCount": sum(d["tokenCount"] or 0 for d in messages),
                "estimatedCost": sum(d["cost"] or 0.0 for d in messages),
                **self._preview_fields(messages),
            }
            stale = {k: parent[k] for k, v in fields.items() if parent[k] != v}
            if stale:
                batch = WriteBatch()
                batch.update(CONVERSATIONS, conversation_id, fields)
                self._commit(batch)
            reconciled = Conversation.from_document(self._collections[CONVERSATIONS][str(conversation_id)])
        if stale:
            logger.warning(
                "conversation_counters_reconciled",
                conversation_id=str(conversation_id),
                stale_fields=sorted(stale),
            )
        return reconciled
