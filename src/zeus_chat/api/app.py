"""
FastAPI Application Module

HTTP surface over the conversation orchestration core. The app factory is the
composition root: it builds the repository, completion client, send queue
and session registry once and hands them to handlers through ``app.state``.

Key Features:
- Conversation list views (pinned / active / archived) and search
- Message send lifecycle with placeholder replies
- Sliding-window rate limiting, structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel, Field
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.catalog import AIModel, ModelCatalog
from ..domain.errors import (
    AuthenticationError,
    ChatError,
    IllegalStateError,
    NetworkError,
    NotFoundError,
    PersistenceError,
    ProviderConfigurationError,
    UpstreamAPIError,
    ValidationError,
)
from ..domain.models import Conversation, Message, MessageAttachment
from ..logging_config import configure_logging
from ..repositories.base import ConversationRepository
from ..repositories.memory import InMemoryConversationRepository
from ..services import export
from ..services.completion import CompletionClient, build_completion_client
from ..services.orchestrator import (
    ConversationListController,
    ConversationListState,
    SessionRegistry,
)
from ..services.send_queue import SendQueue
from .rate_limiter import RateLimiter, RateLimitExceeded, rate_limit_middleware

logger = get_logger()

STATUS_CODES = {
    AuthenticationError: 401,
    NotFoundError: 404,
    IllegalStateError: 409,
    ValidationError: 422,
    RateLimitExceeded: 429,
    PersistenceError: 500,
    UpstreamAPIError: 502,
    ProviderConfigurationError: 503,
    NetworkError: 504,
}


class ConversationCreate(BaseModel):
    """Defines the structure for conversation creation requests"""

    model_config = {"protected_namespaces": ()}

    title: str
    model_id: str
    provider: str
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    team_id: Optional[str] = None


class ConversationUpdate(BaseModel):
    model_config = {"protected_namespaces": ()}

    title: Optional[str] = None
    model_id: Optional[str] = None
    provider: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tags: Optional[List[str]] = None


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""

    content: str
    attachments: List[MessageAttachment] = Field(default_factory=list)


class MessageEdit(BaseModel):
    content: str


def error_body(error: ChatError) -> Dict[str, Any]:
    return {"detail": {"message": error.message, "error_code": error.code, "details": error.details}}


def status_for(error: ChatError) -> int:
    for cls in type(error).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


def get_repository(request: Request) -> ConversationRepository:
    return request.app.state.repository


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise AuthenticationError("User not authenticated")
    return x_user_id


async def get_owned_conversation(
    conversation_id: UUID,
    user_id: str = Depends(get_current_user_id),
    repository: ConversationRepository = Depends(get_repository),
) -> Conversation:
    """Conversations are visible to their owner and the users they are shared with."""
    conversation = await repository.get_conversation(conversation_id)
    if conversation is None or (
        conversation.user_id != user_id and user_id not in conversation.shared_with_user_ids
    ):
        raise NotFoundError("Conversation not found", details={"id": str(conversation_id)})
    return conversation


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[ConversationRepository] = None,
    completion_client: Optional[CompletionClient] = None,
    catalog: Optional[ModelCatalog] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    repository = repository or InMemoryConversationRepository()
    completion_client = completion_client or build_completion_client(settings)
    catalog = catalog or ModelCatalog()
    send_queue = SendQueue(max_concurrent=settings.max_concurrent_sends)
    rate_limiter = RateLimiter(rate_limit=settings.rate_limit, time_window=settings.rate_limit_window)

    # Registry for isolated metric collection
    registry = CollectorRegistry()
    requests_total = Counter("requests_total", "Total requests by endpoint", ["endpoint"], registry=registry)
    errors_total = Counter("errors_total", "Total errors by error code", ["error_code"], registry=registry)
    sends_total = Counter("message_sends_total", "Message sends by outcome", ["outcome"], registry=registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        await rate_limiter.start()
        logger.info("application_startup_complete")

        yield

        await app.state.sessions.close_all()
        await send_queue.cleanup()
        await completion_client.aclose()
        await rate_limiter.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title=settings.app_name,
        description="Conversation orchestration API for a multi-provider AI chat client",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.completion_client = completion_client
    app.state.catalog = catalog
    app.state.send_queue = send_queue
    app.state.rate_limiter = rate_limiter
    app.state.metrics_registry = registry
    app.state.sessions = SessionRegistry(
        repository,
        completion_client,
        send_queue,
        catalog=catalog,
        max_message_length=settings.max_message_length,
        max_sessions=settings.max_open_sessions,
        idle_timeout=settings.session_idle_timeout,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and enforces rate limits"""
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            await rate_limit_middleware(request, rate_limiter)
        except RateLimitExceeded as e:
            errors_total.labels(e.code).inc()
            return JSONResponse(status_code=429, content=error_body(e))
        response = await call_next(request)
        route = request.scope.get("route")
        requests_total.labels(getattr(route, "path", "unmatched")).inc()
        return response

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, error: ChatError) -> JSONResponse:
        status_code = status_for(error)
        errors_total.labels(error.code).inc()
        log = logger.error if status_code >= 500 else logger.warning
        log("request_failed", path=request.url.path, status_code=status_code, error=error.message)
        return JSONResponse(status_code=status_code, content=error_body(error))

    # ----- conversations -----

    @app.get("/conversations", response_model=List[Conversation])
    async def list_conversations(
        view: str = Query(default="all", pattern="^(all|pinned|active|archived)$"),
        user_id: str = Depends(get_current_user_id),
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[Conversation]:
        """Lists the caller's non-deleted conversations, optionally one view of them"""
        state = ConversationListState(
            conversations=await repository.list_conversations(user_id), is_loading=False
        )
        if view == "pinned":
            return state.pinned_conversations
        if view == "active":
            return state.active_conversations
        if view == "archived":
            return state.archived_conversations
        return state.conversations

    @app.post("/conversations", response_model=Conversation, status_code=201)
    async def create_conversation(
        body: ConversationCreate,
        user_id: str = Depends(get_current_user_id),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Conversation:
        """Starts a new conversation"""
        controller = ConversationListController(repository, user_id)
        return await controller.create_conversation(**body.model_dump())

    @app.get("/conversations/search", response_model=List[Conversation])
    async def search_conversations(
        q: str = "",
        user_id: str = Depends(get_current_user_id),
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[Conversation]:
        return await ConversationListController(repository, user_id).search_conversations(q)

    @app.get("/conversations/{conversation_id}", response_model=Conversation)
    async def get_conversation(conversation: Conversation = Depends(get_owned_conversation)) -> Conversation:
        """Retrieves a specific conversation by its ID"""
        return conversation

    @app.patch("/conversations/{conversation_id}", response_model=Conversation)
    async def update_conversation(
        body: ConversationUpdate,
        conversation: Conversation = Depends(get_owned_conversation),
        user_id: str = Depends(get_current_user_id),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Conversation:
        changes = body.model_dump(exclude_unset=True)
        if not changes:
            return conversation
        return await ConversationListController(repository, user_id).update_conversation(
            conversation.id, **changes
        )

    @app.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(
        conversation: Conversation = Depends(get_owned_conversation),
        permanent: bool = False,
        user_id: str = Depends(get_current_user_id),
        repository: ConversationRepository = Depends(get_repository),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Response:
        controller = ConversationListController(repository, user_id)
        if permanent:
            await sessions.close(conversation.id)
            await controller.permanently_delete_conversation(conversation.id)
        else:
            await controller.delete_conversation(conversation.id)
        return Response(status_code=204)

    # ----- messages -----

    @app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
    async def get_messages(
        conversation: Conversation = Depends(get_owned_conversation),
        repository: ConversationRepository = Depends(get_repository),
    ) -> List[Message]:
        """Gets the message history of a conversation, oldest first"""
        return await repository.list_messages(conversation.id)

    @app.post("/conversations/{conversation_id}/messages", response_model=Message)
    async def send_message(
        body: MessageCreate,
        conversation: Conversation = Depends(get_owned_conversation),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Message:
        """
        Sends a user message and returns the completed assistant reply.
        On completion failure the reply is stored as failed and the error is returned.
        """
        session = await sessions.get(conversation.id)
        try:
            reply = await session.send_message(body.content, body.attachments)
        except ChatError:
            sends_total.labels("failed").inc()
            raise
        sends_total.labels("completed").inc()
        return reply

    @app.patch("/conversations/{conversation_id}/messages/{message_id}", response_model=Message)
    async def edit_message(
        message_id: UUID,
        body: MessageEdit,
        conversation: Conversation = Depends(get_owned_conversation),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Message:
        session = await sessions.get(conversation.id)
        return await session.edit_message(message_id, body.content)

    @app.delete("/conversations/{conversation_id}/messages/{message_id}", status_code=204)
    async def delete_message(
        message_id: UUID,
        conversation: Conversation = Depends(get_owned_conversation),
        repository: ConversationRepository = Depends(get_repository),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Response:
        message = await repository.get_message(message_id)
        if message is None or message.conversation_id != conversation.id:
            raise NotFoundError("Message not found", details={"id": str(message_id)})
        session = await sessions.get(conversation.id)
        await session.delete_message(message_id)
        return Response(status_code=204)

    @app.post("/conversations/{conversation_id}/messages/{message_id}/regenerate", status_code=202)
    async def regenerate_message(
        message_id: UUID,
        conversation: Conversation = Depends(get_owned_conversation),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Dict[str, str]:
        session = await sessions.get(conversation.id)
        await session.regenerate_message(message_id)
        return {"status": "accepted", "message_id": str(message_id)}

    @app.get("/conversations/{conversation_id}/export")
    async def export_conversation(
        format: str = Query(default="json", pattern="^(json|text)$"),
        conversation: Conversation = Depends(get_owned_conversation),
        repository: ConversationRepository = Depends(get_repository),
    ):
        messages = await repository.list_messages(conversation.id)
        if format == "text":
            return PlainTextResponse(export.shareable_text(conversation, messages))
        return export.export_data(conversation, messages)

    # Registered after the message routes so "messages" is never taken as an action.
    flag_actions = {
        "archive": ConversationListController.archive_conversation,
        "unarchive": ConversationListController.unarchive_conversation,
        "pin": ConversationListController.pin_conversation,
        "unpin": ConversationListController.unpin_conversation,
        "restore": ConversationListController.restore_conversation,
    }

    @app.post("/conversations/{conversation_id}/{action}", response_model=Conversation)
    async def conversation_action(
        action: str,
        conversation: Conversation = Depends(get_owned_conversation),
        user_id: str = Depends(get_current_user_id),
        repository: ConversationRepository = Depends(get_repository),
    ) -> Conversation:
        """Applies archive/unarchive/pin/unpin/restore/reconcile to a conversation"""
        if action == "reconcile":
            return await repository.reconcile_conversation(conversation.id)
        handler = flag_actions.get(action)
        if handler is None:
            raise NotFoundError(f"Unknown action: {action}")
        await handler(ConversationListController(repository, user_id), conversation.id)
        return await repository.get_conversation(conversation.id)

    # ----- models and metrics -----

    @app.get("/models")
    async def list_models(remote: bool = False, provider: Optional[str] = None) -> List[Dict[str, Any]]:
        """Catalog entries, or the live model list of a completion backend"""
        if remote:
            return await app.state.completion_client.list_models(provider)
        return [_catalog_entry(m) for m in app.state.catalog.list()]

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(registry), media_type="text/plain")

    return app


def _catalog_entry(model: AIModel) -> Dict[str, Any]:
    return {
        **model.model_dump(mode="json"),
        "formatted_context_window": model.formatted_context_window,
        "provider_display_name": model.provider_display_name,
    }


app = create_app()
