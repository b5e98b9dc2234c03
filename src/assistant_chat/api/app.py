"""
FastAPI Application Module

HTTP surface for the conversational assistant. Each signed-in user gets a
session controller that runs one exchange at a time; this module only maps
requests onto controller commands and controller events onto responses.

Key Features:
- Quota-checked, persisted exchanges with a chat-completion backend
- Incremental delivery of reply fragments as newline-delimited JSON
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support

Identity is supplied by the fronting identity provider in the ``X-User-Id``
header.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.errors import (
    ChatError,
    CompletionFailure,
    InvalidInput,
    PermissionDenied,
    QuotaDenied,
    SessionBusy,
    StorageFailure,
)
from ..domain.models import (
    AdminLogEntry,
    ApiSettings,
    Conversation,
    Message,
    SubscriptionTier,
    SystemSetting,
    User,
    UserRole,
)
from ..logging_config import setup_logging
from ..repositories.base import Repository
from ..repositories.memory import InMemoryRepository
from ..services.admin import AdminService
from ..services.identity import IdentityContext
from ..services.llm import CompletionClient, ModelInfo, available_models, create_completion_client
from ..services.quota import QuotaGuard
from ..services.session import SessionController, SessionEvent, SessionEventType, SessionState
from ..services.settings import SettingsService
from ..services.usage import UsageLedger
from .registry import SessionRegistry

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

# Core operational metrics for monitoring
REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
EXCHANGES = Counter("exchanges_total", "Completed exchanges", registry=CUSTOM_REGISTRY)
TOKENS = Counter("tokens_total", "Tokens charged to users", registry=CUSTOM_REGISTRY)

logger = get_logger()

ERROR_STATUS = {
    SessionBusy: 409,
    InvalidInput: 400,
    PermissionDenied: 403,
    QuotaDenied: 429,
    CompletionFailure: 502,
    StorageFailure: 503,
}


class MessageCreate(BaseModel):
    """Defines the structure for message submissions"""
    content: str
    stream: bool = False


class RegenerateRequest(BaseModel):
    stream: bool = False


class ModelSelect(BaseModel):
    model: str


class SettingsUpdate(BaseModel):
    model: str
    temperature: float
    max_tokens: int


class UserUpdate(BaseModel):
    role: Optional[UserRole] = None
    subscription_tier: Optional[SubscriptionTier] = None
    is_active: Optional[bool] = None


class SystemSettingUpdate(BaseModel):
    value: str


class SessionView(BaseModel):
    state: SessionState
    conversation: Optional[Conversation]
    messages: List[Message]
    streaming_content: Optional[str]
    selected_model: Optional[str]


class TurnResult(BaseModel):
    conversation: Optional[Conversation]
    reply: Optional[Message]


class UsageView(BaseModel):
    tier: SubscriptionTier
    messages_used: int
    messages_limit: int
    messages_remaining: int
    tokens_used: int
    tokens_limit: int
    tokens_remaining: int
    exchanges_logged: int
    cost_estimate: float


class StreamEvent(BaseModel):
    """One line of a streamed turn"""
    type: Literal["fragment", "done", "cancelled", "error"]
    content: Optional[str] = None
    message: Optional[Message] = None
    detail: Optional[str] = None


def get_repository(request: Request) -> Repository:
    """Returns the record store"""
    return request.app.state.repository


def get_sessions(request: Request) -> SessionRegistry:
    """Returns the per-user session registry"""
    return request.app.state.sessions


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.admin_service


def get_settings_service(request: Request) -> SettingsService:
    return request.app.state.settings_service


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    repository: Repository = Depends(get_repository),
) -> User:
    """Resolves the caller from the identity provider's header"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = await repository.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not user.is_active:
        logger.warning("inactive_user_rejected", user_id=str(user_id))
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


async def get_controller(
    user: User = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionController:
    """Returns the caller's session controller"""
    return await sessions.get(user)


def _session_view(controller: SessionController) -> SessionView:
    return SessionView(
        state=controller.state,
        conversation=controller.conversation,
        messages=list(controller.messages),
        streaming_content=controller.streaming_content,
        selected_model=controller.selected_model,
    )


def _record_turn(reply: Optional[Message]) -> None:
    if reply is not None:
        EXCHANGES.inc()
        TOKENS.inc(reply.prompt_tokens + reply.completion_tokens)


async def _stream_turn(
    controller: SessionController,
    start: Callable[[], Awaitable[Optional[Message]]],
) -> StreamingResponse:
    """Run a turn in the background and relay its fragments line by line.

    Errors raised before the stream opens (quota, busy session, storage)
    propagate as regular HTTP errors; later failures end the stream with an
    ``error`` line.
    """
    queue: asyncio.Queue = asyncio.Queue()
    opened = asyncio.Event()
    streaming = False

    def on_event(event: SessionEvent) -> None:
        nonlocal streaming
        if event.type == SessionEventType.FRAGMENT:
            queue.put_nowait(StreamEvent(type="fragment", content=event.fragment))
        elif event.type == SessionEventType.STATE_CHANGED and event.state == SessionState.STREAMING:
            streaming = True
            opened.set()

    unsubscribe = controller.subscribe(on_event)
    task = asyncio.create_task(start())
    task.add_done_callback(lambda _: (opened.set(), queue.put_nowait(None)))

    await opened.wait()
    if not streaming and not task.cancelled() and task.exception() is not None:
        unsubscribe()
        raise task.exception()

    async def body():
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event.model_dump_json() + "\n"

            try:
                reply = task.result()
            except ChatError as e:
                ERRORS.inc()
                yield StreamEvent(type="error", detail=e.user_message).model_dump_json() + "\n"
                return
            _record_turn(reply)
            final = StreamEvent(type="done", message=reply) if reply else StreamEvent(type="cancelled")
            yield final.model_dump_json() + "\n"
        finally:
            unsubscribe()
            if not task.done():
                # Client went away mid-stream
                controller.cancel()

    return StreamingResponse(body(), media_type="application/x-ndjson")


def create_app(
    settings: Optional[Settings] = None,
    repository: Optional[Repository] = None,
    completion_client: Optional[CompletionClient] = None,
) -> FastAPI:
    """Wires the services together and builds the application"""
    settings = settings or get_settings()
    repository = repository or InMemoryRepository()
    completion_client = completion_client or create_completion_client(settings)

    quota_guard = QuotaGuard()
    usage_ledger = UsageLedger(repository)
    settings_service = SettingsService(repository, settings)
    admin_service = AdminService(repository, usage_ledger)

    def controller_factory(identity: IdentityContext) -> SessionController:
        return SessionController(
            identity,
            repository,
            completion_client,
            quota_guard,
            usage_ledger,
            settings_service,
        )

    sessions = SessionRegistry(repository, controller_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        setup_logging(settings.log_level, json=settings.log_json)
        logger.info("application_startup_complete", provider=settings.provider)

        yield

        sessions.close()
        await completion_client.aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Assistant Chat API",
        description="Conversational assistant with quota-checked, streamed completions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.quota_guard = quota_guard
    app.state.usage_ledger = usage_ledger
    app.state.settings_service = settings_service
    app.state.admin_service = admin_service
    app.state.sessions = sessions

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Counts and logs requests"""
        REQUESTS.inc()
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        if response.status_code >= 400:
            ERRORS.inc()
        return response

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        """Maps core errors onto HTTP statuses"""
        status = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            500,
        )
        logger.warning(
            "chat_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            reason=exc.reason,
            status=status,
        )
        content: Dict[str, Any] = {"detail": exc.user_message, "error": type(exc).__name__}
        if isinstance(exc, QuotaDenied):
            content["limit_kind"] = exc.limit_kind.value
        return JSONResponse(status_code=status, content=content)

    @app.get("/models", response_model=List[ModelInfo])
    async def list_models() -> List[ModelInfo]:
        """Models the configured provider offers"""
        return available_models(settings.provider)

    @app.get("/session", response_model=SessionView)
    async def get_session(controller: SessionController = Depends(get_controller)) -> SessionView:
        """Current state of the caller's session"""
        return _session_view(controller)

    @app.post("/session/model", response_model=SessionView)
    async def select_model(
        body: ModelSelect, controller: SessionController = Depends(get_controller)
    ) -> SessionView:
        controller.select_model(body.model)
        return _session_view(controller)

    @app.post("/session/cancel")
    async def cancel_stream(controller: SessionController = Depends(get_controller)) -> Dict[str, bool]:
        """Stops the running stream, discarding the partial reply"""
        return {"cancelled": controller.cancel()}

    @app.post("/auth/logout", status_code=204)
    async def logout(
        user: User = Depends(get_current_user),
        sessions: SessionRegistry = Depends(get_sessions),
    ) -> Response:
        sessions.sign_out(user.id)
        return Response(status_code=204)

    @app.get("/conversations", response_model=List[Conversation])
    async def list_conversations(
        controller: SessionController = Depends(get_controller),
    ) -> List[Conversation]:
        """Caller's conversations, most recently updated first"""
        return await controller.list_conversations()

    @app.post("/conversations", response_model=Conversation)
    async def create_conversation(
        controller: SessionController = Depends(get_controller),
    ) -> Conversation:
        """Starts a new conversation and makes it active"""
        return await controller.new_conversation()

    async def _owned(
        conversation_id: UUID, user: User, repository: Repository
    ) -> Conversation:
        conversation = await repository.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != user.id:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation

    @app.get("/conversations/{conversation_id}", response_model=Conversation)
    async def get_conversation(
        conversation_id: UUID,
        user: User = Depends(get_current_user),
        repository: Repository = Depends(get_repository),
    ) -> Conversation:
        """Retrieves a specific conversation by its ID"""
        return await _owned(conversation_id, user, repository)

    @app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
    async def get_messages(
        conversation_id: UUID,
        user: User = Depends(get_current_user),
        repository: Repository = Depends(get_repository),
    ) -> List[Message]:
        """Message history of a conversation in creation order"""
        await _owned(conversation_id, user, repository)
        return await repository.list_messages(conversation_id)

    @app.post("/conversations/{conversation_id}/select", response_model=SessionView)
    async def select_conversation(
        conversation_id: UUID,
        user: User = Depends(get_current_user),
        repository: Repository = Depends(get_repository),
        controller: SessionController = Depends(get_controller),
    ) -> SessionView:
        """Makes a persisted conversation the active one"""
        await _owned(conversation_id, user, repository)
        await controller.select_conversation(conversation_id)
        return _session_view(controller)

    @app.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(
        conversation_id: UUID,
        user: User = Depends(get_current_user),
        repository: Repository = Depends(get_repository),
        controller: SessionController = Depends(get_controller),
    ) -> Response:
        """Deletes a conversation and all of its messages"""
        await _owned(conversation_id, user, repository)
        await controller.delete_conversation(conversation_id)
        return Response(status_code=204)

    @app.post("/messages", response_model=TurnResult)
    async def send_message(
        body: MessageCreate, controller: SessionController = Depends(get_controller)
    ):
        """
        Sends a user message and returns the assistant reply.
        With ``stream`` set, reply fragments are relayed as they arrive.
        """
        if body.stream:
            return await _stream_turn(controller, lambda: controller.send(body.content))
        reply = await controller.send(body.content)
        _record_turn(reply)
        return TurnResult(conversation=controller.conversation, reply=reply)

    @app.post("/messages/{message_id}/regenerate", response_model=TurnResult)
    async def regenerate_message(
        message_id: UUID,
        body: Optional[RegenerateRequest] = None,
        controller: SessionController = Depends(get_controller),
    ):
        """Replaces an assistant reply with a freshly generated one"""
        if body is not None and body.stream:
            return await _stream_turn(controller, lambda: controller.regenerate(message_id))
        reply = await controller.regenerate(message_id)
        _record_turn(reply)
        return TurnResult(conversation=controller.conversation, reply=reply)

    @app.get("/usage", response_model=UsageView)
    async def get_usage(user: User = Depends(get_current_user)) -> UsageView:
        """Quota consumption and logged usage of the caller"""
        status = quota_guard.status(user)
        summary = await usage_ledger.summarize(user.id)
        return UsageView(
            tier=status.tier,
            messages_used=status.messages_used,
            messages_limit=status.messages_limit,
            messages_remaining=status.messages_remaining,
            tokens_used=status.tokens_used,
            tokens_limit=status.tokens_limit,
            tokens_remaining=status.tokens_remaining,
            exchanges_logged=summary.exchanges,
            cost_estimate=summary.cost_estimate,
        )

    @app.get("/settings", response_model=ApiSettings)
    async def get_api_settings(
        user: User = Depends(get_current_user),
        service: SettingsService = Depends(get_settings_service),
    ) -> ApiSettings:
        return await service.get(user.id)

    @app.put("/settings", response_model=ApiSettings)
    async def save_api_settings(
        body: SettingsUpdate,
        user: User = Depends(get_current_user),
        service: SettingsService = Depends(get_settings_service),
    ) -> ApiSettings:
        return await service.save(user.id, body.model, body.temperature, body.max_tokens)

    @app.get("/admin/stats")
    async def admin_stats(
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> Dict[str, Any]:
        return asdict(await admin.dashboard_stats(user))

    @app.get("/admin/users", response_model=List[User])
    async def admin_list_users(
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> List[User]:
        return await admin.list_users(user)

    @app.patch("/admin/users/{user_id}", response_model=User)
    async def admin_update_user(
        user_id: UUID,
        body: UserUpdate,
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> User:
        """Applies role, tier and activation changes in that order"""
        updated: Optional[User] = None
        if body.role is not None:
            updated = await admin.update_user_role(user, user_id, body.role)
        if body.subscription_tier is not None:
            updated = await admin.update_user_tier(user, user_id, body.subscription_tier)
        if body.is_active is not None:
            updated = await admin.set_user_active(user, user_id, body.is_active)
            if not body.is_active:
                sessions.sign_out(user_id)
        if updated is None:
            raise HTTPException(status_code=400, detail="No changes requested")
        return updated

    @app.delete("/admin/conversations/{conversation_id}", status_code=204)
    async def admin_delete_conversation(
        conversation_id: UUID,
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> Response:
        deleted = await admin.delete_conversation(user, conversation_id)
        sessions.conversation_deleted(deleted.user_id, deleted.id)
        return Response(status_code=204)

    @app.get("/admin/settings", response_model=List[SystemSetting])
    async def admin_list_settings(
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> List[SystemSetting]:
        return await admin.list_system_settings(user)

    @app.put("/admin/settings/{key}", response_model=SystemSetting)
    async def admin_update_setting(
        key: str,
        body: SystemSettingUpdate,
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> SystemSetting:
        return await admin.update_system_setting(user, key, body.value)

    @app.get("/admin/logs", response_model=List[AdminLogEntry])
    async def admin_logs(
        limit: int = 50,
        user: User = Depends(get_current_user),
        admin: AdminService = Depends(get_admin_service),
    ) -> List[AdminLogEntry]:
        return await admin.list_admin_logs(user, limit)

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
