"""Session controller: the conversation state machine.

One controller owns one active conversation for one signed-in user and runs
at most one exchange at a time::

    IDLE -> SENDING -> STREAMING -> FINALIZING -> IDLE
                           |
                           +-> CANCELLED -> IDLE

``send`` and ``regenerate`` are rejected with ``SessionBusy`` unless the
controller is IDLE. Whatever happens during an exchange, the controller ends
up IDLE again, and only a finalized reply is ever persisted or charged.

Cancelling a stream discards the partial reply: nothing is persisted for
the assistant side of that turn, no quota is charged and no usage is logged.
The user message persisted before the stream started stays.

The presentation layer observes the controller through ``subscribe``; it
never drives persistence itself.
"""

import asyncio
import contextlib
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Tuple
from uuid import UUID

import structlog

from ..domain.errors import (
    ChatError,
    CompletionFailure,
    InvalidInput,
    QuotaDenied,
    SessionBusy,
    StorageFailure,
)
from ..domain.models import (
    ApiSettings,
    ChatTurn,
    Conversation,
    Message,
    MessageRole,
    Usage,
    User,
)
from ..repositories.base import Repository
from .identity import IdentityContext
from .llm import CompletionClient
from .quota import Denied, QuotaGuard
from .settings import SettingsService
from .usage import UsageLedger

logger = structlog.get_logger()

TITLE_MAX_LENGTH = 50
TITLE_ELLIPSIS = "..."


def derive_title(content: str) -> str:
    """First 50 characters of the raw input, plus an ellipsis if truncated."""
    if len(content) > TITLE_MAX_LENGTH:
        return content[:TITLE_MAX_LENGTH] + TITLE_ELLIPSIS
    return content


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"


class SessionEventType(str, Enum):
    STATE_CHANGED = "state_changed"
    CONVERSATION_CHANGED = "conversation_changed"
    MESSAGES_CHANGED = "messages_changed"
    MESSAGE_ADDED = "message_added"
    FRAGMENT = "fragment"
    TURN_COMPLETED = "turn_completed"
    TURN_CANCELLED = "turn_cancelled"
    TURN_FAILED = "turn_failed"
    USAGE_LOG_FAILED = "usage_log_failed"


@dataclass(frozen=True)
class SessionEvent:
    type: SessionEventType
    state: SessionState
    conversation_id: Optional[UUID] = None
    message: Optional[Message] = None
    fragment: Optional[str] = None
    error: Optional[Exception] = None


SessionListener = Callable[[SessionEvent], None]


class SessionController:
    """Orchestrates quota checks, persistence and completion for one user."""

    def __init__(
        self,
        identity: IdentityContext,
        repository: Repository,
        completion_client: CompletionClient,
        quota_guard: QuotaGuard,
        usage_ledger: UsageLedger,
        settings_service: SettingsService,
    ) -> None:
        self.identity = identity
        self.repository = repository
        self.completion_client = completion_client
        self.quota_guard = quota_guard
        self.usage_ledger = usage_ledger
        self.settings_service = settings_service

        self._state = SessionState.IDLE
        self._conversation: Optional[Conversation] = None
        self._messages: List[Message] = []
        self._streaming_content: Optional[str] = None
        self._selected_model: Optional[str] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._command_running = False
        self._reset_pending = False
        self._listeners: List[SessionListener] = []
        self._unsubscribe_identity = identity.subscribe(self._on_identity_changed)

    # Observable state

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def conversation(self) -> Optional[Conversation]:
        return self._conversation

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def streaming_content(self) -> Optional[str]:
        """Text of the in-flight reply; None when no stream is running."""
        return self._streaming_content

    @property
    def selected_model(self) -> Optional[str]:
        return self._selected_model

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event_type: SessionEventType, **fields) -> None:
        event = SessionEvent(
            type=event_type,
            state=self._state,
            conversation_id=self._conversation.id if self._conversation else None,
            **fields,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("session_listener_error", event_type=event_type.value, error=str(e))

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug("session_state_changed", previous=self._state.value, current=state.value)
        self._state = state
        self._emit(SessionEventType.STATE_CHANGED)

    # Guards

    def _require_user(self) -> User:
        user = self.identity.current_user
        if user is None:
            raise InvalidInput("Sign in to start chatting")
        return user

    def _require_idle(self) -> None:
        if self._state != SessionState.IDLE or self._command_running:
            raise SessionBusy(self._state.value)

    @contextlib.asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        """Hold the session for a non-exchange command that awaits the store."""
        self._require_idle()
        self._command_running = True
        try:
            yield
        finally:
            self._command_running = False
            self._apply_pending_reset()

    # Commands

    def select_model(self, model: str) -> None:
        """Model used for the next exchanges and new conversations."""
        if not model or not model.strip():
            raise InvalidInput("Model cannot be empty")
        self._selected_model = model.strip()

    async def list_conversations(self) -> List[Conversation]:
        user = self._require_user()
        return await self.repository.list_conversations(user.id)

    async def new_conversation(self) -> Conversation:
        """Create an empty conversation and make it active."""
        async with self._exclusive():
            user = self._require_user()
            conversation = await self._create_conversation(user)
            self._messages = []
            self._streaming_content = None
            self._emit(SessionEventType.MESSAGES_CHANGED)
            return conversation

    async def select_conversation(self, conversation_id: UUID) -> Conversation:
        """Load a persisted conversation and its messages in creation order."""
        async with self._exclusive():
            user = self._require_user()
            conversation = await self._owned_conversation(user, conversation_id)
            messages = await self.repository.list_messages(conversation_id)
            self._conversation = conversation
            self._messages = list(messages)
            self._streaming_content = None
            self._selected_model = conversation.model
            logger.info(
                "conversation_selected",
                conversation_id=str(conversation_id),
                message_count=len(messages),
            )
            self._emit(SessionEventType.CONVERSATION_CHANGED)
            self._emit(SessionEventType.MESSAGES_CHANGED)
            return conversation

    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete the persisted messages, then the conversation itself."""
        if self._conversation is not None and self._conversation.id == conversation_id:
            async with self._exclusive():
                await self._delete_persisted(conversation_id)
                self._reset()
        else:
            await self._delete_persisted(conversation_id)

    def conversation_removed(self, conversation_id: UUID) -> bool:
        """Drop the active conversation after someone else deleted it.

        Returns False if ``conversation_id`` is not the active conversation.
        A running exchange is cancelled and the reset happens once idle.
        """
        if self._conversation is None or self._conversation.id != conversation_id:
            return False
        logger.info("active_conversation_removed", conversation_id=str(conversation_id))
        if self._state == SessionState.IDLE and not self._command_running:
            self._reset()
        else:
            self._reset_pending = True
            self.cancel()
        return True

    async def send(self, content: str) -> Optional[Message]:
        """Run one exchange for ``content``.

        Returns the persisted assistant message, or None if the stream was
        cancelled.
        """
        if not content or not content.strip():
            raise InvalidInput("Message cannot be empty")
        self._require_idle()
        return await self._run_turn(content=content)

    async def regenerate(self, message_id: UUID) -> Optional[Message]:
        """Replace an assistant reply by re-running its user message.

        Charges a new quota unit. The preceding user message is reused, not
        persisted again. The replaced reply and anything after it are deleted
        once the new reply is about to be persisted; if the turn fails or is
        cancelled they stay, in the store and in memory.
        """
        self._require_idle()
        index = next((i for i, m in enumerate(self._messages) if m.id == message_id), None)
        if index is None:
            raise InvalidInput("Message not found in the active conversation")
        target = self._messages[index]
        if target.role != MessageRole.ASSISTANT or index == 0:
            raise InvalidInput("Only assistant replies that follow a user message can be regenerated")
        if self._messages[index - 1].role != MessageRole.USER:
            raise InvalidInput("Only assistant replies that follow a user message can be regenerated")
        return await self._run_turn(regenerate_index=index)

    def cancel(self) -> bool:
        """Stop the running stream. Returns False when there is nothing to cancel."""
        if self._state != SessionState.STREAMING or self._stream_task is None:
            return False
        if self._stream_task.done():
            # The reply is complete and about to be finalized
            return False
        self._cancel_requested = True
        self._stream_task.cancel()
        logger.info("stream_cancel_requested", conversation_id=self._conversation_id_str())
        return True

    def close(self) -> None:
        """Detach from the identity context and stop any running stream."""
        self._unsubscribe_identity()
        self.cancel()
        self._listeners.clear()

    # Exchange

    async def _run_turn(
        self,
        content: Optional[str] = None,
        regenerate_index: Optional[int] = None,
    ) -> Optional[Message]:
        # Must switch state before the first await so no second turn can start
        self._set_state(SessionState.SENDING)
        dropped: List[Message] = []
        completed = False
        try:
            user = self._require_user()
            if regenerate_index is not None:
                dropped = self._messages[regenerate_index:]
                self._messages = self._messages[:regenerate_index]
                self._emit(SessionEventType.MESSAGES_CHANGED)
            logger.info(
                "turn_started",
                user_id=str(user.id),
                conversation_id=self._conversation_id_str(),
                regenerate=regenerate_index is not None,
            )

            account = await self._load_user(user.id)
            decision = self.quota_guard.authorize(account)
            if isinstance(decision, Denied):
                raise QuotaDenied(decision.limit_kind, decision.reason)

            api_settings = await self.settings_service.get(user.id)
            if content is not None:
                await self._persist_user_message(user, content, api_settings)
            model = self._selected_model or self._conversation.model

            if self._reset_pending:
                # Signed out while the turn was starting; do not call the backend
                logger.info("turn_abandoned", conversation_id=self._conversation_id_str())
                return None

            history = [ChatTurn(role=m.role.value, content=m.content) for m in self._messages]
            self._streaming_content = ""
            self._set_state(SessionState.STREAMING)
            result = await self._stream(history, model, api_settings)
            if result is None:
                self._set_state(SessionState.CANCELLED)
                logger.info(
                    "turn_cancelled",
                    conversation_id=self._conversation_id_str(),
                    discarded_length=len(self._streaming_content or ""),
                )
                self._streaming_content = None
                self._emit(SessionEventType.TURN_CANCELLED)
                return None

            text, usage = result
            self._set_state(SessionState.FINALIZING)
            assistant = await self._finalize(user, text, usage, dropped)
            completed = True
            self._emit(SessionEventType.TURN_COMPLETED, message=assistant)
            return assistant
        except Exception as e:
            logger.error(
                "turn_failed",
                conversation_id=self._conversation_id_str(),
                error_type=type(e).__name__,
                error=str(e),
            )
            self._streaming_content = None
            self._emit(SessionEventType.TURN_FAILED, error=e)
            raise
        finally:
            if not completed and dropped:
                # Keep memory in line with the store: restore what was not deleted
                self._messages.extend(dropped)
                self._emit(SessionEventType.MESSAGES_CHANGED)
            self._streaming_content = None
            self._stream_task = None
            self._cancel_requested = False
            self._set_state(SessionState.IDLE)
            self._apply_pending_reset()

    async def _persist_user_message(
        self, user: User, content: str, api_settings: ApiSettings
    ) -> Message:
        if self._conversation is None:
            await self._create_conversation(user, api_settings.model)
        conversation = self._conversation
        is_first = not self._messages

        message = await self.repository.create_message(
            Message(
                conversation_id=conversation.id,
                user_id=user.id,
                role=MessageRole.USER,
                content=content,
            )
        )
        self._messages.append(message)
        self._emit(SessionEventType.MESSAGE_ADDED, message=message)

        changes = {"updated_at": message.created_at}
        if is_first:
            changes["title"] = derive_title(content)
        self._conversation = await self.repository.update_conversation(conversation.id, changes)
        if is_first:
            self._emit(SessionEventType.CONVERSATION_CHANGED)
        return message

    async def _stream(
        self, history: List[ChatTurn], model: str, api_settings: ApiSettings
    ) -> Optional[Tuple[str, Usage]]:
        """Run the completion stream in a task so ``cancel`` can interrupt it."""
        self._stream_task = asyncio.create_task(
            self._consume_stream(history, model, api_settings)
        )
        try:
            return await self._stream_task
        except asyncio.CancelledError:
            if self._cancel_requested:
                return None
            raise

    async def _consume_stream(
        self, history: List[ChatTurn], model: str, api_settings: ApiSettings
    ) -> Optional[Tuple[str, Usage]]:
        usage: Optional[Usage] = None
        stream = self.completion_client.stream_complete(
            history, model, api_settings.temperature, api_settings.max_tokens
        )
        try:
            async for chunk in stream:
                if self._cancel_requested:
                    return None
                if chunk.content:
                    self._streaming_content += chunk.content
                    self._emit(SessionEventType.FRAGMENT, fragment=chunk.content)
                if chunk.usage is not None:
                    usage = chunk.usage
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self._cancel_requested:
            return None
        if usage is None:
            raise CompletionFailure("Completion finished without a usage summary")
        return self._streaming_content, usage

    async def _finalize(
        self, user: User, text: str, usage: Usage, dropped: List[Message]
    ) -> Message:
        conversation = self._conversation

        # Regenerate: remove the replaced reply (and anything after it) first
        while dropped:
            await self.repository.delete_message(dropped[0].id)
            dropped.pop(0)

        assistant = await self.repository.create_message(
            Message(
                conversation_id=conversation.id,
                user_id=user.id,
                role=MessageRole.ASSISTANT,
                content=text,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        )
        try:
            updated_conversation = await self.repository.update_conversation(
                conversation.id, {"updated_at": assistant.created_at}
            )
            # Re-read to narrow the window for concurrent sessions; last write wins
            account = await self._load_user(user.id)
            charged = self.quota_guard.record(account, usage.total)
            charged = await self.repository.update_user(
                user.id,
                {
                    "message_count": charged.message_count,
                    "token_count": charged.token_count,
                    "updated_at": charged.updated_at,
                },
            )
        except ChatError:
            await self._discard_message(assistant)
            raise

        self._conversation = updated_conversation
        self._messages.append(assistant)
        self._streaming_content = None
        if self.identity.current_user is not None and self.identity.current_user.id == charged.id:
            self.identity.refresh(charged)
        self._emit(SessionEventType.MESSAGE_ADDED, message=assistant)

        try:
            await self.usage_ledger.record_exchange(user.id, assistant.id, usage.total)
        except StorageFailure as e:
            # The exchange is already billed; the ledger is informational
            logger.error("usage_log_append_failed", message_id=str(assistant.id), error=str(e))
            self._emit(SessionEventType.USAGE_LOG_FAILED, message=assistant, error=e)

        logger.info(
            "turn_completed",
            conversation_id=str(conversation.id),
            message_id=str(assistant.id),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            response_length=len(text),
        )
        return assistant

    async def _discard_message(self, message: Message) -> None:
        try:
            await self.repository.delete_message(message.id)
        except StorageFailure as e:
            logger.error(
                "assistant_message_rollback_failed",
                message_id=str(message.id),
                error=str(e),
            )

    # Helpers

    async def _create_conversation(
        self, user: User, default_model: Optional[str] = None
    ) -> Conversation:
        model = self._selected_model or default_model
        if model is None:
            model = (await self.settings_service.get(user.id)).model
        conversation = await self.repository.create_conversation(
            Conversation(user_id=user.id, model=model)
        )
        self._conversation = conversation
        self._selected_model = conversation.model
        self._emit(SessionEventType.CONVERSATION_CHANGED)
        return conversation

    async def _owned_conversation(self, user: User, conversation_id: UUID) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != user.id:
            raise InvalidInput("Conversation not found")
        return conversation

    async def _delete_persisted(self, conversation_id: UUID) -> None:
        user = self._require_user()
        await self._owned_conversation(user, conversation_id)
        messages = await self.repository.list_messages(conversation_id)
        for message in messages:
            await self.repository.delete_message(message.id)
        await self.repository.delete_conversation(conversation_id)
        logger.info(
            "conversation_deleted_by_user",
            conversation_id=str(conversation_id),
            message_count=len(messages),
        )

    async def _load_user(self, user_id: UUID) -> User:
        account = await self.repository.get_user(user_id)
        if account is None:
            raise StorageFailure("get_user", f"User {user_id} not found")
        return account

    def _reset(self) -> None:
        self._conversation = None
        self._messages = []
        self._streaming_content = None
        self._emit(SessionEventType.CONVERSATION_CHANGED)
        self._emit(SessionEventType.MESSAGES_CHANGED)

    def _apply_pending_reset(self) -> None:
        if self._reset_pending and self._state == SessionState.IDLE and not self._command_running:
            self._reset_pending = False
            self._selected_model = None
            self._reset()

    def _on_identity_changed(self, previous: Optional[User], current: Optional[User]) -> None:
        logger.info(
            "session_identity_changed",
            previous=str(previous.id) if previous else None,
            current=str(current.id) if current else None,
        )
        self._reset_pending = True
        self.cancel()
        self._apply_pending_reset()

    def _conversation_id_str(self) -> Optional[str]:
        return str(self._conversation.id) if self._conversation else None
