"""Shared fixtures for the test suite."""

import asyncio
from typing import AsyncIterator, List, Optional, Sequence

import pytest
import pytest_asyncio

from assistant_chat.config import Settings
from assistant_chat.domain.errors import CompletionFailure
from assistant_chat.domain.models import (
    ChatTurn,
    Completion,
    StreamChunk,
    SubscriptionTier,
    Usage,
    User,
    UserRole,
)
from assistant_chat.repositories.memory import InMemoryRepository
from assistant_chat.services.identity import IdentityContext
from assistant_chat.services.llm import CompletionClient
from assistant_chat.services.quota import QuotaGuard
from assistant_chat.services.session import SessionController
from assistant_chat.services.settings import SettingsService
from assistant_chat.services.usage import UsageLedger


class ScriptedCompletionClient(CompletionClient):
    """Completion client that replays a fixed answer.

    ``gate`` pauses the stream after the first fragment until it is set, so
    tests can observe or cancel a stream in flight.
    """

    def __init__(
        self,
        fragments: Sequence[str] = ("Hello", " there", "!"),
        usage: Optional[Usage] = Usage(prompt_tokens=12, completion_tokens=8, total_tokens=20),
        fail_with: Optional[Exception] = None,
        fail_after: int = 0,
    ) -> None:
        super().__init__("You are a test assistant.")
        self.fragments = list(fragments)
        self.usage = usage
        self.fail_with = fail_with
        self.fail_after = fail_after
        self.gate: Optional[asyncio.Event] = None
        self.first_fragment_sent = asyncio.Event()
        self.calls: List[List[ChatTurn]] = []
        self.models: List[str] = []

    async def complete(self, history, model, temperature, max_tokens) -> Completion:
        self.calls.append(list(history))
        self.models.append(model)
        if self.fail_with is not None:
            raise self.fail_with
        return Completion(text="".join(self.fragments), usage=self.usage)

    async def stream_complete(
        self, history, model, temperature, max_tokens
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append(list(history))
        self.models.append(model)
        for i, fragment in enumerate(self.fragments):
            if self.fail_with is not None and i == self.fail_after:
                raise self.fail_with
            yield StreamChunk(content=fragment)
            if i == 0:
                self.first_fragment_sent.set()
                if self.gate is not None:
                    await self.gate.wait()
        if self.fail_with is not None and self.fail_after >= len(self.fragments):
            raise self.fail_with
        if self.usage is not None:
            yield StreamChunk(usage=self.usage)


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="test-key", default_model="test-model", chunk_delay=0)


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def completion_client() -> ScriptedCompletionClient:
    return ScriptedCompletionClient()


@pytest.fixture
def quota_guard() -> QuotaGuard:
    return QuotaGuard()


@pytest.fixture
def usage_ledger(repository) -> UsageLedger:
    return UsageLedger(repository)


@pytest.fixture
def settings_service(repository, settings) -> SettingsService:
    return SettingsService(repository, settings)


@pytest_asyncio.fixture
async def user(repository) -> User:
    return await repository.create_user(User(email="ada@example.com"))


@pytest_asyncio.fixture
async def admin(repository) -> User:
    return await repository.create_user(
        User(email="root@example.com", role=UserRole.ADMIN, subscription_tier=SubscriptionTier.PRO)
    )


@pytest.fixture
def identity(user) -> IdentityContext:
    return IdentityContext(user)


@pytest.fixture
def controller(
    identity, repository, completion_client, quota_guard, usage_ledger, settings_service
) -> SessionController:
    return SessionController(
        identity,
        repository,
        completion_client,
        quota_guard,
        usage_ledger,
        settings_service,
    )


@pytest.fixture
def completion_failure() -> CompletionFailure:
    return CompletionFailure("upstream returned 500")
