"""Completion clients for chat-completion backends.

Every client takes the ordered conversation history, prepends the system
instruction and returns either one final answer or an ordered stream of text
fragments whose last chunk carries the token usage. Failures surface as
``CompletionFailure``; retrying is the caller's decision.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import google.generativeai as genai
import httpx
import structlog
from google.api_core import exceptions
from pydantic import BaseModel, ValidationError

from ..config import DEFAULT_SYSTEM_PROMPT, Settings
from ..domain.errors import CompletionFailure
from ..domain.models import ChatTurn, Completion, StreamChunk, Usage

logger = structlog.get_logger()

PROVIDER_BASE_URLS = {
    "groq": "https://api.groq.com/openai/v1",
    "openai": "https://api.openai.com/v1",
}

DONE_SENTINEL = "[DONE]"


class ModelInfo(BaseModel):
    id: str
    name: str
    description: str


AVAILABLE_MODELS: Dict[str, List[ModelInfo]] = {
    "groq": [
        ModelInfo(
            id="llama-3.3-70b-versatile",
            name="Llama 3.3 70B",
            description="Most capable model with 128K context",
        ),
        ModelInfo(
            id="llama-3.1-8b-instant",
            name="Llama 3.1 8B",
            description="Faster responses, good for simple queries",
        ),
        ModelInfo(
            id="mixtral-8x7b-32768",
            name="Mixtral 8x7B",
            description="Good balance of speed and capability",
        ),
    ],
    "openai": [
        ModelInfo(id="gpt-4o-mini", name="GPT-4o mini", description="Fast, inexpensive general model"),
        ModelInfo(id="gpt-4o", name="GPT-4o", description="Most capable multimodal model"),
    ],
    "gemini": [
        ModelInfo(id="gemini-1.5-flash", name="Gemini 1.5 Flash", description="Fast multimodal model"),
        ModelInfo(id="gemini-1.5-pro", name="Gemini 1.5 Pro", description="Long-context reasoning model"),
    ],
}


def available_models(provider: str) -> List[ModelInfo]:
    """Models offered to users for the configured provider."""
    return list(AVAILABLE_MODELS.get(provider, []))


class CompletionClient(ABC):
    """Contract shared by all completion backends."""

    def __init__(self, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self.system_prompt = system_prompt

    def _with_system_prompt(self, history: Sequence[ChatTurn]) -> List[Dict[str, str]]:
        """Wire-format messages with the system instruction first."""
        return [{"role": "system", "content": self.system_prompt}] + [
            {"role": turn.role, "content": turn.content} for turn in history
        ]

    @abstractmethod
    async def complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        """Return the full answer and its usage."""
        pass

    @abstractmethod
    def stream_complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamChunk]:
        """Yield fragments in delivery order; the final chunk carries usage."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        return None


class OpenAICompatibleClient(CompletionClient):
    """Client for OpenAI-style ``/chat/completions`` endpoints (OpenAI, Groq)."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        timeout: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(system_prompt)
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        logger.info("completion_client_init", url=self._url, has_api_key=bool(api_key))

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _body(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": self._with_system_prompt(history),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _describe_error(response: httpx.Response) -> str:
        try:
            detail = response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            detail = response.text[:200]
        return f"Completion service returned {response.status_code}: {detail}"

    @staticmethod
    def _parse_usage(raw: Any) -> Usage:
        try:
            return Usage.model_validate(raw)
        except ValidationError as e:
            raise CompletionFailure("Malformed usage in completion payload") from e

    async def complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        logger.info("completion_requested", model=model, turns=len(history), stream=False)
        try:
            response = await self._http.post(
                self._url,
                json=self._body(history, model, temperature, max_tokens, stream=False),
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            logger.error("completion_transport_error", model=model, error=str(e))
            raise CompletionFailure(f"Could not reach completion service: {e}") from e

        if response.status_code != 200:
            reason = self._describe_error(response)
            logger.error("completion_http_error", model=model, status=response.status_code)
            raise CompletionFailure(reason)

        try:
            payload = response.json()
            text = payload["choices"][0]["message"]["content"]
            raw_usage = payload["usage"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("completion_malformed_payload", model=model, error=str(e))
            raise CompletionFailure("Malformed completion payload") from e
        if not isinstance(text, str):
            raise CompletionFailure("Malformed completion payload")

        return Completion(text=text, usage=self._parse_usage(raw_usage))

    @staticmethod
    def _frame_content(frame: Any) -> Optional[str]:
        try:
            choices = frame.get("choices") or []
            if not choices:
                return None
            content = (choices[0].get("delta") or {}).get("content")
        except (AttributeError, IndexError, TypeError) as e:
            raise CompletionFailure("Malformed stream frame") from e
        if content is not None and not isinstance(content, str):
            raise CompletionFailure("Malformed stream frame")
        return content

    @staticmethod
    def _frame_usage(frame: Dict[str, Any]) -> Optional[Any]:
        # Groq reports streaming usage under "x_groq"
        return frame.get("usage") or (frame.get("x_groq") or {}).get("usage")

    async def stream_complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamChunk]:
        logger.info("completion_requested", model=model, turns=len(history), stream=True)
        usage: Optional[Usage] = None
        finished = False
        fragments = 0
        try:
            async with self._http.stream(
                "POST",
                self._url,
                json=self._body(history, model, temperature, max_tokens, stream=True),
                headers=self._headers(),
            ) as response:
                if response.status_code != 200:
                    await response.aread()
                    logger.error("completion_http_error", model=model, status=response.status_code)
                    raise CompletionFailure(self._describe_error(response))

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == DONE_SENTINEL:
                        finished = True
                        break
                    try:
                        frame = json.loads(data)
                    except ValueError as e:
                        logger.error("completion_malformed_frame", model=model)
                        raise CompletionFailure("Malformed stream frame") from e
                    if not isinstance(frame, dict):
                        raise CompletionFailure("Malformed stream frame")

                    raw_usage = self._frame_usage(frame)
                    if raw_usage:
                        usage = self._parse_usage(raw_usage)
                    content = self._frame_content(frame)
                    if content:
                        fragments += 1
                        yield StreamChunk(content=content)
        except httpx.HTTPError as e:
            logger.error("completion_transport_error", model=model, error=str(e))
            raise CompletionFailure(f"Completion stream interrupted: {e}") from e

        if not finished:
            raise CompletionFailure("Completion stream ended before the final frame")
        if usage is None:
            raise CompletionFailure("Completion stream ended without a usage summary")
        logger.info("completion_stream_finished", model=model, fragments=fragments)
        yield StreamChunk(usage=usage)

    async def aclose(self) -> None:
        await self._http.aclose()


class GeminiCompletionClient(CompletionClient):
    """Client for Google's Gemini models."""

    def __init__(
        self,
        api_key: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        model_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        super().__init__(system_prompt)
        if model_factory is None:
            genai.configure(api_key=api_key)
            model_factory = self._create_model
        self._model_factory = model_factory
        logger.info("gemini_client_init", has_api_key=bool(api_key))

    def _create_model(self, model: str) -> genai.GenerativeModel:
        return genai.GenerativeModel(model, system_instruction=self.system_prompt)

    @staticmethod
    def _contents(history: Sequence[ChatTurn]) -> List[Dict[str, Any]]:
        # Gemini calls the assistant role "model"
        return [
            {"role": "model" if turn.role == "assistant" else "user", "parts": [turn.content]}
            for turn in history
        ]

    @staticmethod
    def _generation_config(temperature: float, max_tokens: int) -> Dict[str, Any]:
        return {"temperature": temperature, "max_output_tokens": max_tokens}

    @staticmethod
    def _usage(response: Any) -> Usage:
        metadata = getattr(response, "usage_metadata", None)
        if metadata is None:
            raise CompletionFailure("Gemini response carried no usage metadata")
        return Usage(
            prompt_tokens=metadata.prompt_token_count or 0,
            completion_tokens=metadata.candidates_token_count or 0,
            total_tokens=metadata.total_token_count,
        )

    async def complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        logger.info("completion_requested", model=model, turns=len(history), stream=False)
        generative_model = self._model_factory(model)
        try:
            response = await generative_model.generate_content_async(
                self._contents(history),
                generation_config=self._generation_config(temperature, max_tokens),
            )
            text = response.text
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_request_error", model=model, error=str(e))
            raise CompletionFailure(f"Gemini request failed: {e}") from e
        except ValueError as e:
            # response.text raises when the candidate carries no text parts
            raise CompletionFailure("Malformed Gemini response") from e
        return Completion(text=text, usage=self._usage(response))

    async def stream_complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamChunk]:
        logger.info("completion_requested", model=model, turns=len(history), stream=True)
        generative_model = self._model_factory(model)
        try:
            response = await generative_model.generate_content_async(
                self._contents(history),
                generation_config=self._generation_config(temperature, max_tokens),
                stream=True,
            )
            async for chunk in response:
                text = chunk.text
                if text:
                    yield StreamChunk(content=text)
        except exceptions.GoogleAPIError as e:
            logger.error("gemini_request_error", model=model, error=str(e))
            raise CompletionFailure(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise CompletionFailure("Malformed Gemini stream chunk") from e
        yield StreamChunk(usage=self._usage(response))


def split_into_fragments(text: str) -> List[str]:
    """Split an answer on single spaces; joining the result gives ``text`` back."""
    words = text.split(" ")
    fragments = [word if i == 0 else " " + word for i, word in enumerate(words)]
    return [fragment for fragment in fragments if fragment]


class ChunkedStreamClient(CompletionClient):
    """Streams by chunking a complete answer, for backends that cannot stream."""

    def __init__(self, inner: CompletionClient, delay: float = 0.05) -> None:
        super().__init__(inner.system_prompt)
        self._inner = inner
        self._delay = delay

    async def complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        return await self._inner.complete(history, model, temperature, max_tokens)

    async def stream_complete(
        self,
        history: Sequence[ChatTurn],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamChunk]:
        completion = await self._inner.complete(history, model, temperature, max_tokens)
        for fragment in split_into_fragments(completion.text):
            yield StreamChunk(content=fragment)
            if self._delay:
                await asyncio.sleep(self._delay)
        yield StreamChunk(usage=completion.usage)

    async def aclose(self) -> None:
        await self._inner.aclose()


def create_completion_client(
    settings: Settings, http_client: Optional[httpx.AsyncClient] = None
) -> CompletionClient:
    """Build the client for the configured provider and streaming strategy."""
    api_key = settings.api_key.get_secret_value()
    client: CompletionClient
    if settings.provider == "gemini":
        client = GeminiCompletionClient(api_key, system_prompt=settings.system_prompt)
    else:
        client = OpenAICompatibleClient(
            api_key,
            settings.base_url or PROVIDER_BASE_URLS[settings.provider],
            system_prompt=settings.system_prompt,
            timeout=settings.request_timeout,
            http_client=http_client,
        )

    if settings.stream_strategy == "chunked":
        client = ChunkedStreamClient(client, delay=settings.chunk_delay)
    logger.info(
        "completion_client_selected",
        provider=settings.provider,
        stream_strategy=settings.stream_strategy,
    )
    return client
