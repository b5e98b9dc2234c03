"""Tests for the completion clients."""

import json

import httpx
import pytest
from google.api_core import exceptions

from assistant_chat.config import Settings
from assistant_chat.domain.errors import CompletionFailure
from assistant_chat.domain.models import ChatTurn, Completion, Usage
from assistant_chat.services.llm import (
    ChunkedStreamClient,
    GeminiCompletionClient,
    OpenAICompatibleClient,
    available_models,
    create_completion_client,
    split_into_fragments,
)

HISTORY = [
    ChatTurn(role="user", content="Hi"),
    ChatTurn(role="assistant", content="Hello!"),
    ChatTurn(role="user", content="How are you?"),
]


def sse(*frames):
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def delta(content):
    return {"choices": [{"index": 0, "delta": {"content": content}}]}


def make_client(handler, captured=None):
    def recording_handler(request):
        if captured is not None:
            captured.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recording_handler))
    return OpenAICompatibleClient(
        "secret", "https://api.example.com/v1/", system_prompt="Be brief.", http_client=http
    )


async def collect(stream):
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_complete_sends_system_prompt_first():
    """Test the request body of a non-streamed completion."""
    captured = []
    client = make_client(
        lambda request: httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "Fine, thanks."}}],
                "usage": {"prompt_tokens": 9, "completion_tokens": 3, "total_tokens": 12},
            },
        ),
        captured,
    )

    completion = await client.complete(HISTORY, "llama-3.3-70b-versatile", 0.6, 2048)

    assert completion.text == "Fine, thanks."
    assert completion.usage.total == 12
    request = captured[0]
    assert str(request.url) == "https://api.example.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert [m["content"] for m in body["messages"][1:]] == ["Hi", "Hello!", "How are you?"]
    assert body["stream"] is False
    assert body["temperature"] == 0.6
    assert body["max_tokens"] == 2048


@pytest.mark.asyncio
async def test_complete_non_200_is_failure():
    """Test that error statuses become completion failures."""
    client = make_client(
        lambda request: httpx.Response(429, json={"error": {"message": "Rate limit reached"}})
    )

    with pytest.raises(CompletionFailure) as exc_info:
        await client.complete(HISTORY, "m", 0.6, 100)
    assert "429" in exc_info.value.reason
    assert "Rate limit reached" in exc_info.value.reason
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_complete_malformed_payload_is_failure():
    """Test that a payload without choices is rejected."""
    client = make_client(lambda request: httpx.Response(200, json={"choices": []}))

    with pytest.raises(CompletionFailure):
        await client.complete(HISTORY, "m", 0.6, 100)


@pytest.mark.asyncio
async def test_complete_transport_error_is_failure():
    """Test that connection errors become completion failures."""
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(CompletionFailure):
        await client.complete(HISTORY, "m", 0.6, 100)


@pytest.mark.asyncio
async def test_stream_yields_fragments_then_usage():
    """Test native streaming: fragments in order, usage last."""
    captured = []
    client = make_client(
        lambda request: httpx.Response(
            200,
            content=sse(
                delta("Fine"),
                delta(", "),
                delta("thanks."),
                {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 3, "total_tokens": 12}},
                "[DONE]",
            ),
            headers={"content-type": "text/event-stream"},
        ),
        captured,
    )

    chunks = await collect(client.stream_complete(HISTORY, "m", 0.6, 100))

    assert [c.content for c in chunks[:-1]] == ["Fine", ", ", "thanks."]
    assert chunks[-1].usage == Usage(prompt_tokens=9, completion_tokens=3, total_tokens=12)
    body = json.loads(captured[0].content)
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}


@pytest.mark.asyncio
async def test_stream_reads_groq_usage_location():
    """Test reading usage from the x_groq field."""
    final = delta("")
    final["x_groq"] = {"usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}}
    client = make_client(
        lambda request: httpx.Response(200, content=sse(delta("Ok"), final, "[DONE]"))
    )

    chunks = await collect(client.stream_complete(HISTORY, "m", 0.6, 100))

    assert [c.content for c in chunks if c.content] == ["Ok"]
    assert chunks[-1].usage.total == 6


@pytest.mark.asyncio
async def test_stream_without_usage_is_failure():
    """Test that a stream without usage is rejected."""
    client = make_client(
        lambda request: httpx.Response(200, content=sse(delta("Ok"), "[DONE]"))
    )

    with pytest.raises(CompletionFailure):
        await collect(client.stream_complete(HISTORY, "m", 0.6, 100))


@pytest.mark.asyncio
async def test_stream_without_done_sentinel_is_failure():
    """Test that a truncated stream is rejected."""
    client = make_client(
        lambda request: httpx.Response(
            200,
            content=sse(delta("Ok"), {"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1}}),
        )
    )

    with pytest.raises(CompletionFailure):
        await collect(client.stream_complete(HISTORY, "m", 0.6, 100))


@pytest.mark.asyncio
async def test_stream_malformed_frame_is_failure():
    """Test that an unparsable frame is rejected."""
    client = make_client(
        lambda request: httpx.Response(200, content=sse(delta("Ok"), "{not json"))
    )

    with pytest.raises(CompletionFailure):
        await collect(client.stream_complete(HISTORY, "m", 0.6, 100))


@pytest.mark.asyncio
async def test_stream_non_200_is_failure():
    """Test that error statuses fail the stream."""
    client = make_client(
        lambda request: httpx.Response(500, json={"error": {"message": "Internal error"}})
    )

    with pytest.raises(CompletionFailure) as exc_info:
        await collect(client.stream_complete(HISTORY, "m", 0.6, 100))
    assert "500" in exc_info.value.reason


def test_split_into_fragments_reassembles_text():
    """Test that word fragments join back to the original text."""
    text = "The quick  brown fox"
    fragments = split_into_fragments(text)
    assert fragments[0] == "The"
    assert "".join(fragments) == text
    assert split_into_fragments("") == []


@pytest.mark.asyncio
async def test_chunked_stream_client():
    """Test chunked streaming over a complete answer."""
    class FixedClient(OpenAICompatibleClient):
        def __init__(self):
            super().__init__("k", "https://unused.example.com", http_client=httpx.AsyncClient())

        async def complete(self, history, model, temperature, max_tokens):
            return Completion(text="one two three", usage=Usage(prompt_tokens=3, completion_tokens=3))

    client = ChunkedStreamClient(FixedClient(), delay=0)
    chunks = await collect(client.stream_complete(HISTORY, "m", 0.6, 100))

    assert [c.content for c in chunks[:-1]] == ["one", " two", " three"]
    assert chunks[-1].usage.total == 6
    await client.aclose()


class FakeUsageMetadata:
    prompt_token_count = 7
    candidates_token_count = 5
    total_token_count = 12


class FakeChunk:
    def __init__(self, text):
        self.text = text


class FakeStreamResponse:
    usage_metadata = FakeUsageMetadata()

    def __init__(self, texts):
        self._texts = texts

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for text in self._texts:
            yield FakeChunk(text)


class FakeGenerativeModel:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def generate_content_async(self, contents, generation_config=None, stream=False):
        self.calls.append((contents, generation_config, stream))
        if self.fail:
            raise exceptions.ServiceUnavailable("model overloaded")
        if stream:
            return FakeStreamResponse(["Bonjour", " !"])
        response = FakeStreamResponse([])
        response.text = "Bonjour !"
        return response


@pytest.mark.asyncio
async def test_gemini_stream_maps_roles_and_usage():
    """Test Gemini streaming with role mapping and usage metadata."""
    model = FakeGenerativeModel()
    client = GeminiCompletionClient("key", model_factory=lambda name: model)

    chunks = await collect(client.stream_complete(HISTORY, "gemini-1.5-flash", 0.3, 50))

    assert [c.content for c in chunks[:-1]] == ["Bonjour", " !"]
    assert chunks[-1].usage.total == 12
    contents, config, stream = model.calls[0]
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert config == {"temperature": 0.3, "max_output_tokens": 50}
    assert stream is True


@pytest.mark.asyncio
async def test_gemini_complete():
    """Test a non-streamed Gemini completion."""
    client = GeminiCompletionClient("key", model_factory=lambda name: FakeGenerativeModel())

    completion = await client.complete(HISTORY, "gemini-1.5-flash", 0.3, 50)

    assert completion.text == "Bonjour !"
    assert completion.usage.prompt_tokens == 7


@pytest.mark.asyncio
async def test_gemini_api_error_is_failure():
    """Test that Gemini API errors become completion failures."""
    client = GeminiCompletionClient("key", model_factory=lambda name: FakeGenerativeModel(fail=True))

    with pytest.raises(CompletionFailure):
        await collect(client.stream_complete(HISTORY, "gemini-1.5-flash", 0.3, 50))


def test_create_completion_client_selects_strategy():
    """Test client selection from settings."""
    native = create_completion_client(Settings(provider="groq", api_key="k"))
    assert isinstance(native, OpenAICompatibleClient)
    assert native._url == "https://api.groq.com/openai/v1/chat/completions"

    chunked = create_completion_client(
        Settings(provider="openai", api_key="k", stream_strategy="chunked")
    )
    assert isinstance(chunked, ChunkedStreamClient)


def test_available_models():
    """Test the per-provider model catalogue."""
    assert "llama-3.3-70b-versatile" in [m.id for m in available_models("groq")]
    assert available_models("unknown") == []
