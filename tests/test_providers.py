"""Tests for the embedding and chat providers and Q&A generation."""

import base64
import json
import struct
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from bookmark_rag.core.embedding_providers import EmbeddingError, OpenAIProvider, serialize_f32
from bookmark_rag.core.errors import ErrorInfo, ErrorKind, GenerationError
from bookmark_rag.core.llm_providers import ChatResponse, LLMError, OpenAIChatProvider
from bookmark_rag.core.prompts import DEFAULT_PROMPTS, get_prompt, reset_prompt, save_prompt
from bookmark_rag.core.qa_generator import LLMQAGenerator, parse_pairs


def _b64(vector):
    return base64.b64encode(struct.pack(f"{len(vector)}f", *vector)).decode()


def _embedding_response(vectors, shuffle=False):
    items = [{"index": i, "embedding": _b64(v)} for i, v in enumerate(vectors)]
    if shuffle:
        items.reverse()
    return httpx.Response(200, json={"data": items})


class TestSerialize:
    def test_serialize_f32(self):
        assert serialize_f32([1.0, 2.0]) == struct.pack("2f", 1.0, 2.0)


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_embed_decodes_base64_in_index_order(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return _embedding_response([[0.5, 0.25], [1.0, -1.0]], shuffle=True)

        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(handler))

        vectors = await provider.embed(["a", "b"])

        assert vectors == [[0.5, 0.25], [1.0, -1.0]]
        assert requests[0]["encoding_format"] == "base64"
        assert requests[0]["input"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_empty_input_makes_no_request(self):
        handler = MagicMock()
        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(handler))

        assert await provider.embed([]) == []
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        with pytest.raises(EmbeddingError, match="OPENAI_API_KEY"):
            await OpenAIProvider(api_key="").embed(["a"])

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        provider = OpenAIProvider(
            api_key="sk-test", transport=httpx.MockTransport(lambda r: _embedding_response([[0.5]]))
        )

        with pytest.raises(EmbeddingError, match="Expected 2 embeddings, got 1"):
            await provider.embed(["a", "b"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"data": [{"embedding": [0.5, 0.25]}]},
            {"object": "list"},
            {"data": [{"index": 0, "embedding": "not base64!"}]},
            {"data": None},
        ],
    )
    async def test_malformed_response(self, body):
        provider = OpenAIProvider(
            api_key="sk-test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body))
        )

        with pytest.raises(EmbeddingError, match="Malformed embeddings response") as exc_info:
            await provider.embed(["a"])

        assert ErrorInfo.from_exception(exc_info.value).kind == ErrorKind.GENERATION

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        responses = [httpx.Response(429, text="slow down"), _embedding_response([[0.5]])]
        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(lambda r: responses.pop(0)))

        with patch("bookmark_rag.core.embedding_providers.asyncio.sleep", new=AsyncMock()) as sleep:
            vectors = await provider.embed(["a"])

        assert vectors == [[0.5]]
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        provider = OpenAIProvider(api_key="sk-bad", transport=httpx.MockTransport(lambda r: httpx.Response(401)))

        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed(["a"])

        assert exc_info.value.retriable is False

    @pytest.mark.asyncio
    async def test_server_error_is_retriable(self):
        provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(lambda r: httpx.Response(502)))

        with pytest.raises(EmbeddingError) as exc_info:
            await provider.embed(["a"])

        assert exc_info.value.retriable is True

    @pytest.mark.asyncio
    async def test_health_check(self):
        provider = OpenAIProvider(
            api_key="sk-test", transport=httpx.MockTransport(lambda r: _embedding_response([[0.1, 0.2, 0.3]]))
        )

        result = await provider.health_check()

        assert result.healthy
        assert result.details == {"dimensions": 3}
        assert (await OpenAIProvider(api_key="").health_check()).healthy is False


def _chat_response(content, prompt_tokens=10, completion_tokens=5):
    return httpx.Response(200, json={
        "model": "gpt-4o-mini",
        "choices": [{"message": {"content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    })


class TestOpenAIChatProvider:
    @pytest.mark.asyncio
    async def test_chat(self):
        requests = []

        def handler(request):
            requests.append(request)
            return _chat_response('{"pairs": []}')

        provider = OpenAIChatProvider(api_key="sk-test", transport=httpx.MockTransport(handler))

        response = await provider.chat([{"role": "user", "content": "hi"}], response_format={"type": "json_object"})

        assert response.content == '{"pairs": []}'
        assert (response.tokens_input, response.tokens_output) == (10, 5)
        assert requests[0].url.path == "/v1/chat/completions"
        assert requests[0].headers["authorization"] == "Bearer sk-test"
        assert json.loads(requests[0].content)["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_unknown_model(self):
        provider = OpenAIChatProvider(
            model="nope", api_key="sk-test", transport=httpx.MockTransport(lambda r: httpx.Response(404))
        )

        with pytest.raises(LLMError, match="not available"):
            await provider.chat([{"role": "user", "content": "hi"}])

    def test_estimate_cost(self):
        provider = OpenAIChatProvider(model="gpt-4o-mini")

        assert provider.estimate_cost(1_000_000, 1_000_000) == pytest.approx(0.75)
        assert OpenAIChatProvider(model="local-model").estimate_cost(1000, 1000) == 0.0


class TestParsePairs:
    def test_valid_reply(self):
        content = json.dumps({"pairs": [
            {"question": " What? ", "answer": "This."},
            {"question": "", "answer": "dropped"},
            {"question": "No answer"},
            "junk",
        ]})

        pairs = parse_pairs(content)

        assert [(p.question, p.answer) for p in pairs] == [("What?", "This.")]

    def test_no_pairs_key(self):
        assert parse_pairs('{"other": 1}') == []

    @pytest.mark.parametrize("content", ["not json", "[1, 2]"])
    def test_invalid_reply(self, content):
        with pytest.raises(GenerationError):
            parse_pairs(content)


class TestLLMQAGenerator:
    def _llm(self, content):
        llm = MagicMock()
        llm.name = "fake"
        llm.chat = AsyncMock(return_value=ChatResponse(
            content=content, model="m", tokens_input=100, tokens_output=20, finish_reason="stop", latency_ms=1
        ))
        llm.estimate_cost = MagicMock(return_value=0.01)
        return llm

    @pytest.mark.asyncio
    async def test_generate_truncates_and_parses(self):
        llm = self._llm('{"pairs": [{"question": "Q?", "answer": "A."}]}')
        generator = LLMQAGenerator(llm, max_chars=10)

        result = await generator.generate("x" * 50)

        messages = llm.chat.await_args.kwargs["messages"]
        assert messages[0]["content"] == DEFAULT_PROMPTS["qa_generation"].template
        assert messages[1]["content"] == "x" * 10
        assert llm.chat.await_args.kwargs["response_format"] == {"type": "json_object"}
        assert [(p.question, p.answer) for p in result.pairs] == [("Q?", "A.")]
        assert (result.tokens_input, result.tokens_output, result.cost_usd) == (100, 20, 0.01)

    @pytest.mark.asyncio
    async def test_empty_reply_fails(self):
        with pytest.raises(GenerationError, match="Empty response"):
            await LLMQAGenerator(self._llm("")).generate("# Doc")

    @pytest.mark.asyncio
    async def test_custom_prompt_is_used(self, db):
        save_prompt("qa_generation", "Custom prompt", db)
        llm = self._llm('{"pairs": []}')

        await LLMQAGenerator(llm, db=db).generate("# Doc")

        assert llm.chat.await_args.kwargs["messages"][0]["content"] == "Custom prompt"


class TestPrompts:
    def test_custom_and_reset(self, db):
        assert get_prompt("qa_generation", db).is_custom is False

        save_prompt("qa_generation", "Mine", db)
        assert get_prompt("qa_generation", db).template == "Mine"
        assert get_prompt("qa_generation", db).is_custom

        reset_prompt("qa_generation", db)
        assert get_prompt("qa_generation", db) == DEFAULT_PROMPTS["qa_generation"]

    def test_unknown_prompt(self, db):
        with pytest.raises(KeyError):
            save_prompt("missing", "x", db)
