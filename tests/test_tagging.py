import asyncio
import json

import httpx
import pytest

from assetflow.ai_client import AIClient, AIProviderError, AITimeoutError
from assetflow.tagging import (
    CONTENT_EXCERPT_CHARS,
    MAX_TAGS,
    build_tag_messages,
    generate_tags,
    normalize_tag_names,
    parse_tag_response,
)
from conftest import ai_response


def _client(handler, retries=1):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AIClient("https://ai.test/v1", "secret", "test-model", http_client, retries=retries, backoff=0)


class TestParseTagResponse:

    def test_fenced_json_block(self):
        response = 'Sure! Here are tags:\n```json\n["python", "web"]\n```\nEnjoy.'
        assert parse_tag_response(response) == ["python", "web"]

    def test_raw_json_array(self):
        assert parse_tag_response('["a", "b"]') == ["a", "b"]

    def test_object_with_tags_key(self):
        assert parse_tag_response('{"tags": ["gardening", "spring"]}') == ["gardening", "spring"]

    def test_non_string_entries_are_dropped(self):
        assert parse_tag_response('["ok", 3, null, {"x": 1}, "fine"]') == ["ok", "fine"]

    def test_unexpected_shape_gives_empty_list(self):
        assert parse_tag_response('{"labels": ["x"]}') == []
        assert parse_tag_response('"just a string"') == []

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            parse_tag_response("python, web, tutorials")


class TestBuildMessages:

    def test_excerpt_is_capped(self):
        messages = build_tag_messages("z" * (CONTENT_EXCERPT_CHARS + 500), "Title")
        assert len(messages) == 2
        assert messages[0]["role"] == "system"
        assert "JSON array of strings" in messages[0]["content"]
        assert messages[1]["content"].count("z") == CONTENT_EXCERPT_CHARS

    def test_source_kind_label(self):
        messages = build_tag_messages("text", "A post", "twitter")
        assert "Twitter/X post" in messages[1]["content"]
        assert '"A post"' in messages[1]["content"]


class TestNormalize:

    def test_trims_lowercases_and_dedups(self):
        assert normalize_tag_names(["  Python ", "python", "Web  Dev", "", "  "]) == ["python", "web dev"]


class TestGenerateTags:

    async def test_returns_parsed_tags(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return ai_response('```json\n["garden", "vegetables"]\n```')

        ai = _client(handler)
        tags = await generate_tags(ai, "content about gardens", "Garden guide", temperature=0.1, max_tokens=200)

        assert tags == ["garden", "vegetables"]
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["temperature"] == 0.1
        assert seen["body"]["max_tokens"] == 200
        assert seen["body"]["model"] == "test-model"

    async def test_at_most_five_tags(self):
        ai = _client(lambda request: ai_response(json.dumps([f"t{i}" for i in range(9)])))
        tags = await generate_tags(ai, "text", "title")
        assert len(tags) == MAX_TAGS

    async def test_non_json_response_returns_empty_list(self):
        ai = _client(lambda request: ai_response("I think good tags would be python and web."))
        assert await generate_tags(ai, "text", "title") == []

    async def test_provider_error_returns_empty_list(self):
        ai = _client(lambda request: httpx.Response(500, json={"error": "boom"}), retries=2)
        assert await generate_tags(ai, "text", "title") == []

    async def test_timeout_returns_empty_list(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        ai = _client(handler)
        assert await generate_tags(ai, "text", "title", timeout_seconds=1) == []

    async def test_hung_call_is_bounded_by_timeout(self):
        class Hanging:
            async def complete(self, *args, **kwargs):
                await asyncio.sleep(10)

        assert await generate_tags(Hanging(), "text", "title", timeout_seconds=0.05) == []


class TestAIClient:

    async def test_timeout_maps_to_ai_timeout_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(AITimeoutError):
            await _client(handler, retries=3).complete([{"role": "user", "content": "hi"}])

    async def test_retries_then_provider_error(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(503)

        with pytest.raises(AIProviderError):
            await _client(handler, retries=3).complete([{"role": "user", "content": "hi"}])
        assert len(calls) == 3

    async def test_missing_choices_is_provider_error(self):
        with pytest.raises(AIProviderError):
            await _client(lambda request: httpx.Response(200, json={"choices": []})).complete([])
