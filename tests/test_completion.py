"""Tests for the completion client, using httpx.MockTransport."""
import json

import httpx
import pytest

from context_mcp.completion import CompletionService
from context_mcp.errors import ExternalServiceDegraded
from context_mcp.llm_parsing import LLMFields, extract_json, text_lines


def _service(handler, **kwargs):
    return CompletionService(
        api_key=kwargs.pop("api_key", "test-key"),
        base_url="https://llm.test/api/v1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _reply(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestCompletionService:

    def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return _reply('{"ok": true}')

        service = _service(handler, model="test-model", temperature=0.1)
        assert service.complete("sys", "user", max_tokens=42) == '{"ok": true}'
        assert seen["url"] == "https://llm.test/api/v1/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["max_tokens"] == 42
        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]
        assert service.calls == 1

    def test_server_error_is_degraded(self):
        service = _service(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(ExternalServiceDegraded):
            service.complete("sys", "user")

    def test_timeout_is_degraded(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ExternalServiceDegraded):
            _service(handler).complete("sys", "user")

    def test_connection_error_is_degraded(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExternalServiceDegraded):
            _service(handler).complete("sys", "user")

    @pytest.mark.parametrize("body", [{"choices": []}, {"unexpected": 1}])
    def test_malformed_response_is_degraded(self, body):
        service = _service(lambda request: httpx.Response(200, json=body))
        with pytest.raises(ExternalServiceDegraded):
            service.complete("sys", "user")

    def test_empty_content_is_degraded(self):
        with pytest.raises(ExternalServiceDegraded):
            _service(lambda request: _reply("   ")).complete("sys", "user")

    def test_unconfigured_service_never_sends(self):
        service = CompletionService(api_key="")
        with pytest.raises(ExternalServiceDegraded):
            service.complete("sys", "user")
        assert service.calls == 1
        service.close()


class TestLLMParsing:

    def test_fenced_json(self):
        assert extract_json('Here:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_json(self):
        assert extract_json('Result: {"a": {"b": 2}} done') == {"a": {"b": 2}}

    def test_not_json(self):
        assert extract_json("no braces here") is None
        assert extract_json(None) is None
        assert not LLMFields.from_text("nope").parsed

    def test_field_defaults(self):
        fields = LLMFields({"confidence": "high", "flag": "yes", "items": "one",
                            "nested": {"x": 1}, "count": True})
        assert fields.number("confidence", 0.2) == 0.2
        assert fields.number("count", 0.0) == 0.0
        assert fields.flag("flag") is True
        assert fields.items("items") == ["one"]
        assert fields.text("nested", "fallback") == "fallback"
        assert fields.records("missing") == []

    def test_text_lines_strip_markers(self):
        assert text_lines("1. first\n* second\n\n- third") == ["first", "second", "third"]
