"""Tests for LLM correction. Every failure must fall back to the raw text."""
import asyncio
import json

import httpx
import pytest

from voxflow.config import Settings
from voxflow.correction import SYSTEM_PROMPT, CorrectionClient, build_prompt


def completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def make_client(handler, endpoint="https://llm.example.com", api_key="sk-test"):
    return CorrectionClient(
        endpoint=endpoint,
        api_key=api_key,
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


def correct(client, text):
    return asyncio.run(client.correct(text))


class TestPrompt:
    @pytest.mark.unit
    def test_build_prompt(self):
        prompt = build_prompt("hello world")

        assert prompt.system == SYSTEM_PROMPT
        assert prompt.user == "hello world"

    @pytest.mark.unit
    def test_system_prompt_rules(self):
        assert "punctuation" in SYSTEM_PROMPT
        assert "Do not translate" in SYSTEM_PROMPT
        assert "ONLY the corrected text" in SYSTEM_PROMPT


class TestCorrectionClient:
    @pytest.mark.unit
    def test_returns_corrected_text(self):
        client = make_client(lambda request: httpx.Response(200, json=completion("  Hello, world.\n")))

        assert correct(client, "hello world") == "Hello, world."

    @pytest.mark.unit
    def test_request_contract(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=completion("Hello."))

        correct(make_client(handler), "hello")

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://llm.example.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        assert request.headers["content-type"] == "application/json"

        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert body["temperature"] == 0.3
        assert body["max_tokens"] == 200
        assert body["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "hello"},
        ]

    @pytest.mark.unit
    def test_max_tokens_scales_with_input(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=completion("x"))

        correct(make_client(handler), "a" * 100)

        assert seen[0]["max_tokens"] == 300

    @pytest.mark.unit
    def test_trailing_slash_endpoint(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json=completion("ok"))

        correct(make_client(handler, endpoint="https://llm.example.com/"), "ok")

        assert seen == ["https://llm.example.com/v1/chat/completions"]

    @pytest.mark.unit
    def test_network_failure_returns_raw(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert correct(make_client(handler), "hello") == "hello"

    @pytest.mark.unit
    def test_timeout_returns_raw(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        assert correct(make_client(handler), "hello") == "hello"

    @pytest.mark.unit
    def test_server_error_returns_raw(self):
        client = make_client(lambda request: httpx.Response(500, text="upstream exploded"))

        assert correct(client, "hello") == "hello"

    @pytest.mark.unit
    def test_unauthorized_returns_raw(self):
        client = make_client(lambda request: httpx.Response(401, json={"error": "bad key"}))

        assert correct(client, "hello") == "hello"

    @pytest.mark.unit
    def test_malformed_json_returns_raw(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>not json</html>"))

        assert correct(client, "hello") == "hello"

    @pytest.mark.unit
    def test_missing_choices_returns_raw(self):
        client = make_client(lambda request: httpx.Response(200, json={"choices": []}))

        assert correct(client, "hello") == "hello"

    @pytest.mark.unit
    def test_empty_content_returns_raw(self):
        client = make_client(lambda request: httpx.Response(200, json=completion("   ")))

        assert correct(client, "hello") == "hello"

    @pytest.mark.unit
    def test_null_content_returns_raw(self):
        client = make_client(lambda request: httpx.Response(200, json=completion(None)))

        assert correct(client, "hello") == "hello"

    @pytest.mark.unit
    def test_empty_input_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert correct(make_client(handler), "") == ""

    @pytest.mark.unit
    def test_is_configured(self):
        assert make_client(lambda r: None).is_configured
        assert not make_client(lambda r: None, api_key="").is_configured
        assert not make_client(lambda r: None, endpoint="").is_configured

    @pytest.mark.unit
    def test_from_settings(self):
        settings = Settings(llm_endpoint="http://localhost:11434/", llm_api_key="k", llm_model="llama3")

        client = CorrectionClient.from_settings(settings)

        assert client.url == "http://localhost:11434/v1/chat/completions"
        assert client.model == "llama3"
        assert client.api_key == "k"
