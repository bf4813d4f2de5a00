"""
Tests for the upstream provider client, using httpx.MockTransport.
"""

import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from errors import ErrorCode, LLMError
from services.provider_client import (
    ProviderClient,
    ToolChoice,
    extract_text,
    parse_event_line,
    split_system_prompt,
)


def _sse(*events) -> bytes:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode("utf-8")


class Upstream:
    """Records requests and answers token, invoke and stream calls."""

    def __init__(self, stream_body=b"", invoke_status=200, stream_status=200, reject_first_token=False):
        self.stream_body = stream_body
        self.invoke_status = invoke_status
        self.stream_status = stream_status
        self.reject_first_token = reject_first_token
        self.token_requests = 0
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/oauth/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 3600})

        self.requests.append(request)
        if self.reject_first_token and request.headers["authorization"] == "Bearer tok-1":
            return httpx.Response(401, json={"error": "expired"})
        streamed = path.endswith("/invoke-with-response-stream") or (
            path.endswith("/chat/completions") and json.loads(request.content).get("stream")
        )
        if streamed:
            return httpx.Response(self.stream_status, content=self.stream_body)
        if path.endswith("/invoke") or path.endswith("/chat/completions"):
            return httpx.Response(self.invoke_status, json={"content": [{"type": "text", "text": "hello"}]})
        if path.startswith("/v2/lm/deployments/"):
            return httpx.Response(200, json={"id": "dep-chat", "configurationName": "claude-sonnet"})
        return httpx.Response(404)


def _client(config, upstream) -> ProviderClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return ProviderClient(config, http=http)


async def _collect(agen):
    return [e async for e in agen]


class TestHelpers:
    """Test the parsing helpers."""

    def test_parse_event_line(self):
        assert parse_event_line('data: {"type": "message_stop"}') == {"type": "message_stop"}
        assert parse_event_line("data: [DONE]") is None
        assert parse_event_line("event: ping") is None
        assert parse_event_line("data: {not json") is None
        assert parse_event_line("") is None

    def test_split_system_prompt(self):
        system, wire = split_system_prompt([
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "tool", "content": "odd"},
            {"role": "assistant", "content": None},
        ])
        assert system == "Be brief."
        assert wire == [
            {"role": "user", "content": "Hi"},
            {"role": "user", "content": "odd"},
            {"role": "assistant", "content": ""},
        ]

    def test_extract_text(self):
        assert extract_text({"content": [{"type": "text", "text": "a"}]}) == "a"
        assert extract_text({"choices": [{"message": {"content": "b"}}]}) == "b"
        assert extract_text({"content": []}) == ""


class TestRequestBodies:
    """Test the wire bodies sent to the deployment."""

    def test_tools_declared_when_search_configured(self, test_config):
        client = ProviderClient(test_config, http=httpx.AsyncClient())
        body = client.build_anthropic_body([{"role": "user", "content": "Hi"}], ToolChoice.AUTO)

        assert body["tools"][0]["name"] == "web_search"
        assert body["tool_choice"] == {"type": "auto"}
        assert body["system"] == test_config.default_system_prompt
        assert body["anthropic_version"] == "bedrock-2023-05-31"

    def test_tool_choice_none_keeps_declaration(self, test_config):
        client = ProviderClient(test_config, http=httpx.AsyncClient())
        body = client.build_anthropic_body([{"role": "user", "content": "Hi"}], ToolChoice.NONE)
        assert body["tool_choice"] == {"type": "none"}
        assert body["tools"]

    def test_no_tools_without_search(self, test_config):
        client = ProviderClient(replace(test_config, search_deployment_id=""), http=httpx.AsyncClient())
        body = client.build_anthropic_body([{"role": "user", "content": "Hi"}], ToolChoice.AUTO)
        assert "tools" not in body
        assert "tool_choice" not in body


class TestInvoke:
    """Test non-streaming requests."""

    def test_invoke_sends_bearer_and_resource_group(self, test_config):
        upstream = Upstream()
        client = _client(test_config, upstream)

        response = asyncio.run(client.invoke([{"role": "user", "content": "Hi"}]))

        assert extract_text(response) == "hello"
        request = upstream.requests[0]
        assert request.url.path == "/v2/inference/deployments/dep-chat/invoke"
        assert request.headers["authorization"] == "Bearer tok-1"
        assert request.headers["ai-resource-group"] == "default"

    def test_token_reused_across_calls(self, test_config):
        upstream = Upstream()
        client = _client(test_config, upstream)

        async def run():
            await client.invoke([{"role": "user", "content": "a"}])
            await client.invoke([{"role": "user", "content": "b"}])

        asyncio.run(run())
        assert upstream.token_requests == 1

    def test_rejected_token_refreshed_once(self, test_config):
        upstream = Upstream(reject_first_token=True)
        client = _client(test_config, upstream)

        response = asyncio.run(client.invoke([{"role": "user", "content": "Hi"}]))

        assert extract_text(response) == "hello"
        assert upstream.token_requests == 2

    def test_error_status_raises(self, test_config):
        client = _client(test_config, Upstream(invoke_status=503))
        with pytest.raises(LLMError) as exc_info:
            asyncio.run(client.invoke([{"role": "user", "content": "Hi"}]))
        assert exc_info.value.context["status_code"] == 503

    def test_missing_credentials(self, test_config):
        client = _client(replace(test_config, auth_url="", client_id=""), Upstream())
        with pytest.raises(LLMError) as exc_info:
            asyncio.run(client.invoke([{"role": "user", "content": "Hi"}]))
        assert exc_info.value.code == ErrorCode.LLM_AUTH_FAILED

    def test_deployment_info(self, test_config):
        client = _client(test_config, Upstream())
        info = asyncio.run(client.get_deployment_info())
        assert info["configurationName"] == "claude-sonnet"


class TestStreamEvents:
    """Test the streamed event protocol."""

    def test_yields_parsed_events(self, test_config, events):
        script = events.text("Hel", "lo") + events.end()
        client = _client(test_config, Upstream(stream_body=_sse(*script) + b"data: [DONE]\n\n"))

        received = asyncio.run(_collect(client.stream_events([{"role": "user", "content": "Hi"}])))

        assert received == script

    def test_error_event_raises(self, test_config, events):
        body = _sse(*events.text("partial"), {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        client = _client(test_config, Upstream(stream_body=body))

        with pytest.raises(LLMError) as exc_info:
            asyncio.run(_collect(client.stream_events([{"role": "user", "content": "Hi"}])))
        assert exc_info.value.message == "Overloaded"
        assert exc_info.value.code == ErrorCode.LLM_STREAM_ERROR

    def test_error_status_raises(self, test_config):
        client = _client(test_config, Upstream(stream_status=500, stream_body=b"boom"))
        with pytest.raises(LLMError, match="AI Core API error: 500"):
            asyncio.run(_collect(client.stream_events([{"role": "user", "content": "Hi"}])))

    def test_openai_chunks_normalized(self, test_config):
        body = _sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hi"}}]},
            {"choices": [{"delta": {"content": " there"}}]},
        )
        client = _client(replace(test_config, model_type="openai"), Upstream(stream_body=body))

        received = asyncio.run(_collect(client.stream_events([{"role": "user", "content": "Hi"}])))

        assert [e["delta"]["text"] for e in received] == ["Hi", " there"]
        assert all(e["type"] == "content_block_delta" for e in received)
