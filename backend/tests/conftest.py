"""
Shared pytest fixtures for the chatrelay test suite.

Provides:
- test_config: a RuntimeConfig with fake credentials (no env / VCAP lookup)
- make_jwt: JWT builder for identity tests (signed with a throwaway key)
- events: builders for provider stream events
- make_provider: scripted stand-in for ProviderClient
- fake_search: canned SearchClient
"""

import json
import time

import jwt
import pytest

from config import RuntimeConfig
from errors import LLMError
from services.provider_client import ToolChoice


@pytest.fixture
def test_config():
    """RuntimeConfig with credentials filled in and search enabled."""
    return RuntimeConfig(
        deployment_id="dep-chat",
        resource_group="default",
        model_type="anthropic",
        search_deployment_id="dep-search",
        service_url="https://api.aicore.test",
        client_id="client-id",
        client_secret="client-secret",
        auth_url="https://auth.aicore.test",
        memory_enabled=False,
        database_enabled=False,
        environment="development",
    )


# Any key works: the service decodes without verifying signatures
TEST_SIGNING_KEY = "chatrelay-test-signing-key-not-a-secret"


@pytest.fixture
def make_jwt():
    """Build a JWT with the given claims; `exp` defaults to one hour from now."""

    def _make(**claims) -> str:
        claims.setdefault("exp", int(time.time()) + 3600)
        return jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")

    return _make


class ProviderEvents:
    """Builders for the provider's streamed event dicts."""

    @staticmethod
    def text(*chunks, index=0):
        events = [{"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}}]
        events += [
            {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": c}}
            for c in chunks
        ]
        events.append({"type": "content_block_stop", "index": index})
        return events

    @staticmethod
    def tool(index, tool_id, arguments, name="web_search", fragments=2):
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        step = max(1, len(raw) // fragments)
        pieces = [raw[i:i + step] for i in range(0, len(raw), step)] or [""]
        events = [{
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
        }]
        events += [
            {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": p}}
            for p in pieces
        ]
        events.append({"type": "content_block_stop", "index": index})
        return events

    @staticmethod
    def end(stop_reason="end_turn"):
        return [
            {"type": "message_delta", "delta": {"stop_reason": stop_reason}},
            {"type": "message_stop"},
        ]


@pytest.fixture
def events():
    return ProviderEvents


class FakeProvider:
    """Scripted ProviderClient: replays events, records calls.

    Args:
        config: RuntimeConfig (model_type / search_enabled come from it)
        events: Provider events yielded by stream_events()
        follow_up_text: Text returned by invoke() (the tool follow-up)
        fail_after: Raise `stream_error` after this many events
        stream_error: Exception raised mid-stream
        invoke_error: Exception raised by invoke()
        token_error: Exception raised by auth_headers()
    """

    def __init__(
        self,
        config,
        events=None,
        follow_up_text="",
        fail_after=None,
        stream_error=None,
        invoke_error=None,
        token_error=None,
    ):
        self.config = config
        self.events = list(events or [])
        self.follow_up_text = follow_up_text
        self.fail_after = fail_after
        self.stream_error = stream_error or LLMError("Provider stream interrupted", error_type="stream")
        self.invoke_error = invoke_error
        self.token_error = token_error
        self.stream_calls = []
        self.invoke_calls = []

    @property
    def model_type(self):
        return self.config.model_type

    @property
    def search_enabled(self):
        return self.config.search_enabled

    async def auth_headers(self):
        if self.token_error is not None:
            raise self.token_error
        return {"Authorization": "Bearer test-token"}

    async def stream_events(self, messages, tool_choice=ToolChoice.AUTO, max_tokens=None):
        self.stream_calls.append({"messages": messages, "tool_choice": tool_choice})
        for i, event in enumerate(self.events):
            if self.fail_after is not None and i == self.fail_after:
                raise self.stream_error
            yield event

    async def invoke(self, messages, tool_choice=ToolChoice.AUTO, max_tokens=None, temperature=None):
        self.invoke_calls.append({"messages": messages, "tool_choice": tool_choice})
        if self.invoke_error is not None:
            raise self.invoke_error
        return {"content": [{"type": "text", "text": self.follow_up_text}]}

    async def chat(self, messages, tool_choice=ToolChoice.DISABLED, max_tokens=None, temperature=None):
        response = await self.invoke(messages, tool_choice, max_tokens, temperature)
        return response["content"][0]["text"]

    async def close(self):
        return None


@pytest.fixture
def make_provider(test_config):
    """Factory for FakeProvider bound to test_config."""

    def _make(**kwargs):
        return FakeProvider(test_config, **kwargs)

    return _make


class FakeSearch:
    """SearchClient stand-in; answers every query with canned text."""

    def __init__(self, enabled=True, answer="Search results for: {query}"):
        self.enabled = enabled
        self.answer = answer
        self.queries = []

    async def search(self, query):
        self.queries.append(query)
        return self.answer.format(query=query)


@pytest.fixture
def fake_search():
    return FakeSearch()
