"""
Upstream LLM provider client (SAP AI Core deployments).

Speaks two request modes against one deployment:
- invoke(): single JSON response, used for auxiliary work and tool follow-ups
- stream_events(): the chunked event protocol used for chat turns, yielded as
  parsed event dicts ("message_start", "content_block_start", ...)

Messages come in as the internal list of {"role", "content"} dicts built by
the context assembler; content is a string or a list of provider content
blocks. Conversion to the wire schema happens here.
"""

import json
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from config import RuntimeConfig, runtime_config
from errors import LLMError
from logging_config import log_llm
from services.token_cache import TokenCache

logger = logging.getLogger(__name__)


class ToolChoice(str, Enum):
    """How the web_search tool is offered to the model."""

    AUTO = "auto"  # offer and allow
    NONE = "none"  # declare but forbid (required once tool_use blocks are in history)
    DISABLED = "disabled"  # no tools at all


WEB_SEARCH_TOOL = {
    "name": "web_search",
    "description": (
        "Search the web for current, real-time, or recent information. Use this when the user asks "
        "about recent events, current news, live data, prices, or anything that may have changed "
        "after your training cutoff."
    ),
    "input_schema": {
        "type": "object",
        "properties": {"query": {"type": "string", "description": "The search query"}},
        "required": ["query"],
    },
}


def _deployment_path(deployment_id: str, action: str) -> str:
    return f"/v2/inference/deployments/{deployment_id}/{action}"


def split_system_prompt(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Separate system messages from the conversation.

    The last system message wins. Every other role maps to "assistant" or
    "user"; the provider accepts nothing else.

    Returns:
        (system_prompt, wire_messages)
    """
    system_prompt = ""
    wire = []
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            system_prompt = msg.get("content") or ""
            continue
        wire.append({
            "role": "assistant" if role == "assistant" else "user",
            "content": msg.get("content") if msg.get("content") is not None else "",
        })
    return system_prompt, wire


def _to_openai_content(content: Any) -> Any:
    """Translate provider content blocks into chat-completions parts."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if block.get("type") == "image":
            source = block.get("source", {})
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{source.get('media_type')};base64,{source.get('data')}"},
            })
        elif block.get("type") == "text":
            parts.append({"type": "text", "text": block.get("text", "")})
    return parts


def _openai_chunk_to_event(chunk: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize a chat-completions stream chunk into a text delta event."""
    choices = chunk.get("choices") or []
    if not choices:
        return None
    text = (choices[0].get("delta") or {}).get("content")
    if not text:
        return None
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


def parse_event_line(line: str) -> Optional[Dict[str, Any]]:
    """Parse one `data: {...}` line of the provider stream.

    Returns None for blank lines, comments, `[DONE]` and payloads that are
    not valid JSON.
    """
    if not line.startswith("data:"):
        return None
    raw = line[5:].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        event = json.loads(raw)
    except ValueError:
        logger.debug(f"Skipping unparseable stream line: {raw[:120]}")
        return None
    return event if isinstance(event, dict) else None


def extract_text(response: Dict[str, Any]) -> str:
    """Text of the first content block of a non-streaming response."""
    if "choices" in response:
        choices = response.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""
    content = response.get("content") or []
    if content and isinstance(content[0], dict):
        return content[0].get("text") or ""
    return ""


class ProviderClient:
    """Client for one provider deployment, with its own token cache.

    Args:
        config: RuntimeConfig carrying credentials and request settings
        http: Optional shared httpx.AsyncClient (tests inject a MockTransport)
        token_cache: Optional TokenCache; one is built around fetch_token() otherwise
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        http: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
    ):
        self.config = config or runtime_config
        self._http = http
        self._owns_http = http is None
        self.token_cache = token_cache or TokenCache(
            fetch=self.fetch_token,
            refresh_margin_s=self.config.token_refresh_margin_s,
        )

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.request_timeout_s)
        return self._http

    @property
    def model_type(self) -> str:
        return self.config.model_type

    @property
    def search_enabled(self) -> bool:
        return self.config.search_enabled

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    # === Authentication ===

    async def fetch_token(self) -> Tuple[str, float]:
        """Fetch a client-credentials token from the OAuth endpoint.

        Returns:
            (access_token, expires_in_seconds)

        Raises:
            LLMError: credentials missing or the token endpoint refused
        """
        cfg = self.config
        if not (cfg.auth_url and cfg.client_id):
            raise LLMError("AI Core credentials not configured", error_type="auth")

        token_url = httpx.URL(cfg.auth_url).join("/oauth/token")
        try:
            response = await self.http.post(
                token_url,
                data={"grant_type": "client_credentials"},
                auth=(cfg.client_id, cfg.client_secret),
            )
        except httpx.RequestError as e:
            raise LLMError("Token endpoint unreachable", details=str(e), error_type="auth")

        if response.status_code >= 400:
            raise LLMError(
                "Token request rejected",
                details=f"HTTP {response.status_code}",
                error_type="auth",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            raise LLMError("No access token in response", error_type="auth")

        token = payload.get("access_token")
        if not token:
            raise LLMError("No access token in response", error_type="auth")
        return token, float(payload.get("expires_in") or 3600)

    async def auth_headers(self) -> Dict[str, str]:
        token = await self.token_cache.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "AI-Resource-Group": self.config.resource_group,
            "Content-Type": "application/json",
        }

    def url(self, path: str) -> httpx.URL:
        if not self.config.service_url:
            raise LLMError("AI Core service URL not configured", error_type="auth")
        return httpx.URL(self.config.service_url).join(path)

    # === Request bodies ===

    def build_anthropic_body(
        self,
        messages: List[Dict[str, Any]],
        tool_choice: ToolChoice = ToolChoice.AUTO,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Wire body for the anthropic invoke endpoints.

        Tools are only declared when a search deployment is configured.
        """
        system_prompt, wire_messages = split_system_prompt(messages)
        body: Dict[str, Any] = {
            "anthropic_version": self.config.anthropic_version,
            "max_tokens": max_tokens or self.config.max_output_tokens,
            "system": system_prompt or self.config.default_system_prompt,
            "messages": wire_messages,
        }
        if tool_choice != ToolChoice.DISABLED and self.search_enabled:
            body["tools"] = [WEB_SEARCH_TOOL]
            body["tool_choice"] = {"type": tool_choice.value}
        return body

    def build_openai_body(
        self,
        messages: List[Dict[str, Any]],
        stream: bool,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        wire = [{"role": m["role"], "content": _to_openai_content(m.get("content"))} for m in messages]
        return {
            "messages": wire,
            "max_tokens": max_tokens or self.config.max_output_tokens,
            "temperature": temperature if temperature is not None else self.config.temperature,
            "stream": stream,
        }

    # === Non-streaming ===

    async def invoke(
        self,
        messages: List[Dict[str, Any]],
        tool_choice: ToolChoice = ToolChoice.AUTO,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Single JSON response from the deployment.

        Raises:
            LLMError: network failure, timeout or non-2xx status
        """
        deployment = self.config.deployment_id
        if self.model_type == "anthropic":
            path = _deployment_path(deployment, "invoke")
            body = self.build_anthropic_body(messages, tool_choice, max_tokens)
        else:
            path = _deployment_path(deployment, "chat/completions")
            body = self.build_openai_body(messages, stream=False, max_tokens=max_tokens, temperature=temperature)

        start = time.time()
        log_llm(logger, "start", model=deployment)
        response = await self._post(path, body)
        log_llm(logger, "end", model=deployment, duration=time.time() - start)
        try:
            return response.json()
        except ValueError:
            raise LLMError("Provider returned invalid JSON", model=deployment, error_type="invalid")

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tool_choice: ToolChoice = ToolChoice.DISABLED,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Non-streaming completion returning just the reply text."""
        response = await self.invoke(messages, tool_choice, max_tokens=max_tokens, temperature=temperature)
        return extract_text(response)

    async def _post(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        url = self.url(path)
        for attempt in range(2):
            headers = await self.auth_headers()
            try:
                response = await self.http.post(url, json=body, headers=headers)
            except httpx.TimeoutException as e:
                raise LLMError("Provider request timed out", details=str(e), error_type="timeout")
            except httpx.RequestError as e:
                raise LLMError("Provider unreachable", details=str(e))

            # Rejected token: refresh once, then surface
            if response.status_code == 401 and attempt == 0:
                self.token_cache.invalidate()
                continue
            if response.status_code >= 400:
                logger.error(f"AI Core error response: {response.text[:500]}")
                raise LLMError(
                    f"AI Core API error: {response.status_code}",
                    status_code=response.status_code,
                )
            return response
        raise LLMError("AI Core API error: 401", error_type="auth", status_code=401)

    # === Streaming ===

    async def stream_events(
        self,
        messages: List[Dict[str, Any]],
        tool_choice: ToolChoice = ToolChoice.AUTO,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Open a streamed completion and yield provider events as dicts.

        Chat-completions deployments are normalized into
        content_block_delta/text_delta events so callers see one protocol.

        Raises:
            LLMError: on connect failure, non-2xx status, an in-band error
                event, or a transport failure mid-stream
        """
        deployment = self.config.deployment_id
        if self.model_type == "anthropic":
            path = _deployment_path(deployment, "invoke-with-response-stream")
            body = self.build_anthropic_body(messages, tool_choice, max_tokens)
        else:
            path = _deployment_path(deployment, "chat/completions")
            body = self.build_openai_body(messages, stream=True, max_tokens=max_tokens)

        url = self.url(path)
        headers = await self.auth_headers()
        start = time.time()
        log_llm(logger, "start", model=deployment)

        try:
            async with self.http.stream("POST", url, json=body, headers=headers) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(f"AI Core streaming error: {detail[:500]}")
                    if response.status_code == 401:
                        self.token_cache.invalidate()
                    raise LLMError(
                        f"AI Core API error: {response.status_code}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    event = parse_event_line(line)
                    if event is None:
                        continue
                    if self.model_type != "anthropic":
                        event = _openai_chunk_to_event(event)
                        if event is None:
                            continue
                    elif event.get("type") == "error":
                        error = event.get("error") or {}
                        raise LLMError(
                            error.get("message") or "Provider stream error",
                            details=error.get("type"),
                            error_type="stream",
                        )
                    yield event
        except httpx.TimeoutException as e:
            raise LLMError("Provider stream timed out", details=str(e), error_type="timeout")
        except httpx.RequestError as e:
            raise LLMError("Provider stream interrupted", details=str(e), error_type="stream")

        log_llm(logger, "end", model=deployment, duration=time.time() - start)

    # === Deployment metadata ===

    async def get_deployment_info(self) -> Dict[str, Any]:
        """Deployment record from the AI Core lm API."""
        url = self.url(f"/v2/lm/deployments/{self.config.deployment_id}")
        headers = await self.auth_headers()
        try:
            response = await self.http.get(url, headers=headers)
        except httpx.RequestError as e:
            raise LLMError("Provider unreachable", details=str(e))
        if response.status_code >= 400:
            raise LLMError(f"AI Core API error: {response.status_code}", status_code=response.status_code)
        return response.json()
