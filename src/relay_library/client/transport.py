# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
HTTP transport for the three wire dialects.

Builds the provider-specific streaming request from a ChatRequest and opens
it with httpx. Non-2xx responses are read in full and raised as
UpstreamHTTPError so the orchestrator can classify them.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from ..constants import ANTHROPIC_API_VERSION, DEFAULT_REQUEST_TIMEOUT
from ..error_handler import UpstreamHTTPError, mask_credential

lib_logger = logging.getLogger("relay_library")

DEFAULT_MAX_TOKENS = 4096


@dataclass
class ChatRequest:
    """Provider-neutral chat request using OpenAI-style messages."""

    model: str
    messages: List[Dict[str, Any]]
    system: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    tools: Optional[List[Dict[str, Any]]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PreparedRequest:
    method: str
    url: str
    headers: Dict[str, str]
    json: Dict[str, Any]


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return ""


def _split_system(request: ChatRequest):
    """Pulls system messages out of the list; explicit ``system`` comes first."""
    system_parts = [request.system] if request.system else []
    messages = []
    for message in request.messages:
        if message.get("role") == "system":
            system_parts.append(_message_text(message))
        else:
            messages.append(message)
    return "\n\n".join(part for part in system_parts if part), messages


def _function_specs(tools: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    specs = []
    for tool in tools or []:
        function = tool.get("function", tool)
        if function.get("name"):
            specs.append(function)
    return specs


# =============================================================================
# REQUEST BUILDERS
# =============================================================================


def build_openai_request(api_base: str, api_key: str, request: ChatRequest) -> PreparedRequest:
    body: Dict[str, Any] = {
        "model": request.model,
        "messages": list(request.messages),
        "stream": True,
        "stream_options": {"include_usage": True},
    }
    if request.system:
        body["messages"] = [{"role": "system", "content": request.system}] + body["messages"]
    if request.max_tokens is not None:
        body["max_tokens"] = request.max_tokens
    if request.temperature is not None:
        body["temperature"] = request.temperature
    if request.tools:
        body["tools"] = request.tools
    body.update(request.extra)
    return PreparedRequest(
        method="POST",
        url=f"{api_base.rstrip('/')}/chat/completions",
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        },
        json=body,
    )


def build_anthropic_request(api_base: str, api_key: str, request: ChatRequest) -> PreparedRequest:
    system, messages = _split_system(request)
    body: Dict[str, Any] = {
        "model": request.model,
        "messages": [
            {"role": m.get("role", "user"), "content": m.get("content", "")}
            for m in messages
        ],
        "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        "stream": True,
    }
    if system:
        body["system"] = system
    if request.temperature is not None:
        body["temperature"] = request.temperature
    specs = _function_specs(request.tools)
    if specs:
        body["tools"] = [
            {
                "name": spec["name"],
                "description": spec.get("description", ""),
                "input_schema": spec.get("parameters") or {"type": "object", "properties": {}},
            }
            for spec in specs
        ]
    body.update(request.extra)
    return PreparedRequest(
        method="POST",
        url=f"{api_base.rstrip('/')}/messages",
        headers={
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        },
        json=body,
    )


def build_gemini_request(api_base: str, api_key: str, request: ChatRequest) -> PreparedRequest:
    system, messages = _split_system(request)
    contents = [
        {
            "role": "model" if m.get("role") == "assistant" else "user",
            "parts": [{"text": _message_text(m)}],
        }
        for m in messages
    ]
    body: Dict[str, Any] = {"contents": contents}
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    generation_config: Dict[str, Any] = {}
    if request.max_tokens is not None:
        generation_config["maxOutputTokens"] = request.max_tokens
    if request.temperature is not None:
        generation_config["temperature"] = request.temperature
    if generation_config:
        body["generationConfig"] = generation_config
    specs = _function_specs(request.tools)
    if specs:
        body["tools"] = [{"functionDeclarations": specs}]
    body.update(request.extra)
    return PreparedRequest(
        method="POST",
        url=f"{api_base.rstrip('/')}/models/{request.model}:streamGenerateContent?alt=sse",
        headers={
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        },
        json=body,
    )


REQUEST_BUILDERS: Dict[str, Callable[[str, str, ChatRequest], PreparedRequest]] = {
    "openai": build_openai_request,
    "anthropic": build_anthropic_request,
    "gemini": build_gemini_request,
}


# =============================================================================
# TRANSPORT
# =============================================================================


class HttpTransport:
    """
    One credential's connection to one provider.

    Owns its httpx.AsyncClient unless a shared client is passed in.
    """

    def __init__(
        self,
        provider: str,
        dialect: str,
        api_base: str,
        api_key: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        shared_client: Optional[httpx.AsyncClient] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if dialect not in REQUEST_BUILDERS:
            raise ValueError(f"No request builder for dialect '{dialect}'")
        self.provider = provider
        self.dialect = dialect
        self.api_base = api_base
        self._api_key = api_key
        self._timeout = timeout
        self._http_transport = http_transport
        self._shared_client = shared_client
        self._owns_client = shared_client is None
        self.client: Optional[httpx.AsyncClient] = shared_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._shared_client is not None:
            return self._shared_client
        if self.client is None or self.client.is_closed:
            timeout_config = httpx.Timeout(
                connect=30.0, read=self._timeout, write=30.0, pool=30.0
            )
            self.client = httpx.AsyncClient(
                timeout=timeout_config,
                follow_redirects=True,
                transport=self._http_transport,
            )
        return self.client

    def build(self, request: ChatRequest) -> PreparedRequest:
        return REQUEST_BUILDERS[self.dialect](self.api_base, self._api_key, request)

    @asynccontextmanager
    async def stream(self, request: ChatRequest) -> AsyncIterator[httpx.Response]:
        """
        Opens a streaming request.

        Yields:
            The httpx response, positioned before the first body byte. It is
            closed when the context exits.

        Raises:
            UpstreamHTTPError: The provider answered with a non-2xx status.
            httpx.TransportError: Connection-level failure.
        """
        prepared = self.build(request)
        client = self._get_client()
        http_request = client.build_request(
            prepared.method, prepared.url, json=prepared.json, headers=prepared.headers
        )
        lib_logger.debug(
            f"POST {prepared.url} ({self.provider}, key {mask_credential(self._api_key)})"
        )
        response = await client.send(http_request, stream=True)
        try:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise UpstreamHTTPError(
                    response.status_code,
                    body,
                    dict(response.headers),
                    provider=self.provider,
                )
            yield response
        finally:
            await response.aclose()

    async def close(self) -> None:
        if not self._owns_client:
            return
        if self.client and not self.client.is_closed:
            try:
                await self.client.aclose()
            except Exception as exc:
                lib_logger.warning(f"Error closing HTTP client: {exc}")

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
