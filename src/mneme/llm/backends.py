"""Chat-completion collaborators used for summaries and answer polishing."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from mneme.config import ChatConfig
from mneme.exceptions import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class Message:
    role: str
    content: str


@dataclass
class ChatResponse:
    content: str
    model: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    finish_reason: str = ""


@runtime_checkable
class ChatBackend(Protocol):
    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse: ...

    async def close(self) -> None: ...


class OpenAIChatBackend:
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4.1-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 512,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY is required for the openai chat provider")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        return self._client

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
        }
        resp = await client.post("/chat/completions", json=body)
        resp.raise_for_status()
        data = resp.json()
        choice = data["choices"][0]
        return ChatResponse(
            content=str(choice["message"]["content"]),
            model=str(data.get("model", self.model)),
            usage=data.get("usage", {}),
            finish_reason=str(choice.get("finish_reason", "")),
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OllamaChatBackend:
    def __init__(
        self,
        model: str = "llama3.1:8b-instruct",
        base_url: str = "http://localhost:11434",
        timeout: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 512,
    ) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {
                "temperature": temperature if temperature is not None else self.temperature,
                "num_predict": max_tokens if max_tokens is not None else self.max_tokens,
            },
        }
        resp = await client.post("/api/chat", json=body)
        resp.raise_for_status()
        data = resp.json()
        return ChatResponse(
            content=str(data.get("message", {}).get("content", "")),
            model=self.model,
            finish_reason=str(data.get("done_reason", "")),
        )

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def create_chat_backend(config: ChatConfig | None = None, ollama_host: str = "") -> ChatBackend | None:
    """Build the configured chat backend; ``None`` when no provider is set."""
    cfg = config or ChatConfig()
    provider = (cfg.provider or "").strip().lower()
    if not provider or provider == "none":
        return None
    common = {"timeout": cfg.timeout, "temperature": cfg.temperature, "max_tokens": cfg.max_tokens}
    if provider == "openai":
        return OpenAIChatBackend(model=cfg.model or "gpt-4.1-mini", **common)
    if provider == "ollama":
        return OllamaChatBackend(
            model=cfg.model or "llama3.1:8b-instruct",
            base_url=ollama_host or "http://localhost:11434",
            **common,
        )
    raise ValueError(f"Unsupported chat provider: {cfg.provider}")


async def simple_chat(backend: ChatBackend, system_prompt: str, user_prompt: str) -> str:
    """One system+user exchange; transport failures surface as ProviderError."""
    try:
        resp = await backend.chat([
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_prompt),
        ])
    except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
        raise ProviderError(f"chat request failed: {exc}") from exc
    return resp.content.strip()
