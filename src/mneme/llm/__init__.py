"""Chat collaborators."""

from mneme.llm.backends import (
    ChatBackend,
    ChatResponse,
    Message,
    OllamaChatBackend,
    OpenAIChatBackend,
    create_chat_backend,
    simple_chat,
)

__all__ = [
    "ChatBackend",
    "ChatResponse",
    "Message",
    "OllamaChatBackend",
    "OpenAIChatBackend",
    "create_chat_backend",
    "simple_chat",
]
