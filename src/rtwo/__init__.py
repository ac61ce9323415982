"""Top-level package for rtwo."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .app import RtwoApp
    from .client import OllamaClient
    from .config import SessionConfig, load_config
    from .exceptions import (
        InputError,
        NotFoundError,
        RtwoError,
        StoreCorruptError,
        StoreError,
        TransportError,
    )
    from .models import Conversation, RenderMode, Turn, TurnStats
    from .renderer import Renderer
    from .session import ChatSession
    from .store import ConversationStore

_EXPORTS = {
    "RtwoApp": "app",
    "OllamaClient": "client",
    "SessionConfig": "config",
    "load_config": "config",
    "InputError": "exceptions",
    "NotFoundError": "exceptions",
    "RtwoError": "exceptions",
    "StoreCorruptError": "exceptions",
    "StoreError": "exceptions",
    "TransportError": "exceptions",
    "Conversation": "models",
    "RenderMode": "models",
    "Turn": "models",
    "TurnStats": "models",
    "Renderer": "renderer",
    "ChatSession": "session",
    "ConversationStore": "store",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import rtwo`` stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)
