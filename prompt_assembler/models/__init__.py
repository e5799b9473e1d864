"""Data model for prompts, messages and assembly requests."""

from .prompt import Prompt, PromptCollection, PromptRole, InjectionPosition
from .chat import (
    AssemblyRequest,
    AssemblyResult,
    ChatTurn,
    ExtensionPrompt,
    ExtensionPromptPosition,
    GenerationType,
    MediaAttachment,
    MediaDisplay,
    MediaType,
    ToolInvocation,
)
from .message import Message, MessageCollection

__all__ = [
    "Prompt",
    "PromptCollection",
    "PromptRole",
    "InjectionPosition",
    "AssemblyRequest",
    "AssemblyResult",
    "ChatTurn",
    "ExtensionPrompt",
    "ExtensionPromptPosition",
    "GenerationType",
    "MediaAttachment",
    "MediaDisplay",
    "MediaType",
    "ToolInvocation",
    "Message",
    "MessageCollection",
]
