"""
Prompt Assembler - token-budgeted prompt assembly for chat completion backends.

Turns a character card, persona, world info, extension prompts, example
dialogues and a chat log into the ordered message list sent to a chat
completion API, without exceeding the model's context window.
"""

__version__ = "0.1.0"

from prompt_assembler.config import AssemblyConfig, ConfigLoader
from prompt_assembler.exceptions import (
    AssemblyError,
    IdentifierNotFoundError,
    InvalidCharacterNameError,
    PromptAssemblyError,
    TokenBudgetExceededError,
)
from prompt_assembler.models import AssemblyRequest, AssemblyResult, ChatTurn, GenerationType
from prompt_assembler.services.chat_completion import ChatCompletion
from prompt_assembler.services.prompt_assembly import PromptAssemblyService
from prompt_assembler.services.token_counter import get_token_counter

__all__ = [
    "AssemblyConfig",
    "ConfigLoader",
    "AssemblyError",
    "IdentifierNotFoundError",
    "InvalidCharacterNameError",
    "PromptAssemblyError",
    "TokenBudgetExceededError",
    "AssemblyRequest",
    "AssemblyResult",
    "ChatTurn",
    "GenerationType",
    "ChatCompletion",
    "PromptAssemblyService",
    "get_token_counter",
]
