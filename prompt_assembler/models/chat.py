"""Request-side data: stored chat turns, extension prompts, assembly request and result."""

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from prompt_assembler.models.prompt import DEFAULT_DEPTH, PromptRole


class GenerationType(str, enum.Enum):
    """Kinds of generation requests."""
    NORMAL = "normal"
    REGENERATE = "regenerate"
    SWIPE = "swipe"
    CONTINUE = "continue"
    IMPERSONATE = "impersonate"
    QUIET = "quiet"


class MediaType(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class MediaDisplay(str, enum.Enum):
    LIST = "list"         # Every attachment is sent
    GALLERY = "gallery"   # Only the selected attachment is sent


class ExtensionPromptPosition(str, enum.Enum):
    """Where an extension wants its prompt to go."""
    NONE = "none"
    IN_PROMPT = "in_prompt"           # After the main prompt
    IN_CHAT = "in_chat"               # Injected at a depth in chat history
    BEFORE_PROMPT = "before_prompt"   # Before the main prompt


@dataclass
class MediaAttachment:
    """Media attached to a chat turn. Duration is in seconds when known."""
    url: str
    type: MediaType = MediaType.IMAGE
    duration: Optional[float] = None


@dataclass
class ToolInvocation:
    """A tool call made by the model and its result."""
    id: str
    name: str
    parameters: str = ""
    result: str = ""
    signature: Optional[str] = None


@dataclass
class ChatTurn:
    """
    One persisted chat turn as stored by the host application.

    The assembler only reads turns; they are converted into prompt dicts by
    ``format_chat_messages`` before injection and budgeting.
    """
    name: str
    mes: str
    is_user: bool = False
    is_narrator: bool = False
    ignored: bool = False
    force_avatar: bool = False
    media: List[MediaAttachment] = field(default_factory=list)
    media_display: MediaDisplay = MediaDisplay.LIST
    media_index: int = 0
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    reasoning_signature: Optional[str] = None
    source: Optional[str] = None
    model: Optional[str] = None


@dataclass
class ExtensionPrompt:
    """
    Prompt contributed by an extension (summaries, author's note, vector memory).

    ``filter`` may be a plain or async callable; a falsy result drops the
    prompt for this request.
    """
    value: str
    position: ExtensionPromptPosition = ExtensionPromptPosition.IN_PROMPT
    depth: int = DEFAULT_DEPTH
    role: PromptRole = PromptRole.SYSTEM
    filter: Optional[Callable[[], Any]] = None


@dataclass
class AssemblyRequest:
    """Per-request inputs for one prompt assembly pass."""
    char_name: str
    user_name: str = "User"
    group_names: List[str] = field(default_factory=list)
    char_description: str = ""
    char_personality: str = ""
    scenario: str = ""
    world_info_before: str = ""
    world_info_after: str = ""
    persona_description: str = ""
    persona_in_prompt: bool = True
    bias: str = ""
    quiet_prompt: str = ""
    quiet_image: Optional[str] = None
    type: GenerationType = GenerationType.NORMAL
    cycle_prompt: str = ""
    system_prompt_override: str = ""
    jailbreak_prompt_override: str = ""
    extension_prompts: Dict[str, ExtensionPrompt] = field(default_factory=dict)
    chat: List[ChatTurn] = field(default_factory=list)
    message_examples: List[str] = field(default_factory=list)
    tool_definitions: List[Dict[str, Any]] = field(default_factory=list)
    source: Optional[str] = None
    model: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return bool(self.group_names)


@dataclass
class AssemblyResult:
    """Final wire-ready payload plus accounting details."""
    messages: List[Dict[str, Any]]
    total_tokens: int
    remaining_budget: int
    token_breakdown: Dict[str, int]
    overridden_prompts: List[str] = field(default_factory=list)
    log: List[str] = field(default_factory=list)
