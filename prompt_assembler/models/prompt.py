"""
Draft prompts and the ordered prompt collection.

A Prompt is the cheap, not yet costed unit of content that is produced from
configuration plus per-request values (character card, persona, extension
output). Prompts live for one assembly pass and are turned into Messages by
the assembler.
"""

import enum
from dataclasses import dataclass, field, replace
from typing import List, Optional


DEFAULT_DEPTH = 4
DEFAULT_ORDER = 100


class PromptRole(str, enum.Enum):
    """Roles a prompt can be sent with."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class InjectionPosition(str, enum.Enum):
    """Where a prompt is placed."""
    RELATIVE = "relative"   # Fixed slot in the prompt order
    ABSOLUTE = "absolute"   # Injected into chat history at a depth


@dataclass
class Prompt:
    """
    A draft unit of prompt content.

    Empty content means the prompt is absent for this request. ``position``
    is only used by relative extension prompts and names the side of the
    main prompt they attach to ('start' or 'end').
    """
    identifier: str
    role: str = PromptRole.SYSTEM.value
    content: str = ""
    name: str = ""
    system_prompt: bool = False
    marker: bool = False
    injection_position: InjectionPosition = InjectionPosition.RELATIVE
    injection_depth: int = DEFAULT_DEPTH
    injection_order: int = DEFAULT_ORDER
    injection_trigger: List[str] = field(default_factory=list)
    forbid_overrides: bool = False
    extension: bool = False
    position: Optional[str] = None

    @property
    def is_absolute(self) -> bool:
        return self.injection_position == InjectionPosition.ABSOLUTE

    def copy(self, **changes) -> "Prompt":
        """Return a shallow copy with the given fields replaced."""
        return replace(self, **changes)


class PromptCollection:
    """
    Ordered, identifier-indexed sequence of prompts.

    Insertion order is significance order for relative prompts. Identifiers
    are unique: adding a prompt whose identifier already exists replaces it
    in place.
    """

    def __init__(self, *prompts: Prompt):
        self.collection: List[Prompt] = []
        self.overridden_prompts: List[str] = []
        self.add(*prompts)

    def add(self, *prompts: Prompt, index: Optional[int] = None) -> None:
        """
        Add prompts to the collection.

        Args:
            prompts: Prompts to add
            index: Insert at this position instead of appending
        """
        for offset, prompt in enumerate(prompts):
            existing = self.index(prompt.identifier)
            if existing != -1:
                self.collection[existing] = prompt
            elif index is None:
                self.collection.append(prompt)
            else:
                self.collection.insert(index + offset, prompt)

    def set(self, prompt: Prompt, position: int) -> None:
        self.collection[position] = prompt

    def get(self, identifier: str) -> Optional[Prompt]:
        """Get a prompt by identifier, or None."""
        for prompt in self.collection:
            if prompt.identifier == identifier:
                return prompt
        return None

    def index(self, identifier: str) -> int:
        """Position of the prompt with this identifier, -1 when missing."""
        for position, prompt in enumerate(self.collection):
            if prompt.identifier == identifier:
                return position
        return -1

    def has(self, identifier: str) -> bool:
        return self.index(identifier) != -1

    def override(self, prompt: Prompt, position: int) -> None:
        """Replace the prompt at ``position`` and remember the override."""
        self.collection[position] = prompt
        self.overridden_prompts.append(prompt.identifier)

    def __iter__(self):
        return iter(self.collection)

    def __len__(self) -> int:
        return len(self.collection)

    def __contains__(self, identifier: str) -> bool:
        return self.has(identifier)
