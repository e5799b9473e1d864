"""Pydantic models for assembly configuration."""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from prompt_assembler.models.prompt import (
    DEFAULT_DEPTH,
    DEFAULT_ORDER,
    InjectionPosition,
    Prompt,
    PromptCollection,
    PromptRole,
)


DEFAULT_MAIN_PROMPT = "Write {{char}}'s next reply in a fictional chat between {{charIfNotGroup}} and {{user}}."
DEFAULT_IMPERSONATION_PROMPT = (
    "[Write your next reply from the point of view of {{user}}, using the chat history so far as a "
    "guideline for the writing style of {{user}}. Don't write as {{char}} or system. Don't describe "
    "actions of {{char}}.]"
)
DEFAULT_ENHANCE_DEFINITIONS_PROMPT = (
    "If you have more knowledge of {{char}}, add to the character's lore and personality to enhance "
    "them but keep the Character Sheet's definitions absolute."
)
DEFAULT_NEW_CHAT_PROMPT = "[Start a new Chat]"
DEFAULT_NEW_GROUP_CHAT_PROMPT = "[Start a new group chat. Group members: {{group}}]"
DEFAULT_NEW_EXAMPLE_CHAT_PROMPT = "[Example Chat]"
DEFAULT_CONTINUE_NUDGE_PROMPT = "[Continue your last message without repeating its original content.]"
DEFAULT_GROUP_NUDGE_PROMPT = "[Write the next reply only as {{char}}.]"


class NamesBehavior(str, Enum):
    """How speaker names are conveyed to the model."""
    NONE = "none"
    DEFAULT = "default"         # Prefix content in group chats / forced avatars
    COMPLETION = "completion"   # Use the message name field
    CONTENT = "content"         # Always prefix content with "Name: "


class PromptDefinition(BaseModel):
    """A prompt as configured by the user in the prompt manager."""

    identifier: str
    name: str = ""
    role: PromptRole = PromptRole.SYSTEM
    content: str = ""
    system_prompt: bool = False
    marker: bool = False
    injection_position: InjectionPosition = InjectionPosition.RELATIVE
    injection_depth: int = Field(default=DEFAULT_DEPTH, ge=0)
    injection_order: int = DEFAULT_ORDER
    injection_trigger: List[str] = Field(default_factory=list)
    forbid_overrides: bool = False

    def to_prompt(self) -> Prompt:
        return Prompt(
            identifier=self.identifier,
            role=self.role.value,
            content=self.content,
            name=self.name,
            system_prompt=self.system_prompt,
            marker=self.marker,
            injection_position=self.injection_position,
            injection_depth=self.injection_depth,
            injection_order=self.injection_order,
            injection_trigger=list(self.injection_trigger),
            forbid_overrides=self.forbid_overrides,
        )


class PromptOrderEntry(BaseModel):
    """Position and toggle of one prompt in the prompt order."""

    identifier: str
    enabled: bool = True


def _marker(identifier: str, name: str) -> PromptDefinition:
    return PromptDefinition(identifier=identifier, name=name, system_prompt=True, marker=True)


def default_prompts() -> List[PromptDefinition]:
    """Built-in prompt definitions."""
    return [
        PromptDefinition(identifier="main", name="Main Prompt", content=DEFAULT_MAIN_PROMPT, system_prompt=True),
        PromptDefinition(identifier="nsfw", name="Auxiliary Prompt", system_prompt=True),
        _marker("dialogueExamples", "Chat Examples"),
        PromptDefinition(identifier="jailbreak", name="Post-History Instructions", system_prompt=True),
        _marker("chatHistory", "Chat History"),
        _marker("worldInfoAfter", "World Info (after)"),
        _marker("worldInfoBefore", "World Info (before)"),
        PromptDefinition(
            identifier="enhanceDefinitions",
            name="Enhance Definitions",
            content=DEFAULT_ENHANCE_DEFINITIONS_PROMPT,
            system_prompt=True,
        ),
        _marker("charDescription", "Char Description"),
        _marker("charPersonality", "Char Personality"),
        _marker("scenario", "Scenario"),
        _marker("personaDescription", "Persona Description"),
    ]


def default_prompt_order() -> List[PromptOrderEntry]:
    """Built-in prompt order."""
    return [
        PromptOrderEntry(identifier="main"),
        PromptOrderEntry(identifier="worldInfoBefore"),
        PromptOrderEntry(identifier="personaDescription"),
        PromptOrderEntry(identifier="charDescription"),
        PromptOrderEntry(identifier="charPersonality"),
        PromptOrderEntry(identifier="scenario"),
        PromptOrderEntry(identifier="enhanceDefinitions", enabled=False),
        PromptOrderEntry(identifier="nsfw"),
        PromptOrderEntry(identifier="worldInfoAfter"),
        PromptOrderEntry(identifier="dialogueExamples"),
        PromptOrderEntry(identifier="chatHistory"),
        PromptOrderEntry(identifier="jailbreak"),
    ]


class AssemblyConfig(BaseModel):
    """
    Immutable configuration for one assembly pass.

    Passed explicitly into the assembler instead of being read from shared
    settings, so concurrent requests never observe each other's changes.
    """

    model_config = ConfigDict(frozen=True, extra='ignore')

    # Budget
    context_size: int = Field(default=4095, gt=0)
    max_response_tokens: int = Field(default=300, ge=0)
    framing_overhead_tokens: int = Field(default=3, ge=0, description="Tokens every reply is primed with")

    # Utility prompts
    new_chat_prompt: str = DEFAULT_NEW_CHAT_PROMPT
    new_group_chat_prompt: str = DEFAULT_NEW_GROUP_CHAT_PROMPT
    new_example_chat_prompt: str = DEFAULT_NEW_EXAMPLE_CHAT_PROMPT
    continue_nudge_prompt: str = DEFAULT_CONTINUE_NUDGE_PROMPT
    group_nudge_prompt: str = DEFAULT_GROUP_NUDGE_PROMPT
    impersonation_prompt: str = DEFAULT_IMPERSONATION_PROMPT
    send_if_empty: str = ""
    wi_format: str = "{0}"
    scenario_format: str = "{{scenario}}"
    personality_format: str = "{{personality}}"

    # Behaviour
    names_behavior: NamesBehavior = NamesBehavior.DEFAULT
    squash_system_messages: bool = False
    pin_examples: bool = False
    continue_prefill: bool = False
    assistant_prefill: str = ""
    supports_assistant_prefill: bool = False

    # Capabilities of the target backend
    image_inlining: bool = False
    video_inlining: bool = False
    audio_inlining: bool = False
    inline_image_quality: Literal["low", "auto", "high"] = "low"
    tool_calling: bool = False
    reasoning_signatures: bool = False

    log_prompts: bool = False

    # Prompt manager state
    prompts: List[PromptDefinition] = Field(default_factory=default_prompts)
    prompt_order: List[PromptOrderEntry] = Field(default_factory=default_prompt_order)

    @field_validator('prompts')
    @classmethod
    def validate_unique_identifiers(cls, v: List[PromptDefinition]) -> List[PromptDefinition]:
        """Prompt identifiers must be unique."""
        seen = set()
        for prompt in v:
            if prompt.identifier in seen:
                raise ValueError(f"duplicate prompt identifier '{prompt.identifier}'")
            seen.add(prompt.identifier)
        return v

    @model_validator(mode='after')
    def validate_budget_and_order(self) -> 'AssemblyConfig':
        if self.max_response_tokens >= self.context_size:
            raise ValueError('max_response_tokens must be smaller than context_size')
        known = {prompt.identifier for prompt in self.prompts}
        for entry in self.prompt_order:
            if entry.identifier not in known:
                raise ValueError(f"prompt_order references unknown prompt '{entry.identifier}'")
        return self

    def get_prompt(self, identifier: str) -> Optional[PromptDefinition]:
        for prompt in self.prompts:
            if prompt.identifier == identifier:
                return prompt
        return None

    def is_prompt_disabled(self, identifier: str) -> bool:
        """True when the prompt order explicitly disables the prompt."""
        for entry in self.prompt_order:
            if entry.identifier == identifier:
                return not entry.enabled
        return False

    def prompt_collection(self, generation_type: Optional[str] = None) -> PromptCollection:
        """
        Build the user-ordered prompt collection for a request.

        Args:
            generation_type: Prompts with a non-empty injection_trigger are
                kept only when it contains this type

        Returns:
            PromptCollection of enabled prompts in prompt order
        """
        collection = PromptCollection()
        for entry in self.prompt_order:
            if not entry.enabled:
                continue
            definition = self.get_prompt(entry.identifier)
            if definition is None:
                continue
            if definition.injection_trigger and generation_type not in definition.injection_trigger:
                continue
            collection.add(definition.to_prompt())
        return collection
