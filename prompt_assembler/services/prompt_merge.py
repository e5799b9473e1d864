"""
Prompt Merge Service

Combines the per-request system prompts (world info, character card fields,
persona, control prompts, extension output) with the user-configured prompt
order. The user's role and injection settings always win; content always
comes from the current request.
"""

import inspect
import logging
import re
from typing import Dict, List, Optional

from prompt_assembler.config.models import AssemblyConfig
from prompt_assembler.models.chat import AssemblyRequest, ExtensionPrompt, ExtensionPromptPosition
from prompt_assembler.models.prompt import (
    DEFAULT_ORDER,
    InjectionPosition,
    Prompt,
    PromptCollection,
    PromptRole,
)
from prompt_assembler.services.macro_processor import MacroProcessor, format_template

logger = logging.getLogger(__name__)

# Extension keys with a dedicated prompt identifier, and whether the
# extension's own role is honoured
KNOWN_EXTENSION_PROMPTS: Dict[str, tuple] = {
    '1_memory': ('summary', True),
    '2_floating_prompt': ('authorsNote', True),
    '3_vectors': ('vectorsMemory', False),
    '4_vectors_data_bank': ('vectorsDataBank', True),
    'chromadb': ('smartContext', False),
}

# Extension keys handled elsewhere by the host application
IGNORED_EXTENSION_KEYS = {'PERSONA_DESCRIPTION', 'QUIET_PROMPT', 'DEPTH_PROMPT'}


def get_prompt_position(position: ExtensionPromptPosition) -> Optional[str]:
    """Side of the main prompt a relative extension prompt attaches to."""
    if position == ExtensionPromptPosition.BEFORE_PROMPT:
        return 'start'
    if position == ExtensionPromptPosition.IN_PROMPT:
        return 'end'
    return None


def build_macro_processor(request: AssemblyRequest) -> MacroProcessor:
    """Macro processor carrying the character card values of a request."""
    return MacroProcessor(
        request.char_name,
        request.user_name,
        request.group_names,
        values={
            'description': request.char_description,
            'personality': request.char_personality,
            'scenario': request.scenario,
            'persona': request.persona_description,
        },
    )


async def _passes_filter(extension: ExtensionPrompt) -> bool:
    if extension.filter is None:
        return True
    result = extension.filter()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


def prepare_prompt(prompt: Prompt, macros: MacroProcessor, original: Optional[str] = None) -> Prompt:
    """Copy of the prompt with macros substituted; {{original}} is the replaced content."""
    if original is not None:
        macros = macros.with_values(original=original)
    return prompt.copy(content=macros.process(prompt.content))


async def collect_system_prompts(
    request: AssemblyRequest,
    config: AssemblyConfig,
    macros: MacroProcessor,
) -> List[Prompt]:
    """
    Build the request's built-in and extension prompts.

    Returns:
        Prompts in merge order; extension prompts injected in chat are
        returned as absolute prompts in the default order group
    """
    scenario = macros.process(config.scenario_format) if request.scenario and config.scenario_format else request.scenario
    personality = (
        macros.process(config.personality_format)
        if request.char_personality and config.personality_format
        else request.char_personality
    )
    impersonation = config.impersonation_prompt if config.impersonation_prompt else ''

    def system(identifier: str, content: str, role: str = PromptRole.SYSTEM.value) -> Prompt:
        return Prompt(identifier=identifier, role=role, content=content or '', system_prompt=True)

    prompts = [
        # Ordered prompts for which a marker should exist
        system('worldInfoBefore', format_template(config.wi_format, request.world_info_before)),
        system('worldInfoAfter', format_template(config.wi_format, request.world_info_after)),
        system('charDescription', request.char_description),
        system('charPersonality', personality),
        system('scenario', scenario),
        # Unordered prompts without marker
        system('impersonate', impersonation),
        system('quietPrompt', request.quiet_prompt),
        system('groupNudge', config.group_nudge_prompt),
        system('bias', request.bias, role=PromptRole.ASSISTANT.value),
    ]

    for key, (identifier, use_role) in KNOWN_EXTENSION_PROMPTS.items():
        extension = request.extension_prompts.get(key)
        if not extension or not extension.value:
            continue
        if extension.position == ExtensionPromptPosition.IN_CHAT:
            continue
        prompts.append(Prompt(
            identifier=identifier,
            role=extension.role.value if use_role else PromptRole.SYSTEM.value,
            content=extension.value,
            system_prompt=True,
            position=get_prompt_position(extension.position),
        ))

    if request.persona_description and request.persona_in_prompt:
        prompts.append(system('personaDescription', request.persona_description))

    for key, extension in request.extension_prompts.items():
        if key in KNOWN_EXTENSION_PROMPTS or key in IGNORED_EXTENSION_KEYS:
            continue
        if not extension.value:
            continue
        if extension.position not in (ExtensionPromptPosition.BEFORE_PROMPT, ExtensionPromptPosition.IN_PROMPT):
            continue
        if not await _passes_filter(extension):
            logger.debug(f"Extension prompt {key} filtered out")
            continue

        prompts.append(Prompt(
            identifier=re.sub(r'\W', '_', key),
            role=extension.role.value,
            content=extension.value,
            system_prompt=True,
            extension=True,
            position=get_prompt_position(extension.position),
        ))

    return prompts


async def collect_in_chat_extension_prompts(request: AssemblyRequest) -> List[Prompt]:
    """Extension prompts that are injected into chat history at a depth."""
    prompts = []
    for key, extension in request.extension_prompts.items():
        if key in IGNORED_EXTENSION_KEYS or not extension.value:
            continue
        if extension.position != ExtensionPromptPosition.IN_CHAT:
            continue
        if not await _passes_filter(extension):
            logger.debug(f"Extension prompt {key} filtered out")
            continue
        prompts.append(Prompt(
            identifier=f"{re.sub(r'[^A-Za-z0-9_]', '_', key)}_in_chat",
            role=extension.role.value,
            content=extension.value,
            system_prompt=True,
            extension=True,
            injection_position=InjectionPosition.ABSOLUTE,
            injection_depth=extension.depth,
            injection_order=DEFAULT_ORDER,
        ))
    return prompts


def _apply_override(
    prompts: PromptCollection,
    identifier: str,
    override: str,
    config: AssemblyConfig,
    macros: MacroProcessor,
) -> None:
    """Replace a prompt's content with a character-specific override."""
    prompt = prompts.get(identifier)
    if not override or prompt is None:
        return
    if prompt.forbid_overrides or config.is_prompt_disabled(identifier):
        logger.debug(f"Override of {identifier} skipped")
        return

    original_content = prompt.content
    replacement = prepare_prompt(prompt.copy(content=override), macros, original=original_content)
    prompts.override(replacement, prompts.index(identifier))


async def prepare_prompts_for_chat_completion(
    request: AssemblyRequest,
    config: AssemblyConfig,
    macros: Optional[MacroProcessor] = None,
) -> PromptCollection:
    """
    Merge the request's prompts into the user's prompt order.

    Args:
        request: Assembly request
        config: Assembly configuration with the prompt order
        macros: Macro processor, built from the request when omitted

    Returns:
        PromptCollection ready for the assembler
    """
    macros = macros or build_macro_processor(request)
    prompts = config.prompt_collection(request.type.value)

    # Prompt manager prompts get their macros substituted as well
    for position, prompt in enumerate(list(prompts)):
        prompts.set(prepare_prompt(prompt, macros), position)

    system_prompts = await collect_system_prompts(request, config, macros)
    system_prompts.extend(await collect_in_chat_extension_prompts(request))

    for prompt in system_prompts:
        configured = prompts.get(prompt.identifier)
        if configured is not None:
            prompt = prompt.copy(
                injection_position=configured.injection_position,
                injection_depth=configured.injection_depth,
                injection_order=configured.injection_order,
                role=configured.role,
            )

        prepared = prepare_prompt(prompt, macros)
        marker_index = prompts.index(prompt.identifier)
        if marker_index != -1:
            prompts.set(prepared, marker_index)
        else:
            prompts.add(prepared)

    _apply_override(prompts, 'main', request.system_prompt_override, config, macros)
    _apply_override(prompts, 'jailbreak', request.jailbreak_prompt_override, config, macros)

    logger.debug(f"Prepared {len(prompts)} prompts, overridden: {prompts.overridden_prompts}")
    return prompts
