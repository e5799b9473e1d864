"""
Chat log and example dialogue formatting.

Converts stored chat turns and raw example dialogue blocks into the prompt
dicts the assembler works with, and validates names for the message name
field.
"""

import logging
import re
import unicodedata
from dataclasses import replace
from typing import Any, Dict, List, Optional

from prompt_assembler.config.models import AssemblyConfig, NamesBehavior
from prompt_assembler.exceptions import InvalidCharacterNameError
from prompt_assembler.models.chat import AssemblyRequest, ChatTurn

logger = logging.getLogger(__name__)

VALID_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9_-]{1,64}$')


def is_valid_name(name: str) -> bool:
    """Names in the message name field must match ^[a-zA-Z0-9_-]{1,64}$."""
    return bool(name) and VALID_NAME_PATTERN.match(name) is not None


def sanitize_name(name: str) -> str:
    """
    Make a name safe for the message name field.

    Accents are stripped and other invalid characters replaced by '_'.

    Raises:
        InvalidCharacterNameError: If nothing usable remains
    """
    if is_valid_name(name):
        return name

    decomposed = unicodedata.normalize('NFD', name or '')
    stripped = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))
    sanitized = re.sub(r'[^a-zA-Z0-9_-]', '_', stripped.strip())[:64]

    if not sanitized.strip('_'):
        raise InvalidCharacterNameError(name)

    logger.debug(f"Sanitized name '{name}' to '{sanitized}'")
    return sanitized


def format_chat_messages(request: AssemblyRequest, config: AssemblyConfig) -> List[Dict[str, Any]]:
    """
    Format stored chat turns into prompt dicts, newest first.

    Args:
        request: Assembly request holding the chat log (oldest first)
        config: Assembly configuration (names behavior)

    Returns:
        List of dicts with role, content, name, media, media_display,
        media_index, invocations and signature keys
    """
    messages = []

    for turn in reversed(request.chat):
        if turn.ignored:
            continue

        role = "user" if turn.is_user else "assistant"
        if turn.is_narrator:
            role = "system"

        content = _apply_names_behavior(turn, request, config)
        content = content.replace('\r', '')

        # Signatures are only valid for the source and model that produced them
        same_model = turn.source == request.source and turn.model == request.model
        invocations = []
        for invocation in turn.tool_invocations:
            if invocation.signature and not same_model:
                invocation = replace(invocation, signature=None)
            invocations.append(invocation)

        messages.append({
            'role': role,
            'content': content,
            'name': turn.name,
            'media': list(turn.media),
            'media_display': turn.media_display,
            'media_index': turn.media_index,
            'invocations': invocations,
            'signature': turn.reasoning_signature if same_model else None,
        })

    return messages


def _apply_names_behavior(turn: ChatTurn, request: AssemblyRequest, config: AssemblyConfig) -> str:
    content = turn.mes
    behavior = config.names_behavior

    if behavior == NamesBehavior.DEFAULT:
        if (request.is_group and turn.name != request.user_name) or (
            turn.force_avatar and turn.name != request.user_name and not turn.is_narrator
        ):
            content = f"{turn.name}: {content}"
    elif behavior == NamesBehavior.CONTENT:
        if not turn.is_narrator:
            content = f"{turn.name}: {content}"

    return content


def parse_example_into_individual(
    example: str,
    user_name: str,
    char_name: str,
    group_names: Optional[List[str]] = None,
    append_names_for_group: bool = True,
) -> List[Dict[str, str]]:
    """
    Split one example dialogue block into individual messages.

    The first line is the block header and is skipped. Lines starting with
    the user name open a user message, lines starting with the character name (or
    any group member name) open an assistant message; other lines continue
    the current message.

    Args:
        example: Example block text
        user_name: User name used in the example
        char_name: Character name used in the example
        group_names: Group member names, if a group chat
        append_names_for_group: Prefix speaker names in group chats

    Returns:
        List of system messages named example_user / example_assistant
    """
    group_names = group_names or []
    group_prefixes = [f"{name}:" for name in group_names]
    result: List[Dict[str, str]] = []
    current_lines: List[str] = []
    in_user = False
    in_bot = False
    bot_name = char_name

    def add_message(name: str, system_name: str) -> None:
        text = '\n'.join(current_lines).replace(f"{name}:", '', 1).strip()
        if append_names_for_group and group_names:
            text = f"{name}: {text}"
        result.append({'role': 'system', 'content': text, 'name': system_name})
        current_lines.clear()

    lines = example.split('\n')
    for line in lines[1:]:
        if line.startswith(f"{user_name}:"):
            if in_bot:
                add_message(bot_name, 'example_assistant')
            in_user = True
            in_bot = False
        elif line.startswith(f"{char_name}:") or any(line.startswith(p) for p in group_prefixes):
            if not line.startswith(f"{char_name}:") and group_prefixes:
                bot_name = line.split(':')[0]
            if in_user:
                add_message(user_name, 'example_user')
            in_bot = True
            in_user = False
        current_lines.append(line)

    if in_user:
        add_message(user_name, 'example_user')
    elif in_bot:
        add_message(bot_name, 'example_assistant')

    return result


def format_message_examples(examples: List[str], request: AssemblyRequest) -> List[List[Dict[str, str]]]:
    """
    Parse raw example blocks (each beginning with <START>) into message lists.

    Returns:
        One list of messages per example block
    """
    blocks = []
    for item in examples:
        replaced = re.sub(r'<START>', '{Example Dialogue:}', item, count=1, flags=re.IGNORECASE)
        replaced = replaced.replace('\r', '')
        blocks.append(parse_example_into_individual(
            replaced,
            request.user_name,
            request.char_name,
            request.group_names,
        ))
    return blocks
