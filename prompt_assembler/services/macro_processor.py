"""
Macro processor for prompt templates.

Replaces SillyTavern-style macros ({{char}}, {{user}}, etc.) in prompt
content and built-in templates with per-request values. Runs once for every
prompt during the merge step, before any token counting.
"""

import re
from typing import Dict, List, Optional


class MacroProcessor:
    """
    Per-request macro processor.

    Handles:
    - {{char}}, <CHAR>, <BOT> → character name
    - {{user}}, <USER> → user name
    - {{group}} → group member list (character name outside groups)
    - {{charIfNotGroup}} → character name, or the group list in groups
    - Value macros supplied by the caller ({{personality}}, {{scenario}},
      {{original}}, {{lastChatMessage}}, ...)
    - Utility macros ({{newline}}, {{newline::N}}, {{trim}}, {{noop}},
      {{// comments}})

    Unknown macros are left untouched.
    """

    def __init__(
        self,
        character_name: str,
        user_name: str,
        group_names: Optional[List[str]] = None,
        values: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the macro processor.

        Args:
            character_name: Name used for {{char}}
            user_name: Name used for {{user}}
            group_names: Member names of a group chat, if any
            values: Extra macro values keyed by macro name (case-insensitive)
        """
        self.character_name = character_name
        self.user_name = user_name
        self.group_names = list(group_names or [])
        self.values = {key.lower(): value for key, value in (values or {}).items()}

    def with_values(self, **values: str) -> "MacroProcessor":
        """Copy of this processor with additional macro values."""
        merged = dict(self.values)
        merged.update({key.lower(): value for key, value in values.items()})
        return MacroProcessor(self.character_name, self.user_name, self.group_names, merged)

    def process(self, text: Optional[str]) -> str:
        """
        Process all macros in the given text.

        Args:
            text: Text containing macros

        Returns:
            Text with macros replaced
        """
        if not text:
            return ""

        text = self._replace_value_macros(text)
        text = self._replace_character_macros(text)
        text = self._replace_user_macros(text)
        text = self._replace_utility_macros(text)
        return text

    def _group_list(self) -> str:
        return ", ".join(self.group_names) if self.group_names else self.character_name

    def _replace_value_macros(self, text: str) -> str:
        if not self.values:
            return text

        def lookup(match: re.Match) -> str:
            key = match.group(1).lower()
            return self.values.get(key, match.group(0))

        return re.sub(r'\{\{(\w+)\}\}', lookup, text)

    def _replace_character_macros(self, text: str) -> str:
        text = re.sub(r'\{\{charIfNotGroup\}\}', lambda _: self._group_list(), text, flags=re.IGNORECASE)
        text = re.sub(r'\{\{group\}\}', lambda _: self._group_list(), text, flags=re.IGNORECASE)
        text = re.sub(r'\{\{char\}\}', lambda _: self.character_name, text, flags=re.IGNORECASE)

        # Legacy angle bracket formats
        text = re.sub(r'<CHAR>', lambda _: self.character_name, text, flags=re.IGNORECASE)
        text = re.sub(r'<BOT>', lambda _: self.character_name, text, flags=re.IGNORECASE)
        return text

    def _replace_user_macros(self, text: str) -> str:
        text = re.sub(r'\{\{user\}\}', lambda _: self.user_name, text, flags=re.IGNORECASE)
        text = re.sub(r'<USER>', lambda _: self.user_name, text, flags=re.IGNORECASE)
        return text

    def _replace_utility_macros(self, text: str) -> str:
        text = re.sub(
            r'\{\{newline::(\d+)\}\}',
            lambda m: '\n' * int(m.group(1)),
            text,
            flags=re.IGNORECASE
        )
        text = re.sub(r'\{\{newline\}\}', '\n', text, flags=re.IGNORECASE)

        # {{trim}} also eats the newlines around it
        text = re.sub(r'\n*\{\{trim\}\}\n*', '', text, flags=re.IGNORECASE)
        text = re.sub(r'\{\{noop\}\}', '', text, flags=re.IGNORECASE)
        text = re.sub(r'\{\{//[^}]*\}\}', '', text)
        return text


def format_template(template: str, value: str) -> str:
    """Fill the ``{0}`` placeholder of a format template such as wi_format."""
    if not value:
        return ""
    if not template or not template.strip():
        return value
    return template.replace("{0}", value)
