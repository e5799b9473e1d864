"""Shared fixtures for prompt assembler tests."""

import json

import pytest

from prompt_assembler.config.models import AssemblyConfig


class CharacterTokenCounter:
    """
    Deterministic counter: one token per character of content plus name.

    Tool calls count one token per character of their JSON form.
    """

    def __init__(self):
        self.calls = 0

    async def count(self, payload, full=False):
        self.calls += 1
        messages = payload if isinstance(payload, list) else [payload]
        total = 0
        for message in messages:
            content = message.get('content') or ''
            if isinstance(content, list):
                content = ''.join(part.get('text', '') for part in content if part.get('type') == 'text')
            total += len(content)
            total += len(message.get('name') or '')
            tool_calls = message.get('tool_calls')
            if tool_calls:
                total += len(tool_calls if isinstance(tool_calls, str) else json.dumps(tool_calls))
        return total


@pytest.fixture
def counter():
    return CharacterTokenCounter()


def make_config(**overrides) -> AssemblyConfig:
    """Config with no framing overhead and empty utility prompts unless overridden."""
    values = {
        'context_size': 1000,
        'max_response_tokens': 0,
        'framing_overhead_tokens': 0,
        'new_chat_prompt': '',
        'new_group_chat_prompt': '',
        'new_example_chat_prompt': '',
        'group_nudge_prompt': '',
        'impersonation_prompt': '',
    }
    values.update(overrides)
    return AssemblyConfig(**values)


@pytest.fixture
def config_factory():
    return make_config
