"""
Tests for the prompt assembly service.

Tests cover:
- Prompt order and marker placement
- Greedy chat history truncation (contiguous newest window)
- Mandatory prompt overflow
- Depth injection of absolute and in-chat extension prompts
- Relative extension prompts around the main prompt
- Atomic tool call blocks
- Dialogue examples and pinning
- Continue, impersonate, quiet and group generation
- Names handling, overrides, squashing and error wrapping
"""

import json

import pytest

from prompt_assembler.config.models import NamesBehavior, PromptDefinition, PromptOrderEntry
from prompt_assembler.exceptions import AssemblyError, InvalidCharacterNameError, TokenBudgetExceededError
from prompt_assembler.models.chat import (
    AssemblyRequest,
    ChatTurn,
    ExtensionPrompt,
    ExtensionPromptPosition,
    GenerationType,
    MediaAttachment,
    MediaDisplay,
    MediaType,
    ToolInvocation,
)
from prompt_assembler.models.message import Message
from prompt_assembler.models.prompt import InjectionPosition, Prompt, PromptRole
from prompt_assembler.services.prompt_assembly import PromptAssemblyService, populate_injection_prompts


def marker(identifier: str) -> PromptDefinition:
    return PromptDefinition(identifier=identifier, system_prompt=True, marker=True)


def custom_config(config_factory, prompts, **overrides):
    """Config whose prompt order is exactly ``prompts``, all enabled."""
    return config_factory(
        prompts=prompts,
        prompt_order=[PromptOrderEntry(identifier=p.identifier) for p in prompts],
        **overrides,
    )


def request_with(chat=None, **kwargs) -> AssemblyRequest:
    kwargs.setdefault('char_name', 'Seraphina')
    kwargs.setdefault('user_name', 'Alex')
    return AssemblyRequest(chat=chat or [], **kwargs)


def user(mes: str, name: str = 'Alex') -> ChatTurn:
    return ChatTurn(name=name, mes=mes, is_user=True)


def bot(mes: str, name: str = 'Seraphina', **kwargs) -> ChatTurn:
    return ChatTurn(name=name, mes=mes, **kwargs)


def contents(result):
    return [message['content'] for message in result.messages]


class TestPromptOrder:
    """Placement of ordered prompts."""

    @pytest.mark.asyncio
    async def test_default_prompt_order(self, counter, config_factory):
        config = config_factory()
        request = request_with(
            chat=[user('Hello'), bot('Hi there')],
            char_description='She is kind.',
            scenario='A forest.',
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'system', 'content': "Write Seraphina's next reply in a fictional chat between Seraphina and Alex."},
            {'role': 'system', 'content': 'She is kind.'},
            {'role': 'system', 'content': 'A forest.'},
            {'role': 'user', 'content': 'Hello'},
            {'role': 'assistant', 'content': 'Hi there'},
        ]

    @pytest.mark.asyncio
    async def test_world_info_and_persona_use_their_slots(self, counter, config_factory):
        config = config_factory(wi_format='[Lore: {0}]')
        request = request_with(
            world_info_before='Old kingdom.',
            world_info_after='Dragons exist.',
            persona_description='Alex is a ranger.',
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result)[:3] == [
            "Write Seraphina's next reply in a fictional chat between Seraphina and Alex.",
            '[Lore: Old kingdom.]',
            'Alex is a ranger.',
        ]
        assert contents(result)[-1] == '[Lore: Dragons exist.]'

    @pytest.mark.asyncio
    async def test_disabled_prompts_are_skipped(self, counter, config_factory):
        prompts = [
            PromptDefinition(identifier='main', content='MAIN', system_prompt=True),
            PromptDefinition(identifier='nsfw', content='AUX', system_prompt=True),
            marker('chatHistory'),
        ]
        config = config_factory(
            prompts=prompts,
            prompt_order=[
                PromptOrderEntry(identifier='main'),
                PromptOrderEntry(identifier='nsfw', enabled=False),
                PromptOrderEntry(identifier='chatHistory'),
            ],
        )

        result = await PromptAssemblyService(config, counter).assemble(request_with())

        assert contents(result) == ['MAIN']

    @pytest.mark.asyncio
    async def test_custom_user_prompt_is_placed_in_order(self, counter, config_factory):
        config = custom_config(config_factory, [
            PromptDefinition(identifier='main', content='MAIN', system_prompt=True),
            PromptDefinition(identifier='style', role=PromptRole.USER, content='Write tersely, {{user}}.'),
            marker('chatHistory'),
        ])

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=[user('Hi')]))

        assert result.messages == [
            {'role': 'system', 'content': 'MAIN'},
            {'role': 'user', 'content': 'Write tersely, Alex.'},
            {'role': 'user', 'content': 'Hi'},
        ]

    @pytest.mark.asyncio
    async def test_injection_trigger_limits_generation_types(self, counter, config_factory):
        config = custom_config(config_factory, [
            PromptDefinition(identifier='main', content='MAIN', system_prompt=True),
            PromptDefinition(identifier='swipe_only', content='SWIPE', injection_trigger=['swipe']),
            marker('chatHistory'),
        ])
        service = PromptAssemblyService(config, counter)

        normal = await service.assemble(request_with())
        swipe = await service.assemble(request_with(type=GenerationType.SWIPE))

        assert contents(normal) == ['MAIN']
        assert contents(swipe) == ['MAIN', 'SWIPE']


class TestBudgeting:
    """Budget accounting and truncation."""

    @pytest.mark.asyncio
    async def test_history_keeps_newest_contiguous_window(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [PromptDefinition(identifier='main', content='x' * 40, system_prompt=True), marker('chatHistory')],
            context_size=100,
            names_behavior=NamesBehavior.NONE,
        )
        # Oldest turn costs 30, newest 20
        request = request_with(chat=[user('c' * 30), bot('b' * 25), user('a' * 20)])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result) == ['x' * 40, 'b' * 25, 'a' * 20]
        assert result.total_tokens == 85
        assert result.remaining_budget == 15

    @pytest.mark.asyncio
    async def test_history_stops_at_first_turn_that_does_not_fit(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], context_size=30)
        request = request_with(chat=[user('a'), bot('b' * 40), user('c' * 20)])

        result = await PromptAssemblyService(config, counter).assemble(request)

        # 'a' would fit but the window must stay contiguous
        assert contents(result) == ['c' * 20]

    @pytest.mark.asyncio
    async def test_mandatory_prompt_overflow_raises(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [PromptDefinition(identifier='main', content='x' * 60, system_prompt=True), marker('chatHistory')],
            context_size=50,
        )

        with pytest.raises(TokenBudgetExceededError) as exc_info:
            await PromptAssemblyService(config, counter).assemble(request_with(chat=[user('hi')]))

        assert exc_info.value.identifier == 'main'

    @pytest.mark.asyncio
    async def test_framing_overhead_and_breakdown(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [PromptDefinition(identifier='main', content='x' * 10, system_prompt=True), marker('chatHistory')],
            context_size=100,
            framing_overhead_tokens=3,
        )

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=[user('hello')]))

        assert result.total_tokens == 15
        assert result.remaining_budget == 100 - 3 - 15
        assert result.token_breakdown['main'] == 10
        assert result.token_breakdown['chatHistory'] == 5

    @pytest.mark.asyncio
    async def test_tool_definitions_are_reserved(self, counter, config_factory):
        tools = [{'type': 'function', 'function': {'name': 'roll_dice'}}]
        config = custom_config(config_factory, [marker('chatHistory')], context_size=500, tool_calling=True)
        service = PromptAssemblyService(config, counter)

        normal = await service.assemble(request_with(tool_definitions=tools))
        quiet = await service.assemble(request_with(tool_definitions=tools, type=GenerationType.QUIET))

        assert normal.remaining_budget == 500 - len(json.dumps(tools))
        assert quiet.remaining_budget == 500


class TestDepthInjection:
    """Absolute prompts merged into chat history."""

    def absolute(self, identifier, content, depth, order=100, role=PromptRole.SYSTEM):
        return PromptDefinition(
            identifier=identifier,
            role=role,
            content=content,
            injection_position=InjectionPosition.ABSOLUTE,
            injection_depth=depth,
            injection_order=order,
        )

    @pytest.mark.asyncio
    async def test_prompt_lands_at_depth(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory'), self.absolute('note', 'NOTE', 1)])
        request = request_with(chat=[user('one'), bot('two'), user('three')])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'user', 'content': 'one'},
            {'role': 'assistant', 'content': 'two'},
            {'role': 'system', 'content': 'NOTE'},
            {'role': 'user', 'content': 'three'},
        ]

    @pytest.mark.asyncio
    async def test_order_groups_and_roles_at_same_depth(self, counter, config_factory):
        config = custom_config(config_factory, [
            marker('chatHistory'),
            self.absolute('high', 'HIGH', 0, order=200),
            self.absolute('low_user', 'LOW', 0, order=50, role=PromptRole.USER),
            self.absolute('low_system', 'LOWSYS', 0, order=50),
            self.absolute('low_system_2', 'MORE', 0, order=50),
        ])
        request = request_with(chat=[user('one'), bot('two')])

        result = await PromptAssemblyService(config, counter).assemble(request)

        # Higher order and the system role end up nearest to the newest turn
        assert result.messages == [
            {'role': 'user', 'content': 'one'},
            {'role': 'assistant', 'content': 'two'},
            {'role': 'user', 'content': 'LOW'},
            {'role': 'system', 'content': 'LOWSYS\nMORE'},
            {'role': 'system', 'content': 'HIGH'},
        ]

    @pytest.mark.asyncio
    async def test_depth_beyond_history_is_clamped(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory'), self.absolute('deep', 'DEEP', 10)])
        request = request_with(chat=[user('one'), bot('two')])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result) == ['DEEP', 'one', 'two']

    @pytest.mark.asyncio
    async def test_in_chat_extension_prompt(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')])
        request = request_with(
            chat=[user('one'), bot('two')],
            extension_prompts={
                'memory_recall': ExtensionPrompt(
                    'REMEMBER', position=ExtensionPromptPosition.IN_CHAT, depth=0, role=PromptRole.USER
                ),
            },
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages[-1] == {'role': 'user', 'content': 'REMEMBER'}

    @pytest.mark.asyncio
    async def test_filtered_extension_prompt_is_dropped(self, counter, config_factory):
        async def never():
            return False

        config = custom_config(config_factory, [marker('chatHistory')])
        request = request_with(
            chat=[user('one')],
            extension_prompts={
                'memory_recall': ExtensionPrompt('REMEMBER', position=ExtensionPromptPosition.IN_CHAT, filter=never),
            },
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result) == ['one']

    @pytest.mark.asyncio
    async def test_injection_counts_previous_insertions(self):
        prompts = [
            Prompt('d0', content='D0', injection_position=InjectionPosition.ABSOLUTE, injection_depth=0),
            Prompt('d1', content='D1', injection_position=InjectionPosition.ABSOLUTE, injection_depth=1),
        ]
        newest_first = [{'role': 'user', 'content': 't2'}, {'role': 'assistant', 'content': 't1'}]

        merged = await populate_injection_prompts(prompts, newest_first)

        assert [m['content'] for m in merged] == ['t1', 'D1', 't2', 'D0']
        assert all(m['injected'] for m in merged if m['content'].startswith('D'))

    @pytest.mark.asyncio
    async def test_injection_into_empty_history(self):
        prompts = [Prompt('d3', content='D3', injection_position=InjectionPosition.ABSOLUTE, injection_depth=3)]

        merged = await populate_injection_prompts(prompts, [])

        assert merged == [{'role': 'system', 'content': 'D3', 'injected': True}]


class TestExtensionPrompts:
    """Relative extension prompts attached to the main prompt."""

    @pytest.mark.asyncio
    async def test_before_and_after_main(self, counter, config_factory):
        config = custom_config(config_factory, [
            PromptDefinition(identifier='main', content='MAIN', system_prompt=True),
            marker('chatHistory'),
        ])
        request = request_with(extension_prompts={
            '1_memory': ExtensionPrompt('SUMMARY', position=ExtensionPromptPosition.BEFORE_PROMPT),
            '2_floating_prompt': ExtensionPrompt('NOTE', position=ExtensionPromptPosition.IN_PROMPT),
            'lorebook_extra': ExtensionPrompt('EXTRA', position=ExtensionPromptPosition.IN_PROMPT),
        })

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result) == ['SUMMARY', 'MAIN', 'NOTE', 'EXTRA']

    @pytest.mark.asyncio
    async def test_follows_absolute_main_into_history(self, counter, config_factory):
        config = custom_config(config_factory, [
            marker('chatHistory'),
            PromptDefinition(
                identifier='main',
                content='MAIN',
                system_prompt=True,
                injection_position=InjectionPosition.ABSOLUTE,
                injection_depth=0,
            ),
        ])
        request = request_with(
            chat=[user('one')],
            extension_prompts={'2_floating_prompt': ExtensionPrompt('NOTE')},
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'user', 'content': 'one'},
            {'role': 'system', 'content': 'MAIN\nNOTE'},
        ]


class TestToolCalls:
    """Tool invocations are kept or dropped as one block."""

    def tool_call_tokens(self):
        calls = [{'id': 'call_1', 'type': 'function', 'function': {'arguments': '{}', 'name': 'roll'}}]
        return len(json.dumps(calls))

    def chat(self):
        invocation = ToolInvocation(id='call_1', name='roll', parameters='{}', result='4')
        return [user('q'), bot('', tool_invocations=[invocation]), user('thanks')]

    @pytest.mark.asyncio
    async def test_tool_block_is_expanded(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], tool_calling=True)

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=self.chat()))

        assert result.messages[0] == {'role': 'user', 'content': 'q'}
        assert result.messages[1]['role'] == 'assistant'
        assert result.messages[1]['tool_calls'][0]['id'] == 'call_1'
        assert result.messages[2] == {'role': 'tool', 'content': '4', 'tool_call_id': 'call_1'}
        assert result.messages[3] == {'role': 'user', 'content': 'thanks'}

    @pytest.mark.asyncio
    async def test_tool_block_that_does_not_fit_ends_history(self, counter, config_factory):
        block = self.tool_call_tokens() + 1
        config = custom_config(
            config_factory, [marker('chatHistory')], tool_calling=True, context_size=len('thanks') + block - 1
        )

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=self.chat()))

        assert result.messages == [{'role': 'user', 'content': 'thanks'}]

    @pytest.mark.asyncio
    async def test_tool_block_exact_fit(self, counter, config_factory):
        block = self.tool_call_tokens() + 1
        config = custom_config(
            config_factory, [marker('chatHistory')], tool_calling=True, context_size=len('thanks') + block
        )

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=self.chat()))

        assert [m['role'] for m in result.messages] == ['assistant', 'tool', 'user']
        assert result.remaining_budget == 0

    @pytest.mark.asyncio
    async def test_missing_result_placeholder(self, counter, config_factory):
        invocation = ToolInvocation(id='call_9', name='look')
        config = custom_config(config_factory, [marker('chatHistory')], tool_calling=True)
        request = request_with(chat=[bot('', tool_invocations=[invocation])])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages[-1] == {'role': 'tool', 'content': '[No content]', 'tool_call_id': 'call_9'}


class TestDialogueExamples:
    """Example dialogues."""

    EXAMPLE = "<START>\n{{user}}: Hi\n{{char}}: Hello"

    @pytest.mark.asyncio
    async def test_examples_are_named_system_messages(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [marker('dialogueExamples'), marker('chatHistory')],
            new_example_chat_prompt='[Example Chat]',
        )

        result = await PromptAssemblyService(config, counter).assemble(request_with(message_examples=[self.EXAMPLE]))

        assert result.messages == [
            {'role': 'system', 'content': '[Example Chat]'},
            {'role': 'system', 'content': 'Hi', 'name': 'example_user'},
            {'role': 'system', 'content': 'Hello', 'name': 'example_assistant'},
        ]

    @pytest.mark.asyncio
    async def test_examples_are_all_or_nothing(self, counter, config_factory):
        # Each block costs 50: marker 14, 'Hi' + name 14, 'Hello' + name 22
        config = custom_config(
            config_factory,
            [marker('dialogueExamples'), marker('chatHistory')],
            new_example_chat_prompt='[Example Chat]',
            context_size=60,
        )
        request = request_with(message_examples=[self.EXAMPLE, self.EXAMPLE])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert len(result.messages) == 3
        assert result.remaining_budget == 10

    @pytest.mark.asyncio
    async def test_history_wins_unless_examples_are_pinned(self, counter, config_factory):
        def build(pin):
            return custom_config(
                config_factory,
                [marker('dialogueExamples'), marker('chatHistory')],
                new_example_chat_prompt='[Example Chat]',
                context_size=60,
                pin_examples=pin,
            )

        request = request_with(chat=[user('z' * 30)], message_examples=[self.EXAMPLE])

        unpinned = await PromptAssemblyService(build(False), counter).assemble(request)
        pinned = await PromptAssemblyService(build(True), counter).assemble(request)

        assert contents(unpinned) == ['z' * 30]
        assert contents(pinned) == ['[Example Chat]', 'Hi', 'Hello']


class TestGenerationTypes:
    """Continue, impersonate, quiet and group requests."""

    @pytest.mark.asyncio
    async def test_continue_with_prefill(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [marker('chatHistory'), PromptDefinition(identifier='jailbreak', content='JB', system_prompt=True)],
            continue_prefill=True,
            supports_assistant_prefill=True,
            assistant_prefill='PRE',
        )
        request = request_with(chat=[user('Hi'), bot('Once upon')], type=GenerationType.CONTINUE)

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'user', 'content': 'Hi'},
            {'role': 'system', 'content': 'JB'},
            {'role': 'assistant', 'content': 'PRE\n\nOnce upon'},
        ]

    @pytest.mark.asyncio
    async def test_continue_with_nudge(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [marker('chatHistory'), PromptDefinition(identifier='jailbreak', content='JB', system_prompt=True)],
            continue_nudge_prompt='[Continue: {{lastChatMessage}}]',
        )
        request = request_with(
            chat=[user('Hi'), bot('Once upon')],
            type=GenerationType.CONTINUE,
            cycle_prompt='Once upon ',
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'user', 'content': 'Hi'},
            {'role': 'system', 'content': 'JB'},
            {'role': 'assistant', 'content': 'Once upon'},
            {'role': 'system', 'content': '[Continue: Once upon]'},
        ]

    @pytest.mark.asyncio
    async def test_impersonate_prompt_goes_last(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [marker('chatHistory')],
            impersonation_prompt='[Write as {{user}}]',
            group_nudge_prompt='[Only {{char}}]',
        )
        request = request_with(
            chat=[user('Hi')],
            type=GenerationType.IMPERSONATE,
            group_names=['Seraphina', 'Bob'],
        )

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result) == ['Hi', '[Write as Alex]']

    @pytest.mark.asyncio
    async def test_quiet_prompt_goes_last(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')])
        request = request_with(chat=[user('Hi')], type=GenerationType.QUIET, quiet_prompt='Summarize {{char}}.')

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages[-1] == {'role': 'system', 'content': 'Summarize Seraphina.'}

    @pytest.mark.asyncio
    async def test_group_chat_markers_and_nudge(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [marker('chatHistory')],
            new_group_chat_prompt='[Group: {{group}}]',
            group_nudge_prompt='[Write as {{char}}]',
        )
        request = request_with(chat=[user('Hi'), bot('Yo', name='Bob')], group_names=['Seraphina', 'Bob'])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'system', 'content': '[Group: Seraphina, Bob]'},
            {'role': 'user', 'content': 'Hi'},
            {'role': 'assistant', 'content': 'Bob: Yo'},
            {'role': 'system', 'content': '[Write as Seraphina]'},
        ]

    @pytest.mark.asyncio
    async def test_send_if_empty_after_assistant_turn(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], send_if_empty='[Your turn]')

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=[user('Hi'), bot('Hey')]))

        assert result.messages[-1] == {'role': 'user', 'content': '[Your turn]'}

    @pytest.mark.asyncio
    async def test_send_if_empty_is_sent_verbatim(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], send_if_empty='{{user}}?')

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=[user('Hi'), bot('Hey')]))

        assert result.messages[-1] == {'role': 'user', 'content': '{{user}}?'}


AUDIO_URL = 'data:audio/wav;base64,AAAA'


class TestMediaInlining:
    """Which attachments of a turn are inlined."""

    def chat_prompt(self, display, index=0):
        return {
            'role': 'user',
            'content': 'Listen',
            'media': [
                MediaAttachment(url=AUDIO_URL, type=MediaType.AUDIO, duration=1),
                MediaAttachment(url=AUDIO_URL, type=MediaType.AUDIO, duration=2),
            ],
            'media_display': display,
            'media_index': index,
        }

    @pytest.mark.asyncio
    async def test_list_display_inlines_every_attachment(self, counter, config_factory):
        service = PromptAssemblyService(config_factory(audio_inlining=True), counter)
        message = await Message.create('user', 'Listen', 'chatHistory-1', counter)

        await service._inline_media(message, self.chat_prompt(MediaDisplay.LIST))

        assert [part['type'] for part in message.content] == ['text', 'audio_url', 'audio_url']
        assert message.tokens == len('Listen') + 32 * 3

    @pytest.mark.asyncio
    async def test_gallery_display_inlines_selected_attachment(self, counter, config_factory):
        service = PromptAssemblyService(config_factory(audio_inlining=True), counter)
        message = await Message.create('user', 'Listen', 'chatHistory-1', counter)

        await service._inline_media(message, self.chat_prompt(MediaDisplay.GALLERY, index=1))

        assert [part['type'] for part in message.content] == ['text', 'audio_url']
        assert message.tokens == len('Listen') + 32 * 2

    @pytest.mark.asyncio
    async def test_other_display_modes_are_not_inlined(self, counter, config_factory):
        service = PromptAssemblyService(config_factory(audio_inlining=True), counter)
        message = await Message.create('user', 'Listen', 'chatHistory-1', counter)

        await service._inline_media(message, self.chat_prompt('hidden'))

        assert message.content == 'Listen'
        assert message.tokens == len('Listen')


class TestNamesAndOverrides:
    """Names, overrides and squashing."""

    @pytest.mark.asyncio
    async def test_completion_names_are_sanitized(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], names_behavior=NamesBehavior.COMPLETION)
        request = request_with(chat=[user('Hi'), bot('Hey', name='Zoë Q')])

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert result.messages == [
            {'role': 'user', 'content': 'Hi', 'name': 'Alex'},
            {'role': 'assistant', 'content': 'Hey', 'name': 'Zoe_Q'},
        ]

    @pytest.mark.asyncio
    async def test_unusable_name_raises(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], names_behavior=NamesBehavior.COMPLETION)
        request = request_with(chat=[bot('Hey', name='!!!')])

        with pytest.raises(InvalidCharacterNameError):
            await PromptAssemblyService(config, counter).assemble(request)

    @pytest.mark.asyncio
    async def test_content_names_prefix_every_turn(self, counter, config_factory):
        config = custom_config(config_factory, [marker('chatHistory')], names_behavior=NamesBehavior.CONTENT)

        result = await PromptAssemblyService(config, counter).assemble(request_with(chat=[user('Hi'), bot('Hey')]))

        assert contents(result) == ['Alex: Hi', 'Seraphina: Hey']

    @pytest.mark.asyncio
    async def test_main_prompt_override(self, counter, config_factory):
        config = custom_config(config_factory, [
            PromptDefinition(identifier='main', content='Base prompt.', system_prompt=True),
            marker('chatHistory'),
        ])
        request = request_with(system_prompt_override='{{original}} Be {{char}}.')

        result = await PromptAssemblyService(config, counter).assemble(request)

        assert contents(result) == ['Base prompt. Be Seraphina.']
        assert result.overridden_prompts == ['main']

    @pytest.mark.asyncio
    async def test_forbidden_override_is_ignored(self, counter, config_factory):
        config = custom_config(config_factory, [
            PromptDefinition(identifier='main', content='Base prompt.', system_prompt=True, forbid_overrides=True),
            marker('chatHistory'),
        ])

        result = await PromptAssemblyService(config, counter).assemble(request_with(system_prompt_override='Other'))

        assert contents(result) == ['Base prompt.']
        assert result.overridden_prompts == []

    @pytest.mark.asyncio
    async def test_squash_unless_dry_run(self, counter, config_factory):
        config = custom_config(
            config_factory,
            [
                PromptDefinition(identifier='main', content='A', system_prompt=True),
                marker('charDescription'),
                marker('chatHistory'),
            ],
            squash_system_messages=True,
        )
        request = request_with(chat=[user('Hi')], char_description='B')
        service = PromptAssemblyService(config, counter)

        squashed = await service.assemble(request)
        dry = await service.assemble(request, dry_run=True)

        assert contents(squashed) == ['A\nB', 'Hi']
        assert contents(dry) == ['A', 'B', 'Hi']


class TestErrorHandling:
    """Unexpected failures are wrapped."""

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, config_factory):
        class BrokenCounter:
            async def count(self, payload, full=False):
                raise RuntimeError("tokenizer offline")

        config = config_factory()

        with pytest.raises(AssemblyError) as exc_info:
            await PromptAssemblyService(config, BrokenCounter()).assemble(request_with())

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert exc_info.value.log
