"""
Prompt Assembly Service

Orchestrates the assembly of the final message list for one generation
request:
- Reserve framing overhead and control prompts
- Place the ordered system and user prompts
- Attach relative extension prompts to the main prompt
- Merge depth-injected prompts into chat history
- Greedily fill the remaining budget with chat history and dialogue examples
- Optionally squash consecutive system messages

Mandatory placements raise TokenBudgetExceededError when they do not fit.
History and examples are truncated from the low-priority end instead: the
newest turns and the first examples are kept.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from prompt_assembler.config.models import AssemblyConfig, NamesBehavior
from prompt_assembler.exceptions import (
    AssemblyError,
    IdentifierNotFoundError,
    InvalidCharacterNameError,
    TokenBudgetExceededError,
)
from prompt_assembler.models.chat import (
    AssemblyRequest,
    AssemblyResult,
    GenerationType,
    MediaDisplay,
    MediaType,
)
from prompt_assembler.models.message import Message, MessageCollection
from prompt_assembler.models.prompt import Prompt, PromptCollection
from prompt_assembler.services.chat_completion import ChatCompletion
from prompt_assembler.services.chat_formatting import (
    format_chat_messages,
    format_message_examples,
    is_valid_name,
    sanitize_name,
)
from prompt_assembler.services.macro_processor import MacroProcessor
from prompt_assembler.services.prompt_merge import (
    build_macro_processor,
    prepare_prompts_for_chat_completion,
)
from prompt_assembler.services.token_counter import TokenCounter

logger = logging.getLogger(__name__)

# Placed before the control prompts, in this order
LEAD_PROMPTS = [
    'worldInfoBefore',
    'main',
    'worldInfoAfter',
    'charDescription',
    'charPersonality',
    'scenario',
    'personaDescription',
]

ALWAYS_SYSTEM_PROMPTS = ['nsfw', 'jailbreak']

# Extension prompts attached next to the main prompt
RELATIVE_EXTENSION_PROMPTS = [
    'summary',
    'authorsNote',
    'vectorsMemory',
    'vectorsDataBank',
    'smartContext',
]

INJECTION_ROLES = ('system', 'user', 'assistant')

NO_TOOL_TYPES = (GenerationType.IMPERSONATE, GenerationType.QUIET)


async def populate_injection_prompts(prompts: List[Prompt], messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Merge absolute prompts into chat history by depth.

    Within a depth, order groups are processed from the highest
    injection_order down; inside a group, same-role contents are joined with
    a newline, roles in system, user, assistant order. Each depth's messages
    are spliced in at ``depth + inserted so far`` of the newest-first log,
    clamped to the log length.

    Args:
        prompts: Absolute prompts
        messages: Chat log, newest first (mutated)

    Returns:
        The chat log with injections, oldest first
    """
    total_inserted = 0
    max_depth = max((prompt.injection_depth for prompt in prompts), default=-1)

    for depth in range(max_depth + 1):
        depth_prompts = [p for p in prompts if p.injection_depth == depth and p.content]
        if not depth_prompts:
            continue

        order_groups: Dict[int, List[Prompt]] = {}
        for prompt in depth_prompts:
            order_groups.setdefault(prompt.injection_order, []).append(prompt)

        role_messages = []
        for order in sorted(order_groups, reverse=True):
            group = order_groups[order]
            for role in INJECTION_ROLES:
                joint = '\n'.join(p.content for p in group if p.role == role).strip()
                if joint:
                    role_messages.append({'role': role, 'content': joint, 'injected': True})

        if role_messages:
            inject_index = min(depth + total_inserted, len(messages))
            messages[inject_index:inject_index] = role_messages
            total_inserted += len(role_messages)
            logger.debug(f"Injected {len(role_messages)} message(s) at depth {depth}")

    messages.reverse()
    return messages


class PromptAssemblyService:
    """
    Assembles token-budgeted prompts for chat completion backends.

    The service itself is stateless between calls: every ``assemble`` builds
    a new ChatCompletion ledger, so one service can serve concurrent
    requests.
    """

    def __init__(self, config: AssemblyConfig, token_counter: TokenCounter):
        """
        Initialize prompt assembly service.

        Args:
            config: Immutable assembly configuration
            token_counter: Token counting service for the target backend
        """
        self.config = config
        self.token_counter = token_counter

    async def assemble(self, request: AssemblyRequest, dry_run: bool = False) -> AssemblyResult:
        """
        Assemble the final message list for a request.

        Args:
            request: Per-request prompt inputs and chat log
            dry_run: Skip squashing (token counting only)

        Returns:
            AssemblyResult with the wire-ready messages

        Raises:
            TokenBudgetExceededError: Mandatory prompts exceed the context size
            InvalidCharacterNameError: A name could not be sanitized
            IdentifierNotFoundError: A region was referenced before it was placed
            AssemblyError: Any other failure while preparing prompts
        """
        chat_completion = ChatCompletion(log_prompts=self.config.log_prompts)
        chat_completion.set_token_budget(self.config.context_size, self.config.max_response_tokens)

        try:
            macros = build_macro_processor(request)
            prompts = await prepare_prompts_for_chat_completion(request, self.config, macros)
            await self.populate_chat_completion(prompts, chat_completion, request, macros)

            if self.config.squash_system_messages and not dry_run:
                await chat_completion.squash_system_messages()
        except TokenBudgetExceededError as e:
            chat_completion.log('Mandatory prompts exceed the context size.')
            logger.error(f"Mandatory prompts exceed the context size (at '{e.identifier}')")
            raise
        except InvalidCharacterNameError as e:
            chat_completion.log('Invalid character name')
            logger.warning(f"An error occurred while counting tokens: invalid character name '{e.name}'")
            raise
        except IdentifierNotFoundError as e:
            logger.error(f"Prompt region '{e.identifier}' was not registered")
            raise
        except Exception as e:
            logger.error("Unexpected error while preparing prompts", exc_info=True)
            for line in chat_completion.log_lines:
                logger.error(f"[ChatCompletion] {line}")
            raise AssemblyError(f"Unexpected error while preparing prompts: {e}", chat_completion.log_lines) from e

        chat = chat_completion.get_chat()
        total_tokens = chat_completion.get_total_token_count()
        logger.info(
            f"Assembled {len(chat)} messages ({total_tokens} tokens, "
            f"{chat_completion.token_budget} remaining)"
        )

        return AssemblyResult(
            messages=chat,
            total_tokens=total_tokens,
            remaining_budget=chat_completion.token_budget,
            token_breakdown=chat_completion.get_token_breakdown(),
            overridden_prompts=list(chat_completion.overridden_prompts),
            log=list(chat_completion.log_lines),
        )

    async def populate_chat_completion(
        self,
        prompts: PromptCollection,
        chat_completion: ChatCompletion,
        request: AssemblyRequest,
        macros: Optional[MacroProcessor] = None,
    ) -> None:
        """
        Fill the ledger with prompts, injections, history and examples.

        Args:
            prompts: Merged prompt collection
            chat_completion: Ledger to fill
            request: Assembly request
            macros: Macro processor for templates and chat content
        """
        config = self.config
        counter = self.token_counter
        macros = macros or build_macro_processor(request)

        async def add_to_chat_completion(source: str, target: Optional[str] = None) -> None:
            if not prompts.has(source):
                return

            if config.is_prompt_disabled(source) and source != 'main':
                chat_completion.log(f"Skipping prompt {source} because it is disabled")
                return

            prompt = prompts.get(source)
            if prompt.is_absolute:
                chat_completion.log(f"Skipping prompt {source} because it is an absolute prompt")
                return

            index = prompts.index(target) if target else prompts.index(source)
            collection = MessageCollection(source)
            if prompt.content:
                collection.add(await Message.from_prompt(prompt, counter))
            chat_completion.add(collection, index)

        # Every reply is primed with <|start|>assistant<|message|>
        chat_completion.reserve_budget(config.framing_overhead_tokens)

        # Character and world information
        for identifier in LEAD_PROMPTS:
            await add_to_chat_completion(identifier)

        # Control prompts are placed last
        chat_completion.set_overridden_prompts(prompts.overridden_prompts)
        control_prompts = MessageCollection('controlPrompts')

        impersonate = prompts.get('impersonate')
        if request.type == GenerationType.IMPERSONATE and impersonate and impersonate.content:
            control_prompts.add(await Message.from_prompt(impersonate, counter))

        # Quiet prompt always stays last among the control prompts
        quiet = prompts.get('quietPrompt')
        if quiet and quiet.content:
            quiet_message = await Message.from_prompt(quiet, counter)
            if config.image_inlining and request.quiet_image:
                await quiet_message.add_image(request.quiet_image, config.inline_image_quality)
            control_prompts.add(quiet_message)

        chat_completion.reserve_budget(control_prompts)

        # Ordered system and user prompts
        user_relative_prompts = [
            p.identifier for p in prompts
            if not p.system_prompt and not p.is_absolute
        ]
        absolute_prompts = [p for p in prompts if p.is_absolute]

        for identifier in ALWAYS_SYSTEM_PROMPTS + user_relative_prompts:
            await add_to_chat_completion(identifier)

        if prompts.has('enhanceDefinitions'):
            await add_to_chat_completion('enhanceDefinitions')

        if request.bias and request.bias.strip():
            await add_to_chat_completion('bias')

        async def inject_to_main(prompt: Prompt, position: str) -> None:
            if chat_completion.has('main'):
                message = await Message.from_prompt(prompt, counter)
                chat_completion.insert(message, 'main', position)
                return

            # Without a placed main prompt, follow main into chat history
            main_index = next(
                (i for i, p in enumerate(absolute_prompts) if p.identifier == 'main'),
                -1,
            )
            if main_index >= 0:
                main = absolute_prompts[main_index]
                injected = prompt.copy(
                    role=main.role,
                    injection_position=main.injection_position,
                    injection_depth=main.injection_depth,
                    injection_order=main.injection_order,
                )
                new_index = main_index + 1 if position == 'end' else main_index
                absolute_prompts.insert(new_index, injected)

        for identifier in RELATIVE_EXTENSION_PROMPTS:
            prompt = prompts.get(identifier)
            if prompt and prompt.position and not prompt.is_absolute:
                await inject_to_main(prompt, prompt.position)

        for prompt in [p for p in prompts if p.extension and p.position and not p.is_absolute]:
            await inject_to_main(prompt, prompt.position)

        # Pre-allocation of tokens for tool definitions
        if config.tool_calling and request.tool_definitions and request.type not in NO_TOOL_TYPES:
            tool_tokens = await counter.count({'role': 'user', 'content': json.dumps(request.tool_definitions)})
            chat_completion.reserve_budget(tool_tokens)

        messages = format_chat_messages(request, config)

        # Displace the message to be continued before in-chat injections
        if request.type == GenerationType.CONTINUE and config.continue_prefill and messages:
            continue_message = await self._create_continue_prefill(messages.pop(0), macros)
            control_prompts.add(continue_message)
            chat_completion.reserve_budget(continue_message)

        messages = await populate_injection_prompts(absolute_prompts, messages)

        examples = format_message_examples(
            [macros.process(example) for example in request.message_examples],
            request,
        )

        if config.pin_examples:
            await self.populate_dialogue_examples(prompts, chat_completion, examples, macros)
            await self.populate_chat_history(messages, prompts, chat_completion, request, macros)
        else:
            await self.populate_chat_history(messages, prompts, chat_completion, request, macros)
            await self.populate_dialogue_examples(prompts, chat_completion, examples, macros)

        chat_completion.free_budget(control_prompts)
        if len(control_prompts):
            chat_completion.add(control_prompts)

    async def _create_continue_prefill(self, chat_message: Dict[str, Any], macros: MacroProcessor) -> Message:
        """Control message holding the turn being continued."""
        config = self.config
        is_assistant = chat_message['role'] == 'assistant'
        prefill = ''
        if is_assistant and config.supports_assistant_prefill:
            prefill = macros.process(config.assistant_prefill)

        content = '\n\n'.join(part for part in (prefill, chat_message['content']) if part)
        message = await Message.create(chat_message['role'], content, 'continuePrefill', self.token_counter)

        if chat_message.get('name') and config.names_behavior == NamesBehavior.COMPLETION:
            await message.set_name(sanitize_name(chat_message['name']))
        return message

    async def populate_chat_history(
        self,
        messages: List[Dict[str, Any]],
        prompts: PromptCollection,
        chat_completion: ChatCompletion,
        request: AssemblyRequest,
        macros: MacroProcessor,
    ) -> None:
        """
        Insert as many chat turns as the budget allows, newest first.

        The first turn that does not fit ends the walk, so the kept window is
        always contiguous. A turn with tool invocations is inserted as one
        block (call message plus results) or not at all.

        Args:
            messages: Chat log with injections, oldest first (mutated by the
                continue nudge)
            prompts: Merged prompt collection
            chat_completion: Ledger to fill
            request: Assembly request
            macros: Macro processor
        """
        if not prompts.has('chatHistory'):
            return

        config = self.config
        counter = self.token_counter
        chat_completion.add(MessageCollection('chatHistory'), prompts.index('chatHistory'))

        # Reserve budget for new chat message
        new_chat = config.new_group_chat_prompt if request.is_group else config.new_chat_prompt
        new_chat_message = await Message.create('system', macros.process(new_chat), 'newMainChat', counter)
        chat_completion.reserve_budget(new_chat_message)

        # Reserve budget for group nudge
        group_nudge_message = None
        if request.is_group and prompts.has('groupNudge') and request.type != GenerationType.IMPERSONATE:
            group_nudge_message = await Message.from_prompt(prompts.get('groupNudge'), counter)
            chat_completion.reserve_budget(group_nudge_message)

        # Reserve budget for continue nudge
        continue_collection = None
        if request.type == GenerationType.CONTINUE and request.cycle_prompt and not config.continue_prefill:
            continue_collection = MessageCollection('continueNudge')
            continue_index = next(
                (i for i in range(len(messages) - 1, -1, -1) if not messages[i].get('injected')),
                -1,
            )
            if continue_index >= 0:
                continued = messages.pop(continue_index)
                continue_collection.add(await Message.create(
                    continued['role'],
                    macros.process(continued['content']),
                    'continueMessage',
                    counter,
                ))
            nudge_macros = macros.with_values(lastChatMessage=request.cycle_prompt.strip())
            continue_collection.add(await Message.create(
                'system',
                nudge_macros.process(config.continue_nudge_prompt),
                'continueNudge',
                counter,
            ))
            chat_completion.reserve_budget(continue_collection)

        if messages and messages[-1]['role'] == 'assistant' and config.send_if_empty:
            empty_replacement = await Message.create(
                'user', config.send_if_empty, 'emptyUserMessageReplacement', counter
            )
            chat_completion.try_insert(empty_replacement, 'chatHistory')

        inserted = 0
        for index, chat_prompt in enumerate(reversed(messages)):
            identifier = f"chatHistory-{len(messages) - index}"
            chat_message = await Message.create(
                chat_prompt['role'], macros.process(chat_prompt['content']), identifier, counter
            )

            name = chat_prompt.get('name')
            if config.names_behavior == NamesBehavior.COMPLETION and name:
                await chat_message.set_name(name if is_valid_name(name) else sanitize_name(name))

            await self._inline_media(chat_message, chat_prompt)

            invocations = chat_prompt.get('invocations')
            if config.tool_calling and invocations:
                tool_call_message = await Message.create(chat_message.role, '', f"toolCall-{identifier}", counter)
                await tool_call_message.set_tool_calls(invocations, config.reasoning_signatures)
                result_messages = [
                    await Message.create('tool', invocation.result or '[No content]', invocation.id, counter)
                    for invocation in invocations
                ]
                if not chat_completion.try_insert_all([tool_call_message, *result_messages], 'chatHistory', 'start'):
                    break
                inserted += 1
                continue

            if config.reasoning_signatures and chat_prompt.get('signature'):
                chat_message.signature = chat_prompt['signature']

            if not chat_completion.try_insert(chat_message, 'chatHistory', 'start'):
                break
            inserted += 1

        logger.debug(f"Inserted {inserted} of {len(messages)} chat history turns")

        # Insert and free new chat
        chat_completion.free_budget(new_chat_message)
        chat_completion.insert_at_start(new_chat_message, 'chatHistory')

        if group_nudge_message is not None:
            chat_completion.free_budget(group_nudge_message)
            chat_completion.insert_at_end(group_nudge_message, 'chatHistory')

        if continue_collection is not None:
            chat_completion.free_budget(continue_collection)
            chat_completion.add(continue_collection, -1)

    async def populate_dialogue_examples(
        self,
        prompts: PromptCollection,
        chat_completion: ChatCompletion,
        examples: List[List[Dict[str, str]]],
        macros: MacroProcessor,
    ) -> None:
        """
        Insert whole example dialogues, oldest first, while they fit.

        Each example is preceded by the new example chat marker and is
        inserted only if the marker and all its messages fit.
        """
        if not prompts.has('dialogueExamples'):
            return

        counter = self.token_counter
        chat_completion.add(MessageCollection('dialogueExamples'), prompts.index('dialogueExamples'))
        if not examples:
            return

        new_example_chat = await Message.create(
            'system', macros.process(self.config.new_example_chat_prompt), 'newChat', counter
        )
        for dialogue_index, dialogue in enumerate(examples):
            chat_messages = []
            for prompt_index, prompt in enumerate(dialogue):
                chat_message = await Message.create(
                    'system',
                    prompt.get('content', ''),
                    f"dialogueExamples {dialogue_index}-{prompt_index}",
                    counter,
                )
                await chat_message.set_name(prompt['name'])
                chat_messages.append(chat_message)

            if not chat_completion.try_insert_all([new_example_chat, *chat_messages], 'dialogueExamples'):
                break

    async def _inline_media(self, message: Message, chat_prompt: Dict[str, Any]) -> None:
        """Attach the turn's media the backend can accept."""
        media = chat_prompt.get('media') or []
        if not media:
            return

        display = chat_prompt.get('media_display', MediaDisplay.LIST)
        if display == MediaDisplay.GALLERY:
            index = chat_prompt.get('media_index', 0)
            media = [media[index]] if 0 <= index < len(media) else []
        elif display != MediaDisplay.LIST:
            logger.debug(f"Media display '{display}' is not inlined")
            return

        config = self.config
        for attachment in media:
            if not attachment.url:
                continue
            if attachment.type == MediaType.IMAGE and config.image_inlining:
                await message.add_image(attachment.url, config.inline_image_quality)
            elif attachment.type == MediaType.VIDEO and config.video_inlining:
                await message.add_video(attachment.url, attachment.duration, config.inline_image_quality)
            elif attachment.type == MediaType.AUDIO and config.audio_inlining:
                await message.add_audio(attachment.url, attachment.duration)
