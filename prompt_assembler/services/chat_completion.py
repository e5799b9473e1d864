"""
Chat Completion Budget Ledger

Owns the root message tree of one request and the remaining token budget.
It has no knowledge of prompt ordering policy; the assembler decides what
goes where.

Two placement styles:
- ``add`` / ``insert`` are mandatory placements and raise
  TokenBudgetExceededError when the content does not fit.
- ``try_insert`` / ``try_insert_all`` are used by the greedy history and
  example loops and return False instead of raising.

After every successful public mutation the budget equals the initial budget
minus the tokens of everything placed and reserved.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from prompt_assembler.exceptions import IdentifierNotFoundError, TokenBudgetExceededError
from prompt_assembler.models.message import Message, MessageCollection

logger = logging.getLogger(__name__)

Budgeted = Union[Message, MessageCollection]

# Structural messages that must stay separate
SQUASH_EXCLUDED = ("newMainChat", "newChat", "groupNudge")


class ChatCompletion:
    """
    Token-budgeted message tree for one generation request.

    Not safe to share between requests; build a new instance per request and
    discard it after a failure.
    """

    def __init__(self, log_prompts: bool = False):
        self.token_budget = 0
        self.messages = MessageCollection("root")
        self.log_prompts = log_prompts
        self.log_lines: List[str] = []
        self.overridden_prompts: List[str] = []

    def log(self, output: str) -> None:
        """Record a ledger event, mirrored to the module logger."""
        self.log_lines.append(output)
        if self.log_prompts:
            logger.info(f"[ChatCompletion] {output}")
        else:
            logger.debug(f"[ChatCompletion] {output}")

    def set_token_budget(self, context_size: int, reserved_response_size: int) -> None:
        """Budget = context size minus tokens reserved for the response."""
        self.log(f"Prompt tokens: {context_size}")
        self.log(f"Completion tokens: {reserved_response_size}")

        self.token_budget = context_size - reserved_response_size

        self.log(f"Token budget: {self.token_budget}")

    # Placement

    def add(self, collection: MessageCollection, position: Optional[int] = None) -> "ChatCompletion":
        """
        Register a named collection in the root.

        Args:
            collection: Collection to place
            position: Slot to overwrite; None or -1 appends. The tokens of a
                collection already in that slot are returned to the budget.

        Raises:
            TokenBudgetExceededError: If the collection does not fit
        """
        self._validate_collection(collection)

        displaced = None
        if position is not None and position != -1 and position < len(self.messages.collection):
            displaced = self.messages.collection[position]
        refund = displaced.tokens if displaced is not None else 0

        if self.token_budget + refund - collection.tokens < 0:
            raise TokenBudgetExceededError(collection.identifier)

        if position is not None and position != -1:
            self.messages.set_at(position, collection)
        else:
            self.messages.add(collection)

        if displaced is not None:
            self.token_budget += refund
            self.log(f"Replaced {displaced.identifier} at slot {position}. Freed {refund} tokens")
        self.token_budget -= collection.tokens
        self.log(f"Added {collection.identifier}. Remaining tokens: {self.token_budget}")
        return self

    def insert(self, message: Message, identifier: str, position: Union[str, int] = "end") -> None:
        """
        Insert a message into a registered collection.

        Messages without content and tool calls are accepted but not placed.

        Args:
            message: Message to insert
            identifier: Identifier of a top-level collection
            position: 'start', 'end' or an index

        Raises:
            TokenBudgetExceededError: If the message does not fit
            IdentifierNotFoundError: If the collection is not registered
        """
        self._validate_message(message)
        self._check_token_budget(message, message.identifier)
        target = self._find_collection(identifier)

        if message.is_empty:
            return

        if position == "start":
            target.collection.insert(0, message)
        elif position == "end":
            target.collection.append(message)
        elif isinstance(position, int):
            target.collection.insert(position, message)
        else:
            raise ValueError(f"Invalid insert position: {position!r}")

        self.token_budget -= message.tokens
        self.log(f"Inserted {message.identifier} into {identifier}. Remaining tokens: {self.token_budget}")

    def insert_at_start(self, message: Message, identifier: str) -> None:
        self.insert(message, identifier, "start")

    def insert_at_end(self, message: Message, identifier: str) -> None:
        self.insert(message, identifier, "end")

    def try_insert(self, message: Message, identifier: str, position: Union[str, int] = "end") -> bool:
        """Insert if affordable; returns False without mutating otherwise."""
        return self.try_insert_all([message], identifier, position)

    def try_insert_all(
        self,
        messages: List[Message],
        identifier: str,
        position: Union[str, int] = "end",
    ) -> bool:
        """
        Insert a block of messages all-or-nothing.

        With position 'start' the block keeps its order at the head of the
        collection.

        Raises:
            IdentifierNotFoundError: If the collection is not registered
        """
        self._find_collection(identifier)
        if not self.can_afford_all(messages):
            self.log(f"Cannot afford {', '.join(m.identifier for m in messages)} in {identifier}")
            return False

        if position == "start":
            for message in reversed(messages):
                self.insert(message, identifier, "start")
        elif isinstance(position, int):
            for offset, message in enumerate(messages):
                self.insert(message, identifier, position + offset)
        else:
            for message in messages:
                self.insert(message, identifier, position)
        return True

    def remove_last_from(self, identifier: str) -> Optional[Message]:
        """Pop the last message of a collection and refund its tokens."""
        target = self._find_collection(identifier)
        while target.collection and target.collection[-1] is None:
            target.collection.pop()

        if not target.collection:
            self.log(f"No message to remove from {identifier}")
            return None

        message = target.collection.pop()
        self.token_budget += message.tokens
        self.log(f"Removed {message.identifier} from {identifier}. Remaining tokens: {self.token_budget}")
        return message

    # Budget

    def can_afford(self, message: Budgeted) -> bool:
        return self.token_budget - message.tokens >= 0

    def can_afford_all(self, messages: Iterable[Budgeted]) -> bool:
        return self.token_budget - sum(message.tokens for message in messages) >= 0

    def reserve_budget(self, message: Union[Budgeted, int]) -> None:
        """Take tokens from the budget without placing anything."""
        tokens = message if isinstance(message, int) else message.tokens
        self.token_budget -= tokens
        self.log(f"Reserved {tokens} tokens. Remaining tokens: {self.token_budget}")

    def free_budget(self, message: Union[Budgeted, int]) -> None:
        """Return previously reserved tokens to the budget."""
        tokens = message if isinstance(message, int) else message.tokens
        self.token_budget += tokens
        self.log(f"Freed {tokens} tokens. Remaining tokens: {self.token_budget}")

    # Queries

    def has(self, identifier: str) -> bool:
        """True if a region or a message with this identifier is placed."""
        if self.messages.has_item_with_identifier(identifier):
            return True
        return any(message.identifier == identifier for message in self.messages.flatten())

    def get_total_token_count(self) -> int:
        return self.messages.tokens

    def get_token_breakdown(self) -> Dict[str, int]:
        """Tokens per top-level region."""
        return {item.identifier: item.tokens for item in self.messages.items()}

    def get_chat(self) -> List[Dict[str, Any]]:
        """Flatten the tree into the final ordered wire payload."""
        chat = []
        for message in self.messages.flatten():
            if message.is_empty:
                self.log(f"Skipping empty message {message.identifier}")
                continue
            chat.append(message.to_chat())
        return chat

    def set_overridden_prompts(self, identifiers: List[str]) -> None:
        self.overridden_prompts = list(identifiers)

    # Normalization

    async def squash_system_messages(self) -> None:
        """
        Merge consecutive name-less system messages into one.

        Identifiers in SQUASH_EXCLUDED are never merged and separate the
        messages around them. Empty system messages are dropped. The root
        becomes a flat list of messages.
        """
        def should_squash(message: Message) -> bool:
            return (
                message.identifier not in SQUASH_EXCLUDED
                and message.role == "system"
                and not message.name
                and isinstance(message.content, str)
            )

        squashed: List[Message] = []
        last_message: Optional[Message] = None

        for message in self.messages.flatten():
            if message.role == "system" and not message.content:
                if message.tokens:
                    self.token_budget += message.tokens
                    self.log(f"Dropped empty {message.identifier}. Freed {message.tokens} tokens")
                continue

            if should_squash(message) and last_message is not None and should_squash(last_message):
                before = last_message.tokens
                await last_message.set_content(f"{last_message.content}\n{message.content}")
                # Keep the ledger consistent with the recounted merge
                self.token_budget += before + message.tokens - last_message.tokens
                self.log(f"Squashed {message.identifier} into {last_message.identifier}")
            else:
                squashed.append(message)
                last_message = message

        self.messages.collection = list(squashed)

    # Validation

    def _find_collection(self, identifier: str) -> MessageCollection:
        item = self.messages.get_item_by_identifier(identifier)
        if not isinstance(item, MessageCollection):
            raise IdentifierNotFoundError(identifier)
        return item

    def _check_token_budget(self, message: Budgeted, identifier: str) -> None:
        if not self.can_afford(message):
            raise TokenBudgetExceededError(identifier)

    @staticmethod
    def _validate_collection(collection: Any) -> None:
        if not isinstance(collection, MessageCollection):
            raise TypeError("Argument must be an instance of MessageCollection")

    @staticmethod
    def _validate_message(message: Any) -> None:
        if not isinstance(message, Message):
            raise TypeError("Argument must be an instance of Message")
