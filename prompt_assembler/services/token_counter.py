"""
Token Counter Service

Counts tokens for message-shaped payloads ({role, content, name, tool_calls}).

This is essential for:
- Budget ledger accounting
- Greedy history and example truncation
- Squashing system messages

The assembler only depends on the ``TokenCounter`` protocol. Two
implementations are provided: one backed by the model's Hugging Face
tokenizer and one that uses a character-based estimate.
"""

import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)

Payload = Union[Dict[str, Any], List[Dict[str, Any]]]


class TokenCounter(Protocol):
    """Asynchronous token counting service."""

    async def count(self, payload: Payload, full: bool = False) -> int:
        ...


def format_payload(payload: Payload) -> str:
    """
    Render a payload the way it would appear in the prompt.

    Typical format: "<|role|>\\nname: content<|end|>". Multimodal content
    contributes only its text parts; media is costed separately by Message.
    Tool calls are rendered as JSON.
    """
    messages = payload if isinstance(payload, list) else [payload]
    parts = []
    for msg in messages:
        role = msg.get('role', 'user')
        content = msg.get('content') or ''
        if isinstance(content, list):
            content = "\n".join(
                part.get('text', '') for part in content if part.get('type') == 'text'
            )
        name = msg.get('name')
        if name:
            content = f"{name}: {content}"
        tool_calls = msg.get('tool_calls')
        if tool_calls:
            if not isinstance(tool_calls, str):
                tool_calls = json.dumps(tool_calls)
            content = f"{content}{tool_calls}"
        parts.append(f"<|{role}|>\n{content}<|end|>\n")
    return "".join(parts)


class EstimatingTokenCounter:
    """
    Token counter using a character-based estimate.

    Uses rough heuristic: ~4 characters per token (English average).
    Results are memoized per rendered payload, keeping at most
    ``cache_size`` entries (least recently used are evicted).
    """

    def __init__(self, chars_per_token: int = 4, cache_size: int = 4096):
        self.chars_per_token = chars_per_token
        self._count_cached = lru_cache(maxsize=cache_size)(self.count_text)

    async def count(self, payload: Payload, full: bool = False) -> int:
        return self._count_cached(format_payload(payload))

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        return max(1, len(text) // self.chars_per_token)

    @property
    def method(self) -> str:
        return "estimation"


class TokenizerTokenCounter(EstimatingTokenCounter):
    """
    Counts tokens accurately using the model's tokenizer.

    Requires the ``transformers`` package (``tokenizer`` extra). Model names
    that are not Hugging Face repository ids (e.g. "qwen2.5:14b-instruct")
    and tokenizers that fail to load fall back to estimation.
    """

    # Class-level tokenizer cache (shared across instances)
    _tokenizer_cache: Dict[str, Any] = {}

    def __init__(self, model_name: str = "Qwen/Qwen2.5-14B-Instruct"):
        super().__init__()
        self.model_name = model_name
        self._tokenizer = None
        self._load_tokenizer()

    def _load_tokenizer(self) -> None:
        """Load tokenizer from transformers library."""
        if self.model_name in TokenizerTokenCounter._tokenizer_cache:
            self._tokenizer = TokenizerTokenCounter._tokenizer_cache[self.model_name]
            logger.debug(f"Using cached tokenizer for {self.model_name}")
            return

        if ':' in self.model_name or '/' not in self.model_name:
            logger.debug(f"Skipping tokenizer load for local model '{self.model_name}', using estimation")
            return

        try:
            from transformers import AutoTokenizer

            logger.info(f"Loading tokenizer for {self.model_name}...")
            tokenizer = AutoTokenizer.from_pretrained(self.model_name)
        except ImportError:
            logger.warning(
                "transformers library not available. Token counting will use estimation "
                f"({self.chars_per_token} chars/token). Install with: pip install transformers"
            )
            return
        except (OSError, ValueError) as e:
            logger.warning(
                f"Failed to load tokenizer for {self.model_name}: {e}. "
                "Falling back to estimation."
            )
            return

        TokenizerTokenCounter._tokenizer_cache[self.model_name] = tokenizer
        self._tokenizer = tokenizer
        logger.info(f"Tokenizer loaded: {self.model_name}")

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        if self._tokenizer is None:
            return super().count_text(text)
        return len(self._tokenizer.encode(text, add_special_tokens=False))

    @property
    def is_exact(self) -> bool:
        return self._tokenizer is not None

    @property
    def method(self) -> str:
        return "exact" if self.is_exact else "estimation"


def get_token_counter(model_name: Optional[str] = None) -> TokenCounter:
    """
    Get a token counter for a model.

    Args:
        model_name: Hugging Face model id, or None for the estimator

    Returns:
        TokenCounter instance
    """
    if model_name is None:
        return EstimatingTokenCounter()
    return TokenizerTokenCounter(model_name)
