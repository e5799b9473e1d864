"""
Costed messages and the message tree.

A Message is the final form of a unit of content: role, content (text or a
list of typed parts), optional name, tool calls and reasoning signature,
plus a cached token count. The count is recomputed through the injected
TokenCounter every time content, name or tool calls change.

MessageCollection is a named node holding Messages and nested collections.
Both node kinds implement ``flatten()`` and ``tokens`` so traversal never
needs to inspect the node type.
"""

import base64
import binascii
import io
import json
import logging
import math
from typing import Any, Dict, List, Optional, Union

import httpx
from PIL import Image, UnidentifiedImageError

from prompt_assembler.models.chat import ToolInvocation
from prompt_assembler.models.prompt import Prompt
from prompt_assembler.services.token_counter import TokenCounter

logger = logging.getLogger(__name__)

# Gemini rates
VIDEO_TOKENS_PER_SECOND = 263
AUDIO_TOKENS_PER_SECOND = 32
DEFAULT_VIDEO_SECONDS = 40
DEFAULT_AUDIO_SECONDS = 300


def is_data_url(value: str) -> bool:
    return value.startswith("data:") and ";base64," in value


def decode_data_url(data_url: str) -> bytes:
    """Return the raw bytes of a base64 data URL."""
    _, encoded = data_url.split(",", 1)
    return base64.b64decode(encoded, validate=True)


async def fetch_data_url(url: str, timeout: float = 30.0) -> str:
    """Download a remote file and return it as a base64 data URL."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url)
        response.raise_for_status()
    mime_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
    encoded = base64.b64encode(response.content).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def image_token_cost(width: int, height: int) -> int:
    """
    Token cost of a high detail image.

    Images are scaled to fit within a 2048 x 2048 square, then scaled so the
    shortest side is 768px. Each 512px tile costs 170 tokens, plus 85 base.
    """
    scale = 2048 / min(width, height)
    scaled_width = round(width * scale)
    scaled_height = round(height * scale)

    final_scale = 768 / min(scaled_width, scaled_height)
    final_width = round(scaled_width * final_scale)
    final_height = round(scaled_height * final_scale)

    tiles = math.ceil(final_width / 512) * math.ceil(final_height / 512)
    return tiles * 170 + 85


class Message:
    """A costed message. Create instances with ``Message.create``."""

    tokens_per_image = 85

    def __init__(self, role: str, content: Any, identifier: str, counter: TokenCounter):
        self.identifier = identifier
        self.role = role or "system"
        self.content = content if content is not None else ""
        self.counter = counter
        self.name: Optional[str] = None
        self.tool_calls: Optional[List[Dict[str, Any]]] = None
        self.signature: Optional[str] = None
        self.injected = False
        self.tokens = 0
        self._media_tokens = 0

        if not role:
            logger.debug(f"Message role not set, defaulting to 'system' for identifier '{identifier}'")

    @classmethod
    async def create(
        cls,
        role: str,
        content: Any,
        identifier: str,
        counter: TokenCounter,
    ) -> "Message":
        """Create a message and compute its token count."""
        message = cls(role, content, identifier, counter)
        await message.recount()
        return message

    @classmethod
    async def from_prompt(cls, prompt: Prompt, counter: TokenCounter) -> "Message":
        return await cls.create(prompt.role, prompt.content, prompt.identifier, counter)

    def payload(self) -> Dict[str, Any]:
        """The counting payload for the text fields of this message."""
        payload: Dict[str, Any] = {"role": self.role}
        if self.content:
            payload["content"] = self.content
        if self.name:
            payload["name"] = self.name
        if self.tool_calls:
            payload["tool_calls"] = json.dumps(self.tool_calls)
        return payload

    async def recount(self) -> int:
        """Recompute the cached token count from the current state."""
        if self.content or self.name or self.tool_calls:
            text_tokens = await self.counter.count(self.payload())
        else:
            text_tokens = 0
        self.tokens = text_tokens + self._media_tokens
        return self.tokens

    async def set_content(self, content: Any) -> None:
        self.content = content
        await self.recount()

    async def set_name(self, name: str) -> None:
        """Set the name field; name-bearing messages are costed with the name."""
        self.name = name
        await self.recount()

    async def set_tool_calls(self, invocations: List[ToolInvocation], include_signature: bool) -> None:
        """Rebuild OpenAI-style tool calls from stored tool invocations."""
        tool_calls = []
        for invocation in invocations:
            call: Dict[str, Any] = {
                "id": invocation.id,
                "type": "function",
                "function": {
                    "arguments": invocation.parameters,
                    "name": invocation.name,
                },
            }
            if include_signature and invocation.signature:
                call["signature"] = invocation.signature
            tool_calls.append(call)
        self.tool_calls = tool_calls
        await self.recount()

    def ensure_content_is_list(self) -> List[Dict[str, Any]]:
        """Convert text content into a list of typed parts."""
        if not isinstance(self.content, list):
            text = self.content
            self.content = []
            if isinstance(text, str) and text:
                self.content.append({"type": "text", "text": text})
        return self.content

    async def _resolve_media(self, url: str, kind: str) -> Optional[str]:
        if is_data_url(url):
            return url
        try:
            return await fetch_data_url(url)
        except httpx.HTTPError as e:
            logger.warning(f"{kind.capitalize()} adding skipped for '{self.identifier}': {e}")
            return None

    async def add_image(self, image: str, quality: str = "low") -> None:
        """
        Append an image part and add its token cost.

        Args:
            image: Image URL or data URL
            quality: 'low', 'auto' or 'high'
        """
        data_url = await self._resolve_media(image, "image")
        if data_url is None:
            return

        self.ensure_content_is_list()
        self.content.append({"type": "image_url", "image_url": {"url": data_url, "detail": quality}})

        try:
            tokens = self.get_image_token_cost(data_url, quality)
        except (binascii.Error, ValueError, OSError, UnidentifiedImageError) as e:
            logger.error(f"Failed to get image token cost: {e}")
            tokens = Message.tokens_per_image
        self._media_tokens += tokens
        await self.recount()

    def get_image_token_cost(self, data_url: str, quality: str) -> int:
        if quality == "low":
            return Message.tokens_per_image

        with Image.open(io.BytesIO(decode_data_url(data_url))) as img:
            width, height = img.size

        if quality == "auto" and width <= 512 and height <= 512:
            return Message.tokens_per_image

        return image_token_cost(width, height)

    async def add_video(self, video: str, duration: Optional[float] = None, quality: str = "low") -> None:
        """Append a video part; 263 tokens per second, ~40 seconds when unknown."""
        data_url = await self._resolve_media(video, "video")
        if data_url is None:
            return

        self.ensure_content_is_list()
        self.content.append({"type": "video_url", "video_url": {"url": data_url, "detail": quality}})
        seconds = math.ceil(duration) if duration else DEFAULT_VIDEO_SECONDS
        self._media_tokens += VIDEO_TOKENS_PER_SECOND * seconds
        await self.recount()

    async def add_audio(self, audio: str, duration: Optional[float] = None) -> None:
        """Append an audio part; 32 tokens per second, ~5 minutes when unknown."""
        data_url = await self._resolve_media(audio, "audio")
        if data_url is None:
            return

        self.ensure_content_is_list()
        self.content.append({"type": "audio_url", "audio_url": {"url": data_url}})
        seconds = math.ceil(duration) if duration else DEFAULT_AUDIO_SECONDS
        self._media_tokens += AUDIO_TOKENS_PER_SECOND * seconds
        await self.recount()

    @property
    def is_empty(self) -> bool:
        """Messages without content and tool calls are never sent."""
        return not self.content and not self.tool_calls

    def flatten(self) -> List["Message"]:
        return [self]

    def to_chat(self) -> Dict[str, Any]:
        """Wire form: {role, content, name?, tool_calls?, tool_call_id?, signature?}."""
        entry: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            entry["name"] = self.name
        if self.tool_calls:
            entry["tool_calls"] = self.tool_calls
        if self.role == "tool":
            entry["tool_call_id"] = self.identifier
        if self.signature:
            entry["signature"] = self.signature
        return entry

    def __repr__(self) -> str:
        return f"Message(identifier={self.identifier!r}, role={self.role!r}, tokens={self.tokens})"


Node = Union[Message, "MessageCollection"]


class MessageCollection:
    """
    Named, ordered node of the message tree.

    Slots may be empty (None) when a region is registered at a position past
    the current end; empty slots are skipped by every traversal.
    """

    def __init__(self, identifier: str, *items: Node):
        self.identifier = identifier
        self.collection: List[Optional[Node]] = list(items)

    def add(self, item: Node) -> None:
        self.collection.append(item)

    def set_at(self, position: int, item: Node) -> None:
        """Overwrite the slot at ``position``, growing the list if needed."""
        if position >= len(self.collection):
            self.collection.extend([None] * (position + 1 - len(self.collection)))
        self.collection[position] = item

    def items(self) -> List[Node]:
        return [item for item in self.collection if item is not None]

    def get_item_by_identifier(self, identifier: str) -> Optional[Node]:
        for item in self.items():
            if item.identifier == identifier:
                return item
        return None

    def has_item_with_identifier(self, identifier: str) -> bool:
        return self.get_item_by_identifier(identifier) is not None

    @property
    def tokens(self) -> int:
        return sum(item.tokens for item in self.items())

    def flatten(self) -> List[Message]:
        """Depth-first, order-preserving list of contained messages."""
        messages: List[Message] = []
        for item in self.items():
            messages.extend(item.flatten())
        return messages

    def get_chat(self) -> List[Dict[str, Any]]:
        return [message.to_chat() for message in self.flatten() if not message.is_empty]

    def __len__(self) -> int:
        return len(self.items())

    def __repr__(self) -> str:
        return f"MessageCollection(identifier={self.identifier!r}, items={len(self)}, tokens={self.tokens})"
