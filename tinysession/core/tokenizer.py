"""Text <-> token conversion on top of a model's vocabulary.

The vocabulary primitives take a buffer capacity and report a negative length
when the buffer is too small. Every call here follows the same two-pass
protocol: try with a size guess, and if the backend reports a larger need,
allocate exactly that and call again.

Streaming output goes through PartialUTF8Buffer because a single token may
carry only part of a multi-byte character.
"""

import codecs
import logging
from typing import List, Optional, Sequence

from ..model.base import ModelHandle
from .errors import ChatTemplateError, TokenizeError
from .sequence import Message

logger = logging.getLogger(__name__)

# First guess for token_to_piece; most pieces are shorter.
PIECE_PROBE_SIZE = 8


class PartialUTF8Buffer:
    """
    Byte accumulator bridging token boundaries.

    After every feed() the buffer holds either nothing or the start of one
    multi-byte character that is still waiting for its continuation bytes.
    Bytes that can never become valid are emitted right away as U+FFFD.

    Example:
        buf = PartialUTF8Buffer()
        buf.feed(b"\\xe4\\xbd")  # None, waiting
        buf.feed(b"\\xa0")      # '你'
    """

    def __init__(self):
        self._pending = b""

    def feed(self, data: bytes) -> Optional[str]:
        """Append bytes. Returns the text that became complete, or None."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = decoder.decode(self._pending + data, final=False)
        self._pending = decoder.getstate()[0]
        return text or None

    def flush(self) -> str:
        """Force out whatever is left, replacing incomplete bytes."""
        text = self._pending.decode("utf-8", errors="replace")
        self._pending = b""
        return text

    def discard(self) -> None:
        self._pending = b""

    @property
    def pending(self) -> bytes:
        return self._pending

    def __len__(self) -> int:
        return len(self._pending)


class TokenizerAdapter:
    """Tokenizer bound to one model's vocabulary."""

    def __init__(self, model: ModelHandle):
        self.model = model

    def tokenize(self, text: str, add_bos: bool, parse_special: bool = True) -> List[int]:
        """Encode text. Raises TokenizeError instead of returning a partial buffer."""
        data = text.encode("utf-8")
        has_bos = add_bos and self.model.token_bos() is not None
        capacity = len(data) + (1 if has_bos else 0) + 1

        n, tokens = self.model.tokenize_into(data, capacity, add_bos, parse_special)
        if n < 0:
            # Some vocabularies emit more tokens than bytes; size from the reported need.
            logger.debug("tokenize: %d slots too small, retrying with %d", capacity, -n)
            capacity = -n
            n, tokens = self.model.tokenize_into(data, capacity, add_bos, parse_special)
        if n < 0:
            logger.warning("tokenize: vocabulary rejected %d bytes of input (n=%d)", len(data), n)
            raise TokenizeError(f"Failed to tokenize {len(data)} bytes of text (n_tokens={n})")
        return list(tokens[:n])

    def token_to_bytes(self, token: int, special: bool = False) -> bytes:
        """Render one token to raw bytes (may be an incomplete UTF-8 sequence)."""
        n, piece = self.model.token_to_piece_into(token, PIECE_PROBE_SIZE, special)
        if n < 0:
            n, piece = self.model.token_to_piece_into(token, -n, special)
            if n < 0:
                raise TokenizeError(f"Failed to get piece for token {token}")
        return bytes(piece[:n])

    def detokenize_incremental(self, token: int, buffer: PartialUTF8Buffer) -> Optional[str]:
        """Feed one token's bytes into the buffer and return any completed text."""
        return buffer.feed(self.token_to_bytes(token))

    def detokenize(self, tokens: Sequence[int]) -> str:
        """Best-effort one-shot decode."""
        data = b"".join(self.token_to_bytes(t) for t in tokens)
        return data.decode("utf-8", errors="replace")

    def format_chat(self, messages: Sequence[Message], add_assistant: bool = True) -> str:
        """Render messages with the model's chat template."""
        template = self.model.chat_template()
        capacity = 2 * sum(len(m.role.encode("utf-8")) + len(m.content.encode("utf-8")) for m in messages) + 1024

        n, data = self.model.apply_chat_template_into(template, messages, add_assistant, capacity)
        if n > capacity:
            n, data = self.model.apply_chat_template_into(template, messages, add_assistant, n)
        if n < 0:
            logger.warning("chat template could not be applied to %d messages", len(messages))
            raise ChatTemplateError("Failed to apply chat template")
        return bytes(data[:n]).decode("utf-8", errors="replace")
