"""Native handle interfaces.

A backend exposes two objects: a ModelHandle (weights + vocabulary, read-only,
may be shared between sessions) and a ContextHandle (key-value cache and
logits for one session, never shared).

The vocabulary primitives are C-shaped: callers pass a buffer
capacity and get back a length. A negative length means "buffer too small,
-n is needed". The session's tokenizer adapter owns the retry logic.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from tinygrad import Tensor

if TYPE_CHECKING:
    from ..core.batch import Batch
    from ..core.config import SessionConfig
    from ..core.sequence import Message


class ModelHandle(ABC):
    """Loaded model weights and vocabulary."""

    @property
    @abstractmethod
    def n_vocab(self) -> int: ...

    @abstractmethod
    def token_bos(self) -> Optional[int]: ...

    @abstractmethod
    def token_is_eog(self, token: int) -> bool: ...

    @abstractmethod
    def tokenize_into(
        self, text: bytes, capacity: int, add_special: bool, parse_special: bool
    ) -> Tuple[int, List[int]]:
        """Tokenize into at most `capacity` tokens. Returns (n, tokens); n < 0 if too small."""

    @abstractmethod
    def token_to_piece_into(self, token: int, capacity: int, special: bool) -> Tuple[int, bytes]:
        """Render one token into at most `capacity` bytes. Returns (n, bytes); n < 0 if too small."""

    @abstractmethod
    def chat_template(self) -> Optional[str]:
        """Chat template stored in the model, None if it has none."""

    @abstractmethod
    def apply_chat_template_into(
        self,
        template: Optional[str],
        messages: Sequence["Message"],
        add_assistant: bool,
        capacity: int,
    ) -> Tuple[int, bytes]:
        """Format messages. Returns (total_len, bytes); total_len > capacity means retry."""

    @abstractmethod
    def desc(self) -> str: ...

    @abstractmethod
    def size(self) -> int:
        """Model size in bytes."""

    @abstractmethod
    def n_params(self) -> int: ...

    @abstractmethod
    def backend_name(self) -> str: ...

    @abstractmethod
    def new_context(self, config: "SessionConfig") -> "ContextHandle":
        """Create a context for one session. Raises InitError on failure."""

    def close(self) -> None:
        """Free the weights. Contexts created from this model must be closed first."""
        pass


class ContextHandle(ABC):
    """Key-value cache and compute state owned by exactly one session."""

    @abstractmethod
    def n_ctx(self) -> int: ...

    @abstractmethod
    def n_seq_max(self) -> int: ...

    @abstractmethod
    def decode(self, batch: "Batch") -> int:
        """Run one forward pass over the batch. Returns 0 on success."""

    @abstractmethod
    def logits_ith(self, i: int) -> Tensor:
        """Logits of batch row i from the last decode, shape [n_vocab]."""

    @abstractmethod
    def memory_clear(self, data: bool = True) -> None:
        """Drop every key-value entry."""

    def synchronize(self) -> None:
        pass

    def close(self) -> None:
        pass
