"""Session state and the data that flows through one generation.

- Message: one chat turn (role + content)
- TokenSequence: prompt tokens plus accepted generated tokens
- SessionState: lifecycle of a session
- StepOutcome: what one step() returns

Lifecycle:
    IDLE --init()--> PREFILLING --decode ok--> GENERATING
    GENERATING --step()--> GENERATING | DONE
    GENERATING --cancel()--> CANCELLED
    any --decode error--> FAILED
    any --release()--> IDLE
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional


class SessionState(Enum):
    """Lifecycle states for a session."""
    IDLE = auto()        # No conversation loaded
    PREFILLING = auto()  # Prompt is being decoded
    GENERATING = auto()  # step() produces tokens
    DONE = auto()        # A stop condition fired
    CANCELLED = auto()   # Stopped by cancel()
    FAILED = auto()      # Decode or setup error, needs release()


# States from which init() may start a new conversation.
RESTARTABLE_STATES = frozenset({SessionState.IDLE, SessionState.DONE, SessionState.CANCELLED})


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Accept both {'role', 'content'} and the bridge's {'role', 'message'} shape."""
        content = data.get("content")
        if content is None:
            content = data.get("message", "")
        return cls(role=str(data.get("role", "")), content=str(content))


@dataclass
class TokenSequence:
    """
    Tokens consumed by the context so far.

    Attributes:
        prompt_tokens: Tokens of the formatted prompt (including BOS)
        output_tokens: Tokens accepted during generation

    Example:
        seq = TokenSequence(prompt_tokens=[1, 2, 3])
        seq.append_token(4)
        print(seq.get_all_tokens())  # [1, 2, 3, 4]
        print(seq.get_len())  # 4
    """
    prompt_tokens: List[int] = field(default_factory=list)
    output_tokens: List[int] = field(default_factory=list)

    def get_all_tokens(self) -> List[int]:
        return self.prompt_tokens + self.output_tokens

    def get_len(self) -> int:
        return len(self.prompt_tokens) + len(self.output_tokens)

    def get_prompt_len(self) -> int:
        return len(self.prompt_tokens)

    def get_output_len(self) -> int:
        return len(self.output_tokens)

    def append_token(self, token_id: int) -> None:
        self.output_tokens.append(token_id)

    def clear(self) -> None:
        self.prompt_tokens = []
        self.output_tokens = []


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of one step() call.

    Attributes:
        text: Text produced by this step (may be empty)
        finished: True once the session stopped generating
        finish_reason: 'eog', 'length', 'context' or 'cancelled' when finished
    """
    text: str
    finished: bool
    finish_reason: Optional[str] = None
