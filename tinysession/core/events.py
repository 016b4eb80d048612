"""Structured events emitted by a session.

A session reports what it does through an optional observer callable instead
of printing. Events arrive in generation order on the thread that runs the
session call.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Union


@dataclass(frozen=True)
class PrefillEvent:
    n_prompt_tokens: int
    n_ctx: int
    n_kv_req: int


@dataclass(frozen=True)
class TokenEvent:
    token: int
    position: int
    text: str  # may be empty while a multi-byte character is incomplete


@dataclass(frozen=True)
class FinishEvent:
    reason: str  # 'eog', 'length' or 'context'
    n_generated: int


@dataclass(frozen=True)
class CancelEvent:
    n_generated: int


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str


SessionEvent = Union[PrefillEvent, TokenEvent, FinishEvent, CancelEvent, ErrorEvent]
Observer = Optional[Callable[[SessionEvent], None]]
