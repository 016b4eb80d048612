"""Core components for tinysession."""

from .batch import Batch
from .bench import BenchResult, run_benchmark
from .completion import CompletionEvent, CompletionResult, CompletionStreamer
from .config import SessionConfig
from .errors import (
    AlreadyRunningError,
    BatchOverflowError,
    ChatTemplateError,
    ContextOverflowError,
    DecodeFailedError,
    InitError,
    InvalidStateError,
    SessionError,
    TinySessionError,
    TokenizeError,
)
from .sampling import SamplerChain
from .sequence import Message, SessionState, StepOutcome, TokenSequence
from .session import InferenceSession, create_session
from .tokenizer import PartialUTF8Buffer, TokenizerAdapter
