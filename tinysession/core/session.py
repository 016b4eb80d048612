"""Inference session - prefill plus the step-by-step generation loop.

A session owns one context handle, one batch, one sampler chain and one
partial UTF-8 buffer. The model handle is borrowed and may be shared with
other sessions.

Lifecycle:
    session = create_session(model, SessionConfig(max_tokens=64))
    session.init([Message("user", "Hi")])
    while True:
        outcome = session.step()
        print(outcome.text, end="")
        if outcome.finished:
            break
    session.release()
    session.close()

Every mutating call holds the session lock for its whole duration. A second
init()/step() arriving while one is in flight is rejected with
AlreadyRunningError rather than queued. cancel() never waits: it raises a
flag that the running call observes once its decode returns.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from ..model.base import ContextHandle, ModelHandle
from .batch import Batch
from .bench import BenchResult, run_benchmark
from .config import SessionConfig
from .errors import (
    AlreadyRunningError,
    ContextOverflowError,
    DecodeFailedError,
    InvalidStateError,
    SessionError,
    TokenizeError,
)
from .events import CancelEvent, ErrorEvent, FinishEvent, Observer, PrefillEvent, SessionEvent, TokenEvent
from .sampling import SamplerChain
from .sequence import RESTARTABLE_STATES, Message, SessionState, StepOutcome, TokenSequence
from .tokenizer import PartialUTF8Buffer, TokenizerAdapter

logger = logging.getLogger(__name__)

ACTIVE_STATES = frozenset({SessionState.PREFILLING, SessionState.GENERATING})


class InferenceSession:
    """
    Single-conversation generation state machine.

    Args:
        model: Loaded model handle (borrowed)
        context: Context handle created for this session (owned, closed by close())
        config: Immutable generation settings
        observer: Optional callable receiving SessionEvent objects
    """

    def __init__(
        self,
        model: ModelHandle,
        context: ContextHandle,
        config: SessionConfig,
        observer: Observer = None,
    ):
        self.model = model
        self.config = config
        self.observer = observer
        self._context = context
        self._tokenizer = TokenizerAdapter(model)
        self._sampler = SamplerChain.from_config(config)
        self._batch = Batch(config.n_batch, n_seq_max=context.n_seq_max())
        self._utf8 = PartialUTF8Buffer()
        self._sequence = TokenSequence()

        self.state = SessionState.IDLE
        self.finish_reason: Optional[str] = None
        self.failure: Optional[SessionError] = None
        self._n_cur = 0     # next position in the context
        self._n_decode = 0  # tokens generated since init()

        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._initializing = False
        self._closed = False

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def init(self, messages: Sequence[Message]) -> None:
        """Format, tokenize and prefill a conversation.

        A cancel() arriving while the prompt is formatted or tokenized skips
        the prefill and leaves the session CANCELLED.
        """
        with self._exclusive("init"):
            self._initializing = True
            try:
                self._init(messages)
            finally:
                self._initializing = False
                if self.state not in ACTIVE_STATES:
                    self._cancel_requested.clear()

    def _init(self, messages: Sequence[Message]) -> None:
        if self.state in ACTIVE_STATES:
            raise AlreadyRunningError(f"Session is {self.state.name.lower()}, call release() or cancel() first")
        if self.state not in RESTARTABLE_STATES:
            raise InvalidStateError(f"Session is {self.state.name.lower()}, call release() first")

        prompt = self._tokenizer.format_chat(messages, add_assistant=True)
        tokens = self._tokenizer.tokenize(prompt, add_bos=self.config.add_bos)
        if not tokens:
            raise TokenizeError("Prompt produced no tokens")

        self._reset_conversation()
        self._sequence.prompt_tokens = tokens
        self.state = SessionState.PREFILLING
        if self._cancel_requested.is_set():
            self._apply_cancel()
            return

        n_ctx = self._context.n_ctx()
        n_kv_req = len(tokens) + self.config.max_tokens
        self._emit(PrefillEvent(n_prompt_tokens=len(tokens), n_ctx=n_ctx, n_kv_req=n_kv_req))
        if n_kv_req > n_ctx:
            raise self._fail(ContextOverflowError(
                f"Prompt needs {n_kv_req} cache cells ({len(tokens)} prompt + "
                f"{self.config.max_tokens} new), context has {n_ctx}"
            ))

        self._prefill(tokens)
        self._n_cur = len(tokens)
        self.state = SessionState.GENERATING

        if self._cancel_requested.is_set():
            self._apply_cancel()

    def step(self) -> StepOutcome:
        """Sample, emit and decode one token."""
        with self._exclusive("step"):
            if self._cancel_requested.is_set() and self.state in ACTIVE_STATES:
                self._apply_cancel()
                return StepOutcome(text="", finished=True, finish_reason="cancelled")
            if self.state is not SessionState.GENERATING:
                raise InvalidStateError(f"Cannot step a session that is {self.state.name.lower()}")

            max_tokens = self.config.max_tokens
            n_ctx = self._context.n_ctx()
            if self._n_decode >= max_tokens:
                return self._finish("length", "")
            if self._n_cur >= n_ctx:
                return self._finish("context", "")

            logits = self._context.logits_ith(self._batch.n_tokens - 1)
            token = self._sampler.sample(logits)
            if self.model.token_is_eog(token):
                return self._finish("eog", "")

            self._sampler.accept(token)
            self._sequence.append_token(token)
            text = self._tokenizer.detokenize_incremental(token, self._utf8) or ""
            position = self._n_cur
            self._n_decode += 1
            self._n_cur += 1
            self._emit(TokenEvent(token=token, position=position, text=text))

            if self._n_decode >= max_tokens:
                return self._finish("length", text)
            if self._n_cur >= n_ctx:
                return self._finish("context", text)

            self._batch.clear()
            self._batch.add(token, position, [0], True)
            if self._context.decode(self._batch) != 0:
                raise self._fail(DecodeFailedError(f"Decode failed at position {position}", text=text))

            if self._cancel_requested.is_set():
                self._apply_cancel()
                return StepOutcome(text=text, finished=True, finish_reason="cancelled")
            return StepOutcome(text=text, finished=False)

    def cancel(self) -> None:
        """Stop generation at the next step boundary. Idempotent."""
        if self.state not in ACTIVE_STATES and not self._initializing:
            return
        self._cancel_requested.set()
        # Apply right away when no call is in flight.
        if self._lock.acquire(blocking=False):
            try:
                if self._cancel_requested.is_set() and self.state in ACTIVE_STATES:
                    self._apply_cancel()
                else:
                    self._cancel_requested.clear()
            finally:
                self._lock.release()

    def release(self) -> None:
        """Drop the conversation and the key-value cache, back to IDLE.

        Waits for an in-flight step to return.
        """
        if self._closed:
            return
        self._cancel_requested.set()
        with self._lock:
            self._reset_conversation()
            self._batch.clear()
            self._n_cur = 0
            self.state = SessionState.IDLE
            self.finish_reason = None
            self.failure = None
            self._cancel_requested.clear()

    def close(self) -> None:
        """Release and free the context. The model handle is left alone."""
        if self._closed:
            return
        self.release()
        with self._lock:
            self._context.close()
            self._closed = True

    def __enter__(self) -> "InferenceSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Tokenizer access and introspection
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> List[int]:
        return self._tokenizer.tokenize(text, add_bos=True)

    def detokenize(self, tokens: Sequence[int]) -> str:
        return self._tokenizer.detokenize(tokens)

    def model_description(self) -> str:
        return self.model.desc()

    def token_count_in_current_batch(self) -> int:
        return self._batch.n_tokens

    @property
    def n_prompt_tokens(self) -> int:
        return self._sequence.get_prompt_len()

    @property
    def n_generated(self) -> int:
        return self._sequence.get_output_len()

    @property
    def output_tokens(self) -> List[int]:
        return list(self._sequence.output_tokens)

    # ------------------------------------------------------------------
    # Benchmark
    # ------------------------------------------------------------------

    def bench(self, pp: int, tg: int, pl: int, nr: int = 1) -> BenchResult:
        """Run the throughput benchmark on this session's context.

        Wipes the key-value cache, so it is refused while generating. A failed
        decode leaves the session FAILED.
        """
        with self._exclusive("bench"):
            if self.state in ACTIVE_STATES:
                raise AlreadyRunningError("Cannot benchmark while a generation is running")
            try:
                return run_benchmark(self.model, self._context, self._batch, pp, tg, pl, nr)
            except DecodeFailedError as e:
                raise self._fail(e)
            finally:
                self._batch.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[None]:
        if self._closed:
            raise InvalidStateError(f"{operation}() called on a closed session")
        if not self._lock.acquire(blocking=False):
            raise AlreadyRunningError(f"{operation}() called while another call is in progress")
        try:
            yield
        finally:
            self._lock.release()

    def _reset_conversation(self) -> None:
        self._sequence.clear()
        self._utf8.discard()
        self._sampler.reset()
        self._context.memory_clear(True)
        self._n_decode = 0
        self.finish_reason = None

    def _prefill(self, tokens: List[int]) -> None:
        """Decode the prompt in batch-sized chunks; only the final row asks for logits."""
        capacity = self._batch.capacity
        for start in range(0, len(tokens), capacity):
            chunk = tokens[start:start + capacity]
            self._batch.clear()
            for offset, token in enumerate(chunk):
                self._batch.add(token, start + offset, [0], False)
            if start + capacity >= len(tokens):
                self._batch.set_logits(self._batch.n_tokens - 1, True)
            if self._context.decode(self._batch) != 0:
                raise self._fail(DecodeFailedError(
                    f"Prompt decode failed for tokens {start}..{start + len(chunk) - 1}"
                ))

    def _finish(self, reason: str, text: str) -> StepOutcome:
        text += self._utf8.flush()
        n_generated = self._n_decode
        self._n_decode = 0
        self.state = SessionState.DONE
        self.finish_reason = reason
        logger.debug("Generation finished (%s) after %d tokens", reason, n_generated)
        self._emit(FinishEvent(reason=reason, n_generated=n_generated))
        return StepOutcome(text=text, finished=True, finish_reason=reason)

    def _apply_cancel(self) -> None:
        n_generated = self._n_decode
        self._utf8.discard()
        self._n_decode = 0
        self.state = SessionState.CANCELLED
        self.finish_reason = "cancelled"
        self._cancel_requested.clear()
        logger.debug("Generation cancelled after %d tokens", n_generated)
        self._emit(CancelEvent(n_generated=n_generated))

    def _fail(self, error: SessionError) -> SessionError:
        self.state = SessionState.FAILED
        self.failure = error
        logger.warning("Session failed: %s", error)
        self._emit(ErrorEvent(code=error.code, message=str(error)))
        return error

    def _emit(self, event: SessionEvent) -> None:
        if self.observer is not None:
            self.observer(event)


def create_session(
    model: ModelHandle,
    config: Optional[SessionConfig] = None,
    observer: Observer = None,
) -> InferenceSession:
    """Create a context on `model` and wrap it in a session.

    Raises InitError when the backend cannot create the context.
    """
    config = config or SessionConfig()
    context = model.new_context(config)
    return InferenceSession(model, context, config, observer=observer)
