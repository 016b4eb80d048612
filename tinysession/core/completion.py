"""Completion driver - runs init() plus the step loop for one message list.

Sync mode (default): submit() runs the whole completion inline and returns it.
Async mode: submit() queues the messages; one background thread runs them in
order, so events for a completion never interleave with another's.

Events carry the cumulative text so far plus the fragment that was just added,
followed by one final event with done=True.

Example:
    streamer = CompletionStreamer(session, callback=lambda e: print(e.delta, end=""))
    result = streamer.submit([Message("user", "Hi")])
    print(result.finish_reason)
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from .errors import DecodeFailedError, InvalidStateError, TinySessionError
from .sequence import Message, SessionState, StepOutcome

if TYPE_CHECKING:
    from .session import InferenceSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionEvent:
    """One streamed update."""
    text: str   # cumulative output
    delta: str  # fragment added by this update
    done: bool
    finish_reason: Optional[str] = None


@dataclass
class CompletionResult:
    """Outcome of a finished completion."""
    text: str
    finish_reason: str  # 'eog', 'length', 'context', 'cancelled' or 'error'
    n_prompt_tokens: int
    n_generated: int
    error: Optional[Exception] = None


class CompletionStreamer:
    """
    Drives a session through whole completions.

    Args:
        session: Session to generate with (used exclusively while running)
        async_mode: If True, run completions on a background thread
        callback: Optional callable receiving CompletionEvent objects
        emit_realtime: If False, only the final event is reported
        release_after: Clear the session's cache after every completion
    """

    def __init__(
        self,
        session: "InferenceSession",
        async_mode: bool = False,
        callback: Optional[Callable[[CompletionEvent], None]] = None,
        emit_realtime: bool = True,
        release_after: bool = True,
    ):
        self.session = session
        self.async_mode = async_mode
        self.callback = callback
        self.emit_realtime = emit_realtime
        self.release_after = release_after
        self._results: List[CompletionResult] = []
        self._results_lock = threading.Lock()
        self._partial_text = ""
        self._partial_counts = (0, 0)

        if async_mode:
            self._pending_queue: "queue.Queue[List[Message]]" = queue.Queue()
            self._in_flight = 0
            self._idle = threading.Condition(self._results_lock)
            self._running = True
            self._thread = threading.Thread(
                target=self._process_loop,
                name="CompletionStreamer",
                daemon=True,
            )
            self._thread.start()

    def submit(self, messages: Sequence[Message]) -> Optional[CompletionResult]:
        """
        Run (sync) or queue (async) one completion.

        Sync mode returns the result and lets session errors propagate.
        Async mode returns None; failures surface as results with an error.
        """
        if self.async_mode:
            with self._idle:
                self._in_flight += 1
            self._pending_queue.put(list(messages))
            return None

        result = self._run(messages)
        with self._results_lock:
            self._results.append(result)
        return result

    def cancel(self) -> None:
        """Cancel the completion that is currently generating."""
        self.session.cancel()

    def poll_all(self) -> List[CompletionResult]:
        """Get all finished results."""
        with self._results_lock:
            outputs = self._results.copy()
            self._results.clear()
            return outputs

    def drain(self, timeout: float = 10.0) -> List[CompletionResult]:
        """Wait for queued completions and return all results."""
        if self.async_mode:
            deadline = time.monotonic() + timeout
            with self._idle:
                while self._in_flight > 0:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._idle.wait(remaining)
        return self.poll_all()

    def shutdown(self) -> None:
        """Stop background thread if running."""
        if self.async_mode:
            self._running = False
            self._thread.join(timeout=1.0)

    @property
    def is_running(self) -> bool:
        """Check if background thread is running (async mode only)."""
        return self.async_mode and self._thread.is_alive()

    def _run(self, messages: Sequence[Message]) -> CompletionResult:
        session = self.session
        text = self._partial_text = ""
        try:
            session.init(messages)
            while True:
                try:
                    outcome = session.step()
                except InvalidStateError:
                    # cancel() landed between two steps
                    if session.state is not SessionState.CANCELLED:
                        raise
                    outcome = StepOutcome(text="", finished=True, finish_reason="cancelled")
                except DecodeFailedError as e:
                    self._partial_text = text + e.text
                    raise
                text += outcome.text
                self._partial_text = text
                if outcome.finished:
                    break
                if self.emit_realtime and outcome.text:
                    self._notify(CompletionEvent(text=text, delta=outcome.text, done=False))
            self._notify(CompletionEvent(
                text=text, delta=outcome.text, done=True, finish_reason=outcome.finish_reason,
            ))
            return CompletionResult(
                text=text,
                finish_reason=outcome.finish_reason or "eog",
                n_prompt_tokens=session.n_prompt_tokens,
                n_generated=session.n_generated,
            )
        finally:
            # release() zeroes the counts
            self._partial_counts = (session.n_prompt_tokens, session.n_generated)
            if self.release_after:
                session.release()

    def _notify(self, event: CompletionEvent) -> None:
        if self.callback is None:
            return
        if not self.async_mode:
            self.callback(event)
            return
        # A failing callback must not kill the worker thread.
        try:
            self.callback(event)
        except Exception:
            logger.exception("Completion callback raised")

    def _process_loop(self) -> None:
        """Background thread for async mode."""
        while self._running:
            try:
                messages = self._pending_queue.get(timeout=0.05)
            except queue.Empty:
                continue

            result = None
            try:
                result = self._run(messages)
            except Exception as e:
                if isinstance(e, TinySessionError):
                    logger.warning("Completion failed: %s", e)
                else:
                    logger.exception("Completion crashed")
                n_prompt_tokens, n_generated = self._partial_counts
                result = CompletionResult(
                    text=self._partial_text,
                    finish_reason="error",
                    n_prompt_tokens=n_prompt_tokens,
                    n_generated=n_generated,
                    error=e,
                )
                self._notify(CompletionEvent(
                    text=self._partial_text, delta="", done=True, finish_reason="error",
                ))
            finally:
                with self._idle:
                    if result is not None:
                        self._results.append(result)
                    self._in_flight -= 1
                    self._idle.notify_all()
