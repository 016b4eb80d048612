"""Tests for the completion streamer (sync and async modes)."""

import pytest

from tinysession.core.completion import CompletionEvent, CompletionStreamer
from tinysession.core.errors import TokenizeError
from tinysession.core.events import TokenEvent
from tinysession.core.sequence import Message, SessionState

from conftest import text_tokens

HI = [Message("user", "Hi")]
HI_PROMPT_LEN = 1 + len("<|user|>Hi\n<|assistant|>")  # BOS + formatted bytes


class TestCompletionSync:
    """Test CompletionStreamer in sync mode (default)."""

    def test_sync_mode_no_thread(self, make_session):
        session, _, _ = make_session()
        streamer = CompletionStreamer(session)
        assert not streamer.is_running
        streamer.shutdown()  # Should be no-op

    def test_streams_cumulative_text(self, make_session):
        events = []
        session, _, _ = make_session(script=text_tokens("hey"))
        result = CompletionStreamer(session, callback=events.append).submit(HI)

        assert events == [
            CompletionEvent(text="h", delta="h", done=False),
            CompletionEvent(text="he", delta="e", done=False),
            CompletionEvent(text="hey", delta="y", done=False),
            CompletionEvent(text="hey", delta="", done=True, finish_reason="eog"),
        ]
        assert result.text == "hey"
        assert result.finish_reason == "eog"
        assert result.n_generated == 3
        assert result.n_prompt_tokens == 1 + len("<|user|>Hi\n<|assistant|>")

    def test_final_event_carries_last_fragment(self, make_session):
        events = []
        session, _, _ = make_session(script=text_tokens("abc"), max_tokens=2)
        CompletionStreamer(session, callback=events.append).submit(HI)
        assert events[-1] == CompletionEvent(text="ab", delta="b", done=True, finish_reason="length")

    def test_final_only(self, make_session):
        events = []
        session, _, _ = make_session(script=text_tokens("hey"))
        CompletionStreamer(session, callback=events.append, emit_realtime=False).submit(HI)
        assert [e.done for e in events] == [True]
        assert events[0].text == "hey"

    def test_releases_after_completion(self, make_session):
        session, _, ctx = make_session(script=text_tokens("hey"))
        CompletionStreamer(session).submit(HI)
        assert session.state is SessionState.IDLE
        assert ctx.kv_cells == set()

    def test_keep_session_when_release_after_disabled(self, make_session):
        session, _, _ = make_session(script=text_tokens("hey"))
        CompletionStreamer(session, release_after=False).submit(HI)
        assert session.state is SessionState.DONE
        assert session.output_tokens == text_tokens("hey")

    def test_errors_propagate_and_session_released(self, make_session):
        session, _, _ = make_session(reject=True)
        with pytest.raises(TokenizeError):
            CompletionStreamer(session).submit(HI)
        assert session.state is SessionState.IDLE

    def test_cancel_from_callback(self, make_session):
        session, _, _ = make_session(script=text_tokens("hello"))
        streamer = CompletionStreamer(session, callback=lambda e: streamer.cancel())
        result = streamer.submit(HI)
        assert result.finish_reason == "cancelled"
        assert result.text == "h"

    def test_poll_all(self, make_session):
        session, _, _ = make_session(script=text_tokens("a"))
        streamer = CompletionStreamer(session)
        streamer.submit(HI)
        streamer.submit(HI)
        assert [r.text for r in streamer.poll_all()] == ["a", "a"]
        assert streamer.poll_all() == []


class TestCompletionAsync:
    """Test CompletionStreamer in async mode."""

    def test_async_mode_starts_thread(self, make_session):
        session, _, _ = make_session()
        streamer = CompletionStreamer(session, async_mode=True)
        assert streamer.is_running
        streamer.shutdown()
        assert not streamer.is_running

    def test_async_submit_and_drain(self, make_session):
        session, _, _ = make_session(script=text_tokens("hey"))
        streamer = CompletionStreamer(session, async_mode=True)
        try:
            assert streamer.submit(HI) is None
            results = streamer.drain(timeout=10.0)
            assert len(results) == 1
            assert results[0].text == "hey"
        finally:
            streamer.shutdown()

    def test_async_preserves_order(self, make_session):
        events = []
        session, _, _ = make_session(script=text_tokens("ab"))
        streamer = CompletionStreamer(session, async_mode=True, callback=events.append)
        try:
            streamer.submit(HI)
            streamer.submit(HI)
            results = streamer.drain(timeout=10.0)
        finally:
            streamer.shutdown()

        assert [r.text for r in results] == ["ab", "ab"]
        assert [e.text for e in events] == ["a", "ab", "ab", "a", "ab", "ab"]
        assert [e.done for e in events] == [False, False, True, False, False, True]

    def test_async_failure_reported_as_result(self, make_session):
        events = []
        session, _, _ = make_session(reject=True)
        streamer = CompletionStreamer(session, async_mode=True, callback=events.append)
        try:
            streamer.submit(HI)
            results = streamer.drain(timeout=10.0)
        finally:
            streamer.shutdown()

        assert results[0].finish_reason == "error"
        assert results[0].error.to_dict()["code"] == "tokenize"
        assert events[-1].done and events[-1].finish_reason == "error"

    def test_async_callback_exception_does_not_kill_worker(self, make_session):
        def bad_callback(event):
            raise ValueError("boom")

        session, _, _ = make_session(script=text_tokens("ok"))
        streamer = CompletionStreamer(session, async_mode=True, callback=bad_callback)
        try:
            streamer.submit(HI)
            results = streamer.drain(timeout=10.0)
            assert results[0].text == "ok"
            assert streamer.is_running
        finally:
            streamer.shutdown()

    def test_async_unexpected_exception_reported_as_result(self, make_session):
        """Non-session errors become error results and the worker keeps going."""
        raised = []

        def observer(event):
            if isinstance(event, TokenEvent) and not raised:
                raised.append(event)
                raise ValueError("observer bug")

        session, _, _ = make_session(script=text_tokens("ok"), observer=observer)
        streamer = CompletionStreamer(session, async_mode=True)
        try:
            streamer.submit(HI)
            streamer.submit(HI)
            results = streamer.drain(timeout=10.0)
            assert streamer.is_running
        finally:
            streamer.shutdown()

        assert len(results) == 2
        assert results[0].finish_reason == "error"
        assert isinstance(results[0].error, ValueError)
        assert results[1].text == "ok"
        assert results[1].finish_reason == "eog"

    def test_async_decode_failure_keeps_partial_output(self, make_session):
        session, _, _ = make_session(script=text_tokens("hey"), fail_at_decode=2)
        streamer = CompletionStreamer(session, async_mode=True)
        try:
            streamer.submit(HI)
            results = streamer.drain(timeout=10.0)
        finally:
            streamer.shutdown()

        result = results[0]
        assert result.finish_reason == "error"
        assert result.error.code == "decode_failed"
        assert result.text == "he"
        assert result.n_prompt_tokens == HI_PROMPT_LEN
        assert result.n_generated == 2
        assert session.state is SessionState.IDLE
