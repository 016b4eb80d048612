"""Error taxonomy for sessions.

Every error carries a machine-readable ``code`` so the platform bridge can
report it as a structured failure without parsing messages.
"""

from typing import Dict


class TinySessionError(Exception):
    code = "error"

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "message": str(self)}


class InitError(TinySessionError):
    """Model or context could not be created. Never retried automatically."""
    code = "init_error"


class TokenizeError(TinySessionError):
    """The vocabulary rejected the input text."""
    code = "tokenize"


class SessionError(TinySessionError):
    """Base class for errors raised by a running session."""
    code = "session_error"


class AlreadyRunningError(SessionError):
    """A call arrived while another init/step is in flight, or the session is busy generating."""
    code = "already_running"


class ContextOverflowError(SessionError):
    """Prompt plus max_tokens does not fit in the context window."""
    code = "context_overflow"


class DecodeFailedError(SessionError):
    """The backend decode call failed. The session is unusable until release().

    ``text`` holds output produced by the failing step before its decode, so
    callers streaming a completion do not lose the last accepted token.
    """
    code = "decode_failed"

    def __init__(self, message: str = "", text: str = ""):
        super().__init__(message)
        self.text = text


class InvalidStateError(SessionError):
    """Operation not allowed in the current session state."""
    code = "invalid_state"


class ChatTemplateError(SessionError):
    """The chat template could not be applied to the messages."""
    code = "chat_template"


class BatchOverflowError(RuntimeError):
    """A batch was filled past its capacity. This is a programming error."""
