"""Shared fake backend for the test suite.

FakeModel is a byte-level vocabulary: tokens 0..255 are single bytes, then BOS,
EOS and two multi-byte pieces. FakeContext replays a scripted continuation:
after the prompt it "predicts" script[0], after the first generated token
script[1], and so on, then EOS once the script runs out.
"""

import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from tinygrad import Tensor

from tinysession.core.config import SessionConfig
from tinysession.core.errors import InitError
from tinysession.core.session import create_session
from tinysession.model.base import ContextHandle, ModelHandle

BOS = 256
EOS = 257
EURO = 258  # b"\xe2\x82\xac"
LONG = 259  # 20-byte piece, longer than the first probe
N_VOCAB = 260

SPECIAL_PIECES: Dict[int, bytes] = {
    EURO: "€".encode("utf-8"),
    LONG: b"abcdefghijklmnopqrst",
}


class FakeModel(ModelHandle):
    def __init__(
        self,
        script: Sequence[int] = (),
        expand: bool = False,
        reject: bool = False,
        template: Optional[str] = "fake",
        template_preamble: str = "",
        template_fails: bool = False,
        fail_context: bool = False,
        has_bos: bool = True,
        template_gate: Optional[threading.Event] = None,
        **context_options,
    ):
        self.script = list(script)
        self.expand = expand
        self.reject = reject
        self.template = template
        self.template_preamble = template_preamble
        self.template_fails = template_fails
        self.fail_context = fail_context
        self.has_bos = has_bos
        self.template_gate = template_gate
        self.template_entered = threading.Event()
        self.context_options = context_options
        self.contexts: List["FakeContext"] = []
        self.tokenize_calls: List[int] = []
        self.piece_calls: List[Tuple[int, int]] = []
        self.template_calls: List[Tuple[Optional[str], int]] = []

    @property
    def n_vocab(self) -> int:
        return N_VOCAB

    def token_bos(self) -> Optional[int]:
        return BOS if self.has_bos else None

    def token_is_eog(self, token: int) -> bool:
        return token == EOS

    def tokenize_into(self, text, capacity, add_special, parse_special):
        self.tokenize_calls.append(capacity)
        if self.reject:
            return -(capacity + 1), []
        tokens = [BOS] if add_special and self.has_bos else []
        for b in text:
            tokens.extend([b, b] if self.expand else [b])
        if len(tokens) > capacity:
            return -len(tokens), []
        return len(tokens), tokens

    def piece(self, token: int, special: bool = False) -> bytes:
        if token < 256:
            return bytes([token])
        if token in SPECIAL_PIECES:
            return SPECIAL_PIECES[token]
        return b"<s>" if token == BOS and special else b""

    def token_to_piece_into(self, token, capacity, special):
        self.piece_calls.append((token, capacity))
        piece = self.piece(token, special)
        if len(piece) > capacity:
            return -len(piece), b""
        return len(piece), piece

    def chat_template(self):
        return self.template

    def render_chat(self, messages, add_assistant: bool) -> bytes:
        text = self.template_preamble
        text += "".join(f"<|{m.role}|>{m.content}\n" for m in messages)
        if add_assistant:
            text += "<|assistant|>"
        return text.encode("utf-8")

    def apply_chat_template_into(self, template, messages, add_assistant, capacity):
        self.template_calls.append((template, capacity))
        self.template_entered.set()
        if self.template_gate is not None:
            self.template_gate.wait(timeout=5.0)
        if self.template_fails:
            return -1, b""
        data = self.render_chat(messages, add_assistant)
        if len(data) > capacity:
            return len(data), data[:capacity]
        return len(data), data

    def desc(self) -> str:
        return "fake 1B Q8_0"

    def size(self) -> int:
        return 3 * 1024 ** 3 // 2  # 1.50 GiB

    def n_params(self) -> int:
        return 1_230_000_000

    def backend_name(self) -> str:
        return "CPU"

    def new_context(self, config: SessionConfig) -> "FakeContext":
        if self.fail_context:
            raise InitError("fake context refused")
        context = FakeContext(self, config, **self.context_options)
        self.contexts.append(context)
        return context


class FakeContext(ContextHandle):
    def __init__(
        self,
        model: FakeModel,
        config: SessionConfig,
        fail_at_decode: Optional[int] = None,
        decode_delay: float = 0.0,
        gate: Optional[threading.Event] = None,
    ):
        self.model = model
        self.config = config
        self.fail_at_decode = fail_at_decode
        self.decode_delay = decode_delay
        self.gate = gate
        self.entered = threading.Event()

        self.decode_log: List[List[Tuple[int, int, Tuple[int, ...], bool]]] = []
        self.kv_cells = set()
        self.clear_calls = 0
        self.sync_calls = 0
        self.closed = False
        self._logit_rows: List[int] = []
        self._logits_seen = False
        self._n_generated = 0

    def n_ctx(self) -> int:
        return self.config.n_ctx

    def n_seq_max(self) -> int:
        return self.config.n_seq_max

    def decode(self, batch) -> int:
        rows = list(batch.rows())
        index = len(self.decode_log)
        self.decode_log.append(rows)
        if self.gate is not None:
            self.entered.set()
            self.gate.wait(timeout=5.0)
        if self.fail_at_decode is not None and index == self.fail_at_decode:
            return -1
        if self.decode_delay:
            time.sleep(self.decode_delay)

        if self._logits_seen:
            self._n_generated += 1
        self._logit_rows = batch.logit_rows()
        if self._logit_rows:
            self._logits_seen = True
        for _, pos, seq_ids, _ in rows:
            for seq_id in seq_ids:
                self.kv_cells.add((seq_id, pos))
        return 0

    def next_token(self) -> int:
        script = self.model.script
        return script[self._n_generated] if self._n_generated < len(script) else EOS

    def logits_ith(self, i: int) -> Tensor:
        assert i in self._logit_rows, f"row {i} did not request logits"
        logits = [0.0] * N_VOCAB
        logits[self.next_token()] = 10.0
        return Tensor(logits)

    def memory_clear(self, data: bool = True) -> None:
        self.kv_cells.clear()
        self.clear_calls += 1
        self._logit_rows = []
        self._logits_seen = False
        self._n_generated = 0

    def synchronize(self) -> None:
        self.sync_calls += 1

    def close(self) -> None:
        self.closed = True


def text_tokens(text: str) -> List[int]:
    return list(text.encode("utf-8"))


@pytest.fixture
def test_config():
    return SessionConfig(n_ctx=256, n_batch=64, max_tokens=16, temp=0.0, seed=0)


@pytest.fixture
def make_session(test_config):
    """Factory: make_session(script=..., model options..., config overrides...)."""
    config_fields = set(SessionConfig.__dataclass_fields__)

    def _make(script: Sequence[int] = (), observer=None, **options):
        overrides = {k: v for k, v in options.items() if k in config_fields}
        model_options = {k: v for k, v in options.items() if k not in config_fields}
        model = FakeModel(script=script, **model_options)
        session = create_session(model, test_config.replace(**overrides), observer=observer)
        return session, model, model.contexts[-1]

    return _make
