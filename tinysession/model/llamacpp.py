"""llama.cpp backend through the low-level llama-cpp-python bindings.

Only the C-level functions are used; sampling, batching and text handling
live in tinysession. Logits are copied out of llama.cpp into tinygrad tensors.

Example:
    model = load_model("models/qwen2.5-0.5b-instruct-q8_0.gguf")
    session = create_session(model, SessionConfig(n_ctx=2048))
"""

import ctypes
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from tinygrad import Tensor, dtypes

from ..core.errors import InitError
from .base import ContextHandle, ModelHandle

if TYPE_CHECKING:
    from ..core.batch import Batch
    from ..core.config import SessionConfig
    from ..core.sequence import Message

logger = logging.getLogger(__name__)

_backend_lock = threading.Lock()
_backend_ready = False


def _llama_cpp():
    try:
        import llama_cpp
    except ImportError as e:
        raise ImportError(
            "The llama.cpp backend needs llama-cpp-python. "
            "Install with: pip install 'tinysession[llama]'"
        ) from e
    return llama_cpp


def _ensure_backend():
    global _backend_ready
    llama_cpp = _llama_cpp()
    with _backend_lock:
        if not _backend_ready:
            llama_cpp.llama_backend_init()
            _backend_ready = True
    return llama_cpp


class LlamaCppModel(ModelHandle):
    """GGUF model weights and vocabulary loaded by llama.cpp."""

    def __init__(self, path: str, n_gpu_layers: Optional[int] = None):
        self._lib = _ensure_backend()
        self.path = path

        params = self._lib.llama_model_default_params()
        if n_gpu_layers is not None:
            params.n_gpu_layers = n_gpu_layers
        self.n_gpu_layers = params.n_gpu_layers

        model = self._lib.llama_model_load_from_file(path.encode("utf-8"), params)
        if not model:
            raise InitError(f"Could not load model at {path}")
        self.model = model
        self.vocab = self._lib.llama_model_get_vocab(model)
        self._n_vocab = self._lib.llama_vocab_n_tokens(self.vocab)

    @property
    def n_vocab(self) -> int:
        return self._n_vocab

    def token_bos(self) -> Optional[int]:
        bos = self._lib.llama_vocab_bos(self.vocab)
        return None if bos < 0 else bos

    def token_is_eog(self, token: int) -> bool:
        return bool(self._lib.llama_vocab_is_eog(self.vocab, token))

    def tokenize_into(
        self, text: bytes, capacity: int, add_special: bool, parse_special: bool
    ) -> Tuple[int, List[int]]:
        tokens = (self._lib.llama_token * capacity)()
        n = self._lib.llama_tokenize(
            self.vocab, text, len(text), tokens, capacity, add_special, parse_special
        )
        if n < 0:
            return n, []
        return n, list(tokens[:n])

    def token_to_piece_into(self, token: int, capacity: int, special: bool) -> Tuple[int, bytes]:
        buf = (ctypes.c_char * capacity)()
        n = self._lib.llama_token_to_piece(self.vocab, token, buf, capacity, 0, special)
        if n < 0:
            return n, b""
        return n, bytes(buf[:n])

    def chat_template(self) -> Optional[str]:
        template = self._lib.llama_model_chat_template(self.model, None)
        if not template:
            return None
        return template.decode("utf-8")

    def apply_chat_template_into(
        self,
        template: Optional[str],
        messages: Sequence["Message"],
        add_assistant: bool,
        capacity: int,
    ) -> Tuple[int, bytes]:
        encoded = [(m.role.encode("utf-8"), m.content.encode("utf-8")) for m in messages]
        chat = (self._lib.llama_chat_message * len(encoded))()
        for i, (role, content) in enumerate(encoded):
            chat[i].role = role
            chat[i].content = content

        buf = ctypes.create_string_buffer(capacity)
        tmpl = template.encode("utf-8") if template is not None else None
        n = self._lib.llama_chat_apply_template(tmpl, chat, len(encoded), add_assistant, buf, capacity)
        if n < 0 or n > capacity:
            return n, b""
        return n, buf.raw[:n]

    def desc(self) -> str:
        buf = ctypes.create_string_buffer(256)
        self._lib.llama_model_desc(self.model, buf, 256)
        return buf.value.decode("utf-8", errors="replace")

    def size(self) -> int:
        return self._lib.llama_model_size(self.model)

    def n_params(self) -> int:
        return self._lib.llama_model_n_params(self.model)

    def backend_name(self) -> str:
        if self.n_gpu_layers != 0 and self._lib.llama_supports_gpu_offload():
            return "GPU"
        return "CPU"

    def new_context(self, config: "SessionConfig") -> "LlamaCppContext":
        return LlamaCppContext(self, config)

    def close(self) -> None:
        if self.model:
            self._lib.llama_model_free(self.model)
            self.model = None


class LlamaCppContext(ContextHandle):
    """llama.cpp context plus the native batch it decodes from."""

    def __init__(self, model: LlamaCppModel, config: "SessionConfig"):
        self._lib = model._lib
        self._model = model

        params = self._lib.llama_context_default_params()
        params.n_ctx = config.n_ctx
        params.n_batch = config.n_batch
        params.n_threads = config.threads
        params.n_threads_batch = config.threads_batch
        params.n_seq_max = config.n_seq_max

        ctx = self._lib.llama_init_from_model(model.model, params)
        if not ctx:
            raise InitError(f"Could not create context (n_ctx={config.n_ctx}, n_batch={config.n_batch})")
        self.ctx = ctx
        self._n_vocab = model.n_vocab
        self._capacity = config.n_batch
        self._n_seq_max = self._lib.llama_n_seq_max(ctx)
        self._batch = self._lib.llama_batch_init(self._capacity, 0, self._n_seq_max)
        logger.debug("Created llama.cpp context n_ctx=%d n_batch=%d", self.n_ctx(), self._capacity)

    def n_ctx(self) -> int:
        return self._lib.llama_n_ctx(self.ctx)

    def n_seq_max(self) -> int:
        return self._n_seq_max

    def decode(self, batch: "Batch") -> int:
        if batch.n_tokens > self._capacity:
            raise ValueError(f"Batch of {batch.n_tokens} rows exceeds native capacity {self._capacity}")
        native = self._batch
        for i, (token, pos, seq_ids, logits) in enumerate(batch.rows()):
            native.token[i] = token
            native.pos[i] = pos
            native.n_seq_id[i] = len(seq_ids)
            for k, seq_id in enumerate(seq_ids):
                native.seq_id[i][k] = seq_id
            native.logits[i] = logits
        native.n_tokens = batch.n_tokens

        ret = self._lib.llama_decode(self.ctx, native)
        if ret != 0:
            logger.warning("llama_decode returned %d", ret)
        return ret

    def logits_ith(self, i: int) -> Tensor:
        ptr = self._lib.llama_get_logits_ith(self.ctx, i)
        return Tensor(ptr[:self._n_vocab], dtype=dtypes.float32)

    def memory_clear(self, data: bool = True) -> None:
        self._lib.llama_memory_clear(self._lib.llama_get_memory(self.ctx), data)

    def synchronize(self) -> None:
        self._lib.llama_synchronize(self.ctx)

    def close(self) -> None:
        if self.ctx:
            self._lib.llama_batch_free(self._batch)
            self._lib.llama_free(self.ctx)
            self.ctx = None


def load_model(path: str, n_gpu_layers: Optional[int] = None) -> LlamaCppModel:
    """Load a GGUF file. Raises InitError if the file is missing or rejected."""
    if not Path(path).is_file():
        raise InitError(f"Model file not found: {path}")
    return LlamaCppModel(str(path), n_gpu_layers=n_gpu_layers)
