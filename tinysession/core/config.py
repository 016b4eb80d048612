"""Session configuration.

A SessionConfig is fixed when a session is created and never changes while the
session lives. Defaults target small on-device models: a 1024-token window,
512-row batches and a mild penalty, top-k, top-p and min-p sampler.
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional


def default_n_threads() -> int:
    """Leave two cores for the host, never use more than 8."""
    return max(1, min(8, (os.cpu_count() or 1) - 2))


@dataclass(frozen=True)
class SessionConfig:
    # Context
    n_ctx: int = 1024
    n_batch: int = 512
    n_threads: Optional[int] = None
    n_threads_batch: Optional[int] = None
    n_seq_max: int = 1

    # Generation
    max_tokens: int = 128
    add_bos: bool = True

    # Sampling
    temp: float = 0.8
    min_p: float = 0.05
    top_p: float = 0.95
    top_k: int = 40
    penalty_last_n: int = 64
    penalty_repeat: float = 1.1
    penalty_freq: float = 0.1
    penalty_present: float = 0.0
    seed: Optional[int] = None

    def __post_init__(self):
        if self.n_ctx <= 0:
            raise ValueError(f"n_ctx must be positive, got {self.n_ctx}")
        if self.n_batch <= 0:
            raise ValueError(f"n_batch must be positive, got {self.n_batch}")
        if self.n_seq_max <= 0:
            raise ValueError(f"n_seq_max must be positive, got {self.n_seq_max}")
        if self.max_tokens < 0:
            raise ValueError(f"max_tokens must be >= 0, got {self.max_tokens}")
        for name in ("n_threads", "n_threads_batch"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if not 0.0 <= self.top_p <= 1.0:
            raise ValueError(f"top_p must be in [0, 1], got {self.top_p}")
        if not 0.0 <= self.min_p <= 1.0:
            raise ValueError(f"min_p must be in [0, 1], got {self.min_p}")
        if self.penalty_last_n < -1:
            raise ValueError(f"penalty_last_n must be >= -1, got {self.penalty_last_n}")
        if self.penalty_repeat <= 0.0:
            raise ValueError(f"penalty_repeat must be positive, got {self.penalty_repeat}")

    @property
    def threads(self) -> int:
        return self.n_threads if self.n_threads is not None else default_n_threads()

    @property
    def threads_batch(self) -> int:
        return self.n_threads_batch if self.n_threads_batch is not None else self.threads

    def replace(self, **changes: Any) -> "SessionConfig":
        """Return a copy with the given fields changed (validated again)."""
        return replace(self, **changes)

    # Parameter names used by the platform bridge (initContext call).
    _ALIASES = {
        "penalties_last_n": "penalty_last_n",
        "penalties_repeat": "penalty_repeat",
        "penalties_freq": "penalty_freq",
        "penalties_pres": "penalty_present",
    }

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "SessionConfig":
        """Build a config from a loose parameter dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in params.items():
            key = cls._ALIASES.get(key, key)
            if key in known and value is not None:
                kwargs[key] = value
        return cls(**kwargs)
