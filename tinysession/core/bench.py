"""Throughput benchmark on a live context.

Each repetition times one prompt-processing decode of `pp` dummy tokens and
`tg` generation decodes of `pl` parallel sequences, clearing the cache in
between. Results are reported in tokens/second as mean and sample standard
deviation across repetitions.

Example:
    result = session.bench(pp=512, tg=128, pl=1, nr=3)
    print(result.to_table())
"""

import statistics
import time
from dataclasses import dataclass
from typing import List, Tuple

from ..model.base import ContextHandle, ModelHandle
from .batch import Batch
from .errors import DecodeFailedError

GIB = 1024.0 * 1024.0 * 1024.0


@dataclass(frozen=True)
class BenchResult:
    """Aggregated benchmark numbers plus the model facts shown in the table."""
    pp: int
    tg: int
    pl: int
    nr: int
    pp_avg: float  # tokens/s
    pp_std: float
    tg_avg: float
    tg_std: float
    model_desc: str
    model_size: int  # bytes
    n_params: int
    backend: str

    def to_table(self) -> str:
        size = f"{self.model_size / GIB:.2f} GiB"
        params = f"{self.n_params / 1e9:.2f} B"
        lines = [
            "| model | size | params | backend | test | t/s |",
            "| --- | --- | --- | --- | --- | --- |",
            f"| {self.model_desc} | {size} | {params} | {self.backend} | pp {self.pp} | {self.pp_avg:.2f} ± {self.pp_std:.2f} |",
            f"| {self.model_desc} | {size} | {params} | {self.backend} | tg {self.tg} | {self.tg_avg:.2f} ± {self.tg_std:.2f} |",
        ]
        return "\n".join(lines)


def mean_std(samples: List[float]) -> Tuple[float, float]:
    """Mean and Bessel-corrected standard deviation; std is 0 for one sample."""
    avg = statistics.mean(samples)
    std = statistics.stdev(samples) if len(samples) > 1 else 0.0
    return avg, std


def _check_args(context: ContextHandle, batch: Batch, pp: int, tg: int, pl: int, nr: int) -> None:
    for name, value in (("pp", pp), ("tg", tg), ("pl", pl), ("nr", nr)):
        if value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")
    if pp > batch.capacity:
        raise ValueError(f"pp={pp} exceeds batch capacity {batch.capacity}")
    if pl > batch.capacity:
        raise ValueError(f"pl={pl} exceeds batch capacity {batch.capacity}")
    if pl > context.n_seq_max():
        raise ValueError(f"pl={pl} exceeds the context's {context.n_seq_max()} sequences")
    n_ctx = context.n_ctx()
    if pp > n_ctx or tg * pl > n_ctx:
        raise ValueError(f"pp={pp}, tg={tg}, pl={pl} do not fit in n_ctx={n_ctx}")


def run_benchmark(
    model: ModelHandle,
    context: ContextHandle,
    batch: Batch,
    pp: int,
    tg: int,
    pl: int,
    nr: int = 1,
) -> BenchResult:
    """
    Time prompt processing and generation on `context`.

    The caller must hold the context exclusively; the key-value cache is
    wiped before and after every phase.
    """
    _check_args(context, batch, pp, tg, pl, nr)

    pp_speeds: List[float] = []
    tg_speeds: List[float] = []

    for _ in range(nr):
        # Prompt processing: one decode, logits for the last row only
        batch.clear()
        for i in range(pp):
            batch.add(0, i, [0], False)
        batch.set_logits(batch.n_tokens - 1, True)

        context.memory_clear(False)
        t_pp_start = time.perf_counter()
        if context.decode(batch) != 0:
            raise DecodeFailedError("Decode failed during prompt processing")
        context.synchronize()
        t_pp = time.perf_counter() - t_pp_start

        # Text generation: tg decodes of pl sequences
        context.memory_clear(False)
        t_tg_start = time.perf_counter()
        for i in range(tg):
            batch.clear()
            for j in range(pl):
                batch.add(0, i, [j], True)
            if context.decode(batch) != 0:
                raise DecodeFailedError(f"Decode failed during generation step {i}")
            context.synchronize()
        t_tg = time.perf_counter() - t_tg_start

        context.memory_clear(False)

        pp_speeds.append(pp / max(t_pp, 1e-9))
        tg_speeds.append(pl * tg / max(t_tg, 1e-9))

    pp_avg, pp_std = mean_std(pp_speeds)
    tg_avg, tg_std = mean_std(tg_speeds)

    return BenchResult(
        pp=pp,
        tg=tg,
        pl=pl,
        nr=nr,
        pp_avg=pp_avg,
        pp_std=pp_std,
        tg_avg=tg_avg,
        tg_std=tg_std,
        model_desc=model.desc(),
        model_size=model.size(),
        n_params=model.n_params(),
        backend=model.backend_name(),
    )
