"""Benchmark: prompt-processing and generation throughput on a GGUF model.

Run with:
  python -m benchmarks.bench_throughput --model models/qwen2.5-0.5b-instruct-q8_0.gguf
  python -m benchmarks.bench_throughput --model models/tinyllama.gguf --nr 5 --gpu-layers 0
"""

import argparse
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

from tinysession.core.bench import BenchResult, mean_std
from tinysession.core.config import SessionConfig
from tinysession.core.sequence import Message
from tinysession.core.session import InferenceSession, create_session
from tinysession.model.llamacpp import load_model

# (pp, tg, pl) triples run through the harness
HARNESS_CONFIGS: List[Tuple[int, int, int]] = [
    (128, 32, 1),
    (512, 128, 1),
    (512, 128, 4),
]


@dataclass
class SessionBenchResult:
    name: str
    n_prompt_tokens: int
    n_generated: int
    elapsed_sec: float
    tokens_per_sec: float
    tokens_per_sec_std: float


def bench_session_generation(session: InferenceSession, prompt: str, nr: int) -> SessionBenchResult:
    """Time the real init/step path, sampling included."""
    speeds = []
    total_elapsed = 0.0
    n_prompt = n_generated = 0
    for _ in range(nr):
        session.release()
        session.init([Message("user", prompt)])
        n_prompt = session.n_prompt_tokens

        start = time.perf_counter()
        while not session.step().finished:
            pass
        elapsed = time.perf_counter() - start

        n_generated = session.n_generated
        total_elapsed += elapsed
        speeds.append(n_generated / elapsed if elapsed > 0 else 0.0)
    session.release()

    avg, std = mean_std(speeds)
    return SessionBenchResult(
        name="session_generation",
        n_prompt_tokens=n_prompt,
        n_generated=n_generated,
        elapsed_sec=total_elapsed / nr,
        tokens_per_sec=avg,
        tokens_per_sec_std=std,
    )


def print_harness(results: List[BenchResult]):
    print("\n| test       | pl | t/s                 |")
    print("|------------|----|---------------------|")
    for r in results:
        print(f"| pp {r.pp:<7} | {r.pl:2} | {r.pp_avg:9.2f} ± {r.pp_std:7.2f} |")
        print(f"| tg {r.tg:<7} | {r.pl:2} | {r.tg_avg:9.2f} ± {r.tg_std:7.2f} |")


def print_session(result: SessionBenchResult):
    print(f"\n{result.name}:")
    print(f"  Prompt tokens: {result.n_prompt_tokens}")
    print(f"  Generated:     {result.n_generated}")
    print(f"  Time:          {result.elapsed_sec:.3f}s")
    print(f"  Tokens/sec:    {result.tokens_per_sec:.1f} ± {result.tokens_per_sec_std:.1f}")


def run_benchmarks(model_path: str, nr: int = 3, gpu_layers: Optional[int] = None):
    print("=" * 50)
    print("tinysession Throughput Benchmark")
    print("=" * 50)

    model = load_model(model_path, n_gpu_layers=gpu_layers)
    max_pl = max(pl for _, _, pl in HARNESS_CONFIGS)
    config = SessionConfig(n_ctx=2048, n_batch=512, n_seq_max=max_pl, max_tokens=64, temp=0.0, seed=0)
    session = create_session(model, config)
    print(f"Model: {session.model_description()} ({model.n_params() / 1e9:.2f}B params)")
    print(f"Backend: {model.backend_name()}")

    try:
        print("\nWarming up...")
        session.bench(32, 4, 1, 1)

        print("\n" + "=" * 50)
        print("Harness")
        print("=" * 50)
        harness = []
        for pp, tg, pl in HARNESS_CONFIGS:
            print(f"Running pp={pp} tg={tg} pl={pl} nr={nr}...")
            harness.append(session.bench(pp, tg, pl, nr))
        print_harness(harness)
        print()
        print(harness[0].to_table())

        print("\n" + "=" * 50)
        print("Session")
        print("=" * 50)
        result = bench_session_generation(session, "Write a short poem about the sea.", nr)
        print_session(result)

        # Sampling and detokenization overhead relative to raw decode
        raw_tg = harness[0].tg_avg
        if raw_tg > 0 and result.tokens_per_sec > 0:
            print(f"\nSession vs raw decode: {result.tokens_per_sec / raw_tg:.2f}x")
    finally:
        session.close()
        model.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Throughput benchmark")
    parser.add_argument("--model", type=str, required=True, help="Path to a GGUF model file")
    parser.add_argument("--nr", type=int, default=3, help="Repetitions per configuration")
    parser.add_argument("--gpu-layers", type=int, default=None, help="Layers to offload to the GPU")
    args = parser.parse_args()
    run_benchmarks(args.model, nr=args.nr, gpu_layers=args.gpu_layers)
