"""TinySession CLI - chat completion and throughput benchmark on a GGUF model."""

import argparse
import logging
import sys

from tinysession.core.completion import CompletionStreamer
from tinysession.core.config import SessionConfig
from tinysession.core.errors import TinySessionError
from tinysession.core.sequence import Message
from tinysession.core.session import create_session
from tinysession.model.llamacpp import load_model


def parse_bench(value: str):
    parts = value.split(",")
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("expected PP,TG,PL,NR, e.g. 512,128,1,3")
    try:
        return tuple(int(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a list of integers: {value}")


def main() -> None:
    parser = argparse.ArgumentParser(description="TinySession - single-session LLM inference")
    parser.add_argument("--model", type=str, required=True, help="Path to a GGUF model file")
    parser.add_argument("--prompt", type=str, help="User message (reads from stdin if not provided)")
    parser.add_argument("--system", type=str, help="Optional system message")
    parser.add_argument("--max-tokens", type=int, default=128, help="Maximum tokens to generate")
    parser.add_argument("--n-ctx", type=int, default=1024, help="Context window in tokens")
    parser.add_argument("--n-batch", type=int, default=512, help="Batch capacity in tokens")
    parser.add_argument("--threads", type=int, default=None, help="Decode threads (auto if not set)")
    parser.add_argument("--temperature", type=float, default=0.8, help="Sampling temperature (0 = greedy)")
    parser.add_argument("--top-k", type=int, default=40, help="Top-k filtering (0 to disable)")
    parser.add_argument("--top-p", type=float, default=0.95, help="Nucleus sampling threshold")
    parser.add_argument("--min-p", type=float, default=0.05, help="Min-p filtering (0 to disable)")
    parser.add_argument("--repeat-penalty", type=float, default=1.1, help="Repetition penalty")
    parser.add_argument("--seed", type=int, default=None, help="Sampler seed (random if not set)")
    parser.add_argument("--gpu-layers", type=int, default=None, help="Layers to offload to the GPU")
    parser.add_argument("--bench", type=parse_bench, metavar="PP,TG,PL,NR",
                        help="Run the throughput benchmark instead of a completion")
    parser.add_argument("--verbose", action="store_true", help="Log session events to stderr")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    config = SessionConfig(
        n_ctx=args.n_ctx,
        n_batch=args.n_batch,
        n_threads=args.threads,
        n_seq_max=args.bench[2] if args.bench else 1,
        max_tokens=args.max_tokens,
        temp=args.temperature,
        top_k=args.top_k,
        top_p=args.top_p,
        min_p=args.min_p,
        penalty_repeat=args.repeat_penalty,
        seed=args.seed,
    )

    try:
        model = load_model(args.model, n_gpu_layers=args.gpu_layers)
        session = create_session(model, config)
    except TinySessionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Loaded: {session.model_description()}", file=sys.stderr)

    try:
        if args.bench:
            pp, tg, pl, nr = args.bench
            result = session.bench(pp, tg, pl, nr)
            print(result.to_table())
            return

        if args.prompt:
            prompt = args.prompt
        else:
            prompt = sys.stdin.read().strip()
            if not prompt:
                print("Error: No prompt provided", file=sys.stderr)
                sys.exit(1)

        messages = []
        if args.system:
            messages.append(Message("system", args.system))
        messages.append(Message("user", prompt))

        def on_event(event):
            sys.stdout.write(event.delta)
            sys.stdout.flush()

        streamer = CompletionStreamer(session, callback=on_event)
        result = streamer.submit(messages)
        print()
        print(f"[{result.n_generated} tokens, finish_reason={result.finish_reason}]", file=sys.stderr)
    except TinySessionError as e:
        print(f"Error ({e.code}): {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        session.close()
        model.close()


if __name__ == "__main__":
    main()
