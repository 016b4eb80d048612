"""Sampler chain: logits in, one token id out.

Stages run in a fixed order:
    penalties -> top-k -> top-p -> min-p -> temperature -> dist

Penalties see raw logits over the whole vocabulary, the truncation filters
narrow the candidate set, temperature rescales what is left and the final
draw renormalizes over the survivors.

Candidates start dense (a tinygrad tensor over the vocabulary). Penalties and
top-k stay on the tensor; once the set is small it is synced to CPU once and
the remaining stages work on Python lists, which beats tensor scatter/sort
for a few dozen entries.
"""

import math
import random
from collections import Counter, deque
from typing import TYPE_CHECKING, Iterable, List, Optional

from tinygrad import Tensor, dtypes

if TYPE_CHECKING:
    from .config import SessionConfig


class Candidates:
    """
    Token candidates for one sampling decision.

    Dense form: `dense` holds logits for every token id.
    Sparse form: `ids`/`logits` hold the surviving tokens, sorted by logit
    (descending) when `sorted` is True.
    """

    def __init__(self, logits: Tensor):
        self.dense: Optional[Tensor] = logits
        self.ids: List[int] = []
        self.logits: List[float] = []
        self.sorted = False
        self.selected: Optional[int] = None

    @property
    def is_dense(self) -> bool:
        return self.dense is not None

    def set_sparse(self, ids: List[int], logits: List[float], sorted_: bool) -> None:
        self.dense = None
        self.ids = ids
        self.logits = logits
        self.sorted = sorted_

    def materialize(self) -> None:
        """Switch to the sparse form, sorted by logit descending."""
        if self.dense is not None:
            values = self.dense.realize().tolist()
            self.set_sparse(list(range(len(values))), values, sorted_=False)
        if not self.sorted:
            order = sorted(range(len(self.ids)), key=self.logits.__getitem__, reverse=True)
            self.ids = [self.ids[i] for i in order]
            self.logits = [self.logits[i] for i in order]
            self.sorted = True

    def truncate(self, n: int) -> None:
        self.ids = self.ids[:n]
        self.logits = self.logits[:n]

    def __len__(self) -> int:
        if self.dense is not None:
            return self.dense.shape[0]
        return len(self.ids)


def _softmax(logits: List[float]) -> List[float]:
    max_logit = max(logits)
    if max_logit == float("-inf"):
        return [1.0 / len(logits)] * len(logits)
    exp_logits = [math.exp(x - max_logit) for x in logits]
    sum_exp = sum(exp_logits)
    return [e / sum_exp for e in exp_logits]


class SamplerStage:
    """One link of the chain. Stateless stages only implement apply()."""
    name = "stage"

    def apply(self, cur: Candidates) -> None:
        raise NotImplementedError

    def accept(self, token: int) -> None:
        pass

    def reset(self) -> None:
        pass


class PenaltiesSampler(SamplerStage):
    """Repeat / frequency / presence penalties over the last `last_n` accepted tokens."""
    name = "penalties"

    def __init__(self, last_n: int, repeat: float, freq: float, present: float):
        self.last_n = last_n
        self.repeat = repeat
        self.freq = freq
        self.present = present
        self.history: deque = deque(maxlen=last_n if last_n > 0 else None)

    @property
    def enabled(self) -> bool:
        if self.last_n == 0:
            return False
        return self.repeat != 1.0 or self.freq != 0.0 or self.present != 0.0

    def accept(self, token: int) -> None:
        if self.last_n != 0:
            self.history.append(token)

    def reset(self) -> None:
        self.history.clear()

    def _penalize(self, logit: float, count: int) -> float:
        # Divide positive logits, multiply negative ones, then subtract freq/presence.
        logit = logit * self.repeat if logit <= 0 else logit / self.repeat
        return logit - count * self.freq - (1.0 if count > 0 else 0.0) * self.present

    def apply(self, cur: Candidates) -> None:
        if not self.enabled or not self.history:
            return
        counts = Counter(self.history)

        if cur.is_dense:
            vocab_size = cur.dense.shape[0]
            seen = sorted(t for t in counts if 0 <= t < vocab_size)
            if not seen:
                return
            seen_indices = Tensor(seen, dtype=dtypes.int32)
            seen_logits = cur.dense.gather(0, seen_indices).realize().tolist()
            penalized = [self._penalize(v, counts[t]) for t, v in zip(seen, seen_logits)]
            cur.dense = cur.dense.scatter(0, seen_indices, Tensor(penalized, dtype=cur.dense.dtype))
            return

        changed = False
        for i, token in enumerate(cur.ids):
            count = counts.get(token, 0)
            if count:
                cur.logits[i] = self._penalize(cur.logits[i], count)
                changed = True
        if changed:
            cur.sorted = False


class TopKSampler(SamplerStage):
    """Keep the k highest logits. k <= 0 disables the stage."""
    name = "top-k"

    def __init__(self, k: int):
        self.k = k

    def apply(self, cur: Candidates) -> None:
        if self.k <= 0:
            return
        if cur.is_dense and self.k < len(cur):
            top_values, top_indices = cur.dense.topk(self.k)
            cur.set_sparse(
                [int(i) for i in top_indices.realize().tolist()],
                top_values.realize().tolist(),
                sorted_=True,
            )
            return
        cur.materialize()
        cur.truncate(self.k)


class TopPSampler(SamplerStage):
    """Nucleus filtering: smallest prefix whose probability mass reaches p."""
    name = "top-p"

    def __init__(self, p: float, min_keep: int = 1):
        self.p = p
        self.min_keep = min_keep

    def apply(self, cur: Candidates) -> None:
        if self.p >= 1.0:
            return
        cur.materialize()
        probs = _softmax(cur.logits)

        cumsum = 0.0
        keep = len(probs)
        for i, prob in enumerate(probs):
            cumsum += prob
            if cumsum >= self.p and i + 1 >= self.min_keep:
                keep = i + 1
                break
        cur.truncate(keep)


class MinPSampler(SamplerStage):
    """Drop tokens whose probability is below p times the best token's."""
    name = "min-p"

    def __init__(self, p: float, min_keep: int = 1):
        self.p = p
        self.min_keep = min_keep

    def apply(self, cur: Candidates) -> None:
        if self.p <= 0.0:
            return
        cur.materialize()
        # p_i >= p * p_max  <=>  logit_i >= logit_max + log(p)
        threshold = cur.logits[0] + math.log(self.p)
        keep = sum(1 for logit in cur.logits if logit >= threshold)
        cur.truncate(max(keep, min(self.min_keep, len(cur.ids))))


class TemperatureSampler(SamplerStage):
    """Scale logits by 1/t. t <= 0 keeps only the best token (greedy)."""
    name = "temp"

    def __init__(self, t: float):
        self.t = t

    def apply(self, cur: Candidates) -> None:
        if self.t <= 0.0:
            if cur.is_dense:
                best = int(cur.dense.argmax().item())
                cur.set_sparse([best], [0.0], sorted_=True)
            else:
                cur.materialize()
                cur.truncate(1)
            return
        if cur.is_dense:
            cur.dense = cur.dense / self.t
        else:
            cur.logits = [x / self.t for x in cur.logits]


class DistSampler(SamplerStage):
    """Draw one token from the softmax of the remaining candidates."""
    name = "dist"

    def __init__(self, seed: int):
        self.seed = seed
        self._rng = random.Random(seed)

    def reset(self) -> None:
        self._rng = random.Random(self.seed)

    def apply(self, cur: Candidates) -> None:
        cur.materialize()
        probs = _softmax(cur.logits)
        r = self._rng.random()
        cumsum = 0.0
        for token, prob in zip(cur.ids, probs):
            cumsum += prob
            if r < cumsum:
                cur.selected = token
                return
        cur.selected = cur.ids[-1]


class SamplerChain:
    """
    Ordered, stateful list of sampler stages.

    Example:
        chain = SamplerChain.from_config(config)
        token = chain.sample(context.logits_ith(batch.n_tokens - 1))
        chain.accept(token)
    """

    def __init__(self, stages: Iterable[SamplerStage]):
        self.stages: List[SamplerStage] = list(stages)

    @classmethod
    def from_config(cls, config: "SessionConfig") -> "SamplerChain":
        last_n = config.n_ctx if config.penalty_last_n == -1 else config.penalty_last_n
        seed = config.seed if config.seed is not None else random.randrange(2**32)
        return cls([
            PenaltiesSampler(last_n, config.penalty_repeat, config.penalty_freq, config.penalty_present),
            TopKSampler(config.top_k),
            TopPSampler(config.top_p),
            MinPSampler(config.min_p),
            TemperatureSampler(config.temp),
            DistSampler(seed),
        ])

    def sample(self, logits: Tensor) -> int:
        """Pick the next token from one row of logits."""
        cur = Candidates(logits)
        for stage in self.stages:
            stage.apply(cur)
        if cur.selected is not None:
            return cur.selected
        # Chain without a dist stage: take the best survivor.
        cur.materialize()
        return cur.ids[0]

    def accept(self, token: int) -> None:
        for stage in self.stages:
            stage.accept(token)

    def reset(self) -> None:
        for stage in self.stages:
            stage.reset()

    def describe(self) -> str:
        return " -> ".join(stage.name for stage in self.stages)
