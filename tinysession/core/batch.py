"""Fixed-capacity decode batch.

A Batch is the table one decode call consumes: for each row a token id, its
position in the sequence, the sequence ids it belongs to and whether logits
are wanted for it. Rows live in pre-allocated lists that are reused every
step; clear() only resets the row count.

Example:
    batch = Batch(capacity=512)
    for pos, tok in enumerate(prompt):
        batch.add(tok, pos, [0], False)
    batch.set_logits(batch.n_tokens - 1, True)
    context.decode(batch)
"""

from typing import Iterator, List, Sequence, Tuple

from .errors import BatchOverflowError


class Batch:
    def __init__(self, capacity: int, n_seq_max: int = 1):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if n_seq_max <= 0:
            raise ValueError(f"n_seq_max must be positive, got {n_seq_max}")
        self.capacity = capacity
        self.n_seq_max = n_seq_max
        self.n_tokens = 0

        # Pre-allocated rows
        self.token: List[int] = [0] * capacity
        self.pos: List[int] = [0] * capacity
        self.seq_id: List[Tuple[int, ...]] = [(0,)] * capacity
        self.logits: List[bool] = [False] * capacity

    def clear(self) -> None:
        """Drop all rows. Storage is kept."""
        self.n_tokens = 0

    def add(self, token: int, pos: int, seq_ids: Sequence[int], logits: bool) -> None:
        """Append one row. Overfilling the batch is a programming error."""
        idx = self.n_tokens
        if idx >= self.capacity:
            raise BatchOverflowError(f"Batch overflow: capacity {self.capacity} reached")
        if not seq_ids or len(seq_ids) > self.n_seq_max:
            raise BatchOverflowError(
                f"Row belongs to {len(seq_ids)} sequences, batch allows 1..{self.n_seq_max}"
            )
        self.token[idx] = token
        self.pos[idx] = pos
        self.seq_id[idx] = tuple(seq_ids)
        self.logits[idx] = bool(logits)
        self.n_tokens += 1

    def set_logits(self, idx: int, logits: bool) -> None:
        if not 0 <= idx < self.n_tokens:
            raise IndexError(f"Row {idx} out of range (n_tokens={self.n_tokens})")
        self.logits[idx] = bool(logits)

    def space_left(self) -> int:
        return self.capacity - self.n_tokens

    def logit_rows(self) -> List[int]:
        """Indices of rows that request logits."""
        return [i for i in range(self.n_tokens) if self.logits[i]]

    def rows(self) -> Iterator[Tuple[int, int, Tuple[int, ...], bool]]:
        for i in range(self.n_tokens):
            yield self.token[i], self.pos[i], self.seq_id[i], self.logits[i]

    def __len__(self) -> int:
        return self.n_tokens
