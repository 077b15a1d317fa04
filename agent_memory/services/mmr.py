"""
Maximal Marginal Relevance reranking over search candidates.
"""

from dataclasses import dataclass
from typing import Generic, List, Sequence, Set, TypeVar

from ..utils.text_similarity import tokenize

T = TypeVar('T')


@dataclass
class Candidate(Generic[T]):
    item: T
    score: float
    text: str


def normalize(scores: Sequence[float]) -> List[float]:
    """Min-max normalize to [0, 1]; a zero-range set normalizes to all 1.0."""
    if not scores:
        return []
    low, high = min(scores), max(scores)
    if high == low:
        return [1.0] * len(scores)
    return [(score - low) / (high - low) for score in scores]


def _jaccard_sets(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


class MMRReranker:
    """Greedy MMR selection trading relevance against redundancy.

    Each step picks the unselected candidate maximizing
    ``lambda * relevance - (1 - lambda) * max_similarity_to_selected``.
    """

    def __init__(self, lambda_: float = 0.7):
        self.lambda_ = max(0.0, min(1.0, lambda_))

    def rerank(self, candidates: Sequence[Candidate[T]], top_k: int) -> List[T]:
        if top_k <= 0 or not candidates:
            return []

        relevance = normalize([c.score for c in candidates])
        tokens = [tokenize(c.text) for c in candidates]
        remaining = list(range(len(candidates)))
        selected: List[int] = []

        while remaining and len(selected) < top_k:
            best_index, best_value = remaining[0], float('-inf')
            for i in remaining:
                redundancy = max((_jaccard_sets(tokens[i], tokens[j]) for j in selected), default=0.0)
                value = self.lambda_ * relevance[i] - (1.0 - self.lambda_) * redundancy
                if value > best_value:
                    best_index, best_value = i, value
            selected.append(best_index)
            remaining.remove(best_index)

        return [candidates[i].item for i in selected]
