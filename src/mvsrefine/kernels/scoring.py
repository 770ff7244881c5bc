"""Pluggable mapping from raw patch similarity to additive volume scores."""

from typing import Protocol, runtime_checkable

import torch

from .common import sigmoid


@runtime_checkable
class SimilarityScorer(Protocol):
    """Maps raw similarity (lower = better, ``+inf`` = invalid) to a volume score.

    The returned score must be larger for better matches and finite
    everywhere, since scores of every target camera are summed into the
    similarity volume.
    """

    def __call__(self, similarity: torch.Tensor) -> torch.Tensor: ...


class SigmoidInvertScorer:
    """Invert and filter similarity through a logistic step.

    ``score = 1 / (1 + exp(10 * (sim - center) / width))``: close to 1 for
    strongly correlated patches (sim near -1), close to 0 for uncorrelated
    ones, exactly 0 for invalid samples.

    Args:
        center: Similarity mapped to a score of 0.5.
        width: Sigmoid width.
    """

    def __init__(self, center: float = -0.7, width: float = 0.7) -> None:
        self.center = center
        self.width = width

    def __call__(self, similarity: torch.Tensor) -> torch.Tensor:
        return sigmoid(0.0, 1.0, self.width, self.center, similarity)

    def __repr__(self) -> str:
        return f"SigmoidInvertScorer(center={self.center}, width={self.width})"
