# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Finished-hypothesis bookkeeping for beam search.

Each input of a batch owns one ``BeamHypotheses``: a bounded min-heap of at
most ``num_beams`` finished sequences keyed by their length-normalised
score. The heap root is always the worst kept hypothesis, so deciding
whether a new one gets in (and which one it pushes out) is O(log n).

Live beams are not stored here; the engine keeps them as rows of its
token tensor and moves them in when they emit EOS or hit max_length.
"""

import heapq
import itertools
from dataclasses import dataclass, field

import torch


@dataclass(order=True)
class Hypothesis:
    """One finished sequence. Ordered by score, then by insertion."""

    score: float
    order: int
    tokens: torch.Tensor = field(compare=False)
    ended_with_eos: bool = field(default=False, compare=False)


class BeamHypotheses:
    """
    The ``num_beams`` best finished hypotheses of one input.

    Args:
        num_beams: Capacity.
        max_length: Generation length limit, used to bound the score a live
            beam can still reach.
        length_penalty: Scores are ``sum_logprobs / length ** length_penalty``
            where ``length`` leaves out the ``prefix_len`` padding positions.
            Values above 1.0 favour longer sequences.
        early_stopping: Done as soon as the heap is full, without checking
            whether a live beam could still beat the worst kept hypothesis.
        prefix_len: Left padding in front of every hypothesis of this input.
    """

    def __init__(
        self,
        num_beams: int,
        max_length: int,
        length_penalty: float = 1.0,
        early_stopping: bool = False,
        prefix_len: int = 0,
    ) -> None:
        if num_beams < 1:
            raise ValueError(f"num_beams must be at least 1, got {num_beams}")
        self.num_beams = num_beams
        self.max_length = max_length
        self.length_penalty = length_penalty
        self.early_stopping = early_stopping
        self.prefix_len = prefix_len
        self._heap: list[Hypothesis] = []
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    @property
    def worst_score(self) -> float:
        """Score a new hypothesis has to beat once the heap is full."""
        return self._heap[0].score if self._heap else 1e9

    def normalized_score(self, sum_logprobs: float, length: int) -> float:
        """Score of a hypothesis spanning ``length`` positions, padding included."""
        length = max(length - self.prefix_len, 1)
        return sum_logprobs / (length ** self.length_penalty)

    def add(self, tokens: torch.Tensor, sum_logprobs: float, ended_with_eos: bool = False) -> bool:
        """
        Offer a hypothesis.

        Returns:
            True if it was kept.
        """
        score = self.normalized_score(sum_logprobs, len(tokens))
        if len(self._heap) >= self.num_beams and score <= self.worst_score:
            return False

        hyp = Hypothesis(score=score, order=next(self._counter), tokens=tokens, ended_with_eos=ended_with_eos)
        if len(self._heap) < self.num_beams:
            heapq.heappush(self._heap, hyp)
        else:
            heapq.heapreplace(self._heap, hyp)
        return True

    def is_done(self, best_sum_logprobs: float, cur_len: int) -> bool:
        """
        Whether no live beam can still improve this input's result.

        With a single beam the first finished hypothesis ends the search,
        which makes one-beam search pick exactly what greedy decoding picks.
        """
        if len(self._heap) < self.num_beams:
            return False
        if self.early_stopping or self.num_beams == 1:
            return True
        cur_score = self.normalized_score(best_sum_logprobs, cur_len)
        return self.worst_score >= cur_score

    def best(self, n: int) -> list[Hypothesis]:
        """Top ``n`` hypotheses, highest score first."""
        return sorted(self._heap, key=lambda hyp: (-hyp.score, hyp.order))[:n]
