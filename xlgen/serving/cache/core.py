# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Per-layer state cache for incremental decoding.

Without a cache every decoding step would rerun attention over the whole
prefix. With it, each step only feeds the newest token(s) and the layers
pick up what they computed before from here.

The cache is an arena indexed by layer number. Each slot holds one frozen
state object (``LayerState`` for XLNet, ``KeyValueState`` for GPT-2) or
None while the layer hasn't run yet. Layers never mutate a stored state:
they build a new one and the slot is replaced. Beam search reorders the
batch rows of every slot after each step.

A cache belongs to exactly one generation call. It is created empty at the
start of the call and dropped when the call returns.
"""

from typing import Callable, Optional

import torch

from xlgen.logging.logger import get_logger
from xlgen.model.state import CachedState, KeyValueState, LayerState

logger = get_logger(__name__)


class LayerCache:
    """
    Arena of per-layer decoding states.

    Args:
        n_layers: Number of layers (slots).
        max_length: Longest cached sequence allowed, usually the model's
            context window. ``None`` means unbounded.
    """

    def __init__(self, n_layers: int, max_length: Optional[int] = None) -> None:
        if n_layers <= 0:
            raise ValueError(f"n_layers must be positive, got {n_layers}")
        self._states: list[Optional[CachedState]] = [None] * n_layers
        self._max_length = max_length

    def __len__(self) -> int:
        return len(self._states)

    @property
    def n_layers(self) -> int:
        return len(self._states)

    @property
    def max_length(self) -> Optional[int]:
        return self._max_length

    @property
    def is_empty(self) -> bool:
        return all(state is None for state in self._states)

    @property
    def current_length(self) -> int:
        """Cached positions in the first layer (all layers agree during decoding)."""
        state = self._states[0]
        return 0 if state is None else state.length

    def get(self, layer_idx: int) -> Optional[CachedState]:
        return self._states[layer_idx]

    def set(self, layer_idx: int, state: CachedState) -> None:
        """
        Replace the state of one layer.

        Raises:
            RuntimeError: If the new state is longer than ``max_length``.
        """
        if self._max_length is not None and state.length > self._max_length:
            raise RuntimeError(
                f"Layer cache overflow: layer {layer_idx} would hold {state.length} positions "
                f"but max is {self._max_length}"
            )
        self._states[layer_idx] = state

    def map(self, fn: Callable[[CachedState], CachedState]) -> None:
        """Replace every populated slot with ``fn(state)``."""
        self._states = [None if state is None else fn(state) for state in self._states]

    def reorder(self, beam_idx: torch.Tensor) -> None:
        """Keep only the batch rows listed in ``beam_idx``, in that order."""
        self.map(lambda state: state.reorder(beam_idx))

    def reset(self) -> None:
        """Forget everything, e.g. before reusing the arena for a new prompt."""
        logger.debug(
            "Layer cache reset",
            extra={"n_layers": len(self._states), "freed_bytes": self.memory_bytes()},
        )
        self._states = [None] * len(self._states)

    def tensors(self) -> list[Optional[torch.Tensor]]:
        """
        Raw tensors per layer: [2, batch, n_head, seq, head_dim] for GPT-2
        slots, [mlen, batch, d_model] for XLNet slots.
        """
        result: list[Optional[torch.Tensor]] = []
        for state in self._states:
            if isinstance(state, KeyValueState):
                result.append(state.stacked())
            elif isinstance(state, LayerState):
                result.append(state.prev_content)
            else:
                result.append(None)
        return result

    def memory_bytes(self) -> int:
        return sum(state.nbytes() for state in self._states if state is not None)

    def memory_mb(self) -> float:
        return self.memory_bytes() / (1024 * 1024)
