# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Per-layer state carried between decoding steps.

Two flavours exist because the two model families cache different things:

  LayerState     XLNet keeps the *hidden content* that entered a layer.
                 The attention layer concatenates it in front of the new
                 hidden states before projecting keys and values.
                 Layout: [mlen, batch, d_model] (time-major).

  KeyValueState  GPT-2 keeps already projected keys and values.
                 Layout: [batch, n_head, seq, head_dim] each.

Both are frozen. Growing a state returns a new object, never a view that
aliases the previous tensors, so a state handed to one step can't be
changed behind its back by the next one.
"""

from dataclasses import dataclass
from typing import Optional, Union

import torch

from xlgen.model.exceptions import ShapeMismatchError


@dataclass(frozen=True)
class LayerState:
    """Cached content for one XLNet attention layer."""

    prev_content: torch.Tensor

    @property
    def has_content(self) -> bool:
        """An empty placeholder (rank <= 1 or zero length) carries no memory."""
        return self.prev_content.dim() > 1 and self.prev_content.size(0) > 0

    @property
    def length(self) -> int:
        return self.prev_content.size(0) if self.has_content else 0

    @property
    def batch_size(self) -> int:
        return self.prev_content.size(1)

    @classmethod
    def empty(cls, device: Optional[torch.device] = None) -> "LayerState":
        return cls(prev_content=torch.zeros(0, device=device))

    def extend(
        self,
        curr_out: torch.Tensor,
        mem_len: Optional[int] = None,
        reuse_len: Optional[int] = None,
    ) -> "LayerState":
        """
        Append the hidden states that just entered the layer.

        Args:
            curr_out: New content, [qlen, batch, d_model].
            mem_len: Keep only the last ``mem_len`` positions. ``None`` or 0
                keeps everything, which is what incremental decoding needs.
            reuse_len: Only the first ``reuse_len`` new positions are cached.
        """
        if reuse_len is not None and reuse_len > 0:
            curr_out = curr_out[:reuse_len]

        if self.has_content:
            new_mem = torch.cat([self.prev_content, curr_out], dim=0)
        else:
            new_mem = curr_out

        if mem_len is not None and mem_len > 0:
            new_mem = new_mem[-mem_len:]

        return LayerState(prev_content=new_mem.detach())

    def drop_last(self, count: int) -> "LayerState":
        """Forget the most recent ``count`` positions."""
        if count <= 0 or not self.has_content:
            return self
        return LayerState(prev_content=self.prev_content[:-count])

    def reorder(self, beam_idx: torch.Tensor) -> "LayerState":
        """Select batch rows, e.g. the beams that survived a search step."""
        if not self.has_content:
            return self
        return LayerState(
            prev_content=self.prev_content.index_select(1, beam_idx.to(self.prev_content.device))
        )

    def nbytes(self) -> int:
        return self.prev_content.nelement() * self.prev_content.element_size()


@dataclass(frozen=True)
class KeyValueState:
    """Cached keys and values for one GPT-2 attention layer."""

    key: torch.Tensor
    value: torch.Tensor

    def __post_init__(self) -> None:
        if self.key.shape != self.value.shape:
            raise ShapeMismatchError(
                f"Cached key {tuple(self.key.shape)} and value {tuple(self.value.shape)} differ"
            )

    @property
    def length(self) -> int:
        return self.key.size(-2)

    @property
    def batch_size(self) -> int:
        return self.key.size(0)

    def extend(self, key: torch.Tensor, value: torch.Tensor) -> "KeyValueState":
        return KeyValueState(
            key=torch.cat([self.key, key], dim=-2),
            value=torch.cat([self.value, value], dim=-2),
        )

    def reorder(self, beam_idx: torch.Tensor) -> "KeyValueState":
        beam_idx = beam_idx.to(self.key.device)
        return KeyValueState(
            key=self.key.index_select(0, beam_idx),
            value=self.value.index_select(0, beam_idx),
        )

    def stacked(self) -> torch.Tensor:
        """Both tensors as one [2, batch, n_head, seq, head_dim] block."""
        return torch.stack([self.key, self.value])

    def nbytes(self) -> int:
        return 2 * self.key.nelement() * self.key.element_size()


CachedState = Union[LayerState, KeyValueState]
