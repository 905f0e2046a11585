# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Stream configurations for XLNet relative attention.

A forward pass runs in exactly one of two modes, and the mode is carried by
the type of the input object rather than by which optional arguments happen
to be set:

  ContentOnly      plain relative self-attention over the content stream h
  ContentAndQuery  two-stream attention for permutation language modelling:
                   the content stream h plus a query stream g whose queries
                   never see their own token's content

All tensors use the time-major XLNet layout:

  h, g              [seq_len, batch, d_model]
  attn_mask_*       [qlen, klen, batch, 1 or n_head], 1.0 = not allowed
  target_mapping    [num_predict, qlen, batch]
"""

from dataclasses import dataclass
from typing import Optional, Union

import torch

from xlgen.model.exceptions import MissingStreamError, ShapeMismatchError


@dataclass(frozen=True)
class ContentOnly:
    """Single-stream attention: only the content stream is computed."""

    h: torch.Tensor
    attn_mask_h: Optional[torch.Tensor] = None


@dataclass(frozen=True)
class ContentAndQuery:
    """
    Two-stream attention.

    ``attn_mask_h`` is applied to the content stream and ``attn_mask_g`` to
    the query stream; for permutation LM the query mask additionally hides
    each position from itself. When ``target_mapping`` is given, ``g`` holds
    one row per predicted position and the mapping scatters them over the
    sequence.
    """

    h: torch.Tensor
    g: torch.Tensor
    attn_mask_h: Optional[torch.Tensor] = None
    attn_mask_g: Optional[torch.Tensor] = None
    target_mapping: Optional[torch.Tensor] = None

    def __post_init__(self) -> None:
        if self.g is None:
            raise MissingStreamError("Two-stream attention requires a query stream tensor g")
        if self.g.size(1) != self.h.size(1):
            raise ShapeMismatchError(
                f"Query stream batch {self.g.size(1)} differs from content stream batch {self.h.size(1)}"
            )
        if self.target_mapping is not None:
            num_predict, qlen, bsz = self.target_mapping.shape
            if num_predict != self.g.size(0) or qlen != self.h.size(0) or bsz != self.h.size(1):
                raise ShapeMismatchError(
                    f"target_mapping {tuple(self.target_mapping.shape)} does not match "
                    f"g {tuple(self.g.shape)} and h {tuple(self.h.shape)}"
                )
        elif self.g.size(0) != self.h.size(0):
            raise ShapeMismatchError(
                f"Without target_mapping g must cover every position: "
                f"g has {self.g.size(0)}, h has {self.h.size(0)}"
            )


StreamInputs = Union[ContentOnly, ContentAndQuery]


@dataclass(frozen=True)
class TwoStreamOutput:
    """
    Result of one attention layer.

    ``output_g`` and ``probs_g`` are None in content-only mode; the
    probabilities are None unless the layer reports attentions.
    """

    output_h: torch.Tensor
    output_g: Optional[torch.Tensor] = None
    probs_h: Optional[torch.Tensor] = None
    probs_g: Optional[torch.Tensor] = None
