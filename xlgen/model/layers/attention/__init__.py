# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Attention layer implementations.

  relative  XLNet relative positional attention (content + query streams)
  streams   tagged stream configurations for the relative attention
  causal    GPT-2 causal self-attention with a key/value past
"""

from xlgen.model.layers.attention.causal import GPT2Attention
from xlgen.model.layers.attention.relative import XLNetRelativeAttention, rel_shift
from xlgen.model.layers.attention.streams import ContentAndQuery, ContentOnly, TwoStreamOutput

__all__ = [
    "ContentAndQuery",
    "ContentOnly",
    "GPT2Attention",
    "TwoStreamOutput",
    "XLNetRelativeAttention",
    "rel_shift",
]
