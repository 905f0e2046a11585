# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
GPT-2 multi-head causal self-attention with a key/value past.

  1. Project input to Q, K, V with one fused Conv1D
  2. Append K, V to the layer's cached past (a new KeyValueState)
  3. Scaled dot-product scores over past + current keys
  4. Mask future positions and padding, softmax, weighted sum of values
  5. Project back to the hidden size

Masking uses the same finite penalty as the relative attention, so a row
whose keys are all masked (a padding query) stays finite instead of
turning into NaN.
"""

import math
from typing import Optional

import torch
import torch.nn as nn

from xlgen.model.exceptions import ShapeMismatchError
from xlgen.model.layers.attention.relative import masking_constant
from xlgen.model.layers.mlp.feedforward import Conv1D
from xlgen.model.state import KeyValueState


class GPT2Attention(nn.Module):
    """
    Causal self-attention block of GPT-2.

    Args:
        n_embd: Hidden size.
        n_head: Number of heads.
        attn_pdrop: Dropout on attention probabilities.
        resid_pdrop: Dropout on the projected output.
        output_attentions: Return attention probabilities.
    """

    def __init__(
        self,
        n_embd: int,
        n_head: int,
        attn_pdrop: float = 0.1,
        resid_pdrop: float = 0.1,
        output_attentions: bool = False,
    ) -> None:
        super().__init__()
        if n_embd % n_head != 0:
            raise ShapeMismatchError(
                f"The hidden size ({n_embd}) is not a multiple of the number of attention heads ({n_head})"
            )
        self.n_embd = n_embd
        self.n_head = n_head
        self.head_dim = n_embd // n_head
        self.output_attentions = output_attentions

        self.c_attn = Conv1D(3 * n_embd, n_embd)
        self.c_proj = Conv1D(n_embd, n_embd)
        self.attn_dropout = nn.Dropout(attn_pdrop)
        self.resid_dropout = nn.Dropout(resid_pdrop)

    def _split_heads(self, x: torch.Tensor) -> torch.Tensor:
        batch, seq_len, _ = x.shape
        return x.view(batch, seq_len, self.n_head, self.head_dim).permute(0, 2, 1, 3)

    def _merge_heads(self, x: torch.Tensor) -> torch.Tensor:
        batch, _, seq_len, _ = x.shape
        return x.permute(0, 2, 1, 3).contiguous().view(batch, seq_len, self.n_embd)

    def forward(
        self,
        x: torch.Tensor,
        layer_past: Optional[KeyValueState] = None,
        attention_mask: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, KeyValueState, Optional[torch.Tensor]]:
        """
        Args:
            x: Input, [batch, seq_len, n_embd].
            layer_past: Keys/values of earlier positions for this layer.
            attention_mask: 0/1 keep-mask over past + current positions,
                [batch, past_len + seq_len]. 0 marks padding.

        Returns:
            ``(output, present, probs)``: output [batch, seq_len, n_embd], the
            extended KeyValueState, and probabilities
            [batch, n_head, seq_len, past_len + seq_len] if requested.
        """
        query, key, value = self.c_attn(x).split(self.n_embd, dim=2)
        query = self._split_heads(query)
        key = self._split_heads(key)
        value = self._split_heads(value)

        if layer_past is not None:
            if layer_past.batch_size != x.size(0):
                raise ShapeMismatchError(
                    f"Cached batch {layer_past.batch_size} differs from input batch {x.size(0)}"
                )
            present = layer_past.extend(key, value)
        else:
            present = KeyValueState(key=key, value=value)

        scores = torch.matmul(query, present.key.transpose(-1, -2)) / math.sqrt(self.head_dim)

        q_len, k_len = scores.size(-2), scores.size(-1)
        allowed = torch.ones(q_len, k_len, dtype=torch.bool, device=x.device).tril(diagonal=k_len - q_len)
        allowed = allowed[None, None, :, :]
        if attention_mask is not None:
            if attention_mask.size(-1) != k_len:
                raise ShapeMismatchError(
                    f"Attention mask covers {attention_mask.size(-1)} positions, keys cover {k_len}"
                )
            allowed = allowed & attention_mask[:, None, None, :].bool()
        scores = scores.masked_fill(~allowed, -masking_constant(scores.dtype))

        probs = torch.softmax(scores, dim=-1)
        probs = self.attn_dropout(probs)

        output = self._merge_heads(torch.matmul(probs, present.value))
        output = self.resid_dropout(self.c_proj(output))

        return output, present, (probs if self.output_attentions else None)
