# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
XLNet relative positional self-attention.

Scores combine three terms per head, all computed with einsum over the
time-major layout (i = query position, j = key position, b = batch,
n = head, d = head dimension):

  AC  content      (q + r_w_bias) . k_h
  BD  position     (q + r_r_bias) . k_r, realigned by the relative shift
  EF  segment      (q + r_s_bias) . seg_embed, projected by the segment matrix

  score = (AC + BD + EF) / sqrt(d_head)

The positional keys k_r are projected from a sinusoidal table that covers
every relative offset once ([qlen + klen] rows for bidirectional attention).
``rel_shift`` turns the resulting [qlen, R] score block into a [qlen, klen]
block where entry (i, j) holds the score for the offset between query i
and key j.

The layer also supports the query stream used for permutation language
modelling (see streams.py), and a per-layer memory of earlier hidden
content that extends the key/value range for incremental decoding.
"""

import math
from typing import Any, Optional

import torch
import torch.nn as nn

from xlgen.model.exceptions import MissingStreamError, ShapeMismatchError
from xlgen.model.layers.attention.streams import (
    ContentAndQuery,
    ContentOnly,
    StreamInputs,
    TwoStreamOutput,
)
from xlgen.model.state import LayerState

# Largest penalty subtracted at masked positions. Half of the dtype's max
# keeps (score - penalty) finite even for float16.
_MASK_PENALTY_CAP = 1e30


def masking_constant(dtype: torch.dtype) -> float:
    """Penalty for masked logits, large but finite in ``dtype``."""
    return float(min(_MASK_PENALTY_CAP, torch.finfo(dtype).max / 2))


def rel_shift(x: torch.Tensor, klen: int) -> torch.Tensor:
    """
    Realign positional scores from "all offsets" to "per key position".

    Args:
        x: Raw positional scores, [batch, n_head, qlen, R] where column p
           corresponds to the p-th row of the relative encoding.
        klen: Number of key positions to keep.

    Returns:
        [batch, n_head, qlen, klen] with ``out[..., i, j] == x[..., i, qlen - i + j]``.
    """
    batch, n_head, qlen, rlen = x.shape
    if rlen - 1 < klen:
        raise ShapeMismatchError(
            f"Relative encoding has {rlen} rows, needs at least {klen + 1} for {klen} keys"
        )
    x = x.reshape(batch, n_head, rlen, qlen)
    x = x[:, :, 1:, :]
    x = x.reshape(batch, n_head, qlen, rlen - 1)
    return x[..., :klen]


class XLNetRelativeAttention(nn.Module):
    """
    One XLNet attention block: relative attention core followed by the
    output projection, residual connection and LayerNorm.

    Parameter names and shapes match public XLNet checkpoints:

      q, k, v, o, r                  [d_model, n_head, d_head]
      r_w_bias, r_r_bias, r_s_bias   [n_head, d_head]
      seg_embed                      [2, n_head, d_head]
      layer_norm                     LayerNorm(d_model)

    Args:
        config: Any object exposing ``d_model``, ``n_head``, ``d_head`` and
            ``dropout``; ``layer_norm_eps`` (default 1e-12),
            ``output_attentions`` (default False) and ``initializer_range``
            (default 0.02) are optional.

    Raises:
        ShapeMismatchError: If ``d_model`` is not ``n_head * d_head``.
    """

    def __init__(self, config: Any) -> None:
        super().__init__()
        d_model, n_head, d_head = config.d_model, config.n_head, config.d_head
        if n_head <= 0 or d_head <= 0 or d_model % n_head != 0:
            raise ShapeMismatchError(
                f"The hidden size ({d_model}) is not a multiple of the number of attention heads ({n_head})"
            )
        if n_head * d_head != d_model:
            raise ShapeMismatchError(
                f"n_head * d_head ({n_head} * {d_head}) does not match the hidden size ({d_model})"
            )

        self.d_model = d_model
        self.n_head = n_head
        self.d_head = d_head
        self.scale = 1.0 / math.sqrt(d_head)
        self.output_attentions = bool(getattr(config, "output_attentions", False) or False)
        layer_norm_eps = getattr(config, "layer_norm_eps", None)
        self.layer_norm_eps = 1e-12 if layer_norm_eps is None else layer_norm_eps

        self.q = nn.Parameter(torch.empty(d_model, n_head, d_head))
        self.k = nn.Parameter(torch.empty(d_model, n_head, d_head))
        self.v = nn.Parameter(torch.empty(d_model, n_head, d_head))
        self.o = nn.Parameter(torch.empty(d_model, n_head, d_head))
        self.r = nn.Parameter(torch.empty(d_model, n_head, d_head))

        self.r_r_bias = nn.Parameter(torch.empty(n_head, d_head))
        self.r_s_bias = nn.Parameter(torch.empty(n_head, d_head))
        self.r_w_bias = nn.Parameter(torch.empty(n_head, d_head))
        self.seg_embed = nn.Parameter(torch.empty(2, n_head, d_head))

        self.layer_norm = nn.LayerNorm(d_model, eps=self.layer_norm_eps)
        self.dropout = nn.Dropout(config.dropout)

        self.reset_parameters(getattr(config, "initializer_range", 0.02))

    def reset_parameters(self, std: float = 0.02) -> None:
        """Normal init for every attention tensor, identity LayerNorm."""
        with torch.no_grad():
            for param in (
                self.q, self.k, self.v, self.o, self.r,
                self.r_r_bias, self.r_s_bias, self.r_w_bias, self.seg_embed,
            ):
                param.normal_(0.0, std)
        self.layer_norm.reset_parameters()

    def _check_core_inputs(
        self,
        q_head: torch.Tensor,
        k_head_h: torch.Tensor,
        v_head_h: torch.Tensor,
        k_head_r: torch.Tensor,
        seg_mat: Optional[torch.Tensor],
        attn_mask: Optional[torch.Tensor],
    ) -> None:
        if k_head_h.shape != v_head_h.shape:
            raise ShapeMismatchError(
                f"Content keys {tuple(k_head_h.shape)} and values {tuple(v_head_h.shape)} differ"
            )
        qlen, bsz = q_head.shape[:2]
        klen = k_head_h.size(0)
        if k_head_h.size(1) != bsz:
            raise ShapeMismatchError(f"Key batch {k_head_h.size(1)} differs from query batch {bsz}")
        if k_head_r.size(1) != bsz:
            raise ShapeMismatchError(f"Positional batch {k_head_r.size(1)} differs from query batch {bsz}")
        if k_head_r.size(0) < klen + 1:
            raise ShapeMismatchError(
                f"Positional keys cover {k_head_r.size(0)} offsets but {klen} keys need at least {klen + 1}; "
                "cached content and relative encoding are out of sync"
            )
        if seg_mat is not None and tuple(seg_mat.shape[:2]) != (qlen, klen):
            raise ShapeMismatchError(
                f"Segment matrix {tuple(seg_mat.shape)} does not cover ({qlen}, {klen}) query/key pairs"
            )
        if attn_mask is not None and (
            attn_mask.dim() != 4 or attn_mask.size(0) not in (1, qlen) or attn_mask.size(1) != klen
        ):
            raise ShapeMismatchError(
                f"Attention mask {tuple(attn_mask.shape)} must be [qlen={qlen} or 1, klen={klen}, batch, heads]"
            )

    def rel_attention_core(
        self,
        q_head: torch.Tensor,
        k_head_h: torch.Tensor,
        v_head_h: torch.Tensor,
        k_head_r: torch.Tensor,
        seg_mat: Optional[torch.Tensor] = None,
        attn_mask: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Core relative attention.

        Args:
            q_head: Query heads, [qlen, batch, n_head, d_head].
            k_head_h: Content keys, [klen, batch, n_head, d_head].
            v_head_h: Content values, same shape as the keys.
            k_head_r: Positional keys, [R, batch, n_head, d_head] with R > klen.
            seg_mat: Optional one-hot segment matrix, [qlen, klen, batch, 2].
            attn_mask: Optional mask, [qlen, klen, batch, 1 or n_head], 1.0 = masked.

        Returns:
            ``(attn_vec, attn_prob)``: attention output [qlen, batch, n_head, d_head]
            and, if ``output_attentions`` is on, probabilities
            [batch, n_head, qlen, klen] (otherwise None).
        """
        self._check_core_inputs(q_head, k_head_h, v_head_h, k_head_r, seg_mat, attn_mask)

        ac = torch.einsum("ibnd,jbnd->bnij", q_head + self.r_w_bias, k_head_h)

        bd = torch.einsum("ibnd,jbnd->bnij", q_head + self.r_r_bias, k_head_r)
        bd = rel_shift(bd, klen=ac.size(3))

        if seg_mat is None:
            ef = 0
        else:
            ef = torch.einsum("ibnd,snd->ibns", q_head + self.r_s_bias, self.seg_embed)
            ef = torch.einsum("ijbs,ibns->bnij", seg_mat.to(ef.dtype), ef)

        attn_score = (ac + bd + ef) * self.scale
        if attn_mask is not None:
            mask = attn_mask.permute(2, 3, 0, 1).to(attn_score.dtype)
            attn_score = attn_score - mask * masking_constant(attn_score.dtype)

        attn_prob = torch.softmax(attn_score, dim=3)
        attn_prob = self.dropout(attn_prob)

        attn_vec = torch.einsum("bnij,jbnd->ibnd", attn_prob, v_head_h)

        if self.output_attentions:
            return attn_vec, attn_prob
        return attn_vec, None

    def post_attention(
        self,
        h: torch.Tensor,
        attn_vec: torch.Tensor,
        residual: bool = True,
    ) -> torch.Tensor:
        """Project heads back to d_model, then dropout, residual and LayerNorm."""
        attn_out = torch.einsum("ibnd,hnd->ibh", attn_vec, self.o)
        attn_out = self.dropout(attn_out)
        if residual:
            attn_out = attn_out + h
        return self.layer_norm(attn_out)

    def query_stream_attention(
        self,
        streams: StreamInputs,
        k_head_h: torch.Tensor,
        v_head_h: torch.Tensor,
        k_head_r: torch.Tensor,
        seg_mat: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, Optional[torch.Tensor]]:
        """
        Run the query stream against content-derived keys and values.

        Raises:
            MissingStreamError: If ``streams`` carries no query stream.
        """
        if not isinstance(streams, ContentAndQuery):
            raise MissingStreamError(
                f"Query stream attention needs ContentAndQuery inputs, got {type(streams).__name__}"
            )

        q_head_g = torch.einsum("ibh,hnd->ibnd", streams.g, self.q)

        if streams.target_mapping is not None:
            q_head_g = torch.einsum("mbnd,mlb->lbnd", q_head_g, streams.target_mapping)
            attn_vec_g, attn_prob_g = self.rel_attention_core(
                q_head_g, k_head_h, v_head_h, k_head_r, seg_mat, streams.attn_mask_g
            )
            attn_vec_g = torch.einsum("lbnd,mlb->mbnd", attn_vec_g, streams.target_mapping)
        else:
            attn_vec_g, attn_prob_g = self.rel_attention_core(
                q_head_g, k_head_h, v_head_h, k_head_r, seg_mat, streams.attn_mask_g
            )

        output_g = self.post_attention(streams.g, attn_vec_g, residual=True)
        return output_g, attn_prob_g

    def forward(
        self,
        streams: StreamInputs,
        r: torch.Tensor,
        seg_mat: Optional[torch.Tensor] = None,
        layer_state: Optional[LayerState] = None,
    ) -> TwoStreamOutput:
        """
        Attention over one layer.

        Args:
            streams: ContentOnly or ContentAndQuery inputs.
            r: Relative positional encoding, [R, batch or 1, d_model].
            seg_mat: Optional one-hot segment matrix, [qlen, klen, batch, 2].
            layer_state: Memory of earlier hidden content for this layer.
                Keys and values are computed over ``cat([memory, h])``.

        Returns:
            TwoStreamOutput with the new content stream and, in two-stream
            mode, the new query stream.
        """
        if not isinstance(streams, (ContentOnly, ContentAndQuery)):
            raise TypeError(f"Unsupported stream configuration: {type(streams).__name__}")

        h = streams.h
        if h.size(-1) != self.d_model:
            raise ShapeMismatchError(f"Hidden size {h.size(-1)} differs from d_model {self.d_model}")

        if layer_state is not None and layer_state.has_content:
            if layer_state.batch_size != h.size(1):
                raise ShapeMismatchError(
                    f"Cached content batch {layer_state.batch_size} differs from input batch {h.size(1)}"
                )
            cat = torch.cat([layer_state.prev_content.to(h.dtype), h], dim=0)
        else:
            cat = h

        k_head_h = torch.einsum("ibh,hnd->ibnd", cat, self.k)
        v_head_h = torch.einsum("ibh,hnd->ibnd", cat, self.v)
        if r.size(1) == 1 and h.size(1) > 1:
            r = r.expand(-1, h.size(1), -1)
        k_head_r = torch.einsum("ibh,hnd->ibnd", r.to(self.r.dtype), self.r)
        q_head_h = torch.einsum("ibh,hnd->ibnd", h, self.q)

        attn_vec_h, probs_h = self.rel_attention_core(
            q_head_h, k_head_h, v_head_h, k_head_r, seg_mat, streams.attn_mask_h
        )
        output_h = self.post_attention(h, attn_vec_h, residual=True)

        if isinstance(streams, ContentOnly):
            return TwoStreamOutput(output_h=output_h, probs_h=probs_h)

        output_g, probs_g = self.query_stream_attention(
            streams, k_head_h, v_head_h, k_head_r, seg_mat
        )
        return TwoStreamOutput(
            output_h=output_h,
            output_g=output_g,
            probs_h=probs_h,
            probs_g=probs_g,
        )
