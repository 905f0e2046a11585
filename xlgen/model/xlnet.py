# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
XLNet language model built on the relative attention layer.

Everything here is time-major internally ([seq_len, batch, d_model]); the
public forward() takes and returns batch-first tensors like the rest of
the package.

The model owns the pieces that sit around the attention layers:

  - sinusoidal relative positional encoding
  - causal / same-length masks for unidirectional attention
  - padding and permutation masks, and the "non-target" variant that lets
    the content stream see its own token
  - segment matrix from token type ids
  - per-layer memory (LayerState) written to the shared LayerCache

Generation follows the usual XLNet recipe: the sequence is extended with a
dummy token that nobody may attend to, and the query stream at that
position predicts the next token. On later steps the last two positions of
every memory are dropped and re-fed, because the dummy of the previous step
has become a real token.
"""

from typing import Any, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from xlgen.logging.logger import get_logger
from xlgen.model.config import XLNetConfig
from xlgen.model.exceptions import ShapeMismatchError
from xlgen.model.init.weights import init_weights
from xlgen.model.interfaces import LanguageModelBase, LMOutput
from xlgen.model.layers.attention.relative import XLNetRelativeAttention
from xlgen.model.layers.attention.streams import (
    ContentAndQuery,
    ContentOnly,
    TwoStreamOutput,
)
from xlgen.model.layers.mlp.feedforward import XLNetFeedForward
from xlgen.model.state import LayerState
from xlgen.serving.cache.core import LayerCache

logger = get_logger(__name__)

# Positions re-fed at every decoding step after the first.
GENERATION_OFFSET = 2


def relative_positional_encoding(
    qlen: int,
    klen: int,
    d_model: int,
    attn_type: str = "bi",
    clamp_len: int = -1,
    bsz: Optional[int] = None,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Sinusoidal encoding of every relative offset between queries and keys.

    Offsets run from ``klen`` down to ``-qlen + 1`` for bidirectional
    attention (``qlen + klen`` rows) and down to 0 for unidirectional
    attention (``klen + 1`` rows).

    Returns:
        [R, bsz or 1, d_model]
    """
    if d_model % 2 != 0:
        raise ShapeMismatchError(f"d_model must be even for sinusoidal encoding, got {d_model}")

    freq_seq = torch.arange(0, d_model, 2.0, dtype=torch.float, device=device)
    inv_freq = 1.0 / torch.pow(10000, freq_seq / d_model)

    if attn_type == "bi":
        beg, end = klen, -qlen
    elif attn_type == "uni":
        beg, end = klen, -1
    else:
        raise ValueError(f"Unknown attention type: {attn_type}")

    pos_seq = torch.arange(beg, end, -1.0, dtype=torch.float, device=device)
    if clamp_len > 0:
        pos_seq = pos_seq.clamp(-clamp_len, clamp_len)

    sinusoid = torch.einsum("i,d->id", pos_seq, inv_freq)
    pos_emb = torch.cat([torch.sin(sinusoid), torch.cos(sinusoid)], dim=-1)[:, None, :]
    if bsz is not None:
        pos_emb = pos_emb.expand(-1, bsz, -1)
    return pos_emb


class XLNetLayer(nn.Module):
    """Relative attention followed by the feedforward sub-layer."""

    def __init__(self, config: XLNetConfig) -> None:
        super().__init__()
        self.rel_attn = XLNetRelativeAttention(config)
        self.ff = XLNetFeedForward(
            d_model=config.d_model,
            d_inner=config.d_inner,
            dropout=config.dropout,
            layer_norm_eps=config.layer_norm_eps,
            activation=config.ff_activation,
        )

    def forward(self, streams, r, seg_mat=None, layer_state=None) -> TwoStreamOutput:
        out = self.rel_attn(streams, r, seg_mat=seg_mat, layer_state=layer_state)
        output_g = self.ff(out.output_g) if out.output_g is not None else None
        return TwoStreamOutput(
            output_h=self.ff(out.output_h),
            output_g=output_g,
            probs_h=out.probs_h,
            probs_g=out.probs_g,
        )


class XLNetModel(nn.Module):
    """XLNet body: word embedding, mask embedding, relative attention layers."""

    def __init__(self, config: XLNetConfig) -> None:
        super().__init__()
        self.config = config
        self.word_embedding = nn.Embedding(config.vocab_size, config.d_model)
        self.mask_emb = nn.Parameter(torch.empty(1, 1, config.d_model))
        self.layer = nn.ModuleList([XLNetLayer(config) for _ in range(config.n_layer)])
        self.dropout = nn.Dropout(config.dropout)

    def create_mask(self, qlen: int, mlen: int, device: Optional[torch.device] = None) -> torch.Tensor:
        """
        Causal mask for unidirectional attention, 1.0 = masked.

        Memory positions are always visible. With ``same_length`` every
        query additionally loses the keys further back than ``klen - qlen``
        positions so all queries attend to the same number of keys.

        Returns:
            [qlen, mlen + qlen]
        """
        attn_mask = torch.ones(qlen, qlen, device=device)
        mask_up = torch.triu(attn_mask, diagonal=1)
        attn_mask_pad = torch.zeros(qlen, mlen, device=device)
        ret = torch.cat([attn_mask_pad, mask_up], dim=1)
        if self.config.same_length:
            mask_lo = torch.tril(attn_mask, diagonal=-1)
            ret = torch.cat([ret[:, :qlen] + mask_lo, ret[:, qlen:]], dim=1)
        return ret

    def _build_masks(
        self,
        qlen: int,
        mlen: int,
        bsz: int,
        attention_mask: Optional[torch.Tensor],
        perm_mask: Optional[torch.Tensor],
        dtype: torch.dtype,
        device: torch.device,
    ) -> tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
        """
        Combine causal, padding and permutation masks.

        Returns:
            ``(attn_mask, non_tgt_mask)``, each [qlen or 1, klen, batch or 1, 1]
            or None. ``attn_mask`` is for the query stream; ``non_tgt_mask``
            also lets each content position see itself.
        """
        klen = mlen + qlen
        attn_mask = None
        if self.config.attn_type == "uni":
            attn_mask = self.create_mask(qlen, mlen, device=device)[:, :, None, None]
        elif self.config.attn_type != "bi":
            raise ValueError(f"Unsupported attention type: {self.config.attn_type}")

        data_mask = None
        if attention_mask is not None:
            key_pad = 1.0 - attention_mask.to(dtype)
            if key_pad.size(1) == qlen and mlen > 0:
                # memory positions count as real tokens
                key_pad = torch.cat([key_pad.new_zeros(bsz, mlen), key_pad], dim=1)
            elif key_pad.size(1) != klen:
                raise ShapeMismatchError(
                    f"Attention mask covers {key_pad.size(1)} positions, expected {qlen} or {klen}"
                )
            data_mask = key_pad.transpose(0, 1)[None]

        if perm_mask is not None:
            if tuple(perm_mask.shape) != (bsz, qlen, qlen):
                raise ShapeMismatchError(
                    f"perm_mask {tuple(perm_mask.shape)} must be [{bsz}, {qlen}, {qlen}]"
                )
            perm = perm_mask.to(dtype).permute(1, 2, 0)
            if mlen > 0:
                perm = torch.cat([perm.new_zeros(qlen, mlen, bsz), perm], dim=1)
            data_mask = perm if data_mask is None else data_mask + perm

        if data_mask is not None:
            data_mask = data_mask[:, :, :, None]
            attn_mask = data_mask if attn_mask is None else attn_mask + data_mask

        if attn_mask is None:
            return None, None

        attn_mask = (attn_mask > 0).to(dtype)
        non_tgt_mask = -torch.eye(qlen, dtype=dtype, device=device)
        if mlen > 0:
            non_tgt_mask = torch.cat([torch.zeros(qlen, mlen, dtype=dtype, device=device), non_tgt_mask], dim=-1)
        non_tgt_mask = ((attn_mask + non_tgt_mask[:, :, None, None]) > 0).to(dtype)
        return attn_mask, non_tgt_mask

    @staticmethod
    def _check_visible(attn_mask: torch.Tensor, query_keep: Optional[torch.Tensor]) -> None:
        """Every real query must keep at least one key, or softmax degenerates."""
        blocked = (attn_mask[..., 0] > 0).all(dim=1)
        if query_keep is not None:
            blocked = blocked & query_keep.transpose(0, 1).bool()
        if blocked.any():
            raise ValueError("Attention mask hides every key from at least one query position")

    def _segment_matrix(
        self,
        token_type_ids: torch.Tensor,
        mlen: int,
        dtype: torch.dtype,
    ) -> torch.Tensor:
        """One-hot "different segment" matrix, [qlen, klen, batch, 2]."""
        token_type = token_type_ids.transpose(0, 1).long()
        if mlen > 0:
            mem_pad = token_type.new_zeros(mlen, token_type.size(1))
            cat_ids = torch.cat([mem_pad, token_type], dim=0)
        else:
            cat_ids = token_type
        seg_mat = (token_type[:, None] != cat_ids[None, :]).long()
        return F.one_hot(seg_mat, num_classes=2).to(dtype)

    def forward(
        self,
        input_ids: torch.Tensor,
        cache: Optional[LayerCache] = None,
        attention_mask: Optional[torch.Tensor] = None,
        perm_mask: Optional[torch.Tensor] = None,
        target_mapping: Optional[torch.Tensor] = None,
        token_type_ids: Optional[torch.Tensor] = None,
        reuse_len: Optional[int] = None,
    ) -> tuple[torch.Tensor, Optional[tuple[Any, ...]]]:
        """
        Args:
            input_ids: [batch, qlen].
            cache: Per-layer LayerStates. Every layer's input is appended
                to its slot before the layer runs.
            attention_mask: 0/1 keep-mask, [batch, qlen] or [batch, mlen + qlen].
            perm_mask: [batch, qlen, qlen], 1 where query i may not see key j.
            target_mapping: [batch, num_predict, qlen] one-hot rows selecting
                the positions the query stream predicts. Enables two-stream mode.
            token_type_ids: [batch, qlen] segment ids.
            reuse_len: Overrides ``config.reuse_len`` for this call. 0 caches
                every position, which incremental decoding relies on.

        Returns:
            ``(output, attentions)``: [batch, qlen or num_predict, d_model] and
            per-layer probabilities when ``output_attentions`` is set.
        """
        bsz, qlen = input_ids.shape
        device = input_ids.device
        dtype = self.word_embedding.weight.dtype
        mlen = cache.current_length if cache is not None else 0
        klen = mlen + qlen
        if reuse_len is None:
            reuse_len = self.config.reuse_len

        attn_mask, non_tgt_mask = self._build_masks(
            qlen, mlen, bsz, attention_mask, perm_mask, dtype, device
        )

        word_emb_k = self.word_embedding(input_ids.transpose(0, 1))
        output_h = self.dropout(word_emb_k)

        output_g = None
        mapping = None
        if target_mapping is not None:
            mapping = target_mapping.to(dtype).permute(1, 2, 0)
            word_emb_q = self.mask_emb.expand(mapping.size(0), bsz, -1)
            output_g = self.dropout(word_emb_q)
            if attn_mask is not None:
                query_keep = attention_mask[:, -qlen:] if attention_mask is not None else None
                self._check_visible(attn_mask.expand(qlen, -1, -1, -1), query_keep)

        seg_mat = None
        if token_type_ids is not None:
            seg_mat = self._segment_matrix(token_type_ids, mlen, dtype)

        pos_emb = relative_positional_encoding(
            qlen,
            klen,
            self.config.d_model,
            attn_type=self.config.attn_type,
            clamp_len=self.config.clamp_len,
            bsz=bsz,
            device=device,
        ).to(dtype)
        pos_emb = self.dropout(pos_emb)

        attentions = []
        for layer_idx, layer in enumerate(self.layer):
            layer_state = cache.get(layer_idx) if cache is not None else None
            if layer_state is not None and not isinstance(layer_state, LayerState):
                raise TypeError(
                    f"XLNet layer {layer_idx} expects a LayerState, got {type(layer_state).__name__}"
                )
            if cache is not None:
                base = layer_state if layer_state is not None else LayerState.empty(device)
                cache.set(
                    layer_idx,
                    base.extend(output_h, mem_len=self.config.mem_len, reuse_len=reuse_len),
                )

            if output_g is None:
                streams = ContentOnly(h=output_h, attn_mask_h=non_tgt_mask)
            else:
                streams = ContentAndQuery(
                    h=output_h,
                    g=output_g,
                    attn_mask_h=non_tgt_mask,
                    attn_mask_g=attn_mask,
                    target_mapping=mapping,
                )

            out = layer(streams, pos_emb, seg_mat=seg_mat, layer_state=layer_state)
            output_h, output_g = out.output_h, out.output_g
            if out.probs_h is not None:
                attentions.append(out.probs_h if out.probs_g is None else (out.probs_h, out.probs_g))

        output = self.dropout(output_g if output_g is not None else output_h)
        return output.permute(1, 0, 2).contiguous(), (tuple(attentions) if attentions else None)


class XLNetLMHeadModel(LanguageModelBase):
    """XLNet with a language modelling head tied to the word embedding."""

    def __init__(self, config: XLNetConfig) -> None:
        super().__init__()
        self.config = config
        self.transformer = XLNetModel(config)
        self.lm_loss = nn.Linear(config.d_model, config.vocab_size, bias=True)

        init_weights(self, seed=config.seed, init_std=config.initializer_range)
        self.tie_weights()

    def tie_weights(self) -> None:
        self.lm_loss.weight = self.transformer.word_embedding.weight

    @property
    def vocab_size(self) -> int:
        return self.config.vocab_size

    @property
    def n_layers(self) -> int:
        return self.config.n_layer

    @property
    def bos_token_id(self) -> Optional[int]:
        return self.config.bos_token_id

    @property
    def eos_token_id(self) -> Optional[int]:
        return self.config.eos_token_id

    @property
    def pad_token_id(self) -> Optional[int]:
        return self.config.pad_token_id

    def forward(
        self,
        input_ids: torch.Tensor,
        cache: Optional[LayerCache] = None,
        attention_mask: Optional[torch.Tensor] = None,
        perm_mask: Optional[torch.Tensor] = None,
        target_mapping: Optional[torch.Tensor] = None,
        token_type_ids: Optional[torch.Tensor] = None,
        reuse_len: Optional[int] = None,
        **kwargs: Any,
    ) -> LMOutput:
        output, attentions = self.transformer(
            input_ids,
            cache=cache,
            attention_mask=attention_mask,
            perm_mask=perm_mask,
            target_mapping=target_mapping,
            token_type_ids=token_type_ids,
            reuse_len=reuse_len,
        )
        return LMOutput(logits=self.lm_loss(output), attentions=attentions)

    def prepare_inputs_for_generation(
        self,
        input_ids: torch.Tensor,
        cache: LayerCache,
        attention_mask: torch.Tensor,
    ) -> dict[str, Any]:
        bsz = input_ids.size(0)
        device = input_ids.device
        dummy_token = torch.zeros((bsz, 1), dtype=torch.long, device=device)

        if cache.is_empty:
            step_ids = torch.cat([input_ids, dummy_token], dim=1)
        else:
            # the previous dummy is now a real token, recompute it and its neighbour
            step_ids = torch.cat([input_ids[:, -GENERATION_OFFSET:], dummy_token], dim=1)
            cache.map(lambda state: state.drop_last(GENERATION_OFFSET))

        seq_len = step_ids.size(1)
        dtype = self.transformer.word_embedding.weight.dtype

        # nobody sees the dummy position
        perm_mask = torch.zeros((bsz, seq_len, seq_len), dtype=dtype, device=device)
        perm_mask[:, :, -1] = 1.0

        # the query stream predicts only the dummy position
        target_mapping = torch.zeros((bsz, 1, seq_len), dtype=dtype, device=device)
        target_mapping[:, 0, -1] = 1.0

        # with mem_len the memory may hold fewer positions than the history;
        # the dummy inherits the newest token's flag so finished rows stay padding
        mlen = cache.current_length
        step_mask = torch.cat(
            [attention_mask[:, attention_mask.size(1) - (mlen + seq_len - 1):], attention_mask[:, -1:]],
            dim=1,
        )

        return {
            "input_ids": step_ids,
            "cache": cache,
            "attention_mask": step_mask,
            "perm_mask": perm_mask,
            "target_mapping": target_mapping,
            "reuse_len": 0,
        }
