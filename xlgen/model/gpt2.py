# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
GPT-2 language model.

Architecture (pre-norm decoder):
  1. Token embedding + learned position embedding, dropout
  2. N x Block:
       x = x + attn(ln_1(x))
       x = x + mlp(ln_2(x))
  3. Final LayerNorm
  4. LM head tied to the token embedding

Module names follow public GPT-2 checkpoints (``transformer.wte``,
``transformer.h.0.attn.c_attn`` ...), so a ``pytorch_model.bin`` loads
directly once the loader has normalised key prefixes.

Position ids are derived from the attention mask rather than from the raw
offset: with left padding every row of a batch starts its real tokens at
position 0, so a padded prompt produces the same logits as the same prompt
run on its own.
"""

from typing import Any, Optional

import torch
import torch.nn as nn

from xlgen.model.config import GPT2Config
from xlgen.model.exceptions import ShapeMismatchError
from xlgen.model.init.weights import init_weights
from xlgen.model.interfaces import LanguageModelBase, LMOutput
from xlgen.model.layers.attention.causal import GPT2Attention
from xlgen.model.layers.mlp.feedforward import GPT2MLP
from xlgen.model.state import KeyValueState
from xlgen.serving.cache.core import LayerCache


def positions_from_mask(attention_mask: torch.Tensor) -> torch.Tensor:
    """
    Position ids that skip padding.

    ``[[0, 0, 1, 1]]`` becomes ``[[0, 0, 0, 1]]``: padding is pinned to 0
    and the first real token gets position 0.
    """
    return (attention_mask.long().cumsum(dim=-1) - 1).clamp(min=0)


class GPT2Block(nn.Module):
    """Single pre-norm transformer block."""

    def __init__(self, config: GPT2Config) -> None:
        super().__init__()
        self.ln_1 = nn.LayerNorm(config.n_embd, eps=config.layer_norm_epsilon)
        self.attn = GPT2Attention(
            n_embd=config.n_embd,
            n_head=config.n_head,
            attn_pdrop=config.attn_pdrop,
            resid_pdrop=config.resid_pdrop,
            output_attentions=config.output_attentions,
        )
        self.ln_2 = nn.LayerNorm(config.n_embd, eps=config.layer_norm_epsilon)
        self.mlp = GPT2MLP(
            n_embd=config.n_embd,
            inner_dim=config.inner_dim,
            dropout=config.resid_pdrop,
            activation=config.activation_function,
        )

    def forward(
        self,
        x: torch.Tensor,
        layer_past: Optional[KeyValueState] = None,
        attention_mask: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, KeyValueState, Optional[torch.Tensor]]:
        attn_out, present, probs = self.attn(self.ln_1(x), layer_past, attention_mask)
        x = x + attn_out
        x = x + self.mlp(self.ln_2(x))
        return x, present, probs


class GPT2Model(nn.Module):
    """GPT-2 body: embeddings, blocks, final LayerNorm."""

    def __init__(self, config: GPT2Config) -> None:
        super().__init__()
        self.config = config
        self.wte = nn.Embedding(config.vocab_size, config.n_embd)
        self.wpe = nn.Embedding(config.n_positions, config.n_embd)
        self.drop = nn.Dropout(config.embd_pdrop)
        self.h = nn.ModuleList([GPT2Block(config) for _ in range(config.n_layer)])
        self.ln_f = nn.LayerNorm(config.n_embd, eps=config.layer_norm_epsilon)

    def forward(
        self,
        input_ids: torch.Tensor,
        cache: Optional[LayerCache] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
    ) -> tuple[torch.Tensor, Optional[tuple[torch.Tensor, ...]]]:
        """
        Args:
            input_ids: [batch, seq_len] token ids of the new positions.
            cache: Per-layer KeyValueStates; read, then replaced in place.
            attention_mask: 0/1 mask over cached + new positions,
                [batch, past_len + seq_len].
            position_ids: Explicit positions for the new tokens.

        Returns:
            ``(hidden, attentions)``: hidden states [batch, seq_len, n_embd]
            and per-layer probabilities when ``output_attentions`` is set.
        """
        batch, seq_len = input_ids.shape
        past_length = cache.current_length if cache is not None else 0
        total = past_length + seq_len

        if attention_mask is None:
            attention_mask = torch.ones(batch, total, dtype=torch.long, device=input_ids.device)
        elif attention_mask.shape != (batch, total):
            raise ShapeMismatchError(
                f"Attention mask {tuple(attention_mask.shape)} must be [{batch}, {total}]"
            )

        # padding takes no position, only real tokens count against n_positions
        real_length = int(attention_mask.long().sum(dim=-1).max().item())
        if real_length > self.config.n_positions:
            raise ShapeMismatchError(
                f"Sequence length {real_length} exceeds the model's {self.config.n_positions} positions"
            )

        if position_ids is None:
            position_ids = positions_from_mask(attention_mask)[:, past_length:]

        hidden = self.drop(self.wte(input_ids) + self.wpe(position_ids))

        attentions = []
        for layer_idx, block in enumerate(self.h):
            layer_past = cache.get(layer_idx) if cache is not None else None
            if layer_past is not None and not isinstance(layer_past, KeyValueState):
                raise TypeError(
                    f"GPT-2 layer {layer_idx} expects a KeyValueState, got {type(layer_past).__name__}"
                )
            hidden, present, probs = block(hidden, layer_past, attention_mask)
            if cache is not None:
                cache.set(layer_idx, present)
            if probs is not None:
                attentions.append(probs)

        hidden = self.ln_f(hidden)
        return hidden, (tuple(attentions) if attentions else None)


class GPT2LMHeadModel(LanguageModelBase):
    """GPT-2 with a language modelling head tied to the token embedding."""

    def __init__(self, config: GPT2Config) -> None:
        super().__init__()
        self.config = config
        self.transformer = GPT2Model(config)
        self.lm_head = nn.Linear(config.n_embd, config.vocab_size, bias=False)

        init_weights(self, seed=config.seed, init_std=config.initializer_range)
        self.tie_weights()

    def tie_weights(self) -> None:
        self.lm_head.weight = self.transformer.wte.weight

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
        # GPT-2 ships without a pad token; EOS doubles as one
        if self.config.pad_token_id is not None:
            return self.config.pad_token_id
        return self.config.eos_token_id

    @property
    def max_positions(self) -> Optional[int]:
        return self.config.n_positions

    def forward(
        self,
        input_ids: torch.Tensor,
        cache: Optional[LayerCache] = None,
        attention_mask: Optional[torch.Tensor] = None,
        position_ids: Optional[torch.Tensor] = None,
        **kwargs: Any,
    ) -> LMOutput:
        hidden, attentions = self.transformer(
            input_ids,
            cache=cache,
            attention_mask=attention_mask,
            position_ids=position_ids,
        )
        return LMOutput(logits=self.lm_head(hidden), attentions=attentions)

    def prepare_inputs_for_generation(
        self,
        input_ids: torch.Tensor,
        cache: LayerCache,
        attention_mask: torch.Tensor,
    ) -> dict[str, Any]:
        # once the prompt is cached only the newest token needs a forward pass
        if not cache.is_empty:
            input_ids = input_ids[:, -1:]
        return {"input_ids": input_ids, "cache": cache, "attention_mask": attention_mask}
