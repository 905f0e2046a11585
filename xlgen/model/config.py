# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Model configuration objects for xlgen.

These are plain data objects (not pydantic) because they travel inside
torch modules and need to stay lightweight. Validation of user-facing
files happens in config/schema.py; the ``from_dict`` constructors here
accept the Hugging Face style ``config.json`` that ships next to public
GPT-2 and XLNet checkpoints and silently ignore keys they don't use.
"""

from pathlib import Path
from typing import Any, Optional

from xlgen.config.loader import read_json_mapping


def _pick(raw: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    return {key: raw[key] for key in keys if key in raw and raw[key] is not None}


class XLNetConfig:
    """
    Configuration for the XLNet relative attention stack.

    Args:
        vocab_size: Size of the token vocabulary.
        d_model: Hidden size.
        n_layer: Number of layers.
        n_head: Number of attention heads.
        d_head: Dimension per head. Defaults to ``d_model // n_head``.
        d_inner: Feedforward inner size.
        ff_activation: ``"gelu"`` or ``"relu"``.
        attn_type: ``"bi"`` (bidirectional) or ``"uni"`` (unidirectional).
        dropout: Dropout probability.
        layer_norm_eps: LayerNorm epsilon.
        output_attentions: Return attention probabilities from every layer.
        mem_len: Number of past hidden states kept per layer. ``None`` keeps all.
        reuse_len: Number of current tokens cached for the next segment.
        clamp_len: Clamp relative distances above this value, -1 disables.
        same_length: Every token attends to the same number of positions.
        initializer_range: Std for deterministic initialization.
        seed: Random seed for deterministic initialization.
    """

    __slots__ = (
        "vocab_size", "d_model", "n_layer", "n_head", "d_head", "d_inner",
        "ff_activation", "attn_type", "dropout", "layer_norm_eps",
        "output_attentions", "mem_len", "reuse_len", "clamp_len",
        "same_length", "initializer_range", "seed",
        "bos_token_id", "eos_token_id", "pad_token_id",
    )

    def __init__(
        self,
        vocab_size: int = 32000,
        d_model: int = 1024,
        n_layer: int = 24,
        n_head: int = 16,
        d_head: Optional[int] = None,
        d_inner: int = 4096,
        ff_activation: str = "gelu",
        attn_type: str = "bi",
        dropout: float = 0.1,
        layer_norm_eps: float = 1e-12,
        output_attentions: bool = False,
        mem_len: Optional[int] = None,
        reuse_len: Optional[int] = None,
        clamp_len: int = -1,
        same_length: bool = False,
        initializer_range: float = 0.02,
        seed: int = 42,
        bos_token_id: int = 1,
        eos_token_id: int = 2,
        pad_token_id: int = 5,
    ) -> None:
        self.vocab_size = vocab_size
        self.d_model = d_model
        self.n_layer = n_layer
        self.n_head = n_head
        self.d_head = d_head if d_head is not None else d_model // n_head
        self.d_inner = d_inner
        self.ff_activation = ff_activation
        self.attn_type = attn_type
        self.dropout = dropout
        self.layer_norm_eps = layer_norm_eps
        self.output_attentions = output_attentions
        self.mem_len = mem_len
        self.reuse_len = reuse_len
        self.clamp_len = clamp_len
        self.same_length = same_length
        self.initializer_range = initializer_range
        self.seed = seed
        self.bos_token_id = bos_token_id
        self.eos_token_id = eos_token_id
        self.pad_token_id = pad_token_id

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "XLNetConfig":
        """Build from a ``config.json`` mapping."""
        return cls(**_pick(raw, cls.__slots__))

    @classmethod
    def from_json_file(cls, path: Path) -> "XLNetConfig":
        return cls.from_dict(read_json_mapping(Path(path)))


class GPT2Config:
    """
    Configuration for the GPT-2 language model used by the generator.

    Names follow the public GPT-2 ``config.json`` so checkpoints load
    without translation.
    """

    __slots__ = (
        "vocab_size", "n_positions", "n_embd", "n_layer", "n_head", "n_inner",
        "activation_function", "resid_pdrop", "embd_pdrop", "attn_pdrop",
        "layer_norm_epsilon", "initializer_range", "output_attentions", "seed",
        "bos_token_id", "eos_token_id", "pad_token_id",
    )

    def __init__(
        self,
        vocab_size: int = 50257,
        n_positions: int = 1024,
        n_embd: int = 768,
        n_layer: int = 12,
        n_head: int = 12,
        n_inner: Optional[int] = None,
        activation_function: str = "gelu_new",
        resid_pdrop: float = 0.1,
        embd_pdrop: float = 0.1,
        attn_pdrop: float = 0.1,
        layer_norm_epsilon: float = 1e-5,
        initializer_range: float = 0.02,
        output_attentions: bool = False,
        seed: int = 42,
        bos_token_id: int = 50256,
        eos_token_id: int = 50256,
        pad_token_id: Optional[int] = None,
    ) -> None:
        self.vocab_size = vocab_size
        self.n_positions = n_positions
        self.n_embd = n_embd
        self.n_layer = n_layer
        self.n_head = n_head
        self.n_inner = n_inner
        self.activation_function = activation_function
        self.resid_pdrop = resid_pdrop
        self.embd_pdrop = embd_pdrop
        self.attn_pdrop = attn_pdrop
        self.layer_norm_epsilon = layer_norm_epsilon
        self.initializer_range = initializer_range
        self.output_attentions = output_attentions
        self.seed = seed
        self.bos_token_id = bos_token_id
        self.eos_token_id = eos_token_id
        self.pad_token_id = pad_token_id

    @property
    def head_dim(self) -> int:
        return self.n_embd // self.n_head

    @property
    def inner_dim(self) -> int:
        return self.n_inner if self.n_inner is not None else 4 * self.n_embd

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GPT2Config":
        """Build from a ``config.json`` mapping."""
        return cls(**_pick(raw, cls.__slots__))

    @classmethod
    def from_json_file(cls, path: Path) -> "GPT2Config":
        return cls.from_dict(read_json_mapping(Path(path)))
