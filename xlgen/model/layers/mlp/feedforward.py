# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Position-wise feedforward layers.

  XLNetFeedForward  Linear -> act -> dropout -> Linear -> dropout,
                    then residual + LayerNorm (post-norm, as in XLNet)
  GPT2MLP           Conv1D -> gelu_new -> Conv1D -> dropout (pre-norm block
                    applies its own LayerNorm)

``Conv1D`` is GPT-2's name for a linear layer whose weight is stored
transposed ([in_features, out_features]); keeping that layout lets public
GPT-2 checkpoints load without reshaping.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F


def _gelu_new(x: torch.Tensor) -> torch.Tensor:
    return F.gelu(x, approximate="tanh")


_ACTIVATIONS = {
    "gelu": F.gelu,
    "relu": F.relu,
    "gelu_new": _gelu_new,
}


def get_activation(name: str):
    """Look up an activation function by its config name."""
    if name not in _ACTIVATIONS:
        raise KeyError(f"Unknown activation '{name}'. Available: {sorted(_ACTIVATIONS)}")
    return _ACTIVATIONS[name]


class Conv1D(nn.Module):
    """
    Linear layer with a transposed weight.

    Args:
        nf: Output features.
        nx: Input features.
    """

    def __init__(self, nf: int, nx: int) -> None:
        super().__init__()
        self.nf = nf
        self.weight = nn.Parameter(torch.empty(nx, nf))
        self.bias = nn.Parameter(torch.zeros(nf))
        nn.init.normal_(self.weight, std=0.02)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        size_out = x.size()[:-1] + (self.nf,)
        x = torch.addmm(self.bias, x.reshape(-1, x.size(-1)), self.weight)
        return x.view(size_out)


class XLNetFeedForward(nn.Module):
    """
    XLNet feedforward sub-layer.

    Args:
        d_model: Hidden size.
        d_inner: Inner size.
        dropout: Dropout probability.
        layer_norm_eps: LayerNorm epsilon.
        activation: ``"gelu"`` or ``"relu"``.
    """

    def __init__(
        self,
        d_model: int,
        d_inner: int,
        dropout: float = 0.1,
        layer_norm_eps: float = 1e-12,
        activation: str = "gelu",
    ) -> None:
        super().__init__()
        self.layer_norm = nn.LayerNorm(d_model, eps=layer_norm_eps)
        self.layer_1 = nn.Linear(d_model, d_inner)
        self.layer_2 = nn.Linear(d_inner, d_model)
        self.dropout = nn.Dropout(dropout)
        self.activation_function = get_activation(activation)

    def forward(self, inp: torch.Tensor) -> torch.Tensor:
        output = self.layer_1(inp)
        output = self.activation_function(output)
        output = self.dropout(output)
        output = self.layer_2(output)
        output = self.dropout(output)
        return self.layer_norm(output + inp)


class GPT2MLP(nn.Module):
    """GPT-2 feedforward: expand, activate, project back."""

    def __init__(
        self,
        n_embd: int,
        inner_dim: int,
        dropout: float = 0.1,
        activation: str = "gelu_new",
    ) -> None:
        super().__init__()
        self.c_fc = Conv1D(inner_dim, n_embd)
        self.c_proj = Conv1D(n_embd, inner_dim)
        self.act = get_activation(activation)
        self.dropout = nn.Dropout(dropout)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.dropout(self.c_proj(self.act(self.c_fc(x))))
