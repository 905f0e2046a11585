# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Deterministic weight initialization.

Pretrained checkpoints overwrite these values, but tests and smoke runs use
randomly initialized models and need them to be identical across runs
and machines. Everything draws from one torch.Generator seeded from the
model config, independent of the global RNG.
"""

import torch
import torch.nn as nn


def init_weights(module: nn.Module, seed: int, init_std: float = 0.02) -> None:
    """
    Initialize every parameter of ``module`` in place.

    - LayerNorm: weight 1, bias 0
    - any parameter with two or more dims (projections, embeddings, XLNet
      head biases and segment embeddings): normal(0, init_std)
    - remaining 1-D parameters (linear biases): 0

    Args:
        module: Model to initialize.
        seed: Seed for the dedicated Generator.
        init_std: Standard deviation of the normal draws.
    """
    generator = torch.Generator()
    generator.manual_seed(seed)

    norm_params: set[int] = set()
    for submodule in module.modules():
        if isinstance(submodule, nn.LayerNorm):
            with torch.no_grad():
                if submodule.weight is not None:
                    submodule.weight.fill_(1.0)
                    norm_params.add(id(submodule.weight))
                if submodule.bias is not None:
                    submodule.bias.zero_()
                    norm_params.add(id(submodule.bias))

    for _, param in module.named_parameters():
        if id(param) in norm_params:
            continue
        with torch.no_grad():
            if param.dim() >= 2:
                # draw on CPU so the values don't depend on the device
                values = torch.empty(param.shape).normal_(0.0, init_std, generator=generator)
                param.copy_(values)
            else:
                param.zero_()
