# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Contract between language models and the generator.

The generator knows nothing about GPT-2 or XLNet internals. It only needs:

  - forward(**inputs) -> LMOutput      logits for the positions fed in,
                                       reading and replacing cache slots
  - prepare_inputs_for_generation()    which slice of the running sequence
                                       to feed at a given step, plus any
                                       model-specific extras (masks, mappings)
  - new_cache()                        an empty LayerCache sized for the model
  - bos/eos/pad token ids and the vocabulary size

Shape contract: input ids are batch-first [batch, seq_len]; logits are
[batch, num_positions, vocab_size] where the last position predicts the
next token.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import torch
import torch.nn as nn

from xlgen.serving.cache.core import LayerCache


@dataclass(frozen=True)
class LMOutput:
    """Logits plus per-layer attention probabilities when requested."""

    logits: torch.Tensor
    attentions: Optional[tuple[Any, ...]] = None


class LanguageModelBase(nn.Module, ABC):
    """Base class for every model the generator can drive."""

    @property
    @abstractmethod
    def vocab_size(self) -> int: ...

    @property
    @abstractmethod
    def n_layers(self) -> int: ...

    @property
    @abstractmethod
    def bos_token_id(self) -> Optional[int]: ...

    @property
    @abstractmethod
    def eos_token_id(self) -> Optional[int]: ...

    @property
    @abstractmethod
    def pad_token_id(self) -> Optional[int]: ...

    @property
    def max_positions(self) -> Optional[int]:
        """Longest sequence the model can attend over, None if unbounded."""
        return None

    def new_cache(self, padding: int = 0) -> LayerCache:
        """
        Empty cache for one generate() call.

        ``padding`` is the widest left padding of the batch; padded slots
        are stored but hold no position, so they get room on top of
        ``max_positions``.
        """
        max_length = self.max_positions
        if max_length is not None:
            max_length += padding
        return LayerCache(self.n_layers, max_length=max_length)

    def tie_weights(self) -> None:
        """Share the output projection with the input embedding (no-op by default)."""

    @abstractmethod
    def prepare_inputs_for_generation(
        self,
        input_ids: torch.Tensor,
        cache: LayerCache,
        attention_mask: torch.Tensor,
    ) -> dict[str, Any]:
        """
        Build the forward() keyword arguments for one decoding step.

        Args:
            input_ids: Everything generated so far, [batch, cur_len].
            cache: The call's cache; empty on the first step.
            attention_mask: 0/1 mask over ``input_ids``, 0 = padding.
        """

    @abstractmethod
    def forward(self, input_ids: torch.Tensor, **kwargs: Any) -> LMOutput: ...

    def count_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters() if p.requires_grad)
