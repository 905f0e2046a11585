# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Next-token scoring for deterministic decoding.

Every step turns the model's last-position logits into a choice:

  1. Repetition penalty: tokens already present in a row's history (padding
     excluded) are pushed down. Negative logits are multiplied by the
     penalty, positive ones divided, so both move towards "less likely".
  2. Temperature: logits are divided by it when it isn't 1.0.
  3. Greedy takes the arg-max; beam search takes log_softmax and adds the
     running beam score (see engine/core.py).

Sampling is not supported. ``GenerateConfig`` refuses ``do_sample=True``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import torch

from xlgen.config.schema import GenerationSettings
from xlgen.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)


@dataclass(frozen=True)
class GenerateConfig:
    """
    Options for one generate() call.

    Token ids left as None are taken from the model. With ``num_beams == 1``
    decoding is greedy; larger values switch to beam search.
    """

    max_length: int = 20
    do_sample: bool = False
    num_beams: int = 1
    temperature: float = 1.0
    repetition_penalty: float = 1.0
    num_return_sequences: int = 1
    length_penalty: float = 1.0
    early_stopping: bool = False
    bos_token_id: Optional[int] = None
    eos_token_id: Optional[int] = None
    pad_token_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.do_sample:
            raise ValueError("do_sample=True is not supported, only greedy and beam search decoding")
        if self.max_length < 1:
            raise ValueError(f"max_length must be at least 1, got {self.max_length}")
        if self.num_beams < 1:
            raise ValueError(f"num_beams must be at least 1, got {self.num_beams}")
        if self.temperature <= 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")
        if self.repetition_penalty < 1.0:
            raise ValueError(f"repetition_penalty must be >= 1.0, got {self.repetition_penalty}")
        if self.num_return_sequences < 1:
            raise ValueError(f"num_return_sequences must be at least 1, got {self.num_return_sequences}")
        if self.num_return_sequences > self.num_beams:
            raise ValueError(
                f"num_return_sequences ({self.num_return_sequences}) cannot exceed num_beams ({self.num_beams})"
            )

    @property
    def use_beam_search(self) -> bool:
        return self.num_beams > 1

    @classmethod
    def from_settings(cls, settings: GenerationSettings, **token_ids: Optional[int]) -> "GenerateConfig":
        """Bridge the validated YAML section to the runtime dataclass."""
        return cls(
            max_length=settings.max_length,
            do_sample=settings.do_sample,
            num_beams=settings.num_beams,
            temperature=settings.temperature,
            repetition_penalty=settings.repetition_penalty,
            num_return_sequences=settings.num_return_sequences,
            length_penalty=settings.length_penalty,
            early_stopping=settings.early_stopping,
            **token_ids,
        )


def enforce_repetition_penalty(
    logits: torch.Tensor,
    prev_tokens: torch.Tensor,
    penalty: float,
    keep_mask: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Penalise tokens that already occur in each row's history.

    Args:
        logits: [rows, vocab_size].
        prev_tokens: Token history per row, [rows, cur_len].
        penalty: Values above 1.0 discourage repeats; 1.0 is a no-op.
        keep_mask: 0/1 mask over ``prev_tokens``; positions with 0 (padding)
            do not count as history.

    Returns:
        A new logits tensor.
    """
    if penalty == 1.0:
        return logits

    counts = torch.zeros(logits.shape, dtype=torch.long, device=logits.device)
    if keep_mask is None:
        src = torch.ones_like(prev_tokens, dtype=torch.long)
    else:
        src = keep_mask.to(dtype=torch.long, device=prev_tokens.device)
    counts.scatter_add_(1, prev_tokens.to(logits.device), src.to(logits.device))
    seen = counts > 0

    penalized = torch.where(logits < 0, logits * penalty, logits / penalty)
    return torch.where(seen, penalized, logits)


def apply_temperature(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    if temperature == 1.0:
        return logits
    return logits / temperature


def process_logits(
    logits: torch.Tensor,
    prev_tokens: torch.Tensor,
    config: GenerateConfig,
    keep_mask: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """Repetition penalty, then temperature."""
    logits = enforce_repetition_penalty(logits, prev_tokens, config.repetition_penalty, keep_mask)
    return apply_temperature(logits, config.temperature)


def greedy_next_tokens(logits: torch.Tensor) -> torch.Tensor:
    """
    Arg-max per row.

    Ties go to the lowest token id, so the choice is reproducible.
    """
    return torch.argmax(logits, dim=-1)
