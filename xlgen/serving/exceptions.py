# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Errors raised while serving generation requests.

The generator catches ``GenerationExhaustedError`` itself and returns what
it has produced so far; everything else propagates to the caller.
"""


class GenerationError(Exception):
    """Base class for generation failures."""


class GenerationExhaustedError(GenerationError):
    """
    Beam search ran out of finite candidates.

    Happens when the scores of a step leave fewer than ``num_beams`` tokens
    that aren't -inf (e.g. a model that emits NaN or a fully masked row).
    """

    def __init__(self, batch_idx: int, found: int, needed: int) -> None:
        self.batch_idx = batch_idx
        self.found = found
        self.needed = needed
        super().__init__(
            f"Beam search for input {batch_idx} found {found} live candidates, needs {needed}"
        )


class TokenizerNotLoadedError(GenerationError):
    """Text generation was requested without a tokenizer."""
