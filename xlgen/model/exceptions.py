# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Errors raised by the model layers.

Both are fatal: they signal a caller bug (wrong shapes, wrong stream
configuration) and are never recovered inside the library.
"""


class ModelError(Exception):
    """Base for all model-layer errors."""


class ShapeMismatchError(ModelError, ValueError):
    """
    Tensor or hyperparameter shapes don't line up: hidden size not divisible
    by the head count, key/value lengths that disagree, or a positional
    encoding too short for the relative shift.
    """


class MissingStreamError(ModelError):
    """A query-stream operation was requested without a query stream tensor."""
